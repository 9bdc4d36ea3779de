from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from sqlalchemy.orm import Session

from sewdle.config import settings
from sewdle.services.inventory_sync_service import InventorySyncCoordinator
from sewdle.services.shopify_client import InventoryPlatformClient, MockShopifyClient, ShopifyClient
from sewdle.services.storage import BlobStorage, LocalBlobStorage, S3BlobStorage
from sewdle.services.sync_gateway import LocalSyncGateway, RemoteSyncGateway, SyncGateway
from sewdle.services.sync_lock import TableSyncLock


@lru_cache(maxsize=1)
def get_inventory_client() -> InventoryPlatformClient:
    provider = settings.inventory_provider.strip().lower()
    if provider == 'shopify':
        return ShopifyClient()
    return MockShopifyClient()


@lru_cache(maxsize=1)
def get_storage() -> BlobStorage:
    backend = settings.storage_backend.strip().lower()
    if backend == 's3':
        return S3BlobStorage(bucket=settings.storage_bucket, region=settings.aws_region)
    return LocalBlobStorage(
        settings.storage_local_root,
        bucket=settings.storage_bucket,
        public_base_url=settings.storage_public_base_url,
    )


def build_sync_lock(db: Session) -> TableSyncLock:
    return TableSyncLock(db, stale_after=timedelta(minutes=settings.sync_lock_stale_minutes))


def build_sync_gateway(db: Session) -> SyncGateway:
    if settings.sync_gateway.strip().lower() == 'remote':
        return RemoteSyncGateway()
    return LocalSyncGateway(
        db,
        client=get_inventory_client(),
        lock=build_sync_lock(db),
        holder=settings.sync_lock_holder,
        verification_delay=settings.shopify_verification_delay_seconds,
    )


def build_sync_coordinator(db: Session) -> InventorySyncCoordinator:
    return InventorySyncCoordinator(db, build_sync_gateway(db), lock=build_sync_lock(db))
