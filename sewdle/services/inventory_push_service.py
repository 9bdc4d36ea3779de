"""Push approved delivery quantities to the e-commerce platform.

This is the server side of the inventory sync call: it owns the advisory lock,
talks to the platform, verifies every adjustment by re-reading the level and
appends one InventorySyncLog row per batch.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from sewdle.logging_config import log_event
from sewdle.models import (
    Delivery,
    DeliveryItem,
    InventorySyncLog,
    OrderItem,
    ProductVariant,
    VerificationStatus,
)
from sewdle.services.errors import DeliveryNotFound
from sewdle.services.shopify_client import InventoryPlatformClient, PlatformVariant, ShopifyAPIError
from sewdle.services.sync_lock import AlreadyHeld, SyncLock
from sewdle.services.sync_status import TERMINAL_STATUSES, events_from_logs, project_sku_status
from sewdle.services.sync_types import (
    ApprovedItem,
    SyncFailed,
    SyncInProgress,
    SyncOutcome,
    SyncRequest,
    SyncSucceeded,
    SyncSummary,
)

logger = logging.getLogger(__name__)

VERIFICATION_TOLERANCE = 1


class ItemSyncError(RuntimeError):
    pass


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _items_by_sku(db: Session, delivery_id: uuid.UUID) -> dict[str, list[DeliveryItem]]:
    rows = db.execute(
        select(DeliveryItem, ProductVariant.sku_variant)
        .join(OrderItem, OrderItem.id == DeliveryItem.order_item_id)
        .join(ProductVariant, ProductVariant.id == OrderItem.product_variant_id)
        .where(DeliveryItem.delivery_id == delivery_id)
    ).all()
    grouped: dict[str, list[DeliveryItem]] = {}
    for item, sku in rows:
        if sku:
            grouped.setdefault(sku, []).append(item)
    return grouped


def durably_synced_skus(db: Session, delivery_id: uuid.UUID, skus: list[str]) -> set[str]:
    logs = db.execute(
        select(InventorySyncLog).where(
            InventorySyncLog.delivery_id == delivery_id,
            InventorySyncLog.verification_status.in_(TERMINAL_STATUSES),
        )
    ).scalars().all()
    events = events_from_logs(logs)
    return {sku for sku in skus if project_sku_status(events, sku).is_synced}


def push_delivery_inventory(
    db: Session,
    *,
    request: SyncRequest,
    client: InventoryPlatformClient,
    lock: SyncLock,
    holder: str,
    verification_delay: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncOutcome:
    delivery = db.get(Delivery, request.delivery_id)
    if not delivery:
        raise DeliveryNotFound('Delivery not found')

    acquired = lock.acquire(delivery.id, holder)
    if isinstance(acquired, AlreadyHeld):
        log_event(
            'inventory_sync_contended',
            delivery_id=str(delivery.id),
            lock_holder=acquired.info.holder,
        )
        return SyncInProgress(
            lock_acquired_at=acquired.info.acquired_at,
            lock_acquired_by=acquired.info.holder,
            tracking_number=acquired.info.tracking_number or delivery.tracking_number,
        )

    try:
        return _push_locked(
            db,
            delivery=delivery,
            request=request,
            client=client,
            verification_delay=verification_delay,
            sleep=sleep,
        )
    finally:
        lock.release(delivery.id)


def _push_locked(
    db: Session,
    *,
    delivery: Delivery,
    request: SyncRequest,
    client: InventoryPlatformClient,
    verification_delay: float,
    sleep: Callable[[float], None],
) -> SyncOutcome:
    started_at = _now()
    delivery.sync_attempts = (delivery.sync_attempts or 0) + 1
    delivery.last_sync_attempt = started_at
    db.commit()

    candidates = [item for item in request.approved_items if item.quantity_approved > 0]
    already_synced: set[str] = set()
    if request.intelligent_sync and candidates:
        already_synced = durably_synced_skus(db, delivery.id, [item.sku_variant for item in candidates])
    to_push = [item for item in candidates if item.sku_variant not in already_synced]

    if not to_push:
        log_event('inventory_sync_noop', delivery_id=str(delivery.id), already_synced=len(already_synced))
        return SyncSucceeded(
            summary=SyncSummary(already_synced=len(already_synced), total=len(candidates)),
            diagnostics={'intelligent_sync': request.intelligent_sync},
        )

    location = client.primary_location()
    variants = client.find_variants_by_sku([item.sku_variant for item in to_push])
    items_by_sku = _items_by_sku(db, delivery.id)

    results: list[dict] = []
    rate_limited = False
    for item in to_push:
        if rate_limited:
            results.append(_error_result(item, 'Not attempted: platform rate limit reached'))
            continue
        delivery_items = items_by_sku.get(item.sku_variant, [])
        try:
            if not delivery_items:
                raise ItemSyncError(f'No delivery item for SKU {item.sku_variant}')
            _mark_attempt(db, delivery_items)
            variant = variants.get(item.sku_variant)
            if variant is None:
                raise ItemSyncError(f"SKU '{item.sku_variant}' does not exist in the store")
            result = _push_item(
                item,
                variant=variant,
                location_id=location.location_id,
                client=client,
                verification_delay=verification_delay,
                sleep=sleep,
            )
        except (ShopifyAPIError, ItemSyncError) as exc:
            if isinstance(exc, ShopifyAPIError) and exc.status_code == 429:
                rate_limited = True
            logger.warning('Inventory sync failed for %s: %s', item.sku_variant, exc)
            for delivery_item in delivery_items:
                delivery_item.synced_to_shopify = False
                delivery_item.sync_error_message = str(exc)
            db.commit()
            results.append(_error_result(item, str(exc)))
            continue

        for delivery_item in delivery_items:
            delivery_item.synced_to_shopify = True
            delivery_item.sync_error_message = None
        db.commit()
        results.append(result)

    success_count = sum(1 for result in results if result['status'] == 'success')
    error_count = len(results) - success_count
    db.add(
        InventorySyncLog(
            delivery_id=delivery.id,
            sync_results={'results': results, 'location_id': location.location_id},
            success_count=success_count,
            error_count=error_count,
            verification_status=VerificationStatus.VERIFIED if success_count else VerificationStatus.FAILED,
            synced_at=_now(),
        )
    )
    errors = [f"{result['sku']}: {result['error']}" for result in results if result['status'] == 'error']
    delivery.sync_error_message = '; '.join(errors) or None
    db.commit()
    _refresh_delivery_sync_flag(db, delivery)

    summary = SyncSummary(
        successful=success_count,
        failed=error_count,
        already_synced=len(already_synced),
        total=len(candidates),
    )
    log_event(
        'inventory_sync_completed',
        level='warning' if error_count else 'info',
        delivery_id=str(delivery.id),
        successful=success_count,
        failed=error_count,
        already_synced=len(already_synced),
    )
    if not success_count:
        reason = f'{error_count} items failed to sync'
        if rate_limited:
            reason += '; platform rate limit reached'
        return SyncFailed(reason=reason, summary=summary, details=tuple(results), rate_limited=rate_limited)
    return SyncSucceeded(
        summary=summary,
        details=tuple(results),
        diagnostics={
            'location_id': location.location_id,
            'location_name': location.name,
            'intelligent_sync': True if already_synced else False,
            'rate_limiting': rate_limited,
            'post_update_verification': True,
        },
    )


def _mark_attempt(db: Session, delivery_items: list[DeliveryItem]) -> None:
    attempted_at = _now()
    for delivery_item in delivery_items:
        delivery_item.synced_to_shopify = False
        delivery_item.last_sync_attempt = attempted_at
        delivery_item.sync_attempt_count = (delivery_item.sync_attempt_count or 0) + 1
        delivery_item.sync_error_message = None
    db.commit()


def _push_item(
    item: ApprovedItem,
    *,
    variant: PlatformVariant,
    location_id: str,
    client: InventoryPlatformClient,
    verification_delay: float,
    sleep: Callable[[float], None],
) -> dict:
    before = client.get_available(inventory_item_id=variant.inventory_item_id, location_id=location_id)
    expected = before + item.quantity_approved
    client.adjust_available(
        inventory_item_id=variant.inventory_item_id,
        location_id=location_id,
        delta=item.quantity_approved,
    )
    if verification_delay:
        sleep(verification_delay)
    after = client.get_available(inventory_item_id=variant.inventory_item_id, location_id=location_id)
    if abs(after - expected) > VERIFICATION_TOLERANCE:
        raise ItemSyncError(f'Adjustment not applied: expected {expected}, found {after}')
    return {
        'sku': item.sku_variant,
        'skuVariant': item.sku_variant,
        'status': 'success',
        'previousQuantity': before,
        'addedQuantity': item.quantity_approved,
        'newQuantity': after,
        'variantId': variant.variant_id,
        'inventoryItemId': variant.inventory_item_id,
        'locationId': location_id,
        'productTitle': variant.product_title,
    }


def _error_result(item: ApprovedItem, error: str) -> dict:
    return {
        'sku': item.sku_variant,
        'skuVariant': item.sku_variant,
        'status': 'error',
        'error': error,
        'quantityAttempted': item.quantity_approved,
    }


def _refresh_delivery_sync_flag(db: Session, delivery: Delivery) -> None:
    approved = db.execute(
        select(DeliveryItem.synced_to_shopify).where(
            DeliveryItem.delivery_id == delivery.id,
            DeliveryItem.quantity_approved > 0,
        )
    ).scalars().all()
    delivery.synced_to_shopify = bool(approved) and all(approved)
    db.commit()
