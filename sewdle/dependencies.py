from fastapi import Depends
from sqlalchemy.orm import Session

from sewdle.db import get_db
from sewdle.services.inventory_sync_service import InventorySyncCoordinator
from sewdle.services.provider_factory import build_sync_coordinator, get_storage
from sewdle.services.storage import BlobStorage


def get_coordinator(db: Session = Depends(get_db)) -> InventorySyncCoordinator:
    return build_sync_coordinator(db)


def get_blob_storage() -> BlobStorage:
    return get_storage()
