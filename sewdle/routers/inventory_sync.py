from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from sewdle.config import settings
from sewdle.db import get_db
from sewdle.dependencies import get_coordinator
from sewdle.services.delivery_service import parse_uuid
from sewdle.services.errors import DeliveryNotFound, InventorySyncError
from sewdle.services.inventory_push_service import push_delivery_inventory
from sewdle.services.inventory_sync_service import InventorySyncCoordinator
from sewdle.services.provider_factory import build_sync_lock, get_inventory_client
from sewdle.services.shopify_client import ShopifyAPIError
from sewdle.services.sync_types import outcome_to_payload, request_from_payload

router = APIRouter(prefix='/api/inventory-sync', tags=['inventory-sync'])

SYNC_ERROR_STATUS = {'rate_limited': 429, 'sync_in_progress': 409}


class ResyncBody(BaseModel):
    specific_skus: list[str] | None = None
    retry_all: bool = False


class SyncItemsBody(BaseModel):
    approvedItems: list[dict]
    intelligentSync: bool = True
    onlyPending: bool = True


def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, DeliveryNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _sync_http_error(exc: InventorySyncError) -> HTTPException:
    return HTTPException(status_code=SYNC_ERROR_STATUS.get(exc.kind, 502), detail={'kind': exc.kind, 'error': str(exc)})


@router.post('')
async def inventory_push(request: Request, db: Session = Depends(get_db)):
    """Push approved quantities for one delivery; 409 when another push holds the lock."""
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail='Invalid JSON body') from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail='Invalid sync payload')

    try:
        sync_request = request_from_payload(payload)
        outcome = push_delivery_inventory(
            db,
            request=sync_request,
            client=get_inventory_client(),
            lock=build_sync_lock(db),
            holder=settings.sync_lock_holder,
            verification_delay=settings.shopify_verification_delay_seconds,
        )
    except ShopifyAPIError as exc:
        status_code = 429 if exc.status_code == 429 else 502
        return JSONResponse(status_code=status_code, content={'success': False, 'error': str(exc)})
    except ValueError as exc:
        raise _http_error(exc) from exc

    status_code, body = outcome_to_payload(outcome)
    return JSONResponse(status_code=status_code, content=body)


@router.post('/deliveries/{delivery_id}/sync')
def inventory_sync_items(
    delivery_id: str,
    body: SyncItemsBody,
    coordinator: InventorySyncCoordinator = Depends(get_coordinator),
):
    try:
        sync_request = request_from_payload(
            {
                'deliveryId': str(parse_uuid(delivery_id, label='delivery id')),
                'approvedItems': body.approvedItems,
                'intelligentSync': body.intelligentSync,
            }
        )
        report = coordinator.sync_approved_items(sync_request, only_pending=body.onlyPending)
    except InventorySyncError as exc:
        raise _sync_http_error(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return report.as_payload()


@router.post('/deliveries/{delivery_id}/resync')
def inventory_resync(
    delivery_id: str,
    body: ResyncBody,
    coordinator: InventorySyncCoordinator = Depends(get_coordinator),
):
    try:
        report = coordinator.resync_delivery(
            parse_uuid(delivery_id, label='delivery id'),
            specific_skus=body.specific_skus,
            retry_all=body.retry_all,
        )
    except InventorySyncError as exc:
        raise _sync_http_error(exc) from exc
    except ValueError as exc:
        raise _http_error(exc) from exc
    return report.as_payload()


@router.get('/deliveries/{delivery_id}/status')
def inventory_sync_status(
    delivery_id: str,
    coordinator: InventorySyncCoordinator = Depends(get_coordinator),
):
    try:
        state = coordinator.check_sync_status(parse_uuid(delivery_id, label='delivery id'))
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        'delivery_id': str(state.delivery_id),
        'tracking_number': state.tracking_number,
        'synced_to_shopify': state.synced_to_shopify,
        'sync_attempts': state.sync_attempts,
        'last_sync_attempt': state.last_sync_attempt.isoformat() if state.last_sync_attempt else None,
        'sync_error_message': state.sync_error_message,
        'recent_successful_sync': coordinator.check_recent_successful_sync(state.delivery_id),
    }


@router.get('/deliveries/{delivery_id}/skus')
def inventory_sku_status(
    delivery_id: str,
    sku: list[str] = Query(default=[]),
    coordinator: InventorySyncCoordinator = Depends(get_coordinator),
):
    try:
        parsed = parse_uuid(delivery_id, label='delivery id')
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        'skus': [
            {
                'sku': status.sku,
                'is_synced': status.is_synced,
                'needs_sync': status.needs_sync,
                'last_status': status.last_status,
                'last_synced_at': status.last_synced_at.isoformat() if status.last_synced_at else None,
                'error': status.error,
            }
            for status in coordinator.check_sku_sync_status(parsed, sku)
        ]
    }


@router.get('/deliveries/{delivery_id}/lock')
def inventory_lock_status(
    delivery_id: str,
    coordinator: InventorySyncCoordinator = Depends(get_coordinator),
):
    try:
        lock = coordinator.check_sync_lock_status(parse_uuid(delivery_id, label='delivery id'))
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        'is_locked': lock.is_locked,
        'tracking_number': lock.tracking_number,
        'lock_acquired_at': lock.lock_acquired_at.isoformat() if lock.lock_acquired_at else None,
        'lock_acquired_by': lock.lock_acquired_by,
        'lock_age_minutes': lock.lock_age_minutes,
        'is_stale': lock.is_stale,
    }


@router.delete('/deliveries/{delivery_id}/lock')
def inventory_lock_clear(
    delivery_id: str,
    coordinator: InventorySyncCoordinator = Depends(get_coordinator),
):
    try:
        report = coordinator.clear_sync_lock(parse_uuid(delivery_id, label='delivery id'))
    except ValueError as exc:
        raise _http_error(exc) from exc
    return report.as_payload()


@router.post('/locks/clear-stale')
def inventory_locks_clear_stale(coordinator: InventorySyncCoordinator = Depends(get_coordinator)):
    return {'cleared': coordinator.clear_all_stale_locks()}


@router.get('/logs')
def inventory_sync_logs(
    delivery_id: str | None = None,
    limit: int = 100,
    coordinator: InventorySyncCoordinator = Depends(get_coordinator),
):
    try:
        parsed = parse_uuid(delivery_id, label='delivery id') if delivery_id else None
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        'logs': [
            {
                'id': str(log.id),
                'delivery_id': str(log.delivery_id),
                'success_count': log.success_count,
                'error_count': log.error_count,
                'verification_status': log.verification_status.value,
                'synced_at': log.synced_at.isoformat() if log.synced_at else None,
                'sync_results': log.sync_results,
            }
            for log in coordinator.fetch_sync_logs(parsed, limit=min(max(limit, 1), 500))
        ]
    }
