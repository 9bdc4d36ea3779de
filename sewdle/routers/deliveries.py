from __future__ import annotations

import json
import uuid
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session
from starlette.datastructures import UploadFile

from sewdle.db import get_db
from sewdle.dependencies import get_blob_storage, get_coordinator
from sewdle.models import DeliveryStatus
from sewdle.services.delivery_service import (
    CreateDeliveryInput,
    DeliveryItemInput,
    QualityReviewInput,
    QuantityUpdate,
    VariantReview,
    create_delivery,
    delete_delivery,
    get_delivery_detail,
    get_delivery_stats,
    list_deliveries,
    parse_uuid,
    process_quality_review,
    update_delivery_quantities,
    update_delivery_status,
)
from sewdle.services.errors import DeliveryNotFound
from sewdle.services.evidence_service import delete_delivery_file, list_delivery_files
from sewdle.services.inventory_sync_service import InventorySyncCoordinator
from sewdle.services.storage import BlobStorage, UploadedFile

router = APIRouter(prefix='/api/deliveries', tags=['deliveries'])


class QuantityUpdateBody(BaseModel):
    item_id: str
    quantity_delivered: int


class StatusUpdateBody(BaseModel):
    status: DeliveryStatus
    notes: str | None = None


def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, DeliveryNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


async def _uploads(form, key: str) -> list[UploadedFile]:
    uploads: list[UploadedFile] = []
    for value in form.getlist(key):
        if not isinstance(value, UploadFile):
            continue
        uploads.append(
            UploadedFile(
                filename=value.filename or 'file',
                content_type=value.content_type or 'application/octet-stream',
                data=await value.read(),
            )
        )
    return uploads


def _json_field(form, key: str, default):
    raw = str(form.get(key) or '').strip()
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail=f'Invalid JSON in {key}') from exc


@router.get('')
def deliveries_index(
    status: DeliveryStatus | None = None,
    limit: int = 200,
    db: Session = Depends(get_db),
):
    return {'deliveries': list_deliveries(db, status=status, limit=min(max(limit, 1), 500))}


@router.get('/stats')
def deliveries_stats(db: Session = Depends(get_db)):
    return get_delivery_stats(db)


@router.post('', status_code=201)
async def deliveries_create(
    request: Request,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
):
    form = await request.form()
    items = _json_field(form, 'items', [])
    if not isinstance(items, list) or not all(isinstance(entry, dict) for entry in items):
        raise HTTPException(status_code=400, detail='items must be a list of objects')

    delivery_date_raw = str(form.get('delivery_date') or '').strip()
    try:
        data = CreateDeliveryInput(
            order_id=str(form.get('order_id') or '').strip(),
            workshop_id=str(form.get('workshop_id') or '').strip() or None,
            notes=str(form.get('notes') or '').strip() or None,
            delivered_by=str(form.get('delivered_by') or '').strip() or None,
            delivery_date=date.fromisoformat(delivery_date_raw) if delivery_date_raw else None,
            items=[
                DeliveryItemInput(
                    order_item_id=str(entry.get('order_item_id') or ''),
                    quantity_delivered=int(entry.get('quantity_delivered') or 0),
                )
                for entry in items
            ],
            files=await _uploads(form, 'files'),
        )
        result = create_delivery(db, data, storage)
    except ValueError as exc:
        raise _http_error(exc) from exc

    return {
        'id': str(result.delivery_id),
        'tracking_number': result.tracking_number,
        'outcome': result.outcome,
        'message': result.message,
        'files_uploaded': result.files_uploaded,
        'files_failed': result.files_failed,
        'file_errors': list(result.file_errors),
    }


@router.get('/{delivery_id}')
def deliveries_detail(delivery_id: str, db: Session = Depends(get_db)):
    try:
        return get_delivery_detail(db, delivery_id)
    except ValueError as exc:
        raise _http_error(exc) from exc


@router.post('/{delivery_id}/quality-review')
async def deliveries_quality_review(
    delivery_id: str,
    request: Request,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
    coordinator: InventorySyncCoordinator = Depends(get_coordinator),
):
    form = await request.form()
    raw_variants = _json_field(form, 'variants', {})
    if not isinstance(raw_variants, dict) or not all(isinstance(value, dict) for value in raw_variants.values()):
        raise HTTPException(status_code=400, detail='variants must map item ids to objects')

    try:
        review = QualityReviewInput(
            variants={
                key: VariantReview(
                    approved=int(value.get('approved') or 0),
                    defective=int(value.get('defective') or 0),
                    reason=(value.get('reason') or '').strip() or None,
                )
                for key, value in raw_variants.items()
            },
            general_notes=str(form.get('general_notes') or '').strip() or None,
            evidence_files=await _uploads(form, 'evidence_files'),
        )
        result = process_quality_review(
            db,
            delivery_id,
            review,
            coordinator=coordinator,
            storage=storage,
            uploaded_by=str(form.get('uploaded_by') or '').strip() or None,
        )
    except ValueError as exc:
        raise _http_error(exc) from exc

    return {
        'success': result.success,
        'status': result.status.value,
        'message': result.message,
        'warnings': list(result.warnings),
        'sync_error': result.sync_error,
        'sync': result.sync_report.as_payload() if result.sync_report else None,
    }


@router.patch('/{delivery_id}/quantities')
def deliveries_update_quantities(
    delivery_id: str,
    updates: list[QuantityUpdateBody],
    db: Session = Depends(get_db),
):
    try:
        update_delivery_quantities(
            db,
            delivery_id,
            [QuantityUpdate(item_id=entry.item_id, quantity_delivered=entry.quantity_delivered) for entry in updates],
        )
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {'success': True}


@router.patch('/{delivery_id}/status')
def deliveries_update_status(
    delivery_id: str,
    body: StatusUpdateBody,
    db: Session = Depends(get_db),
):
    try:
        delivery = update_delivery_status(db, delivery_id, body.status, body.notes)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {'id': str(delivery.id), 'status': delivery.status.value}


@router.delete('/{delivery_id}')
def deliveries_delete(delivery_id: str, db: Session = Depends(get_db)):
    try:
        delete_delivery(db, delivery_id)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {'success': True}


@router.get('/{delivery_id}/files')
def deliveries_files(delivery_id: str, db: Session = Depends(get_db)):
    try:
        parsed: uuid.UUID = parse_uuid(delivery_id, label='delivery id')
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {
        'files': [
            {
                'id': str(row.id),
                'file_name': row.file_name,
                'file_url': row.file_url,
                'file_type': row.file_type,
                'file_size': row.file_size,
                'file_category': row.file_category.value,
                'notes': row.notes,
                'uploaded_by': row.uploaded_by,
            }
            for row in list_delivery_files(db, delivery_id=parsed)
        ]
    }


@router.delete('/files/{file_id}')
def deliveries_delete_file(
    file_id: str,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_blob_storage),
):
    try:
        delete_delivery_file(db, file_id=parse_uuid(file_id, label='file id'), storage=storage)
    except ValueError as exc:
        raise _http_error(exc) from exc
    return {'success': True}
