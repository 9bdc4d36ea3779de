from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sewdle.logging_config import log_event
from sewdle.models import (
    Delivery,
    DeliveryFile,
    DeliveryItem,
    DeliveryNumberSequence,
    DeliveryStatus,
    FileCategory,
    InventorySyncLog,
    Order,
    OrderItem,
    ProductVariant,
    QualityStatus,
    Workshop,
)
from sewdle.services.errors import (
    DeliveryEditForbidden,
    DeliveryNotFound,
    DeliveryValidationError,
    InventorySyncError,
)
from sewdle.services.evidence_service import EvidenceUploadError, store_delivery_file, unique_object_name, upload_evidence_files
from sewdle.services.inventory_sync_service import InventorySyncCoordinator, SyncReport
from sewdle.services.order_status_service import refresh_order_status
from sewdle.services.saga import Saga
from sewdle.services.storage import BlobStorage, StorageError, UploadedFile
from sewdle.services.sync_types import ApprovedItem, SyncRequest

logger = logging.getLogger(__name__)

ALLOWED_INVOICE_TYPES = {'image/jpeg', 'image/png', 'application/pdf'}
EDITABLE_STATUSES = {DeliveryStatus.PENDING, DeliveryStatus.IN_QUALITY}
QUALITY_NOTES_PREFIX = 'Control de Calidad: '
INVOICE_NOTE = 'Invoice/remission document'


@dataclass(frozen=True)
class DeliveryItemInput:
    order_item_id: uuid.UUID | str
    quantity_delivered: int


@dataclass
class CreateDeliveryInput:
    order_id: uuid.UUID | str
    items: list[DeliveryItemInput]
    workshop_id: uuid.UUID | str | None = None
    notes: str | None = None
    delivery_date: date | None = None
    delivered_by: str | None = None
    files: list = field(default_factory=list)


@dataclass(frozen=True)
class CreateDeliveryResult:
    delivery_id: uuid.UUID
    tracking_number: str
    outcome: str
    message: str
    files_uploaded: int = 0
    files_failed: int = 0
    file_errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class VariantReview:
    approved: int = 0
    defective: int = 0
    reason: str | None = None


@dataclass
class QualityReviewInput:
    variants: dict[str, VariantReview]
    general_notes: str | None = None
    evidence_files: list[UploadedFile] = field(default_factory=list)


@dataclass(frozen=True)
class QualityReviewResult:
    success: bool
    status: DeliveryStatus
    message: str
    warnings: tuple[str, ...] = ()
    sync_report: SyncReport | None = None
    sync_error: str | None = None


@dataclass(frozen=True)
class QuantityUpdate:
    item_id: uuid.UUID | str
    quantity_delivered: int


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_uuid(value: uuid.UUID | str, *, label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value).strip())
    except ValueError as exc:
        raise DeliveryValidationError(f'Invalid {label}: {value}') from exc


def item_quality_status(approved: int, defective: int) -> QualityStatus:
    if approved > 0 and defective == 0:
        return QualityStatus.APPROVED
    if defective > 0 and approved == 0:
        return QualityStatus.REJECTED
    return QualityStatus.PARTIAL_APPROVED


def derive_delivery_status(counts: Iterable[tuple[int, int]]) -> DeliveryStatus:
    """Aggregate (approved, defective) counts per item into the delivery status."""
    counts = list(counts)
    if not counts:
        return DeliveryStatus.PENDING
    if all(approved > 0 and defective == 0 for approved, defective in counts):
        return DeliveryStatus.APPROVED
    if all(defective > 0 and approved == 0 for approved, defective in counts):
        return DeliveryStatus.REJECTED
    if any(approved > 0 or defective > 0 for approved, defective in counts):
        return DeliveryStatus.PARTIAL_APPROVED
    return DeliveryStatus.PENDING


def generate_delivery_number(db: Session) -> str:
    sequence = db.execute(
        select(DeliveryNumberSequence).where(DeliveryNumberSequence.id == 1).with_for_update()
    ).scalar_one_or_none()
    if sequence is None:
        sequence = DeliveryNumberSequence(id=1, last_value=0)
        db.add(sequence)
    sequence.last_value += 1
    value = sequence.last_value
    db.commit()
    return f'DEL-{value:04d}'


def _valid_invoice_files(files: list) -> list[UploadedFile]:
    uploads = [upload for upload in files or [] if isinstance(upload, UploadedFile) and upload.data]
    invalid = [upload for upload in uploads if upload.content_type not in ALLOWED_INVOICE_TYPES]
    if invalid:
        names = ', '.join(f'{upload.filename} ({upload.content_type})' for upload in invalid)
        raise DeliveryValidationError(f'Unsupported file type: {names}. Only JPG, PNG and PDF are allowed')
    return uploads


def create_delivery(db: Session, data: CreateDeliveryInput, storage: BlobStorage) -> CreateDeliveryResult:
    uploads = _valid_invoice_files(data.files)
    if not data.items:
        raise DeliveryValidationError('A delivery needs at least one item')

    order_id = parse_uuid(data.order_id, label='order id')
    if not db.get(Order, order_id):
        raise DeliveryNotFound('Order not found')

    workshop_id = None
    if data.workshop_id:
        workshop_id = parse_uuid(data.workshop_id, label='workshop id')
        if not db.get(Workshop, workshop_id):
            logger.warning('Workshop %s not found, creating delivery without workshop', workshop_id)
            workshop_id = None

    items: list[tuple[uuid.UUID, int]] = []
    for entry in data.items:
        if entry.quantity_delivered < 0:
            raise DeliveryValidationError('Delivered quantity cannot be negative')
        items.append((parse_uuid(entry.order_item_id, label='order item id'), entry.quantity_delivered))

    wanted_ids = {item_id for item_id, _ in items}
    found_ids = set(db.execute(select(OrderItem.id).where(OrderItem.id.in_(wanted_ids))).scalars().all())
    missing = [str(item_id) for item_id, _ in items if item_id not in found_ids]
    if missing:
        raise DeliveryValidationError(f'Order items not found: {", ".join(missing)}')

    tracking_number = generate_delivery_number(db)
    delivery_id = uuid.uuid4()

    def insert_delivery(ctx):
        db.add(
            Delivery(
                id=delivery_id,
                tracking_number=tracking_number,
                order_id=order_id,
                workshop_id=workshop_id,
                delivery_date=data.delivery_date,
                delivered_by=data.delivered_by,
                status=DeliveryStatus.PENDING,
                user_observations=data.notes,
                notes=None,
            )
        )
        db.commit()
        return delivery_id

    def remove_delivery(ctx):
        db.rollback()
        db.execute(delete(DeliveryItem).where(DeliveryItem.delivery_id == delivery_id))
        db.execute(delete(Delivery).where(Delivery.id == delivery_id))
        db.commit()

    def insert_items(ctx):
        db.add_all(
            [
                DeliveryItem(
                    delivery_id=delivery_id,
                    order_item_id=item_id,
                    quantity_delivered=quantity,
                    quantity_approved=0,
                    quantity_defective=0,
                    quality_status=QualityStatus.PENDING,
                )
                for item_id, quantity in items
            ]
        )
        db.commit()
        return len(items)

    Saga().add('delivery', insert_delivery, remove_delivery).add('items', insert_items).run()

    uploaded = 0
    file_errors: list[str] = []
    for upload in uploads:
        path = f'{delivery_id}/{unique_object_name("invoice-remission", upload)}'
        try:
            store_delivery_file(
                db,
                delivery_id=delivery_id,
                upload=upload,
                storage=storage,
                path=path,
                category=FileCategory.INVOICE,
                notes=INVOICE_NOTE,
                uploaded_by=data.delivered_by,
            )
        except (StorageError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning('Invoice upload failed for %s: %s', upload.filename, exc)
            file_errors.append(f'{upload.filename}: {exc}')
            continue
        uploaded += 1

    if not uploads:
        outcome, message = 'no_files', f'Delivery {tracking_number} created'
    elif not file_errors:
        outcome, message = 'complete', f'Delivery {tracking_number} created with {uploaded} files'
    else:
        outcome = 'partial_files'
        message = f'Delivery {tracking_number} created; {uploaded} of {len(uploads)} files were uploaded'

    log_event(
        'delivery_created',
        delivery_id=str(delivery_id),
        tracking_number=tracking_number,
        items=len(items),
        files_uploaded=uploaded,
        files_failed=len(file_errors),
    )
    return CreateDeliveryResult(
        delivery_id=delivery_id,
        tracking_number=tracking_number,
        outcome=outcome,
        message=message,
        files_uploaded=uploaded,
        files_failed=len(file_errors),
        file_errors=tuple(file_errors),
    )


def _items_with_sku(db: Session, delivery_id: uuid.UUID) -> list[tuple[DeliveryItem, str | None, uuid.UUID | None]]:
    return [
        (item, sku, variant_id)
        for item, sku, variant_id in db.execute(
            select(DeliveryItem, ProductVariant.sku_variant, ProductVariant.id)
            .join(OrderItem, OrderItem.id == DeliveryItem.order_item_id)
            .outerjoin(ProductVariant, ProductVariant.id == OrderItem.product_variant_id)
            .where(DeliveryItem.delivery_id == delivery_id)
            .order_by(DeliveryItem.created_at, DeliveryItem.id)
        ).all()
    ]


def process_quality_review(
    db: Session,
    delivery_id: uuid.UUID | str,
    review: QualityReviewInput,
    *,
    coordinator: InventorySyncCoordinator,
    storage: BlobStorage,
    uploaded_by: str | None = None,
) -> QualityReviewResult:
    """Record approved/defective counts per item, recompute status and push approved stock.

    Item updates are committed one by one; a failure stops the loop and earlier
    items stay reviewed. Evidence, notes and sync problems only add warnings.
    """
    delivery_id = parse_uuid(delivery_id, label='delivery id')
    if not review.variants:
        raise DeliveryValidationError('No quality data to process')

    updates: list[tuple[uuid.UUID, VariantReview]] = []
    for key, variant in review.variants.items():
        if variant.approved < 0 or variant.defective < 0:
            raise DeliveryValidationError(f'Quantities cannot be negative for item {key}')
        updates.append((parse_uuid(key, label='delivery item id'), variant))

    delivery = db.get(Delivery, delivery_id)
    if not delivery:
        raise DeliveryNotFound('Delivery not found')

    items_by_id = {
        item.id: item
        for item in db.execute(
            select(DeliveryItem).where(
                DeliveryItem.id.in_([item_id for item_id, _ in updates]),
                DeliveryItem.delivery_id == delivery_id,
            )
        ).scalars()
    }
    missing = [str(item_id) for item_id, _ in updates if item_id not in items_by_id]
    if missing:
        raise DeliveryNotFound(f'Delivery items not found: {", ".join(missing)}')

    general_notes = (review.general_notes or '').strip()
    for item_id, variant in updates:
        item = items_by_id[item_id]
        note = variant.reason or general_notes or None
        item.quantity_approved = variant.approved
        item.quantity_defective = variant.defective
        item.quality_status = item_quality_status(variant.approved, variant.defective)
        item.quality_notes = note
        item.notes = note
        db.commit()

    warnings: list[str] = []
    if review.evidence_files:
        try:
            upload_evidence_files(
                db,
                delivery_id=delivery_id,
                files=review.evidence_files,
                storage=storage,
                uploaded_by=uploaded_by,
            )
        except EvidenceUploadError as exc:
            warnings.append(f'Evidence files could not be uploaded: {exc}')

    if general_notes:
        try:
            delivery.notes = f'{QUALITY_NOTES_PREFIX}{general_notes}'
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning('Could not save quality notes for delivery %s: %s', delivery_id, exc)
            warnings.append('Quality notes could not be saved')

    db.expire_all()
    delivery = db.get(Delivery, delivery_id)
    rows = _items_with_sku(db, delivery_id)
    status = derive_delivery_status((item.quantity_approved, item.quantity_defective) for item, _, _ in rows)
    delivery.status = status
    delivery.updated_at = _now()
    db.commit()

    approved_items = tuple(
        ApprovedItem(
            sku_variant=sku,
            quantity_approved=item.quantity_approved,
            variant_id=str(variant_id) if variant_id else None,
        )
        for item, sku, variant_id in rows
        if item.quantity_approved > 0 and sku
    )

    message = 'Quality review completed'
    sync_report = None
    sync_error = None
    if approved_items:
        try:
            sync_report = coordinator.sync_approved_items(
                SyncRequest(delivery_id=delivery_id, approved_items=approved_items),
                only_pending=True,
            )
        except InventorySyncError as exc:
            sync_error = str(exc)
            message = 'Quality review completed with a sync error; retry the sync manually'
        else:
            summary = sync_report.summary
            if sync_report.kind == 'synced':
                message += f'; {summary.successful} products synced'
                if summary.already_synced:
                    message += f', {summary.already_synced} already synced'
            elif sync_report.kind == 'all_synced':
                message += f'; all {summary.already_synced} products were already synced'
            else:
                message += f'; {sync_report.message}'
            if sync_report.warning:
                warnings.append(sync_report.warning)

    try:
        refresh_order_status(db, order_id=delivery.order_id)
    except (SQLAlchemyError, ValueError):
        db.rollback()
        logger.warning('Could not refresh status of order %s', delivery.order_id, exc_info=True)

    log_event(
        'delivery_quality_reviewed',
        level='warning' if sync_error else 'info',
        delivery_id=str(delivery_id),
        status=status.value,
        items=len(updates),
        approved_items=len(approved_items),
        sync_error=sync_error,
    )
    return QualityReviewResult(
        success=True,
        status=status,
        message=message,
        warnings=tuple(warnings),
        sync_report=sync_report,
        sync_error=sync_error,
    )


def update_delivery_quantities(db: Session, delivery_id: uuid.UUID | str, updates: list[QuantityUpdate]) -> bool:
    delivery_id = parse_uuid(delivery_id, label='delivery id')
    delivery = db.get(Delivery, delivery_id)
    if not delivery:
        raise DeliveryNotFound('Delivery not found')
    if delivery.status not in EDITABLE_STATUSES:
        raise DeliveryEditForbidden(f'Quantities cannot be edited on a delivery in status {delivery.status.value}')
    if delivery.synced_to_shopify:
        raise DeliveryEditForbidden('Quantities cannot be edited after the delivery was synced')

    parsed = []
    for update in updates:
        if update.quantity_delivered < 0:
            raise DeliveryValidationError('Delivered quantity cannot be negative')
        parsed.append((parse_uuid(update.item_id, label='delivery item id'), update.quantity_delivered))

    for item_id, quantity in parsed:
        item = db.get(DeliveryItem, item_id)
        if not item or item.delivery_id != delivery_id:
            raise DeliveryNotFound(f'Delivery item {item_id} not found')
        item.quantity_delivered = quantity
        db.commit()

    log_event('delivery_quantities_updated', delivery_id=str(delivery_id), items=len(parsed))
    return True


def delete_delivery(db: Session, delivery_id: uuid.UUID | str) -> bool:
    delivery_id = parse_uuid(delivery_id, label='delivery id')
    if not db.get(Delivery, delivery_id):
        raise DeliveryNotFound('Delivery not found')

    db.execute(delete(InventorySyncLog).where(InventorySyncLog.delivery_id == delivery_id))
    db.execute(delete(DeliveryFile).where(DeliveryFile.delivery_id == delivery_id))
    db.execute(delete(DeliveryItem).where(DeliveryItem.delivery_id == delivery_id))
    db.execute(delete(Delivery).where(Delivery.id == delivery_id))
    db.commit()
    log_event('delivery_deleted', delivery_id=str(delivery_id))
    return True


def list_deliveries(db: Session, *, status: DeliveryStatus | None = None, limit: int = 200) -> list[dict]:
    stmt = (
        select(Delivery, Order.order_number, Workshop.name)
        .join(Order, Order.id == Delivery.order_id)
        .outerjoin(Workshop, Workshop.id == Delivery.workshop_id)
        .order_by(Delivery.created_at.desc(), Delivery.tracking_number.desc())
        .limit(limit)
    )
    if status is not None:
        stmt = stmt.where(Delivery.status == status)

    deliveries = db.execute(stmt).all()
    ids = [delivery.id for delivery, _, _ in deliveries]
    totals: dict[uuid.UUID, tuple[int, int, int, int]] = {}
    if ids:
        for row in db.execute(
            select(
                DeliveryItem.delivery_id,
                func.count(DeliveryItem.id),
                func.coalesce(func.sum(DeliveryItem.quantity_delivered), 0),
                func.coalesce(func.sum(DeliveryItem.quantity_approved), 0),
                func.coalesce(func.sum(DeliveryItem.quantity_defective), 0),
            )
            .where(DeliveryItem.delivery_id.in_(ids))
            .group_by(DeliveryItem.delivery_id)
        ).all():
            totals[row[0]] = (int(row[1]), int(row[2]), int(row[3]), int(row[4]))

    out = []
    for delivery, order_number, workshop_name in deliveries:
        items_count, delivered, approved, defective = totals.get(delivery.id, (0, 0, 0, 0))
        out.append(
            {
                'id': str(delivery.id),
                'tracking_number': delivery.tracking_number,
                'order_id': str(delivery.order_id),
                'order_number': order_number,
                'workshop_id': str(delivery.workshop_id) if delivery.workshop_id else None,
                'workshop_name': workshop_name,
                'delivery_date': delivery.delivery_date.isoformat() if delivery.delivery_date else None,
                'status': delivery.status.value,
                'synced_to_shopify': delivery.synced_to_shopify,
                'items_count': items_count,
                'total_delivered': delivered,
                'total_approved': approved,
                'total_defective': defective,
            }
        )
    return out


def get_delivery_detail(db: Session, delivery_id: uuid.UUID | str) -> dict:
    delivery_id = parse_uuid(delivery_id, label='delivery id')
    row = db.execute(
        select(Delivery, Order.order_number, Workshop.name)
        .join(Order, Order.id == Delivery.order_id)
        .outerjoin(Workshop, Workshop.id == Delivery.workshop_id)
        .where(Delivery.id == delivery_id)
    ).one_or_none()
    if row is None:
        raise DeliveryNotFound('Delivery not found')
    delivery, order_number, workshop_name = row

    return {
        'id': str(delivery.id),
        'tracking_number': delivery.tracking_number,
        'order_id': str(delivery.order_id),
        'order_number': order_number,
        'workshop_id': str(delivery.workshop_id) if delivery.workshop_id else None,
        'workshop_name': workshop_name,
        'delivery_date': delivery.delivery_date.isoformat() if delivery.delivery_date else None,
        'delivered_by': delivery.delivered_by,
        'status': delivery.status.value,
        'user_observations': delivery.user_observations,
        'notes': delivery.notes,
        'synced_to_shopify': delivery.synced_to_shopify,
        'sync_attempts': delivery.sync_attempts,
        'sync_error_message': delivery.sync_error_message,
        'items': [
            {
                'id': str(item.id),
                'order_item_id': str(item.order_item_id),
                'sku_variant': sku,
                'quantity_delivered': item.quantity_delivered,
                'quantity_approved': item.quantity_approved,
                'quantity_defective': item.quantity_defective,
                'quality_status': item.quality_status.value,
                'quality_notes': item.quality_notes,
                'synced_to_shopify': item.synced_to_shopify,
                'sync_error_message': item.sync_error_message,
            }
            for item, sku, _ in _items_with_sku(db, delivery_id)
        ],
    }


def update_delivery_status(
    db: Session,
    delivery_id: uuid.UUID | str,
    status: DeliveryStatus,
    notes: str | None = None,
) -> Delivery:
    delivery_id = parse_uuid(delivery_id, label='delivery id')
    delivery = db.get(Delivery, delivery_id)
    if not delivery:
        raise DeliveryNotFound('Delivery not found')

    previous = delivery.status
    delivery.status = status
    if notes:
        delivery.notes = notes
    delivery.updated_at = _now()
    db.commit()
    log_event('delivery_status_changed', delivery_id=str(delivery_id), previous=previous.value, status=status.value)
    return delivery


def get_delivery_stats(db: Session) -> dict[str, int]:
    counts = {status.value: 0 for status in DeliveryStatus}
    for status, count in db.execute(select(Delivery.status, func.count(Delivery.id)).group_by(Delivery.status)).all():
        counts[status.value] = int(count)
    counts['total'] = sum(counts.values())
    return counts
