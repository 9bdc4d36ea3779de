from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sewdle.config import settings
from sewdle.logging_config import log_event
from sewdle.models import (
    Delivery,
    DeliveryItem,
    InventorySyncLog,
    OrderItem,
    ProductVariant,
    VerificationStatus,
)
from sewdle.services.errors import DeliveryNotFound, InventorySyncError
from sewdle.services.sync_gateway import SyncGateway
from sewdle.services.sync_lock import SyncLock, TableSyncLock
from sewdle.services.sync_status import (
    TERMINAL_STATUSES,
    SkuSyncStatus,
    as_utc,
    events_from_logs,
    project_sku_status,
)
from sewdle.services.sync_types import (
    ApprovedItem,
    SyncFailed,
    SyncInProgress,
    SyncRequest,
    SyncSummary,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class SyncReport:
    """What the caller shows the operator after a sync request."""

    kind: str
    level: str
    title: str
    message: str
    summary: SyncSummary = SyncSummary()
    details: tuple[dict, ...] = ()
    warning: str | None = None
    lock_acquired_at: datetime | None = None
    lock_acquired_by: str | None = None
    diagnostics: dict = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.level != 'error'

    def as_payload(self) -> dict:
        return {
            'success': self.success,
            'kind': self.kind,
            'level': self.level,
            'title': self.title,
            'message': self.message,
            'warning': self.warning,
            'summary': asdict(self.summary),
            'details': list(self.details),
            'diagnostics': self.diagnostics,
            'lock_acquired_at': self.lock_acquired_at.isoformat() if self.lock_acquired_at else None,
            'lock_acquired_by': self.lock_acquired_by,
        }


@dataclass(frozen=True)
class LockStatus:
    is_locked: bool
    tracking_number: str | None = None
    lock_acquired_at: datetime | None = None
    lock_acquired_by: str | None = None
    lock_age_minutes: float | None = None
    is_stale: bool = False


@dataclass(frozen=True)
class DeliverySyncState:
    delivery_id: uuid.UUID
    tracking_number: str
    synced_to_shopify: bool
    sync_attempts: int
    last_sync_attempt: datetime | None
    sync_error_message: str | None


def has_recent_successful_sync(db: Session, delivery_id: uuid.UUID, *, minutes: int = 30) -> bool:
    cutoff = _now() - timedelta(minutes=minutes)
    found = db.execute(
        select(InventorySyncLog.id)
        .where(
            InventorySyncLog.delivery_id == delivery_id,
            InventorySyncLog.verification_status == VerificationStatus.VERIFIED,
            InventorySyncLog.success_count > 0,
            InventorySyncLog.synced_at >= cutoff,
        )
        .limit(1)
    ).first()
    return found is not None


def _success_message(summary: SyncSummary, diagnostics: dict) -> str:
    processed = summary.successful + summary.already_synced
    message = f'{processed} products processed'
    if summary.successful > 0:
        message += f' ({summary.successful} synced'
        if summary.already_synced > 0:
            message += f', {summary.already_synced} were already synced'
        message += ')'
    elif summary.already_synced > 0:
        message += ' - all were already synced'
    if diagnostics.get('rate_limiting'):
        message += '. The platform rate limit was reached; retry the remaining items later.'
    return message


class InventorySyncCoordinator:
    """Decides which approved items still need pushing and reports the outcome."""

    def __init__(self, db: Session, gateway: SyncGateway, *, lock: SyncLock | None = None) -> None:
        self.db = db
        self.gateway = gateway
        self.lock = lock or TableSyncLock(db, stale_after=timedelta(minutes=settings.sync_lock_stale_minutes))

    def _terminal_logs(self, delivery_id: uuid.UUID) -> list[InventorySyncLog]:
        return list(
            self.db.execute(
                select(InventorySyncLog)
                .where(
                    InventorySyncLog.delivery_id == delivery_id,
                    InventorySyncLog.verification_status.in_(TERMINAL_STATUSES),
                )
                .order_by(InventorySyncLog.synced_at.desc())
            ).scalars().all()
        )

    def check_sku_sync_status(self, delivery_id: uuid.UUID, skus: list[str]) -> list[SkuSyncStatus]:
        events = events_from_logs(self._terminal_logs(delivery_id))
        return [project_sku_status(events, sku) for sku in skus]

    def check_recent_successful_sync(self, delivery_id: uuid.UUID) -> bool:
        return has_recent_successful_sync(self.db, delivery_id, minutes=settings.recent_sync_minutes)

    def _unsynced_item_skus(self, delivery_id: uuid.UUID, skus: list[str]) -> list[str]:
        """SKUs whose logs read as synced while a delivery item still records a failed push."""
        rows = self.db.execute(
            select(ProductVariant.sku_variant)
            .select_from(DeliveryItem)
            .join(OrderItem, OrderItem.id == DeliveryItem.order_item_id)
            .join(ProductVariant, ProductVariant.id == OrderItem.product_variant_id)
            .where(
                DeliveryItem.delivery_id == delivery_id,
                DeliveryItem.quantity_approved > 0,
                DeliveryItem.synced_to_shopify.is_(False),
                DeliveryItem.sync_error_message.is_not(None),
                ProductVariant.sku_variant.in_(skus),
            )
        ).scalars().all()
        return sorted(set(rows))

    def sync_approved_items(self, sync_data: SyncRequest, *, only_pending: bool = True) -> SyncReport:
        items = [item for item in sync_data.approved_items if item.quantity_approved > 0]
        if not items:
            return SyncReport(
                kind='no_items',
                level='info',
                title='Nothing to sync',
                message='No approved items to sync',
            )

        already_synced = 0
        if only_pending:
            statuses = self.check_sku_sync_status(sync_data.delivery_id, [item.sku_variant for item in items])
            pending_skus = {status.sku for status in statuses if status.needs_sync}
            pending = [item for item in items if item.sku_variant in pending_skus]
            already_synced = len(items) - len(pending)
            if not pending:
                summary = SyncSummary(already_synced=already_synced, total=len(items))
                stuck = self._unsynced_item_skus(sync_data.delivery_id, [item.sku_variant for item in items])
                if stuck:
                    log_event(
                        'inventory_sync_needs_force',
                        level='warning',
                        delivery_id=str(sync_data.delivery_id),
                        skus=stuck,
                    )
                    return SyncReport(
                        kind='needs_force',
                        level='warning',
                        title='Force sync needed',
                        message='Some SKUs previously failed to sync; run a forced resync',
                        summary=summary,
                    )
                return SyncReport(
                    kind='all_synced',
                    level='info',
                    title='Already synced',
                    message=f'All {already_synced} products were already synced',
                    summary=summary,
                )
            items = pending

        request = SyncRequest(
            delivery_id=sync_data.delivery_id,
            approved_items=tuple(items),
            intelligent_sync=sync_data.intelligent_sync,
        )
        try:
            outcome = self.gateway.push(request)
        except InventorySyncError as exc:
            log_event(
                'inventory_sync_failed',
                level='error',
                delivery_id=str(sync_data.delivery_id),
                kind=exc.kind,
                error=str(exc),
            )
            raise

        if isinstance(outcome, SyncInProgress):
            log_event(
                'inventory_sync_in_progress',
                delivery_id=str(sync_data.delivery_id),
                lock_holder=outcome.lock_acquired_by,
            )
            since = outcome.lock_acquired_at.isoformat() if outcome.lock_acquired_at else 'an unknown time'
            return SyncReport(
                kind='sync_in_progress',
                level='warning',
                title='Sync already in progress',
                message=(
                    f'Delivery {outcome.tracking_number or sync_data.delivery_id} is being synced by '
                    f'{outcome.lock_acquired_by or "another session"} since {since}'
                ),
                lock_acquired_at=outcome.lock_acquired_at,
                lock_acquired_by=outcome.lock_acquired_by,
            )

        if isinstance(outcome, SyncFailed):
            kind = 'rate_limited' if outcome.rate_limited else 'other'
            log_event(
                'inventory_sync_failed',
                level='error',
                delivery_id=str(sync_data.delivery_id),
                kind=kind,
                error=outcome.reason,
            )
            raise InventorySyncError(
                outcome.reason,
                kind=kind,
                status_code=429 if outcome.rate_limited else None,
            )

        summary = SyncSummary(
            successful=outcome.summary.successful,
            failed=outcome.summary.failed,
            already_synced=outcome.summary.already_synced + already_synced,
            total=outcome.summary.total + already_synced,
        )
        warning = None
        if summary.failed > 0:
            warning = f'{summary.failed} products could not be synced; check the sync details'
        return SyncReport(
            kind='synced',
            level='warning' if warning else 'success',
            title='Inventory synced',
            message=_success_message(summary, outcome.diagnostics),
            summary=summary,
            details=outcome.details,
            warning=warning,
            diagnostics=outcome.diagnostics,
        )

    def check_sync_lock_status(self, delivery_id: uuid.UUID) -> LockStatus:
        info = self.lock.is_held(delivery_id)
        if info is None:
            delivery = self.db.get(Delivery, delivery_id)
            return LockStatus(is_locked=False, tracking_number=delivery.tracking_number if delivery else None)
        stale_after = timedelta(minutes=settings.sync_lock_stale_minutes)
        return LockStatus(
            is_locked=True,
            tracking_number=info.tracking_number,
            lock_acquired_at=info.acquired_at,
            lock_acquired_by=info.holder,
            lock_age_minutes=round(info.age_minutes(), 1),
            is_stale=info.is_stale(stale_after),
        )

    def clear_sync_lock(self, delivery_id: uuid.UUID) -> SyncReport:
        delivery = self.db.get(Delivery, delivery_id)
        if not delivery:
            raise DeliveryNotFound('Delivery not found')
        tracking_number = delivery.tracking_number

        released = self.lock.release(delivery_id)
        try:
            self.db.execute(
                update(Delivery)
                .where(Delivery.id == delivery_id)
                .values(sync_lock_acquired_at=None, sync_lock_acquired_by=None)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.warning('Could not clear lock columns for delivery %s', delivery_id, exc_info=True)

        log_event('inventory_sync_lock_cleared', delivery_id=str(delivery_id), released=released)
        return SyncReport(
            kind='lock_cleared',
            level='success',
            title='Sync lock cleared',
            message=f'Released the sync lock for delivery {tracking_number}',
        )

    def clear_all_stale_locks(self) -> int:
        cutoff = _now() - timedelta(minutes=settings.sync_lock_stale_minutes)
        stale_ids = self.db.execute(
            select(Delivery.id).where(
                Delivery.sync_lock_acquired_at.is_not(None),
                Delivery.sync_lock_acquired_at < cutoff,
            )
        ).scalars().all()

        cleared = 0
        for delivery_id in stale_ids:
            try:
                if self.lock.release(delivery_id):
                    cleared += 1
            except SQLAlchemyError:
                self.db.rollback()
                logger.warning('Could not release stale lock for delivery %s', delivery_id, exc_info=True)

        log_event('inventory_sync_stale_locks_cleared', cleared=cleared, candidates=len(stale_ids))
        return cleared

    def fetch_sync_logs(self, delivery_id: uuid.UUID | None = None, *, limit: int = 100) -> list[InventorySyncLog]:
        stmt = select(InventorySyncLog).order_by(InventorySyncLog.synced_at.desc()).limit(limit)
        if delivery_id is not None:
            stmt = stmt.where(InventorySyncLog.delivery_id == delivery_id)
        return list(self.db.execute(stmt).scalars().all())

    def check_sync_status(self, delivery_id: uuid.UUID) -> DeliverySyncState:
        delivery = self.db.get(Delivery, delivery_id)
        if not delivery:
            raise DeliveryNotFound('Delivery not found')
        return DeliverySyncState(
            delivery_id=delivery.id,
            tracking_number=delivery.tracking_number,
            synced_to_shopify=delivery.synced_to_shopify,
            sync_attempts=delivery.sync_attempts,
            last_sync_attempt=as_utc(delivery.last_sync_attempt) if delivery.last_sync_attempt else None,
            sync_error_message=delivery.sync_error_message,
        )

    def resync_delivery(
        self,
        delivery_id: uuid.UUID,
        *,
        specific_skus: list[str] | None = None,
        retry_all: bool = False,
    ) -> SyncReport:
        """Push a delivery again, by default only the items whose last push failed."""
        if not self.db.get(Delivery, delivery_id):
            raise DeliveryNotFound('Delivery not found')

        rows = self.db.execute(
            select(DeliveryItem, ProductVariant.sku_variant, ProductVariant.id)
            .join(OrderItem, OrderItem.id == DeliveryItem.order_item_id)
            .join(ProductVariant, ProductVariant.id == OrderItem.product_variant_id)
            .where(DeliveryItem.delivery_id == delivery_id, DeliveryItem.quantity_approved > 0)
        ).all()

        wanted = set(specific_skus or [])
        selected = []
        for item, sku, variant_id in rows:
            if not sku:
                continue
            if wanted:
                if sku not in wanted:
                    continue
            elif not retry_all and item.synced_to_shopify:
                continue
            selected.append((item, sku, variant_id))

        if not selected:
            return SyncReport(
                kind='no_items',
                level='info',
                title='Nothing to resync',
                message='No items match the resync criteria',
            )

        for item, _, _ in selected:
            item.synced_to_shopify = False
            item.sync_error_message = None
        self.db.commit()
        log_event('inventory_resync_requested', delivery_id=str(delivery_id), items=len(selected), retry_all=retry_all)

        request = SyncRequest(
            delivery_id=delivery_id,
            approved_items=tuple(
                ApprovedItem(sku_variant=sku, quantity_approved=item.quantity_approved, variant_id=str(variant_id))
                for item, sku, variant_id in selected
            ),
            intelligent_sync=False,
        )
        return self.sync_approved_items(request, only_pending=False)
