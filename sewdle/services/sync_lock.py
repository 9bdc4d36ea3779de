from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from sewdle.models import Delivery
from sewdle.services.errors import DeliveryNotFound
from sewdle.services.sync_status import as_utc

DEFAULT_STALE_AFTER = timedelta(hours=1)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class LockInfo:
    delivery_id: uuid.UUID
    holder: str | None
    acquired_at: datetime
    tracking_number: str | None = None

    def age_minutes(self, now: datetime | None = None) -> float:
        return ((now or _now()) - as_utc(self.acquired_at)).total_seconds() / 60

    def is_stale(self, stale_after: timedelta = DEFAULT_STALE_AFTER, now: datetime | None = None) -> bool:
        return self.age_minutes(now) >= stale_after.total_seconds() / 60


@dataclass(frozen=True)
class LockToken:
    delivery_id: uuid.UUID
    holder: str
    acquired_at: datetime


@dataclass(frozen=True)
class AlreadyHeld:
    info: LockInfo


class SyncLock(Protocol):
    def acquire(self, delivery_id: uuid.UUID, holder: str) -> LockToken | AlreadyHeld: ...

    def release(self, delivery_id: uuid.UUID) -> bool: ...

    def is_held(self, delivery_id: uuid.UUID) -> LockInfo | None: ...


class TableSyncLock:
    """Advisory lock stored on the delivery row.

    Acquisition is a single conditional UPDATE, so two sessions racing for the
    same delivery cannot both win. Locks older than ``stale_after`` can be taken over.
    """

    def __init__(self, db: Session, *, stale_after: timedelta = DEFAULT_STALE_AFTER) -> None:
        self.db = db
        self.stale_after = stale_after

    def acquire(self, delivery_id: uuid.UUID, holder: str) -> LockToken | AlreadyHeld:
        now = _now()
        cutoff = now - self.stale_after
        result = self.db.execute(
            update(Delivery)
            .where(
                Delivery.id == delivery_id,
                or_(Delivery.sync_lock_acquired_at.is_(None), Delivery.sync_lock_acquired_at < cutoff),
            )
            .values(sync_lock_acquired_at=now, sync_lock_acquired_by=holder)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount == 1:
            return LockToken(delivery_id=delivery_id, holder=holder, acquired_at=now)

        info = self.is_held(delivery_id)
        if info is None:
            # released between the UPDATE and the read; report the contention anyway
            info = LockInfo(delivery_id=delivery_id, holder=None, acquired_at=now)
        return AlreadyHeld(info=info)

    def release(self, delivery_id: uuid.UUID) -> bool:
        result = self.db.execute(
            update(Delivery)
            .where(Delivery.id == delivery_id, Delivery.sync_lock_acquired_at.is_not(None))
            .values(sync_lock_acquired_at=None, sync_lock_acquired_by=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def is_held(self, delivery_id: uuid.UUID) -> LockInfo | None:
        row = self.db.execute(
            select(
                Delivery.id,
                Delivery.tracking_number,
                Delivery.sync_lock_acquired_at,
                Delivery.sync_lock_acquired_by,
            ).where(Delivery.id == delivery_id)
        ).one_or_none()
        if row is None:
            raise DeliveryNotFound('Delivery not found')
        if row.sync_lock_acquired_at is None:
            return None
        return LockInfo(
            delivery_id=row.id,
            holder=row.sync_lock_acquired_by,
            acquired_at=as_utc(row.sync_lock_acquired_at),
            tracking_number=row.tracking_number,
        )


class InMemorySyncLock:
    def __init__(self, *, stale_after: timedelta = DEFAULT_STALE_AFTER) -> None:
        self.stale_after = stale_after
        self._held: dict[uuid.UUID, LockInfo] = {}
        self._mutex = threading.Lock()

    def acquire(self, delivery_id: uuid.UUID, holder: str) -> LockToken | AlreadyHeld:
        now = _now()
        with self._mutex:
            current = self._held.get(delivery_id)
            if current is not None and not current.is_stale(self.stale_after, now):
                return AlreadyHeld(info=current)
            self._held[delivery_id] = LockInfo(delivery_id=delivery_id, holder=holder, acquired_at=now)
        return LockToken(delivery_id=delivery_id, holder=holder, acquired_at=now)

    def release(self, delivery_id: uuid.UUID) -> bool:
        with self._mutex:
            return self._held.pop(delivery_id, None) is not None

    def is_held(self, delivery_id: uuid.UUID) -> LockInfo | None:
        with self._mutex:
            return self._held.get(delivery_id)
