from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from sewdle.models import InventorySyncLog, VerificationStatus

TERMINAL_STATUSES = (VerificationStatus.VERIFIED, VerificationStatus.FAILED)


@dataclass(frozen=True)
class SyncLogEvent:
    synced_at: datetime
    verification_status: VerificationStatus
    results: tuple[dict, ...]


@dataclass(frozen=True)
class SkuSyncStatus:
    sku: str
    is_synced: bool
    needs_sync: bool
    last_status: str
    last_synced_at: datetime | None = None
    error: str | None = None


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _results_of(sync_results: dict | list | None) -> tuple[dict, ...]:
    if isinstance(sync_results, dict):
        raw = sync_results.get('results') or []
    elif isinstance(sync_results, list):
        raw = sync_results
    else:
        raw = []
    return tuple(entry for entry in raw if isinstance(entry, dict))


def events_from_logs(logs: Iterable[InventorySyncLog]) -> list[SyncLogEvent]:
    return [
        SyncLogEvent(
            synced_at=as_utc(log.synced_at),
            verification_status=log.verification_status,
            results=_results_of(log.sync_results),
        )
        for log in logs
    ]


def result_matches(result: dict, sku: str) -> bool:
    return result.get('skuVariant') == sku or result.get('sku') == sku


def result_succeeded(result: dict) -> bool:
    return result.get('status') == 'success' or result.get('success') is True


def project_sku_status(events: Iterable[SyncLogEvent], sku: str) -> SkuSyncStatus:
    """Fold sync log events into the SKU's current sync status.

    Only the newest verified/failed event that mentions the SKU counts. Input
    order does not matter; equal timestamps keep the first event seen.
    """
    latest: tuple[SyncLogEvent, dict] | None = None
    for event in events:
        if event.verification_status not in TERMINAL_STATUSES:
            continue
        match = next((result for result in event.results if result_matches(result, sku)), None)
        if match is None:
            continue
        if latest is None or as_utc(event.synced_at) > as_utc(latest[0].synced_at):
            latest = (event, match)

    if latest is None:
        return SkuSyncStatus(sku=sku, is_synced=False, needs_sync=True, last_status='never')

    event, result = latest
    if event.verification_status == VerificationStatus.VERIFIED and result_succeeded(result):
        return SkuSyncStatus(
            sku=sku,
            is_synced=True,
            needs_sync=False,
            last_status=VerificationStatus.VERIFIED.value,
            last_synced_at=event.synced_at,
        )
    return SkuSyncStatus(
        sku=sku,
        is_synced=False,
        needs_sync=True,
        last_status=VerificationStatus.FAILED.value,
        last_synced_at=event.synced_at,
        error=result.get('error'),
    )
