from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Union


@dataclass(frozen=True)
class ApprovedItem:
    sku_variant: str
    quantity_approved: int
    variant_id: str | None = None


@dataclass(frozen=True)
class SyncRequest:
    delivery_id: uuid.UUID
    approved_items: tuple[ApprovedItem, ...]
    intelligent_sync: bool = True


@dataclass(frozen=True)
class SyncSummary:
    successful: int = 0
    failed: int = 0
    already_synced: int = 0
    total: int = 0


@dataclass(frozen=True)
class SyncSucceeded:
    summary: SyncSummary
    details: tuple[dict, ...] = ()
    diagnostics: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SyncInProgress:
    lock_acquired_at: datetime | None
    lock_acquired_by: str | None = None
    tracking_number: str | None = None


@dataclass(frozen=True)
class SyncFailed:
    reason: str
    summary: SyncSummary = SyncSummary()
    details: tuple[dict, ...] = ()
    rate_limited: bool = False


SyncOutcome = Union[SyncSucceeded, SyncInProgress, SyncFailed]


def request_to_payload(request: SyncRequest) -> dict:
    return {
        'deliveryId': str(request.delivery_id),
        'approvedItems': [
            {
                'variantId': item.variant_id,
                'skuVariant': item.sku_variant,
                'quantityApproved': item.quantity_approved,
            }
            for item in request.approved_items
        ],
        'intelligentSync': request.intelligent_sync,
    }


def request_from_payload(payload: dict) -> SyncRequest:
    delivery_id = payload.get('deliveryId')
    items = payload.get('approvedItems')
    if not delivery_id or not isinstance(items, list):
        raise ValueError('Invalid sync payload')
    approved: list[ApprovedItem] = []
    for entry in items:
        sku = (entry.get('skuVariant') or '').strip() if isinstance(entry, dict) else ''
        if not sku:
            raise ValueError('Every approved item needs a skuVariant')
        quantity = int(entry.get('quantityApproved') or 0)
        if quantity < 0:
            raise ValueError(f'Quantity cannot be negative for {sku}')
        variant_id = entry.get('variantId')
        approved.append(
            ApprovedItem(
                sku_variant=sku,
                quantity_approved=quantity,
                variant_id=str(variant_id) if variant_id else None,
            )
        )
    return SyncRequest(
        delivery_id=uuid.UUID(str(delivery_id)),
        approved_items=tuple(approved),
        intelligent_sync=bool(payload.get('intelligentSync', True)),
    )


def outcome_to_payload(outcome: SyncOutcome) -> tuple[int, dict]:
    """Return the HTTP status code and JSON body for a push outcome."""
    if isinstance(outcome, SyncInProgress):
        return 409, {
            'success': False,
            'error': 'sync_in_progress',
            'details': {
                'lock_acquired_at': outcome.lock_acquired_at.isoformat() if outcome.lock_acquired_at else None,
                'lock_acquired_by': outcome.lock_acquired_by,
                'tracking_number': outcome.tracking_number,
            },
        }
    if isinstance(outcome, SyncFailed):
        return 429 if outcome.rate_limited else 200, {
            'success': False,
            'error': outcome.reason,
            'rateLimited': outcome.rate_limited,
            'summary': asdict(outcome.summary),
            'details': list(outcome.details),
        }
    return 200, {
        'success': True,
        'summary': asdict(outcome.summary),
        'details': list(outcome.details),
        'diagnostics': outcome.diagnostics,
    }


def _summary_from(raw: dict | None) -> SyncSummary:
    raw = raw or {}
    return SyncSummary(
        successful=int(raw.get('successful') or 0),
        failed=int(raw.get('failed') or 0),
        already_synced=int(raw.get('already_synced') or 0),
        total=int(raw.get('total') or 0),
    )


def outcome_from_payload(status_code: int, payload: dict) -> SyncOutcome:
    if status_code == 409 or payload.get('error') == 'sync_in_progress':
        details = payload.get('details') or {}
        acquired_at = details.get('lock_acquired_at')
        return SyncInProgress(
            lock_acquired_at=datetime.fromisoformat(acquired_at) if acquired_at else None,
            lock_acquired_by=details.get('lock_acquired_by'),
            tracking_number=details.get('tracking_number'),
        )
    if not payload.get('success'):
        return SyncFailed(
            reason=payload.get('error') or 'Unknown sync error',
            summary=_summary_from(payload.get('summary')),
            details=tuple(payload.get('details') or ()),
            rate_limited=status_code == 429 or bool(payload.get('rateLimited')),
        )
    return SyncSucceeded(
        summary=_summary_from(payload.get('summary')),
        details=tuple(payload.get('details') or ()),
        diagnostics=payload.get('diagnostics') or {},
    )
