from __future__ import annotations

import json
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from sqlalchemy.orm import Session

from sewdle.config import settings
from sewdle.services.errors import InventorySyncError
from sewdle.services.inventory_push_service import push_delivery_inventory
from sewdle.services.shopify_client import InventoryPlatformClient, ShopifyAPIError
from sewdle.services.sync_lock import SyncLock
from sewdle.services.sync_types import SyncOutcome, SyncRequest, outcome_from_payload, request_to_payload


class SyncGateway(Protocol):
    def push(self, request: SyncRequest) -> SyncOutcome: ...


class LocalSyncGateway:
    """Runs the inventory push in-process against the given session."""

    def __init__(
        self,
        db: Session,
        *,
        client: InventoryPlatformClient,
        lock: SyncLock,
        holder: str,
        verification_delay: float = 0.0,
    ) -> None:
        self.db = db
        self.client = client
        self.lock = lock
        self.holder = holder
        self.verification_delay = verification_delay

    def push(self, request: SyncRequest) -> SyncOutcome:
        try:
            return push_delivery_inventory(
                self.db,
                request=request,
                client=self.client,
                lock=self.lock,
                holder=self.holder,
                verification_delay=self.verification_delay,
            )
        except ShopifyAPIError as exc:
            kind = 'rate_limited' if exc.status_code == 429 else 'other'
            raise InventorySyncError(str(exc), kind=kind, status_code=exc.status_code) from exc


class RemoteSyncGateway:
    """Posts the sync request to a deployed ``/api/inventory-sync`` endpoint."""

    def __init__(self) -> None:
        if not settings.sync_function_url:
            raise ValueError('SYNC_FUNCTION_URL is required when SYNC_GATEWAY=remote')
        self.url = settings.sync_function_url
        self.headers = {'Content-Type': 'application/json'}
        if settings.sync_function_token:
            self.headers['Authorization'] = f'Bearer {settings.sync_function_token}'

    def push(self, request: SyncRequest) -> SyncOutcome:
        req = Request(
            url=self.url,
            data=json.dumps(request_to_payload(request)).encode('utf-8'),
            headers=self.headers,
            method='POST',
        )
        timeout = settings.shopify_timeout_seconds * 4
        try:
            with urlopen(req, timeout=timeout) as response:
                status_code = response.status
                body = response.read().decode('utf-8', errors='ignore')
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            if exc.code == 429:
                raise InventorySyncError(f'Sync function rate limited: {body}', kind='rate_limited', status_code=429) from exc
            if exc.code != 409:
                raise InventorySyncError(f'Sync function error {exc.code}: {body}', status_code=exc.code) from exc
            status_code = 409
        except URLError as exc:
            raise InventorySyncError(f'Sync function network error: {exc.reason}') from exc
        except TimeoutError as exc:
            raise InventorySyncError(f'Sync function timed out after {timeout}s') from exc

        try:
            payload = json.loads(body or '{}')
            if not isinstance(payload, dict):
                raise ValueError('expected a JSON object')
            return outcome_from_payload(status_code, payload)
        except ValueError as exc:
            raise InventorySyncError(f'Sync function returned an invalid response: {exc}', status_code=status_code) from exc
