from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from sewdle.config import settings

NEXT_PAGE_RE = re.compile(r'<[^>]*[?&]page_info=([^&>]+)[^>]*>;\s*rel="next"')


class ShopifyAPIError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class PlatformVariant:
    variant_id: str
    sku: str
    inventory_item_id: str
    product_title: str
    inventory_management: str | None = None


@dataclass(frozen=True)
class PlatformLocation:
    location_id: str
    name: str


class InventoryPlatformClient(Protocol):
    def primary_location(self) -> PlatformLocation: ...

    def find_variants_by_sku(self, skus: list[str]) -> dict[str, PlatformVariant]: ...

    def get_available(self, *, inventory_item_id: str, location_id: str) -> int: ...

    def adjust_available(self, *, inventory_item_id: str, location_id: str, delta: int) -> None: ...


class ShopifyClient:
    def __init__(self) -> None:
        if not settings.shopify_store_domain or not settings.shopify_access_token:
            raise ValueError('SHOPIFY_STORE_DOMAIN and SHOPIFY_ACCESS_TOKEN are required when INVENTORY_PROVIDER=shopify')

        self.base_url = f'https://{settings.shopify_store_domain}/admin/api/{settings.shopify_api_version}'
        self.headers = {
            'X-Shopify-Access-Token': settings.shopify_access_token,
            'Content-Type': 'application/json',
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        payload: dict | None = None,
    ) -> tuple[dict, str | None]:
        url = f'{self.base_url}{path}'
        if params:
            url = f'{url}?{urlencode(params)}'
        req = Request(
            url=url,
            data=json.dumps(payload).encode('utf-8') if payload is not None else None,
            headers=self.headers,
            method=method,
        )
        try:
            with urlopen(req, timeout=settings.shopify_timeout_seconds) as response:
                parsed = json.loads(response.read().decode('utf-8') or '{}')
                link_header = response.headers.get('Link')
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise ShopifyAPIError(f'Shopify API error {exc.code} on {path}: {body}', status_code=exc.code) from exc
        except URLError as exc:
            raise ShopifyAPIError(f'Shopify API network error on {path}: {exc.reason}') from exc

        if parsed.get('errors'):
            raise ShopifyAPIError(f'Shopify API returned errors on {path}: {parsed["errors"]}')
        return parsed, link_header

    def primary_location(self) -> PlatformLocation:
        response, _ = self._request('GET', '/locations.json')
        locations = response.get('locations', [])
        primary = next((loc for loc in locations if loc.get('legacy') or loc.get('primary')), None)
        if primary is None and locations:
            primary = locations[0]
        if primary is None:
            raise ShopifyAPIError('Shopify store has no locations')
        return PlatformLocation(location_id=str(primary['id']), name=primary.get('name') or '')

    def find_variants_by_sku(self, skus: list[str]) -> dict[str, PlatformVariant]:
        wanted = set(skus)
        found: dict[str, PlatformVariant] = {}
        page_info: str | None = None
        while True:
            params: dict = {'limit': 250}
            if page_info:
                params['page_info'] = page_info
            response, link_header = self._request('GET', '/products.json', params=params)
            for product in response.get('products', []):
                for variant in product.get('variants', []):
                    sku = variant.get('sku')
                    if not sku or sku not in wanted or sku in found:
                        continue
                    found[sku] = PlatformVariant(
                        variant_id=str(variant['id']),
                        sku=sku,
                        inventory_item_id=str(variant['inventory_item_id']),
                        product_title=product.get('title') or '',
                        inventory_management=variant.get('inventory_management'),
                    )
            if len(found) == len(wanted):
                break
            match = NEXT_PAGE_RE.search(link_header or '')
            if not match:
                break
            page_info = match.group(1)
        return found

    def get_available(self, *, inventory_item_id: str, location_id: str) -> int:
        response, _ = self._request(
            'GET',
            '/inventory_levels.json',
            params={'inventory_item_ids': inventory_item_id, 'location_ids': location_id},
        )
        levels = response.get('inventory_levels') or []
        if not levels:
            raise ShopifyAPIError(
                f'No inventory level for item {inventory_item_id} at location {location_id}'
            )
        return int(levels[0].get('available') or 0)

    def adjust_available(self, *, inventory_item_id: str, location_id: str, delta: int) -> None:
        self._request(
            'POST',
            '/inventory_levels/adjust.json',
            payload={
                'location_id': int(location_id),
                'inventory_item_id': int(inventory_item_id),
                'available_adjustment': delta,
            },
        )


class MockShopifyClient:
    """In-memory stand-in for the store, used for local development and tests."""

    def __init__(self, levels: dict[str, int] | None = None, *, auto_create: bool = True) -> None:
        self.levels: dict[str, int] = dict(levels or {})
        self.auto_create = auto_create
        self.adjustments: list[tuple[str, int]] = []

    @staticmethod
    def _item_id(sku: str) -> str:
        return f'mock-item-{sku}'

    def primary_location(self) -> PlatformLocation:
        return PlatformLocation(location_id='1', name='Mock warehouse')

    def find_variants_by_sku(self, skus: list[str]) -> dict[str, PlatformVariant]:
        found: dict[str, PlatformVariant] = {}
        for sku in skus:
            if sku not in self.levels:
                if not self.auto_create:
                    continue
                self.levels[sku] = (sum(ord(char) for char in sku) % 11) + 4
            found[sku] = PlatformVariant(
                variant_id=f'mock-variant-{sku}',
                sku=sku,
                inventory_item_id=self._item_id(sku),
                product_title=f'Mock product {sku}',
                inventory_management='shopify',
            )
        return found

    def _sku_for(self, inventory_item_id: str) -> str:
        return inventory_item_id.removeprefix('mock-item-')

    def get_available(self, *, inventory_item_id: str, location_id: str) -> int:
        sku = self._sku_for(inventory_item_id)
        if sku not in self.levels:
            raise ShopifyAPIError(f'No inventory level for item {inventory_item_id} at location {location_id}')
        return self.levels[sku]

    def adjust_available(self, *, inventory_item_id: str, location_id: str, delta: int) -> None:
        sku = self._sku_for(inventory_item_id)
        self.levels[sku] = self.levels.get(sku, 0) + delta
        self.adjustments.append((sku, delta))
