from __future__ import annotations

import unittest
from unittest.mock import patch

from sqlalchemy import select

from sewdle.models import Delivery, DeliveryItem, InventorySyncLog, VerificationStatus
from sewdle.services.inventory_push_service import push_delivery_inventory
from sewdle.services.shopify_client import MockShopifyClient, ShopifyAPIError
from sewdle.services.sync_lock import InMemorySyncLock, TableSyncLock
from sewdle.services.sync_types import (
    ApprovedItem,
    SyncFailed,
    SyncInProgress,
    SyncRequest,
    SyncSucceeded,
)

from db_fixtures import make_session, seed_delivery, seed_order


class PushDeliveryInventoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        seeded = seed_order(self.db, [('TEE-M', 5), ('TEE-L', 3)])
        delivery = seed_delivery(self.db, seeded, [5, 3], approved=[5, 2], tracking_number='DEL-0010')
        self.delivery_id = delivery.delivery.id
        self.item_ids = [item.id for item in delivery.items]
        self.client = MockShopifyClient({'TEE-M': 10, 'TEE-L': 1})
        self.lock = TableSyncLock(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def _request(self, *items: tuple[str, int], intelligent: bool = True) -> SyncRequest:
        return SyncRequest(
            delivery_id=self.delivery_id,
            approved_items=tuple(ApprovedItem(sku_variant=sku, quantity_approved=qty) for sku, qty in items),
            intelligent_sync=intelligent,
        )

    def _push(self, request: SyncRequest, client=None, lock=None):
        return push_delivery_inventory(
            self.db,
            request=request,
            client=client or self.client,
            lock=lock or self.lock,
            holder='test-worker',
        )

    def test_pushes_and_verifies_every_item(self) -> None:
        outcome = self._push(self._request(('TEE-M', 5), ('TEE-L', 2)))

        self.assertIsInstance(outcome, SyncSucceeded)
        self.assertEqual(outcome.summary.successful, 2)
        self.assertEqual(outcome.summary.failed, 0)
        self.assertEqual(self.client.levels, {'TEE-M': 15, 'TEE-L': 3})

        delivery = self.db.get(Delivery, self.delivery_id)
        self.assertTrue(delivery.synced_to_shopify)
        self.assertEqual(delivery.sync_attempts, 1)
        self.assertIsNone(delivery.sync_lock_acquired_at)
        self.assertTrue(all(self.db.get(DeliveryItem, item_id).synced_to_shopify for item_id in self.item_ids))

        log = self.db.execute(select(InventorySyncLog)).scalar_one()
        self.assertEqual(log.verification_status, VerificationStatus.VERIFIED)
        self.assertEqual([result['sku'] for result in log.sync_results['results']], ['TEE-M', 'TEE-L'])

    def test_second_intelligent_push_skips_synced_skus(self) -> None:
        self._push(self._request(('TEE-M', 5), ('TEE-L', 2)))
        outcome = self._push(self._request(('TEE-M', 5), ('TEE-L', 2)))

        self.assertIsInstance(outcome, SyncSucceeded)
        self.assertEqual(outcome.summary.already_synced, 2)
        self.assertEqual(outcome.summary.successful, 0)
        self.assertEqual(len(self.client.adjustments), 2)

    def test_unknown_sku_is_an_item_error(self) -> None:
        client = MockShopifyClient({'TEE-M': 10}, auto_create=False)
        outcome = self._push(self._request(('TEE-M', 5), ('TEE-L', 2)), client=client)

        self.assertIsInstance(outcome, SyncSucceeded)
        self.assertEqual((outcome.summary.successful, outcome.summary.failed), (1, 1))
        failed_item = self.db.get(DeliveryItem, self.item_ids[1])
        self.assertFalse(failed_item.synced_to_shopify)
        self.assertIn('TEE-L', failed_item.sync_error_message)
        self.assertEqual(failed_item.sync_attempt_count, 1)

        delivery = self.db.get(Delivery, self.delivery_id)
        self.assertFalse(delivery.synced_to_shopify)
        self.assertIn('TEE-L', delivery.sync_error_message)

    def test_all_items_failing_returns_failure_and_failed_log(self) -> None:
        client = MockShopifyClient(auto_create=False)
        outcome = self._push(self._request(('TEE-M', 5)), client=client)

        self.assertIsInstance(outcome, SyncFailed)
        log = self.db.execute(select(InventorySyncLog)).scalar_one()
        self.assertEqual(log.verification_status, VerificationStatus.FAILED)
        self.assertIsNone(self.db.get(Delivery, self.delivery_id).sync_lock_acquired_at)

    def test_adjustment_not_reflected_fails_verification(self) -> None:
        with patch.object(self.client, 'adjust_available'):
            outcome = self._push(self._request(('TEE-M', 5)))

        self.assertIsInstance(outcome, SyncFailed)
        self.assertIn('expected 15', outcome.details[0]['error'])

    def test_order_lines_sharing_a_sku_are_all_marked(self) -> None:
        seeded = seed_order(self.db, [('POLO-S', 4), ('POLO-S', 2)], order_number='ORD-002')
        delivery = seed_delivery(self.db, seeded, [4, 2], approved=[4, 2], tracking_number='DEL-0011')
        client = MockShopifyClient({'POLO-S': 1})
        request = SyncRequest(
            delivery_id=delivery.delivery.id,
            approved_items=(
                ApprovedItem(sku_variant='POLO-S', quantity_approved=4),
                ApprovedItem(sku_variant='POLO-S', quantity_approved=2),
            ),
        )

        outcome = self._push(request, client=client)

        self.assertIsInstance(outcome, SyncSucceeded)
        self.assertEqual(client.levels['POLO-S'], 7)
        for item in delivery.items:
            stored = self.db.get(DeliveryItem, item.id)
            self.assertTrue(stored.synced_to_shopify)
            self.assertGreaterEqual(stored.sync_attempt_count, 1)
        self.assertTrue(self.db.get(Delivery, delivery.delivery.id).synced_to_shopify)

    def test_held_lock_reports_in_progress(self) -> None:
        lock = InMemorySyncLock()
        lock.acquire(self.delivery_id, 'other-session')

        outcome = self._push(self._request(('TEE-M', 5)), lock=lock)

        self.assertIsInstance(outcome, SyncInProgress)
        self.assertEqual(outcome.lock_acquired_by, 'other-session')
        self.assertEqual(outcome.tracking_number, 'DEL-0010')
        self.assertEqual(self.client.adjustments, [])

    def test_rate_limit_stops_remaining_items(self) -> None:
        with patch.object(
            self.client,
            'get_available',
            side_effect=ShopifyAPIError('Too many requests', status_code=429),
        ):
            outcome = self._push(self._request(('TEE-M', 5), ('TEE-L', 2)))

        self.assertIsInstance(outcome, SyncFailed)
        self.assertIn('rate limit', outcome.details[1]['error'])
        self.assertTrue(outcome.rate_limited)
        self.assertEqual(self.db.get(DeliveryItem, self.item_ids[1]).sync_attempt_count, 0)

    def test_lock_is_released_when_the_platform_is_unreachable(self) -> None:
        with patch.object(self.client, 'primary_location', side_effect=ShopifyAPIError('down', status_code=503)):
            with self.assertRaises(ShopifyAPIError):
                self._push(self._request(('TEE-M', 5)))
        self.assertIsNone(self.lock.is_held(self.delivery_id))


if __name__ == '__main__':
    unittest.main()
