from __future__ import annotations

import unittest
import uuid
from unittest.mock import MagicMock, patch

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from sewdle.models import (
    Delivery,
    DeliveryFile,
    DeliveryItem,
    DeliveryNumberSequence,
    DeliveryStatus,
    FileCategory,
    Order,
    OrderStatus,
    QualityStatus,
)
from sewdle.services.delivery_service import (
    CreateDeliveryInput,
    DeliveryItemInput,
    QualityReviewInput,
    QuantityUpdate,
    VariantReview,
    create_delivery,
    delete_delivery,
    derive_delivery_status,
    get_delivery_detail,
    get_delivery_stats,
    item_quality_status,
    list_deliveries,
    process_quality_review,
    update_delivery_quantities,
    update_delivery_status,
)
from sewdle.services.errors import (
    DeliveryEditForbidden,
    DeliveryNotFound,
    DeliveryValidationError,
    InventorySyncError,
)
from sewdle.services.inventory_sync_service import SyncReport
from sewdle.services.storage import StorageError, UploadedFile
from sewdle.services.sync_types import SyncSummary

from db_fixtures import make_session, seed_delivery, seed_order


class RecordingCoordinator:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.calls = []
        self.error = error

    def sync_approved_items(self, sync_data, *, only_pending=True):
        self.calls.append((sync_data, only_pending))
        if self.error:
            raise self.error
        count = len(sync_data.approved_items)
        return SyncReport(
            kind='synced',
            level='success',
            title='Inventory synced',
            message=f'{count} products processed',
            summary=SyncSummary(successful=count, total=count),
        )


def _storage() -> MagicMock:
    storage = MagicMock()
    storage.public_url.side_effect = lambda path: f'http://files.test/delivery-evidence/{path}'
    return storage


def _pdf(name: str = 'remision.pdf') -> UploadedFile:
    return UploadedFile(filename=name, content_type='application/pdf', data=b'%PDF-1.4')


class DeriveDeliveryStatusTests(unittest.TestCase):
    def test_all_items_approved(self) -> None:
        self.assertEqual(derive_delivery_status([(5, 0), (3, 0)]), DeliveryStatus.APPROVED)

    def test_all_items_defective(self) -> None:
        self.assertEqual(derive_delivery_status([(0, 5), (0, 1)]), DeliveryStatus.REJECTED)

    def test_mixed_across_items(self) -> None:
        self.assertEqual(derive_delivery_status([(5, 0), (0, 3)]), DeliveryStatus.PARTIAL_APPROVED)

    def test_mixed_within_one_item(self) -> None:
        self.assertEqual(derive_delivery_status([(4, 1)]), DeliveryStatus.PARTIAL_APPROVED)

    def test_reviewed_and_unreviewed_items(self) -> None:
        self.assertEqual(derive_delivery_status([(5, 0), (0, 0)]), DeliveryStatus.PARTIAL_APPROVED)

    def test_nothing_reviewed_is_pending(self) -> None:
        self.assertEqual(derive_delivery_status([(0, 0), (0, 0)]), DeliveryStatus.PENDING)
        self.assertEqual(derive_delivery_status([]), DeliveryStatus.PENDING)

    def test_item_quality_status(self) -> None:
        self.assertEqual(item_quality_status(3, 0), QualityStatus.APPROVED)
        self.assertEqual(item_quality_status(0, 3), QualityStatus.REJECTED)
        self.assertEqual(item_quality_status(2, 1), QualityStatus.PARTIAL_APPROVED)
        self.assertEqual(item_quality_status(0, 0), QualityStatus.PARTIAL_APPROVED)


class CreateDeliveryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.seeded = seed_order(self.db, [('TEE-M', 5), ('TEE-L', 3)])

    def tearDown(self) -> None:
        self.db.close()

    def _input(self, **overrides) -> CreateDeliveryInput:
        values = {
            'order_id': self.seeded.order.id,
            'workshop_id': self.seeded.workshop.id,
            'notes': 'Two boxes',
            'items': [
                DeliveryItemInput(order_item_id=self.seeded.order_items[0].id, quantity_delivered=5),
                DeliveryItemInput(order_item_id=self.seeded.order_items[1].id, quantity_delivered=3),
            ],
        }
        values.update(overrides)
        return CreateDeliveryInput(**values)

    def test_creates_pending_delivery_without_files(self) -> None:
        result = create_delivery(self.db, self._input(), _storage())

        self.assertEqual(result.outcome, 'no_files')
        self.assertEqual(result.tracking_number, 'DEL-0001')
        delivery = self.db.get(Delivery, result.delivery_id)
        self.assertEqual(delivery.status, DeliveryStatus.PENDING)
        self.assertEqual(delivery.user_observations, 'Two boxes')
        self.assertIsNone(delivery.notes)
        items = self.db.execute(select(DeliveryItem).where(DeliveryItem.delivery_id == delivery.id)).scalars().all()
        self.assertEqual(sorted(item.quantity_delivered for item in items), [3, 5])
        self.assertTrue(all(item.quality_status == QualityStatus.PENDING for item in items))

    def test_tracking_numbers_are_sequential(self) -> None:
        first = create_delivery(self.db, self._input(), _storage())
        second = create_delivery(self.db, self._input(), _storage())
        self.assertEqual((first.tracking_number, second.tracking_number), ('DEL-0001', 'DEL-0002'))

    def test_unsupported_file_type_aborts_before_any_insert(self) -> None:
        files = [_pdf(), UploadedFile(filename='clip.mp4', content_type='video/mp4', data=b'\x00\x01')]
        storage = _storage()

        with self.assertRaisesRegex(DeliveryValidationError, 'clip.mp4'):
            create_delivery(self.db, self._input(files=files), storage)

        self.assertEqual(self.db.execute(select(func.count(Delivery.id))).scalar_one(), 0)
        self.assertIsNone(self.db.get(DeliveryNumberSequence, 1))
        storage.upload.assert_not_called()

    def test_missing_order_fails(self) -> None:
        with self.assertRaisesRegex(DeliveryNotFound, 'Order not found'):
            create_delivery(self.db, self._input(order_id=uuid.uuid4()), _storage())

    def test_missing_order_items_are_listed(self) -> None:
        missing = uuid.uuid4()
        items = [
            DeliveryItemInput(order_item_id=self.seeded.order_items[0].id, quantity_delivered=5),
            DeliveryItemInput(order_item_id=missing, quantity_delivered=1),
        ]
        with self.assertRaises(DeliveryValidationError) as ctx:
            create_delivery(self.db, self._input(items=items), _storage())
        self.assertIn(str(missing), str(ctx.exception))
        self.assertNotIn(str(self.seeded.order_items[0].id), str(ctx.exception))
        self.assertEqual(self.db.execute(select(func.count(Delivery.id))).scalar_one(), 0)

    def test_unknown_workshop_is_dropped_with_warning(self) -> None:
        with self.assertLogs('sewdle.services.delivery_service', level='WARNING'):
            result = create_delivery(self.db, self._input(workshop_id=uuid.uuid4()), _storage())
        self.assertIsNone(self.db.get(Delivery, result.delivery_id).workshop_id)

    def test_item_insert_failure_removes_the_delivery(self) -> None:
        with patch.object(self.db, 'add_all', side_effect=SQLAlchemyError('insert failed')):
            with self.assertRaisesRegex(SQLAlchemyError, 'insert failed'):
                create_delivery(self.db, self._input(), _storage())

        self.assertEqual(self.db.execute(select(func.count(Delivery.id))).scalar_one(), 0)

    def test_invoice_files_are_uploaded_under_delivery_prefix(self) -> None:
        storage = _storage()
        result = create_delivery(self.db, self._input(files=[_pdf(), _pdf('foto.png')]), storage)

        self.assertEqual(result.outcome, 'complete')
        self.assertEqual(result.files_uploaded, 2)
        rows = self.db.execute(select(DeliveryFile)).scalars().all()
        self.assertEqual(len(rows), 2)
        for row in rows:
            self.assertEqual(row.file_category, FileCategory.INVOICE)
            self.assertTrue(row.storage_path.startswith(f'{result.delivery_id}/invoice-remission-'))

    def test_partial_file_failure_is_reported(self) -> None:
        storage = _storage()
        storage.upload.side_effect = [None, StorageError('disk full')]

        with self.assertLogs('sewdle.services.delivery_service', level='WARNING'):
            result = create_delivery(self.db, self._input(files=[_pdf('a.pdf'), _pdf('b.pdf')]), storage)

        self.assertEqual(result.outcome, 'partial_files')
        self.assertEqual((result.files_uploaded, result.files_failed), (1, 1))
        self.assertIn('b.pdf', result.file_errors[0])
        self.assertEqual(self.db.execute(select(func.count(DeliveryFile.id))).scalar_one(), 1)

    def test_empty_items_rejected(self) -> None:
        with self.assertRaises(DeliveryValidationError):
            create_delivery(self.db, self._input(items=[]), _storage())


class QualityReviewTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.seeded = seed_order(self.db, [('TEE-M', 5), ('TEE-L', 3)])

    def tearDown(self) -> None:
        self.db.close()

    def _create(self):
        result = create_delivery(
            self.db,
            CreateDeliveryInput(
                order_id=self.seeded.order.id,
                notes='Entregado por Carlos',
                items=[
                    DeliveryItemInput(order_item_id=self.seeded.order_items[0].id, quantity_delivered=5),
                    DeliveryItemInput(order_item_id=self.seeded.order_items[1].id, quantity_delivered=3),
                ],
            ),
            _storage(),
        )
        items = {
            item.order_item_id: item
            for item in self.db.execute(
                select(DeliveryItem).where(DeliveryItem.delivery_id == result.delivery_id)
            ).scalars()
        }
        return (
            result.delivery_id,
            items[self.seeded.order_items[0].id].id,
            items[self.seeded.order_items[1].id].id,
        )

    def test_end_to_end_partial_approval_syncs_only_approved_item(self) -> None:
        delivery_id, item1, item2 = self._create()
        self.assertEqual(self.db.get(Delivery, delivery_id).status, DeliveryStatus.PENDING)
        coordinator = RecordingCoordinator()

        result = process_quality_review(
            self.db,
            delivery_id,
            QualityReviewInput(
                variants={
                    str(item1): VariantReview(approved=5, defective=0),
                    str(item2): VariantReview(approved=0, defective=3, reason='Broken seams'),
                },
            ),
            coordinator=coordinator,
            storage=_storage(),
        )

        self.assertTrue(result.success)
        self.assertEqual(result.status, DeliveryStatus.PARTIAL_APPROVED)
        self.assertEqual(self.db.get(Delivery, delivery_id).status, DeliveryStatus.PARTIAL_APPROVED)
        self.assertEqual(len(coordinator.calls), 1)
        sync_data, only_pending = coordinator.calls[0]
        self.assertTrue(only_pending)
        self.assertEqual(len(sync_data.approved_items), 1)
        self.assertEqual(sync_data.approved_items[0].sku_variant, 'TEE-M')
        self.assertEqual(sync_data.approved_items[0].quantity_approved, 5)

        rejected = self.db.get(DeliveryItem, item2)
        self.assertEqual(rejected.quality_status, QualityStatus.REJECTED)
        self.assertEqual(rejected.quality_notes, 'Broken seams')
        self.assertEqual(self.db.get(Order, self.seeded.order.id).status, OrderStatus.COMPLETED)

    def test_general_notes_are_prefixed_and_keep_user_observations(self) -> None:
        delivery_id, item1, _ = self._create()
        process_quality_review(
            self.db,
            delivery_id,
            QualityReviewInput(variants={str(item1): VariantReview(approved=5)}, general_notes='Todo en orden'),
            coordinator=RecordingCoordinator(),
            storage=_storage(),
        )
        delivery = self.db.get(Delivery, delivery_id)
        self.assertEqual(delivery.notes, 'Control de Calidad: Todo en orden')
        self.assertEqual(delivery.user_observations, 'Entregado por Carlos')
        self.assertEqual(self.db.get(DeliveryItem, item1).quality_notes, 'Todo en orden')

    def test_empty_variants_rejected(self) -> None:
        delivery_id, _, _ = self._create()
        with self.assertRaisesRegex(DeliveryValidationError, 'No quality data'):
            process_quality_review(
                self.db,
                delivery_id,
                QualityReviewInput(variants={}),
                coordinator=RecordingCoordinator(),
                storage=_storage(),
            )

    def test_invalid_item_key_rejected_before_any_write(self) -> None:
        delivery_id, item1, _ = self._create()
        with self.assertRaises(DeliveryValidationError):
            process_quality_review(
                self.db,
                delivery_id,
                QualityReviewInput(
                    variants={str(item1): VariantReview(approved=5), 'not-a-uuid': VariantReview(approved=1)},
                ),
                coordinator=RecordingCoordinator(),
                storage=_storage(),
            )
        self.assertEqual(self.db.get(DeliveryItem, item1).quantity_approved, 0)

    def test_unknown_item_rejected_before_any_write(self) -> None:
        delivery_id, item1, _ = self._create()
        unknown = uuid.uuid4()
        coordinator = RecordingCoordinator()

        with self.assertRaises(DeliveryNotFound) as ctx:
            process_quality_review(
                self.db,
                delivery_id,
                QualityReviewInput(
                    variants={str(item1): VariantReview(approved=5), str(unknown): VariantReview(approved=1)},
                ),
                coordinator=coordinator,
                storage=_storage(),
            )

        self.assertIn(str(unknown), str(ctx.exception))
        self.db.expire_all()
        reviewed = self.db.get(DeliveryItem, item1)
        self.assertEqual(reviewed.quantity_approved, 0)
        self.assertEqual(reviewed.quality_status, QualityStatus.PENDING)
        self.assertEqual(coordinator.calls, [])

    def test_sync_error_degrades_outcome(self) -> None:
        delivery_id, item1, item2 = self._create()
        coordinator = RecordingCoordinator(error=InventorySyncError('rate limited', kind='rate_limited'))

        result = process_quality_review(
            self.db,
            delivery_id,
            QualityReviewInput(
                variants={str(item1): VariantReview(approved=5), str(item2): VariantReview(approved=3)},
            ),
            coordinator=coordinator,
            storage=_storage(),
        )

        self.assertTrue(result.success)
        self.assertEqual(result.status, DeliveryStatus.APPROVED)
        self.assertEqual(result.sync_error, 'rate limited')
        self.assertIn('retry the sync manually', result.message)

    def test_evidence_failure_is_a_warning(self) -> None:
        delivery_id, item1, _ = self._create()
        storage = _storage()
        storage.upload.side_effect = StorageError('bucket unavailable')

        with self.assertLogs('sewdle.services.evidence_service', level='WARNING'):
            result = process_quality_review(
                self.db,
                delivery_id,
                QualityReviewInput(
                    variants={str(item1): VariantReview(approved=5)},
                    evidence_files=[UploadedFile(filename='foto.jpg', content_type='image/jpeg', data=b'jpg')],
                ),
                coordinator=RecordingCoordinator(),
                storage=storage,
            )

        self.assertTrue(result.success)
        self.assertTrue(any('Evidence' in warning for warning in result.warnings))

    def test_no_approved_items_skips_sync(self) -> None:
        delivery_id, item1, item2 = self._create()
        coordinator = RecordingCoordinator()
        result = process_quality_review(
            self.db,
            delivery_id,
            QualityReviewInput(
                variants={str(item1): VariantReview(defective=5), str(item2): VariantReview(defective=3)},
            ),
            coordinator=coordinator,
            storage=_storage(),
        )
        self.assertEqual(result.status, DeliveryStatus.REJECTED)
        self.assertEqual(coordinator.calls, [])


class UpdateDeliveryQuantitiesTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.seeded = seed_order(self.db, [('TEE-M', 5)])

    def tearDown(self) -> None:
        self.db.close()

    def test_pending_unsynced_delivery_can_be_edited(self) -> None:
        seeded = seed_delivery(self.db, self.seeded, [5])
        item_id = seeded.items[0].id
        self.assertTrue(
            update_delivery_quantities(self.db, seeded.delivery.id, [QuantityUpdate(item_id=item_id, quantity_delivered=4)])
        )
        self.assertEqual(self.db.get(DeliveryItem, item_id).quantity_delivered, 4)

    def test_approved_delivery_cannot_be_edited(self) -> None:
        seeded = seed_delivery(self.db, self.seeded, [5], status=DeliveryStatus.APPROVED)
        item_id = seeded.items[0].id
        with self.assertRaises(DeliveryEditForbidden):
            update_delivery_quantities(self.db, seeded.delivery.id, [QuantityUpdate(item_id=item_id, quantity_delivered=1)])
        self.assertEqual(self.db.get(DeliveryItem, item_id).quantity_delivered, 5)

    def test_synced_delivery_cannot_be_edited(self) -> None:
        seeded = seed_delivery(self.db, self.seeded, [5], status=DeliveryStatus.IN_QUALITY, synced=True)
        item_id = seeded.items[0].id
        with self.assertRaises(DeliveryEditForbidden):
            update_delivery_quantities(self.db, seeded.delivery.id, [QuantityUpdate(item_id=item_id, quantity_delivered=1)])
        self.assertEqual(self.db.get(DeliveryItem, item_id).quantity_delivered, 5)

    def test_missing_delivery(self) -> None:
        with self.assertRaises(DeliveryNotFound):
            update_delivery_quantities(self.db, uuid.uuid4(), [])


class DeliveryAdministrationTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session()
        self.seeded = seed_order(self.db, [('TEE-M', 5), ('TEE-L', 3)])

    def tearDown(self) -> None:
        self.db.close()

    def test_delete_removes_delivery_and_items(self) -> None:
        seeded = seed_delivery(self.db, self.seeded, [5, 3], status=DeliveryStatus.APPROVED, synced=True)
        self.assertTrue(delete_delivery(self.db, seeded.delivery.id))
        self.assertEqual(self.db.execute(select(func.count(Delivery.id))).scalar_one(), 0)
        self.assertEqual(self.db.execute(select(func.count(DeliveryItem.id))).scalar_one(), 0)

    def test_stats_count_every_status(self) -> None:
        seed_delivery(self.db, self.seeded, [5])
        seed_delivery(self.db, self.seeded, [5], status=DeliveryStatus.APPROVED)
        seed_delivery(self.db, self.seeded, [5], status=DeliveryStatus.APPROVED)
        stats = get_delivery_stats(self.db)
        self.assertEqual(stats['pending'], 1)
        self.assertEqual(stats['approved'], 2)
        self.assertEqual(stats['rejected'], 0)
        self.assertEqual(stats['total'], 3)

    def test_status_update_and_listing(self) -> None:
        seeded = seed_delivery(self.db, self.seeded, [5, 3], tracking_number='DEL-0042')
        update_delivery_status(self.db, seeded.delivery.id, DeliveryStatus.IN_QUALITY)

        rows = list_deliveries(self.db, status=DeliveryStatus.IN_QUALITY)
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['tracking_number'], 'DEL-0042')
        self.assertEqual(rows[0]['order_number'], 'ORD-001')
        self.assertEqual(rows[0]['total_delivered'], 8)

        detail = get_delivery_detail(self.db, seeded.delivery.id)
        self.assertEqual(detail['status'], 'in_quality')
        self.assertEqual(sorted(item['sku_variant'] for item in detail['items']), ['TEE-L', 'TEE-M'])


if __name__ == '__main__':
    unittest.main()
