from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from sewdle.models import Delivery, DeliveryItem, Order, OrderItem, OrderStatus


@dataclass(frozen=True)
class OrderDeliveryStats:
    total_ordered: int
    total_delivered: int
    total_approved: int
    total_defective: int

    @property
    def total_pending(self) -> int:
        return max(self.total_ordered - self.total_approved - self.total_defective, 0)


def get_order_delivery_stats(db: Session, order_id: uuid.UUID) -> OrderDeliveryStats:
    total_ordered = db.execute(
        select(func.coalesce(func.sum(OrderItem.quantity), 0)).where(OrderItem.order_id == order_id)
    ).scalar_one()
    delivered, approved, defective = db.execute(
        select(
            func.coalesce(func.sum(DeliveryItem.quantity_delivered), 0),
            func.coalesce(func.sum(DeliveryItem.quantity_approved), 0),
            func.coalesce(func.sum(DeliveryItem.quantity_defective), 0),
        )
        .select_from(DeliveryItem)
        .join(Delivery, Delivery.id == DeliveryItem.delivery_id)
        .where(Delivery.order_id == order_id)
    ).one()
    return OrderDeliveryStats(
        total_ordered=int(total_ordered),
        total_delivered=int(delivered),
        total_approved=int(approved),
        total_defective=int(defective),
    )


def derive_order_status(stats: OrderDeliveryStats) -> tuple[OrderStatus, str]:
    processed = stats.total_approved + stats.total_defective
    if stats.total_ordered > 0 and processed >= stats.total_ordered:
        note = f'Order completed: {stats.total_approved} approved'
        if stats.total_defective:
            note += f', {stats.total_defective} returned'
        return OrderStatus.COMPLETED, f'{note} of {stats.total_ordered} total.'
    if stats.total_delivered > 0:
        return OrderStatus.IN_PROGRESS, (
            f'Order in progress: {stats.total_approved} approved, {stats.total_defective} returned, '
            f'{stats.total_pending} pending of {stats.total_ordered} total.'
        )
    return OrderStatus.PENDING, ''


def refresh_order_status(db: Session, *, order_id: uuid.UUID) -> OrderStatus:
    order = db.get(Order, order_id)
    if not order:
        raise ValueError('Order not found')
    if order.status == OrderStatus.CANCELLED:
        return order.status

    status, note = derive_order_status(get_order_delivery_stats(db, order_id))
    order.status = status
    order.notes = note or None
    order.updated_at = datetime.now(tz=timezone.utc)
    db.commit()
    return status
