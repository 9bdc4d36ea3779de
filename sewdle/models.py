from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class DeliveryStatus(str, Enum):
    PENDING = 'pending'
    IN_QUALITY = 'in_quality'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    PARTIAL_APPROVED = 'partial_approved'
    SHIPPED = 'shipped'


class QualityStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    PARTIAL_APPROVED = 'partial_approved'


class FileCategory(str, Enum):
    INVOICE = 'invoice'
    EVIDENCE = 'evidence'


class VerificationStatus(str, Enum):
    PENDING = 'pending'
    VERIFIED = 'verified'
    FAILED = 'failed'


class Workshop(Base):
    __tablename__ = 'workshops'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Product(Base):
    __tablename__ = 'products'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductVariant(Base):
    __tablename__ = 'product_variants'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('products.id', ondelete='CASCADE'), nullable=False)
    size: Mapped[str | None] = mapped_column(Text)
    color: Mapped[str | None] = mapped_column(Text)
    sku_variant: Mapped[str | None] = mapped_column(String(120), index=True)
    stock_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class Order(Base):
    __tablename__ = 'orders'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus, name='order_status'),
        nullable=False,
        default=OrderStatus.PENDING,
        server_default='PENDING',
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class OrderItem(Base):
    __tablename__ = 'order_items'
    __table_args__ = (CheckConstraint('quantity >= 0', name='order_items_quantity_non_negative'),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    product_variant_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('product_variants.id'))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class DeliveryNumberSequence(Base):
    __tablename__ = 'delivery_number_sequences'

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class Delivery(Base):
    __tablename__ = 'deliveries'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tracking_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('orders.id'), nullable=False)
    workshop_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('workshops.id', ondelete='SET NULL'))
    delivery_date: Mapped[date | None] = mapped_column(Date)
    delivered_by: Mapped[str | None] = mapped_column(Text)
    status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, name='delivery_status'),
        nullable=False,
        default=DeliveryStatus.PENDING,
        server_default='PENDING',
    )
    user_observations: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    synced_to_shopify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    sync_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    last_sync_attempt: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sync_error_message: Mapped[str | None] = mapped_column(Text)
    sync_lock_acquired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sync_lock_acquired_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DeliveryItem(Base):
    __tablename__ = 'delivery_items'
    __table_args__ = (
        CheckConstraint('quantity_delivered >= 0', name='delivery_items_delivered_non_negative'),
        CheckConstraint('quantity_approved >= 0', name='delivery_items_approved_non_negative'),
        CheckConstraint('quantity_defective >= 0', name='delivery_items_defective_non_negative'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('deliveries.id', ondelete='CASCADE'), nullable=False)
    order_item_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('order_items.id'), nullable=False)
    quantity_delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    quantity_approved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    quantity_defective: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    quality_status: Mapped[QualityStatus] = mapped_column(
        SQLEnum(QualityStatus, name='quality_status'),
        nullable=False,
        default=QualityStatus.PENDING,
        server_default='PENDING',
    )
    quality_notes: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    synced_to_shopify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    sync_attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    last_sync_attempt: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sync_error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DeliveryFile(Base):
    __tablename__ = 'delivery_files'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('deliveries.id', ondelete='CASCADE'), nullable=False)
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_url: Mapped[str] = mapped_column(Text, nullable=False)
    storage_path: Mapped[str | None] = mapped_column(Text)
    file_type: Mapped[str | None] = mapped_column(String(120))
    file_size: Mapped[int | None] = mapped_column(Integer)
    uploaded_by: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    file_category: Mapped[FileCategory] = mapped_column(
        SQLEnum(FileCategory, name='delivery_file_category'),
        nullable=False,
        default=FileCategory.EVIDENCE,
        server_default='EVIDENCE',
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventorySyncLog(Base):
    __tablename__ = 'inventory_sync_logs'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('deliveries.id', ondelete='CASCADE'), nullable=False)
    sync_results: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    verification_status: Mapped[VerificationStatus] = mapped_column(
        SQLEnum(VerificationStatus, name='sync_verification_status'),
        nullable=False,
        default=VerificationStatus.PENDING,
        server_default='PENDING',
    )
    synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
