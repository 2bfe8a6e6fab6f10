from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
ID = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class PurchaseOrderStatus(str, Enum):
    DRAFT = 'draft'
    PENDING_APPROVAL = 'pending_approval'
    APPROVED = 'approved'
    SENT = 'sent'
    PARTIALLY_RECEIVED = 'partially_received'
    RECEIVED = 'received'
    CANCELLED = 'cancelled'


class ReceivingSessionStatus(str, Enum):
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class ContainerStatus(str, Enum):
    SEALED = 'sealed'
    OPEN = 'open'
    EMPTY = 'empty'


class LotStatus(str, Enum):
    AVAILABLE = 'available'
    HOLD = 'hold'


class InspectionStatus(str, Enum):
    ACCEPTED = 'accepted'
    HOLD = 'hold'


class ConversionType(str, Enum):
    REASSEMBLY = 'reassembly'
    DISASSEMBLY = 'disassembly'


# Reference data. Read-only from the point of view of the procurement core.


class Supplier(Base):
    __tablename__ = 'suppliers'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Location(Base):
    __tablename__ = 'locations'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    location_code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class UnitOfMeasure(Base):
    __tablename__ = 'units_of_measure'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)


class Material(Base):
    __tablename__ = 'materials'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    base_unit_id: Mapped[int | None] = mapped_column(ID, ForeignKey('units_of_measure.id'))
    # Base-unit quantity of one full sealed container.
    conversion_factor: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# Purchasing.


class PurchaseOrder(Base):
    __tablename__ = 'purchase_orders'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    po_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    supplier_id: Mapped[int] = mapped_column(ID, ForeignKey('suppliers.id'), nullable=False)
    delivery_location_id: Mapped[int | None] = mapped_column(ID, ForeignKey('locations.id'))
    order_date: Mapped[date] = mapped_column(Date, nullable=False)
    expected_delivery_date: Mapped[date | None] = mapped_column(Date)
    status: Mapped[PurchaseOrderStatus] = mapped_column(
        SQLEnum(PurchaseOrderStatus, name='purchase_order_status'),
        nullable=False,
        default=PurchaseOrderStatus.DRAFT,
        server_default='DRAFT',
    )
    requires_approval: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    shipping_method: Mapped[str | None] = mapped_column(Text)
    shipping_terms: Mapped[str | None] = mapped_column(Text)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    shipping_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0'
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)
    internal_notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    submitted_by: Mapped[str | None] = mapped_column(Text)
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by: Mapped[str | None] = mapped_column(Text)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approval_notes: Mapped[str | None] = mapped_column(Text)
    sent_by: Mapped[str | None] = mapped_column(Text)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_by: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class PurchaseOrderLineItem(Base):
    __tablename__ = 'purchase_order_items'
    __table_args__ = (
        CheckConstraint('quantity_ordered > 0', name='purchase_order_items_quantity_ordered_ck'),
        CheckConstraint('quantity_received >= 0', name='purchase_order_items_quantity_received_ck'),
    )

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    purchase_order_id: Mapped[int] = mapped_column(ID, ForeignKey('purchase_orders.id', ondelete='CASCADE'), nullable=False)
    material_id: Mapped[int] = mapped_column(ID, ForeignKey('materials.id'), nullable=False)
    unit_id: Mapped[int] = mapped_column(ID, ForeignKey('units_of_measure.id'), nullable=False)
    quantity_ordered: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    quantity_received: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal('0'), server_default='0'
    )
    unit_cost: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False, default=Decimal('0'), server_default='0')
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    supplier_item_number: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# Receiving.


class ReceivingSession(Base):
    __tablename__ = 'receiving_sessions'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    purchase_order_id: Mapped[int] = mapped_column(ID, ForeignKey('purchase_orders.id'), nullable=False)
    receiving_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    location_id: Mapped[int | None] = mapped_column(ID, ForeignKey('locations.id'))
    received_date: Mapped[date] = mapped_column(Date, nullable=False)
    received_by: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ReceivingSessionStatus] = mapped_column(
        SQLEnum(ReceivingSessionStatus, name='receiving_session_status'),
        nullable=False,
        default=ReceivingSessionStatus.IN_PROGRESS,
        server_default='IN_PROGRESS',
    )
    carrier_name: Mapped[str | None] = mapped_column(Text)
    truck_number: Mapped[str | None] = mapped_column(Text)
    trailer_number: Mapped[str | None] = mapped_column(Text)
    driver_name: Mapped[str | None] = mapped_column(Text)
    seal_number: Mapped[str | None] = mapped_column(Text)
    seal_intact: Mapped[bool | None] = mapped_column(Boolean)
    inspection_passed: Mapped[bool | None] = mapped_column(Boolean)
    inspection_notes: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReceivingSessionLine(Base):
    __tablename__ = 'receiving_session_lines'
    __table_args__ = (
        CheckConstraint('quantity_received > 0', name='receiving_session_lines_quantity_ck'),
    )

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    receiving_session_id: Mapped[int] = mapped_column(
        ID, ForeignKey('receiving_sessions.id', ondelete='CASCADE'), nullable=False
    )
    purchase_order_item_id: Mapped[int] = mapped_column(ID, ForeignKey('purchase_order_items.id'), nullable=False)
    quantity_received: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    receiving_lot_id: Mapped[int | None] = mapped_column(ID, ForeignKey('receiving_lots.id', ondelete='SET NULL'))
    supplier_lot_number: Mapped[str | None] = mapped_column(Text)
    manufacture_date: Mapped[date | None] = mapped_column(Date)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    temperature_reading: Mapped[Decimal | None] = mapped_column(Numeric(6, 2))
    inspection_status: Mapped[InspectionStatus] = mapped_column(
        SQLEnum(InspectionStatus, name='inspection_status'),
        nullable=False,
        default=InspectionStatus.ACCEPTED,
        server_default='ACCEPTED',
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# Inventory lots and their append-only history.


class ReceivingLot(Base):
    __tablename__ = 'receiving_lots'
    __table_args__ = (
        CheckConstraint('quantity_received >= 0', name='receiving_lots_quantity_ck'),
    )

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    internal_lot_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    material_id: Mapped[int] = mapped_column(ID, ForeignKey('materials.id'), nullable=False)
    unit_id: Mapped[int] = mapped_column(ID, ForeignKey('units_of_measure.id'), nullable=False)
    supplier_id: Mapped[int | None] = mapped_column(ID, ForeignKey('suppliers.id'))
    location_id: Mapped[int | None] = mapped_column(ID, ForeignKey('locations.id'))
    parent_lot_id: Mapped[int | None] = mapped_column(ID, ForeignKey('receiving_lots.id', ondelete='SET NULL'))
    # Current remaining quantity, in this lot's unit.
    quantity_received: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    container_status: Mapped[ContainerStatus] = mapped_column(
        SQLEnum(ContainerStatus, name='container_status'),
        nullable=False,
        default=ContainerStatus.SEALED,
        server_default='SEALED',
    )
    status: Mapped[LotStatus] = mapped_column(
        SQLEnum(LotStatus, name='lot_status'),
        nullable=False,
        default=LotStatus.AVAILABLE,
        server_default='AVAILABLE',
    )
    supplier_lot_number: Mapped[str | None] = mapped_column(Text)
    received_date: Mapped[date | None] = mapped_column(Date)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    opened_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ConversionLogEntry(Base):
    __tablename__ = 'inventory_conversion_log'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    source_lot_id: Mapped[int] = mapped_column(ID, ForeignKey('receiving_lots.id'), nullable=False)
    source_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    source_unit_id: Mapped[int] = mapped_column(ID, ForeignKey('units_of_measure.id'), nullable=False)
    target_lot_id: Mapped[int] = mapped_column(ID, ForeignKey('receiving_lots.id'), nullable=False)
    target_quantity: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    target_unit_id: Mapped[int] = mapped_column(ID, ForeignKey('units_of_measure.id'), nullable=False)
    conversion_type: Mapped[ConversionType] = mapped_column(SQLEnum(ConversionType, name='conversion_type'), nullable=False)
    reason_code: Mapped[str] = mapped_column(Text, nullable=False)
    reason_notes: Mapped[str | None] = mapped_column(Text)
    performed_by: Mapped[str | None] = mapped_column(Text)
    performed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DisposalLogEntry(Base):
    __tablename__ = 'disposal_log'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    receiving_lot_id: Mapped[int] = mapped_column(ID, ForeignKey('receiving_lots.id'), nullable=False)
    material_id: Mapped[int] = mapped_column(ID, ForeignKey('materials.id'), nullable=False)
    quantity_disposed: Mapped[Decimal] = mapped_column(Numeric(14, 4), nullable=False)
    unit_id: Mapped[int] = mapped_column(ID, ForeignKey('units_of_measure.id'), nullable=False)
    total_value: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal('0.00'), server_default='0')
    disposal_reason_code: Mapped[str] = mapped_column(Text, nullable=False)
    disposal_reason_notes: Mapped[str | None] = mapped_column(Text)
    source_type: Mapped[str] = mapped_column(Text, nullable=False)
    disposed_by: Mapped[str | None] = mapped_column(Text)
    disposed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DocumentSequence(Base):
    __tablename__ = 'document_sequences'

    # Document number prefix, e.g. 'LOT-20260309-'.
    name: Mapped[str] = mapped_column(Text, primary_key=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default='0')


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(ID, primary_key=True)
    actor_id: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    purchase_order_id: Mapped[int | None] = mapped_column(ID, ForeignKey('purchase_orders.id', ondelete='SET NULL'))
    receiving_session_id: Mapped[int | None] = mapped_column(
        ID, ForeignKey('receiving_sessions.id', ondelete='SET NULL')
    )
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
