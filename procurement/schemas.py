from __future__ import annotations

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field

from procurement.models import ContainerStatus, InspectionStatus


class LineItemIn(BaseModel):
    material_id: int
    unit_id: int
    quantity_ordered: Decimal
    unit_cost: Decimal
    supplier_item_number: str | None = None
    notes: str | None = None


class PurchaseOrderCreate(BaseModel):
    supplier_id: int
    delivery_location_id: int
    lines: list[LineItemIn] = Field(default_factory=list)
    order_date: date | None = None
    expected_delivery_date: date | None = None
    tax_amount: Decimal = Decimal('0')
    shipping_amount: Decimal = Decimal('0')
    shipping_method: str | None = None
    shipping_terms: str | None = None
    notes: str | None = None
    internal_notes: str | None = None


class PurchaseOrderUpdate(BaseModel):
    supplier_id: int | None = None
    delivery_location_id: int | None = None
    order_date: date | None = None
    expected_delivery_date: date | None = None
    tax_amount: Decimal | None = None
    shipping_amount: Decimal | None = None
    shipping_method: str | None = None
    shipping_terms: str | None = None
    notes: str | None = None
    internal_notes: str | None = None
    lines: list[LineItemIn] | None = None


class ApproveIn(BaseModel):
    notes: str | None = None


class RejectIn(BaseModel):
    notes: str


class CancelIn(BaseModel):
    reason: str | None = None


class ReceivingSessionStart(BaseModel):
    purchase_order_id: int
    location_id: int | None = None
    received_date: date | None = None
    carrier_name: str | None = None
    truck_number: str | None = None
    trailer_number: str | None = None
    driver_name: str | None = None
    seal_number: str | None = None
    seal_intact: bool | None = None
    notes: str | None = None


class LineReceiptIn(BaseModel):
    purchase_order_item_id: int
    quantity: Decimal
    container_status: ContainerStatus = ContainerStatus.SEALED
    supplier_lot_number: str | None = None
    manufacture_date: date | None = None
    expiry_date: date | None = None
    temperature_reading: Decimal | None = None
    inspection_status: InspectionStatus = InspectionStatus.ACCEPTED
    notes: str | None = None


class CompleteSessionIn(BaseModel):
    inspection_passed: bool | None = None
    inspection_notes: str | None = None


class ReassembleIn(BaseModel):
    reason_code: str = 'UNUSED_RETURN'
    notes: str | None = None


class DisposeIn(BaseModel):
    reason_code: str = 'OPEN_EXPIRED'
    source_type: str = 'expiry'
    notes: str | None = None


class OpenContainerIn(BaseModel):
    reason_code: str = 'ISSUE_TO_PROD'
    notes: str | None = None
