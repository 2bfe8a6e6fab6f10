"""Closed set of lot shapes the conversion engine works with.

A ``ReceivingLot`` row is projected onto exactly one of ``SealedLot``,
``OpenLot`` or ``EmptyLot`` according to its container status, so each
operation states the shape it accepts instead of probing row fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from procurement.models import ContainerStatus, ReceivingLot


@dataclass(frozen=True)
class SealedLot:
    id: int
    internal_lot_number: str
    material_id: int
    unit_id: int
    location_id: int | None
    expiry_date: date | None
    units_on_hand: Decimal
    conversion_factor: Decimal

    def can_open(self) -> bool:
        return self.units_on_hand >= 1


@dataclass(frozen=True)
class OpenLot:
    id: int
    internal_lot_number: str
    material_id: int
    unit_id: int
    parent_lot_id: int | None
    remaining: Decimal
    conversion_factor: Decimal

    def is_full(self) -> bool:
        return self.remaining >= self.conversion_factor


@dataclass(frozen=True)
class EmptyLot:
    id: int
    internal_lot_number: str
    material_id: int
    unit_id: int


Lot = SealedLot | OpenLot | EmptyLot


def as_variant(row: ReceivingLot, *, conversion_factor: Decimal) -> Lot:
    if row.container_status == ContainerStatus.EMPTY:
        return EmptyLot(
            id=row.id,
            internal_lot_number=row.internal_lot_number,
            material_id=row.material_id,
            unit_id=row.unit_id,
        )
    if row.container_status == ContainerStatus.OPEN:
        return OpenLot(
            id=row.id,
            internal_lot_number=row.internal_lot_number,
            material_id=row.material_id,
            unit_id=row.unit_id,
            parent_lot_id=row.parent_lot_id,
            remaining=Decimal(row.quantity_received),
            conversion_factor=conversion_factor,
        )
    return SealedLot(
        id=row.id,
        internal_lot_number=row.internal_lot_number,
        material_id=row.material_id,
        unit_id=row.unit_id,
        location_id=row.location_id,
        expiry_date=row.expiry_date,
        units_on_hand=Decimal(row.quantity_received),
        conversion_factor=conversion_factor,
    )
