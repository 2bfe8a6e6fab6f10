from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from procurement.models import (
    Base,
    ContainerStatus,
    Location,
    Material,
    PurchaseOrder,
    ReceivingLot,
    Supplier,
    UnitOfMeasure,
)
from procurement.services.purchase_order_math_service import ApprovalParams
from procurement.services.purchase_order_service import LineItemInput, create_purchase_order, send_to_supplier

APPROVAL = ApprovalParams(threshold=Decimal('5000.00'))


def make_sessionmaker() -> sessionmaker:
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@dataclass
class ReferenceData:
    supplier: Supplier
    location: Location
    case_unit: UnitOfMeasure
    each_unit: UnitOfMeasure
    material: Material


def seed_reference(db: Session, *, conversion_factor: Decimal | None = Decimal('6')) -> ReferenceData:
    case_unit = UnitOfMeasure(code='CS', name='Case')
    each_unit = UnitOfMeasure(code='EA', name='Each')
    db.add_all([case_unit, each_unit])
    db.flush()

    supplier = Supplier(code='ACME', name='Acme Food Supply', active=True)
    location = Location(location_code='MAIN', name='Main Warehouse', active=True)
    material = Material(
        code='SYRUP-6',
        name='Syrup, case of 6',
        base_unit_id=each_unit.id,
        conversion_factor=conversion_factor,
        active=True,
    )
    db.add_all([supplier, location, material])
    db.flush()
    return ReferenceData(
        supplier=supplier,
        location=location,
        case_unit=case_unit,
        each_unit=each_unit,
        material=material,
    )


def build_po(
    db: Session,
    ref: ReferenceData,
    *,
    quantity: Decimal = Decimal('100'),
    unit_cost: Decimal = Decimal('30'),
    created_by: str = 'buyer-1',
) -> PurchaseOrder:
    return create_purchase_order(
        db,
        supplier_id=ref.supplier.id,
        delivery_location_id=ref.location.id,
        lines=[
            LineItemInput(
                material_id=ref.material.id,
                unit_id=ref.case_unit.id,
                quantity_ordered=quantity,
                unit_cost=unit_cost,
            )
        ],
        created_by=created_by,
        params=APPROVAL,
    )


def build_sent_po(db: Session, ref: ReferenceData, *, quantity: Decimal = Decimal('100')) -> PurchaseOrder:
    po = build_po(db, ref, quantity=quantity, unit_cost=Decimal('10'))
    return send_to_supplier(db, purchase_order_id=po.id, sender_id='buyer-1')


def add_lot(
    db: Session,
    ref: ReferenceData,
    *,
    number: str,
    quantity: Decimal,
    container_status: ContainerStatus = ContainerStatus.SEALED,
    parent_lot_id: int | None = None,
) -> ReceivingLot:
    unit_id = ref.case_unit.id if container_status == ContainerStatus.SEALED else ref.each_unit.id
    lot = ReceivingLot(
        internal_lot_number=number,
        material_id=ref.material.id,
        unit_id=unit_id,
        supplier_id=ref.supplier.id,
        location_id=ref.location.id,
        parent_lot_id=parent_lot_id,
        quantity_received=quantity,
        container_status=container_status,
    )
    db.add(lot)
    db.flush()
    return lot
