from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session

from procurement.config import settings
from procurement.errors import IneligiblePOError, InvalidStateError, NotFoundError, StaleStateError, ValidationError
from procurement.models import (
    ContainerStatus,
    ConversionLogEntry,
    DisposalLogEntry,
    InspectionStatus,
    Location,
    LotStatus,
    PurchaseOrder,
    PurchaseOrderLineItem,
    PurchaseOrderStatus,
    ReceivingLot,
    ReceivingSession,
    ReceivingSessionLine,
    ReceivingSessionStatus,
)
from procurement.services.audit_service import log_audit
from procurement.services.numbering_service import next_lot_number, next_receiving_number
from procurement.services.purchase_order_math_service import (
    LineFulfillment,
    derive_fulfillment_status,
    is_over_received,
)
from procurement.services.purchase_order_service import get_line_items, get_purchase_order, transition_status

logger = logging.getLogger(__name__)

RECEIVABLE_STATUSES = frozenset({PurchaseOrderStatus.SENT, PurchaseOrderStatus.PARTIALLY_RECEIVED})

_FULFILLMENT_RANK = {
    PurchaseOrderStatus.SENT: 0,
    PurchaseOrderStatus.PARTIALLY_RECEIVED: 1,
    PurchaseOrderStatus.RECEIVED: 2,
}


@dataclass(frozen=True)
class ReceivingParams:
    allow_receiving_after_received: bool = True
    over_receipt_flag_ratio: Decimal = Decimal('1.0')


@dataclass(frozen=True)
class LotInfo:
    container_status: ContainerStatus = ContainerStatus.SEALED
    supplier_lot_number: str | None = None
    manufacture_date: date | None = None
    expiry_date: date | None = None
    temperature_reading: Decimal | None = None
    inspection_status: InspectionStatus = InspectionStatus.ACCEPTED
    notes: str | None = None


@dataclass(frozen=True)
class LineReceipt:
    line_item: PurchaseOrderLineItem
    lot: ReceivingLot
    session_line: ReceivingSessionLine
    over_received: bool


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def receiving_params_from_settings() -> ReceivingParams:
    ratio = Decimal(settings.over_receipt_flag_ratio)
    if ratio <= 0:
        raise ValueError('Over-receipt flag ratio must be positive')
    return ReceivingParams(
        allow_receiving_after_received=settings.allow_receiving_after_received,
        over_receipt_flag_ratio=ratio,
    )


def _receivable_statuses(params: ReceivingParams) -> frozenset[PurchaseOrderStatus]:
    if params.allow_receiving_after_received:
        return RECEIVABLE_STATUSES | {PurchaseOrderStatus.RECEIVED}
    return RECEIVABLE_STATUSES


def get_receiving_session(db: Session, *, session_id: int, for_update: bool = False) -> ReceivingSession:
    query = select(ReceivingSession).where(ReceivingSession.id == session_id)
    if for_update:
        query = query.with_for_update()
    session = db.execute(query).scalar_one_or_none()
    if session is None:
        raise NotFoundError('Receiving session not found')
    return session


def _require_in_progress(session: ReceivingSession, *, operation: str) -> None:
    if session.status != ReceivingSessionStatus.IN_PROGRESS:
        raise InvalidStateError(
            f'Receiving session {session.receiving_number} is already {session.status.value}',
            operation=operation,
            current_status=session.status.value,
        )


def _session_lines(db: Session, *, session_id: int) -> list[ReceivingSessionLine]:
    return db.execute(
        select(ReceivingSessionLine)
        .where(ReceivingSessionLine.receiving_session_id == session_id)
        .order_by(ReceivingSessionLine.id.asc())
    ).scalars().all()


def start_receiving_session(
    db: Session,
    *,
    purchase_order_id: int,
    received_by: str | None,
    location_id: int | None = None,
    received_date: date | None = None,
    carrier_name: str | None = None,
    truck_number: str | None = None,
    trailer_number: str | None = None,
    driver_name: str | None = None,
    seal_number: str | None = None,
    seal_intact: bool | None = None,
    notes: str | None = None,
    params: ReceivingParams | None = None,
) -> ReceivingSession:
    params = params or receiving_params_from_settings()
    po = get_purchase_order(db, purchase_order_id=purchase_order_id, for_update=True)
    if po.status not in _receivable_statuses(params):
        raise IneligiblePOError(
            f'Purchase order {po.po_number} is {po.status.value} and cannot be received against',
            current_status=po.status.value,
        )

    location_id = location_id if location_id is not None else po.delivery_location_id
    if location_id is not None:
        location = db.get(Location, location_id)
        if location is None or not location.active:
            raise ValidationError('Location not found')

    received_date = received_date or date.today()
    session = ReceivingSession(
        purchase_order_id=po.id,
        receiving_number=next_receiving_number(db, received_date=received_date),
        location_id=location_id,
        received_date=received_date,
        received_by=received_by,
        status=ReceivingSessionStatus.IN_PROGRESS,
        carrier_name=carrier_name,
        truck_number=truck_number,
        trailer_number=trailer_number,
        driver_name=driver_name,
        seal_number=seal_number,
        seal_intact=seal_intact,
        notes=notes,
    )
    db.add(session)
    db.flush()

    log_audit(
        db,
        actor_id=received_by,
        action='RECEIVING_SESSION_STARTED',
        purchase_order_id=po.id,
        receiving_session_id=session.id,
        metadata={'receiving_number': session.receiving_number, 'po_status': po.status.value},
    )
    logger.info(
        'Receiving session %s started for %s',
        session.receiving_number,
        po.po_number,
        extra={'receiving_session_id': session.id, 'purchase_order_id': po.id},
    )
    return session


def record_line_receipt(
    db: Session,
    *,
    session_id: int,
    purchase_order_item_id: int,
    quantity: Decimal,
    lot_info: LotInfo | None = None,
    actor_id: str | None = None,
    params: ReceivingParams | None = None,
) -> LineReceipt:
    params = params or receiving_params_from_settings()
    lot_info = lot_info or LotInfo()
    quantity = Decimal(quantity)
    if quantity <= 0:
        raise ValidationError('Received quantity must be greater than zero')
    if lot_info.container_status == ContainerStatus.EMPTY:
        raise ValidationError('A received lot must be sealed or open')

    session = get_receiving_session(db, session_id=session_id, for_update=True)
    _require_in_progress(session, operation='record_line_receipt')

    line = db.get(PurchaseOrderLineItem, purchase_order_item_id)
    if line is None or line.purchase_order_id != session.purchase_order_id:
        raise ValidationError('Line item does not belong to this purchase order')
    po = db.get(PurchaseOrder, session.purchase_order_id)
    now = _now()

    db.execute(
        update(PurchaseOrderLineItem)
        .where(PurchaseOrderLineItem.id == line.id)
        .values(quantity_received=PurchaseOrderLineItem.quantity_received + quantity, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.refresh(line)

    lot = ReceivingLot(
        internal_lot_number=next_lot_number(db, received_date=session.received_date),
        material_id=line.material_id,
        unit_id=line.unit_id,
        supplier_id=po.supplier_id,
        location_id=session.location_id,
        quantity_received=quantity,
        container_status=lot_info.container_status,
        status=LotStatus.HOLD if lot_info.inspection_status == InspectionStatus.HOLD else LotStatus.AVAILABLE,
        supplier_lot_number=lot_info.supplier_lot_number,
        received_date=session.received_date,
        expiry_date=lot_info.expiry_date,
        opened_at=now if lot_info.container_status == ContainerStatus.OPEN else None,
        notes=lot_info.notes,
    )
    db.add(lot)
    db.flush()

    session_line = ReceivingSessionLine(
        receiving_session_id=session.id,
        purchase_order_item_id=line.id,
        quantity_received=quantity,
        receiving_lot_id=lot.id,
        supplier_lot_number=lot_info.supplier_lot_number,
        manufacture_date=lot_info.manufacture_date,
        expiry_date=lot_info.expiry_date,
        temperature_reading=lot_info.temperature_reading,
        inspection_status=lot_info.inspection_status,
        notes=lot_info.notes,
    )
    db.add(session_line)
    db.flush()

    over_received = is_over_received(
        LineFulfillment(Decimal(line.quantity_ordered), Decimal(line.quantity_received)),
        flag_ratio=params.over_receipt_flag_ratio,
    )
    if over_received:
        logger.warning(
            'Line %s on %s received %s against %s ordered',
            line.id,
            po.po_number,
            line.quantity_received,
            line.quantity_ordered,
            extra={'purchase_order_id': po.id, 'receiving_session_id': session.id},
        )

    log_audit(
        db,
        actor_id=actor_id,
        action='RECEIVING_LINE_RECORDED',
        purchase_order_id=po.id,
        receiving_session_id=session.id,
        metadata={
            'purchase_order_item_id': line.id,
            'quantity': str(quantity),
            'lot_number': lot.internal_lot_number,
            'over_received': over_received,
        },
    )
    logger.info(
        'Received %s on line %s into lot %s',
        quantity,
        line.id,
        lot.internal_lot_number,
        extra={'receiving_session_id': session.id, 'receiving_lot_id': lot.id},
    )
    return LineReceipt(line_item=line, lot=lot, session_line=session_line, over_received=over_received)


def _reconcile_po_status(
    db: Session,
    *,
    purchase_order_id: int,
    allow_downgrade: bool = False,
    allow_upgrade: bool = True,
) -> PurchaseOrder:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    if po.status not in _FULFILLMENT_RANK:
        return po

    derived = derive_fulfillment_status(
        [
            LineFulfillment(Decimal(line.quantity_ordered), Decimal(line.quantity_received))
            for line in get_line_items(db, purchase_order_id=po.id)
        ]
    )
    if derived is None or derived == po.status:
        return po
    moving_up = _FULFILLMENT_RANK[derived] > _FULFILLMENT_RANK[po.status]
    if (moving_up and not allow_upgrade) or (not moving_up and not allow_downgrade):
        return po

    return transition_status(
        db,
        po,
        operation='reconcile_receipt',
        allowed_from=frozenset(_FULFILLMENT_RANK),
        to_status=derived,
    )


def complete_receiving_session(
    db: Session,
    *,
    session_id: int,
    actor_id: str | None = None,
    inspection_passed: bool | None = None,
    inspection_notes: str | None = None,
) -> PurchaseOrder:
    session = get_receiving_session(db, session_id=session_id)
    _require_in_progress(session, operation='complete')

    now = _now()
    result = db.execute(
        update(ReceivingSession)
        .where(ReceivingSession.id == session.id, ReceivingSession.status == ReceivingSessionStatus.IN_PROGRESS)
        .values(
            status=ReceivingSessionStatus.COMPLETED,
            completed_at=now,
            inspection_passed=inspection_passed,
            inspection_notes=inspection_notes,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleStateError(f'Receiving session {session.receiving_number} was changed by another user')
    db.refresh(session)

    po = _reconcile_po_status(db, purchase_order_id=session.purchase_order_id)
    log_audit(
        db,
        actor_id=actor_id,
        action='RECEIVING_SESSION_COMPLETED',
        purchase_order_id=po.id,
        receiving_session_id=session.id,
        metadata={'po_status': po.status.value, 'inspection_passed': inspection_passed},
    )
    logger.info(
        'Receiving session %s completed; %s is %s',
        session.receiving_number,
        po.po_number,
        po.status.value,
        extra={'receiving_session_id': session.id, 'purchase_order_id': po.id},
    )
    return po


def _lot_was_consumed(db: Session, lot: ReceivingLot, *, quantity: Decimal) -> bool:
    if lot.container_status == ContainerStatus.EMPTY or Decimal(lot.quantity_received) != quantity:
        return True
    child = db.execute(select(ReceivingLot.id).where(ReceivingLot.parent_lot_id == lot.id).limit(1)).first()
    if child:
        return True
    conversion = db.execute(
        select(ConversionLogEntry.id)
        .where(or_(ConversionLogEntry.source_lot_id == lot.id, ConversionLogEntry.target_lot_id == lot.id))
        .limit(1)
    ).first()
    if conversion:
        return True
    disposal = db.execute(
        select(DisposalLogEntry.id).where(DisposalLogEntry.receiving_lot_id == lot.id).limit(1)
    ).first()
    return disposal is not None


def cancel_receiving_session(
    db: Session,
    *,
    session_id: int,
    actor_id: str | None = None,
    reason: str | None = None,
) -> PurchaseOrder:
    """Undo every receipt recorded in an in-progress session, then delete it.

    Line quantities are decremented by exactly what the session added and the
    lots it created are removed, so the purchase order ends up as it was
    before the session started.
    """
    session = get_receiving_session(db, session_id=session_id, for_update=True)
    _require_in_progress(session, operation='cancel')
    db.flush()

    session_lines = _session_lines(db, session_id=session.id)
    lot_ids = [line.receiving_lot_id for line in session_lines if line.receiving_lot_id is not None]
    lots = {
        lot.id: lot
        for lot in db.execute(select(ReceivingLot).where(ReceivingLot.id.in_(lot_ids))).scalars().all()
    } if lot_ids else {}
    for line in session_lines:
        lot = lots.get(line.receiving_lot_id)
        if lot is not None and _lot_was_consumed(db, lot, quantity=Decimal(line.quantity_received)):
            raise InvalidStateError(
                f'Lot {lot.internal_lot_number} has already been used; receiving session cannot be cancelled',
                operation='cancel',
                current_status=session.status.value,
            )

    result = db.execute(
        update(ReceivingSession)
        .where(ReceivingSession.id == session.id, ReceivingSession.status == ReceivingSessionStatus.IN_PROGRESS)
        .values(status=ReceivingSessionStatus.CANCELLED, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleStateError(f'Receiving session {session.receiving_number} was changed by another user')

    for line in session_lines:
        db.execute(
            update(PurchaseOrderLineItem)
            .where(PurchaseOrderLineItem.id == line.purchase_order_item_id)
            .values(quantity_received=PurchaseOrderLineItem.quantity_received - line.quantity_received)
            .execution_options(synchronize_session=False)
        )
        item = db.get(PurchaseOrderLineItem, line.purchase_order_item_id)
        if item is not None:
            db.expire(item)

    purchase_order_id = session.purchase_order_id
    receiving_number = session.receiving_number
    db.execute(delete(ReceivingSessionLine).where(ReceivingSessionLine.receiving_session_id == session.id))
    if lot_ids:
        db.execute(delete(ReceivingLot).where(ReceivingLot.id.in_(lot_ids)))
    db.execute(delete(ReceivingSession).where(ReceivingSession.id == session.id))
    db.flush()

    # Other in-progress sessions still hold uncompleted quantity on these
    # lines, so cancelling may only restore or lower the status.
    po = _reconcile_po_status(db, purchase_order_id=purchase_order_id, allow_downgrade=True, allow_upgrade=False)
    log_audit(
        db,
        actor_id=actor_id,
        action='RECEIVING_SESSION_CANCELLED',
        purchase_order_id=po.id,
        metadata={
            'receiving_session_id': session_id,
            'receiving_number': receiving_number,
            'lines_reversed': len(session_lines),
            'reason': reason or '',
        },
    )
    logger.info(
        'Receiving session %s cancelled; %d line(s) reversed',
        receiving_number,
        len(session_lines),
        extra={'receiving_session_id': session_id, 'purchase_order_id': po.id},
    )
    return po


def session_to_dict(session: ReceivingSession) -> dict:
    return {
        'id': session.id,
        'purchase_order_id': session.purchase_order_id,
        'receiving_number': session.receiving_number,
        'location_id': session.location_id,
        'received_date': session.received_date,
        'received_by': session.received_by,
        'status': session.status.value,
        'carrier_name': session.carrier_name,
        'truck_number': session.truck_number,
        'trailer_number': session.trailer_number,
        'driver_name': session.driver_name,
        'seal_number': session.seal_number,
        'seal_intact': session.seal_intact,
        'inspection_passed': session.inspection_passed,
        'inspection_notes': session.inspection_notes,
        'notes': session.notes,
        'completed_at': session.completed_at,
    }


def get_receiving_session_detail(db: Session, *, session_id: int) -> dict:
    session = get_receiving_session(db, session_id=session_id)
    rows = db.execute(
        select(ReceivingSessionLine, ReceivingLot.internal_lot_number, ReceivingLot.container_status)
        .outerjoin(ReceivingLot, ReceivingLot.id == ReceivingSessionLine.receiving_lot_id)
        .where(ReceivingSessionLine.receiving_session_id == session.id)
        .order_by(ReceivingSessionLine.id.asc())
    ).all()
    return {
        **session_to_dict(session),
        'lines': [
            {
                'id': line.id,
                'purchase_order_item_id': line.purchase_order_item_id,
                'quantity_received': line.quantity_received,
                'receiving_lot_id': line.receiving_lot_id,
                'internal_lot_number': lot_number,
                'container_status': container_status.value if container_status else None,
                'supplier_lot_number': line.supplier_lot_number,
                'manufacture_date': line.manufacture_date,
                'expiry_date': line.expiry_date,
                'temperature_reading': line.temperature_reading,
                'inspection_status': line.inspection_status.value,
                'notes': line.notes,
            }
            for line, lot_number, container_status in rows
        ],
    }


def list_receiving_sessions(
    db: Session,
    *,
    purchase_order_id: int | None = None,
    status: ReceivingSessionStatus | None = None,
    limit: int = 100,
) -> list[dict]:
    query = select(ReceivingSession).order_by(ReceivingSession.received_date.desc(), ReceivingSession.id.desc()).limit(limit)
    if purchase_order_id is not None:
        query = query.where(ReceivingSession.purchase_order_id == purchase_order_id)
    if status is not None:
        query = query.where(ReceivingSession.status == status)
    return [session_to_dict(session) for session in db.execute(query).scalars().all()]
