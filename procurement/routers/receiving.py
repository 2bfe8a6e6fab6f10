from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from procurement.db import get_db
from procurement.dependencies import get_actor_id, http_error
from procurement.errors import ProcurementError
from procurement.models import ReceivingSessionStatus
from procurement.schemas import CancelIn, CompleteSessionIn, LineReceiptIn, ReceivingSessionStart
from procurement.services.purchase_order_service import get_purchase_order_detail, line_item_to_dict
from procurement.services.receiving_service import (
    LotInfo,
    cancel_receiving_session,
    complete_receiving_session,
    get_receiving_session_detail,
    list_receiving_sessions,
    receiving_params_from_settings,
    record_line_receipt,
    start_receiving_session,
)

router = APIRouter(prefix='/receiving-sessions', tags=['receiving'])


@router.post('', status_code=201)
def start(
    payload: ReceivingSessionStart,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        session = start_receiving_session(
            db,
            purchase_order_id=payload.purchase_order_id,
            received_by=actor_id,
            location_id=payload.location_id,
            received_date=payload.received_date,
            carrier_name=payload.carrier_name,
            truck_number=payload.truck_number,
            trailer_number=payload.trailer_number,
            driver_name=payload.driver_name,
            seal_number=payload.seal_number,
            seal_intact=payload.seal_intact,
            notes=payload.notes,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_receiving_session_detail(db, session_id=session.id)


@router.get('')
def index(
    purchase_order_id: int | None = None,
    status: ReceivingSessionStatus | None = None,
    db: Session = Depends(get_db),
):
    return list_receiving_sessions(db, purchase_order_id=purchase_order_id, status=status)


@router.get('/{session_id}')
def detail(session_id: int, db: Session = Depends(get_db)):
    try:
        return get_receiving_session_detail(db, session_id=session_id)
    except ProcurementError as exc:
        raise http_error(exc) from exc


@router.post('/{session_id}/lines', status_code=201)
def record_line(
    session_id: int,
    payload: LineReceiptIn,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    params = receiving_params_from_settings()
    lot_info = LotInfo(**payload.model_dump(exclude={'purchase_order_item_id', 'quantity'}))
    try:
        receipt = record_line_receipt(
            db,
            session_id=session_id,
            purchase_order_item_id=payload.purchase_order_item_id,
            quantity=payload.quantity,
            lot_info=lot_info,
            actor_id=actor_id,
            params=params,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return {
        'line_item': line_item_to_dict(receipt.line_item, flag_ratio=params.over_receipt_flag_ratio),
        'lot': {
            'id': receipt.lot.id,
            'internal_lot_number': receipt.lot.internal_lot_number,
            'quantity_received': receipt.lot.quantity_received,
            'container_status': receipt.lot.container_status.value,
            'status': receipt.lot.status.value,
        },
        'over_received': receipt.over_received,
    }


@router.post('/{session_id}/complete')
def complete(
    session_id: int,
    payload: CompleteSessionIn | None = None,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    payload = payload or CompleteSessionIn()
    try:
        po = complete_receiving_session(
            db,
            session_id=session_id,
            actor_id=actor_id,
            inspection_passed=payload.inspection_passed,
            inspection_notes=payload.inspection_notes,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=po.id)


@router.post('/{session_id}/cancel')
def cancel(
    session_id: int,
    payload: CancelIn | None = None,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        po = cancel_receiving_session(
            db,
            session_id=session_id,
            actor_id=actor_id,
            reason=payload.reason if payload else None,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=po.id)
