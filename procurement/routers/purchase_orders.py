from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from procurement.db import get_db
from procurement.dependencies import get_actor_id, http_error
from procurement.errors import ProcurementError
from procurement.models import PurchaseOrderStatus
from procurement.schemas import ApproveIn, CancelIn, LineItemIn, PurchaseOrderCreate, PurchaseOrderUpdate, RejectIn
from procurement.services.purchase_order_service import (
    LineItemInput,
    approve_purchase_order,
    cancel_purchase_order,
    create_purchase_order,
    delete_draft_purchase_order,
    get_purchase_order_detail,
    list_purchase_orders,
    reject_purchase_order,
    send_to_supplier,
    submit_for_approval,
    update_draft_purchase_order,
)

router = APIRouter(prefix='/purchase-orders', tags=['purchase-orders'])


def _line_inputs(lines: list[LineItemIn]) -> list[LineItemInput]:
    return [LineItemInput(**line.model_dump()) for line in lines]


@router.post('', status_code=201)
def create(
    payload: PurchaseOrderCreate,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        po = create_purchase_order(
            db,
            supplier_id=payload.supplier_id,
            delivery_location_id=payload.delivery_location_id,
            lines=_line_inputs(payload.lines),
            order_date=payload.order_date,
            expected_delivery_date=payload.expected_delivery_date,
            tax_amount=payload.tax_amount,
            shipping_amount=payload.shipping_amount,
            shipping_method=payload.shipping_method,
            shipping_terms=payload.shipping_terms,
            notes=payload.notes,
            internal_notes=payload.internal_notes,
            created_by=actor_id,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=po.id)


@router.get('')
def index(
    status: PurchaseOrderStatus | None = None,
    supplier_id: int | None = None,
    db: Session = Depends(get_db),
):
    return list_purchase_orders(db, status=status, supplier_id=supplier_id)


@router.get('/{purchase_order_id}')
def detail(purchase_order_id: int, db: Session = Depends(get_db)):
    try:
        return get_purchase_order_detail(db, purchase_order_id=purchase_order_id)
    except ProcurementError as exc:
        raise http_error(exc) from exc


@router.patch('/{purchase_order_id}')
def update(
    purchase_order_id: int,
    payload: PurchaseOrderUpdate,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    header = payload.model_dump(exclude_unset=True, exclude={'lines'})
    lines = _line_inputs(payload.lines) if payload.lines is not None else None
    try:
        update_draft_purchase_order(
            db,
            purchase_order_id=purchase_order_id,
            actor_id=actor_id,
            header=header,
            lines=lines,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=purchase_order_id)


@router.delete('/{purchase_order_id}', status_code=204)
def delete(
    purchase_order_id: int,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        delete_draft_purchase_order(db, purchase_order_id=purchase_order_id, actor_id=actor_id)
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()


@router.post('/{purchase_order_id}/submit')
def submit(
    purchase_order_id: int,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        submit_for_approval(db, purchase_order_id=purchase_order_id, actor_id=actor_id)
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=purchase_order_id)


@router.post('/{purchase_order_id}/approve')
def approve(
    purchase_order_id: int,
    payload: ApproveIn | None = None,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    if actor_id is None:
        raise HTTPException(status_code=400, detail={'code': 'VALIDATION_ERROR', 'message': 'X-Actor-Id is required'})
    try:
        approve_purchase_order(
            db,
            purchase_order_id=purchase_order_id,
            approver_id=actor_id,
            notes=payload.notes if payload else None,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=purchase_order_id)


@router.post('/{purchase_order_id}/reject')
def reject(
    purchase_order_id: int,
    payload: RejectIn,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        reject_purchase_order(db, purchase_order_id=purchase_order_id, actor_id=actor_id, notes=payload.notes)
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=purchase_order_id)


@router.post('/{purchase_order_id}/send')
def send(
    purchase_order_id: int,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        send_to_supplier(db, purchase_order_id=purchase_order_id, sender_id=actor_id)
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=purchase_order_id)


@router.post('/{purchase_order_id}/cancel')
def cancel(
    purchase_order_id: int,
    payload: CancelIn | None = None,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    try:
        cancel_purchase_order(
            db,
            purchase_order_id=purchase_order_id,
            actor_id=actor_id,
            reason=payload.reason if payload else None,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return get_purchase_order_detail(db, purchase_order_id=purchase_order_id)
