from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from procurement.config import settings
from procurement.errors import InvalidStateError, NotFoundError, StaleStateError, ValidationError
from procurement.models import (
    Location,
    Material,
    PurchaseOrder,
    PurchaseOrderLineItem,
    PurchaseOrderStatus,
    ReceivingSession,
    ReceivingSessionStatus,
    Supplier,
    UnitOfMeasure,
)
from procurement.services.audit_service import log_audit
from procurement.services.numbering_service import next_po_number
from procurement.services.purchase_order_math_service import (
    ApprovalParams,
    LineAmountInput,
    LineFulfillment,
    approval_params_from_settings,
    compute_line_total,
    compute_order_totals,
    is_over_received,
)

logger = logging.getLogger(__name__)

S = PurchaseOrderStatus

ALLOWED_TRANSITIONS: dict[PurchaseOrderStatus, frozenset[PurchaseOrderStatus]] = {
    S.DRAFT: frozenset({S.PENDING_APPROVAL, S.SENT, S.CANCELLED}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.DRAFT, S.CANCELLED}),
    S.APPROVED: frozenset({S.SENT, S.CANCELLED}),
    S.SENT: frozenset({S.PARTIALLY_RECEIVED, S.RECEIVED, S.CANCELLED}),
    S.PARTIALLY_RECEIVED: frozenset({S.RECEIVED, S.CANCELLED}),
    # Only reachable when a cancelled receiving session takes quantity back out.
    S.RECEIVED: frozenset({S.PARTIALLY_RECEIVED}),
    S.CANCELLED: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({S.DRAFT, S.PENDING_APPROVAL, S.APPROVED, S.SENT, S.PARTIALLY_RECEIVED})

_EDITABLE_HEADER_FIELDS = frozenset(
    {
        'supplier_id',
        'delivery_location_id',
        'order_date',
        'expected_delivery_date',
        'shipping_method',
        'shipping_terms',
        'tax_amount',
        'shipping_amount',
        'notes',
        'internal_notes',
    }
)

_REQUIRED_HEADER_FIELDS = frozenset({'supplier_id', 'delivery_location_id', 'order_date', 'tax_amount', 'shipping_amount'})


@dataclass(frozen=True)
class LineItemInput:
    material_id: int
    unit_id: int
    quantity_ordered: Decimal
    unit_cost: Decimal
    supplier_item_number: str | None = None
    notes: str | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def get_purchase_order(db: Session, *, purchase_order_id: int, for_update: bool = False) -> PurchaseOrder:
    query = select(PurchaseOrder).where(PurchaseOrder.id == purchase_order_id)
    if for_update:
        query = query.with_for_update()
    po = db.execute(query).scalar_one_or_none()
    if po is None:
        raise NotFoundError('Purchase order not found')
    return po


def get_line_items(db: Session, *, purchase_order_id: int) -> list[PurchaseOrderLineItem]:
    return db.execute(
        select(PurchaseOrderLineItem)
        .where(PurchaseOrderLineItem.purchase_order_id == purchase_order_id)
        .order_by(PurchaseOrderLineItem.sort_order.asc(), PurchaseOrderLineItem.id.asc())
        .execution_options(populate_existing=True)
    ).scalars().all()


def _require_supplier(db: Session, supplier_id: int) -> Supplier:
    supplier = db.get(Supplier, supplier_id)
    if supplier is None or not supplier.active:
        raise ValidationError('Supplier not found')
    return supplier


def _require_location(db: Session, location_id: int) -> Location:
    location = db.get(Location, location_id)
    if location is None or not location.active:
        raise ValidationError('Location not found')
    return location


def _validate_line_references(db: Session, lines: list[LineItemInput]) -> None:
    for line in lines:
        material = db.get(Material, line.material_id)
        if material is None or not material.active:
            raise ValidationError(f'Material {line.material_id} not found')
        if db.get(UnitOfMeasure, line.unit_id) is None:
            raise ValidationError(f'Unit {line.unit_id} not found')


def _add_line_items(db: Session, *, purchase_order_id: int, lines: list[LineItemInput]) -> None:
    for index, line in enumerate(lines):
        db.add(
            PurchaseOrderLineItem(
                purchase_order_id=purchase_order_id,
                material_id=line.material_id,
                unit_id=line.unit_id,
                quantity_ordered=Decimal(line.quantity_ordered),
                quantity_received=Decimal('0'),
                unit_cost=Decimal(line.unit_cost),
                line_total=compute_line_total(LineAmountInput(line.quantity_ordered, line.unit_cost)),
                supplier_item_number=line.supplier_item_number,
                notes=line.notes,
                sort_order=index,
            )
        )


def _require_lines(db: Session, po: PurchaseOrder) -> None:
    if not get_line_items(db, purchase_order_id=po.id):
        raise ValidationError('Cannot process a purchase order without line items')


def create_purchase_order(
    db: Session,
    *,
    supplier_id: int,
    delivery_location_id: int,
    lines: list[LineItemInput],
    expected_delivery_date: date | None = None,
    order_date: date | None = None,
    tax_amount: Decimal = Decimal('0'),
    shipping_amount: Decimal = Decimal('0'),
    shipping_method: str | None = None,
    shipping_terms: str | None = None,
    notes: str | None = None,
    internal_notes: str | None = None,
    created_by: str | None = None,
    params: ApprovalParams | None = None,
) -> PurchaseOrder:
    params = params or approval_params_from_settings()
    _require_supplier(db, supplier_id)
    _require_location(db, delivery_location_id)
    _validate_line_references(db, lines)

    order_date = order_date or date.today()
    if expected_delivery_date is not None and expected_delivery_date < order_date:
        raise ValidationError('Expected delivery date cannot be before the order date')

    totals = compute_order_totals(
        [LineAmountInput(line.quantity_ordered, line.unit_cost) for line in lines],
        params,
        tax_amount=Decimal(tax_amount),
        shipping_amount=Decimal(shipping_amount),
    )

    po = PurchaseOrder(
        po_number=next_po_number(db, order_date=order_date),
        supplier_id=supplier_id,
        delivery_location_id=delivery_location_id,
        order_date=order_date,
        expected_delivery_date=expected_delivery_date,
        status=S.DRAFT,
        requires_approval=totals.requires_approval,
        shipping_method=shipping_method,
        shipping_terms=shipping_terms,
        subtotal=totals.subtotal,
        tax_amount=totals.tax_amount,
        shipping_amount=totals.shipping_amount,
        total_amount=totals.total_amount,
        notes=notes,
        internal_notes=internal_notes,
        created_by=created_by,
    )
    db.add(po)
    db.flush()
    _add_line_items(db, purchase_order_id=po.id, lines=lines)
    db.flush()

    log_audit(
        db,
        actor_id=created_by,
        action='PURCHASE_ORDER_CREATED',
        purchase_order_id=po.id,
        metadata={
            'po_number': po.po_number,
            'total_amount': str(po.total_amount),
            'requires_approval': po.requires_approval,
        },
    )
    logger.info(
        'Purchase order %s created',
        po.po_number,
        extra={'purchase_order_id': po.id, 'total_amount': po.total_amount, 'requires_approval': po.requires_approval},
    )
    return po


def update_draft_purchase_order(
    db: Session,
    *,
    purchase_order_id: int,
    actor_id: str | None,
    header: dict | None = None,
    lines: list[LineItemInput] | None = None,
    params: ApprovalParams | None = None,
) -> PurchaseOrder:
    params = params or approval_params_from_settings()
    header = header or {}
    unknown = set(header) - _EDITABLE_HEADER_FIELDS
    if unknown:
        raise ValidationError(f'Fields cannot be edited: {", ".join(sorted(unknown))}')
    missing = sorted(field for field in _REQUIRED_HEADER_FIELDS if field in header and header[field] is None)
    if missing:
        raise ValidationError(f'Fields cannot be cleared: {", ".join(missing)}')

    po = get_purchase_order(db, purchase_order_id=purchase_order_id, for_update=True)
    if po.status != S.DRAFT:
        raise InvalidStateError(
            'Only draft purchase orders can be edited', operation='update', current_status=po.status.value
        )

    if 'supplier_id' in header:
        _require_supplier(db, header['supplier_id'])
    if header.get('delivery_location_id') is not None:
        _require_location(db, header['delivery_location_id'])
    for field, value in header.items():
        setattr(po, field, value)
    if po.expected_delivery_date is not None and po.expected_delivery_date < po.order_date:
        raise ValidationError('Expected delivery date cannot be before the order date')

    if lines is not None:
        _validate_line_references(db, lines)
        db.execute(delete(PurchaseOrderLineItem).where(PurchaseOrderLineItem.purchase_order_id == po.id))
        _add_line_items(db, purchase_order_id=po.id, lines=lines)
        db.flush()

    current = get_line_items(db, purchase_order_id=po.id)
    totals = compute_order_totals(
        [LineAmountInput(line.quantity_ordered, line.unit_cost) for line in current],
        params,
        tax_amount=Decimal(po.tax_amount),
        shipping_amount=Decimal(po.shipping_amount),
    )
    po.subtotal = totals.subtotal
    po.tax_amount = totals.tax_amount
    po.shipping_amount = totals.shipping_amount
    po.total_amount = totals.total_amount
    po.requires_approval = totals.requires_approval
    po.updated_at = _now()
    db.flush()

    log_audit(
        db,
        actor_id=actor_id,
        action='PURCHASE_ORDER_UPDATED',
        purchase_order_id=po.id,
        metadata={'fields': sorted(header), 'lines_replaced': lines is not None},
    )
    return po


def transition_status(
    db: Session,
    po: PurchaseOrder,
    *,
    operation: str,
    allowed_from: frozenset[PurchaseOrderStatus],
    to_status: PurchaseOrderStatus,
    values: dict | None = None,
) -> PurchaseOrder:
    """Move ``po`` to ``to_status`` with a compare-and-set on its current status.

    The precondition and the write are one UPDATE statement, so a concurrent
    transition that landed first makes this one match no row.
    """
    current = po.status
    if current not in allowed_from or to_status not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateError(
            f'Cannot {operation} purchase order {po.po_number} while it is {current.value}',
            operation=operation,
            current_status=current.value,
        )

    db.flush()
    result = db.execute(
        update(PurchaseOrder)
        .where(PurchaseOrder.id == po.id, PurchaseOrder.status == current)
        .values(status=to_status, updated_at=_now(), **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleStateError(f'Purchase order {po.po_number} was changed by another user; reload and retry')
    db.refresh(po)

    logger.info(
        'Purchase order %s moved %s -> %s',
        po.po_number,
        current.value,
        to_status.value,
        extra={'purchase_order_id': po.id, 'operation': operation},
    )
    return po


def submit_for_approval(db: Session, *, purchase_order_id: int, actor_id: str | None) -> PurchaseOrder:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    if po.status == S.DRAFT and not po.requires_approval:
        raise InvalidStateError(
            f'Purchase order {po.po_number} does not require approval; send it directly',
            operation='submit_for_approval',
            current_status=po.status.value,
        )
    if po.status == S.DRAFT:
        _require_lines(db, po)
    transition_status(
        db,
        po,
        operation='submit_for_approval',
        allowed_from=frozenset({S.DRAFT}),
        to_status=S.PENDING_APPROVAL,
        values={'submitted_by': actor_id, 'submitted_at': _now()},
    )
    log_audit(db, actor_id=actor_id, action='PURCHASE_ORDER_SUBMITTED_FOR_APPROVAL', purchase_order_id=po.id)
    return po


def approve_purchase_order(
    db: Session,
    *,
    purchase_order_id: int,
    approver_id: str,
    notes: str | None = None,
) -> PurchaseOrder:
    if not (approver_id or '').strip():
        raise ValidationError('Approver is required')
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    transition_status(
        db,
        po,
        operation='approve',
        allowed_from=frozenset({S.PENDING_APPROVAL}),
        to_status=S.APPROVED,
        values={'approved_by': approver_id, 'approved_at': _now(), 'approval_notes': notes or None},
    )
    log_audit(
        db,
        actor_id=approver_id,
        action='PURCHASE_ORDER_APPROVED',
        purchase_order_id=po.id,
        metadata={'notes': notes or ''},
    )
    return po


def reject_purchase_order(
    db: Session,
    *,
    purchase_order_id: int,
    actor_id: str | None,
    notes: str,
) -> PurchaseOrder:
    clean_notes = (notes or '').strip()
    if not clean_notes:
        raise ValidationError('Rejection notes are required')
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    transition_status(
        db,
        po,
        operation='reject',
        allowed_from=frozenset({S.PENDING_APPROVAL}),
        to_status=S.DRAFT,
        values={'approval_notes': clean_notes, 'approved_by': None, 'approved_at': None},
    )
    log_audit(
        db,
        actor_id=actor_id,
        action='PURCHASE_ORDER_REJECTED',
        purchase_order_id=po.id,
        metadata={'notes': clean_notes},
    )
    return po


def send_to_supplier(db: Session, *, purchase_order_id: int, sender_id: str | None) -> PurchaseOrder:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    if po.status == S.DRAFT and po.requires_approval:
        raise InvalidStateError(
            f'Purchase order {po.po_number} must be approved before it is sent',
            operation='send',
            current_status=po.status.value,
        )
    if po.status in (S.DRAFT, S.APPROVED):
        _require_lines(db, po)
    transition_status(
        db,
        po,
        operation='send',
        allowed_from=frozenset({S.DRAFT, S.APPROVED}),
        to_status=S.SENT,
        values={'sent_by': sender_id, 'sent_at': _now()},
    )
    log_audit(db, actor_id=sender_id, action='PURCHASE_ORDER_SENT', purchase_order_id=po.id)
    return po


def cancel_purchase_order(
    db: Session,
    *,
    purchase_order_id: int,
    actor_id: str | None,
    reason: str | None = None,
) -> PurchaseOrder:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id, for_update=True)
    open_session = db.execute(
        select(ReceivingSession.id)
        .where(
            ReceivingSession.purchase_order_id == po.id,
            ReceivingSession.status == ReceivingSessionStatus.IN_PROGRESS,
        )
        .limit(1)
    ).first()
    if open_session:
        raise InvalidStateError(
            'Complete or cancel the open receiving session before cancelling this purchase order',
            operation='cancel',
            current_status=po.status.value,
        )
    transition_status(
        db,
        po,
        operation='cancel',
        allowed_from=CANCELLABLE_STATUSES,
        to_status=S.CANCELLED,
        values={'cancelled_by': actor_id, 'cancelled_at': _now(), 'cancellation_reason': reason},
    )
    log_audit(
        db,
        actor_id=actor_id,
        action='PURCHASE_ORDER_CANCELLED',
        purchase_order_id=po.id,
        metadata={'reason': reason or ''},
    )
    return po


def delete_draft_purchase_order(db: Session, *, purchase_order_id: int, actor_id: str | None) -> None:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    if po.status != S.DRAFT:
        raise InvalidStateError(
            'Only draft purchase orders can be deleted', operation='delete', current_status=po.status.value
        )
    po_number = po.po_number
    db.execute(delete(PurchaseOrderLineItem).where(PurchaseOrderLineItem.purchase_order_id == po.id))
    result = db.execute(
        delete(PurchaseOrder)
        .where(PurchaseOrder.id == po.id, PurchaseOrder.status == S.DRAFT)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleStateError(f'Purchase order {po_number} was changed by another user; reload and retry')
    db.expunge(po)

    log_audit(
        db,
        actor_id=actor_id,
        action='PURCHASE_ORDER_DELETED',
        metadata={'purchase_order_id': purchase_order_id, 'po_number': po_number},
    )
    logger.info('Draft purchase order %s deleted', po_number, extra={'purchase_order_id': purchase_order_id})
    db.flush()


def line_item_to_dict(line: PurchaseOrderLineItem, *, flag_ratio: Decimal) -> dict:
    fulfillment = LineFulfillment(Decimal(line.quantity_ordered), Decimal(line.quantity_received))
    return {
        'id': line.id,
        'material_id': line.material_id,
        'unit_id': line.unit_id,
        'quantity_ordered': line.quantity_ordered,
        'quantity_received': line.quantity_received,
        'unit_cost': line.unit_cost,
        'line_total': line.line_total,
        'supplier_item_number': line.supplier_item_number,
        'notes': line.notes,
        'sort_order': line.sort_order,
        'over_received': is_over_received(fulfillment, flag_ratio=flag_ratio),
    }


def purchase_order_to_dict(po: PurchaseOrder) -> dict:
    return {
        'id': po.id,
        'po_number': po.po_number,
        'supplier_id': po.supplier_id,
        'delivery_location_id': po.delivery_location_id,
        'order_date': po.order_date,
        'expected_delivery_date': po.expected_delivery_date,
        'status': po.status.value,
        'requires_approval': po.requires_approval,
        'subtotal': po.subtotal,
        'tax_amount': po.tax_amount,
        'shipping_amount': po.shipping_amount,
        'total_amount': po.total_amount,
        'shipping_method': po.shipping_method,
        'shipping_terms': po.shipping_terms,
        'notes': po.notes,
        'internal_notes': po.internal_notes,
        'approved_by': po.approved_by,
        'approved_at': po.approved_at,
        'approval_notes': po.approval_notes,
        'sent_by': po.sent_by,
        'sent_at': po.sent_at,
        'cancelled_by': po.cancelled_by,
        'cancelled_at': po.cancelled_at,
        'created_at': po.created_at,
        'updated_at': po.updated_at,
    }


def get_purchase_order_detail(db: Session, *, purchase_order_id: int) -> dict:
    po = get_purchase_order(db, purchase_order_id=purchase_order_id)
    flag_ratio = Decimal(settings.over_receipt_flag_ratio)
    sessions = db.execute(
        select(ReceivingSession)
        .where(ReceivingSession.purchase_order_id == po.id)
        .order_by(ReceivingSession.received_date.desc(), ReceivingSession.id.desc())
    ).scalars().all()
    return {
        **purchase_order_to_dict(po),
        'lines': [line_item_to_dict(line, flag_ratio=flag_ratio) for line in get_line_items(db, purchase_order_id=po.id)],
        'receiving_sessions': [
            {
                'id': session.id,
                'receiving_number': session.receiving_number,
                'received_date': session.received_date,
                'status': session.status.value,
            }
            for session in sessions
        ],
        'can_submit_for_approval': po.status == S.DRAFT and po.requires_approval,
        'can_approve': po.status == S.PENDING_APPROVAL,
        'can_send': po.status == S.APPROVED or (po.status == S.DRAFT and not po.requires_approval),
        'can_receive': po.status in (S.SENT, S.PARTIALLY_RECEIVED),
    }


def list_purchase_orders(
    db: Session,
    *,
    status: PurchaseOrderStatus | None = None,
    supplier_id: int | None = None,
    limit: int = 100,
) -> list[dict]:
    query = (
        select(PurchaseOrder, Supplier.name)
        .join(Supplier, Supplier.id == PurchaseOrder.supplier_id)
        .order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc())
        .limit(limit)
    )
    if status is not None:
        query = query.where(PurchaseOrder.status == status)
    if supplier_id is not None:
        query = query.where(PurchaseOrder.supplier_id == supplier_id)
    rows = db.execute(query).all()
    return [{**purchase_order_to_dict(po), 'supplier_name': supplier_name} for po, supplier_name in rows]
