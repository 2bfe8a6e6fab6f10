from __future__ import annotations

import unittest
from decimal import Decimal

from sqlalchemy import select, update

from support import APPROVAL, build_po, build_sent_po, make_sessionmaker, seed_reference

from procurement.errors import InvalidStateError, NotFoundError, StaleStateError, ValidationError
from procurement.models import AuditLog, PurchaseOrder, PurchaseOrderLineItem, PurchaseOrderStatus
from procurement.services.purchase_order_service import (
    ALLOWED_TRANSITIONS,
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
from procurement.services.receiving_service import ReceivingParams, start_receiving_session


class PurchaseOrderServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_sessionmaker()()
        self.ref = seed_reference(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def _actions(self, po_id: int) -> list[str]:
        self.db.flush()
        return self.db.execute(
            select(AuditLog.action).where(AuditLog.purchase_order_id == po_id).order_by(AuditLog.id.asc())
        ).scalars().all()

    def test_create_computes_totals_and_starts_in_draft(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('30'))
        self.assertEqual(po.status, PurchaseOrderStatus.DRAFT)
        self.assertEqual(po.subtotal, Decimal('3000.00'))
        self.assertEqual(po.total_amount, Decimal('3000.00'))
        self.assertFalse(po.requires_approval)
        self.assertEqual(self._actions(po.id), ['PURCHASE_ORDER_CREATED'])

    def test_create_rejects_unknown_supplier(self) -> None:
        with self.assertRaises(ValidationError):
            create_purchase_order(
                self.db,
                supplier_id=9999,
                delivery_location_id=self.ref.location.id,
                lines=[],
                params=APPROVAL,
            )

    def test_create_rejects_negative_quantity(self) -> None:
        with self.assertRaises(ValidationError):
            create_purchase_order(
                self.db,
                supplier_id=self.ref.supplier.id,
                delivery_location_id=self.ref.location.id,
                lines=[
                    LineItemInput(
                        material_id=self.ref.material.id,
                        unit_id=self.ref.case_unit.id,
                        quantity_ordered=Decimal('-1'),
                        unit_cost=Decimal('5'),
                    )
                ],
                params=APPROVAL,
            )

    def test_send_before_approve_fails_when_above_threshold(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('60'))
        self.assertTrue(po.requires_approval)
        with self.assertRaises(InvalidStateError) as ctx:
            send_to_supplier(self.db, purchase_order_id=po.id, sender_id='buyer-1')
        self.assertEqual(ctx.exception.current_status, 'draft')
        self.assertEqual(po.status, PurchaseOrderStatus.DRAFT)

    def test_send_directly_from_draft_below_threshold(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('30'))
        send_to_supplier(self.db, purchase_order_id=po.id, sender_id='buyer-2')
        self.assertEqual(po.status, PurchaseOrderStatus.SENT)
        self.assertEqual(po.sent_by, 'buyer-2')
        self.assertIsNotNone(po.sent_at)

    def test_full_approval_path(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('60'))
        submit_for_approval(self.db, purchase_order_id=po.id, actor_id='buyer-1')
        self.assertEqual(po.status, PurchaseOrderStatus.PENDING_APPROVAL)
        approve_purchase_order(self.db, purchase_order_id=po.id, approver_id='manager-1', notes='ok')
        self.assertEqual(po.status, PurchaseOrderStatus.APPROVED)
        self.assertEqual(po.approved_by, 'manager-1')
        self.assertEqual(po.approval_notes, 'ok')
        send_to_supplier(self.db, purchase_order_id=po.id, sender_id='buyer-1')
        self.assertEqual(po.status, PurchaseOrderStatus.SENT)
        self.assertEqual(
            self._actions(po.id),
            [
                'PURCHASE_ORDER_CREATED',
                'PURCHASE_ORDER_SUBMITTED_FOR_APPROVAL',
                'PURCHASE_ORDER_APPROVED',
                'PURCHASE_ORDER_SENT',
            ],
        )

    def test_submit_not_allowed_when_approval_not_required(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('1'), unit_cost=Decimal('1'))
        with self.assertRaises(InvalidStateError):
            submit_for_approval(self.db, purchase_order_id=po.id, actor_id='buyer-1')

    def test_approve_only_from_pending_approval(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('60'))
        with self.assertRaises(InvalidStateError) as ctx:
            approve_purchase_order(self.db, purchase_order_id=po.id, approver_id='manager-1')
        self.assertEqual(ctx.exception.operation, 'approve')

    def test_approve_twice_fails(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('60'))
        submit_for_approval(self.db, purchase_order_id=po.id, actor_id='buyer-1')
        approve_purchase_order(self.db, purchase_order_id=po.id, approver_id='manager-1')
        with self.assertRaises(InvalidStateError):
            approve_purchase_order(self.db, purchase_order_id=po.id, approver_id='manager-2')

    def test_concurrent_approval_is_detected_as_stale(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('60'))
        submit_for_approval(self.db, purchase_order_id=po.id, actor_id='buyer-1')
        self.db.flush()
        # Another writer approves behind this session's identity map.
        self.db.execute(
            update(PurchaseOrder.__table__)
            .where(PurchaseOrder.__table__.c.id == po.id)
            .values(status=PurchaseOrderStatus.APPROVED, approved_by='manager-2')
        )
        with self.assertRaises(StaleStateError):
            approve_purchase_order(self.db, purchase_order_id=po.id, approver_id='manager-1')
        self.db.refresh(po)
        self.assertEqual(po.approved_by, 'manager-2')

    def test_reject_returns_to_draft_with_notes(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('60'))
        submit_for_approval(self.db, purchase_order_id=po.id, actor_id='buyer-1')
        reject_purchase_order(self.db, purchase_order_id=po.id, actor_id='manager-1', notes='Split the order')
        self.assertEqual(po.status, PurchaseOrderStatus.DRAFT)
        self.assertEqual(po.approval_notes, 'Split the order')
        with self.assertRaises(InvalidStateError):
            send_to_supplier(self.db, purchase_order_id=po.id, sender_id='buyer-1')

    def test_reject_requires_notes(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('60'))
        submit_for_approval(self.db, purchase_order_id=po.id, actor_id='buyer-1')
        with self.assertRaises(ValidationError):
            reject_purchase_order(self.db, purchase_order_id=po.id, actor_id='manager-1', notes='  ')

    def test_update_draft_recomputes_approval_requirement(self) -> None:
        po = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('30'))
        update_draft_purchase_order(
            self.db,
            purchase_order_id=po.id,
            actor_id='buyer-1',
            header={'notes': 'rush', 'shipping_amount': Decimal('50')},
            lines=[
                LineItemInput(
                    material_id=self.ref.material.id,
                    unit_id=self.ref.case_unit.id,
                    quantity_ordered=Decimal('100'),
                    unit_cost=Decimal('55'),
                )
            ],
            params=APPROVAL,
        )
        self.assertEqual(po.notes, 'rush')
        self.assertEqual(po.total_amount, Decimal('5550.00'))
        self.assertTrue(po.requires_approval)
        lines = self.db.execute(
            select(PurchaseOrderLineItem).where(PurchaseOrderLineItem.purchase_order_id == po.id)
        ).scalars().all()
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0].line_total, Decimal('5500.00'))

    def test_update_rejects_non_editable_fields(self) -> None:
        po = build_po(self.db, self.ref)
        with self.assertRaises(ValidationError):
            update_draft_purchase_order(
                self.db, purchase_order_id=po.id, actor_id='buyer-1', header={'status': 'sent'}, params=APPROVAL
            )

    def test_update_after_send_is_refused(self) -> None:
        po = build_sent_po(self.db, self.ref)
        with self.assertRaises(InvalidStateError):
            update_draft_purchase_order(
                self.db, purchase_order_id=po.id, actor_id='buyer-1', header={'notes': 'x'}, params=APPROVAL
            )

    def test_send_rejects_po_without_lines(self) -> None:
        po = create_purchase_order(
            self.db,
            supplier_id=self.ref.supplier.id,
            delivery_location_id=self.ref.location.id,
            lines=[],
            params=APPROVAL,
        )
        with self.assertRaises(ValidationError):
            send_to_supplier(self.db, purchase_order_id=po.id, sender_id='buyer-1')

    def test_delete_only_in_draft(self) -> None:
        po = build_po(self.db, self.ref)
        po_id = po.id
        delete_draft_purchase_order(self.db, purchase_order_id=po_id, actor_id='buyer-1')
        self.assertIsNone(self.db.get(PurchaseOrder, po_id))
        remaining_lines = self.db.execute(
            select(PurchaseOrderLineItem).where(PurchaseOrderLineItem.purchase_order_id == po_id)
        ).scalars().all()
        self.assertEqual(remaining_lines, [])
        deleted = self.db.execute(select(AuditLog).where(AuditLog.action == 'PURCHASE_ORDER_DELETED')).scalar_one()
        self.assertIsNone(deleted.purchase_order_id)
        self.assertEqual(deleted.meta['purchase_order_id'], po_id)

        sent = build_sent_po(self.db, self.ref)
        with self.assertRaises(InvalidStateError):
            delete_draft_purchase_order(self.db, purchase_order_id=sent.id, actor_id='buyer-1')

    def test_cancel_is_terminal(self) -> None:
        po = build_sent_po(self.db, self.ref)
        cancel_purchase_order(self.db, purchase_order_id=po.id, actor_id='buyer-1', reason='Supplier out of stock')
        self.assertEqual(po.status, PurchaseOrderStatus.CANCELLED)
        self.assertEqual(po.cancellation_reason, 'Supplier out of stock')
        with self.assertRaises(InvalidStateError):
            cancel_purchase_order(self.db, purchase_order_id=po.id, actor_id='buyer-1')
        with self.assertRaises(InvalidStateError):
            send_to_supplier(self.db, purchase_order_id=po.id, sender_id='buyer-1')

    def test_cancel_refused_while_receiving_in_progress(self) -> None:
        po = build_sent_po(self.db, self.ref)
        start_receiving_session(self.db, purchase_order_id=po.id, received_by='dock-1', params=ReceivingParams())
        with self.assertRaises(InvalidStateError):
            cancel_purchase_order(self.db, purchase_order_id=po.id, actor_id='buyer-1')

    def test_missing_po_is_not_found(self) -> None:
        with self.assertRaises(NotFoundError):
            submit_for_approval(self.db, purchase_order_id=424242, actor_id='buyer-1')

    def test_transition_table(self) -> None:
        self.assertEqual(ALLOWED_TRANSITIONS[PurchaseOrderStatus.CANCELLED], frozenset())
        back_to_draft = [status for status, targets in ALLOWED_TRANSITIONS.items() if PurchaseOrderStatus.DRAFT in targets]
        self.assertEqual(back_to_draft, [PurchaseOrderStatus.PENDING_APPROVAL])
        self.assertNotIn(PurchaseOrderStatus.CANCELLED, ALLOWED_TRANSITIONS[PurchaseOrderStatus.RECEIVED])

    def test_detail_and_list(self) -> None:
        draft = build_po(self.db, self.ref, quantity=Decimal('100'), unit_cost=Decimal('60'))
        sent = build_sent_po(self.db, self.ref)

        detail = get_purchase_order_detail(self.db, purchase_order_id=draft.id)
        self.assertTrue(detail['can_submit_for_approval'])
        self.assertFalse(detail['can_send'])
        self.assertEqual(len(detail['lines']), 1)

        sent_only = list_purchase_orders(self.db, status=PurchaseOrderStatus.SENT)
        self.assertEqual([row['id'] for row in sent_only], [sent.id])
        self.assertEqual(sent_only[0]['supplier_name'], 'Acme Food Supply')
        self.assertEqual(len(list_purchase_orders(self.db, supplier_id=self.ref.supplier.id)), 2)


if __name__ == '__main__':
    unittest.main()
