from __future__ import annotations

import unittest
from decimal import Decimal

from fastapi.testclient import TestClient

from support import add_lot, make_sessionmaker, seed_reference

from procurement.db import get_db
from procurement.main import app
from procurement.models import ContainerStatus

BUYER = {'X-Actor-Id': 'buyer-1'}
MANAGER = {'X-Actor-Id': 'manager-1'}


class RouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session_factory = make_sessionmaker()
        with self.session_factory() as db:
            self.ref = seed_reference(db)
            self.parent_lot = add_lot(db, self.ref, number='LOT-TEST-0001', quantity=Decimal('2'))
            self.short_lot = add_lot(
                db,
                self.ref,
                number='LOT-TEST-0002',
                quantity=Decimal('5'),
                container_status=ContainerStatus.OPEN,
                parent_lot_id=self.parent_lot.id,
            )
            db.commit()

        def override_get_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def _create_po(self, unit_cost: str) -> dict:
        response = self.client.post(
            '/purchase-orders',
            headers=BUYER,
            json={
                'supplier_id': self.ref.supplier.id,
                'delivery_location_id': self.ref.location.id,
                'lines': [
                    {
                        'material_id': self.ref.material.id,
                        'unit_id': self.ref.case_unit.id,
                        'quantity_ordered': '100',
                        'unit_cost': unit_cost,
                    }
                ],
            },
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def test_health(self) -> None:
        response = self.client.get('/health')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})

    def test_send_before_approval_maps_to_conflict(self) -> None:
        po = self._create_po('60')
        self.assertTrue(po['requires_approval'])
        self.assertEqual(po['status'], 'draft')

        response = self.client.post(f"/purchase-orders/{po['id']}/send", headers=BUYER)
        self.assertEqual(response.status_code, 409)
        detail = response.json()['detail']
        self.assertEqual(detail['code'], 'INVALID_STATE')
        self.assertEqual(detail['current_status'], 'draft')
        self.assertEqual(detail['operation'], 'send')

    def test_approval_flow(self) -> None:
        po = self._create_po('60')
        self.assertEqual(self.client.post(f"/purchase-orders/{po['id']}/submit", headers=BUYER).status_code, 200)

        missing_actor = self.client.post(f"/purchase-orders/{po['id']}/approve", json={'notes': 'ok'})
        self.assertEqual(missing_actor.status_code, 400)

        approved = self.client.post(f"/purchase-orders/{po['id']}/approve", headers=MANAGER, json={'notes': 'ok'})
        self.assertEqual(approved.status_code, 200)
        self.assertEqual(approved.json()['status'], 'approved')
        self.assertEqual(approved.json()['approved_by'], 'manager-1')

        again = self.client.post(f"/purchase-orders/{po['id']}/approve", headers=MANAGER)
        self.assertEqual(again.status_code, 409)

    def test_receiving_flow(self) -> None:
        po = self._create_po('10')
        sent = self.client.post(f"/purchase-orders/{po['id']}/send", headers=BUYER)
        self.assertEqual(sent.json()['status'], 'sent')

        session = self.client.post(
            '/receiving-sessions',
            headers={'X-Actor-Id': 'dock-1'},
            json={'purchase_order_id': po['id'], 'carrier_name': 'FastFreight'},
        )
        self.assertEqual(session.status_code, 201, session.text)
        session_id = session.json()['id']

        line_id = po['lines'][0]['id']
        receipt = self.client.post(
            f'/receiving-sessions/{session_id}/lines',
            json={'purchase_order_item_id': line_id, 'quantity': '100', 'supplier_lot_number': 'SUP-1'},
        )
        self.assertEqual(receipt.status_code, 201, receipt.text)
        self.assertEqual(receipt.json()['lot']['container_status'], 'sealed')
        self.assertFalse(receipt.json()['over_received'])

        completed = self.client.post(f'/receiving-sessions/{session_id}/complete', json={'inspection_passed': True})
        self.assertEqual(completed.status_code, 200)
        self.assertEqual(completed.json()['status'], 'received')

        twice = self.client.post(f'/receiving-sessions/{session_id}/complete')
        self.assertEqual(twice.status_code, 409)
        self.assertEqual(twice.json()['detail']['current_status'], 'completed')

    def test_receiving_against_draft_is_ineligible(self) -> None:
        po = self._create_po('10')
        response = self.client.post('/receiving-sessions', json={'purchase_order_id': po['id']})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['detail']['code'], 'INELIGIBLE_PURCHASE_ORDER')

    def test_invalid_quantity_maps_to_bad_request(self) -> None:
        po = self._create_po('10')
        self.client.post(f"/purchase-orders/{po['id']}/send", headers=BUYER)
        session_id = self.client.post('/receiving-sessions', json={'purchase_order_id': po['id']}).json()['id']
        response = self.client.post(
            f'/receiving-sessions/{session_id}/lines',
            json={'purchase_order_item_id': po['lines'][0]['id'], 'quantity': '-3'},
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['detail']['code'], 'VALIDATION_ERROR')

    def test_reassembly_reports_failed_precondition(self) -> None:
        response = self.client.post(f'/lots/{self.short_lot.id}/reassemble', json={'reason_code': 'UNUSED_RETURN'})
        self.assertEqual(response.status_code, 422)
        detail = response.json()['detail']
        self.assertEqual(detail['code'], 'REASSEMBLY_NOT_ELIGIBLE')
        self.assertEqual(detail['reasons'], ['INSUFFICIENT_QUANTITY'])

    def test_open_then_reassemble_over_http(self) -> None:
        opened = self.client.post(f'/lots/{self.parent_lot.id}/open', headers={'X-Actor-Id': 'line-1'})
        self.assertEqual(opened.status_code, 201, opened.text)
        self.assertEqual(opened.json()['sealed_quantity'], 1)

        open_lot_id = opened.json()['open_lot_id']
        reassembled = self.client.post(f'/lots/{open_lot_id}/reassemble')
        self.assertEqual(reassembled.status_code, 200, reassembled.text)
        self.assertEqual(reassembled.json()['conversion_type'], 'reassembly')

        history = self.client.get(f'/lots/{self.parent_lot.id}/conversions').json()
        self.assertEqual([row['conversion_type'] for row in history], ['disassembly', 'reassembly'])

    def test_dispose_and_disposal_log(self) -> None:
        response = self.client.post(f'/lots/{self.short_lot.id}/dispose', json={'notes': 'expired'})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['disposal_reason_code'], 'OPEN_EXPIRED')

        log = self.client.get('/disposals').json()
        self.assertEqual(len(log), 1)
        self.assertEqual(log[0]['receiving_lot_id'], self.short_lot.id)

        again = self.client.post(f'/lots/{self.short_lot.id}/dispose')
        self.assertEqual(again.status_code, 409)

    def test_delete_draft_then_not_found(self) -> None:
        po = self._create_po('10')
        self.assertEqual(self.client.delete(f"/purchase-orders/{po['id']}", headers=BUYER).status_code, 204)
        response = self.client.get(f"/purchase-orders/{po['id']}")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()['detail']['code'], 'NOT_FOUND')

    def test_failed_operation_leaves_no_partial_writes(self) -> None:
        po = self._create_po('10')
        response = self.client.patch(
            f"/purchase-orders/{po['id']}",
            json={
                'notes': 'should not stick',
                'lines': [
                    {
                        'material_id': self.ref.material.id,
                        'unit_id': self.ref.case_unit.id,
                        'quantity_ordered': '0',
                        'unit_cost': '1',
                    }
                ],
            },
        )
        self.assertEqual(response.status_code, 400)
        detail = self.client.get(f"/purchase-orders/{po['id']}").json()
        self.assertIsNone(detail['notes'])
        self.assertEqual(len(detail['lines']), 1)
        self.assertEqual(detail['lines'][0]['quantity_ordered'], 100)


if __name__ == '__main__':
    unittest.main()
