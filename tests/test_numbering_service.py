from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal

from support import build_po, make_sessionmaker, seed_reference

from procurement.models import DocumentSequence, ReceivingSession
from procurement.services.numbering_service import next_lot_number, next_po_number, next_receiving_number
from procurement.services.purchase_order_service import delete_draft_purchase_order


class NumberingServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_sessionmaker()()
        self.ref = seed_reference(self.db)

    def tearDown(self) -> None:
        self.db.close()

    def test_first_numbers_of_the_day(self) -> None:
        day = date(2026, 3, 9)
        self.assertEqual(next_po_number(self.db, order_date=day), 'PO-20260309-0001')
        self.assertEqual(next_receiving_number(self.db, received_date=day), 'RCV-20260309-001')
        self.assertEqual(next_lot_number(self.db, received_date=day), 'LOT-20260309-0001')

    def test_po_sequence_increments_per_day(self) -> None:
        first = build_po(self.db, self.ref)
        second = build_po(self.db, self.ref)
        prefix = f'PO-{date.today():%Y%m%d}-'
        self.assertEqual(first.po_number, prefix + '0001')
        self.assertEqual(second.po_number, prefix + '0002')
        self.assertEqual(next_po_number(self.db, order_date=date(2000, 1, 1)), 'PO-20000101-0001')

    def test_deleted_draft_does_not_cause_reuse_of_a_later_number(self) -> None:
        first = build_po(self.db, self.ref)
        second = build_po(self.db, self.ref, quantity=Decimal('5'))
        delete_draft_purchase_order(self.db, purchase_order_id=first.id, actor_id='buyer-1')
        third = build_po(self.db, self.ref)
        self.assertNotEqual(third.po_number, second.po_number)
        self.assertTrue(third.po_number.endswith('0003'))

    def test_receiving_sequence_follows_existing_rows(self) -> None:
        po = build_po(self.db, self.ref)
        day = date(2026, 3, 9)
        self.db.add(
            ReceivingSession(purchase_order_id=po.id, receiving_number='RCV-20260309-007', received_date=day)
        )
        self.db.flush()
        self.assertEqual(next_receiving_number(self.db, received_date=day), 'RCV-20260309-008')

    def test_numbers_are_distinct_before_any_row_is_written(self) -> None:
        day = date(2026, 3, 9)
        first = next_lot_number(self.db, received_date=day)
        second = next_lot_number(self.db, received_date=day)
        self.assertEqual(first, 'LOT-20260309-0001')
        self.assertEqual(second, 'LOT-20260309-0002')
        counter = self.db.get(DocumentSequence, 'LOT-20260309-')
        self.assertEqual(counter.current_value, 2)

    def test_sequence_keeps_counting_past_its_width(self) -> None:
        po = build_po(self.db, self.ref)
        day = date(2026, 3, 9)
        self.db.add(
            ReceivingSession(purchase_order_id=po.id, receiving_number='RCV-20260309-999', received_date=day)
        )
        self.db.flush()
        self.assertEqual(next_receiving_number(self.db, received_date=day), 'RCV-20260309-1000')
        self.assertEqual(next_receiving_number(self.db, received_date=day), 'RCV-20260309-1001')


if __name__ == '__main__':
    unittest.main()
