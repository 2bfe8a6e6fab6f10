from __future__ import annotations

import logging
from datetime import date

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from procurement.models import DocumentSequence, PurchaseOrder, ReceivingLot, ReceivingSession

logger = logging.getLogger(__name__)


def _highest_existing(db: Session, column, *, prefix: str) -> int:
    highest = 0
    for (number,) in db.execute(select(column).where(column.like(f'{prefix}%'))).all():
        suffix = number[len(prefix) :]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def _increment(db: Session, *, name: str) -> int | None:
    # The row lock taken by this UPDATE serializes allocations until commit.
    return db.execute(
        update(DocumentSequence)
        .where(DocumentSequence.name == name)
        .values(current_value=DocumentSequence.current_value + 1)
        .returning(DocumentSequence.current_value)
        .execution_options(synchronize_session=False)
    ).scalar_one_or_none()


def _create_counter(db: Session, *, name: str, start: int) -> None:
    insert = sqlite_insert if db.get_bind().dialect.name == 'sqlite' else postgresql_insert
    db.execute(
        insert(DocumentSequence)
        .values(name=name, current_value=start)
        .on_conflict_do_nothing(index_elements=[DocumentSequence.name])
    )


def _next_in_sequence(db: Session, column, *, prefix: str, width: int) -> str:
    """Allocate the next number for ``prefix`` from its counter row.

    The first allocation of a prefix starts the counter after any numbers
    already stored in ``column``. Numbers wider than ``width`` keep counting.
    """
    sequence = _increment(db, name=prefix)
    if sequence is None:
        _create_counter(db, name=prefix, start=_highest_existing(db, column, prefix=prefix))
        sequence = _increment(db, name=prefix)
    logger.debug('Allocated %s%s', prefix, sequence)
    return f'{prefix}{sequence:0{width}d}'


def next_po_number(db: Session, *, order_date: date) -> str:
    return _next_in_sequence(db, PurchaseOrder.po_number, prefix=f'PO-{order_date:%Y%m%d}-', width=4)


def next_receiving_number(db: Session, *, received_date: date) -> str:
    return _next_in_sequence(db, ReceivingSession.receiving_number, prefix=f'RCV-{received_date:%Y%m%d}-', width=3)


def next_lot_number(db: Session, *, received_date: date) -> str:
    return _next_in_sequence(db, ReceivingLot.internal_lot_number, prefix=f'LOT-{received_date:%Y%m%d}-', width=4)
