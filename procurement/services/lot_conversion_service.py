from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from procurement.config import settings
from procurement.errors import (
    InvalidStateError,
    NotFoundError,
    ReassemblyBlocker,
    ReassemblyNotEligibleError,
    StaleStateError,
    ValidationError,
)
from procurement.lots import EmptyLot, Lot, OpenLot, SealedLot, as_variant
from procurement.models import (
    ContainerStatus,
    ConversionLogEntry,
    ConversionType,
    DisposalLogEntry,
    Material,
    ReceivingLot,
)
from procurement.services.numbering_service import next_lot_number

logger = logging.getLogger(__name__)

REASSEMBLY_REASON_CODES = ('UNUSED_RETURN', 'ISSUE_TO_PROD', 'DATA_CORRECTION', 'OTHER')
DEFAULT_REASSEMBLY_REASON = 'UNUSED_RETURN'
DEFAULT_OPEN_REASON = 'ISSUE_TO_PROD'
DEFAULT_DISPOSAL_REASON = 'OPEN_EXPIRED'
DEFAULT_DISPOSAL_SOURCE = 'expiry'
QUANTITY_STEP = Decimal('0.0001')


@dataclass(frozen=True)
class ConversionParams:
    default_conversion_factor: Decimal = Decimal('1')
    proportional_increment: bool = False


@dataclass(frozen=True)
class OpenedContainer:
    sealed_lot: ReceivingLot
    open_lot: ReceivingLot
    log_entry: ConversionLogEntry


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _validate_params(params: ConversionParams) -> None:
    if params.default_conversion_factor <= 0:
        raise ValueError('Default conversion factor must be positive')


def conversion_params_from_settings() -> ConversionParams:
    params = ConversionParams(
        default_conversion_factor=Decimal(settings.default_conversion_factor),
        proportional_increment=settings.reassembly_proportional_increment,
    )
    _validate_params(params)
    return params


def _get_lot(db: Session, lot_id: int, *, for_update: bool = False) -> ReceivingLot:
    query = select(ReceivingLot).where(ReceivingLot.id == lot_id)
    if for_update:
        query = query.with_for_update()
    lot = db.execute(query).scalar_one_or_none()
    if lot is None:
        raise NotFoundError('Lot not found')
    return lot


def conversion_factor_for(db: Session, material_id: int, params: ConversionParams) -> Decimal:
    material = db.get(Material, material_id)
    if material is not None and material.conversion_factor is not None and material.conversion_factor > 0:
        return Decimal(material.conversion_factor)
    return params.default_conversion_factor


def load_lot(db: Session, lot_id: int, params: ConversionParams, *, for_update: bool = False) -> tuple[ReceivingLot, Lot]:
    row = _get_lot(db, lot_id, for_update=for_update)
    return row, as_variant(row, conversion_factor=conversion_factor_for(db, row.material_id, params))


def reassembly_blockers(db: Session, lot: Lot) -> tuple[ReassemblyBlocker, ...]:
    """Every reason ``lot`` cannot be reassembled, in a stable order."""
    if not isinstance(lot, OpenLot):
        return (ReassemblyBlocker.NOT_OPEN_CONTAINER,)

    reasons: list[ReassemblyBlocker] = []
    if not lot.is_full():
        reasons.append(ReassemblyBlocker.INSUFFICIENT_QUANTITY)
    parent = db.get(ReceivingLot, lot.parent_lot_id) if lot.parent_lot_id is not None else None
    if parent is None:
        reasons.append(ReassemblyBlocker.MISSING_PARENT)
    elif parent.container_status != ContainerStatus.SEALED:
        reasons.append(ReassemblyBlocker.PARENT_RETIRED)
    return tuple(reasons)


_BLOCKER_MESSAGES = {
    ReassemblyBlocker.NOT_OPEN_CONTAINER: 'only open containers can be reassembled',
    ReassemblyBlocker.INSUFFICIENT_QUANTITY: 'remaining quantity is less than one full container',
    ReassemblyBlocker.MISSING_PARENT: 'no parent sealed lot to return it to',
    ReassemblyBlocker.PARENT_RETIRED: 'the parent lot is no longer sealed',
}


def _reassembly_increment(lot: OpenLot, params: ConversionParams) -> Decimal:
    if params.proportional_increment:
        # Truncated to the lot quantity scale so the log matches the stored parent.
        return (lot.remaining / lot.conversion_factor).quantize(QUANTITY_STEP, rounding=ROUND_DOWN)
    return Decimal('1')


def reassemble_lot(
    db: Session,
    *,
    lot_id: int,
    reason_code: str = DEFAULT_REASSEMBLY_REASON,
    notes: str | None = None,
    performed_by: str | None = None,
    params: ConversionParams | None = None,
) -> ConversionLogEntry:
    """Return a full open container to its parent sealed lot.

    The parent is incremented with a single ``quantity = quantity + n``
    UPDATE so concurrent reassemblies into the same parent all land.
    """
    params = params or conversion_params_from_settings()
    _validate_params(params)
    if reason_code not in REASSEMBLY_REASON_CODES:
        raise ValidationError(f'Unknown reassembly reason code: {reason_code}')

    row, lot = load_lot(db, lot_id, params, for_update=True)
    reasons = reassembly_blockers(db, lot)
    if reasons:
        raise ReassemblyNotEligibleError(
            f'Lot {row.internal_lot_number} cannot be reassembled: '
            + '; '.join(_BLOCKER_MESSAGES[reason] for reason in reasons),
            reasons=reasons,
        )

    increment = _reassembly_increment(lot, params)
    now = _now()
    db.flush()

    emptied = db.execute(
        update(ReceivingLot)
        .where(ReceivingLot.id == lot.id, ReceivingLot.container_status == ContainerStatus.OPEN)
        .values(quantity_received=Decimal('0'), container_status=ContainerStatus.EMPTY, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if emptied.rowcount != 1:
        raise StaleStateError(f'Lot {lot.internal_lot_number} was changed by another user')

    incremented = db.execute(
        update(ReceivingLot)
        .where(ReceivingLot.id == lot.parent_lot_id, ReceivingLot.container_status == ContainerStatus.SEALED)
        .values(quantity_received=ReceivingLot.quantity_received + increment, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if incremented.rowcount != 1:
        raise StaleStateError('Parent lot was retired by another user')

    parent = db.get(ReceivingLot, lot.parent_lot_id)
    db.refresh(parent)
    db.refresh(row)

    entry = ConversionLogEntry(
        source_lot_id=lot.id,
        source_quantity=lot.remaining,
        source_unit_id=lot.unit_id,
        target_lot_id=parent.id,
        target_quantity=increment,
        target_unit_id=parent.unit_id,
        conversion_type=ConversionType.REASSEMBLY,
        reason_code=reason_code,
        reason_notes=notes,
        performed_by=performed_by,
        performed_at=now,
    )
    db.add(entry)
    db.flush()

    logger.info(
        'Reassembled lot %s into %s (+%s)',
        lot.internal_lot_number,
        parent.internal_lot_number,
        increment,
        extra={'source_lot_id': lot.id, 'target_lot_id': parent.id, 'reason_code': reason_code},
    )
    return entry


def dispose_lot(
    db: Session,
    *,
    lot_id: int,
    reason_code: str = DEFAULT_DISPOSAL_REASON,
    notes: str | None = None,
    performed_by: str | None = None,
    source_type: str = DEFAULT_DISPOSAL_SOURCE,
    params: ConversionParams | None = None,
) -> DisposalLogEntry:
    params = params or conversion_params_from_settings()
    if not (reason_code or '').strip():
        raise ValidationError('Disposal reason code is required')
    if not (source_type or '').strip():
        raise ValidationError('Disposal source type is required')

    row, lot = load_lot(db, lot_id, params, for_update=True)
    quantity = Decimal(row.quantity_received)
    if isinstance(lot, EmptyLot) or quantity <= 0:
        raise InvalidStateError(
            f'Lot {row.internal_lot_number} has nothing left to dispose',
            operation='dispose',
            current_status=row.container_status.value,
        )

    now = _now()
    db.flush()
    result = db.execute(
        update(ReceivingLot)
        .where(
            ReceivingLot.id == row.id,
            ReceivingLot.container_status == row.container_status,
            ReceivingLot.quantity_received > 0,
        )
        .values(quantity_received=Decimal('0'), container_status=ContainerStatus.EMPTY, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleStateError(f'Lot {row.internal_lot_number} was changed by another user')
    db.refresh(row)

    # Valuation is not tracked here; disposals are recorded at zero value.
    entry = DisposalLogEntry(
        receiving_lot_id=row.id,
        material_id=row.material_id,
        quantity_disposed=quantity,
        unit_id=row.unit_id,
        total_value=Decimal('0.00'),
        disposal_reason_code=reason_code,
        disposal_reason_notes=notes,
        source_type=source_type,
        disposed_by=performed_by,
        disposed_at=now,
    )
    db.add(entry)
    db.flush()

    logger.info(
        'Disposed %s from lot %s',
        quantity,
        row.internal_lot_number,
        extra={'receiving_lot_id': row.id, 'reason_code': reason_code},
    )
    return entry


def open_container(
    db: Session,
    *,
    lot_id: int,
    performed_by: str | None = None,
    notes: str | None = None,
    reason_code: str = DEFAULT_OPEN_REASON,
    params: ConversionParams | None = None,
) -> OpenedContainer:
    """Break one unit out of a sealed lot into a new open child lot."""
    params = params or conversion_params_from_settings()
    if reason_code not in REASSEMBLY_REASON_CODES:
        raise ValidationError(f'Unknown conversion reason code: {reason_code}')

    row, lot = load_lot(db, lot_id, params, for_update=True)
    if not isinstance(lot, SealedLot) or not lot.can_open():
        raise InvalidStateError(
            f'Lot {row.internal_lot_number} has no sealed unit to open',
            operation='open',
            current_status=row.container_status.value,
        )

    now = _now()
    db.flush()
    result = db.execute(
        update(ReceivingLot)
        .where(
            ReceivingLot.id == lot.id,
            ReceivingLot.container_status == ContainerStatus.SEALED,
            ReceivingLot.quantity_received >= 1,
        )
        .values(quantity_received=ReceivingLot.quantity_received - 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StaleStateError(f'Lot {lot.internal_lot_number} was changed by another user')
    db.refresh(row)

    material = db.get(Material, lot.material_id)
    child = ReceivingLot(
        internal_lot_number=next_lot_number(db, received_date=date.today()),
        material_id=lot.material_id,
        unit_id=material.base_unit_id if material is not None and material.base_unit_id else lot.unit_id,
        supplier_id=row.supplier_id,
        location_id=lot.location_id,
        parent_lot_id=lot.id,
        quantity_received=lot.conversion_factor,
        container_status=ContainerStatus.OPEN,
        status=row.status,
        supplier_lot_number=row.supplier_lot_number,
        received_date=row.received_date,
        expiry_date=lot.expiry_date,
        opened_at=now,
        notes=notes,
    )
    db.add(child)
    db.flush()

    entry = ConversionLogEntry(
        source_lot_id=lot.id,
        source_quantity=Decimal('1'),
        source_unit_id=lot.unit_id,
        target_lot_id=child.id,
        target_quantity=lot.conversion_factor,
        target_unit_id=child.unit_id,
        conversion_type=ConversionType.DISASSEMBLY,
        reason_code=reason_code,
        reason_notes=notes,
        performed_by=performed_by,
        performed_at=now,
    )
    db.add(entry)
    db.flush()

    logger.info(
        'Opened a unit of lot %s into %s',
        lot.internal_lot_number,
        child.internal_lot_number,
        extra={'source_lot_id': lot.id, 'target_lot_id': child.id},
    )
    return OpenedContainer(sealed_lot=row, open_lot=child, log_entry=entry)


def lot_to_dict(row: ReceivingLot, *, conversion_factor: Decimal) -> dict:
    return {
        'id': row.id,
        'internal_lot_number': row.internal_lot_number,
        'material_id': row.material_id,
        'unit_id': row.unit_id,
        'location_id': row.location_id,
        'parent_lot_id': row.parent_lot_id,
        'quantity_received': row.quantity_received,
        'container_status': row.container_status.value,
        'status': row.status.value,
        'supplier_lot_number': row.supplier_lot_number,
        'expiry_date': row.expiry_date,
        'opened_at': row.opened_at,
        'conversion_factor': conversion_factor,
    }


def list_open_containers(
    db: Session,
    *,
    material_id: int | None = None,
    location_id: int | None = None,
    params: ConversionParams | None = None,
) -> list[dict]:
    params = params or conversion_params_from_settings()
    query = (
        select(ReceivingLot)
        .where(ReceivingLot.container_status == ContainerStatus.OPEN)
        .order_by(ReceivingLot.opened_at.desc(), ReceivingLot.id.desc())
    )
    if material_id is not None:
        query = query.where(ReceivingLot.material_id == material_id)
    if location_id is not None:
        query = query.where(ReceivingLot.location_id == location_id)

    out = []
    factors: dict[int, Decimal] = {}
    for row in db.execute(query).scalars().all():
        if row.material_id not in factors:
            factors[row.material_id] = conversion_factor_for(db, row.material_id, params)
        lot = as_variant(row, conversion_factor=factors[row.material_id])
        out.append(
            {
                **lot_to_dict(row, conversion_factor=factors[row.material_id]),
                'can_reassemble': not reassembly_blockers(db, lot),
            }
        )
    return out


def list_disposals(
    db: Session,
    *,
    reason_code: str | None = None,
    material_id: int | None = None,
    limit: int = 100,
) -> list[dict]:
    query = (
        select(DisposalLogEntry, ReceivingLot.internal_lot_number)
        .join(ReceivingLot, ReceivingLot.id == DisposalLogEntry.receiving_lot_id)
        .order_by(DisposalLogEntry.disposed_at.desc(), DisposalLogEntry.id.desc())
        .limit(limit)
    )
    if reason_code:
        query = query.where(DisposalLogEntry.disposal_reason_code == reason_code)
    if material_id is not None:
        query = query.where(DisposalLogEntry.material_id == material_id)
    return [
        {
            'id': entry.id,
            'receiving_lot_id': entry.receiving_lot_id,
            'internal_lot_number': lot_number,
            'material_id': entry.material_id,
            'quantity_disposed': entry.quantity_disposed,
            'unit_id': entry.unit_id,
            'total_value': entry.total_value,
            'disposal_reason_code': entry.disposal_reason_code,
            'disposal_reason_notes': entry.disposal_reason_notes,
            'source_type': entry.source_type,
            'disposed_by': entry.disposed_by,
            'disposed_at': entry.disposed_at,
        }
        for entry, lot_number in db.execute(query).all()
    ]


def conversion_to_dict(entry: ConversionLogEntry) -> dict:
    return {
        'id': entry.id,
        'conversion_type': entry.conversion_type.value,
        'source_lot_id': entry.source_lot_id,
        'source_quantity': entry.source_quantity,
        'source_unit_id': entry.source_unit_id,
        'target_lot_id': entry.target_lot_id,
        'target_quantity': entry.target_quantity,
        'target_unit_id': entry.target_unit_id,
        'reason_code': entry.reason_code,
        'reason_notes': entry.reason_notes,
        'performed_by': entry.performed_by,
        'performed_at': entry.performed_at,
    }


def list_conversions_for_lot(db: Session, *, lot_id: int) -> list[dict]:
    _get_lot(db, lot_id)
    entries = db.execute(
        select(ConversionLogEntry)
        .where(or_(ConversionLogEntry.source_lot_id == lot_id, ConversionLogEntry.target_lot_id == lot_id))
        .order_by(ConversionLogEntry.performed_at.asc(), ConversionLogEntry.id.asc())
    ).scalars().all()
    return [conversion_to_dict(entry) for entry in entries]
