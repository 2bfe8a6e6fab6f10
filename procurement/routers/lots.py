from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from procurement.db import get_db
from procurement.dependencies import get_actor_id, http_error
from procurement.errors import ProcurementError
from procurement.schemas import DisposeIn, OpenContainerIn, ReassembleIn
from procurement.services.lot_conversion_service import (
    conversion_to_dict,
    dispose_lot,
    list_conversions_for_lot,
    list_disposals,
    list_open_containers,
    open_container,
    reassemble_lot,
)

router = APIRouter(tags=['lots'])


@router.get('/lots/open-containers')
def open_containers(
    material_id: int | None = None,
    location_id: int | None = None,
    db: Session = Depends(get_db),
):
    return list_open_containers(db, material_id=material_id, location_id=location_id)


@router.post('/lots/{lot_id}/open', status_code=201)
def open_lot(
    lot_id: int,
    payload: OpenContainerIn | None = None,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    payload = payload or OpenContainerIn()
    try:
        opened = open_container(
            db,
            lot_id=lot_id,
            performed_by=actor_id,
            notes=payload.notes,
            reason_code=payload.reason_code,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return {
        'sealed_lot_id': opened.sealed_lot.id,
        'sealed_quantity': opened.sealed_lot.quantity_received,
        'open_lot_id': opened.open_lot.id,
        'open_lot_number': opened.open_lot.internal_lot_number,
        'open_quantity': opened.open_lot.quantity_received,
        'conversion': conversion_to_dict(opened.log_entry),
    }


@router.post('/lots/{lot_id}/reassemble')
def reassemble(
    lot_id: int,
    payload: ReassembleIn | None = None,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    payload = payload or ReassembleIn()
    try:
        entry = reassemble_lot(
            db,
            lot_id=lot_id,
            reason_code=payload.reason_code,
            notes=payload.notes,
            performed_by=actor_id,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return conversion_to_dict(entry)


@router.post('/lots/{lot_id}/dispose')
def dispose(
    lot_id: int,
    payload: DisposeIn | None = None,
    actor_id: str | None = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    payload = payload or DisposeIn()
    try:
        entry = dispose_lot(
            db,
            lot_id=lot_id,
            reason_code=payload.reason_code,
            notes=payload.notes,
            performed_by=actor_id,
            source_type=payload.source_type,
        )
    except ProcurementError as exc:
        raise http_error(exc) from exc
    db.commit()
    return {
        'id': entry.id,
        'receiving_lot_id': entry.receiving_lot_id,
        'quantity_disposed': entry.quantity_disposed,
        'total_value': entry.total_value,
        'disposal_reason_code': entry.disposal_reason_code,
        'source_type': entry.source_type,
        'disposed_by': entry.disposed_by,
        'disposed_at': entry.disposed_at,
    }


@router.get('/lots/{lot_id}/conversions')
def conversions(lot_id: int, db: Session = Depends(get_db)):
    try:
        return list_conversions_for_lot(db, lot_id=lot_id)
    except ProcurementError as exc:
        raise http_error(exc) from exc


@router.get('/disposals')
def disposals(
    reason_code: str | None = None,
    material_id: int | None = None,
    db: Session = Depends(get_db),
):
    return list_disposals(db, reason_code=reason_code, material_id=material_id)
