from __future__ import annotations

from sqlalchemy.orm import Session

from procurement.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor_id: str | None,
    action: str,
    purchase_order_id: int | None = None,
    receiving_session_id: int | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_id=actor_id,
            action=action,
            purchase_order_id=purchase_order_id,
            receiving_session_id=receiving_session_id,
            meta=metadata or {},
        )
    )
