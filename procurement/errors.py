"""Typed failures raised by the procurement services.

Every error carries a machine-readable ``code`` and the HTTP status the
routers answer with. Structured fields (current status, failed reassembly
preconditions) travel on the instance so callers never parse messages.
"""

from __future__ import annotations

from enum import Enum


class ReassemblyBlocker(str, Enum):
    NOT_OPEN_CONTAINER = 'NOT_OPEN_CONTAINER'
    INSUFFICIENT_QUANTITY = 'INSUFFICIENT_QUANTITY'
    MISSING_PARENT = 'MISSING_PARENT'
    PARENT_RETIRED = 'PARENT_RETIRED'


class ProcurementError(Exception):
    code = 'PROCUREMENT_ERROR'
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def detail(self) -> dict:
        return {'code': self.code, 'message': self.message}


class NotFoundError(ProcurementError):
    code = 'NOT_FOUND'
    status_code = 404


class ValidationError(ProcurementError, ValueError):
    code = 'VALIDATION_ERROR'
    status_code = 400


class InvalidStateError(ProcurementError):
    code = 'INVALID_STATE'
    status_code = 409

    def __init__(self, message: str, *, operation: str, current_status: str) -> None:
        super().__init__(message)
        self.operation = operation
        self.current_status = current_status

    def detail(self) -> dict:
        return {**super().detail(), 'operation': self.operation, 'current_status': self.current_status}


class IneligiblePOError(ProcurementError):
    code = 'INELIGIBLE_PURCHASE_ORDER'
    status_code = 409

    def __init__(self, message: str, *, current_status: str) -> None:
        super().__init__(message)
        self.current_status = current_status

    def detail(self) -> dict:
        return {**super().detail(), 'current_status': self.current_status}


class StaleStateError(ProcurementError):
    """The row changed between the precondition read and the guarded write."""

    code = 'STALE_STATE'
    status_code = 409


class ReassemblyNotEligibleError(ProcurementError):
    code = 'REASSEMBLY_NOT_ELIGIBLE'
    status_code = 422

    def __init__(self, message: str, *, reasons: tuple[ReassemblyBlocker, ...]) -> None:
        super().__init__(message)
        self.reasons = reasons

    @property
    def reason(self) -> ReassemblyBlocker:
        return self.reasons[0]

    def detail(self) -> dict:
        return {**super().detail(), 'reasons': [reason.value for reason in self.reasons]}
