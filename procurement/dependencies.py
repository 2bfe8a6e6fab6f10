import logging

from fastapi import Header, HTTPException

from procurement.errors import ProcurementError

logger = logging.getLogger(__name__)


def get_actor_id(x_actor_id: str | None = Header(default=None)) -> str | None:
    if x_actor_id is None:
        return None
    return x_actor_id.strip() or None


def http_error(exc: ProcurementError) -> HTTPException:
    logger.info('Rejected with %s: %s', exc.code, exc.message, extra={'error_code': exc.code})
    return HTTPException(status_code=exc.status_code, detail=exc.detail())
