"""Audit trail for money movements and classification decisions."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from esim_reseller.core.logging import get_logger
from esim_reseller.db.models import AuditLog

logger = get_logger(__name__)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def record(
    session: AsyncSession,
    table_name: str,
    action: str,
    agent_id: str | None = None,
    **values: Any,
) -> AuditLog:
    """Add an audit row to the session and emit the matching log event.

    The row is committed with the caller's unit of work.
    """
    payload = _jsonable(values)
    entry = AuditLog(table_name=table_name, action=action, agent_id=agent_id, new_values=payload)
    session.add(entry)
    logger.info(action, table=table_name, agent_id=agent_id, **payload)
    return entry
