"""Audit trail for stock movements, customer changes, logins and sales.

``record`` writes one structured log record on the ``store.audit`` logger.
It never raises: a broken log handler must not fail the sale that is being
audited.
"""

from __future__ import annotations

import enum
import logging
from decimal import Decimal
from typing import Any, Dict

audit_logger = logging.getLogger("store.audit")


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, enum.Enum):
        return value.value
    return value


def record(event: str, user_id: str | None = None, **fields: Any) -> None:
    """Record an audit event with arbitrary keyword fields."""
    try:
        payload: Dict[str, Any] = {"event": event}
        payload.update({k: _plain(v) for k, v in fields.items()})
        extra: Dict[str, Any] = {"extra": payload}
        if user_id is not None:
            extra["user_id"] = user_id
        audit_logger.info(event, extra=extra)
    except Exception:
        pass
