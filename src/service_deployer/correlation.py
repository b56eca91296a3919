"""Correlation ID tracking for deploy runs.

One correlation ID is bound per CLI invocation. The operator side forwards it
to the target host through CORRELATION_ENV_VAR so that local and remote log
lines for the same deploy can be joined.
"""

import os
import uuid
from contextvars import ContextVar
from typing import Optional

CORRELATION_ENV_VAR = "SERVICE_DEPLOY_CORRELATION_ID"

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Return the correlation ID bound to the current context, if any."""
    return _correlation_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation ID to the current context.

    Args:
        correlation_id: ID to bind. When omitted, the ID inherited from the
            environment is used, or a fresh UUID4 is generated.

    Returns:
        The bound correlation ID
    """
    value = correlation_id or os.environ.get(CORRELATION_ENV_VAR) or str(uuid.uuid4())
    _correlation_id.set(value)
    return value


def clear_correlation_id() -> None:
    _correlation_id.set(None)
