"""
Structured events for the core.

Every component logs under ``entity_bridge.core.<component>``. Events carry
the entity tag, the operation and the API flavour as LogRecord extras so
``LogfmtFormatter`` renders them next to the event name.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .requests import RequestDescriptor

CORE_LOGGER = "entity_bridge.core"

# Attributes every LogRecord already has; extras may not overwrite them.
RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}


def get_logger(component: str) -> logging.Logger:
    return logging.getLogger(f"{CORE_LOGGER}.{component}")


def event_fields(**fields: Any) -> Dict[str, Any]:
    """Enum members become their values; None and record attributes drop out."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None or key in RECORD_ATTRIBUTES:
            continue
        out[key] = value.value if isinstance(value, Enum) else value
    return out


def request_fields(request: "RequestDescriptor") -> Dict[str, Any]:
    return event_fields(
        entity=request.entity,
        operation=request.operation,
        api=request.api,
        method=request.method,
        uri=request.uri,
    )


def log_event(
    event: str,
    logger: Optional[logging.Logger] = None,
    *,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    log = logger or logging.getLogger(CORE_LOGGER)
    if not log.isEnabledFor(level):
        return
    log.log(level, event, extra={"event": event, **event_fields(**fields)})


__all__ = [
    "CORE_LOGGER",
    "event_fields",
    "get_logger",
    "log_event",
    "request_fields",
]
