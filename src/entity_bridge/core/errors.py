from __future__ import annotations

from typing import Any, Dict, Optional

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


class EntityBridgeError(Exception):
    """Base error for everything raised by entity_bridge."""


# --- Configuration / translation errors ------------------------------------ #


class MetadataError(EntityBridgeError):
    """Missing entity registration or operation/scope mapping."""


class UnresolvedTokenError(EntityBridgeError):
    def __init__(self, token: str, template: str, reason: str):
        super().__init__(f"Cannot resolve {{{token}}} in {template!r}: {reason}")
        self.token = token
        self.template = template
        self.reason = reason


class QueryError(EntityBridgeError):
    """Query rejected at translation time; never sent to the server."""


class UnsupportedQueryError(QueryError):
    pass


class NotExpandableError(QueryError):
    def __init__(self, entity: str, name: str):
        super().__init__(f"Property {name!r} of {entity!r} is not expandable.")
        self.entity = entity
        self.name = name


class MutationError(EntityBridgeError):
    """Add, update or delete rejected before a request is built."""


class EmptyUpdateError(MutationError):
    pass


class PagingError(EntityBridgeError):
    pass


class BatchError(EntityBridgeError):
    pass


# --- Transport errors ------------------------------------------------------ #


class ClientError(EntityBridgeError):
    """Network/timeout failure talking to the remote API."""


class HTTPError(ClientError):
    retryable = False

    def __init__(
        self,
        *,
        status_code: int,
        method: str,
        url: str,
        message: str,
        response_json: Optional[Dict[str, Any]] = None,
        response_text: Optional[str] = None,
    ):
        super().__init__(f"{status_code} {method} {url}: {message}")
        self.status_code = status_code
        self.method = method
        self.url = url
        self.message = message
        self.response_json = response_json
        self.response_text = response_text


class RetryableHTTPError(HTTPError):
    """Rate limiting / service unavailable; safe to retry later."""

    retryable = True


class TerminalHTTPError(HTTPError):
    """Validation, authorization, not-found and other final failures."""


class ParseError(ClientError):
    pass


def classify_status(status_code: int) -> type:
    if status_code in RETRYABLE_STATUSES:
        return RetryableHTTPError
    return TerminalHTTPError


def error_message(payload: Any, default: str = "request failed") -> str:
    """Pull a human readable message out of a REST or Graph error body."""
    if not isinstance(payload, dict):
        return default
    err = payload.get("error") or payload.get("odata.error")
    if isinstance(err, dict):
        msg = err.get("message")
        if isinstance(msg, dict):
            msg = msg.get("value")
        if msg:
            return str(msg)
        code = err.get("code")
        if code:
            return str(code)
    if isinstance(err, str) and err:
        return err
    return str(payload.get("message") or default)


def http_error(
    *,
    status_code: int,
    method: str,
    url: str,
    response_json: Optional[Dict[str, Any]] = None,
    response_text: Optional[str] = None,
) -> HTTPError:
    cls = classify_status(status_code)
    return cls(
        status_code=status_code,
        method=method,
        url=url,
        message=error_message(response_json),
        response_json=response_json,
        response_text=response_text,
    )


__all__ = [
    "EntityBridgeError",
    "MetadataError",
    "UnresolvedTokenError",
    "QueryError",
    "UnsupportedQueryError",
    "NotExpandableError",
    "MutationError",
    "EmptyUpdateError",
    "PagingError",
    "BatchError",
    "ClientError",
    "HTTPError",
    "RetryableHTTPError",
    "TerminalHTTPError",
    "ParseError",
    "RETRYABLE_STATUSES",
    "classify_status",
    "error_message",
    "http_error",
]
