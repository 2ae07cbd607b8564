"""
Helpers for reading REST/Graph JSON response payloads.
"""

from typing import Any, Dict, List, Optional

NEXT_LINK_KEYS = ("@odata.nextLink", "odata.nextLink")


class _Missing:
    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def unwrap(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Strips the verbose-JSON ``d`` envelope if present.
    Example: {'d': {'Id': 1}} -> {'Id': 1}
    """
    inner = payload.get("d") if isinstance(payload, dict) else None
    if isinstance(inner, dict):
        return inner
    return payload


def get_path(record: Dict[str, Any], path: str) -> Any:
    """
    Walks a dotted path into nested dicts.
    Returns MISSING (falsy) when any segment is absent, so callers can tell
    an absent field apart from an explicit null.
    """
    current: Any = record
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return MISSING
        current = current[segment]
    return current


def collection_elements(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Extract the element list from a collection payload.
    Raises ValueError if the expected structure is missing or malformed.
    """
    body = unwrap(payload)
    elements = body.get("value", body.get("results", []))
    if not isinstance(elements, list):
        raise ValueError("Expected collection 'value' to be a list.")
    return [e for e in elements if isinstance(e, dict)]


def next_link(payload: Dict[str, Any]) -> Optional[str]:
    """Cursor for the following page, if the server returned one."""
    for key in NEXT_LINK_KEYS:
        link = payload.get(key)
        if link:
            return str(link)
    body = unwrap(payload)
    link = body.get("__next") if body is not payload else None
    return str(link) if link else None


def inline_elements(value: Any) -> Optional[List[Dict[str, Any]]]:
    """
    Elements of an expanded navigation value, or None if it isn't one.
    Accepts a bare list, {'value': [...]} or verbose {'results': [...]}.
    """
    if isinstance(value, list):
        return [e for e in value if isinstance(e, dict)]
    if isinstance(value, dict):
        inner = value.get("value", value.get("results"))
        if isinstance(inner, list):
            return [e for e in inner if isinstance(e, dict)]
    return None


def is_annotation(key: str) -> bool:
    return "@" in key or key.startswith("odata.") or key.startswith("__")


__all__ = [
    "MISSING",
    "unwrap",
    "get_path",
    "collection_elements",
    "next_link",
    "inline_elements",
    "is_annotation",
]
