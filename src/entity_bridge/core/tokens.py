"""
URI template token resolution.

Tokens look like ``{Id}`` or ``{Parent.Parent.Id}``: each leading
``Parent`` segment walks one hop up the ownership chain, the remaining
segment names a property (further dots walk into a nested value).
"""

from __future__ import annotations

import re
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional

from .errors import UnresolvedTokenError
from .metadata import ApiType, PropertyKind
from .payload import MISSING, get_path

if TYPE_CHECKING:  # pragma: no cover
    from .model import Instance

TOKEN_RE = re.compile(r"\{([^{}]+)\}")
PARENT = "Parent"


def tokens_in(template: str) -> List[str]:
    return [m.group(1).strip() for m in TOKEN_RE.finditer(template)]


def format_token_value(value: Any, api: ApiType) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, uuid.UUID):
        return f"guid'{value}'" if api == ApiType.REST else str(value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _lookup(instance: "Instance", token: str, template: str) -> Any:
    segments = token.split(".")
    target = instance
    hops = 0
    while segments and segments[0] == PARENT:
        segments.pop(0)
        hops += 1
        parent = target.parent
        if parent is None:
            raise UnresolvedTokenError(token, template, f"no parent at hop {hops}")
        target = parent
    if not segments or not segments[0]:
        raise UnresolvedTokenError(token, template, "token names no property")

    value = target.get(segments[0], MISSING)
    if len(segments) > 1 and value is not MISSING:
        nested = ".".join(segments[1:])
        value = get_path(value, nested) if isinstance(value, dict) else MISSING
    if value is MISSING or value is None or value == "":
        raise UnresolvedTokenError(
            token, template, f"{target.tag}.{'.'.join(segments)} has no value"
        )
    if len(segments) == 1:
        value = _coerce(target, segments[0], value, token, template)
    return value


def _coerce(target: "Instance", name: str, value: Any, token: str, template: str):
    prop = target.descriptor.get_property(name)
    if prop is None or prop.kind != PropertyKind.GUID:
        return value
    coerced = prop.coerce(value)
    if not isinstance(coerced, uuid.UUID):
        raise UnresolvedTokenError(
            token, template, f"{target.tag}.{name} is not a guid: {value!r}"
        )
    return coerced


def resolve_tokens(
    template: str, instance: Optional["Instance"], api: Optional[ApiType] = None
) -> str:
    """
    Expand every token in ``template`` from ``instance`` and its parents.
    Any missing value raises UnresolvedTokenError; nothing is substituted
    with an empty string.
    """
    if instance is None:
        names = tokens_in(template)
        if names:
            raise UnresolvedTokenError(names[0], template, "no instance to read from")
        return template

    flavour = api or instance.descriptor.api

    def _sub(match: "re.Match[str]") -> str:
        token = match.group(1).strip()
        return format_token_value(_lookup(instance, token, template), flavour)

    return TOKEN_RE.sub(_sub, template)


__all__ = ["resolve_tokens", "format_token_value", "tokens_in", "TOKEN_RE"]
