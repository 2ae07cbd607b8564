"""
Add / update / delete payload builders.

Payloads use the remote field names from metadata; path properties are
written back as nested objects. Per-type ``add_payload`` /
``update_payload`` hooks on the descriptor may adjust or replace the
result.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .errors import EmptyUpdateError, MutationError
from .metadata import EntityDescriptor, PropertyDescriptor
from .model import Instance
from .payload import is_annotation


def serialize_value(value: Any) -> Any:
    if isinstance(value, Instance):
        return serialize_value(value.key)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def _settable(prop: PropertyDescriptor) -> bool:
    return not prop.read_only and not (prop.expandable and prop.target)


def _write(payload: Dict[str, Any], prop: PropertyDescriptor, value: Any) -> None:
    if not prop.path:
        payload[prop.remote_name] = serialize_value(value)
        return
    *parents, leaf = prop.path.split(".")
    node = payload
    for segment in parents:
        node = node.setdefault(segment, {})
    node[leaf] = serialize_value(value)


def _payload_for(
    descriptor: EntityDescriptor, instance: Instance, names: Iterable[str]
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for name in names:
        value = instance.get(name)
        prop = descriptor.get_property(name)
        if prop is None:
            if not is_annotation(name) and not isinstance(value, Instance):
                payload[name] = serialize_value(value)
            continue
        if _settable(prop):
            _write(payload, prop, value)
    return payload


def _apply_hook(
    hook: Any, instance: Instance, payload: Dict[str, Any]
) -> Dict[str, Any]:
    if hook is None:
        return payload
    result = hook(instance, payload)
    return payload if result is None else result


def build_add(descriptor: EntityDescriptor, instance: Instance) -> Dict[str, Any]:
    """All settable values of a new instance; unset key fields are left out."""
    names = [
        name
        for name, value in instance.values().items()
        if not (name == descriptor.key and value is None)
    ]
    payload = _payload_for(descriptor, instance, names)
    return _apply_hook(descriptor.add_payload, instance, payload)


def build_update(descriptor: EntityDescriptor, instance: Instance) -> Dict[str, Any]:
    """Only the changed fields; an update with nothing changed is an error."""
    if not instance.changed:
        raise EmptyUpdateError(f"{instance!r} has no changes to update.")
    payload = _payload_for(descriptor, instance, instance.changed)
    if not payload:
        raise EmptyUpdateError(
            f"{instance!r} only changed read-only or navigation properties."
        )
    return _apply_hook(descriptor.update_payload, instance, payload)


def build_delete(
    descriptor: EntityDescriptor, instance: Instance
) -> Optional[Dict[str, Any]]:
    """
    Deletes carry no body; the resolved URI identifies the target. An
    instance that was never saved (no key yet) cannot be deleted.
    """
    if descriptor.key and instance.key is None:
        raise MutationError(f"{instance!r} was never saved; nothing to delete.")
    return None


__all__ = ["build_add", "build_update", "build_delete", "serialize_value"]
