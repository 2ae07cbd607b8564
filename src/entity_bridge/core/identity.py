"""
Identity map: one live Instance per (entity tag, key) within a context.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .errors import MetadataError
from .metadata import EntityDescriptor, MetadataRegistry, PropertyDescriptor
from .model import Instance
from .payload import MISSING, get_path, inline_elements, is_annotation, unwrap

if TYPE_CHECKING:  # pragma: no cover
    from .context import DataContext
    from .model import Collection

IdentityKey = Tuple[str, Any]


def coerce_value(prop: PropertyDescriptor, value: Any) -> Any:
    return prop.coerce(value)


def read_property(record: Dict[str, Any], prop: PropertyDescriptor) -> Any:
    if prop.path:
        return get_path(record, prop.path)
    return record.get(prop.remote_name, MISSING)


class IdentityMap:
    def __init__(
        self, registry: MetadataRegistry, context: Optional["DataContext"] = None
    ):
        self._registry = registry
        self._context = context
        self._entries: Dict[IdentityKey, Instance] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def key_of(self, descriptor: EntityDescriptor, record: Dict[str, Any]) -> Any:
        prop = descriptor.key_property()
        if prop is None:
            return None
        value = read_property(record, prop)
        if value is MISSING or value is None:
            return None
        return coerce_value(prop, value)

    def lookup(self, tag: str, key: Any) -> Optional[Instance]:
        return self._entries.get((tag, key))

    def register(self, instance: Instance) -> Instance:
        """Track an instance whose key is known; returns the canonical one."""
        key = instance.key
        if key is None:
            return instance
        return self._entries.setdefault((instance.tag, key), instance)

    def evict(self, instance: Instance) -> None:
        slot = (instance.tag, instance.key)
        if self._entries.get(slot) is instance:
            del self._entries[slot]

    def merge(
        self,
        tag: str,
        raw: Dict[str, Any],
        *,
        collection: Optional["Collection"] = None,
        parent: Optional[Instance] = None,
        into: Optional[Instance] = None,
    ) -> Instance:
        """
        Fold one response record into the map. An existing instance with the
        same key is updated in place (fields absent from the record are
        kept) and its change set cleared; otherwise a new instance is
        created. The instance is appended to ``collection`` if given.
        """
        descriptor = self._registry.get(tag)
        record = unwrap(raw)
        key = self.key_of(descriptor, record)
        if key is None and descriptor.key:
            if into is None:
                raise MetadataError(
                    f"Record for {tag!r} carries no key field {descriptor.key!r}."
                )
            instance = into
        else:
            instance = self._entries.get((tag, key)) if key is not None else None
            if instance is None:
                instance = into or self._create(descriptor, parent, collection)
                if key is not None:
                    self._entries[(tag, key)] = instance

        instance._attach(parent=parent, collection=collection)
        self._apply(instance, descriptor, record)
        instance.clear_changes()
        if collection is not None:
            collection._append(instance)
        return instance

    def merge_all(
        self,
        tag: str,
        records: List[Dict[str, Any]],
        *,
        collection: Optional["Collection"] = None,
        parent: Optional[Instance] = None,
    ) -> List[Instance]:
        """Merge a page of records; every key is checked before any merge."""
        descriptor = self._registry.get(tag)
        if descriptor.key:
            for record in records:
                if self.key_of(descriptor, unwrap(record)) is None:
                    raise MetadataError(
                        f"Record for {tag!r} carries no key field {descriptor.key!r}."
                    )
        return [
            self.merge(tag, record, collection=collection, parent=parent)
            for record in records
        ]

    def _create(
        self,
        descriptor: EntityDescriptor,
        parent: Optional[Instance],
        collection: Optional["Collection"],
    ) -> Instance:
        model = descriptor.model or Instance
        return model(
            descriptor, context=self._context, parent=parent, collection=collection
        )

    def _apply(
        self, instance: Instance, descriptor: EntityDescriptor, record: Dict[str, Any]
    ) -> None:
        consumed = set()
        for prop in descriptor.properties:
            consumed.add(prop.select_name)
            raw_value = read_property(record, prop)
            if raw_value is MISSING:
                continue

            if prop.expandable and prop.target:
                self._apply_navigation(instance, prop, prop.target, raw_value, record)
                continue

            if prop.custom_mapping and descriptor.map_property is not None:
                value = descriptor.map_property(instance, prop, raw_value)
            else:
                value = coerce_value(prop, raw_value)
            instance._load_value(prop.name, value)

        for name, value in record.items():
            if name in consumed or is_annotation(name):
                continue
            instance._load_value(name, value)

    def _apply_navigation(
        self,
        instance: Instance,
        prop: PropertyDescriptor,
        target: str,
        raw_value: Any,
        record: Dict[str, Any],
    ) -> None:
        elements = inline_elements(raw_value)
        if elements is not None:
            child = instance.children(prop.name)
            self.merge_all(target, elements, collection=child, parent=instance)
            cursor = record.get(f"{prop.remote_name}@odata.nextLink")
            child.paging.mark_loaded(str(cursor) if cursor else None)
            return
        if isinstance(raw_value, dict) and raw_value:
            related = self.merge(target, raw_value, parent=instance)
            instance._load_value(prop.name, related)
            return
        instance._load_value(prop.name, raw_value)


__all__ = ["IdentityMap", "coerce_value", "read_property"]
