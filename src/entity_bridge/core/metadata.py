"""
Entity metadata: per-type descriptors and the process-wide registry.

Descriptors are immutable pydantic models. They can be built in code or
validated from plain configuration structs (e.g. a JSON catalog) through
``MetadataRegistry.load``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
)

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import MetadataError


class ApiType(str, Enum):
    REST = "rest"
    GRAPH = "graph"


class Operation(str, Enum):
    GET = "Get"
    ADD = "Add"
    UPDATE = "Update"
    DELETE = "Delete"
    LINQ_GET = "LinqGet"


class PropertyKind(str, Enum):
    STRING = "string"
    INT = "int"
    FLOAT = "float"
    BOOL = "bool"
    GUID = "guid"
    DATETIME = "datetime"
    JSON = "json"


class PropertyDescriptor(BaseModel):
    name: str
    field: Optional[str] = None  # remote name, defaults to name
    path: Optional[str] = None  # dotted path into a nested response value
    kind: PropertyKind = PropertyKind.STRING
    expandable: bool = False
    expand_by_default: bool = False
    custom_mapping: bool = False
    read_only: bool = False
    target: Optional[str] = None  # entity tag of expanded records

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def remote_name(self) -> str:
        return self.field or self.name

    @property
    def is_path(self) -> bool:
        return bool(self.path)

    @property
    def select_name(self) -> str:
        """Name usable in a projection; path properties select their root."""
        if self.path:
            return self.path.split(".", 1)[0]
        return self.remote_name

    def coerce(self, value: Any) -> Any:
        """
        Converts a wire string to this kind's Python type (guid -> UUID,
        datetime -> datetime). Values that do not parse are returned as is.
        """
        if not isinstance(value, str):
            return value
        if self.kind == PropertyKind.GUID:
            try:
                return uuid.UUID(value)
            except ValueError:
                return value
        if self.kind == PropertyKind.DATETIME:
            try:
                return datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                return value
        return value


class UriTemplate(BaseModel):
    operation: Operation
    template: str
    scope: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="forbid")


PayloadHook = Callable[[Any, Dict[str, Any]], Optional[Dict[str, Any]]]
MappingHook = Callable[[Any, PropertyDescriptor, Any], Any]


class EntityDescriptor(BaseModel):
    tag: str
    api: ApiType
    key: Optional[str] = None
    templates: Tuple[UriTemplate, ...] = ()
    properties: Tuple[PropertyDescriptor, ...] = ()

    # Strategy hooks (set in code, not loadable from config)
    model: Optional[type] = Field(default=None, exclude=True)
    add_payload: Optional[PayloadHook] = Field(default=None, exclude=True)
    update_payload: Optional[PayloadHook] = Field(default=None, exclude=True)
    map_property: Optional[MappingHook] = Field(default=None, exclude=True)

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    @model_validator(mode="after")
    def _check(self) -> "EntityDescriptor":
        names = [p.name for p in self.properties]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate property names in {self.tag}")
        seen = set()
        for t in self.templates:
            slot = (t.operation, t.scope)
            if slot in seen:
                raise ValueError(
                    f"duplicate template for {t.operation.value}"
                    f" (scope={t.scope}) in {self.tag}"
                )
            seen.add(slot)
        return self

    def template(
        self, operation: Operation, scope: Optional[str] = None
    ) -> Optional[str]:
        """Exact scope match first, then the scope-less template."""
        fallback = None
        for t in self.templates:
            if t.operation != operation:
                continue
            if scope is not None and t.scope == scope:
                return t.template
            if t.scope is None:
                fallback = t.template
        return fallback

    def get_property(self, name: str) -> Optional[PropertyDescriptor]:
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def key_property(self) -> Optional[PropertyDescriptor]:
        if not self.key:
            return None
        return self.get_property(self.key) or PropertyDescriptor(name=self.key)

    def expand_defaults(self) -> List[PropertyDescriptor]:
        return [p for p in self.properties if p.expandable and p.expand_by_default]


class MetadataRegistry:
    """
    Catalog of EntityDescriptors keyed by entity tag.

    Populated at startup, then frozen (a DataContext freezes the registry it
    is given). Registering after freeze raises MetadataError.
    """

    def __init__(self, descriptors: Iterable[EntityDescriptor] = ()):
        self._entries: Dict[str, EntityDescriptor] = {}
        self._frozen = False
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: EntityDescriptor) -> EntityDescriptor:
        if self._frozen:
            raise MetadataError(
                f"Registry is frozen; cannot register {descriptor.tag!r}."
            )
        if descriptor.tag in self._entries:
            raise MetadataError(f"Entity {descriptor.tag!r} is already registered.")
        self._entries[descriptor.tag] = descriptor
        return descriptor

    def load(
        self,
        definitions: Iterable[Mapping[str, Any]],
        **hooks: Mapping[str, Any],
    ) -> List[EntityDescriptor]:
        """
        Validate and register descriptor definitions.

        ``hooks`` maps an entity tag to extra in-code fields (model class,
        payload/mapping strategies) merged into that tag's definition.
        """
        loaded: List[EntityDescriptor] = []
        for raw in definitions:
            data = dict(raw)
            data.update(hooks.get(str(data.get("tag")), {}))
            try:
                descriptor = EntityDescriptor.model_validate(data)
            except ValidationError as exc:
                raise MetadataError(
                    f"Invalid entity definition {data.get('tag')!r}: {exc}"
                ) from exc
            loaded.append(self.register(descriptor))
        return loaded

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, tag: str) -> EntityDescriptor:
        try:
            return self._entries[tag]
        except KeyError:
            raise MetadataError(f"Unknown entity type {tag!r}.") from None

    def resolve(
        self,
        tag: str,
        operation: Operation,
        scope: Optional[str] = None,
        *,
        required: bool = True,
    ) -> Optional[str]:
        if required:
            return self.require(tag, operation, scope)
        return self.get(tag).template(operation, scope)

    def require(
        self, tag: str, operation: Operation, scope: Optional[str] = None
    ) -> str:
        template = self.get(tag).template(operation, scope)
        if template is None:
            raise MetadataError(
                f"No {operation.value} template for {tag!r}"
                + (f" (scope {scope!r})" if scope else "")
                + "."
            )
        return template

    def __contains__(self, tag: object) -> bool:
        return tag in self._entries

    def __iter__(self) -> Iterator[EntityDescriptor]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)


__all__ = [
    "ApiType",
    "Operation",
    "PropertyKind",
    "PropertyDescriptor",
    "UriTemplate",
    "EntityDescriptor",
    "MetadataRegistry",
]
