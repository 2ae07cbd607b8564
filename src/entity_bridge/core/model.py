from __future__ import annotations

import weakref
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
)

from .errors import MetadataError, NotExpandableError
from .metadata import EntityDescriptor
from .paging import PagingController, PagingState
from .query import Query, QueryDescriptor

if TYPE_CHECKING:  # pragma: no cover
    from .batch import Batch
    from .context import DataContext

_NO_DEFAULT: Any = object()


class Instance:
    """
    Property bag for one remote entity plus the names changed since load.

    The parent link is a weak, lookup-only reference used for URI tokens;
    an Instance is owned by its collection and its context.
    """

    def __init__(
        self,
        descriptor: EntityDescriptor,
        *,
        context: Optional["DataContext"] = None,
        parent: Optional["Instance"] = None,
        collection: Optional["Collection"] = None,
    ):
        self._descriptor = descriptor
        self._context = context
        self._values: Dict[str, Any] = {}
        self._changed: Dict[str, None] = {}  # insertion-ordered set
        self._parent = weakref.ref(parent) if parent is not None else None
        self._collection = weakref.ref(collection) if collection is not None else None
        self._children: Dict[str, "Collection"] = {}
        self.deleted = False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.tag} key={self.key!r}>"

    # --- identity / ownership ---

    @property
    def descriptor(self) -> EntityDescriptor:
        return self._descriptor

    @property
    def tag(self) -> str:
        return self._descriptor.tag

    @property
    def context(self) -> Optional["DataContext"]:
        return self._context

    @property
    def key(self) -> Any:
        if not self._descriptor.key:
            return None
        return self._values.get(self._descriptor.key)

    @property
    def parent(self) -> Optional["Instance"]:
        return self._parent() if self._parent is not None else None

    @property
    def collection(self) -> Optional["Collection"]:
        return self._collection() if self._collection is not None else None

    def _attach(
        self, *, parent: Optional["Instance"], collection: Optional["Collection"]
    ) -> None:
        if parent is not None and self._parent is None:
            self._parent = weakref.ref(parent)
        if collection is not None and self._collection is None:
            self._collection = weakref.ref(collection)

    # --- values ---

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value
        self._changed[name] = None

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __setitem__(self, name: str, value: Any) -> None:
        self.set(name, value)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def values(self) -> Dict[str, Any]:
        return dict(self._values)

    @property
    def changed(self) -> Tuple[str, ...]:
        return tuple(self._changed)

    @property
    def has_changes(self) -> bool:
        return bool(self._changed)

    def clear_changes(self, names: Optional[Iterable[str]] = None) -> None:
        if names is None:
            self._changed.clear()
            return
        for name in names:
            self._changed.pop(name, None)

    def _load_value(self, name: str, value: Any) -> None:
        """Set from a server response; not a user change."""
        self._values[name] = value

    # --- navigation ---

    def children(self, member: str) -> "Collection":
        """Child collection behind an expandable navigation property."""
        existing = self._children.get(member)
        if existing is not None:
            return existing
        prop = self._descriptor.get_property(member)
        if prop is None or not prop.expandable:
            raise NotExpandableError(self.tag, member)
        if not prop.target:
            raise MetadataError(f"{self.tag}.{member} names no target entity type.")
        if self._context is None:
            raise MetadataError(f"{self!r} is not bound to a context.")
        child = self._context.collection(prop.target, parent=self, member=member)
        self._children[member] = child
        return child

    # --- remote operations ---

    def _require_context(self) -> "DataContext":
        if self._context is None:
            raise MetadataError(f"{self!r} is not bound to a context.")
        return self._context

    async def load(
        self,
        *,
        select: Iterable[str] = (),
        expand: Iterable[str] = (),
        batch: Optional["Batch"] = None,
    ) -> "Instance":
        return await self._require_context().get(
            self, select=select, expand=expand, batch=batch
        )

    async def add(self, *, batch: Optional["Batch"] = None) -> "Instance":
        return await self._require_context().add(self, batch=batch)

    async def update(self, *, batch: Optional["Batch"] = None) -> "Instance":
        return await self._require_context().update(self, batch=batch)

    async def delete(self, *, batch: Optional["Batch"] = None) -> None:
        await self._require_context().delete(self, batch=batch)


class Property:
    """
    Typed accessor for an Instance subclass::

        class ListItem(Instance):
            title = Property("Title")
    """

    def __init__(self, name: str):
        self.name = name

    def __set_name__(self, owner: type, attr: str) -> None:
        self.attr = attr

    def __get__(self, obj: Optional[Instance], objtype: Optional[type] = None) -> Any:
        if obj is None:
            return self
        return obj.get(self.name)

    def __set__(self, obj: Instance, value: Any) -> None:
        obj.set(self.name, value)


class Collection:
    """
    Ordered instances of one entity type under one parent, together with
    the query that fills it and its paging state.
    """

    def __init__(
        self,
        context: "DataContext",
        descriptor: EntityDescriptor,
        *,
        parent: Optional[Instance] = None,
        member: Optional[str] = None,
    ):
        self.context = context
        self.descriptor = descriptor
        self.member = member
        self._parent = weakref.ref(parent) if parent is not None else None
        self._items: List[Instance] = []
        self.query_descriptor = QueryDescriptor(page_size=context.default_page_size)
        self.paging = PagingController(self)

    def __repr__(self) -> str:
        return (
            f"<Collection {self.descriptor.tag} n={len(self._items)}"
            f" state={self.paging.state.phase.value}>"
        )

    @property
    def parent(self) -> Optional[Instance]:
        return self._parent() if self._parent is not None else None

    @property
    def scope(self) -> Optional[str]:
        parent = self.parent
        return parent.tag if parent is not None else None

    # --- sequence protocol ---

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Instance]:
        return iter(list(self._items))

    def __getitem__(self, index: int) -> Instance:
        return self._items[index]

    def __contains__(self, item: object) -> bool:
        return any(existing is item for existing in self._items)

    def _append(self, instance: Instance) -> None:
        if instance not in self:
            self._items.append(instance)

    def _remove(self, instance: Instance) -> None:
        self._items = [i for i in self._items if i is not instance]

    def new(self, **values: Any) -> Instance:
        """New, unsaved instance owned by this collection."""
        model = self.descriptor.model or Instance
        instance = model(
            self.descriptor, context=self.context, parent=self.parent, collection=self
        )
        for name, value in values.items():
            instance.set(name, value)
        return instance

    # --- querying ---

    def query(self) -> Query:
        return Query(self)

    def where(self, *predicates: Any, **equals: Any) -> Query:
        return self.query().where(*predicates, **equals)

    def select(self, *names: str) -> Query:
        return self.query().select(*names)

    def expand(self, *names: str) -> Query:
        return self.query().expand(*names)

    def order_by(self, name: str) -> Query:
        return self.query().order_by(name)

    def order_by_desc(self, name: str) -> Query:
        return self.query().order_by_desc(name)

    def skip(self, count: int) -> Query:
        return self.query().skip(count)

    def take(self, count: int) -> Query:
        return self.query().take(count)

    # --- paging ---

    @property
    def state(self) -> PagingState:
        return self.paging.state

    @property
    def can_page(self) -> bool:
        return self.paging.can_page

    async def load(self, *, batch: Optional["Batch"] = None) -> List[Instance]:
        return await self.paging.load(batch=batch)

    async def next_page(self) -> List[Instance]:
        return await self.paging.next_page()

    async def all_pages(self) -> List[Instance]:
        return await self.paging.all_pages()


__all__ = ["Instance", "Property", "Collection"]
