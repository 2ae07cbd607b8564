"""
Query translation: a small predicate tree, the immutable QueryDescriptor
and the fluent ``Query`` builder bound to a collection.

Nothing here talks to the network. A query is translated only when it is
rendered (``str(query)`` / ``translate()``) or executed (``await
query.load()``), and translation errors surface before any request is
built.

Notes on ``skip``: neither target API supports server-side skipping, so a
query with ``skip(n)`` asks the server for ``n + take`` rows and drops the
first ``n`` client-side. The window spans pages: rows still to skip and
rows still to take carry over to each following page, and once ``take``
rows have arrived the collection counts as exhausted. The skipped rows
are still fetched.
"""

from __future__ import annotations

import math
import uuid
import dataclasses
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
)

from .errors import NotExpandableError, UnsupportedQueryError
from .metadata import ApiType, EntityDescriptor, PropertyKind

if TYPE_CHECKING:  # pragma: no cover
    from .model import Collection, Instance

# Fixed serialization order.
PARAM_ORDER = ("$filter", "$select", "$expand", "$orderby", "$top")

COMPARISON_OPS = ("eq", "ne", "lt", "le", "gt", "ge")


# --- Predicate tree -------------------------------------------------------- #


class Predicate:
    def __and__(self, other: "Predicate") -> "Predicate":
        return Conjunction(_flatten(Conjunction, self, other))

    def __or__(self, other: "Predicate") -> "Predicate":
        return Disjunction(_flatten(Disjunction, self, other))

    def __invert__(self) -> "Predicate":
        return Negation(self)

    def __bool__(self) -> bool:
        raise UnsupportedQueryError(
            "Predicates cannot be used as booleans; combine them with & and |."
        )


@dataclass(frozen=True, eq=False)
class Comparison(Predicate):
    field: str
    op: str
    value: Any


@dataclass(frozen=True, eq=False)
class StringMatch(Predicate):
    field: str
    function: str  # "contains" | "startswith"
    value: Any


@dataclass(frozen=True, eq=False)
class Conjunction(Predicate):
    operands: Tuple[Predicate, ...]


@dataclass(frozen=True, eq=False)
class Disjunction(Predicate):
    operands: Tuple[Predicate, ...]


@dataclass(frozen=True, eq=False)
class Negation(Predicate):
    operand: Predicate


def _flatten(kind: type, *nodes: Any) -> Tuple[Any, ...]:
    out: List[Any] = []
    for node in nodes:
        if isinstance(node, kind):
            out.extend(node.operands)
        else:
            out.append(node)
    return tuple(out)


class FieldRef:
    """Reference to an entity property inside a predicate: ``field("Title")``."""

    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def __repr__(self) -> str:
        return f"field({self.name!r})"

    def __eq__(self, value: Any) -> Comparison:  # type: ignore[override]
        return Comparison(self.name, "eq", value)

    def __ne__(self, value: Any) -> Comparison:  # type: ignore[override]
        return Comparison(self.name, "ne", value)

    def __lt__(self, value: Any) -> Comparison:
        return Comparison(self.name, "lt", value)

    def __le__(self, value: Any) -> Comparison:
        return Comparison(self.name, "le", value)

    def __gt__(self, value: Any) -> Comparison:
        return Comparison(self.name, "gt", value)

    def __ge__(self, value: Any) -> Comparison:
        return Comparison(self.name, "ge", value)

    __hash__ = None  # type: ignore[assignment]

    def contains(self, value: Any) -> StringMatch:
        return StringMatch(self.name, "contains", value)

    def startswith(self, value: Any) -> StringMatch:
        return StringMatch(self.name, "startswith", value)


def field(name: str) -> FieldRef:
    return FieldRef(name)


# --- Descriptor ------------------------------------------------------------ #


@dataclass(frozen=True)
class OrderKey:
    field: str
    descending: bool = False


@dataclass(frozen=True)
class QueryDescriptor:
    predicate: Optional[Predicate] = None
    select: Tuple[str, ...] = ()
    expand: Tuple[str, ...] = ()
    order_by: Tuple[OrderKey, ...] = ()
    skip: int = 0
    take: Optional[int] = None
    page_size: Optional[int] = dataclasses.field(default=None, compare=False)


# --- Literal formatting ---------------------------------------------------- #


def format_literal(value: Any, api: ApiType) -> str:
    if isinstance(value, FieldRef):
        raise UnsupportedQueryError(
            f"Comparing two fields ({value.name}) is not supported."
        )
    if isinstance(value, Enum):
        value = value.value
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise UnsupportedQueryError(f"Cannot express {value!r} as a literal.")
        return repr(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, str):
        return "'" + value.replace("'", "''") + "'"
    if isinstance(value, uuid.UUID):
        return f"guid'{value}'" if api == ApiType.REST else str(value)
    if isinstance(value, datetime):
        text = _iso(value)
        return f"datetime'{text}'" if api == ApiType.REST else text
    if isinstance(value, date):
        if api == ApiType.REST:
            return f"datetime'{value.isoformat()}T00:00:00'"
        return value.isoformat()
    raise UnsupportedQueryError(
        f"Unsupported literal of type {type(value).__name__}: {value!r}"
    )


def _iso(value: datetime) -> str:
    if value.utcoffset() == timedelta(0):
        return value.replace(tzinfo=None).isoformat() + "Z"
    return value.isoformat()


# --- Translator ------------------------------------------------------------ #


class QueryTranslator:
    """Compiles a QueryDescriptor against one entity type's metadata."""

    def __init__(self, descriptor: EntityDescriptor):
        self.descriptor = descriptor
        self.api = descriptor.api

    def translate(self, query: QueryDescriptor) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if query.predicate is not None:
            params["$filter"] = self.filter(query.predicate)

        expand = self.expand(query)
        select = self.select(query, expand)
        if select:
            params["$select"] = ",".join(select)
        if expand:
            params["$expand"] = ",".join(expand)

        if query.order_by:
            params["$orderby"] = ",".join(
                f"{self._filter_name(k.field)} {'desc' if k.descending else 'asc'}"
                for k in query.order_by
            )

        top = self.top(query)
        if top is not None:
            params["$top"] = str(top)
        return {k: params[k] for k in PARAM_ORDER if k in params}

    def query_string(self, query: QueryDescriptor) -> str:
        return to_query_string(self.translate(query))

    # --- pieces ---

    def top(self, query: QueryDescriptor) -> Optional[int]:
        if query.take is not None:
            return query.skip + query.take
        return query.page_size

    def expand(self, query: QueryDescriptor) -> List[str]:
        names: List[str] = []
        for name in query.expand:
            prop = self.descriptor.get_property(name)
            if prop is None or not prop.expandable:
                raise NotExpandableError(self.descriptor.tag, name)
            _add_unique(names, prop.remote_name)
        if not query.expand and not query.select:
            for prop in self.descriptor.expand_defaults():
                _add_unique(names, prop.remote_name)
        return names

    def select(self, query: QueryDescriptor, expand: Sequence[str]) -> List[str]:
        if not query.select:
            return []
        names: List[str] = []
        for name in query.select:
            prop = self.descriptor.get_property(name)
            _add_unique(names, prop.select_name if prop else name)
        key = self.descriptor.key_property()
        if key is not None:
            _add_unique(names, key.select_name)
        if self.api == ApiType.REST:
            # REST drops expanded navigation values not listed in $select
            for name in expand:
                _add_unique(names, name)
        return names

    def filter(self, node: Predicate) -> str:
        if isinstance(node, Comparison):
            if node.op not in COMPARISON_OPS:
                raise UnsupportedQueryError(f"Unknown comparison {node.op!r}.")
            if node.value is None and node.op not in ("eq", "ne"):
                raise UnsupportedQueryError(
                    f"Cannot order-compare {node.field} against null."
                )
            name = self._filter_name(node.field)
            value = self._typed(node.field, node.value)
            return f"{name} {node.op} {format_literal(value, self.api)}"

        if isinstance(node, StringMatch):
            if not isinstance(node.value, str):
                raise UnsupportedQueryError(
                    f"{node.function}() on {node.field} needs a string value."
                )
            name = self._filter_name(node.field)
            literal = format_literal(node.value, self.api)
            if node.function == "startswith":
                return f"startswith({name},{literal})"
            if node.function == "contains":
                if self.api == ApiType.REST:
                    return f"substringof({literal},{name})"
                return f"contains({name},{literal})"
            raise UnsupportedQueryError(f"Unknown string function {node.function!r}.")

        if isinstance(node, (Conjunction, Disjunction)):
            joiner = " and " if isinstance(node, Conjunction) else " or "
            return joiner.join(self._operand(op) for op in node.operands)

        if isinstance(node, Negation):
            raise UnsupportedQueryError("Negated predicates are not supported.")

        raise UnsupportedQueryError(
            f"Unsupported predicate {node!r}; build predicates with field()."
        )

    def _operand(self, node: Predicate) -> str:
        text = self.filter(node)
        if isinstance(node, (Conjunction, Disjunction)):
            return f"({text})"
        return text

    def _typed(self, name: str, value: Any) -> Any:
        """Strings compared against guid/datetime properties take that type."""
        prop = self.descriptor.get_property(name)
        if prop is None or not isinstance(value, str):
            return value
        typed = prop.coerce(value)
        if prop.kind == PropertyKind.GUID and not isinstance(typed, uuid.UUID):
            raise UnsupportedQueryError(f"{name} needs a guid, got {value!r}.")
        return typed

    def _filter_name(self, name: str) -> str:
        prop = self.descriptor.get_property(name)
        if prop is None:
            return name
        if prop.path:
            return prop.path.replace(".", "/")
        return prop.remote_name


def _add_unique(names: List[str], name: str) -> None:
    if name not in names:
        names.append(name)


def to_query_string(params: Dict[str, str]) -> str:
    return "&".join(f"{k}={params[k]}" for k in PARAM_ORDER if k in params)


# --- Fluent builder -------------------------------------------------------- #


class Query:
    """
    Immutable fluent query over a Collection. Every operator returns a new
    Query; nothing is sent until ``load()`` (or async iteration).
    """

    def __init__(
        self, collection: "Collection", descriptor: Optional[QueryDescriptor] = None
    ):
        self.collection = collection
        self.descriptor = descriptor or QueryDescriptor(
            page_size=collection.context.default_page_size
        )

    def _with(self, **changes: Any) -> "Query":
        return Query(self.collection, replace(self.descriptor, **changes))

    def where(self, *predicates: Predicate, **equals: Any) -> "Query":
        nodes: List[Predicate] = list(predicates)
        nodes.extend(Comparison(name, "eq", value) for name, value in equals.items())
        if not nodes:
            return self
        combined = self.descriptor.predicate
        for node in nodes:
            combined = node if combined is None else combined & node
        return self._with(predicate=combined)

    filter = where

    def select(self, *names: str) -> "Query":
        return self._with(select=self.descriptor.select + names)

    def expand(self, *names: str) -> "Query":
        return self._with(expand=self.descriptor.expand + names)

    def order_by(self, name: str) -> "Query":
        return self._with(order_by=(OrderKey(name),))

    def order_by_desc(self, name: str) -> "Query":
        return self._with(order_by=(OrderKey(name, True),))

    def then_by(self, name: str) -> "Query":
        return self._with(order_by=self.descriptor.order_by + (OrderKey(name),))

    def then_by_desc(self, name: str) -> "Query":
        return self._with(order_by=self.descriptor.order_by + (OrderKey(name, True),))

    def skip(self, count: int) -> "Query":
        """
        Skip ``count`` rows client-side. The skipped rows are still fetched
        (see module docs).
        """
        if count < 0:
            raise UnsupportedQueryError("skip() needs a non-negative count.")
        return self._with(skip=count)

    def take(self, count: int) -> "Query":
        if count < 0:
            raise UnsupportedQueryError("take() needs a non-negative count.")
        return self._with(take=count)

    def translate(self) -> Dict[str, str]:
        return QueryTranslator(self.collection.descriptor).translate(self.descriptor)

    def to_query_string(self) -> str:
        return to_query_string(self.translate())

    def __str__(self) -> str:
        return self.to_query_string()

    def __repr__(self) -> str:
        return f"<Query {self.collection.descriptor.tag} {self.to_query_string()!r}>"

    async def load(self, *, batch: Any = None) -> List["Instance"]:
        """Run the query as the collection's first page."""
        self.translate()  # reject bad queries before touching collection state
        self.collection.query_descriptor = self.descriptor
        return await self.collection.load(batch=batch)

    to_list = load

    async def all_pages(self) -> List["Instance"]:
        await self.load()
        await self.collection.all_pages()
        return list(self.collection)

    async def __aiter__(self) -> AsyncIterator["Instance"]:
        for item in await self.load():
            yield item


__all__ = [
    "Predicate",
    "Comparison",
    "StringMatch",
    "Conjunction",
    "Disjunction",
    "Negation",
    "FieldRef",
    "field",
    "OrderKey",
    "QueryDescriptor",
    "QueryTranslator",
    "Query",
    "format_literal",
    "to_query_string",
    "PARAM_ORDER",
]
