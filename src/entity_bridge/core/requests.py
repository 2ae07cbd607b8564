"""
Request materialization: entity tag + operation + instance + query ->
a transport-agnostic RequestDescriptor.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional
from urllib.parse import quote

from .metadata import ApiType, MetadataRegistry, Operation
from .model import Instance
from .query import QueryDescriptor, QueryTranslator, to_query_string
from .tokens import resolve_tokens

if TYPE_CHECKING:  # pragma: no cover
    from .model import Collection

METHODS = {
    Operation.GET: "GET",
    Operation.LINQ_GET: "GET",
    Operation.ADD: "POST",
    Operation.UPDATE: "PATCH",
    Operation.DELETE: "DELETE",
}

REST_JSON = "application/json;odata=nometadata"
GRAPH_JSON = "application/json"

# Characters left readable in serialized query values. Spaces are encoded so
# the URI also stands as a request line inside a multipart batch.
QUERY_SAFE = ",'()$=/:*@.-_~"


@dataclass(frozen=True)
class RequestDescriptor:
    method: str
    uri: str
    api: ApiType
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Optional[Mapping[str, Any]] = None
    entity: Optional[str] = None
    operation: Optional[Operation] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "headers", MappingProxyType(dict(self.headers)))
        if self.body is not None:
            frozen = MappingProxyType(copy.deepcopy(dict(self.body)))
            object.__setattr__(self, "body", frozen)

    def json_body(self) -> Optional[Dict[str, Any]]:
        """A private, mutable copy of the body for encoding."""
        return copy.deepcopy(dict(self.body)) if self.body is not None else None


def default_headers(api: ApiType, operation: Optional[Operation], has_body: bool):
    if api == ApiType.REST:
        headers = {"Accept": REST_JSON}
        if has_body:
            headers["Content-Type"] = REST_JSON
        if operation in (Operation.UPDATE, Operation.DELETE):
            headers["IF-MATCH"] = "*"
        return headers
    headers = {"Accept": GRAPH_JSON}
    if has_body:
        headers["Content-Type"] = GRAPH_JSON
    return headers


def append_query(uri: str, params: Dict[str, str]) -> str:
    if not params:
        return uri
    encoded = {k: quote(v, safe=QUERY_SAFE) for k, v in params.items()}
    joiner = "&" if "?" in uri else "?"
    return f"{uri}{joiner}{to_query_string(encoded)}"


class RequestMaterializer:
    def __init__(self, registry: MetadataRegistry):
        self.registry = registry

    def build(
        self,
        tag: str,
        operation: Operation,
        instance: Optional[Instance] = None,
        query: Optional[QueryDescriptor] = None,
        *,
        scope: Optional[str] = None,
        body: Optional[Mapping[str, Any]] = None,
    ) -> RequestDescriptor:
        descriptor = self.registry.get(tag)
        lookup = operation
        if (
            operation == Operation.LINQ_GET
            and descriptor.template(operation, scope) is None
        ):
            lookup = Operation.GET
        template = self.registry.require(tag, lookup, scope)

        uri = resolve_tokens(template, instance, descriptor.api)
        if query is not None:
            uri = append_query(uri, QueryTranslator(descriptor).translate(query))

        return RequestDescriptor(
            method=METHODS[operation],
            uri=uri,
            api=descriptor.api,
            headers=default_headers(descriptor.api, operation, body is not None),
            body=body,
            entity=tag,
            operation=operation,
        )

    def read(self, collection: "Collection") -> RequestDescriptor:
        """First-page request for a collection's current query."""
        descriptor = collection.descriptor
        probe = Instance(descriptor, parent=collection.parent)
        return self.build(
            descriptor.tag,
            Operation.LINQ_GET,
            probe,
            collection.query_descriptor,
            scope=collection.scope,
        )

    def follow(self, collection: "Collection", cursor: str) -> RequestDescriptor:
        """Request for the page behind a next-link cursor, used verbatim."""
        api = collection.descriptor.api
        return RequestDescriptor(
            method="GET",
            uri=cursor,
            api=api,
            headers=default_headers(api, Operation.GET, False),
            entity=collection.descriptor.tag,
            operation=Operation.GET,
        )


__all__ = [
    "RequestDescriptor",
    "RequestMaterializer",
    "append_query",
    "default_headers",
    "METHODS",
]
