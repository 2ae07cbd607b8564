"""Core engine for entity-bridge (transport-agnostic)."""

from .batch import Batch, BatchItemResult
from .context import DataContext, Transport
from .errors import (
    BatchError,
    ClientError,
    EmptyUpdateError,
    MutationError,
    EntityBridgeError,
    HTTPError,
    MetadataError,
    NotExpandableError,
    PagingError,
    ParseError,
    QueryError,
    RetryableHTTPError,
    TerminalHTTPError,
    UnresolvedTokenError,
    UnsupportedQueryError,
)
from .identity import IdentityMap
from .logging import LogfmtFormatter, setup_logging
from .metadata import (
    ApiType,
    EntityDescriptor,
    MetadataRegistry,
    Operation,
    PropertyDescriptor,
    PropertyKind,
    UriTemplate,
)
from .model import Collection, Instance, Property
from .mutations import build_add, build_delete, build_update
from .observability import log_event
from .paging import PagingController, PagingPhase, PagingState
from .query import Query, QueryDescriptor, QueryTranslator, field
from .requests import RequestDescriptor, RequestMaterializer
from .tokens import resolve_tokens

__all__ = [
    # Metadata
    "ApiType",
    "Operation",
    "PropertyKind",
    "PropertyDescriptor",
    "UriTemplate",
    "EntityDescriptor",
    "MetadataRegistry",
    # Model
    "Instance",
    "Property",
    "Collection",
    "IdentityMap",
    # Query
    "field",
    "Query",
    "QueryDescriptor",
    "QueryTranslator",
    # Requests / execution
    "resolve_tokens",
    "RequestDescriptor",
    "RequestMaterializer",
    "Batch",
    "BatchItemResult",
    "DataContext",
    "Transport",
    "PagingController",
    "PagingPhase",
    "PagingState",
    "build_add",
    "build_update",
    "build_delete",
    # Exceptions
    "EntityBridgeError",
    "MetadataError",
    "UnresolvedTokenError",
    "QueryError",
    "UnsupportedQueryError",
    "NotExpandableError",
    "EmptyUpdateError",
    "MutationError",
    "PagingError",
    "BatchError",
    "ClientError",
    "HTTPError",
    "RetryableHTTPError",
    "TerminalHTTPError",
    "ParseError",
    # Logging
    "setup_logging",
    "LogfmtFormatter",
    "log_event",
]
