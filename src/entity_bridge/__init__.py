"""entity_bridge package exports."""

from .client import ApiClient, BearerTokenAuth, RetryConfig
from .config import Settings, create_clients, create_context_from_env, load_env_config
from .core import (
    ApiType,
    Batch,
    BatchError,
    BatchItemResult,
    ClientError,
    Collection,
    DataContext,
    EmptyUpdateError,
    MutationError,
    EntityBridgeError,
    EntityDescriptor,
    HTTPError,
    Instance,
    MetadataError,
    MetadataRegistry,
    NotExpandableError,
    Operation,
    PagingError,
    PagingPhase,
    PagingState,
    ParseError,
    Property,
    PropertyDescriptor,
    PropertyKind,
    Query,
    QueryDescriptor,
    QueryError,
    RequestDescriptor,
    RetryableHTTPError,
    TerminalHTTPError,
    UnresolvedTokenError,
    UnsupportedQueryError,
    UriTemplate,
    field,
    setup_logging,
)

__all__ = [
    # Transport
    "ApiClient",
    "BearerTokenAuth",
    "RetryConfig",
    # Config
    "Settings",
    "load_env_config",
    "create_clients",
    "create_context_from_env",
    # Metadata
    "ApiType",
    "Operation",
    "PropertyKind",
    "PropertyDescriptor",
    "UriTemplate",
    "EntityDescriptor",
    "MetadataRegistry",
    # Model / querying
    "DataContext",
    "Instance",
    "Property",
    "Collection",
    "Query",
    "QueryDescriptor",
    "field",
    "RequestDescriptor",
    "Batch",
    "BatchItemResult",
    "PagingPhase",
    "PagingState",
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
]
