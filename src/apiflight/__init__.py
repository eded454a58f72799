"""apiflight - authenticated async request pipeline with a coalescing resource cache."""

from contextlib import suppress

# Adapters (async only)
from apiflight.adapters import (
    AsyncFileStorage,
    AsyncMemoryStorage,
    AsyncStorageAdapter,
)

# Request pipeline
from apiflight.client import ApiClient, Phase, create_client
from apiflight.config import ClientSettings

# Duration parsing
from apiflight.duration import parse_duration
from apiflight.endpoints import format_endpoint, join_url
from apiflight.errors import (
    ApiflightError,
    InvalidRequestError,
    ResultError,
    TransportError,
)

# Resource cache
from apiflight.resource import CachedResource
from apiflight.singleflight import SingleFlight

# Credential store
from apiflight.token_manager import TokenManager
from apiflight.transport import AsyncTransport, HttpxTransport

# Core types
from apiflight.types import (
    CacheEntry,
    Credential,
    Duration,
    EntryState,
    ErrorInfo,
    ErrorKind,
    RequestDescriptor,
    Result,
    TransportResponse,
)

# Optional adapter imports - only available when dependencies are installed
with suppress(ImportError):
    from apiflight.adapters import AsyncRedisStorage

__version__ = "0.1.0"

__all__ = [
    "ApiClient",
    "ApiflightError",
    "AsyncFileStorage",
    "AsyncMemoryStorage",
    "AsyncRedisStorage",
    "AsyncStorageAdapter",
    "AsyncTransport",
    "CacheEntry",
    "CachedResource",
    "ClientSettings",
    "Credential",
    "Duration",
    "EntryState",
    "ErrorInfo",
    "ErrorKind",
    "HttpxTransport",
    "InvalidRequestError",
    "Phase",
    "RequestDescriptor",
    "Result",
    "ResultError",
    "SingleFlight",
    "TokenManager",
    "TransportError",
    "TransportResponse",
    "create_client",
    "format_endpoint",
    "join_url",
    "parse_duration",
]
