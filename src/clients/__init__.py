"""Remote platform clients."""

from src.clients.base import RemotePlatformClient
from src.clients.woocommerce import (
    ENTITY_ENDPOINTS,
    RemoteAPIError,
    RemoteAuthError,
    RemoteTimeoutError,
    WooCommerceClient,
    parse_retry_after,
)

__all__ = [
    "RemotePlatformClient",
    "WooCommerceClient",
    "RemoteAPIError",
    "RemoteAuthError",
    "RemoteTimeoutError",
    "ENTITY_ENDPOINTS",
    "parse_retry_after",
]
