"""External integration client implementations."""

from syncabull.infrastructure.integrations.google_oauth_client import GoogleOAuthClient
from syncabull.infrastructure.integrations.google_photos_client import (
    GooglePhotosClient,
    parse_media_item,
    parse_retry_after,
)
from syncabull.infrastructure.integrations.http_pool import HttpClientPool

__all__ = [
    "GoogleOAuthClient",
    "GooglePhotosClient",
    "HttpClientPool",
    "parse_media_item",
    "parse_retry_after",
]
