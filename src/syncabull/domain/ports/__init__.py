"""Domain ports (interfaces) for the remote collaborators.

Following Hexagonal Architecture (Ports & Adapters), these live in the domain layer and the
Google implementations live in infrastructure/integrations. Tests plug in fakes.
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager

from syncabull.domain.entities import AssetStream, LibraryPage, MediaItem, TokenGrant


class ILibraryClient(ABC):
    """Interface for the remote media library API.

    Implementations translate transport failures into domain exceptions:
    NetworkError / RateLimited (transient), AuthError (401), NotFound (404).
    """

    @abstractmethod
    async def list_page(
        self,
        access_token: str,
        cursor: str | None = None,
        page_size: int = 100,
    ) -> LibraryPage:
        """Fetch one page of the library listing.

        Args:
            access_token: Bearer token of the account
            cursor: Opaque page token from the previous page, None for the first page
            page_size: Number of items per page

        Returns:
            The page items and the cursor of the next page (None at the end)
        """
        pass

    @abstractmethod
    async def get_item(self, access_token: str, remote_id: str) -> MediaItem:
        """Fetch a single item, including a freshly signed base URL."""
        pass

    @abstractmethod
    def stream_asset(self, url: str) -> AbstractAsyncContextManager[AssetStream]:
        """Open a streaming download of an asset URL.

        Used as `async with client.stream_asset(url) as asset: ...`.
        """
        pass


class ITokenEndpoint(ABC):
    """Interface for the OAuth token endpoint."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token.

        Raises:
            ReauthorizationRequired: If the refresh token was revoked or is invalid
            NetworkError: On timeouts, connection failures and 5xx
        """
        pass


__all__ = ["ILibraryClient", "ITokenEndpoint"]
