"""Google Photos Library API client."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from syncabull.config import Settings
from syncabull.domain.entities import (
    AssetStream,
    ContributorInfo,
    LibraryPage,
    MediaItem,
    MediaMetadata,
    PhotoMetadata,
    VideoMetadata,
    VideoProcessingStatus,
)
from syncabull.domain.exceptions import (
    AuthError,
    NetworkError,
    NotFound,
    RateLimited,
    ValidationException,
)
from syncabull.domain.ports import ILibraryClient
from syncabull.infrastructure.integrations.http_pool import HttpClientPool
from syncabull.infrastructure.rate_limiter import RateLimiter, get_google_photos_limiter

logger = logging.getLogger(__name__)

ASSET_CHUNK_SIZE = 64 * 1024


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP-date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max((when - now).total_seconds(), 0.0)


def _to_int(value: Any) -> int | None:
    # The API sends int64 fields as JSON strings ("4032")
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_creation_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug("Unparseable creationTime %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _parse_metadata(remote_id: str, mime_type: str, raw: dict[str, Any]) -> MediaMetadata:
    photo = raw.get("photo")
    video = raw.get("video")
    if photo is not None and video is not None:
        raise ValidationException(
            f"Media item {remote_id} carries both photo and video metadata"
        )

    common = {
        "creation_time": _parse_creation_time(raw.get("creationTime")),
        "width": _to_int(raw.get("width")),
        "height": _to_int(raw.get("height")),
    }

    # Hey future me - neither key present happens for items still processing. We type them by
    # MIME so the item is never dropped; the fields just stay empty.
    if video is None and photo is None:
        if mime_type.startswith("video/"):
            return VideoMetadata(**common)
        return PhotoMetadata(**common)

    if video is not None:
        return VideoMetadata(
            **common,
            camera_make=video.get("cameraMake"),
            camera_model=video.get("cameraModel"),
            fps=_to_float(video.get("fps")),
            status=VideoProcessingStatus.parse(video.get("status")),
        )

    return PhotoMetadata(
        **common,
        camera_make=photo.get("cameraMake"),
        camera_model=photo.get("cameraModel"),
        focal_length=_to_float(photo.get("focalLength")),
        aperture_f_number=_to_float(photo.get("apertureFNumber")),
        iso_equivalent=_to_int(photo.get("isoEquivalent")),
        exposure_time=photo.get("exposureTime"),
    )


def parse_media_item(payload: dict[str, Any], fetched_at: datetime) -> MediaItem:
    """Convert a mediaItem JSON object to a MediaItem.

    Args:
        payload: One element of mediaItems[] (or a GET mediaItems/{id} body)
        fetched_at: When the response was received, stamped on the base URL

    Raises:
        ValidationException: If the id is missing or both metadata variants are present
    """
    remote_id = payload.get("id")
    if not remote_id:
        raise ValidationException("Media item payload without id")

    mime_type = payload.get("mimeType") or "application/octet-stream"
    contributor_raw = payload.get("contributorInfo")
    contributor = None
    if contributor_raw:
        contributor = ContributorInfo(
            display_name=contributor_raw.get("displayName"),
            profile_picture_base_url=contributor_raw.get("profilePictureBaseUrl"),
        )

    base_url = payload.get("baseUrl")
    return MediaItem(
        remote_id=remote_id,
        filename=payload.get("filename") or remote_id,
        mime_type=mime_type,
        metadata=_parse_metadata(remote_id, mime_type, payload.get("mediaMetadata") or {}),
        base_url=base_url,
        base_url_fetched_at=fetched_at if base_url else None,
        description=payload.get("description"),
        product_url=payload.get("productUrl"),
        contributor=contributor,
    )


def raise_for_remote_status(response: httpx.Response, what: str) -> None:
    """Translate an HTTP error status into the domain exception taxonomy.

    Raises:
        AuthError: 401/403
        NotFound: 404
        RateLimited: 429 (with Retry-After)
        NetworkError: 408 and 5xx
        ValidationException: any other 4xx (bad request, stale page token)
    """
    status = response.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise AuthError(f"{what} rejected with HTTP {status}", http_status=status)
    if status == 404:
        raise NotFound(f"{what} not found")
    if status == 429:
        raise RateLimited(
            f"{what} rate limited",
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status == 408 or status >= 500:
        raise NetworkError(f"{what} failed with HTTP {status}", http_status=status)
    raise ValidationException(f"{what} failed with HTTP {status}: {response.text[:200]}")


# Listen up, this client NEVER retries - that's the RetryPolicy's job. It translates every
# httpx failure into the domain taxonomy (NetworkError & friends) so nothing above
# infrastructure ever has to import httpx. Timeouts are per call from SyncSettings.
class GooglePhotosClient(ILibraryClient):
    """Photos Library API adapter."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
        limiter: RateLimiter | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Application settings
            client: HTTP client to use, defaults to the shared HttpClientPool client
            limiter: API rate limiter, defaults to the process-wide Google Photos limiter
        """
        self.settings = settings
        self._client = client
        self._limiter = limiter or get_google_photos_limiter()
        self._api_base = settings.google.api_base_url.rstrip("/")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = await HttpClientPool.get_client(
                timeout=self.settings.sync.request_timeout_seconds
            )
        return self._client

    async def _api_get(
        self, path: str, access_token: str, what: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        client = await self._get_client()
        await self._limiter.acquire()
        try:
            response = await client.get(
                f"{self._api_base}{path}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.settings.sync.request_timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"{what} timed out", is_timeout=True) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{what} failed: {e}") from e

        raise_for_remote_status(response, what)
        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(f"{what} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise NetworkError(f"{what} returned unexpected payload")
        return data

    async def list_page(
        self,
        access_token: str,
        cursor: str | None = None,
        page_size: int = 100,
    ) -> LibraryPage:
        """Fetch one page of mediaItems.

        Items that fail validation are logged and reported in rejected_ids, the rest of
        the page is returned.
        """
        params: dict[str, Any] = {"pageSize": page_size}
        if cursor:
            params["pageToken"] = cursor

        data = await self._api_get("/mediaItems", access_token, "List media items", params)
        fetched_at = datetime.now(UTC)

        items: list[MediaItem] = []
        rejected: list[str] = []
        for payload in data.get("mediaItems") or []:
            try:
                items.append(parse_media_item(payload, fetched_at))
            except ValidationException as e:
                rejected.append(str(payload.get("id")))
                logger.error("Rejected media item from listing: %s", e.message)

        return LibraryPage(
            items=items,
            next_cursor=data.get("nextPageToken") or None,
            rejected_ids=rejected,
        )

    async def get_item(self, access_token: str, remote_id: str) -> MediaItem:
        """Fetch one media item with a fresh base URL."""
        data = await self._api_get(
            f"/mediaItems/{remote_id}", access_token, f"Media item {remote_id}"
        )
        return parse_media_item(data, datetime.now(UTC))

    # Hey future me - a 401/403 HERE is not about the OAuth token (asset URLs are signed, we
    # don't send a bearer). It means the signed baseUrl expired. The downloader catches the
    # AuthError, re-fetches the item detail once and tries again.
    @asynccontextmanager
    async def stream_asset(self, url: str) -> AsyncIterator[AssetStream]:
        client = await self._get_client()
        try:
            async with client.stream(
                "GET", url, timeout=self.settings.sync.asset_timeout_seconds
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                raise_for_remote_status(response, "Asset download")

                content_length = _to_int(response.headers.get("Content-Length"))
                encoding = response.headers.get("Content-Encoding", "identity").lower()
                if encoding != "identity":
                    # decoded bytes won't match the wire length
                    content_length = None

                yield AssetStream(
                    content_length=content_length,
                    chunks=self._iter_chunks(response),
                )
        except httpx.TimeoutException as e:
            raise NetworkError("Asset download timed out", is_timeout=True) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Asset download failed: {e}") from e

    @staticmethod
    async def _iter_chunks(response: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.aiter_bytes(ASSET_CHUNK_SIZE):
                yield chunk
        except httpx.TimeoutException as e:
            raise NetworkError("Asset download timed out", is_timeout=True) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Asset download interrupted: {e}") from e

    async def close(self) -> None:
        """Drop the client reference. The shared pool is closed by lifecycle."""
        self._client = None
