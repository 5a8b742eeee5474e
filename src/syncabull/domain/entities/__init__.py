"""Domain entities."""

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, ClassVar

from syncabull.domain.entities.error_codes import (
    ERROR_DESCRIPTIONS,
    FATAL_ERRORS,
    RETRYABLE_ERRORS,
    UNCOUNTED_ERRORS,
    SyncErrorCode,
    get_error_description,
    is_retryable_error,
)
from syncabull.domain.exceptions import ValidationException


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    # Google sends RFC 3339 with a trailing Z, fromisoformat wants +00:00
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _format_dt(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class MediaKind(str, Enum):
    """Which metadata variant a media item carries."""

    PHOTO = "photo"
    VIDEO = "video"


class VideoProcessingStatus(str, Enum):
    """Server-side processing state of an uploaded video."""

    UNSPECIFIED = "UNSPECIFIED"
    PROCESSING = "PROCESSING"
    READY = "READY"
    FAILED = "FAILED"

    @classmethod
    def parse(cls, value: str | None) -> "VideoProcessingStatus":
        """Map a wire value to a status, unknown values become UNSPECIFIED."""
        if not value:
            return cls.UNSPECIFIED
        try:
            return cls(value)
        except ValueError:
            return cls.UNSPECIFIED


# Hey future me - PhotoMetadata and VideoMetadata are the two halves of a discriminated union.
# A MediaItem holds EXACTLY one of them; the `kind` ClassVar is the discriminator that ends up in
# media_items.media_kind, and to_dict()/metadata_from_dict() is the JSON blob next to it.
@dataclass(frozen=True)
class PhotoMetadata:
    """Metadata of a still image."""

    kind: ClassVar[MediaKind] = MediaKind.PHOTO

    creation_time: datetime | None = None
    width: int | None = None
    height: int | None = None
    camera_make: str | None = None
    camera_model: str | None = None
    focal_length: float | None = None
    aperture_f_number: float | None = None
    iso_equivalent: int | None = None
    exposure_time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "creation_time": _format_dt(self.creation_time),
            "width": self.width,
            "height": self.height,
            "camera_make": self.camera_make,
            "camera_model": self.camera_model,
            "focal_length": self.focal_length,
            "aperture_f_number": self.aperture_f_number,
            "iso_equivalent": self.iso_equivalent,
            "exposure_time": self.exposure_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PhotoMetadata":
        return cls(
            creation_time=_parse_dt(data.get("creation_time")),
            width=data.get("width"),
            height=data.get("height"),
            camera_make=data.get("camera_make"),
            camera_model=data.get("camera_model"),
            focal_length=data.get("focal_length"),
            aperture_f_number=data.get("aperture_f_number"),
            iso_equivalent=data.get("iso_equivalent"),
            exposure_time=data.get("exposure_time"),
        )


@dataclass(frozen=True)
class VideoMetadata:
    """Metadata of a video."""

    kind: ClassVar[MediaKind] = MediaKind.VIDEO

    creation_time: datetime | None = None
    width: int | None = None
    height: int | None = None
    camera_make: str | None = None
    camera_model: str | None = None
    fps: float | None = None
    status: VideoProcessingStatus = VideoProcessingStatus.UNSPECIFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "creation_time": _format_dt(self.creation_time),
            "width": self.width,
            "height": self.height,
            "camera_make": self.camera_make,
            "camera_model": self.camera_model,
            "fps": self.fps,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VideoMetadata":
        return cls(
            creation_time=_parse_dt(data.get("creation_time")),
            width=data.get("width"),
            height=data.get("height"),
            camera_make=data.get("camera_make"),
            camera_model=data.get("camera_model"),
            fps=data.get("fps"),
            status=VideoProcessingStatus.parse(data.get("status")),
        )


MediaMetadata = PhotoMetadata | VideoMetadata


def metadata_from_dict(kind: MediaKind | str, data: dict[str, Any]) -> MediaMetadata:
    """Rebuild the metadata variant stored under `kind`.

    Raises:
        ValidationException: If kind is not a known media kind
    """
    try:
        media_kind = MediaKind(kind)
    except ValueError as e:
        raise ValidationException(f"Unknown media kind: {kind!r}") from e
    if media_kind is MediaKind.VIDEO:
        return VideoMetadata.from_dict(data)
    return PhotoMetadata.from_dict(data)


@dataclass(frozen=True)
class ContributorInfo:
    """Who added a shared item to the library."""

    display_name: str | None = None
    profile_picture_base_url: str | None = None


# Hey future me, MediaItem is the DESCRIPTOR of a remote asset - everything the listing API tells
# us. It does NOT carry download state; that's SyncRecord. base_url is signed and short-lived
# (~60 min), base_url_fetched_at is when we got it so the scheduler knows when to re-fetch.
@dataclass
class MediaItem:
    """One remote photo or video."""

    remote_id: str
    filename: str
    mime_type: str
    metadata: MediaMetadata
    base_url: str | None = None
    base_url_fetched_at: datetime | None = None
    description: str | None = None
    product_url: str | None = None
    contributor: ContributorInfo | None = None

    def __post_init__(self) -> None:
        """Validate media item data."""
        if not self.remote_id:
            raise ValidationException("Media item id cannot be empty")
        if not isinstance(self.metadata, PhotoMetadata | VideoMetadata):
            raise ValidationException(
                f"Media item {self.remote_id} has no photo or video metadata"
            )

    @property
    def kind(self) -> MediaKind:
        return self.metadata.kind

    @property
    def is_video(self) -> bool:
        return self.kind is MediaKind.VIDEO

    def download_url(self) -> str:
        """Build the original-quality download URL from the base URL.

        Photos take the "=d" suffix (download with EXIF), videos "=dv".

        Raises:
            ValidationException: If the item has no base URL yet
        """
        if not self.base_url:
            raise ValidationException(f"Media item {self.remote_id} has no base URL")
        return f"{self.base_url}={'dv' if self.is_video else 'd'}"

    def asset_url_expires_within(
        self, ttl_seconds: int, margin_seconds: int, now: datetime | None = None
    ) -> bool:
        """Check whether the base URL is (about to be) stale.

        A missing URL or missing fetch instant counts as stale.
        """
        if not self.base_url or self.base_url_fetched_at is None:
            return True
        now = now or _utc_now()
        age = now - self.base_url_fetched_at
        return age >= timedelta(seconds=max(ttl_seconds - margin_seconds, 0))


# Hey future me - SyncRecord is what the Item Store hands out: the descriptor PLUS the download
# state of one row. attempts only ever grows. Invariants:
#   success  => attempts >= 1 and the file exists under local_filename
#   not success and attempts >= max_attempts => terminal
@dataclass
class SyncRecord:
    """Persisted download state of one media item."""

    id: int
    account_id: str
    item: MediaItem
    local_filename: str
    attempts: int = 0
    success: bool = False
    terminal: bool = False
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    last_error_code: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None
    created_at: datetime = field(default_factory=_utc_now)

    @property
    def remote_id(self) -> str:
        return self.item.remote_id

    def is_pending(self) -> bool:
        """Not yet downloaded and still eligible for automatic retries."""
        return not self.success and not self.terminal


@dataclass(frozen=True)
class AttemptOutcome:
    """Result of one download attempt as written back to the Item Store.

    counts_attempt=False is used for deferred outcomes (account needs re-authorization) and
    for failures that are not the item's fault (store unavailable, shutdown interrupted the
    stream): the attempt counter stays where it is.
    """

    success: bool
    error_code: str | None = None
    error_message: str | None = None
    terminal: bool = False
    next_attempt_at: datetime | None = None
    counts_attempt: bool = True

    @classmethod
    def succeeded(cls) -> "AttemptOutcome":
        return cls(success=True)


@dataclass
class SyncCursor:
    """Pagination position of one account's library walk."""

    account_id: str
    next_token: str | None = None
    prev_token: str | None = None
    pages_fetched: int = 0
    last_completed_at: datetime | None = None
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def is_fresh(self) -> bool:
        """True when the next fetch starts a new walk from the first page."""
        return self.next_token is None


@dataclass
class Account:
    """A remote library owner we back up."""

    id: str
    display_name: str | None = None
    initial_scan_completed: bool = False
    created_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValidationException("Account id cannot be empty")


# Hey future me, Credential is the token pair of ONE account. is_valid=False means the refresh
# token was rejected by Google (revoked, expired, password change) and NOTHING works until an
# operator calls TokenManager.reauthorize(). Don't flip it back yourself.
@dataclass
class Credential:
    """OAuth token pair for an account."""

    account_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: list[str] = field(default_factory=list)
    is_valid: bool = True
    last_error: str | None = None
    last_refreshed_at: datetime | None = None

    def expires_within(self, margin_seconds: int, now: datetime | None = None) -> bool:
        """Check if the access token expires within `margin_seconds`."""
        now = now or _utc_now()
        return self.expires_at - now <= timedelta(seconds=margin_seconds)

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_within(0, now)


@dataclass(frozen=True)
class AccessToken:
    """Bearer token handed to API callers."""

    account_id: str
    token: str
    expires_at: datetime

    def __repr__(self) -> str:
        # never log the token itself
        return f"AccessToken(account_id={self.account_id!r}, expires_at={self.expires_at!r})"


@dataclass(frozen=True)
class TokenGrant:
    """What the OAuth token endpoint returned for a refresh grant."""

    access_token: str
    expires_at: datetime
    refresh_token: str | None = None
    scopes: list[str] | None = None


@dataclass(frozen=True)
class LibraryPage:
    """One page of the remote listing.

    rejected_ids lists items whose payload failed validation; they are logged, not stored.
    """

    items: list[MediaItem]
    next_cursor: str | None = None
    rejected_ids: list[str] = field(default_factory=list)


@dataclass
class AssetStream:
    """Open download of one asset."""

    content_length: int | None
    chunks: AsyncIterator[bytes]


__all__ = [
    "ERROR_DESCRIPTIONS",
    "FATAL_ERRORS",
    "RETRYABLE_ERRORS",
    "UNCOUNTED_ERRORS",
    "AccessToken",
    "Account",
    "AssetStream",
    "AttemptOutcome",
    "ContributorInfo",
    "Credential",
    "LibraryPage",
    "MediaItem",
    "MediaKind",
    "MediaMetadata",
    "PhotoMetadata",
    "SyncCursor",
    "SyncErrorCode",
    "SyncRecord",
    "TokenGrant",
    "VideoMetadata",
    "VideoProcessingStatus",
    "get_error_description",
    "is_retryable_error",
    "metadata_from_dict",
]
