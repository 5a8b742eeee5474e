"""SQLAlchemy ORM models for syncabull."""

from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import JSON, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utc_now() -> datetime:
    """Get current UTC time."""
    return datetime.now(UTC)


# Hey future me - SQLite doesn't preserve timezone info! UTC datetimes come back "naive".
# ALWAYS run DB datetimes through this before comparing with datetime.now(UTC), or you get
# "can't compare offset-naive and offset-aware datetimes".
def ensure_utc_aware(dt: datetime | None) -> datetime | None:
    """Ensure datetime is UTC-aware, assuming naive datetimes are UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Listen up, deleting an AccountModel cascades to its credential, cursor and ALL its media item
# rows (ON DELETE CASCADE in the DB plus cascade="all, delete-orphan" in the ORM). Files already
# on disk are NOT touched - the backup stays, only the sync state goes.
class AccountModel(Base):
    """A backed-up library owner."""

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    initial_scan_completed: Mapped[bool] = mapped_column(default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    credential: Mapped["CredentialModel | None"] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )
    cursor: Mapped["SyncCursorModel | None"] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )
    media_items: Mapped[list["MediaItemModel"]] = relationship(
        back_populates="account", cascade="all, delete-orphan", passive_deletes=True
    )


class CredentialModel(Base):
    """OAuth token pair of one account.

    The is_valid flag is False when the refresh token was rejected - the account is parked
    until an operator re-authorizes it.
    """

    __tablename__ = "credentials"

    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=False)
    token_expires_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False
    )
    # Space-separated scopes, as the token endpoint returns them
    scopes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_valid: Mapped[bool] = mapped_column(default=True, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    last_refreshed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    account: Mapped[AccountModel] = relationship(back_populates="credential")

    __table_args__ = (Index("ix_credentials_valid", "is_valid"),)


class SyncCursorModel(Base):
    """Pagination position of an account's library walk. Written only by the enumerator."""

    __tablename__ = "sync_cursors"

    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), primary_key=True
    )
    # Opaque page tokens, stored and replayed verbatim
    next_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    prev_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    pages_fetched: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_completed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    account: Mapped[AccountModel] = relationship(back_populates="cursor")


# Hey future me, MediaItemModel is descriptor AND download state in one row (1:1 by remote_id).
# The integer id gives us insertion order for the scheduler's "attempts asc, then oldest first".
# local_filename_key is lower(local_filename) with a UNIQUE constraint - that's how we make
# "IMG_0001.JPG" and "img_0001.jpg" collide on case-insensitive filesystems (macOS, Windows).
class MediaItemModel(Base):
    """A remote media item and its download state."""

    __tablename__ = "media_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    remote_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )

    # Descriptor
    filename: Mapped[str] = mapped_column(String(512), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    # 'photo' or 'video' - discriminator for metadata_json
    media_kind: Mapped[str] = mapped_column(String(10), nullable=False)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    product_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    base_url_fetched_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    contributor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contributor_picture_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Download state
    local_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    local_filename_key: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success: Mapped[bool] = mapped_column(default=False, nullable=False)
    terminal: Mapped[bool] = mapped_column(default=False, nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    last_error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        sa.DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    account: Mapped[AccountModel] = relationship(back_populates="media_items")

    __table_args__ = (
        Index("ix_media_items_account", "account_id"),
        Index("ix_media_items_eligible", "success", "terminal", "attempts", "id"),
    )


class AppSettingsModel(Base):
    """Engine settings stored in DB.

    Key-value store read at startup. Example keys:
    - 'sync.concurrency' (integer)
    - 'sync.max_download_speed' (integer, bytes/sec)
    - 'sync.stop_when_caught_up' (boolean)
    """

    __tablename__ = "app_settings"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    # Value as string (parsed based on value_type)
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    # 'string', 'boolean', 'integer', 'float', 'json'
    value_type: Mapped[str] = mapped_column(
        String(20), nullable=False, server_default="string", default="string"
    )
    category: Mapped[str] = mapped_column(
        String(50), nullable=False, server_default="general", default="general"
    )
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (Index("ix_app_settings_category", "category"),)
