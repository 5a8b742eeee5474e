"""Infrastructure persistence layer."""

from .database import Database
from .models import (
    AccountModel,
    AppSettingsModel,
    Base,
    CredentialModel,
    MediaItemModel,
    SyncCursorModel,
)
from .repositories import (
    AccountRepository,
    AppSettingsRepository,
    CredentialRepository,
    MediaItemRepository,
    SyncCursorRepository,
)
from .retry import DatabaseLockMetrics, with_db_retry

__all__ = [
    "AccountModel",
    "AccountRepository",
    "AppSettingsModel",
    "AppSettingsRepository",
    "Base",
    "CredentialModel",
    "CredentialRepository",
    "Database",
    "DatabaseLockMetrics",
    "MediaItemModel",
    "MediaItemRepository",
    "SyncCursorModel",
    "SyncCursorRepository",
    "with_db_retry",
]
