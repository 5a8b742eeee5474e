"""Application services - credentials, enumeration, item state and downloads."""

from syncabull.application.services.account_context import AccountContext
from syncabull.application.services.app_settings_service import AppSettingsService
from syncabull.application.services.asset_downloader import AssetDownloader, DownloadResult
from syncabull.application.services.item_store import (
    ItemStore,
    PageUpsertResult,
    disambiguated_filename,
    sanitize_filename,
)
from syncabull.application.services.library_enumerator import (
    EnumerationResult,
    EnumerationState,
    LibraryEnumerator,
)
from syncabull.application.services.retry_policy import (
    RetryAction,
    RetryDecision,
    RetryPolicy,
)
from syncabull.application.services.token_manager import TokenManager

__all__ = [
    "AccountContext",
    "AppSettingsService",
    "AssetDownloader",
    "DownloadResult",
    "EnumerationResult",
    "EnumerationState",
    "ItemStore",
    "LibraryEnumerator",
    "PageUpsertResult",
    "RetryAction",
    "RetryDecision",
    "RetryPolicy",
    "TokenManager",
    "disambiguated_filename",
    "sanitize_filename",
]
