"""Item Store - durable per-item sync state and the dedup decision.

Hey future me - the media_items table is the heart of the engine. Two writers share it:
- the Library Enumerator upserts descriptors (upsert/upsert_page)
- the Download Scheduler records outcomes (record_outcome, update_asset_url)

RULES this service enforces:
- upsert is idempotent by remote id and NEVER resets attempts/success/terminal
- base_url_fetched_at only moves when the base URL actually changes
- local filenames are assigned once, at first insert, unique case-insensitively
- attempts only grows; not success and attempts >= max_attempts => terminal

Every public method is one transaction, retried on SQLite lock errors (with_db_retry), and
raises DatabaseError when the store is unavailable.
"""

import logging
import re
import unicodedata
from collections.abc import Collection, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import PurePath

from sqlalchemy.exc import IntegrityError

from syncabull.domain.entities import AttemptOutcome, MediaItem, SyncRecord
from syncabull.domain.exceptions import EntityNotFoundException
from syncabull.infrastructure.persistence import Database, MediaItemModel, with_db_retry
from syncabull.infrastructure.persistence.models import ensure_utc_aware
from syncabull.infrastructure.persistence.repositories import (
    MediaItemRepository,
    media_item_to_record,
)

logger = logging.getLogger(__name__)

# Leave room for "_<remote id>" and a temp suffix under the 255 byte NAME_MAX
MAX_STEM_LENGTH = 120
_UNSAFE_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"/\\|?*]')


def sanitize_filename(name: str, fallback: str) -> str:
    """Make a remote filename safe to create inside the destination root.

    Strips directory parts and characters that are invalid on common filesystems.
    Falls back to `fallback` when nothing usable is left.
    """
    name = unicodedata.normalize("NFC", name or "")
    # Google filenames never contain a path, but be strict: keep only the last component
    name = PurePath(name.replace("\\", "/")).name
    name = _UNSAFE_CHARS.sub("_", name).strip().strip(".")
    if not name:
        name = _UNSAFE_CHARS.sub("_", fallback)
    stem, suffix = _split_name(name)
    return f"{stem[:MAX_STEM_LENGTH]}{suffix[:16]}"


def _split_name(name: str) -> tuple[str, str]:
    path = PurePath(name)
    suffix = path.suffix if path.stem else ""
    stem = path.stem if suffix else name
    return stem, suffix


def disambiguated_filename(filename: str, remote_id: str) -> str:
    """`<stem>_<remote id><suffix>` for a name that is already taken."""
    stem, suffix = _split_name(filename)
    safe_id = _UNSAFE_CHARS.sub("_", remote_id)
    return f"{stem}_{safe_id}{suffix}"


@dataclass(frozen=True)
class PageUpsertResult:
    """What upsert_page() did."""

    new_count: int
    updated_count: int
    # first-seen time of the most recently discovered item that was already stored
    newest_known_seen_at: datetime | None = None

    @property
    def total(self) -> int:
        return self.new_count + self.updated_count


class ItemStore:
    """Owns MediaItem and SyncRecord rows."""

    # Another account's enumerator can claim a filename between our check and our commit
    _FILENAME_RACE_RETRIES = 3

    def __init__(self, db: Database, max_attempts: int = 4) -> None:
        self._db = db
        self.max_attempts = max_attempts

    # -- descriptors ---------------------------------------------------------------------------

    async def upsert(self, account_id: str, item: MediaItem) -> SyncRecord:
        """Insert or update one item by remote id. Download state is left untouched."""
        await self.upsert_page(account_id, [item])
        record = await self.get_by_remote_id(item.remote_id)
        if record is None:
            raise EntityNotFoundException("MediaItem", item.remote_id)
        return record

    @with_db_retry()
    async def upsert_page(self, account_id: str, items: Sequence[MediaItem]) -> PageUpsertResult:
        """Apply a whole listing page in ONE transaction.

        Args:
            account_id: Owner of the items
            items: Descriptors from the listing

        Returns:
            How many items were new and how many already known
        """
        for attempt in range(1, self._FILENAME_RACE_RETRIES + 1):
            try:
                return await self._upsert_page_once(account_id, items)
            except IntegrityError:
                if attempt >= self._FILENAME_RACE_RETRIES:
                    raise
                logger.warning(
                    "Unique constraint race while upserting page for %s, retrying (%d/%d)",
                    account_id,
                    attempt,
                    self._FILENAME_RACE_RETRIES,
                )
        raise RuntimeError("Unexpected state in upsert_page")

    async def _upsert_page_once(
        self, account_id: str, items: Sequence[MediaItem]
    ) -> PageUpsertResult:
        now = datetime.now(UTC)
        new_count = 0
        updated_count = 0
        newest_known_seen_at: datetime | None = None

        async with self._db.session_scope() as session:
            repo = MediaItemRepository(session)
            existing = await repo.get_models_by_remote_ids({i.remote_id for i in items})

            for item in items:
                model = existing.get(item.remote_id)
                if model is not None:
                    seen_at = ensure_utc_aware(model.created_at)
                    if seen_at is not None and (
                        newest_known_seen_at is None or seen_at > newest_known_seen_at
                    ):
                        newest_known_seen_at = seen_at
                    self._apply_descriptor(model, item, now)
                    updated_count += 1
                    continue

                local_filename = await self._assign_filename(repo, item)
                model = MediaItemModel(
                    remote_id=item.remote_id,
                    account_id=account_id,
                    local_filename=local_filename,
                    local_filename_key=local_filename.lower(),
                    attempts=0,
                    success=False,
                    terminal=False,
                    created_at=now,
                )
                self._apply_descriptor(model, item, now)
                repo.add(model)
                # flush so the next filename check in this page sees the claim
                await session.flush()
                existing[item.remote_id] = model
                new_count += 1

        return PageUpsertResult(
            new_count=new_count,
            updated_count=updated_count,
            newest_known_seen_at=newest_known_seen_at,
        )

    @staticmethod
    def _apply_descriptor(model: MediaItemModel, item: MediaItem, now: datetime) -> None:
        model.filename = item.filename
        model.mime_type = item.mime_type
        model.media_kind = item.kind.value
        model.metadata_json = item.metadata.to_dict()
        model.description = item.description
        model.product_url = item.product_url
        model.contributor_name = item.contributor.display_name if item.contributor else None
        model.contributor_picture_url = (
            item.contributor.profile_picture_base_url if item.contributor else None
        )
        if item.base_url and item.base_url != model.base_url:
            model.base_url = item.base_url
            model.base_url_fetched_at = item.base_url_fetched_at or now

    async def _assign_filename(self, repo: MediaItemRepository, item: MediaItem) -> str:
        candidate = sanitize_filename(item.filename, item.remote_id)
        if not await repo.filename_key_exists(candidate.lower()):
            return candidate

        candidate = disambiguated_filename(candidate, item.remote_id)
        counter = 1
        base = candidate
        # Only reachable if a remote file is literally named "<stem>_<other id><suffix>"
        while await repo.filename_key_exists(candidate.lower()):
            stem, suffix = _split_name(base)
            candidate = f"{stem}_{counter}{suffix}"
            counter += 1
        logger.debug("Filename collision for %s, using %s", item.remote_id, candidate)
        return candidate

    @with_db_retry()
    async def update_asset_url(
        self, item_id: int, base_url: str, obtained_at: datetime | None = None
    ) -> SyncRecord:
        """Store a freshly fetched base URL and the instant it was obtained."""
        async with self._db.session_scope() as session:
            model = await MediaItemRepository(session).get_model(item_id)
            if model is None:
                raise EntityNotFoundException("MediaItem", item_id)
            model.base_url = base_url
            model.base_url_fetched_at = obtained_at or datetime.now(UTC)
            return media_item_to_record(model)

    # -- download state ------------------------------------------------------------------------

    @with_db_retry()
    async def next_eligible(
        self,
        limit: int,
        exclude: Collection[int] = (),
        now: datetime | None = None,
        account_ids: Collection[str] | None = None,
    ) -> list[SyncRecord]:
        """Items to download next: not done, not terminal, backoff elapsed, account valid.

        Stateless - calling it twice without outcomes in between returns the same items.

        Args:
            limit: Maximum number of records
            exclude: Item ids already in flight
            now: Reference time for the backoff check
            account_ids: Restrict to these accounts (None = all)
        """
        async with self._db.session_scope() as session:
            models = await MediaItemRepository(session).list_eligible(
                limit=limit,
                now=now or datetime.now(UTC),
                exclude_ids=exclude,
                account_ids=account_ids,
            )
            return [media_item_to_record(m) for m in models]

    # Listen up, this is THE write after every download attempt. attempts only goes up, and a
    # retryable failure that used the last attempt is demoted to terminal right here even if the
    # caller forgot - the invariant lives in the store, not in the workers.
    @with_db_retry()
    async def record_outcome(self, item_id: int, outcome: AttemptOutcome) -> SyncRecord:
        """Record the result of one download attempt.

        Raises:
            EntityNotFoundException: If the item doesn't exist (e.g. account deleted meanwhile)
        """
        now = datetime.now(UTC)
        async with self._db.session_scope() as session:
            model = await MediaItemRepository(session).get_model(item_id)
            if model is None:
                raise EntityNotFoundException("MediaItem", item_id)

            if outcome.counts_attempt:
                model.attempts += 1
                model.last_attempt_at = now

            if outcome.success:
                model.success = True
                model.terminal = False
                model.completed_at = now
                model.next_attempt_at = None
                model.last_error_code = None
                model.last_error = None
                if model.attempts == 0:
                    # adopted without a counted attempt still needs attempts >= 1
                    model.attempts = 1
                    model.last_attempt_at = now
            else:
                model.last_error_code = outcome.error_code
                model.last_error = outcome.error_message
                exhausted = outcome.counts_attempt and model.attempts >= self.max_attempts
                if outcome.terminal or exhausted:
                    model.terminal = True
                    model.next_attempt_at = None
                else:
                    model.next_attempt_at = outcome.next_attempt_at

            return media_item_to_record(model)

    @with_db_retry()
    async def requeue(self, item_id: int) -> SyncRecord:
        """Operator intervention: make a terminal item eligible again.

        The attempt history is kept, so a retryable failure right after a requeue of an
        exhausted item is terminal again.
        """
        async with self._db.session_scope() as session:
            model = await MediaItemRepository(session).get_model(item_id)
            if model is None:
                raise EntityNotFoundException("MediaItem", item_id)
            if not model.success:
                model.terminal = False
                model.next_attempt_at = None
            return media_item_to_record(model)

    # -- reads ---------------------------------------------------------------------------------

    @with_db_retry()
    async def get(self, item_id: int) -> SyncRecord | None:
        async with self._db.session_scope() as session:
            model = await MediaItemRepository(session).get_model(item_id)
            return media_item_to_record(model) if model else None

    @with_db_retry()
    async def get_by_remote_id(self, remote_id: str) -> SyncRecord | None:
        async with self._db.session_scope() as session:
            model = await MediaItemRepository(session).get_model_by_remote_id(remote_id)
            return media_item_to_record(model) if model else None

    @with_db_retry()
    async def summary(self, account_id: str | None = None) -> dict[str, int]:
        """Counts of pending / succeeded / terminal items for operator views."""
        async with self._db.session_scope() as session:
            return await MediaItemRepository(session).count_by_state(account_id)
