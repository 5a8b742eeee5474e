"""Library Enumerator - walks one account's remote library page by page.

STATE MACHINE (per account, strictly sequential):

    Idle -> FetchingPage -> PersistingPage -> Idle -> ...   (loop)
                 |                  |
                 |                  +-> Done    (no next cursor, or caught up)
                 +-> Failed  (AuthError, fatal errors, store unavailable)

Hey future me - the ORDER inside PersistingPage is the whole point: upsert the page's items
FIRST, persist the cursor SECOND. A crash in between means we fetch the same page again next
time (upserts are idempotent) - at-least-once, never an item silently skipped.

Google lists newest first, so once the initial full walk is complete we can stop at the first
page whose items were all known when the previous walk completed ("caught up"). On Done the
cursor is cleared so the next cycle starts from the top again.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from syncabull.application.services.account_context import AccountContext
from syncabull.application.services.item_store import ItemStore
from syncabull.application.services.retry_policy import RetryPolicy
from syncabull.domain.entities import LibraryPage, SyncCursor
from syncabull.domain.exceptions import (
    AuthError,
    DomainException,
    ReauthorizationRequired,
    ValidationException,
)
from syncabull.domain.ports import ILibraryClient
from syncabull.infrastructure.observability.logger_template import log_slow_operation
from syncabull.infrastructure.persistence import (
    AccountRepository,
    Database,
    SyncCursorRepository,
    with_db_retry,
)

logger = logging.getLogger(__name__)


# Listen up - "every item on the page is already stored" is NOT enough to stop early. Items
# stored by an interrupted walk (crash before the cursor save, stale cursor reset) are known
# too, and the pages behind them may never have been fetched. Only items first seen before the
# last COMPLETED walk finished mark the boundary.
def _known_before(
    newest_known_seen_at: datetime | None, last_completed_at: datetime | None
) -> bool:
    if newest_known_seen_at is None or last_completed_at is None:
        return False
    return newest_known_seen_at <= last_completed_at


class EnumerationState(str, Enum):
    """States of one account's enumeration."""

    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    PERSISTING_PAGE = "persisting_page"
    DONE = "done"
    FAILED = "failed"


@dataclass
class EnumerationResult:
    """Summary of one enumeration run."""

    account_id: str
    state: EnumerationState = EnumerationState.IDLE
    pages: int = 0
    items_seen: int = 0
    new_items: int = 0
    rejected_items: int = 0
    caught_up: bool = False
    error: DomainException | None = None
    transitions: list[EnumerationState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is EnumerationState.DONE


class LibraryEnumerator:
    """Drives listing pages into the Item Store and owns the SyncCursor."""

    def __init__(
        self,
        db: Database,
        client: ILibraryClient,
        item_store: ItemStore,
        retry_policy: RetryPolicy,
        page_size: int = 100,
        stop_when_caught_up: bool = True,
    ) -> None:
        self._db = db
        self._client = client
        self._item_store = item_store
        self._retry_policy = retry_policy
        self._page_size = page_size
        self._stop_when_caught_up = stop_when_caught_up

    async def run(
        self,
        ctx: AccountContext,
        stop_event: asyncio.Event | None = None,
        on_new_items: Callable[[int], None] | None = None,
    ) -> EnumerationResult:
        """Enumerate until Done, Failed or stop_event is set.

        Args:
            ctx: The account to enumerate
            stop_event: Shutdown signal, checked between pages
            on_new_items: Called with the count after a page added new items

        Returns:
            EnumerationResult; state is IDLE if stopped early by stop_event
        """
        result = EnumerationResult(account_id=ctx.account_id)
        cursor = await self._load_cursor(ctx.account_id)
        initial_scan_completed = await self._initial_scan_completed(ctx.account_id)
        stale_cursor_reset = False

        def enter(state: EnumerationState) -> None:
            result.state = state
            result.transitions.append(state)

        enter(EnumerationState.IDLE)
        if cursor.next_token:
            logger.info(
                "Resuming enumeration for %s after %d pages", ctx.account_id, cursor.pages_fetched
            )

        while True:
            if stop_event is not None and stop_event.is_set():
                logger.info("Enumeration for %s stopped by shutdown", ctx.account_id)
                return result

            enter(EnumerationState.FETCHING_PAGE)
            try:
                page = await self._fetch_page(ctx, cursor.next_token)
            except ValidationException as e:
                # Hey future me - Google rejects page tokens that got too old (400). Throwing
                # the cursor away and starting over is safe, upserts are idempotent.
                if cursor.next_token and not stale_cursor_reset:
                    logger.warning(
                        "Stored page token for %s rejected (%s), restarting walk",
                        ctx.account_id,
                        e.message,
                    )
                    stale_cursor_reset = True
                    cursor = SyncCursor(
                        account_id=ctx.account_id, last_completed_at=cursor.last_completed_at
                    )
                    await self._save_cursor(cursor)
                    enter(EnumerationState.IDLE)
                    continue
                return self._fail(result, enter, e)
            except DomainException as e:
                return self._fail(result, enter, e)

            enter(EnumerationState.PERSISTING_PAGE)
            try:
                start = time.monotonic()
                upserted = await self._item_store.upsert_page(ctx.account_id, page.items)
                log_slow_operation(
                    logger,
                    "upsert_page",
                    int((time.monotonic() - start) * 1000),
                    threshold_ms=1000,
                    account_id=ctx.account_id,
                    items=len(page.items),
                )

                result.pages += 1
                result.items_seen += len(page.items)
                result.new_items += upserted.new_count
                result.rejected_items += len(page.rejected_ids)
                if on_new_items is not None and upserted.new_count:
                    on_new_items(upserted.new_count)

                caught_up = (
                    self._stop_when_caught_up
                    and initial_scan_completed
                    and bool(page.items)
                    and upserted.new_count == 0
                    and _known_before(upserted.newest_known_seen_at, cursor.last_completed_at)
                )
                if page.next_cursor is None or caught_up:
                    result.caught_up = caught_up and page.next_cursor is not None
                    await self._complete_walk(ctx.account_id, cursor)
                    enter(EnumerationState.DONE)
                    logger.info(
                        "Enumeration for %s done: %d pages, %d items, %d new%s",
                        ctx.account_id,
                        result.pages,
                        result.items_seen,
                        result.new_items,
                        " (caught up)" if result.caught_up else "",
                    )
                    return result

                cursor = SyncCursor(
                    account_id=ctx.account_id,
                    next_token=page.next_cursor,
                    prev_token=cursor.next_token,
                    pages_fetched=cursor.pages_fetched + 1,
                    last_completed_at=cursor.last_completed_at,
                )
                await self._save_cursor(cursor)
            except DomainException as e:
                return self._fail(result, enter, e)

            enter(EnumerationState.IDLE)

    @staticmethod
    def _fail(
        result: EnumerationResult,
        enter: Callable[[EnumerationState], None],
        error: DomainException,
    ) -> EnumerationResult:
        enter(EnumerationState.FAILED)
        result.error = error
        if isinstance(error, ReauthorizationRequired):
            logger.error(
                "Enumeration for %s failed: account needs re-authorization", result.account_id
            )
        else:
            logger.error(
                "Enumeration for %s failed: %s: %s",
                result.account_id,
                type(error).__name__,
                error.message,
            )
        return result

    async def _fetch_page(self, ctx: AccountContext, cursor: str | None) -> LibraryPage:
        """Fetch a page, retrying transient failures; one token refresh on 401."""

        async def attempt() -> LibraryPage:
            token = await ctx.access_token()
            try:
                return await self._client.list_page(token.token, cursor, self._page_size)
            except AuthError as e:
                if isinstance(e, ReauthorizationRequired):
                    raise
                logger.info("Listing for %s got 401, refreshing token once", ctx.account_id)
                await ctx.invalidate(token.token)
                token = await ctx.access_token()
                # a second 401 propagates as AuthError, which is fatal
                return await self._client.list_page(token.token, cursor, self._page_size)

        return await self._retry_policy.run(
            attempt, what=f"Listing page for account {ctx.account_id}"
        )

    @with_db_retry()
    async def _load_cursor(self, account_id: str) -> SyncCursor:
        async with self._db.session_scope() as session:
            return await SyncCursorRepository(session).get(account_id)

    @with_db_retry()
    async def _initial_scan_completed(self, account_id: str) -> bool:
        async with self._db.session_scope() as session:
            account = await AccountRepository(session).get(account_id)
            return bool(account and account.initial_scan_completed)

    @with_db_retry()
    async def _save_cursor(self, cursor: SyncCursor) -> None:
        async with self._db.session_scope() as session:
            await SyncCursorRepository(session).save(cursor)

    @with_db_retry()
    async def _complete_walk(self, account_id: str, cursor: SyncCursor) -> None:
        async with self._db.session_scope() as session:
            await SyncCursorRepository(session).save(
                SyncCursor(
                    account_id=account_id,
                    next_token=None,
                    prev_token=None,
                    pages_fetched=0,
                    last_completed_at=datetime.now(UTC),
                )
            )
            accounts = AccountRepository(session)
            account = await accounts.get(account_id)
            if account and not account.initial_scan_completed:
                await accounts.mark_initial_scan_completed(account_id)
                logger.info("Initial scan of %s completed", account_id)
