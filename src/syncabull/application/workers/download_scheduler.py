"""Download Scheduler - bounded worker pool that drains the Item Store.

Hey future me - the moving parts:

    dispatcher ──next_eligible(limit=free slots, exclude=in flight)──> asyncio.Queue(maxsize=2N)
                                                                            │
                                     N workers <────────────────────────────┘
                                        │
                                        └─ adopt existing file? / refresh stale asset URL
                                           stream -> temp file -> verify -> os.replace
                                           record_outcome() EXACTLY once per attempt

The in-flight set holds every item id that is queued or being downloaded. It's passed as the
exclude list so the dispatcher never hands the same item out twice, even though
next_eligible() itself is stateless.

SHUTDOWN: when stop_event fires the dispatcher stops, queued-but-not-started items are dropped
(no outcome, they stay eligible), and workers finish the item they're on. Workers are NEVER
cancelled, a download killed mid-write is exactly what we must not do. If downloads are still
running after shutdown_timeout, the abort event interrupts their network streams between two
chunks: the downloader removes the temp file and an uncounted INTERRUPTED outcome is recorded.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from syncabull.application.services.account_context import AccountContext
from syncabull.application.services.asset_downloader import AssetDownloader, DownloadResult
from syncabull.application.services.item_store import ItemStore
from syncabull.application.services.retry_policy import RetryPolicy
from syncabull.domain.entities import (
    AssetStream,
    AttemptOutcome,
    MediaItem,
    SyncErrorCode,
    SyncRecord,
)
from syncabull.domain.exceptions import (
    AuthError,
    DatabaseError,
    DownloadInterrupted,
    EntityNotFoundException,
    ReauthorizationRequired,
)
from syncabull.domain.ports import ILibraryClient

logger = logging.getLogger(__name__)

_STOP = None


@dataclass
class DownloadStats:
    """Counters since the scheduler was created."""

    downloaded: int = 0
    adopted: int = 0
    failed: int = 0  # retryable failures, will be retried
    terminal: int = 0  # failures that made the item terminal
    deferred: int = 0  # account needs re-authorization
    interrupted: int = 0  # stream stopped by shutdown
    bytes_downloaded: int = 0
    url_refreshes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DownloadScheduler:
    """Fetches eligible items with a fixed number of concurrent workers."""

    def __init__(
        self,
        item_store: ItemStore,
        client: ILibraryClient,
        downloader: AssetDownloader,
        retry_policy: RetryPolicy,
        concurrency: int = 4,
        asset_url_ttl_seconds: int = 3600,
        asset_url_refresh_margin_seconds: int = 300,
        idle_poll_seconds: float = 5.0,
        shutdown_timeout: float = 10.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._item_store = item_store
        self._client = client
        self._downloader = downloader
        self._retry_policy = retry_policy
        self._concurrency = concurrency
        self._url_ttl = asset_url_ttl_seconds
        self._url_margin = asset_url_refresh_margin_seconds
        self._idle_poll = idle_poll_seconds
        self._shutdown_timeout = shutdown_timeout

        self._stats = DownloadStats()
        self._in_flight: set[int] = set()
        self._wakeup = asyncio.Event()
        self._abort = asyncio.Event()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> frozenset[int]:
        return frozenset(self._in_flight)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats.to_dict(),
            "in_flight": len(self._in_flight),
            "concurrency": self._concurrency,
            "running": self._running,
        }

    def wake(self) -> None:
        """Tell an idle dispatcher that new items may be eligible."""
        self._wakeup.set()

    async def run(
        self,
        contexts: Mapping[str, AccountContext],
        stop_event: asyncio.Event,
        producers_done: asyncio.Event | None = None,
    ) -> DownloadStats:
        """Dispatch downloads until stopped.

        Args:
            contexts: Accounts to download for, by id. Read on every dispatch, so the caller
                may add or remove accounts while the scheduler runs.
            stop_event: Shutdown signal
            producers_done: If given, return as soon as it is set, nothing is due and nothing
                is in flight (one drained sync cycle). Without it, run until stop_event.

        Returns:
            The scheduler's cumulative stats
        """
        if self._running:
            raise RuntimeError("DownloadScheduler is already running")
        self._running = True
        self._abort.clear()
        queue: asyncio.Queue[SyncRecord | None] = asyncio.Queue(maxsize=self._concurrency * 2)
        workers = [
            asyncio.create_task(self._worker(queue, contexts), name=f"download-worker-{n}")
            for n in range(self._concurrency)
        ]
        logger.info("DownloadScheduler started (concurrency=%d)", self._concurrency)

        try:
            await self._dispatch(queue, contexts, stop_event, producers_done)
        finally:
            await self._shutdown(queue, workers)
            self._running = False
            logger.info("DownloadScheduler stopped: %s", self._stats.to_dict())
        return self._stats

    async def _dispatch(
        self,
        queue: "asyncio.Queue[SyncRecord | None]",
        contexts: Mapping[str, AccountContext],
        stop_event: asyncio.Event,
        producers_done: asyncio.Event | None,
    ) -> None:
        while not stop_event.is_set():
            self._wakeup.clear()
            # read before querying: items upserted after this are seen by the next query
            producers_finished = producers_done is not None and producers_done.is_set()
            idle_before_query = not self._in_flight
            free = queue.maxsize - queue.qsize()
            dispatched = 0
            if free > 0 and contexts:
                try:
                    records = await self._item_store.next_eligible(
                        limit=free, exclude=set(self._in_flight), account_ids=list(contexts)
                    )
                except DatabaseError as e:
                    logger.error("Item Store unavailable, pausing dispatch: %s", e.message)
                    records = []
                for record in records:
                    if stop_event.is_set():
                        break
                    self._in_flight.add(record.id)
                    queue.put_nowait(record)
                    dispatched += 1

            if dispatched:
                continue
            if producers_finished and idle_before_query and not self._in_flight:
                logger.debug("Nothing left to download this cycle")
                return
            await self._wait_for_work(stop_event, producers_done)

    async def _wait_for_work(
        self, stop_event: asyncio.Event, producers_done: asyncio.Event | None
    ) -> None:
        waiters = [
            asyncio.create_task(stop_event.wait()),
            asyncio.create_task(self._wakeup.wait()),
        ]
        if producers_done is not None and not producers_done.is_set():
            waiters.append(asyncio.create_task(producers_done.wait()))
        try:
            await asyncio.wait(
                waiters, timeout=self._idle_poll, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _shutdown(
        self, queue: "asyncio.Queue[SyncRecord | None]", workers: list[asyncio.Task[None]]
    ) -> None:
        # queued items were never started: no outcome, they stay eligible
        dropped = 0
        while True:
            try:
                record = queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if record is not None:
                self._in_flight.discard(record.id)
                dropped += 1
            queue.task_done()
        if dropped:
            logger.info("Dropped %d queued downloads on shutdown", dropped)

        for _ in workers:
            queue.put_nowait(_STOP)

        _done, pending = await asyncio.wait(workers, timeout=self._shutdown_timeout)
        if pending:
            logger.warning(
                "%d downloads still running after %.1fs, interrupting their streams",
                len(pending),
                self._shutdown_timeout,
            )
            self._abort.set()
        for result in await asyncio.gather(*workers, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error("Download worker crashed: %s: %s", type(result).__name__, result)
        self._in_flight.clear()

    async def _worker(
        self,
        queue: "asyncio.Queue[SyncRecord | None]",
        contexts: Mapping[str, AccountContext],
    ) -> None:
        while True:
            record = await queue.get()
            try:
                if record is _STOP:
                    return
                ctx = contexts.get(record.account_id)
                if ctx is None:
                    logger.debug("Account %s no longer active, skipping", record.account_id)
                    continue
                await self._process(ctx, record)
            finally:
                if record is not None:
                    self._in_flight.discard(record.id)
                queue.task_done()
                self._wakeup.set()

    # -- one item --------------------------------------------------------------------------

    # Yo, this is the only place that calls record_outcome(). Every path through the try
    # below ends in exactly one outcome - except cancellation, which records nothing so the
    # item stays eligible for the next run.
    async def _process(self, ctx: AccountContext, record: SyncRecord) -> None:
        start = time.monotonic()
        try:
            result = await self._attempt(ctx, record)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            outcome = self._retry_policy.outcome_for(e, record.attempts + 1)
            self._count_failure(record, outcome, e)
        else:
            outcome = AttemptOutcome.succeeded()
            if result.adopted:
                self._stats.adopted += 1
            else:
                self._stats.downloaded += 1
                self._stats.bytes_downloaded += result.bytes_written
            logger.info(
                "Downloaded %s -> %s (%d bytes, %.1fs)%s",
                record.remote_id,
                result.path.name,
                result.bytes_written,
                time.monotonic() - start,
                " [adopted]" if result.adopted else "",
            )

        try:
            await self._item_store.record_outcome(record.id, outcome)
        except EntityNotFoundException:
            logger.warning("Item %s vanished before its outcome was recorded", record.remote_id)
        except DatabaseError as e:
            # the item stays eligible and is simply attempted again
            logger.error("Could not record outcome for %s: %s", record.remote_id, e.message)

    def _count_failure(self, record: SyncRecord, outcome: AttemptOutcome, error: Exception) -> None:
        if outcome.error_code == SyncErrorCode.INTERRUPTED:
            self._stats.interrupted += 1
            logger.info("Download of %s interrupted by shutdown, will resume", record.remote_id)
            return
        if outcome.error_code == SyncErrorCode.DATABASE_ERROR:
            self._stats.failed += 1
            logger.error(
                "Download of %s hit a database error, retrying later: %s",
                record.remote_id,
                outcome.error_message,
            )
            return
        if not outcome.counts_attempt:
            self._stats.deferred += 1
            logger.warning(
                "Download of %s deferred: account %s needs re-authorization",
                record.remote_id,
                record.account_id,
            )
            return

        attempts = record.attempts + 1
        terminal = outcome.terminal or attempts >= self._retry_policy.max_attempts
        if terminal:
            self._stats.terminal += 1
        else:
            self._stats.failed += 1

        if outcome.error_code == SyncErrorCode.STORAGE_ERROR:
            logger.critical(
                "Local storage failure while writing %s: %s", record.local_filename, error
            )
        elif outcome.error_code == SyncErrorCode.UNKNOWN:
            logger.exception("Unexpected error downloading %s", record.remote_id)
        elif terminal:
            logger.error(
                "Download of %s failed permanently after %d attempts (%s): %s",
                record.remote_id,
                attempts,
                outcome.error_code,
                outcome.error_message,
            )
        else:
            logger.warning(
                "Download of %s failed (attempt %d, %s): %s",
                record.remote_id,
                attempts,
                outcome.error_code,
                outcome.error_message,
            )

    async def _attempt(self, ctx: AccountContext, record: SyncRecord) -> DownloadResult:
        adopted = await self._downloader.adopt_existing(record.local_filename)
        if adopted is not None:
            return adopted

        item = record.item
        if item.asset_url_expires_within(self._url_ttl, self._url_margin):
            item = await self._refresh_asset_url(ctx, record)

        try:
            return await self._download(item, record.local_filename)
        except AuthError as e:
            if isinstance(e, ReauthorizationRequired):
                raise
            # signed URLs answer 403 once they expire, refresh once within this attempt
            logger.info(
                "Asset URL of %s rejected (HTTP %s), refreshing", record.remote_id, e.http_status
            )
            item = await self._refresh_asset_url(ctx, record)
            return await self._download(item, record.local_filename)

    async def _download(self, item: MediaItem, local_filename: str) -> DownloadResult:
        async with self._client.stream_asset(item.download_url()) as asset:
            return await self._downloader.write(
                local_filename,
                AssetStream(
                    content_length=asset.content_length,
                    chunks=self._until_aborted(asset.chunks),
                ),
            )

    # Listen up - this is the ONLY way shutdown reaches a running download. Writing a chunk to
    # the temp file is never interrupted, only the wait for the next chunk from the network.
    async def _until_aborted(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        iterator = aiter(chunks)
        while True:
            if self._abort.is_set():
                raise DownloadInterrupted()
            next_chunk = asyncio.create_task(_next_chunk(iterator))
            aborted = asyncio.create_task(self._abort.wait())
            try:
                await asyncio.wait({next_chunk, aborted}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                next_chunk.cancel()
                raise
            finally:
                aborted.cancel()

            if not next_chunk.done():
                next_chunk.cancel()
                await asyncio.gather(next_chunk, return_exceptions=True)
                raise DownloadInterrupted()
            chunk = next_chunk.result()
            if chunk is None:
                return
            yield chunk

    async def _refresh_asset_url(self, ctx: AccountContext, record: SyncRecord) -> MediaItem:
        """Re-fetch the item detail for a fresh base URL and persist it."""
        token = await ctx.access_token()
        try:
            fresh = await self._client.get_item(token.token, record.remote_id)
        except AuthError as e:
            if isinstance(e, ReauthorizationRequired):
                raise
            await ctx.invalidate(token.token)
            token = await ctx.access_token()
            fresh = await self._client.get_item(token.token, record.remote_id)

        self._stats.url_refreshes += 1
        if fresh.base_url:
            await self._item_store.update_asset_url(
                record.id, fresh.base_url, fresh.base_url_fetched_at
            )
        return fresh


async def _next_chunk(iterator: AsyncIterator[bytes]) -> bytes | None:
    """anext() with None for the end, a task can't carry StopAsyncIteration cleanly."""
    try:
        return await anext(iterator)
    except StopAsyncIteration:
        return None
