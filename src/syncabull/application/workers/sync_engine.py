"""Sync Engine - runs sync cycles across all authorized accounts.

Hey future me - two ways to drive this:

run_cycle(): one self-contained cycle. Every authorized account enumerates concurrently while
the Download Scheduler drains the Item Store; returns once enumeration is finished and nothing
is due or in flight. Used for one-shot runs and tests.

run_forever(): the service mode. The Download Scheduler runs for the whole lifetime (so items
in retry backoff are picked up as soon as they're due, not one cycle interval later) and
enumeration cycles fire every cycle_interval_seconds. Stops when stop_event is set.

Every cycle gets a fresh correlation id so all log lines of one cycle can be grepped together.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from syncabull.application.services.account_context import AccountContext
from syncabull.application.services.item_store import ItemStore
from syncabull.application.services.library_enumerator import (
    EnumerationResult,
    LibraryEnumerator,
)
from syncabull.application.services.token_manager import TokenManager
from syncabull.application.workers.download_scheduler import DownloadScheduler
from syncabull.domain.entities import Account
from syncabull.infrastructure.observability import (
    log_operation,
    log_worker_health,
    set_correlation_id,
)
from syncabull.infrastructure.persistence import AccountRepository, Database, with_db_retry

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """What one sync cycle did."""

    correlation_id: str
    enumerations: list[EnumerationResult] = field(default_factory=list)
    downloads: dict[str, int] = field(default_factory=dict)
    summary: dict[str, int] = field(default_factory=dict)

    @property
    def failed_accounts(self) -> list[str]:
        return [r.account_id for r in self.enumerations if not r.succeeded]


class SyncEngine:
    """Wires enumeration and downloads together for every account."""

    def __init__(
        self,
        db: Database,
        token_manager: TokenManager,
        item_store: ItemStore,
        enumerator: LibraryEnumerator,
        scheduler: DownloadScheduler,
        cycle_interval_seconds: float = 1800,
    ) -> None:
        self._db = db
        self._token_manager = token_manager
        self._item_store = item_store
        self._enumerator = enumerator
        self._scheduler = scheduler
        self._cycle_interval = cycle_interval_seconds

        # shared with the scheduler and updated in place every cycle
        self._contexts: dict[str, AccountContext] = {}
        self._running = False
        self._stats: dict[str, Any] = {
            "cycles_completed": 0,
            "errors_total": 0,
            "last_cycle_at": None,
        }

    @property
    def contexts(self) -> dict[str, AccountContext]:
        return self._contexts

    def get_stats(self) -> dict[str, Any]:
        return {**self._stats, "downloads": self._scheduler.get_stats(), "running": self._running}

    async def refresh_contexts(self) -> dict[str, AccountContext]:
        """Rebuild the account contexts from the accounts with a valid credential."""
        accounts = await self._list_authorized()
        active = {account.id for account in accounts}
        for account in accounts:
            ctx = self._contexts.get(account.id)
            if ctx is None:
                self._contexts[account.id] = AccountContext(account, self._token_manager)
            else:
                ctx.account = account
        for account_id in list(self._contexts):
            if account_id not in active:
                logger.info("Account %s is no longer authorized, pausing its sync", account_id)
                del self._contexts[account_id]
        return self._contexts

    @with_db_retry()
    async def _list_authorized(self) -> list[Account]:
        async with self._db.session_scope() as session:
            return await AccountRepository(session).list_authorized()

    async def run_cycle(self, stop_event: asyncio.Event | None = None) -> CycleReport:
        """Run one complete cycle: enumerate all accounts and drain the downloads."""
        stop_event = stop_event or asyncio.Event()
        report = CycleReport(correlation_id=set_correlation_id())
        before = self._scheduler.get_stats()

        async with log_operation(logger, "sync_cycle") as result:
            contexts = await self.refresh_contexts()
            producers_done = asyncio.Event()
            enumerate_task = asyncio.create_task(
                self._enumerate_all(contexts, stop_event, producers_done)
            )
            try:
                await self._scheduler.run(contexts, stop_event, producers_done)
            finally:
                # the scheduler only returns early on shutdown; don't leave enumeration behind
                producers_done.set()
                report.enumerations = await enumerate_task

            after = self._scheduler.get_stats()
            report.downloads = {
                key: after[key] - before[key]
                for key in ("downloaded", "adopted", "failed", "terminal", "deferred")
            }
            report.summary = await self._item_store.summary()
            result.update(
                accounts=len(contexts),
                failed_accounts=len(report.failed_accounts),
                **report.downloads,
                pending=report.summary.get("pending", 0),
            )

        self._stats["last_cycle_at"] = time.time()
        return report

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Service mode: continuous downloads plus periodic enumeration cycles."""
        self._running = True
        started = time.monotonic()
        logger.info("SyncEngine started (cycle_interval=%ss)", self._cycle_interval)

        await self.refresh_contexts()
        scheduler_task = asyncio.create_task(
            self._scheduler.run(self._contexts, stop_event), name="download-scheduler"
        )
        try:
            while not stop_event.is_set():
                set_correlation_id()
                try:
                    async with log_operation(logger, "enumeration_cycle") as result:
                        contexts = await self.refresh_contexts()
                        results = await self._enumerate_all(contexts, stop_event)
                        self._scheduler.wake()
                        result.update(
                            accounts=len(contexts),
                            new_items=sum(r.new_items for r in results),
                            failed_accounts=sum(1 for r in results if not r.succeeded),
                        )
                    self._stats["cycles_completed"] += 1
                    self._stats["last_cycle_at"] = time.time()
                except Exception:
                    # logged by log_operation; the next cycle tries again
                    self._stats["errors_total"] += 1

                log_worker_health(
                    logger,
                    "sync_engine",
                    cycles_completed=self._stats["cycles_completed"],
                    errors_total=self._stats["errors_total"],
                    uptime_seconds=time.monotonic() - started,
                    extra_stats=self._scheduler.get_stats(),
                )

                if scheduler_task.done():
                    # a crashed scheduler is process-fatal, surface it
                    scheduler_task.result()
                    break

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self._cycle_interval)
                except TimeoutError:
                    pass
        finally:
            stop_event.set()
            await scheduler_task
            self._running = False
            logger.info("SyncEngine stopped")

    async def _enumerate_all(
        self,
        contexts: dict[str, AccountContext],
        stop_event: asyncio.Event,
        producers_done: asyncio.Event | None = None,
    ) -> list[EnumerationResult]:
        """Enumerate every account concurrently, one sequential walk per account."""
        active = list(contexts.values())
        try:
            outcomes = await asyncio.gather(
                *(
                    self._enumerator.run(
                        ctx, stop_event, on_new_items=lambda _n: self._scheduler.wake()
                    )
                    for ctx in active
                ),
                return_exceptions=True,
            )
        finally:
            if producers_done is not None:
                producers_done.set()

        results: list[EnumerationResult] = []
        for ctx, outcome in zip(active, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(
                    "Enumeration for %s crashed: %s",
                    ctx.account_id,
                    outcome,
                    exc_info=outcome,
                )
                self._stats["errors_total"] += 1
                continue
            results.append(outcome)
        return results
