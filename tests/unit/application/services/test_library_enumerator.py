"""Tests for LibraryEnumerator pagination, resume and token handling."""

import asyncio

import pytest

from syncabull.application.services import EnumerationState, ItemStore, LibraryEnumerator
from syncabull.domain.entities import LibraryPage
from syncabull.domain.exceptions import (
    AuthError,
    DatabaseError,
    NetworkError,
    NotFound,
    ValidationException,
)
from syncabull.infrastructure.persistence import (
    AccountRepository,
    Database,
    SyncCursorRepository,
)


@pytest.fixture
def enumerator(db: Database, library, item_store: ItemStore, retry_policy) -> LibraryEnumerator:
    return LibraryEnumerator(db, library, item_store, retry_policy, page_size=2)


async def _cursor(db: Database, account_id: str = "acct-1"):
    async with db.session_scope() as session:
        return await SyncCursorRepository(session).get(account_id)


class TestFullWalk:
    """A complete walk of the library."""

    async def test_walk_stores_every_item_and_clears_cursor(
        self, enumerator: LibraryEnumerator, library, item_store, db, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory(x) for x in "abcde"])

        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.DONE
        assert result.succeeded
        assert (result.pages, result.items_seen, result.new_items) == (3, 5, 5)
        assert (await item_store.summary())["total"] == 5
        cursor = await _cursor(db)
        assert cursor.is_fresh
        assert cursor.last_completed_at is not None
        async with db.session_scope() as session:
            account = await AccountRepository(session).get("acct-1")
        assert account is not None and account.initial_scan_completed

    async def test_transitions_follow_state_machine(
        self, enumerator: LibraryEnumerator, library, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory(x) for x in "abc"])

        result = await enumerator.run(ctx)

        assert result.transitions == [
            EnumerationState.IDLE,
            EnumerationState.FETCHING_PAGE,
            EnumerationState.PERSISTING_PAGE,
            EnumerationState.IDLE,
            EnumerationState.FETCHING_PAGE,
            EnumerationState.PERSISTING_PAGE,
            EnumerationState.DONE,
        ]

    async def test_empty_library_is_done(
        self, enumerator: LibraryEnumerator, library, register_account
    ) -> None:
        ctx = await register_account()
        library.set_library([])

        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.DONE
        assert result.items_seen == 0

    async def test_rejected_items_are_counted_not_stored(
        self, enumerator: LibraryEnumerator, library, item_store, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.pages[None] = LibraryPage(items=[item_factory("a")], rejected_ids=["broken"])

        result = await enumerator.run(ctx)

        assert result.rejected_items == 1
        assert await item_store.get_by_remote_id("broken") is None

    async def test_new_items_callback(
        self, enumerator: LibraryEnumerator, library, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory(x) for x in "abc"])
        seen: list[int] = []

        await enumerator.run(ctx, on_new_items=seen.append)

        assert seen == [2, 1]

    async def test_stop_event_checked_before_fetching(
        self, enumerator: LibraryEnumerator, library, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory("a")])
        stop = asyncio.Event()
        stop.set()

        result = await enumerator.run(ctx, stop_event=stop)

        assert result.state is EnumerationState.IDLE
        assert library.list_calls == []


class TestResume:
    """At-least-once delivery across interruptions."""

    async def test_failure_resumes_from_persisted_cursor(
        self, enumerator: LibraryEnumerator, library, item_store, db, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory(x) for x in "abcdef"])
        library.fail("list:page-2", NotFound("page vanished"))

        first = await enumerator.run(ctx)

        assert first.state is EnumerationState.FAILED
        assert isinstance(first.error, NotFound)
        assert (await _cursor(db)).next_token == "page-2"
        assert (await item_store.summary())["total"] == 4

        library.list_calls.clear()
        second = await enumerator.run(ctx)

        assert second.state is EnumerationState.DONE
        assert [cursor for _, cursor in library.list_calls] == ["page-2"]
        assert (await item_store.summary())["total"] == 6

    async def test_crash_between_upsert_and_cursor_refetches_page(
        self,
        enumerator: LibraryEnumerator,
        library,
        item_store,
        register_account,
        item_factory,
        mocker,
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory(x) for x in "abcdef"])
        real_save = enumerator._save_cursor
        mocker.patch.object(
            enumerator,
            "_save_cursor",
            side_effect=[None, DatabaseError("disk went away")],
        )
        # first save is a no-op stand-in, so the stored cursor never moves past page 0
        first = await enumerator.run(ctx)
        assert first.state is EnumerationState.FAILED
        assert (await item_store.summary())["total"] == 4

        mocker.patch.object(enumerator, "_save_cursor", side_effect=real_save)
        library.list_calls.clear()
        second = await enumerator.run(ctx)

        assert second.state is EnumerationState.DONE
        # nothing was skipped: the walk started over and the known pages upserted idempotently
        assert [cursor for _, cursor in library.list_calls] == [None, "page-1", "page-2"]
        assert second.new_items == 2
        assert (await item_store.summary())["total"] == 6

    async def test_stale_cursor_is_reset_once(
        self, enumerator: LibraryEnumerator, library, item_store, db, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory(x) for x in "abcde"])
        library.fail("list:page-1", NotFound("flaky"))
        await enumerator.run(ctx)
        assert (await _cursor(db)).next_token == "page-1"

        library.fail("list:page-1", ValidationException("Invalid page token"))
        library.list_calls.clear()
        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.DONE
        assert [cursor for _, cursor in library.list_calls] == [
            "page-1",
            None,
            "page-1",
            "page-2",
        ]
        assert (await item_store.summary())["total"] == 5

    async def test_validation_error_on_fresh_walk_fails(
        self, enumerator: LibraryEnumerator, library, register_account
    ) -> None:
        ctx = await register_account()
        library.set_library([])
        library.fail("list:None", ValidationException("bad request"))

        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.FAILED


class TestCaughtUp:
    """Early stop once the newest page holds nothing new."""

    async def test_second_walk_stops_at_first_known_page(
        self, enumerator: LibraryEnumerator, library, db, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        old = [item_factory(x) for x in "abcdef"]
        library.set_library(old)
        await enumerator.run(ctx)

        library.set_library([item_factory("new"), *old])
        library.list_calls.clear()
        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.DONE
        assert result.caught_up
        assert result.new_items == 1
        assert len(library.list_calls) == 2
        assert (await _cursor(db)).is_fresh

    async def test_full_walk_when_early_stop_disabled(
        self, db, library, item_store, retry_policy, register_account, item_factory
    ) -> None:
        enumerator = LibraryEnumerator(
            db, library, item_store, retry_policy, page_size=2, stop_when_caught_up=False
        )
        ctx = await register_account()
        library.set_library([item_factory(x) for x in "abcdef"])
        await enumerator.run(ctx)
        library.list_calls.clear()

        result = await enumerator.run(ctx)

        assert not result.caught_up
        assert len(library.list_calls) == 3

    @pytest.fixture
    def failing_cursor_save(self, enumerator: LibraryEnumerator, mocker):
        """Make the n-th cursor save of the next walk fail like a crash would."""
        real_save = enumerator._save_cursor

        def _install(fail_on: int) -> None:
            calls = 0

            async def save(cursor):
                nonlocal calls
                calls += 1
                if calls == fail_on:
                    raise DatabaseError("disk went away")
                await real_save(cursor)

            mocker.patch.object(enumerator, "_save_cursor", side_effect=save)

        return _install

    async def test_resumed_incremental_walk_continues_past_refetched_page(
        self,
        enumerator: LibraryEnumerator,
        library,
        item_store,
        register_account,
        item_factory,
        failing_cursor_save,
    ) -> None:
        """Test a page re-fetched after a crash does not count as caught up."""
        ctx = await register_account()
        old = [item_factory(x) for x in "ab"]
        library.set_library(old)
        await enumerator.run(ctx)

        library.set_library([item_factory(x) for x in "cdefgh"] + old)
        failing_cursor_save(fail_on=2)
        interrupted = await enumerator.run(ctx)
        assert interrupted.state is EnumerationState.FAILED
        assert await item_store.get_by_remote_id("f") is not None

        library.list_calls.clear()
        resumed = await enumerator.run(ctx)

        assert resumed.state is EnumerationState.DONE
        assert [cursor for _, cursor in library.list_calls] == ["page-1", "page-2", "page-3"]
        assert await item_store.get_by_remote_id("g") is not None
        assert await item_store.get_by_remote_id("h") is not None

        library.list_calls.clear()
        again = await enumerator.run(ctx)
        assert again.caught_up
        assert [cursor for _, cursor in library.list_calls] == [None]

    async def test_crash_before_first_cursor_save_does_not_stop_early(
        self,
        enumerator: LibraryEnumerator,
        library,
        item_store,
        register_account,
        item_factory,
        failing_cursor_save,
    ) -> None:
        ctx = await register_account()
        old = [item_factory(x) for x in "ab"]
        library.set_library(old)
        await enumerator.run(ctx)

        library.set_library([item_factory(x) for x in "cdef"] + old)
        failing_cursor_save(fail_on=1)
        await enumerator.run(ctx)
        assert await item_store.get_by_remote_id("e") is None

        library.list_calls.clear()
        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.DONE
        assert [cursor for _, cursor in library.list_calls] == [None, "page-1", "page-2"]
        assert await item_store.get_by_remote_id("e") is not None
        assert await item_store.get_by_remote_id("f") is not None


class TestTokenHandling:
    """401 handling and transient listing failures."""

    async def test_401_refreshes_token_once(
        self, enumerator: LibraryEnumerator, library, token_endpoint, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory("a")])
        library.fail("list:None", AuthError("401 Unauthorized", http_status=401))

        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.DONE
        assert len(token_endpoint.calls) == 1
        assert [token for token, _ in library.list_calls] == ["access-acct-1", "access-1"]

    async def test_second_401_fails_enumeration(
        self, enumerator: LibraryEnumerator, library, token_endpoint, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory("a")])
        library.fail(
            "list:None",
            AuthError("401 Unauthorized", http_status=401),
            AuthError("401 Unauthorized", http_status=401),
        )

        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.FAILED
        assert isinstance(result.error, AuthError)
        assert len(token_endpoint.calls) == 1
        assert len(library.list_calls) == 2

    async def test_transient_listing_error_is_retried(
        self, enumerator: LibraryEnumerator, library, register_account, item_factory
    ) -> None:
        ctx = await register_account()
        library.set_library([item_factory("a")])
        library.fail("list:None", NetworkError("reset"), NetworkError("bad gateway", http_status=502))

        result = await enumerator.run(ctx)

        assert result.state is EnumerationState.DONE
        assert len(library.list_calls) == 3
