"""Shared fixtures: temp SQLite database, settings and in-memory fakes of the remote ports.

Hey future me - the fakes implement the domain ports (ILibraryClient, ITokenEndpoint), so the
services under test run their real code paths; only the network is replaced.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from syncabull.application.services import (
    AccountContext,
    ItemStore,
    RetryPolicy,
    TokenManager,
)
from syncabull.config import DatabaseSettings, GoogleSettings, Settings, SyncSettings
from syncabull.domain.entities import (
    AssetStream,
    LibraryPage,
    MediaItem,
    PhotoMetadata,
    TokenGrant,
    VideoMetadata,
)
from syncabull.domain.exceptions import NotFound
from syncabull.domain.ports import ILibraryClient, ITokenEndpoint
from syncabull.infrastructure.persistence import Database


def make_item(
    remote_id: str,
    filename: str | None = None,
    video: bool = False,
    base_url: str | None = None,
    fetched_at: datetime | None = None,
) -> MediaItem:
    """A listing descriptor with a fresh base URL."""
    return MediaItem(
        remote_id=remote_id,
        filename=filename or f"{remote_id}.{'mp4' if video else 'jpg'}",
        mime_type="video/mp4" if video else "image/jpeg",
        metadata=VideoMetadata(width=1920, height=1080) if video else PhotoMetadata(width=4032),
        base_url=base_url or f"https://lh3.example/{remote_id}",
        base_url_fetched_at=fetched_at or datetime.now(UTC),
        product_url=f"https://photos.example/{remote_id}",
    )


class FakeTokenEndpoint(ITokenEndpoint):
    """Token endpoint answering from a script of grants and exceptions."""

    def __init__(self, delay: float = 0.0) -> None:
        self.responses: list[TokenGrant | Exception] = []
        self.delay = delay
        self.calls: list[str] = []

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return TokenGrant(
            access_token=f"access-{len(self.calls)}",
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )


class FakeLibraryClient(ILibraryClient):
    """In-memory remote library.

    pages: cursor (None = first page) -> LibraryPage
    assets: download URL -> bytes
    failures: key ("list:<cursor>", "get:<id>", "asset:<url>") -> exceptions raised in order
    """

    def __init__(self) -> None:
        self.pages: dict[str | None, LibraryPage] = {}
        self.items: dict[str, MediaItem] = {}
        self.assets: dict[str, bytes] = {}
        self.content_lengths: dict[str, int] = {}
        self.failures: dict[str, list[Exception]] = {}
        self.list_calls: list[tuple[str, str | None]] = []
        self.get_calls: list[str] = []
        self.asset_calls: list[str] = []
        self.chunk_hook: Callable[[str, int], None] | None = None
        # seconds to wait before each chunk, per URL (a slow network)
        self.chunk_delays: dict[str, float] = {}

    def set_library(self, items: list[MediaItem], page_size: int = 2) -> None:
        """Split `items` into linked pages."""
        self.pages.clear()
        chunks = [items[i : i + page_size] for i in range(0, len(items), page_size)] or [[]]
        for n, chunk in enumerate(chunks):
            cursor = None if n == 0 else f"page-{n}"
            next_cursor = f"page-{n + 1}" if n + 1 < len(chunks) else None
            self.pages[cursor] = LibraryPage(items=list(chunk), next_cursor=next_cursor)
        for item in items:
            self.items[item.remote_id] = item
            self.assets.setdefault(item.download_url(), f"bytes of {item.remote_id}".encode())

    def fail(self, key: str, *errors: Exception) -> None:
        self.failures.setdefault(key, []).extend(errors)

    def _maybe_fail(self, key: str) -> None:
        queued = self.failures.get(key)
        if queued:
            raise queued.pop(0)

    async def list_page(
        self, access_token: str, cursor: str | None = None, page_size: int = 100
    ) -> LibraryPage:
        self.list_calls.append((access_token, cursor))
        self._maybe_fail(f"list:{cursor}")
        page = self.pages.get(cursor)
        if page is None:
            return LibraryPage(items=[], next_cursor=None)
        return page

    async def get_item(self, access_token: str, remote_id: str) -> MediaItem:
        self.get_calls.append(remote_id)
        self._maybe_fail(f"get:{remote_id}")
        item = self.items.get(remote_id)
        if item is None:
            raise NotFound(f"Media item {remote_id} not found", remote_id=remote_id)
        return item

    @asynccontextmanager
    async def stream_asset(self, url: str) -> AsyncIterator[AssetStream]:
        self.asset_calls.append(url)
        self._maybe_fail(f"asset:{url}")
        if url not in self.assets:
            raise NotFound(f"Asset {url} not found")
        data = self.assets[url]

        async def chunks() -> AsyncIterator[bytes]:
            for offset in range(0, len(data), 4):
                if url in self.chunk_delays:
                    await asyncio.sleep(self.chunk_delays[url])
                if self.chunk_hook is not None:
                    self.chunk_hook(url, offset)
                yield data[offset : offset + 4]

        yield AssetStream(content_length=self.content_lengths.get(url, len(data)), chunks=chunks())


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings on a temp SQLite file, zero backoff so retries are immediate."""
    return Settings(
        app_env="test",
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'syncabull.db'}"),
        google=GoogleSettings(client_id="client-id", client_secret="client-secret"),
        sync=SyncSettings(
            destination_root=tmp_path / "backup",
            concurrency=3,
            max_attempts=4,
            backoff_base_seconds=0.0,
            backoff_cap_seconds=0.0,
            idle_poll_seconds=0.05,
            page_size=2,
        ),
    )


@pytest.fixture
async def db(settings: Settings) -> AsyncIterator[Database]:
    database = Database(settings)
    await database.create_tables()
    yield database
    await database.close()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    async def no_sleep(_delay: float) -> None:
        return None

    return RetryPolicy(max_attempts=4, base_delay=0.0, max_delay=0.0, sleep=no_sleep)


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    return FakeTokenEndpoint()


@pytest.fixture
def library() -> FakeLibraryClient:
    return FakeLibraryClient()


@pytest.fixture
def token_manager(
    db: Database, token_endpoint: FakeTokenEndpoint, retry_policy: RetryPolicy
) -> TokenManager:
    return TokenManager(db, token_endpoint, retry_policy, refresh_margin_seconds=300)


@pytest.fixture
def item_store(db: Database) -> ItemStore:
    return ItemStore(db, max_attempts=4)


@pytest.fixture
def register_account(token_manager: TokenManager) -> Callable[..., Any]:
    """Register an account holding a valid access token; returns its AccountContext."""

    async def _register(account_id: str = "acct-1", **kwargs: Any) -> AccountContext:
        kwargs.setdefault("access_token", f"access-{account_id}")
        kwargs.setdefault("expires_at", datetime.now(UTC) + timedelta(hours=1))
        account = await token_manager.register_account(
            account_id, refresh_token=f"refresh-{account_id}", **kwargs
        )
        return AccountContext(account, token_manager)

    return _register


@pytest.fixture
def item_factory() -> Callable[..., MediaItem]:
    """`make_item` as a fixture, for tests that build descriptors."""
    return make_item
