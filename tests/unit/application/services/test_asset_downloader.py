"""Tests for AssetDownloader atomic publish and temp file cleanup."""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from syncabull.application.services import AssetDownloader
from syncabull.application.services.asset_downloader import TEMP_SUFFIX
from syncabull.domain.entities import AssetStream
from syncabull.domain.exceptions import NetworkError, StorageError, VerificationError


def _stream(*chunks: bytes, content_length: int | None = -1, fail_after: int | None = None):
    async def gen() -> AsyncIterator[bytes]:
        for n, chunk in enumerate(chunks):
            if fail_after is not None and n == fail_after:
                raise NetworkError("connection reset mid-stream")
            yield chunk

    length = sum(len(c) for c in chunks) if content_length == -1 else content_length
    return AssetStream(content_length=length, chunks=gen())


def _temp_files(root: Path) -> list[Path]:
    return list(root.glob(f"*{TEMP_SUFFIX}"))


@pytest.fixture
async def downloader(tmp_path: Path) -> AssetDownloader:
    d = AssetDownloader(tmp_path / "backup")
    await d.prepare()
    return d


class TestWrite:
    """Streaming and publishing."""

    async def test_publishes_file_under_final_name(self, downloader: AssetDownloader) -> None:
        result = await downloader.write("photo.jpg", _stream(b"abcd", b"efgh", b"ij"))

        assert result.path == downloader.destination_root / "photo.jpg"
        assert result.path.read_bytes() == b"abcdefghij"
        assert result.bytes_written == 10
        assert not result.adopted
        assert _temp_files(downloader.destination_root) == []

    async def test_missing_content_length_is_not_checked(
        self, downloader: AssetDownloader
    ) -> None:
        result = await downloader.write("clip.mp4", _stream(b"abc", content_length=None))

        assert result.bytes_written == 3

    async def test_size_mismatch_leaves_nothing_behind(self, downloader: AssetDownloader) -> None:
        with pytest.raises(VerificationError) as exc_info:
            await downloader.write("photo.jpg", _stream(b"abcd", content_length=10))

        assert exc_info.value.expected == 10
        assert exc_info.value.actual == 4
        assert not (downloader.destination_root / "photo.jpg").exists()
        assert _temp_files(downloader.destination_root) == []

    async def test_broken_stream_leaves_nothing_behind(self, downloader: AssetDownloader) -> None:
        with pytest.raises(NetworkError):
            await downloader.write("photo.jpg", _stream(b"abcd", b"efgh", fail_after=1))

        assert list(downloader.destination_root.iterdir()) == []

    async def test_cancellation_removes_temp_file(self, downloader: AssetDownloader) -> None:
        started = asyncio.Event()

        async def hanging() -> AsyncIterator[bytes]:
            yield b"abcd"
            started.set()
            await asyncio.Event().wait()
            yield b"never"

        task = asyncio.create_task(
            downloader.write("photo.jpg", AssetStream(content_length=None, chunks=hanging()))
        )
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert list(downloader.destination_root.iterdir()) == []

    async def test_existing_final_file_is_replaced(self, downloader: AssetDownloader) -> None:
        (downloader.destination_root / "photo.jpg").write_bytes(b"old")

        await downloader.write("photo.jpg", _stream(b"new!"))

        assert (downloader.destination_root / "photo.jpg").read_bytes() == b"new!"

    async def test_unwritable_root_raises_storage_error(self, tmp_path: Path) -> None:
        downloader = AssetDownloader(tmp_path / "never-created")

        with pytest.raises(StorageError):
            await downloader.write("photo.jpg", _stream(b"abcd"))

    async def test_bandwidth_limiter_sees_every_chunk(self, tmp_path: Path, mocker) -> None:
        limiter = mocker.Mock()
        limiter.acquire = mocker.AsyncMock()
        downloader = AssetDownloader(tmp_path, bandwidth_limiter=limiter)

        await downloader.write("photo.jpg", _stream(b"abcd", b"ef"))

        assert [c.args[0] for c in limiter.acquire.await_args_list] == [4, 2]


class TestPaths:
    """Final path resolution."""

    @pytest.mark.parametrize("name", ["../escape.jpg", "sub/dir.jpg", "", ".."])
    def test_rejects_names_outside_root(self, downloader: AssetDownloader, name: str) -> None:
        with pytest.raises(StorageError):
            downloader.final_path(name)


class TestAdoptAndPrepare:
    """Crash recovery helpers."""

    async def test_adopt_existing_file(self, downloader: AssetDownloader) -> None:
        (downloader.destination_root / "photo.jpg").write_bytes(b"done")

        result = await downloader.adopt_existing("photo.jpg")

        assert result is not None
        assert result.adopted
        assert result.bytes_written == 4

    async def test_adopt_missing_file_returns_none(self, downloader: AssetDownloader) -> None:
        assert await downloader.adopt_existing("photo.jpg") is None

    async def test_prepare_removes_stale_temp_files(self, tmp_path: Path) -> None:
        root = tmp_path / "backup"
        root.mkdir()
        (root / f".photo.jpg.deadbeef{TEMP_SUFFIX}").write_bytes(b"half")
        (root / "keep.jpg").write_bytes(b"whole")

        removed = await AssetDownloader(root).prepare()

        assert removed == 1
        assert [p.name for p in root.iterdir()] == ["keep.jpg"]

    async def test_prepare_creates_root(self, tmp_path: Path) -> None:
        root = tmp_path / "a" / "b"

        await AssetDownloader(root).prepare()

        assert root.is_dir()

    async def test_prepare_on_file_raises_storage_error(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_bytes(b"x")

        with pytest.raises(StorageError):
            await AssetDownloader(blocker / "backup").prepare()
