"""Asset Downloader - streams one asset to disk and publishes it atomically.

Hey future me - the destination directory must NEVER contain a half-written file under a final
name. So:
1. stream into ".<name>.<random>.part" in the SAME directory (same filesystem => rename is atomic)
2. flush + fsync, compare the byte count with Content-Length (when the server sent one)
3. os.replace() to the final name
Any exception on the way (network drop, disk full, size mismatch, even task cancellation during
shutdown) deletes the temp file before it propagates.

File I/O runs through asyncio.to_thread so a slow disk never blocks the event loop.
"""

import asyncio
import contextlib
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from syncabull.domain.entities import AssetStream
from syncabull.domain.exceptions import StorageError, VerificationError
from syncabull.infrastructure.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".part"


@dataclass(frozen=True)
class DownloadResult:
    """A published file."""

    path: Path
    bytes_written: int
    adopted: bool = False


class AssetDownloader:
    """Writes asset streams into the destination root."""

    def __init__(
        self,
        destination_root: Path,
        bandwidth_limiter: RateLimiter | None = None,
    ) -> None:
        self.destination_root = Path(destination_root)
        self._bandwidth = bandwidth_limiter

    async def prepare(self) -> int:
        """Create the destination root and remove temp files left by a crash.

        Returns:
            Number of stale temp files removed

        Raises:
            StorageError: If the destination root can't be created
        """
        try:
            return await asyncio.to_thread(self._prepare_sync)
        except OSError as e:
            raise StorageError(
                f"Destination root not usable: {e}", path=str(self.destination_root)
            ) from e

    def _prepare_sync(self) -> int:
        self.destination_root.mkdir(parents=True, exist_ok=True)
        removed = 0
        for leftover in self.destination_root.glob(f".*{TEMP_SUFFIX}"):
            leftover.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info("Removed %d stale temp files from %s", removed, self.destination_root)
        return removed

    def final_path(self, local_filename: str) -> Path:
        """Resolve a local filename inside the destination root.

        Raises:
            StorageError: If the name would escape the destination root
        """
        path = self.destination_root / local_filename
        if path.parent != self.destination_root or local_filename in ("", ".", ".."):
            raise StorageError(f"Refusing to write outside destination root: {local_filename!r}")
        return path

    async def adopt_existing(self, local_filename: str) -> DownloadResult | None:
        """Return the already-published file, if any.

        A file under the final name can only come from a completed rename (temp files never
        carry the final name), so it is a finished download whose outcome was never recorded.
        """
        path = self.final_path(local_filename)
        try:
            size = await asyncio.to_thread(_file_size, path)
        except OSError as e:
            raise StorageError(f"Cannot inspect {path}: {e}", path=str(path)) from e
        if size is None:
            return None
        logger.info("Adopting existing file %s (%d bytes)", path, size)
        return DownloadResult(path=path, bytes_written=size, adopted=True)

    async def write(self, local_filename: str, asset: AssetStream) -> DownloadResult:
        """Stream `asset` to `local_filename` atomically.

        Raises:
            NetworkError: If the stream breaks (propagated from the chunk iterator)
            StorageError: If the local write/rename fails
            VerificationError: If the byte count doesn't match Content-Length
        """
        final_path = self.final_path(local_filename)
        temp_path = final_path.with_name(f".{final_path.name}.{uuid.uuid4().hex[:8]}{TEMP_SUFFIX}")

        handle: BinaryIO | None = None
        written = 0
        try:
            try:
                handle = await asyncio.to_thread(open, temp_path, "wb")
            except OSError as e:
                raise StorageError(f"Cannot create {temp_path}: {e}", path=str(temp_path)) from e

            async for chunk in asset.chunks:
                if not chunk:
                    continue
                if self._bandwidth is not None:
                    await self._bandwidth.acquire(len(chunk))
                try:
                    await asyncio.to_thread(handle.write, chunk)
                except OSError as e:
                    raise StorageError(f"Write to {temp_path} failed: {e}", path=str(temp_path)) from e
                written += len(chunk)

            try:
                await asyncio.to_thread(_flush_and_close, handle)
            except OSError as e:
                raise StorageError(f"Flush of {temp_path} failed: {e}", path=str(temp_path)) from e
            handle = None

            if asset.content_length is not None and written != asset.content_length:
                raise VerificationError(expected=asset.content_length, actual=written)

            try:
                await asyncio.to_thread(os.replace, temp_path, final_path)
            except OSError as e:
                raise StorageError(
                    f"Rename to {final_path} failed: {e}", path=str(final_path)
                ) from e
        except BaseException:
            # also runs on CancelledError; plain sync calls, nothing here may await
            if handle is not None:
                with contextlib.suppress(OSError):
                    handle.close()
            _discard(temp_path)
            raise

        logger.debug("Published %s (%d bytes)", final_path, written)
        return DownloadResult(path=final_path, bytes_written=written)


def _file_size(path: Path) -> int | None:
    try:
        return path.stat().st_size if path.is_file() else None
    except FileNotFoundError:
        return None


def _flush_and_close(handle: BinaryIO) -> None:
    try:
        handle.flush()
        os.fsync(handle.fileno())
    finally:
        handle.close()


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove temp file %s: %s", path, e)
