"""Worker system - download pool and sync cycles."""

from syncabull.application.workers.download_scheduler import DownloadScheduler, DownloadStats
from syncabull.application.workers.sync_engine import CycleReport, SyncEngine

__all__ = [
    "CycleReport",
    "DownloadScheduler",
    "DownloadStats",
    "SyncEngine",
]
