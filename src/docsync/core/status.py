"""Live sync status and its observer fan-out."""

import asyncio
from dataclasses import dataclass, asdict, replace
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from ..utils.logging import get_logger


logger = get_logger("core.status")


@dataclass
class SyncStatus:
    """Process-wide view of the active run. Snapshots are handed to observers."""

    is_running: bool = False
    current_sync_run_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    phase: str = "idle"
    progress: float = 0.0

    files_scanned: int = 0
    files_new: int = 0
    files_updated: int = 0
    files_deleted: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    files_completed: int = 0
    bytes_processed: int = 0

    def advance(self, progress: float) -> None:
        """Move progress forward; it never decreases within a run."""
        self.progress = max(self.progress, min(100.0, progress))

    def snapshot(self) -> "SyncStatus":
        return replace(self)

    def counters(self) -> Dict[str, int]:
        return {
            "files_scanned": self.files_scanned,
            "files_new": self.files_new,
            "files_updated": self.files_updated,
            "files_deleted": self.files_deleted,
            "files_failed": self.files_failed,
            "files_skipped": self.files_skipped,
            "files_completed": self.files_completed,
            "bytes_processed": self.bytes_processed,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_sync_at"] = self.last_sync_at.isoformat() if self.last_sync_at else None
        return data


StatusCallback = Callable[[SyncStatus], None]


class StatusBroadcaster:
    """Delivers status snapshots to subscribers without blocking the publisher.

    Callbacks run inline and their exceptions are logged, never raised.
    Stream consumers get a bounded queue that drops the oldest snapshot
    when full.
    """

    def __init__(self, stream_buffer: int = 100):
        self.stream_buffer = stream_buffer
        self._callbacks: List[StatusCallback] = []
        self._queues: List[asyncio.Queue] = []

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._callbacks.append(callback)

        def unsubscribe():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def publish(self, status: SyncStatus) -> None:
        snapshot = status.snapshot()

        for callback in list(self._callbacks):
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning("Status subscriber failed", callback=repr(callback), error=str(e))

        for queue in list(self._queues):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)

    async def stream(self) -> AsyncIterator[SyncStatus]:
        """Yield snapshots as they are published until the consumer stops."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.stream_buffer)
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks) + len(self._queues)
