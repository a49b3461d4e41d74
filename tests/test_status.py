"""Tests for sync status snapshots and their broadcaster."""

import asyncio
from datetime import datetime

import pytest

from docsync.core.status import SyncStatus, StatusBroadcaster


class TestSyncStatus:
    """Tests for SyncStatus."""

    def test_progress_never_decreases(self):
        status = SyncStatus()

        status.advance(30)
        status.advance(10)
        assert status.progress == 30

        status.advance(250)
        assert status.progress == 100

    def test_snapshot_is_detached(self):
        status = SyncStatus(is_running=True, files_scanned=4)

        snapshot = status.snapshot()
        status.files_scanned = 9

        assert snapshot.files_scanned == 4
        assert snapshot.is_running is True

    def test_to_dict_serializes_last_sync_at(self):
        status = SyncStatus(last_sync_at=datetime(2024, 5, 1, 12, 30))

        data = status.to_dict()

        assert data["last_sync_at"] == "2024-05-01T12:30:00"
        assert data["phase"] == "idle"
        assert set(status.counters()) <= set(data)


class TestStatusBroadcaster:
    """Tests for StatusBroadcaster."""

    def test_callbacks_receive_snapshots(self):
        broadcaster = StatusBroadcaster()
        received = []
        broadcaster.subscribe(received.append)

        status = SyncStatus(phase="scanning")
        broadcaster.publish(status)
        status.phase = "uploading"

        assert [s.phase for s in received] == ["scanning"]

    def test_failing_subscriber_does_not_block_others(self):
        broadcaster = StatusBroadcaster()
        received = []

        def broken(_status):
            raise RuntimeError("observer crashed")

        broadcaster.subscribe(broken)
        broadcaster.subscribe(received.append)

        broadcaster.publish(SyncStatus(progress=10))

        assert len(received) == 1

    def test_unsubscribe(self):
        broadcaster = StatusBroadcaster()
        received = []
        unsubscribe = broadcaster.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        broadcaster.publish(SyncStatus())

        assert received == []
        assert broadcaster.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_stream_drops_oldest_when_full(self):
        broadcaster = StatusBroadcaster(stream_buffer=2)
        stream = broadcaster.stream()

        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        assert broadcaster.subscriber_count == 1

        for progress in (1, 2, 3, 4):
            broadcaster.publish(SyncStatus(progress=progress))

        assert (await first).progress == 3
        assert (await stream.__anext__()).progress == 4

        await stream.aclose()
        assert broadcaster.subscriber_count == 0
