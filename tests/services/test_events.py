"""Tests for the lifecycle event emitter."""

import pytest

from src.services.events import SyncEventEmitter


class RecordingObserver:
    def __init__(self):
        self.events = []

    async def on_job_queued(self, job_id, job_type, total_items):
        self.events.append(("queued", job_id, job_type, total_items))

    async def on_circuit_state_changed(self, key, old_state, new_state):
        self.events.append(("circuit", key, old_state, new_state))


class BrokenObserver:
    async def on_job_queued(self, job_id, job_type, total_items):
        raise RuntimeError("observer down")


class TestSyncEventEmitter:

    @pytest.mark.asyncio
    async def test_dispatches_to_implemented_hooks(self):
        emitter = SyncEventEmitter()
        observer = RecordingObserver()
        emitter.add_observer(observer)

        await emitter.emit_job_queued("job-1", "sync", 3)
        await emitter.emit_circuit_state_changed("customer_pull_timeout", "closed", "open")
        await emitter.emit_sync_failed("sync-1", "boom")

        assert observer.events == [
            ("queued", "job-1", "sync", 3),
            ("circuit", "customer_pull_timeout", "closed", "open"),
        ]

    @pytest.mark.asyncio
    async def test_broken_observer_does_not_block_others(self):
        emitter = SyncEventEmitter()
        observer = RecordingObserver()
        emitter.add_observer(BrokenObserver())
        emitter.add_observer(observer)

        await emitter.emit_job_queued("job-1", "cleanup", 1)

        assert observer.events == [("queued", "job-1", "cleanup", 1)]

    @pytest.mark.asyncio
    async def test_remove_observer(self):
        emitter = SyncEventEmitter()
        observer = RecordingObserver()
        emitter.add_observer(observer)
        emitter.remove_observer(observer)

        await emitter.emit_job_queued("job-1", "sync", 1)

        assert observer.events == []
