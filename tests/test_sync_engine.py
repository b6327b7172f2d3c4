import asyncio
from typing import Dict, List, Optional

import pytest

from core.settings import SyncSettings
from models.sync_state import ConnectionState, Error, Idle, Offline, Success, Syncing
from services.connectivity import ConnectivityMonitor
from services.remote_store import PermanentSyncError, TransientSyncError
from services.sync_engine import SyncEngine


class FakeRemote:
    """In-memory remote that records sends and can be told how to fail."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.changes: Dict[str, list] = {}
        self.fetch_calls: List[object] = []
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()
        self.on_send = None

    async def send(self, operation):
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.on_send is not None:
            self.on_send(operation)
        error = self.failures.get(operation.entity_id)
        if error is not None:
            raise error
        self.sent.append((operation.entity_type, operation.entity_id, operation.kind, operation.payload))

    async def fetch_changes(self, since):
        self.fetch_calls.append(since)
        return self.changes

    async def check_health(self):
        return True


@pytest.fixture()
def remote():
    return FakeRemote()


@pytest.fixture()
def monitor(remote):
    return ConnectivityMonitor(remote.check_health, initial=ConnectionState.ONLINE)


@pytest.fixture()
def settings():
    return SyncSettings(debounce_sec=0.01, success_display_sec=0.05)


@pytest.fixture()
def engine(queue, remote, monitor, meta, settings):
    return SyncEngine(queue, remote, monitor, meta=meta, settings=settings)


def _states(engine):
    seen = []
    engine.subscribe(seen.append)
    return seen


@pytest.mark.asyncio
async def test_drain_sends_in_order_and_reports_success(engine, queue, remote, meta):
    queue.enqueue("task", "t1", "create", {"title": "one"})
    queue.enqueue("goal", "g1", "create", {"title": "two"})
    queue.enqueue("pact", "p1", "update", {"stake": 3})
    states = _states(engine)

    result = await engine.process_pending_queue()

    assert result == Success(3)
    assert [item[1] for item in remote.sent] == ["t1", "g1", "p1"]
    assert engine.pending_count == 0
    assert engine.last_successful_sync is not None
    assert meta.get_last_successful_sync() == engine.last_successful_sync

    progress = [s.progress for s in states if isinstance(s, Syncing)]
    assert progress == sorted(progress)
    assert progress[-1] == 1.0


@pytest.mark.asyncio
async def test_collapsed_changes_reach_remote_once(engine, queue, remote):
    queue.enqueue("task", "A", "create", {"title": "draft"})
    queue.enqueue("task", "B", "create", {"title": "scratch"})
    queue.enqueue("task", "A", "update", {"title": "final"})
    queue.enqueue("task", "B", "delete")

    assert await engine.process_pending_queue() == Success(1)
    assert remote.sent == [("task", "A", "create", {"title": "final"})]


@pytest.mark.asyncio
async def test_conflict_moves_operation_to_failed_bucket(engine, queue, remote):
    queue.enqueue("task", "bad", "update", {"title": "x"})
    remote.failures["bad"] = PermanentSyncError("remote rejected change (409)", status=409)

    result = await engine.process_pending_queue()
    assert result == Error("1 operation failed")
    assert engine.failed_operations_count == 1
    assert engine.pending_count == 0

    # A plain drain never resends failed work.
    del remote.failures["bad"]
    assert await engine.process_pending_queue() == Error("1 operation failed")
    assert remote.sent == []

    assert engine.discard_failed() == 1
    assert engine.failed_operations_count == 0
    assert engine.sync_state == Idle()


@pytest.mark.asyncio
async def test_retry_failed_resends_failed_bucket(engine, queue, remote):
    queue.enqueue("circle", "c1", "create", {"name": "Runners"})
    remote.failures["c1"] = PermanentSyncError("remote rejected change (422)", status=422)
    await engine.process_pending_queue()

    del remote.failures["c1"]
    assert await engine.retry_failed() == Success(1)
    assert engine.failed_operations_count == 0
    assert remote.sent[0][1] == "c1"


@pytest.mark.asyncio
async def test_failed_operation_blocks_later_changes_to_same_entity(engine, queue, remote):
    queue.enqueue("task", "A", "update", {"title": "x"})
    remote.failures["A"] = PermanentSyncError("conflict", status=409)
    await engine.process_pending_queue()

    queue.enqueue("task", "A", "update", {"title": "y"})
    queue.enqueue("goal", "G", "create", {"title": "g"})
    del remote.failures["A"]

    result = await engine.process_pending_queue()
    assert remote.sent == [("goal", "G", "create", {"title": "g"})]
    assert isinstance(result, Error)
    assert engine.pending_count == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retried_later(engine, queue, remote):
    op = queue.enqueue("task", "slow", "create", {})
    remote.failures["slow"] = TransientSyncError("remote returned 503", status=503)

    result = await engine.process_pending_queue()
    assert result == Error("1 operation will be retried")
    stored = queue.get(op.id)
    assert stored.status == "queued"
    assert stored.attempts == 1
    assert engine.failed_operations_count == 0


@pytest.mark.asyncio
async def test_network_failure_goes_offline_without_consuming_attempts(engine, queue, remote, monitor):
    first = queue.enqueue("task", "A", "create", {})
    queue.enqueue("task", "B", "create", {})
    remote.failures["A"] = TransientSyncError("connection reset", network=True)

    result = await engine.process_pending_queue()
    assert result == Offline()
    assert monitor.state == ConnectionState.OFFLINE
    assert queue.get(first.id).attempts == 0
    assert queue.pending_count() == 2
    assert remote.sent == []


@pytest.mark.asyncio
async def test_offline_engine_does_not_send(queue, remote, meta, settings):
    monitor = ConnectivityMonitor(remote.check_health)
    engine = SyncEngine(queue, remote, monitor, meta=meta, settings=settings)
    queue.enqueue("task", "A", "create", {})

    assert await engine.process_pending_queue() == Offline()
    assert remote.sent == []
    assert engine.pending_count == 1


@pytest.mark.asyncio
async def test_connection_drop_mid_drain_requeues_in_flight(engine, queue, remote, monitor):
    op = queue.enqueue("task", "A", "create", {})
    remote.gate = asyncio.Event()
    engine.start()
    try:
        waiter = asyncio.ensure_future(engine.process_pending_queue())
        await asyncio.wait_for(remote.started.wait(), timeout=1)

        monitor.mark_offline("link down")
        assert await asyncio.wait_for(waiter, timeout=1) == Offline()

        stored = queue.get(op.id)
        assert stored.status == "queued"
        assert stored.attempts == 0
        assert remote.sent == []
        assert engine.sync_state == Offline()
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_concurrent_calls_share_one_drain(engine, queue, remote):
    queue.enqueue("task", "A", "create", {})
    queue.enqueue("task", "B", "create", {})
    remote.gate = asyncio.Event()

    first = asyncio.ensure_future(engine.process_pending_queue())
    await asyncio.wait_for(remote.started.wait(), timeout=1)
    second = asyncio.ensure_future(engine.process_pending_queue())
    await asyncio.sleep(0)
    assert engine.is_syncing
    remote.gate.set()

    results = await asyncio.gather(first, second)
    assert results == [Success(2), Success(2)]
    assert [item[1] for item in remote.sent] == ["A", "B"]


@pytest.mark.asyncio
async def test_work_enqueued_mid_drain_joins_it(engine, queue, remote):
    queue.enqueue("task", "A", "create", {})
    states = _states(engine)

    def enqueue_more(operation):
        if operation.entity_id == "A":
            queue.enqueue("task", "B", "create", {})

    remote.on_send = enqueue_more
    assert await engine.process_pending_queue() == Success(2)

    progress = [s.progress for s in states if isinstance(s, Syncing)]
    assert progress == sorted(progress)
    assert progress[-1] == 1.0


@pytest.mark.asyncio
async def test_full_sync_pushes_then_pulls(queue, remote, monitor, meta, settings):
    received = []
    engine = SyncEngine(
        queue,
        remote,
        monitor,
        meta=meta,
        settings=settings,
        on_remote_changes=received.append,
    )
    queue.enqueue("task", "A", "update", {"done": True})
    remote.changes = {"goals": [{"id": "g9", "title": "Remote goal"}]}
    states = _states(engine)

    assert await engine.perform_full_sync() == Success(1)
    assert received == [remote.changes]
    assert remote.fetch_calls == [None]
    assert meta.get_last_pull() is not None

    progress = [s.progress for s in states if isinstance(s, Syncing)]
    assert progress == [0.0, 0.8, 0.9, 1.0]

    first_pull = meta.get_last_pull()
    assert await engine.perform_full_sync() == Success(0)
    assert remote.fetch_calls[1] == first_pull


@pytest.mark.asyncio
async def test_success_clears_back_to_idle(engine, queue):
    queue.enqueue("task", "A", "create", {})
    engine.start()
    try:
        assert await engine.process_pending_queue() == Success(1)
        await asyncio.sleep(0.2)
        assert engine.sync_state == Idle()
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_enqueue_through_engine_schedules_debounced_sync(engine, remote):
    engine.start()
    try:
        await asyncio.sleep(0.02)
        engine.queue_create("task", "A", {"title": "x"})
        engine.queue_update("task", "A", {"title": "y"})
        await asyncio.sleep(0.1)
        assert remote.sent == [("task", "A", "create", {"title": "y"})]
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_start_recovers_in_flight_operations(engine, queue, remote):
    op = queue.enqueue("task", "A", "create", {})
    queue.mark_in_flight(op.id)

    engine.start()
    try:
        assert queue.get(op.id).status == "queued"
        assert await engine.process_pending_queue() == Success(1)
        assert remote.sent == [("task", "A", "create", {})]
    finally:
        await engine.close()


@pytest.mark.asyncio
async def test_clear_pending_keeps_meta_unless_asked(engine, queue, remote, meta):
    queue.enqueue("task", "A", "update", {"title": "x"})
    remote.failures["A"] = PermanentSyncError("conflict", status=409)
    await engine.process_pending_queue()
    queue.enqueue("goal", "G", "create", {})
    meta.set_last_pull()

    assert engine.clear_pending() == 2
    assert engine.pending_count == 0
    assert engine.failed_operations_count == 0
    assert engine.sync_state == Idle()
    assert meta.get_last_pull() is not None


@pytest.mark.asyncio
async def test_progress_reaches_full_when_queued_work_vanishes(engine, queue, remote):
    queue.enqueue("task", "A", "create", {})
    queue.enqueue("task", "B", "create", {})
    states = _states(engine)

    def cancel_b(operation):
        if operation.entity_id == "A":
            assert queue.enqueue("task", "B", "delete") is None

    remote.on_send = cancel_b
    assert await engine.process_pending_queue() == Success(1)

    progress = [s.progress for s in states if isinstance(s, Syncing)]
    assert progress == [0.0, 0.5, 1.0]
    assert remote.sent == [("task", "A", "create", {})]
