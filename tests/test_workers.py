from __future__ import annotations

import asyncio
import gc
import logging
from collections.abc import AsyncIterator

import pytest
from _helpers import TOKENS, eventually, make_tree

from syncprobe._transport import EventStream, StreamEvent
from syncprobe.exceptions import NoDataError, StoreAuthError, TransportError, WorkerError
from syncprobe.memory import MemoryStore
from syncprobe.models.entity import EntityKind
from syncprobe.workers import DisconnectSignal, DuplexWorker, StreamWorker, WorkerState, merge_stream_event

THERMOSTAT = EntityKind.THERMOSTAT
PROP = "target_temperature_f"
TOKEN = TOKENS[0]


def _observed(worker: DuplexWorker | StreamWorker) -> object:
    record = worker.last_update.get(THERMOSTAT)
    return None if record is None else record.properties.get(PROP)


def _make_worker(kind: str, store: MemoryStore) -> DuplexWorker | StreamWorker:
    if kind == "duplex":
        return DuplexWorker(TOKEN, store)
    return StreamWorker(TOKEN, store, start_timeout=2.0)


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["duplex", "stream"])
async def test_worker_observes_writes(kind: str) -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    worker = _make_worker(kind, store)

    await worker.start()
    assert worker.state is WorkerState.RUNNING
    await eventually(lambda: _observed(worker) == 70)
    assert worker.topology.tracked_ids(THERMOSTAT) == {"t1"}
    assert worker.topology.tracked_ids(EntityKind.SMOKE_ALARM) == {"a1"}
    assert worker.topology.tracked_ids(EntityKind.STRUCTURE) == {"s1"}

    store.set(f"/devices/thermostats/t1/{PROP}", 71)
    await eventually(lambda: _observed(worker) == 71)

    await worker.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["duplex", "stream"])
async def test_worker_follows_collection_membership(kind: str) -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    worker = _make_worker(kind, store)
    await worker.start()

    store.set("/devices/thermostats/t2", {"device_id": "t2", PROP: 60})
    await eventually(lambda: worker.topology.tracked_ids(THERMOSTAT) == {"t1", "t2"})

    store.set("/devices/thermostats/t1", None)
    await eventually(lambda: worker.topology.tracked_ids(THERMOSTAT) == {"t2"})
    assert worker.topology.closed == 1

    store.set("/devices/thermostats/t1", {"device_id": "t1", PROP: 55})
    await eventually(lambda: worker.topology.tracked_ids(THERMOSTAT) == {"t1", "t2"})
    await eventually(lambda: _observed(worker) == 55)
    assert worker.topology.live_handles == worker.topology.opened - worker.topology.closed

    await worker.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["duplex", "stream"])
async def test_worker_disconnects_once_on_revoke(kind: str, caplog: pytest.LogCaptureFixture) -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    worker = _make_worker(kind, store)
    await worker.start()
    await eventually(lambda: _observed(worker) == 70)

    with caplog.at_level(logging.WARNING):
        store.revoke(TOKEN)
        await asyncio.wait_for(worker.wait_disconnected(), 2.0)
        await asyncio.sleep(0.05)

    assert worker.state is WorkerState.DISCONNECTED
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1

    await worker.stop()
    assert worker.state is WorkerState.STOPPED


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["duplex", "stream"])
async def test_worker_stop_releases_everything_and_is_idempotent(kind: str) -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    worker = _make_worker(kind, store)
    await worker.start()
    await eventually(lambda: worker.topology.live_handles == 3)

    await worker.stop()
    await worker.stop()

    assert worker.state is WorkerState.STOPPED
    assert worker.topology.live_handles == 0
    assert store.active_watchers == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["duplex", "stream"])
async def test_worker_start_fails_for_rejected_token(kind: str) -> None:
    store = MemoryStore(make_tree(), tokens=())
    worker = _make_worker(kind, store)

    with pytest.raises(StoreAuthError):
        await worker.start()

    assert worker.state is WorkerState.STOPPED
    assert store.active_watchers == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["duplex", "stream"])
async def test_worker_cannot_start_twice(kind: str) -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    worker = _make_worker(kind, store)
    await worker.start()

    with pytest.raises(WorkerError):
        await worker.start()

    await worker.stop()


@pytest.mark.asyncio
async def test_duplex_worker_requires_data_at_root() -> None:
    store = MemoryStore(tokens=TOKENS)
    worker = DuplexWorker(TOKEN, store)

    with pytest.raises(NoDataError):
        await worker.start()

    assert worker.state is WorkerState.STOPPED
    assert store.active_watchers == 0


@pytest.mark.asyncio
async def test_stream_worker_buckets_entities_by_kind() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    worker = StreamWorker(TOKEN, store)
    await worker.start()

    store.set("/devices/smoke_co_alarms/a2", {"device_id": "a2"})
    await eventually(lambda: worker.topology.tracked_ids(EntityKind.SMOKE_ALARM) == {"a1", "a2"})

    assert worker.topology.tracked_ids(THERMOSTAT) == {"t1"}
    assert worker.last_update[EntityKind.SMOKE_ALARM].kind is EntityKind.SMOKE_ALARM
    await worker.stop()


class _SilentStream:
    def __init__(self) -> None:
        self.closed = False
        self._never = asyncio.Event()

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        await self._never.wait()
        yield StreamEvent("put", "/", None)

    async def close(self) -> None:
        self.closed = True


class _SilentConnector:
    def __init__(self) -> None:
        self.streams: list[_SilentStream] = []

    async def open_stream(self, path: str, token: str) -> _SilentStream:
        stream = _SilentStream()
        self.streams.append(stream)
        return stream


@pytest.mark.asyncio
async def test_stream_worker_start_times_out_without_snapshot() -> None:
    connector = _SilentConnector()
    worker = StreamWorker(TOKEN, connector, start_timeout=0.05)

    with pytest.raises(TransportError):
        await worker.start()

    assert worker.state is WorkerState.STOPPED
    assert len(connector.streams) == 3
    assert all(stream.closed for stream in connector.streams)


@pytest.mark.asyncio
async def test_stream_worker_start_timeout_leaves_no_pending_waiters(caplog: pytest.LogCaptureFixture) -> None:
    worker = StreamWorker(TOKEN, _SilentConnector(), start_timeout=0.05)

    with caplog.at_level(logging.ERROR, logger="asyncio"):
        with pytest.raises(TransportError):
            await worker.start()
        gc.collect()
        await asyncio.sleep(0)

    assert not [r for r in caplog.records if "never retrieved" in r.getMessage()]


class _CutStream:
    """Passes through the first *limit* events of a store stream, then faults or ends."""

    def __init__(self, inner: EventStream, path: str, *, limit: int, fault: bool) -> None:
        self._inner = inner
        self._path = path
        self._limit = limit
        self._fault = fault

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        delivered = 0
        async for event in self._inner:
            if delivered == self._limit:
                break
            delivered += 1
            yield event
        if self._fault:
            raise TransportError("connection reset", path=self._path)

    async def close(self) -> None:
        await self._inner.close()


class _CuttingConnector:
    def __init__(self, store: MemoryStore, path: str, *, fault: bool = True) -> None:
        self._store = store
        self._path = path
        self._fault = fault

    async def open_stream(self, path: str, token: str) -> EventStream:
        stream = await self._store.open_stream(path, token)
        if path != self._path:
            return stream
        return _CutStream(stream, path, limit=1, fault=self._fault)


@pytest.mark.asyncio
@pytest.mark.parametrize("path", [THERMOSTAT.collection_path, THERMOSTAT.entity_path("t1")])
@pytest.mark.parametrize("fault", [True, False], ids=["fault", "eof"])
async def test_stream_worker_disconnects_when_a_stream_is_cut(
    path: str,
    fault: bool,
    caplog: pytest.LogCaptureFixture,
) -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    worker = StreamWorker(TOKEN, _CuttingConnector(store, path, fault=fault), start_timeout=2.0)
    await worker.start()
    assert worker.state is WorkerState.RUNNING

    with caplog.at_level(logging.WARNING):
        store.set(f"/devices/thermostats/t1/{PROP}", 71)
        await asyncio.wait_for(worker.wait_disconnected(), 2.0)
        await asyncio.sleep(0.05)

    assert worker.state is WorkerState.DISCONNECTED
    lost = [r for r in caplog.records if "Connection lost" in r.getMessage()]
    assert len(lost) == 1
    assert path in lost[0].getMessage()

    await worker.stop()
    assert worker.state is WorkerState.STOPPED


class _FailOnceConnector:
    def __init__(self, store: MemoryStore, path: str) -> None:
        self._store = store
        self._path = path
        self.failures = 0

    async def open_stream(self, path: str, token: str) -> EventStream:
        if path == self._path and not self.failures:
            self.failures += 1
            raise TransportError("503 once", status_code=503, path=path)
        return await self._store.open_stream(path, token)


@pytest.mark.asyncio
async def test_stream_worker_survives_one_failed_entity_stream() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    connector = _FailOnceConnector(store, EntityKind.STRUCTURE.entity_path("s1"))
    worker = StreamWorker(TOKEN, connector, start_timeout=0.5)

    await worker.start()

    assert worker.state is WorkerState.RUNNING
    assert connector.failures == 1
    assert worker.topology.tracked_ids(EntityKind.STRUCTURE) == set()
    assert worker.topology.tracked_ids(THERMOSTAT) == {"t1"}

    store.set("/structures/s1/name", "Cabin")
    await eventually(lambda: worker.topology.tracked_ids(EntityKind.STRUCTURE) == {"s1"})
    await eventually(
        lambda: EntityKind.STRUCTURE in worker.last_update
        and worker.last_update[EntityKind.STRUCTURE].properties.get("name") == "Cabin"
    )
    assert worker.state is WorkerState.RUNNING
    await worker.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["duplex", "stream"])
async def test_worker_keeps_consuming_after_a_malformed_entity(
    kind: str,
    caplog: pytest.LogCaptureFixture,
) -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    worker = _make_worker(kind, store)
    await worker.start()
    await eventually(lambda: _observed(worker) == 70)

    with caplog.at_level(logging.ERROR):
        # A blank key is a valid store path part but not a valid entity id.
        store.set("/devices/thermostats/ ", {"device_id": " ", PROP: 50})
        await eventually(lambda: any("Unexpected error" in r.getMessage() for r in caplog.records))

    store.set(f"/devices/thermostats/t1/{PROP}", 71)
    await eventually(lambda: _observed(worker) == 71)
    assert worker.state is WorkerState.RUNNING
    await worker.stop()


def test_merge_stream_event_put_replaces_subtree() -> None:
    current = {"t1": {"v": 1}}

    assert merge_stream_event(None, StreamEvent("put", "/", {"t1": {"v": 1}})) == {"t1": {"v": 1}}
    assert merge_stream_event(current, StreamEvent("put", "/t2", {"v": 2})) == {"t1": {"v": 1}, "t2": {"v": 2}}
    assert merge_stream_event(current, StreamEvent("put", "/t1/v", 5)) == {"t1": {"v": 5}}
    assert merge_stream_event(current, StreamEvent("put", "/t1", None)) is None
    assert current == {"t1": {"v": 1}}


def test_merge_stream_event_patch_merges_children() -> None:
    current = {"t1": {"v": 1, "name": "a"}, "t2": {"v": 2}}

    patched = merge_stream_event(current, StreamEvent("patch", "/t1", {"v": 9}))
    added = merge_stream_event(current, StreamEvent("patch", "/", {"t3": {"v": 3}}))

    assert patched == {"t1": {"v": 9, "name": "a"}, "t2": {"v": 2}}
    assert set(added) == {"t1", "t2", "t3"}
    assert merge_stream_event(current, StreamEvent("keep-alive", "/", None)) is current


def test_disconnect_signal_fires_once() -> None:
    signal = DisconnectSignal()

    assert signal.fire() is True
    assert signal.fire() is False
    assert signal.is_set
