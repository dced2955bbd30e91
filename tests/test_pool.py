from __future__ import annotations

import asyncio
import functools
from collections.abc import AsyncIterator

import pytest
from _helpers import TOKENS, eventually, make_tree

from syncprobe._transport import EventStream, StreamEvent
from syncprobe.memory import MemoryStore
from syncprobe.models.entity import EntityKind
from syncprobe.pool import WorkerPool
from syncprobe.workers import DuplexWorker, StreamWorker, TransportKind, WorkerState

THERMOSTAT = EntityKind.THERMOSTAT


def _duplex_pool(store: MemoryStore, tokens: tuple[str, ...] = TOKENS, **kwargs: float) -> WorkerPool:
    return WorkerPool(TransportKind.DUPLEX, functools.partial(DuplexWorker, connector=store), tokens, **kwargs)


@pytest.mark.asyncio
async def test_start_all_skips_rejected_tokens() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS[:2])
    pool = _duplex_pool(store)

    started = await pool.start_all()
    workers = await pool.snapshot()

    assert started == 2
    assert {w.access_token for w in workers} == set(TOKENS[:2])
    assert pool.live_tokens() == set(TOKENS[:2])
    await pool.close()


@pytest.mark.asyncio
async def test_at_most_one_worker_per_token() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    pool = _duplex_pool(store)

    results = await asyncio.gather(*(pool.start_worker(TOKENS[0]) for _ in range(3)))

    assert sorted(results) == [False, False, True]
    assert len(await pool.snapshot()) == 1
    assert store.connect_count == 1
    await pool.close()


@pytest.mark.asyncio
async def test_disconnected_worker_is_replaced() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    pool = _duplex_pool(store)
    await pool.start_all()
    before = {w.access_token: w for w in await pool.snapshot()}

    store.revoke(TOKENS[1])
    store.grant(TOKENS[1])

    await eventually(lambda: pool.restarts == 1)
    after = {w.access_token: w for w in await pool.snapshot()}
    assert set(after) == set(TOKENS)
    assert after[TOKENS[1]] is not before[TOKENS[1]]
    assert after[TOKENS[0]] is before[TOKENS[0]]
    assert before[TOKENS[1]].state is WorkerState.STOPPED
    assert store.connect_count == 4
    await pool.close()


@pytest.mark.asyncio
async def test_failed_replacement_leaves_token_without_worker() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    pool = _duplex_pool(store)
    await pool.start_all()

    store.revoke(TOKENS[2])

    await eventually(lambda: TOKENS[2] not in pool.live_tokens())
    await asyncio.sleep(0.05)
    assert {w.access_token for w in await pool.snapshot()} == set(TOKENS[:2])
    assert pool.restarts == 0
    await pool.close()


@pytest.mark.asyncio
async def test_replacement_waits_for_restart_delay() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    pool = _duplex_pool(store, restart_delay=0.2)
    await pool.start_all()

    store.revoke(TOKENS[0])
    store.grant(TOKENS[0])
    await eventually(lambda: TOKENS[0] not in pool.live_tokens())

    assert len(await pool.snapshot()) == 2
    await eventually(lambda: pool.restarts == 1)
    assert len(await pool.snapshot()) == 3
    await pool.close()


@pytest.mark.asyncio
async def test_close_stops_every_worker_and_is_idempotent() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    pool = WorkerPool(
        TransportKind.STREAM,
        functools.partial(StreamWorker, connector=store),
        TOKENS,
    )
    await pool.start_all()
    workers = await pool.snapshot()

    await pool.close()
    await pool.close()

    assert pool.closed
    assert await pool.snapshot() == []
    assert all(w.state is WorkerState.STOPPED for w in workers)
    assert store.active_watchers == 0
    assert await pool.start_worker(TOKENS[0]) is False


class _BrokenWorker:
    """Worker whose start fails with an error outside the library hierarchy."""

    transport = TransportKind.DUPLEX
    state = WorkerState.STOPPED
    last_update: dict = {}

    def __init__(self, access_token: str) -> None:
        self.access_token = access_token

    async def start(self) -> None:
        raise RuntimeError("boom")

    async def stop(self) -> None:
        pass

    async def wait_disconnected(self) -> None:
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_unexpected_start_error_releases_the_token(caplog: pytest.LogCaptureFixture) -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    broken = {TOKENS[0]}

    def factory(token: str) -> DuplexWorker | _BrokenWorker:
        if token in broken:
            broken.discard(token)
            return _BrokenWorker(token)
        return DuplexWorker(token, store)

    pool = WorkerPool(TransportKind.DUPLEX, factory, TOKENS)

    assert await pool.start_worker(TOKENS[0]) is False
    assert TOKENS[0] not in pool.live_tokens()
    assert any(r.exc_info and isinstance(r.exc_info[1], RuntimeError) for r in caplog.records)

    assert await pool.start_worker(TOKENS[0]) is True
    assert {w.access_token for w in await pool.snapshot()} == {TOKENS[0]}
    await pool.close()


class _EndsAfterSnapshot:
    """Delivers the initial snapshot and ends on the next event."""

    def __init__(self, inner: EventStream) -> None:
        self._inner = inner

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        delivered = False
        async for event in self._inner:
            if delivered:
                return
            delivered = True
            yield event

    async def close(self) -> None:
        await self._inner.close()


class _EndOnceConnector:
    """Cuts the first stream opened on *path* after its snapshot."""

    def __init__(self, store: MemoryStore, path: str) -> None:
        self._store = store
        self._path = path
        self.cut = False

    async def open_stream(self, path: str, token: str) -> EventStream:
        stream = await self._store.open_stream(path, token)
        if path != self._path or self.cut:
            return stream
        self.cut = True
        return _EndsAfterSnapshot(stream)


@pytest.mark.asyncio
async def test_stream_worker_with_ended_stream_is_replaced() -> None:
    store = MemoryStore(make_tree(), tokens=TOKENS)
    connector = _EndOnceConnector(store, "/devices/thermostats")
    pool = WorkerPool(
        TransportKind.STREAM,
        functools.partial(StreamWorker, connector=connector, start_timeout=2.0),
        TOKENS[:1],
    )

    assert await pool.start_all() == 1
    [first] = await pool.snapshot()

    store.set("/devices/thermostats/t1/target_temperature_f", 71)
    await eventually(lambda: pool.restarts == 1)
    [worker] = await pool.snapshot()
    assert worker is not first
    assert first.state is WorkerState.STOPPED
    await eventually(
        lambda: THERMOSTAT in worker.last_update
        and worker.last_update[THERMOSTAT].properties.get("target_temperature_f") == 71
    )
    await pool.close()
