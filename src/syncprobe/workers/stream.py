"""Push-stream worker.

One long-lived stream per collection path plus one per discovered entity.
Streams deliver subtree snapshots (``put``) and merges (``patch``) rather
than single-child deltas, so collection membership is recomputed from the
cached snapshot after every event and reconciled by the topology.

Entities are bucketed by their actual kind.  Authorization failure on any
stream (revocation event, or 401/403 when opening an entity stream) fires
``disconnected`` without a local retry, and so does any stream that faults
or ends on its own; the pool owns restarts.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import functools
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from syncprobe._redact import mask_token
from syncprobe._transport import EventStream, StreamConnector, StreamEvent
from syncprobe.exceptions import StoreAuthError, StoreError, SyncProbeError, TransportError, WorkerError
from syncprobe.models.entity import EntityKind, EntityRecord
from syncprobe.topology import SubscriptionTopology
from syncprobe.workers._base import DisconnectSignal, TransportKind, WorkerState, record_from_payload

_logger = logging.getLogger(__name__)

_LABEL = TransportKind.STREAM.label

_REVOKE_EVENTS = frozenset({"auth_revoked", "cancel"})
_DATA_EVENTS = frozenset({"put", "patch"})
# Queued by a pump whose stream faulted or ended; data carries the reason.
_LOST_EVENT = "connection_lost"


def _split(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def _replace(current: Any, parts: list[str], value: Any) -> Any:
    if not parts:
        return copy.deepcopy(value)
    base = dict(current) if isinstance(current, Mapping) else {}
    head, rest = parts[0], parts[1:]
    child = _replace(base.get(head), rest, value)
    if child is None:
        base.pop(head, None)
    else:
        base[head] = child
    return base or None


def merge_stream_event(current: Any, event: StreamEvent) -> Any:
    """Return the subtree after applying one ``put`` / ``patch`` event.

    ``put`` replaces the value at ``event.path`` (``None`` deletes it);
    ``patch`` replaces each child named in ``event.data`` below that path.
    *current* is never mutated.
    """
    parts = _split(event.path)
    if event.event == "put":
        return _replace(current, parts, event.data)
    if event.event == "patch" and isinstance(event.data, Mapping):
        result = current
        for key, value in event.data.items():
            result = _replace(result, parts + _split(str(key)), value)
        return result
    return current


@dataclass(frozen=True)
class _CollectionEvent:
    kind: EntityKind
    event: StreamEvent


@dataclass(frozen=True)
class _EntityEvent:
    kind: EntityKind
    entity_id: str
    event: StreamEvent


class _StreamPump:
    """An open stream and the task reading it; closed as one handle."""

    def __init__(self, stream: EventStream, task: asyncio.Task[None]) -> None:
        self._stream = stream
        self._task = task

    async def close(self) -> None:
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        await self._stream.close()


class StreamWorker:
    """Tenant client on the push-stream transport."""

    transport = TransportKind.STREAM

    def __init__(
        self,
        access_token: str,
        connector: StreamConnector,
        *,
        start_timeout: float = 30.0,
    ) -> None:
        self._access_token = access_token
        self._connector = connector
        self._start_timeout = start_timeout
        self._state = WorkerState.STOPPED
        self._last_update: dict[EntityKind, EntityRecord] = {}
        self._collection_pumps: list[_StreamPump] = []
        self._collections: dict[EntityKind, Any] = {}
        self._entities: dict[tuple[EntityKind, str], Any] = {}
        self._ready: dict[EntityKind, asyncio.Event] = {}
        self._events: asyncio.Queue[_CollectionEvent | _EntityEvent] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self._disconnected = DisconnectSignal()
        self._lost_error: StoreError | None = None
        self.topology = SubscriptionTopology(
            self._open_entity_stream,
            self._enqueue_entity,
            label=f"{_LABEL} {mask_token(access_token)}",
        )

    @property
    def access_token(self) -> str:
        return self._access_token

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def last_update(self) -> Mapping[EntityKind, EntityRecord]:
        return self._last_update

    def _token(self) -> str:
        return mask_token(self._access_token)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._state is not WorkerState.STOPPED:
            raise WorkerError(f"{_LABEL} Already started [accessToken = {self._token()}]")

        self._state = WorkerState.STARTING
        self._disconnected = DisconnectSignal()
        self._lost_error = None
        self._ready = {kind: asyncio.Event() for kind in EntityKind}

        try:
            self._consumer = asyncio.create_task(self._consume(), name=f"stream-worker-{self._token()}")
            for kind in EntityKind:
                pump = await self._open_pump(
                    kind.collection_path,
                    functools.partial(self._enqueue_collection, kind),
                )
                self._collection_pumps.append(pump)
            await self._wait_ready()
        except BaseException as exc:
            if isinstance(exc, StoreAuthError):
                _logger.error("%s Client wasn't authorized [accessToken = %s]: %s", _LABEL, self._token(), exc)
            await self._teardown()
            self._state = WorkerState.STOPPED
            raise

        self._state = WorkerState.RUNNING
        _logger.info("%s Opened connection [accessToken = %s]", _LABEL, self._token())

    async def _wait_ready(self) -> None:
        ready = asyncio.ensure_future(asyncio.gather(*(event.wait() for event in self._ready.values())))
        lost = asyncio.ensure_future(self._disconnected.wait())
        try:
            done, _pending = await asyncio.wait(
                {ready, lost},
                timeout=self._start_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for waiter in (ready, lost):
                waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await waiter

        if self._disconnected.is_set:
            if self._lost_error is not None:
                raise self._lost_error
            raise StoreAuthError(f"Authentication lost while starting [accessToken = {self._token()}]")
        if ready not in done:
            raise TransportError(f"No initial snapshot within {self._start_timeout}s [accessToken = {self._token()}]")

    async def stop(self) -> None:
        if self._state is WorkerState.STOPPED and self._consumer is None:
            return
        _logger.info("%s Stop sync client [accessToken = %s]", _LABEL, self._token())
        await self._teardown()
        self._state = WorkerState.STOPPED

    async def wait_disconnected(self) -> None:
        await self._disconnected.wait()

    async def _teardown(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

        pumps, self._collection_pumps = self._collection_pumps, []
        for pump in pumps:
            try:
                await pump.close()
            except Exception:
                _logger.warning("%s Failed to close collection stream", _LABEL, exc_info=True)

        await self.topology.close_all()
        self._collections.clear()
        self._entities.clear()

    def _disconnect(self, error: StoreError) -> bool:
        if self._state not in (WorkerState.STARTING, WorkerState.RUNNING):
            return False
        if not self._disconnected.fire():
            return False
        self._state = WorkerState.DISCONNECTED
        self._lost_error = error
        return True

    def _lose_auth(self) -> None:
        error = StoreAuthError(f"Authentication lost [accessToken = {self._token()}]")
        if self._disconnect(error):
            _logger.warning("%s Client wasn't authorized [accessToken = %s]", _LABEL, self._token())

    def _lose_connection(self, path: str, reason: str) -> None:
        error = TransportError(f"Stream {path} lost: {reason}", path=path)
        if self._disconnect(error):
            _logger.warning(
                "%s Connection lost [accessToken = %s, path = %s]: %s",
                _LABEL,
                self._token(),
                path,
                reason,
            )

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def _open_pump(self, path: str, sink: Callable[[StreamEvent], None]) -> _StreamPump:
        stream = await self._connector.open_stream(path, self._access_token)
        task = asyncio.create_task(self._pump(stream, sink, path), name=f"stream-{path}")
        return _StreamPump(stream, task)

    async def _pump(self, stream: EventStream, sink: Callable[[StreamEvent], None], path: str) -> None:
        try:
            async for event in stream:
                sink(event)
        except StoreAuthError:
            sink(StreamEvent("auth_revoked", "/", None))
            return
        except TransportError as exc:
            reason = str(exc)
        else:
            reason = "stream ended"
        _logger.debug("%s Stream closed [accessToken = %s, path = %s]: %s", _LABEL, self._token(), path, reason)
        sink(StreamEvent(_LOST_EVENT, path, reason))

    async def _open_entity_stream(
        self,
        kind: EntityKind,
        entity_id: str,
        callback: Callable[[Any], None],
    ) -> _StreamPump:
        return await self._open_pump(kind.entity_path(entity_id), callback)

    def _enqueue_collection(self, kind: EntityKind, event: StreamEvent) -> None:
        self._events.put_nowait(_CollectionEvent(kind=kind, event=event))

    def _enqueue_entity(self, kind: EntityKind, entity_id: str, event: Any) -> None:
        self._events.put_nowait(_EntityEvent(kind=kind, entity_id=entity_id, event=event))

    async def _consume(self) -> None:
        while True:
            item = await self._events.get()
            event = item.event
            if event.event in _REVOKE_EVENTS:
                self._lose_auth()
                continue
            if event.event == _LOST_EVENT:
                self._lose_connection(event.path, str(event.data))
                continue
            if event.event not in _DATA_EVENTS:
                if event.event != "keep-alive":
                    _logger.debug("%s Ignoring %r event", _LABEL, event.event)
                continue
            try:
                if isinstance(item, _CollectionEvent):
                    await self._apply_collection(item.kind, event)
                else:
                    self._apply_entity(item.kind, item.entity_id, event)
            except StoreAuthError:
                self._lose_auth()
            except SyncProbeError as exc:
                _logger.warning(
                    "%s Subscription update failed [accessToken = %s]: %s",
                    _LABEL,
                    self._token(),
                    exc,
                )
            except Exception:
                _logger.error(
                    "%s Unexpected error handling %r event [accessToken = %s]",
                    _LABEL,
                    event.event,
                    self._token(),
                    exc_info=True,
                )

    async def _apply_collection(self, kind: EntityKind, event: StreamEvent) -> None:
        snapshot = merge_stream_event(self._collections.get(kind), event)
        self._collections[kind] = snapshot
        current_ids = [str(key) for key in snapshot] if isinstance(snapshot, Mapping) else []
        try:
            diff = await self.topology.apply_snapshot(kind, current_ids)
            for entity_id in diff.removed:
                self._entities.pop((kind, entity_id), None)
        finally:
            self._ready[kind].set()

    def _apply_entity(self, kind: EntityKind, entity_id: str, event: StreamEvent) -> None:
        if entity_id not in self.topology.tracked_ids(kind):
            return
        key = (kind, entity_id)
        data = merge_stream_event(self._entities.get(key), event)
        self._entities[key] = data
        record = record_from_payload(kind, entity_id, data)
        if record is not None:
            self._last_update[kind] = record
