"""In-process loopback store.

Implements every store protocol (``StoreWriter``, ``DuplexConnector``,
``StreamConnector``) over a plain nested dict so that a full probe run can
execute without network access.  Emissions are always delivered on a later
loop iteration (optionally delayed) to mimic a remote store: subscribers
never observe a write synchronously.

Semantics follow the hosted store:

* ``child_added`` fires once per existing child right after subscribing,
  then for every child that appears;
* ``value`` fires with the current value right after subscribing, then
  on every change at or below the watched path;
* a push stream first delivers ``put`` ``"/"`` with the full subtree, then
  another full-subtree ``put`` on every change;
* revoking a token flips every duplex session using it to
  unauthenticated and ends its streams with ``auth_revoked``.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from typing import Any

from syncprobe._redact import mask_token
from syncprobe._transport import DataEvent, StreamEvent, SubscribeEvent
from syncprobe.exceptions import StoreAuthError, WriteError
from syncprobe.models.entity import child_at

_logger = logging.getLogger(__name__)

_STREAM_END = object()


def _split(path: str) -> list[str]:
    return [part for part in path.strip("/").split("/") if part]


def _set_in(tree: dict[str, Any], parts: list[str], value: Any) -> dict[str, Any]:
    """Return *tree* with *value* stored at *parts*; ``None`` deletes."""
    if not parts:
        return copy.deepcopy(value) if isinstance(value, dict) else {}
    node = tree
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            if value is None:
                return tree
            child = {}
            node[part] = child
        node = child
    if value is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = copy.deepcopy(value)
    return tree


def _prune(tree: dict[str, Any]) -> dict[str, Any]:
    """Drop empty branches, as the hosted store never keeps them."""
    for key in list(tree):
        value = tree[key]
        if isinstance(value, dict):
            _prune(value)
            if not value:
                del tree[key]
    return tree


class _Watcher:
    def __init__(
        self,
        store: MemoryStore,
        token: str,
        path: str,
        emit: Callable[[Any, Any], None],
    ) -> None:
        self.store = store
        self.token = token
        self.path = path
        self.active = True
        self.last = copy.deepcopy(store.get(path))
        self._emit = emit

    def notify(self) -> None:
        current = self.store.get(self.path)
        if current == self.last:
            return
        previous, self.last = self.last, copy.deepcopy(current)
        self._emit(previous, current)


class MemorySubscription:
    def __init__(self, watcher: _Watcher) -> None:
        self._watcher = watcher

    @property
    def active(self) -> bool:
        return self._watcher.active

    async def close(self) -> None:
        self._watcher.store._detach(self._watcher)


class MemoryDuplexSession:
    """Duplex session bound to one token."""

    def __init__(self, store: MemoryStore, token: str) -> None:
        self._store = store
        self._token = token
        self._authenticated = True
        self._auth_callbacks: list[Callable[[bool], None]] = []
        self._subscriptions: list[MemorySubscription] = []
        self._loop = asyncio.get_running_loop()

    @property
    def token(self) -> str:
        return self._token

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    async def read_once(self, path: str) -> Any:
        if not self._authenticated:
            raise StoreAuthError("Session is not authenticated", path=path)
        return self._store.get(path)

    def subscribe(
        self,
        path: str,
        event: SubscribeEvent,
        callback: Callable[[DataEvent], None],
    ) -> MemorySubscription:
        if not self._authenticated:
            raise StoreAuthError("Session is not authenticated", path=path)
        holder: list[_Watcher] = []

        def deliver(data_event: DataEvent) -> None:
            self._store._deliver(self._loop, holder[0], callback, data_event)

        if event is SubscribeEvent.VALUE:

            def emit(_previous: Any, current: Any) -> None:
                deliver(DataEvent(event, path, None, copy.deepcopy(current)))

        else:

            def emit(previous: Any, current: Any) -> None:
                before = previous if isinstance(previous, Mapping) else {}
                after = current if isinstance(current, Mapping) else {}
                if event is SubscribeEvent.CHILD_ADDED:
                    for key in after.keys() - before.keys():
                        deliver(DataEvent(event, path, key, copy.deepcopy(after[key])))
                else:
                    for key in before.keys() - after.keys():
                        deliver(DataEvent(event, path, key, copy.deepcopy(before[key])))

        watcher = _Watcher(self._store, self._token, path, emit)
        holder.append(watcher)
        self._store._attach(watcher)

        initial = watcher.last
        if event is SubscribeEvent.VALUE:
            deliver(DataEvent(event, path, None, copy.deepcopy(initial)))
        elif event is SubscribeEvent.CHILD_ADDED and isinstance(initial, Mapping):
            for key, value in initial.items():
                deliver(DataEvent(event, path, key, copy.deepcopy(value)))

        subscription = MemorySubscription(watcher)
        self._subscriptions.append(subscription)
        return subscription

    def on_auth_state(self, callback: Callable[[bool], None]) -> None:
        self._auth_callbacks.append(callback)

    def _revoke(self) -> None:
        if not self._authenticated:
            return
        self._authenticated = False
        for callback in list(self._auth_callbacks):
            self._loop.call_soon(callback, False)

    async def close(self) -> None:
        for subscription in self._subscriptions:
            await subscription.close()
        self._subscriptions.clear()
        self._auth_callbacks.clear()
        self._store._sessions.discard(self)


class MemoryEventStream:
    """Push stream delivering full-subtree ``put`` snapshots."""

    def __init__(self, store: MemoryStore, token: str, path: str) -> None:
        self._store = store
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        loop = asyncio.get_running_loop()

        def emit(_previous: Any, current: Any) -> None:
            store._deliver(loop, self._watcher, self._queue.put_nowait, StreamEvent("put", "/", copy.deepcopy(current)))

        self._watcher = _Watcher(store, token, path, emit)
        store._attach(self._watcher)
        store._deliver(loop, self._watcher, self._queue.put_nowait, StreamEvent("put", "/", copy.deepcopy(self._watcher.last)))

    @property
    def path(self) -> str:
        return self._watcher.path

    @property
    def active(self) -> bool:
        return self._watcher.active

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is _STREAM_END:
                return
            yield item

    def _revoke(self) -> None:
        if not self._watcher.active:
            return
        self._store._detach(self._watcher)
        self._queue.put_nowait(StreamEvent("auth_revoked", "/", "token revoked"))
        self._queue.put_nowait(_STREAM_END)

    async def close(self) -> None:
        if not self._watcher.active:
            return
        self._store._detach(self._watcher)
        self._store._streams.discard(self)
        self._queue.put_nowait(_STREAM_END)


class MemoryStore:
    """Loopback realtime store.

    Parameters
    ----------
    data : mapping, optional
        Initial tree.
    tokens : iterable of str
        Tokens accepted by ``connect``, ``open_stream`` and ``authenticate``.
    delivery_delay : float
        Seconds between a change and its emission to subscribers.
    """

    def __init__(
        self,
        data: Mapping[str, Any] | None = None,
        *,
        tokens: Iterable[str] = (),
        delivery_delay: float = 0.0,
    ) -> None:
        self._data: dict[str, Any] = copy.deepcopy(dict(data)) if data else {}
        self._tokens: set[str] = set(tokens)
        self.delivery_delay = delivery_delay
        self._watchers: list[_Watcher] = []
        self._sessions: set[MemoryDuplexSession] = set()
        self._streams: set[MemoryEventStream] = set()
        self._writer_token: str | None = None
        self.writes: list[tuple[str, Any]] = []
        self.connect_count = 0
        self.stream_opens: list[str] = []
        self.fail_writes = False

    # ------------------------------------------------------------------
    # Tree access and admin
    # ------------------------------------------------------------------

    def get(self, path: str = "/") -> Any:
        return copy.deepcopy(child_at(self._data, path))

    def set(self, path: str, value: Any) -> None:
        """Replace the value at *path* and notify subscribers."""
        self._data = _prune(_set_in(self._data, _split(path), value))
        for watcher in list(self._watchers):
            if watcher.active:
                watcher.notify()

    def grant(self, token: str) -> None:
        self._tokens.add(token)

    def revoke(self, token: str) -> None:
        """Invalidate *token* and drop every session/stream using it."""
        _logger.debug("Revoking token %s", mask_token(token))
        self._tokens.discard(token)
        if self._writer_token == token:
            self._writer_token = None
        for session in [s for s in self._sessions if s.token == token]:
            session._revoke()
        for stream in [s for s in self._streams if s._watcher.token == token]:
            stream._revoke()
            self._streams.discard(stream)

    @property
    def active_watchers(self) -> int:
        return sum(1 for w in self._watchers if w.active)

    def _check_token(self, token: str, path: str = "/") -> None:
        if token not in self._tokens:
            raise StoreAuthError(f"Token {mask_token(token)} rejected", path=path)

    def _attach(self, watcher: _Watcher) -> None:
        self._watchers.append(watcher)

    def _detach(self, watcher: _Watcher) -> None:
        watcher.active = False
        if watcher in self._watchers:
            self._watchers.remove(watcher)

    def _deliver(
        self,
        loop: asyncio.AbstractEventLoop,
        watcher: _Watcher,
        callback: Callable[[Any], None],
        payload: Any,
    ) -> None:
        def fire() -> None:
            # Emissions scheduled before close are dropped.
            if watcher.active:
                callback(payload)

        if self.delivery_delay > 0:
            loop.call_later(self.delivery_delay, fire)
        else:
            loop.call_soon(fire)

    # ------------------------------------------------------------------
    # DuplexConnector / StreamConnector
    # ------------------------------------------------------------------

    async def connect(self, token: str) -> MemoryDuplexSession:
        self._check_token(token)
        self.connect_count += 1
        session = MemoryDuplexSession(self, token)
        self._sessions.add(session)
        return session

    async def open_stream(self, path: str, token: str) -> MemoryEventStream:
        self._check_token(token, path)
        self.stream_opens.append(path)
        stream = MemoryEventStream(self, token, path)
        self._streams.add(stream)
        return stream

    # ------------------------------------------------------------------
    # StoreWriter
    # ------------------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self._writer_token is not None and self._writer_token in self._tokens

    async def authenticate(self, token: str) -> None:
        self._check_token(token)
        self._writer_token = token

    async def unauthenticate(self) -> None:
        self._writer_token = None

    async def read_once(self, path: str = "/") -> Any:
        if not self.is_authenticated:
            raise StoreAuthError("Writer is not authenticated", path=path)
        return self.get(path)

    async def write(self, path: str, value: Any) -> None:
        if not self.is_authenticated:
            raise StoreAuthError("Writer is not authenticated", path=path)
        if self.fail_writes:
            raise WriteError(f"Write to {path} rejected", path=path)
        self.writes.append((path, copy.deepcopy(value)))
        # Apply on the next loop iteration, as an acknowledged remote write would.
        await asyncio.sleep(0)
        self.set(path, value)
