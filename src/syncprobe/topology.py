"""Per-worker subscription topology.

Tracks which entities of each kind are currently watched and owns the
subscription handle of every watch.  Both transports reduce their
observations to "the current id set of a collection" (a full snapshot) or
to single additions/removals; the topology turns either into handle
opens/closes.

Invariants:

* at most one handle per ``(kind, id)``;
* every tracked handle was opened here and is not yet closed;
* after an update, no handle remains for an id absent from it.

Updates are serialized by a lock and a removal's ``close()`` is awaited
before any handle for the same id is opened again.  Each entry carries a
``closed`` flag checked by the emission guard, so a late emission from a
closed watch never reaches the value sink.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from syncprobe._transport import Subscription
from syncprobe.exceptions import TransportError
from syncprobe.models.entity import EntityKind

_logger = logging.getLogger(__name__)

ValueSink = Callable[[EntityKind, str, Any], None]
"""Receives ``(kind, entity_id, payload)`` for every live emission."""

WatchOpener = Callable[[EntityKind, str, Callable[[Any], None]], Awaitable[Subscription]]
"""Opens a value watch on one entity; the callback receives its emissions."""


@dataclass(frozen=True)
class TopologyDiff:
    added: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed


@dataclass(eq=False)
class _Entry:
    kind: EntityKind
    entity_id: str
    subscription: Subscription | None = None
    closed: bool = False


@dataclass
class _Counters:
    opened: int = 0
    closed: int = 0


class SubscriptionTopology:
    """Watched entities of one worker, keyed by kind then id."""

    def __init__(self, open_watch: WatchOpener, on_value: ValueSink, *, label: str = "") -> None:
        self._open_watch = open_watch
        self._on_value = on_value
        self._label = label
        self._entries: dict[EntityKind, dict[str, _Entry]] = {kind: {} for kind in EntityKind}
        self._lock = asyncio.Lock()
        self._counters = _Counters()

    @property
    def opened(self) -> int:
        """Handles opened over the topology's lifetime."""
        return self._counters.opened

    @property
    def closed(self) -> int:
        """Handles closed over the topology's lifetime."""
        return self._counters.closed

    @property
    def live_handles(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def tracked_ids(self, kind: EntityKind) -> frozenset[str]:
        return frozenset(self._entries[kind])

    async def apply_snapshot(self, kind: EntityKind, current_ids: Iterable[str]) -> TopologyDiff:
        """Reconcile the handles of *kind* with the full current id set.

        An id whose watch fails to open with :class:`TransportError` is
        left untracked and omitted from ``added``; the next snapshot that
        still lists it retries the open.  Auth failures propagate.
        """
        current = frozenset(current_ids)
        opened: set[str] = set()
        async with self._lock:
            tracked = frozenset(self._entries[kind])
            removed = tracked - current
            for entity_id in removed:
                await self._close(kind, entity_id)
            for entity_id in sorted(current - tracked):
                try:
                    await self._open(kind, entity_id)
                except TransportError as exc:
                    _logger.warning("%s failed to watch %s/%s: %s", self._label, kind, entity_id, exc)
                    continue
                opened.add(entity_id)
        added = frozenset(opened)
        diff = TopologyDiff(added=added, removed=removed)
        if not diff.is_empty:
            _logger.debug(
                "%s topology %s: +%d -%d (now %d)",
                self._label,
                kind,
                len(added),
                len(removed),
                len(self._entries[kind]),
            )
        return diff

    async def add(self, kind: EntityKind, entity_id: str) -> bool:
        """Watch one entity; ``False`` when it is already watched."""
        async with self._lock:
            if entity_id in self._entries[kind]:
                return False
            await self._open(kind, entity_id)
            return True

    async def remove(self, kind: EntityKind, entity_id: str) -> bool:
        """Stop watching one entity; ``False`` when it was not watched."""
        async with self._lock:
            if entity_id not in self._entries[kind]:
                return False
            await self._close(kind, entity_id)
            return True

    async def close_all(self) -> None:
        async with self._lock:
            for kind in EntityKind:
                for entity_id in list(self._entries[kind]):
                    await self._close(kind, entity_id)

    async def _open(self, kind: EntityKind, entity_id: str) -> None:
        entry = _Entry(kind=kind, entity_id=entity_id)

        def guarded(payload: Any) -> None:
            if entry.closed:
                return
            self._on_value(kind, entity_id, payload)

        # Tracked only once open, so a failing open leaves nothing behind.
        entry.subscription = await self._open_watch(kind, entity_id, guarded)
        self._entries[kind][entity_id] = entry
        self._counters.opened += 1

    async def _close(self, kind: EntityKind, entity_id: str) -> None:
        entry = self._entries[kind].pop(entity_id)
        entry.closed = True
        if entry.subscription is None:
            return
        try:
            await entry.subscription.close()
        except Exception:
            _logger.warning("%s failed to close watch %s/%s", self._label, kind, entity_id, exc_info=True)
        finally:
            self._counters.closed += 1
