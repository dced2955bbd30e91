"""Worker capability and lifecycle types shared by both transports.

Workers are not related by inheritance: each transport variant is a
standalone class satisfying :class:`SyncWorker`.  Only small composable
helpers live here.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from enum import StrEnum
from typing import Any, Protocol

from syncprobe.models.entity import EntityKind, EntityRecord


class TransportKind(StrEnum):
    DUPLEX = "ws"
    STREAM = "rs"

    @property
    def label(self) -> str:
        """Fixed-width prefix used in log lines and reports."""
        return _LABELS[self]


_LABELS: dict[TransportKind, str] = {
    TransportKind.DUPLEX: "[ WS ]",
    TransportKind.STREAM: "[REST]",
}


class WorkerState(StrEnum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DISCONNECTED = "disconnected"


class SyncWorker(Protocol):
    """One tenant client observing the store through one transport."""

    @property
    def access_token(self) -> str:
        ...

    @property
    def transport(self) -> TransportKind:
        ...

    @property
    def state(self) -> WorkerState:
        ...

    @property
    def last_update(self) -> Mapping[EntityKind, EntityRecord]:
        """Most recent record observed per kind, across all its entities."""
        ...

    async def start(self) -> None:
        """Connect and subscribe; raises on failure (worker left stopped)."""
        ...

    async def stop(self) -> None:
        """Release every subscription and the connection.  Idempotent."""
        ...

    async def wait_disconnected(self) -> None:
        """Return once the worker lost its connection or authentication."""
        ...


class DisconnectSignal:
    """Set-once ``disconnected`` signal.

    ``fire()`` returns ``True`` only for the call that actually set it, so
    callers can log and transition exactly once.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def fire(self) -> bool:
        if self._event.is_set():
            return False
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


def record_from_payload(kind: EntityKind, entity_id: str, payload: Any) -> EntityRecord | None:
    """Build the record a worker exposes in ``last_update``; ``None`` if empty."""
    if not isinstance(payload, Mapping) or not payload:
        return None
    return EntityRecord(id=entity_id, kind=kind, properties=dict(payload))

