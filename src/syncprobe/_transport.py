"""Structural interfaces of the realtime store consumed by syncprobe.

Workers, pools and the orchestrator only talk to these protocols, which
makes it easy to pass the loopback store (or test doubles) while keeping
the production implementations (:mod:`syncprobe._rest`) concrete.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol


class SubscribeEvent(StrEnum):
    CHILD_ADDED = "child_added"
    CHILD_REMOVED = "child_removed"
    VALUE = "value"


@dataclass(frozen=True)
class DataEvent:
    """One emission of a duplex-session subscription.

    ``key`` names the child for ``child_added`` / ``child_removed`` and is
    ``None`` for ``value`` emissions.
    """

    event: SubscribeEvent
    path: str
    key: str | None
    data: Any


@dataclass(frozen=True)
class StreamEvent:
    """One server-sent event of a push stream.

    ``path`` is relative to the streamed location; a ``put`` at ``"/"``
    carries the full subtree snapshot.
    """

    event: str
    path: str
    data: Any


class Subscription(Protocol):
    """A live watch on one store path.  Must be closed exactly once."""

    async def close(self) -> None:
        ...


class DuplexSession(Protocol):
    """Persistent authenticated session of the duplex transport."""

    @property
    def is_authenticated(self) -> bool:
        ...

    async def read_once(self, path: str) -> Any:
        ...

    def subscribe(
        self,
        path: str,
        event: SubscribeEvent,
        callback: Callable[[DataEvent], None],
    ) -> Subscription:
        ...

    def on_auth_state(self, callback: Callable[[bool], None]) -> None:
        """Register *callback*, invoked with ``False`` when auth is lost."""
        ...

    async def close(self) -> None:
        ...


class DuplexConnector(Protocol):
    async def connect(self, token: str) -> DuplexSession:
        """Open and authenticate a session; raises ``StoreAuthError``."""
        ...


class EventStream(Protocol):
    """Long-lived push stream on one store path."""

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        ...

    async def close(self) -> None:
        ...


class StreamConnector(Protocol):
    async def open_stream(self, path: str, token: str) -> EventStream:
        """Open a stream; raises ``StoreAuthError`` on 401/403."""
        ...


class StoreWriter(Protocol):
    """Privileged read/write access used by the orchestrator."""

    @property
    def is_authenticated(self) -> bool:
        ...

    async def authenticate(self, token: str) -> None:
        ...

    async def unauthenticate(self) -> None:
        ...

    async def read_once(self, path: str = "/") -> Any:
        ...

    async def write(self, path: str, value: Any) -> None:
        ...
