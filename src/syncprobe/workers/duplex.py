"""Duplex-transport worker.

One persistent authenticated session per tenant token.  Collection
membership arrives as incremental ``child_added`` / ``child_removed``
events, each entity is observed through its own ``value`` watch.

Every emission is funnelled through one queue drained by the worker's own
consumer task, which is the only place the topology and ``last_update``
are mutated.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from syncprobe._redact import mask_token
from syncprobe._transport import (
    DataEvent,
    DuplexConnector,
    DuplexSession,
    SubscribeEvent,
    Subscription,
)
from syncprobe.exceptions import NoDataError, StoreAuthError, SyncProbeError, WorkerError
from syncprobe.models.entity import EntityKind, EntityRecord
from syncprobe.topology import SubscriptionTopology
from syncprobe.workers._base import DisconnectSignal, TransportKind, WorkerState, record_from_payload

_logger = logging.getLogger(__name__)

_LABEL = TransportKind.DUPLEX.label


@dataclass(frozen=True)
class _ChildChange:
    kind: EntityKind
    event: SubscribeEvent
    entity_id: str


@dataclass(frozen=True)
class _ValueChange:
    kind: EntityKind
    entity_id: str
    payload: Any


class DuplexWorker:
    """Tenant client on the duplex transport."""

    transport = TransportKind.DUPLEX

    def __init__(self, access_token: str, connector: DuplexConnector) -> None:
        self._access_token = access_token
        self._connector = connector
        self._state = WorkerState.STOPPED
        self._last_update: dict[EntityKind, EntityRecord] = {}
        self._session: DuplexSession | None = None
        self._collection_subs: list[Subscription] = []
        self._events: asyncio.Queue[_ChildChange | _ValueChange] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self._disconnected = DisconnectSignal()
        self.topology = SubscriptionTopology(
            self._open_value_watch,
            self._enqueue_value,
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
        _logger.info("%s Sync client starts [accessToken = %s]", _LABEL, self._token())

        try:
            await self._bootstrap()
            if self._disconnected.is_set:
                raise StoreAuthError(f"Authentication lost while starting [accessToken = {self._token()}]")
        except BaseException as exc:
            if isinstance(exc, StoreAuthError):
                _logger.error("%s Client wasn't authorized [accessToken = %s]: %s", _LABEL, self._token(), exc)
            await self._teardown()
            self._state = WorkerState.STOPPED
            raise

        self._state = WorkerState.RUNNING

    async def _bootstrap(self) -> None:
        session = await self._connector.connect(self._access_token)
        self._session = session
        session.on_auth_state(self._on_auth_state)

        root = await session.read_once("/")
        if not root:
            raise NoDataError("No data loaded from the root of the store connection", path="/")

        self._consumer = asyncio.create_task(self._consume(), name=f"duplex-worker-{self._token()}")
        for kind in EntityKind:
            _logger.debug(
                "%s Listen to new/removed children [topic = %s, accessToken = %s]",
                _LABEL,
                kind.collection_path,
                self._token(),
            )
            for event in (SubscribeEvent.CHILD_ADDED, SubscribeEvent.CHILD_REMOVED):
                subscription = session.subscribe(
                    kind.collection_path,
                    event,
                    functools.partial(self._on_child_event, kind),
                )
                self._collection_subs.append(subscription)

    async def stop(self) -> None:
        if self._state is WorkerState.STOPPED and self._session is None:
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

        subscriptions, self._collection_subs = self._collection_subs, []
        for subscription in subscriptions:
            try:
                await subscription.close()
            except Exception:
                _logger.warning("%s Failed to close collection watch", _LABEL, exc_info=True)

        await self.topology.close_all()

        session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except Exception:
                _logger.warning("%s Failed to close session [accessToken = %s]", _LABEL, self._token(), exc_info=True)

    def _on_auth_state(self, authenticated: bool) -> None:
        if authenticated:
            return
        if self._state not in (WorkerState.STARTING, WorkerState.RUNNING):
            return
        if self._disconnected.fire():
            self._state = WorkerState.DISCONNECTED
            _logger.warning("%s Sync client [accessToken = %s] disconnected", _LABEL, self._token())

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _require_session(self) -> DuplexSession:
        if self._session is None:
            raise WorkerError(f"{_LABEL} Worker has no session [accessToken = {self._token()}]")
        return self._session

    def _on_child_event(self, kind: EntityKind, event: DataEvent) -> None:
        if not event.key or event.data is None:
            _logger.debug('%s No data on "%s" event [topic = %s]', _LABEL, event.event, event.path)
            return
        self._events.put_nowait(_ChildChange(kind=kind, event=event.event, entity_id=event.key))

    def _enqueue_value(self, kind: EntityKind, entity_id: str, payload: Any) -> None:
        self._events.put_nowait(_ValueChange(kind=kind, entity_id=entity_id, payload=payload))

    async def _open_value_watch(
        self,
        kind: EntityKind,
        entity_id: str,
        callback: Callable[[Any], None],
    ) -> Subscription:
        session = self._require_session()
        return session.subscribe(
            kind.entity_path(entity_id),
            SubscribeEvent.VALUE,
            lambda event: callback(event.data),
        )

    async def _consume(self) -> None:
        while True:
            change = await self._events.get()
            try:
                if isinstance(change, _ValueChange):
                    self._apply_value(change)
                elif change.event is SubscribeEvent.CHILD_ADDED:
                    await self.topology.add(change.kind, change.entity_id)
                else:
                    await self.topology.remove(change.kind, change.entity_id)
            except StoreAuthError:
                self._on_auth_state(False)
            except SyncProbeError as exc:
                _logger.warning(
                    "%s Subscription update failed [accessToken = %s]: %s",
                    _LABEL,
                    self._token(),
                    exc,
                )
            except Exception:
                _logger.error(
                    "%s Unexpected error handling %s/%s [accessToken = %s]",
                    _LABEL,
                    change.kind,
                    change.entity_id,
                    self._token(),
                    exc_info=True,
                )

    def _apply_value(self, change: _ValueChange) -> None:
        if change.entity_id not in self.topology.tracked_ids(change.kind):
            return
        record = record_from_payload(change.kind, change.entity_id, change.payload)
        if record is None:
            _logger.debug('%s No data on "value" event [%s/%s]', _LABEL, change.kind, change.entity_id)
            return
        self._last_update[change.kind] = record
