"""Process-scoped probe runtime: pool construction, start-up and teardown."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import random
from typing import Any

from syncprobe._transport import DuplexConnector, StoreWriter, StreamConnector
from syncprobe.config import ProbeConfig
from syncprobe.exceptions import ConfigError, SyncProbeError
from syncprobe.orchestrator import TestOrchestrator
from syncprobe.pool import WorkerPool
from syncprobe.workers._base import TransportKind
from syncprobe.workers.duplex import DuplexWorker
from syncprobe.workers.stream import StreamWorker

_logger = logging.getLogger(__name__)


class ProbeRuntime:
    """Owns the pools and the orchestrator for one probe run.

    Usage::

        async with ProbeRuntime(config, writer=store, stream=store) as runtime:
            await runtime.run(stop_event)

    Leaving the context tears everything down in order: stop every worker,
    cancel the scheduler, then de-authenticate the writer.
    """

    def __init__(
        self,
        config: ProbeConfig,
        *,
        writer: StoreWriter,
        duplex: DuplexConnector | None = None,
        stream: StreamConnector | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config
        self._writer = writer
        self.pools: list[WorkerPool] = []

        if config.mode.uses_duplex:
            if duplex is None:
                raise ConfigError(f"mode {config.mode} requires a duplex connector")
            self.pools.append(
                WorkerPool(
                    TransportKind.DUPLEX,
                    functools.partial(DuplexWorker, connector=duplex),
                    config.user_tokens,
                    restart_delay=config.restart_delay,
                )
            )
        if config.mode.uses_stream:
            if stream is None:
                raise ConfigError(f"mode {config.mode} requires a stream connector")
            self.pools.append(
                WorkerPool(
                    TransportKind.STREAM,
                    functools.partial(StreamWorker, connector=stream, start_timeout=config.start_timeout),
                    config.user_tokens,
                    restart_delay=config.restart_delay,
                )
            )

        self.orchestrator = TestOrchestrator(config, writer, self.pools, rng=rng)
        self._scheduler: asyncio.Task[None] | None = None
        self._shut_down = False

    async def __aenter__(self) -> ProbeRuntime:
        try:
            await self.start()
        except BaseException:
            await self.shutdown()
            raise
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    async def start(self) -> None:
        """Authenticate the writer and start every pool concurrently.

        Raises
        ------
        SyncProbeError
            When not a single worker could be started.
        """
        await self.orchestrator.authenticate()
        started = await asyncio.gather(*(pool.start_all() for pool in self.pools))
        if self._config.user_tokens and not any(started):
            raise SyncProbeError("No sync client could be started")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run the tick scheduler until *stop_event* is set."""
        _logger.info("------ START TEST ------")
        self._scheduler = asyncio.create_task(self.orchestrator.run(stop_event), name="syncprobe-scheduler")
        try:
            await self._scheduler
        finally:
            self._scheduler = None

    async def shutdown(self) -> None:
        """Stop workers, cancel the scheduler, de-authenticate.  Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True

        for pool in self.pools:
            await pool.close()

        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and not scheduler.done():
            scheduler.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scheduler

        try:
            await self._writer.unauthenticate()
        except Exception:
            _logger.warning("Failed to de-authenticate master client", exc_info=True)
        _logger.info("------ TEST STOPPED ------")
