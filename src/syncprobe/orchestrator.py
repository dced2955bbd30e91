"""Periodic write-then-verify test loop.

Each tick picks one thermostat, bumps its monitored property through the
privileged writer, and polls every running worker of every pool until it
observes the new value or its retry budget is exhausted.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable, Sequence
from enum import StrEnum
from typing import Any

from syncprobe._constants import next_target_temperature
from syncprobe._redact import mask_token
from syncprobe._transport import StoreWriter
from syncprobe.config import ProbeConfig
from syncprobe.exceptions import NoDataError, NoEntitiesError, StoreError
from syncprobe.models.entity import EntityKind, entities_from_snapshot
from syncprobe.models.report import DeliveryResult, PoolReport, TickResult
from syncprobe.pool import WorkerPool
from syncprobe.retry import poll_until
from syncprobe.workers._base import SyncWorker

_logger = logging.getLogger(__name__)

ReportCallback = Callable[[PoolReport], None]


class OrchestratorState(StrEnum):
    INIT = "init"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    STOPPED = "stopped"


def log_report(report: PoolReport) -> None:
    """Emit the PASS/FAIL line of one pool, plus the lost tokens on failure."""
    if report.passed:
        _logger.info(
            "%s TEST PASSED [all updates - %d, received - %d, lost - %d, time - %s ms]",
            report.transport_label,
            report.total,
            report.delivered_count,
            report.lost_count,
            report.max_elapsed_ms,
        )
        return
    _logger.error(
        "%s TEST FAILED [total - %d, received - %d, lost - %d]",
        report.transport_label,
        report.total,
        report.delivered_count,
        report.lost_count,
    )
    _logger.error(
        "%s Lost updates for tokens: %s",
        report.transport_label,
        ", ".join(mask_token(token) for token in report.lost_tokens),
    )


def _as_int(value: Any, entity_id: str, property_name: str) -> int:
    if isinstance(value, bool):
        value = None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise NoDataError(
            f"Thermostat {entity_id} has no integer {property_name} (got {value!r})",
            path=EntityKind.THERMOSTAT.entity_path(entity_id),
        )
    return value


class TestOrchestrator:
    """Drives ticks against a set of worker pools."""

    __test__ = False  # not a pytest class

    def __init__(
        self,
        config: ProbeConfig,
        writer: StoreWriter,
        pools: Sequence[WorkerPool],
        *,
        rng: random.Random | None = None,
        on_report: ReportCallback | None = None,
    ) -> None:
        self._config = config
        self._writer = writer
        self._pools = list(pools)
        self._rng = rng or random.Random()
        self._on_report = on_report
        self._state = OrchestratorState.INIT
        self.ticks_run = 0
        self.ticks_failed = 0
        self.ticks_skipped = 0
        self.last_result: TickResult | None = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def pools(self) -> list[WorkerPool]:
        return list(self._pools)

    # ------------------------------------------------------------------
    # Privileged session
    # ------------------------------------------------------------------

    async def authenticate(self) -> None:
        """Authenticate the writer once; a valid session is reused."""
        if self._writer.is_authenticated:
            self._state = OrchestratorState.READY
            return
        self._state = OrchestratorState.AUTHENTICATING
        try:
            await self._writer.authenticate(self._config.master_token)
        except BaseException:
            self._state = OrchestratorState.INIT
            raise
        self._state = OrchestratorState.READY
        _logger.info("Master client authenticated")

    # ------------------------------------------------------------------
    # One tick
    # ------------------------------------------------------------------

    async def run_tick(self) -> TickResult:
        """Write one update and verify its delivery to every running worker.

        Raises
        ------
        NoDataError
            The store root is empty or the chosen thermostat has no integer
            value for the monitored property.
        NoEntitiesError
            There is no thermostat to update.
        """
        await self.authenticate()
        prop = self._config.monitored_property

        root = await self._writer.read_once("/")
        if not root:
            raise NoDataError("No data for testing.", path="/")
        thermostats = entities_from_snapshot(root, EntityKind.THERMOSTAT)
        if not thermostats:
            raise NoEntitiesError("No thermostat to update", path=EntityKind.THERMOSTAT.collection_path)

        entity_id = self._rng.choice(sorted(thermostats))
        record = thermostats[entity_id]
        old_value = _as_int(record.properties.get(prop), entity_id, prop)
        new_value = next_target_temperature(old_value)

        path = f"{record.path}/{prop}"
        _logger.info("Sending update [thermostat = %s, %s: %s -> %s]", entity_id, prop, old_value, new_value)
        await self._writer.write(path, new_value)

        reports = await asyncio.gather(*(self._verify_pool(pool, prop, new_value) for pool in self._pools))
        result = TickResult(
            kind=EntityKind.THERMOSTAT,
            entity_id=entity_id,
            property_name=prop,
            old_value=old_value,
            new_value=new_value,
            reports=list(reports),
        )
        for report in result.reports:
            log_report(report)
            if self._on_report is not None:
                self._on_report(report)
        return result

    async def _verify_pool(self, pool: WorkerPool, prop: str, expected: Any) -> PoolReport:
        workers = await pool.snapshot()
        results = await asyncio.gather(*(self._verify_worker(worker, prop, expected) for worker in workers))
        return PoolReport.aggregate(pool.label, results)

    async def _verify_worker(self, worker: SyncWorker, prop: str, expected: Any) -> DeliveryResult:
        def observed() -> bool:
            record = worker.last_update.get(EntityKind.THERMOSTAT)
            return record is not None and record.properties.get(prop) == expected

        delivered, elapsed_ms = await poll_until(
            observed,
            attempts=self._config.check_times,
            interval_ms=self._config.check_interval,
        )
        if not delivered:
            _logger.debug(
                "%s Update not received [accessToken = %s, after %d ms]",
                worker.transport.label,
                mask_token(worker.access_token),
                elapsed_ms,
            )
        return DeliveryResult(access_token=worker.access_token, delivered=delivered, elapsed_ms=elapsed_ms)

    async def tick(self) -> TickResult | None:
        """Run one tick; store failures are logged and yield ``None``."""
        self.ticks_run += 1
        try:
            result = await self.run_tick()
        except StoreError as exc:
            self.ticks_failed += 1
            _logger.error("Test skipped: %s", exc)
            return None
        self.last_result = result
        return result

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run a tick every ``test_interval`` seconds until *stop_event* is set.

        Ticks never overlap.  Interval boundaries that pass while a tick is
        still running are skipped rather than queued.
        """
        loop = asyncio.get_running_loop()
        interval = self._config.test_interval
        next_at = loop.time() + interval

        while not stop_event.is_set():
            delay = next_at - loop.time()
            if delay > 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), delay)
                except asyncio.TimeoutError:
                    pass
                else:
                    break

            await self.tick()

            next_at += interval
            now = loop.time()
            if now >= next_at:
                missed = int((now - next_at) // interval) + 1
                self.ticks_skipped += missed
                next_at += missed * interval
                _logger.warning("Test run overran the interval, skipping %d scheduled run(s)", missed)

        self._state = OrchestratorState.STOPPED
