"""Worker pool: one transport, one worker per tenant token.

The pool owns worker lifecycles.  A watcher task per live worker waits for
its ``disconnected`` signal, drops it from the pool, stops it, and starts a
fresh worker for the same token.  The token map is only mutated under the
pool lock, so at most one starting or running worker exists per token.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable, Iterable

from syncprobe._redact import mask_token
from syncprobe.exceptions import SyncProbeError
from syncprobe.workers._base import SyncWorker, TransportKind, WorkerState

_logger = logging.getLogger(__name__)

WorkerFactory = Callable[[str], SyncWorker]


class WorkerPool:
    """Workers of one transport over a fixed token set."""

    def __init__(
        self,
        transport: TransportKind,
        factory: WorkerFactory,
        tokens: Iterable[str],
        *,
        restart_delay: float = 0.0,
    ) -> None:
        self._transport = transport
        self._factory = factory
        self._tokens = tuple(dict.fromkeys(tokens))
        self._restart_delay = restart_delay
        self._workers: dict[str, SyncWorker] = {}
        self._starting: set[str] = set()
        self._watchers: set[asyncio.Task[None]] = set()
        self._lock = asyncio.Lock()
        self._closed = False
        self.restarts = 0

    @property
    def transport(self) -> TransportKind:
        return self._transport

    @property
    def label(self) -> str:
        return self._transport.label

    @property
    def tokens(self) -> tuple[str, ...]:
        return self._tokens

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_all(self) -> int:
        """Start a worker for every configured token; return how many run."""
        results = await asyncio.gather(*(self.start_worker(token) for token in self._tokens))
        started = sum(1 for ok in results if ok)
        _logger.info("%s %d of %d sync clients started", self.label, started, len(self._tokens))
        return started

    async def start_worker(self, token: str) -> bool:
        """Build, start and register a worker for *token*.

        Returns ``False`` (and registers nothing) when the pool is closed,
        a worker for *token* already exists, or the start fails.
        """
        async with self._lock:
            if self._closed or token in self._workers or token in self._starting:
                return False
            self._starting.add(token)

        started = False
        try:
            worker = self._factory(token)
            await worker.start()
            started = True
        except SyncProbeError as exc:
            _logger.error("%s Sync client failed to start [accessToken = %s]: %s", self.label, mask_token(token), exc)
            return False
        except Exception:
            _logger.error(
                "%s Sync client failed to start [accessToken = %s]",
                self.label,
                mask_token(token),
                exc_info=True,
            )
            return False
        finally:
            # Cleared in the registration block below once started.
            if not started:
                self._starting.discard(token)

        async with self._lock:
            self._starting.discard(token)
            if self._closed:
                registered = False
            else:
                self._workers[token] = worker
                task = asyncio.create_task(self._watch(token, worker), name=f"pool-watch-{mask_token(token)}")
                self._watchers.add(task)
                task.add_done_callback(self._watchers.discard)
                registered = True

        if not registered:
            await worker.stop()
        return registered

    async def _watch(self, token: str, worker: SyncWorker) -> None:
        await worker.wait_disconnected()

        async with self._lock:
            if self._workers.get(token) is not worker:
                return
            del self._workers[token]

        _logger.warning("%s Sync client disconnected, restarting [accessToken = %s]", self.label, mask_token(token))
        await worker.stop()
        if self._restart_delay > 0:
            await asyncio.sleep(self._restart_delay)

        if await self.start_worker(token):
            self.restarts += 1
        elif not self._closed:
            _logger.error("%s Sync client could not be restarted [accessToken = %s]", self.label, mask_token(token))

    async def close(self) -> None:
        """Cancel watchers and stop every worker.  Idempotent."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            watchers = list(self._watchers)
            workers = list(self._workers.values())
            self._workers.clear()

        for task in watchers:
            task.cancel()
        for task in watchers:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for worker in workers:
            try:
                await worker.stop()
            except Exception:
                _logger.warning(
                    "%s Failed to stop sync client [accessToken = %s]",
                    self.label,
                    mask_token(worker.access_token),
                    exc_info=True,
                )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    async def snapshot(self) -> list[SyncWorker]:
        """Copy of the running workers, safe to iterate while the pool changes."""
        async with self._lock:
            return [w for w in self._workers.values() if w.state is WorkerState.RUNNING]

    def live_tokens(self) -> frozenset[str]:
        """Tokens with a registered or starting worker."""
        return frozenset(self._workers) | frozenset(self._starting)
