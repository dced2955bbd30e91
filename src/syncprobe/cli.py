"""Command-line entry point.

Examples::

    syncprobe --config probe.json --mode rs
    syncprobe --config probe.json --backend memory --mode both --test-interval 2 --duration 10
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
from collections.abc import AsyncIterator, Sequence
from typing import Any

from syncprobe._rest import RestStore
from syncprobe.config import Mode, ProbeConfig
from syncprobe.exceptions import ConfigError, SyncProbeError
from syncprobe.memory import MemoryStore
from syncprobe.runtime import ProbeRuntime

_logger = logging.getLogger(__name__)


def demo_tree() -> dict[str, Any]:
    """Store contents used by ``--backend memory`` self-test runs."""
    return {
        "structures": {
            "structure-1": {"structure_id": "structure-1", "name": "Home", "away": "home"},
        },
        "devices": {
            "thermostats": {
                "thermostat-1": {"device_id": "thermostat-1", "name": "Hallway", "target_temperature_f": 70},
                "thermostat-2": {"device_id": "thermostat-2", "name": "Bedroom", "target_temperature_f": 88},
            },
            "smoke_co_alarms": {
                "alarm-1": {"device_id": "alarm-1", "name": "Kitchen", "battery_health": "ok"},
            },
        },
    }


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="syncprobe",
        description="Measure write propagation to many realtime store subscribers.",
    )
    parser.add_argument(
        "--config",
        "-c",
        help="JSON document with userTokens and masterToken (default: SYNCPROBE_* environment).",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        help="ws = duplex sessions, rs = push streams, both = one pool of each.",
    )
    parser.add_argument("--test-interval", type=float, help="Seconds between two test runs.")
    parser.add_argument("--check-interval", type=int, help="Milliseconds between two delivery checks.")
    parser.add_argument("--check-times", type=int, help="Delivery checks per client per test run.")
    parser.add_argument(
        "--backend",
        choices=("rest", "memory"),
        default="rest",
        help="rest = hosted store over HTTP, memory = in-process self-test.",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=0,
        help="Maximum runtime in seconds (0 = run until Ctrl+C).",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logs.",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> ProbeConfig:
    overrides = {
        "mode": args.mode,
        "test_interval": args.test_interval,
        "check_interval": args.check_interval,
        "check_times": args.check_times,
    }
    if args.config:
        return ProbeConfig.from_file(args.config, **overrides)
    return ProbeConfig.from_env(**overrides)


@contextlib.asynccontextmanager
async def _open_runtime(config: ProbeConfig, backend: str) -> AsyncIterator[ProbeRuntime]:
    if backend == "memory":
        store = MemoryStore(demo_tree(), tokens=(config.master_token, *config.user_tokens))
        async with ProbeRuntime(config, writer=store, duplex=store, stream=store) as runtime:
            yield runtime
        return

    async with RestStore(config.root_url) as rest:
        async with ProbeRuntime(config, writer=rest, stream=rest) as runtime:
            yield runtime


async def _run(config: ProbeConfig, backend: str, duration: float) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def stop_handler(signame: str) -> None:
        _logger.info("Process got %s. Stop test", signame)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_handler, sig.name)
    if duration > 0:
        loop.call_later(duration, stop_event.set)

    _logger.info("Test starts [mode = %s, clients = %d]", config.mode, len(config.user_tokens))
    async with _open_runtime(config, backend) as runtime:
        await runtime.run(stop_event)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config(args)
    except ConfigError as exc:
        _logger.error("Invalid configuration: %s", exc)
        return 2

    try:
        asyncio.run(_run(config, args.backend, args.duration))
    except ConfigError as exc:
        _logger.error("Invalid configuration: %s", exc)
        return 2
    except SyncProbeError as exc:
        _logger.error("Test aborted: %s", exc)
        return 1
    return 0
