"""Probe configuration for syncprobe."""

from __future__ import annotations

import dataclasses
import json
import os
from enum import StrEnum
from pathlib import Path
from typing import Any

from syncprobe._constants import DEFAULT_ROOT_URL, MONITORED_PROPERTY
from syncprobe.exceptions import ConfigError


class Mode(StrEnum):
    """Which transport pools are active."""

    DUPLEX = "ws"
    STREAM = "rs"
    BOTH = "both"

    @property
    def uses_duplex(self) -> bool:
        return self in (Mode.DUPLEX, Mode.BOTH)

    @property
    def uses_stream(self) -> bool:
        return self in (Mode.STREAM, Mode.BOTH)


def _parse_mode(value: Any) -> Mode:
    try:
        return Mode(str(value).strip().lower())
    except ValueError as exc:
        choices = ", ".join(m.value for m in Mode)
        raise ConfigError(f"mode must be one of {choices}, got {value!r}") from exc


@dataclasses.dataclass(frozen=True)
class ProbeConfig:
    """Probe configuration.

    Parameters
    ----------
    user_tokens : tuple of str
        Tenant access tokens; one worker per token and per active transport.
    master_token : str
        Privileged token used by the orchestrator to read and write.
    root_url : str
        Store root address.
    mode : Mode
        ``ws`` (duplex only), ``rs`` (push-stream only) or ``both``.
    test_interval : float
        Seconds between two ticks.
    check_interval : int
        Milliseconds between two delivery checks of one worker.
    check_times : int
        Delivery checks per worker per tick.  ``check_times * check_interval``
        is the retry budget.
    monitored_property : str
        Thermostat property mutated on every tick.
    start_timeout : float
        Seconds a push-stream worker waits for the first snapshot of each
        collection before its start is considered failed.
    restart_delay : float
        Seconds a pool waits before replacing a disconnected worker.
    """

    user_tokens: tuple[str, ...]
    master_token: str
    root_url: str = DEFAULT_ROOT_URL
    mode: Mode = Mode.DUPLEX
    test_interval: float = 60.0
    check_interval: int = 500
    check_times: int = 60
    monitored_property: str = MONITORED_PROPERTY
    start_timeout: float = 30.0
    restart_delay: float = 0.0

    def __post_init__(self) -> None:
        if not self.master_token:
            raise ConfigError("master_token must be provided")
        if self.test_interval <= 0:
            raise ConfigError(f"test_interval must be positive, got {self.test_interval}")
        if self.check_interval < 0:
            raise ConfigError(f"check_interval must be >= 0, got {self.check_interval}")
        if self.check_times < 1:
            raise ConfigError(f"check_times must be >= 1, got {self.check_times}")
        if self.restart_delay < 0:
            raise ConfigError(f"restart_delay must be >= 0, got {self.restart_delay}")

    @property
    def retry_budget_ms(self) -> int:
        """Worst-case time spent polling one worker in one tick."""
        return self.check_times * self.check_interval

    @classmethod
    def from_file(cls, path: str | os.PathLike[str], **overrides: Any) -> ProbeConfig:
        """Create configuration from a JSON document.

        The document carries ``userTokens`` and ``masterToken`` and may also
        carry ``rootUrl``, ``mode``, ``testInterval``, ``checkInterval`` and
        ``checkTimes``.  Explicit keyword arguments (typically parsed from
        the command line) override document values.

        Raises
        ------
        ConfigError
            If the file cannot be read, is not a JSON object, or misses
            required keys.
        """
        config_path = Path(path)
        try:
            document = json.loads(config_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigError(f"Cannot read config file {config_path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file {config_path} is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise ConfigError(f"Config file {config_path} must contain a JSON object")

        _DOCUMENT_MAP = {
            "userTokens": "user_tokens",
            "masterToken": "master_token",
            "rootUrl": "root_url",
            "mode": "mode",
            "testInterval": "test_interval",
            "checkInterval": "check_interval",
            "checkTimes": "check_times",
            "monitoredProperty": "monitored_property",
            "startTimeout": "start_timeout",
            "restartDelay": "restart_delay",
        }
        config_kwargs: dict[str, Any] = {}
        for doc_key, field_name in _DOCUMENT_MAP.items():
            if doc_key in document:
                config_kwargs[field_name] = document[doc_key]

        config_kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls._build(config_kwargs)

    @classmethod
    def from_env(cls, **overrides: Any) -> ProbeConfig:
        """Create configuration from ``SYNCPROBE_*`` environment variables.

        ``SYNCPROBE_USER_TOKENS`` is a comma-separated list.  Explicit keyword
        arguments override environment values.
        """
        env = os.environ

        _ENV_CONFIG_MAP = {
            "SYNCPROBE_USER_TOKENS": "user_tokens",
            "SYNCPROBE_MASTER_TOKEN": "master_token",
            "SYNCPROBE_ROOT_URL": "root_url",
            "SYNCPROBE_MODE": "mode",
            "SYNCPROBE_TEST_INTERVAL": "test_interval",
            "SYNCPROBE_CHECK_INTERVAL": "check_interval",
            "SYNCPROBE_CHECK_TIMES": "check_times",
            "SYNCPROBE_MONITORED_PROPERTY": "monitored_property",
            "SYNCPROBE_START_TIMEOUT": "start_timeout",
            "SYNCPROBE_RESTART_DELAY": "restart_delay",
        }
        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        config_kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls._build(config_kwargs)

    @classmethod
    def _build(cls, kwargs: dict[str, Any]) -> ProbeConfig:
        if "master_token" not in kwargs:
            raise ConfigError("masterToken must be provided")

        tokens = kwargs.get("user_tokens", ())
        if isinstance(tokens, str):
            tokens = [t for t in (part.strip() for part in tokens.split(",")) if t]
        if not isinstance(tokens, (list, tuple)) or not all(isinstance(t, str) for t in tokens):
            raise ConfigError("userTokens must be a list of strings")
        # Duplicate tokens would break the one-worker-per-token invariant.
        kwargs["user_tokens"] = tuple(dict.fromkeys(tokens))

        if "mode" in kwargs:
            kwargs["mode"] = _parse_mode(kwargs["mode"])

        numeric: dict[str, type] = {
            "test_interval": float,
            "check_interval": int,
            "check_times": int,
            "start_timeout": float,
            "restart_delay": float,
        }
        for field_name, caster in numeric.items():
            if field_name in kwargs:
                try:
                    kwargs[field_name] = caster(kwargs[field_name])
                except (TypeError, ValueError) as exc:
                    raise ConfigError(f"{field_name} must be numeric, got {kwargs[field_name]!r}") from exc

        return cls(**kwargs)
