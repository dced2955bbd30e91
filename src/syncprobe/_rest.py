"""REST reads/writes and server-sent-event streams over aiohttp."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import quote

import aiohttp

from syncprobe._constants import DEFAULT_ROOT_URL
from syncprobe._redact import mask_token, redact_for_log, redact_url
from syncprobe._transport import StreamEvent
from syncprobe.exceptions import (
    StoreAuthError,
    SyncProbeError,
    TransportError,
    WriteError,
)

_logger = logging.getLogger(__name__)

_AUTH_STATUSES = frozenset({401, 403})

# Streams stay open indefinitely; only connection establishment is bounded.
_STREAM_TIMEOUT = aiohttp.ClientTimeout(total=None, connect=30.0, sock_read=None)


class SseParser:
    """Incremental ``text/event-stream`` parser.

    Feed decoded lines (without the trailing newline); a complete
    :class:`StreamEvent` is returned when a blank line terminates it.
    The ``data`` field is JSON-decoded; ``put``/``patch`` payloads of the
    ``{"path": ..., "data": ...}`` shape are unwrapped.
    """

    def __init__(self) -> None:
        self._event = ""
        self._data: list[str] = []

    def feed_line(self, line: str) -> StreamEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        return None

    def _dispatch(self) -> StreamEvent | None:
        if not self._event and not self._data:
            return None
        event_name = self._event or "message"
        raw = "\n".join(self._data)
        self._event = ""
        self._data = []

        try:
            payload: Any = json.loads(raw) if raw else None
        except json.JSONDecodeError:
            payload = raw

        if event_name in ("put", "patch") and isinstance(payload, dict) and "path" in payload:
            return StreamEvent(event=event_name, path=str(payload["path"]), data=payload.get("data"))
        return StreamEvent(event=event_name, path="/", data=payload)


class SseEventStream:
    """Push stream backed by one streaming aiohttp response."""

    def __init__(self, response: aiohttp.ClientResponse, *, label: str = "") -> None:
        self._response = response
        self._label = label
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[StreamEvent]:
        parser = SseParser()
        try:
            async for raw_line in self._response.content:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                event = parser.feed_line(line)
                if event is not None:
                    yield event
        except aiohttp.ClientError as exc:
            if self._closed:
                return
            raise TransportError(f"Stream {self._label} failed: {exc}", path=self._label) from exc
        # Flush an event left unterminated by EOF.
        event = parser.feed_line("")
        if event is not None:
            yield event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()


class RestStore:
    """Store client speaking the REST + streaming HTTP API.

    Implements the ``StoreWriter`` and ``StreamConnector`` protocols.  The
    duplex transport is not available over plain HTTP.

    Usage::

        async with RestStore("https://example-store.io") as store:
            await store.authenticate(master_token)
            root = await store.read_once("/")
    """

    def __init__(
        self,
        root_url: str = DEFAULT_ROOT_URL,
        *,
        session: aiohttp.ClientSession | None = None,
        path_suffix: str = "",
        request_timeout: float = 30.0,
    ) -> None:
        self._root_url = root_url.rstrip("/")
        self._external_session = session is not None
        self._http = session
        self._path_suffix = path_suffix
        self._request_timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._token: str | None = None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> RestStore:
        if self._http is None:
            self._http = aiohttp.ClientSession()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if not self._external_session and self._http is not None:
            await self._http.close()
        self._http = None

    def _require_http(self) -> aiohttp.ClientSession:
        if self._http is None:
            raise SyncProbeError("Store not initialized. Use 'async with RestStore(...) as store:'")
        return self._http

    def url(self, path: str, token: str) -> str:
        """Absolute URL of *path* authenticated with *token*."""
        normalized = "/" + path.strip("/")
        return f"{self._root_url}{normalized}{self._path_suffix}?auth={quote(token, safe='')}"

    # ------------------------------------------------------------------
    # StoreWriter
    # ------------------------------------------------------------------

    @property
    def is_authenticated(self) -> bool:
        return self._token is not None

    async def authenticate(self, token: str) -> None:
        """Validate *token* with a root read and keep it for later calls."""
        await self._get_json("/", token)
        self._token = token
        _logger.debug("Store session authenticated [accessToken = %s]", mask_token(token))

    async def unauthenticate(self) -> None:
        self._token = None

    def _require_token(self) -> str:
        if self._token is None:
            raise StoreAuthError("Store session is not authenticated")
        return self._token

    async def read_once(self, path: str = "/") -> Any:
        return await self._get_json(path, self._require_token())

    async def write(self, path: str, value: Any) -> None:
        http = self._require_http()
        url = self.url(path, self._require_token())
        _logger.debug("PUT %s %s", redact_url(url), redact_for_log(value))
        try:
            async with http.put(url, json=value, timeout=self._request_timeout) as resp:
                text = await resp.text()
                if resp.status in _AUTH_STATUSES:
                    self._token = None
                    raise StoreAuthError(f"HTTP {resp.status} writing {path}", path=path)
                if resp.status >= 300:
                    raise WriteError(f"HTTP {resp.status} writing {path}: {text[:200]}", path=path)
        except aiohttp.ClientError as exc:
            raise WriteError(f"Write to {path} failed: {exc}", path=path) from exc

    async def _get_json(self, path: str, token: str) -> Any:
        http = self._require_http()
        url = self.url(path, token)
        _logger.debug("GET %s", redact_url(url))
        try:
            async with http.get(
                url,
                headers={"accept": "application/json"},
                timeout=self._request_timeout,
            ) as resp:
                text = await resp.text()
                if resp.status in _AUTH_STATUSES:
                    raise StoreAuthError(f"HTTP {resp.status} reading {path}", path=path)
                if resp.status != 200:
                    raise TransportError(
                        f"HTTP {resp.status} reading {path}: {text[:200]}",
                        status_code=resp.status,
                        path=path,
                    )
        except aiohttp.ClientError as exc:
            raise TransportError(f"Read of {path} failed: {exc}", path=path) from exc

        try:
            return json.loads(text) if text else None
        except json.JSONDecodeError as exc:
            raise TransportError(f"Invalid JSON from {path}: {text[:200]}", path=path) from exc

    # ------------------------------------------------------------------
    # StreamConnector
    # ------------------------------------------------------------------

    async def open_stream(self, path: str, token: str) -> SseEventStream:
        http = self._require_http()
        url = self.url(path, token)
        _logger.debug("STREAM %s", redact_url(url))
        try:
            resp = await http.get(
                url,
                headers={"accept": "text/event-stream"},
                timeout=_STREAM_TIMEOUT,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"Stream {path} failed to open: {exc}", path=path) from exc

        if resp.status != 200:
            resp.release()
            if resp.status in _AUTH_STATUSES:
                raise StoreAuthError(f"HTTP {resp.status} opening stream {path}", path=path)
            raise TransportError(
                f"HTTP {resp.status} opening stream {path}",
                status_code=resp.status,
                path=path,
            )
        return SseEventStream(resp, label=path)
