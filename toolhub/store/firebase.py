"""Firebase Realtime Database adapter.

Talks to the database through its REST API using :mod:`httpx`:

  GET / PUT / PATCH / DELETE / POST  {base_url}/{path}.json

Subscriptions use the REST streaming endpoint (``Accept:
text/event-stream``).  The server opens every stream with a ``put`` event
at ``/`` carrying the current value, which gives the replay-on-attach
behaviour the rest of the package is written against.  Each stream runs in
its own task and reconnects with exponential backoff.  A stream that stays
silent past the keep-alive interval is treated as dropped.

The REST API has no ``.info/connected`` location, so connectivity is
derived locally: it goes up when a request or stream succeeds and down
when one fails with a network error.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import Any, AsyncIterator

import httpx

from toolhub.store.base import (
    CONNECTED_PATH,
    SharedStateStore,
    StoreConnectionError,
    StoreError,
    Subscription,
    join_path,
    split_path,
)
from toolhub.store.memory import write_tree

logger = logging.getLogger(__name__)

_BACKOFF_BASE = 1
_BACKOFF_MAX = 60

# The server sends keep-alive about every 30s; silence past this means a dead link.
_STREAM_READ_TIMEOUT = 60.0

_NETWORK_ERRORS = (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)


class StreamCancelledError(StoreError):
    """The database closed a stream for good (rules no longer allow the read)."""


async def read_lines(response: httpx.Response, timeout: float) -> AsyncIterator[str]:
    """Yield response lines; raise :class:`httpx.ReadTimeout` after *timeout* seconds of silence."""
    lines = response.aiter_lines().__aiter__()
    while True:
        try:
            line = await asyncio.wait_for(lines.__anext__(), timeout)
        except StopAsyncIteration:
            return
        except asyncio.TimeoutError:
            raise httpx.ReadTimeout(f"No data on stream for {timeout:g}s") from None
        yield line


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[tuple[str, str]]:
    """Parse a text/event-stream body into ``(event, data)`` pairs."""
    event = ""
    data: list[str] = []
    async for line in lines:
        if not line:
            if event or data:
                yield event or "message", "\n".join(data)
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if event or data:
        yield event or "message", "\n".join(data)


def apply_stream_event(snapshot: Any, event: str, payload: dict) -> Any:
    """Fold one ``put``/``patch`` event into the local snapshot of a stream."""
    segments = split_path(payload.get("path", "/"))
    data = payload.get("data")
    if event == "put":
        return write_tree(snapshot, segments, data)
    if event == "patch" and isinstance(data, dict):
        for key, value in data.items():
            snapshot = write_tree(snapshot, segments + split_path(key), value)
    return snapshot


class _Stream:
    """Book-keeping for one streaming subscription."""

    def __init__(self, sub: Subscription) -> None:
        self.sub = sub
        self.snapshot: Any = None
        self.delivered = False
        self.last: Any = None
        self.task: asyncio.Task | None = None

    def emit(self) -> None:
        if self.delivered and self.snapshot == self.last:
            return
        self.delivered = True
        self.last = copy.deepcopy(self.snapshot)
        self.sub.push(copy.deepcopy(self.snapshot))


class FirebaseStore(SharedStateStore):
    """Shared state store backed by a Firebase Realtime Database.

    Parameters
    ----------
    base_url:
        Database URL, e.g. ``https://my-project-default-rtdb.firebaseio.com``.
    auth:
        Database secret or ID token, sent as the ``auth`` query parameter.
    timeout:
        Per-request timeout in seconds.
    stream_timeout:
        Seconds a stream may stay silent before it is treated as dropped.
    client:
        Optional pre-built :class:`httpx.AsyncClient` (tests pass one with a
        mock transport).
    """

    kind = "firebase"

    def __init__(
        self,
        base_url: str,
        auth: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        stream_timeout: float = _STREAM_READ_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.stream_timeout = stream_timeout
        self._auth = auth
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._connected = False
        self._streams: dict[Subscription, _Stream] = {}
        self._connection_subs: set[Subscription] = set()

    # ------------------------------------------------------------------ #
    # Key-value API
    # ------------------------------------------------------------------ #

    async def get(self, path: str) -> Any:
        if join_path(path) == CONNECTED_PATH:
            return self._connected
        return await self._request("GET", path)

    async def set(self, path: str, value: Any) -> None:
        if value is None:
            await self._request("DELETE", path)
        else:
            await self._request("PUT", path, body=value)

    async def update(self, path: str, values: dict[str, Any]) -> None:
        await self._request("PATCH", path, body=values)

    async def remove(self, path: str) -> None:
        await self._request("DELETE", path)

    async def push(self, path: str, value: Any) -> str:
        result = await self._request("POST", path, body=value)
        if not isinstance(result, dict) or "name" not in result:
            raise StoreError(f"Unexpected push response for {path}: {result!r}")
        return result["name"]

    async def ping(self) -> bool:
        try:
            await self._request("GET", "", params={"shallow": "true"})
            return True
        except StoreError as exc:
            logger.warning("Store ping failed: %s", exc)
            return False

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #

    async def subscribe(self, path: str) -> Subscription:
        if join_path(path) == CONNECTED_PATH:
            sub = Subscription(CONNECTED_PATH, on_close=self._connection_subs.discard)
            self._connection_subs.add(sub)
            sub.push(self._connected)
            return sub

        sub = Subscription(join_path(path), on_close=self._cancel_stream)
        stream = _Stream(sub)
        self._streams[sub] = stream
        stream.task = asyncio.get_running_loop().create_task(self._stream_loop(stream))
        return sub

    def _cancel_stream(self, sub: Subscription) -> None:
        stream = self._streams.pop(sub, None)
        if stream and stream.task and not stream.task.done():
            stream.task.cancel()

    async def _stream_loop(self, stream: _Stream) -> None:
        """Outer reconnect loop with exponential backoff."""
        backoff = _BACKOFF_BASE
        path = stream.sub.path
        while not stream.sub.closed:
            try:
                if await self._stream_once(stream):
                    backoff = _BACKOFF_BASE
            except StreamCancelledError as exc:
                logger.error("Store stream on /%s cancelled: %s", path, exc)
                stream.sub.close()
                break
            except asyncio.CancelledError:
                break
            except (httpx.HTTPError, StoreError, ValueError) as exc:
                logger.warning("Store stream on /%s dropped: %s — retrying in %ss", path, exc, backoff)
                if isinstance(exc, _NETWORK_ERRORS):
                    self._set_connected(False)
            except Exception as exc:  # noqa: BLE001
                logger.error("Unexpected store stream error on /%s: %s — retrying in %ss", path, exc, backoff)

            if stream.sub.closed:
                break
            try:
                await asyncio.sleep(backoff)
            except asyncio.CancelledError:
                break
            backoff = min(backoff * 2, _BACKOFF_MAX)

    async def _stream_once(self, stream: _Stream) -> bool:
        """Single stream lifecycle.  Returns True if any event was received."""
        received = False
        url = self._url(stream.sub.path)
        async with self._client.stream(
            "GET",
            url,
            params=self._params(),
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(self.timeout, read=self.stream_timeout),
        ) as response:
            self._check(response, "GET", stream.sub.path)
            self._set_connected(True)
            snapshot: Any = None
            async for event, data in iter_sse(read_lines(response, self.stream_timeout)):
                if stream.sub.closed:
                    break
                if event == "keep-alive":
                    continue
                if event == "cancel":
                    raise StreamCancelledError(data or "permission denied")
                if event == "auth_revoked":
                    raise StoreError("credential expired")
                if event not in ("put", "patch"):
                    continue
                payload = json.loads(data)
                if not isinstance(payload, dict):
                    continue
                snapshot = apply_stream_event(snapshot, event, payload)
                received = True
                stream.snapshot = snapshot
                stream.emit()
        return received

    # ------------------------------------------------------------------ #
    # Connectivity
    # ------------------------------------------------------------------ #

    @property
    def connected(self) -> bool:
        return self._connected

    def _set_connected(self, connected: bool) -> None:
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Store %s (%s)", "connected" if connected else "disconnected", self.base_url)
        for sub in list(self._connection_subs):
            sub.push(connected)

    async def close(self) -> None:
        streams = list(self._streams.values())
        for stream in streams:
            stream.sub.close()
        tasks = [s.task for s in streams if s.task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for sub in list(self._connection_subs):
            sub.close()
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------ #
    # Private helpers
    # ------------------------------------------------------------------ #

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{join_path(path)}.json"

    def _params(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        params = {"auth": self._auth} if self._auth else {}
        if extra:
            params.update(extra)
        return params

    async def _request(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        url = self._url(path)
        kwargs: dict[str, Any] = {"params": self._params(params)}
        if body is not None:
            kwargs["json"] = body
        try:
            response = await self._client.request(method, url, **kwargs)
        except _NETWORK_ERRORS as exc:
            self._set_connected(False)
            raise StoreConnectionError(f"Cannot reach store at {url}: {exc}") from exc
        self._set_connected(True)
        self._check(response, method, path)
        if not response.content:
            return None
        return response.json()

    @staticmethod
    def _check(response: httpx.Response, method: str, path: str) -> None:
        if response.status_code in (401, 403):
            raise StoreError(f"Store denied {method} /{join_path(path)} ({response.status_code})")
        if response.is_error:
            raise StoreError(f"Store {method} /{join_path(path)} failed ({response.status_code})")
