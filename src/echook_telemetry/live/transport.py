"""Transport — the byte-frame channel the ConnectionManager reads from."""

from __future__ import annotations

import contextlib
from typing import Any, Callable, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

from echook_telemetry.telemetry.codec import encode


class TransportError(Exception):
    """Raised when the connection cannot be opened or has dropped."""


class Transport(Protocol):
    """connect / send / receive / close contract of a messaging transport."""

    def connect(self) -> None: ...

    def send(self, data: bytes) -> None: ...

    def recv(self, timeout: float | None = None) -> bytes | None:
        """Next frame, or None if nothing arrived within *timeout* seconds."""
        ...

    def close(self) -> None: ...


def _with_query(url: str, **params: str) -> str:
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query))
    query.update(params)
    return urlunsplit(parts._replace(query=urlencode(query)))


class WebSocketTransport:
    """Binary WebSocket transport (``websockets`` synchronous client).

    On connect it asks for MessagePack frames and, when *subject_id* is set,
    sends a ``join`` message so the server routes that vehicle's stream here.

    Parameters
    ----------
    url:
        Server URL, e.g. ``"ws://localhost:3000"``.
    subject_id:
        Vehicle/car id whose stream to join.
    open_timeout:
        Seconds allowed for the opening handshake.
    connect_fn:
        Replacement for :func:`websockets.sync.client.connect` (tests).
    """

    def __init__(
        self,
        url: str,
        subject_id: str | None = None,
        open_timeout: float = 10.0,
        connect_fn: Callable[..., Any] | None = None,
    ) -> None:
        self._url = _with_query(url, format="msgpack")
        self._subject_id = subject_id
        self._open_timeout = open_timeout
        self._connect_fn = connect_fn or ws_connect
        self._ws: Any = None

    @property
    def url(self) -> str:
        return self._url

    def connect(self) -> None:
        try:
            self._ws = self._connect_fn(self._url, open_timeout=self._open_timeout)
        except (OSError, TimeoutError, WebSocketException) as exc:
            raise TransportError(f"Cannot connect to {self._url}: {exc}") from exc
        if self._subject_id is not None:
            self.send(encode({"event": "join", "carId": self._subject_id}))

    def send(self, data: bytes) -> None:
        if self._ws is None:
            raise TransportError("Not connected")
        try:
            self._ws.send(data)
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Send failed: {exc}") from exc

    def recv(self, timeout: float | None = None) -> bytes | None:
        if self._ws is None:
            raise TransportError("Not connected")
        try:
            message = self._ws.recv(timeout=timeout)
        except TimeoutError:
            return None
        except ConnectionClosed as exc:
            raise TransportError(f"Connection closed: {exc}") from exc
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Receive failed: {exc}") from exc
        if isinstance(message, str):
            return message.encode("utf-8")
        return message

    def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            if self._subject_id is not None:
                with contextlib.suppress(OSError, WebSocketException):
                    ws.send(encode({"event": "leave", "carId": self._subject_id}))
            with contextlib.suppress(OSError, WebSocketException):
                ws.close()
