"""ConnectionManager — live stream lifecycle, dispatch, liveness and reconnect."""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from echook_telemetry.live.transport import Transport, TransportError
from echook_telemetry.telemetry.codec import DecodeError, decode_packet
from echook_telemetry.telemetry.models import Packet

_logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTED = "disconnected"


class Liveness(enum.Enum):
    FRESH = "fresh"
    DEGRADED = "degraded"
    STALE = "stale"


def classify_liveness(
    last_packet_time: float | None,
    now_ms: float,
    degraded_after_ms: float = 5_000,
    stale_after_ms: float = 10_000,
    connected: bool = True,
) -> Liveness:
    """Classify stream freshness from the age of the newest packet.

    Not connected, or no packet yet, counts as stale.
    """
    if not connected or not last_packet_time:
        return Liveness.STALE
    age = now_ms - last_packet_time
    if age <= degraded_after_ms:
        return Liveness.FRESH
    if age <= stale_after_ms:
        return Liveness.DEGRADED
    return Liveness.STALE


@dataclass(frozen=True)
class BackoffPolicy:
    """Bounded exponential backoff: ``initial_s * factor**(attempt-1)``, capped."""

    initial_s: float = 0.5
    factor: float = 2.0
    max_s: float = 30.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait before retry number *attempt* (1-based)."""
        if attempt <= 0:
            return 0.0
        return min(self.max_s, self.initial_s * self.factor ** min(attempt - 1, 64))


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


class ConnectionManager:
    """Owns the live transport and feeds decoded packets to a sink.

    A reader thread connects through *transport_factory*, receives frames and
    passes each one to :meth:`handle_frame`.  When the transport drops, the
    manager moves to ``RECONNECTING``, retries with *backoff*, and after
    reconnecting asks *on_backfill* for the missed interval.  A second thread
    re-evaluates :attr:`liveness` every *liveness_interval_s*.

    Parameters
    ----------
    transport_factory:
        Returns a fresh, unconnected :class:`Transport` per attempt.
    on_packet:
        Sink for each decoded packet; called from the reader thread, one
        packet at a time.
    on_backfill:
        ``(start_ms, end_ms)`` hook called after a reconnect.  Its failures
        are logged and do not stop the stream.
    clock:
        Returns epoch milliseconds.  Injected for testability.
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        on_packet: Callable[[Packet], None],
        on_backfill: Callable[[float, float], object] | None = None,
        backoff: BackoffPolicy | None = None,
        liveness_interval_s: float = 1.0,
        degraded_after_ms: float = 5_000,
        stale_after_ms: float = 10_000,
        recv_timeout_s: float = 0.5,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._on_packet = on_packet
        self._on_backfill = on_backfill
        self._backoff = backoff or BackoffPolicy()
        self._liveness_interval_s = liveness_interval_s
        self._degraded_after_ms = degraded_after_ms
        self._stale_after_ms = stale_after_ms
        self._recv_timeout_s = recv_timeout_s
        self._clock = clock or _wall_clock_ms

        self._state = ConnectionState.DISCONNECTED
        self._liveness = Liveness.STALE
        self._last_packet_time: float = 0
        self._transport: Transport | None = None
        self._stop_event = threading.Event()
        self._reader: threading.Thread | None = None
        self._monitor: threading.Thread | None = None
        self._callbacks: list[Callable[[ConnectionState], None]] = []
        self._liveness_callbacks: list[Callable[[Liveness], None]] = []
        self.dropped_frames = 0
        self.reconnects = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def last_packet_time(self) -> float:
        """Timestamp of the newest dispatched packet; 0 before the first."""
        return self._last_packet_time

    @property
    def liveness(self) -> Liveness:
        return self._liveness

    def connect(self) -> None:
        """Start the reader and liveness threads.  No-op if already running."""
        if self._reader is not None and self._reader.is_alive():
            return
        self._stop_event.clear()
        self._set_state(ConnectionState.CONNECTING)
        self._reader = threading.Thread(target=self._run, daemon=True, name="TelemetryReader")
        self._monitor = threading.Thread(target=self._watch, daemon=True, name="TelemetryLiveness")
        self._reader.start()
        self._monitor.start()

    def disconnect(self) -> None:
        """Stop both threads, close the transport, and enter ``DISCONNECTED``."""
        self._stop_event.set()
        transport = self._transport
        if transport is not None:
            transport.close()
        for thread in (self._reader, self._monitor):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=2.0)
        self._reader = None
        self._monitor = None
        self._set_state(ConnectionState.DISCONNECTED)
        self.check_liveness()

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """Call *callback* with the new :class:`ConnectionState` on every change."""
        self._callbacks.append(callback)

    def register_liveness_callback(self, callback: Callable[[Liveness], None]) -> None:
        """Call *callback* with the new :class:`Liveness` on every change."""
        self._liveness_callbacks.append(callback)

    def handle_frame(self, data: bytes) -> bool:
        """Decode one frame and dispatch it to the sink.

        Returns False when the frame was dropped (malformed, or the sink
        raised).  Never raises.
        """
        try:
            packet = decode_packet(data, now_ms=self._clock())
        except DecodeError as exc:
            self.dropped_frames += 1
            _logger.warning("Dropping malformed frame: %s", exc)
            return False

        try:
            self._on_packet(packet)
        except Exception:
            self.dropped_frames += 1
            _logger.exception("Packet sink failed; frame dropped")
            return False

        self._last_packet_time = packet["timestamp"]
        return True

    def check_liveness(self) -> Liveness:
        """Re-classify liveness now, firing callbacks on change."""
        level = classify_liveness(
            self._last_packet_time,
            self._clock(),
            self._degraded_after_ms,
            self._stale_after_ms,
            connected=self.is_connected,
        )
        if level is not self._liveness:
            self._liveness = level
            if level is Liveness.DEGRADED:
                _logger.warning("Telemetry degraded: no packet for %.1fs",
                                (self._clock() - self._last_packet_time) / 1000.0)
            elif level is Liveness.STALE:
                _logger.warning("Telemetry stale")
            else:
                _logger.info("Telemetry fresh")
            self._fire(self._liveness_callbacks, level)
        return level

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self) -> None:
        attempt = 0
        had_connection = False
        while not self._stop_event.is_set():
            try:
                transport = self._transport_factory()
                transport.connect()
            except Exception as exc:
                if self._stop_event.is_set():
                    break
                attempt += 1
                self._set_state(ConnectionState.RECONNECTING)
                delay = self._backoff.delay(attempt)
                if isinstance(exc, TransportError):
                    _logger.warning("Connect attempt %d failed: %s; retrying in %.1fs", attempt, exc, delay)
                else:
                    _logger.exception("Connect attempt %d raised unexpectedly; retrying in %.1fs", attempt, delay)
                self._stop_event.wait(delay)
                continue

            self._transport = transport
            if self._stop_event.is_set():
                transport.close()
                break

            attempt = 0
            self._set_state(ConnectionState.CONNECTED)
            if had_connection:
                self.reconnects += 1
                self._request_backfill()
            had_connection = True

            try:
                self._read_loop(transport)
            except TransportError as exc:
                _logger.warning("Transport dropped: %s", exc)
            except Exception:
                _logger.exception("Reader failed; reconnecting")
            finally:
                self._transport = None
                transport.close()

            if not self._stop_event.is_set():
                attempt += 1
                self._set_state(ConnectionState.RECONNECTING)
                self._stop_event.wait(self._backoff.delay(attempt))

    def _read_loop(self, transport: Transport) -> None:
        while not self._stop_event.is_set():
            data = transport.recv(timeout=self._recv_timeout_s)
            if data is not None:
                self.handle_frame(data)

    def _request_backfill(self) -> None:
        if self._on_backfill is None or not self._last_packet_time:
            return
        start, end = self._last_packet_time, self._clock()
        if start >= end:
            return
        _logger.info("Reconnected; back-filling %.1fs gap", (end - start) / 1000.0)
        try:
            self._on_backfill(start, end)
        except Exception as exc:
            _logger.warning("Backfill of %.0f..%.0f failed: %s", start, end, exc)

    def _watch(self) -> None:
        while not self._stop_event.wait(self._liveness_interval_s):
            self.check_liveness()

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        _logger.info("Connection %s -> %s", self._state.value, state.value)
        self._state = state
        self._fire(self._callbacks, state)

    def _fire(self, callbacks: list, value) -> None:
        for cb in callbacks:
            try:
                cb(value)
            except Exception:
                _logger.exception("Connection callback %r failed", cb)
