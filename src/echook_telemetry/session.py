"""TelemetrySession — one subscriber's view of one vehicle's telemetry.

Owns the history buffer, race sessions, current lap index, connection
manager and viewport coordinator, and is the only place they are wired
together.

Ordering rules:
  - ``ingest`` runs append → lap detection under the session lock, so lap
    detection always sees a buffer that already holds the packet.
  - Historic loads fetch outside the lock and commit under it.  Each load
    takes a generation number; a load that finishes after a newer one was
    issued is discarded (last request wins).
  - While a destructive ``load_range`` is in flight, live packets are queued
    and applied once it commits, fails, or is superseded.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from datetime import date, datetime
from types import MappingProxyType
from typing import Any

from echook_telemetry.analysis.models import LapInterval, Race, RaceSessions
from echook_telemetry.analysis.races import (
    lap_intervals,
    latest_race,
    next_lap_index,
    replay_race_sessions,
    update_race_sessions,
)
from echook_telemetry.config import Settings, UnitPrefs
from echook_telemetry.history.buffer import HistoryBuffer
from echook_telemetry.history.client import (
    BackfillError,
    HistoryClient,
    retention_ms_from_days,
    validate_range,
)
from echook_telemetry.history.export import history_to_csv
from echook_telemetry.live.connection import BackoffPolicy, ConnectionManager
from echook_telemetry.live.transport import Transport, WebSocketTransport
from echook_telemetry.telemetry import keys
from echook_telemetry.telemetry.models import Packet
from echook_telemetry.telemetry.scaling import scale_packet
from echook_telemetry.viewport.coordinator import ViewportCoordinator

_logger = logging.getLogger(__name__)

_MINUTE_MS = 60 * 1000


def _wall_clock_ms() -> float:
    return time.time() * 1000.0


def _at(day: date, hhmm: str) -> float:
    """Epoch ms of local wall-clock time *hhmm* on *day*."""
    hours, minutes = (int(part) for part in hhmm.split(":"))
    return datetime(day.year, day.month, day.day, hours, minutes).timestamp() * 1000.0


class TelemetrySession:
    """Live and historic telemetry for *subject_id*.

    Parameters
    ----------
    subject_id:
        Vehicle/car id used for the live stream and history requests.
    settings:
        Runtime settings; defaults to :class:`Settings` defaults.
    history_client:
        Historic data service client.  Injected for testability.
    transport_factory:
        Builds a live transport per connection attempt; defaults to a
        :class:`WebSocketTransport` on ``settings.ws_url``.
    clock:
        Returns epoch milliseconds.
    """

    def __init__(
        self,
        subject_id: str,
        settings: Settings | None = None,
        history_client: HistoryClient | None = None,
        transport_factory: Callable[[], Transport] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.subject_id = subject_id
        self._settings = settings or Settings()
        self._clock = clock or _wall_clock_ms
        self._history = history_client or HistoryClient(self._settings.api_base_url)

        self.buffer = HistoryBuffer(
            max_points=self._settings.max_history_points,
            late_tolerance_ms=self._settings.late_tolerance_ms,
        )
        self.viewport = ViewportCoordinator(self._bounds)

        if transport_factory is None:
            ws_url = self._settings.ws_url

            def transport_factory() -> Transport:
                return WebSocketTransport(ws_url, subject_id=subject_id)

        self.connection = ConnectionManager(
            transport_factory,
            on_packet=self.ingest,
            on_backfill=self.backfill,
            backoff=BackoffPolicy(
                initial_s=self._settings.backoff_initial_s,
                max_s=self._settings.backoff_max_s,
            ),
            liveness_interval_s=self._settings.liveness_interval_s,
            degraded_after_ms=self._settings.degraded_after_ms,
            stale_after_ms=self._settings.stale_after_ms,
            clock=self._clock,
        )

        self._lock = threading.RLock()
        self._races: RaceSessions = {}
        self._current_lap = 0
        self._live_packet: Packet | None = None
        self._load_generation = 0
        self._replacing: int | None = None
        self._replace_count = 0
        self._pending_live: deque[Packet] = deque()
        self.available_days: list[date] = []
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # Live stream
    # ------------------------------------------------------------------

    def connect(self) -> None:
        self.connection.connect()

    def disconnect(self) -> None:
        self.connection.disconnect()

    def ingest(self, packet: Packet) -> None:
        """Apply one live packet: buffer append, then lap detection."""
        with self._lock:
            if self._replacing is not None:
                self._pending_live.append(packet)
                return
            self._apply(packet)

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def unit_prefs(self) -> UnitPrefs:
        return self._settings.unit_prefs

    @property
    def live_packet(self) -> Packet | None:
        return self._live_packet

    @property
    def races(self) -> RaceSessions:
        return dict(self._races)

    @property
    def current_lap(self) -> int:
        return self._current_lap

    def latest_race(self) -> Race | None:
        return latest_race(self._races)

    def display_live(self) -> Packet:
        """Newest live packet in display units (empty when none yet)."""
        pkt = self._live_packet
        if pkt is None:
            return MappingProxyType({})
        return scale_packet(pkt, self.unit_prefs)

    def display_history(self) -> list[Packet]:
        """Visible history in display units, oldest first."""
        prefs = self.unit_prefs
        return [scale_packet(p, prefs) for p in self.buffer.visible()]

    def available_keys(self) -> list[str]:
        return keys.available_keys(self._live_packet, self.buffer.displayed_tail)

    def lap_intervals(self) -> list[LapInterval]:
        return lap_intervals(self._races, self.buffer.displayed_tail)

    def export_csv(self, start_ms: float | None = None, end_ms: float | None = None) -> str | None:
        """CSV of buffered packets in ``[start_ms, end_ms]`` (default: all)."""
        start = self.buffer.earliest_time if start_ms is None else start_ms
        end = self.buffer.latest_time if end_ms is None else end_ms
        if start is None or end is None:
            return None
        return history_to_csv(self.buffer.window(start, end), start, end, self.unit_prefs)

    def status(self) -> dict[str, Any]:
        conn = self.connection
        return {
            "subject_id": self.subject_id,
            "state": conn.state.value,
            "liveness": conn.liveness.value,
            "last_packet_time": conn.last_packet_time,
            "dropped_frames": conn.dropped_frames,
            "buffer_size": len(self.buffer),
            "max_history_points": self.buffer.max_points,
            "is_truncated": self.buffer.is_truncated,
            "paused": self.buffer.paused,
            "earliest_time": self.buffer.earliest_time,
            "latest_time": self.buffer.latest_time,
            "current_lap": self._current_lap,
            "race_count": len(self._races),
            "last_error": self.last_error,
        }

    # ------------------------------------------------------------------
    # Pause / settings
    # ------------------------------------------------------------------

    def pause(self) -> None:
        self.buffer.pause()

    def resume(self) -> int:
        """Follow live data again.

        When the paused view ended earlier today, the interval from there to
        now is back-filled; returns the number of packets merged.
        """
        with self._lock:
            boundary = self.buffer.pause_boundary if self.buffer.paused else None
            self.buffer.resume()
        now = self._clock()
        if boundary is None or boundary >= now:
            return 0
        if date.fromtimestamp(boundary / 1000.0) != date.fromtimestamp(now / 1000.0):
            return 0
        return self.backfill(boundary, now)

    def toggle_pause(self) -> bool:
        """Flip the pause state; returns True if now paused."""
        if self.buffer.paused:
            self.resume()
            return False
        self.pause()
        return True

    def clear_history(self) -> None:
        """Empty the buffer and forget all races.  Irreversible."""
        with self._lock:
            self.buffer.clear()
            self._races = {}
            self._current_lap = 0

    def set_unit_prefs(self, prefs: UnitPrefs | dict) -> None:
        """Change display units.  Stored packets stay in wire units."""
        if isinstance(prefs, UnitPrefs):
            prefs = prefs.model_dump()
        self._settings = self._settings.merged({"unit_prefs": prefs})

    def set_max_history_points(self, max_points: int) -> None:
        self._settings = self._settings.merged({"max_history_points": max_points})
        self.buffer.set_capacity(self._settings.max_history_points)

    # ------------------------------------------------------------------
    # Historic loads
    # ------------------------------------------------------------------

    def fetch_available_days(self) -> list[date]:
        """Refresh :attr:`available_days` from the history service."""
        self.available_days = self._history.fetch_available_days(self.subject_id)
        return self.available_days

    def load_range(self, start_ms: float, end_ms: float) -> int:
        """Replace the buffer with the history in ``[start_ms, end_ms]``.

        The view is paused on the loaded range and races are rebuilt from it.
        Live packets arriving meanwhile are applied after the replace.
        Returns the number of packets loaded (0 if superseded).

        Raises
        ------
        InvalidRangeError
            Before anything changes, for an unusable range.
        BackfillError
            If the fetch fails; the buffer is left unchanged.
        """
        self._validate(start_ms, end_ms)
        token = self._begin_load(replace=True)
        packets = self._fetch(token, start_ms, end_ms)
        with self._lock:
            if self._superseded(token):
                return 0
            self.buffer.pause()
            self.buffer.load_range(packets)
            self._rebuild_races()
            self.last_error = None
            self._finish_replace()
        if not packets:
            _logger.warning("No history found for %s in %.0f..%.0f", self.subject_id, start_ms, end_ms)
        else:
            _logger.info("Loaded %d historic packets for %s", len(packets), self.subject_id)
        return len(packets)

    def load_day(self, day: date, start: str = "00:00", end: str = "23:59") -> int:
        """:meth:`load_range` over a local-time window of *day*."""
        return self.load_range(_at(day, start), _at(day, end))

    def load_extra_history(self, minutes: float) -> int:
        """Merge *minutes* of history before the earliest buffered packet."""
        earliest = self.buffer.earliest_time
        if earliest is None:
            return 0
        return self._extend(earliest - minutes * _MINUTE_MS, earliest)

    def backfill(self, start_ms: float, end_ms: float) -> int:
        """Merge the history in ``[start_ms, end_ms]``, e.g. a connection gap.

        Unlike user loads this is not last-request-wins: the merge is additive,
        so it only yields to a :meth:`load_range` issued while it was fetching.
        """
        self._validate(start_ms, end_ms)
        with self._lock:
            replaced = self._replace_count
        packets = self._fetch(None, start_ms, end_ms)
        with self._lock:
            if self._replace_count != replaced:
                _logger.info("Dropping backfill %.0f..%.0f; buffer was replaced", start_ms, end_ms)
                return 0
            return self._merge(packets)

    def reset_to_live(self, minutes: float = 30) -> int:
        """Discard all history, follow live data again, and reload recent history.

        Destructive and irreversible; confirmation is the caller's job.
        """
        with self._lock:
            self.buffer.reset_to_live()
            self._races = {}
            self._current_lap = 0
        now = self._clock()
        return self._extend(now - minutes * _MINUTE_MS, now)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _apply(self, packet: Packet) -> None:
        self.buffer.append(packet)
        self._races = update_race_sessions(self._races, packet, self._current_lap)
        self._current_lap = next_lap_index(packet, self._current_lap)
        self._live_packet = packet

    def _rebuild_races(self) -> None:
        self._races, self._current_lap = replay_race_sessions(self.buffer.snapshot())

    def _bounds(self) -> tuple[float, float] | None:
        earliest, latest = self.buffer.earliest_time, self.buffer.latest_time
        if earliest is None or latest is None:
            return None
        return earliest, latest

    def _validate(self, start_ms: float, end_ms: float) -> None:
        validate_range(
            start_ms,
            end_ms,
            now_ms=self._clock(),
            retention_ms=retention_ms_from_days(self._settings.retention_days),
        )

    def _begin_load(self, replace: bool) -> int:
        with self._lock:
            self._load_generation += 1
            token = self._load_generation
            if replace:
                self._replacing = token
                self._replace_count += 1
            elif self._replacing is not None:
                # The pending replace can no longer win; stop holding live data.
                self._finish_replace()
            return token

    def _fetch(self, token: int | None, start_ms: float, end_ms: float) -> list[Packet]:
        try:
            return self._history.fetch_range(self.subject_id, start_ms, end_ms)
        except BackfillError as exc:
            _logger.warning("History fetch %.0f..%.0f failed: %s", start_ms, end_ms, exc)
            with self._lock:
                self.last_error = str(exc)
                if token is not None and self._replacing == token:
                    self._finish_replace()
            raise

    def _superseded(self, token: int) -> bool:
        """True (and clean up) if a newer load was issued after *token*."""
        if token == self._load_generation:
            return False
        _logger.info("Discarding superseded history load #%d (latest #%d)", token, self._load_generation)
        if self._replacing == token:
            self._finish_replace()
        return True

    def _finish_replace(self) -> None:
        self._replacing = None
        while self._pending_live:
            self._apply(self._pending_live.popleft())

    def _extend(self, start_ms: float, end_ms: float) -> int:
        self._validate(start_ms, end_ms)
        token = self._begin_load(replace=False)
        packets = self._fetch(token, start_ms, end_ms)
        with self._lock:
            if self._superseded(token):
                return 0
            return self._merge(packets)

    def _merge(self, packets: list[Packet]) -> int:
        added = self.buffer.extend(packets)
        if added:
            self._rebuild_races()
        self.last_error = None
        _logger.info("Merged %d of %d historic packets for %s", added, len(packets), self.subject_id)
        return added
