"""HistoryBuffer — bounded, timestamp-ordered store of telemetry packets.

Ordering and capacity notes:
  - Packets are kept ascending by ``timestamp`` with a parallel list of
    timestamps so inserts can use :mod:`bisect`.
  - Every mutation evicts from the head (oldest first) once ``max_points``
    is exceeded, so ``len(buffer) <= max_points`` always holds.
  - Pausing freezes what consumers see (``visible()``) at a timestamp
    boundary while appends keep recording underneath.
"""

from __future__ import annotations

import bisect
import enum
import logging
import threading
from collections.abc import Iterable, Iterator

from echook_telemetry.telemetry.models import Packet

_logger = logging.getLogger(__name__)

DEFAULT_MAX_POINTS = 50_000


class AppendResult(enum.Enum):
    APPENDED = "appended"
    """Placed at the tail."""

    INSERTED = "inserted"
    """Arrived slightly out of order; placed at its sorted position."""

    LATE = "late"
    """Older than the tail by more than the tolerance; placed in order and flagged."""


def _dedupe_sorted(packets: Iterable[Packet]) -> list[Packet]:
    """Sort by timestamp, keeping the last packet seen for each timestamp."""
    by_ts: dict[float, Packet] = {}
    for pkt in packets:
        by_ts[pkt["timestamp"]] = pkt
    return [by_ts[ts] for ts in sorted(by_ts)]


class HistoryBuffer:
    """Append-only, capacity-bounded packet history.

    Parameters
    ----------
    max_points:
        Capacity; the oldest packets are evicted beyond it.
    late_tolerance_ms:
        Out-of-order packets within this distance of the tail are normal
        jitter; older ones are counted in :attr:`late_count`.
    """

    def __init__(
        self,
        max_points: int = DEFAULT_MAX_POINTS,
        late_tolerance_ms: float = 2_000,
    ) -> None:
        if max_points <= 0:
            raise ValueError(f"max_points must be positive, got {max_points}")
        self._max_points = max_points
        self._late_tolerance_ms = late_tolerance_ms
        self._packets: list[Packet] = []
        self._timestamps: list[float] = []
        self._paused = False
        self._pause_boundary: float | None = None
        self._lock = threading.RLock()
        self.late_count = 0

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._packets)

    def __iter__(self) -> Iterator[Packet]:
        return iter(self.snapshot())

    @property
    def max_points(self) -> int:
        return self._max_points

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def pause_boundary(self) -> float | None:
        """Timestamp of the last visible packet while paused, else None."""
        return self._pause_boundary

    @property
    def earliest_time(self) -> float | None:
        with self._lock:
            return self._timestamps[0] if self._timestamps else None

    @property
    def latest_time(self) -> float | None:
        with self._lock:
            return self._timestamps[-1] if self._timestamps else None

    @property
    def is_truncated(self) -> bool:
        """True once the buffer holds ``max_points`` or more packets."""
        return len(self._packets) >= self._max_points

    @property
    def displayed_tail(self) -> Packet | None:
        """Newest packet consumers should show (frozen while paused)."""
        with self._lock:
            end = self._visible_end()
            return self._packets[end - 1] if end else None

    def snapshot(self) -> tuple[Packet, ...]:
        """All recorded packets, oldest first."""
        with self._lock:
            return tuple(self._packets)

    def visible(self) -> tuple[Packet, ...]:
        """Packets up to the displayed tail, oldest first."""
        with self._lock:
            return tuple(self._packets[: self._visible_end()])

    def window(self, start_ms: float, end_ms: float) -> list[Packet]:
        """Packets with ``start_ms <= timestamp <= end_ms``."""
        with self._lock:
            lo = bisect.bisect_left(self._timestamps, start_ms)
            hi = bisect.bisect_right(self._timestamps, end_ms)
            return self._packets[lo:hi]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def append(self, packet: Packet) -> AppendResult:
        """Insert a live packet, keeping timestamp order, then evict overflow."""
        ts = packet["timestamp"]
        with self._lock:
            if not self._timestamps or ts >= self._timestamps[-1]:
                self._packets.append(packet)
                self._timestamps.append(ts)
                result = AppendResult.APPENDED
            else:
                idx = bisect.bisect_right(self._timestamps, ts)
                self._packets.insert(idx, packet)
                self._timestamps.insert(idx, ts)
                if self._timestamps[-1] - ts > self._late_tolerance_ms:
                    self.late_count += 1
                    _logger.warning(
                        "Late packet: %.0f ms behind tail (tolerance %.0f ms)",
                        self._timestamps[-1] - ts,
                        self._late_tolerance_ms,
                    )
                    result = AppendResult.LATE
                else:
                    result = AppendResult.INSERTED
            self._evict(self._max_points)
        return result

    def load_range(self, packets: Iterable[Packet]) -> None:
        """Replace the whole buffer with *packets* (sorted, de-duplicated).

        Destructive: confirming this with the user is the caller's job.  Only
        the newest ``max_points`` packets are kept.  When paused, the displayed
        tail moves to the end of the loaded range.
        """
        loaded = _dedupe_sorted(packets)
        with self._lock:
            self._packets = loaded
            self._timestamps = [p["timestamp"] for p in loaded]
            self._evict(self._max_points)
            if self._paused:
                self._pause_boundary = self._timestamps[-1] if self._timestamps else None

    def extend(self, packets: Iterable[Packet]) -> int:
        """Merge historic *packets* into the buffer.

        Packets whose timestamp is already present are skipped, so existing
        entries win.  The oldest packets are then evicted past ``max_points``.
        Returns the number of incoming packets still held afterwards.
        """
        with self._lock:
            known = set(self._timestamps)
            incoming = [p for p in _dedupe_sorted(packets) if p["timestamp"] not in known]
            if not incoming:
                return 0
            if self._timestamps and incoming[0]["timestamp"] > self._timestamps[-1]:
                merged = self._packets + incoming
            else:
                merged = sorted(self._packets + incoming, key=lambda p: p["timestamp"])
            self._packets = merged
            self._timestamps = [p["timestamp"] for p in merged]
            if len(merged) <= self._max_points:
                return len(incoming)
            self._evict(self._max_points)
            kept = {id(p) for p in self._packets}
            return sum(1 for p in incoming if id(p) in kept)

    def pause(self) -> None:
        """Freeze the displayed tail; appends continue to be recorded."""
        with self._lock:
            if not self._paused:
                self._paused = True
                self._pause_boundary = self._timestamps[-1] if self._timestamps else None

    def resume(self) -> None:
        """Unfreeze the displayed tail so it follows live data again."""
        with self._lock:
            self._paused = False
            self._pause_boundary = None

    def clear(self) -> None:
        with self._lock:
            self._packets = []
            self._timestamps = []
            if self._paused:
                self._pause_boundary = None

    def reset_to_live(self) -> None:
        """Discard all history and follow live data again.  Irreversible."""
        with self._lock:
            self.clear()
            self.resume()

    def set_capacity(self, max_points: int) -> None:
        """Change ``max_points``, evicting the oldest packets if over it."""
        if max_points <= 0:
            raise ValueError(f"max_points must be positive, got {max_points}")
        with self._lock:
            self._max_points = max_points
            self._evict(max_points)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _visible_end(self) -> int:
        if not self._paused:
            return len(self._packets)
        if self._pause_boundary is None:
            return 0
        return bisect.bisect_right(self._timestamps, self._pause_boundary)

    def _evict(self, limit: int) -> None:
        overflow = len(self._packets) - limit
        if overflow > 0:
            del self._packets[:overflow]
            del self._timestamps[:overflow]
