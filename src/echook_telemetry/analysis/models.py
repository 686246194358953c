"""Race and lap data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class Lap:
    """A completed lap, created once from the packet that reported it."""

    lap_number: int
    """Lap ordinal within its race, >= 1."""

    finish_time: float
    """Epoch ms of the packet that reported the lap."""

    start_time: float
    """Epoch ms the lap began: previous lap's finish, or the race start."""

    stats: dict[str, float] = field(default_factory=dict)
    """Last-lap statistics (``LL_Time``, ``LL_V``, ...) exactly as received."""

    @property
    def lap_time_s(self) -> float | None:
        """Reported lap time in seconds, if the packet carried one."""
        return self.stats.get("LL_Time")


@dataclass(frozen=True)
class Race:
    """A lap-counting session starting from lap 1.

    Races are open-ended: one is superseded, never closed, when the lap
    counter resets.  ``laps`` keeps detection order.
    """

    id: int
    start_time_ms: float
    laps: dict[int, Lap] = field(default_factory=dict)

    @property
    def start_time_iso(self) -> str:
        return datetime.fromtimestamp(self.start_time_ms / 1000.0, tz=timezone.utc).isoformat()

    def sorted_laps(self) -> list[Lap]:
        return sorted(self.laps.values(), key=lambda lap: lap.lap_number)


RaceSessions = dict[int, Race]
"""Race id → Race, in detection order."""


@dataclass(frozen=True)
class LapInterval:
    """Time span of one lap, used to highlight laps on a time axis."""

    lap_number: int
    start_time: float
    end_time: float
    in_progress: bool = False
