"""Race and lap detection from the lap counter."""

from echook_telemetry.analysis.models import Lap, LapInterval, Race, RaceSessions
from echook_telemetry.analysis.races import (
    lap_intervals,
    latest_race,
    next_lap_index,
    replay_race_sessions,
    update_race_sessions,
)

__all__ = [
    "Lap",
    "LapInterval",
    "Race",
    "RaceSessions",
    "lap_intervals",
    "latest_race",
    "next_lap_index",
    "replay_race_sessions",
    "update_race_sessions",
]
