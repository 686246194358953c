"""Race and lap detection from telemetry packets.

Detection is a pure function of ``(sessions, packet, prev_lap_number)`` so
race state can be rebuilt from any stored packet history (a loaded historic
day, a checkpoint) without a live connection.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable

from echook_telemetry.analysis.models import Lap, LapInterval, Race, RaceSessions
from echook_telemetry.telemetry.keys import LAP_KEYS
from echook_telemetry.telemetry.models import Packet

_EPOCH_2000_MS = 946_684_800_000  # earlier timestamps are treated as unset clocks


def _lap_stats(packet: Packet) -> dict:
    return {k: v for k, v in packet.items() if k in LAP_KEYS}


def _race_start(timestamp: float, stats: dict) -> float:
    """Race start = finish of lap 1 minus its reported duration."""
    lap_time = stats.get("LL_Time")
    if isinstance(lap_time, (int, float)) and not isinstance(lap_time, bool):
        return timestamp - lap_time * 1000
    return timestamp


def _fresh_race_id(sessions: RaceSessions, start_ms: float) -> int:
    race_id = int(round(start_ms))
    while race_id in sessions:
        race_id += 1
    return race_id


def latest_race(sessions: RaceSessions) -> Race | None:
    """Return the most recently detected race, or None."""
    if not sessions:
        return None
    return sessions[next(reversed(sessions))]


def next_lap_index(packet: Packet, prev_lap_number: int) -> int:
    """Lap index to carry into the next detection call."""
    lap = packet.get("currLap")
    if isinstance(lap, (int, float)) and not isinstance(lap, bool):
        return int(lap)
    return prev_lap_number


def update_race_sessions(
    sessions: RaceSessions,
    packet: Packet,
    prev_lap_number: int,
) -> RaceSessions:
    """Fold one packet into the race sessions.

    Returns *sessions* itself when the packet carries no completed lap
    (``currLap`` missing or 0, or no ``LL_*`` statistics).  Otherwise returns
    a new mapping; *sessions* and its races are never mutated.

    A new race is started when there is none yet or when the lap counter went
    backwards (``prev_lap_number > currLap``); earlier races are kept.
    """
    lap_number = packet.get("currLap")
    if not lap_number or isinstance(lap_number, bool) or not isinstance(lap_number, (int, float)):
        return sessions
    stats = _lap_stats(packet)
    if not stats:
        return sessions

    lap_number = int(lap_number)
    timestamp = packet["timestamp"]

    if not sessions or (prev_lap_number or 0) > lap_number:
        start_ms = _race_start(timestamp, stats)
        race = Race(id=_fresh_race_id(sessions, start_ms), start_time_ms=start_ms)
        lap_start = start_ms
    else:
        race = latest_race(sessions)
        prev_lap = race.laps.get(lap_number - 1)
        lap_start = prev_lap.finish_time if prev_lap else race.start_time_ms

    lap = Lap(lap_number=lap_number, finish_time=timestamp, start_time=lap_start, stats=stats)
    updated = dataclasses.replace(race, laps={**race.laps, lap_number: lap})

    result = dict(sessions)
    result[updated.id] = updated
    return result


def replay_race_sessions(
    packets: Iterable[Packet],
    sessions: RaceSessions | None = None,
    prev_lap_number: int = 0,
) -> tuple[RaceSessions, int]:
    """Run :func:`update_race_sessions` over *packets* in order.

    Returns ``(sessions, last_lap_number)``; feeding the returned pair back in
    with further packets gives the same result as one longer replay.
    """
    result: RaceSessions = {} if sessions is None else sessions
    prev = prev_lap_number
    for pkt in packets:
        result = update_race_sessions(result, pkt, prev)
        prev = next_lap_index(pkt, prev)
    return result, prev


def lap_intervals(sessions: RaceSessions, latest_packet: Packet | None = None) -> list[LapInterval]:
    """Time spans of all completed laps plus the lap in progress.

    Races are ordered by start time and laps by number.  The in-progress lap
    runs from the last completed lap's finish to *latest_packet*.
    """

    def valid(ts) -> bool:
        return isinstance(ts, (int, float)) and ts > _EPOCH_2000_MS

    intervals: list[LapInterval] = []
    last_finish = None
    last_count = 0
    for race in sorted(sessions.values(), key=lambda r: r.start_time_ms):
        last_count = len(race.laps)
        for lap in race.sorted_laps():
            if valid(lap.start_time) and valid(lap.finish_time):
                intervals.append(LapInterval(lap.lap_number, lap.start_time, lap.finish_time))
                last_finish = lap.finish_time

    if last_finish is not None and latest_packet is not None:
        now = latest_packet.get("timestamp")
        if valid(now) and now > last_finish:
            current = latest_packet.get("currLap") or last_count + 1
            intervals.append(LapInterval(int(current), last_finish, now, in_progress=True))

    return intervals
