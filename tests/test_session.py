"""Tests for TelemetrySession: ingestion, historic loads and read API."""

from __future__ import annotations

import time
from datetime import date, datetime
from unittest.mock import MagicMock

import pytest

from echook_telemetry.config import Settings, UnitPrefs
from echook_telemetry.history.client import BackfillError, InvalidRangeError
from echook_telemetry.live.transport import TransportError
from echook_telemetry.session import TelemetrySession
from echook_telemetry.telemetry.codec import encode
from echook_telemetry.telemetry.models import make_packet

NOW = datetime(2024, 5, 1, 12, 0).timestamp() * 1000  # local noon
MINUTE = 60_000


def pkt(ts: float, **fields):
    return make_packet(timestamp=ts, **fields)


def lap_pkt(ts: float, lap: int, lap_time: float = 60.0):
    return make_packet(timestamp=ts, currLap=lap, LL_Time=lap_time)


def make_session(history=None, **settings) -> TelemetrySession:
    return TelemetrySession(
        "car-1",
        settings=Settings(**settings),
        history_client=history or MagicMock(),
        transport_factory=MagicMock(),
        clock=lambda: NOW,
    )


# ---------------------------------------------------------------------------
# ingest
# ---------------------------------------------------------------------------

def test_ingest_appends_and_detects_laps():
    session = make_session()
    session.ingest(pkt(NOW - 70_000, currLap=1, speed=5.0))
    session.ingest(lap_pkt(NOW - 10_000, 1))

    assert len(session.buffer) == 2
    assert session.current_lap == 1
    assert session.live_packet["timestamp"] == NOW - 10_000
    race = session.latest_race()
    assert race.laps[1].finish_time == NOW - 10_000


def test_display_live_is_scaled():
    session = make_session(unit_prefs={"speed_unit": "kph"})
    assert dict(session.display_live()) == {}
    session.ingest(pkt(NOW, speed=10.0))
    assert session.display_live()["speed"] == pytest.approx(36.0)
    assert session.live_packet["speed"] == 10.0


def test_unit_change_rescales_without_touching_history():
    session = make_session()
    session.ingest(pkt(NOW, speed=10.0))
    session.set_unit_prefs(UnitPrefs(speed_unit="kph"))
    assert session.display_history()[0]["speed"] == pytest.approx(36.0)
    session.set_unit_prefs({"speed_unit": "ms"})
    assert session.display_history()[0]["speed"] == 10.0
    assert len(session.buffer) == 1


def test_set_max_history_points_evicts():
    session = make_session()
    for i in range(5):
        session.ingest(pkt(NOW + i))
    session.set_max_history_points(2)
    assert [p["timestamp"] for p in session.buffer] == [NOW + 3, NOW + 4]
    assert session.settings.max_history_points == 2


def test_clear_history_forgets_races():
    session = make_session()
    session.ingest(lap_pkt(NOW, 1))
    session.clear_history()
    assert len(session.buffer) == 0
    assert session.races == {}
    assert session.current_lap == 0


# ---------------------------------------------------------------------------
# load_range
# ---------------------------------------------------------------------------

def test_load_range_replaces_pauses_and_rebuilds_races():
    history = MagicMock()
    history.fetch_range.return_value = [lap_pkt(NOW - 5 * MINUTE, 1), lap_pkt(NOW - 4 * MINUTE, 2)]
    session = make_session(history)
    session.ingest(pkt(NOW - MINUTE))

    loaded = session.load_range(NOW - 10 * MINUTE, NOW - 2 * MINUTE)

    assert loaded == 2
    history.fetch_range.assert_called_once_with("car-1", NOW - 10 * MINUTE, NOW - 2 * MINUTE)
    assert [p["timestamp"] for p in session.buffer] == [NOW - 5 * MINUTE, NOW - 4 * MINUTE]
    assert session.buffer.paused
    assert session.current_lap == 2
    assert list(session.latest_race().laps) == [1, 2]


def test_load_range_rejects_invalid_range_before_fetching():
    history = MagicMock()
    session = make_session(history)
    session.ingest(pkt(NOW))
    with pytest.raises(InvalidRangeError):
        session.load_range(NOW, NOW - MINUTE)
    history.fetch_range.assert_not_called()
    assert len(session.buffer) == 1
    assert not session.buffer.paused


def test_load_range_outside_retention_rejected():
    session = make_session(retention_days=1)
    with pytest.raises(InvalidRangeError):
        session.load_range(NOW - 3 * 86_400_000, NOW - 2 * 86_400_000)


def test_backfill_error_leaves_buffer_unchanged():
    history = MagicMock()
    history.fetch_range.side_effect = BackfillError("service down")
    session = make_session(history)
    session.ingest(pkt(NOW))

    with pytest.raises(BackfillError):
        session.load_range(NOW - 10 * MINUTE, NOW - 5 * MINUTE)

    assert [p["timestamp"] for p in session.buffer] == [NOW]
    assert not session.buffer.paused
    assert session.last_error == "service down"


def test_live_packets_during_load_are_applied_after():
    history = MagicMock()
    session = make_session(history)
    historic = [pkt(NOW - 5 * MINUTE), pkt(NOW - 4 * MINUTE)]

    def fetch(subject_id, start, end):
        session.ingest(pkt(NOW, speed=1.0))  # arrives while the load is in flight
        assert len(session.buffer) == 0
        return historic

    history.fetch_range.side_effect = fetch
    session.load_range(NOW - 10 * MINUTE, NOW - 3 * MINUTE)

    assert [p["timestamp"] for p in session.buffer] == [NOW - 5 * MINUTE, NOW - 4 * MINUTE, NOW]
    assert session.live_packet["timestamp"] == NOW
    # still paused on the loaded range
    assert [p["timestamp"] for p in session.buffer.visible()] == [NOW - 5 * MINUTE, NOW - 4 * MINUTE]


def test_superseded_load_is_discarded():
    history = MagicMock()
    session = make_session(history)
    first = [pkt(NOW - 50 * MINUTE)]
    second = [pkt(NOW - 20 * MINUTE)]

    def fetch(subject_id, start, end):
        if start == NOW - 60 * MINUTE:
            # a newer request is issued and completes before this one returns
            session.load_range(NOW - 30 * MINUTE, NOW - 10 * MINUTE)
            return first
        return second

    history.fetch_range.side_effect = fetch
    assert session.load_range(NOW - 60 * MINUTE, NOW - 40 * MINUTE) == 0
    assert [p["timestamp"] for p in session.buffer] == [NOW - 20 * MINUTE]


def test_load_day_uses_local_window():
    history = MagicMock()
    history.fetch_range.return_value = []
    session = make_session(history)
    session.load_day(date(2024, 4, 30), "09:00", "17:30")
    start = datetime(2024, 4, 30, 9, 0).timestamp() * 1000
    end = datetime(2024, 4, 30, 17, 30).timestamp() * 1000
    history.fetch_range.assert_called_once_with("car-1", start, end)


# ---------------------------------------------------------------------------
# extend-type loads
# ---------------------------------------------------------------------------

def test_load_extra_history_prepends():
    history = MagicMock()
    history.fetch_range.return_value = [pkt(NOW - 20 * MINUTE), pkt(NOW - 15 * MINUTE)]
    session = make_session(history)
    session.ingest(pkt(NOW - 10 * MINUTE))

    assert session.load_extra_history(15) == 2
    history.fetch_range.assert_called_once_with("car-1", NOW - 25 * MINUTE, NOW - 10 * MINUTE)
    assert session.buffer.earliest_time == NOW - 20 * MINUTE


def test_load_extra_history_empty_buffer_is_noop():
    history = MagicMock()
    session = make_session(history)
    assert session.load_extra_history(15) == 0
    history.fetch_range.assert_not_called()


def test_backfill_merges_gap_and_keeps_live_entries():
    history = MagicMock()
    history.fetch_range.return_value = [pkt(NOW - 2 * MINUTE, v="historic"), pkt(NOW - MINUTE)]
    session = make_session(history)
    session.ingest(pkt(NOW - 2 * MINUTE, v="live"))
    session.ingest(pkt(NOW))

    assert session.backfill(NOW - 2 * MINUTE, NOW) == 1
    assert session.buffer.window(NOW - 2 * MINUTE, NOW - 2 * MINUTE)[0]["v"] == "live"


def test_backfill_survives_user_load_issued_during_fetch():
    history = MagicMock()
    session = make_session(history)
    session.ingest(pkt(NOW - 2 * MINUTE))
    session.ingest(pkt(NOW))
    gap = [pkt(NOW - MINUTE - i * 1_000) for i in range(5)]
    older = [pkt(NOW - 5 * MINUTE)]

    def fetch(subject_id, start, end):
        if start == NOW - 2 * MINUTE:
            # user asks for more history while the gap fetch is in flight
            assert session.load_extra_history(5) == 1
            return gap
        return older

    history.fetch_range.side_effect = fetch

    assert session.backfill(NOW - 2 * MINUTE, NOW) == 5
    assert len(session.buffer) == 8
    assert session.buffer.earliest_time == NOW - 5 * MINUTE


def test_backfill_dropped_when_buffer_replaced_during_fetch():
    history = MagicMock()
    session = make_session(history)
    session.ingest(pkt(NOW))
    historic = [pkt(NOW - 50 * MINUTE)]

    def fetch(subject_id, start, end):
        if start == NOW - MINUTE:
            session.load_range(NOW - 60 * MINUTE, NOW - 40 * MINUTE)
            return [pkt(NOW - MINUTE // 2)]
        return historic

    history.fetch_range.side_effect = fetch

    assert session.backfill(NOW - MINUTE, NOW) == 0
    assert [p["timestamp"] for p in session.buffer] == [NOW - 50 * MINUTE]


def test_reset_to_live_clears_resumes_and_reloads():
    history = MagicMock()
    history.fetch_range.return_value = [pkt(NOW - 10 * MINUTE)]
    session = make_session(history)
    session.ingest(pkt(NOW - 90 * MINUTE))
    session.pause()

    assert session.reset_to_live() == 1
    history.fetch_range.assert_called_once_with("car-1", NOW - 30 * MINUTE, NOW)
    assert not session.buffer.paused
    assert [p["timestamp"] for p in session.buffer] == [NOW - 10 * MINUTE]


# ---------------------------------------------------------------------------
# pause / resume
# ---------------------------------------------------------------------------

def test_resume_backfills_same_day_gap():
    history = MagicMock()
    history.fetch_range.return_value = [pkt(NOW - MINUTE // 2)]
    session = make_session(history)
    session.ingest(pkt(NOW - MINUTE))
    session.pause()

    assert session.resume() == 1
    history.fetch_range.assert_called_once_with("car-1", NOW - MINUTE, NOW)
    assert not session.buffer.paused


def test_resume_skips_backfill_for_previous_day():
    history = MagicMock()
    session = make_session(history)
    session.ingest(pkt(NOW - 86_400_000))
    session.pause()
    assert session.resume() == 0
    history.fetch_range.assert_not_called()


def test_toggle_pause():
    history = MagicMock()
    history.fetch_range.return_value = []
    session = make_session(history)
    assert session.toggle_pause() is True
    assert session.buffer.paused
    assert session.toggle_pause() is False
    assert not session.buffer.paused


# ---------------------------------------------------------------------------
# Read API
# ---------------------------------------------------------------------------

def test_available_keys_and_intervals():
    session = make_session()
    session.ingest(lap_pkt(NOW - MINUTE, 1))
    session.ingest(pkt(NOW, currLap=2, voltage=24.0, speed=3.0))
    assert session.available_keys() == ["voltage", "speed", "currLap"]
    intervals = session.lap_intervals()
    assert [(iv.lap_number, iv.in_progress) for iv in intervals] == [(1, False), (2, True)]


def test_export_csv_defaults_to_whole_buffer():
    session = make_session()
    assert session.export_csv() is None
    session.ingest(pkt(NOW, voltage=24.0))
    text = session.export_csv()
    assert text.splitlines()[0] == "Timestamp (ms),ISO Time,Voltage (V)"


def test_status_snapshot():
    session = make_session()
    session.ingest(pkt(NOW))
    status = session.status()
    assert status["subject_id"] == "car-1"
    assert status["state"] == "disconnected"
    assert status["buffer_size"] == 1
    assert status["paused"] is False
    assert status["last_error"] is None


# ---------------------------------------------------------------------------
# Reconnect gap fill (live stream + history together)
# ---------------------------------------------------------------------------

class DroppingTransport:
    """Delivers its frames, then drops (or idles when ``drop`` is False)."""

    def __init__(self, frames, drop):
        self.frames = list(frames)
        self.drop = drop

    def connect(self):
        pass

    def send(self, data):
        pass

    def recv(self, timeout=None):
        if self.frames:
            return self.frames.pop(0)
        if self.drop:
            raise TransportError("dropped")
        time.sleep(0.01)
        return None

    def close(self):
        pass


def test_reconnect_backfills_gap_into_buffer():
    history = MagicMock()
    history.fetch_range.return_value = [pkt(NOW - 8_000), pkt(NOW - 5_000)]
    transports = [
        DroppingTransport([encode({"timestamp": NOW - 10_000})], drop=True),
        DroppingTransport([], drop=False),
    ]
    session = TelemetrySession(
        "car-1",
        settings=Settings(backoff_initial_s=0.01, backoff_max_s=0.02),
        history_client=history,
        transport_factory=MagicMock(side_effect=transports),
        clock=lambda: NOW,
    )

    session.connect()
    try:
        deadline = time.monotonic() + 2.0
        while len(session.buffer) < 3 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        session.disconnect()

    history.fetch_range.assert_called_once_with("car-1", NOW - 10_000, NOW)
    assert [p["timestamp"] for p in session.buffer] == [NOW - 10_000, NOW - 8_000, NOW - 5_000]
