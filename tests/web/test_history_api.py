"""History and pause/resume commands (mock history client)."""

from __future__ import annotations

from datetime import date

from echook_telemetry.history.client import BackfillError
from echook_telemetry.telemetry.models import make_packet
from tests.web.conftest import MINUTE, NOW


def test_load_history(client, session, history):
    history.fetch_range.return_value = [make_packet(timestamp=NOW - 5 * MINUTE, voltage=24.0)]
    resp = client.post("/api/history/load", json={"start_ms": NOW - 10 * MINUTE, "end_ms": NOW - MINUTE})
    assert resp.status_code == 200
    assert resp.json() == {"loaded": 1, "buffer_size": 1, "paused": True}


def test_load_history_invalid_range_422(client, session, history):
    resp = client.post("/api/history/load", json={"start_ms": NOW, "end_ms": NOW - MINUTE})
    assert resp.status_code == 422
    history.fetch_range.assert_not_called()


def test_load_history_backfill_failure_502(client, session, history):
    history.fetch_range.side_effect = BackfillError("timeout")
    resp = client.post("/api/history/load", json={"start_ms": NOW - 10 * MINUTE, "end_ms": NOW})
    assert resp.status_code == 502
    assert "timeout" in resp.json()["detail"]
    assert client.get("/api/status").json()["last_error"] == "timeout"


def test_load_day(client, session, history):
    resp = client.post("/api/history/load-day", json={"day": "2024-04-30", "start": "08:00", "end": "18:00"})
    assert resp.status_code == 200
    assert history.fetch_range.call_count == 1


def test_load_day_rejects_bad_time(client, session):
    resp = client.post("/api/history/load-day", json={"day": "2024-04-30", "start": "8am"})
    assert resp.status_code == 422


def test_extend_history(client, session, history):
    session.ingest(make_packet(timestamp=NOW))
    history.fetch_range.return_value = [make_packet(timestamp=NOW - MINUTE)]
    resp = client.post("/api/history/extend", json={"minutes": 5})
    assert resp.json()["loaded"] == 1
    history.fetch_range.assert_called_once_with("car-1", NOW - 5 * MINUTE, NOW)


def test_extend_requires_positive_minutes(client, session):
    assert client.post("/api/history/extend", json={"minutes": 0}).status_code == 422


def test_reset_live_default_window(client, session, history):
    session.ingest(make_packet(timestamp=NOW - 120 * MINUTE))
    resp = client.post("/api/history/reset-live")
    assert resp.status_code == 200
    assert resp.json()["paused"] is False
    history.fetch_range.assert_called_once_with("car-1", NOW - 30 * MINUTE, NOW)


def test_reset_live_custom_window(client, session, history):
    client.post("/api/history/reset-live", json={"minutes": 10})
    history.fetch_range.assert_called_once_with("car-1", NOW - 10 * MINUTE, NOW)


def test_history_days(client, session, history):
    history.fetch_available_days.return_value = [date(2024, 4, 29), date(2024, 4, 30)]
    assert client.get("/api/history/days").json() == ["2024-04-29", "2024-04-30"]


def test_pause_and_resume(client, session, history):
    session.ingest(make_packet(timestamp=NOW - MINUTE))
    assert client.post("/api/pause").json() == {"paused": True, "backfilled": 0}
    assert session.buffer.paused

    history.fetch_range.return_value = [make_packet(timestamp=NOW - MINUTE // 2)]
    assert client.post("/api/resume").json() == {"paused": False, "backfilled": 1}
    assert not session.buffer.paused
