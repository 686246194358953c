"""Shared fixtures for web tests."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from echook_telemetry.config import Settings
from echook_telemetry.session import TelemetrySession
from echook_telemetry.telemetry.models import make_packet
from echook_telemetry.web.app import app, bind_session

NOW = datetime(2024, 5, 1, 12, 0).timestamp() * 1000
MINUTE = 60_000


@pytest.fixture
def history():
    """Mock HistoryClient; tests set ``fetch_range`` results."""
    mock = MagicMock()
    mock.fetch_range.return_value = []
    mock.fetch_available_days.return_value = []
    return mock


@pytest.fixture
def session(history):
    """A TelemetrySession with no live transport, bound to the app."""
    s = TelemetrySession(
        "car-1",
        settings=Settings(),
        history_client=history,
        transport_factory=MagicMock(),
        clock=lambda: NOW,
    )
    bind_session(s)
    yield s
    bind_session(None)


@pytest.fixture
def client(monkeypatch):
    """FastAPI test client (no session started from the environment)."""
    monkeypatch.delenv("ECHOOK_SUBJECT_ID", raising=False)
    with TestClient(app) as c:
        yield c


def make_lap_packet(ts: float, lap: int, lap_time: float = 60.0, **extra):
    """Packet that reports a completed lap."""
    return make_packet(timestamp=ts, currLap=lap, LL_Time=lap_time, LL_V=24.0, **extra)
