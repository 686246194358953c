"""Tests for Settings, UnitPrefs and environment loading."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from echook_telemetry.config import Settings, UnitPrefs, load_settings


def test_defaults():
    s = Settings()
    assert s.max_history_points == 50_000
    assert s.unit_prefs == UnitPrefs(speed_unit="mph", temp_unit="c")
    assert s.degraded_after_ms == 5_000
    assert s.stale_after_ms == 10_000
    assert s.retention_days is None


def test_unit_prefs_accepts_camel_case():
    prefs = UnitPrefs.model_validate({"speedUnit": "kph", "tempUnit": "f"})
    assert prefs.speed_unit == "kph"
    assert prefs.temp_unit == "f"


def test_unit_prefs_rejects_unknown_unit():
    with pytest.raises(ValidationError):
        UnitPrefs(speed_unit="knots")


def test_max_history_points_must_be_positive():
    with pytest.raises(ValidationError):
        Settings(max_history_points=0)


# ---------------------------------------------------------------------------
# Settings.merged: partial import
# ---------------------------------------------------------------------------

def test_merged_accepts_exported_dashboard_settings():
    s = Settings().merged({"maxHistoryPoints": 1000, "unitSettings": {"speedUnit": "kph"}})
    assert s.max_history_points == 1000
    assert s.unit_prefs.speed_unit == "kph"
    assert s.unit_prefs.temp_unit == "c"  # untouched


def test_merged_ignores_unknown_keys():
    base = Settings()
    assert base.merged({"theme": "dark"}) == base


def test_merged_empty_returns_self():
    base = Settings()
    assert base.merged(None) is base


def test_merged_validates():
    with pytest.raises(ValidationError):
        Settings().merged({"max_history_points": -5})


# ---------------------------------------------------------------------------
# load_settings
# ---------------------------------------------------------------------------

def test_load_settings_from_env_mapping():
    s = load_settings({
        "ECHOOK_WS_URL": "ws://car.example:4000",
        "ECHOOK_MAX_HISTORY_POINTS": "2000",
        "ECHOOK_SPEED_UNIT": "KPH",
        "ECHOOK_RETENTION_DAYS": "7",
    })
    assert s.ws_url == "ws://car.example:4000"
    assert s.max_history_points == 2000
    assert s.unit_prefs.speed_unit == "kph"
    assert s.retention_days == 7


def test_load_settings_empty_env_gives_defaults():
    assert load_settings({}) == Settings()
