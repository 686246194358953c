"""Runtime settings and unit preferences.

Values come from ``ECHOOK_*`` environment variables (a ``.env`` file in the
working directory is loaded first) and are validated by pydantic.
"""

from __future__ import annotations

import os
from typing import Any, Literal

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field

SpeedUnit = Literal["mph", "kph", "ms"]
TempUnit = Literal["c", "f"]


class UnitPrefs(BaseModel):
    """User's display unit choice.  Accepts ``speedUnit``/``tempUnit`` too."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    speed_unit: SpeedUnit = Field(default="mph", alias="speedUnit")
    temp_unit: TempUnit = Field(default="c", alias="tempUnit")


class Settings(BaseModel):
    ws_url: str = "ws://localhost:3000"
    api_base_url: str = "http://localhost:3000"

    max_history_points: int = Field(default=50_000, gt=0)
    unit_prefs: UnitPrefs = Field(default_factory=UnitPrefs)

    late_tolerance_ms: int = Field(default=2_000, ge=0)
    """Packets older than the buffer tail by more than this are flagged late."""

    liveness_interval_s: float = Field(default=1.0, gt=0)
    degraded_after_ms: int = 5_000
    stale_after_ms: int = 10_000

    backoff_initial_s: float = Field(default=0.5, gt=0)
    backoff_max_s: float = Field(default=30.0, gt=0)

    retention_days: float | None = None
    """Oldest history the service keeps; None disables the check."""

    def merged(self, data: dict[str, Any] | None) -> Settings:
        """Return a copy with the keys present in *data* applied.

        Accepts the dashboard's exported settings (``maxHistoryPoints``,
        ``unitSettings``) as well as field names.  ``unit_prefs`` is merged
        field-by-field rather than replaced; unknown keys are ignored.
        """
        if not data:
            return self
        update = {_IMPORT_ALIASES.get(k, k): v for k, v in data.items()}
        update = {k: v for k, v in update.items() if k in Settings.model_fields}
        if isinstance(update.get("unit_prefs"), dict):
            prefs = {_IMPORT_ALIASES.get(k, k): v for k, v in update["unit_prefs"].items()}
            update["unit_prefs"] = {**self.unit_prefs.model_dump(), **prefs}
        return Settings.model_validate({**self.model_dump(), **update})


_IMPORT_ALIASES = {
    "maxHistoryPoints": "max_history_points",
    "unitSettings": "unit_prefs",
    "speedUnit": "speed_unit",
    "tempUnit": "temp_unit",
}


_ENV_FIELDS = {
    "ECHOOK_WS_URL": "ws_url",
    "ECHOOK_API_BASE_URL": "api_base_url",
    "ECHOOK_MAX_HISTORY_POINTS": "max_history_points",
    "ECHOOK_LATE_TOLERANCE_MS": "late_tolerance_ms",
    "ECHOOK_LIVENESS_INTERVAL_S": "liveness_interval_s",
    "ECHOOK_BACKOFF_INITIAL_S": "backoff_initial_s",
    "ECHOOK_BACKOFF_MAX_S": "backoff_max_s",
    "ECHOOK_RETENTION_DAYS": "retention_days",
}


def load_settings(env: dict[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from the environment.

    Pass *env* to bypass ``os.environ`` and ``.env`` loading (tests).
    """
    if env is None:
        load_dotenv()  # .env in the working directory, existing vars win
        env = dict(os.environ)

    data: dict[str, Any] = {
        field: env[var] for var, field in _ENV_FIELDS.items() if env.get(var)
    }
    prefs = {}
    if env.get("ECHOOK_SPEED_UNIT"):
        prefs["speed_unit"] = env["ECHOOK_SPEED_UNIT"].lower()
    if env.get("ECHOOK_TEMP_UNIT"):
        prefs["temp_unit"] = env["ECHOOK_TEMP_UNIT"].lower()
    if prefs:
        data["unit_prefs"] = prefs
    return Settings.model_validate(data)
