"""Pydantic request/response schemas for the status API."""

from __future__ import annotations

from datetime import date
from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    version: str


class StatusResponse(BaseModel):
    subject_id: str
    state: str
    liveness: str
    last_packet_time: float
    dropped_frames: int
    buffer_size: int
    max_history_points: int
    is_truncated: bool
    paused: bool
    earliest_time: float | None = None
    latest_time: float | None = None
    current_lap: int
    race_count: int
    last_error: str | None = None


class KeyInfo(BaseModel):
    key: str
    name: str
    unit: str
    description: str
    value: Any = None
    formatted: str = "-"


class KeysResponse(BaseModel):
    keys: list[KeyInfo]


class LapOut(BaseModel):
    lap_number: int
    start_time: float
    finish_time: float
    stats: dict[str, float]


class RaceOut(BaseModel):
    id: int
    start_time_ms: float
    start_time_iso: str
    laps: list[LapOut]


class RacesResponse(BaseModel):
    current_lap: int
    races: list[RaceOut]


class LapIntervalOut(BaseModel):
    lap_number: int
    start_time: float
    end_time: float
    in_progress: bool


class RangeRequest(BaseModel):
    start_ms: float
    end_ms: float


class DayRequest(BaseModel):
    day: date
    start: str = Field(default="00:00", pattern=r"^\d{1,2}:\d{2}$")
    end: str = Field(default="23:59", pattern=r"^\d{1,2}:\d{2}$")


class ExtendRequest(BaseModel):
    minutes: float = Field(gt=0)


class ResetRequest(BaseModel):
    minutes: float = Field(default=30, gt=0)


class LoadResponse(BaseModel):
    loaded: int
    buffer_size: int
    paused: bool


class PauseResponse(BaseModel):
    paused: bool
    backfilled: int = 0


class ViewportOut(BaseModel):
    locked_to_live: bool
    visible_range: tuple[float, float] | None = None


class PanRequest(BaseModel):
    delta_ms: float


class ScaleRequest(BaseModel):
    factor: float = Field(gt=0)

