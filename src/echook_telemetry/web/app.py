"""FastAPI status and command API over one TelemetrySession."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import Response

from echook_telemetry.config import load_settings
from echook_telemetry.history.client import BackfillError, InvalidRangeError
from echook_telemetry.history.export import export_filename
from echook_telemetry.session import TelemetrySession
from echook_telemetry.telemetry import keys
from echook_telemetry.viewport.coordinator import ViewportState
from echook_telemetry.web.schemas import (
    DayRequest,
    ExtendRequest,
    HealthResponse,
    KeyInfo,
    KeysResponse,
    LapIntervalOut,
    LapOut,
    LoadResponse,
    PanRequest,
    PauseResponse,
    RaceOut,
    RacesResponse,
    RangeRequest,
    ResetRequest,
    ScaleRequest,
    StatusResponse,
    ViewportOut,
)

load_dotenv()  # loads .env from project root; must run before env vars are consumed

_logger = logging.getLogger(__name__)

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Session binding
# ---------------------------------------------------------------------------

_session: TelemetrySession | None = None


def bind_session(session: TelemetrySession | None) -> None:
    """Make *session* the one served by the API (None unbinds)."""
    global _session
    _session = session


def get_session() -> TelemetrySession:
    if _session is None:
        raise HTTPException(status_code=503, detail="No telemetry session bound")
    return _session


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start a live session for ``ECHOOK_SUBJECT_ID`` when it is set."""
    subject_id = os.environ.get("ECHOOK_SUBJECT_ID")
    session = None
    if subject_id:
        session = TelemetrySession(subject_id, settings=load_settings())
        bind_session(session)
        session.connect()
        _logger.info("Following live telemetry for %s", subject_id)
    try:
        yield
    finally:
        if session is not None:
            session.disconnect()
            bind_session(None)


app = FastAPI(title="eChook Telemetry", version=__version__, lifespan=lifespan)


def _load(action, session: TelemetrySession, *args) -> LoadResponse:
    try:
        loaded = action(*args)
    except InvalidRangeError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except BackfillError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return LoadResponse(loaded=loaded, buffer_size=len(session.buffer), paused=session.buffer.paused)


def _viewport(state: ViewportState) -> ViewportOut:
    return ViewportOut(locked_to_live=state.locked_to_live, visible_range=state.visible_range)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok", version=__version__)


@app.get("/api/status", response_model=StatusResponse)
def status(session: TelemetrySession = Depends(get_session)) -> StatusResponse:
    return StatusResponse(**session.status())


@app.get("/api/live")
def live(session: TelemetrySession = Depends(get_session)) -> dict:
    """Newest live packet in display units."""
    return dict(session.display_live())


@app.get("/api/keys", response_model=KeysResponse)
def list_keys(session: TelemetrySession = Depends(get_session)) -> KeysResponse:
    prefs = session.unit_prefs
    current = session.display_live()
    return KeysResponse(
        keys=[
            KeyInfo(
                key=k,
                name=keys.display_name(k),
                unit=keys.unit_for(k, prefs),
                description=keys.description(k),
                value=current.get(k),
                formatted=keys.format_value(k, current.get(k)),
            )
            for k in session.available_keys()
        ]
    )


@app.get("/api/races", response_model=RacesResponse)
def list_races(session: TelemetrySession = Depends(get_session)) -> RacesResponse:
    races = [
        RaceOut(
            id=race.id,
            start_time_ms=race.start_time_ms,
            start_time_iso=race.start_time_iso,
            laps=[
                LapOut(
                    lap_number=lap.lap_number,
                    start_time=lap.start_time,
                    finish_time=lap.finish_time,
                    stats=lap.stats,
                )
                for lap in race.sorted_laps()
            ],
        )
        for race in session.races.values()
    ]
    return RacesResponse(current_lap=session.current_lap, races=races)


@app.get("/api/laps/intervals", response_model=list[LapIntervalOut])
def laps_intervals(session: TelemetrySession = Depends(get_session)) -> list[LapIntervalOut]:
    return [
        LapIntervalOut(
            lap_number=iv.lap_number,
            start_time=iv.start_time,
            end_time=iv.end_time,
            in_progress=iv.in_progress,
        )
        for iv in session.lap_intervals()
    ]


@app.get("/api/history/days")
def history_days(session: TelemetrySession = Depends(get_session)) -> list[str]:
    try:
        days = session.fetch_available_days()
    except BackfillError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return [d.isoformat() for d in days]


@app.get("/api/history/export.csv")
def export_csv(
    start_ms: float | None = None,
    end_ms: float | None = None,
    track: str | None = None,
    session: TelemetrySession = Depends(get_session),
) -> Response:
    text = session.export_csv(start_ms, end_ms)
    if text is None:
        raise HTTPException(status_code=404, detail="No data in the selected range")
    start = start_ms if start_ms is not None else session.buffer.earliest_time
    filename = export_filename(track=track, start_ms=start or 0)
    return Response(
        content=text,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.post("/api/pause", response_model=PauseResponse)
def pause(session: TelemetrySession = Depends(get_session)) -> PauseResponse:
    session.pause()
    return PauseResponse(paused=True)


@app.post("/api/resume", response_model=PauseResponse)
def resume(session: TelemetrySession = Depends(get_session)) -> PauseResponse:
    try:
        added = session.resume()
    except BackfillError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return PauseResponse(paused=False, backfilled=added)


@app.post("/api/history/load", response_model=LoadResponse)
def load_history(req: RangeRequest, session: TelemetrySession = Depends(get_session)) -> LoadResponse:
    return _load(session.load_range, session, req.start_ms, req.end_ms)


@app.post("/api/history/load-day", response_model=LoadResponse)
def load_day(req: DayRequest, session: TelemetrySession = Depends(get_session)) -> LoadResponse:
    return _load(session.load_day, session, req.day, req.start, req.end)


@app.post("/api/history/extend", response_model=LoadResponse)
def extend_history(req: ExtendRequest, session: TelemetrySession = Depends(get_session)) -> LoadResponse:
    return _load(session.load_extra_history, session, req.minutes)


@app.post("/api/history/reset-live", response_model=LoadResponse)
def reset_live(req: ResetRequest | None = None, session: TelemetrySession = Depends(get_session)) -> LoadResponse:
    minutes = req.minutes if req is not None else 30
    return _load(session.reset_to_live, session, minutes)


@app.get("/api/viewport", response_model=ViewportOut)
def viewport(session: TelemetrySession = Depends(get_session)) -> ViewportOut:
    return _viewport(session.viewport.state)


@app.post("/api/viewport/lock", response_model=ViewportOut)
def viewport_lock(session: TelemetrySession = Depends(get_session)) -> ViewportOut:
    return _viewport(session.viewport.lock_to_live())


@app.post("/api/viewport/pan", response_model=ViewportOut)
def viewport_pan(req: PanRequest, session: TelemetrySession = Depends(get_session)) -> ViewportOut:
    return _viewport(session.viewport.pan_by(req.delta_ms))


@app.post("/api/viewport/scale", response_model=ViewportOut)
def viewport_scale(req: ScaleRequest, session: TelemetrySession = Depends(get_session)) -> ViewportOut:
    return _viewport(session.viewport.scale_by(req.factor))


@app.post("/api/viewport/zoom", response_model=ViewportOut)
def viewport_zoom(req: RangeRequest, session: TelemetrySession = Depends(get_session)) -> ViewportOut:
    try:
        state = session.viewport.zoom_to_range(req.start_ms, req.end_ms)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    return _viewport(state)
