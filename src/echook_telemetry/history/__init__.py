"""Bounded time-ordered history, historic backfill and CSV export."""

from echook_telemetry.history.buffer import AppendResult, HistoryBuffer
from echook_telemetry.history.client import (
    BackfillError,
    HistoryClient,
    InvalidRangeError,
    validate_range,
)
from echook_telemetry.history.export import export_filename, history_to_csv

__all__ = [
    "AppendResult",
    "BackfillError",
    "HistoryBuffer",
    "HistoryClient",
    "InvalidRangeError",
    "export_filename",
    "history_to_csv",
    "validate_range",
]
