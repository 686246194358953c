"""ViewportCoordinator — shared zoom/pan/live-lock state for a group of charts.

Every chart in a sync group reads the same :class:`ViewportState`.  Only the
four commands below replace it; charts observe it through :attr:`state` or a
registered listener.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

Bounds = tuple[float, float]


@dataclass(frozen=True)
class ViewportState:
    locked_to_live: bool = True
    """Auto-scroll to the newest sample."""

    visible_range: Bounds | None = None
    """Fixed ``(start_ms, end_ms)`` window, or None to show everything."""


class ViewportCoordinator:
    """Command bus for a chart sync group.

    Parameters
    ----------
    bounds:
        Returns the buffer's ``(earliest_ms, latest_ms)``, or None when it is
        empty.  Pan and scale are clamped to it.
    """

    def __init__(self, bounds: Callable[[], Bounds | None]) -> None:
        self._bounds = bounds
        self._state = ViewportState()
        self._listeners: list[Callable[[ViewportState], None]] = []

    @property
    def state(self) -> ViewportState:
        return self._state

    def register_listener(self, listener: Callable[[ViewportState], None]) -> None:
        """Call *listener* with the new state after every command."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def lock_to_live(self) -> ViewportState:
        """Drop any fixed window and follow the newest sample."""
        return self._publish(ViewportState(locked_to_live=True, visible_range=None))

    def pan_by(self, delta_ms: float) -> ViewportState:
        """Shift the window by *delta_ms* (positive = later), keeping its width."""
        current = self._current_range()
        if current is None:
            return self._publish(ViewportState(locked_to_live=False, visible_range=None))
        start, end = current
        return self._publish(self._clamped(start + delta_ms, end + delta_ms))

    def scale_by(self, factor: float) -> ViewportState:
        """Scale the window width around its centre (< 1 zooms in, > 1 out)."""
        if factor <= 0:
            raise ValueError(f"Scale factor must be positive, got {factor}")
        current = self._current_range()
        if current is None:
            return self._publish(ViewportState(locked_to_live=False, visible_range=None))
        start, end = current
        centre = (start + end) / 2
        half = (end - start) * factor / 2
        return self._publish(self._clamped(centre - half, centre + half))

    def zoom_to_range(self, start_ms: float, end_ms: float) -> ViewportState:
        """Show exactly ``[start_ms, end_ms]`` and stop following live data."""
        if start_ms >= end_ms:
            raise ValueError(f"Zoom start {start_ms} is not before end {end_ms}")
        return self._publish(ViewportState(locked_to_live=False, visible_range=(start_ms, end_ms)))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _current_range(self) -> Bounds | None:
        return self._state.visible_range or self._bounds()

    def _clamped(self, start: float, end: float) -> ViewportState:
        """Fit ``[start, end]`` inside the buffer bounds, preserving width if possible."""
        bounds = self._bounds()
        if bounds is not None:
            lo, hi = bounds
            width = end - start
            if width >= hi - lo:
                start, end = lo, hi
            elif start < lo:
                start, end = lo, lo + width
            elif end > hi:
                start, end = hi - width, hi
        return ViewportState(locked_to_live=False, visible_range=(start, end))

    def _publish(self, state: ViewportState) -> ViewportState:
        self._state = state
        for listener in self._listeners:
            listener(state)
        return state
