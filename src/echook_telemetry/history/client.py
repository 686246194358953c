"""HistoryClient — fetches historic telemetry pages from the history service.

Endpoints (relative to ``base_url``)::

    GET /api/history/{subject_id}?start=&end=&page=&limit=   → list of points
    GET /api/history/days/{subject_id}                        → ["YYYY-MM-DD", ...]

Bodies are MessagePack, or JSON when the server falls back to it.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import date
from typing import Any

import requests

from echook_telemetry.telemetry.codec import DecodeError, decode, normalize_packet
from echook_telemetry.telemetry.models import Packet

_logger = logging.getLogger(__name__)

_MSGPACK = "application/msgpack"
_DAY_MS = 24 * 60 * 60 * 1000


class BackfillError(Exception):
    """Raised when a historic fetch fails; the buffer is left untouched."""


class InvalidRangeError(ValueError):
    """Raised for a historic range with start >= end or outside retention."""


def validate_range(
    start_ms: float,
    end_ms: float,
    now_ms: float | None = None,
    retention_ms: float | None = None,
) -> None:
    """Reject an unusable historic range before any state is touched.

    Raises
    ------
    InvalidRangeError
        If ``start_ms >= end_ms``, or *retention_ms* is given and the range
        starts before ``now_ms - retention_ms``.
    """
    if start_ms >= end_ms:
        raise InvalidRangeError(f"Range start {start_ms} is not before end {end_ms}")
    if retention_ms is not None:
        if now_ms is None:
            now_ms = time.time() * 1000.0
        oldest = now_ms - retention_ms
        if start_ms < oldest:
            raise InvalidRangeError(
                f"Range start {start_ms} is older than the retention window ({oldest:.0f})"
            )


def retention_ms_from_days(days: float | None) -> float | None:
    return None if days is None else days * _DAY_MS


def _decode_body(content: bytes) -> Any:
    """JSON when the body starts with ``{``/``[``, MessagePack otherwise.

    ``{`` and ``[`` are also valid MessagePack fixints, so JSON is tried
    first and MessagePack is the fallback.
    """
    if not content:
        return None
    if content[:1] in (b"{", b"["):
        try:
            return json.loads(content)
        except ValueError:
            pass
    return decode(content)


class HistoryClient:
    """HTTP client for the external history service.

    Parameters
    ----------
    base_url:
        Service root, e.g. ``"http://localhost:3000"``.
    http:
        A :class:`requests.Session` (or compatible).  Injected for testability.
    page_limit:
        Page size; paging stops at the first page shorter than this.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(
        self,
        base_url: str,
        http: requests.Session | None = None,
        page_limit: int = 5000,
        timeout: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http if http is not None else requests.Session()
        self._page_limit = page_limit
        self._timeout = timeout

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch_range(self, subject_id: str, start_ms: float, end_ms: float | None = None) -> list[Packet]:
        """Return every point for *subject_id* in ``[start_ms, end_ms]``.

        Points are normalised like live packets; points without any timestamp
        are dropped.

        Raises
        ------
        BackfillError
            On any network, HTTP status or decoding failure.
        """
        points: list[Any] = []
        page = 1
        while True:
            params: dict[str, Any] = {"start": int(start_ms), "page": page, "limit": self._page_limit}
            if end_ms is not None:
                params["end"] = int(end_ms)
            chunk = self._get(f"/api/history/{subject_id}", params)
            if not isinstance(chunk, list):
                break
            points.extend(chunk)
            if len(chunk) < self._page_limit:
                break
            page += 1

        packets = []
        for raw in points:
            if not isinstance(raw, dict):
                continue
            pkt = normalize_packet(raw)
            if pkt is not None:
                packets.append(pkt)

        _logger.info(
            "Fetched %d historic points for %s (%d pages, %d without timestamp)",
            len(packets), subject_id, page, len(points) - len(packets),
        )
        return packets

    def fetch_available_days(self, subject_id: str) -> list[date]:
        """Days that have stored history for *subject_id*, ascending."""
        body = self._get(f"/api/history/days/{subject_id}", None)
        if not isinstance(body, list):
            return []
        days = set()
        for item in body:
            try:
                days.add(date.fromisoformat(str(item)[:10]))
            except ValueError:
                _logger.warning("Ignoring malformed history day %r", item)
        return sorted(days)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get(self, path: str, params: dict[str, Any] | None) -> Any:
        url = self._base_url + path
        try:
            resp = self._http.get(
                url,
                params=params,
                headers={"Accept": _MSGPACK, "X-Requested-With": "XMLHttpRequest"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise BackfillError(f"GET {path} failed: {exc}") from exc

        try:
            return _decode_body(resp.content)
        except DecodeError as exc:
            raise BackfillError(f"GET {path} returned an undecodable body: {exc}") from exc
