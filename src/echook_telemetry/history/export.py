"""CSV export of a time range of telemetry history."""

from __future__ import annotations

import csv
import io
import re
from collections.abc import Iterable
from datetime import datetime, timezone

from echook_telemetry.telemetry.keys import display_name, sort_keys, unit_for
from echook_telemetry.telemetry.models import Packet

EXCLUDED_KEYS = frozenset({"id", "carId", "_id", "timestamp", "updated", "car"})


def _iso(ts_ms: float) -> str:
    return (
        datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def history_to_csv(
    packets: Iterable[Packet],
    start_ms: float,
    end_ms: float,
    unit_prefs=None,
) -> str | None:
    """Render packets with ``start_ms <= timestamp <= end_ms`` as CSV text.

    Columns: ``Timestamp (ms)``, ``ISO Time``, then every field seen in the
    range (catalog order, unknown keys alphabetically) labelled with its
    display name and unit.  Returns None when the range holds no packets.
    """
    rows = [p for p in packets if start_ms <= p["timestamp"] <= end_ms]
    if not rows:
        return None

    seen: set[str] = set()
    for pkt in rows:
        seen.update(k for k in pkt if k not in EXCLUDED_KEYS)
    keys = sort_keys(seen)

    header = ["Timestamp (ms)", "ISO Time"]
    for k in keys:
        unit = unit_for(k, unit_prefs)
        header.append(f"{display_name(k)} ({unit})" if unit else display_name(k))

    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(header)
    for pkt in rows:
        ts = pkt["timestamp"]
        writer.writerow(
            [ts, _iso(ts)] + ["" if pkt.get(k) is None else pkt[k] for k in keys]
        )
    return out.getvalue()


def export_filename(prefix: str = "eChook", track: str | None = None, start_ms: float = 0) -> str:
    """``<prefix>-<track-slug>-<YYYY-MM-DDTHH-MM-SS>.csv``."""
    slug = re.sub(r"[^a-z0-9]", "-", (track or "unknown-track").lower())
    stamp = _iso(start_ms)[:19].replace(":", "-")
    return f"{prefix}-{slug}-{stamp}.csv"
