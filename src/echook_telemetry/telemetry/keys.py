"""Field catalog — ordering, display names, tooltips and units per field key."""

from __future__ import annotations

import math
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from echook_telemetry.telemetry.models import Packet

REGULAR_KEYS: frozenset[str] = frozenset({
    "voltage", "current", "ampH", "speed", "rpm", "throttle",
    "temp1", "temp2", "tempDiff", "voltageLower", "voltageHigh",
    "voltageDiff", "gear", "brake", "currLap", "lat", "lon", "track",
})
"""Continuous telemetry values that are graphed and shown in the data ribbon."""

LAP_KEYS: frozenset[str] = frozenset({
    "LL_V", "LL_I", "LL_RPM", "LL_Spd", "LL_Ah", "LL_Time", "LL_Eff",
})
"""Last-lap statistics, present only on the packet that completes a lap."""

KEY_ORDER: tuple[str, ...] = (
    "voltage", "current", "ampH",
    "speed", "rpm", "throttle", "voltageLower",
    "voltageHigh", "voltageDiff", "gear", "brake",
    "temp1", "temp2", "tempDiff",
    "currLap", "lat", "lon", "track",
)

KEY_DISPLAY_NAMES: dict[str, str] = {
    "voltage": "Voltage",
    "current": "Current",
    "voltageLower": "V_Batt Low",
    "voltageHigh": "V_Batt High",
    "voltageDiff": "V_Batt Diff",
    "rpm": "RPM",
    "speed": "Speed",
    "throttle": "Throttle",
    "temp1": "Temp 1",
    "temp2": "Temp 2",
    "tempDiff": "Temp Diff",
    "ampH": "Amp Hours",
    "currLap": "Current Lap",
    "gear": "Gear",
    "brake": "Brake",
    "lat": "Latitude",
    "lon": "Longitude",
    "track": "Track",
}

KEY_DESCRIPTIONS: dict[str, str] = {
    "voltage": "Total battery voltage (24V Nominal)",
    "current": "Current draw from the battery",
    "voltageLower": "Lower battery voltage (The GND-12V battery)",
    "voltageHigh": "Upper battery voltage (12V-24V battery)",
    "voltageDiff": "Difference between upper and lower batteries (+ve if upper > lower)",
    "rpm": "Motor revolutions per minute",
    "speed": "Ground speed in configured units",
    "throttle": "Throttle position (0-100%)",
    "temp1": "Primary temperature sensor (typically motor)",
    "temp2": "Secondary temperature sensor",
    "tempDiff": "Absolute difference between the two temperatures",
    "ampH": "Cumulative amp-hours consumed this session",
    "currLap": "Current lap number",
    "gear": "Current gear selection",
    "brake": "Brake status (1 = engaged, 0 = released)",
    "lat": "GPS latitude coordinate",
    "lon": "GPS longitude coordinate",
    "track": "Current track or circuit name",
}

_ORDER_INDEX = {k: i for i, k in enumerate(KEY_ORDER)}


def display_name(key: str) -> str:
    """Human-readable name for *key*; the key itself when unknown."""
    return KEY_DISPLAY_NAMES.get(key, key)


def description(key: str) -> str:
    """Tooltip text for *key*; empty string when unknown."""
    return KEY_DESCRIPTIONS.get(key, "")


def sort_keys(keys) -> list[str]:
    """Catalog order first, then any unknown keys alphabetically."""
    return sorted(keys, key=lambda k: (0, _ORDER_INDEX[k], "") if k in _ORDER_INDEX else (1, 0, k))


def available_keys(*packets: Packet | None) -> list[str]:
    """Regular keys present in any of *packets*, in catalog order."""
    present: set[str] = set()
    for pkt in packets:
        if pkt:
            present.update(k for k in pkt if k in REGULAR_KEYS)
    return [k for k in KEY_ORDER if k in present]


def _pref(unit_prefs: Any, name: str, alias: str, default: str) -> str:
    if unit_prefs is None:
        return default
    if isinstance(unit_prefs, Mapping):
        return unit_prefs.get(name) or unit_prefs.get(alias) or default
    return getattr(unit_prefs, name, default)


def unit_for(key: str, unit_prefs: Any = None) -> str:
    """Display unit for *key* given the user's unit preferences.

    Lap-statistic keys (``LL_*``) are matched on their suffix.
    """
    k = key.lower()
    if k.startswith("ll_"):
        k = k[3:]
        if k == "time":
            return "s"
        if k == "v":
            return "V"
        if k == "i":
            return "A"
        if k == "spd":
            k = "speed"
    if "rpm" in k:
        return "RPM"
    if "gear" in k or "lap" in k:
        return ""
    if "speed" in k:
        return _pref(unit_prefs, "speed_unit", "speedUnit", "mph")
    if "volt" in k or "batt" in k or k == "v":
        return "V"
    if "amph" in k or k == "ah":
        return "Ah"
    if "curr" in k or "amp" in k:
        return "A"
    if "temp" in k:
        return "°F" if _pref(unit_prefs, "temp_unit", "tempUnit", "c") == "f" else "°C"
    if "throttle" in k or "soc" in k:
        return "%"
    if "press" in k:
        return "psi"
    return ""


def format_value(key: str, value: Any) -> str:
    """Format a field value for display.

    None renders as ``-``; integers-by-nature (rpm, gear, lap, brake) with no
    decimals; times as local wall-clock; GPS with five decimals; anything
    else numeric with two.
    """
    if value is None:
        return "-"
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return str(value)
    if not math.isfinite(value):
        return str(value)

    k = key.lower()
    if k == "ll_time":
        return f"{value:.2f}"
    if "rpm" in k or "gear" in k or "lap" in k or "brake" in k:
        return f"{value:.0f}"
    if k in ("updated", "timestamp") or "time" in k:
        return datetime.fromtimestamp(value / 1000.0).strftime("%H:%M:%S")
    if k in ("lat", "lon") or "gps" in k:
        return f"{value:.5f}"
    return f"{value:.2f}"
