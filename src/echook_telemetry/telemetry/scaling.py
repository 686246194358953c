"""Unit scaling — display-unit conversion and derived fields for one packet."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from echook_telemetry.config import UnitPrefs
from echook_telemetry.telemetry.models import Packet

# m/s → display unit
SPEED_FACTORS: dict[str, float] = {
    "mph": 2.23694,
    "kph": 3.6,
    "ms": 1.0,
}

_TEMP_KEYS = ("temp1", "temp2")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def convert_speed(value_ms: Any, unit: str = "mph") -> Any:
    """Convert a speed in m/s to *unit*.

    Unknown units and non-numeric values (None, error strings) are returned
    unchanged.
    """
    if not _is_number(value_ms):
        return value_ms
    factor = SPEED_FACTORS.get(unit, 1.0)
    return value_ms if factor == 1.0 else value_ms * factor


def convert_temp(value_c: Any, unit: str = "c") -> Any:
    """Convert a Celsius temperature to *unit* (``"c"`` or ``"f"``).

    Any other unit, and any non-numeric value, leaves *value_c* unchanged.
    """
    if not _is_number(value_c):
        return value_c
    if unit == "f":
        return value_c * 9 / 5 + 32
    return value_c


def _units(unit_prefs: UnitPrefs | Mapping[str, Any] | None) -> tuple[str, str]:
    """(speed_unit, temp_unit) from prefs; mappings may hold unknown units."""
    if unit_prefs is None:
        unit_prefs = UnitPrefs()
    if isinstance(unit_prefs, UnitPrefs):
        return unit_prefs.speed_unit, unit_prefs.temp_unit
    defaults = UnitPrefs()
    speed = unit_prefs.get("speed_unit", unit_prefs.get("speedUnit", defaults.speed_unit))
    temp = unit_prefs.get("temp_unit", unit_prefs.get("tempUnit", defaults.temp_unit))
    return str(speed).lower(), str(temp).lower()


def _sub(a: Any, b: Any) -> float | None:
    if not (_is_number(a) and _is_number(b)):
        return None
    return a - b


def scale_packet(
    packet: Packet,
    unit_prefs: UnitPrefs | Mapping[str, Any] | None = None,
) -> Packet:
    """Return a read-only copy of *packet* in display units.

    * ``speed`` m/s → mph / kph / m/s
    * ``temp1``, ``temp2`` °C → °F when requested
    * ``voltageHigh = voltage - voltageLower``,
      ``voltageDiff = voltageHigh - voltageLower``
    * ``tempDiff = |temp1 - temp2|`` on the converted temperatures

    Derived fields are only added when their inputs are present; a None or
    non-numeric input yields a None result.  Non-numeric values, unknown
    units and every other field pass through unchanged, so this never raises.
    """
    speed_unit, temp_unit = _units(unit_prefs)
    out = dict(packet)

    if "speed" in out:
        out["speed"] = convert_speed(out["speed"], speed_unit)
    for key in _TEMP_KEYS:
        if key in out:
            out[key] = convert_temp(out[key], temp_unit)

    if "voltage" in out and "voltageLower" in out:
        high = _sub(out["voltage"], out["voltageLower"])
        out["voltageHigh"] = high
        out["voltageDiff"] = _sub(high, out["voltageLower"])

    if "temp1" in out and "temp2" in out:
        diff = _sub(out["temp1"], out["temp2"])
        out["tempDiff"] = None if diff is None else abs(diff)

    return MappingProxyType(out)
