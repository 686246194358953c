"""Telemetry packet model."""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

Packet = Mapping[str, Any]
"""One decoded telemetry sample.

Always carries a numeric ``timestamp`` (epoch milliseconds).  Packets handed
out by this package are read-only :class:`types.MappingProxyType` views.
"""


def make_packet(fields: Mapping[str, Any] | None = None, **extra: Any) -> Packet:
    """Return a read-only packet built from *fields* and keyword overrides."""
    data = dict(fields or {})
    data.update(extra)
    return MappingProxyType(data)

