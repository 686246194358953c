"""Frame codec — MessagePack frames to packets and back.

The live stream and the history service both speak MessagePack.  Frames are
decoded into plain Python containers; :func:`decode_packet` additionally
normalises a decoded mapping into a read-only :data:`Packet`.
"""

from __future__ import annotations

import math
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import msgpack

from echook_telemetry.telemetry.models import Packet, make_packet

# Capitalised coordinate keys some firmware revisions send.
_KEY_ALIASES = (("Lat", "lat"), ("Lon", "lon"))


class CodecError(Exception):
    """Base class for frame codec failures."""


class DecodeError(CodecError):
    """Raised when a frame is truncated, malformed, or not a packet."""


class EncodeError(CodecError):
    """Raised when a value cannot be represented as MessagePack."""


# ---------------------------------------------------------------------------
# Raw MessagePack
# ---------------------------------------------------------------------------


def encode(value: Any) -> bytes:
    """Serialise *value* (nested dicts/lists of scalars) to MessagePack."""
    try:
        return msgpack.packb(value, use_bin_type=True)
    except (TypeError, ValueError, OverflowError) as exc:
        raise EncodeError(f"Cannot encode {type(value).__name__}: {exc}") from exc


def decode(data: bytes | bytearray | memoryview) -> Any:
    """Deserialise one complete MessagePack document.

    Raises
    ------
    DecodeError
        If *data* is empty, truncated, carries trailing bytes, or is not
        valid MessagePack.
    """
    if not data:
        raise DecodeError("Empty frame")
    try:
        return msgpack.unpackb(bytes(data), raw=False, strict_map_key=False)
    except (ValueError, TypeError, msgpack.exceptions.UnpackException) as exc:
        raise DecodeError(f"Malformed frame ({len(data)} bytes): {exc}") from exc


# ---------------------------------------------------------------------------
# Packet normalisation
# ---------------------------------------------------------------------------


def _coerce_number(value: Any) -> Any:
    """Cast numeric-looking strings to ``int``/``float``; leave the rest alone."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if not text:
        return value
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return value
    return number if math.isfinite(number) else value


def _as_epoch_ms(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value if value else None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def normalize_packet(raw: Mapping[str, Any], now_ms: float | None = None) -> Packet | None:
    """Normalise a decoded mapping into a read-only packet.

    * numeric-looking string values become numbers
    * ``Lat``/``Lon`` are copied to ``lat``/``lon``
    * ``timestamp`` falls back to ``updated`` and then to *now_ms*

    Returns None when no timestamp can be determined and *now_ms* is None.
    """
    fields = {str(k): _coerce_number(v) for k, v in raw.items()}
    for src, dst in _KEY_ALIASES:
        if src in fields:
            fields[dst] = fields[src]

    ts = _as_epoch_ms(fields.get("timestamp")) or _as_epoch_ms(fields.get("updated"))
    if ts is None:
        if now_ms is None:
            return None
        ts = now_ms
    fields["timestamp"] = ts
    return make_packet(fields)


def decode_packet(data: bytes | bytearray | memoryview, now_ms: float | None = None) -> Packet:
    """Decode one live frame into a :data:`Packet`.

    Packets without a usable timestamp are stamped with *now_ms* (defaults to
    the wall clock) so live samples are never dropped for lack of one.
    """
    value = decode(data)
    if not isinstance(value, Mapping):
        raise DecodeError(f"Frame is a {type(value).__name__}, expected a map")
    if now_ms is None:
        now_ms = time.time() * 1000.0
    packet = normalize_packet(value, now_ms=now_ms)
    if packet is None:
        raise DecodeError("Frame has no usable timestamp")
    return packet
