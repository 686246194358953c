"""Telemetry packets: wire codec, field catalog and display scaling.

Public API
----------
Packet          - read-only field mapping with a ``timestamp``
decode_packet   - MessagePack frame → normalised Packet
encode / decode - MessagePack round trip
scale_packet    - wire units → display units plus derived fields
DecodeError     - raised on malformed frames
"""

from echook_telemetry.telemetry.codec import (
    CodecError,
    DecodeError,
    EncodeError,
    decode,
    decode_packet,
    encode,
    normalize_packet,
)
from echook_telemetry.telemetry.models import Packet, make_packet
from echook_telemetry.telemetry.scaling import scale_packet

__all__ = [
    "CodecError",
    "DecodeError",
    "EncodeError",
    "Packet",
    "decode",
    "decode_packet",
    "encode",
    "make_packet",
    "normalize_packet",
    "scale_packet",
]
