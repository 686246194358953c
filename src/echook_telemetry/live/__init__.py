"""Live stream connection, reconnect and liveness tracking."""

from echook_telemetry.live.connection import (
    BackoffPolicy,
    ConnectionManager,
    ConnectionState,
    Liveness,
    classify_liveness,
)
from echook_telemetry.live.transport import Transport, TransportError, WebSocketTransport

__all__ = [
    "BackoffPolicy",
    "ConnectionManager",
    "ConnectionState",
    "Liveness",
    "Transport",
    "TransportError",
    "WebSocketTransport",
    "classify_liveness",
]
