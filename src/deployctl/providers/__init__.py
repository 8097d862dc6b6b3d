"""Transport providers used by the step executor."""
from __future__ import annotations

from .transport import (
    Deadline,
    LocalTransport,
    SSHTransport,
    Transport,
    TransportCancelledError,
    TransportError,
    TransportTimeoutError,
    run_process,
    transport_for,
)

__all__ = [
    "Deadline",
    "LocalTransport",
    "SSHTransport",
    "Transport",
    "TransportCancelledError",
    "TransportError",
    "TransportTimeoutError",
    "run_process",
    "transport_for",
]
