"""Persistent state: the release registry and the execution ledger."""
from __future__ import annotations

from .registry import StateRegistry, StateRegistryError
from .tracker import (
    Claim,
    ExecutionKey,
    ExecutionRecord,
    KeyBusyError,
    RecordStatus,
    StateTracker,
    StateTrackerError,
)

__all__ = [
    "Claim",
    "ExecutionKey",
    "ExecutionRecord",
    "KeyBusyError",
    "RecordStatus",
    "StateRegistry",
    "StateRegistryError",
    "StateTracker",
    "StateTrackerError",
]
