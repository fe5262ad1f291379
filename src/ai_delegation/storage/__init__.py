"""Collaborator interfaces and reference implementations."""

from __future__ import annotations

from .collaborators import AccessRegistry, BroadcastChannel, Domain, RecordStore
from .database import SQLiteRecordStore
from .memory import MemoryAccessRegistry, MemoryBroadcastChannel, MemoryRecordStore

__all__ = [
    "AccessRegistry",
    "BroadcastChannel",
    "Domain",
    "MemoryAccessRegistry",
    "MemoryBroadcastChannel",
    "MemoryRecordStore",
    "RecordStore",
    "SQLiteRecordStore",
]
