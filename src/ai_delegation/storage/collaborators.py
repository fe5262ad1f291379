"""Collaborator interfaces the delegation core calls into.

The host system supplies a record store, a broadcast channel and an access
relation registry. The core treats every call as synchronous and lets any
exception they raise propagate unchanged.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import StrEnum
from typing import Protocol


class Domain(StrEnum):
    """Logical record domains.

    Agents, Tasks and Contracts hold mutable aspects (latest write wins).
    Bids, Monitoring, Reputation and Triggers are append-only: every write
    uses a fresh aspect key.
    """

    AGENTS = "agents"
    TASKS = "tasks"
    CONTRACTS = "contracts"
    BIDS = "bids"
    MONITORING = "monitoring"
    REPUTATION = "reputation"
    TRIGGERS = "triggers"


class RecordStore(Protocol):
    def put(self, domain: str, entity: str, aspect: str, data: bytes) -> None: ...

    def get(self, domain: str, entity: str, aspect: str) -> bytes:
        """Return the latest bytes for the key or raise NotFoundError."""
        ...

    def scan(self, domain: str, entity: str) -> list[tuple[str, bytes]]:
        """Return ``(aspect, data)`` for every aspect of an entity, in write order."""
        ...

    def delete(self, domain: str, entity: str, aspect: str) -> None:
        """Drop an aspect. Deleting a missing aspect is a no-op."""
        ...


MessageHandler = Callable[[bytes], None]


class BroadcastChannel(Protocol):
    def publish(self, channel: str, payload: bytes, ttl_seconds: int) -> None: ...

    def subscribe(self, channel: str, handler: MessageHandler) -> None: ...


class AccessRegistry(Protocol):
    def grant(self, resource_id: str, operation: str) -> str:
        """Register access to a resource and return an opaque handle."""
        ...

    def revoke(self, resource_id: str) -> None: ...
