"""In-process collaborator implementations for tests and single-process hosts."""

from __future__ import annotations

import uuid
from collections import defaultdict

from ai_delegation.exceptions import CollaboratorError, NotFoundError

from .collaborators import MessageHandler


class MemoryRecordStore:
    """Dict-backed record store. Keeps insertion order per entity."""

    def __init__(self) -> None:
        self._data: dict[tuple[str, str], dict[str, bytes]] = defaultdict(dict)
        self.writes = 0

    def put(self, domain: str, entity: str, aspect: str, data: bytes) -> None:
        aspects = self._data[(domain, entity)]
        # Overwrites move the aspect to the end so scan() reflects write order.
        aspects.pop(aspect, None)
        aspects[aspect] = bytes(data)
        self.writes += 1

    def get(self, domain: str, entity: str, aspect: str) -> bytes:
        try:
            return self._data[(domain, entity)][aspect]
        except KeyError:
            raise NotFoundError(f"{domain}/{entity}/{aspect} not found") from None

    def scan(self, domain: str, entity: str) -> list[tuple[str, bytes]]:
        return list(self._data.get((domain, entity), {}).items())

    def delete(self, domain: str, entity: str, aspect: str) -> None:
        self._data.get((domain, entity), {}).pop(aspect, None)


class MemoryBroadcastChannel:
    """Synchronous fan-out to subscribed handlers. Keeps a log of publishes."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[MessageHandler]] = defaultdict(list)
        self.published: list[tuple[str, bytes, int]] = []

    def publish(self, channel: str, payload: bytes, ttl_seconds: int) -> None:
        self.published.append((channel, payload, ttl_seconds))
        for handler in list(self._handlers.get(channel, [])):
            handler(payload)

    def subscribe(self, channel: str, handler: MessageHandler) -> None:
        self._handlers[channel].append(handler)


class MemoryAccessRegistry:
    """Tracks granted (resource, operation) relations."""

    def __init__(self) -> None:
        self.relations: dict[str, list[tuple[str, str]]] = defaultdict(list)

    def grant(self, resource_id: str, operation: str) -> str:
        if not resource_id or not operation:
            raise CollaboratorError("resource_id and operation are required")
        handle = f"rdid-{uuid.uuid4().hex[:12]}"
        self.relations[resource_id].append((operation, handle))
        return handle

    def revoke(self, resource_id: str) -> None:
        if resource_id not in self.relations:
            raise CollaboratorError(f"no relation registered for {resource_id}")
        del self.relations[resource_id]
