"""
Per-agent circuit breakers.

A breaker opens after ``failure_threshold`` consecutive failures, or at once
when the agent's trust score falls below ``trust_floor``. After ``cooldown``
a single probe is admitted (half-open); only an explicit success closes the
breaker again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Callable

from ai_delegation.clock import Clock, SystemClock, to_iso
from ai_delegation.config import BreakerConfig

logger = logging.getLogger(__name__)


class BreakerState(StrEnum):
    CLOSED = "closed"  # delegations flow normally
    OPEN = "open"  # agent blocked
    HALF_OPEN = "half_open"  # one probe admitted after cooldown


@dataclass
class CircuitBreaker:
    """Failure and trust monitor for one agent."""

    agent_id: str
    failure_threshold: int = 3
    trust_floor: float = 0.3
    cooldown: timedelta = timedelta(minutes=30)
    clock: Clock = field(default_factory=SystemClock, repr=False)

    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    last_tripped: datetime | None = None
    probe_taken: bool = False

    def record_failure(self) -> bool:
        """Count a failure. Returns True when this failure tripped the breaker.

        Any failure while half-open re-trips, whatever the count.
        """
        self.failure_count += 1
        if self.state is BreakerState.HALF_OPEN:
            self._trip("failure while half-open")
            return True
        if self.state is BreakerState.CLOSED and self.failure_count >= self.failure_threshold:
            self._trip(f"{self.failure_count} failures")
            return True
        return False

    def record_success(self) -> None:
        if self.state is not BreakerState.CLOSED:
            logger.info("Circuit breaker %s: %s -> closed", self.agent_id, self.state.value)
        self.failure_count = 0
        self.probe_taken = False
        self.state = BreakerState.CLOSED

    def check_trust_drop(self, trust: float) -> bool:
        """Trip when ``trust`` is below the floor. Returns whether it tripped."""
        if trust < self.trust_floor:
            self._trip(f"trust {trust:.3f} below floor {self.trust_floor:.3f}")
            return True
        return False

    @property
    def is_blocked(self) -> bool:
        """True when is_allowed() would refuse. Does not consume the probe."""
        if self.state is BreakerState.CLOSED:
            return False
        if self.state is BreakerState.OPEN:
            return self.last_tripped is None or self.clock.now() - self.last_tripped < self.cooldown
        return self.probe_taken

    def is_allowed(self) -> bool:
        """Whether a delegation to this agent may proceed right now."""
        if self.state is BreakerState.CLOSED:
            return True
        if self.state is BreakerState.OPEN:
            if self.last_tripped is not None and self.clock.now() - self.last_tripped >= self.cooldown:
                self.state = BreakerState.HALF_OPEN
                self.probe_taken = True
                logger.info("Circuit breaker %s: open -> half_open (probe admitted)", self.agent_id)
                return True
            return False
        return not self.probe_taken

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "trust_floor": self.trust_floor,
            "cooldown_seconds": self.cooldown.total_seconds(),
            "last_tripped": to_iso(self.last_tripped),
        }

    def _trip(self, reason: str) -> None:
        old_state = self.state
        self.state = BreakerState.OPEN
        self.last_tripped = self.clock.now()
        self.probe_taken = False
        logger.warning(
            "Circuit breaker %s: %s -> open (%s)", self.agent_id, old_state.value, reason
        )


class BreakerBoard:
    """One breaker per agent, created on first use from ``BreakerConfig``."""

    def __init__(
        self,
        config: BreakerConfig | None = None,
        clock: Clock | None = None,
        on_trip: Callable[[str], None] | None = None,
    ) -> None:
        self.config = config or BreakerConfig()
        self.clock = clock or SystemClock()
        self.on_trip = on_trip
        self._breakers: dict[str, CircuitBreaker] = {}

    def for_agent(self, agent_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(agent_id)
        if breaker is None:
            breaker = CircuitBreaker(
                agent_id=agent_id,
                failure_threshold=self.config.failure_threshold,
                trust_floor=self.config.trust_floor,
                cooldown=timedelta(seconds=self.config.cooldown_seconds),
                clock=self.clock,
            )
            self._breakers[agent_id] = breaker
        return breaker

    def record_failure(self, agent_id: str) -> bool:
        return self._notify(agent_id, self.for_agent(agent_id).record_failure())

    def record_success(self, agent_id: str) -> None:
        self.for_agent(agent_id).record_success()

    def check_trust_drop(self, agent_id: str, trust: float) -> bool:
        return self._notify(agent_id, self.for_agent(agent_id).check_trust_drop(trust))

    def is_allowed(self, agent_id: str) -> bool:
        return self.for_agent(agent_id).is_allowed()

    def is_blocked(self, agent_id: str) -> bool:
        breaker = self._breakers.get(agent_id)
        return breaker is not None and breaker.is_blocked

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {agent_id: b.to_dict() for agent_id, b in self._breakers.items()}

    def _notify(self, agent_id: str, tripped: bool) -> bool:
        if tripped and self.on_trip is not None:
            self.on_trip(agent_id)
        return tripped
