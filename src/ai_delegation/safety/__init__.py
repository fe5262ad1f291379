"""Security layer: capability tokens, circuit breakers and task screening."""

from .circuit_breaker import BreakerBoard, BreakerState, CircuitBreaker
from .screener import MAX_PERMISSIONS, screen_task
from .tokens import CapabilityToken, Caveat, CaveatKind, TokenAuthority

__all__ = [
    "BreakerBoard",
    "BreakerState",
    "CapabilityToken",
    "Caveat",
    "CaveatKind",
    "CircuitBreaker",
    "MAX_PERMISSIONS",
    "TokenAuthority",
    "screen_task",
]
