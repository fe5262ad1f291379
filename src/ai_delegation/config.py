"""
Configuration for the delegation engine.

Each component takes an ``EngineConfig`` (or falls back to the defaults), so
several engines with different storage namespaces can live in one process.
Values can be loaded from ``DELEGATION_*`` environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field
from rich.console import Console
from rich.logging import RichHandler

from .storage.collaborators import Domain


def _default_domain_names() -> Dict[str, str]:
    return {
        Domain.AGENTS.value: "Agents",
        Domain.TASKS.value: "Tasks",
        Domain.CONTRACTS.value: "Contracts",
        Domain.BIDS.value: "Bids",
        Domain.MONITORING.value: "Monitoring",
        Domain.REPUTATION.value: "Reputation",
        Domain.TRIGGERS.value: "Triggers",
    }


class TaskConfig(BaseModel):
    """Task graph rules."""
    min_verifiability: float = 0.3


class ReputationConfig(BaseModel):
    """Reputation ledger aggregation."""
    decay_days: float = 30.0
    default_trust: float = 0.5


class BreakerConfig(BaseModel):
    """Per-agent circuit breaker defaults."""
    failure_threshold: int = 3
    trust_floor: float = 0.3
    cooldown_seconds: float = 1800.0  # 30 minutes


class CoordinatorConfig(BaseModel):
    """Adaptive response policy knobs."""
    budget_extension_rate: float = 0.2
    max_budget_extensions: int = 3
    republish_on_verification_failure: bool = False


class ChannelConfig(BaseModel):
    """Broadcast channel time-to-live values, in seconds."""
    bid_ttl_seconds: int = 3600
    monitor_ttl_seconds: int = 86400


class TokenConfig(BaseModel):
    """Capability token lifetimes."""
    default_ttl_seconds: int = 86400


class StorageConfig(BaseModel):
    """Where records live and how domains are named."""
    db_path: str = str(Path.home() / ".agent-core" / "storage" / "delegation.db")
    namespace_prefix: str = ""
    domain_names: Dict[str, str] = Field(default_factory=_default_domain_names)

    def namespace(self, domain: Domain) -> str:
        name = self.domain_names.get(domain.value, domain.value)
        return f"{self.namespace_prefix}{name}"


class EngineConfig(BaseModel):
    """Master configuration for the delegation engine."""
    tasks: TaskConfig = TaskConfig()
    reputation: ReputationConfig = ReputationConfig()
    breaker: BreakerConfig = BreakerConfig()
    coordinator: CoordinatorConfig = CoordinatorConfig()
    channels: ChannelConfig = ChannelConfig()
    tokens: TokenConfig = TokenConfig()
    storage: StorageConfig = StorageConfig()
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load configuration from environment variables."""
        storage = StorageConfig(namespace_prefix=os.getenv("DELEGATION_NAMESPACE", ""))
        if os.getenv("DELEGATION_DB_PATH"):
            storage.db_path = os.environ["DELEGATION_DB_PATH"]

        return cls(
            tasks=TaskConfig(
                min_verifiability=float(os.getenv("DELEGATION_MIN_VERIFIABILITY", 0.3)),
            ),
            reputation=ReputationConfig(
                decay_days=float(os.getenv("DELEGATION_TRUST_DECAY_DAYS", 30.0)),
            ),
            breaker=BreakerConfig(
                failure_threshold=int(os.getenv("DELEGATION_BREAKER_THRESHOLD", 3)),
                trust_floor=float(os.getenv("DELEGATION_TRUST_FLOOR", 0.3)),
                cooldown_seconds=float(os.getenv("DELEGATION_BREAKER_COOLDOWN", 1800.0)),
            ),
            coordinator=CoordinatorConfig(
                budget_extension_rate=float(os.getenv("DELEGATION_BUDGET_EXTENSION_RATE", 0.2)),
                max_budget_extensions=int(os.getenv("DELEGATION_MAX_BUDGET_EXTENSIONS", 3)),
                republish_on_verification_failure=(
                    os.getenv("DELEGATION_REPUBLISH_ON_VERIFY_FAIL", "false").lower() == "true"
                ),
            ),
            channels=ChannelConfig(
                bid_ttl_seconds=int(os.getenv("DELEGATION_BID_TTL", 3600)),
                monitor_ttl_seconds=int(os.getenv("DELEGATION_MONITOR_TTL", 86400)),
            ),
            tokens=TokenConfig(
                default_ttl_seconds=int(os.getenv("DELEGATION_TOKEN_TTL", 86400)),
            ),
            storage=storage,
            log_level=os.getenv("DELEGATION_LOG_LEVEL", "INFO"),
        )


def configure_logging(level: Optional[str] = None) -> None:
    """Route log records to a rich console handler for hosts that have none."""
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )
