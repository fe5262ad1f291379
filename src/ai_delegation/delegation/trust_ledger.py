"""
Reputation Ledger — Append-Only Outcome Records with Decay-Weighted Trust

Each outcome is appended under the Reputation domain (entity = agent id)
with a key that is unique per write, so nothing is ever overwritten.

Trust calculation (recency-weighted mean):
- score_i  = (quality + timeliness + cost_adherence + safety) / 4
- weight_i = 1 / (1 + age_days / 30)
- trust    = sum(score_i * weight_i) / sum(weight_i)

An agent with no history gets the neutral prior 0.5. The score is
recomputed from the full history on every call; callers that need it on a
hot path should cache it themselves.
"""

import dataclasses
import logging
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from ai_delegation.clock import Clock, SystemClock, as_utc
from ai_delegation.config import EngineConfig
from ai_delegation.storage.collaborators import Domain, RecordStore

from .models import ReputationRecord

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 3600


class ReputationLedger:
    """Append-only trust ledger over a record store."""

    def __init__(
        self,
        store: RecordStore,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self._domain = self.config.storage.namespace(Domain.REPUTATION)

    def record(self, record: ReputationRecord) -> ReputationRecord:
        """Append an outcome. Stamps ``recorded_at`` when the caller left it empty."""
        if record.recorded_at is None:
            record = dataclasses.replace(record, recorded_at=self.clock.now())
        key = f"{record.task_id}_{record.recorded_at.isoformat()}_{uuid.uuid4().hex[:6]}"
        self.store.put(self._domain, record.agent_id, key, record.to_json())
        logger.info(
            "Reputation recorded: agent=%s task=%s outcome=%s avg=%.3f",
            record.agent_id,
            record.task_id,
            record.outcome.value,
            record.component_average,
        )
        return record

    def history(self, agent_id: str) -> List[ReputationRecord]:
        """All records for an agent, oldest write first."""
        return [
            ReputationRecord.from_json(data)
            for _, data in self.store.scan(self._domain, agent_id)
        ]

    def trust_score(self, agent_id: str) -> float:
        """Recency-weighted trust in [0.0, 1.0]; 0.5 for an unknown agent."""
        return self._aggregate(self.history(agent_id))

    def trust_scores(self, agent_ids: Iterable[str]) -> Dict[str, float]:
        return {agent_id: self.trust_score(agent_id) for agent_id in agent_ids}

    def top_agents(self, agent_ids: Iterable[str], limit: int = 5) -> List[Tuple[str, float]]:
        """Agents ordered by trust, highest first."""
        scored = sorted(self.trust_scores(agent_ids).items(), key=lambda x: x[1], reverse=True)
        return scored[:limit]

    def record_weight(self, record: ReputationRecord) -> float:
        """Decay weight of a single record at the current clock time."""
        if record.recorded_at is None:
            return 1.0
        age_seconds = (self.clock.now() - as_utc(record.recorded_at)).total_seconds()
        age_days = max(0.0, age_seconds / SECONDS_PER_DAY)
        return 1.0 / (1.0 + age_days / self.config.reputation.decay_days)

    def _aggregate(self, records: List[ReputationRecord]) -> float:
        weighted_sum = 0.0
        total_weight = 0.0
        for rec in records:
            weight = self.record_weight(rec)
            weighted_sum += rec.component_average * weight
            total_weight += weight

        if total_weight == 0:
            return self.config.reputation.default_trust
        return max(0.0, min(1.0, weighted_sum / total_weight))
