"""
Market Optimizer — Multi-Objective Bid Ranking

Each bid gets five normalized scores in [0.0, 1.0]:
    cost       = 1 - (cost - min_cost) / (max_cost - min_cost)   (1.0 if all equal)
    speed      = same normalization on estimated duration
    trust      = reputation of the bidding agent (0.5 if unknown)
    confidence = the bid's own confidence
    cap_match  = |required & offered| / |required|              (1.0 if none required)

    total = sum(weight_i * score_i)

Bids are returned best first; equal totals keep submission order.
"""

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence

from ai_delegation.exceptions import ValidationError

from .models import Bid, Criticality, Task

DEFAULT_TRUST = 0.5

# Complexity floor: below all of these, delegation overhead exceeds task value.
BYPASS_MAX_COMPLEXITY = 2
BYPASS_MAX_UNCERTAINTY = 0.2
BYPASS_MAX_DURATION = 60  # seconds


@dataclass(frozen=True)
class OptimizationWeights:
    """Weight per scoring dimension. Profiles below each sum to 1.0."""

    cost: float
    speed: float
    trust: float
    confidence: float
    cap_match: float

    def __post_init__(self) -> None:
        for name in ["cost", "speed", "trust", "confidence", "cap_match"]:
            if getattr(self, name) < 0:
                raise ValidationError(f"weight {name} must be >= 0, got {getattr(self, name)}")

    @classmethod
    def default(cls) -> "OptimizationWeights":
        return cls(cost=0.20, speed=0.15, trust=0.30, confidence=0.15, cap_match=0.20)

    @classmethod
    def high_stakes(cls) -> "OptimizationWeights":
        """Trust and capability first, for critical work."""
        return cls(cost=0.05, speed=0.05, trust=0.45, confidence=0.20, cap_match=0.25)

    @classmethod
    def cost_optimized(cls) -> "OptimizationWeights":
        """Cost and speed first, for routine low-criticality work."""
        return cls(cost=0.40, speed=0.25, trust=0.15, confidence=0.10, cap_match=0.10)


@dataclass(frozen=True)
class ScoredBid:
    """A bid with its total and per-dimension scores."""

    bid: Bid
    score: float
    cost_score: float
    speed_score: float
    trust_score: float
    confidence_score: float
    cap_match_score: float


def _normalize_inverted(value: float, low: float, high: float) -> float:
    if high <= low:
        return 1.0
    return 1.0 - (value - low) / (high - low)


def capability_match(required: Iterable[str], offered: Iterable[str]) -> float:
    """Share of the required capabilities that are offered."""
    required_set = set(required)
    if not required_set:
        return 1.0
    return len(required_set & set(offered)) / len(required_set)


def rank_bids(
    bids: Sequence[Bid],
    weights: OptimizationWeights,
    trust_by_agent: Mapping[str, float],
    required_capabilities: Iterable[str],
    capabilities_by_agent: Optional[Mapping[str, Iterable[str]]] = None,
) -> List[ScoredBid]:
    """
    Score and rank bids for one task.

    Args:
        bids: Bids in submission order
        weights: Objective weights, e.g. from select_weights_for_task()
        trust_by_agent: agent_id -> trust score [0.0, 1.0]
        required_capabilities: The task's required capability set
        capabilities_by_agent: Registered capabilities per agent. An agent
            listed here is scored on these; otherwise the bid's own offered
            capabilities are used.

    Returns:
        ScoredBid list, highest total first
    """
    if not bids:
        return []

    required = list(required_capabilities)
    capabilities_by_agent = capabilities_by_agent or {}

    min_cost = min(b.estimated_cost for b in bids)
    max_cost = max(b.estimated_cost for b in bids)
    min_time = min(b.estimated_duration for b in bids)
    max_time = max(b.estimated_duration for b in bids)

    scored: List[ScoredBid] = []
    for bid in bids:
        cost_score = _normalize_inverted(bid.estimated_cost, min_cost, max_cost)
        speed_score = _normalize_inverted(bid.estimated_duration, min_time, max_time)
        trust = trust_by_agent.get(bid.agent_id, DEFAULT_TRUST)
        offered = capabilities_by_agent.get(bid.agent_id, bid.capabilities)
        cap_score = capability_match(required, offered)

        total = (
            weights.cost * cost_score
            + weights.speed * speed_score
            + weights.trust * trust
            + weights.confidence * bid.confidence
            + weights.cap_match * cap_score
        )
        scored.append(
            ScoredBid(
                bid=bid,
                score=total,
                cost_score=cost_score,
                speed_score=speed_score,
                trust_score=trust,
                confidence_score=bid.confidence,
                cap_match_score=cap_score,
            )
        )

    # sorted() is stable, so ties keep submission order
    return sorted(scored, key=lambda s: s.score, reverse=True)


def select_weights_for_task(task: Task) -> OptimizationWeights:
    """Pick the weight profile that fits the task's criticality and complexity."""
    if task.criticality in (Criticality.CRITICAL, Criticality.HIGH):
        return OptimizationWeights.high_stakes()
    if task.criticality is Criticality.LOW and task.complexity <= 3:
        return OptimizationWeights.cost_optimized()
    return OptimizationWeights.default()


def should_bypass_delegation(task: Task) -> bool:
    """True when the task is cheap and certain enough to execute directly."""
    return (
        task.criticality is Criticality.LOW
        and task.complexity <= BYPASS_MAX_COMPLEXITY
        and task.uncertainty < BYPASS_MAX_UNCERTAINTY
        and task.estimated_duration < BYPASS_MAX_DURATION
    )
