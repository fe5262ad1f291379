"""
Delegation Data Models

Core dataclasses for the delegation engine: tasks, bids, contracts,
reputation records, triggers, monitoring events and agent profiles.

Every record serializes to plain JSON (``to_json``/``from_json``) so it can
be handed to any record store as bytes.
"""

import json
import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Tuple

from ai_delegation.clock import from_iso, to_iso
from ai_delegation.exceptions import ValidationError


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    DECOMPOSED = "decomposed"
    BIDDING = "bidding"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    CHECKPOINT = "checkpoint"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"
    DISPUTED = "disputed"
    REALLOCATING = "re_allocating"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.VERIFIED, TaskStatus.CANCELLED)


class Criticality(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AutonomyLevel(str, Enum):
    """How much latitude a delegatee has over a task."""

    ATOMIC = "atomic"  # strict spec, no sub-delegation
    BOUNDED = "bounded"  # may sub-delegate within constraints
    OPEN_ENDED = "open_ended"  # full decomposition authority


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"


class TriggerType(str, Enum):
    """Adaptive coordination triggers."""

    TASK_CHANGE = "task_change"
    RESOURCE_CHANGE = "resource_change"
    PRIORITY_CHANGE = "priority_change"
    SECURITY_ALERT = "security_alert"
    PERFORMANCE_DROP = "performance_degradation"
    BUDGET_OVERRUN = "budget_overrun"
    VERIFICATION_FAILURE = "verification_failure"
    UNRESPONSIVE = "agent_unresponsive"

    @property
    def is_external(self) -> bool:
        return self in (
            TriggerType.TASK_CHANGE,
            TriggerType.RESOURCE_CHANGE,
            TriggerType.PRIORITY_CHANGE,
            TriggerType.SECURITY_ALERT,
        )


class ContractStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    BREACHED = "breached"
    DISPUTED = "disputed"


class VerificationMode(str, Enum):
    DIRECT = "direct"
    THIRD_PARTY = "third_party"
    CONSENSUS = "consensus"


class MonitorEventType(str, Enum):
    TASK_STARTED = "TASK_STARTED"
    CHECKPOINT = "CHECKPOINT_REACHED"
    RESOURCE_WARNING = "RESOURCE_WARNING"
    PROGRESS_UPDATE = "PROGRESS_UPDATE"
    TASK_COMPLETED = "TASK_COMPLETED"
    TASK_FAILED = "TASK_FAILED"
    PERFORMANCE_DROP = "PERFORMANCE_DEGRADATION"
    BUDGET_OVERRUN = "BUDGET_OVERRUN"
    SECURITY_ALERT = "SECURITY_ALERT"
    UNRESPONSIVE = "AGENT_UNRESPONSIVE"


class AgentKind(str, Enum):
    AI = "ai"
    HUMAN = "human"


class AgentRole(str, Enum):
    DELEGATOR = "delegator"
    DELEGATEE = "delegatee"
    BOTH = "both"
    OVERSEER = "overseer"


class AgentStatus(str, Enum):
    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


def _check_unit(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValidationError(f"{name} must be in [0.0, 1.0], got {value}")


def _check_non_negative(name: str, value: float) -> None:
    if value < 0:
        raise ValidationError(f"{name} must be >= 0, got {value}")


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_iso(value)
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _encode(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    return value


class _Record:
    """JSON round-tripping shared by all records."""

    _datetime_fields: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        return _encode(self)

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True).encode()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        kwargs = dict(data)
        for name in cls._datetime_fields:
            if name in kwargs:
                kwargs[name] = from_iso(kwargs[name])
        return cls(**kwargs)

    @classmethod
    def from_json(cls, data: bytes):
        return cls.from_dict(json.loads(data))


@dataclass
class Permission(_Record):
    """Access a delegatee needs on a resource."""

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("expires_at",)

    resource: str
    operations: List[str] = field(default_factory=list)
    scope: str = ""
    expires_at: Optional[datetime] = None
    granted_by: str = ""


@dataclass
class Task(_Record):
    """
    A task or sub-task with the characteristics used for delegation decisions.

    Float characteristics are normalized to [0.0, 1.0]; complexity is an
    integer on a 1-10 scale; estimated_duration is in seconds.
    """

    _datetime_fields: ClassVar[Tuple[str, ...]] = (
        "deadline",
        "created_at",
        "started_at",
        "completed_at",
    )

    task_id: str
    title: str = ""
    description: str = ""
    parent_id: Optional[str] = None
    subtask_ids: List[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    delegator_id: str = ""
    delegatee_id: Optional[str] = None
    criticality: Criticality = Criticality.MEDIUM
    complexity: int = 5
    uncertainty: float = 0.5
    verifiability: float = 0.5
    subjectivity: float = 0.5
    context_sensitivity: float = 0.5
    reversible: bool = True
    max_budget: float = 0.0
    estimated_duration: int = 0
    required_capabilities: List[str] = field(default_factory=list)
    autonomy: AutonomyLevel = AutonomyLevel.BOUNDED
    is_leaf: bool = False
    permissions: List[Permission] = field(default_factory=list)
    deadline: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    budget_extensions: int = 0

    def __post_init__(self) -> None:
        if not self.task_id:
            raise ValidationError("task_id cannot be empty")
        self.status = TaskStatus(self.status)
        self.criticality = Criticality(self.criticality)
        self.autonomy = AutonomyLevel(self.autonomy)
        self.permissions = [
            p if isinstance(p, Permission) else Permission.from_dict(p)
            for p in self.permissions
        ]
        if isinstance(self.complexity, bool) or not isinstance(self.complexity, int):
            raise ValidationError(f"complexity must be an integer, got {self.complexity!r}")
        if not 1 <= self.complexity <= 10:
            raise ValidationError(f"complexity must be in [1, 10], got {self.complexity}")
        for field_name in [
            "uncertainty",
            "verifiability",
            "subjectivity",
            "context_sensitivity",
        ]:
            _check_unit(field_name, getattr(self, field_name))
        _check_non_negative("max_budget", self.max_budget)
        _check_non_negative("estimated_duration", self.estimated_duration)

    @property
    def acts_as_leaf(self) -> bool:
        """Atomic tasks can never be decomposed further, whatever is_leaf says."""
        return self.is_leaf or self.autonomy is AutonomyLevel.ATOMIC


@dataclass(frozen=True)
class Bid(_Record):
    """A delegatee's offer to execute a task. Immutable once submitted."""

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("submitted_at",)

    task_id: str
    agent_id: str
    estimated_cost: float
    estimated_duration: float
    confidence: float
    capabilities: Tuple[str, ...] = ()
    reputation_bond: float = 0.0
    bid_id: str = field(default_factory=lambda: f"bid-{uuid.uuid4().hex[:8]}")
    submitted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "capabilities", tuple(self.capabilities))
        _check_unit("confidence", self.confidence)
        _check_non_negative("estimated_cost", self.estimated_cost)
        _check_non_negative("estimated_duration", self.estimated_duration)


@dataclass
class ContractTerms(_Record):
    _datetime_fields: ClassVar[Tuple[str, ...]] = ("deadline",)

    max_cost: float
    deadline: Optional[datetime] = None
    reporting_interval: int = 0  # seconds between status reports
    escrow_amount: float = 0.0
    penalty_rate: float = 0.0
    dispute_period: int = 0  # seconds after completion
    verification_mode: VerificationMode = VerificationMode.DIRECT

    def __post_init__(self) -> None:
        self.verification_mode = VerificationMode(self.verification_mode)
        _check_non_negative("max_cost", self.max_cost)
        _check_non_negative("escrow_amount", self.escrow_amount)
        _check_non_negative("penalty_rate", self.penalty_rate)


@dataclass
class Contract(_Record):
    """Agreement formed when a bid is accepted."""

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("created_at", "signed_at")

    contract_id: str
    task_id: str
    delegator_id: str
    delegatee_id: str
    accepted_bid: Bid
    terms: ContractTerms
    status: ContractStatus = ContractStatus.DRAFT
    token_id: Optional[str] = None
    created_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.status = ContractStatus(self.status)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contract":
        data = dict(data)
        data["accepted_bid"] = Bid.from_dict(data["accepted_bid"])
        data["terms"] = ContractTerms.from_dict(data["terms"])
        return super().from_dict(data)


@dataclass(frozen=True)
class ReputationRecord(_Record):
    """One outcome in an agent's append-only trust ledger."""

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("recorded_at",)

    agent_id: str
    task_id: str
    outcome: Outcome
    quality: float
    timeliness: float
    cost_adherence: float
    safety: float
    recorder_id: str = ""
    recorded_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "outcome", Outcome(self.outcome))
        for field_name in ["quality", "timeliness", "cost_adherence", "safety"]:
            _check_unit(field_name, getattr(self, field_name))

    @property
    def component_average(self) -> float:
        return (self.quality + self.timeliness + self.cost_adherence + self.safety) / 4.0


@dataclass
class AdaptiveTrigger(_Record):
    _datetime_fields: ClassVar[Tuple[str, ...]] = ("raised_at",)

    task_id: str
    type: TriggerType
    urgent: bool = False
    description: str = ""
    agent_id: str = ""
    trigger_id: str = field(default_factory=lambda: f"trg-{uuid.uuid4().hex[:8]}")
    raised_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.type = TriggerType(self.type)


@dataclass
class MonitorEvent(_Record):
    _datetime_fields: ClassVar[Tuple[str, ...]] = ("timestamp",)

    task_id: str
    agent_id: str
    type: MonitorEventType
    severity: Criticality = Criticality.LOW
    progress: float = 0.0
    resource_use: float = 0.0  # budget consumed so far
    message: str = ""
    event_id: str = field(default_factory=lambda: f"evt-{uuid.uuid4().hex[:8]}")
    timestamp: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.type = MonitorEventType(self.type)
        self.severity = Criticality(self.severity)
        _check_unit("progress", self.progress)


@dataclass
class VerificationResult(_Record):
    _datetime_fields: ClassVar[Tuple[str, ...]] = ("verified_at",)

    task_id: str
    verifier_id: str
    passed: bool
    score: float
    details: str = ""
    verified_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _check_unit("score", self.score)


@dataclass
class AgentProfile(_Record):
    """Registered identity and capability card of an agent."""

    _datetime_fields: ClassVar[Tuple[str, ...]] = ("registered_at", "last_seen_at")

    agent_id: str
    name: str = ""
    kind: AgentKind = AgentKind.AI
    role: AgentRole = AgentRole.DELEGATEE
    capabilities: List[str] = field(default_factory=list)
    max_load: int = 1
    current_load: int = 0
    status: AgentStatus = AgentStatus.ONLINE
    cost_per_unit: float = 0.0
    metadata: Dict[str, str] = field(default_factory=dict)
    registered_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if not self.agent_id:
            raise ValidationError("agent_id cannot be empty")
        self.kind = AgentKind(self.kind)
        self.role = AgentRole(self.role)
        self.status = AgentStatus(self.status)
        _check_non_negative("max_load", self.max_load)
        _check_non_negative("current_load", self.current_load)
