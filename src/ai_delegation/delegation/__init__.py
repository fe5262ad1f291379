"""
Delegation Core — Task Graph, Market, Reputation and Adaptive Response

Decides how work moves between autonomous agents: which tasks exist and in
what state, who wins a task, how much each agent is trusted, and what to do
when execution goes wrong.

Core Components:
- models: Task, Bid, Contract, ReputationRecord, trigger and event records
- task_graph: Task records, contract-first decomposition, lifecycle state machine
- trust_ledger: Append-only reputation records with decay-weighted trust
- market: Multi-objective bid ranking and weight profiles
- coordinator: Trigger-response policy (cancel / re-delegate / extend / monitor)
- engine: Facade wiring everything to the host's collaborators
"""

from .models import (
    AdaptiveTrigger,
    AgentKind,
    AgentProfile,
    AgentRole,
    AgentStatus,
    AutonomyLevel,
    Bid,
    Contract,
    ContractStatus,
    ContractTerms,
    Criticality,
    MonitorEvent,
    MonitorEventType,
    Outcome,
    Permission,
    ReputationRecord,
    Task,
    TaskStatus,
    TriggerType,
    VerificationMode,
    VerificationResult,
)
from .task_graph import TRANSITIONS, TaskGraph, can_transition
from .trust_ledger import ReputationLedger
from .market import (
    OptimizationWeights,
    ScoredBid,
    capability_match,
    rank_bids,
    select_weights_for_task,
    should_bypass_delegation,
)
from .coordinator import AdaptiveCoordinator, ResponseAction
from .engine import DelegationEngine

__all__ = [
    # Models
    "AdaptiveTrigger",
    "AgentKind",
    "AgentProfile",
    "AgentRole",
    "AgentStatus",
    "AutonomyLevel",
    "Bid",
    "Contract",
    "ContractStatus",
    "ContractTerms",
    "Criticality",
    "MonitorEvent",
    "MonitorEventType",
    "Outcome",
    "Permission",
    "ReputationRecord",
    "Task",
    "TaskStatus",
    "TriggerType",
    "VerificationMode",
    "VerificationResult",
    # Task graph
    "TRANSITIONS",
    "TaskGraph",
    "can_transition",
    # Reputation
    "ReputationLedger",
    # Market
    "OptimizationWeights",
    "ScoredBid",
    "capability_match",
    "rank_bids",
    "select_weights_for_task",
    "should_bypass_delegation",
    # Coordinator
    "AdaptiveCoordinator",
    "ResponseAction",
    # Engine
    "DelegationEngine",
]
