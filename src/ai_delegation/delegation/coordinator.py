"""
Adaptive Coordinator — Trigger-Response Policy

Decides what happens to a task when execution goes wrong or the world
changes under it. Rules are applied in strict order:

1. Irreversible work under an urgent trigger is cancelled outright.
2. Any other urgent trigger re-delegates the task.
3. Otherwise the trigger type decides:
   - budget_overrun            -> extend the budget by 20% (capped; then re-delegate)
   - performance_degradation   -> re-delegate
   - agent_unresponsive        -> re-delegate
   - verification_failure      -> ReAllocating, re-publish left to the caller
   - everything else           -> keep monitoring

Re-delegation charges the current delegatee: a failure record in the
Reputation Ledger and, when breakers are attached, a breaker failure plus a
trust-floor check on the agent's fresh score.
"""

import logging
import uuid
from enum import Enum
from typing import Optional

from ai_delegation.clock import Clock
from ai_delegation.config import EngineConfig
from ai_delegation.exceptions import StateError
from ai_delegation.safety.circuit_breaker import BreakerBoard
from ai_delegation.storage.collaborators import Domain, RecordStore

from .models import AdaptiveTrigger, Outcome, ReputationRecord, Task, TaskStatus, TriggerType
from .task_graph import TaskGraph, can_transition
from .trust_ledger import ReputationLedger

logger = logging.getLogger(__name__)


class ResponseAction(str, Enum):
    """What respond() did to the task."""

    CANCELLED = "cancelled"
    REDELEGATED = "redelegated"
    BUDGET_EXTENDED = "budget_extended"
    REALLOCATING = "reallocating"
    MONITORING = "monitoring"


class AdaptiveCoordinator:
    """Applies the response policy to triggers raised against tasks."""

    def __init__(
        self,
        graph: TaskGraph,
        ledger: ReputationLedger,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
        breakers: Optional[BreakerBoard] = None,
        recorder_id: str = "coordinator",
        store: Optional[RecordStore] = None,
    ) -> None:
        self.graph = graph
        self.ledger = ledger
        self.config = config or graph.config
        self.clock = clock or graph.clock
        self.breakers = breakers
        self.recorder_id = recorder_id
        self.store = store or graph.store
        self._trigger_domain = self.config.storage.namespace(Domain.TRIGGERS)

    def raise_trigger(self, trigger: AdaptiveTrigger) -> ResponseAction:
        """Persist a trigger for audit, then respond to it."""
        if trigger.raised_at is None:
            trigger.raised_at = self.clock.now()
        key = f"{trigger.trigger_id}_{uuid.uuid4().hex[:6]}"
        self.store.put(self._trigger_domain, trigger.task_id, key, trigger.to_json())
        return self.respond(self.graph.get(trigger.task_id), trigger)

    def respond(self, task: Task, trigger: AdaptiveTrigger) -> ResponseAction:
        """
        Apply the response policy to ``task`` for ``trigger``.

        Returns:
            The action taken.
        """
        logger.info(
            "Trigger %s on task %s (urgent=%s): %s",
            trigger.type.value,
            task.task_id,
            trigger.urgent,
            trigger.description,
        )

        if not task.reversible and trigger.urgent:
            self.graph.update_status(task.task_id, TaskStatus.CANCELLED)
            logger.warning("Task %s cancelled: irreversible under urgent trigger", task.task_id)
            return ResponseAction.CANCELLED

        if trigger.urgent:
            return self._redelegate(task, trigger)

        trigger_type = trigger.type
        if trigger_type is TriggerType.BUDGET_OVERRUN:
            return self._extend_budget(task, trigger)
        elif trigger_type in (TriggerType.PERFORMANCE_DROP, TriggerType.UNRESPONSIVE):
            return self._redelegate(task, trigger)
        elif trigger_type is TriggerType.VERIFICATION_FAILURE:
            return self._reallocate(task)
        elif trigger_type in (
            TriggerType.TASK_CHANGE,
            TriggerType.RESOURCE_CHANGE,
            TriggerType.PRIORITY_CHANGE,
            TriggerType.SECURITY_ALERT,
        ):
            return ResponseAction.MONITORING
        raise AssertionError(f"unhandled trigger type: {trigger_type!r}")

    # ── responses ─────────────────────────────────────────────────────────

    def _redelegate(self, task: Task, trigger: AdaptiveTrigger) -> ResponseAction:
        current = self.graph.get(task.task_id)
        if not can_transition(current.status, TaskStatus.REALLOCATING):
            raise StateError(
                f"task {task.task_id} cannot be re-delegated from {current.status.value}"
            )
        if task.delegatee_id:
            self._charge_delegatee(task.delegatee_id, task.task_id)

        self.graph.update_status(task.task_id, TaskStatus.REALLOCATING, delegatee_id=None)
        self.graph.publish(task.task_id)
        logger.warning(
            "Task %s re-delegated after %s (previous delegatee: %s)",
            task.task_id,
            trigger.type.value,
            task.delegatee_id or "none",
        )
        return ResponseAction.REDELEGATED

    def _extend_budget(self, task: Task, trigger: AdaptiveTrigger) -> ResponseAction:
        policy = self.config.coordinator
        if task.budget_extensions >= policy.max_budget_extensions:
            logger.warning(
                "Task %s hit the budget extension cap (%d); re-delegating",
                task.task_id,
                policy.max_budget_extensions,
            )
            return self._redelegate(task, trigger)

        new_budget = task.max_budget * (1.0 + policy.budget_extension_rate)
        self.graph.amend(
            task.task_id,
            max_budget=new_budget,
            budget_extensions=task.budget_extensions + 1,
        )
        logger.info(
            "Task %s budget extended %.2f -> %.2f", task.task_id, task.max_budget, new_budget
        )
        return ResponseAction.BUDGET_EXTENDED

    def _reallocate(self, task: Task) -> ResponseAction:
        self.graph.update_status(task.task_id, TaskStatus.REALLOCATING)
        if self.config.coordinator.republish_on_verification_failure:
            self.graph.publish(task.task_id)
        return ResponseAction.REALLOCATING

    def _charge_delegatee(self, agent_id: str, task_id: str) -> None:
        self.ledger.record(
            ReputationRecord(
                agent_id=agent_id,
                task_id=task_id,
                outcome=Outcome.FAILURE,
                quality=0.0,
                timeliness=0.0,
                cost_adherence=0.0,
                safety=0.0,
                recorder_id=self.recorder_id,
            )
        )
        if self.breakers is not None:
            self.breakers.record_failure(agent_id)
            self.breakers.check_trust_drop(agent_id, self.ledger.trust_score(agent_id))
