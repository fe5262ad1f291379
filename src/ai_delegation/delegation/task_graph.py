"""
Task Graph — Task Records, Decomposition and Lifecycle

Tasks live in the record store under the Tasks domain, one entity per task,
aspect "spec". Every mutation reads the current record, computes the new one
and writes it back in a single put.

Decomposition is contract-first: a sub-task that can still be decomposed
must have a verifiable outcome (verifiability >= 0.3), otherwise the whole
decomposition is rejected before anything is written.
"""

import dataclasses
import logging
from typing import Dict, FrozenSet, List, Optional, Sequence

from ai_delegation.clock import Clock, SystemClock
from ai_delegation.config import EngineConfig
from ai_delegation.exceptions import StateError, ValidationError
from ai_delegation.storage.collaborators import BroadcastChannel, Domain, RecordStore

from .models import Task, TaskStatus

logger = logging.getLogger(__name__)

SPEC_ASPECT = "spec"

_S = TaskStatus

TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    _S.PENDING: frozenset({_S.DECOMPOSED, _S.BIDDING, _S.CANCELLED}),
    _S.DECOMPOSED: frozenset({_S.BIDDING, _S.COMPLETED, _S.CANCELLED}),
    _S.BIDDING: frozenset({_S.ASSIGNED, _S.REALLOCATING, _S.CANCELLED}),
    _S.ASSIGNED: frozenset({_S.IN_PROGRESS, _S.VERIFYING, _S.REALLOCATING, _S.CANCELLED}),
    _S.IN_PROGRESS: frozenset({
        _S.CHECKPOINT, _S.VERIFYING, _S.COMPLETED, _S.FAILED, _S.REALLOCATING, _S.CANCELLED,
    }),
    _S.CHECKPOINT: frozenset({
        _S.IN_PROGRESS, _S.VERIFYING, _S.FAILED, _S.REALLOCATING, _S.CANCELLED,
    }),
    _S.VERIFYING: frozenset({_S.VERIFIED, _S.FAILED, _S.DISPUTED, _S.CANCELLED}),
    _S.FAILED: frozenset({_S.REALLOCATING, _S.CANCELLED}),
    _S.DISPUTED: frozenset({_S.VERIFIED, _S.FAILED, _S.REALLOCATING, _S.CANCELLED}),
    _S.REALLOCATING: frozenset({_S.BIDDING, _S.CANCELLED}),
    _S.COMPLETED: frozenset(),
    _S.VERIFIED: frozenset(),
    _S.CANCELLED: frozenset(),
}

# Fields only the graph itself may set.
_PROTECTED_FIELDS = frozenset({"task_id", "status", "parent_id", "subtask_ids", "created_at"})


def can_transition(current: TaskStatus, new: TaskStatus) -> bool:
    return new in TRANSITIONS[current]


class TaskGraph:
    """Owns task records and enforces the lifecycle state machine."""

    def __init__(
        self,
        store: RecordStore,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
        channel: Optional[BroadcastChannel] = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.channel = channel
        self._domain = self.config.storage.namespace(Domain.TASKS)

    # ── reads ─────────────────────────────────────────────────────────────

    def get(self, task_id: str) -> Task:
        """Load a task; raises NotFoundError when it does not exist."""
        return Task.from_json(self.store.get(self._domain, task_id, SPEC_ASPECT))

    def exists(self, task_id: str) -> bool:
        return bool(self.store.scan(self._domain, task_id))

    def children(self, task_id: str) -> List[Task]:
        return [self.get(child_id) for child_id in self.get(task_id).subtask_ids]

    # ── writes ────────────────────────────────────────────────────────────

    def create(self, task: Task) -> Task:
        """Store a new task in Pending state."""
        if self.exists(task.task_id):
            raise ValidationError(f"task {task.task_id} already exists")
        created = dataclasses.replace(
            task,
            status=TaskStatus.PENDING,
            created_at=task.created_at or self.clock.now(),
        )
        self._save(created)
        logger.info("Task created: %s", created.task_id)
        return created

    def decompose(self, parent_id: str, children: Sequence[Task]) -> Task:
        """
        Break a parent task into sub-tasks.

        All children are validated before any write. The parent update is
        the commit point: it records the child ids and moves to Decomposed.
        Children written by an earlier attempt that failed before the commit
        are overwritten, so a failed decomposition can simply be retried.

        Returns:
            The updated parent task.
        """
        parent = self.get(parent_id)
        self._require_transition(parent, TaskStatus.DECOMPOSED)
        if not children:
            raise ValidationError(f"task {parent_id} needs at least one sub-task")

        min_verifiability = self.config.tasks.min_verifiability
        seen = set()
        for child in children:
            if child.task_id in seen or child.task_id == parent_id:
                raise ValidationError(f"duplicate sub-task id {child.task_id}")
            seen.add(child.task_id)
            if not child.acts_as_leaf and child.verifiability < min_verifiability:
                raise ValidationError(
                    f"sub-task {child.task_id} has low verifiability "
                    f"({child.verifiability:.2f} < {min_verifiability:.2f}); "
                    "decompose further or add verification artifacts"
                )
            if self.exists(child.task_id) and not self._is_uncommitted_child(child.task_id, parent):
                raise ValidationError(f"sub-task {child.task_id} already exists")

        now = self.clock.now()
        for child in children:
            self._save(
                dataclasses.replace(
                    child,
                    parent_id=parent_id,
                    delegator_id=parent.delegator_id,
                    status=TaskStatus.PENDING,
                    created_at=child.created_at or now,
                )
            )

        updated = dataclasses.replace(
            parent,
            subtask_ids=[child.task_id for child in children],
            status=TaskStatus.DECOMPOSED,
            is_leaf=False,
        )
        self._save(updated)
        logger.info("Task %s decomposed into %d sub-tasks", parent_id, len(children))
        return updated

    def update_status(self, task_id: str, new_status: TaskStatus, **changes) -> Task:
        """
        Move a task to ``new_status``, applying optional field changes in the
        same write. Illegal transitions raise StateError and write nothing.
        """
        new_status = TaskStatus(new_status)
        task = self.get(task_id)
        self._require_transition(task, new_status)
        self._check_changes(changes)

        if new_status is TaskStatus.ASSIGNED and task.started_at is None:
            changes.setdefault("started_at", self.clock.now())
        if new_status in (TaskStatus.VERIFIED, TaskStatus.COMPLETED):
            changes.setdefault("completed_at", self.clock.now())

        updated = dataclasses.replace(task, status=new_status, **changes)
        self._save(updated)
        logger.info("Task %s: %s -> %s", task_id, task.status.value, new_status.value)
        return updated

    def amend(self, task_id: str, **changes) -> Task:
        """Update non-status fields (budget, delegatee, deadline, ...)."""
        self._check_changes(changes)
        task = self.get(task_id)
        if task.status.is_terminal:
            raise StateError(f"task {task_id} is {task.status.value}; it can no longer change")
        updated = dataclasses.replace(task, **changes)
        self._save(updated)
        return updated

    def publish(self, task_id: str) -> str:
        """
        Open a task to the market: move it to Bidding and broadcast the task record on
        its bidding channel.

        Returns:
            The bidding channel name.
        """
        task = self.update_status(task_id, TaskStatus.BIDDING)
        channel_name = f"bid_{task_id}"
        if self.channel is not None:
            self.channel.publish(channel_name, task.to_json(), self.config.channels.bid_ttl_seconds)
        logger.info("Task %s published for bidding on channel %s", task_id, channel_name)
        return channel_name

    # ── helpers ───────────────────────────────────────────────────────────

    def _save(self, task: Task) -> None:
        self.store.put(self._domain, task.task_id, SPEC_ASPECT, task.to_json())

    def _is_uncommitted_child(self, child_id: str, parent: Task) -> bool:
        """A child left behind by a decomposition that never reached its commit."""
        existing = self.get(child_id)
        return (
            existing.parent_id == parent.task_id
            and existing.status is TaskStatus.PENDING
            and child_id not in parent.subtask_ids
        )

    @staticmethod
    def _require_transition(task: Task, new_status: TaskStatus) -> None:
        if not can_transition(task.status, new_status):
            raise StateError(
                f"task {task.task_id} cannot move from {task.status.value} to {new_status.value}"
            )

    @staticmethod
    def _check_changes(changes: Dict[str, object]) -> None:
        protected = _PROTECTED_FIELDS.intersection(changes)
        if protected:
            raise ValidationError(f"fields {sorted(protected)} cannot be changed directly")
