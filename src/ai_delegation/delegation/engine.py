"""
Delegation Engine — Facade Over the Delegation Core

Wires the Task Graph, Reputation Ledger, Market Optimizer, Capability Token
Chain, circuit breakers and Adaptive Coordinator to the host's collaborators
(record store, broadcast channel, access registry).

Storage layout (domain / entity / aspect):
    Agents      / agent_id    / "profile", "perm_<agent>_<resource>"
    Agents      / "_index"    / agent_id (registered agents)
    Tasks       / task_id     / "spec", "result_artifact", "verification"
    Contracts   / contract_id / "terms"
    Bids        / task_id     / bid_id
    Monitoring  / task_id     / "<event_id>_<timestamp>"
    Reputation  / agent_id    / unique per record
    Triggers    / task_id     / unique per trigger

Channels: ``bid_<task_id>`` for bidding, ``monitor_<task_id>`` for execution
events.
"""

import dataclasses
import logging
from datetime import timedelta
from typing import Callable, Iterable, List, Optional, Sequence

from ai_delegation.clock import Clock, SystemClock, as_utc
from ai_delegation.config import EngineConfig
from ai_delegation.exceptions import NotFoundError, StateError, ValidationError
from ai_delegation.safety import screener
from ai_delegation.safety.circuit_breaker import BreakerBoard
from ai_delegation.safety.tokens import CapabilityToken, Caveat, TokenAuthority
from ai_delegation.storage.collaborators import AccessRegistry, BroadcastChannel, Domain, RecordStore

from .coordinator import AdaptiveCoordinator, ResponseAction
from .market import OptimizationWeights, ScoredBid, rank_bids, select_weights_for_task, should_bypass_delegation
from .models import (
    AdaptiveTrigger,
    AgentProfile,
    AgentStatus,
    Bid,
    Contract,
    ContractStatus,
    ContractTerms,
    Criticality,
    MonitorEvent,
    Outcome,
    Permission,
    ReputationRecord,
    Task,
    TaskStatus,
    TriggerType,
    VerificationResult,
)
from .task_graph import TaskGraph, can_transition
from .trust_ledger import ReputationLedger

logger = logging.getLogger(__name__)

AGENT_INDEX = "_index"
PROFILE_ASPECT = "profile"
TERMS_ASPECT = "terms"
ARTIFACT_ASPECT = "result_artifact"
VERIFICATION_ASPECT = "verification"


class DelegationEngine:
    """Single entry point for a delegator process."""

    def __init__(
        self,
        store: RecordStore,
        channel: BroadcastChannel,
        access: AccessRegistry,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
        self_id: str = "delegator",
    ) -> None:
        self.store = store
        self.channel = channel
        self.access = access
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.self_id = self_id

        self.graph = TaskGraph(store, self.config, self.clock, channel)
        self.ledger = ReputationLedger(store, self.config, self.clock)
        self.tokens = TokenAuthority(self.clock)
        self.breakers = BreakerBoard(self.config.breaker, self.clock, on_trip=self._on_breaker_trip)
        self.coordinator = AdaptiveCoordinator(
            self.graph,
            self.ledger,
            self.config,
            self.clock,
            breakers=self.breakers,
            recorder_id=self_id,
            store=store,
        )

    # ── agents ────────────────────────────────────────────────────────────

    def register_agent(self, profile: AgentProfile) -> AgentProfile:
        """Store an agent's profile and give it write access to its own entity."""
        now = self.clock.now()
        profile = dataclasses.replace(
            profile,
            registered_at=profile.registered_at or now,
            last_seen_at=now,
        )
        self.access.grant(profile.agent_id, "write")
        self._put(Domain.AGENTS, profile.agent_id, PROFILE_ASPECT, profile.to_json())
        self._put(Domain.AGENTS, AGENT_INDEX, profile.agent_id, profile.agent_id.encode())
        logger.info(
            "Agent registered: %s (%s, %s)", profile.agent_id, profile.kind.value, profile.role.value
        )
        return profile

    def get_agent(self, agent_id: str) -> AgentProfile:
        return AgentProfile.from_json(self._get(Domain.AGENTS, agent_id, PROFILE_ASPECT))

    def update_agent(self, profile: AgentProfile) -> AgentProfile:
        self.get_agent(profile.agent_id)
        profile = dataclasses.replace(profile, last_seen_at=self.clock.now())
        self._put(Domain.AGENTS, profile.agent_id, PROFILE_ASPECT, profile.to_json())
        return profile

    def remove_agent(self, agent_id: str) -> List[str]:
        """
        Deregister an agent.

        Drops its profile, stored permissions and index entry, removes its
        access relation and revokes every token it holds.

        Returns:
            The ids of the revoked tokens.
        """
        self.get_agent(agent_id)
        for aspect, _ in self._scan(Domain.AGENTS, agent_id):
            self._delete(Domain.AGENTS, agent_id, aspect)
        self._delete(Domain.AGENTS, AGENT_INDEX, agent_id)
        self.access.revoke(agent_id)
        revoked = self.tokens.revoke_bearer(agent_id)
        logger.info("Agent removed: %s (%d token(s) revoked)", agent_id, len(revoked))
        return revoked

    def find_agents_by_capability(self, required: Sequence[str]) -> List[AgentProfile]:
        """Online agents offering every required capability, in registration order."""
        wanted = set(required)
        matches = []
        for agent_id, _ in self._scan(Domain.AGENTS, AGENT_INDEX):
            profile = self.get_agent(agent_id)
            if profile.status is AgentStatus.ONLINE and wanted.issubset(profile.capabilities):
                matches.append(profile)
        return matches

    # ── tasks ─────────────────────────────────────────────────────────────

    def create_task(self, task: Task) -> Task:
        if not task.delegator_id:
            task = dataclasses.replace(task, delegator_id=self.self_id)
        created = self.graph.create(task)
        self.access.grant(created.task_id, "write")
        return created

    def get_task(self, task_id: str) -> Task:
        return self.graph.get(task_id)

    def decompose_task(self, parent_id: str, children: Sequence[Task]) -> Task:
        return self.graph.decompose(parent_id, children)

    def screen(self, task: Task) -> List[str]:
        """Advisory risk flags for a task (see safety.screener)."""
        warnings = screener.screen_task(task, self.clock)
        for warning in warnings:
            logger.warning("Screening %s: %s", task.task_id, warning)
        return warnings

    def should_bypass(self, task_id: str) -> bool:
        """True when the task is simple enough to run without the market."""
        return should_bypass_delegation(self.graph.get(task_id))

    # ── market ────────────────────────────────────────────────────────────

    def publish_for_bidding(self, task_id: str) -> str:
        return self.graph.publish(task_id)

    def submit_bid(self, bid: Bid) -> Bid:
        """Record a bid. The task must currently be open for bidding."""
        task = self.graph.get(bid.task_id)
        if task.status is not TaskStatus.BIDDING:
            raise StateError(f"task {bid.task_id} is {task.status.value}, not open for bids")
        bid = dataclasses.replace(bid, submitted_at=self.clock.now())
        self._put(Domain.BIDS, bid.task_id, bid.bid_id, bid.to_json())
        logger.info("Bid %s from %s on task %s", bid.bid_id, bid.agent_id, bid.task_id)
        return bid

    def list_bids(self, task_id: str) -> List[Bid]:
        """Bids for a task in submission order."""
        return [Bid.from_json(data) for _, data in self._scan(Domain.BIDS, task_id)]

    def rank_bids_for_task(
        self,
        task_id: str,
        weights: Optional[OptimizationWeights] = None,
    ) -> List[ScoredBid]:
        """
        Rank the stored bids for a task.

        Bids from agents whose circuit breaker is blocking are dropped.
        Registered agent capabilities take precedence over what a bid claims.
        """
        task = self.graph.get(task_id)
        bids = [b for b in self.list_bids(task_id) if not self.breakers.is_blocked(b.agent_id)]
        agent_ids = {b.agent_id for b in bids}
        return rank_bids(
            bids,
            weights or select_weights_for_task(task),
            self.ledger.trust_scores(agent_ids),
            task.required_capabilities,
            self._registered_capabilities(agent_ids),
        )

    def accept_bid(
        self,
        bid: Bid,
        terms: ContractTerms,
        caveats: Iterable[Caveat] = (),
    ) -> Contract:
        """
        Turn a bid into an active contract.

        Assigns the task to the bidder, grants write access on the task and
        mints a capability token for the delegatee capped at the contract's
        max cost.

        Raises:
            StateError: the task is not open for assignment, or the bidder's
                circuit breaker refuses the delegation
        """
        task = self.graph.get(bid.task_id)
        if not can_transition(task.status, TaskStatus.ASSIGNED):
            raise StateError(f"task {bid.task_id} is {task.status.value}, not open for assignment")
        # is_allowed() spends the single half-open trial, so it runs last
        if self.breakers.is_blocked(bid.agent_id) or not self.breakers.is_allowed(bid.agent_id):
            raise StateError(f"agent {bid.agent_id} is blocked by its circuit breaker")

        self.graph.update_status(bid.task_id, TaskStatus.ASSIGNED, delegatee_id=bid.agent_id)
        self.access.grant(bid.task_id, "write")

        now = self.clock.now()
        ttl = timedelta(seconds=self.config.tokens.default_ttl_seconds)
        if terms.deadline is not None and as_utc(terms.deadline) > now:
            ttl = as_utc(terms.deadline) - now
        token = self.tokens.mint(
            self.self_id,
            bid.agent_id,
            bid.task_id,
            ttl,
            [Caveat.budget(terms.max_cost), *caveats],
        )

        contract = Contract(
            contract_id=f"contract_{bid.task_id}_{bid.agent_id}",
            task_id=bid.task_id,
            delegator_id=self.self_id,
            delegatee_id=bid.agent_id,
            accepted_bid=bid,
            terms=terms,
            status=ContractStatus.ACTIVE,
            token_id=token.token_id,
            created_at=now,
            signed_at=now,
        )
        self._save_contract(contract)
        logger.info(
            "Contract %s created: %s -> %s for task %s",
            contract.contract_id,
            self.self_id,
            bid.agent_id,
            bid.task_id,
        )
        return contract

    def get_contract(self, contract_id: str) -> Contract:
        return Contract.from_json(self._get(Domain.CONTRACTS, contract_id, TERMS_ASPECT))

    # ── monitoring ────────────────────────────────────────────────────────

    @staticmethod
    def monitoring_channel(task_id: str) -> str:
        return f"monitor_{task_id}"

    def emit_monitor_event(self, event: MonitorEvent) -> MonitorEvent:
        """Append an event to the task's audit trail and broadcast it."""
        if event.timestamp is None:
            event = dataclasses.replace(event, timestamp=self.clock.now())
        key = f"{event.event_id}_{event.timestamp.isoformat()}"
        body = event.to_json()
        self._put(Domain.MONITORING, event.task_id, key, body)
        self.channel.publish(
            self.monitoring_channel(event.task_id), body, self.config.channels.monitor_ttl_seconds
        )
        return event

    def monitoring_events(self, task_id: str) -> List[MonitorEvent]:
        return [MonitorEvent.from_json(data) for _, data in self._scan(Domain.MONITORING, task_id)]

    def subscribe_to_monitoring(self, task_id: str, handler: Callable[[MonitorEvent], None]) -> str:
        channel_name = self.monitoring_channel(task_id)
        self.channel.subscribe(channel_name, lambda payload: handler(MonitorEvent.from_json(payload)))
        return channel_name

    # ── verification ──────────────────────────────────────────────────────

    def submit_for_verification(self, task_id: str, artifact: bytes) -> Task:
        task = self.graph.update_status(task_id, TaskStatus.VERIFYING)
        self._put(Domain.TASKS, task_id, ARTIFACT_ASPECT, artifact)
        return task

    def get_artifact(self, task_id: str) -> bytes:
        return self._get(Domain.TASKS, task_id, ARTIFACT_ASPECT)

    def record_verification(self, result: VerificationResult) -> Task:
        """
        Apply a verification outcome.

        Pass: task -> Verified, success record (quality = score), breaker
        reset, contract Completed.
        Fail: task -> Failed, contract Breached, then a verification_failure
        trigger (urgent when the task is critical) goes to the coordinator.
        The delegatee is charged once: here, unless the urgent trigger will
        re-delegate and charge it there.
        """
        task = self.graph.get(result.task_id)
        target = TaskStatus.VERIFIED if result.passed else TaskStatus.FAILED
        if not can_transition(task.status, target):
            raise StateError(
                f"task {task.task_id} is {task.status.value}; cannot record verification"
            )
        if result.verified_at is None:
            result = dataclasses.replace(result, verified_at=self.clock.now())
        self._put(Domain.TASKS, result.task_id, VERIFICATION_ASPECT, result.to_json())
        agent_id = task.delegatee_id

        if result.passed:
            task = self.graph.update_status(task.task_id, TaskStatus.VERIFIED)
            if agent_id:
                self.ledger.record(
                    ReputationRecord(
                        agent_id=agent_id,
                        task_id=task.task_id,
                        outcome=Outcome.SUCCESS,
                        quality=result.score,
                        timeliness=1.0,
                        cost_adherence=1.0,
                        safety=1.0,
                        recorder_id=self.self_id,
                    )
                )
                self.breakers.record_success(agent_id)
                self._set_contract_status(task.task_id, agent_id, ContractStatus.COMPLETED)
            return task

        task = self.graph.update_status(task.task_id, TaskStatus.FAILED)
        urgent = task.criticality is Criticality.CRITICAL
        if agent_id:
            self._set_contract_status(task.task_id, agent_id, ContractStatus.BREACHED)
            if not (urgent and task.reversible):
                self._charge_failed_verification(agent_id, task.task_id, result.score)

        self.coordinator.raise_trigger(
            AdaptiveTrigger(
                task_id=task.task_id,
                type=TriggerType.VERIFICATION_FAILURE,
                urgent=urgent,
                description=result.details,
                agent_id=agent_id or "",
                trigger_id=f"verfail_{task.task_id}",
            )
        )
        return self.graph.get(task.task_id)

    # ── triggers ──────────────────────────────────────────────────────────

    def raise_trigger(self, trigger: AdaptiveTrigger) -> ResponseAction:
        return self.coordinator.raise_trigger(trigger)

    # ── permissions ───────────────────────────────────────────────────────

    def grant_permission(
        self,
        delegatee_id: str,
        resource: str,
        permission: Permission,
    ) -> CapabilityToken:
        """
        Grant a delegatee access to a resource.

        Registers the relation with the access registry, stores the
        permission under the agent, and mints a token restricted to the
        permission's operations (and scope, when one is given).
        """
        if not permission.operations:
            raise ValidationError(f"permission on {resource} lists no operations")

        now = self.clock.now()
        ttl = timedelta(seconds=self.config.tokens.default_ttl_seconds)
        if permission.expires_at is not None:
            ttl = as_utc(permission.expires_at) - now
            if ttl <= timedelta(0):
                raise ValidationError(f"permission on {resource} already expired")

        self.access.grant(resource, permission.operations[0])
        permission = dataclasses.replace(permission, granted_by=permission.granted_by or self.self_id)
        self._put(Domain.AGENTS, delegatee_id, f"perm_{delegatee_id}_{resource}", permission.to_json())

        caveats = [Caveat.operation(*permission.operations)]
        if permission.scope:
            caveats.append(Caveat.scope(permission.scope))
        token = self.tokens.mint(self.self_id, delegatee_id, resource, ttl, caveats)
        logger.info(
            "Permission granted: %s on %s (%s)",
            delegatee_id,
            resource,
            ",".join(permission.operations),
        )
        return token

    def revoke_permission(self, delegatee_id: str, resource: str) -> List[str]:
        """Remove access and revoke the delegatee's tokens on the resource."""
        self.access.revoke(resource)
        revoked: List[str] = []
        for token in self.tokens.held_by(delegatee_id, resource):
            revoked.extend(self.tokens.revoke(token.token_id))
        logger.info("Permission revoked: %s on %s", delegatee_id, resource)
        return revoked

    # ── helpers ───────────────────────────────────────────────────────────

    def _on_breaker_trip(self, agent_id: str) -> None:
        revoked = self.tokens.revoke_bearer(agent_id)
        logger.warning(
            "Circuit breaker tripped for %s; revoked %d token(s)", agent_id, len(revoked)
        )

    def _charge_failed_verification(self, agent_id: str, task_id: str, score: float) -> None:
        self.ledger.record(
            ReputationRecord(
                agent_id=agent_id,
                task_id=task_id,
                outcome=Outcome.FAILURE,
                quality=score,
                timeliness=0.0,
                cost_adherence=0.0,
                safety=0.0,
                recorder_id=self.self_id,
            )
        )
        self.breakers.record_failure(agent_id)
        self.breakers.check_trust_drop(agent_id, self.ledger.trust_score(agent_id))

    def _registered_capabilities(self, agent_ids: Iterable[str]):
        capabilities = {}
        for agent_id in agent_ids:
            try:
                capabilities[agent_id] = self.get_agent(agent_id).capabilities
            except NotFoundError:
                continue
        return capabilities

    def _set_contract_status(self, task_id: str, agent_id: str, status: ContractStatus) -> None:
        try:
            contract = self.get_contract(f"contract_{task_id}_{agent_id}")
        except NotFoundError:
            return
        contract.status = status
        self._save_contract(contract)

    def _save_contract(self, contract: Contract) -> None:
        self._put(Domain.CONTRACTS, contract.contract_id, TERMS_ASPECT, contract.to_json())

    def _put(self, domain: Domain, entity: str, aspect: str, data: bytes) -> None:
        self.store.put(self.config.storage.namespace(domain), entity, aspect, data)

    def _get(self, domain: Domain, entity: str, aspect: str) -> bytes:
        return self.store.get(self.config.storage.namespace(domain), entity, aspect)

    def _scan(self, domain: Domain, entity: str):
        return self.store.scan(self.config.storage.namespace(domain), entity)

    def _delete(self, domain: Domain, entity: str, aspect: str) -> None:
        self.store.delete(self.config.storage.namespace(domain), entity, aspect)
