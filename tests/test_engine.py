"""
Tests for the delegation engine facade.

Covers: agent registration, the publish/bid/accept/verify flow, monitoring,
permissions and the coupling between breakers and tokens.
"""

from datetime import timedelta

import pytest

from ai_delegation.clock import ManualClock
from ai_delegation.config import BreakerConfig, EngineConfig
from ai_delegation.delegation import (
    AdaptiveTrigger,
    AgentProfile,
    AgentStatus,
    Bid,
    ContractStatus,
    ContractTerms,
    Criticality,
    DelegationEngine,
    MonitorEvent,
    MonitorEventType,
    Outcome,
    Permission,
    ResponseAction,
    Task,
    TaskStatus,
    TriggerType,
    VerificationResult,
)
from ai_delegation.exceptions import AccessDeniedError, NotFoundError, StateError, ValidationError
from ai_delegation.storage import MemoryAccessRegistry, MemoryBroadcastChannel, MemoryRecordStore


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def channel():
    return MemoryBroadcastChannel()


@pytest.fixture
def access():
    return MemoryAccessRegistry()


@pytest.fixture
def engine(store, channel, access, clock):
    return DelegationEngine(store, channel, access, clock=clock, self_id="boss")


def _bid(agent_id, task_id="t1", cost=10.0, duration=60.0, confidence=0.8, capabilities=("python",)):
    return Bid(
        task_id=task_id,
        agent_id=agent_id,
        estimated_cost=cost,
        estimated_duration=duration,
        confidence=confidence,
        capabilities=capabilities,
    )


def _assigned(engine, task_id="t1", agent_id="agent-1", **fields):
    engine.create_task(Task(task_id=task_id, required_capabilities=["python"], **fields))
    engine.publish_for_bidding(task_id)
    bid = engine.submit_bid(_bid(agent_id, task_id=task_id))
    return engine.accept_bid(bid, ContractTerms(max_cost=15.0))


# ═══════════════════════════════════════════════════════════════════════════
# AGENTS / TASKS
# ═══════════════════════════════════════════════════════════════════════════


class TestAgents:
    def test_register_and_get(self, engine, access, clock):
        registered = engine.register_agent(AgentProfile(agent_id="agent-1", capabilities=["python"]))
        assert registered.registered_at == clock.now()
        assert engine.get_agent("agent-1") == registered
        assert access.relations["agent-1"][0][0] == "write"

    def test_get_unknown(self, engine):
        with pytest.raises(NotFoundError):
            engine.get_agent("ghost")

    def test_update_requires_registration(self, engine):
        with pytest.raises(NotFoundError):
            engine.update_agent(AgentProfile(agent_id="ghost"))

    def test_update(self, engine, clock):
        engine.register_agent(AgentProfile(agent_id="agent-1"))
        clock.advance(minutes=5)
        updated = engine.update_agent(AgentProfile(agent_id="agent-1", current_load=1))
        assert updated.last_seen_at == clock.now()
        assert engine.get_agent("agent-1").current_load == 1

    def test_remove(self, engine, access):
        engine.register_agent(AgentProfile(agent_id="agent-1", capabilities=["python"]))
        token = engine.grant_permission("agent-1", "bucket", Permission(resource="bucket", operations=["read"]))

        revoked = engine.remove_agent("agent-1")

        assert revoked == [token.token_id]
        with pytest.raises(NotFoundError):
            engine.get_agent("agent-1")
        assert "agent-1" not in access.relations
        assert engine.store.scan("Agents", "agent-1") == []
        assert engine.find_agents_by_capability(["python"]) == []

    def test_remove_unknown(self, engine, access):
        with pytest.raises(NotFoundError):
            engine.remove_agent("ghost")
        assert access.relations == {}

    def test_find_by_capability(self, engine):
        engine.register_agent(AgentProfile(agent_id="py", capabilities=["python"]))
        engine.register_agent(AgentProfile(agent_id="full", capabilities=["python", "sql"]))
        engine.register_agent(
            AgentProfile(agent_id="away", capabilities=["python", "sql"], status=AgentStatus.OFFLINE)
        )
        engine.register_agent(AgentProfile(agent_id="busy", capabilities=["sql", "python"], status=AgentStatus.BUSY))

        found = engine.find_agents_by_capability(["python", "sql"])
        assert [a.agent_id for a in found] == ["full"]
        assert [a.agent_id for a in engine.find_agents_by_capability(["python"])] == ["py", "full"]
        assert len(engine.find_agents_by_capability([])) == 2

    def test_find_sees_updates(self, engine):
        engine.register_agent(AgentProfile(agent_id="py", capabilities=["python"]))
        engine.update_agent(AgentProfile(agent_id="py", capabilities=["python"], status=AgentStatus.OFFLINE))
        assert engine.find_agents_by_capability(["python"]) == []


class TestTasks:
    def test_create_sets_delegator(self, engine, access):
        task = engine.create_task(Task(task_id="t1"))
        assert task.delegator_id == "boss"
        assert "t1" in access.relations

    def test_decompose(self, engine):
        engine.create_task(Task(task_id="root"))
        parent = engine.decompose_task("root", [Task(task_id="a"), Task(task_id="b")])
        assert parent.subtask_ids == ["a", "b"]
        assert engine.get_task("a").delegator_id == "boss"

    def test_screen(self, engine):
        task = Task(task_id="t1", context_sensitivity=0.9, verifiability=0.1)
        assert len(engine.screen(task)) == 1

    def test_should_bypass(self, engine):
        engine.create_task(
            Task(task_id="t1", criticality="low", complexity=1, uncertainty=0.0, estimated_duration=10)
        )
        assert engine.should_bypass("t1")


# ═══════════════════════════════════════════════════════════════════════════
# MARKET
# ═══════════════════════════════════════════════════════════════════════════


class TestMarket:
    def test_bid_requires_open_task(self, engine):
        engine.create_task(Task(task_id="t1"))
        with pytest.raises(StateError):
            engine.submit_bid(_bid("agent-1"))

    def test_bids_listed_in_order(self, engine, clock):
        engine.create_task(Task(task_id="t1"))
        engine.publish_for_bidding("t1")
        first = engine.submit_bid(_bid("a"))
        engine.submit_bid(_bid("b"))
        assert first.submitted_at == clock.now()
        assert [b.agent_id for b in engine.list_bids("t1")] == ["a", "b"]

    def test_rank_uses_reputation_and_registry(self, engine):
        engine.register_agent(AgentProfile(agent_id="claims-a-lot", capabilities=[]))
        engine.create_task(Task(task_id="t1", required_capabilities=["python"]))
        engine.publish_for_bidding("t1")
        engine.submit_bid(_bid("claims-a-lot"))
        engine.submit_bid(_bid("honest"))

        ranked = engine.rank_bids_for_task("t1")

        by_agent = {s.bid.agent_id: s for s in ranked}
        assert by_agent["claims-a-lot"].cap_match_score == 0.0
        assert by_agent["honest"].cap_match_score == 1.0
        assert ranked[0].bid.agent_id == "honest"

    def test_rank_skips_blocked_agents(self, engine):
        engine.create_task(Task(task_id="t1"))
        engine.publish_for_bidding("t1")
        engine.submit_bid(_bid("flaky"))
        engine.submit_bid(_bid("steady"))
        for _ in range(3):
            engine.breakers.record_failure("flaky")

        assert [s.bid.agent_id for s in engine.rank_bids_for_task("t1")] == ["steady"]

    def test_accept_bid_creates_contract(self, engine, access):
        contract = _assigned(engine)

        assert contract.contract_id == "contract_t1_agent-1"
        assert contract.status is ContractStatus.ACTIVE
        assert contract.delegator_id == "boss"
        assert engine.get_contract(contract.contract_id) == contract

        task = engine.get_task("t1")
        assert task.status is TaskStatus.ASSIGNED
        assert task.delegatee_id == "agent-1"

        token = engine.tokens.get(contract.token_id)
        assert token.bearer_id == "agent-1"
        assert token.resource == "t1"
        engine.tokens.validate(token, "spend", "t1", amount=15.0)
        with pytest.raises(AccessDeniedError):
            engine.tokens.validate(token, "spend", "t1", amount=15.5)

    def test_token_lives_until_deadline(self, engine, clock):
        engine.create_task(Task(task_id="t1"))
        engine.publish_for_bidding("t1")
        bid = engine.submit_bid(_bid("agent-1"))
        deadline = clock.now() + timedelta(hours=3)
        contract = engine.accept_bid(bid, ContractTerms(max_cost=5.0, deadline=deadline))
        assert engine.tokens.get(contract.token_id).expires_at == deadline

    def test_blocked_agent_cannot_be_assigned(self, engine):
        engine.create_task(Task(task_id="t1"))
        engine.publish_for_bidding("t1")
        bid = engine.submit_bid(_bid("flaky"))
        for _ in range(3):
            engine.breakers.record_failure("flaky")
        with pytest.raises(StateError, match="circuit breaker"):
            engine.accept_bid(bid, ContractTerms(max_cost=5.0))
        assert engine.get_task("t1").status is TaskStatus.BIDDING

    def test_refused_task_keeps_half_open_trial(self, engine, clock):
        engine.create_task(Task(task_id="t1"))
        engine.publish_for_bidding("t1")
        bid = engine.submit_bid(_bid("flaky"))
        engine.breakers.check_trust_drop("flaky", 0.0)
        engine.graph.update_status("t1", TaskStatus.CANCELLED)
        clock.advance(minutes=31)

        with pytest.raises(StateError, match="not open for assignment"):
            engine.accept_bid(bid, ContractTerms(max_cost=5.0))
        assert not engine.breakers.is_blocked("flaky")

        engine.create_task(Task(task_id="t2"))
        engine.publish_for_bidding("t2")
        retry = engine.submit_bid(_bid("flaky", task_id="t2"))
        contract = engine.accept_bid(retry, ContractTerms(max_cost=5.0))
        assert contract.delegatee_id == "flaky"
        assert engine.breakers.is_blocked("flaky")


# ═══════════════════════════════════════════════════════════════════════════
# MONITORING
# ═══════════════════════════════════════════════════════════════════════════


class TestMonitoring:
    def test_emit_stores_and_broadcasts(self, engine, channel, clock):
        received = []
        assert engine.subscribe_to_monitoring("t1", received.append) == "monitor_t1"

        event = engine.emit_monitor_event(
            MonitorEvent(task_id="t1", agent_id="agent-1", type=MonitorEventType.PROGRESS_UPDATE, progress=0.4)
        )

        assert event.timestamp == clock.now()
        assert engine.monitoring_events("t1") == [event]
        assert received == [event]
        assert channel.published[-1][2] == 86400


# ═══════════════════════════════════════════════════════════════════════════
# VERIFICATION
# ═══════════════════════════════════════════════════════════════════════════


class TestVerification:
    def _verifying(self, engine, **fields):
        _assigned(engine, **fields)
        engine.submit_for_verification("t1", b"result bytes")

    def test_submit_stores_artifact(self, engine):
        self._verifying(engine)
        assert engine.get_task("t1").status is TaskStatus.VERIFYING
        assert engine.get_artifact("t1") == b"result bytes"

    def test_pass(self, engine):
        self._verifying(engine)
        task = engine.record_verification(
            VerificationResult(task_id="t1", verifier_id="qa", passed=True, score=0.8)
        )

        assert task.status is TaskStatus.VERIFIED
        (record,) = engine.ledger.history("agent-1")
        assert record.outcome is Outcome.SUCCESS
        assert record.quality == 0.8
        assert record.timeliness == record.cost_adherence == record.safety == 1.0
        assert engine.ledger.trust_score("agent-1") == pytest.approx(0.95)
        assert engine.get_contract("contract_t1_agent-1").status is ContractStatus.COMPLETED

    def test_pass_closes_breaker(self, engine):
        self._verifying(engine)
        engine.breakers.record_failure("agent-1")
        engine.record_verification(VerificationResult(task_id="t1", verifier_id="qa", passed=True, score=1.0))
        assert engine.breakers.for_agent("agent-1").failure_count == 0

    def test_fail_non_critical_reallocates(self, engine, channel):
        self._verifying(engine)
        published_before = len(channel.published)

        task = engine.record_verification(
            VerificationResult(task_id="t1", verifier_id="qa", passed=False, score=0.2, details="wrong output")
        )

        assert task.status is TaskStatus.REALLOCATING
        assert len(channel.published) == published_before
        (record,) = engine.ledger.history("agent-1")
        assert record.outcome is Outcome.FAILURE
        assert record.quality == 0.2
        assert engine.get_contract("contract_t1_agent-1").status is ContractStatus.BREACHED
        (_, data), = engine.store.scan("Triggers", "t1")
        assert AdaptiveTrigger.from_json(data).urgent is False

    def test_fail_critical_redelegates_once_charged(self, engine):
        self._verifying(engine, criticality=Criticality.CRITICAL)

        task = engine.record_verification(
            VerificationResult(task_id="t1", verifier_id="qa", passed=False, score=0.0)
        )

        assert task.status is TaskStatus.BIDDING
        assert task.delegatee_id is None
        assert len(engine.ledger.history("agent-1")) == 1

    def test_fail_critical_irreversible_cancels(self, engine):
        self._verifying(engine, criticality=Criticality.CRITICAL, reversible=False)
        task = engine.record_verification(
            VerificationResult(task_id="t1", verifier_id="qa", passed=False, score=0.0)
        )
        assert task.status is TaskStatus.CANCELLED
        assert len(engine.ledger.history("agent-1")) == 1

    def test_result_for_unsubmitted_task_rejected(self, engine, store):
        _assigned(engine)
        with pytest.raises(StateError, match="cannot record verification"):
            engine.record_verification(VerificationResult(task_id="t1", verifier_id="qa", passed=False, score=0.0))
        with pytest.raises(NotFoundError):
            store.get("Tasks", "t1", "verification")
        assert engine.ledger.history("agent-1") == []
        assert engine.get_task("t1").status is TaskStatus.ASSIGNED

    def test_trust_collapse_revokes_tokens(self, engine):
        contract = _assigned(engine)
        engine.submit_for_verification("t1", b"junk")
        engine.record_verification(VerificationResult(task_id="t1", verifier_id="qa", passed=False, score=0.0))

        token = engine.tokens.get(contract.token_id)
        assert token.revoked
        with pytest.raises(AccessDeniedError):
            engine.tokens.validate(token, "read", "t1")


# ═══════════════════════════════════════════════════════════════════════════
# TRIGGERS / PERMISSIONS
# ═══════════════════════════════════════════════════════════════════════════


class TestTriggers:
    def test_raise_trigger_routes_to_coordinator(self, engine):
        _assigned(engine, max_budget=100.0)
        action = engine.raise_trigger(AdaptiveTrigger(task_id="t1", type=TriggerType.BUDGET_OVERRUN))
        assert action is ResponseAction.BUDGET_EXTENDED
        assert engine.get_task("t1").max_budget == pytest.approx(120.0)

    def test_breaker_trip_revokes_downstream_tokens(self, store, channel, access, clock):
        config = EngineConfig(breaker=BreakerConfig(failure_threshold=1, trust_floor=0.0))
        engine = DelegationEngine(store, channel, access, config=config, clock=clock)
        contract = _assigned(engine)
        parent = engine.tokens.get(contract.token_id)
        sub = engine.tokens.attenuate(parent, "helper")

        engine.raise_trigger(AdaptiveTrigger(task_id="t1", type=TriggerType.UNRESPONSIVE))

        assert engine.tokens.get(sub.token_id).revoked


class TestPermissions:
    def test_grant_mints_restricted_token(self, engine, access, store):
        token = engine.grant_permission(
            "agent-1", "bucket", Permission(resource="bucket", operations=["read", "list"], scope="bucket/reports")
        )
        assert access.relations["bucket"][0][0] == "read"
        engine.tokens.validate(token, "list", "bucket/reports/q1.csv")
        with pytest.raises(AccessDeniedError):
            engine.tokens.validate(token, "write", "bucket/reports/q1.csv")
        with pytest.raises(AccessDeniedError):
            engine.tokens.validate(token, "read", "bucket/private")
        stored = store.get("Agents", "agent-1", "perm_agent-1_bucket")
        assert Permission.from_json(stored).granted_by == "boss"

    def test_grant_honours_expiry(self, engine, clock):
        expires = clock.now() + timedelta(minutes=10)
        token = engine.grant_permission(
            "agent-1", "bucket", Permission(resource="bucket", operations=["read"], expires_at=expires)
        )
        assert token.expires_at == expires

    def test_grant_requires_operations(self, engine):
        with pytest.raises(ValidationError):
            engine.grant_permission("agent-1", "bucket", Permission(resource="bucket"))

    def test_grant_already_expired(self, engine, clock):
        with pytest.raises(ValidationError):
            engine.grant_permission(
                "agent-1",
                "bucket",
                Permission(resource="bucket", operations=["read"], expires_at=clock.now()),
            )

    def test_revoke(self, engine, access):
        token = engine.grant_permission("agent-1", "bucket", Permission(resource="bucket", operations=["read"]))
        revoked = engine.revoke_permission("agent-1", "bucket")
        assert revoked == [token.token_id]
        assert "bucket" not in access.relations
        with pytest.raises(AccessDeniedError):
            engine.tokens.validate(token, "read", "bucket")
