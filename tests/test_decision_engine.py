"""
Decision Engine Tests

Tests for:
- Rule table per session state
- Delegated decisions, response parsing and cost recording
- Fallback to rules (disabled, veto, timeout, call error, bad response)
- Loop detection and escalation dedupe
- One phase transition per PHASE_DONE run
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from autopilot.config import CostConfig
from autopilot.cost_governor import CostGovernor
from autopilot.decision_engine import (
    LOOP_REASON_PREFIX,
    DecisionEngine,
    DelegatedStrategy,
    ReasoningParseError,
    RuleBasedStrategy,
    build_decision_engine,
    detect_loop,
    parse_action_json,
)
from autopilot.decision_model import ActionKind, Decision, DecisionMethod
from autopilot.notification_engine import NotificationType
from autopilot.reasoning_client import ReasoningError, ReasoningResponse, ReasoningTimeout, Usage
from autopilot.snapshot_model import ErrorCategory, ErrorEntry, ErrorSeverity, SessionState


class FakeReasoningClient:
    """Returns queued answers; an Exception in the queue is raised instead."""

    def __init__(self, *answers, delay: float = 0.0, model: str = "claude-sonnet-4-5"):
        self.answers = list(answers)
        self.delay = delay
        self.model = model
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return ReasoningResponse(
            action_json=answer,
            usage=Usage(input_units=1000, output_units=100),
            latency=0.01,
            model=self.model,
        )


def make_decision(state, action, **kwargs) -> Decision:
    return Decision(action=action, state=state, reasoning=kwargs.pop("reasoning", "r"), confidence=0.9, **kwargs)


def continue_answer(reasoning="Keep going", confidence=0.8) -> str:
    return json.dumps({"action": "continue", "reasoning": reasoning, "confidence": confidence})


@pytest.fixture
def governor(tmp_path):
    return CostGovernor(CostConfig(daily_limit_usd=5.0), tmp_path / "cost_ledger.jsonl")


@pytest.fixture
def rules():
    return RuleBasedStrategy()


class TestRuleTable:
    def test_busy_waits(self, rules, make_snapshot, record, project_config):
        decision = rules.decide(SessionState.BUSY, make_snapshot(is_busy=True), record, project_config)
        assert decision.action == ActionKind.WAIT
        assert decision.method == DecisionMethod.RULE_BASED

    def test_pending_work_continues(self, rules, make_snapshot, record, project_config):
        snapshot = make_snapshot(total=5, completed=2)
        decision = rules.decide(SessionState.HAS_PENDING_WORK, snapshot, record, project_config)
        assert decision.action == ActionKind.CONTINUE
        assert decision.command == project_config.continue_prompt
        assert "3 of 5" in decision.reasoning

    def test_pending_work_without_auto_progress_waits(self, rules, make_snapshot, record, project_config):
        config = project_config.model_copy(update={"auto_progress": False})
        decision = rules.decide(SessionState.HAS_PENDING_WORK, make_snapshot(total=2, completed=1), record, config)
        assert decision.action == ActionKind.WAIT

    def test_matched_skill(self, rules, make_snapshot, record, project_config):
        snapshot = make_snapshot(errors=[ErrorEntry("3 tests failed", category=ErrorCategory.TEST)])
        decision = rules.decide(SessionState.ERRORING, snapshot, record, project_config)
        assert decision.action == ActionKind.USE_SKILL
        assert decision.skill_ref == "fix-tests"
        assert decision.command == "/fix-tests"
        assert decision.confidence == pytest.approx(0.75)

    def test_unmatched_error_notifies(self, rules, make_snapshot, record, project_config):
        snapshot = make_snapshot(errors=[ErrorEntry("Disk quota exceeded")])
        decision = rules.decide(SessionState.ERRORING, snapshot, record, project_config)
        assert decision.action == ActionKind.NOTIFY
        assert decision.confidence < 0.5

    def test_critical_error_escalates(self, rules, make_snapshot, record, project_config):
        snapshot = make_snapshot(errors=[ErrorEntry("tests failed", severity=ErrorSeverity.CRITICAL)])
        decision = rules.decide(SessionState.ERRORING, snapshot, record, project_config)
        assert decision.action == ActionKind.NOTIFY
        assert "Critical" in decision.reasoning

    def test_escalation_keyword(self, rules, make_snapshot, record, project_config):
        snapshot = make_snapshot(errors=[ErrorEntry("tests failed: invalid credentials")])
        decision = rules.decide(SessionState.ERRORING, snapshot, record, project_config)
        assert decision.action == ActionKind.NOTIFY
        assert "credentials" in decision.reasoning

    def test_phase_done_transitions(self, rules, make_snapshot, record, project_config):
        decision = rules.decide(SessionState.PHASE_DONE, make_snapshot(total=3, completed=3), record, project_config)
        assert decision.action == ActionKind.PHASE_TRANSITION

    def test_phase_done_needs_approval(self, rules, make_snapshot, registry, record, project_config):
        registry.update_project("demo-app", current_phase="release")
        release = registry.get_project("demo-app")
        snapshot = make_snapshot(total=3, completed=3)

        decision = rules.decide(SessionState.PHASE_DONE, snapshot, release, project_config)
        assert decision.action == ActionKind.NOTIFY
        assert "approval" in decision.reasoning

        approved = registry.approve_phase("demo-app", "release")
        decision = rules.decide(SessionState.PHASE_DONE, snapshot, approved, project_config)
        assert decision.action == ActionKind.PHASE_TRANSITION

    def test_idle_nudges_with_stall_prompt(self, rules, make_snapshot, record, project_config):
        decision = rules.decide(SessionState.IDLE, make_snapshot(idle_minutes=15), record, project_config)
        assert decision.action == ActionKind.CONTINUE
        assert decision.command == project_config.stall_prompt
        assert "15 min" in decision.reasoning

    @pytest.mark.parametrize("state", [SessionState.AWAITING_INPUT, SessionState.UNCLASSIFIED])
    def test_quiet_states_wait(self, rules, make_snapshot, record, project_config, state):
        assert rules.decide(state, make_snapshot(), record, project_config).action == ActionKind.WAIT

    def test_escalation_not_repeated_in_same_episode(self, rules, make_snapshot, record, project_config):
        snapshot = make_snapshot(errors=[ErrorEntry("Disk quota exceeded")])
        history = [
            make_decision(SessionState.ERRORING, ActionKind.NOTIFY),
            make_decision(SessionState.ERRORING, ActionKind.WAIT),
        ]
        decision = rules.decide(SessionState.ERRORING, snapshot, record, project_config, history)
        assert decision.action == ActionKind.WAIT
        assert "Already escalated" in decision.reasoning

    def test_escalation_repeats_after_state_change(self, rules, make_snapshot, record, project_config):
        snapshot = make_snapshot(errors=[ErrorEntry("Disk quota exceeded")])
        history = [
            make_decision(SessionState.ERRORING, ActionKind.NOTIFY),
            make_decision(SessionState.HAS_PENDING_WORK, ActionKind.CONTINUE),
        ]
        decision = rules.decide(SessionState.ERRORING, snapshot, record, project_config, history)
        assert decision.action == ActionKind.NOTIFY


class TestParseActionJson:
    def test_plain_json(self, project_config):
        fields = parse_action_json(continue_answer(), SessionState.IDLE, project_config)
        assert fields["action"] == ActionKind.CONTINUE
        assert fields["command"] == project_config.continue_prompt

    def test_fenced_json(self, project_config):
        text = "```json\n" + continue_answer() + "\n```"
        assert parse_action_json(text, SessionState.IDLE, project_config)["action"] == ActionKind.CONTINUE

    def test_json_inside_prose(self, project_config):
        text = "Here is my decision: " + continue_answer() + " Hope that helps."
        assert parse_action_json(text, SessionState.IDLE, project_config)["reasoning"] == "Keep going"

    def test_camel_case_action_and_skill(self, project_config):
        text = json.dumps({"action": "UseSkill", "skillRef": "fix-imports", "reasoning": "r", "confidence": 0.7})
        fields = parse_action_json(text, SessionState.ERRORING, project_config)
        assert fields["action"] == ActionKind.USE_SKILL
        assert fields["command"] == "/fix-imports --all"

    def test_unknown_skill_rejected(self, project_config):
        text = json.dumps({"action": "use_skill", "skillRef": "deploy", "reasoning": "r", "confidence": 0.7})
        with pytest.raises(ReasoningParseError, match="Unknown skill"):
            parse_action_json(text, SessionState.ERRORING, project_config)

    def test_unknown_action_rejected(self, project_config):
        text = json.dumps({"action": "reboot", "reasoning": "r", "confidence": 0.7})
        with pytest.raises(ReasoningParseError):
            parse_action_json(text, SessionState.IDLE, project_config)

    def test_missing_field_rejected(self, project_config):
        with pytest.raises(ReasoningParseError, match="confidence"):
            parse_action_json('{"action": "wait", "reasoning": "r"}', SessionState.IDLE, project_config)

    def test_not_json(self, project_config):
        with pytest.raises(ReasoningParseError):
            parse_action_json("I think you should continue.", SessionState.IDLE, project_config)

    def test_confidence_clamped(self, project_config):
        fields = parse_action_json(continue_answer(confidence=3), SessionState.IDLE, project_config)
        assert fields["confidence"] == 1.0


class TestDelegation:
    @pytest.mark.asyncio
    async def test_delegated_decision_is_costed(self, governor, rules, make_snapshot, record, project_config):
        client = FakeReasoningClient(continue_answer())
        engine = DecisionEngine(rules, DelegatedStrategy(client, governor))

        decision = await engine.decide(SessionState.IDLE, make_snapshot(idle_minutes=20), record, project_config)

        assert decision.method == DecisionMethod.DELEGATED
        assert decision.action == ActionKind.CONTINUE
        # 1000 in * $3/M + 100 out * $15/M
        assert decision.cost_usd == pytest.approx(0.0045)
        assert governor.summary()["daily_usd"] == pytest.approx(0.0045)

        context = json.loads(client.requests[0].context)
        assert context["project"] == "demo-app"
        assert context["state"] == "idle"
        assert [s["name"] for s in context["skills"]] == ["fix-tests", "fix-imports"]

    @pytest.mark.asyncio
    async def test_busy_never_delegates(self, governor, rules, make_snapshot, record, project_config):
        client = FakeReasoningClient(continue_answer())
        engine = DecisionEngine(rules, DelegatedStrategy(client, governor))

        decision = await engine.decide(SessionState.BUSY, make_snapshot(is_busy=True), record, project_config)

        assert decision.action == ActionKind.WAIT
        assert client.requests == []

    @pytest.mark.asyncio
    async def test_unparseable_response_falls_back_but_is_costed(
        self, governor, rules, make_snapshot, record, project_config
    ):
        client = FakeReasoningClient("no idea")
        engine = DecisionEngine(rules, DelegatedStrategy(client, governor))

        decision = await engine.decide(SessionState.IDLE, make_snapshot(idle_minutes=20), record, project_config)

        assert decision.method == DecisionMethod.RULE_BASED
        assert decision.action == ActionKind.CONTINUE
        assert "fallback: unparseable response" in decision.reasoning
        assert governor.summary()["daily_usd"] > 0

    @pytest.mark.asyncio
    async def test_call_error_falls_back(self, governor, rules, make_snapshot, record, project_config):
        client = FakeReasoningClient(ReasoningError("HTTP 529"))
        engine = DecisionEngine(rules, DelegatedStrategy(client, governor))

        decision = await engine.decide(SessionState.HAS_PENDING_WORK, make_snapshot(total=2, completed=1), record, project_config)

        assert decision.method == DecisionMethod.RULE_BASED
        assert "reasoning call failed" in decision.reasoning

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self, governor, rules, make_snapshot, record, project_config):
        client = FakeReasoningClient(continue_answer(), delay=1.0)
        engine = DecisionEngine(rules, DelegatedStrategy(client, governor, timeout=0.01))

        decision = await engine.decide(SessionState.IDLE, make_snapshot(idle_minutes=20), record, project_config)

        assert decision.method == DecisionMethod.RULE_BASED
        assert "exceeded" in decision.reasoning
        assert governor.summary()["daily_usd"] == 0

    @pytest.mark.asyncio
    async def test_timeout_raises_reasoning_timeout(self, governor, make_snapshot, record, project_config):
        strategy = DelegatedStrategy(FakeReasoningClient(continue_answer(), delay=1.0), governor, timeout=0.01)
        with pytest.raises(ReasoningTimeout):
            await strategy.decide(SessionState.IDLE, make_snapshot(idle_minutes=20), record, project_config)

    @pytest.mark.asyncio
    async def test_unexpected_error_falls_back(self, governor, rules, make_snapshot, record, project_config):
        client = FakeReasoningClient(RuntimeError("bug"))
        engine = DecisionEngine(rules, DelegatedStrategy(client, governor))

        decision = await engine.decide(SessionState.IDLE, make_snapshot(idle_minutes=20), record, project_config)

        assert decision.method == DecisionMethod.RULE_BASED
        assert "RuntimeError" in decision.reasoning

    @pytest.mark.asyncio
    async def test_budget_veto_notifies_once(
        self, governor, rules, make_snapshot, record, project_config, notifier, notifications
    ):
        governor.record("demo-app", 5.0)
        client = FakeReasoningClient(continue_answer())
        engine = DecisionEngine(rules, DelegatedStrategy(client, governor, notifier=notifier))
        snapshot = make_snapshot(idle_minutes=20)

        first = await engine.decide(SessionState.IDLE, snapshot, record, project_config)
        second = await engine.decide(SessionState.IDLE, snapshot, record, project_config)

        assert client.requests == []
        assert first.method == DecisionMethod.RULE_BASED
        assert "Daily limit reached" in second.reasoning
        budget = [n for n in notifications if n.notification_type == NotificationType.BUDGET_EXHAUSTED]
        assert len(budget) == 1

    @pytest.mark.asyncio
    async def test_disabled_uses_rules(self, governor, rules, make_snapshot, record, project_config):
        engine = build_decision_engine(rules, FakeReasoningClient(continue_answer()), governor, enabled=False)
        assert engine.delegated is None
        assert "disabled" in engine.unavailable_reason

        decision = await engine.decide(SessionState.IDLE, make_snapshot(idle_minutes=20), record, project_config)
        assert decision.method == DecisionMethod.RULE_BASED
        assert "fallback" not in decision.reasoning

    def test_missing_client_recorded(self, governor, rules):
        engine = build_decision_engine(rules, None, governor, enabled=True)
        assert engine.delegated is None
        assert "credential" in engine.unavailable_reason


class TestLoopDetection:
    def history_of(self, count, state=SessionState.HAS_PENDING_WORK, action=ActionKind.CONTINUE):
        base = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        return [
            make_decision(state, action, timestamp=base + timedelta(minutes=i))
            for i in range(count)
        ]

    @pytest.mark.asyncio
    async def test_fourth_identical_decision_becomes_notify(self, rules, make_snapshot, record, project_config):
        engine = DecisionEngine(rules, loop_window=3)
        snapshot = make_snapshot(total=5, completed=2)

        below = await engine.decide(SessionState.HAS_PENDING_WORK, snapshot, record, project_config, self.history_of(2))
        assert below.action == ActionKind.CONTINUE

        looped = await engine.decide(SessionState.HAS_PENDING_WORK, snapshot, record, project_config, self.history_of(3))
        assert looped.action == ActionKind.NOTIFY
        assert looped.reasoning.startswith(LOOP_REASON_PREFIX)

    @pytest.mark.asyncio
    async def test_reported_loop_waits(self, rules, make_snapshot, record, project_config):
        engine = DecisionEngine(rules, loop_window=3)
        history = self.history_of(3)
        history.append(make_decision(
            SessionState.HAS_PENDING_WORK, ActionKind.NOTIFY, reasoning=f"{LOOP_REASON_PREFIX}: stuck",
        ))

        decision = await engine.decide(
            SessionState.HAS_PENDING_WORK, make_snapshot(total=5, completed=2), record, project_config, history,
        )
        assert decision.action == ActionKind.WAIT

    def test_state_change_resets_run(self):
        history = self.history_of(2) + self.history_of(1, state=SessionState.IDLE) + self.history_of(2)
        candidate = make_decision(SessionState.HAS_PENDING_WORK, ActionKind.CONTINUE)
        assert detect_loop(candidate, history, 3) is False

    def test_waits_do_not_break_run(self):
        history = self.history_of(2) + self.history_of(1, action=ActionKind.WAIT) + self.history_of(1)
        candidate = make_decision(SessionState.HAS_PENDING_WORK, ActionKind.CONTINUE)
        assert detect_loop(candidate, history, 3) is True

    def test_other_session_action_breaks_run(self):
        history = self.history_of(2) + self.history_of(1, action=ActionKind.USE_SKILL) + self.history_of(1)
        candidate = make_decision(SessionState.HAS_PENDING_WORK, ActionKind.CONTINUE)
        assert detect_loop(candidate, history, 3) is False

    def test_waits_never_loop(self):
        history = self.history_of(10, action=ActionKind.WAIT)
        candidate = make_decision(SessionState.HAS_PENDING_WORK, ActionKind.WAIT)
        assert detect_loop(candidate, history, 3) is False


class TestPhaseTransitionGuard:
    @pytest.mark.asyncio
    async def test_second_transition_waits_after_advance(self, rules, registry, make_snapshot, record, project_config):
        engine = DecisionEngine(rules)
        snapshot = make_snapshot(total=5, completed=5)
        earlier = datetime.now(timezone.utc) - timedelta(minutes=1)
        history = [make_decision(SessionState.PHASE_DONE, ActionKind.PHASE_TRANSITION, timestamp=earlier)]
        advanced = registry.update_project(
            "demo-app", current_phase="build", phase_started_at=datetime.now(timezone.utc).isoformat(),
        )

        decision = await engine.decide(SessionState.PHASE_DONE, snapshot, advanced, project_config, history)

        assert decision.action == ActionKind.WAIT
        assert "already advanced to 'build'" in decision.reasoning

    @pytest.mark.asyncio
    async def test_transition_retried_when_phase_did_not_advance(self, rules, make_snapshot, record, project_config):
        engine = DecisionEngine(rules)
        later = datetime.now(timezone.utc) + timedelta(seconds=5)
        history = [make_decision(SessionState.PHASE_DONE, ActionKind.PHASE_TRANSITION, timestamp=later)]

        decision = await engine.decide(
            SessionState.PHASE_DONE, make_snapshot(total=5, completed=5), record, project_config, history,
        )

        assert decision.action == ActionKind.PHASE_TRANSITION

    @pytest.mark.asyncio
    async def test_state_change_allows_next_transition(self, rules, registry, make_snapshot, record, project_config):
        engine = DecisionEngine(rules)
        earlier = datetime.now(timezone.utc) - timedelta(minutes=5)
        history = [
            make_decision(SessionState.PHASE_DONE, ActionKind.PHASE_TRANSITION, timestamp=earlier),
            make_decision(SessionState.HAS_PENDING_WORK, ActionKind.CONTINUE),
        ]
        advanced = registry.update_project(
            "demo-app", current_phase="build", phase_started_at=(earlier + timedelta(seconds=1)).isoformat(),
        )

        decision = await engine.decide(
            SessionState.PHASE_DONE, make_snapshot(total=5, completed=5), advanced, project_config, history,
        )

        assert decision.action == ActionKind.PHASE_TRANSITION
