"""
Decision Engine

Turns a classified session state, the project's configuration and its
recent decision history into one Decision.

Two strategies behind one interface:
- RuleBasedStrategy: always available, zero cost, total over SessionState
- DelegatedStrategy: asks the reasoning service, costed through the
  CostGovernor

HARD CONSTRAINTS:
- decide() never raises for a delegation problem. Disabled service, missing
  credential, budget veto, call error/timeout and unparseable responses all
  fall back to the rule-based strategy, with the reason logged
- A PHASE_DONE snapshot advances the phase at most once: after an advance
  the session must leave PHASE_DONE before another transition
- Loop detection runs on every decision: the same (state, action) repeated
  over the loop window with no state change downgrades a session action
  to NOTIFY
- Confidence is advisory metadata, never a control input
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional, Sequence

from .config import ProjectConfig
from .cost_governor import CostGovernor
from .decision_model import ActionKind, Decision, DecisionMethod, clamp_confidence
from .notification_engine import NotificationEngine, NotificationTemplates
from .project_registry import ProjectRecord
from .reasoning_client import ReasoningClient, ReasoningError, ReasoningRequest, ReasoningTimeout
from .skill_matcher import DEFAULT_MIN_SCORE, best_skill
from .snapshot_model import ErrorSeverity, SessionState, Snapshot

logger = logging.getLogger("decision_engine")

DEFAULT_LOOP_WINDOW = 3
DEFAULT_HISTORY_WINDOW = 10
LOOP_REASON_PREFIX = "Loop detected"

# States cheap enough to decide by rule even when delegation is available
RULE_ONLY_STATES = frozenset({SessionState.BUSY})


class DelegationUnavailable(Exception):
    """The delegated strategy declined to run (e.g. budget veto)."""


class ReasoningParseError(ReasoningError):
    """The reasoning service answered, but not with a usable decision."""


# -----------------------------------------------------------------------------
# Rule-Based Strategy
# -----------------------------------------------------------------------------
class RuleBasedStrategy:
    """
    Deterministic default decision per SessionState.

    | State            | Decision                                         |
    |------------------|--------------------------------------------------|
    | BUSY             | WAIT                                             |
    | ERRORING         | escalation trigger -> NOTIFY                     |
    |                  | matched skill -> USE_SKILL, else NOTIFY          |
    | HAS_PENDING_WORK | CONTINUE (auto_progress) else WAIT               |
    | PHASE_DONE       | PHASE_TRANSITION (auto_progress, approved)       |
    |                  | else NOTIFY                                      |
    | IDLE             | CONTINUE with stall prompt (auto_progress)       |
    |                  | else NOTIFY                                      |
    | AWAITING_INPUT   | WAIT                                             |
    | UNCLASSIFIED     | WAIT                                             |

    A NOTIFY already issued for the current state episode is not repeated;
    WAIT is returned until the state changes.
    """

    method = DecisionMethod.RULE_BASED

    def __init__(self, min_skill_score: int = DEFAULT_MIN_SCORE):
        self.min_skill_score = min_skill_score

    def decide(
        self,
        state: SessionState,
        snapshot: Snapshot,
        project: ProjectRecord,
        config: ProjectConfig,
        history: Sequence[Decision] = (),
    ) -> Decision:
        handler = {
            SessionState.BUSY: self._busy,
            SessionState.ERRORING: self._erroring,
            SessionState.HAS_PENDING_WORK: self._pending_work,
            SessionState.PHASE_DONE: self._phase_done,
            SessionState.IDLE: self._idle,
            SessionState.AWAITING_INPUT: self._awaiting_input,
            SessionState.UNCLASSIFIED: self._unclassified,
        }[state]
        decision = handler(state, snapshot, project, config)

        if decision.action == ActionKind.NOTIFY and _already_escalated(state, history):
            return Decision(
                action=ActionKind.WAIT,
                state=state,
                reasoning=f"Already escalated in this {state.value} episode; waiting for operator",
                confidence=0.7,
            )
        return decision

    def _busy(self, state, snapshot, project, config) -> Decision:
        return Decision(
            action=ActionKind.WAIT,
            state=state,
            reasoning="Session is busy",
            confidence=0.95,
        )

    def _erroring(self, state, snapshot: Snapshot, project, config: ProjectConfig) -> Decision:
        errors = snapshot.errors
        escalation = config.escalation

        critical = [e for e in errors if e.severity == ErrorSeverity.CRITICAL]
        if escalation.on_critical_error and critical:
            return Decision(
                action=ActionKind.NOTIFY,
                state=state,
                reasoning=f"Critical error needs a human: {critical[0].message[:200]}",
                confidence=0.45,
            )

        messages = " ".join(e.message.lower() for e in errors)
        triggered = [k for k in escalation.keywords if k.lower() in messages]
        if triggered:
            return Decision(
                action=ActionKind.NOTIFY,
                state=state,
                reasoning=f"Escalation keyword(s) present: {', '.join(triggered)}",
                confidence=0.45,
            )

        match = best_skill(config.skills, errors, self.min_skill_score)
        if match is None:
            return Decision(
                action=ActionKind.NOTIFY,
                state=state,
                reasoning=f"No skill matches {len(errors)} error(s): {errors[0].message[:200]}",
                confidence=0.4,
            )

        return Decision(
            action=ActionKind.USE_SKILL,
            state=state,
            reasoning=(
                f"Skill '{match.name}' matched {len(errors)} error(s) "
                f"(score {match.score}: {', '.join(match.reasons)})"
            ),
            confidence=min(0.95, 0.6 + match.score / 100.0),
            command=match.skill.resolved_command(),
            skill_ref=match.name,
        )

    def _pending_work(self, state, snapshot: Snapshot, project, config: ProjectConfig) -> Decision:
        pending = snapshot.todos.pending
        if not config.auto_progress:
            return Decision(
                action=ActionKind.WAIT,
                state=state,
                reasoning=f"{pending} TODO(s) pending; auto-progress disabled",
                confidence=0.7,
            )
        return Decision(
            action=ActionKind.CONTINUE,
            state=state,
            reasoning=f"{pending} of {snapshot.todos.total} TODO(s) pending",
            confidence=0.9,
            command=config.continue_prompt,
        )

    def _phase_done(self, state, snapshot: Snapshot, project: ProjectRecord, config: ProjectConfig) -> Decision:
        phase = project.current_phase
        phase_config = config.get_phase(phase)

        if not config.auto_progress:
            return Decision(
                action=ActionKind.NOTIFY,
                state=state,
                reasoning=f"Phase '{phase}' complete; auto-progress disabled",
                confidence=0.6,
            )

        if phase_config is not None and phase_config.requires_approval and not project.is_phase_approved(phase):
            return Decision(
                action=ActionKind.NOTIFY,
                state=state,
                reasoning=f"Phase '{phase}' complete; awaiting operator approval",
                confidence=0.6,
            )

        return Decision(
            action=ActionKind.PHASE_TRANSITION,
            state=state,
            reasoning=f"All {snapshot.todos.total} TODO(s) complete in phase '{phase}'",
            confidence=0.9,
        )

    def _idle(self, state, snapshot: Snapshot, project, config: ProjectConfig) -> Decision:
        minutes = int(snapshot.idle_duration.total_seconds() // 60)
        if not config.auto_progress:
            return Decision(
                action=ActionKind.NOTIFY,
                state=state,
                reasoning=f"Session idle for {minutes} min; auto-progress disabled",
                confidence=0.45,
            )
        return Decision(
            action=ActionKind.CONTINUE,
            state=state,
            reasoning=f"Session idle for {minutes} min; nudging",
            confidence=0.6,
            command=config.stall_prompt,
        )

    def _awaiting_input(self, state, snapshot, project, config) -> Decision:
        return Decision(
            action=ActionKind.WAIT,
            state=state,
            reasoning="Awaiting input; stall threshold not reached",
            confidence=0.7,
        )

    def _unclassified(self, state, snapshot, project, config) -> Decision:
        return Decision(
            action=ActionKind.WAIT,
            state=state,
            reasoning="Session state not recognized",
            confidence=0.5,
        )


def _already_escalated(state: SessionState, history: Sequence[Decision]) -> bool:
    """True if a NOTIFY was issued since the session entered `state`."""
    for decision in reversed(history):
        if decision.state != state:
            return False
        if decision.action == ActionKind.NOTIFY:
            return True
    return False


# -----------------------------------------------------------------------------
# Delegated Strategy
# -----------------------------------------------------------------------------
_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_action_json(text: str, state: SessionState, config: ProjectConfig) -> Dict[str, Any]:
    """
    Parse the reasoning service's answer into Decision fields.

    Raises ReasoningParseError for anything that is not a complete decision
    over the known actions and configured skills.
    """
    cleaned = text.strip()
    fenced = _FENCE_RE.match(cleaned)
    if fenced:
        cleaned = fenced.group(1)

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start < 0 or end <= start:
            raise ReasoningParseError("Response contains no JSON object")
        try:
            data = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise ReasoningParseError(f"Response JSON is invalid: {e}")

    if not isinstance(data, dict):
        raise ReasoningParseError(f"Response JSON is a {type(data).__name__}, not an object")

    for key in ("action", "reasoning", "confidence"):
        if key not in data:
            raise ReasoningParseError(f"Response is missing '{key}'")

    try:
        action = ActionKind.parse(data["action"])
    except ValueError as e:
        raise ReasoningParseError(str(e))

    command = data.get("command")
    if command is not None and not isinstance(command, str):
        raise ReasoningParseError("'command' must be a string")

    skill_ref = data.get("skillRef", data.get("skill_ref"))
    if action == ActionKind.USE_SKILL:
        if not skill_ref:
            raise ReasoningParseError("use_skill without a skillRef")
        skill = config.get_skill(str(skill_ref))
        if skill is None:
            raise ReasoningParseError(f"Unknown skill '{skill_ref}'")
        command = command or skill.resolved_command()
    elif action == ActionKind.CONTINUE:
        command = command or config.continue_prompt
        skill_ref = None
    else:
        skill_ref = None

    return {
        "action": action,
        "state": state,
        "reasoning": str(data["reasoning"]).strip() or "(no reasoning given)",
        "confidence": clamp_confidence(data["confidence"]),
        "command": command,
        "skill_ref": skill_ref,
    }


class DelegatedStrategy:
    """Decisions from the reasoning service, within the cost budget."""

    method = DecisionMethod.DELEGATED

    def __init__(
        self,
        client: ReasoningClient,
        governor: CostGovernor,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        max_output_units: int = 512,
        timeout: float = 30.0,
        notifier: Optional[NotificationEngine] = None,
    ):
        self.client = client
        self.governor = governor
        self.history_window = history_window
        self.max_output_units = max_output_units
        self.timeout = timeout
        self.notifier = notifier

    def build_context(
        self,
        state: SessionState,
        snapshot: Snapshot,
        project: ProjectRecord,
        config: ProjectConfig,
        history: Sequence[Decision],
    ) -> str:
        recent = list(history)[-self.history_window:]
        payload = {
            "project": config.name,
            "phase": project.current_phase,
            "phases": [p.name for p in config.phases],
            "state": state.value,
            "snapshot": snapshot.summary(),
            "settings": {
                "auto_progress": config.auto_progress,
                "auto_commit": config.auto_commit,
            },
            "history": [
                {
                    "timestamp": d.timestamp.isoformat(),
                    "state": d.state.value,
                    "action": d.action.value,
                    "skill_ref": d.skill_ref,
                    "reasoning": d.reasoning,
                    "method": d.method.value,
                }
                for d in recent
            ],
            "skills": [
                {"name": s.name, "description": s.description, "command": s.resolved_command()}
                for s in config.skills
            ],
            "allowed_actions": [k.value for k in ActionKind],
        }
        return json.dumps(payload, indent=2)

    async def decide(
        self,
        state: SessionState,
        snapshot: Snapshot,
        project: ProjectRecord,
        config: ProjectConfig,
        history: Sequence[Decision] = (),
    ) -> Decision:
        verdict = self.governor.can_proceed(project.name)
        if not verdict.allow:
            if verdict.first_veto and self.notifier is not None:
                await self.notifier.send(
                    NotificationTemplates.budget_exhausted(project.name, verdict.reason or "")
                )
            raise DelegationUnavailable(verdict.reason or "budget exhausted")

        request = ReasoningRequest(
            context=self.build_context(state, snapshot, project, config, history),
            max_output_units=self.max_output_units,
        )
        try:
            response = await asyncio.wait_for(self.client.complete(request), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ReasoningTimeout(f"Reasoning call exceeded {self.timeout:.0f}s")

        cost = self.governor.estimate_cost(
            response.model, response.usage.input_units, response.usage.output_units
        )
        # Spend is recorded even if the answer turns out to be unusable
        self.governor.record(
            project.name,
            cost,
            model=response.model,
            input_units=response.usage.input_units,
            output_units=response.usage.output_units,
        )

        fields = parse_action_json(response.action_json, state, config)
        return Decision(
            method=DecisionMethod.DELEGATED,
            cost_usd=cost,
            model=response.model,
            **fields,
        )


# -----------------------------------------------------------------------------
# Decision Engine
# -----------------------------------------------------------------------------
def detect_loop(candidate: Decision, history: Sequence[Decision], window: int) -> bool:
    """
    True when the candidate's (state, action) pair was already issued
    `window` times since the session entered that state.

    Only session actions can loop. Entries in the same state that do not
    send input (WAIT, NOTIFY) do not break the run; a different session
    action or a different state does.
    """
    if candidate.action not in ActionKind.session_actions():
        return False

    repeats = 0
    for decision in reversed(history):
        if decision.state != candidate.state:
            break
        if decision.action == candidate.action:
            repeats += 1
            if repeats >= window:
                return True
        elif decision.action in ActionKind.session_actions():
            break
    return False


def is_loop_notice(decision: Decision) -> bool:
    return decision.action == ActionKind.NOTIFY and decision.reasoning.startswith(LOOP_REASON_PREFIX)


def loop_already_reported(state: SessionState, history: Sequence[Decision]) -> bool:
    for decision in reversed(history):
        if decision.state != state:
            return False
        if is_loop_notice(decision):
            return True
    return False


def transition_already_made(project: ProjectRecord, history: Sequence[Decision]) -> bool:
    """
    True when a PHASE_TRANSITION issued in the current PHASE_DONE run has
    already advanced the project.

    The snapshot that triggered it describes the previous phase's TODOs, so
    a further transition needs the session to leave PHASE_DONE first. A
    transition that did not advance (commit failure, pending approval) does
    not count and is retried.
    """
    started = project.phase_started()
    for decision in reversed(history):
        if decision.state != SessionState.PHASE_DONE:
            return False
        if decision.action == ActionKind.PHASE_TRANSITION and decision.timestamp <= started:
            return True
    return False


class DecisionEngine:
    """Chooses a strategy, falls back on failure, and guards against loops."""

    def __init__(
        self,
        rules: RuleBasedStrategy,
        delegated: Optional[DelegatedStrategy] = None,
        unavailable_reason: Optional[str] = None,
        loop_window: int = DEFAULT_LOOP_WINDOW,
    ):
        self.rules = rules
        self.delegated = delegated
        self.unavailable_reason = unavailable_reason or (
            None if delegated else "reasoning service disabled"
        )
        self.loop_window = loop_window

        if delegated is None:
            logger.info(f"Delegated decisions off ({self.unavailable_reason}); using rules only")

    async def decide(
        self,
        state: SessionState,
        snapshot: Snapshot,
        project: ProjectRecord,
        config: ProjectConfig,
        history: Sequence[Decision] = (),
    ) -> Decision:
        if state == SessionState.PHASE_DONE and transition_already_made(project, history):
            logger.info(f"[{project.name}] Phase already advanced to '{project.current_phase}'; waiting for new work")
            return Decision(
                action=ActionKind.WAIT,
                state=state,
                reasoning=(
                    f"Phase already advanced to '{project.current_phase}'; "
                    f"waiting for the session to leave {state.value}"
                ),
                confidence=0.7,
            )

        decision = await self._choose(state, snapshot, project, config, history)

        if not detect_loop(decision, history, self.loop_window):
            return decision

        if loop_already_reported(state, history):
            logger.info(f"[{project.name}] Loop in {state.value} already reported; waiting")
            return Decision(
                action=ActionKind.WAIT,
                state=state,
                reasoning=f"Loop in state '{state.value}' already reported; waiting for a state change",
                confidence=0.5,
                method=decision.method,
                cost_usd=decision.cost_usd,
                model=decision.model,
            )

        logger.warning(
            f"[{project.name}] Loop detected: {decision.action.value} in "
            f"{state.value} repeated {self.loop_window} times"
        )
        return Decision(
            action=ActionKind.NOTIFY,
            state=state,
            reasoning=(
                f"{LOOP_REASON_PREFIX}: '{decision.action.value}' issued {self.loop_window} times "
                f"in state '{state.value}' with no change"
            ),
            confidence=0.4,
            method=decision.method,
            cost_usd=decision.cost_usd,
            model=decision.model,
        )

    async def _choose(
        self,
        state: SessionState,
        snapshot: Snapshot,
        project: ProjectRecord,
        config: ProjectConfig,
        history: Sequence[Decision],
    ) -> Decision:
        if self.delegated is None:
            logger.debug(f"[{project.name}] Rule-based decision ({self.unavailable_reason})")
            return self.rules.decide(state, snapshot, project, config, history)

        if state in RULE_ONLY_STATES:
            return self.rules.decide(state, snapshot, project, config, history)

        try:
            return await self.delegated.decide(state, snapshot, project, config, history)
        except DelegationUnavailable as e:
            reason = f"delegation unavailable: {e}"
            logger.debug(f"[{project.name}] Falling back to rules ({reason})")
        except ReasoningParseError as e:
            reason = f"unparseable response: {e}"
            logger.warning(f"[{project.name}] Falling back to rules ({reason})")
        except ReasoningError as e:
            reason = f"reasoning call failed: {e}"
            logger.warning(f"[{project.name}] Falling back to rules ({reason})")
        except Exception as e:
            reason = f"unexpected delegation error: {e.__class__.__name__}: {e}"
            logger.error(f"[{project.name}] Falling back to rules ({reason})")

        decision = self.rules.decide(state, snapshot, project, config, history)
        return Decision(
            action=decision.action,
            state=decision.state,
            reasoning=f"{decision.reasoning} (fallback: {reason})",
            confidence=decision.confidence,
            method=DecisionMethod.RULE_BASED,
            command=decision.command,
            skill_ref=decision.skill_ref,
        )


def build_decision_engine(
    rules: RuleBasedStrategy,
    client: Optional[ReasoningClient],
    governor: CostGovernor,
    enabled: bool,
    loop_window: int = DEFAULT_LOOP_WINDOW,
    history_window: int = DEFAULT_HISTORY_WINDOW,
    max_output_units: int = 512,
    timeout: float = 30.0,
    notifier: Optional[NotificationEngine] = None,
) -> DecisionEngine:
    """Wire the engine, recording why delegation is unavailable when it is."""
    if not enabled:
        return DecisionEngine(rules, None, "reasoning service disabled by configuration", loop_window)
    if client is None:
        return DecisionEngine(rules, None, "no reasoning credential available", loop_window)

    delegated = DelegatedStrategy(
        client=client,
        governor=governor,
        history_window=history_window,
        max_output_units=max_output_units,
        timeout=timeout,
        notifier=notifier,
    )
    return DecisionEngine(rules, delegated, None, loop_window)
