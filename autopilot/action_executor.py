"""
Action Executor

Turns a Decision into external operations and reports an ActionResult.

State machine per invocation: Dispatch -> Verify -> (Success | RetryOrFail)

- CONTINUE / USE_SKILL: submit the command text through the session's input
  field, then verify with a fresh snapshot. Four factors are scored:
    (a) the input field is now empty or gone
    (b) the session became busy
    (c) the submitted text appears in recent session messages
    (d) no new error appeared after submission
  At least `min_verification_factors` (default 2) must hold.
- PHASE_TRANSITION: check preconditions, commit, optionally open a pull
  request, then advance the registry record (or mark it COMPLETE)
- NOTIFY: escalate to a human and stop acting on the project this cycle
- WAIT: nothing to do

HARD CONSTRAINTS:
- An action is never silently dropped: exhausted retries produce a failed
  ActionResult and an ACTION_FAILED notification
- A commit failure leaves the phase where it is
- Only this module and the orchestrator mutate ProjectRecords
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from .collaborators import (
    CollaboratorError,
    InputDriver,
    SnapshotProvider,
    VersionControl,
    VersionControlError,
)
from .config import ExecutorConfig, ProjectConfig
from .decision_engine import DEFAULT_LOOP_WINDOW, is_loop_notice
from .decision_model import ActionKind, ActionResult, Decision
from .notification_engine import NotificationEngine, NotificationTemplates
from .project_registry import ProjectRecord, ProjectRegistry, ProjectStatus
from .retry import BackoffPolicy, call_with_timeout, retry_with_backoff
from .snapshot_model import SessionHandle, Snapshot

logger = logging.getLogger("action_executor")

# Enough of the sent text to recognise it in the session transcript
ECHO_MATCH_LENGTH = 80


# -----------------------------------------------------------------------------
# Verification
# -----------------------------------------------------------------------------
@dataclass
class Verification:
    factors: Dict[str, bool] = field(default_factory=dict)

    @property
    def score(self) -> int:
        return sum(1 for passed in self.factors.values() if passed)

    def describe(self) -> str:
        return ", ".join(f"{name}={'yes' if passed else 'no'}" for name, passed in self.factors.items())


def verify_submission(text: str, before: Snapshot, after: Snapshot) -> Verification:
    """Score the four independent signals that `text` was accepted."""
    echo = text.strip()[:ECHO_MATCH_LENGTH]
    before_errors = set(before.errors)

    return Verification(factors={
        "input_cleared": (not after.has_input_field) or not after.input_text.strip(),
        "became_busy": after.is_busy,
        "text_echoed": bool(echo) and any(echo in message for message in after.recent_messages),
        "no_new_error": all(error in before_errors for error in after.errors),
    })


# -----------------------------------------------------------------------------
# Action Executor
# -----------------------------------------------------------------------------
class ActionExecutor:
    """
    Executes decisions against one session at a time.

    The caller guarantees a single in-flight decision per project.
    """

    def __init__(
        self,
        snapshot_provider: SnapshotProvider,
        input_driver: InputDriver,
        vcs: Optional[VersionControl],
        registry: ProjectRegistry,
        notifier: NotificationEngine,
        config: Optional[ExecutorConfig] = None,
        snapshot_timeout: float = 15.0,
        loop_window: int = DEFAULT_LOOP_WINDOW,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.snapshot_provider = snapshot_provider
        self.input_driver = input_driver
        self.vcs = vcs
        self.registry = registry
        self.notifier = notifier
        self.config = config or ExecutorConfig()
        self.snapshot_timeout = snapshot_timeout
        self.loop_window = loop_window
        self._sleep = sleep

    @property
    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_retries=self.config.max_retries,
            initial_delay=self.config.retry_delay_seconds,
            multiplier=self.config.backoff_multiplier,
            max_delay=self.config.max_retry_delay_seconds,
        )

    async def execute(
        self,
        decision: Decision,
        session: SessionHandle,
        project: ProjectRecord,
        config: ProjectConfig,
        snapshot: Snapshot,
    ) -> ActionResult:
        logger.info(
            f"[{project.name}] Executing {decision.action.value} "
            f"({decision.method.value}, confidence {decision.confidence:.2f})"
        )

        if decision.action in (ActionKind.CONTINUE, ActionKind.USE_SKILL):
            return await self._execute_session_action(decision, session, project, snapshot)
        if decision.action == ActionKind.PHASE_TRANSITION:
            return await self._execute_phase_transition(decision, session, project, config, snapshot)
        if decision.action == ActionKind.NOTIFY:
            return await self._execute_notify(decision, project)
        return ActionResult(success=True, message=f"Waiting: {decision.reasoning}")

    # -------------------------------------------------------------------------
    # Send and Verify
    # -------------------------------------------------------------------------

    async def _capture(self, session: SessionHandle) -> Snapshot:
        return await call_with_timeout(
            self.snapshot_provider.capture_snapshot(session),
            self.snapshot_timeout,
            f"snapshot of {session.session_id}",
        )

    async def send_and_verify(self, session: SessionHandle, text: str, baseline: Snapshot) -> ActionResult:
        """Deliver `text` and confirm it landed, retrying with backoff."""
        state = {"before": baseline, "last": None}

        async def attempt() -> Verification:
            before = state["before"]
            if before is None:
                before = await self._capture(session)
            # Later attempts re-observe the session before sending again
            state["before"] = None

            if not before.has_input_field:
                raise CollaboratorError("Session has no input field", transient=True)

            await call_with_timeout(
                self.input_driver.send_input(session, text),
                self.config.input_timeout_seconds,
                f"input to {session.session_id}",
            )
            await self._sleep(self.config.verify_delay_seconds)
            after = await self._capture(session)

            verification = verify_submission(text, before, after)
            state["last"] = verification
            logger.debug(f"Verification for {session.session_id}: {verification.describe()}")
            return verification

        outcome = await retry_with_backoff(
            attempt,
            self.policy,
            is_success=lambda v: v.score >= self.config.min_verification_factors,
            sleep=self._sleep,
            description=f"send to {session.session_id}",
        )

        last: Optional[Verification] = state["last"]
        details: Dict[str, Any] = {"delays": outcome.delays}
        if last is not None:
            details["verification"] = last.factors

        if outcome.success:
            return ActionResult(
                success=True,
                message=f"Input delivered and verified ({last.score}/4 factors)",
                attempts=outcome.attempts,
                details=details,
            )

        if outcome.last_error is not None and last is None:
            reason = str(outcome.last_error)
        elif last is not None:
            reason = f"verification failed ({last.describe()})"
        else:
            reason = "verification failed"
        return ActionResult(
            success=False,
            message=f"Input not confirmed after {outcome.attempts} attempts: {reason}",
            attempts=outcome.attempts,
            details=details,
        )

    async def _execute_session_action(
        self,
        decision: Decision,
        session: SessionHandle,
        project: ProjectRecord,
        snapshot: Snapshot,
    ) -> ActionResult:
        if not decision.command:
            return ActionResult(success=False, message=f"{decision.action.value} decision has no command text")

        try:
            result = await self.send_and_verify(session, decision.command, snapshot)
        except CollaboratorError as e:
            logger.error(f"[{project.name}] Input delivery failed permanently: {e}")
            result = ActionResult(success=False, message=f"Input delivery failed: {e}", attempts=1)

        if not result.success:
            await self.notifier.send(NotificationTemplates.action_failed(
                project.name, decision.action.value, result.message, result.attempts,
            ))
        return result

    # -------------------------------------------------------------------------
    # Phase Transition
    # -------------------------------------------------------------------------

    async def _execute_phase_transition(
        self,
        decision: Decision,
        session: SessionHandle,
        project: ProjectRecord,
        config: ProjectConfig,
        snapshot: Snapshot,
    ) -> ActionResult:
        phase = project.current_phase
        phase_config = config.get_phase(phase)

        if phase_config is None:
            return ActionResult(success=False, message=f"Current phase '{phase}' is not configured")
        if not snapshot.todos.all_done or snapshot.errors:
            return ActionResult(
                success=False,
                message=(
                    f"Phase '{phase}' not complete: {snapshot.todos.completed}/{snapshot.todos.total} "
                    f"TODOs done, {len(snapshot.errors)} error(s)"
                ),
            )

        if phase_config.requires_approval and not project.is_phase_approved(phase):
            await self.notifier.send(NotificationTemplates.escalation(
                project.name, decision.state.value,
                f"Phase '{phase}' is complete and requires approval: autopilot approve {project.name} {phase}",
            ))
            return ActionResult(
                success=True,
                message=f"Phase '{phase}' awaiting approval",
                details={"deferred": True},
            )

        details: Dict[str, Any] = {"phase": phase}
        repo_ref = config.repo_path or config.name

        if config.auto_commit:
            if self.vcs is None:
                logger.warning(f"[{project.name}] auto_commit set but no version control configured")
            else:
                try:
                    details["commit"] = await self._commit(repo_ref, f"Complete phase: {phase}")
                except CollaboratorError as e:
                    logger.error(f"[{project.name}] Commit failed, phase not advanced: {e}")
                    await self.notifier.send(NotificationTemplates.vcs_failure(project.name, "commit", str(e)))
                    return ActionResult(success=False, message=f"Commit failed: {e}", details=details)

        if config.create_pull_request and self.vcs is not None:
            try:
                details["pull_request"] = await call_with_timeout(
                    self.vcs.create_pull_request(
                        repo_ref,
                        config.branch,
                        f"{config.name}: {phase}",
                        f"Automated pull request for completed phase '{phase}'.",
                    ),
                    self.config.vcs_timeout_seconds,
                    "pull request",
                )
            except CollaboratorError as e:
                logger.warning(f"[{project.name}] Pull request failed: {e}")
                details["pull_request_error"] = str(e)
                await self.notifier.send(NotificationTemplates.vcs_failure(project.name, "pull request", str(e)))

        next_phase = config.next_phase(phase)
        if next_phase is None:
            self.registry.update_project(project.name, status=ProjectStatus.COMPLETE.value)
            await self.notifier.send(NotificationTemplates.project_completed(project.name, phase))
            logger.info(f"[{project.name}] Final phase '{phase}' complete; project COMPLETE")
            return ActionResult(
                success=True,
                message=f"Project complete after phase '{phase}'",
                details=details,
            )

        self.registry.update_project(
            project.name,
            current_phase=next_phase.name,
            phase_started_at=datetime.now(timezone.utc).isoformat(),
        )
        details["next_phase"] = next_phase.name
        await self.notifier.send(NotificationTemplates.phase_completed(project.name, phase, next_phase.name))
        logger.info(f"[{project.name}] Phase '{phase}' -> '{next_phase.name}'")

        message = f"Advanced from '{phase}' to '{next_phase.name}'"
        if next_phase.prompt:
            try:
                prompt_result = await self.send_and_verify(session, next_phase.prompt, snapshot)
            except CollaboratorError as e:
                prompt_result = ActionResult(success=False, message=str(e))
            details["prompt_delivered"] = prompt_result.success
            if not prompt_result.success:
                logger.warning(f"[{project.name}] Phase prompt not confirmed: {prompt_result.message}")
                message += f"; phase prompt not confirmed ({prompt_result.message})"

        return ActionResult(success=True, message=message, details=details)

    async def _commit(self, repo_ref: str, message: str) -> str:
        async def attempt() -> str:
            return await call_with_timeout(
                self.vcs.commit(repo_ref, message),
                self.config.vcs_timeout_seconds,
                "commit",
            )

        outcome = await retry_with_backoff(attempt, self.policy, sleep=self._sleep, description="commit")
        if not outcome.success:
            raise VersionControlError(str(outcome.last_error or "commit failed"))
        return outcome.result

    # -------------------------------------------------------------------------
    # Notify
    # -------------------------------------------------------------------------

    async def _execute_notify(self, decision: Decision, project: ProjectRecord) -> ActionResult:
        if is_loop_notice(decision):
            notification = NotificationTemplates.loop_detected(
                project.name, decision.state.value, decision.reasoning, self.loop_window,
            )
        else:
            notification = NotificationTemplates.escalation(
                project.name, decision.state.value, decision.reasoning,
            )

        delivered = await self.notifier.send(notification)
        return ActionResult(
            success=True,
            message="Escalated to operator" if delivered else "Escalation logged (not delivered)",
            details={"delivered": delivered},
        )
