"""
Orchestrator - Scheduling Loop

Idle -> RecoverSessions -> [Cycle: Poll -> Classify -> Decide -> Execute -> Persist] -> (repeat | Shutdown)

Each cycle visits every ACTIVE project (PAUSED, QUARANTINED and COMPLETE
are skipped) and runs its pipeline inside an isolating boundary.

HARD CONSTRAINTS:
- A failure in one project's pipeline is logged and counted; it never
  aborts other projects in the same cycle
- consecutive_error_count reaching the quarantine threshold moves the
  project to QUARANTINED with exactly one notification; success resets it
- At most one decision in flight per project (per-project asyncio.Lock)
- Shutdown is a value (ShutdownToken), checked between projects and between
  cycles. The in-flight project always finishes before state is persisted
- The recovery snapshot is written on every shutdown path
"""

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .action_executor import ActionExecutor
from .collaborators import CollaboratorError, InputDriver, SnapshotProvider
from .config import AutopilotConfig, ProjectConfig, load_project_config, repo_name_from_url
from .cost_governor import CostGovernor
from .decision_engine import DecisionEngine
from .notification_engine import NotificationEngine, NotificationTemplates
from .project_registry import ProjectRecord, ProjectRegistry, ProjectStatus, RegistryError
from .recovery import (
    RECOVERY_FILE_NAME,
    RecoveredProject,
    RecoverySnapshot,
    best_session_match,
    load_recovery_snapshot,
    save_recovery_snapshot,
)
from .resource_monitor import ResourceMonitor
from .retry import BackoffPolicy, call_with_timeout, retry_with_backoff
from .snapshot_model import SessionHandle, Snapshot
from .state_classifier import classify
from .state_store import StateStore

logger = logging.getLogger("orchestrator")

# Snapshot capture is retried briefly inside a cycle; the next cycle is the
# real retry
CAPTURE_POLICY = BackoffPolicy(max_retries=2, initial_delay=1.0, multiplier=2.0, max_delay=5.0)


class SessionNotFound(Exception):
    pass


# -----------------------------------------------------------------------------
# Shutdown Token
# -----------------------------------------------------------------------------
class ShutdownToken:
    """Explicit cancellation passed into the scheduling loop."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_set(self) -> bool:
        return self._event.is_set()

    def request(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.info(f"Shutdown requested: {reason}")
        self._event.set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds; True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


def install_signal_handlers(token: ShutdownToken, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
    loop = loop or asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, token.request, sig.name)
        except (NotImplementedError, RuntimeError) as e:
            logger.debug(f"Cannot install handler for {sig.name}: {e}")


# -----------------------------------------------------------------------------
# Reports
# -----------------------------------------------------------------------------
@dataclass
class ProjectOutcome:
    name: str
    success: bool
    state: Optional[str] = None
    action: Optional[str] = None
    message: str = ""
    error: Optional[str] = None
    quarantined: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "state": self.state,
            "action": self.action,
            "message": self.message,
            "error": self.error,
            "quarantined": self.quarantined,
        }


@dataclass
class CycleReport:
    cycle: int
    started_at: datetime
    duration_seconds: float = 0.0
    outcomes: List[ProjectOutcome] = field(default_factory=list)
    resources: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def failures(self) -> int:
        return sum(1 for o in self.outcomes if not o.success)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 3),
            "outcomes": [o.to_dict() for o in self.outcomes],
            "failures": self.failures,
            "resources": self.resources,
            "error": self.error,
        }


# -----------------------------------------------------------------------------
# Orchestrator
# -----------------------------------------------------------------------------
class Orchestrator:
    """Runs the per-project pipeline for every active project, every cycle."""

    def __init__(
        self,
        config: AutopilotConfig,
        registry: ProjectRegistry,
        store: StateStore,
        engine: DecisionEngine,
        executor: ActionExecutor,
        snapshot_provider: SnapshotProvider,
        input_driver: InputDriver,
        notifier: NotificationEngine,
        governor: CostGovernor,
        monitor: Optional[ResourceMonitor] = None,
        project_loader: Optional[Callable[[ProjectRecord], ProjectConfig]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.registry = registry
        self.store = store
        self.engine = engine
        self.executor = executor
        self.snapshot_provider = snapshot_provider
        self.input_driver = input_driver
        self.notifier = notifier
        self.governor = governor
        self.monitor = monitor or ResourceMonitor(window=config.orchestrator.resource_window)
        self._load_project = project_loader or (lambda record: load_project_config(Path(record.config_ref)))
        self._sleep = sleep

        self._sessions: Dict[str, SessionHandle] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._cycle = 0
        self._running = False
        self._last_report: Optional[CycleReport] = None
        self._previous_stats: Dict[str, Any] = {}
        self._registry_alerted = False
        self._stats: Dict[str, int] = {
            "cycles": 0,
            "decisions": 0,
            "actions_succeeded": 0,
            "actions_failed": 0,
            "pipeline_failures": 0,
            "quarantines": 0,
        }

    @property
    def recovery_file(self) -> Path:
        return self.config.state_dir / RECOVERY_FILE_NAME

    @property
    def sessions(self) -> Dict[str, SessionHandle]:
        return dict(self._sessions)

    def _lock_for(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def recover_sessions(self, force: bool = False) -> Dict[str, SessionHandle]:
        """Re-attach active projects to the sessions they had before restart."""
        max_age = timedelta(hours=self.config.orchestrator.recovery_max_age_hours)
        snapshot = load_recovery_snapshot(self.recovery_file, max_age, force=force)
        if snapshot is None:
            return {}

        self._previous_stats = snapshot.aggregate_stats
        try:
            sessions = await call_with_timeout(
                self.input_driver.list_sessions(),
                self.config.orchestrator.locate_timeout_seconds,
                "session listing",
            )
        except CollaboratorError as e:
            logger.warning(f"Session recovery skipped, cannot list sessions: {e}")
            return {}

        recovered: Dict[str, SessionHandle] = {}
        for record in self.registry.active_projects():
            previous = snapshot.get(record.name)
            if previous is None:
                continue
            try:
                project_config = self._load_project(record)
            except Exception as e:
                logger.warning(f"[{record.name}] Recovery skipped, project config unusable: {e}")
                continue

            match = best_session_match(
                sessions,
                project_name=record.name,
                repo_name=repo_name_from_url(project_config.repo_url) if project_config.repo_url else None,
                previous_session_id=previous.session_id,
                hints=project_config.identity_hints() + [previous.session_title or ""],
            )
            if match is None:
                logger.info(f"[{record.name}] No session matched recovery record; will rediscover")
                continue

            session, score = match
            recovered[record.name] = session
            logger.info(f"[{record.name}] Recovered session {session.session_id} (score {score})")

        self._sessions.update(recovered)
        return recovered

    def write_recovery_snapshot(self) -> bool:
        projects = []
        for record in self.registry.active_projects():
            session = self._sessions.get(record.name)
            projects.append(RecoveredProject(
                name=record.name,
                session_id=session.session_id if session else record.last_session_id,
                session_title=session.title if session else record.last_session_title,
                last_active_at=record.last_activity_at,
            ))

        snapshot = RecoverySnapshot(
            saved_at=datetime.now(timezone.utc),
            projects=projects,
            aggregate_stats=dict(self._stats),
        )
        return save_recovery_snapshot(self.recovery_file, snapshot)

    # -------------------------------------------------------------------------
    # Per-Project Pipeline
    # -------------------------------------------------------------------------

    async def _resolve_session(self, record: ProjectRecord, project_config: ProjectConfig) -> SessionHandle:
        session = self._sessions.get(record.name)
        if session is not None:
            return session

        session = await call_with_timeout(
            self.input_driver.locate_session(project_config.identity_hints()),
            self.config.orchestrator.locate_timeout_seconds,
            "session lookup",
        )
        if session is None:
            raise SessionNotFound(f"No session found for hints {project_config.identity_hints()}")

        logger.info(f"[{record.name}] Attached to session {session.session_id} ({session.title})")
        self._sessions[record.name] = session
        return session

    async def _capture(self, session: SessionHandle) -> Snapshot:
        async def attempt() -> Snapshot:
            return await call_with_timeout(
                self.snapshot_provider.capture_snapshot(session),
                self.config.orchestrator.snapshot_timeout_seconds,
                f"snapshot of {session.session_id}",
            )

        outcome = await retry_with_backoff(
            attempt, CAPTURE_POLICY, sleep=self._sleep, description=f"snapshot of {session.session_id}",
        )
        if not outcome.success:
            raise outcome.last_error or CollaboratorError("snapshot capture failed")
        return outcome.result

    async def process_project(self, record: ProjectRecord) -> ProjectOutcome:
        """Poll -> Classify -> Decide -> Execute -> Persist for one project."""
        name = record.name
        async with self._lock_for(name):
            project_config = self._load_project(record)
            session = await self._resolve_session(record, project_config)

            try:
                snapshot = await self._capture(session)
            except CollaboratorError:
                # The session may be gone; look it up again next cycle
                self._sessions.pop(name, None)
                raise

            state = classify(snapshot, project_config.stall_threshold)
            history = self.store.recent_decisions(name, self.config.decision.history_window)
            decision = await self.engine.decide(state, snapshot, record, project_config, history)
            logger.info(
                f"[{name}] {state.value} -> {decision.action.value} "
                f"({decision.method.value}): {decision.reasoning}"
            )

            result = await self.executor.execute(decision, session, record, project_config, snapshot)

            self.store.append_decision(name, decision, result)
            previous = self.store.load_state(name)
            self.store.save_state(name, {
                "session_id": session.session_id,
                "phase": self.registry.require_project(name).current_phase,
                "state": state.value,
                "snapshot": snapshot.summary(),
                "last_decision": decision.to_dict(),
                "last_result": result.to_dict(),
                "cycles": int(previous.get("cycles", 0)) + 1,
            })

            self._stats["decisions"] += 1
            if result.success:
                self._stats["actions_succeeded"] += 1
                self.registry.record_success(name, session.session_id, session.title)
            else:
                self._stats["actions_failed"] += 1

            return ProjectOutcome(
                name=name,
                success=result.success,
                state=state.value,
                action=decision.action.value,
                message=result.message,
                error=None if result.success else result.message,
            )

    async def _run_isolated(self, record: ProjectRecord) -> ProjectOutcome:
        """Run one pipeline; nothing it raises escapes to the cycle."""
        try:
            outcome = await self.process_project(record)
        except Exception as e:
            error = f"{e.__class__.__name__}: {e}"
            logger.error(f"[{record.name}] Pipeline failed: {error}")
            outcome = ProjectOutcome(name=record.name, success=False, message="pipeline error", error=error)

        if not outcome.success:
            self._stats["pipeline_failures"] += 1
            try:
                outcome.quarantined = await self._register_failure(record.name, outcome.error or outcome.message)
            except RegistryError as e:
                logger.error(f"[{record.name}] Could not record failure: {e.message}")
        return outcome

    async def _register_failure(self, name: str, error: str) -> bool:
        record = self.registry.record_failure(name, error)
        threshold = self.config.orchestrator.quarantine_threshold
        logger.warning(f"[{name}] Consecutive failures: {record.consecutive_error_count}/{threshold}")

        if record.consecutive_error_count < threshold or record.status != ProjectStatus.ACTIVE.value:
            return False

        self.registry.quarantine_project(name)
        self._sessions.pop(name, None)
        self._stats["quarantines"] += 1
        logger.error(f"[{name}] Quarantined after {record.consecutive_error_count} consecutive failures")
        await self.notifier.send(NotificationTemplates.project_quarantined(
            name, record.consecutive_error_count, record.last_error,
        ))
        return True

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    async def run_cycle(self, token: Optional[ShutdownToken] = None) -> CycleReport:
        self._cycle += 1
        report = CycleReport(cycle=self._cycle, started_at=datetime.now(timezone.utc))
        started = time.monotonic()

        try:
            self.registry.reload()
        except RegistryError as e:
            logger.error(f"Cycle {self._cycle} skipped, registry unreadable: {e.message}")
            report.error = e.message
            if not self._registry_alerted:
                self._registry_alerted = True
                await self.notifier.send(NotificationTemplates.system_alert("Registry Unreadable", e.message))
            self._last_report = report
            return report

        self._registry_alerted = False
        projects = self.registry.active_projects()
        if not projects:
            logger.info("No active projects registered")

        before = self.monitor.sample()
        if self.config.orchestrator.concurrent_projects:
            report.outcomes = list(await asyncio.gather(*(self._run_isolated(p) for p in projects)))
        else:
            for record in projects:
                if token is not None and token.is_set:
                    logger.info("Shutdown requested; remaining projects deferred")
                    break
                report.outcomes.append(await self._run_isolated(record))
        after = self.monitor.sample()

        usage = self.monitor.record_cycle(before, after)
        report.resources = usage.to_dict() if usage else None
        report.duration_seconds = time.monotonic() - started
        self._stats["cycles"] += 1
        self._last_report = report

        logger.info(
            f"Cycle {report.cycle}: {len(report.outcomes)} project(s), "
            f"{report.failures} failure(s), {report.duration_seconds:.1f}s"
        )
        return report

    async def run(
        self,
        token: ShutdownToken,
        max_cycles: Optional[int] = None,
        force_recovery: bool = False,
    ) -> int:
        """Run cycles until shutdown, max_runtime or max_cycles. Returns cycles run."""
        max_runtime = self.config.orchestrator.max_runtime_seconds
        poll_interval = self.config.orchestrator.poll_interval_seconds
        started = time.monotonic()
        cycles = 0

        self._running = True
        logger.info(
            f"Orchestrator starting (poll={poll_interval}s, "
            f"concurrent={self.config.orchestrator.concurrent_projects})"
        )
        try:
            await self.recover_sessions(force=force_recovery)

            while not token.is_set:
                await self.run_cycle(token)
                cycles += 1

                if max_cycles is not None and cycles >= max_cycles:
                    break

                wait = poll_interval
                if max_runtime is not None:
                    remaining = max_runtime - (time.monotonic() - started)
                    if remaining <= 0:
                        token.request("max runtime reached")
                        break
                    wait = min(wait, remaining)

                await token.wait(wait)
        finally:
            self._running = False
            self.write_recovery_snapshot()
            logger.info(f"Orchestrator stopped after {cycles} cycle(s)")

        return cycles

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "cycle": self._cycle,
            "stats": dict(self._stats),
            "previous_run": self._previous_stats,
            "projects": self.registry.get_project_count(),
            "sessions": {name: s.session_id for name, s in self._sessions.items()},
            "last_cycle": self._last_report.to_dict() if self._last_report else None,
            "resources": self.monitor.summary(),
            "cost": self.governor.summary(),
        }
