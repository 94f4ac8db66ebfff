"""
Runtime wiring.

Builds every component from an AutopilotConfig. Shared by the CLI and the
HTTP API so both operate on the same registry, store and governor.

Startup is all-or-nothing: an invalid configuration or a corrupt registry
raises before anything is half-built.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from .action_executor import ActionExecutor
from .collaborators import InputDriver, SnapshotProvider, VersionControl
from .config import AutopilotConfig, ConfigError, CredentialStore, load_project_config
from .cost_governor import CostGovernor
from .decision_engine import DecisionEngine, RuleBasedStrategy, build_decision_engine
from .file_bridge import FileInputDriver, FileSessionDirectory, FileSnapshotProvider
from .git_client import GitCliVersionControl
from .notification_engine import NotificationEngine, create_notification_engine
from .orchestrator import Orchestrator
from .project_registry import ProjectRecord, ProjectRegistry
from .reasoning_client import ReasoningClient
from .resource_monitor import ResourceMonitor
from .state_store import StateStore

logger = logging.getLogger("runtime")

COST_LEDGER_FILE = "cost_ledger.jsonl"


@dataclass
class Runtime:
    config: AutopilotConfig
    registry: ProjectRegistry
    store: StateStore
    credentials: CredentialStore
    governor: CostGovernor
    notifier: NotificationEngine
    engine: DecisionEngine
    executor: ActionExecutor
    orchestrator: Orchestrator

    def register_project(self, config_path: Path, name: Optional[str] = None) -> ProjectRecord:
        """Validate the project configuration eagerly, then register it."""
        config_path = Path(config_path).expanduser().resolve()
        project_config = load_project_config(config_path)
        return self.registry.register_project(
            name or project_config.name,
            str(config_path),
            project_config.first_phase,
        )


def build_runtime(
    config: AutopilotConfig,
    snapshot_provider: Optional[SnapshotProvider] = None,
    input_driver: Optional[InputDriver] = None,
    vcs: Optional[VersionControl] = None,
    reasoning_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Runtime:
    state_dir = config.state_dir
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Cannot create state directory {state_dir}: {e}", {"path": str(state_dir)})

    registry = ProjectRegistry(state_dir)
    store = StateStore(state_dir, max_entries=config.decision.history_max_entries)
    credentials = CredentialStore(state_dir)
    governor = CostGovernor(config.cost, state_dir / COST_LEDGER_FILE)
    notifier = create_notification_engine(config.notifications, state_dir)

    client = None
    if config.reasoning.enabled:
        api_key = credentials.resolve(config.reasoning.api_key_env)
        if api_key:
            client = ReasoningClient(
                api_key=api_key,
                model=config.reasoning.model,
                api_url=config.reasoning.api_url,
                timeout=config.reasoning.timeout_seconds,
                transport=reasoning_transport,
            )
        else:
            logger.warning(
                f"Reasoning enabled but no credential in ${config.reasoning.api_key_env} "
                f"or the credential store"
            )

    engine = build_decision_engine(
        RuleBasedStrategy(min_skill_score=config.decision.min_skill_score),
        client,
        governor,
        enabled=config.reasoning.enabled,
        loop_window=config.decision.loop_window,
        history_window=config.decision.history_window,
        max_output_units=config.reasoning.max_output_units,
        timeout=config.reasoning.timeout_seconds,
        notifier=notifier,
    )

    directory = FileSessionDirectory(config.sessions_dir)
    snapshot_provider = snapshot_provider or FileSnapshotProvider(directory)
    input_driver = input_driver or FileInputDriver(directory)
    vcs = vcs or GitCliVersionControl()

    executor = ActionExecutor(
        snapshot_provider=snapshot_provider,
        input_driver=input_driver,
        vcs=vcs,
        registry=registry,
        notifier=notifier,
        config=config.executor,
        snapshot_timeout=config.orchestrator.snapshot_timeout_seconds,
        loop_window=config.decision.loop_window,
    )

    orchestrator = Orchestrator(
        config=config,
        registry=registry,
        store=store,
        engine=engine,
        executor=executor,
        snapshot_provider=snapshot_provider,
        input_driver=input_driver,
        notifier=notifier,
        governor=governor,
        monitor=ResourceMonitor(window=config.orchestrator.resource_window),
    )

    return Runtime(
        config=config,
        registry=registry,
        store=store,
        credentials=credentials,
        governor=governor,
        notifier=notifier,
        engine=engine,
        executor=executor,
        orchestrator=orchestrator,
    )
