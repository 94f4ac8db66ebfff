"""
Configuration

Typed configuration for the autopilot, validated once at load time.

Two kinds of YAML documents are loaded here:
- the autopilot configuration (orchestrator, decision, executor, reasoning,
  cost and notification sections), pointed to by --config or AUTOPILOT_CONFIG
- one project configuration per registered project, referenced by the
  registry record's config_ref

HARD CONSTRAINTS:
- Unknown keys and wrong types are rejected at load, never deep inside
  decision logic
- Invalid configuration raises ConfigError; callers at startup treat it as
  fatal
- The reasoning credential from the environment wins over the stored one
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .snapshot_model import ErrorCategory

logger = logging.getLogger("config")

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
CONFIG_ENV_VAR = "AUTOPILOT_CONFIG"
STATE_DIR_ENV_VAR = "AUTOPILOT_STATE_DIR"
DEFAULT_CONTINUE_PROMPT = "Continue with the next pending TODO item."
DEFAULT_STALL_PROMPT = (
    "You appear to have stopped. Review the current task list and continue "
    "with the next step, or explain what is blocking you."
)


def default_state_dir() -> Path:
    """State directory from the environment, falling back to the home directory."""
    configured = os.getenv(STATE_DIR_ENV_VAR)
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".autopilot"


class ConfigError(Exception):
    """Invalid or unreadable configuration."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": True, "code": "CONFIG_INVALID", "message": self.message, "details": self.details}


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


# -----------------------------------------------------------------------------
# Project Configuration
# -----------------------------------------------------------------------------
class SkillConfig(_Strict):
    """A named remediation procedure the session can be told to follow."""
    name: str = Field(min_length=1)
    description: str = ""
    command: Optional[str] = None
    patterns: List[str] = Field(default_factory=list)
    categories: List[ErrorCategory] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)

    def resolved_command(self) -> str:
        return self.command or f"/{self.name}"


class PhaseConfig(_Strict):
    name: str = Field(min_length=1)
    prompt: Optional[str] = None
    requires_approval: bool = False


class EscalationConfig(_Strict):
    on_critical_error: bool = True
    keywords: List[str] = Field(default_factory=list)


class ProjectConfig(_Strict):
    name: str = Field(min_length=1)
    repo_url: Optional[str] = None
    repo_path: Optional[str] = None
    branch: str = "main"
    phases: List[PhaseConfig] = Field(min_length=1)
    auto_progress: bool = True
    auto_commit: bool = True
    create_pull_request: bool = False
    stall_threshold_minutes: float = Field(default=10.0, gt=0)
    continue_prompt: str = DEFAULT_CONTINUE_PROMPT
    stall_prompt: str = DEFAULT_STALL_PROMPT
    skills: List[SkillConfig] = Field(default_factory=list)
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)
    session_hints: List[str] = Field(default_factory=list)

    @field_validator("phases")
    @classmethod
    def _unique_phases(cls, phases: List[PhaseConfig]) -> List[PhaseConfig]:
        names = [p.name for p in phases]
        if len(names) != len(set(names)):
            raise ValueError(f"Phase names must be unique: {names}")
        return phases

    @field_validator("skills")
    @classmethod
    def _unique_skills(cls, skills: List[SkillConfig]) -> List[SkillConfig]:
        names = [s.name for s in skills]
        if len(names) != len(set(names)):
            raise ValueError(f"Skill names must be unique: {names}")
        return skills

    @property
    def stall_threshold(self) -> timedelta:
        return timedelta(minutes=self.stall_threshold_minutes)

    @property
    def first_phase(self) -> str:
        return self.phases[0].name

    def get_phase(self, name: str) -> Optional[PhaseConfig]:
        for phase in self.phases:
            if phase.name == name:
                return phase
        return None

    def next_phase(self, current: str) -> Optional[PhaseConfig]:
        """Phase after `current`, or None when `current` is the final phase."""
        names = [p.name for p in self.phases]
        if current not in names:
            return None
        index = names.index(current)
        if index + 1 >= len(self.phases):
            return None
        return self.phases[index + 1]

    def get_skill(self, name: str) -> Optional[SkillConfig]:
        for skill in self.skills:
            if skill.name == name:
                return skill
        return None

    def identity_hints(self) -> List[str]:
        """Strings expected to appear in the identity of this project's session."""
        hints = [self.name] + list(self.session_hints)
        if self.repo_url:
            hints.append(repo_name_from_url(self.repo_url))
        return [h for h in hints if h]


def repo_name_from_url(repo_url: str) -> str:
    name = repo_url.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[:-4]
    return name


# -----------------------------------------------------------------------------
# Autopilot Configuration
# -----------------------------------------------------------------------------
class OrchestratorConfig(_Strict):
    poll_interval_seconds: float = Field(default=30.0, gt=0)
    max_runtime_seconds: Optional[float] = Field(default=None, gt=0)
    quarantine_threshold: int = Field(default=5, ge=1)
    recovery_max_age_hours: float = Field(default=24.0, gt=0)
    concurrent_projects: bool = False
    snapshot_timeout_seconds: float = Field(default=15.0, gt=0)
    locate_timeout_seconds: float = Field(default=10.0, gt=0)
    resource_window: int = Field(default=100, ge=1)
    log_file: Optional[str] = None


class DecisionConfig(_Strict):
    loop_window: int = Field(default=3, ge=2)
    history_window: int = Field(default=10, ge=1)
    min_skill_score: int = Field(default=10, ge=1)
    history_max_entries: int = Field(default=5000, ge=10)


class ExecutorConfig(_Strict):
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_retry_delay_seconds: float = Field(default=60.0, ge=0)
    verify_delay_seconds: float = Field(default=1.5, ge=0)
    input_timeout_seconds: float = Field(default=10.0, gt=0)
    vcs_timeout_seconds: float = Field(default=120.0, gt=0)
    min_verification_factors: int = Field(default=2, ge=1, le=4)


class ReasoningConfig(_Strict):
    enabled: bool = False
    api_url: str = "https://api.anthropic.com/v1/messages"
    model: str = "claude-sonnet-4-5"
    api_key_env: str = "ANTHROPIC_API_KEY"
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_output_units: int = Field(default=512, ge=16)


class ModelRate(_Strict):
    """USD per million usage units."""
    input_per_million: float = Field(ge=0)
    output_per_million: float = Field(ge=0)


class CostConfig(_Strict):
    daily_limit_usd: float = Field(default=5.0, ge=0)
    weekly_limit_usd: float = Field(default=25.0, ge=0)
    project_daily_limit_usd: Optional[float] = Field(default=None, ge=0)
    rates: Dict[str, ModelRate] = Field(default_factory=dict)


class NotificationConfig(_Strict):
    webhook_url: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)
    rate_limit_window_seconds: int = Field(default=60, ge=1)
    rate_limit_max: int = Field(default=10, ge=1)


class AutopilotConfig(_Strict):
    state_dir: Path = Field(default_factory=default_state_dir)
    sessions_dir: Optional[Path] = None
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    cost: CostConfig = Field(default_factory=CostConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    @model_validator(mode="after")
    def _expand_paths(self) -> "AutopilotConfig":
        self.state_dir = Path(self.state_dir).expanduser()
        if self.sessions_dir is None:
            self.sessions_dir = self.state_dir / "sessions"
        else:
            self.sessions_dir = Path(self.sessions_dir).expanduser()
        return self


# -----------------------------------------------------------------------------
# Loading
# -----------------------------------------------------------------------------
def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}", {"path": str(path)})
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read configuration {path}: {e}", {"path": str(path)})

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Configuration {path} must be a mapping, got {type(data).__name__}",
            {"path": str(path)},
        )
    return data


def _validation_details(error: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(p) for p in item['loc']) or '<root>'}: {item['msg']}"
        for item in error.errors()
    ]


def load_config(path: Optional[Path] = None) -> AutopilotConfig:
    """
    Load the autopilot configuration.

    With no explicit path, AUTOPILOT_CONFIG is consulted; with neither, the
    defaults are used. An explicit path that does not exist is an error.
    """
    if path is None and os.getenv(CONFIG_ENV_VAR):
        path = Path(os.environ[CONFIG_ENV_VAR])

    data: Dict[str, Any] = {}
    if path is not None:
        data = _read_yaml(Path(path).expanduser())
        logger.info(f"Loaded configuration from {path}")

    try:
        return AutopilotConfig(**data)
    except ValidationError as e:
        errors = _validation_details(e)
        raise ConfigError(f"Invalid configuration: {'; '.join(errors)}", {"errors": errors})


def load_project_config(path: Path) -> ProjectConfig:
    """Load and validate one project configuration file."""
    data = _read_yaml(Path(path).expanduser())
    try:
        return ProjectConfig(**data)
    except ValidationError as e:
        errors = _validation_details(e)
        raise ConfigError(
            f"Invalid project configuration {path}: {'; '.join(errors)}",
            {"path": str(path), "errors": errors},
        )


# -----------------------------------------------------------------------------
# Credential Store
# -----------------------------------------------------------------------------
class CredentialStore:
    """
    Reasoning-service credential kept on disk with owner-only permissions.

    The environment variable named by ReasoningConfig.api_key_env always
    takes precedence over the stored value.
    """

    def __init__(self, state_dir: Path):
        self._file = Path(state_dir) / "credentials.json"

    def _read(self) -> Dict[str, Any]:
        if not self._file.exists():
            return {}
        try:
            return json.loads(self._file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read credential store {self._file}: {e}")
            return {}

    def resolve(self, env_var: str) -> Optional[str]:
        value = os.getenv(env_var)
        if value:
            return value
        return self._read().get("api_key") or None

    def set(self, api_key: str) -> Dict[str, Any]:
        """Store (or rotate) the credential. Returns non-secret metadata."""
        if not api_key or not api_key.strip():
            raise ConfigError("Credential must not be empty")

        existing = self._read()
        now = datetime.now(timezone.utc).isoformat()
        record = {
            "api_key": api_key.strip(),
            "created_at": existing.get("created_at", now),
            "rotated_at": now if existing.get("api_key") else None,
        }

        self._file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self._file.with_suffix(".tmp")
        fd = os.open(temp_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            json.dump(record, f)
        temp_file.replace(self._file)

        action = "rotated" if record["rotated_at"] else "stored"
        logger.info(f"Reasoning credential {action}")
        return self.info()

    def info(self) -> Dict[str, Any]:
        data = self._read()
        key = data.get("api_key") or ""
        return {
            "stored": bool(key),
            "fingerprint": f"...{key[-4:]}" if len(key) >= 8 else None,
            "created_at": data.get("created_at"),
            "rotated_at": data.get("rotated_at"),
        }
