"""
Project Registry

Canonical, durable record of every monitored project.

This module provides:
1. ProjectRecord: name, config reference, current phase, status, session
   identity, failure counter and activity timestamps
2. Persistent JSON storage with atomic writes
3. Operator actions: register, unregister, pause, resume, reset, approve

HARD CONSTRAINTS:
- Records are never silently deleted; removal is an explicit operator action
- Quarantined projects stay quarantined until explicitly reset
- Updates are read-modify-write against the file so that operator edits made
  by another process are not overwritten by the daemon
- A corrupt registry file is fatal at load; it is never replaced silently
"""

import json
import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger("project_registry")

REGISTRY_FILE_NAME = "registry.json"
REGISTRY_VERSION = "1.0"


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    QUARANTINED = "quarantined"
    COMPLETE = "complete"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# -----------------------------------------------------------------------------
# Project Record
# -----------------------------------------------------------------------------
@dataclass
class ProjectRecord:
    """
    Durable state of one monitored project.

    Mutated only by the orchestrator and the action executor, one writer per
    project at a time.
    """
    name: str
    config_ref: str
    current_phase: str
    status: str = ProjectStatus.ACTIVE.value
    last_session_id: Optional[str] = None
    last_session_title: Optional[str] = None
    consecutive_error_count: int = 0
    last_activity_at: Optional[str] = None
    last_error: Optional[str] = None
    approved_phases: List[str] = field(default_factory=list)
    quarantined_at: Optional[str] = None
    phase_started_at: str = field(default_factory=_utc_now_iso)
    created_at: str = field(default_factory=_utc_now_iso)
    updated_at: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectRecord":
        known = {f for f in cls.__dataclass_fields__}
        record = cls(**{k: v for k, v in data.items() if k in known})
        ProjectStatus(record.status)
        return record

    @property
    def is_active(self) -> bool:
        return self.status == ProjectStatus.ACTIVE.value

    def is_phase_approved(self, phase: str) -> bool:
        return phase in self.approved_phases

    def phase_started(self) -> datetime:
        started = datetime.fromisoformat(self.phase_started_at)
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return started


# -----------------------------------------------------------------------------
# Registry Errors
# -----------------------------------------------------------------------------
class RegistryError(Exception):
    """Base registry error with structured details."""
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ProjectNotFoundError(RegistryError):
    def __init__(self, project_name: str):
        super().__init__(
            code="PROJECT_NOT_FOUND",
            message=f"Project '{project_name}' not found",
            details={"project_name": project_name},
        )


class ProjectAlreadyExistsError(RegistryError):
    def __init__(self, project_name: str):
        super().__init__(
            code="PROJECT_EXISTS",
            message=f"Project '{project_name}' already exists",
            details={"project_name": project_name},
        )


class RegistryCorruptError(RegistryError):
    def __init__(self, path: Path, reason: str):
        super().__init__(
            code="REGISTRY_CORRUPT",
            message=f"Project registry {path} is unreadable: {reason}",
            details={"path": str(path), "reason": reason},
        )


class InvalidTransitionError(RegistryError):
    def __init__(self, project_name: str, current: str, requested: str):
        super().__init__(
            code="INVALID_TRANSITION",
            message=f"Project '{project_name}' is {current}; cannot {requested}",
            details={"project_name": project_name, "status": current, "requested": requested},
        )


# -----------------------------------------------------------------------------
# Project Registry
# -----------------------------------------------------------------------------
_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")


class ProjectRegistry:
    """
    Central registry for all monitored projects.

    Provides:
    - Registration and explicit removal
    - Status transitions for operators and the orchestrator
    - Field updates for the orchestrator and executor
    """

    def __init__(self, state_dir: Path):
        self._registry_file = Path(state_dir) / REGISTRY_FILE_NAME
        self._projects: Dict[str, ProjectRecord] = {}
        self._lock = threading.RLock()
        self._load_registry()

    @property
    def path(self) -> Path:
        return self._registry_file

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load_registry(self) -> None:
        """Load projects from persistent storage. Raises RegistryCorruptError."""
        if not self._registry_file.exists():
            logger.debug("No existing registry file, starting fresh")
            self._projects = {}
            return

        try:
            with open(self._registry_file) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise RegistryCorruptError(self._registry_file, str(e))

        if not isinstance(data, dict) or not isinstance(data.get("projects"), dict):
            raise RegistryCorruptError(self._registry_file, "missing 'projects' mapping")

        projects: Dict[str, ProjectRecord] = {}
        for name, record_data in data["projects"].items():
            try:
                projects[name] = ProjectRecord.from_dict(record_data)
            except (AttributeError, TypeError, ValueError) as e:
                raise RegistryCorruptError(self._registry_file, f"invalid record '{name}': {e}")

        self._projects = projects
        logger.debug(f"Loaded {len(self._projects)} projects from registry")

    def _save_registry(self) -> None:
        """Save projects to persistent storage."""
        try:
            self._registry_file.parent.mkdir(parents=True, exist_ok=True)
            data = {
                "version": REGISTRY_VERSION,
                "updated_at": _utc_now_iso(),
                "projects": {name: record.to_dict() for name, record in self._projects.items()},
            }

            # Atomic write
            temp_file = self._registry_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self._registry_file)
        except OSError as e:
            logger.error(f"Failed to save registry: {e}")
            raise RegistryError(
                code="SAVE_FAILED",
                message="Failed to save project registry",
                details={"error": str(e)},
            )

    def reload(self) -> None:
        with self._lock:
            self._load_registry()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_project(self, name: str) -> Optional[ProjectRecord]:
        with self._lock:
            return self._projects.get(name)

    def require_project(self, name: str) -> ProjectRecord:
        record = self.get_project(name)
        if record is None:
            raise ProjectNotFoundError(name)
        return record

    def list_projects(self, status: Optional[str] = None) -> List[ProjectRecord]:
        with self._lock:
            projects = list(self._projects.values())
        if status:
            projects = [p for p in projects if p.status == status]
        return sorted(projects, key=lambda p: p.name)

    def active_projects(self) -> List[ProjectRecord]:
        return self.list_projects(status=ProjectStatus.ACTIVE.value)

    def get_project_count(self) -> Dict[str, int]:
        counts = {"total": 0}
        counts.update({s.value: 0 for s in ProjectStatus})
        for record in self.list_projects():
            counts["total"] += 1
            counts[record.status] += 1
        return counts

    # -------------------------------------------------------------------------
    # Operator Actions
    # -------------------------------------------------------------------------

    def register_project(self, name: str, config_ref: str, initial_phase: str) -> ProjectRecord:
        if not _NAME_RE.match(name):
            raise RegistryError(
                code="INVALID_NAME",
                message=f"Invalid project name '{name}' (lowercase letters, digits, '.', '_', '-')",
                details={"project_name": name},
            )

        with self._lock:
            self._load_registry()
            if name in self._projects:
                raise ProjectAlreadyExistsError(name)

            record = ProjectRecord(name=name, config_ref=str(config_ref), current_phase=initial_phase)
            self._projects[name] = record
            self._save_registry()

        logger.info(f"Registered project: {name} (phase={initial_phase}, config={config_ref})")
        return record

    def unregister_project(self, name: str) -> ProjectRecord:
        with self._lock:
            self._load_registry()
            record = self._projects.pop(name, None)
            if record is None:
                raise ProjectNotFoundError(name)
            self._save_registry()

        logger.info(f"Unregistered project: {name}")
        return record

    def pause_project(self, name: str) -> ProjectRecord:
        return self._transition(name, "pause", {ProjectStatus.ACTIVE}, ProjectStatus.PAUSED)

    def resume_project(self, name: str) -> ProjectRecord:
        return self._transition(name, "resume", {ProjectStatus.PAUSED}, ProjectStatus.ACTIVE)

    def reset_project(self, name: str) -> ProjectRecord:
        """Return a quarantined (or paused) project to ACTIVE with a clean counter."""
        return self._transition(
            name,
            "reset",
            {ProjectStatus.QUARANTINED, ProjectStatus.PAUSED, ProjectStatus.ACTIVE},
            ProjectStatus.ACTIVE,
            consecutive_error_count=0,
            quarantined_at=None,
            last_error=None,
        )

    def approve_phase(self, name: str, phase: str) -> ProjectRecord:
        with self._lock:
            self._load_registry()
            record = self._projects.get(name)
            if record is None:
                raise ProjectNotFoundError(name)
            if phase not in record.approved_phases:
                record.approved_phases.append(phase)
                record.updated_at = _utc_now_iso()
                self._save_registry()

        logger.info(f"Approved phase '{phase}' for {name}")
        return record

    def _transition(
        self,
        name: str,
        verb: str,
        allowed_from: set,
        target: ProjectStatus,
        **fields: Any,
    ) -> ProjectRecord:
        with self._lock:
            self._load_registry()
            record = self._projects.get(name)
            if record is None:
                raise ProjectNotFoundError(name)
            if ProjectStatus(record.status) not in allowed_from:
                raise InvalidTransitionError(name, record.status, verb)

            record.status = target.value
            for key, value in fields.items():
                setattr(record, key, value)
            record.updated_at = _utc_now_iso()
            self._save_registry()

        logger.info(f"Project {name}: {verb} -> {target.value}")
        return record

    # -------------------------------------------------------------------------
    # Orchestrator / Executor Updates
    # -------------------------------------------------------------------------

    def update_project(self, name: str, **fields: Any) -> ProjectRecord:
        """
        Apply field updates to the latest on-disk record.

        Fields not named keep their on-disk value, so a status change made by
        an operator since the caller last read the record is kept.
        """
        with self._lock:
            self._load_registry()
            record = self._projects.get(name)
            if record is None:
                raise ProjectNotFoundError(name)

            for key, value in fields.items():
                if not hasattr(record, key):
                    raise RegistryError(
                        code="UNKNOWN_FIELD",
                        message=f"ProjectRecord has no field '{key}'",
                        details={"field": key},
                    )
                if key == "status":
                    ProjectStatus(value)
                setattr(record, key, value)

            record.updated_at = _utc_now_iso()
            self._save_registry()
            return record

    def record_success(self, name: str, session_id: Optional[str] = None, session_title: Optional[str] = None) -> ProjectRecord:
        fields: Dict[str, Any] = {
            "consecutive_error_count": 0,
            "last_activity_at": _utc_now_iso(),
            "last_error": None,
        }
        if session_id:
            fields["last_session_id"] = session_id
        if session_title:
            fields["last_session_title"] = session_title
        return self.update_project(name, **fields)

    def record_failure(self, name: str, error: str) -> ProjectRecord:
        with self._lock:
            self._load_registry()
            record = self.require_project(name)
            return self.update_project(
                name,
                consecutive_error_count=record.consecutive_error_count + 1,
                last_error=error[:500],
            )

    def quarantine_project(self, name: str) -> ProjectRecord:
        return self.update_project(
            name,
            status=ProjectStatus.QUARANTINED.value,
            quarantined_at=_utc_now_iso(),
        )
