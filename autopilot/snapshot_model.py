"""
Snapshot Model

Typed representation of one observation of a monitored agent session.

A Snapshot is produced by the snapshot collaborator (see collaborators.py),
consumed by the state classifier, and discarded at the end of the cycle
that produced it. It carries attributes only, no behavior.

HARD CONSTRAINTS:
- Snapshots are immutable once created
- todos.completed <= todos.total
- idle_duration is derived from the snapshot's own timestamps, never from
  a clock maintained elsewhere
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class SessionState(str, Enum):
    """
    Classified situation a Snapshot represents.

    Exactly one value per Snapshot. Derived, never stored independently.
    """
    BUSY = "busy"
    ERRORING = "erroring"
    HAS_PENDING_WORK = "has_pending_work"
    PHASE_DONE = "phase_done"
    IDLE = "idle"
    AWAITING_INPUT = "awaiting_input"
    UNCLASSIFIED = "unclassified"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    COMPILATION = "compilation"
    TEST = "test"
    REFERENCE = "reference"
    OPERATION = "operation"
    GENERAL = "general"


# -----------------------------------------------------------------------------
# Snapshot Parts
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TodoCounts:
    total: int = 0
    completed: int = 0

    def __post_init__(self):
        if self.total < 0 or self.completed < 0:
            raise ValueError(f"TODO counts must be non-negative, got {self.completed}/{self.total}")
        if self.completed > self.total:
            raise ValueError(
                f"Completed TODOs ({self.completed}) cannot exceed total ({self.total})"
            )

    @property
    def pending(self) -> int:
        return self.total - self.completed

    @property
    def all_done(self) -> bool:
        """True only when there was work and all of it is done."""
        return self.total > 0 and self.completed == self.total


@dataclass(frozen=True)
class ErrorEntry:
    """An error reported by the monitored session. Read-only to the core."""
    message: str
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    category: ErrorCategory = ErrorCategory.GENERAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorEntry":
        return cls(
            message=data["message"],
            severity=ErrorSeverity(data.get("severity", ErrorSeverity.MEDIUM.value)),
            category=ErrorCategory(data.get("category", ErrorCategory.GENERAL.value)),
        )


@dataclass(frozen=True)
class WarningEntry:
    message: str
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "source": self.source}


@dataclass(frozen=True)
class SessionHandle:
    """
    Opaque reference to one external session.

    `title` and `workspace` form the session identity used when matching
    sessions to projects after a restart. `ref` is owned by the collaborator.
    """
    session_id: str
    title: str = ""
    workspace: str = ""
    ref: Any = field(default=None, compare=False)

    def identity_text(self) -> str:
        return f"{self.title} {self.workspace}".strip()


# -----------------------------------------------------------------------------
# Snapshot
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Snapshot:
    """One point-in-time observation of the monitored session."""
    session_id: str
    has_input_field: bool = False
    input_field_handle: Any = field(default=None, compare=False)
    input_text: str = ""
    todos: TodoCounts = field(default_factory=TodoCounts)
    errors: Tuple[ErrorEntry, ...] = ()
    warnings: Tuple[WarningEntry, ...] = ()
    is_busy: bool = False
    idle_duration: timedelta = timedelta(0)
    recent_messages: Tuple[str, ...] = ()
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.idle_duration < timedelta(0):
            raise ValueError(f"Idle duration cannot be negative: {self.idle_duration}")
        # Accept lists from callers but store tuples
        object.__setattr__(self, "errors", tuple(self.errors))
        object.__setattr__(self, "warnings", tuple(self.warnings))
        object.__setattr__(self, "recent_messages", tuple(self.recent_messages))

    @classmethod
    def from_timestamps(
        cls,
        session_id: str,
        captured_at: datetime,
        last_activity_at: Optional[datetime],
        **attributes: Any,
    ) -> "Snapshot":
        """
        Build a snapshot whose idle duration comes from its own clock.

        Both timestamps must be stamped by the same collaborator. A missing
        last_activity_at means no activity was observed, so idle is zero.
        """
        idle = timedelta(0)
        if last_activity_at is not None and captured_at > last_activity_at:
            idle = captured_at - last_activity_at
        return cls(
            session_id=session_id,
            captured_at=captured_at,
            idle_duration=idle,
            **attributes,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        """Create from the JSON document written by a snapshot producer."""
        captured_at = _parse_time(data.get("captured_at"))
        if captured_at is None:
            # Idle time is only measured against the producer's own clock
            raise ValueError("Snapshot is missing captured_at")
        last_activity_at = _parse_time(data.get("last_activity_at"))
        todos = data.get("todos") or {}
        return cls.from_timestamps(
            session_id=data["session_id"],
            captured_at=captured_at,
            last_activity_at=last_activity_at,
            has_input_field=bool(data.get("has_input_field", False)),
            input_field_handle=data.get("input_field_handle"),
            input_text=data.get("input_text") or "",
            todos=TodoCounts(
                total=int(todos.get("total", 0)),
                completed=int(todos.get("completed", 0)),
            ),
            errors=tuple(ErrorEntry.from_dict(e) for e in data.get("errors", [])),
            warnings=tuple(
                WarningEntry(message=w["message"], source=w.get("source"))
                for w in data.get("warnings", [])
            ),
            is_busy=bool(data.get("is_busy", False)),
            recent_messages=tuple(data.get("recent_messages", [])),
        )

    def summary(self) -> Dict[str, Any]:
        """Compact form used in decision context and state files."""
        return {
            "session_id": self.session_id,
            "captured_at": self.captured_at.isoformat(),
            "has_input_field": self.has_input_field,
            "is_busy": self.is_busy,
            "todos": {"total": self.todos.total, "completed": self.todos.completed},
            "errors": [e.to_dict() for e in self.errors],
            "warnings": len(self.warnings),
            "idle_seconds": int(self.idle_duration.total_seconds()),
        }


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
