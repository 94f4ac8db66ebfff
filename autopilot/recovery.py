"""
Recovery Snapshot

Best-effort record of which session each active project was attached to,
written once at shutdown and read once at the next startup.

The snapshot is a cache, never the source of truth. A missing, unreadable
or stale file means "rediscover sessions", never a crash.

Session match scoring (additive):
- +100  exact session-id match
- +75   repository name present in the session identity
- +50   project name present in the session identity
- +25   weak keyword overlap between hints and identity
Only scores >= 50 are accepted.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .snapshot_model import SessionHandle

logger = logging.getLogger("recovery")

RECOVERY_FILE_NAME = "recovery.json"

SESSION_ID_SCORE = 100
REPO_NAME_SCORE = 75
PROJECT_NAME_SCORE = 50
KEYWORD_SCORE = 25
MIN_MATCH_SCORE = 50

_WORD_RE = re.compile(r"[a-z0-9]+")
# Words too common in session titles to say anything about the project
_STOP_WORDS = frozenset({"the", "and", "for", "with", "project", "session", "code", "main", "app"})


@dataclass
class RecoveredProject:
    name: str
    session_id: Optional[str] = None
    session_title: Optional[str] = None
    last_active_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "session_id": self.session_id,
            "session_title": self.session_title,
            "last_active_at": self.last_active_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecoveredProject":
        return cls(
            name=data["name"],
            session_id=data.get("session_id"),
            session_title=data.get("session_title"),
            last_active_at=data.get("last_active_at"),
        )


@dataclass
class RecoverySnapshot:
    saved_at: datetime
    projects: List[RecoveredProject] = field(default_factory=list)
    aggregate_stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "saved_at": self.saved_at.isoformat(),
            "projects": [p.to_dict() for p in self.projects],
            "aggregate_stats": self.aggregate_stats,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecoverySnapshot":
        saved_at = datetime.fromisoformat(data["saved_at"])
        if saved_at.tzinfo is None:
            saved_at = saved_at.replace(tzinfo=timezone.utc)
        return cls(
            saved_at=saved_at,
            projects=[RecoveredProject.from_dict(p) for p in data.get("projects", [])],
            aggregate_stats=dict(data.get("aggregate_stats") or {}),
        )

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or datetime.now(timezone.utc)) - self.saved_at

    def get(self, name: str) -> Optional[RecoveredProject]:
        for project in self.projects:
            if project.name == name:
                return project
        return None


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------
def save_recovery_snapshot(path: Path, snapshot: RecoverySnapshot) -> bool:
    """Atomically write the snapshot. Failure is logged, never raised."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(snapshot.to_dict(), f, indent=2)
        temp_file.replace(path)
    except OSError as e:
        logger.error(f"Failed to write recovery snapshot {path}: {e}")
        return False

    logger.info(f"Recovery snapshot saved ({len(snapshot.projects)} projects)")
    return True


def load_recovery_snapshot(
    path: Path,
    max_age: timedelta,
    force: bool = False,
    now: Optional[datetime] = None,
) -> Optional[RecoverySnapshot]:
    """
    Read the snapshot, or None if it is missing, unreadable or too old.

    `force` accepts a snapshot regardless of age.
    """
    if not path.exists():
        logger.info("No recovery snapshot; sessions will be rediscovered")
        return None

    try:
        with open(path) as f:
            snapshot = RecoverySnapshot.from_dict(json.load(f))
    except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        logger.warning(f"Ignoring unreadable recovery snapshot {path}: {e}")
        return None

    age = snapshot.age(now)
    if age > max_age and not force:
        logger.info(
            f"Ignoring recovery snapshot from {snapshot.saved_at.isoformat()} "
            f"(age {age} exceeds {max_age}); use --force-recovery to accept it"
        )
        return None

    return snapshot


# -----------------------------------------------------------------------------
# Session Matching
# -----------------------------------------------------------------------------
def _words(text: str) -> set:
    return {w for w in _WORD_RE.findall(text.lower()) if len(w) > 2 and w not in _STOP_WORDS}


def match_score(
    session: SessionHandle,
    project_name: str,
    repo_name: Optional[str] = None,
    previous_session_id: Optional[str] = None,
    hints: Iterable[str] = (),
) -> int:
    """Score how likely `session` belongs to the project."""
    identity = session.identity_text().lower()
    score = 0

    if previous_session_id and session.session_id == previous_session_id:
        score += SESSION_ID_SCORE
    if repo_name and repo_name.lower() in identity:
        score += REPO_NAME_SCORE
    if project_name and project_name.lower() in identity:
        score += PROJECT_NAME_SCORE

    hint_words = set()
    for hint in hints:
        hint_words |= _words(hint)
    if hint_words & _words(identity):
        score += KEYWORD_SCORE

    return score


def best_session_match(
    sessions: Iterable[SessionHandle],
    project_name: str,
    repo_name: Optional[str] = None,
    previous_session_id: Optional[str] = None,
    hints: Iterable[str] = (),
    min_score: int = MIN_MATCH_SCORE,
) -> Optional[Tuple[SessionHandle, int]]:
    """Highest-scoring session at or above `min_score`; ties keep listing order."""
    hints = list(hints)
    best: Optional[Tuple[SessionHandle, int]] = None
    for session in sessions:
        score = match_score(session, project_name, repo_name, previous_session_id, hints)
        if score >= min_score and (best is None or score > best[1]):
            best = (session, score)
    return best
