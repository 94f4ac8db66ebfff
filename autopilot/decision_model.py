"""
Decision Model

Decisions are the output of the decision engine and the input of the action
executor. A Decision is immutable once produced; it is appended to the
project's decision history and never mutated.

Confidence bands are advisory metadata only:
- >= 0.9       routine
- 0.7 - 0.89   standard
- 0.5 - 0.69   uncertain
- < 0.5        escalate
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .snapshot_model import SessionState


class ActionKind(str, Enum):
    """The closed set of actions the executor knows how to carry out."""
    CONTINUE = "continue"
    USE_SKILL = "use_skill"
    NOTIFY = "notify"
    PHASE_TRANSITION = "phase_transition"
    WAIT = "wait"

    @classmethod
    def parse(cls, value: str) -> "ActionKind":
        """Accept enum values as well as CamelCase/UPPER names (e.g. 'UseSkill')."""
        normalized = "".join(c for c in str(value) if c.isalnum()).lower()
        for kind in cls:
            if kind.value.replace("_", "") == normalized:
                return kind
        raise ValueError(f"Unknown action: {value!r}")

    @classmethod
    def session_actions(cls):
        """Actions that send text to the external session."""
        return {cls.CONTINUE, cls.USE_SKILL}


class DecisionMethod(str, Enum):
    RULE_BASED = "rule_based"
    DELEGATED = "delegated"


class ConfidenceBand(str, Enum):
    ROUTINE = "routine"
    STANDARD = "standard"
    UNCERTAIN = "uncertain"
    ESCALATE = "escalate"

    @classmethod
    def for_confidence(cls, confidence: float) -> "ConfidenceBand":
        if confidence >= 0.9:
            return cls.ROUTINE
        if confidence >= 0.7:
            return cls.STANDARD
        if confidence >= 0.5:
            return cls.UNCERTAIN
        return cls.ESCALATE


def clamp_confidence(value: Any) -> float:
    """Coerce to float and clamp into [0, 1]. Non-numeric input becomes 0."""
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return max(0.0, min(1.0, confidence))


@dataclass(frozen=True)
class Decision:
    """The chosen next action plus its justification and provenance."""
    action: ActionKind
    state: SessionState
    reasoning: str
    confidence: float
    method: DecisionMethod = DecisionMethod.RULE_BASED
    command: Optional[str] = None
    skill_ref: Optional[str] = None
    cost_usd: float = 0.0
    model: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be 0.0-1.0, got {self.confidence}")
        if self.cost_usd < 0:
            raise ValueError(f"Cost cannot be negative, got {self.cost_usd}")

    @property
    def band(self) -> ConfidenceBand:
        return ConfidenceBand.for_confidence(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "state": self.state.value,
            "reasoning": self.reasoning,
            "confidence": self.confidence,
            "method": self.method.value,
            "command": self.command,
            "skill_ref": self.skill_ref,
            "cost_usd": self.cost_usd,
            "model": self.model,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Decision":
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            action=ActionKind(data["action"]),
            state=SessionState(data["state"]),
            reasoning=data.get("reasoning", ""),
            confidence=clamp_confidence(data.get("confidence", 0.0)),
            method=DecisionMethod(data.get("method", DecisionMethod.RULE_BASED.value)),
            command=data.get("command"),
            skill_ref=data.get("skill_ref"),
            cost_usd=float(data.get("cost_usd", 0.0)),
            model=data.get("model"),
            timestamp=timestamp,
        )


@dataclass
class ActionResult:
    """Outcome of executing one Decision."""
    success: bool
    message: str
    attempts: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "attempts": self.attempts,
            "details": self.details,
        }
