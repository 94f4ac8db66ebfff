"""
Cost Governor

Tracks spend attributable to reasoning-service calls and vetoes that path
once a budget is exhausted.

- Running daily and weekly totals, global and per project
- Costs derived from usage units multiplied by a per-model rate table
- Unknown models use the most expensive known rate, with a warning
- Append-only JSONL ledger, replayed on startup
- Limit overrides from the operator live in a separate file and are picked
  up when that file changes

HARD CONSTRAINTS:
- Ceilings are inclusive: spend equal to the limit denies further calls
- A veto is not an error; callers fall back to rule-based decisions
- Shared totals are only touched under the governor's lock
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple

from .config import CostConfig

logger = logging.getLogger("cost_governor")

# USD per million units (input, output), matched by model-name prefix
DEFAULT_RATES: Dict[str, Tuple[float, float]] = {
    "claude-opus": (15.0, 75.0),
    "claude-3-opus": (15.0, 75.0),
    "claude-sonnet": (3.0, 15.0),
    "claude-3-5-sonnet": (3.0, 15.0),
    "claude-3-7-sonnet": (3.0, 15.0),
    "claude-haiku": (1.0, 5.0),
    "claude-3-5-haiku": (0.8, 4.0),
    "claude-3-haiku": (0.25, 1.25),
}

# Entries older than this are not needed for any running total
LEDGER_MEMORY_DAYS = 8


@dataclass
class CostVerdict:
    allow: bool
    reason: Optional[str] = None
    first_veto: bool = False


@dataclass
class LedgerEntry:
    timestamp: datetime
    project_name: str
    cost_usd: float
    model: Optional[str] = None
    input_units: int = 0
    output_units: int = 0

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "project_name": self.project_name,
            "cost_usd": self.cost_usd,
            "model": self.model,
            "input_units": self.input_units,
            "output_units": self.output_units,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "LedgerEntry":
        timestamp = datetime.fromisoformat(data["timestamp"])
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return cls(
            timestamp=timestamp,
            project_name=data["project_name"],
            cost_usd=float(data["cost_usd"]),
            model=data.get("model"),
            input_units=int(data.get("input_units", 0)),
            output_units=int(data.get("output_units", 0)),
        )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CostGovernor:
    """Spend ceilings for delegated decisions."""

    def __init__(
        self,
        config: CostConfig,
        ledger_file: Path,
        limits_file: Optional[Path] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._config = config
        self._ledger_file = Path(ledger_file)
        self._limits_file = Path(limits_file) if limits_file else self._ledger_file.with_name("cost_limits.json")
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: List[LedgerEntry] = []
        self._vetoed: Set[Tuple[str, str]] = set()
        self._unknown_models_warned: Set[str] = set()
        self._limits_mtime: Optional[float] = None

        self._daily_limit = config.daily_limit_usd
        self._weekly_limit = config.weekly_limit_usd
        self._project_daily_limit = config.project_daily_limit_usd

        self._rates: Dict[str, Tuple[float, float]] = dict(DEFAULT_RATES)
        for model, rate in config.rates.items():
            self._rates[model] = (rate.input_per_million, rate.output_per_million)

        self._load_ledger()
        self._refresh_limits()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load_ledger(self) -> None:
        if not self._ledger_file.exists():
            return

        cutoff = self._clock() - timedelta(days=LEDGER_MEMORY_DAYS)
        loaded = 0
        with open(self._ledger_file) as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = LedgerEntry.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed ledger line {line_number}: {e}")
                    continue
                if entry.timestamp >= cutoff:
                    self._entries.append(entry)
                    loaded += 1

        logger.info(f"Loaded {loaded} recent ledger entries from {self._ledger_file}")

    def _append_ledger(self, entry: LedgerEntry) -> None:
        try:
            self._ledger_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._ledger_file, "a") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            # The in-memory totals still hold the spend, so ceilings stay enforced
            logger.error(f"Failed to append cost ledger entry: {e}")

    def _refresh_limits(self) -> None:
        """Apply operator limit overrides when the limits file has changed."""
        try:
            mtime = self._limits_file.stat().st_mtime
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning(f"Cannot stat cost limits file: {e}")
            return

        if mtime == self._limits_mtime:
            return

        try:
            data = json.loads(self._limits_file.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Ignoring unreadable cost limits file {self._limits_file}: {e}")
            return

        self._limits_mtime = mtime
        if data.get("daily_limit_usd") is not None:
            self._daily_limit = float(data["daily_limit_usd"])
        if data.get("weekly_limit_usd") is not None:
            self._weekly_limit = float(data["weekly_limit_usd"])
        if "project_daily_limit_usd" in data:
            value = data["project_daily_limit_usd"]
            self._project_daily_limit = float(value) if value is not None else None
        logger.info(
            f"Cost limits: daily=${self._daily_limit:.2f} weekly=${self._weekly_limit:.2f} "
            f"project_daily={self._project_daily_limit}"
        )

    # -------------------------------------------------------------------------
    # Rates
    # -------------------------------------------------------------------------

    def rate_for(self, model: str) -> Tuple[float, float]:
        """(input, output) USD per million units; longest matching prefix wins."""
        if model in self._rates:
            return self._rates[model]

        candidates = [prefix for prefix in self._rates if model.startswith(prefix)]
        if candidates:
            return self._rates[max(candidates, key=len)]

        conservative = max(self._rates.values(), key=lambda r: r[0] + r[1])
        if model not in self._unknown_models_warned:
            self._unknown_models_warned.add(model)
            logger.warning(
                f"No rate configured for model '{model}', using conservative "
                f"${conservative[0]}/${conservative[1]} per million units"
            )
        return conservative

    def estimate_cost(self, model: str, input_units: int, output_units: int) -> float:
        input_rate, output_rate = self.rate_for(model)
        return (input_units * input_rate + output_units * output_rate) / 1_000_000

    # -------------------------------------------------------------------------
    # Totals
    # -------------------------------------------------------------------------

    def _period_starts(self) -> Tuple[datetime, datetime]:
        now = self._clock()
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week_start = day_start - timedelta(days=day_start.weekday())
        return day_start, week_start

    def _totals(self, project_name: Optional[str] = None) -> Tuple[float, float]:
        day_start, week_start = self._period_starts()
        daily = weekly = 0.0
        for entry in self._entries:
            if project_name is not None and entry.project_name != project_name:
                continue
            if entry.timestamp >= week_start:
                weekly += entry.cost_usd
                if entry.timestamp >= day_start:
                    daily += entry.cost_usd
        return daily, weekly

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def can_proceed(self, project_name: str) -> CostVerdict:
        """Whether a delegated call for `project_name` is within budget."""
        with self._lock:
            self._refresh_limits()
            daily, weekly = self._totals()
            day_start, week_start = self._period_starts()

            if daily >= self._daily_limit:
                return self._veto(
                    ("global-daily", day_start.date().isoformat()),
                    f"Daily limit reached (${daily:.2f} of ${self._daily_limit:.2f})",
                )

            if weekly >= self._weekly_limit:
                return self._veto(
                    ("global-weekly", week_start.date().isoformat()),
                    f"Weekly limit reached (${weekly:.2f} of ${self._weekly_limit:.2f})",
                )

            if self._project_daily_limit is not None:
                project_daily, _ = self._totals(project_name)
                if project_daily >= self._project_daily_limit:
                    return self._veto(
                        (f"project-daily:{project_name}", day_start.date().isoformat()),
                        f"Project daily limit reached for {project_name} "
                        f"(${project_daily:.2f} of ${self._project_daily_limit:.2f})",
                    )

            return CostVerdict(allow=True)

    def _veto(self, key: Tuple[str, str], reason: str) -> CostVerdict:
        first = key not in self._vetoed
        if first:
            self._vetoed.add(key)
            logger.warning(f"Reasoning budget exhausted: {reason}")
        return CostVerdict(allow=False, reason=reason, first_veto=first)

    def record(
        self,
        project_name: str,
        cost_usd: float,
        model: Optional[str] = None,
        input_units: int = 0,
        output_units: int = 0,
    ) -> None:
        """Add spend to the running totals and the ledger."""
        if cost_usd < 0:
            raise ValueError(f"Cost cannot be negative: {cost_usd}")

        entry = LedgerEntry(
            timestamp=self._clock(),
            project_name=project_name,
            cost_usd=cost_usd,
            model=model,
            input_units=input_units,
            output_units=output_units,
        )
        with self._lock:
            self._entries.append(entry)
            self._append_ledger(entry)
            cutoff = entry.timestamp - timedelta(days=LEDGER_MEMORY_DAYS)
            if self._entries and self._entries[0].timestamp < cutoff:
                self._entries = [e for e in self._entries if e.timestamp >= cutoff]

        logger.debug(f"Recorded ${cost_usd:.4f} for {project_name} ({model})")

    def update_limits(
        self,
        daily_limit_usd: Optional[float] = None,
        weekly_limit_usd: Optional[float] = None,
        project_daily_limit_usd: Optional[float] = None,
    ) -> Dict:
        """Persist operator limit overrides and apply them immediately."""
        for value in (daily_limit_usd, weekly_limit_usd, project_daily_limit_usd):
            if value is not None and value < 0:
                raise ValueError(f"Limits cannot be negative: {value}")

        with self._lock:
            if daily_limit_usd is not None:
                self._daily_limit = daily_limit_usd
            if weekly_limit_usd is not None:
                self._weekly_limit = weekly_limit_usd
            if project_daily_limit_usd is not None:
                self._project_daily_limit = project_daily_limit_usd

            data = {
                "daily_limit_usd": self._daily_limit,
                "weekly_limit_usd": self._weekly_limit,
                "project_daily_limit_usd": self._project_daily_limit,
                "updated_at": self._clock().isoformat(),
            }
            self._limits_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self._limits_file.with_suffix(".tmp")
            temp_file.write_text(json.dumps(data, indent=2))
            temp_file.replace(self._limits_file)
            self._limits_mtime = self._limits_file.stat().st_mtime
            # New limits open a new veto window
            self._vetoed.clear()

        logger.info(f"Cost limits updated: {data}")
        return data

    def summary(self) -> Dict:
        with self._lock:
            self._refresh_limits()
            daily, weekly = self._totals()
            projects = sorted({e.project_name for e in self._entries})
            per_project = {}
            for name in projects:
                project_daily, project_weekly = self._totals(name)
                per_project[name] = {
                    "daily_usd": round(project_daily, 6),
                    "weekly_usd": round(project_weekly, 6),
                }
            return {
                "daily_usd": round(daily, 6),
                "weekly_usd": round(weekly, 6),
                "daily_limit_usd": self._daily_limit,
                "weekly_limit_usd": self._weekly_limit,
                "project_daily_limit_usd": self._project_daily_limit,
                "projects": per_project,
            }

