"""
State Store - Per-Project Decision History

This module provides per-project persistence next to the registry:
- decisions.jsonl: append-only log of every Decision with its ActionResult
- state.json: last classified state, last result and cycle counters

Layout:
    state_dir/projects/<name>/decisions.jsonl
    state_dir/projects/<name>/decisions-<timestamp>.jsonl   (archives)
    state_dir/projects/<name>/state.json

CRITICAL CONSTRAINTS:
- APPEND-ONLY: history entries are never edited
- FSYNC: every append is durable before the cycle moves on
- History is a bounded window for readers; once the live log exceeds the
  configured size it is rotated to a timestamped archive, never truncated
  in place
"""

import json
import logging
import os
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .decision_model import ActionResult, Decision

logger = logging.getLogger("state_store")

DECISIONS_FILE_NAME = "decisions.jsonl"
STATE_FILE_NAME = "state.json"
DEFAULT_MAX_ENTRIES = 5000


class StateStore:
    """Decision history and current state for every project."""

    def __init__(self, state_dir: Path, max_entries: int = DEFAULT_MAX_ENTRIES):
        self._root = Path(state_dir) / "projects"
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._line_counts: Dict[str, int] = {}

    def project_dir(self, name: str) -> Path:
        return self._root / name

    def _decisions_file(self, name: str) -> Path:
        return self.project_dir(name) / DECISIONS_FILE_NAME

    def _state_file(self, name: str) -> Path:
        return self.project_dir(name) / STATE_FILE_NAME

    # -------------------------------------------------------------------------
    # WRITE Operations
    # -------------------------------------------------------------------------

    def append_decision(self, name: str, decision: Decision, result: Optional[ActionResult] = None) -> None:
        """Append one decision (and what came of it) to the project's history."""
        entry = {
            "decision": decision.to_dict(),
            "result": result.to_dict() if result else None,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
        }
        path = self._decisions_file(name)

        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "a") as f:
                f.write(json.dumps(entry) + "\n")
                f.flush()
                os.fsync(f.fileno())

            count = self._line_counts.get(name)
            if count is None:
                count = self._count_lines(path)
            else:
                count += 1
            self._line_counts[name] = count

            if count > self._max_entries:
                self._rotate(name, path)

    def _count_lines(self, path: Path) -> int:
        with open(path) as f:
            return sum(1 for line in f if line.strip())

    def _rotate(self, name: str, path: Path) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        archive = path.with_name(f"decisions-{stamp}.jsonl")
        path.replace(archive)
        self._line_counts[name] = 0
        logger.info(f"[{name}] Rotated decision log to {archive.name}")

    def save_state(self, name: str, state: Dict[str, Any]) -> None:
        """Atomically replace the project's current-state document."""
        path = self._state_file(name)
        data = dict(state)
        data["updated_at"] = datetime.now(timezone.utc).isoformat()

        path.parent.mkdir(parents=True, exist_ok=True)
        temp_file = path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2)
        temp_file.replace(path)

    # -------------------------------------------------------------------------
    # READ Operations
    # -------------------------------------------------------------------------

    def load_state(self, name: str) -> Dict[str, Any]:
        path = self._state_file(name)
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[{name}] Ignoring unreadable state file: {e}")
            return {}

    def recent_entries(self, name: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Last `limit` raw history entries (decision + result), oldest first."""
        path = self._decisions_file(name)
        if not path.exists():
            return []

        entries: deque = deque(maxlen=max(0, limit))
        with open(path) as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"[{name}] Skipping malformed history line {line_number}: {e}")
        return list(entries)

    def recent_decisions(self, name: str, limit: int = 10) -> List[Decision]:
        """Last `limit` decisions, oldest first."""
        decisions: List[Decision] = []
        for entry in self.recent_entries(name, limit):
            try:
                decisions.append(Decision.from_dict(entry["decision"]))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"[{name}] Skipping malformed decision entry: {e}")
        return decisions
