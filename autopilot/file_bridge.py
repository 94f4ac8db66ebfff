"""
File Bridge - File-Backed Session Collaborators

Snapshot and input collaborators that exchange JSON files with whatever
process actually observes the editor sessions (an extension, a screen
reader, a test harness). The autopilot never inspects a UI itself.

Layout, one directory per session:
    sessions_dir/<session_id>/session.json    {"session_id", "title", "workspace"}
    sessions_dir/<session_id>/snapshot.json   latest observation (Snapshot.from_dict)
    sessions_dir/<session_id>/inbox.jsonl     text submitted by the autopilot

The producer is responsible for stamping captured_at and last_activity_at
from the same clock.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from .collaborators import CollaboratorError, InputDriver, SnapshotProvider
from .snapshot_model import SessionHandle, Snapshot

logger = logging.getLogger("file_bridge")

SESSION_FILE = "session.json"
SNAPSHOT_FILE = "snapshot.json"
INBOX_FILE = "inbox.jsonl"


def _read_json(path: Path) -> dict:
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        raise CollaboratorError(f"{path.name} not found for session {path.parent.name}", transient=True)
    except json.JSONDecodeError as e:
        # Usually a producer caught mid-write
        raise CollaboratorError(f"{path} is not valid JSON: {e}", transient=True)
    except OSError as e:
        raise CollaboratorError(f"Cannot read {path}: {e}", transient=True)


class FileSessionDirectory:
    """Shared view of the sessions directory."""

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)

    def session_dir(self, session: SessionHandle) -> Path:
        return self.sessions_dir / session.session_id

    def list_sessions(self) -> List[SessionHandle]:
        if not self.sessions_dir.exists():
            return []

        sessions = []
        for entry in sorted(self.sessions_dir.iterdir()):
            session_file = entry / SESSION_FILE
            if not session_file.is_file():
                continue
            try:
                data = _read_json(session_file)
            except CollaboratorError as e:
                logger.warning(f"Skipping session {entry.name}: {e}")
                continue
            sessions.append(SessionHandle(
                session_id=str(data.get("session_id") or entry.name),
                title=str(data.get("title") or ""),
                workspace=str(data.get("workspace") or ""),
                ref=entry,
            ))
        return sessions


class FileSnapshotProvider(SnapshotProvider):
    def __init__(self, directory: FileSessionDirectory):
        self.directory = directory

    async def capture_snapshot(self, session: SessionHandle, include_visual: bool = False) -> Snapshot:
        data = _read_json(self.directory.session_dir(session) / SNAPSHOT_FILE)
        data.setdefault("session_id", session.session_id)
        try:
            return Snapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CollaboratorError(f"Malformed snapshot for {session.session_id}: {e}")


class FileInputDriver(InputDriver):
    def __init__(self, directory: FileSessionDirectory):
        self.directory = directory

    async def send_input(self, session: SessionHandle, text: str) -> None:
        session_dir = self.directory.session_dir(session)
        if not session_dir.is_dir():
            raise CollaboratorError(f"Session {session.session_id} no longer exists")

        entry = {"text": text, "sent_at": datetime.now(timezone.utc).isoformat()}
        try:
            with open(session_dir / INBOX_FILE, "a") as f:
                f.write(json.dumps(entry) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise CollaboratorError(f"Cannot write input for {session.session_id}: {e}", transient=True)

        logger.debug(f"Queued {len(text)} chars for session {session.session_id}")

    async def locate_session(self, hints: Iterable[str]) -> Optional[SessionHandle]:
        """Session whose title/workspace contains the most hints."""
        hints = [h.lower() for h in hints if h]
        best: Optional[SessionHandle] = None
        best_hits = 0
        for session in self.directory.list_sessions():
            identity = session.identity_text().lower()
            hits = sum(1 for hint in hints if hint in identity)
            if hits > best_hits:
                best, best_hits = session, hits
        return best

    async def list_sessions(self) -> List[SessionHandle]:
        return self.directory.list_sessions()
