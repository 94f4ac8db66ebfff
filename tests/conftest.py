"""
Pytest configuration for autopilot tests.

This module provides:
1. In-memory session, version-control and sleep fakes
2. Common fixtures: project configuration, registry, notifier, store
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

import pytest
import yaml

from autopilot.collaborators import InputDriver, SnapshotProvider, VersionControl
from autopilot.config import ProjectConfig
from autopilot.notification_engine import NotificationEngine
from autopilot.project_registry import ProjectRegistry
from autopilot.snapshot_model import ErrorEntry, SessionHandle, Snapshot, TodoCounts
from autopilot.state_store import StateStore


# -----------------------------------------------------------------------------
# Snapshot Factory
# -----------------------------------------------------------------------------
def build_snapshot(
    session_id: str = "session-1",
    has_input_field: bool = True,
    input_text: str = "",
    total: int = 0,
    completed: int = 0,
    errors: Optional[List[ErrorEntry]] = None,
    is_busy: bool = False,
    idle_minutes: float = 0.0,
    recent_messages: Optional[List[str]] = None,
) -> Snapshot:
    captured_at = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    return Snapshot.from_timestamps(
        session_id=session_id,
        captured_at=captured_at,
        last_activity_at=captured_at - timedelta(minutes=idle_minutes),
        has_input_field=has_input_field,
        input_text=input_text,
        todos=TodoCounts(total=total, completed=completed),
        errors=errors or [],
        is_busy=is_busy,
        recent_messages=recent_messages or [],
    )


@pytest.fixture
def make_snapshot():
    return build_snapshot


# -----------------------------------------------------------------------------
# Fakes
# -----------------------------------------------------------------------------
class FakeSession(SnapshotProvider, InputDriver):
    """
    Scripted session. Each capture pops the next queued snapshot; once the
    queue is empty the last one repeats.
    """

    def __init__(self, snapshots=None, handle: Optional[SessionHandle] = None, sessions=None):
        self.handle = handle or SessionHandle("session-1", title="demo-app - editor", workspace="/work/demo-app")
        self.queue = list(snapshots or [])
        self.current = build_snapshot(self.handle.session_id)
        self.sessions = sessions if sessions is not None else [self.handle]
        self.sent: List[str] = []
        self.captures = 0
        self.capture_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None

    async def capture_snapshot(self, session, include_visual=False):
        self.captures += 1
        if self.capture_error is not None:
            raise self.capture_error
        if self.queue:
            self.current = self.queue.pop(0)
        return self.current

    async def send_input(self, session, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(text)

    async def locate_session(self, hints):
        for session in self.sessions:
            identity = session.identity_text().lower()
            if any(h.lower() in identity for h in hints):
                return session
        return None

    async def list_sessions(self):
        return list(self.sessions)


class FakeVersionControl(VersionControl):
    def __init__(self):
        self.commits: List[str] = []
        self.pull_requests: List[str] = []
        self.commit_error: Optional[Exception] = None
        self.pr_error: Optional[Exception] = None

    async def commit(self, repo_ref, message):
        if self.commit_error is not None:
            raise self.commit_error
        self.commits.append(message)
        return f"abc{len(self.commits):04d}"

    async def create_pull_request(self, repo_ref, branch, title, body):
        if self.pr_error is not None:
            raise self.pr_error
        self.pull_requests.append(title)
        return f"https://example.test/pr/{len(self.pull_requests)}"


class RecordingSleep:
    """Injectable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
PROJECT_DATA = {
    "name": "demo-app",
    "repo_url": "https://github.com/example/demo-app.git",
    "phases": [
        {"name": "design"},
        {"name": "build", "prompt": "Start the build phase."},
        {"name": "release", "requires_approval": True},
    ],
    "skills": [
        {
            "name": "fix-tests",
            "description": "Repair failing tests",
            "patterns": ["assertionerror", "tests failed"],
            "categories": ["test"],
            "keywords": ["pytest"],
        },
        {
            "name": "fix-imports",
            "description": "Resolve missing modules",
            "command": "/fix-imports --all",
            "patterns": ["modulenotfounderror"],
            "categories": ["reference"],
        },
    ],
    "escalation": {"on_critical_error": True, "keywords": ["credentials"]},
}


@pytest.fixture
def project_data():
    return yaml.safe_load(yaml.safe_dump(PROJECT_DATA))


@pytest.fixture
def project_config(project_data) -> ProjectConfig:
    return ProjectConfig(**project_data)


@pytest.fixture
def project_file(tmp_path, project_data) -> Path:
    path = tmp_path / "demo-app.yaml"
    path.write_text(yaml.safe_dump(project_data))
    return path


@pytest.fixture
def registry(tmp_path) -> ProjectRegistry:
    return ProjectRegistry(tmp_path / "state")


@pytest.fixture
def record(registry, project_file):
    return registry.register_project("demo-app", str(project_file), "design")


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(tmp_path / "state", max_entries=50)


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def notifier(tmp_path, notifications) -> NotificationEngine:
    engine = NotificationEngine(tmp_path / "state", rate_limit_max=1000)

    async def capture(notification):
        notifications.append(notification)
        return True

    engine.register_channel("test", capture)
    return engine


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fake_vcs() -> FakeVersionControl:
    return FakeVersionControl()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
