"""
External collaborator interfaces.

The core never touches a UI, a model provider or a repository directly.
It talks to these interfaces:

- SnapshotProvider: capture a structured Snapshot of a session
  (idempotent, no side effects on the session)
- InputDriver: find sessions and deliver text to them
- VersionControl: commit and open pull requests

Every call is made with a bounded timeout by the caller. Implementations
report failures by raising CollaboratorError; `transient=True` marks
failures worth retrying.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .snapshot_model import SessionHandle, Snapshot


class CollaboratorError(Exception):
    """Failure reported by an external collaborator."""
    def __init__(self, message: str, transient: bool = False, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.transient = transient
        self.details = details or {}
        super().__init__(message)


class VersionControlError(CollaboratorError):
    pass


class SnapshotProvider(ABC):
    @abstractmethod
    async def capture_snapshot(self, session: SessionHandle, include_visual: bool = False) -> Snapshot:
        """Observe the session without changing it."""


class InputDriver(ABC):
    @abstractmethod
    async def send_input(self, session: SessionHandle, text: str) -> None:
        """Submit `text` through the session's input affordance."""

    @abstractmethod
    async def locate_session(self, hints: List[str]) -> Optional[SessionHandle]:
        """Find the session whose identity matches the hints, if any."""

    @abstractmethod
    async def list_sessions(self) -> List[SessionHandle]:
        """All sessions currently visible, used for recovery matching."""


class VersionControl(ABC):
    @abstractmethod
    async def commit(self, repo_ref: str, message: str) -> str:
        """Commit all changes in `repo_ref`; returns the commit id."""

    @abstractmethod
    async def create_pull_request(self, repo_ref: str, branch: str, title: str, body: str) -> str:
        """Open a pull request for `branch`; returns its URL."""
