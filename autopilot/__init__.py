"""
Autopilot - Session Supervision Engine

Supervises long-running AI coding sessions across several projects:
- Observes each session through a snapshot collaborator
- Classifies the snapshot into one SessionState
- Decides the next action by rules or by a delegated reasoning service,
  within a spend budget
- Executes the action with verification and bounded retry
- Quarantines persistently failing projects and survives restarts

Operator surfaces: the `autopilot` CLI and an optional FastAPI app.
"""

__version__ = "1.0.0"
