"""
State Classifier

Deterministic mapping from a Snapshot to exactly one SessionState.

Priority order, highest first, first match wins:
1. busy                                   -> BUSY
2. any error                              -> ERRORING
3. pending TODOs and an input field       -> HAS_PENDING_WORK
4. TODOs exist, all done, input field     -> PHASE_DONE
5. idle for at least the stall threshold  -> IDLE
6. input field                            -> AWAITING_INPUT
7. anything else                          -> UNCLASSIFIED

Liveness signals (busy/erroring) are never masked by stale TODO counts,
and PHASE_DONE requires that there was work to do (total > 0).

The classifier is total and pure: no I/O, no error path.
"""

from datetime import timedelta

from .snapshot_model import Snapshot, SessionState

DEFAULT_STALL_THRESHOLD = timedelta(minutes=10)


def classify(
    snapshot: Snapshot,
    stall_threshold: timedelta = DEFAULT_STALL_THRESHOLD,
) -> SessionState:
    """Classify a snapshot into a SessionState."""
    if snapshot.is_busy:
        return SessionState.BUSY

    if snapshot.errors:
        return SessionState.ERRORING

    todos = snapshot.todos
    if todos.total > todos.completed and snapshot.has_input_field:
        return SessionState.HAS_PENDING_WORK

    if todos.all_done and snapshot.has_input_field:
        return SessionState.PHASE_DONE

    if snapshot.idle_duration >= stall_threshold:
        return SessionState.IDLE

    if snapshot.has_input_field:
        return SessionState.AWAITING_INPUT

    return SessionState.UNCLASSIFIED
