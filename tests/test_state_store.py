"""
State Store Tests

Tests for:
- Append-only decision history
- Bounded reads and malformed-line tolerance
- Rotation to timestamped archives
- Atomic state documents
"""

from autopilot.decision_model import ActionKind, ActionResult, Decision
from autopilot.snapshot_model import SessionState
from autopilot.state_store import StateStore


def create_test_decision(index: int = 0, action: ActionKind = ActionKind.CONTINUE) -> Decision:
    return Decision(
        action=action,
        state=SessionState.HAS_PENDING_WORK,
        reasoning=f"decision {index}",
        confidence=0.9,
        command="Continue",
    )


class TestDecisionHistory:
    def test_append_and_read_back(self, store):
        decision = create_test_decision()
        store.append_decision("demo-app", decision, ActionResult(success=True, message="sent", attempts=1))

        entries = store.recent_entries("demo-app")
        assert len(entries) == 1
        assert entries[0]["result"]["success"] is True

        restored = store.recent_decisions("demo-app")[0]
        assert restored.action == ActionKind.CONTINUE
        assert restored.reasoning == "decision 0"
        assert restored.timestamp == decision.timestamp

    def test_recent_is_bounded_and_ordered(self, store):
        for i in range(8):
            store.append_decision("demo-app", create_test_decision(i))
        decisions = store.recent_decisions("demo-app", limit=3)
        assert [d.reasoning for d in decisions] == ["decision 5", "decision 6", "decision 7"]

    def test_missing_project_is_empty(self, store):
        assert store.recent_entries("nope") == []
        assert store.recent_decisions("nope") == []

    def test_malformed_lines_skipped(self, store):
        store.append_decision("demo-app", create_test_decision(1))
        path = store.project_dir("demo-app") / "decisions.jsonl"
        with open(path, "a") as f:
            f.write("{broken\n")
            f.write('{"decision": {"action": "fly"}}\n')
        store.append_decision("demo-app", create_test_decision(2))

        assert len(store.recent_entries("demo-app")) == 3
        assert [d.reasoning for d in store.recent_decisions("demo-app")] == ["decision 1", "decision 2"]

    def test_history_is_per_project(self, store):
        store.append_decision("a", create_test_decision(1))
        store.append_decision("b", create_test_decision(2))
        assert [d.reasoning for d in store.recent_decisions("a")] == ["decision 1"]


class TestRotation:
    def test_rotates_past_max_entries(self, tmp_path):
        store = StateStore(tmp_path, max_entries=10)
        for i in range(11):
            store.append_decision("demo-app", create_test_decision(i))

        project_dir = store.project_dir("demo-app")
        archives = list(project_dir.glob("decisions-*.jsonl"))
        assert len(archives) == 1
        assert sum(1 for _ in open(archives[0])) == 11
        assert store.recent_entries("demo-app") == []

        store.append_decision("demo-app", create_test_decision(11))
        assert [d.reasoning for d in store.recent_decisions("demo-app")] == ["decision 11"]

    def test_existing_log_counted_on_first_append(self, tmp_path):
        for i in range(6):
            StateStore(tmp_path, max_entries=10).append_decision("demo-app", create_test_decision(i))
        store = StateStore(tmp_path, max_entries=10)
        for i in range(5):
            store.append_decision("demo-app", create_test_decision(i))
        assert len(list(store.project_dir("demo-app").glob("decisions-*.jsonl"))) == 1


class TestStateDocument:
    def test_save_and_load(self, store):
        store.save_state("demo-app", {"state": "idle", "cycles": 3})
        state = store.load_state("demo-app")
        assert state["state"] == "idle"
        assert state["cycles"] == 3
        assert "updated_at" in state

    def test_missing_state(self, store):
        assert store.load_state("demo-app") == {}

    def test_corrupt_state_is_empty(self, store):
        path = store.project_dir("demo-app") / "state.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert store.load_state("demo-app") == {}
