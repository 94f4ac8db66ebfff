"""
Cost Governor Tests

Tests for:
- Inclusive daily/weekly/project ceilings
- Rate lookup by model prefix and conservative unknown-model rate
- Ledger replay on startup
- Operator limit overrides
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from autopilot.config import CostConfig, ModelRate
from autopilot.cost_governor import CostGovernor, LedgerEntry


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    # A Wednesday
    return FakeClock(datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def ledger(tmp_path):
    return tmp_path / "cost_ledger.jsonl"


def make_governor(ledger, clock, **limits) -> CostGovernor:
    config = CostConfig(**{"daily_limit_usd": 1.0, "weekly_limit_usd": 3.0, **limits})
    return CostGovernor(config, ledger, clock=clock)


class TestCeilings:
    def test_allows_under_limit(self, ledger, clock):
        governor = make_governor(ledger, clock)
        governor.record("demo-app", 0.5)
        assert governor.can_proceed("demo-app").allow is True

    def test_limit_is_inclusive(self, ledger, clock):
        governor = make_governor(ledger, clock)
        governor.record("demo-app", 1.0)
        verdict = governor.can_proceed("demo-app")
        assert verdict.allow is False
        assert "Daily limit" in verdict.reason

    def test_first_veto_flag_once_per_window(self, ledger, clock):
        governor = make_governor(ledger, clock)
        governor.record("demo-app", 1.0)
        assert governor.can_proceed("demo-app").first_veto is True
        assert governor.can_proceed("other").first_veto is False

    def test_daily_resets_next_day(self, ledger, clock):
        governor = make_governor(ledger, clock)
        governor.record("demo-app", 1.0)
        clock.now += timedelta(days=1)
        verdict = governor.can_proceed("demo-app")
        assert verdict.allow is True

    def test_weekly_limit(self, ledger, clock):
        governor = make_governor(ledger, clock, weekly_limit_usd=2.0)
        # Monday and Tuesday of the same week
        for days_back in (2, 1):
            clock.now = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc) - timedelta(days=days_back)
            governor.record("demo-app", 0.99)
        clock.now = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)
        governor.record("demo-app", 0.1)
        verdict = governor.can_proceed("demo-app")
        assert verdict.allow is False
        assert "Weekly limit" in verdict.reason

    def test_project_daily_limit(self, ledger, clock):
        governor = make_governor(ledger, clock, project_daily_limit_usd=0.2)
        governor.record("demo-app", 0.2)
        assert governor.can_proceed("demo-app").allow is False
        assert governor.can_proceed("other-app").allow is True

    def test_negative_cost_rejected(self, ledger, clock):
        with pytest.raises(ValueError):
            make_governor(ledger, clock).record("demo-app", -1)


class TestRates:
    def test_prefix_match(self, ledger, clock):
        governor = make_governor(ledger, clock)
        assert governor.rate_for("claude-3-5-haiku-20241022") == (0.8, 4.0)
        assert governor.rate_for("claude-sonnet-4-5") == (3.0, 15.0)

    def test_configured_rate_overrides(self, ledger, clock):
        config = CostConfig(rates={"claude-sonnet": ModelRate(input_per_million=1, output_per_million=2)})
        governor = CostGovernor(config, ledger, clock=clock)
        assert governor.estimate_cost("claude-sonnet-4-5", 1_000_000, 1_000_000) == pytest.approx(3.0)

    def test_unknown_model_uses_most_expensive(self, ledger, clock):
        governor = make_governor(ledger, clock)
        assert governor.rate_for("mystery-model") == (15.0, 75.0)


class TestLedger:
    def test_replayed_on_startup(self, ledger, clock):
        first = make_governor(ledger, clock)
        first.record("demo-app", 0.6, model="claude-sonnet-4-5", input_units=10, output_units=5)
        first.record("demo-app", 0.4)

        second = make_governor(ledger, clock)
        assert second.can_proceed("demo-app").allow is False
        assert second.summary()["projects"]["demo-app"]["daily_usd"] == pytest.approx(1.0)

    def test_malformed_lines_skipped(self, ledger, clock):
        entry = LedgerEntry(timestamp=clock.now, project_name="demo-app", cost_usd=0.3)
        ledger.write_text("not json\n" + json.dumps(entry.to_dict()) + "\n{}\n")
        governor = make_governor(ledger, clock)
        assert governor.summary()["daily_usd"] == pytest.approx(0.3)

    def test_non_object_lines_skipped(self, ledger, clock):
        entry = LedgerEntry(timestamp=clock.now, project_name="demo-app", cost_usd=0.2)
        ledger.write_text("null\n[1, 2]\n" + json.dumps(entry.to_dict()) + "\n\"text\"\n")
        governor = make_governor(ledger, clock)
        assert governor.summary()["daily_usd"] == pytest.approx(0.2)

    def test_old_entries_ignored(self, ledger, clock):
        old = LedgerEntry(timestamp=clock.now - timedelta(days=30), project_name="demo-app", cost_usd=50)
        ledger.write_text(json.dumps(old.to_dict()) + "\n")
        assert make_governor(ledger, clock).can_proceed("demo-app").allow is True


class TestLimitOverrides:
    def test_update_limits_persists(self, ledger, clock):
        governor = make_governor(ledger, clock)
        governor.record("demo-app", 1.0)
        assert governor.can_proceed("demo-app").allow is False

        data = governor.update_limits(daily_limit_usd=2.0)
        assert data["daily_limit_usd"] == 2.0
        assert governor.can_proceed("demo-app").allow is True

        reloaded = make_governor(ledger, clock)
        assert reloaded.summary()["daily_limit_usd"] == 2.0

    def test_new_limits_open_new_veto_window(self, ledger, clock):
        governor = make_governor(ledger, clock)
        governor.record("demo-app", 1.0)
        assert governor.can_proceed("demo-app").first_veto is True
        governor.update_limits(weekly_limit_usd=10.0)
        assert governor.can_proceed("demo-app").first_veto is True

    def test_negative_limit_rejected(self, ledger, clock):
        with pytest.raises(ValueError):
            make_governor(ledger, clock).update_limits(daily_limit_usd=-1)
