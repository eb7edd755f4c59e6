"""Tests for the rebalance scheduler."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from tradeflow.orchestrator.models import UniverseChange
from tradeflow.orchestrator.scheduler import RebalanceScheduler
from tradeflow.signals.signal import Direction, Signal

NOW = datetime(2024, 1, 10, 16, 0, tzinfo=timezone.utc)


def _sig(subject: str = "AAPL", hours: float = 1.0) -> Signal:
    return Signal.create(subject, Direction.UP, NOW, duration=timedelta(hours=hours))


class TestSignalTrigger:
    def test_nothing_active_not_due(self):
        sched = RebalanceScheduler()
        assert not sched.is_due([], NOW)

    def test_new_signal_due_once(self):
        sched = RebalanceScheduler()
        active = [_sig()]
        assert sched.due_reasons(active, NOW) == ("signals",)

        sched.mark_reconciled(NOW, active)
        assert not sched.is_due(active, NOW)
        assert not sched.is_due(active, NOW + timedelta(minutes=5))

    def test_is_due_does_not_consume(self):
        sched = RebalanceScheduler()
        active = [_sig()]
        assert sched.is_due(active, NOW)
        assert sched.is_due(active, NOW)

    def test_expiry_changes_active_set(self):
        sched = RebalanceScheduler()
        a, b = _sig("A", hours=1), _sig("B", hours=2)
        sched.mark_reconciled(NOW, [a, b])
        assert sched.is_due([b], NOW + timedelta(hours=1))

    def test_all_signals_gone_is_a_change(self):
        sched = RebalanceScheduler()
        a = _sig()
        sched.mark_reconciled(NOW, [a])
        assert sched.due_reasons([], NOW + timedelta(hours=1)) == ("signals",)

    def test_disabled(self):
        sched = RebalanceScheduler(on_signal_changes=False)
        assert not sched.is_due([_sig()], NOW)


class TestUniverseTrigger:
    def test_change_due_until_reconciled(self):
        sched = RebalanceScheduler()
        sched.notify_universe_changed(UniverseChange(added=frozenset({"AAPL"})))
        assert sched.due_reasons([], NOW) == ("universe",)
        assert sched.is_due([], NOW)

        sched.mark_reconciled(NOW, [])
        assert not sched.is_due([], NOW)

    def test_empty_change_ignored(self):
        sched = RebalanceScheduler()
        sched.notify_universe_changed(UniverseChange())
        assert not sched.is_due([], NOW)

    def test_disabled(self):
        sched = RebalanceScheduler(on_universe_changes=False)
        sched.notify_universe_changed(UniverseChange(removed=frozenset({"AAPL"})))
        assert not sched.is_due([], NOW)


class TestIntervalTrigger:
    def test_due_before_first_pass(self):
        sched = RebalanceScheduler(interval=timedelta(hours=1))
        assert sched.due_reasons([], NOW) == ("time",)
        assert sched.next_rebalance_at is None

    def test_level_triggered(self):
        sched = RebalanceScheduler(interval=timedelta(hours=1))
        sched.mark_reconciled(NOW, [])
        assert sched.next_rebalance_at == NOW + timedelta(hours=1)

        assert not sched.is_due([], NOW + timedelta(minutes=30))
        assert sched.is_due([], NOW + timedelta(hours=1))
        # A missed tick stays due until the pass is recorded.
        assert sched.is_due([], NOW + timedelta(hours=3))

        sched.mark_reconciled(NOW + timedelta(hours=3), [])
        assert not sched.is_due([], NOW + timedelta(hours=3, minutes=1))

    def test_multiple_reasons(self):
        sched = RebalanceScheduler(interval=timedelta(hours=1))
        sched.notify_universe_changed(UniverseChange(added=frozenset({"AAPL"})))
        assert sched.due_reasons([_sig()], NOW) == ("time", "signals", "universe")

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            RebalanceScheduler(interval=timedelta(0))


class TestNextTimeFn:
    def test_none_means_not_yet(self):
        sched = RebalanceScheduler(next_time_fn=lambda now: None)
        assert not sched.is_due([], NOW)

    def test_fires_at_returned_instant(self):
        calls: list[datetime] = []

        def top_of_next_hour(now: datetime) -> datetime:
            calls.append(now)
            return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)

        sched = RebalanceScheduler(next_time_fn=top_of_next_hour)
        start = NOW + timedelta(minutes=10)
        assert not sched.is_due([], start)
        assert sched.next_rebalance_at == datetime(2024, 1, 10, 17, 0, tzinfo=timezone.utc)
        assert sched.is_due([], datetime(2024, 1, 10, 17, 0, tzinfo=timezone.utc))

        sched.mark_reconciled(datetime(2024, 1, 10, 17, 0, tzinfo=timezone.utc), [])
        assert not sched.is_due([], datetime(2024, 1, 10, 17, 30, tzinfo=timezone.utc))
        assert sched.is_due([], datetime(2024, 1, 10, 18, 5, tzinfo=timezone.utc))
        assert calls

    def test_interval_and_fn_exclusive(self):
        with pytest.raises(ValueError):
            RebalanceScheduler(interval=timedelta(hours=1), next_time_fn=lambda now: None)
