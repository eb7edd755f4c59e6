"""Tests for the Signal model and expiry computation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from tradeflow.core.calendar import WeekdayCalendar
from tradeflow.signals.signal import (
    ONE_UNIT,
    Direction,
    Signal,
    SignalState,
    compute_expiry,
)

NOW = datetime(2024, 1, 10, 16, 0, tzinfo=timezone.utc)
FRIDAY = datetime(2024, 1, 12, 16, 0, tzinfo=timezone.utc)


class TestCreate:
    def test_duration(self):
        sig = Signal.create("AAPL", Direction.UP, NOW, duration=timedelta(hours=2))
        assert sig.expires_at == NOW + timedelta(hours=2)
        assert sig.state is SignalState.ACTIVE
        assert sig.signal_id

    def test_explicit_expiry(self):
        expiry = NOW + timedelta(days=3)
        sig = Signal.create("AAPL", Direction.DOWN, NOW, expires_at=expiry, source_id="mom")
        assert sig.expires_at == expiry
        assert sig.source_id == "mom"

    def test_needs_exactly_one_of_duration_or_expiry(self):
        with pytest.raises(ValueError, match="exactly one"):
            Signal.create("AAPL", Direction.UP, NOW)
        with pytest.raises(ValueError, match="exactly one"):
            Signal.create(
                "AAPL", Direction.UP, NOW,
                duration=timedelta(hours=1), expires_at=NOW + timedelta(hours=1),
            )

    def test_whole_days_follow_calendar(self):
        sig = Signal.create(
            "AAPL", Direction.UP, FRIDAY,
            duration=timedelta(days=1), calendar=WeekdayCalendar(),
        )
        assert sig.expires_at == datetime(2024, 1, 15, 16, 0, tzinfo=timezone.utc)

    def test_intraday_duration_ignores_calendar(self):
        sig = Signal.create(
            "AAPL", Direction.UP, FRIDAY,
            duration=timedelta(hours=30), calendar=WeekdayCalendar(),
        )
        assert sig.expires_at == FRIDAY + timedelta(hours=30)

    def test_unique_ids(self):
        a = Signal.create("AAPL", Direction.UP, NOW, duration=timedelta(hours=1))
        b = Signal.create("AAPL", Direction.UP, NOW, duration=timedelta(hours=1))
        assert a.signal_id != b.signal_id


class TestValidation:
    def test_expiry_before_generation_rejected(self):
        with pytest.raises(ValueError):
            Signal(
                subject="AAPL", direction=Direction.UP,
                generated_at=NOW, expires_at=NOW - timedelta(seconds=1),
            )

    def test_zero_length_allowed(self):
        sig = Signal(subject="AAPL", direction=Direction.UP, generated_at=NOW, expires_at=NOW)
        assert not sig.is_active(NOW)

    def test_confidence_clamped(self):
        hi = Signal.create("A", Direction.UP, NOW, duration=timedelta(hours=1), confidence=1.7)
        lo = Signal.create("A", Direction.UP, NOW, duration=timedelta(hours=1), confidence=-0.2)
        assert hi.confidence == 1.0
        assert lo.confidence == 0.0

    def test_negative_weight_rejected(self):
        with pytest.raises(ValueError):
            Signal.create("A", Direction.UP, NOW, duration=timedelta(hours=1), weight=-0.1)

    def test_frozen(self):
        sig = Signal.create("A", Direction.UP, NOW, duration=timedelta(hours=1))
        with pytest.raises(ValidationError):
            sig.subject = "B"


class TestLifecycle:
    def test_is_active_until_expiry(self):
        sig = Signal.create("A", Direction.UP, NOW, duration=timedelta(hours=1))
        assert sig.is_active(NOW)
        assert sig.is_active(NOW + timedelta(minutes=59))
        assert not sig.is_active(NOW + timedelta(hours=1))

    def test_close_pins_expiry_before_now(self):
        sig = Signal.create("A", Direction.UP, NOW, duration=timedelta(hours=1))
        at = NOW + timedelta(minutes=10)
        closed = sig.close(SignalState.CANCELED, at)

        assert closed.state is SignalState.CANCELED
        assert closed.expires_at == at - ONE_UNIT
        assert not closed.is_active(at)
        assert sig.state is SignalState.ACTIVE  # original untouched

    def test_close_never_pins_before_generation(self):
        sig = Signal.create("A", Direction.UP, NOW, duration=timedelta(hours=1))
        closed = sig.close(SignalState.EXPIRED, NOW)
        assert closed.expires_at == NOW

    def test_close_to_active_rejected(self):
        sig = Signal.create("A", Direction.UP, NOW, duration=timedelta(hours=1))
        with pytest.raises(ValueError):
            sig.close(SignalState.ACTIVE, NOW)


class TestComputeExpiry:
    def test_negative_duration_rejected(self):
        with pytest.raises(ValueError):
            compute_expiry(NOW, timedelta(hours=-1))

    def test_no_calendar_is_wall_clock(self):
        assert compute_expiry(FRIDAY, timedelta(days=1)) == FRIDAY + timedelta(days=1)
