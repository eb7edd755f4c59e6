"""Rebalance scheduler: decides when a reconciliation pass must run."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

import structlog

from tradeflow.orchestrator.models import UniverseChange
from tradeflow.signals.signal import Signal

logger = structlog.get_logger(__name__)

NextTimeFn = Callable[[datetime], "datetime | None"]

REASON_TIME = "time"
REASON_SIGNALS = "signals"
REASON_UNIVERSE = "universe"


class RebalanceScheduler:
    """Two independent trigger families.

    *Time*: either a fixed ``interval`` since the last reconciliation or a
    ``next_time_fn`` mapping now to the next reconciliation instant (or
    ``None`` for "not yet").  Level-triggered: a missed tick stays due
    until :meth:`mark_reconciled` is called.

    *Events*: a change in the set of active signals and a pending universe
    change.  Edge-triggered: once a pass has been recorded for a given
    signal set or universe change it does not fire again.

    :meth:`is_due` never consumes a trigger.  Only :meth:`mark_reconciled`
    does, so a pass that fails is retried on the next call.
    """

    def __init__(
        self,
        *,
        interval: timedelta | None = None,
        next_time_fn: NextTimeFn | None = None,
        on_signal_changes: bool = True,
        on_universe_changes: bool = True,
    ) -> None:
        if interval is not None and next_time_fn is not None:
            raise ValueError("Use either interval or next_time_fn, not both")
        if interval is not None and interval <= timedelta(0):
            raise ValueError(f"interval must be positive, got {interval}")

        self.interval = interval
        self.next_time_fn = next_time_fn
        self.on_signal_changes = on_signal_changes
        self.on_universe_changes = on_universe_changes

        self._last_reconciled_at: datetime | None = None
        self._next_time: datetime | None = None
        self._seen_active: frozenset[str] | None = None
        self._universe_pending = False

    # ── queries ───────────────────────────────────────────────────────

    @property
    def last_reconciled_at(self) -> datetime | None:
        return self._last_reconciled_at

    @property
    def next_rebalance_at(self) -> datetime | None:
        """Next instant the time trigger fires, if known."""
        if self.interval is not None:
            if self._last_reconciled_at is None:
                return None
            return self._last_reconciled_at + self.interval
        return self._next_time

    def is_due(self, active_signals: Iterable[Signal], now: datetime) -> bool:
        return bool(self.due_reasons(active_signals, now))

    def due_reasons(self, active_signals: Iterable[Signal], now: datetime) -> tuple[str, ...]:
        """Which enabled triggers fire at ``now``."""
        reasons: list[str] = []
        if self._time_due(now):
            reasons.append(REASON_TIME)
        if self.on_signal_changes and self._signals_changed(active_signals):
            reasons.append(REASON_SIGNALS)
        if self.on_universe_changes and self._universe_pending:
            reasons.append(REASON_UNIVERSE)
        return tuple(reasons)

    # ── notifications ─────────────────────────────────────────────────

    def notify_universe_changed(self, change: UniverseChange) -> None:
        if change.is_empty:
            return
        self._universe_pending = True
        logger.debug(
            "scheduler_universe_flagged",
            added=len(change.added),
            removed=len(change.removed),
        )

    def mark_reconciled(self, now: datetime, active_signals: Iterable[Signal]) -> None:
        """Record a completed pass; consumes every pending trigger."""
        self._last_reconciled_at = now
        self._seen_active = frozenset(s.signal_id for s in active_signals)
        self._universe_pending = False
        if self.next_time_fn is not None:
            self._next_time = self.next_time_fn(now)
        logger.debug(
            "scheduler_reconciled",
            at=now.isoformat(),
            active_signals=len(self._seen_active),
            next_rebalance_at=(
                self.next_rebalance_at.isoformat() if self.next_rebalance_at else None
            ),
        )

    # ── internals ─────────────────────────────────────────────────────

    def _time_due(self, now: datetime) -> bool:
        last = self._last_reconciled_at
        if self.interval is not None:
            return last is None or now >= last + self.interval
        if self.next_time_fn is None:
            return False

        # Ask again while the function has no answer or its answer is used up.
        if self._next_time is None or (last is not None and self._next_time <= last):
            self._next_time = self.next_time_fn(now)
        nxt = self._next_time
        if nxt is None:
            return False
        return now >= nxt and (last is None or nxt > last)

    def _signals_changed(self, active_signals: Iterable[Signal]) -> bool:
        current = frozenset(s.signal_id for s in active_signals)
        if self._seen_active is None:
            return bool(current)
        return current != self._seen_active
