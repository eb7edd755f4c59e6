"""Signal store: the single source of truth for signal state."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from datetime import datetime

import structlog

from tradeflow.core.errors import ConflictingGroupState, DuplicateSignal
from tradeflow.signals.signal import Signal, SignalState

logger = structlog.get_logger(__name__)


class SignalStore:
    """Holds every known signal and its current state.

    Other components read signals only through :meth:`get_active`, which
    sweeps lapsed signals first, so a read never sees a signal that has
    already been canceled or has expired.

    Groups are atomic for closing: canceling or expiring one member closes
    the whole group. A group whose members end up in different states is
    logged as a conflict and canceled.

    Mutation is expected from a single (coordinator) thread. The internal
    lock only makes :meth:`snapshot` safe for concurrent readers.
    """

    def __init__(self) -> None:
        self._signals: dict[str, Signal] = {}
        self._by_subject: dict[str, set[str]] = {}
        self._groups: dict[str, set[str]] = {}
        self._dirty_groups: set[str] = set()
        self._lock = threading.Lock()

    # ── insertion ─────────────────────────────────────────────────────

    def add(self, signal: Signal) -> None:
        """Insert a signal.  Raises ``DuplicateSignal`` if its id is known."""
        with self._lock:
            if signal.signal_id in self._signals:
                raise DuplicateSignal(signal.signal_id)
            self._signals[signal.signal_id] = signal
            self._by_subject.setdefault(signal.subject, set()).add(signal.signal_id)
            if signal.group_id is not None:
                self._groups.setdefault(signal.group_id, set()).add(signal.signal_id)
                self._dirty_groups.add(signal.group_id)

        logger.debug(
            "signal_added",
            signal_id=signal.signal_id,
            subject=signal.subject,
            source_id=signal.source_id,
            direction=signal.direction.name,
            expires_at=signal.expires_at.isoformat(),
        )

    def add_range(self, signals: Iterable[Signal]) -> None:
        for signal in signals:
            self.add(signal)

    # ── reads ─────────────────────────────────────────────────────────

    def get_active(self, now: datetime) -> list[Signal]:
        """All signals in state ACTIVE whose expiry lies after ``now``."""
        with self._lock:
            self._sweep(now)
            return [s for s in self._signals.values() if s.is_active(now)]

    def get_latest_per_source(
        self, subject: str, now: datetime | None = None,
    ) -> list[Signal]:
        """Most recently generated signal from each source for ``subject``.

        When ``now`` is given only active signals are considered.
        Older signals from the same source are ignored, not deleted.
        """
        if now is not None:
            candidates = [s for s in self.get_active(now) if s.subject == subject]
        else:
            candidates = self.signals_for(subject)
        return latest_per_source(candidates)

    def get(self, signal_id: str) -> Signal | None:
        return self._signals.get(signal_id)

    def signals_for(self, subject: str) -> list[Signal]:
        """Every stored signal for ``subject`` regardless of state."""
        with self._lock:
            ids = self._by_subject.get(subject, set())
            return [s for s in self._signals.values() if s.signal_id in ids]

    def next_expiry(self, now: datetime) -> datetime | None:
        """Earliest expiry among signals still active at ``now``."""
        active = self.get_active(now)
        if not active:
            return None
        return min(s.expires_at for s in active)

    def snapshot(self) -> tuple[Signal, ...]:
        """Immutable copy for readers outside the coordinator thread."""
        with self._lock:
            return tuple(self._signals.values())

    def __len__(self) -> int:
        return len(self._signals)

    def __contains__(self, signal_id: object) -> bool:
        return signal_id in self._signals

    # ── state transitions ─────────────────────────────────────────────

    def cancel(
        self,
        now: datetime,
        *,
        subject: str | None = None,
        signal_id: str | None = None,
    ) -> list[Signal]:
        """Cancel by subject or by id.  Idempotent.

        Returns the signals that actually changed state.
        """
        return self._close(SignalState.CANCELED, now, subject=subject, signal_id=signal_id)

    def expire(
        self,
        now: datetime,
        *,
        subject: str | None = None,
        signal_id: str | None = None,
    ) -> list[Signal]:
        """Expire by subject or by id ahead of the natural expiry.  Idempotent."""
        return self._close(SignalState.EXPIRED, now, subject=subject, signal_id=signal_id)

    # ── removal ───────────────────────────────────────────────────────

    def remove_for_subject(self, subject: str) -> int:
        """Purge every signal for ``subject``, active or not."""
        with self._lock:
            ids = self._by_subject.pop(subject, set())
            for sid in ids:
                signal = self._signals.pop(sid)
                if signal.group_id is not None:
                    members = self._groups.get(signal.group_id)
                    if members is not None:
                        members.discard(sid)
                        if not members:
                            del self._groups[signal.group_id]
                            self._dirty_groups.discard(signal.group_id)

        if ids:
            logger.info("signals_purged", subject=subject, count=len(ids))
        return len(ids)

    def purge_inactive(self, before: datetime) -> int:
        """Drop closed signals whose expiry lies before ``before``."""
        with self._lock:
            stale = [
                s for s in self._signals.values()
                if s.state is not SignalState.ACTIVE and s.expires_at < before
            ]
            for signal in stale:
                del self._signals[signal.signal_id]
                subject_ids = self._by_subject.get(signal.subject)
                if subject_ids is not None:
                    subject_ids.discard(signal.signal_id)
                    if not subject_ids:
                        del self._by_subject[signal.subject]
                if signal.group_id is not None:
                    members = self._groups.get(signal.group_id)
                    if members is not None:
                        members.discard(signal.signal_id)
                        if not members:
                            del self._groups[signal.group_id]

        if stale:
            logger.debug("inactive_signals_purged", count=len(stale), before=before.isoformat())
        return len(stale)

    # ── internals ─────────────────────────────────────────────────────

    def _close(
        self,
        state: SignalState,
        now: datetime,
        *,
        subject: str | None,
        signal_id: str | None,
    ) -> list[Signal]:
        if (subject is None) == (signal_id is None):
            raise ValueError("Provide exactly one of subject or signal_id")

        with self._lock:
            self._sweep(now)

            if signal_id is not None:
                targets = {signal_id} if signal_id in self._signals else set()
            else:
                targets = set(self._by_subject.get(subject, set()))

            # Closing one member closes its whole group.
            for sid in list(targets):
                group_id = self._signals[sid].group_id
                if group_id is not None:
                    targets |= self._groups.get(group_id, set())

            closed = self._transition(targets, state, now)

        if closed:
            logger.info(
                "signals_closed",
                state=state.value,
                subject=subject,
                signal_id=signal_id,
                count=len(closed),
                at=now.isoformat(),
            )
        return closed

    def _transition(
        self, ids: Iterable[str], state: SignalState, now: datetime,
    ) -> list[Signal]:
        """Close every still-active signal in ``ids``.  Caller holds the lock."""
        changed: list[Signal] = []
        for sid in ids:
            signal = self._signals[sid]
            if signal.state is not SignalState.ACTIVE:
                continue
            closed = signal.close(state, now)
            self._signals[sid] = closed
            changed.append(closed)
        return changed

    def _sweep(self, now: datetime) -> None:
        """Mark lapsed signals EXPIRED and settle conflicting groups.  Caller holds the lock."""
        for sid, signal in list(self._signals.items()):
            if signal.state is SignalState.ACTIVE and signal.expires_at <= now:
                self._signals[sid] = signal.model_copy(update={"state": SignalState.EXPIRED})
                if signal.group_id is not None:
                    self._dirty_groups.add(signal.group_id)

        for group_id in sorted(self._dirty_groups):
            members = [self._signals[sid] for sid in self._groups.get(group_id, set())]
            states = {m.state for m in members}
            if len(states) > 1:
                conflict = ConflictingGroupState(
                    group_id, tuple(sorted(s.value for s in states)),
                )
                logger.warning(
                    "signal_group_conflict",
                    group_id=group_id,
                    states=conflict.states,
                    error=str(conflict),
                    resolution="cancel_group",
                )
                self._transition((m.signal_id for m in members), SignalState.CANCELED, now)
        self._dirty_groups.clear()


def latest_per_source(signals: Iterable[Signal]) -> list[Signal]:
    """Keep the most recently generated signal per ``source_id``.

    Ties on ``generated_at`` go to the later signal in iteration order.
    """
    latest: dict[str, Signal] = {}
    for signal in signals:
        current = latest.get(signal.source_id)
        if current is None or signal.generated_at >= current.generated_at:
            latest[signal.source_id] = signal
    return list(latest.values())
