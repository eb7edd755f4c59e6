"""Pipeline coordinator: the per-timestep reconciliation cycle."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog

from tradeflow.core.calendar import TradingCalendar
from tradeflow.core.errors import AccountStateUnavailable, DuplicateSignal
from tradeflow.orchestrator.collection import TargetCollection
from tradeflow.orchestrator.construction import TargetConstructionEngine
from tradeflow.orchestrator.models import (
    AccountState,
    SkippedSubject,
    StepResult,
    Target,
    UniverseChange,
)
from tradeflow.orchestrator.risk import RiskChain
from tradeflow.orchestrator.scheduler import RebalanceScheduler
from tradeflow.orchestrator.universe import BackgroundUniverseSelection
from tradeflow.signals.signal import Direction, Signal
from tradeflow.signals.store import SignalStore

logger = structlog.get_logger(__name__)

AccountProvider = Callable[[], AccountState]


class ExecutionConsumer(Protocol):
    """Receives the margin-impact ordered targets and places orders."""

    def execute(self, targets: Sequence[Target], account: AccountState) -> None: ...


class PipelineCoordinator:
    """Wires the stages together and owns the universe.

    Every stage is constructed by the caller and handed in, so each one
    can be tested on its own.  All mutation of the signal store and the
    target collection happens on the thread that calls :meth:`step`,
    :meth:`submit_signals` and :meth:`on_universe_change`.
    """

    def __init__(
        self,
        *,
        engine: TargetConstructionEngine,
        account_provider: AccountProvider,
        store: SignalStore | None = None,
        scheduler: RebalanceScheduler | None = None,
        risk_chain: RiskChain | None = None,
        collection: TargetCollection | None = None,
        execution: ExecutionConsumer | None = None,
        universe_selection: BackgroundUniverseSelection | None = None,
        universe: Iterable[str] = (),
        signal_retention: timedelta | None = None,
        calendar: TradingCalendar | None = None,
        subject_calendars: Mapping[str, TradingCalendar] | None = None,
    ) -> None:
        self.engine = engine
        self.account_provider = account_provider
        self.store = store if store is not None else SignalStore()
        self.scheduler = scheduler if scheduler is not None else RebalanceScheduler()
        self.risk_chain = risk_chain if risk_chain is not None else RiskChain()
        self.collection = collection if collection is not None else TargetCollection()
        self.execution = execution
        self.universe_selection = universe_selection
        self.signal_retention = signal_retention
        self.calendar = calendar
        self.subject_calendars: dict[str, TradingCalendar] = dict(subject_calendars or {})
        self._universe: set[str] = set()

        initial = UniverseChange(added=frozenset(universe))
        if not initial.is_empty:
            self.on_universe_change(initial)

    @property
    def universe(self) -> frozenset[str]:
        return frozenset(self._universe)

    def calendar_for(self, subject: str) -> TradingCalendar | None:
        """Session calendar used to count whole-day signal durations for ``subject``."""
        return self.subject_calendars.get(subject, self.calendar)

    def create_signal(
        self,
        subject: str,
        direction: Direction,
        generated_at: datetime,
        **fields: Any,
    ) -> Signal:
        """:meth:`Signal.create` with the subject's calendar filled in."""
        fields.setdefault("calendar", self.calendar_for(subject))
        return Signal.create(subject, direction, generated_at, **fields)

    # ── inputs ────────────────────────────────────────────────────────

    def submit_signals(self, signals: Iterable[Signal]) -> list[Signal]:
        """Store signals from producers.  Returns the ones accepted.

        Signals for subjects outside the universe and duplicate ids are
        logged and rejected.
        """
        accepted: list[Signal] = []
        for signal in signals:
            if signal.subject not in self._universe:
                logger.warning(
                    "signal_rejected_unknown_subject",
                    signal_id=signal.signal_id,
                    subject=signal.subject,
                    source_id=signal.source_id,
                )
                continue
            try:
                self.store.add(signal)
            except DuplicateSignal as exc:
                logger.error("signal_rejected_duplicate", signal_id=exc.signal_id)
                continue
            accepted.append(signal)
        return accepted

    def on_universe_change(self, change: UniverseChange) -> None:
        """Broadcast a universe change to every stage, in a fixed order.

        Order:
            1. Signal store purge (and outstanding targets) for removed subjects.
            2. Scheduler universe flag.
            3. Construction per-subject state.
            4. Risk stage per-subject state.
        """
        if change.is_empty:
            return

        for subject in sorted(change.removed):
            self.store.remove_for_subject(subject)
            self.collection.remove(subject)

        self.scheduler.notify_universe_changed(change)
        self.engine.on_universe_change(change)
        self.risk_chain.on_universe_change(change)

        self._universe |= change.added
        self._universe -= change.removed

        logger.info(
            "universe_changed",
            added=sorted(change.added),
            removed=sorted(change.removed),
            size=len(self._universe),
        )

    # ── the cycle ─────────────────────────────────────────────────────

    def step(self, now: datetime) -> StepResult:
        """Execute one timestep.

        Steps:
            0. Apply a finished background universe selection (sync point).
            1. Fetch account state; on failure the timestep is abandoned.
            2. Gather active signals and ask the scheduler.
            3. If due: construct, risk-adjust, merge, cancel signals of
               liquidated subjects, record the pass.
            4. Clear fulfilled targets and hand the margin-impact ordered
               sequence to execution.

        Never raises: pass-level failures are logged and reported in the
        result, and the pass is retried on the next call.
        """
        t0 = time.monotonic()
        step_log = logger.bind(as_of=now.isoformat())

        # ── Step 0: synchronization point ─────────────────────────────
        change: UniverseChange | None = None
        if self.universe_selection is not None:
            change = self.universe_selection.poll(self._universe)
            if change is not None:
                self.on_universe_change(change)

        # ── Step 1: account state ────────────────────────────────────
        try:
            account = self.account_provider()
        except Exception as exc:
            error = AccountStateUnavailable(f"{type(exc).__name__}: {exc}")
            step_log.warning("step_aborted", error=str(error))
            return self._result(now, t0, universe_change=change, error=str(error))

        # ── Step 2: scheduler ────────────────────────────────────────
        active = self.store.get_active(now)
        reasons = self.scheduler.due_reasons(active, now)

        # ── Step 3: reconciliation ───────────────────────────────────
        skipped: tuple[SkippedSubject, ...] = ()
        canceled: tuple[str, ...] = ()
        reconciled = False
        if reasons:
            step_log.info("reconciliation_start", reasons=reasons, active_signals=len(active))
            engine_state = self.engine.checkpoint()
            chain_state = self.risk_chain.checkpoint()
            try:
                skipped, canceled = self._reconcile(now, active, account)
                reconciled = True
            except Exception as exc:
                self.engine.restore(engine_state)
                self.risk_chain.restore(chain_state)
                step_log.error(
                    "reconciliation_failed",
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                return self._result(
                    now, t0,
                    due_reasons=reasons,
                    universe_change=change,
                    error=f"{type(exc).__name__}: {exc}",
                )

        # ── Step 4: fulfilment, ordering, hand-off ───────────────────
        self.collection.clear_fulfilled(account)
        ordered = tuple(self.collection.order_by_margin_impact(account))
        if ordered and self.execution is not None:
            try:
                self.execution.execute(ordered, account)
            except Exception as exc:
                step_log.error(
                    "execution_failed",
                    targets=len(ordered),
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )

        if self.universe_selection is not None:
            self.universe_selection.maybe_submit(now)
        if self.signal_retention is not None:
            self.store.purge_inactive(now - self.signal_retention)

        result = self._result(
            now, t0,
            reconciled=reconciled,
            due_reasons=reasons,
            ordered_targets=ordered,
            skipped=skipped,
            canceled_subjects=canceled,
            universe_change=change,
        )
        step_log.info(
            "step_complete",
            reconciled=reconciled,
            outstanding=len(self.collection),
            ordered=len(ordered),
            elapsed_ms=result.elapsed_ms,
        )
        return result

    def _reconcile(
        self,
        now: datetime,
        active: list[Signal],
        account: AccountState,
    ) -> tuple[tuple[SkippedSubject, ...], tuple[str, ...]]:
        construction = self.engine.construct_targets(active, account)
        chain = self.risk_chain.run(construction.targets, account)

        merged: list[Target] = []
        for target in chain.targets:
            if target.subject not in self._universe and not _closes_exposure(target, account):
                logger.warning("target_dropped_unknown_subject", subject=target.subject)
                continue
            merged.append(target)

        # A risk-driven exit cancels the subject's signals, otherwise the
        # next pass would reopen the position straight away.
        canceled: list[str] = []
        for subject in chain.liquidated:
            self.engine.reset_subject(subject)
            if self.store.cancel(now, subject=subject):
                canceled.append(subject)

        self.collection.add_range(merged)
        self.scheduler.mark_reconciled(now, self.store.get_active(now))

        logger.info(
            "reconciliation_complete",
            constructed=len(construction.targets),
            risk_overrides=len(chain.overrides),
            merged=len(merged),
            canceled_subjects=canceled,
            outstanding=len(self.collection),
        )
        return construction.skipped, tuple(canceled)

    @staticmethod
    def _result(now: datetime, t0: float, **fields: object) -> StepResult:
        elapsed_ms = (time.monotonic() - t0) * 1000
        return StepResult(as_of_ts=now, elapsed_ms=round(elapsed_ms, 2), **fields)


def _closes_exposure(target: Target, account: AccountState) -> bool:
    """Flat target for a subject still held or with orders working."""
    exposure = account.holdings(target.subject) + account.open_order_quantity(target.subject)
    return target.is_flat and exposure != 0
