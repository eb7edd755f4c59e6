"""Target construction: convert active signals into position-size targets."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

import structlog

from tradeflow.core.errors import MissingPriceData, UnsupportedSizingMode
from tradeflow.orchestrator.models import (
    AccountState,
    ConstructionResult,
    PortfolioBias,
    SizingMode,
    SkippedSubject,
    SkipReason,
    Target,
    UniverseChange,
    quantity_for_fraction,
)
from tradeflow.orchestrator.weighting import WeightingStrategy
from tradeflow.signals.signal import Signal

logger = structlog.get_logger(__name__)

ShouldCreateTarget = Callable[[Signal, AccountState], bool]


def always_create(signal: Signal, account: AccountState) -> bool:
    return True


def requires_price(signal: Signal, account: AccountState) -> bool:
    """Exclude subjects the account has no price for yet."""
    return account.has_price(signal.subject)


@dataclass
class SubjectState:
    """Per-subject memory of the construction engine."""

    last_fraction: float | None = None


class TargetConstructionEngine:
    """Turns active signals into one target per signaled subject.

    Subjects without an active signal get no target here; closing them out
    is the risk chain's (or the execution stage's) call.
    """

    def __init__(
        self,
        weighting: WeightingStrategy,
        *,
        bias: PortfolioBias = PortfolioBias.LONG_SHORT,
        multi_source: bool = False,
        sizing_mode: SizingMode = SizingMode.QUANTITY,
        churn_tolerance: float | None = None,
        cash_buffer_pct: float = 0.0,
        should_create_target: ShouldCreateTarget | None = None,
    ) -> None:
        self.weighting = weighting
        self.bias = bias
        self.multi_source = multi_source
        self.sizing_mode = sizing_mode
        self.churn_tolerance = churn_tolerance
        self.cash_buffer_pct = cash_buffer_pct
        self.should_create_target = should_create_target or always_create
        self._subjects: dict[str, SubjectState] = {}

    # ── universe ──────────────────────────────────────────────────────

    def on_universe_change(self, change: UniverseChange) -> None:
        for subject in change.added:
            self._subjects.setdefault(subject, SubjectState())
        for subject in change.removed:
            self._subjects.pop(subject, None)

    def subject_state(self, subject: str) -> SubjectState | None:
        return self._subjects.get(subject)

    def reset_subject(self, subject: str) -> None:
        """Forget the last sized fraction, e.g. after a risk-driven exit."""
        state = self._subjects.get(subject)
        if state is not None:
            state.last_fraction = None

    def checkpoint(self) -> dict[str, SubjectState]:
        """Copy of the per-subject state, for :meth:`restore` after a failed pass."""
        return {s: replace(st) for s, st in self._subjects.items()}

    def restore(self, checkpoint: dict[str, SubjectState]) -> None:
        self._subjects = {s: replace(st) for s, st in checkpoint.items()}

    # ── construction ──────────────────────────────────────────────────

    def construct_targets(
        self,
        active_signals: Iterable[Signal],
        account: AccountState,
    ) -> ConstructionResult:
        """Run the construction steps for one reconciliation pass.

        Steps:
            1. Drop signals rejected by ``should_create_target``.
            2. Group by subject (latest signal only unless multi-source).
            3. Ask the weighting strategy for a signed fraction per subject.
            4. Clamp fractions to the portfolio bias.
            5. Size fractions into lot-rounded quantities.

        Per-subject failures (no price, unsupported sizing) are logged and
        recorded in ``skipped``; they never abort the pass.

        Updates per-subject churn state.  Callers that may abandon the pass
        afterwards take a :meth:`checkpoint` first.
        """
        skipped: list[SkippedSubject] = []

        # ── Step 1: filter ───────────────────────────────────────────
        kept: list[Signal] = []
        filtered: set[str] = set()
        for signal in active_signals:
            if self.should_create_target(signal, account):
                kept.append(signal)
            else:
                filtered.add(signal.subject)

        # ── Step 2: group ────────────────────────────────────────────
        groups = self._group(kept)
        for subject in sorted(filtered - groups.keys()):
            skipped.append(SkippedSubject(
                subject=subject,
                reason=SkipReason.FILTERED,
                detail="Rejected by should_create_target",
            ))

        # ── Step 3: weight ───────────────────────────────────────────
        fractions = self.weighting.target_fractions(groups)

        # ── Steps 4-5: bias + sizing ─────────────────────────────────
        targets: list[Target] = []
        applied: dict[str, float] = {}
        suppressed: set[str] = set()
        for subject in sorted(groups):
            if subject not in fractions:
                skipped.append(SkippedSubject(
                    subject=subject,
                    reason=SkipReason.NO_FRACTION,
                    detail=f"{self.weighting.name} produced no fraction",
                ))
                continue

            fraction = self._apply_bias(fractions[subject])
            state = self._subjects.setdefault(subject, SubjectState())

            if (
                self.churn_tolerance is not None
                and state.last_fraction is not None
                and abs(fraction - state.last_fraction) <= self.churn_tolerance
            ):
                skipped.append(SkippedSubject(
                    subject=subject,
                    reason=SkipReason.CHURN_SUPPRESSED,
                    detail=(
                        f"fraction={fraction:.6f} within {self.churn_tolerance} "
                        f"of previous {state.last_fraction:.6f}"
                    ),
                ))
                suppressed.add(subject)
                continue

            try:
                target = self._size(subject, fraction, account, groups[subject])
            except MissingPriceData as exc:
                logger.warning("target_skipped_missing_price", subject=subject)
                skipped.append(SkippedSubject(
                    subject=subject, reason=SkipReason.MISSING_PRICE_DATA, detail=str(exc),
                ))
                continue
            except UnsupportedSizingMode as exc:
                logger.warning(
                    "target_skipped_sizing_mode",
                    subject=subject,
                    sizing_mode=self.sizing_mode.value,
                )
                skipped.append(SkippedSubject(
                    subject=subject, reason=SkipReason.UNSUPPORTED_SIZING_MODE, detail=str(exc),
                ))
                continue

            state.last_fraction = fraction
            applied[subject] = fraction
            targets.append(target)

        # Churn is measured against the previous target, so a subject that
        # produced none this pass starts fresh.
        for subject, state in self._subjects.items():
            if subject not in applied and subject not in suppressed:
                state.last_fraction = None

        logger.info(
            "targets_constructed",
            signals=len(kept),
            subjects=len(groups),
            targets=len(targets),
            skipped=len(skipped),
            weighting=self.weighting.name,
            bias=self.bias.value,
        )

        return ConstructionResult(
            targets=tuple(targets),
            skipped=tuple(skipped),
            fractions=applied,
        )

    # ── internals ─────────────────────────────────────────────────────

    def _group(self, signals: list[Signal]) -> dict[str, list[Signal]]:
        grouped: dict[str, list[Signal]] = defaultdict(list)
        for signal in signals:
            grouped[signal.subject].append(signal)
        if self.multi_source:
            return dict(grouped)
        return {
            subject: [max(sigs, key=lambda s: (s.generated_at, s.signal_id))]
            for subject, sigs in grouped.items()
        }

    def _apply_bias(self, fraction: float) -> float:
        if self.bias is PortfolioBias.LONG:
            return max(fraction, 0.0)
        if self.bias is PortfolioBias.SHORT:
            return min(fraction, 0.0)
        return fraction

    def _size(
        self,
        subject: str,
        fraction: float,
        account: AccountState,
        signals: list[Signal],
    ) -> Target:
        annotation = (
            f"fraction={fraction:.4f}, signals={len(signals)}, "
            f"sources={','.join(sorted({s.source_id for s in signals}))}"
        )
        if self.sizing_mode is SizingMode.PERCENT:
            return Target.from_percent(
                subject,
                fraction,
                account,
                cash_buffer_pct=self.cash_buffer_pct,
                annotation=annotation,
            )
        quantity = quantity_for_fraction(
            subject, fraction, account, cash_buffer_pct=self.cash_buffer_pct,
        )
        return Target(subject=subject, quantity=quantity, percent=fraction, annotation=annotation)
