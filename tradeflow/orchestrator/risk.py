"""Risk adjustment chain: ordered adjusters that revise targets.

Each adjuster returns only the targets it wants to change or add.  The
chain feeds every stage the construction targets overwritten by all
earlier stages' output, and merges outputs by subject, so the last stage
to speak about a subject wins.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Any, Protocol, runtime_checkable

import structlog

from tradeflow.orchestrator.models import (
    AccountState,
    ChainResult,
    Target,
    UniverseChange,
    quantity_for_fraction,
)

logger = structlog.get_logger(__name__)


class RiskAdjuster(Protocol):
    """One stage of the chain."""

    name: str

    def adjust(self, targets: Sequence[Target], account: AccountState) -> list[Target]: ...


@runtime_checkable
class UniverseAware(Protocol):
    """Stages that keep per-subject state implement this as well."""

    def on_universe_change(self, change: UniverseChange) -> None: ...


@runtime_checkable
class Checkpointable(Protocol):
    """Stages whose state a failed reconciliation pass must not keep."""

    def checkpoint(self) -> Any: ...

    def restore(self, checkpoint: Any) -> None: ...


def _liquidate(subject: str, reason: str) -> Target:
    return Target(subject=subject, quantity=0.0, annotation=reason)


# ── Chain ────────────────────────────────────────────────────────────


class RiskChain:
    """Runs adjusters in order and merges their partial outputs."""

    def __init__(self, adjusters: Iterable[RiskAdjuster] = ()) -> None:
        self.adjusters: list[RiskAdjuster] = list(adjusters)

    def __len__(self) -> int:
        return len(self.adjusters)

    def on_universe_change(self, change: UniverseChange) -> None:
        for adjuster in self.adjusters:
            if isinstance(adjuster, UniverseAware):
                adjuster.on_universe_change(change)

    def checkpoint(self) -> list[tuple[Checkpointable, Any]]:
        return [
            (adjuster, adjuster.checkpoint())
            for adjuster in self.adjusters
            if isinstance(adjuster, Checkpointable)
        ]

    def restore(self, checkpoint: list[tuple[Checkpointable, Any]]) -> None:
        for adjuster, state in checkpoint:
            adjuster.restore(state)

    def run(self, targets: Sequence[Target], account: AccountState) -> ChainResult:
        """Apply every stage to ``targets``.

        A stage that raises is logged and skipped; the remaining stages
        still run against the view built so far.
        """
        view: dict[str, Target] = {t.subject: t for t in targets}
        overrides: dict[str, Target] = {}
        failed: list[str] = []

        for adjuster in self.adjusters:
            try:
                emitted = adjuster.adjust(tuple(view.values()), account)
            except Exception as exc:
                failed.append(adjuster.name)
                logger.warning(
                    "risk_stage_failed",
                    stage=adjuster.name,
                    error_type=type(exc).__name__,
                    error_message=str(exc),
                )
                continue

            for target in emitted:
                view[target.subject] = target
                overrides[target.subject] = target
            if emitted:
                logger.info(
                    "risk_stage_adjusted",
                    stage=adjuster.name,
                    subjects=sorted(t.subject for t in emitted),
                )

        liquidated = tuple(sorted(s for s, t in overrides.items() if t.is_flat))
        return ChainResult(
            targets=tuple(view.values()),
            overrides=tuple(overrides.values()),
            liquidated=liquidated,
            failed_stages=tuple(failed),
        )


# ── Adjusters ────────────────────────────────────────────────────────


class MaximumDrawdownPerSubject:
    """Liquidate any holding whose open loss exceeds ``max_drawdown_pct``."""

    name = "max_drawdown_per_subject"

    def __init__(self, max_drawdown_pct: float = 0.05) -> None:
        self.max_drawdown_pct = abs(max_drawdown_pct)

    def adjust(self, targets: Sequence[Target], account: AccountState) -> list[Target]:
        out: list[Target] = []
        for position in account.positions:
            ret = account.unrealized_return(position.subject)
            if ret is not None and ret < -self.max_drawdown_pct:
                out.append(_liquidate(
                    position.subject, f"{self.name}: return {ret:.2%}",
                ))
        return out


class MaximumUnrealizedProfitPerSubject:
    """Take profit on any holding whose open gain exceeds ``max_profit_pct``."""

    name = "max_unrealized_profit_per_subject"

    def __init__(self, max_profit_pct: float = 0.05) -> None:
        self.max_profit_pct = abs(max_profit_pct)

    def adjust(self, targets: Sequence[Target], account: AccountState) -> list[Target]:
        out: list[Target] = []
        for position in account.positions:
            ret = account.unrealized_return(position.subject)
            if ret is not None and ret > self.max_profit_pct:
                out.append(_liquidate(
                    position.subject, f"{self.name}: return {ret:.2%}",
                ))
        return out


class MaximumPositionSize:
    """Cap every target at ``max_position_pct`` of account value."""

    name = "max_position_size"

    def __init__(self, max_position_pct: float = 0.05) -> None:
        self.max_position_pct = abs(max_position_pct)

    def adjust(self, targets: Sequence[Target], account: AccountState) -> list[Target]:
        if account.total_value <= 0:
            return []
        out: list[Target] = []
        for target in targets:
            if target.is_flat or not account.has_price(target.subject):
                continue
            value = abs(target.quantity) * account.price(target.subject) * account.multiplier(
                target.subject,
            )
            if value / account.total_value <= self.max_position_pct:
                continue
            sign = 1.0 if target.quantity > 0 else -1.0
            capped = quantity_for_fraction(target.subject, sign * self.max_position_pct, account)
            out.append(Target(
                subject=target.subject,
                quantity=capped,
                percent=sign * self.max_position_pct,
                annotation=f"{self.name}: capped from {target.quantity:g}",
            ))
        return out


class MaximumPortfolioDrawdown:
    """Liquidate everything once account value falls ``max_drawdown_pct`` below its peak.

    With ``trailing=False`` the peak is the first value seen.  After a
    liquidation the reference resets to the current value.
    """

    name = "max_portfolio_drawdown"

    def __init__(self, max_drawdown_pct: float = 0.05, trailing: bool = False) -> None:
        self.max_drawdown_pct = abs(max_drawdown_pct)
        self.trailing = trailing
        self._peak: float | None = None

    def checkpoint(self) -> float | None:
        return self._peak

    def restore(self, checkpoint: float | None) -> None:
        self._peak = checkpoint

    def adjust(self, targets: Sequence[Target], account: AccountState) -> list[Target]:
        value = account.total_value
        if self._peak is None or (self.trailing and value > self._peak):
            self._peak = value
        if self._peak <= 0:
            return []

        drawdown = 1.0 - value / self._peak
        if drawdown <= self.max_drawdown_pct:
            return []

        logger.warning(
            "portfolio_drawdown_breached",
            drawdown=round(drawdown, 6),
            limit=self.max_drawdown_pct,
            peak=self._peak,
            value=value,
        )
        self._peak = value
        subjects = {p.subject for p in account.positions if p.quantity != 0}
        subjects |= {t.subject for t in targets}
        return [_liquidate(s, f"{self.name}: drawdown {drawdown:.2%}") for s in sorted(subjects)]


@dataclass
class _Extreme:
    """Best price seen since a holding was opened, and the side it was on."""

    side: int
    price: float


class TrailingStopPerSubject:
    """Liquidate a holding once price retreats ``trailing_pct`` from its best level."""

    name = "trailing_stop_per_subject"

    def __init__(self, trailing_pct: float = 0.05) -> None:
        self.trailing_pct = abs(trailing_pct)
        self._extremes: dict[str, _Extreme] = {}

    def on_universe_change(self, change: UniverseChange) -> None:
        for subject in change.removed:
            self._extremes.pop(subject, None)

    def checkpoint(self) -> dict[str, _Extreme]:
        return {s: replace(e) for s, e in self._extremes.items()}

    def restore(self, checkpoint: dict[str, _Extreme]) -> None:
        self._extremes = {s: replace(e) for s, e in checkpoint.items()}

    def adjust(self, targets: Sequence[Target], account: AccountState) -> list[Target]:
        out: list[Target] = []
        held = set()
        for position in account.positions:
            subject = position.subject
            if position.quantity == 0 or not account.has_price(subject):
                continue
            held.add(subject)
            price = account.price(subject)
            side = 1 if position.quantity > 0 else -1

            extreme = self._extremes.get(subject)
            if extreme is None or extreme.side != side:
                extreme = _Extreme(side=side, price=price)
                self._extremes[subject] = extreme
            elif side > 0:
                extreme.price = max(extreme.price, price)
            else:
                extreme.price = min(extreme.price, price)

            retreat = side * (extreme.price - price) / extreme.price
            if retreat > self.trailing_pct:
                out.append(_liquidate(subject, f"{self.name}: retreat {retreat:.2%}"))
                del self._extremes[subject]

        # Forget subjects no longer held.
        for subject in set(self._extremes) - held:
            del self._extremes[subject]
        return out
