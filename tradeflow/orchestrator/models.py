"""Orchestrator data models: frozen Pydantic types for the reconciliation pipeline."""

from __future__ import annotations

import math
from collections.abc import Iterable
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from tradeflow.core.errors import MissingPriceData, UnsupportedSizingMode

# ── Enums ────────────────────────────────────────────────────────────


class PortfolioBias(str, Enum):
    """Which side of the book targets may take."""

    LONG = "long"
    SHORT = "short"
    LONG_SHORT = "long_short"


class SizingMode(str, Enum):
    """How a target fraction is resolved into units."""

    QUANTITY = "quantity"
    PERCENT = "percent"


class SkipReason(str, Enum):
    """Why a subject produced no target in a reconciliation pass."""

    FILTERED = "filtered"
    MISSING_PRICE_DATA = "missing_price_data"
    UNSUPPORTED_SIZING_MODE = "unsupported_sizing_mode"
    CHURN_SUPPRESSED = "churn_suppressed"
    NO_FRACTION = "no_fraction"


# ── Account state (input) ────────────────────────────────────────────


class PositionSnapshot(BaseModel):
    """A single holding as of a point in time."""

    model_config = ConfigDict(frozen=True)

    subject: str
    quantity: float  # signed: positive=long, negative=short
    avg_entry_price: float = 0.0


class OpenOrderSnapshot(BaseModel):
    """Unfilled remainder of an open order."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    subject: str
    quantity: float  # signed remaining quantity: positive=buy, negative=sell


class MarketSnapshot(BaseModel):
    """Latest price and trading increments for a subject."""

    model_config = ConfigDict(frozen=True)

    subject: str
    price: float = Field(gt=0.0)
    lot_size: float = Field(default=1.0, gt=0.0)
    multiplier: float = Field(default=1.0, gt=0.0)


class AccountState(BaseModel):
    """Snapshot of holdings, open orders, prices, and account value.

    Built externally by the host and passed IN to the pipeline.  The
    engine never mutates it and never calls a broker.
    """

    model_config = ConfigDict(frozen=True)

    as_of_ts: datetime
    total_value: float
    cash: float = 0.0
    margin_enabled: bool = False
    positions: tuple[PositionSnapshot, ...] = ()
    open_orders: tuple[OpenOrderSnapshot, ...] = ()
    markets: tuple[MarketSnapshot, ...] = ()

    @property
    def position_map(self) -> dict[str, PositionSnapshot]:
        """Lookup positions by subject."""
        return {p.subject: p for p in self.positions}

    @property
    def market_map(self) -> dict[str, MarketSnapshot]:
        """Lookup market data by subject."""
        return {m.subject: m for m in self.markets}

    def holdings(self, subject: str) -> float:
        position = self.position_map.get(subject)
        return position.quantity if position is not None else 0.0

    def open_order_quantity(self, subject: str) -> float:
        return sum(o.quantity for o in self.open_orders if o.subject == subject)

    def has_price(self, subject: str) -> bool:
        return subject in self.market_map

    def price(self, subject: str) -> float:
        """Latest price.  Raises ``MissingPriceData`` if none is known."""
        market = self.market_map.get(subject)
        if market is None:
            raise MissingPriceData(subject)
        return market.price

    def lot_size(self, subject: str) -> float:
        market = self.market_map.get(subject)
        return market.lot_size if market is not None else 1.0

    def multiplier(self, subject: str) -> float:
        market = self.market_map.get(subject)
        return market.multiplier if market is not None else 1.0

    def unrealized_return(self, subject: str) -> float | None:
        """Open P&L of the holding as a signed fraction of its entry price."""
        position = self.position_map.get(subject)
        market = self.market_map.get(subject)
        if position is None or market is None or position.quantity == 0:
            return None
        if position.avg_entry_price <= 0:
            return None
        change = (market.price - position.avg_entry_price) / position.avg_entry_price
        return change if position.quantity > 0 else -change


# ── Target ───────────────────────────────────────────────────────────


def round_to_lot(quantity: float, lot_size: float) -> float:
    """Truncate ``quantity`` toward zero to a whole number of lots."""
    if lot_size <= 0:
        raise ValueError(f"lot_size must be positive, got {lot_size}")
    # Nudge away from zero so 2.9999999 lots still counts as 3.
    lots = math.trunc(quantity / lot_size + math.copysign(1e-9, quantity))
    return round(lots * lot_size, 10) + 0.0


def quantity_for_fraction(
    subject: str,
    fraction: float,
    account: AccountState,
    *,
    cash_buffer_pct: float = 0.0,
) -> float:
    """Units of ``subject`` worth ``fraction`` of the account, in whole lots.

    Raises ``MissingPriceData`` when the subject has no price.
    """
    price = account.price(subject)
    value = account.total_value * (1.0 - cash_buffer_pct) * fraction
    raw = value / (price * account.multiplier(subject))
    return round_to_lot(raw, account.lot_size(subject))


class Target(BaseModel):
    """Desired position size for a single subject."""

    model_config = ConfigDict(frozen=True)

    subject: str
    quantity: float  # signed units
    percent: float | None = None  # fraction of account value it was sized from
    annotation: str = ""

    @classmethod
    def from_percent(
        cls,
        subject: str,
        percent: float,
        account: AccountState,
        *,
        cash_buffer_pct: float = 0.0,
        annotation: str = "",
    ) -> "Target":
        """Resolve a percentage of account value into a lot-rounded target.

        Percentage targets lean on the account's margin model to be
        resolvable at order time, so cash accounts are refused with
        ``UnsupportedSizingMode``.
        """
        if not account.margin_enabled:
            raise UnsupportedSizingMode(subject)
        quantity = quantity_for_fraction(
            subject, percent, account, cash_buffer_pct=cash_buffer_pct,
        )
        return cls(subject=subject, quantity=quantity, percent=percent, annotation=annotation)

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0


# ── Universe ─────────────────────────────────────────────────────────


class UniverseChange(BaseModel):
    """Subjects added to and removed from the tradable universe."""

    model_config = ConfigDict(frozen=True)

    added: frozenset[str] = frozenset()
    removed: frozenset[str] = frozenset()

    @classmethod
    def diff(cls, current: Iterable[str], new: Iterable[str]) -> "UniverseChange":
        current_set, new_set = set(current), set(new)
        return cls(added=frozenset(new_set - current_set), removed=frozenset(current_set - new_set))

    @property
    def is_empty(self) -> bool:
        return not self.added and not self.removed


# ── Audit records / results ──────────────────────────────────────────


class SkippedSubject(BaseModel):
    """Record of a subject that produced no target."""

    model_config = ConfigDict(frozen=True)

    subject: str
    reason: SkipReason
    detail: str = ""


class ConstructionResult(BaseModel):
    """Output of target construction: targets plus the skip audit trail."""

    model_config = ConfigDict(frozen=True)

    targets: tuple[Target, ...] = ()
    skipped: tuple[SkippedSubject, ...] = ()
    fractions: dict[str, float] = Field(default_factory=dict)


class ChainResult(BaseModel):
    """Output of the risk chain."""

    model_config = ConfigDict(frozen=True)

    targets: tuple[Target, ...] = Field(
        default=(), description="Construction targets with every override applied",
    )
    overrides: tuple[Target, ...] = Field(
        default=(), description="Only the targets emitted by risk stages, last stage wins",
    )
    liquidated: tuple[str, ...] = Field(
        default=(), description="Subjects a stage set to zero quantity",
    )
    failed_stages: tuple[str, ...] = ()


class StepResult(BaseModel):
    """What one coordinator timestep did."""

    model_config = ConfigDict(frozen=True)

    as_of_ts: datetime
    reconciled: bool = False
    due_reasons: tuple[str, ...] = ()
    ordered_targets: tuple[Target, ...] = Field(
        default=(), description="Margin-impact ordered sequence handed to execution",
    )
    skipped: tuple[SkippedSubject, ...] = ()
    canceled_subjects: tuple[str, ...] = ()
    universe_change: UniverseChange | None = None
    error: str | None = None
    elapsed_ms: float = 0.0
