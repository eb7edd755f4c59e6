"""Shared test helpers: account snapshot builders."""

from __future__ import annotations

from datetime import datetime, timezone

from tradeflow.orchestrator.models import (
    AccountState,
    MarketSnapshot,
    OpenOrderSnapshot,
    PositionSnapshot,
)

T0 = datetime(2024, 1, 10, 16, 0, tzinfo=timezone.utc)


def build_account(
    *,
    total_value: float = 100_000.0,
    prices: dict[str, float] | None = None,
    lot_sizes: dict[str, float] | None = None,
    holdings: dict[str, float] | None = None,
    entry_prices: dict[str, float] | None = None,
    open_orders: dict[str, float] | None = None,
    margin_enabled: bool = True,
    as_of_ts: datetime = T0,
) -> AccountState:
    """Account snapshot from plain dicts keyed by subject."""
    prices = prices or {}
    lot_sizes = lot_sizes or {}
    entry_prices = entry_prices or {}
    return AccountState(
        as_of_ts=as_of_ts,
        total_value=total_value,
        cash=total_value,
        margin_enabled=margin_enabled,
        positions=tuple(
            PositionSnapshot(
                subject=s,
                quantity=q,
                avg_entry_price=entry_prices.get(s, prices.get(s, 0.0)),
            )
            for s, q in (holdings or {}).items()
        ),
        open_orders=tuple(
            OpenOrderSnapshot(order_id=f"ord-{s}", subject=s, quantity=q)
            for s, q in (open_orders or {}).items()
        ),
        markets=tuple(
            MarketSnapshot(subject=s, price=p, lot_size=lot_sizes.get(s, 1.0))
            for s, p in prices.items()
        ),
    )
