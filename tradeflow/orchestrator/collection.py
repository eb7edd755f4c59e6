"""Target collection: the canonical set of outstanding targets."""

from __future__ import annotations

import math
import threading
from collections.abc import Iterable, Iterator

import structlog

from tradeflow.orchestrator.models import AccountState, Target

logger = structlog.get_logger(__name__)

# Quantities closer than this are the same quantity.
_QTY_EPSILON = 1e-9


class TargetCollection:
    """Outstanding targets keyed by subject; a later add replaces the earlier one.

    Only the coordinator thread mutates the collection.  Anything else
    should read through :meth:`snapshot` (iteration already does).
    """

    def __init__(self, targets: Iterable[Target] = ()) -> None:
        self._targets: dict[str, Target] = {}
        self._lock = threading.Lock()
        self.add_range(targets)

    # ── mutation ──────────────────────────────────────────────────────

    def add(self, target: Target) -> None:
        with self._lock:
            self._targets[target.subject] = target

    def add_range(self, targets: Iterable[Target]) -> None:
        with self._lock:
            for target in targets:
                self._targets[target.subject] = target

    def remove(self, subject: str) -> Target | None:
        with self._lock:
            return self._targets.pop(subject, None)

    def clear(self) -> None:
        with self._lock:
            self._targets.clear()

    def clear_fulfilled(self, account: AccountState) -> list[Target]:
        """Drop targets already met by holdings plus open orders.

        Subjects without market data are left alone: they are neither
        fulfilled nor orderable yet.
        """
        with self._lock:
            fulfilled = [
                t for t in self._targets.values()
                if account.has_price(t.subject) and _is_fulfilled(t, account)
            ]
            for target in fulfilled:
                del self._targets[target.subject]

        if fulfilled:
            logger.info(
                "targets_fulfilled",
                subjects=sorted(t.subject for t in fulfilled),
                remaining=len(self._targets),
            )
        return fulfilled

    # ── queries ───────────────────────────────────────────────────────

    def contains(self, target: Target) -> bool:
        """True if this exact target is the live one for its subject."""
        return self._targets.get(target.subject) == target

    def contains_subject(self, subject: str) -> bool:
        return subject in self._targets

    def get(self, subject: str) -> Target | None:
        return self._targets.get(subject)

    def snapshot(self) -> tuple[Target, ...]:
        with self._lock:
            return tuple(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)

    def __iter__(self) -> Iterator[Target]:
        return iter(self.snapshot())

    def __contains__(self, subject: object) -> bool:
        return subject in self._targets

    # ── ordering ──────────────────────────────────────────────────────

    def order_by_margin_impact(self, account: AccountState) -> list[Target]:
        """Sequence targets so closing trades go before opening trades.

        Position-reducing targets come first, then position-increasing
        targets by descending estimated order value.  Subjects without
        price data and targets already fulfilled are left out.
        """
        reducing: list[tuple[float, str, Target]] = []
        increasing: list[tuple[float, str, Target]] = []

        for target in self.snapshot():
            if not account.has_price(target.subject):
                continue
            existing = _existing_quantity(target.subject, account)
            delta = target.quantity - existing
            if abs(delta) <= _QTY_EPSILON:
                continue

            value = abs(delta) * account.price(target.subject) * account.multiplier(target.subject)
            entry = (value, target.subject, target)
            if existing != 0 and abs(target.quantity) < abs(existing):
                reducing.append(entry)
            else:
                increasing.append(entry)

        # Subject name breaks value ties so the order is deterministic.
        reducing.sort(key=lambda e: (-e[0], e[1]))
        increasing.sort(key=lambda e: (-e[0], e[1]))
        return [e[2] for e in reducing] + [e[2] for e in increasing]


def _existing_quantity(subject: str, account: AccountState) -> float:
    return account.holdings(subject) + account.open_order_quantity(subject)


def _is_fulfilled(target: Target, account: AccountState) -> bool:
    return math.isclose(
        _existing_quantity(target.subject, account), target.quantity, abs_tol=_QTY_EPSILON,
    )
