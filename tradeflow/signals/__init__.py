"""Signals: the signal model and the store that tracks signal lifecycles."""

from tradeflow.signals.signal import (
    ONE_UNIT,
    Direction,
    Signal,
    SignalKind,
    SignalState,
    compute_expiry,
)
from tradeflow.signals.store import SignalStore, latest_per_source

__all__ = [
    "ONE_UNIT",
    "Direction",
    "Signal",
    "SignalKind",
    "SignalState",
    "SignalStore",
    "compute_expiry",
    "latest_per_source",
]
