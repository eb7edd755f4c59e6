"""Exception hierarchy: every error in the engine has a typed home."""

from __future__ import annotations


class TradingError(Exception):
    """Base for all application errors."""


class ConfigError(TradingError):
    """Bad config, missing keys, invalid values."""


# ── Signal errors ──────────────────────────────────────────────────────


class DuplicateSignal(TradingError):
    """A signal with the same id is already stored. Programmer error."""

    def __init__(self, signal_id: str) -> None:
        super().__init__(f"Signal {signal_id!r} already exists")
        self.signal_id = signal_id


class ConflictingGroupState(TradingError):
    """Members of one signal group were found in different states.

    Never raised out of the store: it is logged and the group is canceled.
    """

    def __init__(self, group_id: str, states: tuple[str, ...]) -> None:
        super().__init__(f"Group {group_id!r} has mixed states {states}")
        self.group_id = group_id
        self.states = states


# ── Sizing / reconciliation errors ─────────────────────────────────────


class UnsupportedSizingMode(TradingError):
    """Percentage sizing requested on an account without margin capability."""

    def __init__(self, subject: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Percentage sizing for {subject!r} requires a margin account"
        )
        self.subject = subject


class MissingPriceData(TradingError):
    """No usable price for a subject yet."""

    def __init__(self, subject: str) -> None:
        super().__init__(f"No price data for {subject!r}")
        self.subject = subject


class AccountStateUnavailable(TradingError):
    """The account state provider failed. Aborts the current timestep only."""
