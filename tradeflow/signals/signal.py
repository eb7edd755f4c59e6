"""Signal: a time-bounded directional prediction for one subject."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

if TYPE_CHECKING:
    from tradeflow.core.calendar import TradingCalendar

# Smallest step datetime can represent. Closing a signal pins its expiry
# one unit before the closing instant.
ONE_UNIT = timedelta(microseconds=1)

_ONE_DAY = timedelta(days=1)


# ── Enums ─────────────────────────────────────────────────────────────


class Direction(int, Enum):
    UP = 1
    FLAT = 0
    DOWN = -1


class SignalKind(str, Enum):
    PRICE = "price"
    VOLATILITY = "volatility"


class SignalState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


# ── Signal ───────────────────────────────────────────────────────────


class Signal(BaseModel):
    """Immutable prediction emitted by a signal source.

    A signal says which way a subject should move and until when the
    prediction holds. It carries no position size; ``weight`` is only a
    hint consumed by weighting strategies that understand it.

    State changes never mutate a signal: :meth:`close` returns a new copy
    and the :class:`~tradeflow.signals.store.SignalStore` keeps the
    current version.
    """

    model_config = ConfigDict(frozen=True)

    subject: str
    direction: Direction
    generated_at: datetime
    expires_at: datetime
    source_id: str = ""
    kind: SignalKind = SignalKind.PRICE
    magnitude: float | None = Field(default=None, description="Expected signed move, percent")
    confidence: float | None = Field(default=None, description="Clamped to [0, 1]")
    weight: float | None = Field(default=None, ge=0.0, description="Desired portfolio fraction")
    group_id: str | None = None
    state: SignalState = SignalState.ACTIVE
    annotation: str = ""
    signal_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    # ── validators ────────────────────────────────────────────────────

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float | None:
        if v is None:
            return None
        return max(0.0, min(1.0, float(v)))

    @model_validator(mode="after")
    def _check_expiry(self) -> "Signal":
        if self.expires_at < self.generated_at:
            raise ValueError(
                f"expires_at {self.expires_at.isoformat()} precedes "
                f"generated_at {self.generated_at.isoformat()}"
            )
        return self

    # ── construction ──────────────────────────────────────────────────

    @classmethod
    def create(
        cls,
        subject: str,
        direction: Direction,
        generated_at: datetime,
        *,
        duration: timedelta | None = None,
        expires_at: datetime | None = None,
        calendar: TradingCalendar | None = None,
        **fields: Any,
    ) -> "Signal":
        """Build a signal from either a ``duration`` or an explicit ``expires_at``.

        Whole-day durations are counted in trading sessions of ``calendar``
        when one is given, so a 10-day signal generated on a Friday spans
        ten sessions rather than ten calendar days. Anything shorter than a
        day, or any duration without a calendar, is plain wall-clock time.
        """
        if (duration is None) == (expires_at is None):
            raise ValueError("Provide exactly one of duration or expires_at")
        if duration is not None:
            expires_at = compute_expiry(generated_at, duration, calendar)
        return cls(
            subject=subject,
            direction=direction,
            generated_at=generated_at,
            expires_at=expires_at,
            **fields,
        )

    # ── lifecycle ─────────────────────────────────────────────────────

    def is_active(self, now: datetime) -> bool:
        return self.state is SignalState.ACTIVE and self.expires_at > now

    def close(self, state: SignalState, now: datetime) -> "Signal":
        """Return a copy in ``state`` with expiry pinned just before ``now``."""
        if state is SignalState.ACTIVE:
            raise ValueError("close() needs a terminal state")
        pinned = max(self.generated_at, now - ONE_UNIT)
        return self.model_copy(update={"state": state, "expires_at": pinned})


def compute_expiry(
    generated_at: datetime,
    duration: timedelta,
    calendar: TradingCalendar | None = None,
) -> datetime:
    """Expiry instant for a signal generated at ``generated_at`` lasting ``duration``."""
    if duration < timedelta(0):
        raise ValueError(f"duration must be non-negative, got {duration}")
    if calendar is not None and duration >= _ONE_DAY and duration % _ONE_DAY == timedelta(0):
        return calendar.add_sessions(generated_at, duration // _ONE_DAY)
    return generated_at + duration
