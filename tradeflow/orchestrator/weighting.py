"""Weighting strategies: grouped signals in, signed target fractions out.

Every strategy is a pure function of its input.  It must not touch account
state or keep memory between calls; anything that depends on holdings
belongs to the risk chain.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Protocol

from tradeflow.orchestrator.models import PortfolioBias
from tradeflow.signals.signal import Signal


class WeightingStrategy(Protocol):
    """Maps ``{subject: signals}`` to ``{subject: signed fraction}``.

    Subjects missing from the result produce no target.
    """

    name: str

    def target_fractions(
        self, groups: Mapping[str, Sequence[Signal]],
    ) -> dict[str, float]: ...


def net_direction(signals: Sequence[Signal]) -> int:
    """Sign of the summed directions: +1, 0 or -1."""
    total = sum(s.direction.value for s in signals)
    return (total > 0) - (total < 0)


def _scale_to_gross(fractions: dict[str, float], gross: float) -> dict[str, float]:
    """Shrink fractions proportionally when their absolute sum exceeds ``gross``."""
    total = sum(abs(f) for f in fractions.values())
    if total <= gross or total == 0:
        return fractions
    factor = gross / total
    return {subject: f * factor for subject, f in fractions.items()}


class EqualWeighting:
    """Every subject with a tradable view gets the same share.

    Flat subjects, and subjects pointing against ``bias``, get a zero
    fraction and do not count toward the split.  Under a long-only bias
    one UP and one DOWN subject leave the UP subject the full exposure.
    """

    name = "equal_weight"

    def __init__(
        self,
        gross_exposure: float = 1.0,
        bias: PortfolioBias | str = PortfolioBias.LONG_SHORT,
    ) -> None:
        self.gross_exposure = gross_exposure
        self.bias = PortfolioBias(bias)

    def target_fractions(self, groups: Mapping[str, Sequence[Signal]]) -> dict[str, float]:
        directions = {subject: net_direction(sigs) for subject, sigs in groups.items()}
        tradable = {s for s, d in directions.items() if self._allowed(d)}
        share = self.gross_exposure / len(tradable) if tradable else 0.0
        return {
            subject: d * share if subject in tradable else 0.0
            for subject, d in directions.items()
        }

    def _allowed(self, direction: int) -> bool:
        if self.bias is PortfolioBias.LONG:
            return direction > 0
        if self.bias is PortfolioBias.SHORT:
            return direction < 0
        return direction != 0


class _FieldWeighting:
    """Fraction = direction x a per-signal field, summed per subject.

    Signals without the field contribute nothing; a subject where no signal
    carries it is left out of the result.  If the absolute total exceeds
    ``gross_exposure`` every fraction is scaled down to fit.
    """

    name = ""
    field = ""

    def __init__(self, gross_exposure: float = 1.0) -> None:
        self.gross_exposure = gross_exposure

    def target_fractions(self, groups: Mapping[str, Sequence[Signal]]) -> dict[str, float]:
        fractions: dict[str, float] = {}
        for subject, sigs in groups.items():
            values = [
                (s.direction, getattr(s, self.field))
                for s in sigs
                if getattr(s, self.field) is not None
            ]
            if not values:
                continue
            fractions[subject] = sum(d.value * abs(v) for d, v in values)
        return _scale_to_gross(fractions, self.gross_exposure)


class SignalWeighting(_FieldWeighting):
    """Sizes by each signal's ``weight`` hint."""

    name = "signal_weight"
    field = "weight"


class ConfidenceWeighting(_FieldWeighting):
    """Sizes by each signal's ``confidence``."""

    name = "confidence_weight"
    field = "confidence"


class MagnitudeWeighting:
    """Allocates ``gross_exposure`` in proportion to |expected move|.

    Raw weight per subject is the summed |magnitude| of its signals,
    signed by the subject's net direction.  Raw weights are normalized so
    their absolute sum equals ``gross_exposure``.
    """

    name = "magnitude_weight"

    def __init__(self, gross_exposure: float = 1.0) -> None:
        self.gross_exposure = gross_exposure

    def target_fractions(self, groups: Mapping[str, Sequence[Signal]]) -> dict[str, float]:
        raw: dict[str, float] = {}
        for subject, sigs in groups.items():
            sized = [s for s in sigs if s.magnitude is not None]
            if not sized:
                continue
            raw[subject] = net_direction(sized) * sum(abs(s.magnitude) for s in sized)

        total = sum(abs(w) for w in raw.values())
        if total < 1e-12:
            return {subject: 0.0 for subject in raw}
        return {subject: w / total * self.gross_exposure for subject, w in raw.items()}
