"""Component registry: name-based lookup and config-driven pipeline assembly."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Generic, TypeVar

import structlog

from tradeflow.core.calendar import TradingCalendar, get_calendar
from tradeflow.core.config import Settings
from tradeflow.core.errors import ConfigError
from tradeflow.orchestrator.construction import ShouldCreateTarget, TargetConstructionEngine
from tradeflow.orchestrator.coordinator import (
    AccountProvider,
    ExecutionConsumer,
    PipelineCoordinator,
)
from tradeflow.orchestrator.models import PortfolioBias, SizingMode
from tradeflow.orchestrator.risk import (
    MaximumDrawdownPerSubject,
    MaximumPortfolioDrawdown,
    MaximumPositionSize,
    MaximumUnrealizedProfitPerSubject,
    RiskAdjuster,
    RiskChain,
    TrailingStopPerSubject,
)
from tradeflow.orchestrator.scheduler import NextTimeFn, RebalanceScheduler
from tradeflow.orchestrator.universe import BackgroundUniverseSelection
from tradeflow.orchestrator.weighting import (
    ConfidenceWeighting,
    EqualWeighting,
    MagnitudeWeighting,
    SignalWeighting,
    WeightingStrategy,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class ComponentRegistry(Generic[T]):
    """Registry of component classes keyed by name.

    Classes are registered once with :meth:`register_class` and built
    from config with :meth:`build`, which calls ``cls(**params)``.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._factories: dict[str, type[T]] = {}

    def register_class(self, name: str, cls: type[T]) -> type[T]:
        if name in self._factories:
            raise ConfigError(f"{self.kind} {name!r} already registered")
        self._factories[name] = cls
        logger.debug("component_class_registered", kind=self.kind, name=name, cls=cls.__name__)
        return cls

    def build(self, name: str, params: dict[str, Any] | None = None) -> T:
        """Instantiate ``name`` with ``params``.  Raises ``ConfigError`` on bad input."""
        if name not in self._factories:
            raise ConfigError(
                f"Unknown {self.kind} {name!r}.  Available: {sorted(self._factories)}"
            )
        cls = self._factories[name]
        try:
            return cls(**(params or {}))
        except TypeError as exc:
            raise ConfigError(f"Bad params for {self.kind} {name!r}: {exc}") from exc

    def names(self) -> list[str]:
        return list(self._factories)

    def __len__(self) -> int:
        return len(self._factories)

    def __contains__(self, name: str) -> bool:
        return name in self._factories


# ── Module-level defaults ─────────────────────────────────────────────

_weightings: ComponentRegistry[WeightingStrategy] = ComponentRegistry("weighting strategy")
_adjusters: ComponentRegistry[RiskAdjuster] = ComponentRegistry("risk adjuster")

for _cls in (EqualWeighting, SignalWeighting, ConfidenceWeighting, MagnitudeWeighting):
    _weightings.register_class(_cls.name, _cls)

for _cls in (
    MaximumDrawdownPerSubject,
    MaximumUnrealizedProfitPerSubject,
    MaximumPositionSize,
    MaximumPortfolioDrawdown,
    TrailingStopPerSubject,
):
    _adjusters.register_class(_cls.name, _cls)


def get_weighting_registry() -> ComponentRegistry[WeightingStrategy]:
    return _weightings


def get_adjuster_registry() -> ComponentRegistry[RiskAdjuster]:
    return _adjusters


# ── Assembly ──────────────────────────────────────────────────────────


def build_risk_chain(
    settings: Settings,
    registry: ComponentRegistry[RiskAdjuster] | None = None,
) -> RiskChain:
    """Build the configured adjusters in the order listed in ``risk.chain``."""
    registry = registry or _adjusters
    return RiskChain(
        registry.build(name, settings.risk.params.get(name)) for name in settings.risk.chain
    )


def build_calendars(settings: Settings) -> tuple[TradingCalendar, dict[str, TradingCalendar]]:
    """Default calendar plus per-subject overrides.  One instance per calendar name."""
    by_name: dict[str, TradingCalendar] = {}

    def resolve(name: str) -> TradingCalendar:
        if name not in by_name:
            by_name[name] = get_calendar(name)
        return by_name[name]

    default = resolve(settings.calendar)
    overrides = {subject: resolve(name) for subject, name in settings.subject_calendars.items()}
    return default, overrides


def build_coordinator(
    settings: Settings,
    account_provider: AccountProvider,
    *,
    execution: ExecutionConsumer | None = None,
    universe: Iterable[str] = (),
    universe_selection: BackgroundUniverseSelection | None = None,
    should_create_target: ShouldCreateTarget | None = None,
    next_time_fn: NextTimeFn | None = None,
) -> PipelineCoordinator:
    """Assemble a full pipeline from :class:`Settings`.

    ``next_time_fn`` takes precedence over ``scheduler.interval_minutes``
    since a function cannot be expressed in TOML.
    """
    cfg = settings.construction
    weighting_params = dict(cfg.weighting_params)
    if cfg.weighting == EqualWeighting.name:
        weighting_params.setdefault("bias", cfg.bias)
    weighting = _weightings.build(cfg.weighting, weighting_params)
    engine = TargetConstructionEngine(
        weighting,
        bias=PortfolioBias(cfg.bias),
        multi_source=cfg.multi_source,
        sizing_mode=SizingMode(cfg.sizing_mode),
        churn_tolerance=cfg.churn_tolerance,
        cash_buffer_pct=cfg.cash_buffer_pct,
        should_create_target=should_create_target,
    )

    sched_cfg = settings.scheduler
    scheduler = RebalanceScheduler(
        interval=None if next_time_fn is not None else sched_cfg.interval,
        next_time_fn=next_time_fn,
        on_signal_changes=sched_cfg.on_signal_changes,
        on_universe_changes=sched_cfg.on_universe_changes,
    )

    risk_chain = build_risk_chain(settings)
    calendar, subject_calendars = build_calendars(settings)

    logger.info(
        "coordinator_built",
        weighting=cfg.weighting,
        bias=cfg.bias,
        sizing_mode=cfg.sizing_mode,
        risk_chain=list(settings.risk.chain),
        interval_minutes=sched_cfg.interval_minutes,
        calendar=settings.calendar,
    )

    return PipelineCoordinator(
        engine=engine,
        account_provider=account_provider,
        scheduler=scheduler,
        risk_chain=risk_chain,
        execution=execution,
        universe_selection=universe_selection,
        universe=universe,
        calendar=calendar,
        subject_calendars=subject_calendars,
    )
