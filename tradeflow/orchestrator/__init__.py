"""Orchestrator: from active signals to ordered, risk-adjusted targets."""

from tradeflow.orchestrator.collection import TargetCollection
from tradeflow.orchestrator.construction import (
    SubjectState,
    TargetConstructionEngine,
    always_create,
    requires_price,
)
from tradeflow.orchestrator.coordinator import ExecutionConsumer, PipelineCoordinator
from tradeflow.orchestrator.models import (
    AccountState,
    ChainResult,
    ConstructionResult,
    MarketSnapshot,
    OpenOrderSnapshot,
    PortfolioBias,
    PositionSnapshot,
    SizingMode,
    SkippedSubject,
    SkipReason,
    StepResult,
    Target,
    UniverseChange,
    quantity_for_fraction,
    round_to_lot,
)
from tradeflow.orchestrator.registry import (
    ComponentRegistry,
    build_calendars,
    build_coordinator,
    build_risk_chain,
    get_adjuster_registry,
    get_weighting_registry,
)
from tradeflow.orchestrator.risk import (
    Checkpointable,
    MaximumDrawdownPerSubject,
    MaximumPortfolioDrawdown,
    MaximumPositionSize,
    MaximumUnrealizedProfitPerSubject,
    RiskAdjuster,
    RiskChain,
    TrailingStopPerSubject,
    UniverseAware,
)
from tradeflow.orchestrator.scheduler import RebalanceScheduler
from tradeflow.orchestrator.universe import BackgroundUniverseSelection
from tradeflow.orchestrator.weighting import (
    ConfidenceWeighting,
    EqualWeighting,
    MagnitudeWeighting,
    SignalWeighting,
    WeightingStrategy,
    net_direction,
)

__all__ = [
    # Main entry points
    "PipelineCoordinator",
    "build_coordinator",
    # Stages (usable individually)
    "RebalanceScheduler",
    "TargetConstructionEngine",
    "RiskChain",
    "TargetCollection",
    "BackgroundUniverseSelection",
    # Protocols
    "Checkpointable",
    "ExecutionConsumer",
    "RiskAdjuster",
    "UniverseAware",
    "WeightingStrategy",
    # Weighting strategies
    "ConfidenceWeighting",
    "EqualWeighting",
    "MagnitudeWeighting",
    "SignalWeighting",
    "net_direction",
    # Risk adjusters
    "MaximumDrawdownPerSubject",
    "MaximumPortfolioDrawdown",
    "MaximumPositionSize",
    "MaximumUnrealizedProfitPerSubject",
    "TrailingStopPerSubject",
    # Models
    "AccountState",
    "ChainResult",
    "ConstructionResult",
    "MarketSnapshot",
    "OpenOrderSnapshot",
    "PortfolioBias",
    "PositionSnapshot",
    "SizingMode",
    "SkippedSubject",
    "SkipReason",
    "StepResult",
    "SubjectState",
    "Target",
    "UniverseChange",
    "quantity_for_fraction",
    "round_to_lot",
    "always_create",
    "requires_price",
    # Registry
    "ComponentRegistry",
    "build_calendars",
    "build_risk_chain",
    "get_adjuster_registry",
    "get_weighting_registry",
]
