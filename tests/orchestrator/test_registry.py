"""Tests for the component registry and config-driven assembly."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tests.conftest import build_account
from tradeflow.core.calendar import ContinuousCalendar, ExchangeCalendar, WeekdayCalendar
from tradeflow.core.config import ConstructionConfig, RiskConfig, SchedulerConfig, Settings
from tradeflow.core.errors import ConfigError
from tradeflow.orchestrator.models import PortfolioBias
from tradeflow.orchestrator.registry import (
    ComponentRegistry,
    build_calendars,
    build_coordinator,
    build_risk_chain,
    get_adjuster_registry,
    get_weighting_registry,
)
from tradeflow.orchestrator.risk import MaximumDrawdownPerSubject, MaximumPositionSize
from tradeflow.orchestrator.weighting import EqualWeighting, SignalWeighting


class TestComponentRegistry:
    def test_register_and_build(self):
        reg: ComponentRegistry = ComponentRegistry("weighting strategy")
        reg.register_class("equal_weight", EqualWeighting)
        built = reg.build("equal_weight", {"gross_exposure": 0.5})

        assert isinstance(built, EqualWeighting)
        assert built.gross_exposure == 0.5
        assert "equal_weight" in reg
        assert len(reg) == 1

    def test_duplicate_registration(self):
        reg: ComponentRegistry = ComponentRegistry("thing")
        reg.register_class("x", EqualWeighting)
        with pytest.raises(ConfigError, match="already registered"):
            reg.register_class("x", SignalWeighting)

    def test_unknown_name(self):
        reg: ComponentRegistry = ComponentRegistry("thing")
        with pytest.raises(ConfigError, match="Unknown thing"):
            reg.build("nope")

    def test_bad_params(self):
        reg: ComponentRegistry = ComponentRegistry("thing")
        reg.register_class("equal_weight", EqualWeighting)
        with pytest.raises(ConfigError, match="Bad params"):
            reg.build("equal_weight", {"bogus": 1})

    def test_defaults_registered(self):
        assert set(get_weighting_registry().names()) == {
            "equal_weight", "signal_weight", "confidence_weight", "magnitude_weight",
        }
        assert set(get_adjuster_registry().names()) == {
            "max_drawdown_per_subject",
            "max_unrealized_profit_per_subject",
            "max_position_size",
            "max_portfolio_drawdown",
            "trailing_stop_per_subject",
        }


class TestBuildRiskChain:
    def test_order_and_params(self):
        settings = Settings(risk=RiskConfig(
            chain=["max_position_size", "max_drawdown_per_subject"],
            params={"max_position_size": {"max_position_pct": 0.2}},
        ))
        chain = build_risk_chain(settings)

        assert [type(a) for a in chain.adjusters] == [MaximumPositionSize, MaximumDrawdownPerSubject]
        assert chain.adjusters[0].max_position_pct == 0.2

    def test_unknown_adjuster(self):
        settings = Settings(risk=RiskConfig(chain=["no_such_stage"]))
        with pytest.raises(ConfigError):
            build_risk_chain(settings)


class TestBuildCoordinator:
    def test_wires_settings(self):
        settings = Settings(
            scheduler=SchedulerConfig(interval_minutes=60),
            construction=ConstructionConfig(
                weighting="signal_weight", bias="long", cash_buffer_pct=0.01,
            ),
            risk=RiskConfig(chain=["max_position_size"]),
        )
        coordinator = build_coordinator(
            settings, lambda: build_account(), universe=["AAPL", "MSFT"],
        )

        assert isinstance(coordinator.engine.weighting, SignalWeighting)
        assert coordinator.engine.bias.value == "long"
        assert coordinator.engine.cash_buffer_pct == 0.01
        assert coordinator.scheduler.interval == timedelta(hours=1)
        assert len(coordinator.risk_chain) == 1
        assert coordinator.universe == frozenset({"AAPL", "MSFT"})

    def test_next_time_fn_overrides_interval(self):
        settings = Settings(scheduler=SchedulerConfig(interval_minutes=60))
        coordinator = build_coordinator(
            settings, lambda: build_account(), next_time_fn=lambda now: None,
        )
        assert coordinator.scheduler.interval is None
        assert coordinator.scheduler.next_time_fn is not None

    def test_unknown_weighting(self):
        settings = Settings(construction=ConstructionConfig(weighting="astrology"))
        with pytest.raises(ConfigError):
            build_coordinator(settings, lambda: build_account())

    def test_equal_weight_receives_bias(self):
        settings = Settings(construction=ConstructionConfig(weighting="equal_weight", bias="long"))
        coordinator = build_coordinator(settings, lambda: build_account())
        assert coordinator.engine.weighting.bias is PortfolioBias.LONG

    def test_calendars_from_settings(self):
        settings = Settings(calendar="weekdays", subject_calendars={"BTC": "24/7", "ETH": "24/7"})
        coordinator = build_coordinator(settings, lambda: build_account(), universe=["AAPL"])

        assert isinstance(coordinator.calendar_for("AAPL"), WeekdayCalendar)
        assert isinstance(coordinator.calendar_for("BTC"), ContinuousCalendar)
        assert coordinator.calendar_for("BTC") is coordinator.calendar_for("ETH")


class TestBuildCalendars:
    def test_exchange_default(self):
        default, overrides = build_calendars(Settings())
        assert isinstance(default, ExchangeCalendar)
        assert default.name == "NYSE"
        assert overrides == {}
