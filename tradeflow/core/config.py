"""Config loading: config.toml for tuning, env vars for overrides."""

from __future__ import annotations

import os
import tomllib
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tradeflow.core.errors import ConfigError

# ── Models ─────────────────────────────────────────────────────────────


class SchedulerConfig(BaseModel):
    """When reconciliation runs."""

    interval_minutes: int | None = Field(
        default=None, gt=0,
        description="Fixed reconciliation interval; None disables the time trigger",
    )
    on_signal_changes: bool = Field(
        default=True, description="Reconcile when the active signal set changes",
    )
    on_universe_changes: bool = Field(
        default=True, description="Reconcile after subjects are added or removed",
    )

    @property
    def interval(self) -> timedelta | None:
        if self.interval_minutes is None:
            return None
        return timedelta(minutes=self.interval_minutes)


class ConstructionConfig(BaseModel):
    """How active signals become targets."""

    weighting: str = Field(default="equal_weight", description="Weighting strategy name")
    weighting_params: dict[str, Any] = Field(default_factory=dict)
    bias: Literal["long", "short", "long_short"] = "long_short"
    multi_source: bool = Field(
        default=False,
        description="Combine every source's latest signal per subject instead of only the newest",
    )
    sizing_mode: Literal["quantity", "percent"] = "quantity"
    churn_tolerance: float | None = Field(
        default=None, ge=0.0,
        description="Skip a subject whose fraction moved by at most this much; None disables",
    )
    cash_buffer_pct: float = Field(
        default=0.0, ge=0.0, lt=1.0,
        description="Fraction of account value held back from sizing",
    )


class RiskConfig(BaseModel):
    """Ordered risk adjusters and their parameters."""

    chain: list[str] = Field(default_factory=list, description="Adjuster names, in order")
    params: dict[str, dict[str, Any]] = Field(
        default_factory=dict, description="Per-adjuster constructor params, keyed by name",
    )


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    log_level: str = "INFO"
    calendar: str = Field(default="NYSE", description="Trading calendar for signal expiry")
    subject_calendars: dict[str, str] = Field(
        default_factory=dict, description="Per-subject calendar names overriding ``calendar``",
    )
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    construction: ConstructionConfig = Field(default_factory=ConstructionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)


# ── Loading ────────────────────────────────────────────────────────────

_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_CONFIG_PATH = _PROJECT_ROOT / "config.toml"


def _load_dotenv(dotenv_path: Path) -> None:
    """Minimal .env loader, no extra dependencies."""
    if not dotenv_path.exists():
        return
    for line in dotenv_path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if not key:
            continue
        os.environ.setdefault(key, value)


def load_settings(config_path: Path | None = None) -> Settings:
    """Build Settings from config.toml plus ``TRADEFLOW_*`` env overrides."""
    _load_dotenv(_PROJECT_ROOT / ".env")

    path = config_path or Path(os.environ.get("TRADEFLOW_CONFIG", _DEFAULT_CONFIG_PATH))
    file_cfg: dict = {}
    if path.exists():
        try:
            file_cfg = tomllib.loads(path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Cannot parse {path}: {exc}") from exc

    log_level = os.environ.get("TRADEFLOW_LOG_LEVEL", file_cfg.get("log_level", "INFO"))
    calendar = os.environ.get("TRADEFLOW_CALENDAR", file_cfg.get("calendar", "NYSE"))

    construction_raw = dict(file_cfg.get("construction", {}))
    if "TRADEFLOW_BIAS" in os.environ:
        construction_raw["bias"] = os.environ["TRADEFLOW_BIAS"]

    # ── Parse [risk] section ─────────────────────────────────────────
    raw_risk = file_cfg.get("risk", {})
    chain = raw_risk.get("chain", [])
    risk_params: dict[str, dict[str, Any]] = {}
    for key, val in raw_risk.items():
        if key == "chain":
            continue
        if isinstance(val, dict):
            risk_params[key] = val

    try:
        return Settings(
            log_level=log_level,
            calendar=calendar,
            subject_calendars=file_cfg.get("subject_calendars", {}),
            scheduler=SchedulerConfig(**file_cfg.get("scheduler", {})),
            construction=ConstructionConfig(**construction_raw),
            risk=RiskConfig(chain=chain, params=risk_params),
        )
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
