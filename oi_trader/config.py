from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from oi_trader.errors import ConfigError

_DIRECTIONS = {"LONG", "SHORT"}
_SEVERITIES = {"low", "medium", "high"}


class StrategyType(str, Enum):
    TREND_FOLLOWING = "TREND_FOLLOWING"
    MEAN_REVERSION = "MEAN_REVERSION"
    SENTIMENT_BASED = "SENTIMENT_BASED"
    BREAKOUT = "BREAKOUT"


class StrategyConfig(BaseModel):
    strategy_type: StrategyType = StrategyType.TREND_FOLLOWING
    enabled: bool = True
    min_signal_score: float = 6.0
    min_confidence: float = 0.6
    min_oi_change_percent: float = 3.0
    require_price_oi_alignment: bool = True
    price_oi_divergence_threshold: float = 2.0
    use_sentiment_filter: bool = True
    min_trader_ratio: float = 0.8

    @model_validator(mode="after")
    def validate_values(self) -> "StrategyConfig":
        if not (0.0 <= self.min_confidence <= 1.0):
            raise ValueError("min_confidence must be in [0,1]")
        if self.min_oi_change_percent < 0:
            raise ValueError("min_oi_change_percent must be >= 0")
        if self.price_oi_divergence_threshold < 0:
            raise ValueError("price_oi_divergence_threshold must be >= 0")
        if self.min_trader_ratio <= 0:
            raise ValueError("min_trader_ratio must be > 0")
        return self


class LeverageByStrengthConfig(BaseModel):
    weak: int = 1
    medium: int = 2
    strong: int = 3

    @model_validator(mode="after")
    def validate_values(self) -> "LeverageByStrengthConfig":
        for name in ("weak", "medium", "strong"):
            if getattr(self, name) < 1:
                raise ValueError(f"leverage_by_signal_strength.{name} must be >= 1")
        return self


class RiskConfig(BaseModel):
    max_position_size_percent: float = 3.0
    max_total_positions: int = 5
    max_positions_per_symbol: int = 1
    default_stop_loss_percent: float = 2.0
    default_take_profit_percent: float = 5.0
    daily_loss_limit_percent: float = 5.0
    consecutive_loss_limit: int = 3
    pause_after_loss_limit: bool = True
    max_leverage: int = 3
    leverage_by_signal_strength: LeverageByStrengthConfig = Field(default_factory=LeverageByStrengthConfig)

    @model_validator(mode="after")
    def validate_risk(self) -> "RiskConfig":
        if not (0 < self.max_position_size_percent <= 100):
            raise ValueError("max_position_size_percent must be in (0,100]")
        if self.max_total_positions <= 0:
            raise ValueError("max_total_positions must be > 0")
        if self.max_positions_per_symbol <= 0:
            raise ValueError("max_positions_per_symbol must be > 0")
        if self.default_stop_loss_percent <= 0:
            raise ValueError("default_stop_loss_percent must be > 0")
        if self.default_take_profit_percent <= 0:
            raise ValueError("default_take_profit_percent must be > 0")
        if self.daily_loss_limit_percent <= 0:
            raise ValueError("daily_loss_limit_percent must be > 0")
        if self.consecutive_loss_limit <= 0:
            raise ValueError("consecutive_loss_limit must be > 0")
        if self.max_leverage < 1:
            raise ValueError("max_leverage must be >= 1")
        return self


class TakeProfitTargetConfig(BaseModel):
    percentage: float
    target_profit_pct: float = 0.0
    is_trailing: bool = False
    trailing_callback_pct: float = 30.0

    @model_validator(mode="after")
    def validate_target(self) -> "TakeProfitTargetConfig":
        if not (0 < self.percentage <= 100):
            raise ValueError("percentage must be in (0,100]")
        if not self.is_trailing and self.target_profit_pct <= 0:
            raise ValueError("target_profit_pct must be > 0 for fixed batches")
        if self.is_trailing and not (0 < self.trailing_callback_pct < 100):
            raise ValueError("trailing_callback_pct must be in (0,100)")
        return self


class DynamicTakeProfitConfig(BaseModel):
    targets: list[TakeProfitTargetConfig] = Field(default_factory=list)
    enable_trailing: bool = True
    # Accepted for compatibility; trailing activation is gated on executed batch count.
    trailing_start_profit_pct: float = 0.0

    @model_validator(mode="after")
    def validate_targets(self) -> "DynamicTakeProfitConfig":
        if not self.targets:
            raise ValueError("dynamic_take_profit.targets must not be empty")
        trailing = [target for target in self.targets if target.is_trailing]
        if len(trailing) > 1:
            raise ValueError("dynamic_take_profit allows at most one trailing batch")
        total = sum(target.percentage for target in self.targets)
        if total > 100.0 + 1e-9:
            raise ValueError(f"dynamic_take_profit allocations sum to {total:.2f}% (> 100%)")
        if not self.enable_trailing:
            self.targets = [target for target in self.targets if not target.is_trailing]
        return self

    @property
    def fixed_targets(self) -> list[TakeProfitTargetConfig]:
        return [target for target in self.targets if not target.is_trailing]

    @property
    def trailing_target(self) -> TakeProfitTargetConfig | None:
        return next((target for target in self.targets if target.is_trailing), None)


class BacktestConfig(BaseModel):
    start_date: datetime
    end_date: datetime
    initial_balance: float = 10000.0
    strategy_config: StrategyConfig = Field(default_factory=StrategyConfig)
    risk_config: RiskConfig = Field(default_factory=RiskConfig)
    dynamic_take_profit: DynamicTakeProfitConfig | None = None
    max_holding_minutes: int = 60
    use_slippage: bool = True
    slippage_percent: float = 0.1
    commission_percent: float = 0.05
    symbols: list[str] = Field(default_factory=list)
    min_anomaly_severity: str | None = None
    allowed_directions: list[str] = Field(default_factory=lambda: ["LONG", "SHORT"])
    chase_high_threshold: float = 10.0

    @field_validator("start_date", "end_date")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @model_validator(mode="after")
    def validate_backtest(self) -> "BacktestConfig":
        if self.start_date >= self.end_date:
            raise ValueError("start_date must be before end_date")
        if self.initial_balance <= 0:
            raise ValueError("initial_balance must be > 0")
        if self.max_holding_minutes <= 0:
            raise ValueError("max_holding_minutes must be > 0")
        if not (0 <= self.slippage_percent < 100):
            raise ValueError("slippage_percent must be in [0,100)")
        if not (0 <= self.commission_percent < 100):
            raise ValueError("commission_percent must be in [0,100)")
        if self.chase_high_threshold <= 0:
            raise ValueError("chase_high_threshold must be > 0")

        seen: set[str] = set()
        symbols: list[str] = []
        for symbol in self.symbols:
            item = str(symbol).strip().upper()
            if not item or item in seen:
                continue
            seen.add(item)
            symbols.append(item)
        self.symbols = symbols

        directions: list[str] = []
        for direction in self.allowed_directions:
            item = str(direction).strip().upper()
            if not item:
                continue
            if item not in _DIRECTIONS:
                raise ValueError(f"allowed_directions contains unsupported value '{direction}'")
            if item not in directions:
                directions.append(item)
        self.allowed_directions = directions

        if self.min_anomaly_severity is not None:
            severity = str(self.min_anomaly_severity).strip().lower()
            if severity not in _SEVERITIES:
                raise ValueError("min_anomaly_severity must be one of: low, medium, high")
            self.min_anomaly_severity = severity
        return self


class AppConfig(BaseModel):
    log_level: str = "INFO"
    symbol_blacklist: list[str] = Field(default_factory=list)
    backtest: BacktestConfig

    @model_validator(mode="after")
    def normalize(self) -> "AppConfig":
        self.log_level = str(self.log_level or "INFO").strip().upper()
        self.symbol_blacklist = [
            str(item).strip().upper()
            for item in self.symbol_blacklist
            if str(item).strip()
        ]
        return self


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    try:
        with config_path.open("r", encoding="utf-8") as file:
            raw: dict[str, Any] = yaml.safe_load(file) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read config {config_path}: {exc}") from exc
    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {config_path}: {exc}") from exc
