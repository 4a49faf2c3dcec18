from __future__ import annotations

import logging

from oi_trader.config import StrategyConfig, StrategyType
from oi_trader.strategy.contracts import (
    STRENGTH_RANK,
    SignalDirection,
    SignalStrength,
    StrategyCheck,
    TradingSignal,
)

LOGGER = logging.getLogger(__name__)


def _sentiment_indicator_count(signal: TradingSignal) -> int:
    anomaly = signal.anomaly
    values = (
        anomaly.top_trader_long_short_ratio,
        anomaly.taker_buy_sell_ratio,
        anomaly.global_long_short_ratio,
    )
    return sum(1 for value in values if value is not None)


def _at_least_medium(signal: TradingSignal) -> bool:
    return STRENGTH_RANK[signal.strength] >= STRENGTH_RANK[SignalStrength.MEDIUM]


def _price_change(signal: TradingSignal) -> float:
    value = signal.anomaly.price_change_percent
    return value if value is not None else 0.0


class StrategyFilter:
    def __init__(self, config: StrategyConfig | None = None):
        self.config = config or StrategyConfig()

    def update_config(self, config: StrategyConfig) -> None:
        self.config = config
        LOGGER.info("Strategy filter updated: %s", config.strategy_type.value)

    def evaluate_signal(self, signal: TradingSignal) -> StrategyCheck:
        cfg = self.config
        if not cfg.enabled:
            return StrategyCheck(passed=False, reason="strategy disabled")
        if signal.score < cfg.min_signal_score:
            return StrategyCheck(
                passed=False,
                reason=f"score {signal.score:.2f} below minimum {cfg.min_signal_score:g}",
            )
        if signal.confidence < cfg.min_confidence:
            return StrategyCheck(
                passed=False,
                reason=f"confidence {signal.confidence:.2f} below minimum {cfg.min_confidence:g}",
            )

        oi_change = signal.anomaly.percent_change
        if abs(oi_change) < cfg.min_oi_change_percent:
            return StrategyCheck(
                passed=False,
                reason=f"OI change {abs(oi_change):.2f}% below minimum {cfg.min_oi_change_percent:g}%",
            )

        if cfg.require_price_oi_alignment:
            price_change = _price_change(signal)
            if (oi_change > 0) != (price_change > 0) or price_change == 0:
                return StrategyCheck(passed=False, reason="price and OI move in different directions")
            gap = abs(abs(oi_change) - abs(price_change))
            if gap > cfg.price_oi_divergence_threshold:
                return StrategyCheck(
                    passed=False,
                    reason=f"price/OI divergence {gap:.2f} above {cfg.price_oi_divergence_threshold:g}",
                )

        if cfg.use_sentiment_filter:
            ratio = signal.anomaly.top_trader_long_short_ratio
            if ratio is not None:
                if signal.direction is SignalDirection.LONG and ratio < cfg.min_trader_ratio:
                    return StrategyCheck(
                        passed=False,
                        reason=f"top-trader ratio {ratio:.2f} below {cfg.min_trader_ratio:g} for LONG",
                    )
                short_limit = 1.0 / cfg.min_trader_ratio
                if signal.direction is SignalDirection.SHORT and ratio > short_limit:
                    return StrategyCheck(
                        passed=False,
                        reason=f"top-trader ratio {ratio:.2f} above {short_limit:.2f} for SHORT",
                    )

        return self._check_strategy_type(signal)

    def _check_strategy_type(self, signal: TradingSignal) -> StrategyCheck:
        strategy = self.config.strategy_type
        if strategy is StrategyType.TREND_FOLLOWING:
            if not _at_least_medium(signal):
                return StrategyCheck(passed=False, reason="trend following needs MEDIUM or STRONG signal")
            if abs(_price_change(signal)) < 1:
                return StrategyCheck(passed=False, reason="trend following needs price change >= 1%")
        elif strategy is StrategyType.MEAN_REVERSION:
            ratio = abs(signal.anomaly.percent_change) / max(abs(_price_change(signal)), 0.1)
            if ratio < 2:
                return StrategyCheck(passed=False, reason=f"mean reversion needs OI/price ratio >= 2 (got {ratio:.2f})")
        elif strategy is StrategyType.SENTIMENT_BASED:
            if _sentiment_indicator_count(signal) < 2:
                return StrategyCheck(passed=False, reason="sentiment strategy needs at least 2 sentiment indicators")
        elif strategy is StrategyType.BREAKOUT:
            if not _at_least_medium(signal) or signal.confidence < 0.70:
                return StrategyCheck(passed=False, reason="breakout needs MEDIUM+ signal with confidence >= 0.70")
        return StrategyCheck(passed=True)
