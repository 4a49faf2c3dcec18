from __future__ import annotations

from datetime import datetime, timezone

from oi_trader.config import StrategyConfig, StrategyType
from oi_trader.data.anomalies import AnomalyEvent
from oi_trader.strategy.contracts import TradingSignal
from oi_trader.strategy.filters import StrategyFilter
from oi_trader.strategy.signal_generator import SignalGenerator

T0 = datetime(2025, 11, 20, 12, 0, tzinfo=timezone.utc)


def _signal(**overrides: object) -> TradingSignal:
    payload: dict[str, object] = {
        "id": 7,
        "symbol": "BTCUSDT",
        "percent_change": 4.5,
        "anomaly_time": T0,
        "severity": "medium",
        "price_after": 100.0,
        "price_change_percent": 3.0,
        "top_trader_long_short_ratio": 1.4,
        "daily_price_low": 97.0,
        "daily_price_high": 103.0,
        "price_from_low_pct": 3.0,
        "price_from_high_pct": 2.9,
    }
    payload.update(overrides)
    signal = SignalGenerator().generate_signal(AnomalyEvent(**payload))  # type: ignore[arg-type]
    assert signal is not None
    return signal


def test_aligned_trend_signal_passes_default_filter() -> None:
    check = StrategyFilter().evaluate_signal(_signal())

    assert check.passed is True
    assert check.reason is None


def test_disabled_strategy_rejects_everything() -> None:
    check = StrategyFilter(StrategyConfig(enabled=False)).evaluate_signal(_signal())

    assert check.passed is False
    assert check.reason == "strategy disabled"


def test_minimum_score_and_confidence() -> None:
    by_score = StrategyFilter(StrategyConfig(min_signal_score=9)).evaluate_signal(_signal())
    by_confidence = StrategyFilter(StrategyConfig(min_confidence=0.9)).evaluate_signal(_signal())

    assert by_score.passed is False
    assert "score" in (by_score.reason or "")
    assert by_confidence.passed is False
    assert "confidence" in (by_confidence.reason or "")


def test_minimum_oi_change() -> None:
    check = StrategyFilter(StrategyConfig(min_oi_change_percent=5.0)).evaluate_signal(_signal())

    assert check.passed is False
    assert "OI change" in (check.reason or "")


def test_alignment_gap_above_threshold_is_rejected() -> None:
    signal = _signal(price_change_percent=1.11)

    strict = StrategyFilter().evaluate_signal(signal)
    relaxed = StrategyFilter(StrategyConfig(require_price_oi_alignment=False)).evaluate_signal(signal)

    assert strict.passed is False
    assert "divergence" in (strict.reason or "")
    assert relaxed.passed is True


def test_sentiment_filter_uses_configured_ratio() -> None:
    check = StrategyFilter(StrategyConfig(min_trader_ratio=1.5)).evaluate_signal(_signal())

    assert check.passed is False
    assert "top-trader ratio" in (check.reason or "")


def test_mean_reversion_needs_oi_dominating_price() -> None:
    cfg = StrategyConfig(strategy_type=StrategyType.MEAN_REVERSION)

    check = StrategyFilter(cfg).evaluate_signal(_signal())

    assert check.passed is False
    assert "mean reversion" in (check.reason or "")


def test_sentiment_strategy_needs_two_indicators() -> None:
    cfg = StrategyConfig(strategy_type=StrategyType.SENTIMENT_BASED)
    strategy_filter = StrategyFilter(cfg)

    assert strategy_filter.evaluate_signal(_signal()).passed is False
    assert strategy_filter.evaluate_signal(_signal(taker_buy_sell_ratio=1.2)).passed is True


def test_breakout_needs_high_confidence() -> None:
    strategy_filter = StrategyFilter(StrategyConfig(strategy_type=StrategyType.BREAKOUT))

    low = strategy_filter.evaluate_signal(_signal())
    high = strategy_filter.evaluate_signal(_signal(severity="high"))

    assert low.passed is False
    assert "breakout" in (low.reason or "")
    assert high.passed is True


def test_update_config_replaces_thresholds() -> None:
    strategy_filter = StrategyFilter()
    strategy_filter.update_config(StrategyConfig(enabled=False))

    assert strategy_filter.evaluate_signal(_signal()).passed is False
