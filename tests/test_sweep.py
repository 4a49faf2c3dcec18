from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from oi_trader.backtest import BacktestEngine, run_parameter_sweep
from oi_trader.config import BacktestConfig, StrategyConfig
from oi_trader.data.anomalies import AnomalyEvent, PricePoint
from oi_trader.data.sources import InMemoryMarketData

T0 = datetime(2025, 11, 20, 12, 0, tzinfo=timezone.utc)


def _market() -> InMemoryMarketData:
    anomaly = AnomalyEvent(
        id=1,
        symbol="BTCUSDT",
        percent_change=4.5,
        anomaly_time=T0,
        severity="medium",
        price_after=100.0,
        price_change_percent=3.0,
        top_trader_long_short_ratio=1.4,
        daily_price_low=97.0,
        daily_price_high=103.0,
        price_from_low_pct=3.0,
        price_from_high_pct=2.9,
    )
    prices = {"BTCUSDT": [PricePoint(timestamp=T0 + timedelta(minutes=3), price=106.0)]}
    return InMemoryMarketData(anomalies=[anomaly], prices=prices)


def _config(**overrides: object) -> BacktestConfig:
    payload: dict[str, object] = {"start_date": T0 - timedelta(hours=1), "end_date": T0 + timedelta(hours=6)}
    payload.update(overrides)
    return BacktestConfig(**payload)  # type: ignore[arg-type]


def test_sweep_runs_isolated_engines_in_submission_order() -> None:
    market = _market()
    configs = {
        "small": _config(initial_balance=1_000.0),
        "disabled": _config(strategy_config=StrategyConfig(enabled=False)),
        "large": _config(initial_balance=50_000.0),
    }

    outcomes = run_parameter_sweep(lambda: BacktestEngine(market, market), configs, max_workers=3)

    assert list(outcomes) == ["small", "disabled", "large"]
    assert all(outcome.success for outcome in outcomes.values())
    assert outcomes["small"].result.statistics.total_trades == 1
    assert outcomes["disabled"].result.statistics.total_trades == 0
    small_pnl = outcomes["small"].result.statistics.total_pnl
    large_pnl = outcomes["large"].result.statistics.total_pnl
    assert large_pnl == pytest.approx(small_pnl * 50.0)


def test_sweep_matches_sequential_run() -> None:
    market = _market()
    config = _config()

    sequential = BacktestEngine(market, market).run_backtest(config)
    outcomes = run_parameter_sweep(lambda: BacktestEngine(market, market), [("a", config), ("b", config)])

    for outcome in outcomes.values():
        assert [trade.to_dict() for trade in outcome.result.trades] == [trade.to_dict() for trade in sequential.trades]


class _BrokenEngine(BacktestEngine):
    def run_backtest(self, config, cancel_event=None):
        raise RuntimeError("boom")


def test_failed_run_is_reported_per_label() -> None:
    market = _market()

    outcomes = run_parameter_sweep(lambda: _BrokenEngine(market, market), {"only": _config()})

    outcome = outcomes["only"]
    assert outcome.success is False
    assert outcome.error == "RuntimeError: boom"
    assert outcome.summary() == {"label": "only", "success": False, "error": "RuntimeError: boom"}


def test_failure_raises_when_not_continuing() -> None:
    market = _market()

    with pytest.raises(RuntimeError, match="only"):
        run_parameter_sweep(lambda: _BrokenEngine(market, market), {"only": _config()}, continue_on_error=False)


def test_duplicate_labels_are_rejected() -> None:
    market = _market()

    with pytest.raises(ValueError):
        run_parameter_sweep(lambda: BacktestEngine(market, market), [("a", _config()), ("a", _config())])
