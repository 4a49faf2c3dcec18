from __future__ import annotations

import csv
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from oi_trader.backtest import BacktestEngine
from oi_trader.config import BacktestConfig
from oi_trader.data.anomalies import AnomalyEvent, PricePoint
from oi_trader.data.sources import InMemoryMarketData
from oi_trader.reporting.backtest_reporter import BacktestReporter
from oi_trader.reporting.metrics import compute_drawdown_series, compute_statistics
from oi_trader.storage.models import CloseReason, PositionRecord, PositionStatus

T0 = datetime(2025, 11, 20, 12, 0, tzinfo=timezone.utc)


def _trade(position_id: int, pnl: float, *, minutes: int, commission: float = 0.0) -> PositionRecord:
    return PositionRecord(
        id=position_id,
        symbol="BTCUSDT",
        side="LONG",
        entry_price=100.0,
        initial_quantity=1.0,
        quantity=0.0,
        leverage=1,
        margin=100.0,
        stop_loss_price=98.0,
        take_profit_price=105.0,
        liquidation_price=0.0,
        opened_at=T0,
        status=PositionStatus.CLOSED,
        realized_pnl=pnl,
        commission_paid=commission,
        close_reason=CloseReason.TAKE_PROFIT if pnl > 0 else CloseReason.STOP_LOSS,
        exit_price=100.0 + pnl,
        closed_at=T0 + timedelta(minutes=minutes),
    )


def test_statistics_for_mixed_trades() -> None:
    trades = [
        _trade(4, 20.0, minutes=40),
        _trade(1, 10.0, minutes=10, commission=0.5),
        _trade(2, -5.0, minutes=20),
        _trade(3, -5.0, minutes=30, commission=0.5),
    ]

    stats = compute_statistics(trades, 10_000.0, T0, T0 + timedelta(days=1))

    assert stats.total_trades == 4
    assert stats.winning_trades == 2
    assert stats.losing_trades == 2
    assert stats.win_rate == pytest.approx(50.0)
    assert stats.total_pnl == pytest.approx(20.0)
    assert stats.net_pnl == pytest.approx(20.0)
    assert stats.total_commission == pytest.approx(1.0)
    assert stats.gross_pnl == pytest.approx(21.0)
    assert stats.average_win == pytest.approx(15.0)
    assert stats.average_loss == pytest.approx(-5.0)
    assert stats.profit_factor == pytest.approx(3.0)
    assert stats.max_drawdown == pytest.approx(10.0)
    assert stats.max_drawdown_percent == pytest.approx(10.0 / 10_010.0 * 100.0)
    assert stats.average_hold_time_minutes == pytest.approx(25.0)
    assert stats.longest_winning_streak == 1
    assert stats.longest_losing_streak == 2


def test_break_even_trade_extends_losing_streak_only() -> None:
    trades = [_trade(1, 5.0, minutes=1), _trade(2, 0.0, minutes=2), _trade(3, -3.0, minutes=3)]

    stats = compute_statistics(trades, 1_000.0, T0, T0 + timedelta(hours=1))

    assert stats.winning_trades == 1
    assert stats.losing_trades == 1
    assert stats.win_rate == pytest.approx(100.0 / 3.0)
    assert stats.longest_losing_streak == 2


def test_statistics_without_trades_are_zero() -> None:
    stats = compute_statistics([], 10_000.0, T0, T0 + timedelta(days=1))

    payload = stats.to_dict()
    assert payload["total_trades"] == 0
    assert payload["profit_factor"] == 0.0
    assert payload["max_drawdown"] == 0.0
    assert payload["period_start"] == T0.isoformat()


def test_drawdown_series_tracks_running_peak() -> None:
    series = compute_drawdown_series(
        [
            {"ts": T0, "equity": 10_000.0},
            {"ts": T0, "equity": 10_100.0},
            {"ts": T0, "equity": 9_900.0},
            {"ts": T0, "equity": 10_200.0},
        ]
    )

    assert [point["drawdown"] for point in series] == pytest.approx([0.0, 0.0, 200.0, 0.0])
    assert series[2]["drawdown_pct"] == pytest.approx(200.0 / 10_100.0 * 100.0)


def _small_run():
    anomalies = [
        AnomalyEvent(
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
        ),
        AnomalyEvent(
            id=2,
            symbol="ETHUSDT",
            percent_change=25.0,
            anomaly_time=T0 + timedelta(minutes=5),
            price_after=50.0,
            price_change_percent=3.0,
            daily_price_low=49.0,
            daily_price_high=51.0,
            price_from_low_pct=2.0,
            price_from_high_pct=2.0,
        ),
    ]
    prices = {"BTCUSDT": [PricePoint(timestamp=T0 + timedelta(minutes=2), price=106.0)]}
    market = InMemoryMarketData(anomalies=anomalies, prices=prices)
    config = BacktestConfig(start_date=T0 - timedelta(hours=1), end_date=T0 + timedelta(hours=6))
    return BacktestEngine(market, market).run_backtest(config)


def test_reporter_writes_trades_equity_rejections_and_summary(tmp_path: Path) -> None:
    reporter = BacktestReporter(tmp_path / "reports")
    result = _small_run()

    summary = reporter.generate(result, label="smoke test")

    outdir = reporter.last_output_dir
    assert outdir is not None
    assert outdir.parent == tmp_path / "reports"
    assert outdir.name.startswith("smoke-test_TREND_FOLLOWING_20251120_20251120")
    for name in ("trades.csv", "equity.csv", "rejections.csv", "summary.json", "report.json"):
        assert (outdir / name).exists()

    with (outdir / "trades.csv").open(newline="", encoding="utf-8") as handle:
        rows = list(csv.DictReader(handle))
    assert len(rows) == 1
    assert rows[0]["close_reason"] == "TAKE_PROFIT"
    assert rows[0]["batches"] == "0"

    with (outdir / "rejections.csv").open(newline="", encoding="utf-8") as handle:
        rejections = list(csv.DictReader(handle))
    assert [row["stage"] for row in rejections] == ["signal"]
    assert rejections[0]["symbol"] == "ETHUSDT"

    saved = json.loads((outdir / "summary.json").read_text(encoding="utf-8"))
    assert saved == summary
    assert saved["statistics"]["total_trades"] == 1
    assert saved["cancelled"] is False

    report = json.loads((outdir / "report.json").read_text(encoding="utf-8"))
    assert report["trades"][0]["close_reason"] == "TAKE_PROFIT"
    assert report["anomaly_rejections"][0]["anomaly_id"] == 2


def test_reporter_never_overwrites_previous_report(tmp_path: Path) -> None:
    reporter = BacktestReporter(tmp_path)
    result = _small_run()

    reporter.generate(result)
    first = reporter.last_output_dir
    reporter.generate(result)
    second = reporter.last_output_dir

    assert first is not None and second is not None
    assert first != second
    assert first.exists() and second.exists()
