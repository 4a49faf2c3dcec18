from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from oi_trader.clock import to_utc, utc_now
from oi_trader.config import BacktestConfig, StrategyType
from oi_trader.data.anomalies import AnomalyEvent, severity_at_least
from oi_trader.data.sources import AnomalySource, PriceSource
from oi_trader.execution.exit_scheduler import ExitScheduler
from oi_trader.execution.fills import FillModel
from oi_trader.execution.simulator import PositionSimulator
from oi_trader.reporting.metrics import BacktestStatistics, compute_statistics
from oi_trader.storage.models import EquityCurvePoint, PositionRecord
from oi_trader.strategy.contracts import RejectedSignal, TradingSignal
from oi_trader.strategy.filters import StrategyFilter
from oi_trader.strategy.risk import RiskGate
from oi_trader.strategy.signal_generator import SignalGenerator

LOGGER = logging.getLogger(__name__)

DUPLICATE_WINDOW = timedelta(seconds=10)


@dataclass(frozen=True, slots=True)
class AnomalyRejection:
    symbol: str
    anomaly_time: datetime
    reason: str
    anomaly_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "anomaly_time": self.anomaly_time.isoformat(),
            "reason": self.reason,
            "anomaly_id": self.anomaly_id,
        }


@dataclass(slots=True)
class BacktestResult:
    config: BacktestConfig
    strategy_type: StrategyType
    statistics: BacktestStatistics
    trades: list[PositionRecord]
    signals: list[TradingSignal]
    rejected_signals: list[RejectedSignal]
    equity_curve: list[EquityCurvePoint]
    execution_time_ms: float
    created_at: datetime
    cancelled: bool = False
    anomaly_rejections: list[AnomalyRejection] = field(default_factory=list)
    final_balance: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.model_dump(mode="json"),
            "strategy_type": self.strategy_type.value,
            "statistics": self.statistics.to_dict(),
            "trades": [trade.to_dict() for trade in self.trades],
            "signals": [signal.to_dict() for signal in self.signals],
            "rejected_signals": [item.to_dict() for item in self.rejected_signals],
            "anomaly_rejections": [item.to_dict() for item in self.anomaly_rejections],
            "equity_curve": [point.to_dict() for point in self.equity_curve],
            "execution_time_ms": self.execution_time_ms,
            "created_at": self.created_at.isoformat(),
            "cancelled": self.cancelled,
            "final_balance": self.final_balance,
        }


@dataclass(slots=True)
class _RunState:
    balance: float
    peak_equity: float
    next_position_id: int = 1
    closed: list[PositionRecord] = field(default_factory=list)
    signals: list[TradingSignal] = field(default_factory=list)
    rejected: list[RejectedSignal] = field(default_factory=list)
    anomaly_rejections: list[AnomalyRejection] = field(default_factory=list)
    equity_curve: list[EquityCurvePoint] = field(default_factory=list)


class BacktestEngine:
    """Replays anomaly events against historical prices.

    Collaborators are injected; each run reconfigures them from the
    ``BacktestConfig`` it is given, so an engine can be reused for several
    runs but must not run two backtests at the same time.
    """

    def __init__(
        self,
        anomaly_source: AnomalySource,
        price_source: PriceSource,
        *,
        signal_generator: SignalGenerator | None = None,
        strategy_filter: StrategyFilter | None = None,
        risk_gate: RiskGate | None = None,
        exit_scheduler: ExitScheduler | None = None,
    ):
        self.anomaly_source = anomaly_source
        self.price_source = price_source
        self.signal_generator = signal_generator or SignalGenerator()
        self.strategy_filter = strategy_filter or StrategyFilter()
        self.risk_gate = risk_gate or RiskGate()
        self.exit_scheduler = exit_scheduler or ExitScheduler()

    def load_anomalies(self, config: BacktestConfig) -> list[AnomalyEvent]:
        raw = self.anomaly_source.get_anomalies(
            config.start_date,
            config.end_date,
            symbols=config.symbols or None,
            min_severity=config.min_anomaly_severity,
        )
        anomalies = [anomaly for anomaly in raw if anomaly.has_price_extremes]
        LOGGER.info("Filtered %d -> %d anomalies with complete price extremes", len(raw), len(anomalies))

        blacklist = [item.upper() for item in self.anomaly_source.get_symbol_blacklist() if item]
        if blacklist:
            before = len(anomalies)
            anomalies = [
                anomaly
                for anomaly in anomalies
                if not any(blocked in anomaly.symbol.upper() for blocked in blacklist)
            ]
            if before != len(anomalies):
                LOGGER.info("Filtered %d anomalies by blacklist: %s", before - len(anomalies), ", ".join(blacklist))

        if config.symbols:
            wanted = set(config.symbols)
            anomalies = [anomaly for anomaly in anomalies if anomaly.symbol.upper() in wanted]
        if config.min_anomaly_severity:
            anomalies = [
                anomaly for anomaly in anomalies if severity_at_least(anomaly.severity, config.min_anomaly_severity)
            ]
        start = to_utc(config.start_date)
        end = to_utc(config.end_date)
        anomalies = [anomaly for anomaly in anomalies if start <= to_utc(anomaly.anomaly_time) <= end]
        return sorted(anomalies, key=lambda anomaly: to_utc(anomaly.anomaly_time))

    def _configure(self, config: BacktestConfig) -> PositionSimulator:
        self.signal_generator.set_chase_high_threshold(config.chase_high_threshold)
        self.strategy_filter.update_config(config.strategy_config)
        self.risk_gate.update_config(config.risk_config)
        self.risk_gate.initialize_backtest_mode(config.start_date)
        self.exit_scheduler.reset()
        fills = FillModel(
            slippage_percent=config.slippage_percent,
            commission_percent=config.commission_percent,
            use_slippage=config.use_slippage,
        )
        return PositionSimulator(
            self.price_source,
            fills=fills,
            exit_scheduler=self.exit_scheduler,
            dynamic_take_profit=config.dynamic_take_profit,
            max_holding_minutes=config.max_holding_minutes,
        )

    def run_backtest(self, config: BacktestConfig, cancel_event: threading.Event | None = None) -> BacktestResult:
        started = time.perf_counter()
        LOGGER.info(
            "Backtest start %s -> %s balance=%.2f strategy=%s",
            config.start_date.isoformat(),
            config.end_date.isoformat(),
            config.initial_balance,
            config.strategy_config.strategy_type.value,
        )
        simulator = self._configure(config)
        anomalies = self.load_anomalies(config)
        LOGGER.info("Loaded %d historical anomalies", len(anomalies))

        state = _RunState(balance=config.initial_balance, peak_equity=config.initial_balance)
        cancelled = False
        last_time = to_utc(config.start_date)

        for anomaly in anomalies:
            if cancel_event is not None and cancel_event.is_set():
                LOGGER.warning("Backtest cancelled after %d closed trades", len(state.closed))
                cancelled = True
                break
            now = to_utc(anomaly.anomaly_time)
            last_time = now
            for position in simulator.advance(now):
                self._book_close(state, position)

            self._process_anomaly(config, state, simulator, anomaly, now)
            self._record_equity(state, simulator, now)

        if not cancelled:
            end = to_utc(config.end_date)
            for position in simulator.advance(end):
                self._book_close(state, position)
            last_time = end
        for position in simulator.force_close_all(last_time):
            self._book_close(state, position)

        statistics = compute_statistics(state.closed, config.initial_balance, config.start_date, config.end_date)
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        LOGGER.info(
            "Backtest completed in %.0fms: %d trades, win rate %.2f%%, pnl %.2f",
            elapsed_ms,
            statistics.total_trades,
            statistics.win_rate,
            statistics.total_pnl,
        )
        return BacktestResult(
            config=config,
            strategy_type=config.strategy_config.strategy_type,
            statistics=statistics,
            trades=state.closed,
            signals=state.signals,
            rejected_signals=state.rejected,
            equity_curve=state.equity_curve,
            execution_time_ms=elapsed_ms,
            created_at=utc_now(),
            cancelled=cancelled,
            anomaly_rejections=state.anomaly_rejections,
            final_balance=state.balance,
        )

    def _process_anomaly(
        self,
        config: BacktestConfig,
        state: _RunState,
        simulator: PositionSimulator,
        anomaly: AnomalyEvent,
        now: datetime,
    ) -> None:
        result = self.signal_generator.generate_signal_with_reason(anomaly)
        signal = result.signal
        if signal is None:
            state.anomaly_rejections.append(
                AnomalyRejection(
                    symbol=anomaly.symbol,
                    anomaly_time=now,
                    reason=result.reason or "no signal",
                    anomaly_id=anomaly.id,
                )
            )
            return
        state.signals.append(signal)

        check = self.strategy_filter.evaluate_signal(signal)
        if not check.passed:
            self._reject(state, signal, check.reason or "strategy filter")
            return

        if config.allowed_directions and signal.direction.value not in config.allowed_directions:
            self._reject(
                state,
                signal,
                f"direction {signal.direction.value} not in allowed directions [{', '.join(config.allowed_directions)}]",
            )
            return

        positions = simulator.open_positions + state.closed
        decision = self.risk_gate.can_open_position(signal, positions, state.balance, as_of_time=now)
        if not decision.allowed:
            self._reject(state, signal, decision.reason or "risk check failed")
            return

        recent = any(
            position.symbol == signal.symbol and abs(now - position.opened_at) < DUPLICATE_WINDOW
            for position in positions
        )
        if recent:
            self._reject(
                state,
                signal,
                f"duplicate signal: position for {signal.symbol} within {int(DUPLICATE_WINDOW.total_seconds())}s",
            )
            return

        if signal.entry_price <= 0:
            self._reject(state, signal, "signal has no entry price")
            return

        side = signal.direction.value
        entry_price = simulator.fills.entry_price(side, signal.entry_price)
        quantity = decision.position_size / entry_price
        margin = decision.position_size / decision.leverage
        if quantity <= 0:
            self._reject(state, signal, "position size is zero")
            return
        if margin > state.balance:
            self._reject(state, signal, f"insufficient balance for margin {margin:.2f}")
            return

        stop_loss, take_profit = self.risk_gate.calculate_stop_loss_take_profit(side, entry_price)
        position = simulator.open_position(
            position_id=state.next_position_id,
            symbol=signal.symbol,
            side=side,
            entry_price=entry_price,
            quantity=quantity,
            leverage=decision.leverage,
            stop_loss_price=stop_loss,
            take_profit_price=take_profit,
            opened_at=now,
            signal_id=signal.source_anomaly_id,
        )
        state.next_position_id += 1
        state.balance -= position.margin

    def _reject(self, state: _RunState, signal: TradingSignal, reason: str) -> None:
        LOGGER.debug("Rejected %s %s: %s", signal.symbol, signal.direction.value, reason)
        state.rejected.append(RejectedSignal(signal=signal, reason=reason))

    def _book_close(self, state: _RunState, position: PositionRecord) -> None:
        state.balance += position.margin + position.realized_pnl
        self.risk_gate.record_trade_result(
            position.realized_pnl,
            position.realized_pnl > 0,
            closed_at=position.closed_at,
        )
        state.closed.append(position)

    def _record_equity(self, state: _RunState, simulator: PositionSimulator, now: datetime) -> None:
        equity = state.balance + simulator.open_equity()
        state.peak_equity = max(state.peak_equity, equity)
        drawdown_pct = ((state.peak_equity - equity) / state.peak_equity * 100.0) if state.peak_equity > 0 else 0.0
        state.equity_curve.append(EquityCurvePoint(timestamp=now, equity=equity, drawdown_percent=drawdown_pct))
