from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from oi_trader.clock import next_utc_midnight, to_utc, utc_now
from oi_trader.config import RiskConfig
from oi_trader.storage.models import PositionRecord
from oi_trader.strategy.contracts import RiskDecision, SignalStrength, TradingSignal

LOGGER = logging.getLogger(__name__)

STRENGTH_SIZE_MULTIPLIER = {
    SignalStrength.STRONG: 1.0,
    SignalStrength.MEDIUM: 0.7,
    SignalStrength.WEAK: 0.5,
}


class RiskGate:
    """Stateful admission control for new positions.

    The daily loss accumulator resets at UTC midnight of whatever clock the
    caller supplies through ``as_of_time``; backtests anchor it with
    ``initialize_backtest_mode`` so historical ranges reset on simulated days.
    """

    def __init__(self, config: RiskConfig | None = None):
        self.config = config or RiskConfig()
        self.is_paused = False
        self.daily_pnl = 0.0
        self.consecutive_losses = 0
        self.daily_reset_time = next_utc_midnight(utc_now())

    def initialize_backtest_mode(self, start_time: datetime) -> None:
        self.is_paused = False
        self.daily_pnl = 0.0
        self.consecutive_losses = 0
        self.daily_reset_time = next_utc_midnight(start_time)
        LOGGER.info("Risk gate anchored to simulated time, next reset %s", self.daily_reset_time.isoformat())

    def can_open_position(
        self,
        signal: TradingSignal,
        positions: Sequence[PositionRecord],
        balance: float,
        as_of_time: datetime | None = None,
    ) -> RiskDecision:
        if self.is_paused:
            return RiskDecision(allowed=False, reason="trading paused due to risk limits")

        daily = self._check_daily_loss_limit(balance, as_of_time)
        if daily is not None:
            return daily

        consecutive = self._check_consecutive_losses()
        if consecutive is not None:
            return consecutive

        open_positions = [position for position in positions if position.is_open]
        if len(open_positions) >= self.config.max_total_positions:
            return RiskDecision(
                allowed=False,
                reason=f"maximum total positions ({self.config.max_total_positions}) reached",
            )

        symbol_positions = [position for position in open_positions if position.symbol == signal.symbol]
        if len(symbol_positions) >= self.config.max_positions_per_symbol:
            return RiskDecision(
                allowed=False,
                reason=f"maximum positions for {signal.symbol} ({self.config.max_positions_per_symbol}) reached",
            )

        position_size = self.calculate_position_size(signal, balance)
        leverage = self.determine_leverage(signal)
        LOGGER.debug("Risk check passed for %s size=%.2f leverage=%dx", signal.symbol, position_size, leverage)
        return RiskDecision(allowed=True, position_size=position_size, leverage=leverage)

    def roll_day(self, as_of_time: datetime | None = None) -> bool:
        """Reset the daily accumulator if ``as_of_time`` is past the next UTC midnight."""
        now = to_utc(as_of_time) if as_of_time is not None else utc_now()
        if now < self.daily_reset_time:
            return False
        self.daily_pnl = 0.0
        self.daily_reset_time = next_utc_midnight(now)
        LOGGER.info("Daily PnL reset, next reset %s", self.daily_reset_time.isoformat())
        return True

    def _check_daily_loss_limit(self, balance: float, as_of_time: datetime | None) -> RiskDecision | None:
        self.roll_day(as_of_time)

        limit = balance * (self.config.daily_loss_limit_percent / 100.0)
        if self.daily_pnl < -limit:
            if self.config.pause_after_loss_limit:
                self.pause_trading()
            return RiskDecision(
                allowed=False,
                reason=f"daily loss limit reached ({self.daily_pnl:.2f} / -{limit:.2f})",
            )
        return None

    def _check_consecutive_losses(self) -> RiskDecision | None:
        if self.consecutive_losses >= self.config.consecutive_loss_limit:
            if self.config.pause_after_loss_limit:
                self.pause_trading()
            return RiskDecision(
                allowed=False,
                reason=f"consecutive loss limit reached ({self.consecutive_losses})",
            )
        return None

    def calculate_position_size(self, signal: TradingSignal, balance: float) -> float:
        percent = self.config.max_position_size_percent * STRENGTH_SIZE_MULTIPLIER[signal.strength]
        percent *= signal.confidence
        return balance * (percent / 100.0)

    def determine_leverage(self, signal: TradingSignal) -> int:
        by_strength = self.config.leverage_by_signal_strength
        leverage = {
            SignalStrength.STRONG: by_strength.strong,
            SignalStrength.MEDIUM: by_strength.medium,
            SignalStrength.WEAK: by_strength.weak,
        }.get(signal.strength, 1)
        return min(leverage, self.config.max_leverage)

    def calculate_stop_loss_take_profit(self, side: str, entry_price: float) -> tuple[float, float]:
        if entry_price <= 0:
            return 0.0, 0.0
        stop_pct = self.config.default_stop_loss_percent / 100.0
        target_pct = self.config.default_take_profit_percent / 100.0
        if side == "LONG":
            return entry_price * (1 - stop_pct), entry_price * (1 + target_pct)
        return entry_price * (1 + stop_pct), entry_price * (1 - target_pct)

    def record_trade_result(self, pnl: float, is_win: bool, closed_at: datetime | None = None) -> None:
        # A close after midnight belongs to the new day.
        if closed_at is not None:
            self.roll_day(closed_at)
        self.daily_pnl += pnl
        if is_win:
            self.consecutive_losses = 0
        else:
            self.consecutive_losses += 1
        LOGGER.debug(
            "Trade result pnl=%.2f daily_pnl=%.2f consecutive_losses=%d",
            pnl,
            self.daily_pnl,
            self.consecutive_losses,
        )

    def pause_trading(self) -> None:
        if not self.is_paused:
            LOGGER.warning("Trading paused due to risk limits")
        self.is_paused = True

    def resume_trading(self) -> None:
        self.is_paused = False
        self.consecutive_losses = 0
        LOGGER.info("Trading resumed")

    def reset_daily_stats(self, as_of_time: datetime | None = None) -> None:
        self.daily_pnl = 0.0
        self.daily_reset_time = next_utc_midnight(as_of_time if as_of_time is not None else utc_now())
        LOGGER.info("Daily stats reset")

    def get_risk_status(self) -> dict[str, Any]:
        return {
            "is_paused": self.is_paused,
            "daily_pnl": self.daily_pnl,
            "consecutive_losses": self.consecutive_losses,
            "next_reset_time": self.daily_reset_time,
        }

    def update_config(self, config: RiskConfig | None = None, **overrides: Any) -> None:
        base = config or self.config
        if overrides:
            base = RiskConfig.model_validate({**base.model_dump(), **overrides})
        self.config = base
        LOGGER.info("Risk config updated")
