from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from oi_trader.storage.models import PositionRecord


@dataclass(slots=True)
class BacktestStatistics:
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    total_pnl: float
    gross_pnl: float
    net_pnl: float
    total_commission: float
    average_win: float
    average_loss: float
    profit_factor: float
    max_drawdown: float
    max_drawdown_percent: float
    average_hold_time_minutes: float
    longest_winning_streak: int
    longest_losing_streak: int
    period_start: datetime
    period_end: datetime

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["period_start"] = self.period_start.isoformat()
        payload["period_end"] = self.period_end.isoformat()
        return payload


def _max_consecutive(pnls: Sequence[float], *, positive: bool) -> int:
    # A trade that is not a win counts towards the losing streak.
    longest = 0
    current = 0
    for pnl in pnls:
        is_match = pnl > 0 if positive else pnl <= 0
        if is_match:
            current += 1
            if current > longest:
                longest = current
        else:
            current = 0
    return longest


def compute_drawdown_series(equity: Sequence[Mapping[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    if not equity:
        return out

    peak: float | None = None
    for idx, point in enumerate(equity):
        eq = float(point["equity"])
        if peak is None or eq > peak:
            peak = eq
        drawdown = max(0.0, peak - eq)
        drawdown_pct = ((drawdown / peak) * 100.0) if peak > 0 else 0.0
        out.append(
            {
                "idx": idx,
                "ts": point.get("ts"),
                "equity": eq,
                "drawdown": drawdown,
                "drawdown_pct": drawdown_pct,
            }
        )
    return out


def _close_order(trade: PositionRecord) -> tuple[datetime, datetime]:
    closed = trade.closed_at if trade.closed_at is not None else trade.opened_at
    return closed, trade.opened_at


def compute_statistics(
    trades: Sequence[PositionRecord],
    initial_balance: float,
    period_start: datetime,
    period_end: datetime,
) -> BacktestStatistics:
    ordered = sorted(trades, key=_close_order)
    pnl_values = [trade.realized_pnl for trade in ordered]
    total_trades = len(pnl_values)

    win_values = [pnl for pnl in pnl_values if pnl > 0]
    loss_values = [pnl for pnl in pnl_values if pnl < 0]
    average_win = (sum(win_values) / len(win_values)) if win_values else 0.0
    average_loss = (sum(loss_values) / len(loss_values)) if loss_values else 0.0
    profit_factor = abs(average_win / average_loss) if average_loss != 0 else 0.0

    total_pnl = sum(pnl_values)
    total_commission = sum(trade.commission_paid for trade in ordered)

    equity_points: list[dict[str, Any]] = [{"ts": period_start, "equity": initial_balance}]
    running = initial_balance
    for trade, pnl in zip(ordered, pnl_values):
        running += pnl
        equity_points.append({"ts": trade.closed_at, "equity": running})
    drawdowns = compute_drawdown_series(equity_points)
    max_drawdown = max((point["drawdown"] for point in drawdowns), default=0.0)
    max_drawdown_percent = max((point["drawdown_pct"] for point in drawdowns), default=0.0)

    hold_minutes = [trade.holding_minutes for trade in ordered]
    average_hold = (sum(hold_minutes) / total_trades) if total_trades else 0.0

    return BacktestStatistics(
        total_trades=total_trades,
        winning_trades=len(win_values),
        losing_trades=len(loss_values),
        win_rate=((len(win_values) / total_trades) * 100.0) if total_trades else 0.0,
        total_pnl=total_pnl,
        gross_pnl=total_pnl + total_commission,
        net_pnl=total_pnl,
        total_commission=total_commission,
        average_win=average_win,
        average_loss=average_loss,
        profit_factor=profit_factor,
        max_drawdown=max_drawdown,
        max_drawdown_percent=max_drawdown_percent,
        average_hold_time_minutes=average_hold,
        longest_winning_streak=_max_consecutive(pnl_values, positive=True),
        longest_losing_streak=_max_consecutive(pnl_values, positive=False),
        period_start=period_start,
        period_end=period_end,
    )
