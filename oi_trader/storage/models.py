from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from oi_trader.errors import PositionStateError


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    PARTIALLY_CLOSED = "PARTIALLY_CLOSED"
    CLOSED = "CLOSED"


class CloseReason(str, Enum):
    STOP_LOSS = "STOP_LOSS"
    TAKE_PROFIT = "TAKE_PROFIT"
    LIQUIDATION = "LIQUIDATION"
    TIMEOUT = "TIMEOUT"


class ExitType(str, Enum):
    BATCH_TAKE_PROFIT = "BATCH_TAKE_PROFIT"
    TRAILING_STOP = "TRAILING_STOP"


_ALLOWED_TRANSITIONS = {
    PositionStatus.OPEN: {PositionStatus.PARTIALLY_CLOSED, PositionStatus.CLOSED},
    PositionStatus.PARTIALLY_CLOSED: {PositionStatus.PARTIALLY_CLOSED, PositionStatus.CLOSED},
    PositionStatus.CLOSED: set(),
}


@dataclass(slots=True)
class TakeProfitExecution:
    batch_number: int
    type: ExitType
    quantity: float
    exit_price: float
    pnl: float
    profit_percent: float
    executed_at: datetime
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_number": self.batch_number,
            "type": self.type.value,
            "quantity": self.quantity,
            "exit_price": self.exit_price,
            "pnl": self.pnl,
            "profit_percent": self.profit_percent,
            "executed_at": self.executed_at.isoformat(),
            "reason": self.reason,
        }


@dataclass(slots=True)
class PositionRecord:
    id: int
    symbol: str
    side: str
    entry_price: float
    initial_quantity: float
    quantity: float
    leverage: int
    margin: float
    stop_loss_price: float
    take_profit_price: float
    liquidation_price: float
    opened_at: datetime
    status: PositionStatus = PositionStatus.OPEN
    realized_pnl: float = 0.0
    commission_paid: float = 0.0
    close_reason: CloseReason | None = None
    exit_price: float | None = None
    closed_at: datetime | None = None
    signal_id: int | None = None
    take_profit_executions: list[TakeProfitExecution] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status is not PositionStatus.CLOSED

    @property
    def holding_minutes(self) -> float:
        if self.closed_at is None:
            return 0.0
        return (self.closed_at - self.opened_at).total_seconds() / 60.0

    def transition_to(self, status: PositionStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise PositionStateError(
                f"position {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "entry_price": self.entry_price,
            "initial_quantity": self.initial_quantity,
            "quantity": self.quantity,
            "leverage": self.leverage,
            "margin": self.margin,
            "stop_loss_price": self.stop_loss_price,
            "take_profit_price": self.take_profit_price,
            "liquidation_price": self.liquidation_price,
            "status": self.status.value,
            "realized_pnl": self.realized_pnl,
            "commission_paid": self.commission_paid,
            "close_reason": self.close_reason.value if self.close_reason is not None else None,
            "exit_price": self.exit_price,
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at is not None else None,
            "signal_id": self.signal_id,
            "take_profit_executions": [execution.to_dict() for execution in self.take_profit_executions],
        }


@dataclass(frozen=True, slots=True)
class EquityCurvePoint:
    timestamp: datetime
    equity: float
    drawdown_percent: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "equity": self.equity,
            "drawdown_percent": self.drawdown_percent,
        }
