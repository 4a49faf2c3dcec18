from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from oi_trader.clock import to_utc
from oi_trader.config import DynamicTakeProfitConfig
from oi_trader.data.anomalies import PricePoint
from oi_trader.data.sources import PriceSource
from oi_trader.errors import PriceFetchError
from oi_trader.execution.exit_scheduler import ExitAction, ExitScheduler
from oi_trader.execution.fills import FillModel, gross_pnl, liquidation_price, price_reached, profit_percent
from oi_trader.storage.models import (
    CloseReason,
    PositionRecord,
    PositionStatus,
    TakeProfitExecution,
)

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _ActivePosition:
    position: PositionRecord
    path: list[PricePoint]
    window_end: datetime
    cursor: int = 0
    last_price: float = 0.0
    last_time: datetime | None = None
    tracked: bool = False


class PositionSimulator:
    """Walks open positions forward along their price paths.

    Each position fetches its path once at open time, covering
    ``[opened_at, opened_at + max_holding_minutes]``.  ``advance(until)``
    consumes every point at or before ``until`` in fixed priority:
    scheduled exits, liquidation, stop-loss, then fixed take-profit.
    """

    def __init__(
        self,
        price_source: PriceSource,
        *,
        fills: FillModel,
        exit_scheduler: ExitScheduler,
        dynamic_take_profit: DynamicTakeProfitConfig | None = None,
        max_holding_minutes: int = 60,
    ):
        self.price_source = price_source
        self.fills = fills
        self.exit_scheduler = exit_scheduler
        self.dynamic_take_profit = dynamic_take_profit
        self.max_holding = timedelta(minutes=max_holding_minutes)
        self._active: dict[int, _ActivePosition] = {}

    @property
    def open_positions(self) -> list[PositionRecord]:
        return [active.position for active in self._active.values()]

    def open_position(
        self,
        *,
        position_id: int,
        symbol: str,
        side: str,
        entry_price: float,
        quantity: float,
        leverage: int,
        stop_loss_price: float,
        take_profit_price: float,
        opened_at: datetime,
        signal_id: int | None = None,
    ) -> PositionRecord:
        opened = to_utc(opened_at)
        position = PositionRecord(
            id=position_id,
            symbol=symbol,
            side=side,
            entry_price=entry_price,
            initial_quantity=quantity,
            quantity=quantity,
            leverage=leverage,
            margin=entry_price * quantity / leverage,
            stop_loss_price=stop_loss_price,
            take_profit_price=take_profit_price,
            liquidation_price=liquidation_price(side, entry_price, leverage),
            opened_at=opened,
            signal_id=signal_id,
        )
        window_end = opened + self.max_holding
        try:
            path = self.price_source.get_prices(symbol, opened, window_end)
        except PriceFetchError as exc:
            LOGGER.warning("%s; position %s will time out at entry", exc, position_id)
            path = []
        except Exception:
            LOGGER.exception("Price source error for %s, position %s will time out at entry", symbol, position_id)
            path = []
        if not path:
            LOGGER.debug("No price path for %s between %s and %s", symbol, opened.isoformat(), window_end.isoformat())

        active = _ActivePosition(
            position=position,
            path=list(path),
            window_end=window_end,
            last_price=entry_price,
            last_time=opened,
        )
        if self.dynamic_take_profit is not None:
            self.exit_scheduler.start_tracking(
                position_id,
                symbol,
                side,
                entry_price,
                quantity,
                self.dynamic_take_profit,
            )
            active.tracked = True
        self._active[position_id] = active
        LOGGER.debug(
            "Position %s opened: %s %s qty=%.6f @ %.6f lev=%dx",
            position_id,
            symbol,
            side,
            quantity,
            entry_price,
            leverage,
        )
        return position

    def advance(self, until: datetime) -> list[PositionRecord]:
        """Consume price points up to ``until``; return positions closed, in close order."""
        limit = to_utc(until)
        closed: list[PositionRecord] = []
        for position_id in list(self._active):
            active = self._active[position_id]
            if self._walk(active, limit):
                closed.append(active.position)
                del self._active[position_id]
        closed.sort(key=lambda position: (position.closed_at, position.id))
        return closed

    def force_close_all(self, at: datetime) -> list[PositionRecord]:
        closed: list[PositionRecord] = []
        for position_id in list(self._active):
            active = self._active.pop(position_id)
            self.close_position(active.position, active.last_price, to_utc(at), CloseReason.TIMEOUT)
            self._release(active)
            closed.append(active.position)
        return closed

    def unrealized_pnl(self) -> float:
        return sum(
            gross_pnl(active.position.side, active.position.entry_price, active.last_price, active.position.quantity)
            for active in self._active.values()
        )

    def reserved_margin(self) -> float:
        return sum(active.position.margin for active in self._active.values())

    def open_equity(self) -> float:
        """Margin, partial realized pnl and unrealized pnl still held by open positions."""
        realized = sum(active.position.realized_pnl for active in self._active.values())
        return self.reserved_margin() + realized + self.unrealized_pnl()

    def _walk(self, active: _ActivePosition, limit: datetime) -> bool:
        position = active.position
        while active.cursor < len(active.path):
            point = active.path[active.cursor]
            at = to_utc(point.timestamp)
            if at > limit:
                return False
            active.cursor += 1
            active.last_price = point.price
            active.last_time = at
            if self._process_point(active, point.price, at):
                return True

        if limit >= active.window_end:
            closed_at = active.last_time if active.path else active.window_end
            self.close_position(position, active.last_price, closed_at, CloseReason.TIMEOUT)
            self._release(active)
            return True
        return False

    def _process_point(self, active: _ActivePosition, price: float, at: datetime) -> bool:
        position = active.position
        side = position.side

        if active.tracked:
            for action in self.exit_scheduler.update_price(position.id, price, at):
                self.apply_exit_action(position, action, at)
                if position.quantity <= 0:
                    last_fill = position.take_profit_executions[-1].exit_price
                    self._finalize(position, last_fill, at, CloseReason.TAKE_PROFIT)
                    self._release(active)
                    return True

        if position.liquidation_price > 0 and price_reached(side, price, position.liquidation_price, favourable=False):
            LOGGER.warning(
                "Liquidation %s @ %.6f (entry %.6f, liq %.6f)",
                position.symbol,
                price,
                position.entry_price,
                position.liquidation_price,
            )
            self.close_position(position, position.liquidation_price, at, CloseReason.LIQUIDATION)
            self._release(active)
            return True

        if position.stop_loss_price > 0 and price_reached(side, price, position.stop_loss_price, favourable=False):
            self.close_position(position, position.stop_loss_price, at, CloseReason.STOP_LOSS)
            self._release(active)
            return True

        if (
            self.dynamic_take_profit is None
            and position.take_profit_price > 0
            and price_reached(side, price, position.take_profit_price, favourable=True)
        ):
            self.close_position(position, position.take_profit_price, at, CloseReason.TAKE_PROFIT)
            self._release(active)
            return True
        return False

    def apply_exit_action(self, position: PositionRecord, action: ExitAction, at: datetime) -> None:
        quantity = min(action.quantity, position.quantity)
        fill = self.fills.exit_price(position.side, action.price)
        commission = self.fills.commission(fill, quantity)
        pnl = gross_pnl(position.side, position.entry_price, fill, quantity) - commission
        position.realized_pnl += pnl
        position.commission_paid += commission
        position.quantity = 0.0 if quantity >= position.quantity else position.quantity - quantity
        position.take_profit_executions.append(
            TakeProfitExecution(
                batch_number=len(position.take_profit_executions) + 1,
                type=action.type,
                quantity=quantity,
                exit_price=fill,
                pnl=pnl,
                profit_percent=profit_percent(position.side, position.entry_price, fill),
                executed_at=at,
                reason=action.reason,
            )
        )
        position.transition_to(PositionStatus.PARTIALLY_CLOSED)
        LOGGER.info(
            "%s: %s closed %.6f @ %.6f pnl=%.2f (%s)",
            action.type.value,
            position.symbol,
            quantity,
            fill,
            pnl,
            action.reason,
        )

    def close_position(self, position: PositionRecord, reference_price: float, at: datetime, reason: CloseReason) -> None:
        """Close whatever quantity remains at ``reference_price`` (before exit slippage)."""
        fill = self.fills.exit_price(position.side, reference_price)
        if position.quantity > 0:
            commission = self.fills.commission(fill, position.quantity)
            position.realized_pnl += gross_pnl(position.side, position.entry_price, fill, position.quantity) - commission
            position.commission_paid += commission
            position.quantity = 0.0
        self._finalize(position, fill, at, reason)

    def _finalize(self, position: PositionRecord, exit_price: float, at: datetime, reason: CloseReason) -> None:
        position.transition_to(PositionStatus.CLOSED)
        position.exit_price = exit_price
        position.closed_at = at
        position.close_reason = reason
        LOGGER.debug(
            "Position %s closed: %s @ %.6f pnl=%.2f (%s)",
            position.id,
            position.symbol,
            exit_price,
            position.realized_pnl,
            reason.value,
        )

    def _release(self, active: _ActivePosition) -> None:
        if active.tracked:
            active.tracked = False
            self.exit_scheduler.stop_tracking(active.position.id)
