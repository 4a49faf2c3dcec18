"""Multi-batch take-profit and trailing-stop tracking.

Each tracked position owns an ordered list of fixed take-profit batches and
at most one trailing batch.  Records live in an arena addressed by a
``TrackingHandle``; a position id index points at the handle.  Released slots
go on a free list and are reused with a bumped generation, so a stale handle
is detected.  The released position id is remembered until its slot is
reused, and a second release of it raises ``TrackingReleasedError``.

Fixed batch size is ``allocation% x initial quantity`` clamped to the
remaining quantity.  The trailing leg activates once at least one fixed batch
has executed and closes everything that is left.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from oi_trader.config import DynamicTakeProfitConfig, TakeProfitTargetConfig
from oi_trader.errors import TrackingReleasedError
from oi_trader.execution.fills import price_reached
from oi_trader.storage.models import ExitType

LOGGER = logging.getLogger(__name__)

_QTY_EPSILON = 1e-9


@dataclass(frozen=True, slots=True)
class TrackingHandle:
    slot: int
    generation: int
    position_id: int


@dataclass(slots=True)
class TargetState:
    allocation_pct: float
    is_trailing: bool
    target_profit_pct: float = 0.0
    target_price: float | None = None
    trailing_callback_pct: float = 30.0
    executed: bool = False
    executed_quantity: float = 0.0
    executed_price: float | None = None
    executed_at: datetime | None = None


@dataclass(slots=True)
class TrackingState:
    position_id: int
    symbol: str
    side: str
    entry_price: float
    initial_quantity: float
    remaining_quantity: float
    targets: list[TargetState] = field(default_factory=list)
    current_price: float | None = None
    trailing_active: bool = False
    extreme_price: float | None = None
    trailing_stop_price: float | None = None
    executed_targets: int = 0

    @property
    def trailing_target(self) -> TargetState | None:
        return next((target for target in self.targets if target.is_trailing), None)


@dataclass(frozen=True, slots=True)
class ExitAction:
    type: ExitType
    position_id: int
    symbol: str
    quantity: float
    price: float
    target_index: int
    batch_number: int
    reason: str


def validate_targets(targets: Sequence[TakeProfitTargetConfig]) -> None:
    trailing = [target for target in targets if target.is_trailing]
    if len(trailing) > 1:
        raise ValueError("at most one trailing batch is allowed")
    total = sum(float(target.percentage) for target in targets)
    if total > 100.0 + _QTY_EPSILON:
        raise ValueError(f"take-profit allocations sum to {total:.2f}% (> 100%)")
    for target in targets:
        if float(target.percentage) <= 0:
            raise ValueError("take-profit allocation must be > 0")


class ExitScheduler:
    def __init__(self):
        self._records: list[TrackingState | None] = []
        self._generations: list[int] = []
        self._free: list[int] = []
        self._index: dict[int, TrackingHandle] = {}
        # released position id -> freed slot, dropped once the slot is reused
        self._released: dict[int, int] = {}

    @property
    def active_count(self) -> int:
        return len(self._index)

    @property
    def capacity(self) -> int:
        return len(self._records)

    def reset(self) -> None:
        self._records.clear()
        self._generations.clear()
        self._free.clear()
        self._index.clear()
        self._released.clear()

    def start_tracking(
        self,
        position_id: int,
        symbol: str,
        side: str,
        entry_price: float,
        quantity: float,
        config: DynamicTakeProfitConfig,
    ) -> TrackingHandle:
        if position_id in self._index:
            raise ValueError(f"position {position_id} is already tracked")
        if quantity <= 0:
            raise ValueError("quantity must be > 0")
        validate_targets(config.targets)

        targets: list[TargetState] = []
        for target in config.fixed_targets:
            offset = float(target.target_profit_pct) / 100.0
            target_price = entry_price * (1 + offset) if side == "LONG" else entry_price * (1 - offset)
            targets.append(
                TargetState(
                    allocation_pct=float(target.percentage),
                    is_trailing=False,
                    target_profit_pct=float(target.target_profit_pct),
                    target_price=target_price,
                )
            )
        trailing = config.trailing_target
        if trailing is not None:
            targets.append(
                TargetState(
                    allocation_pct=float(trailing.percentage),
                    is_trailing=True,
                    trailing_callback_pct=float(trailing.trailing_callback_pct),
                )
            )

        state = TrackingState(
            position_id=position_id,
            symbol=symbol,
            side=side,
            entry_price=entry_price,
            initial_quantity=quantity,
            remaining_quantity=quantity,
            targets=targets,
            current_price=entry_price,
        )
        handle = self._allocate(position_id, state)
        self._index[position_id] = handle
        self._released.pop(position_id, None)
        LOGGER.info(
            "Started tracking position %s (%s %s) with %d targets",
            position_id,
            symbol,
            side,
            len(targets),
        )
        return handle

    def _allocate(self, position_id: int, state: TrackingState) -> TrackingHandle:
        if self._free:
            slot = self._free.pop()
            self._generations[slot] += 1
            self._records[slot] = state
            stale = [pid for pid, freed in self._released.items() if freed == slot]
            for pid in stale:
                del self._released[pid]
        else:
            slot = len(self._records)
            self._records.append(state)
            self._generations.append(0)
        return TrackingHandle(slot=slot, generation=self._generations[slot], position_id=position_id)

    def _lookup(self, position_id: int) -> TrackingState | None:
        handle = self._index.get(position_id)
        if handle is None:
            return None
        return self._records[handle.slot]

    def resolve(self, handle: TrackingHandle) -> TrackingState:
        """Return the record behind ``handle``; a handle whose slot was released raises."""
        if handle.slot >= len(self._records) or self._generations[handle.slot] != handle.generation:
            raise TrackingReleasedError(handle.position_id)
        state = self._records[handle.slot]
        if state is None:
            raise TrackingReleasedError(handle.position_id)
        return state

    def get_tracking_state(self, position_id: int) -> TrackingState | None:
        return self._lookup(position_id)

    def update_price(self, position_id: int, price: float, at: datetime | None = None) -> list[ExitAction]:
        state = self._lookup(position_id)
        if state is None:
            LOGGER.warning("Position %s is not tracked", position_id)
            return []
        if state.remaining_quantity <= 0:
            return []

        state.current_price = price
        actions: list[ExitAction] = []

        for index, target in enumerate(state.targets):
            if target.executed or target.is_trailing or target.target_price is None:
                continue
            if not price_reached(state.side, price, target.target_price, favourable=True):
                continue
            quantity = min(state.initial_quantity * target.allocation_pct / 100.0, state.remaining_quantity)
            if state.remaining_quantity - quantity <= _QTY_EPSILON * max(state.initial_quantity, 1.0):
                quantity = state.remaining_quantity
            target.executed = True
            target.executed_quantity = quantity
            target.executed_price = price
            target.executed_at = at
            state.remaining_quantity = 0.0 if quantity == state.remaining_quantity else state.remaining_quantity - quantity
            state.executed_targets += 1
            actions.append(
                ExitAction(
                    type=ExitType.BATCH_TAKE_PROFIT,
                    position_id=position_id,
                    symbol=state.symbol,
                    quantity=quantity,
                    price=price,
                    target_index=index,
                    batch_number=state.executed_targets,
                    reason=f"take-profit batch {state.executed_targets} reached (+{target.target_profit_pct:g}%)",
                )
            )
            LOGGER.info("Position %s: batch %d reached at %s", position_id, state.executed_targets, price)
            if state.remaining_quantity <= 0:
                return actions

        trailing = state.trailing_target
        if trailing is None or trailing.executed:
            return actions

        if not state.trailing_active and state.executed_targets >= 1:
            state.trailing_active = True
            state.extreme_price = price
            LOGGER.info("Position %s: trailing stop activated at %s", position_id, price)

        if state.trailing_active:
            action = self._update_trailing(state, trailing, price, at)
            if action is not None:
                actions.append(action)
        return actions

    def _update_trailing(
        self,
        state: TrackingState,
        trailing: TargetState,
        price: float,
        at: datetime | None,
    ) -> ExitAction | None:
        if state.extreme_price is None or price_reached(state.side, price, state.extreme_price, favourable=True):
            state.extreme_price = price
        keep = 1 - trailing.trailing_callback_pct / 100.0
        excursion = abs(state.extreme_price - state.entry_price)
        if state.side == "LONG":
            state.trailing_stop_price = state.entry_price + excursion * keep
        else:
            state.trailing_stop_price = state.entry_price - excursion * keep

        if not price_reached(state.side, price, state.trailing_stop_price, favourable=False):
            return None

        quantity = state.remaining_quantity
        trailing.executed = True
        trailing.executed_quantity = quantity
        trailing.executed_price = price
        trailing.executed_at = at
        state.remaining_quantity = 0.0
        state.executed_targets += 1
        LOGGER.info(
            "Position %s: trailing stop triggered at %s (extreme %s)",
            state.position_id,
            price,
            state.extreme_price,
        )
        return ExitAction(
            type=ExitType.TRAILING_STOP,
            position_id=state.position_id,
            symbol=state.symbol,
            quantity=quantity,
            price=price,
            target_index=state.targets.index(trailing),
            batch_number=state.executed_targets,
            reason=(
                f"trailing stop hit (extreme {state.extreme_price:g}, "
                f"callback {trailing.trailing_callback_pct:g}%)"
            ),
        )

    def stop_tracking(self, position_id: int) -> None:
        if position_id in self._released:
            raise TrackingReleasedError(position_id)
        handle = self._index.pop(position_id, None)
        if handle is None:
            raise KeyError(f"position {position_id} is not tracked")
        self._records[handle.slot] = None
        self._free.append(handle.slot)
        self._released[position_id] = handle.slot
        LOGGER.info("Stopped tracking position %s", position_id)
