from __future__ import annotations

from dataclasses import dataclass

# Relative slack for level comparisons; percent offsets like 100 * 1.14 land a
# few ulps past the round price.
PRICE_TOLERANCE = 1e-9


@dataclass(frozen=True, slots=True)
class FillModel:
    slippage_percent: float = 0.1
    commission_percent: float = 0.05
    use_slippage: bool = True

    def entry_price(self, side: str, price: float) -> float:
        if not self.use_slippage:
            return price
        # Buying (LONG entry) fills above the quote, selling below.
        if side == "LONG":
            return price * (1 + self.slippage_percent / 100.0)
        return price * (1 - self.slippage_percent / 100.0)

    def exit_price(self, side: str, price: float) -> float:
        if not self.use_slippage:
            return price
        if side == "LONG":
            return price * (1 - self.slippage_percent / 100.0)
        return price * (1 + self.slippage_percent / 100.0)

    def commission(self, price: float, quantity: float) -> float:
        return abs(price * quantity) * (self.commission_percent / 100.0)


def gross_pnl(side: str, entry_price: float, exit_price: float, quantity: float) -> float:
    pnl = (exit_price - entry_price) * quantity
    return pnl if side == "LONG" else -pnl


def profit_percent(side: str, entry_price: float, exit_price: float) -> float:
    if entry_price <= 0:
        return 0.0
    move = (exit_price - entry_price) / entry_price * 100.0
    return move if side == "LONG" else -move


def liquidation_price(side: str, entry_price: float, leverage: int) -> float:
    """Isolated-margin liquidation price, ignoring maintenance margin."""
    lev = max(int(leverage), 1)
    if side == "LONG":
        return entry_price * (1 - 1.0 / lev)
    return entry_price * (1 + 1.0 / lev)


def price_reached(side: str, price: float, level: float, *, favourable: bool) -> bool:
    """Whether ``price`` is at or beyond ``level`` in the favourable/adverse direction for ``side``.

    A price within ``PRICE_TOLERANCE`` (relative) of the level counts as reached.
    """
    slack = abs(level) * PRICE_TOLERANCE
    if (side == "LONG") == favourable:
        return price >= level - slack
    return price <= level + slack
