from __future__ import annotations


class OiTraderError(RuntimeError):
    pass


class ConfigError(OiTraderError):
    pass


class PriceFetchError(OiTraderError):
    def __init__(self, symbol: str, message: str):
        self.symbol = symbol
        super().__init__(f"Price fetch failed for {symbol}: {message}")


class PositionStateError(OiTraderError):
    pass


class TrackingReleasedError(OiTraderError, KeyError):
    def __init__(self, position_id: int):
        self.position_id = position_id
        super().__init__(f"Tracking for position {position_id} was already released")
