from oi_trader.backtest.engine import AnomalyRejection, BacktestEngine, BacktestResult
from oi_trader.backtest.sweep import SweepOutcome, run_parameter_sweep

__all__ = [
    "AnomalyRejection",
    "BacktestEngine",
    "BacktestResult",
    "SweepOutcome",
    "run_parameter_sweep",
]
