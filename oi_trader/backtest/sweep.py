from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any

from oi_trader.backtest.engine import BacktestEngine, BacktestResult
from oi_trader.config import BacktestConfig

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepOutcome:
    label: str
    result: BacktestResult | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.result is not None and self.error is None

    def summary(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"label": self.label, "success": self.success}
        if self.result is not None:
            payload["cancelled"] = self.result.cancelled
            payload["statistics"] = self.result.statistics.to_dict()
        if self.error is not None:
            payload["error"] = self.error
        return payload


def _run_one(
    engine_factory: Callable[[], BacktestEngine],
    label: str,
    config: BacktestConfig,
    cancel_event: threading.Event | None,
) -> SweepOutcome:
    engine = engine_factory()
    try:
        result = engine.run_backtest(config, cancel_event=cancel_event)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("Sweep run %s failed", label)
        return SweepOutcome(label=label, error=f"{type(exc).__name__}: {exc}")
    return SweepOutcome(label=label, result=result)


def run_parameter_sweep(
    engine_factory: Callable[[], BacktestEngine],
    configs: Mapping[str, BacktestConfig] | Iterable[tuple[str, BacktestConfig]],
    max_workers: int = 4,
    *,
    continue_on_error: bool = True,
    cancel_event: threading.Event | None = None,
) -> dict[str, SweepOutcome]:
    """Run one isolated engine per config; outcomes are keyed by label in submission order.

    ``engine_factory`` must build a fresh engine on every call so that runs
    never share risk or tracking state.
    """
    items = list(configs.items()) if isinstance(configs, Mapping) else list(configs)
    labels = [label for label, _ in items]
    if len(set(labels)) != len(labels):
        raise ValueError("sweep labels must be unique")

    outcomes: dict[str, SweepOutcome] = {}
    failed: list[SweepOutcome] = []
    if items:
        with ThreadPoolExecutor(max_workers=max(1, int(max_workers))) as pool:
            future_map: dict[Future[SweepOutcome], str] = {
                pool.submit(_run_one, engine_factory, label, config, cancel_event): label
                for label, config in items
            }
            for future in as_completed(future_map):
                outcome = future.result()
                outcomes[outcome.label] = outcome
                if not outcome.success:
                    failed.append(outcome)
                    if not continue_on_error:
                        for other in future_map:
                            if other is not future:
                                other.cancel()
                        break

    if failed and not continue_on_error:
        first = failed[0]
        raise RuntimeError(f"Sweep run {first.label} failed: {first.error}")

    LOGGER.info("Sweep finished: %d runs, %d failed", len(outcomes), len(failed))
    return {label: outcomes[label] for label in labels if label in outcomes}
