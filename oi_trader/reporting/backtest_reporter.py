from __future__ import annotations

import csv
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from oi_trader.backtest.engine import BacktestResult

LOGGER = logging.getLogger(__name__)


_TRADE_FIELD_ORDER = [
    "id",
    "symbol",
    "side",
    "opened_at",
    "closed_at",
    "entry_price",
    "exit_price",
    "initial_quantity",
    "leverage",
    "margin",
    "realized_pnl",
    "commission_paid",
    "close_reason",
    "batches",
    "signal_id",
]
_EQUITY_FIELD_ORDER = ["timestamp", "equity", "drawdown_percent"]
_REJECTION_FIELD_ORDER = ["stage", "symbol", "timestamp", "direction", "score", "reason"]


class BacktestReporter:
    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.last_output_dir: Path | None = None

    def generate(self, result: BacktestResult, *, label: str = "backtest") -> dict[str, Any]:
        outdir = _next_unique_dir(self.base_dir / _run_folder_name(result, label))
        outdir.mkdir(parents=True, exist_ok=True)

        _write_csv(outdir / "trades.csv", [_trade_row(trade) for trade in result.trades], _TRADE_FIELD_ORDER)
        _write_csv(outdir / "equity.csv", [point.to_dict() for point in result.equity_curve], _EQUITY_FIELD_ORDER)
        _write_csv(outdir / "rejections.csv", _rejection_rows(result), _REJECTION_FIELD_ORDER)

        summary = {
            "label": label,
            "strategy_type": result.strategy_type.value,
            "period_start": result.config.start_date.isoformat(),
            "period_end": result.config.end_date.isoformat(),
            "initial_balance": result.config.initial_balance,
            "final_balance": result.final_balance,
            "cancelled": result.cancelled,
            "signals": len(result.signals),
            "rejected_signals": len(result.rejected_signals),
            "execution_time_ms": result.execution_time_ms,
            "statistics": result.statistics.to_dict(),
        }
        _write_json(outdir / "summary.json", summary)
        _write_json(outdir / "report.json", result.to_dict())

        self.last_output_dir = outdir
        LOGGER.info("Backtest report written to %s", outdir)
        return summary


def _sanitize_path_part(value: Any) -> str:
    raw = str(value or "").strip()
    if not raw:
        return "na"
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", raw)
    cleaned = cleaned.strip("-._")
    return cleaned or "na"


def _run_folder_name(result: BacktestResult, label: str) -> str:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return "_".join(
        [
            _sanitize_path_part(label),
            _sanitize_path_part(result.strategy_type.value),
            result.config.start_date.strftime("%Y%m%d"),
            result.config.end_date.strftime("%Y%m%d"),
            timestamp,
        ]
    )


def _next_unique_dir(path: Path) -> Path:
    if not path.exists():
        return path
    suffix = 1
    while True:
        candidate = Path(f"{path}_{suffix}")
        if not candidate.exists():
            return candidate
        suffix += 1


def _trade_row(trade: Any) -> dict[str, Any]:
    payload = trade.to_dict()
    payload.pop("take_profit_executions", None)
    payload["batches"] = len(trade.take_profit_executions)
    return payload


def _rejection_rows(result: BacktestResult) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for item in result.anomaly_rejections:
        rows.append(
            {
                "stage": "signal",
                "symbol": item.symbol,
                "timestamp": item.anomaly_time.isoformat(),
                "direction": "",
                "score": "",
                "reason": item.reason,
            }
        )
    for item in result.rejected_signals:
        rows.append(
            {
                "stage": "admission",
                "symbol": item.signal.symbol,
                "timestamp": item.signal.triggered_at.isoformat(),
                "direction": item.signal.direction.value,
                "score": round(item.signal.score, 4),
                "reason": item.reason,
            }
        )
    return rows


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=True), encoding="utf-8")


def _ordered_fields(rows: list[dict[str, Any]], preferred: list[str]) -> list[str]:
    seen = set(preferred)
    out = list(preferred)
    for row in rows:
        for key in row.keys():
            if key not in seen:
                out.append(key)
                seen.add(key)
    return out


def _write_csv(path: Path, rows: list[dict[str, Any]], preferred_fields: list[str]) -> None:
    fieldnames = _ordered_fields(rows, preferred_fields)
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)
