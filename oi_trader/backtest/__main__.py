from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

from oi_trader.backtest.engine import BacktestEngine
from oi_trader.config import BacktestConfig, load_config
from oi_trader.data.anomalies import parse_timestamp
from oi_trader.data.frames import load_market_data_csv
from oi_trader.errors import ConfigError
from oi_trader.reporting.backtest_reporter import BacktestReporter


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def _is_date_only(value: str) -> bool:
    raw = value.strip()
    return len(raw) == 10 and raw[4] == "-" and raw[7] == "-"


def _parse_start(value: str) -> datetime:
    return parse_timestamp(value)


def _parse_end(value: str) -> datetime:
    dt = parse_timestamp(value)
    if _is_date_only(value):
        return dt + timedelta(days=1)
    return dt


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="OI anomaly strategy backtest")
    parser.add_argument("--config", default="config.example.yaml")
    parser.add_argument("--anomalies", required=True, help="CSV of anomaly events")
    parser.add_argument("--prices", required=True, help="CSV of price snapshots")
    parser.add_argument("--start", default="")
    parser.add_argument("--end", default="")
    parser.add_argument("--out", default="", help="write a report folder under this directory")
    parser.add_argument("--log-level", default="")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"CONFIG_ERROR: {exc}", file=sys.stderr)
        return 2
    setup_logging(args.log_level or config.log_level)

    updates: dict[str, datetime] = {}
    if args.start:
        updates["start_date"] = _parse_start(args.start)
    if args.end:
        updates["end_date"] = _parse_end(args.end)
    backtest = config.backtest
    if updates:
        try:
            backtest = BacktestConfig.model_validate({**backtest.model_dump(), **updates})
        except ValueError as exc:
            parser.error(str(exc))

    market = load_market_data_csv(
        anomalies_path=Path(args.anomalies),
        prices_path=Path(args.prices),
        blacklist=config.symbol_blacklist,
    )
    engine = BacktestEngine(market, market)
    result = engine.run_backtest(backtest)

    payload = {"statistics": result.statistics.to_dict(), "final_balance": result.final_balance}
    if args.out:
        reporter = BacktestReporter(args.out)
        reporter.generate(result)
        payload["report_dir"] = str(reporter.last_output_dir)
    print(json.dumps(payload, indent=2, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
