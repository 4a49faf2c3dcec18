from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pandas as pd

from oi_trader.data.anomalies import AnomalyEvent, PricePoint
from oi_trader.data.sources import InMemoryMarketData

LOGGER = logging.getLogger(__name__)

_CSV_TS_CANDIDATES = ("anomaly_time", "timestamp", "ts_utc", "datetime", "time")
_CSV_PRICE_CANDIDATES = ("price", "mark_price", "close")
_CSV_OI_CANDIDATES = ("open_interest", "oi")
_ANOMALY_FLOAT_COLUMNS = (
    "oi_before",
    "oi_after",
    "price_before",
    "price_after",
    "price_change_percent",
    "top_trader_long_short_ratio",
    "top_account_long_short_ratio",
    "global_long_short_ratio",
    "taker_buy_sell_ratio",
    "funding_rate_after",
    "daily_price_low",
    "daily_price_high",
    "price_from_low_pct",
    "price_from_high_pct",
    "price_from_2h_low_pct",
)


def _pick(frame: pd.DataFrame, candidates: tuple[str, ...], *, required: bool, path: Path) -> str | None:
    lowered = {str(column).lstrip("\ufeff").strip().lower(): column for column in frame.columns}
    for candidate in candidates:
        if candidate in lowered:
            return lowered[candidate]
    if required:
        raise ValueError(f"{path} must include one of: {', '.join(candidates)}")
    return None


def _optional_float(value: Any) -> float | None:
    if value is None or pd.isna(value):
        return None
    return float(value)


def anomalies_from_frame(frame: pd.DataFrame) -> list[AnomalyEvent]:
    if frame.empty:
        return []
    out: list[AnomalyEvent] = []
    for row in frame.sort_values("anomaly_time", kind="mergesort").to_dict(orient="records"):
        raw_id = _optional_float(row.get("id"))
        period = _optional_float(row.get("period_seconds"))
        severity = row.get("severity")
        out.append(
            AnomalyEvent(
                id=int(raw_id) if raw_id is not None else None,
                symbol=str(row["symbol"]).strip().upper(),
                period_seconds=int(period or 0),
                percent_change=float(row["percent_change"]),
                anomaly_time=row["anomaly_time"].to_pydatetime(),
                severity=str(severity).strip().lower() if isinstance(severity, str) and severity.strip() else "low",
                **{column: _optional_float(row.get(column)) for column in _ANOMALY_FLOAT_COLUMNS},
            )
        )
    return out


def read_anomalies_csv(path: str | Path) -> pd.DataFrame:
    csv_path = Path(path)
    raw = pd.read_csv(csv_path)
    ts_col = _pick(raw, _CSV_TS_CANDIDATES, required=True, path=csv_path)
    if "symbol" not in raw.columns or "percent_change" not in raw.columns:
        raise ValueError(f"{csv_path} must include symbol and percent_change columns")
    frame = raw.copy()
    frame["anomaly_time"] = pd.to_datetime(raw[ts_col], utc=True, errors="coerce")
    frame["percent_change"] = pd.to_numeric(raw["percent_change"], errors="coerce")
    for column in _ANOMALY_FLOAT_COLUMNS:
        if column in frame.columns:
            frame[column] = pd.to_numeric(frame[column], errors="coerce")
    before = len(frame)
    frame = frame.dropna(subset=["anomaly_time", "percent_change"]).reset_index(drop=True)
    if len(frame) < before:
        LOGGER.warning("Dropped %d unparsable anomaly rows from %s", before - len(frame), csv_path)
    return frame


def read_prices_csv(path: str | Path) -> pd.DataFrame:
    csv_path = Path(path)
    raw = pd.read_csv(csv_path)
    ts_col = _pick(raw, _CSV_TS_CANDIDATES, required=True, path=csv_path)
    price_col = _pick(raw, _CSV_PRICE_CANDIDATES, required=True, path=csv_path)
    oi_col = _pick(raw, _CSV_OI_CANDIDATES, required=False, path=csv_path)
    if "symbol" not in raw.columns:
        raise ValueError(f"{csv_path} must include a symbol column")
    out = pd.DataFrame(
        {
            "symbol": raw["symbol"].astype(str).str.strip().str.upper(),
            "ts_utc": pd.to_datetime(raw[ts_col], utc=True, errors="coerce"),
            "price": pd.to_numeric(raw[price_col], errors="coerce"),
        }
    )
    if oi_col is not None:
        out["open_interest"] = pd.to_numeric(raw[oi_col], errors="coerce")
    out = out.dropna(subset=["ts_utc", "price"])
    out = out[out["price"] > 0]
    return out.sort_values(["symbol", "ts_utc"]).drop_duplicates(subset=["symbol", "ts_utc"]).reset_index(drop=True)


def prices_from_frame(frame: pd.DataFrame) -> dict[str, list[PricePoint]]:
    series: dict[str, list[PricePoint]] = {}
    if frame.empty:
        return series
    has_oi = "open_interest" in frame.columns
    for symbol, group in frame.groupby("symbol", sort=True):
        series[str(symbol)] = [
            PricePoint(
                timestamp=row.ts_utc.to_pydatetime(),
                price=float(row.price),
                open_interest=_optional_float(row.open_interest) if has_oi else None,
            )
            for row in group.itertuples(index=False)
        ]
    return series


def load_market_data_csv(
    *,
    anomalies_path: str | Path,
    prices_path: str | Path,
    blacklist: Iterable[str] = (),
) -> InMemoryMarketData:
    anomalies = anomalies_from_frame(read_anomalies_csv(anomalies_path))
    prices = prices_from_frame(read_prices_csv(prices_path))
    LOGGER.info(
        "Loaded %d anomalies and %d price series from %s / %s",
        len(anomalies),
        len(prices),
        anomalies_path,
        prices_path,
    )
    return InMemoryMarketData(anomalies=anomalies, prices=prices, blacklist=blacklist)
