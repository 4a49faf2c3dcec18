from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

SEVERITY_RANK = {"low": 0, "medium": 1, "high": 2}


@dataclass(frozen=True, slots=True)
class AnomalyEvent:
    symbol: str
    percent_change: float
    anomaly_time: datetime
    severity: str = "low"
    id: int | None = None
    period_seconds: int = 0
    oi_before: float | None = None
    oi_after: float | None = None
    price_before: float | None = None
    price_after: float | None = None
    price_change_percent: float | None = None
    top_trader_long_short_ratio: float | None = None
    top_account_long_short_ratio: float | None = None
    global_long_short_ratio: float | None = None
    taker_buy_sell_ratio: float | None = None
    funding_rate_after: float | None = None
    daily_price_low: float | None = None
    daily_price_high: float | None = None
    price_from_low_pct: float | None = None
    price_from_high_pct: float | None = None
    price_from_2h_low_pct: float | None = None

    @property
    def has_price_extremes(self) -> bool:
        return (
            self.daily_price_low is not None
            and self.daily_price_high is not None
            and self.price_from_low_pct is not None
            and self.price_from_high_pct is not None
        )


@dataclass(frozen=True, slots=True)
class PricePoint:
    timestamp: datetime
    price: float
    open_interest: float | None = None


def parse_timestamp(value: str) -> datetime:
    normalized = value.strip().replace(" ", "T")
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def severity_at_least(severity: str, minimum: str | None) -> bool:
    if minimum is None:
        return True
    return SEVERITY_RANK.get(str(severity).lower(), 0) >= SEVERITY_RANK.get(str(minimum).lower(), 0)
