from __future__ import annotations

import logging
from bisect import bisect_left, bisect_right
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Protocol

from oi_trader.clock import to_utc
from oi_trader.data.anomalies import AnomalyEvent, PricePoint, severity_at_least

LOGGER = logging.getLogger(__name__)


class AnomalySource(Protocol):
    def get_anomalies(
        self,
        start: datetime,
        end: datetime,
        *,
        symbols: Sequence[str] | None = None,
        min_severity: str | None = None,
    ) -> list[AnomalyEvent]:
        ...

    def get_symbol_blacklist(self) -> list[str]:
        ...


class PriceSource(Protocol):
    """Historical price lookup.

    Implementations raise ``oi_trader.errors.PriceFetchError`` when a series
    cannot be fetched; the simulator then treats the path as empty.
    """

    def get_prices(self, symbol: str, start: datetime, end: datetime) -> list[PricePoint]:
        ...


class InMemoryMarketData:
    """Read-only anomaly and price store backing both source protocols.

    Series are sorted once at construction; lookups never mutate state, so a
    single instance can be shared by engines running in parallel.
    """

    def __init__(
        self,
        *,
        anomalies: Iterable[AnomalyEvent] = (),
        prices: dict[str, Iterable[PricePoint]] | None = None,
        blacklist: Iterable[str] = (),
    ):
        self._anomalies = sorted(anomalies, key=lambda item: to_utc(item.anomaly_time))
        self._prices: dict[str, list[PricePoint]] = {}
        self._price_times: dict[str, list[datetime]] = {}
        for symbol, points in (prices or {}).items():
            ordered = sorted(points, key=lambda point: to_utc(point.timestamp))
            key = symbol.strip().upper()
            self._prices[key] = ordered
            self._price_times[key] = [to_utc(point.timestamp) for point in ordered]
        self._blacklist = [str(item).strip().upper() for item in blacklist if str(item).strip()]

    @property
    def symbols(self) -> list[str]:
        return sorted(self._prices)

    def get_anomalies(
        self,
        start: datetime,
        end: datetime,
        *,
        symbols: Sequence[str] | None = None,
        min_severity: str | None = None,
    ) -> list[AnomalyEvent]:
        start_utc = to_utc(start)
        end_utc = to_utc(end)
        wanted = {item.strip().upper() for item in symbols} if symbols else None
        out: list[AnomalyEvent] = []
        for anomaly in self._anomalies:
            ts = to_utc(anomaly.anomaly_time)
            if ts < start_utc or ts > end_utc:
                continue
            if wanted is not None and anomaly.symbol.upper() not in wanted:
                continue
            if not severity_at_least(anomaly.severity, min_severity):
                continue
            out.append(anomaly)
        return out

    def get_symbol_blacklist(self) -> list[str]:
        return list(self._blacklist)

    def get_prices(self, symbol: str, start: datetime, end: datetime) -> list[PricePoint]:
        key = symbol.strip().upper()
        points = self._prices.get(key)
        if not points:
            LOGGER.debug("No price series loaded for %s", key)
            return []
        times = self._price_times[key]
        lo = bisect_left(times, to_utc(start))
        hi = bisect_right(times, to_utc(end))
        return [point for point in points[lo:hi] if point.price > 0]
