from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from oi_trader.data.anomalies import AnomalyEvent


class SignalDirection(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"


class SignalStrength(str, Enum):
    WEAK = "WEAK"
    MEDIUM = "MEDIUM"
    STRONG = "STRONG"


STRENGTH_RANK = {SignalStrength.WEAK: 0, SignalStrength.MEDIUM: 1, SignalStrength.STRONG: 2}


@dataclass(frozen=True, slots=True)
class ScoreBreakdown:
    oi_score: float
    price_score: float
    sentiment_score: float
    funding_score: float
    total_score: float

    def to_dict(self) -> dict[str, float]:
        return {
            "oi_score": self.oi_score,
            "price_score": self.price_score,
            "sentiment_score": self.sentiment_score,
            "funding_score": self.funding_score,
            "total_score": self.total_score,
        }


@dataclass(frozen=True, slots=True)
class TradingSignal:
    symbol: str
    direction: SignalDirection
    strength: SignalStrength
    score: float
    breakdown: ScoreBreakdown
    confidence: float
    entry_price: float
    stop_loss_price: float
    take_profit_price: float
    triggered_at: datetime
    anomaly: AnomalyEvent
    source_anomaly_id: int | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "direction": self.direction.value,
            "strength": self.strength.value,
            "score": self.score,
            "breakdown": self.breakdown.to_dict(),
            "confidence": self.confidence,
            "entry_price": self.entry_price,
            "stop_loss_price": self.stop_loss_price,
            "take_profit_price": self.take_profit_price,
            "triggered_at": self.triggered_at.isoformat(),
            "source_anomaly_id": self.source_anomaly_id,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class SignalResult:
    signal: TradingSignal | None
    rejected: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class ScoreSnapshot:
    """Score of an anomaly computed without applying any rejection."""

    score: float
    confidence: float
    direction: SignalDirection
    strength: SignalStrength
    breakdown: ScoreBreakdown
    veto_reason: str | None = None


@dataclass(slots=True)
class StrategyCheck:
    passed: bool
    reason: str | None = None


@dataclass(slots=True)
class RiskDecision:
    allowed: bool
    reason: str | None = None
    position_size: float = 0.0
    leverage: int = 1


@dataclass(slots=True)
class RejectedSignal:
    signal: TradingSignal
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"signal": self.signal.to_dict(), "reason": self.reason}
