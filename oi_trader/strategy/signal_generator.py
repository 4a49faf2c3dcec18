"""Heuristic scoring of open-interest anomalies into trade signals.

An anomaly passes through three stages:

    veto chain  ->  score breakdown (oi / price / sentiment / funding)
                ->  direction, strength, confidence, suggested prices

The veto chain is an ordered tuple of named rules; the first rule that
returns a reason rejects the anomaly.  Scores are bounded per component:

    oi_score         0..3
    price_score      0..2
    sentiment_score  0..3
    funding_score    fixed neutral 1.0
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from oi_trader.data.anomalies import AnomalyEvent
from oi_trader.strategy.contracts import (
    ScoreBreakdown,
    ScoreSnapshot,
    SignalDirection,
    SignalResult,
    SignalStrength,
    TradingSignal,
)

LOGGER = logging.getLogger(__name__)

MIN_TOTAL_SCORE = 4.0
NEUTRAL_FUNDING_SCORE = 1.0
SIGNAL_ERROR_REASON = "signal generation error"

_SEVERITY_BONUS = {"high": 0.3, "medium": 0.2}
_SEVERITY_CONFIDENCE = {"high": 1.0, "medium": 0.7}
_LOW_SEVERITY_CONFIDENCE = 0.4

# (stop %, target %) applied to the post-event price
_PRICE_SUGGESTIONS = {
    SignalStrength.STRONG: (1.5, 6.0),
    SignalStrength.MEDIUM: (2.0, 5.0),
    SignalStrength.WEAK: (2.5, 4.0),
}


def implied_direction(anomaly: AnomalyEvent) -> SignalDirection:
    return SignalDirection.LONG if anomaly.percent_change > 0 else SignalDirection.SHORT


def _abs_price_change(anomaly: AnomalyEvent) -> float:
    return abs(anomaly.price_change_percent) if anomaly.price_change_percent is not None else 0.0


@dataclass(frozen=True, slots=True)
class VetoRule:
    name: str
    check: Callable[[AnomalyEvent, float], str | None]


def _veto_price_extreme(anomaly: AnomalyEvent, threshold: float) -> str | None:
    if implied_direction(anomaly) is SignalDirection.LONG:
        if anomaly.price_from_2h_low_pct is not None:
            pct, label = anomaly.price_from_2h_low_pct, "2h low"
        elif anomaly.price_from_low_pct is not None:
            pct, label = anomaly.price_from_low_pct, "daily low"
        else:
            return None
        if pct >= threshold:
            return f"price already up {pct:.1f}% from {label} (>= {threshold:g}%), avoid chasing"
        return None
    pct = anomaly.price_from_high_pct
    if pct is not None and pct >= threshold:
        return f"price already down {pct:.1f}% from daily high (>= {threshold:g}%), avoid chasing"
    return None


def _veto_oi_euphoria(anomaly: AnomalyEvent, threshold: float) -> str | None:
    oi_change = abs(anomaly.percent_change)
    if oi_change > 20:
        return f"OI already changed {oi_change:.1f}% (> 20%), late-stage euphoria"
    return None


def _veto_price_euphoria(anomaly: AnomalyEvent, threshold: float) -> str | None:
    price_change = _abs_price_change(anomaly)
    if price_change > 15:
        return f"price already moved {price_change:.1f}% (> 15%), late-stage euphoria"
    return None


def _veto_divergence(anomaly: AnomalyEvent, threshold: float) -> str | None:
    oi_change = abs(anomaly.percent_change)
    price_change = _abs_price_change(anomaly)
    if oi_change > 8 and price_change < 1:
        return f"OI moved {oi_change:.1f}% but price only {price_change:.1f}%, divergence"
    return None


def _veto_top_trader(anomaly: AnomalyEvent, threshold: float) -> str | None:
    ratio = anomaly.top_trader_long_short_ratio
    if ratio is None:
        return None
    direction = implied_direction(anomaly)
    if direction is SignalDirection.LONG and ratio < 1.0:
        return f"LONG signal but top-trader ratio {ratio:.2f} < 1.0"
    if direction is SignalDirection.SHORT and ratio > 1.0:
        return f"SHORT signal but top-trader ratio {ratio:.2f} > 1.0"
    return None


VETO_RULES: tuple[VetoRule, ...] = (
    VetoRule("price_extreme", _veto_price_extreme),
    VetoRule("oi_euphoria", _veto_oi_euphoria),
    VetoRule("price_euphoria", _veto_price_euphoria),
    VetoRule("oi_price_divergence", _veto_divergence),
    VetoRule("top_trader_opposes", _veto_top_trader),
)


def oi_score(anomaly: AnomalyEvent) -> float:
    change = abs(anomaly.percent_change)
    if 5 <= change <= 10:
        score = 3.0
    elif 3 <= change < 5:
        score = 2.5
    elif 10 < change <= 15:
        score = 2.0
    elif 15 < change <= 20:
        score = 1.5
    else:
        score = 1.0
    score += _SEVERITY_BONUS.get(str(anomaly.severity).lower(), 0.0)
    return min(score, 3.0)


def price_score(anomaly: AnomalyEvent) -> float:
    price_change = anomaly.price_change_percent
    if price_change is None:
        return 0.0
    oi_change = anomaly.percent_change
    if not ((price_change > 0 and oi_change > 0) or (price_change < 0 and oi_change < 0)):
        return 0.0
    change = abs(price_change)
    oi_early = 3 <= abs(oi_change) <= 5
    if 2 <= change <= 4:
        score = 2.0
    elif 4 < change <= 6:
        score = 1.8
    elif 6 < change <= 10:
        score = 2.0 if oi_early else 1.2
    elif 1 <= change < 2:
        score = 1.5
    elif change > 10:
        score = 0.5
    elif change >= 0.5:
        score = 0.8
    else:
        score = 0.0
    return min(score, 2.0)


def _top_trader_component(ratio: float, is_long: bool) -> float:
    if is_long:
        if ratio > 1.5:
            return 1.0
        if ratio > 1.2:
            return 0.67
        return 0.07
    if ratio < 0.7:
        return 1.0
    if ratio < 0.8:
        return 0.67
    return 0.07


def _taker_component(ratio: float, is_long: bool) -> float:
    if is_long:
        if ratio > 1.3:
            return 1.0
        if ratio > 1.1:
            return 0.75
        if ratio >= 0.9:
            return 0.25
        return 0.0
    if ratio < 0.8:
        return 1.0
    if ratio < 0.9:
        return 0.75
    if ratio <= 1.1:
        return 0.25
    return 0.0


def _global_component(ratio: float, is_long: bool) -> float:
    # Crowded retail positioning counts against the trade.
    if is_long:
        if ratio < 1.2:
            return 1.0
        if ratio < 1.5:
            return 0.67
        return 0.25
    if ratio > 1.5:
        return 1.0
    if ratio > 1.2:
        return 0.67
    return 0.25


def sentiment_score(anomaly: AnomalyEvent) -> float:
    is_long = anomaly.percent_change > 0
    components: list[float] = []
    if anomaly.top_trader_long_short_ratio is not None:
        components.append(_top_trader_component(anomaly.top_trader_long_short_ratio, is_long))
    if anomaly.taker_buy_sell_ratio is not None:
        components.append(_taker_component(anomaly.taker_buy_sell_ratio, is_long))
    if anomaly.global_long_short_ratio is not None:
        components.append(_global_component(anomaly.global_long_short_ratio, is_long))
    if not components:
        return 0.0
    return min(3.0 * sum(components) / len(components), 3.0)


def score_breakdown(anomaly: AnomalyEvent) -> ScoreBreakdown:
    oi = oi_score(anomaly)
    price = price_score(anomaly)
    sentiment = sentiment_score(anomaly)
    funding = NEUTRAL_FUNDING_SCORE
    return ScoreBreakdown(
        oi_score=oi,
        price_score=price,
        sentiment_score=sentiment,
        funding_score=funding,
        total_score=oi + price + sentiment + funding,
    )


def determine_direction(anomaly: AnomalyEvent) -> SignalDirection:
    oi_change = anomaly.percent_change
    price_change = anomaly.price_change_percent if anomaly.price_change_percent is not None else 0.0
    if abs(oi_change) < 3 or abs(price_change) < 0.5:
        return SignalDirection.NEUTRAL
    if (oi_change > 0) != (price_change > 0):
        return SignalDirection.NEUTRAL
    return SignalDirection.LONG if oi_change > 0 else SignalDirection.SHORT


def determine_strength(total_score: float) -> SignalStrength:
    if total_score >= 7:
        return SignalStrength.STRONG
    if total_score >= 5:
        return SignalStrength.MEDIUM
    return SignalStrength.WEAK


def calculate_confidence(anomaly: AnomalyEvent, breakdown: ScoreBreakdown) -> float:
    optional = (
        anomaly.price_change_percent,
        anomaly.top_trader_long_short_ratio,
        anomaly.global_long_short_ratio,
        anomaly.taker_buy_sell_ratio,
    )
    completeness = sum(1 for value in optional if value is not None) / len(optional)
    severity = _SEVERITY_CONFIDENCE.get(str(anomaly.severity).lower(), _LOW_SEVERITY_CONFIDENCE)
    confidence = 0.4 * (breakdown.total_score / 10.0) + 0.3 * completeness + 0.3 * severity
    return min(confidence, 1.0)


def suggest_prices(
    anomaly: AnomalyEvent,
    direction: SignalDirection,
    strength: SignalStrength,
) -> tuple[float, float, float]:
    entry = anomaly.price_after if anomaly.price_after is not None else 0.0
    if entry <= 0:
        return 0.0, 0.0, 0.0
    stop_pct, target_pct = _PRICE_SUGGESTIONS[strength]
    if direction is SignalDirection.LONG:
        return entry, entry * (1 - stop_pct / 100.0), entry * (1 + target_pct / 100.0)
    return entry, entry * (1 + stop_pct / 100.0), entry * (1 - target_pct / 100.0)


class SignalGenerator:
    def __init__(self, *, chase_high_threshold: float = 10.0, veto_rules: tuple[VetoRule, ...] = VETO_RULES):
        self.chase_high_threshold = float(chase_high_threshold)
        self.veto_rules = veto_rules

    def set_chase_high_threshold(self, threshold: float) -> None:
        self.chase_high_threshold = float(threshold)
        LOGGER.info("Chase-high threshold set to %.2f%%", self.chase_high_threshold)

    def check_veto(self, anomaly: AnomalyEvent) -> tuple[str, str] | None:
        """Return ``(rule_name, reason)`` for the first matching veto rule."""
        for rule in self.veto_rules:
            reason = rule.check(anomaly, self.chase_high_threshold)
            if reason is not None:
                return rule.name, reason
        return None

    def generate_signal_with_reason(self, anomaly: AnomalyEvent) -> SignalResult:
        try:
            veto = self.check_veto(anomaly)
            if veto is not None:
                LOGGER.debug("Veto %s for %s: %s", veto[0], anomaly.symbol, veto[1])
                return SignalResult(signal=None, rejected=True, reason=veto[1])

            breakdown = score_breakdown(anomaly)
            if breakdown.total_score < MIN_TOTAL_SCORE:
                return SignalResult(
                    signal=None,
                    rejected=True,
                    reason=f"score too low ({breakdown.total_score:.1f} < {MIN_TOTAL_SCORE:g})",
                )

            direction = determine_direction(anomaly)
            if direction is SignalDirection.NEUTRAL:
                return SignalResult(signal=None, rejected=True, reason="direction unclear (NEUTRAL)")

            strength = determine_strength(breakdown.total_score)
            confidence = calculate_confidence(anomaly, breakdown)
            entry, stop, target = suggest_prices(anomaly, direction, strength)
            signal = TradingSignal(
                symbol=anomaly.symbol,
                direction=direction,
                strength=strength,
                score=breakdown.total_score,
                breakdown=breakdown,
                confidence=confidence,
                entry_price=entry,
                stop_loss_price=stop,
                take_profit_price=target,
                triggered_at=anomaly.anomaly_time,
                anomaly=anomaly,
                source_anomaly_id=anomaly.id,
            )
        except Exception:
            LOGGER.exception("Failed to generate signal for %s", anomaly.symbol)
            return SignalResult(signal=None, rejected=True, reason=SIGNAL_ERROR_REASON)

        LOGGER.info(
            "Generated %s %s signal for %s score=%.2f confidence=%.1f%%",
            strength.value,
            direction.value,
            anomaly.symbol,
            breakdown.total_score,
            confidence * 100.0,
        )
        return SignalResult(signal=signal, rejected=False)

    def generate_signal(self, anomaly: AnomalyEvent) -> TradingSignal | None:
        return self.generate_signal_with_reason(anomaly).signal

    def generate_signals_batch(self, anomalies: Iterable[AnomalyEvent]) -> list[TradingSignal]:
        signals: list[TradingSignal] = []
        count = 0
        for anomaly in anomalies:
            count += 1
            signal = self.generate_signal(anomaly)
            if signal is not None:
                signals.append(signal)
        LOGGER.info("Generated %d signals from %d anomalies", len(signals), count)
        return signals

    def calculate_score_only(self, anomaly: AnomalyEvent) -> ScoreSnapshot:
        """Score an anomaly without rejecting it; the veto reason is reported, not applied."""
        veto = self.check_veto(anomaly)
        breakdown = score_breakdown(anomaly)
        return ScoreSnapshot(
            score=breakdown.total_score,
            confidence=calculate_confidence(anomaly, breakdown),
            direction=determine_direction(anomaly),
            strength=determine_strength(breakdown.total_score),
            breakdown=breakdown,
            veto_reason=veto[1] if veto is not None else None,
        )
