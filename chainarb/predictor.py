# chainarb/predictor.py
import logging
import math
from typing import Dict, List, Optional

from .models import (
    ExternalEstimate, HistoricalSeries, Prediction, PriceObservation, QualityTier,
    SentimentSnapshot, Signal, TechnicalSignals,
)

MIN_CONFIDENCE = 0.1
MAX_CONFIDENCE = 0.95


def clamp_confidence(value: float) -> float:
    return max(MIN_CONFIDENCE, min(MAX_CONFIDENCE, value))


def _banded(value: float, bands: List[list]) -> float:
    """First matching [threshold, 'gt'|'lt', impact] wins."""
    for threshold, op, impact in bands:
        if op == 'gt' and value > threshold:
            return impact
        if op == 'lt' and value < threshold:
            return impact
    return 0.0


class PredictionBlender:
    """
    Turns the aggregated quote, technical signals, sentiment and an optional
    external estimate into one horizon-decayed price prediction.
    All thresholds come from the `scoring` config section.
    """
    def __init__(self, scoring: Dict, logger: logging.Logger, fallback_prices: Optional[Dict[str, float]] = None):
        self.cfg = scoring
        self.logger = logger
        self.fallback_prices = fallback_prices or {}

    def sentiment_impact(self, sentiment: SentimentSnapshot) -> float:
        return _banded(sentiment.composite_score, self.cfg['sentiment_bands'])

    def technical_impact(self, tech: TechnicalSignals) -> float:
        cfg = self.cfg
        impact = tech.momentum * cfg['momentum_weight']
        impact += _banded(tech.rsi, cfg['rsi_bands'])

        if tech.volume_ratio > cfg['signal_volume_ratio']:
            if tech.trend == "bullish":
                impact += cfg['trend_confirmation']
            elif tech.trend == "bearish":
                impact -= cfg['trend_confirmation']

        if tech.volume_ratio > cfg['volume_amplify_above']:
            impact *= cfg['volume_amplify_factor']
        elif tech.volume_ratio < cfg['volume_damp_below']:
            impact *= cfg['volume_damp_factor']
        return impact

    def structure_impact(self, obs: Optional[PriceObservation], series: Optional[HistoricalSeries]) -> float:
        cfg = self.cfg
        impact = 0.0
        if obs is not None and obs.price > 0:
            spread = obs.spread_pct
            if spread < cfg['tight_spread']:
                impact += cfg['spread_impact']
            elif spread > cfg['wide_spread']:
                impact -= cfg['spread_impact']

        if series is not None and len(series) >= 5:
            recent = series.volumes[-5:]
            if recent[0] > 0:
                impact += (recent[-1] - recent[0]) / recent[0] * cfg['volume_trend_weight']

        cap = cfg['structure_cap']
        return max(-cap, min(cap, impact))

    def confidence(self, obs: Optional[PriceObservation], series: Optional[HistoricalSeries],
                   sentiment: SentimentSnapshot, tech: TechnicalSignals,
                   horizon_hours: float, total_impact: float) -> float:
        conf = 0.5
        points = len(series) if series is not None else 0
        if obs is not None and obs.quality == QualityTier.HIGH:
            conf += 0.15
        elif obs is not None and obs.quality == QualityTier.LOW:
            conf -= 0.1
        if points >= 20:
            conf += 0.15
        conf += sentiment.confidence * 0.1
        conf += tech.confidence * 0.15

        # Live quote vs last historical point
        if obs is not None and series is not None and series.last is not None and obs.price > 0:
            drift = abs(obs.price - series.last.price) / obs.price
            if drift < 0.02:
                conf += 0.05
            elif drift > 0.1:
                conf -= 0.1

        if horizon_hours > 24:
            conf *= 0.85
        if horizon_hours > 72:
            conf *= 0.75
        if horizon_hours > 168:
            conf *= 0.65

        move = abs(total_impact)
        if move > 0.2:
            conf *= 0.7
        if move > 0.5:
            conf *= 0.5
        return clamp_confidence(conf)

    def predict(self, asset: str, obs: Optional[PriceObservation], series: Optional[HistoricalSeries],
                sentiment: SentimentSnapshot, tech: TechnicalSignals, horizon_hours: float = 24,
                external: Optional[ExternalEstimate] = None) -> Prediction:
        """Never raises: any internal failure degrades to a hold at the base price."""
        base_price = 0.0
        try:
            if obs is not None:
                base_price = obs.price
            elif series is not None and series.last is not None:
                base_price = series.last.price
            if base_price <= 0:
                raise ValueError(f"no usable price for {asset}")

            s_impact = self.sentiment_impact(sentiment)
            t_impact = self.technical_impact(tech)
            m_impact = self.structure_impact(obs, series)
            decay = math.exp(-horizon_hours / self.cfg['horizon_decay_hours'])
            total = (s_impact + t_impact + m_impact) * decay

            predicted = base_price * (1 + total)
            conf = self.confidence(obs, series, sentiment, tech, horizon_hours, total)

            breakdown = {
                'base_price': base_price,
                'sentiment_impact': s_impact,
                'technical_impact': t_impact,
                'structure_impact': m_impact,
                'total_impact': total,
            }

            if external is not None and external.price > 0:
                weight = self.cfg['external_weight'] * max(0.0, min(1.0, external.confidence))
                predicted = (1 - weight) * predicted + weight * external.price
                conf = clamp_confidence((1 - weight) * conf + weight * external.confidence)
                breakdown['external_weight'] = weight

            return Prediction(
                base_price=base_price,
                predicted_price=predicted,
                confidence=conf,
                breakdown=breakdown,
                signal=tech.signal,
                time_horizon_hours=horizon_hours,
            )
        except Exception as e:
            self.logger.warning(f"Prediction fallback for {asset}: {e}")
            fallback = base_price if base_price > 0 else float(self.fallback_prices.get(asset, 0.0))
            return Prediction(
                base_price=fallback,
                predicted_price=fallback,
                confidence=MIN_CONFIDENCE,
                breakdown={'error': 1.0},
                signal=Signal.HOLD,
                time_horizon_hours=horizon_hours,
            )
