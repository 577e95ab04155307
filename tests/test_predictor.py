"""
Prediction Blender Tests
"""
import math
from unittest.mock import patch

import pytest

from chainarb.models import (
    ExternalEstimate, HistoricalSeries, QualityTier, SentimentSnapshot, Signal, TechnicalSignals,
)
from chainarb.predictor import MAX_CONFIDENCE, MIN_CONFIDENCE, PredictionBlender, clamp_confidence


def neutral_sentiment(score: float = 50.0) -> SentimentSnapshot:
    return SentimentSnapshot(fear_greed_index=score, asset_sentiment=score, composite_score=score, confidence=0.7)


def flat_tech(**kwargs) -> TechnicalSignals:
    base = dict(trend="neutral", momentum=0.0, confidence=0.5, rsi=50.0, volume_ratio=1.0)
    base.update(kwargs)
    return TechnicalSignals(**base)


class TestImpacts:
    @pytest.fixture
    def blender(self, config, logger):
        return PredictionBlender(config['scoring'], logger)

    @pytest.mark.parametrize("score,impact", [
        (85, 0.12), (75, 0.06), (65, 0.03), (50, 0.0),
        (15, -0.15), (25, -0.08), (35, -0.04),
    ])
    def test_sentiment_bands(self, blender, score, impact):
        assert blender.sentiment_impact(neutral_sentiment(score)) == pytest.approx(impact)

    def test_technical_momentum_and_oversold(self, blender):
        tech = flat_tech(momentum=0.1, rsi=20)
        assert blender.technical_impact(tech) == pytest.approx(0.05 + 0.08)

    def test_technical_trend_confirmation_is_amplified_by_volume(self, blender):
        tech = flat_tech(trend="bullish", volume_ratio=1.6)
        assert blender.technical_impact(tech) == pytest.approx(0.05 * 1.3)

    def test_technical_low_volume_damps(self, blender):
        tech = flat_tech(momentum=-0.1, rsi=70, volume_ratio=0.5)
        assert blender.technical_impact(tech) == pytest.approx((-0.05 - 0.03) * 0.7)

    def test_structure_impact_is_capped(self, blender, obs_factory):
        series = HistoricalSeries("YES", "polygon")
        for i, vol in enumerate([100, 100, 100, 100, 100, 1000]):
            series.append(obs_factory("polygon", 0.5, volume=vol, timestamp=i))
        obs = obs_factory("polygon", 0.5, spread=0.0005)
        assert blender.structure_impact(obs, series) == pytest.approx(0.05)

    def test_volume_trend_uses_exactly_five_points(self, blender, obs_factory):
        series = HistoricalSeries("YES", "polygon")
        for i, vol in enumerate([100, 100, 100, 100, 120]):
            series.append(obs_factory("polygon", 0.5, volume=vol, timestamp=i))
        assert blender.structure_impact(None, series) == pytest.approx(0.2 * 0.1)

    def test_wide_spread_is_negative(self, blender, obs_factory):
        obs = obs_factory("polygon", 0.5, spread=0.02)
        assert blender.structure_impact(obs, None) == pytest.approx(-0.02)


class TestPredict:
    @pytest.fixture
    def blender(self, config, logger):
        return PredictionBlender(config['scoring'], logger, fallback_prices={'BTC': 65000.0})

    def test_total_impact_decays_with_horizon(self, blender, obs_factory):
        obs = obs_factory("polygon", 100.0, spread=0.005)
        pred = blender.predict("YES", obs, None, neutral_sentiment(85), flat_tech(), horizon_hours=24)

        expected = 0.12 * math.exp(-24 / 168)
        assert pred.breakdown['total_impact'] == pytest.approx(expected)
        assert pred.predicted_price == pytest.approx(100.0 * (1 + expected))
        assert pred.base_price == 100.0

    def test_confidence_always_clamped(self, blender, obs_factory):
        obs = obs_factory("polygon", 100.0, quality=QualityTier.LOW)
        tech = flat_tech(momentum=2.0, confidence=0.0)
        pred = blender.predict("YES", obs, None, neutral_sentiment(10), tech, horizon_hours=500)
        assert MIN_CONFIDENCE <= pred.confidence <= MAX_CONFIDENCE

        obs = obs_factory("polygon", 100.0, quality=QualityTier.HIGH)
        series = HistoricalSeries("YES", "polygon")
        for i in range(30):
            series.append(obs_factory("polygon", 100.0, timestamp=i))
        pred = blender.predict("YES", obs, series, neutral_sentiment(), flat_tech(confidence=1.0), horizon_hours=1)
        assert MIN_CONFIDENCE <= pred.confidence <= MAX_CONFIDENCE

    def test_clamp_bounds(self):
        assert clamp_confidence(-1.0) == 0.1
        assert clamp_confidence(2.0) == 0.95
        assert clamp_confidence(0.5) == 0.5

    def test_no_price_falls_back_without_raising(self, blender):
        pred = blender.predict("BTC", None, None, neutral_sentiment(), flat_tech())
        assert pred.predicted_price == 65000.0
        assert pred.confidence == 0.1
        assert pred.signal == Signal.HOLD

    def test_internal_error_returns_base_price(self, blender, obs_factory):
        obs = obs_factory("polygon", 0.42)
        with patch.object(blender, "technical_impact", side_effect=RuntimeError("boom")):
            pred = blender.predict("YES", obs, None, neutral_sentiment(), flat_tech(signal=Signal.BUY))
        assert pred.predicted_price == 0.42
        assert pred.confidence == 0.1
        assert pred.signal == Signal.HOLD

    def test_external_estimate_blends_by_confidence(self, blender, obs_factory):
        obs = obs_factory("polygon", 0.50, spread=0.005)
        plain = blender.predict("YES", obs, None, neutral_sentiment(), flat_tech())
        blended = blender.predict("YES", obs, None, neutral_sentiment(), flat_tech(),
                                  external=ExternalEstimate(price=0.70, confidence=0.8))

        weight = 0.5 * 0.8
        assert blended.breakdown['external_weight'] == pytest.approx(weight)
        assert blended.predicted_price == pytest.approx((1 - weight) * plain.predicted_price + weight * 0.70)
