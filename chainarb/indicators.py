# chainarb/indicators.py
import math
from typing import Dict, List, Optional, Sequence

from .models import HistoricalSeries, SentimentSnapshot, Signal, TechnicalSignals

NEUTRAL = 50.0


def moving_average(prices: Sequence[float], period: int) -> float:
    if not prices:
        return 0.0
    if len(prices) < period:
        return prices[-1]
    window = prices[-period:]
    return sum(window) / len(window)


def rsi(prices: Sequence[float], period: int) -> float:
    """
    Simple-average RSI over the last `period` changes.
    Returns 100 exactly when the average loss is zero, 50 when there is not
    enough data to fill the window.
    """
    if period <= 0 or len(prices) < period + 1:
        return 50.0
    gains = losses = 0.0
    for i in range(len(prices) - period, len(prices)):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def normalized_volatility(prices: Sequence[float]) -> float:
    """Population standard deviation over mean (coefficient of variation)."""
    if len(prices) < 2:
        return 0.0
    mean = sum(prices) / len(prices)
    if mean == 0:
        return 0.0
    variance = sum((p - mean) ** 2 for p in prices) / len(prices)
    return math.sqrt(variance) / mean


def momentum(prices: Sequence[float], lookback: int = 6) -> float:
    if not prices:
        return 0.0
    older = prices[max(0, len(prices) - lookback)]
    if older == 0:
        return 0.0
    return (prices[-1] - older) / older


def volume_ratio(volumes: Sequence[float]) -> float:
    if not volumes:
        return 1.0
    avg = sum(volumes) / len(volumes)
    if avg <= 0:
        return 1.0
    return volumes[-1] / avg


class TechnicalScorer:
    """Momentum, RSI, volatility and trend signals from a historical series."""

    def __init__(self, scoring: Dict):
        self.cfg = scoring

    def score(self, series: HistoricalSeries) -> TechnicalSignals:
        return self.score_values(series.prices, series.volumes)

    def score_values(self, prices: List[float], volumes: List[float]) -> TechnicalSignals:
        cfg = self.cfg
        if len(prices) < cfg['min_history_points']:
            return TechnicalSignals(trend="insufficient", momentum=0.0, confidence=0.1)

        n = len(prices)
        short_ma = moving_average(prices, min(cfg['short_ma_period'], n))
        long_ma = moving_average(prices, min(cfg['long_ma_period'], n))
        rsi_value = rsi(prices, min(cfg['rsi_period'], n - 1))
        volatility = normalized_volatility(prices)
        mom = momentum(prices, cfg['momentum_lookback'])
        vol_ratio = volume_ratio(volumes)

        band = cfg['trend_band']
        if short_ma > long_ma * (1 + band):
            trend = "bullish"
        elif short_ma < long_ma * (1 - band):
            trend = "bearish"
        else:
            trend = "neutral"

        signal, strength = Signal.HOLD, 0.0
        surge = vol_ratio > cfg['signal_volume_ratio']
        if rsi_value < cfg['rsi_oversold'] and mom > -0.05 and surge:
            signal, strength = Signal.BUY, 0.7
        elif rsi_value > cfg['rsi_overbought'] and mom < 0.05 and surge:
            signal, strength = Signal.SELL, 0.7
        elif mom > cfg['signal_momentum'] and trend == "bullish":
            signal, strength = Signal.BUY, 0.5
        elif mom < -cfg['signal_momentum'] and trend == "bearish":
            signal, strength = Signal.SELL, 0.5

        return TechnicalSignals(
            trend=trend,
            momentum=mom,
            confidence=min(0.9, 0.4 + 0.5 * min(1.0, n / 24)),
            signal=signal,
            rsi=rsi_value,
            volatility=volatility,
            short_ma=short_ma,
            long_ma=long_ma,
            volume_ratio=vol_ratio,
            strength=strength,
        )


def score_sentiment(fear_greed: Optional[float] = None,
                    asset_sentiment: Optional[float] = None,
                    social_score: Optional[float] = None) -> SentimentSnapshot:
    """
    Composite = 0.4*fearGreed + 0.4*assetSentiment + 0.2*(social + 50).
    Missing inputs count as neutral and cost confidence; this never fails.
    """
    missing = 0
    if fear_greed is None:
        fear_greed, missing = NEUTRAL, missing + 1
    if asset_sentiment is None:
        missing += 1
    social = social_score if social_score is not None else 0.0

    fg = min(100.0, max(0.0, float(fear_greed)))
    asset_value = min(100.0, max(0.0, float(asset_sentiment))) if asset_sentiment is not None else NEUTRAL
    composite = 0.4 * fg + 0.4 * asset_value + 0.2 * (social + 50)

    return SentimentSnapshot(
        fear_greed_index=fg,
        asset_sentiment=asset_value if asset_sentiment is not None else None,
        composite_score=composite,
        confidence=max(0.3, 0.7 - 0.2 * missing),
        social_score=social,
    )
