# chainarb/aggregator.py
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from .config import network_timeout
from .errors import DataUnavailable
from .market_engine import MarketEngine, PriceSource
from .models import (
    AggregationResult, HistoricalSeries, PriceObservation, QualityTier, SourceQuote,
)


def relative_difference(a: float, b: float) -> float:
    return abs(a - b) / min(a, b)


def cross_validate(quotes: List[SourceQuote], asset: str, chain: str, timestamp: float,
                   tolerance: float = 0.02, synthetic_spread: float = 0.001) -> Tuple[PriceObservation, bool]:
    """
    Reduce the quotes that succeeded (in configured priority order) to one observation.

    Book-capable quote wins: price = mid, quality HIGH. Otherwise the first
    single-sided quote is MEDIUM, upgraded to HIGH (and averaged) when a second
    independent source agrees within `tolerance`. Disagreement lowers quality
    one tier and is reported back as inconsistent.

    Returns:
        Tuple(observation, inconsistent)
    """
    if not quotes:
        raise DataUnavailable("aggregator", f"no quotes for {asset}@{chain}")

    book = next((q for q in quotes if q.has_book), None)
    single = [q for q in quotes if not q.has_book]
    inconsistent = False

    if book is not None:
        price = (book.bid + book.ask) / 2
        bid, ask = book.bid, book.ask
        quality = QualityTier.HIGH
        source_name = book.source
        if any(relative_difference(price, q.price) > tolerance for q in single):
            quality = QualityTier.MEDIUM
            inconsistent = True
    else:
        first = single[0]
        price = first.price
        quality = QualityTier.MEDIUM
        source_name = first.source
        if len(single) > 1:
            second = single[1]
            if relative_difference(first.price, second.price) <= tolerance:
                price = (first.price + second.price) / 2
                quality = QualityTier.HIGH
                source_name = f"{first.source}+{second.source}"
            else:
                quality = QualityTier.LOW
                inconsistent = True
        # No venue supplied a book: synthesize one so liquidity checks always have a spread
        half = price * synthetic_spread / 2
        bid, ask = price - half, price + half

    volume = next((q.volume for q in quotes if q.volume), 0.0)
    depth = book.depth if book is not None else None

    observation = PriceObservation(
        chain=chain, asset_id=asset, price=price, bid=bid, ask=ask,
        volume=float(volume or 0.0), timestamp=timestamp, source_name=source_name,
        quality=quality, depth=depth,
    )
    return observation, inconsistent


class PriceAggregator:
    """
    Queries every source for one (asset, chain) concurrently and cross-validates.
    Never raises on data problems: total failure yields an unavailable result.
    """
    def __init__(self, market: MarketEngine, config: dict, logger: logging.Logger,
                 clock: Callable[[], float] = time.time):
        self.market = market
        self.cfg = config['aggregation']
        self.timeout = network_timeout(config)
        self.logger = logger
        self.clock = clock

    async def _fetch_one(self, source: PriceSource, asset: str) -> SourceQuote:
        return await asyncio.wait_for(source.fetch_quote(self.market.session, asset), self.timeout)

    async def fetch_observation(self, asset: str, chain: str) -> AggregationResult:
        sources = self.market.price_sources.get(asset, {}).get(chain, [])
        results = await asyncio.gather(*[self._fetch_one(s, asset) for s in sources], return_exceptions=True)

        quotes: List[SourceQuote] = []
        errors: Dict[str, str] = {}
        for source, res in zip(sources, results):
            if isinstance(res, asyncio.TimeoutError):
                errors[source.name] = f"timeout after {self.timeout:.0f}s"
            elif isinstance(res, Exception):
                errors[source.name] = str(res) or type(res).__name__
            else:
                quotes.append(res)

        if errors:
            self.logger.debug(f"{asset}@{chain} source failures: {errors}")

        if not quotes:
            self.logger.warning(f"⚠️ {asset}@{chain} UNAVAILABLE: all {len(sources)} sources failed")
            return AggregationResult(asset=asset, chain=chain, observation=None, errors=errors)

        observation, inconsistent = cross_validate(
            quotes, asset, chain, self.clock(),
            tolerance=self.cfg['agreement_tolerance'],
            synthetic_spread=self.cfg['synthetic_spread'],
        )
        if inconsistent:
            self.logger.warning(f"{asset}@{chain} sources disagree beyond "
                                f"{self.cfg['agreement_tolerance']:.0%}; quality {observation.quality.value}")
        return AggregationResult(asset=asset, chain=chain, observation=observation,
                                 errors=errors, inconsistent=inconsistent)

    async def fetch_history(self, asset: str, chain: str) -> List[PriceObservation]:
        source = self.market.history_sources.get(asset)
        if source is None:
            return []
        try:
            return await asyncio.wait_for(
                source.fetch_history(self.market.session, asset, chain), self.timeout)
        except (DataUnavailable, asyncio.TimeoutError) as e:
            self.logger.warning(f"History unavailable for {asset}: {e or 'timeout'}")
            return []

    async def fetch_sentiment_inputs(self, asset: str) -> Dict[str, Optional[float]]:
        """Returns {'fear_greed': x|None, 'asset_sentiment': y|None}; missing roles are None."""
        roles = self.market.sentiment_sources.get(asset, {})
        names = list(roles.keys())
        results = await asyncio.gather(
            *[asyncio.wait_for(roles[n].fetch_value(self.market.session, asset), self.timeout) for n in names],
            return_exceptions=True,
        )
        inputs: Dict[str, Optional[float]] = {'fear_greed': None, 'asset_sentiment': None}
        for name, res in zip(names, results):
            if isinstance(res, Exception):
                self.logger.debug(f"Sentiment input {name} for {asset} unavailable: {res!r}")
                continue
            inputs[name] = res
        return inputs


class HistoryStore:
    """Bounded series per (asset, chain)."""

    def __init__(self, max_points: int = 100):
        self.max_points = max_points
        self._series: Dict[Tuple[str, str], HistoricalSeries] = {}

    def series(self, asset: str, chain: str) -> HistoricalSeries:
        key = (asset, chain)
        if key not in self._series:
            self._series[key] = HistoricalSeries(asset, chain, self.max_points)
        return self._series[key]

    def record(self, obs: PriceObservation) -> bool:
        return self.series(obs.asset_id, obs.chain).append(obs)

    def seed(self, asset: str, chain: str, history: List[PriceObservation]) -> int:
        series = self.series(asset, chain)
        return sum(1 for obs in sorted(history, key=lambda o: o.timestamp) if series.append(obs))
