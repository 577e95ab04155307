# chainarb/detector.py
import itertools
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional

from .models import ArbitrageOpportunity, Prediction, PriceObservation, QualityTier

QUALITY_CONFIDENCE = {
    QualityTier.HIGH: 0.9,
    QualityTier.MEDIUM: 0.7,
    QualityTier.LOW: 0.4,
}


def price_difference_pct(p1: float, p2: float) -> float:
    """|p2 - p1| / min(p1, p2). Symmetric and scale-invariant."""
    low = min(p1, p2)
    if low <= 0:
        raise ValueError("prices must be positive")
    return abs(p2 - p1) / low


class OpportunityDetector:
    """
    Compares simultaneous observations of one asset across chains and emits
    the single best qualifying buy-low / sell-high pair.
    """
    def __init__(self, config: dict, logger: logging.Logger, clock: Callable[[], float] = time.time):
        self.cfg = config['detection']
        self.fee_rate = config['risk_compliance']['cross_chain_fee_rate']
        self.logger = logger
        self.clock = clock

    def _confidence(self, buy: PriceObservation, sell: PriceObservation,
                    prediction: Optional[Prediction]) -> float:
        conf = min(QUALITY_CONFIDENCE[buy.quality], QUALITY_CONFIDENCE[sell.quality])
        if prediction is not None:
            conf = (conf + prediction.confidence) / 2
        return round(conf, 4)

    def scan(self, observations: List[PriceObservation],
             prediction: Optional[Prediction] = None) -> List[ArbitrageOpportunity]:
        """Every qualifying chain pair, best first."""
        usable: Dict[str, PriceObservation] = {}
        for obs in observations:
            if obs.price > 0:
                usable[obs.chain] = obs
        if len(usable) < 2:
            return []

        now = self.clock()
        threshold = self.cfg['min_profit_pct']
        found = []
        for a, b in itertools.combinations(usable.values(), 2):
            diff = price_difference_pct(a.price, b.price)
            if diff < threshold:
                continue
            buy, sell = (a, b) if a.price <= b.price else (b, a)
            gross_per_unit = sell.price - buy.price
            opp = ArbitrageOpportunity(
                id=f"{buy.asset_id}-{uuid.uuid4().hex[:12]}",
                asset=buy.asset_id,
                source_chain=buy.chain,
                destination_chain=sell.chain,
                buy_price=buy.price,
                sell_price=sell.price,
                price_difference_pct=diff,
                estimated_fee=self.fee_rate,
                net_profit_estimate=gross_per_unit - self.fee_rate,
                confidence=self._confidence(buy, sell, prediction),
                created_at=now,
                expires_at=now + self.cfg['opportunity_ttl_s'],
                buy_volume=buy.volume,
                sell_volume=sell.volume,
            )
            found.append(opp)

        found.sort(key=lambda o: (o.price_difference_pct, o.buy_volume + o.sell_volume), reverse=True)
        return found

    def detect(self, observations: List[PriceObservation],
               prediction: Optional[Prediction] = None) -> Optional[ArbitrageOpportunity]:
        found = self.scan(observations, prediction)
        if not found:
            return None
        best = found[0]
        self.logger.info(
            f"✨ FOUND: {best.asset} {best.source_chain}->{best.destination_chain} "
            f"diff {best.price_difference_pct:.2%} | buy {best.buy_price:.4f} sell {best.sell_price:.4f}"
        )
        return best
