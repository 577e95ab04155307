"""
Shared fixtures: a two-chain config, a controllable clock and observation builders.
"""
import copy
import logging

import pytest

from chainarb.config import DEFAULT_CONFIG, _deep_merge
from chainarb.models import ArbitrageOpportunity, PriceObservation, QualityTier


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    return logging.getLogger("chainarb.tests")


@pytest.fixture
def config():
    overrides = {
        'chains': {'polygon': {}, 'arbitrum': {}},
        'assets': {
            'YES': {
                'fallback_price': 0.5,
                'chains': {
                    'polygon': [{'type': 'fake'}],
                    'arbitrum': [{'type': 'fake'}],
                },
            },
        },
        'messaging': {'retry_base_delay_s': 0.0, 'monitoring_interval_s': 0.01},
    }
    return _deep_merge(copy.deepcopy(DEFAULT_CONFIG), overrides)


def make_obs(chain: str, price: float, volume: float = 10_000.0, asset: str = "YES",
             quality: QualityTier = QualityTier.HIGH, timestamp: float = 1_700_000_000.0,
             spread: float = 0.002, depth=None) -> PriceObservation:
    half = price * spread / 2
    return PriceObservation(
        chain=chain, asset_id=asset, price=price, bid=price - half, ask=price + half,
        volume=volume, timestamp=timestamp, source_name="test", quality=quality, depth=depth,
    )


def make_opp(buy: float = 0.60, sell: float = 0.67, volume: float = 10_000.0,
             created_at: float = 1_700_000_000.0, ttl: float = 300.0,
             confidence: float = 0.8) -> ArbitrageOpportunity:
    return ArbitrageOpportunity(
        id="YES-test", asset="YES", source_chain="polygon", destination_chain="arbitrum",
        buy_price=buy, sell_price=sell, price_difference_pct=(sell - buy) / buy,
        estimated_fee=0.01, net_profit_estimate=(sell - buy) - 0.01, confidence=confidence,
        created_at=created_at, expires_at=created_at + ttl, buy_volume=volume, sell_volume=volume,
    )


@pytest.fixture
def obs_factory():
    return make_obs


@pytest.fixture
def opp_factory():
    return make_opp
