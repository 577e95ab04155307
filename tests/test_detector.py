"""
Opportunity Detector Tests
"""
import pytest

from chainarb.detector import OpportunityDetector, price_difference_pct
from chainarb.models import QualityTier


class TestPriceDifference:
    def test_symmetric(self):
        assert price_difference_pct(0.60, 0.67) == price_difference_pct(0.67, 0.60)

    def test_scale_invariant(self):
        assert price_difference_pct(0.60, 0.67) == pytest.approx(price_difference_pct(60.0, 67.0))

    def test_reference_value(self):
        assert price_difference_pct(0.60, 0.67) == pytest.approx(0.1167, abs=1e-4)

    def test_non_positive_price_rejected(self):
        with pytest.raises(ValueError):
            price_difference_pct(0.0, 1.0)


class TestOpportunityDetector:
    @pytest.fixture
    def detector(self, config, logger, clock):
        return OpportunityDetector(config, logger, clock)

    def test_emits_with_buy_low_sell_high(self, detector, obs_factory, clock):
        opp = detector.detect([obs_factory("arbitrum", 0.67), obs_factory("polygon", 0.60)])

        assert opp is not None
        assert opp.source_chain == "polygon"
        assert opp.destination_chain == "arbitrum"
        assert opp.buy_price == 0.60
        assert opp.sell_price == 0.67
        assert opp.price_difference_pct == pytest.approx(0.1167, abs=1e-4)
        assert opp.expires_at == clock.now + 300
        assert opp.net_profit_estimate == pytest.approx(0.07 - 0.01)

    def test_wider_pair_assigns_chains_the_same_way(self, detector, obs_factory):
        opp = detector.detect([obs_factory("polygon", 0.60), obs_factory("arbitrum", 0.68)])
        assert (opp.source_chain, opp.destination_chain) == ("polygon", "arbitrum")

    def test_below_threshold_emits_nothing(self, detector, obs_factory):
        assert detector.detect([obs_factory("polygon", 1.00), obs_factory("arbitrum", 1.029)]) is None

    def test_exactly_at_threshold_emits(self, detector, obs_factory):
        assert detector.detect([obs_factory("polygon", 1.00), obs_factory("arbitrum", 1.03)]) is not None

    def test_needs_two_chains(self, detector, obs_factory):
        assert detector.detect([obs_factory("polygon", 0.6)]) is None
        assert detector.detect([]) is None

    def test_best_pair_selected(self, detector, obs_factory):
        observations = [
            obs_factory("polygon", 1.00),
            obs_factory("arbitrum", 1.05),
            obs_factory("base", 1.10),
        ]
        opp = detector.detect(observations)
        assert (opp.source_chain, opp.destination_chain) == ("polygon", "base")
        assert len(detector.scan(observations)) == 3

    def test_ties_broken_by_combined_volume(self, detector, obs_factory):
        observations = [
            obs_factory("polygon", 1.00, volume=10.0),
            obs_factory("arbitrum", 1.10, volume=10.0),
            obs_factory("base", 1.00, volume=5_000.0),
        ]
        opp = detector.detect(observations)
        assert opp.source_chain == "base"

    def test_confidence_follows_weakest_quote(self, detector, obs_factory):
        opp = detector.detect([
            obs_factory("polygon", 0.60, quality=QualityTier.HIGH),
            obs_factory("arbitrum", 0.67, quality=QualityTier.LOW),
        ])
        assert opp.confidence == pytest.approx(0.4)
