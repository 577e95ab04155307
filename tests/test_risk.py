"""
Risk Manager and Exposure Ledger Tests
"""
from concurrent.futures import ThreadPoolExecutor

import pytest

from chainarb.errors import ExposureExceeded, LiquidityInsufficient, ProfitInsufficient, RiskRejected
from chainarb.inventory import ExposureLedger, ExposureLimits
from chainarb.models import Position, Side
from chainarb.risk_engine import RiskEngine


class TestExposureLedger:
    @pytest.fixture
    def limits(self):
        return ExposureLimits(max_total=1000.0, max_market=600.0, max_chain=800.0)

    def test_reserve_caps_at_remaining(self, clock, limits):
        ledger = ExposureLedger(clock)
        first = ledger.reserve_up_to("YES", "polygon", 500.0, limits)
        second = ledger.reserve_up_to("YES", "polygon", 500.0, limits)

        assert first.amount == 500.0
        assert second.amount == 100.0  # market limit
        assert ledger.reserve_up_to("YES", "polygon", 1.0, limits) is None
        assert ledger.market_exposure("YES") == 600.0

    def test_chain_and_total_limits(self, clock, limits):
        ledger = ExposureLedger(clock)
        ledger.reserve_up_to("A", "polygon", 500.0, limits)
        res = ledger.reserve_up_to("B", "polygon", 500.0, limits)
        assert res.amount == 300.0  # chain limit
        res = ledger.reserve_up_to("C", "arbitrum", 500.0, limits)
        assert res.amount == 200.0  # total limit
        assert ledger.total_exposure() == 1000.0

    def test_release_and_position_lifecycle(self, clock, limits):
        ledger = ExposureLedger(clock)
        res = ledger.reserve_up_to("YES", "polygon", 100.0, limits)
        pos = ledger.open_position(res.reservation_id, entry_price=0.6)

        assert pos.size == 100.0
        assert pos.opened_at == clock.now
        assert ledger.total_exposure() == 100.0
        assert not ledger.release(res.reservation_id)
        assert ledger.close_position(pos.position_id) is pos
        assert ledger.total_exposure() == 0.0

    def test_concurrent_reservations_never_exceed_limit(self, limits):
        ledger = ExposureLedger()
        with ThreadPoolExecutor(max_workers=16) as pool:
            grants = list(pool.map(lambda _: ledger.reserve_up_to("M", "c", 100.0, ExposureLimits(1000, 1000, 1000)),
                                   range(50)))

        granted = [g for g in grants if g is not None]
        assert sum(g.amount for g in granted) == pytest.approx(1000.0)
        assert len(granted) == 10


class TestRiskEngine:
    @pytest.fixture
    def ledger(self, clock):
        return ExposureLedger(clock)

    @pytest.fixture
    def risk(self, config, logger, ledger, clock):
        return RiskEngine(config, logger, ledger, clock)

    def test_size_capped_by_remaining_exposure(self, risk, ledger, opp_factory):
        ledger.reserve_up_to("YES", "polygon", 750.0, risk.limits)
        opp = opp_factory(volume=3000.0)  # 10% of volume -> 300 requested

        assert risk.size(opp, balance=10_000.0) == pytest.approx(250.0)
        assert risk.allocate(opp, balance=10_000.0).amount == pytest.approx(250.0)

    def test_size_rejects_when_budget_exhausted(self, risk, ledger, opp_factory):
        ledger.reserve_up_to("YES", "polygon", 1000.0, risk.limits)
        with pytest.raises(ExposureExceeded):
            risk.size(opp_factory(), balance=10_000.0)
        with pytest.raises(ExposureExceeded):
            risk.allocate(opp_factory(), balance=10_000.0)

    def test_size_capped_by_position_limit_and_balance(self, risk, opp_factory):
        assert risk.size(opp_factory(volume=100_000.0), balance=10_000.0) == 500.0
        assert risk.size(opp_factory(volume=100_000.0), balance=60.0) == pytest.approx(100.0)

    def test_net_profit_nets_fee(self, risk, opp_factory):
        opp = opp_factory(buy=0.60, sell=0.67)
        assert risk.net_profit(opp, 100) == pytest.approx(6.0)
        assert risk.accept(opp, 100) == pytest.approx(6.0)

    def test_fee_eating_profit_is_rejected(self, risk, opp_factory):
        with pytest.raises(ProfitInsufficient):
            risk.accept(opp_factory(buy=0.60, sell=0.605), 100)

    def test_low_confidence_rejected(self, risk, opp_factory):
        with pytest.raises(RiskRejected):
            risk.accept(opp_factory(confidence=0.1), 100)

    def test_liquidity_checks(self, risk, obs_factory):
        risk.check_liquidity(obs_factory("polygon", 0.6, volume=1000.0, depth=200.0), 100.0)

        with pytest.raises(LiquidityInsufficient):
            risk.check_liquidity(obs_factory("polygon", 0.6, volume=1000.0), 101.0)
        with pytest.raises(LiquidityInsufficient):
            risk.check_liquidity(obs_factory("polygon", 0.6, volume=10_000.0, depth=50.0), 60.0)
        with pytest.raises(LiquidityInsufficient):
            risk.check_liquidity(obs_factory("polygon", 0.6, volume=10_000.0, spread=0.06), 10.0)

    def test_stop_loss_threshold(self, risk):
        pos = Position(asset="YES", chain="polygon", size=100, entry_price=0.60, opened_at=0.0)
        assert not risk.evaluate_stop_loss(pos, 0.55)  # 8.33% loss
        assert risk.evaluate_stop_loss(pos, 0.53)
        assert not risk.evaluate_stop_loss(pos, 0.70)

    def test_stop_loss_on_short_triggers_when_price_rises(self, risk):
        pos = Position(asset="YES", chain="arbitrum", size=100, entry_price=0.60, opened_at=0.0, side=Side.SELL)
        assert not risk.evaluate_stop_loss(pos, 0.65)  # 8.33% loss
        assert risk.evaluate_stop_loss(pos, 0.67)
        assert not risk.evaluate_stop_loss(pos, 0.50)

    def test_kill_switch_after_consecutive_failures(self, risk, opp_factory):
        for _ in range(4):
            risk.record_execution_result(False)
        assert not risk.kill_switch
        risk.record_execution_result(True)
        for _ in range(5):
            risk.record_execution_result(False)
        assert risk.kill_switch
        with pytest.raises(RiskRejected):
            risk.accept(opp_factory(), 100)

    def test_drawdown_trips_kill_switch(self, risk, opp_factory):
        risk.record_pnl(-150.0)
        with pytest.raises(RiskRejected):
            risk.pre_trade_check()
        assert risk.kill_switch

    def test_daily_pnl_resets_next_day(self, risk, clock):
        risk.record_pnl(-50.0)
        clock.advance(86_400)
        risk.record_pnl(-10.0)
        assert risk.daily_pnl == pytest.approx(-10.0)
