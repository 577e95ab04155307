# chainarb/risk_engine.py
import datetime
import logging
import time
from typing import Callable

from .errors import ExposureExceeded, LiquidityInsufficient, ProfitInsufficient, RiskRejected
from .inventory import ExposureLedger, ExposureLimits, Reservation
from .models import ArbitrageOpportunity, Position, PriceObservation


class RiskEngine:
    """
    Enforces exposure, liquidity and stop-loss limits and acts as a circuit breaker.
    Separates the decision 'Can we trade, and how much?' from the logic of finding the trade.

    Sizes are in units of the basis asset. Exposure is counted in the same
    units, so limits read as "at most N units at risk".
    """
    def __init__(self, config: dict, logger: logging.Logger, ledger: ExposureLedger,
                 clock: Callable[[], float] = time.time):
        self.cfg = config['risk_compliance']
        self.min_confidence = config['detection']['min_confidence']
        self.logger = logger
        self.ledger = ledger
        self.clock = clock
        self.daily_pnl = 0.0
        self.consecutive_fails = 0
        self.kill_switch = False
        self._day = self._today()

    def _today(self) -> datetime.date:
        return datetime.datetime.fromtimestamp(self.clock(), tz=datetime.timezone.utc).date()

    @property
    def limits(self) -> ExposureLimits:
        return ExposureLimits(
            max_total=self.cfg['max_total_exposure'],
            max_market=self.cfg['max_market_exposure'],
            max_chain=self.cfg['max_chain_exposure'],
        )

    # --- sizing ---

    def _desired_size(self, opp: ArbitrageOpportunity, balance: float) -> float:
        liquidity_cap = min(opp.buy_volume, opp.sell_volume) * self.cfg['liquidity_fraction']
        size = min(liquidity_cap, self.cfg['max_position_size'])
        if opp.buy_price > 0:
            size = min(size, balance / opp.buy_price)
        return max(0.0, size)

    def size(self, opp: ArbitrageOpportunity, balance: float) -> float:
        """
        Preview of the allowed position size. Does not reserve anything;
        use `allocate` on the execution path.
        """
        remaining = self.ledger.remaining(opp.asset, opp.source_chain, self.limits)
        if remaining <= 0:
            raise ExposureExceeded(
                f"exposure budget exhausted for {opp.asset}@{opp.source_chain} (remaining {remaining:.4f})")
        return min(self._desired_size(opp, balance), remaining)

    def allocate(self, opp: ArbitrageOpportunity, balance: float) -> Reservation:
        """Size and reserve in one atomic step against the shared ledger."""
        desired = self._desired_size(opp, balance)
        if desired <= 0:
            raise LiquidityInsufficient(f"no tradable size for {opp.asset} (volume or balance is zero)")
        reservation = self.ledger.reserve_up_to(opp.asset, opp.source_chain, desired, self.limits)
        if reservation is None:
            raise ExposureExceeded(f"exposure budget exhausted for {opp.asset}@{opp.source_chain}")
        if reservation.amount < desired:
            self.logger.info(f"Position for {opp.asset} capped by exposure: {desired:.4f} -> {reservation.amount:.4f}")
        return reservation

    # --- checks ---

    def check_liquidity(self, obs: PriceObservation, size: float):
        """Raises LiquidityInsufficient on the first violated limit."""
        max_volume = obs.volume * self.cfg['max_daily_volume_fraction']
        if size > max_volume:
            raise LiquidityInsufficient(
                f"{obs.chain}: size {size:.4f} exceeds {self.cfg['max_daily_volume_fraction']:.0%} "
                f"of daily volume ({max_volume:.4f})")
        if obs.depth is not None and size > obs.depth:
            raise LiquidityInsufficient(f"{obs.chain}: size {size:.4f} exceeds depth at best price ({obs.depth:.4f})")
        if obs.spread_pct > self.cfg['max_spread_pct']:
            raise LiquidityInsufficient(
                f"{obs.chain}: spread {obs.spread_pct:.2%} wider than {self.cfg['max_spread_pct']:.0%}")

    def evaluate_stop_loss(self, position: Position, current_price: float) -> bool:
        basis = position.entry_price * position.size
        if basis <= 0:
            return False
        loss_fraction = -position.unrealized_pnl(current_price) / basis
        return loss_fraction >= self.cfg['stop_loss_pct']

    def estimated_fee(self, size: float) -> float:
        return self.cfg['cross_chain_fee_rate'] * size

    def net_profit(self, opp: ArbitrageOpportunity, size: float) -> float:
        gross = (opp.sell_price - opp.buy_price) * size
        return gross - self.estimated_fee(size)

    def pre_trade_check(self):
        """
        The Final Gatekeeper. Raises RiskRejected while the circuit breaker is open.
        """
        self._roll_day()
        if self.kill_switch:
            raise RiskRejected("kill switch active")
        if self.daily_pnl < -self.cfg['max_daily_drawdown']:
            self.logger.critical(f"⛔ REJECTED: Max Daily Drawdown Hit (${self.daily_pnl:.2f})")
            self.kill_switch = True
            raise RiskRejected(f"daily drawdown {self.daily_pnl:.2f} beyond limit")

    def accept(self, opp: ArbitrageOpportunity, size: float) -> float:
        """
        Returns the net profit estimate when the trade is acceptable.
        Raises a RiskRejected subclass otherwise.
        """
        self.pre_trade_check()
        if opp.confidence < self.min_confidence:
            raise RiskRejected(f"confidence {opp.confidence:.2f} below {self.min_confidence:.2f}")
        net = self.net_profit(opp, size)
        if net <= self.cfg['min_net_profit']:
            raise ProfitInsufficient(
                f"net profit {net:.4f} after fee {self.estimated_fee(size):.4f} "
                f"not above {self.cfg['min_net_profit']}")
        return net

    # --- feedback ---

    def _roll_day(self):
        today = self._today()
        if today != self._day:
            self._day = today
            self.daily_pnl = 0.0

    def record_pnl(self, pnl_impact: float):
        self._roll_day()
        self.daily_pnl += pnl_impact

    def record_execution_result(self, success: bool, pnl_impact: float = 0.0):
        """
        Updates the internal state based on the result of an attempted trade.
        """
        self.record_pnl(pnl_impact)

        if success:
            self.consecutive_fails = 0
        else:
            self.consecutive_fails += 1
            if self.consecutive_fails >= self.cfg['max_consecutive_failures']:
                self.logger.critical(f"⛔ KILL SWITCH ACTIVATED: {self.consecutive_fails} consecutive execution failures.")
                self.kill_switch = True
