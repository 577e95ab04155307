# chainarb/execution.py
import datetime
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set

from .errors import OpportunityExpired, ProfitInsufficient
from .inventory import ExposureLedger, Reservation
from .logger import AsyncAuditLogger
from .messenger import CrossChainMessenger
from .models import (
    ArbitrageOpportunity, CrossChainTransaction, ExecutionPlan, PlanOutcome, Position,
    Side, TradeLeg, TradeRecord, TxStatus,
)
from .performance import PerformanceTracker
from .risk_engine import RiskEngine


class ExecutionPlanner:
    """Turns an accepted opportunity and size into an immutable plan."""

    def __init__(self, config: dict):
        self.fee_rate = config['risk_compliance']['cross_chain_fee_rate']

    def build(self, opp: ArbitrageOpportunity, size: float) -> ExecutionPlan:
        fee = self.fee_rate * size
        gross = (opp.sell_price - opp.buy_price) * size
        legs = (
            TradeLeg(chain=opp.source_chain, side=Side.BUY, amount=size, price=opp.buy_price),
            TradeLeg(chain=opp.destination_chain, side=Side.SELL, amount=size, price=opp.sell_price),
        )
        return ExecutionPlan(
            plan_id=uuid.uuid4().hex,
            opportunity=opp,
            position_size=size,
            estimated_fee=fee,
            estimated_profit=gross - fee,
            legs=legs,
        )

    def build_unwind(self, position: Position, price: float) -> ExecutionPlan:
        """Single closing leg on the chain that holds the position: sell a long, buy back a short."""
        fee = self.fee_rate * position.size
        side = Side.BUY if position.side == Side.SELL else Side.SELL
        leg = TradeLeg(chain=position.chain, side=side, amount=position.size, price=price)
        return ExecutionPlan(
            plan_id=uuid.uuid4().hex,
            opportunity=None,
            position_size=position.size,
            estimated_fee=fee,
            estimated_profit=position.unrealized_pnl(price) - fee,
            legs=(leg,),
            kind="unwind",
        )


@dataclass(slots=True)
class _InFlight:
    plan: ExecutionPlan
    position_id: str
    asset: str
    sent_at: float
    origin_plan_id: str = ""


class ExecutionService:
    """
    Handles the high-stakes part: handing plans to the messenger and settling
    the ledger once their messages reach a terminal state.

    A failed arbitrage message whose buy leg already filled is an orphan: the
    position stays open and is unwound immediately to preserve capital.
    """
    def __init__(self, config: dict, logger: logging.Logger, planner: ExecutionPlanner,
                 messenger: CrossChainMessenger, ledger: ExposureLedger, risk: RiskEngine,
                 tracker: PerformanceTracker, audit: Optional[AsyncAuditLogger] = None,
                 clock: Callable[[], float] = time.time):
        self.cfg = config
        self.logger = logger
        self.planner = planner
        self.messenger = messenger
        self.ledger = ledger
        self.risk = risk
        self.tracker = tracker
        self.audit = audit
        self.clock = clock
        self.outcomes: Dict[str, PlanOutcome] = {}
        self._inflight: Dict[str, _InFlight] = {}
        self._unwinding: Set[str] = set()
        self.stranded: Set[str] = set()
        messenger.subscribe(self.on_terminal)

    async def _audit(self, kind: str, ref_id: str, asset: str, plan: ExecutionPlan,
                     profit: float, fees: float, status: str):
        if self.audit is None:
            return
        await self.audit.log_row([
            datetime.datetime.now(datetime.timezone.utc).isoformat(),
            kind, ref_id, asset, plan.source_chain, plan.destination_chain,
            f"{plan.position_size:.6f}", f"{profit:.6f}", f"{fees:.6f}", status,
        ])

    def _check_expiry(self, opp: ArbitrageOpportunity):
        if opp.is_expired(self.clock()):
            raise OpportunityExpired(opp.id, opp.expires_at)

    async def execute(self, opp: ArbitrageOpportunity, reservation: Reservation) -> str:
        """
        Send an arbitrage plan for an already reserved size.
        The reservation is released on every path that does not reach the network.

        Returns:
            message id of the accepted message
        Raises:
            OpportunityExpired, ProfitInsufficient, SendFailureTerminal
        """
        try:
            self._check_expiry(opp)
            plan = self.planner.build(opp, reservation.amount)

            # Advisory quote: only gate on it, the actual fee is reconciled later
            fee = await self.messenger.estimate_fees(plan)
            gross = plan.estimated_profit + plan.estimated_fee
            net = gross - max(plan.estimated_fee, fee.usd_estimate)
            if net <= self.cfg['risk_compliance']['min_net_profit']:
                raise ProfitInsufficient(
                    f"transport fee {fee.usd_estimate:.4f} leaves net {net:.4f} for {opp.asset}")

            # The quote took a network round trip
            self._check_expiry(opp)
        except Exception:
            self.ledger.release(reservation.reservation_id)
            raise

        self.logger.info(
            f"⚡ EXECUTION TRIGGERED: {opp.asset} | Buy {opp.source_chain} -> Sell {opp.destination_chain} "
            f"| Size: {plan.position_size:.4f} | Est. Net: ${plan.estimated_profit:.4f}")
        try:
            message_id = await self.messenger.send(plan, fee)
        except Exception as e:
            self.ledger.release(reservation.reservation_id)
            self.risk.record_execution_result(False)
            self.outcomes[plan.plan_id] = PlanOutcome.FAILED
            await self._audit("arbitrage", plan.plan_id, opp.asset, plan, 0.0, 0.0, "SEND_FAILED")
            self.logger.error(f"❌ FAILED: plan {plan.plan_id} never left: {e}")
            raise

        position = self.ledger.open_position(reservation.reservation_id, entry_price=opp.buy_price)
        self._inflight[message_id] = _InFlight(plan=plan, position_id=position.position_id,
                                               asset=opp.asset, sent_at=self.clock())
        return message_id

    async def unwind(self, position: Position, price: float, reason: str,
                     origin_plan_id: str = "") -> Optional[str]:
        """Close an open position on its own chain. Returns None if nothing was sent."""
        if position.position_id in self._unwinding:
            return None
        plan = self.planner.build_unwind(position, price)
        self._unwinding.add(position.position_id)
        self.logger.warning(f"Unwinding {position.asset}@{position.chain} size {position.size:.4f} ({reason})")
        try:
            message_id = await self.messenger.send(plan)
        except Exception as e:
            self._unwinding.discard(position.position_id)
            self.stranded.add(position.position_id)
            self.logger.critical(f"💀 CATASTROPHIC FAILURE: could not send unwind for {position.position_id}: {e}")
            return None
        self._inflight[message_id] = _InFlight(plan=plan, position_id=position.position_id,
                                               asset=position.asset, sent_at=self.clock(),
                                               origin_plan_id=origin_plan_id)
        return message_id

    async def on_terminal(self, tx: CrossChainTransaction):
        entry = self._inflight.pop(tx.message_id, None)
        if entry is None:
            return
        if entry.plan.kind == "unwind":
            await self._settle_unwind(entry, tx)
        else:
            await self._settle_arbitrage(entry, tx)

    def _actual_fee(self, plan: ExecutionPlan, tx: CrossChainTransaction) -> float:
        return tx.fees.get('actual_usd', plan.estimated_fee)

    async def _settle_arbitrage(self, entry: _InFlight, tx: CrossChainTransaction):
        plan = entry.plan
        now = self.clock()
        filled = set(tx.filled_legs)
        both = {Side.BUY.value, Side.SELL.value}

        # Both legs executing is a completed arbitrage whatever the message status says
        if tx.status == TxStatus.SUCCESS or filled >= both:
            self.ledger.close_position(entry.position_id)
            gross = plan.estimated_profit + plan.estimated_fee
            fees = self._actual_fee(plan, tx)
            self.tracker.record(TradeRecord(
                trade_id=plan.plan_id, asset=entry.asset,
                source_chain=plan.source_chain, destination_chain=plan.destination_chain,
                profit=gross, fees=fees, opened_at=entry.sent_at, closed_at=now,
            ))
            self.risk.record_execution_result(True, gross - fees)
            self.outcomes[plan.plan_id] = PlanOutcome.COMPLETED
            self.logger.info(f"✅ SUCCESS: {entry.asset} plan {plan.plan_id} | Net: ${gross - fees:.4f}")
            await self._audit("arbitrage", plan.plan_id, entry.asset, plan, gross, fees, PlanOutcome.COMPLETED.value)
            return

        self.risk.record_execution_result(False)
        if filled & both:
            buy_leg, sell_leg = plan.legs
            if Side.BUY.value in filled:
                # Bought on the source chain, never sold: long inventory at risk
                position = self.ledger.mark_orphaned(entry.position_id)
                naked = buy_leg
            else:
                # Sold on the destination chain, never bought: short until bought back
                position = self.ledger.mark_orphaned(entry.position_id, chain=sell_leg.chain,
                                                     side=Side.SELL, entry_price=sell_leg.price)
                naked = sell_leg
            self.outcomes[plan.plan_id] = PlanOutcome.ORPHANED
            self.logger.error(f"🚨 CRITICAL: ORPHAN TRADE DETECTED: only the {naked.side.value} leg filled on "
                              f"{naked.chain} ({tx.error_message}). INITIATING NEUTRALIZATION.")
            await self._audit("arbitrage", plan.plan_id, entry.asset, plan, 0.0, 0.0, PlanOutcome.ORPHANED.value)
            if position is not None:
                await self.unwind(position, position.entry_price, f"orphaned {naked.side.value} leg",
                                  origin_plan_id=plan.plan_id)
            return

        self.ledger.close_position(entry.position_id)
        outcome = PlanOutcome.CANCELLED if tx.status == TxStatus.CANCELLED else PlanOutcome.FAILED
        self.outcomes[plan.plan_id] = outcome
        self.logger.warning(f"⚠️ FAILED: {entry.asset} plan {plan.plan_id} {tx.status.value}, no legs filled. "
                            f"No exposure. ({tx.error_message})")
        await self._audit("arbitrage", plan.plan_id, entry.asset, plan, 0.0, 0.0, outcome.value)

    async def _settle_unwind(self, entry: _InFlight, tx: CrossChainTransaction):
        plan = entry.plan
        self._unwinding.discard(entry.position_id)

        if tx.status != TxStatus.SUCCESS:
            self.stranded.add(entry.position_id)
            self.logger.critical(f"💀 CATASTROPHIC FAILURE: unwind {plan.plan_id} {tx.status.value} "
                                 f"({tx.error_message}). Position {entry.position_id} left open.")
            await self._audit("unwind", plan.plan_id, entry.asset, plan, 0.0, 0.0, tx.status.value.upper())
            return

        position = self.ledger.close_position(entry.position_id)
        self.stranded.discard(entry.position_id)
        fees = self._actual_fee(plan, tx)
        profit = position.unrealized_pnl(plan.legs[0].price) if position is not None else 0.0
        self.tracker.record(TradeRecord(
            trade_id=plan.plan_id, asset=entry.asset,
            source_chain=plan.source_chain, destination_chain=plan.destination_chain,
            profit=profit, fees=fees,
            opened_at=position.opened_at if position is not None else entry.sent_at,
            closed_at=self.clock(), outcome=PlanOutcome.NEUTRALIZED,
        ))
        self.risk.record_pnl(profit - fees)
        self.outcomes[plan.plan_id] = PlanOutcome.NEUTRALIZED
        if entry.origin_plan_id:
            self.outcomes[entry.origin_plan_id] = PlanOutcome.NEUTRALIZED
        self.logger.info(f"🏳️ NEUTRALIZED: {entry.asset} position closed on {plan.source_chain}.")
        await self._audit("unwind", plan.plan_id, entry.asset, plan, profit, fees, PlanOutcome.NEUTRALIZED.value)

    def is_busy(self, position_id: str) -> bool:
        """True while a message for this position is still in flight."""
        if position_id in self._unwinding:
            return True
        return any(e.position_id == position_id for e in self._inflight.values())
