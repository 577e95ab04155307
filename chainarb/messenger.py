# chainarb/messenger.py
import asyncio
import dataclasses
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from .config import network_timeout
from .errors import SendFailure, SendFailureTerminal, SendFailureTransient, StatusUnknown
from .models import CrossChainTransaction, ExecutionPlan, FeeEstimate, TxStatus
from .transport import StatusReport, Transport

StatusCallback = Callable[[CrossChainTransaction], Awaitable[None]]


class CrossChainMessenger:
    """
    Sends execution plans over a transport and owns every CrossChainTransaction.

    `send` hands back a message id as soon as the network accepts the plan;
    the outcome is learned by polling (`poll`, `run_monitor`) and pushed to
    subscribers when the message reaches a terminal state. Status only ever
    moves forward: pending -> in_progress -> success | failed | cancelled.
    """
    def __init__(self, transport: Transport, config: dict, logger: logging.Logger,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.transport = transport
        self.cfg = config['messaging']
        self.timeout = network_timeout(config)
        self.logger = logger
        self.clock = clock
        self._sleep = sleep
        self._transactions: Dict[str, CrossChainTransaction] = {}
        self._subscribers: List[StatusCallback] = []
        self._running = False

        self.sent_count = 0
        self.retry_count = 0

    def subscribe(self, callback: StatusCallback):
        self._subscribers.append(callback)

    # --- fees ---

    async def estimate_fees(self, plan: ExecutionPlan) -> FeeEstimate:
        """
        Advisory quote padded by `fee_buffer_pct`. When the transport cannot
        quote, falls back to the plan's own fee estimate.
        """
        buffer = 1 + self.cfg['fee_buffer_pct'] / 100
        try:
            quote = await asyncio.wait_for(self.transport.estimate_fees(plan), self.timeout)
        except (SendFailure, asyncio.TimeoutError) as e:
            self.logger.warning(f"Fee quote unavailable for {plan.plan_id}, using plan estimate: {e!r}")
            return FeeEstimate(fee_token="USD", fee_native=plan.estimated_fee, gas_limit=0,
                               usd_estimate=plan.estimated_fee * buffer)
        return FeeEstimate(
            fee_token=quote.fee_token,
            fee_native=quote.fee_native * buffer,
            gas_limit=quote.gas_limit,
            usd_estimate=quote.usd_estimate * buffer,
        )

    # --- send ---

    async def send(self, plan: ExecutionPlan, fee: Optional[FeeEstimate] = None) -> str:
        """
        Submit with bounded exponential backoff on transient failures.
        Once the transport returns a message id there is no resubmission.

        Raises:
            SendFailureTerminal: rejected outright or retries exhausted.
        """
        max_retries = self.cfg['max_retries']
        attempt = 0
        while True:
            try:
                message_id = await asyncio.wait_for(self.transport.send(plan), self.timeout)
                break
            except SendFailureTerminal:
                self.logger.error(f"❌ SEND REJECTED: plan {plan.plan_id}")
                raise
            except (SendFailureTransient, asyncio.TimeoutError) as e:
                if attempt >= max_retries:
                    self.logger.error(f"❌ SEND FAILED: plan {plan.plan_id} after {attempt + 1} attempts")
                    raise SendFailureTerminal(f"retries exhausted for {plan.plan_id}: {e!r}") from e
                delay = self.cfg['retry_base_delay_s'] * (2 ** attempt)
                self.logger.warning(f"Send attempt {attempt + 1} for {plan.plan_id} failed ({e!r}); retry in {delay:.1f}s")
                attempt += 1
                self.retry_count += 1
                await self._sleep(delay)

        fees = {'estimated_usd': fee.usd_estimate if fee is not None else plan.estimated_fee}
        tx = CrossChainTransaction(
            id=plan.plan_id,
            message_id=message_id,
            source_chain=plan.source_chain,
            destination_chain=plan.destination_chain,
            status=TxStatus.PENDING,
            amount=plan.position_size,
            fees=fees,
            created_at=self.clock(),
            plan_id=plan.plan_id,
        )
        self._transactions[message_id] = tx
        self.sent_count += 1
        self.logger.info(f"📨 SENT {plan.kind} {plan.source_chain}->{plan.destination_chain} | msg {message_id}")
        return message_id

    # --- status ---

    def _snapshot(self, tx: CrossChainTransaction) -> CrossChainTransaction:
        stale = (not tx.status.is_terminal
                 and self.clock() - tx.created_at > self.cfg['status_stale_after_s'])
        return dataclasses.replace(tx, fees=dict(tx.fees), filled_legs=list(tx.filled_legs), stale=stale)

    def get_status(self, message_id: str) -> Optional[CrossChainTransaction]:
        """Best-known state without touching the network. None for unknown ids."""
        tx = self._transactions.get(message_id)
        if tx is None:
            return None
        return self._snapshot(tx)

    def transactions(self) -> List[CrossChainTransaction]:
        return [self._snapshot(tx) for tx in self._transactions.values()]

    def pending(self) -> List[str]:
        return [mid for mid, tx in self._transactions.items() if not tx.status.is_terminal]

    def _apply(self, tx: CrossChainTransaction, report: StatusReport) -> bool:
        """Apply a forward transition. Returns True when it made the transaction terminal."""
        if report.status.rank <= tx.status.rank:
            return False
        tx.status = report.status
        if report.filled_legs:
            tx.filled_legs = list(report.filled_legs)
        if not report.status.is_terminal:
            return False

        tx.completed_at = self.clock()
        if report.status != TxStatus.SUCCESS:
            tx.error_message = report.error_message or report.status.value
        if report.actual_fee_usd is not None:
            tx.fees['actual_usd'] = report.actual_fee_usd
            tx.fees['drift_usd'] = report.actual_fee_usd - tx.fees.get('estimated_usd', 0.0)
        return True

    async def poll(self, message_id: str) -> Optional[CrossChainTransaction]:
        tx = self._transactions.get(message_id)
        if tx is None:
            return None
        if tx.status.is_terminal:
            return self._snapshot(tx)

        try:
            report = await asyncio.wait_for(self.transport.get_status(message_id), self.timeout)
        except (StatusUnknown, asyncio.TimeoutError) as e:
            self.logger.debug(f"Status unknown for {message_id}, still {tx.status.value}: {e!r}")
            return self._snapshot(tx)

        if self._apply(tx, report):
            icon = "✅" if tx.status == TxStatus.SUCCESS else "⚠️"
            self.logger.info(f"{icon} MESSAGE {message_id} {tx.status.value.upper()}"
                             + (f": {tx.error_message}" if tx.error_message else ""))
            await self._notify(tx)
        return self._snapshot(tx)

    async def poll_pending(self):
        ids = self.pending()
        if ids:
            await asyncio.gather(*[self.poll(mid) for mid in ids], return_exceptions=True)

    async def _notify(self, tx: CrossChainTransaction):
        snapshot = self._snapshot(tx)
        results = await asyncio.gather(*[cb(snapshot) for cb in self._subscribers], return_exceptions=True)
        for res in results:
            if isinstance(res, Exception):
                self.logger.error(f"Status subscriber failed for {tx.message_id}: {res!r}")

    async def run_monitor(self):
        self._running = True
        while self._running:
            await self.poll_pending()
            await asyncio.sleep(self.cfg['monitoring_interval_s'])

    def stop(self):
        self._running = False

    # --- metrics ---

    def metrics(self) -> Dict[str, float]:
        txs = list(self._transactions.values())
        done = [t for t in txs if t.status.is_terminal]
        succeeded = sum(1 for t in done if t.status == TxStatus.SUCCESS)
        failed = sum(1 for t in done if t.status == TxStatus.FAILED)
        cancelled = sum(1 for t in done if t.status == TxStatus.CANCELLED)

        total_fees = sum(t.fees.get('actual_usd', t.fees.get('estimated_usd', 0.0)) for t in txs)
        durations = [t.completed_at - t.created_at for t in done if t.completed_at is not None]
        drifts = [t.fees['drift_usd'] for t in done if 'drift_usd' in t.fees]

        return {
            'sent': self.sent_count,
            'retries': self.retry_count,
            'pending': len(txs) - len(done),
            'succeeded': succeeded,
            'failed': failed,
            'cancelled': cancelled,
            'success_rate': (succeeded / len(done) * 100) if done else 0.0,
            'total_fees_usd': total_fees,
            'avg_processing_s': (sum(durations) / len(durations)) if durations else 0.0,
            'avg_fee_drift_usd': (sum(drifts) / len(drifts)) if drifts else 0.0,
        }
