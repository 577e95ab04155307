# chainarb/strategy.py
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from .aggregator import HistoryStore, PriceAggregator
from .codec import decode_triplet, encode_observation, encode_prediction, from_hex, to_hex
from .detector import OpportunityDetector
from .errors import EncodingError, OpportunityExpired, RiskRejected, SendFailure
from .execution import ExecutionPlanner, ExecutionService
from .indicators import TechnicalScorer, score_sentiment
from .inventory import ExposureLedger
from .logger import AsyncAuditLogger
from .market_engine import MarketEngine
from .messenger import CrossChainMessenger
from .models import ExternalEstimate, Prediction, PriceObservation, QualityTier
from .performance import PerformanceTracker
from .predictor import PredictionBlender
from .risk_engine import RiskEngine
from .transport import Transport

_QUALITY_ORDER = {QualityTier.HIGH: 0, QualityTier.MEDIUM: 1, QualityTier.LOW: 2}


class StrategyEngine:
    """
    Cycle-driven strategy.
    One cycle per asset: fetch every chain concurrently, score, predict, detect,
    size and (maybe) send. A cycle never overlaps another cycle touching the
    same (asset, chain).
    """
    def __init__(self, config: dict, logger: logging.Logger, market: MarketEngine, transport: Transport,
                 audit: Optional[AsyncAuditLogger] = None, clock: Callable[[], float] = time.time):
        self.config = config
        self.logger = logger
        self.market = market
        self.transport = transport
        self.audit = audit
        self.clock = clock

        fallback_prices = {a: spec['fallback_price'] for a, spec in config['assets'].items()
                           if spec.get('fallback_price')}
        self.aggregator = PriceAggregator(market, config, logger, clock)
        self.history = HistoryStore(config['aggregation']['history_max_points'])
        self.scorer = TechnicalScorer(config['scoring'])
        self.blender = PredictionBlender(config['scoring'], logger, fallback_prices)
        self.detector = OpportunityDetector(config, logger, clock)
        self.ledger = ExposureLedger(clock)
        self.risk = RiskEngine(config, logger, self.ledger, clock)
        self.messenger = CrossChainMessenger(transport, config, logger, clock)
        self.tracker = PerformanceTracker()
        self.executor = ExecutionService(config, logger, ExecutionPlanner(config), self.messenger,
                                         self.ledger, self.risk, self.tracker, audit, clock)

        self.active_cycles: Set[Tuple[str, str]] = set()
        self.latest: Dict[str, Dict[str, PriceObservation]] = {}
        self.predictions: Dict[str, Prediction] = {}
        self.published: Dict[str, str] = {}
        self.published_quotes: Dict[str, Dict[str, str]] = {}
        self.external_estimates: Dict[str, ExternalEstimate] = {}
        self.last_status = "Waiting for first cycle..."
        self._seeded: Set[str] = set()
        self._running = False

    # --- lifecycle ---

    async def start(self):
        if self.audit is not None:
            await self.audit.start()
        await self.market.initialize()

    async def shutdown(self):
        self.stop()
        await self.market.shutdown()
        await self.transport.close()
        if self.audit is not None:
            await self.audit.stop()

    def stop(self):
        self._running = False
        self.messenger.stop()

    # --- inputs ---

    def set_external_estimate(self, asset: str, estimate: Optional[ExternalEstimate]):
        if estimate is None:
            self.external_estimates.pop(asset, None)
        else:
            self.external_estimates[asset] = estimate

    def available_balance(self) -> float:
        realized = self.tracker.stats()['net_profit']
        committed = sum(p.size * p.entry_price for p in self.ledger.open_positions())
        return self.config['risk_compliance']['starting_balance'] + realized - committed

    def update_status(self, msg: str):
        self.last_status = msg

    # --- cycle ---

    async def _seed_history(self, asset: str, chains: List[str]):
        history = await self.aggregator.fetch_history(asset, chains[0])
        if not history:
            return
        for chain in chains:
            self.history.seed(asset, chain, history)
        self._seeded.add(asset)

    def _predict(self, asset: str, observations: List[PriceObservation], sentiment_inputs: dict) -> Prediction:
        reference = min(observations, key=lambda o: _QUALITY_ORDER[o.quality]) if observations else None
        series = self.history.series(asset, reference.chain) if reference is not None else None
        tech = self.scorer.score(series) if series is not None else self.scorer.score_values([], [])
        sentiment = score_sentiment(**sentiment_inputs)
        prediction = self.blender.predict(
            asset, reference, series, sentiment, tech,
            horizon_hours=self.config['scoring']['prediction_horizon_hours'],
            external=self.external_estimates.get(asset),
        )
        self.predictions[asset] = prediction
        try:
            self.published[asset] = to_hex(encode_prediction(prediction, self.config['encoding']['decimals']))
        except EncodingError as e:
            self.logger.warning(f"Could not encode prediction for {asset}: {e}")
        return prediction

    def _publish_quote(self, obs: PriceObservation):
        try:
            encoded = to_hex(encode_observation(obs, self.config['encoding']['decimals']))
        except EncodingError as e:
            self.logger.warning(f"Could not encode {obs.asset_id}@{obs.chain} quote: {e}")
            return
        self.published_quotes.setdefault(obs.asset_id, {})[obs.chain] = encoded

    def published_prediction(self, asset: str) -> Optional[Tuple[float, float, int]]:
        """Decode what was last published for `asset`: (price, confidence, horizon hours)."""
        payload = self.published.get(asset)
        if payload is None:
            return None
        return decode_triplet(from_hex(payload), self.config['encoding']['decimals'])

    async def run_cycle(self, asset: str) -> Optional[str]:
        """
        One detection cycle. Returns the message id when a plan was sent.
        Risk rejections, expiry and send failures end the cycle without raising.
        """
        chains = self.market.chains_for(asset)
        keys = {(asset, chain) for chain in chains}
        if not chains or keys & self.active_cycles:
            return None
        self.active_cycles |= keys
        try:
            return await self._cycle(asset, chains)
        finally:
            self.active_cycles -= keys

    async def _cycle(self, asset: str, chains: List[str]) -> Optional[str]:
        fetches = [self.aggregator.fetch_observation(asset, chain) for chain in chains]
        fetches.append(self.aggregator.fetch_sentiment_inputs(asset))
        if asset not in self._seeded:
            fetches.append(self._seed_history(asset, chains))
        # Any single input failing degrades the cycle, it never aborts it
        results = await asyncio.gather(*fetches, return_exceptions=True)
        for res in results:
            if isinstance(res, Exception):
                self.logger.warning(f"Cycle input for {asset} failed: {res!r}")

        observations = [r.observation for r in results[:len(chains)]
                        if not isinstance(r, Exception) and r.available]
        sentiment_inputs = results[len(chains)]
        if isinstance(sentiment_inputs, Exception):
            sentiment_inputs = {}
        for obs in observations:
            self.history.record(obs)
            self.latest.setdefault(asset, {})[obs.chain] = obs
            self._publish_quote(obs)

        prediction = self._predict(asset, observations, sentiment_inputs)
        if len(observations) < 2:
            self.update_status(f"[yellow]{asset}: only {len(observations)} chain(s) priced[/yellow]")
            return None

        opp = self.detector.detect(observations, prediction)
        if opp is None:
            return None

        by_chain = {o.chain: o for o in observations}
        reservation = None
        try:
            self.risk.pre_trade_check()
            reservation = self.risk.allocate(opp, self.available_balance())
            self.risk.check_liquidity(by_chain[opp.source_chain], reservation.amount)
            self.risk.check_liquidity(by_chain[opp.destination_chain], reservation.amount)
            net = self.risk.accept(opp, reservation.amount)
        except RiskRejected as e:
            if reservation is not None:
                self.ledger.release(reservation.reservation_id)
            self.logger.info(f"⛔ REJECTED: {asset} {opp.source_chain}->{opp.destination_chain}: {e.reason}")
            self.update_status(f"[red]Rejected {asset}: {e.reason}[/red]")
            return None

        self.update_status(f"ATTEMPT: Buy {asset} on {opp.source_chain.upper()} @ {opp.buy_price:.4f} "
                           f"-> Sell on {opp.destination_chain.upper()} | Est. Net ${net:.4f}")
        try:
            return await self.executor.execute(opp, reservation)
        except OpportunityExpired as e:
            self.logger.warning(f"⌛ {e}; abandoned")
        except RiskRejected as e:
            self.logger.info(f"⛔ REJECTED: {asset}: {e.reason}")
        except SendFailure as e:
            self.update_status(f"[red]Send failed {asset}: {e}[/red]")
        return None

    async def stop_loss_sweep(self) -> List[str]:
        """Unwind every idle open position whose loss crossed the stop-loss threshold."""
        sent = []
        for position in self.ledger.open_positions():
            if self.executor.is_busy(position.position_id):
                continue
            obs = self.latest.get(position.asset, {}).get(position.chain)
            if obs is None:
                continue
            if self.risk.evaluate_stop_loss(position, obs.price):
                self.logger.warning(f"🛑 STOP-LOSS: {position.asset}@{position.chain} "
                                    f"entry {position.entry_price:.4f} now {obs.price:.4f}")
                message_id = await self.executor.unwind(position, obs.price, "stop-loss")
                if message_id:
                    sent.append(message_id)
        return sent

    async def run_forever(self, assets: Optional[List[str]] = None, on_tick: Optional[Callable[[], None]] = None):
        assets = assets or list(self.config['assets'].keys())
        interval = self.config['system']['cycle_interval_s']
        self._running = True
        monitor = asyncio.create_task(self.messenger.run_monitor())
        try:
            while self._running and not self.risk.kill_switch:
                start_tick = time.time()
                results = await asyncio.gather(*[self.run_cycle(a) for a in assets], return_exceptions=True)
                for asset, res in zip(assets, results):
                    if isinstance(res, Exception):
                        self.logger.error(f"Cycle for {asset} crashed: {res!r}")
                await self.stop_loss_sweep()
                if on_tick is not None:
                    on_tick()

                elapsed = time.time() - start_tick
                await asyncio.sleep(max(0, interval - elapsed))
        finally:
            self.messenger.stop()
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)
