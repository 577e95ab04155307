# chainarb/models.py
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, List, Optional
import time


class QualityTier(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Signal(Enum):
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


class Side(Enum):
    BUY = "buy"
    SELL = "sell"


class TxStatus(Enum):
    """
    Lifecycle states of a cross-chain message.
    Order matters: a transaction only ever moves to a higher rank.
    """
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == 2


_STATUS_RANK = {
    TxStatus.PENDING: 0,
    TxStatus.IN_PROGRESS: 1,
    TxStatus.SUCCESS: 2,
    TxStatus.FAILED: 2,
    TxStatus.CANCELLED: 2,
}


class PlanOutcome(Enum):
    """Result of an execution plan once its message reaches a terminal state."""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ORPHANED = "ORPHANED"        # exactly one leg filled
    NEUTRALIZED = "NEUTRALIZED"  # orphan unwound
    CANCELLED = "CANCELLED"


@dataclass(slots=True, frozen=True)
class PriceObservation:
    """
    Immutable quote for one asset on one chain.
    Using __slots__ for memory efficiency in the history buffers.
    """
    chain: str
    asset_id: str
    price: float
    bid: float
    ask: float
    volume: float
    timestamp: float
    source_name: str
    quality: QualityTier
    depth: Optional[float] = None  # size available at best price, when a book is visible

    @property
    def spread_pct(self) -> float:
        mid = (self.bid + self.ask) / 2
        if mid <= 0:
            return 0.0
        return (self.ask - self.bid) / mid

    @property
    def age(self) -> float:
        return time.time() - self.timestamp


@dataclass(slots=True)
class SourceQuote:
    """Raw answer from a single source, before cross-validation."""
    source: str
    price: float
    bid: Optional[float] = None
    ask: Optional[float] = None
    volume: Optional[float] = None
    depth: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def has_book(self) -> bool:
        return self.bid is not None and self.ask is not None and self.bid > 0 and self.ask >= self.bid


@dataclass(slots=True)
class AggregationResult:
    """
    Output of the aggregator for one (asset, chain).
    `observation` is None when every source failed.
    """
    asset: str
    chain: str
    observation: Optional[PriceObservation]
    errors: Dict[str, str] = field(default_factory=dict)
    inconsistent: bool = False

    @property
    def available(self) -> bool:
        return self.observation is not None


class HistoricalSeries:
    """Bounded, time-ordered buffer of observations for one (asset, chain)."""

    def __init__(self, asset: str, chain: str, max_points: int = 100):
        self.asset = asset
        self.chain = chain
        self._points: Deque[PriceObservation] = deque(maxlen=max_points)

    def append(self, obs: PriceObservation) -> bool:
        if self._points and obs.timestamp < self._points[-1].timestamp:
            return False
        self._points.append(obs)
        return True

    @property
    def prices(self) -> List[float]:
        return [p.price for p in self._points]

    @property
    def volumes(self) -> List[float]:
        return [p.volume for p in self._points]

    @property
    def last(self) -> Optional[PriceObservation]:
        return self._points[-1] if self._points else None

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self):
        return iter(self._points)


@dataclass(slots=True)
class TechnicalSignals:
    trend: str
    momentum: float
    confidence: float
    signal: Signal = Signal.HOLD
    rsi: float = 50.0
    volatility: float = 0.0
    short_ma: float = 0.0
    long_ma: float = 0.0
    volume_ratio: float = 1.0
    strength: float = 0.0


@dataclass(slots=True)
class SentimentSnapshot:
    fear_greed_index: float
    asset_sentiment: Optional[float]
    composite_score: float
    confidence: float
    social_score: float = 0.0


@dataclass(slots=True)
class ExternalEstimate:
    """Opaque third-party estimate (e.g. a language-model probability)."""
    price: float
    confidence: float
    source: str = "external"


@dataclass(slots=True)
class Prediction:
    base_price: float
    predicted_price: float
    confidence: float
    breakdown: Dict[str, float]
    signal: Signal
    time_horizon_hours: float


@dataclass(slots=True, frozen=True)
class ArbitrageOpportunity:
    """
    Qualified price divergence between two chains.
    `estimated_fee` and `net_profit_estimate` are per unit of position size.
    """
    id: str
    asset: str
    source_chain: str
    destination_chain: str
    buy_price: float
    sell_price: float
    price_difference_pct: float
    estimated_fee: float
    net_profit_estimate: float
    confidence: float
    created_at: float
    expires_at: float
    buy_volume: float = 0.0
    sell_volume: float = 0.0

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


@dataclass(slots=True)
class Position:
    asset: str
    chain: str
    size: float
    entry_price: float
    opened_at: float
    position_id: str = ""
    orphaned: bool = False
    side: Side = Side.BUY  # SELL when only the sell leg of a plan filled

    def unrealized_pnl(self, current_price: float) -> float:
        if self.side == Side.SELL:
            return (self.entry_price - current_price) * self.size
        return (current_price - self.entry_price) * self.size


@dataclass(slots=True, frozen=True)
class TradeLeg:
    chain: str
    side: Side
    amount: float
    price: float


@dataclass(slots=True, frozen=True)
class ExecutionPlan:
    """
    Immutable once built. Arbitrage plans carry exactly two legs
    (buy on source, sell on destination); unwind plans carry a single sell leg.
    """
    plan_id: str
    opportunity: Optional[ArbitrageOpportunity]
    position_size: float
    estimated_fee: float
    estimated_profit: float
    legs: tuple
    kind: str = "arbitrage"

    @property
    def source_chain(self) -> str:
        return self.legs[0].chain

    @property
    def destination_chain(self) -> str:
        return self.legs[-1].chain

    @property
    def notional(self) -> float:
        return self.legs[0].amount * self.legs[0].price


@dataclass(slots=True, frozen=True)
class FeeEstimate:
    fee_token: str
    fee_native: float
    gas_limit: int
    usd_estimate: float


@dataclass(slots=True)
class CrossChainTransaction:
    id: str
    message_id: str
    source_chain: str
    destination_chain: str
    status: TxStatus
    amount: float
    fees: Dict[str, float]
    created_at: float
    completed_at: Optional[float] = None
    error_message: Optional[str] = None
    filled_legs: List[str] = field(default_factory=list)
    plan_id: str = ""
    stale: bool = False


@dataclass(slots=True)
class TradeRecord:
    """Closed trade as seen by the performance tracker."""
    trade_id: str
    asset: str
    source_chain: str
    destination_chain: str
    profit: float
    fees: float
    opened_at: float
    closed_at: float
    outcome: PlanOutcome = PlanOutcome.COMPLETED

    @property
    def net(self) -> float:
        return self.profit - self.fees
