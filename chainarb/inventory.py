# chainarb/inventory.py
import threading
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .models import Position, Side


@dataclass(slots=True)
class ExposureLimits:
    max_total: float
    max_market: float
    max_chain: float


@dataclass(slots=True)
class Reservation:
    reservation_id: str
    asset: str
    chain: str
    amount: float
    created_at: float


class ExposureLedger:
    """
    Single source of truth for capital at risk.
    Reservations and open positions both count toward exposure. Every
    read-decide-write runs under one lock and no I/O ever happens while it is
    held, so concurrently evaluated opportunities cannot both pass a limit
    check against the same stale total.
    """
    def __init__(self, clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._clock = clock
        self._reservations: Dict[str, Reservation] = {}
        self._positions: Dict[str, Position] = {}

    # --- reads ---

    def _exposure_unlocked(self):
        total = 0.0
        by_market: Dict[str, float] = defaultdict(float)
        by_chain: Dict[str, float] = defaultdict(float)
        for item in list(self._reservations.values()) + list(self._positions.values()):
            amount = item.amount if isinstance(item, Reservation) else item.size
            total += amount
            by_market[item.asset] += amount
            by_chain[item.chain] += amount
        return total, by_market, by_chain

    def total_exposure(self) -> float:
        with self._lock:
            return self._exposure_unlocked()[0]

    def market_exposure(self, asset: str) -> float:
        with self._lock:
            return self._exposure_unlocked()[1].get(asset, 0.0)

    def chain_exposure(self, chain: str) -> float:
        with self._lock:
            return self._exposure_unlocked()[2].get(chain, 0.0)

    def remaining(self, asset: str, chain: str, limits: ExposureLimits) -> float:
        with self._lock:
            return self._remaining_unlocked(asset, chain, limits)

    def _remaining_unlocked(self, asset: str, chain: str, limits: ExposureLimits) -> float:
        total, by_market, by_chain = self._exposure_unlocked()
        return min(
            limits.max_total - total,
            limits.max_market - by_market.get(asset, 0.0),
            limits.max_chain - by_chain.get(chain, 0.0),
        )

    def open_positions(self) -> List[Position]:
        with self._lock:
            return list(self._positions.values())

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get(position_id)

    # --- writes ---

    def reserve_up_to(self, asset: str, chain: str, desired: float, limits: ExposureLimits) -> Optional[Reservation]:
        """
        Atomically grant min(desired, remaining budget).
        Returns None when nothing is left.
        """
        with self._lock:
            remaining = self._remaining_unlocked(asset, chain, limits)
            amount = min(desired, remaining)
            if amount <= 0:
                return None
            res = Reservation(
                reservation_id=uuid.uuid4().hex,
                asset=asset,
                chain=chain,
                amount=amount,
                created_at=self._clock(),
            )
            self._reservations[res.reservation_id] = res
            return res

    def release(self, reservation_id: str) -> bool:
        with self._lock:
            return self._reservations.pop(reservation_id, None) is not None

    def open_position(self, reservation_id: str, entry_price: float) -> Optional[Position]:
        """Convert a reservation into an open position of the same size."""
        with self._lock:
            res = self._reservations.pop(reservation_id, None)
            if res is None:
                return None
            pos = Position(
                asset=res.asset,
                chain=res.chain,
                size=res.amount,
                entry_price=entry_price,
                opened_at=self._clock(),
                position_id=res.reservation_id,
            )
            self._positions[pos.position_id] = pos
            return pos

    def mark_orphaned(self, position_id: str, chain: Optional[str] = None, side: Optional[Side] = None,
                      entry_price: Optional[float] = None) -> Optional[Position]:
        """
        Flag a position whose plan only half executed. When the filled leg is
        not the one the reservation was booked on, the position moves to it.
        """
        with self._lock:
            pos = self._positions.get(position_id)
            if pos is not None:
                pos.orphaned = True
                if chain is not None:
                    pos.chain = chain
                if side is not None:
                    pos.side = side
                if entry_price is not None:
                    pos.entry_price = entry_price
            return pos

    def close_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            return self._positions.pop(position_id, None)
