# chainarb/performance.py
from collections import defaultdict
from typing import Any, Dict, List

from .models import TradeRecord


class PerformanceTracker:
    """Aggregates closed trades into win-rate and P&L statistics. A win is a trade with positive net."""

    def __init__(self):
        self.trades: List[TradeRecord] = []

    def record(self, trade: TradeRecord):
        self.trades.append(trade)

    def stats(self, open_positions: int = 0) -> Dict[str, Any]:
        total = len(self.trades)
        wins = [t for t in self.trades if t.net > 0]
        losses = [t for t in self.trades if t.net <= 0]

        gross = sum(t.profit for t in self.trades)
        fees = sum(t.fees for t in self.trades)
        hold_times = [t.closed_at - t.opened_at for t in self.trades]

        by_route: Dict[str, Dict[str, float]] = defaultdict(lambda: {'trades': 0, 'profit': 0.0, 'fees': 0.0})
        for t in self.trades:
            bucket = by_route[f"{t.source_chain}->{t.destination_chain}"]
            bucket['trades'] += 1
            bucket['profit'] += t.profit
            bucket['fees'] += t.fees

        return {
            'total_trades': total,
            'winning_trades': len(wins),
            'losing_trades': len(losses),
            'win_rate': (len(wins) / total * 100) if total else 0.0,
            'gross_profit': gross,
            'total_fees': fees,
            'net_profit': gross - fees,
            'avg_win': (sum(t.net for t in wins) / len(wins)) if wins else 0.0,
            'avg_loss': (sum(t.net for t in losses) / len(losses)) if losses else 0.0,
            'avg_hold_s': (sum(hold_times) / total) if total else 0.0,
            'by_route': dict(by_route),
            'open_positions': open_positions,
        }
