"""
Resolution decision.

One pure function: a Gamma market descriptor in, a verdict out. No I/O,
so every rule here can be tested with plain descriptors.

Signals:
- explicit `resolved` flag
- UMA status "resolved" (single field or any entry of the list)
- an explicit winner field (winningOutcome / winner / outcome)
- settled prices on a closed market: every price is >= 0.999 or <= 0.001
  and at least one is high

A market can come out resolved with no winner (e.g. two prices both at
0.999 and no explicit field). That verdict is legal but never written;
the market stays unresolved and is checked again later.
"""
import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .normalizer import parse_timestamp
from .polymarket_client import MarketDescriptor

SETTLED_HIGH = 0.999
SETTLED_LOW = 0.001


@dataclass
class ResolutionSignals:
    flag: bool = False
    uma_status: bool = False
    explicit_winner: bool = False
    settled_prices: bool = False

    def to_dict(self):
        return {
            "flag": self.flag,
            "uma_status": self.uma_status,
            "explicit_winner": self.explicit_winner,
            "settled_prices": self.settled_prices,
        }


@dataclass
class ResolutionVerdict:
    is_resolved: bool
    winning_outcome: Optional[str]
    signals: ResolutionSignals
    resolved_at: Optional[datetime] = None
    winning_index: Optional[int] = None

    @property
    def has_winner(self) -> bool:
        return self.is_resolved and bool(self.winning_outcome)


def _parse_prices(raw_prices: List) -> Optional[List[float]]:
    """All prices as finite floats, or None if any doesn't parse."""
    prices = []
    for raw in raw_prices:
        if isinstance(raw, bool):
            return None
        try:
            price = float(raw)
        except (TypeError, ValueError):
            return None
        if not math.isfinite(price):
            return None
        prices.append(price)
    return prices


def settled_price_winner(descriptor: MarketDescriptor):
    """
    Apply the settled-price heuristic.

    Returns (is_settled, winning_index). winning_index is None when the
    top price is shared by more than one outcome.
    """
    prices = _parse_prices(descriptor.outcome_prices)
    if not prices:
        return False, None
    if not all(p >= SETTLED_HIGH or p <= SETTLED_LOW for p in prices):
        return False, None
    if not any(p >= SETTLED_HIGH for p in prices):
        return False, None

    top = max(prices)
    winners = [index for index, price in enumerate(prices) if price == top]
    return True, winners[0] if len(winners) == 1 else None


def _explicit_winner(descriptor: MarketDescriptor) -> Optional[str]:
    for value in (descriptor.winning_outcome, descriptor.winner, descriptor.outcome):
        if value and value.strip():
            return value.strip()
    return None


def _resolution_time(descriptor: MarketDescriptor) -> Optional[datetime]:
    for value in (descriptor.resolved_at, descriptor.closed_time, descriptor.uma_end_date):
        if value:
            parsed = parse_timestamp(value)
            if parsed is not None:
                return parsed
    return None


def decide_resolution(descriptor: MarketDescriptor) -> ResolutionVerdict:
    """Work out whether a market is resolved, and who won."""
    signals = ResolutionSignals()
    signals.flag = bool(descriptor.resolved)

    statuses = [descriptor.uma_resolution_status or ""] + list(descriptor.uma_resolution_statuses)
    signals.uma_status = any(status.strip().lower() == "resolved" for status in statuses)

    explicit = _explicit_winner(descriptor)
    signals.explicit_winner = explicit is not None

    settled, winning_index = (False, None)
    if descriptor.closed:
        settled, winning_index = settled_price_winner(descriptor)
    signals.settled_prices = settled

    is_resolved = signals.flag or signals.uma_status or signals.explicit_winner or signals.settled_prices

    winner = explicit
    if winner is not None:
        winning_index = descriptor.outcomes.index(winner) if winner in descriptor.outcomes else None
    elif settled and winning_index is not None and winning_index < len(descriptor.outcomes):
        winner = descriptor.outcomes[winning_index]

    return ResolutionVerdict(
        is_resolved=is_resolved,
        winning_outcome=winner if is_resolved else None,
        signals=signals,
        resolved_at=_resolution_time(descriptor) if is_resolved else None,
        winning_index=winning_index if is_resolved else None,
    )
