"""
Whale Detector Module

Decides which stored whale trades deserve an alert. Runs once per fetched
page, after the page's trades are stored.

DETECTORS:
1. Copyable trader - a top-ranked trader (by realized P/L) with a good
   ROI, real profits and real bet sizes puts size on a market - COPYABLE
2. Isolated contact - a rarely-seen trader drops an outsized bet on a
   thin market - ISOLATED_CONTACT

Rules shared by both:
- Near-certain prices (>= 95c or <= 5c) never alert
- One alert per trade, ever
- A global hourly budget caps alerts of every type together. The budget
  is passed in as a plain int and the remainder handed back, so the
  caller owns it across pages.

These are the signals that get sent to Telegram!
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from loguru import logger

from .normalizer import TradeRow


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AlertType(str, Enum):
    COPYABLE = "copyable"
    ISOLATED_CONTACT = "isolated_contact"


@dataclass
class WhaleAlert:
    """
    An alert generated for one trade.

    Keyed by the trade's hash; the store ignores a second alert for the
    same trade.
    """
    alert_type: AlertType
    trade: TradeRow
    message: str
    rank: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def trade_hash(self) -> str:
        return self.trade.tx_hash

    @property
    def trader_address(self) -> str:
        return self.trade.trader_address

    @property
    def market_id(self) -> str:
        return self.trade.market_id

    @property
    def amount(self) -> float:
        return self.trade.amount

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON responses."""
        return {
            "trade_hash": self.trade_hash,
            "alert_type": self.alert_type.value,
            "message": self.message,
            "trader_address": self.trader_address,
            "market_id": self.market_id,
            "market_title": self.trade.market_title,
            "amount": self.amount,
            "rank": self.rank,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class IsolatedCandidate:
    """What the store needs to confirm an isolated contact."""
    trade_hash: str
    trader_address: str
    market_id: str
    amount: float
    timestamp: Optional[datetime] = None

    @classmethod
    def from_trade(cls, trade: TradeRow) -> "IsolatedCandidate":
        return cls(
            trade_hash=trade.tx_hash,
            trader_address=trade.trader_address,
            market_id=trade.market_id,
            amount=trade.amount,
            timestamp=trade.timestamp,
        )


# Batched store lookup: candidates in, confirmed trade hashes out
IsolatedCheck = Callable[[List[IsolatedCandidate]], Awaitable[Set[str]]]


@dataclass
class AlertContext:
    """
    Everything the detector reads from the store for one page.

    rankings maps trader address -> ranking entry (anything with rank,
    roi, realized_pnl, median_bet, wins, losses, computed_at).
    """
    rankings: Dict[str, Any]
    budget: int
    cooldown_traders: Set[str] = field(default_factory=set)
    alerted_hashes: Set[str] = field(default_factory=set)
    now: datetime = field(default_factory=_utcnow)


@dataclass
class PageEvaluation:
    """Result of one page: the alerts, and the budget left afterwards."""
    alerts: List[WhaleAlert]
    budget: int
    price_excluded: int = 0
    isolated_candidates: int = 0
    isolated_confirmed: int = 0

    @property
    def by_type(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for alert in self.alerts:
            counts[alert.alert_type.value] = counts.get(alert.alert_type.value, 0) + 1
        return counts


class WhaleDetector:
    """
    Runs the copyable and isolated-contact detectors over a page.

    Usage:
        detector = WhaleDetector.from_settings(settings)
        result = await detector.evaluate_page(rows, context, db.check_isolated_contacts)
        remaining_budget = result.budget
    """

    def __init__(
        self,
        price_max: float = 0.95,
        price_min: float = 0.05,
        copyable_rank_cutoff: int = 50,
        min_copyable_roi: float = 0.10,
        min_copyable_pnl: float = 10_000,
        min_copyable_median_bet: float = 1_000,
        min_copyable_trade: float = 5_000,
        ranking_staleness_hours: float = 24,
        isolated_min_trade: float = 10_000,
        isolated_extreme_min_trade: float = 25_000,
        isolated_extreme_price_high: float = 0.85,
        isolated_extreme_price_low: float = 0.15,
    ):
        """
        Args:
            price_max / price_min: Trades priced at or beyond these never alert
            copyable_rank_cutoff: Leaderboard positions 1..cutoff count as copyable
            min_copyable_*: Floors a copyable trader and trade must clear
            ranking_staleness_hours: Older ranking entries are ignored
            isolated_min_trade: Size an isolated-contact candidate needs
            isolated_extreme_min_trade: Same, when the price is extreme
            isolated_extreme_price_high / low: What counts as an extreme price
        """
        self.price_max = price_max
        self.price_min = price_min
        self.copyable_rank_cutoff = copyable_rank_cutoff
        self.min_copyable_roi = min_copyable_roi
        self.min_copyable_pnl = min_copyable_pnl
        self.min_copyable_median_bet = min_copyable_median_bet
        self.min_copyable_trade = min_copyable_trade
        self.ranking_staleness = timedelta(hours=ranking_staleness_hours)
        self.isolated_min_trade = isolated_min_trade
        self.isolated_extreme_min_trade = isolated_extreme_min_trade
        self.isolated_extreme_price_high = isolated_extreme_price_high
        self.isolated_extreme_price_low = isolated_extreme_price_low

    @classmethod
    def from_settings(cls, settings) -> "WhaleDetector":
        return cls(
            price_max=settings.ALERT_PRICE_MAX,
            price_min=settings.ALERT_PRICE_MIN,
            copyable_rank_cutoff=settings.COPYABLE_RANK_CUTOFF,
            min_copyable_roi=settings.MIN_COPYABLE_ROI,
            min_copyable_pnl=settings.MIN_COPYABLE_PNL_USD,
            min_copyable_median_bet=settings.MIN_COPYABLE_MEDIAN_BET_USD,
            min_copyable_trade=settings.MIN_COPYABLE_TRADE_USD,
            ranking_staleness_hours=settings.RANKING_STALENESS_HOURS,
            isolated_min_trade=settings.ISOLATED_MIN_TRADE_USD,
            isolated_extreme_min_trade=settings.ISOLATED_EXTREME_MIN_TRADE_USD,
            isolated_extreme_price_high=settings.ISOLATED_EXTREME_PRICE_HIGH,
            isolated_extreme_price_low=settings.ISOLATED_EXTREME_PRICE_LOW,
        )

    # =========================================
    # RULES
    # =========================================

    def is_price_excluded(self, trade: TradeRow) -> bool:
        """Near-certain outcomes aren't worth an alert."""
        return trade.price >= self.price_max or trade.price <= self.price_min

    def is_copyable_rank(self, ranking: Any) -> bool:
        return ranking is not None and ranking.rank is not None and ranking.rank <= self.copyable_rank_cutoff

    def is_stale(self, ranking: Any, now: datetime) -> bool:
        if ranking.computed_at is None:
            return True
        return now - ranking.computed_at > self.ranking_staleness

    def _is_extreme_price(self, price: float) -> bool:
        return price >= self.isolated_extreme_price_high or price <= self.isolated_extreme_price_low

    def isolated_size_threshold(self, trade: TradeRow) -> float:
        if self._is_extreme_price(trade.price):
            return self.isolated_extreme_min_trade
        return self.isolated_min_trade

    def _copyable_alert(
        self,
        trade: TradeRow,
        ranking: Any,
        cooldown_traders: Set[str],
        now: datetime,
    ) -> Optional[WhaleAlert]:
        if not self.is_copyable_rank(ranking):
            return None
        if self.is_stale(ranking, now):
            return None
        if trade.trader_address in cooldown_traders:
            return None
        if (ranking.roi or 0) < self.min_copyable_roi:
            return None
        if (ranking.realized_pnl or 0) < self.min_copyable_pnl:
            return None
        if (ranking.median_bet or 0) < self.min_copyable_median_bet:
            return None
        if trade.amount < self.min_copyable_trade:
            return None

        title = trade.market_title or trade.market_id
        message = (
            f"🎯 COPYABLE TRADER #{ranking.rank} "
            f"({ranking.wins or 0}-{ranking.losses or 0}, ROI {ranking.roi * 100:.0f}%, "
            f"P/L ${ranking.realized_pnl:,.0f}, median bet ${ranking.median_bet:,.0f})\n"
            f"{trade.bet_direction} ${trade.amount:,.0f} on {title}"
        )
        return WhaleAlert(
            alert_type=AlertType.COPYABLE,
            trade=trade,
            message=message,
            rank=ranking.rank,
        )

    def _isolated_alert(self, trade: TradeRow) -> WhaleAlert:
        title = trade.market_title or trade.market_id
        message = (
            f"🔍 ISOLATED CONTACT: ${trade.amount:,.0f} {trade.bet_direction} on {title}\n"
            f"Rare trader, thin market, outsized bet"
        )
        return WhaleAlert(
            alert_type=AlertType.ISOLATED_CONTACT,
            trade=trade,
            message=message,
        )

    # =========================================
    # PAGE EVALUATION
    # =========================================

    async def evaluate_page(
        self,
        trades: List[TradeRow],
        context: AlertContext,
        isolated_check: IsolatedCheck,
    ) -> PageEvaluation:
        """
        Evaluate one page of stored trades.

        Copyable alerts are produced first in page order, then isolated
        contacts (one batched store lookup). Every alert spends one unit
        of budget; nothing is produced once it reaches zero.
        """
        budget = max(0, context.budget)
        cooldown = set(context.cooldown_traders)
        alerted = set(context.alerted_hashes)
        alerts: List[WhaleAlert] = []
        price_excluded = 0

        eligible: List[TradeRow] = []
        for trade in trades:
            if trade.tx_hash in alerted:
                continue
            if self.is_price_excluded(trade):
                price_excluded += 1
                continue
            eligible.append(trade)

        # 1. Copyable traders
        for trade in eligible:
            if budget <= 0:
                break
            alert = self._copyable_alert(trade, context.rankings.get(trade.trader_address), cooldown, context.now)
            if alert is None:
                continue
            alerts.append(alert)
            alerted.add(trade.tx_hash)
            cooldown.add(trade.trader_address)
            budget -= 1

        # 2. Isolated contacts
        candidates = [
            trade for trade in eligible
            if trade.tx_hash not in alerted
            and not self.is_copyable_rank(context.rankings.get(trade.trader_address))
            and trade.amount >= self.isolated_size_threshold(trade)
        ]
        confirmed: Set[str] = set()
        if candidates and budget > 0:
            confirmed = await isolated_check([IsolatedCandidate.from_trade(t) for t in candidates])
            for trade in candidates:
                if budget <= 0:
                    break
                if trade.tx_hash not in confirmed:
                    continue
                alerts.append(self._isolated_alert(trade))
                alerted.add(trade.tx_hash)
                budget -= 1

        if budget <= 0 and context.budget > 0:
            logger.info("⏸️ Hourly alert budget exhausted")

        return PageEvaluation(
            alerts=alerts,
            budget=budget,
            price_excluded=price_excluded,
            isolated_candidates=len(candidates),
            isolated_confirmed=len(confirmed),
        )
