"""
Resolution Sync Module

Reconciles stored markets with Polymarket's view of how they resolved.

How it works:
1. A strategy (picked by SyncMode) selects a bounded list of targets
2. Targets are checked N at a time with asyncio.gather, pausing between
   batches so we stay polite to the Gamma API
3. Each market descriptor goes through decide_resolution()
4. Resolved with a winner -> written as resolved (never overwrites a
   market that is already resolved). Anything else -> only the
   last_checked_at rotation marker (plus slug/question) is touched, and
   only on markets we already store.

One failing market is counted and logged; the sweep keeps going.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional
from loguru import logger

from .alerter import sports_event_slug
from .polymarket_client import MarketDescriptor, PolymarketClient
from .resolution import decide_resolution


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _chunked(items: List, size: int) -> Iterable[List]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class SyncMode(str, Enum):
    RECENT = "recent"
    DUE = "due"
    ALL = "all"
    EVENTS_RECENT = "events_recent"
    MARKET = "market"
    EVENT = "event"


@dataclass
class SyncTarget:
    """A market (by id and/or slug) or a whole event (by slug)."""
    market_id: Optional[str] = None
    slug: Optional[str] = None
    event_slug: Optional[str] = None

    @property
    def is_event(self) -> bool:
        return bool(self.event_slug)

    @property
    def label(self) -> str:
        return self.event_slug or self.slug or self.market_id or "?"


# =========================================
# CANDIDATE SELECTION
# =========================================

class SyncStrategy(ABC):
    """Picks what a sweep should look at."""

    @abstractmethod
    async def select(self, db, limit: int) -> List[SyncTarget]: pass


class RecentMarketsStrategy(SyncStrategy):
    """Unresolved markets traded within the lookback window, most recent first."""

    def __init__(self, lookback_days: float = 3):
        self.lookback = timedelta(days=lookback_days)

    async def select(self, db, limit: int) -> List[SyncTarget]:
        since = _utcnow() - self.lookback
        await db.ensure_markets_for_recent_trades(since)
        markets = await db.get_recent_unresolved_markets(since, limit)
        return [SyncTarget(market_id=m.id, slug=m.slug) for m in markets]


class DueMarketsStrategy(SyncStrategy):
    """Unresolved markets never checked, or not checked within the recheck window."""

    def __init__(self, recheck_hours: float = 6):
        self.recheck = timedelta(hours=recheck_hours)

    async def select(self, db, limit: int) -> List[SyncTarget]:
        markets = await db.get_due_markets(_utcnow() - self.recheck, limit)
        return [SyncTarget(market_id=m.id, slug=m.slug) for m in markets]


class AllUnresolvedStrategy(SyncStrategy):
    """Every unresolved market, oldest-checked first."""

    async def select(self, db, limit: int) -> List[SyncTarget]:
        markets = await db.get_unresolved_markets(limit)
        return [SyncTarget(market_id=m.id, slug=m.slug) for m in markets]


class RecentEventsStrategy(SyncStrategy):
    """
    Sports events rebuilt from recently traded market slugs.

    "nba-lal-bos-2025-01-05-spread-home-4pt5" and
    "nba-lal-bos-2025-01-05" both map to event "nba-lal-bos-2025-01-05",
    which is fetched once with all of its markets.
    """

    def __init__(self, lookback_days: float = 3):
        self.lookback = timedelta(days=lookback_days)

    async def select(self, db, limit: int) -> List[SyncTarget]:
        slugs = await db.get_recent_trade_slugs(_utcnow() - self.lookback)
        events: List[str] = []
        for slug in slugs:
            event_slug = sports_event_slug(slug)
            if event_slug and event_slug not in events:
                events.append(event_slug)
            if len(events) >= limit:
                break
        return [SyncTarget(event_slug=event_slug) for event_slug in events]


class SingleMarketStrategy(SyncStrategy):
    def __init__(self, market_id: Optional[str] = None, slug: Optional[str] = None):
        if not market_id and not slug:
            raise ValueError("market mode needs market_id or slug")
        self.market_id = market_id
        self.slug = slug

    async def select(self, db, limit: int) -> List[SyncTarget]:
        slug = self.slug
        if not slug and self.market_id:
            market = await db.get_market(self.market_id)
            slug = market.slug if market else None
        return [SyncTarget(market_id=self.market_id, slug=slug)]


class SingleEventStrategy(SyncStrategy):
    def __init__(self, event_slug: Optional[str] = None):
        if not event_slug:
            raise ValueError("event mode needs event_slug")
        self.event_slug = event_slug

    async def select(self, db, limit: int) -> List[SyncTarget]:
        return [SyncTarget(event_slug=self.event_slug)]


def build_strategy(
    mode: SyncMode,
    settings,
    market_id: Optional[str] = None,
    slug: Optional[str] = None,
    event_slug: Optional[str] = None,
) -> SyncStrategy:
    """Map a SyncMode to its strategy. Raises ValueError on bad arguments."""
    mode = SyncMode(mode)
    if mode == SyncMode.RECENT:
        return RecentMarketsStrategy(settings.RESOLUTION_LOOKBACK_DAYS)
    if mode == SyncMode.DUE:
        return DueMarketsStrategy(settings.RESOLUTION_RECHECK_HOURS)
    if mode == SyncMode.ALL:
        return AllUnresolvedStrategy()
    if mode == SyncMode.EVENTS_RECENT:
        return RecentEventsStrategy(settings.RESOLUTION_LOOKBACK_DAYS)
    if mode == SyncMode.MARKET:
        return SingleMarketStrategy(market_id=market_id, slug=slug)
    return SingleEventStrategy(event_slug=event_slug)


# =========================================
# RECONCILIATION
# =========================================

@dataclass
class SyncSummary:
    mode: str
    candidates: int = 0
    checked: int = 0
    resolved: int = 0
    still_open: int = 0
    resolved_without_winner: int = 0
    not_found: int = 0
    failed: int = 0
    events_fetched: int = 0
    success: bool = True
    error: Optional[str] = None
    resolved_markets: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "mode": self.mode,
            "candidates": self.candidates,
            "checked": self.checked,
            "resolved": self.resolved,
            "still_open": self.still_open,
            "resolved_without_winner": self.resolved_without_winner,
            "not_found": self.not_found,
            "failed": self.failed,
            "events_fetched": self.events_fetched,
            "success": self.success,
            "error": self.error,
            "resolved_markets": self.resolved_markets,
        }


class ResolutionSyncer:
    """
    Runs one resolution sweep.

    Usage:
        syncer = ResolutionSyncer(db, client)
        summary = await syncer.run(SyncMode.DUE, build_strategy(SyncMode.DUE, settings))
    """

    def __init__(
        self,
        db,
        client: PolymarketClient,
        batch_size: int = 5,
        batch_delay_seconds: float = 0.5,
        max_candidates: int = 200,
    ):
        self.db = db
        self.client = client
        self.batch_size = max(1, batch_size)
        self.batch_delay_seconds = batch_delay_seconds
        self.max_candidates = max_candidates

    @classmethod
    def from_settings(cls, db, client: PolymarketClient, settings) -> "ResolutionSyncer":
        return cls(
            db,
            client,
            batch_size=settings.RESOLUTION_BATCH_SIZE,
            batch_delay_seconds=settings.RESOLUTION_BATCH_DELAY_SECONDS,
            max_candidates=settings.RESOLUTION_MAX_CANDIDATES,
        )

    async def run(self, mode: SyncMode, strategy: SyncStrategy, limit: Optional[int] = None) -> SyncSummary:
        mode = SyncMode(mode)
        summary = SyncSummary(mode=mode.value)
        limit = limit if limit and limit > 0 else self.max_candidates

        try:
            targets = await strategy.select(self.db, limit)
        except Exception as e:
            logger.error(f"❌ Resolution sync ({mode.value}) could not select candidates: {e}")
            summary.success = False
            summary.error = str(e)
            return summary

        summary.candidates = len(targets)
        logger.info(f"🔎 Resolution sync ({mode.value}): {len(targets)} candidates")

        batches = list(_chunked(targets, self.batch_size))
        for index, batch in enumerate(batches):
            await asyncio.gather(*(self._run_target(target, summary) for target in batch))
            if index < len(batches) - 1 and self.batch_delay_seconds > 0:
                await asyncio.sleep(self.batch_delay_seconds)

        logger.info(
            f"✅ Resolution sync ({mode.value}) done: checked={summary.checked} "
            f"resolved={summary.resolved} open={summary.still_open} "
            f"no_winner={summary.resolved_without_winner} not_found={summary.not_found} "
            f"failed={summary.failed}"
        )
        return summary

    async def _run_target(self, target: SyncTarget, summary: SyncSummary) -> None:
        try:
            if target.is_event:
                await self._reconcile_event(target.event_slug, summary)
            else:
                await self._reconcile_market(target, summary)
        except Exception as e:
            summary.failed += 1
            logger.error(f"Resolution check failed for {target.label}: {e}")

    async def _lookup(self, target: SyncTarget) -> Optional[MarketDescriptor]:
        """By slug first, then by condition id."""
        descriptor = None
        if target.slug:
            descriptor = await self.client.get_market_by_slug(target.slug)
        if descriptor is None and target.market_id:
            descriptor = await self.client.get_market_by_condition_id(target.market_id)
        return descriptor

    async def _reconcile_market(self, target: SyncTarget, summary: SyncSummary) -> None:
        descriptor = await self._lookup(target)
        if descriptor is None:
            summary.not_found += 1
            logger.debug(f"Market not found upstream: {target.label}")
            if target.market_id:
                await self.db.record_market_check(target.market_id)
            return
        await self._apply(descriptor, target.market_id, summary)

    async def _reconcile_event(self, event_slug: str, summary: SyncSummary) -> None:
        event = await self.client.get_event_by_slug(event_slug)
        if event is None:
            summary.not_found += 1
            logger.debug(f"Event not found upstream: {event_slug}")
            return
        summary.events_fetched += 1
        for descriptor in event.markets:
            try:
                await self._apply(descriptor, None, summary)
            except Exception as e:
                summary.failed += 1
                logger.error(f"Resolution check failed for {descriptor.slug or descriptor.condition_id}: {e}")

    async def _apply(self, descriptor: MarketDescriptor, market_id: Optional[str], summary: SyncSummary) -> None:
        # The stored id wins over whatever the slug lookup returned
        market_id = market_id or descriptor.condition_id
        if not market_id:
            summary.not_found += 1
            return

        summary.checked += 1
        verdict = decide_resolution(descriptor)

        if verdict.has_winner:
            await self.db.mark_market_resolved(
                market_id,
                verdict.winning_outcome,
                resolved_at=verdict.resolved_at or _utcnow(),
                slug=descriptor.slug,
                question=descriptor.display_question,
            )
            summary.resolved += 1
            summary.resolved_markets.append(market_id)
            logger.info(f"🏁 Resolved {descriptor.slug or market_id}: {verdict.winning_outcome}")
            return

        if verdict.is_resolved:
            summary.resolved_without_winner += 1
            logger.warning(
                f"Market {descriptor.slug or market_id} looks resolved but has no clear winner "
                f"(signals={verdict.signals.to_dict()}), leaving it open"
            )
        else:
            summary.still_open += 1

        stored = await self.db.record_market_check(
            market_id,
            slug=descriptor.slug,
            question=descriptor.display_question,
        )
        if not stored:
            logger.debug(f"Skipping untraded market {descriptor.slug or market_id}")
