"""
Trade Ingestion Module

One ingestion run:
1. Page through the Data API trade feed (offset pagination)
2. Normalize -> validate -> dedupe each page
3. Upsert trades by hash, upsert market placeholders
4. Run the whale detector and insert alerts (duplicates ignored)
5. Notify only the alerts that were actually inserted
6. After the last page: recompute trader stats and market stats
   (best-effort, reported as stage results)

Pagination is an explicit state machine:

    FETCHING --2xx, rows---------> FETCHING (offset += page size)
    FETCHING --2xx, no rows------> EXHAUSTED
    FETCHING --max pages reached-> EXHAUSTED
    FETCHING --4xx---------------> SOFT_STOPPED (end of data, not an error)
    FETCHING --other / transport-> HARD_FAILED  (run aborts)
"""
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Dict, List, Optional
import httpx
from loguru import logger

from .alerter import Alerter
from .config import ConfigurationError
from .normalizer import TradeMeta, TradeNormalizer, TradeRow, dedupe_by_tx_hash
from .polymarket_client import PolymarketClient, TradePage
from .whale_detector import AlertContext, WhaleDetector


class FetchState(str, Enum):
    FETCHING = "fetching"
    SOFT_STOPPED = "soft_stopped"
    HARD_FAILED = "hard_failed"
    EXHAUSTED = "exhausted"


class Paginator:
    """Tracks offset and state across pages of one run."""

    def __init__(self, page_size: int, max_pages: int):
        self.page_size = page_size
        self.max_pages = max_pages
        self.state = FetchState.FETCHING
        self.offset = 0
        self.pages_fetched = 0
        self.last_status: Optional[int] = None
        self.error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state != FetchState.FETCHING

    def on_page(self, page: TradePage) -> FetchState:
        self.last_status = page.status_code
        if page.ok:
            if not page.trades:
                self.state = FetchState.EXHAUSTED
                return self.state
            self.pages_fetched += 1
            self.offset += self.page_size
            if self.pages_fetched >= self.max_pages:
                self.state = FetchState.EXHAUSTED
        elif 400 <= page.status_code < 500:
            self.state = FetchState.SOFT_STOPPED
        else:
            self.state = FetchState.HARD_FAILED
            self.error = f"Data API returned {page.status_code} at offset {self.offset}"
        return self.state

    def on_transport_error(self, error: Exception) -> FetchState:
        self.state = FetchState.HARD_FAILED
        self.error = f"Data API request failed at offset {self.offset}: {error}"
        return self.state


@dataclass
class StageResult:
    """Outcome of a best-effort post-run stage."""
    name: str
    ok: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {"name": self.name, "ok": self.ok, "error": self.error}


@dataclass
class IngestionSummary:
    success: bool = True
    fetched: int = 0
    stored: int = 0
    duplicates: int = 0
    dropped: Dict[str, int] = field(default_factory=dict)
    alerts_inserted: int = 0
    alerts_by_type: Dict[str, int] = field(default_factory=dict)
    price_excluded: int = 0
    notifications_sent: int = 0
    pages_fetched: int = 0
    final_state: str = FetchState.FETCHING.value
    stages: List[StageResult] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "fetched": self.fetched,
            "stored": self.stored,
            "duplicates": self.duplicates,
            "dropped": self.dropped,
            "alerts_inserted": self.alerts_inserted,
            "alerts_by_type": self.alerts_by_type,
            "price_excluded": self.price_excluded,
            "notifications_sent": self.notifications_sent,
            "pages_fetched": self.pages_fetched,
            "final_state": self.final_state,
            "stages": [stage.to_dict() for stage in self.stages],
            "error": self.error,
        }


class TradeIngestor:
    """
    Runs ingestion end to end.

    Usage:
        async with PolymarketClient() as client:
            ingestor = TradeIngestor(db, client, alerter, settings)
            summary = await ingestor.run()
    """

    def __init__(
        self,
        db,
        client: PolymarketClient,
        alerter: Optional[Alerter],
        settings,
        detector: Optional[WhaleDetector] = None,
    ):
        self.db = db
        self.client = client
        self.alerter = alerter
        self.settings = settings
        self.detector = detector or WhaleDetector.from_settings(settings)

    async def run(self) -> IngestionSummary:
        summary = IngestionSummary()
        try:
            self.settings.validate_ingestion()
        except ConfigurationError as e:
            logger.error(f"❌ Ingestion not configured: {e}")
            summary.success = False
            summary.error = str(e)
            return summary

        normalizer = TradeNormalizer(self.settings.MIN_TRADE_SIZE_USD)
        paginator = Paginator(self.settings.INGEST_PAGE_SIZE, self.settings.INGEST_MAX_PAGES)
        logger.info("🐋 Ingestion run starting")

        try:
            while not paginator.done:
                offset = paginator.offset
                try:
                    page = await self.client.fetch_trades_page(
                        limit=self.settings.INGEST_PAGE_SIZE,
                        offset=offset,
                        min_cash=self.settings.MIN_TRADE_SIZE_USD if self.settings.TRADES_FILTER_BY_CASH else None,
                        taker_only=self.settings.TRADES_TAKER_ONLY,
                    )
                except httpx.HTTPError as e:
                    paginator.on_transport_error(e)
                    break

                state = paginator.on_page(page)
                if state == FetchState.SOFT_STOPPED:
                    logger.info(f"Data API returned {page.status_code} at offset={offset}, treating as end of data")
                if page.ok and page.trades:
                    await self._process_page(page.trades, offset, normalizer, summary)
        except Exception as e:
            logger.exception(f"❌ Ingestion aborted: {e}")
            summary.success = False
            summary.error = str(e)

        summary.pages_fetched = paginator.pages_fetched
        summary.final_state = paginator.state.value
        summary.dropped = dict(normalizer.drop_counts)

        if paginator.state == FetchState.HARD_FAILED:
            logger.error(f"❌ {paginator.error}")
            summary.success = False
            summary.error = paginator.error

        if summary.success:
            summary.stages.append(await self._stage(
                "recalculate_trader_stats",
                partial(self.db.recalculate_trader_stats, self.settings.RANKING_WINDOW_DAYS),
            ))
            summary.stages.append(await self._stage("refresh_market_stats", self.db.refresh_market_stats))

        logger.info(
            f"🏁 Ingestion finished ({summary.final_state}): fetched={summary.fetched} "
            f"stored={summary.stored} duplicates={summary.duplicates} dropped={summary.dropped} "
            f"alerts={summary.alerts_inserted} pages={summary.pages_fetched}"
        )
        return summary

    async def _process_page(
        self,
        raw_trades: list,
        offset: int,
        normalizer: TradeNormalizer,
        summary: IngestionSummary,
    ) -> None:
        rows = normalizer.normalize_page(raw_trades)
        unique, duplicates = dedupe_by_tx_hash(rows)
        summary.fetched += len(raw_trades)
        summary.duplicates += duplicates
        logger.info(f"📄 Page offset={offset}: raw={len(raw_trades)} valid={len(rows)} unique={len(unique)}")

        if not unique:
            return

        # Store failures here abort the run
        summary.stored += await self.db.upsert_trades(unique)
        await self.db.upsert_market_placeholders(unique)

        await self._alert_page(unique, normalizer.metadata, summary)

    async def _alert_page(
        self,
        rows: List[TradeRow],
        metadata: Dict[str, TradeMeta],
        summary: IngestionSummary,
    ) -> None:
        settings = self.settings
        traders = {row.trader_address for row in rows}
        try:
            rankings = await self.db.get_ranking_snapshot(traders)
            recent_alerts = await self.db.count_recent_alerts()
            cooldown = await self.db.get_cooldown_traders(traders, settings.COPYABLE_COOLDOWN_HOURS)
            alerted = await self.db.get_alerted_hashes(row.tx_hash for row in rows)

            context = AlertContext(
                rankings=rankings,
                budget=max(0, settings.MAX_ALERTS_PER_HOUR - recent_alerts),
                cooldown_traders=cooldown,
                alerted_hashes=alerted,
            )
            isolated_check = partial(
                self.db.check_isolated_contacts,
                trader_window_days=settings.ISOLATED_TRADER_WINDOW_DAYS,
                max_trader_trades=settings.ISOLATED_MAX_TRADER_TRADES,
                market_window_hours=settings.ISOLATED_MARKET_WINDOW_HOURS,
                max_market_trades=settings.ISOLATED_MAX_MARKET_TRADES,
                outsized_multiplier=settings.ISOLATED_OUTSIZED_MULTIPLIER,
            )
            evaluation = await self.detector.evaluate_page(rows, context, isolated_check)
            summary.price_excluded += evaluation.price_excluded
            if not evaluation.alerts:
                return
            inserted = await self.db.insert_alerts(evaluation.alerts)
        except Exception as e:
            logger.error(f"Alert step failed for page, continuing: {e}")
            return

        new_alerts = [alert for alert in evaluation.alerts if alert.trade_hash in inserted]
        summary.alerts_inserted += len(new_alerts)
        for alert in new_alerts:
            key = alert.alert_type.value
            summary.alerts_by_type[key] = summary.alerts_by_type.get(key, 0) + 1

        if not new_alerts or self.alerter is None:
            return

        delivered = await self.alerter.dispatch_all(new_alerts, metadata)
        summary.notifications_sent += len(delivered)
        try:
            await self.db.mark_alerts_sent(delivered)
        except Exception as e:
            logger.warning(f"Could not flag alerts as sent: {e}")

    async def _stage(self, name: str, func) -> StageResult:
        try:
            await func()
        except Exception as e:
            logger.warning(f"⚠️ Stage {name} failed: {e}")
            return StageResult(name=name, ok=False, error=str(e))
        logger.info(f"✅ Stage {name} done")
        return StageResult(name=name, ok=True)
