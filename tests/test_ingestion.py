"""
Test Suite for the ingestion run.

The Data API is replaced by an httpx.MockTransport, the database is a
real SQLite file and notifications go to a recording channel.
"""
from typing import Callable, Dict, List

import httpx
import pytest

from whale_sonar.alerter import Alerter, AlertChannel, AlertMessage
from whale_sonar.ingestion import FetchState, Paginator, TradeIngestor
from whale_sonar.polymarket_client import PolymarketClient, TradePage
from whale_sonar.whale_detector import AlertType, WhaleAlert

from conftest import create_raw_trade, create_trade, make_settings, ranking_row


# =========================================
# TEST FIXTURES
# =========================================

class RecordingChannel(AlertChannel):
    """Collects every message instead of sending it."""

    def __init__(self):
        self.sent: List[AlertMessage] = []

    @property
    def name(self) -> str: return "Recording"

    async def send(self, alert: AlertMessage) -> bool:
        self.sent.append(alert)
        return True

    def is_configured(self) -> bool: return True


class FeedStub:
    """Serves the trade feed by offset; anything not listed is an empty page."""

    def __init__(self, pages: Dict[int, Callable[[httpx.Request], httpx.Response]]):
        self.pages = pages
        self.offsets: List[int] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        offset = int(request.url.params["offset"])
        self.offsets.append(offset)
        respond = self.pages.get(offset)
        if respond is None:
            return httpx.Response(200, json=[])
        return respond(request)


def page_of(*trades) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(200, json=list(trades))


def status(code: int) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(code, json={"error": "nope"})


def create_alerter():
    channel = RecordingChannel()
    alerter = Alerter(web_url="https://polymarket.com")
    alerter.add_channel(channel)
    return alerter, channel


async def run_ingestion(db, feed: FeedStub, alerter=None, **overrides):
    values = {"INGEST_PAGE_SIZE": 2, "INGEST_MAX_PAGES": 10}
    values.update(overrides)
    settings = make_settings(**values)
    async with PolymarketClient(transport=httpx.MockTransport(feed)) as client:
        ingestor = TradeIngestor(db, client, alerter, settings)
        return await ingestor.run()


# =========================================
# PAGINATION STATE MACHINE
# =========================================

class TestPaginator:
    """Offset pagination as an explicit state machine."""

    def test_full_page_advances_offset(self):
        """A 2xx page with rows keeps fetching at the next offset."""
        paginator = Paginator(page_size=500, max_pages=10)
        state = paginator.on_page(TradePage(200, [{"a": 1}]))
        assert state == FetchState.FETCHING
        assert paginator.offset == 500
        assert paginator.pages_fetched == 1

    def test_empty_page_exhausts(self):
        """A 2xx page with no rows is the end of the feed."""
        paginator = Paginator(page_size=500, max_pages=10)
        assert paginator.on_page(TradePage(200, [])) == FetchState.EXHAUSTED
        assert paginator.done

    def test_max_pages_exhausts(self):
        """Reaching the page cap stops the run without error."""
        paginator = Paginator(page_size=1, max_pages=2)
        paginator.on_page(TradePage(200, [{}]))
        assert paginator.on_page(TradePage(200, [{}])) == FetchState.EXHAUSTED

    def test_client_error_soft_stops(self):
        """A 4xx past the end of data is not a failure."""
        paginator = Paginator(page_size=500, max_pages=10)
        assert paginator.on_page(TradePage(400)) == FetchState.SOFT_STOPPED
        assert paginator.error is None

    def test_server_error_hard_fails(self):
        """A 5xx fails the run."""
        paginator = Paginator(page_size=500, max_pages=10)
        assert paginator.on_page(TradePage(503)) == FetchState.HARD_FAILED
        assert "503" in paginator.error

    def test_transport_error_hard_fails(self):
        paginator = Paginator(page_size=500, max_pages=10)
        paginator.on_transport_error(httpx.ReadTimeout("timed out"))
        assert paginator.state == FetchState.HARD_FAILED
        assert "timed out" in paginator.error


# =========================================
# INGESTION RUN
# =========================================

class TestIngestionRun:
    """End-to-end ingestion against a stubbed feed."""

    @pytest.mark.asyncio
    async def test_stores_trades_and_placeholders(self, db):
        """Valid trades are stored and their markets get placeholder rows."""
        feed = FeedStub({0: page_of(create_raw_trade(), create_raw_trade(tx_hash="0xtrade2", size=100))})

        summary = await run_ingestion(db, feed)

        assert summary.success
        assert summary.final_state == FetchState.EXHAUSTED.value
        assert summary.fetched == 2
        assert summary.stored == 1
        assert summary.dropped == {"below_minimum": 1}
        assert await db.count_trades() == 1
        market = await db.get_market("0xmarket1")
        assert market.slug == "will-it-happen"
        assert market.resolved is False
        assert feed.offsets == [0, 2]

    @pytest.mark.asyncio
    async def test_stages_run_after_success(self, db):
        """Trader stats and market stats are recomputed at the end."""
        feed = FeedStub({0: page_of(create_raw_trade())})

        summary = await run_ingestion(db, feed)

        assert [(s.name, s.ok) for s in summary.stages] == [
            ("recalculate_trader_stats", True),
            ("refresh_market_stats", True),
        ]
        market = await db.get_market("0xmarket1")
        assert market.trade_count_24h == 1
        assert market.volume_24h == pytest.approx(10_000)

    @pytest.mark.asyncio
    async def test_failed_stage_is_reported_not_raised(self, db, monkeypatch):
        """A stage failure is recorded; the run still succeeds."""
        async def boom(*args, **kwargs):
            raise RuntimeError("stats exploded")

        monkeypatch.setattr(db, "recalculate_trader_stats", boom)
        feed = FeedStub({0: page_of(create_raw_trade())})

        summary = await run_ingestion(db, feed)

        assert summary.success
        assert summary.stages[0].ok is False
        assert "stats exploded" in summary.stages[0].error
        assert summary.stages[1].ok is True

    @pytest.mark.asyncio
    async def test_duplicates_within_a_page_are_dropped(self, db):
        """The same hash twice in one page is stored once."""
        feed = FeedStub({0: page_of(create_raw_trade(), create_raw_trade())})

        summary = await run_ingestion(db, feed)

        assert summary.success
        assert summary.duplicates == 1
        assert summary.stored == 1

    @pytest.mark.asyncio
    async def test_client_error_is_end_of_data(self, db):
        """A 400 after the first page soft-stops; the run succeeds."""
        feed = FeedStub({0: page_of(create_raw_trade()), 2: status(400)})

        summary = await run_ingestion(db, feed)

        assert summary.success
        assert summary.final_state == FetchState.SOFT_STOPPED.value
        assert summary.stored == 1
        assert len(summary.stages) == 2

    @pytest.mark.asyncio
    async def test_server_error_fails_run(self, db):
        """A 500 hard-fails and skips the post-run stages."""
        feed = FeedStub({0: status(500)})

        summary = await run_ingestion(db, feed)

        assert not summary.success
        assert summary.final_state == FetchState.HARD_FAILED.value
        assert "500" in summary.error
        assert summary.stages == []

    @pytest.mark.asyncio
    async def test_transport_error_fails_run(self, db):
        """Timeouts and connection errors hard-fail too."""
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        feed = FeedStub({0: page_of(create_raw_trade()), 2: refuse})

        summary = await run_ingestion(db, feed)

        assert not summary.success
        assert summary.final_state == FetchState.HARD_FAILED.value
        assert summary.stored == 1

    @pytest.mark.asyncio
    async def test_page_cap(self, db):
        """INGEST_MAX_PAGES stops a feed that never runs dry."""
        feed = FeedStub({
            0: page_of(create_raw_trade(tx_hash="0xa")),
            2: page_of(create_raw_trade(tx_hash="0xb")),
            4: page_of(create_raw_trade(tx_hash="0xc")),
        })

        summary = await run_ingestion(db, feed, INGEST_MAX_PAGES=2)

        assert summary.success
        assert summary.pages_fetched == 2
        assert summary.final_state == FetchState.EXHAUSTED.value
        assert feed.offsets == [0, 2]

    @pytest.mark.asyncio
    async def test_bad_configuration_fails_fast(self, db):
        """Unusable settings fail the run before any request."""
        feed = FeedStub({})

        summary = await run_ingestion(db, feed, INGEST_PAGE_SIZE=0)

        assert not summary.success
        assert "INGEST_PAGE_SIZE" in summary.error
        assert feed.offsets == []

    @pytest.mark.asyncio
    async def test_request_parameters(self, db):
        """The feed is asked for cash-filtered taker trades."""
        seen = []

        def capture(request):
            seen.append(request.url.params)
            return httpx.Response(200, json=[])

        await run_ingestion(db, FeedStub({0: capture}), MIN_TRADE_SIZE_USD=7500)

        params = seen[0]
        assert params["limit"] == "2"
        assert params["filterType"] == "CASH"
        assert float(params["filterAmount"]) == 7500
        assert params["takerOnly"] == "true"


# =========================================
# ALERTING DURING INGESTION
# =========================================

class TestIngestionAlerts:
    """Alerts are stored once and notified once."""

    @pytest.mark.asyncio
    async def test_copyable_trade_alerts_and_notifies(self, db):
        """A ranked trader's trade produces one stored, sent alert."""
        await db.replace_rankings([ranking_row()])
        alerter, channel = create_alerter()
        feed = FeedStub({0: page_of(create_raw_trade(eventSlug="fed-march", name="whale.eth"))})

        summary = await run_ingestion(db, feed, alerter)

        assert summary.alerts_inserted == 1
        assert summary.alerts_by_type == {"copyable": 1}
        assert summary.notifications_sent == 1
        assert len(channel.sent) == 1
        assert channel.sent[0].url == "https://polymarket.com/event/fed-march"
        assert channel.sent[0].trader_name == "whale.eth"

        alerts = await db.get_recent_alerts()
        assert [(a.trade_hash, a.alert_type, a.sent) for a in alerts] == [("0xtrade1", "copyable", True)]

    @pytest.mark.asyncio
    async def test_rerun_does_not_duplicate(self, db):
        """Ingesting the same feed twice stores one trade, one alert, one notification."""
        await db.replace_rankings([ranking_row()])
        alerter, channel = create_alerter()

        first = await run_ingestion(db, FeedStub({0: page_of(create_raw_trade())}), alerter)
        # The post-run stage rebuilt the snapshot from local trades; put the trader back on top
        await db.replace_rankings([ranking_row()])
        second = await run_ingestion(db, FeedStub({0: page_of(create_raw_trade())}), alerter)

        assert first.alerts_inserted == 1
        assert second.success
        assert second.alerts_inserted == 0
        assert await db.count_trades() == 1
        assert len(await db.get_recent_alerts()) == 1
        assert len(channel.sent) == 1

    @pytest.mark.asyncio
    async def test_insert_or_ignore_alone_blocks_renotify(self, db, monkeypatch):
        """Even if the pre-filters miss it, a second alert for a trade is never sent."""
        await db.replace_rankings([ranking_row()])
        alerter, channel = create_alerter()
        await run_ingestion(db, FeedStub({0: page_of(create_raw_trade())}), alerter)

        async def nothing(*args, **kwargs):
            return set()

        offered = []
        insert_alerts = db.insert_alerts

        async def recording_insert(alerts):
            offered.extend(alert.trade_hash for alert in alerts)
            return await insert_alerts(alerts)

        monkeypatch.setattr(db, "get_alerted_hashes", nothing)
        monkeypatch.setattr(db, "get_cooldown_traders", nothing)
        monkeypatch.setattr(db, "insert_alerts", recording_insert)
        await db.replace_rankings([ranking_row()])

        second = await run_ingestion(db, FeedStub({0: page_of(create_raw_trade())}), alerter)

        assert offered == ["0xtrade1"]
        assert second.alerts_inserted == 0
        assert len(channel.sent) == 1
        assert len(await db.get_recent_alerts()) == 1

    @pytest.mark.asyncio
    async def test_hourly_ceiling_blocks_alerts(self, db):
        """Once the hour's budget is used up, nothing new is alerted."""
        earlier = WhaleAlert(
            alert_type=AlertType.COPYABLE,
            trade=create_trade(tx_hash="0xearlier", trader_address="0xsomeone"),
            message="earlier",
        )
        await db.insert_alerts([earlier])
        await db.replace_rankings([ranking_row()])
        alerter, channel = create_alerter()

        summary = await run_ingestion(
            db, FeedStub({0: page_of(create_raw_trade())}), alerter, MAX_ALERTS_PER_HOUR=1
        )

        assert summary.success
        assert summary.alerts_inserted == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_price_band_excluded(self, db):
        """Near-certain prices are counted, not alerted."""
        await db.replace_rankings([ranking_row()])
        alerter, channel = create_alerter()
        feed = FeedStub({0: page_of(create_raw_trade(price=0.97, size=20_000))})

        summary = await run_ingestion(db, feed, alerter)

        assert summary.price_excluded == 1
        assert summary.alerts_inserted == 0
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_alerts_stored_without_alerter(self, db):
        """No channels configured still stores the alert, unsent."""
        await db.replace_rankings([ranking_row()])

        summary = await run_ingestion(db, FeedStub({0: page_of(create_raw_trade())}))

        assert summary.alerts_inserted == 1
        assert summary.notifications_sent == 0
        alerts = await db.get_recent_alerts()
        assert alerts[0].sent is False
