"""
Shared fixtures and factories for the test suite.

- create_trade: a validated TradeRow
- create_raw_trade: a Data API trade record, as the feed sends it
- create_ranking: a trader leaderboard entry
- db: a fresh SQLite database per test
"""
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from whale_sonar.config import Settings
from whale_sonar.database import Database, TraderRankingRecord
from whale_sonar.normalizer import TradeRow, TradeSide


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_trade(
    tx_hash: str = "0xtrade1",
    market_id: str = "0xmarket1",
    trader_address: str = "0xtrader1",
    outcome: str = "Yes",
    side: Optional[TradeSide] = TradeSide.BUY,
    price: float = 0.5,
    amount: float = 10000.0,
    market_slug: str = "will-it-happen",
    market_title: str = "Will it happen?",
    timestamp: datetime = None,
) -> TradeRow:
    """Factory function to create validated trade rows."""
    return TradeRow(
        tx_hash=tx_hash,
        market_id=market_id,
        market_slug=market_slug,
        market_title=market_title,
        trader_address=trader_address,
        outcome=outcome,
        side=side,
        size=amount / price,
        price=price,
        amount=amount,
        timestamp=timestamp or utcnow(),
    )


def create_raw_trade(
    tx_hash: Optional[str] = "0xtrade1",
    condition_id: Optional[str] = "0xmarket1",
    wallet: Optional[str] = "0xTRADER1",
    size: float = 20000,
    price: float = 0.5,
    timestamp=None,
    side: str = "BUY",
    outcome: str = "Yes",
    slug: str = "will-it-happen",
    title: str = "Will it happen?",
    **extra,
) -> dict:
    """Factory function to create raw Data API trade records."""
    raw = {
        "transactionHash": tx_hash,
        "conditionId": condition_id,
        "proxyWallet": wallet,
        "size": size,
        "price": price,
        "timestamp": int(time.time()) if timestamp is None else timestamp,
        "side": side,
        "outcome": outcome,
        "slug": slug,
        "title": title,
    }
    raw.update(extra)
    return raw


def create_ranking(
    trader_address: str = "0xtrader1",
    rank: int = 1,
    roi: float = 0.25,
    realized_pnl: float = 50000.0,
    median_bet: float = 5000.0,
    wins: int = 12,
    losses: int = 4,
    computed_at: datetime = None,
) -> TraderRankingRecord:
    """Factory function to create ranking snapshot entries."""
    return TraderRankingRecord(
        trader_address=trader_address,
        rank=rank,
        roi=roi,
        realized_pnl=realized_pnl,
        median_bet=median_bet,
        wins=wins,
        losses=losses,
        computed_at=computed_at or utcnow(),
    )


def ranking_row(**kwargs) -> dict:
    """Same as create_ranking, as a dict for Database.replace_rankings."""
    record = create_ranking(**kwargs)
    return {
        "trader_address": record.trader_address,
        "rank": record.rank,
        "roi": record.roi,
        "realized_pnl": record.realized_pnl,
        "median_bet": record.median_bet,
        "wins": record.wins,
        "losses": record.losses,
        "computed_at": record.computed_at,
    }


def make_settings(**overrides) -> Settings:
    """Settings isolated from any local .env file."""
    values = {
        "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
        "TELEGRAM_BOT_TOKEN": None,
        "TELEGRAM_CHAT_ID": None,
        "ENABLE_SCHEDULER": False,
        "RESOLUTION_BATCH_DELAY_SECONDS": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def hours_ago():
    def _hours_ago(hours: float) -> datetime:
        return utcnow() - timedelta(hours=hours)
    return _hours_ago
