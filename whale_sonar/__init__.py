"""
Whale Sonar - Source Package

This package contains:
- polymarket_client: API client for Polymarket (trade feed, markets, events)
- normalizer: Raw trade validation and per-page dedupe
- ingestion: Paginated trade ingestion runs
- whale_detector: Copyable-trader and isolated-contact alerts
- resolution / resolution_sync: Market resolution decisions and sweeps
- database: Database models and operations
- alerter: Notification channels (console, Telegram)
- scheduler: Periodic jobs
- config: Application settings
"""

from .config import settings, Settings, ConfigurationError
from .polymarket_client import PolymarketClient, MarketDescriptor, EventDescriptor, TradePage, UpstreamError
from .normalizer import TradeNormalizer, TradeRow, TradeMeta, TradeSide, DropReason, dedupe_by_tx_hash
from .whale_detector import WhaleDetector, WhaleAlert, AlertType, AlertContext, PageEvaluation
from .database import Database, TradeRecord, AlertRecord, MarketRecord, TraderRankingRecord
from .ingestion import TradeIngestor, IngestionSummary, FetchState, StageResult
from .resolution import decide_resolution, ResolutionVerdict
from .resolution_sync import ResolutionSyncer, SyncMode, SyncSummary, build_strategy
from .alerter import (
    Alerter,
    create_default_alerter,
    ConsoleAlert,
    TelegramAlert,
    AlertMessage,
    build_polymarket_url,
)

__all__ = [
    # Config
    "settings",
    "Settings",
    "ConfigurationError",
    # Polymarket
    "PolymarketClient",
    "MarketDescriptor",
    "EventDescriptor",
    "TradePage",
    "UpstreamError",
    # Normalization
    "TradeNormalizer",
    "TradeRow",
    "TradeMeta",
    "TradeSide",
    "DropReason",
    "dedupe_by_tx_hash",
    # Whale Detection
    "WhaleDetector",
    "WhaleAlert",
    "AlertType",
    "AlertContext",
    "PageEvaluation",
    # Database
    "Database",
    "TradeRecord",
    "AlertRecord",
    "MarketRecord",
    "TraderRankingRecord",
    # Ingestion
    "TradeIngestor",
    "IngestionSummary",
    "FetchState",
    "StageResult",
    # Resolution
    "decide_resolution",
    "ResolutionVerdict",
    "ResolutionSyncer",
    "SyncMode",
    "SyncSummary",
    "build_strategy",
    # Alerter
    "Alerter",
    "create_default_alerter",
    "ConsoleAlert",
    "TelegramAlert",
    "AlertMessage",
    "build_polymarket_url",
]
