"""
Trade Normalizer Module

Turns raw Data API trade records into canonical rows we can store.

Validation is EXCLUSIVE: checks run in a fixed order and the first one
that fails is the only reason counted for that record:
1. transaction hash present
2. market (condition) id present
3. trader address present
4. timestamp present and parseable
5. amount (size x price) is a finite number
6. amount >= minimum trade size

Also contains the per-page deduplicator. Postgres refuses to apply
"ON CONFLICT DO UPDATE" to the same key twice in one statement, so a page
must never carry the same tx hash twice.
"""
import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class DropReason(str, Enum):
    """Why a raw record was rejected. Order matches validation order."""
    MISSING_TX_HASH = "missing_tx_hash"
    MISSING_MARKET_ID = "missing_market_id"
    MISSING_TRADER = "missing_trader"
    INVALID_TIMESTAMP = "invalid_timestamp"
    INVALID_AMOUNT = "invalid_amount"
    BELOW_MINIMUM = "below_minimum"


@dataclass
class TradeRow:
    """A validated trade, ready to be upserted by tx_hash."""
    tx_hash: str
    market_id: str
    market_slug: Optional[str]
    market_title: Optional[str]
    trader_address: str
    outcome: Optional[str]
    side: Optional[TradeSide]
    size: float
    price: float
    amount: float  # USD notional = size * price
    timestamp: datetime  # naive UTC

    @property
    def effective_side(self) -> TradeSide:
        return self.side or TradeSide.BUY

    @property
    def bet_direction(self) -> str:
        """e.g. "BUY Yes @ 65c"."""
        if not self.outcome:
            return ""
        return f"{self.effective_side.value} {self.outcome} @ {round(self.price * 100)}¢"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "market_id": self.market_id,
            "market_slug": self.market_slug,
            "market_title": self.market_title,
            "trader_address": self.trader_address,
            "outcome": self.outcome,
            "side": self.side.value if self.side else None,
            "size": self.size,
            "price": self.price,
            "amount": self.amount,
            "timestamp": self.timestamp,
        }


@dataclass
class TradeMeta:
    """Display-only data kept for notification formatting (never stored)."""
    trader_name: Optional[str] = None
    event_slug: Optional[str] = None


def safe_number(value: Any) -> Optional[float]:
    """Return value as a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a trade timestamp into a naive UTC datetime.

    The Data API sends unix seconds; numeric strings and ISO-8601
    strings are accepted as well.
    """
    if value is None or value == "":
        return None
    seconds = safe_number(value)
    if seconds is not None:
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


def normalize_side(value: Any) -> Optional[TradeSide]:
    if not isinstance(value, str):
        return None
    try:
        return TradeSide(value.strip().upper())
    except ValueError:
        return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class TradeNormalizer:
    """
    Validates raw trade records for one ingestion run.

    Keeps per-reason drop counts and the tx_hash -> TradeMeta lookup
    used later when formatting notifications.

    Usage:
        normalizer = TradeNormalizer(min_trade_size=5_000)
        rows = normalizer.normalize_page(raw_trades)
    """

    def __init__(self, min_trade_size: float):
        self.min_trade_size = min_trade_size
        self.drop_counts: Counter = Counter()
        self.metadata: Dict[str, TradeMeta] = {}

    def validate(self, raw: Dict[str, Any]) -> Tuple[Optional[TradeRow], Optional[DropReason]]:
        """Return (row, None) for a valid record, or (None, reason)."""
        tx_hash = _text(raw.get("transactionHash"))
        if not tx_hash:
            return None, DropReason.MISSING_TX_HASH

        market_id = _text(raw.get("conditionId"))
        if not market_id:
            return None, DropReason.MISSING_MARKET_ID

        trader = _text(raw.get("proxyWallet"))
        if not trader:
            return None, DropReason.MISSING_TRADER

        timestamp = parse_timestamp(raw.get("timestamp"))
        if timestamp is None:
            return None, DropReason.INVALID_TIMESTAMP

        size = safe_number(raw.get("size"))
        price = safe_number(raw.get("price"))
        amount = size * price if size is not None and price is not None else None
        if amount is None or not math.isfinite(amount):
            return None, DropReason.INVALID_AMOUNT

        if amount < self.min_trade_size:
            return None, DropReason.BELOW_MINIMUM

        return TradeRow(
            tx_hash=tx_hash,
            market_id=market_id,
            market_slug=_text(raw.get("slug")),
            market_title=_text(raw.get("title")),
            trader_address=trader.lower(),
            outcome=_text(raw.get("outcome")),
            side=normalize_side(raw.get("side")),
            size=size,
            price=price,
            amount=amount,
            timestamp=timestamp,
        ), None

    def normalize(self, raw: Dict[str, Any]) -> Optional[TradeRow]:
        """Validate one record, counting its drop reason if rejected."""
        if not isinstance(raw, dict):
            self.drop_counts[DropReason.MISSING_TX_HASH.value] += 1
            return None

        tx_hash = _text(raw.get("transactionHash"))
        if tx_hash and tx_hash not in self.metadata:
            self.metadata[tx_hash] = TradeMeta(
                trader_name=_text(raw.get("name")) or _text(raw.get("pseudonym")),
                event_slug=_text(raw.get("eventSlug")),
            )

        row, reason = self.validate(raw)
        if reason is not None:
            self.drop_counts[reason.value] += 1
        return row

    def normalize_page(self, raw_trades: List[Dict[str, Any]]) -> List[TradeRow]:
        rows = []
        for raw in raw_trades:
            row = self.normalize(raw)
            if row is not None:
                rows.append(row)
        return rows


def dedupe_by_tx_hash(rows: List[TradeRow]) -> Tuple[List[TradeRow], int]:
    """
    Keep the first row for every tx_hash.

    Returns (unique_rows, duplicates_dropped).
    """
    seen = set()
    unique: List[TradeRow] = []
    for row in rows:
        if row.tx_hash in seen:
            continue
        seen.add(row.tx_hash)
        unique.append(row)
    return unique, len(rows) - len(unique)
