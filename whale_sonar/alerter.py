"""
Alerter Module - Notification System

Channels:
- Console (always on, goes through the logger)
- Telegram (bot)

Sending is best-effort: a missing token, a network error or a non-2xx
answer is logged and swallowed. An alert that failed to send is still
stored.
"""
import html
import re
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple
from dataclasses import dataclass
import httpx
from loguru import logger

from .config import settings
from .normalizer import TradeMeta


# League-prefixed sports slugs, e.g. "nba-lal-bos-2025-01-05" or
# "nba-lal-bos-2025-01-05-spread-home-4pt5"
SPORTS_LEAGUES = ("nba", "nhl", "mlb", "nfl", "cbb", "cfb", "epl", "bun", "mls", "wta", "atp")
SPORTS_SLUG_RE = re.compile(
    r"^(" + "|".join(SPORTS_LEAGUES) + r")-(.+)-(\d{4}-\d{2}-\d{2})(?:-.+)?$",
    re.IGNORECASE,
)
DATE_SUFFIX_RE = re.compile(r"(-\d{4}-\d{2}-\d{2})-[a-z0-9]+$", re.IGNORECASE)


def parse_sports_slug(slug: Optional[str]) -> Optional[Tuple[str, str, str]]:
    """Return (league, teams, date) for a sports market slug, else None."""
    if not slug:
        return None
    match = SPORTS_SLUG_RE.match(slug)
    if not match:
        return None
    league, teams, date = match.groups()
    return league.lower(), teams, date


def sports_event_slug(slug: Optional[str]) -> Optional[str]:
    """The game's event slug for a sports market slug ("nba-lal-bos-2025-01-05")."""
    parsed = parse_sports_slug(slug)
    if parsed is None:
        return None
    league, teams, date = parsed
    return f"{league}-{teams}-{date}"


def build_polymarket_url(
    market_slug: Optional[str],
    event_slug: Optional[str] = None,
    web_url: str = None,
) -> Optional[str]:
    """
    Deep link for a trade's market.

    - known event slug -> {web}/event/{event_slug}
    - sports slug -> {web}/sports/{league}/games/week/1/{league}-{teams}-{date}
    - anything else -> {web}/event/{slug without a one-word suffix after its date}
    """
    web_url = (web_url or settings.POLYMARKET_WEB_URL).rstrip("/")
    if event_slug:
        return f"{web_url}/event/{event_slug}"
    if not market_slug:
        return None

    parsed = parse_sports_slug(market_slug)
    if parsed:
        league, teams, date = parsed
        return f"{web_url}/sports/{league}/games/week/1/{league}-{teams}-{date}"

    clean_slug = DATE_SUFFIX_RE.sub(r"\1", market_slug)
    return f"{web_url}/event/{clean_slug}"


def short_address(address: str) -> str:
    if not address or len(address) <= 12:
        return address or ""
    return f"{address[:6]}...{address[-4:]}"


@dataclass
class AlertMessage:
    """Standardized alert message for any channel."""
    title: str
    message: str
    alert_type: str
    trade_amount: float
    trader_address: str
    trader_name: Optional[str]
    market_title: Optional[str]
    url: Optional[str]
    timestamp: datetime

    @property
    def trader_label(self) -> str:
        return self.trader_name or short_address(self.trader_address)

    def to_plain_text(self) -> str:
        link = f"\n🔗 {self.url}" if self.url else ""
        return f"""🚨 {self.title}

{self.message}

👤 Trader: {self.trader_label}{link}"""

    def to_html(self) -> str:
        """Telegram HTML; everything that came from upstream is escaped."""
        link = f'\n🔗 <a href="{html.escape(self.url, quote=True)}">View on Polymarket</a>' if self.url else ""
        return f"""🚨 <b>{html.escape(self.title)}</b>

{html.escape(self.message)}

👤 <b>Trader:</b> {html.escape(self.trader_label)}{link}"""


class AlertChannel(ABC):
    @property
    @abstractmethod
    def name(self) -> str: pass

    @abstractmethod
    async def send(self, alert: AlertMessage) -> bool: pass

    @abstractmethod
    def is_configured(self) -> bool: pass


class ConsoleAlert(AlertChannel):
    """Log alerts."""
    @property
    def name(self) -> str: return "Console"

    async def send(self, alert: AlertMessage) -> bool:
        logger.info(f"\n{'='*60}\n{alert.to_plain_text()}\n{'='*60}")
        return True

    def is_configured(self) -> bool: return True


class TelegramAlert(AlertChannel):
    """
    Telegram bot

    Setup:
    1. Message @BotFather, send /newbot, get token
    2. Start chat with your bot
    3. Get chat ID: visit https://api.telegram.org/bot<TOKEN>/getUpdates
    4. Add to .env: TELEGRAM_BOT_TOKEN=123:ABC and TELEGRAM_CHAT_ID=12345
    """
    def __init__(
        self,
        bot_token: str = None,
        chat_id: str = None,
        api_base: str = "https://api.telegram.org",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.bot_token = bot_token or getattr(settings, 'TELEGRAM_BOT_TOKEN', None)
        self.chat_id = chat_id or getattr(settings, 'TELEGRAM_CHAT_ID', None)
        self.api_base = api_base.rstrip("/")
        self._transport = transport

    @property
    def name(self) -> str: return "Telegram"

    async def send(self, alert: AlertMessage) -> bool:
        if not self.is_configured():
            logger.debug("Telegram not configured, skipping notification")
            return False
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
                r = await client.post(
                    f"{self.api_base}/bot{self.bot_token}/sendMessage",
                    json={
                        "chat_id": self.chat_id,
                        "text": alert.to_html(),
                        "parse_mode": "HTML",
                        "disable_web_page_preview": True,
                    },
                )
            if r.is_success:
                logger.info("📱 Telegram alert sent")
                return True
            logger.warning(f"Telegram answered {r.status_code}: {r.text[:200]}")
        except httpx.HTTPError as e:
            logger.error(f"Telegram error: {e}")
        return False

    def is_configured(self) -> bool: return bool(self.bot_token and self.chat_id)


class Alerter:
    """Main alerter managing all channels."""

    def __init__(self, web_url: str = None):
        self.channels: List[AlertChannel] = []
        self.web_url = web_url

    def add_channel(self, channel: AlertChannel):
        if channel.is_configured():
            self.channels.append(channel)
            logger.info(f"✅ Alert channel added: {channel.name}")

    def get_channels(self) -> List[str]:
        return [c.name for c in self.channels]

    def build_message(self, whale_alert, meta: Optional[TradeMeta] = None) -> AlertMessage:
        trade = whale_alert.trade
        meta = meta or TradeMeta()
        alert_type = whale_alert.alert_type.value
        return AlertMessage(
            title=alert_type.replace('_', ' ').title(),
            message=whale_alert.message,
            alert_type=alert_type,
            trade_amount=trade.amount,
            trader_address=trade.trader_address,
            trader_name=meta.trader_name,
            market_title=trade.market_title,
            url=build_polymarket_url(trade.market_slug, meta.event_slug, self.web_url),
            timestamp=whale_alert.created_at,
        )

    async def dispatch(self, whale_alert, meta: Optional[TradeMeta] = None) -> Dict[str, bool]:
        """Send one alert to every channel. Never raises."""
        message = self.build_message(whale_alert, meta)

        results = {}
        for channel in self.channels:
            try:
                results[channel.name] = await channel.send(message)
            except Exception as e:
                logger.error(f"Error in {channel.name}: {e}")
                results[channel.name] = False

        success = sum(1 for v in results.values() if v)
        logger.info(f"📢 Alert sent to {success}/{len(self.channels)} channels")
        return results

    async def dispatch_all(self, whale_alerts: list, metadata: Dict[str, TradeMeta]) -> List[str]:
        """Dispatch several alerts; returns hashes delivered to at least one channel."""
        delivered = []
        for whale_alert in whale_alerts:
            results = await self.dispatch(whale_alert, metadata.get(whale_alert.trade_hash))
            if any(results.values()):
                delivered.append(whale_alert.trade_hash)
        return delivered


def create_default_alerter() -> Alerter:
    """Create alerter with all configured channels."""
    alerter = Alerter()
    alerter.add_channel(ConsoleAlert())
    alerter.add_channel(TelegramAlert())
    return alerter
