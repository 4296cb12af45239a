"""
Polymarket API Client

This module handles all communication with Polymarket's public APIs:
1. Data API (data-api.polymarket.com) - Paginated trade feed (no auth needed!)
2. Gamma API (gamma-api.polymarket.com) - Market and event descriptors

Gamma descriptors are loosely typed: fields come and go, arrays are often
JSON-encoded strings. MarketDescriptor/EventDescriptor give them an
explicit schema where every field is optional and defaulted.
"""
import httpx
import json
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator


class UpstreamError(RuntimeError):
    """Raised when Polymarket answers with an unexpected status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _decode_json_list(value: Any) -> List[Any]:
    """Gamma sends arrays like outcomePrices as '["0.65", "0.35"]'."""
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return []
    return list(value) if isinstance(value, (list, tuple)) else []


class MarketDescriptor(BaseModel):
    """A Gamma market, as far as resolution and naming are concerned."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    condition_id: Optional[str] = Field(default=None, alias="conditionId")
    slug: Optional[str] = None
    question: Optional[str] = None
    title: Optional[str] = None
    resolved: Optional[bool] = None
    closed: Optional[bool] = None
    active: Optional[bool] = None
    uma_resolution_status: Optional[str] = Field(default=None, alias="umaResolutionStatus")
    uma_resolution_statuses: List[str] = Field(default_factory=list, alias="umaResolutionStatuses")
    outcomes: List[str] = Field(default_factory=list)
    outcome_prices: List[Any] = Field(default_factory=list, alias="outcomePrices")
    winning_outcome: Optional[str] = Field(default=None, alias="winningOutcome")
    winner: Optional[str] = None
    outcome: Optional[str] = None
    resolved_at: Optional[str] = Field(default=None, alias="resolvedAt")
    closed_time: Optional[str] = Field(default=None, alias="closedTime")
    uma_end_date: Optional[str] = Field(default=None, alias="umaEndDate")

    @field_validator("outcome_prices", mode="before")
    @classmethod
    def _decode_prices(cls, value: Any) -> List[Any]:
        return _decode_json_list(value)

    @field_validator("outcomes", "uma_resolution_statuses", mode="before")
    @classmethod
    def _decode_labels(cls, value: Any) -> List[str]:
        return [str(item) for item in _decode_json_list(value) if item is not None]

    @field_validator(
        "condition_id", "slug", "question", "title", "uma_resolution_status",
        "winning_outcome", "winner", "outcome", "resolved_at", "closed_time",
        "uma_end_date", mode="before",
    )
    @classmethod
    def _coerce_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, (dict, list)):
            return None
        return str(value)

    @field_validator("resolved", "closed", "active", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> Optional[bool]:
        if value is None:
            return None
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes")
        return bool(value)

    @property
    def display_question(self) -> Optional[str]:
        return self.question or self.title


class EventDescriptor(BaseModel):
    """A Gamma event with its nested markets (e.g. every leg of a game)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    slug: Optional[str] = None
    title: Optional[str] = None
    markets: List[MarketDescriptor] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)

    @field_validator("markets", mode="before")
    @classmethod
    def _markets(cls, value: Any) -> List[Any]:
        return [item for item in _decode_json_list(value) if isinstance(item, dict)]


@dataclass
class TradePage:
    """One Data API response; status is kept so pagination can decide."""
    status_code: int
    trades: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class PolymarketClient:
    """
    Client for interacting with Polymarket's APIs.

    Usage:
        async with PolymarketClient() as client:
            page = await client.fetch_trades_page(limit=500, offset=0)
            market = await client.get_market_by_slug("will-x-happen")
    """

    def __init__(
        self,
        data_api_url: str = "https://data-api.polymarket.com",
        gamma_base_url: str = "https://gamma-api.polymarket.com",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.data_api_url = data_api_url.rstrip("/")
        self.gamma_base_url = gamma_base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Set up the HTTP client when entering async context."""
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Close the HTTP client when exiting async context."""
        await self.close()

    async def open(self) -> None:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "Accept": "application/json",
                    "User-Agent": "Mozilla/5.0 (compatible; WhaleSonar/1.0)"
                },
                follow_redirects=True,
                transport=self._transport,
            )

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def http(self) -> httpx.AsyncClient:
        """Get the HTTP client, ensuring it exists."""
        if self._http_client is None:
            raise RuntimeError(
                "PolymarketClient must be used as async context manager: "
                "async with PolymarketClient() as client: ..."
            )
        return self._http_client

    # =========================================
    # TRADE FEED
    # =========================================

    async def fetch_trades_page(
        self,
        limit: int,
        offset: int,
        min_cash: Optional[float] = None,
        taker_only: Optional[bool] = None,
    ) -> TradePage:
        """
        Fetch one page of the public trade feed.

        Does NOT raise on HTTP status: the caller decides whether a 4xx is
        end-of-data or a failure. Transport errors (timeouts, DNS, ...)
        propagate as httpx.HTTPError.
        """
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if min_cash is not None:
            params["filterType"] = "CASH"
            params["filterAmount"] = min_cash
        if taker_only is not None:
            params["takerOnly"] = "true" if taker_only else "false"

        response = await self.http.get(f"{self.data_api_url}/trades", params=params)
        if not response.is_success:
            logger.debug(f"Data API returned {response.status_code} at offset={offset}")
            return TradePage(status_code=response.status_code)

        try:
            data = response.json()
        except json.JSONDecodeError:
            logger.warning(f"Data API returned a non-JSON body at offset={offset}")
            data = []

        trades = [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []
        return TradePage(status_code=response.status_code, trades=trades)

    # =========================================
    # MARKET / EVENT DESCRIPTORS
    # =========================================

    async def _get_gamma_list(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        response = await self.http.get(f"{self.gamma_base_url}{path}", params=params)
        if response.status_code == 404:
            return []
        if not response.is_success:
            raise UpstreamError(
                f"Gamma API returned {response.status_code} for {path}",
                status_code=response.status_code,
            )
        data = response.json()
        if isinstance(data, dict):
            return [data]
        return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []

    async def get_market_by_slug(self, slug: str) -> Optional[MarketDescriptor]:
        """Look up a market by its slug; None if Gamma doesn't know it."""
        items = await self._get_gamma_list("/markets", {"slug": slug})
        return MarketDescriptor.model_validate(items[0]) if items else None

    async def get_markets_by_condition_ids(self, condition_ids: List[str]) -> List[MarketDescriptor]:
        """
        Look up markets by condition id.

        Gamma wants one condition_ids param per id (a comma-joined value
        is not accepted), so keep batches small to avoid 414s.
        """
        if not condition_ids:
            return []
        items = await self._get_gamma_list("/markets", {"condition_ids": list(condition_ids)})
        return [MarketDescriptor.model_validate(item) for item in items]

    async def get_market_by_condition_id(self, condition_id: str) -> Optional[MarketDescriptor]:
        markets = await self.get_markets_by_condition_ids([condition_id])
        for market in markets:
            if market.condition_id and market.condition_id.lower() == condition_id.lower():
                return market
        return markets[0] if markets else None

    async def get_event_by_slug(self, event_slug: str) -> Optional[EventDescriptor]:
        """Look up an event (with all of its markets) by slug."""
        items = await self._get_gamma_list("/events", {"slug": event_slug})
        return EventDescriptor.model_validate(items[0]) if items else None
