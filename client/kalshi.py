"""
Kalshi REST API v2 client. Markets, candlesticks, orders, fills, positions, balance.

Kalshi API docs: https://trading-api.readme.io/reference
Prices are passed through in cents (1-99), balances in cents. Responses are
returned as plain dicts so the gateway can hand them to the browser unchanged.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from urllib.parse import urlparse

import httpx

from client.kalshi_auth import KalshiAuth

logger = logging.getLogger(__name__)

DEFAULT_HOST = "https://api.elections.kalshi.com/trade-api/v2"
DEMO_HOST = "https://demo-api.kalshi.co/trade-api/v2"
DEFAULT_TIMEOUT = 10.0
_429_MAX_RETRIES = 3
_429_BACKOFF_SEC = 5.0
_429_JITTER_FRAC = 0.15


class MarketNotFound(LookupError):
    """Kalshi has no market with this ticker."""

    def __init__(self, ticker: str) -> None:
        super().__init__(f"Market {ticker} not found")
        self.ticker = ticker


def _clean_params(params: dict) -> dict:
    """Drop unset query parameters."""
    return {k: v for k, v in params.items() if v is not None and v != ""}


class KalshiClient:
    """
    Async Kalshi REST API v2 client.

    Every call is an independent signed request. Non-2xx responses other than
    429 raise httpx.HTTPStatusError with the venue response attached.
    """

    def __init__(
        self,
        auth: KalshiAuth,
        host: str = DEFAULT_HOST,
        demo: bool = False,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self._auth = auth
        self._host = DEMO_HOST if demo else host.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        self._rate_limited_until: dict[str, float] = {}

    @property
    def host(self) -> str:
        return self._host

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        """Make an authenticated request to Kalshi API. Retries on 429."""
        url = f"{self._host}{path}"
        # Sign with the full URL path (e.g. /trade-api/v2/markets), not the relative path.
        full_path = urlparse(url).path
        cooldown_key = f"{method}:{path}"

        now = time.time()
        blocked_until = self._rate_limited_until.get(cooldown_key, 0.0)
        if blocked_until > now:
            wait = blocked_until - now
            logger.debug(
                "Kalshi cooldown active on %s %s, sleeping %.1fs",
                method, path, wait,
            )
            await asyncio.sleep(wait)

        for attempt in range(_429_MAX_RETRIES + 1):
            headers = self._auth.sign_request(method, full_path)
            headers["Content-Type"] = "application/json"
            headers["Accept"] = "application/json"

            resp = await self._http.request(method, url, headers=headers, **kwargs)
            if resp.status_code != 429:
                self._rate_limited_until.pop(cooldown_key, None)
                resp.raise_for_status()
                return resp.json()

            # 429 Too Many Requests: back off and retry
            retry_after = 0.0
            raw_retry_after = resp.headers.get("Retry-After")
            if raw_retry_after:
                try:
                    retry_after = max(0.0, float(raw_retry_after))
                except ValueError:
                    retry_after = 0.0
            wait = max(retry_after, _429_BACKOFF_SEC * (2 ** attempt))
            wait *= 1.0 + random.uniform(-_429_JITTER_FRAC, _429_JITTER_FRAC)
            wait = max(0.5, wait)
            self._rate_limited_until[cooldown_key] = time.time() + wait
            logger.warning(
                "Kalshi 429 rate limited on %s %s (attempt %d/%d, waiting %.1fs)",
                method, path, attempt + 1, _429_MAX_RETRIES + 1, wait,
            )
            await asyncio.sleep(wait)

        # All retries exhausted
        resp.raise_for_status()
        return resp.json()  # unreachable, raise_for_status throws

    # -- Markets --

    async def get_markets(
        self,
        limit: int | None = None,
        cursor: str | None = None,
        event_ticker: str | None = None,
        series_ticker: str | None = None,
        max_close_ts: int | None = None,
        min_close_ts: int | None = None,
        status: str | None = None,
        tickers: str | None = None,
    ) -> list[dict]:
        """Fetch one page of markets matching the filters."""
        params = _clean_params({
            "limit": limit,
            "cursor": cursor,
            "event_ticker": event_ticker,
            "series_ticker": series_ticker,
            "max_close_ts": max_close_ts,
            "min_close_ts": min_close_ts,
            "status": status,
            "tickers": tickers,
        })
        data = await self._request("GET", "/markets", params=params)
        return data.get("markets") or []

    async def get_market(self, ticker: str) -> dict | None:
        """Fetch a single market. Returns None when Kalshi reports 404."""
        try:
            data = await self._request("GET", f"/markets/{ticker}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise
        return data.get("market")

    async def get_event(self, event_ticker: str) -> dict | None:
        try:
            data = await self._request("GET", f"/events/{event_ticker}")
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise
        return data.get("event")

    async def get_orderbook(self, ticker: str, depth: int | None = None) -> dict:
        """Raw orderbook: {"yes": [[price_cents, size], ...], "no": [...]}."""
        params = _clean_params({"depth": depth})
        data = await self._request("GET", f"/markets/{ticker}/orderbook", params=params)
        return data.get("orderbook") or {}

    async def get_market_candlesticks(
        self,
        event_ticker: str,
        ticker: str,
        start_ts: int,
        end_ts: int,
        period_interval: int,
    ) -> list[dict]:
        """
        Candlesticks for one market. Kalshi keys this endpoint by series, so the
        event's series ticker is looked up first (falling back to the event ticker).
        """
        event = await self.get_event(event_ticker)
        series_ticker = (event or {}).get("series_ticker") or event_ticker
        params = {
            "start_ts": start_ts,
            "end_ts": end_ts,
            "period_interval": period_interval,
        }
        data = await self._request(
            "GET", f"/series/{series_ticker}/markets/{ticker}/candlesticks", params=params,
        )
        return data.get("candlesticks") or []

    async def get_candlesticks(
        self,
        ticker: str,
        start_ts: int,
        end_ts: int,
        period_interval: int,
        event_ticker: str | None = None,
    ) -> list[dict]:
        """Candlesticks by market ticker alone. Raises MarketNotFound."""
        market = await self.get_market(ticker)
        if market is None:
            raise MarketNotFound(ticker)
        event_ticker = event_ticker or market.get("event_ticker")
        if not event_ticker:
            raise ValueError(f"Event ticker not found for market {ticker}")

        logger.debug(
            "Candlesticks %s/%s start=%d end=%d interval=%d",
            event_ticker, ticker, start_ts, end_ts, period_interval,
        )
        return await self.get_market_candlesticks(
            event_ticker, ticker, start_ts, end_ts, period_interval,
        )

    # -- Orders --

    async def create_order(
        self,
        ticker: str,
        action: str,
        side: str,
        count: int,
        type: str = "limit",
        yes_price: int | None = None,
        no_price: int | None = None,
        expiration_ts: int | None = None,
        sell_position_floor: int | None = None,
        buy_max_cost: int | None = None,
        client_order_id: str | None = None,
    ) -> dict:
        """
        Place an order on Kalshi. Returns the venue order (with order_id and fill status).

        Args:
            ticker: Market ticker
            action: "buy" or "sell"
            side: "yes" or "no"
            count: Number of contracts
            type: "limit" or "market"
            yes_price: Limit price in cents for YES side (1-99)
            no_price: Limit price in cents for NO side (1-99)
            expiration_ts: Unix timestamp for order expiry (None = GTC)
            sell_position_floor: Do not sell below this position
            buy_max_cost: Max total cost in cents for market buys
        """
        body: dict = {
            "ticker": ticker,
            "action": action,
            "side": side,
            "count": count,
            "type": type,
        }
        body.update(_clean_params({
            "yes_price": yes_price,
            "no_price": no_price,
            "expiration_ts": expiration_ts,
            "sell_position_floor": sell_position_floor,
            "buy_max_cost": buy_max_cost,
            "client_order_id": client_order_id,
        }))

        data = await self._request("POST", "/portfolio/orders", json=body)
        return data.get("order") or {}

    async def cancel_order(self, order_id: str) -> dict:
        """Cancel a single order by ID."""
        data = await self._request("DELETE", f"/portfolio/orders/{order_id}")
        return data.get("order") or {}

    async def get_orders(
        self,
        ticker: str | None = None,
        event_ticker: str | None = None,
        min_ts: int | None = None,
        max_ts: int | None = None,
        status: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> list[dict]:
        params = _clean_params({
            "ticker": ticker,
            "event_ticker": event_ticker,
            "min_ts": min_ts,
            "max_ts": max_ts,
            "status": status,
            "limit": limit,
            "cursor": cursor,
        })
        data = await self._request("GET", "/portfolio/orders", params=params)
        return data.get("orders") or []

    async def get_fills(
        self,
        ticker: str | None = None,
        order_id: str | None = None,
        min_ts: int | None = None,
        max_ts: int | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> list[dict]:
        """Executed trades for the account."""
        params = _clean_params({
            "ticker": ticker,
            "order_id": order_id,
            "min_ts": min_ts,
            "max_ts": max_ts,
            "limit": limit,
            "cursor": cursor,
        })
        data = await self._request("GET", "/portfolio/fills", params=params)
        return data.get("fills") or []

    # -- Account --

    async def get_positions(
        self,
        ticker: str | None = None,
        event_ticker: str | None = None,
        count_filter: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
    ) -> list[dict]:
        """Get current market positions."""
        params = _clean_params({
            "ticker": ticker,
            "event_ticker": event_ticker,
            "count_filter": count_filter,
            "limit": limit,
            "cursor": cursor,
        })
        data = await self._request("GET", "/portfolio/positions", params=params)
        return data.get("market_positions") or []

    async def get_balance(self) -> int:
        """Get account balance in cents."""
        data = await self._request("GET", "/portfolio/balance")
        return int(data.get("balance", 0))

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()
