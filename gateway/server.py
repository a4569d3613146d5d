"""
FastAPI gateway for the browser client. Proxies Kalshi markets, candlesticks,
positions and order placement, and mirrors filled buy orders as share mints
on the secondary chain when a ShareMinter is configured.

Errors are returned as {"error": ..., "details": ...} JSON.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Literal

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from web3 import Web3

from bridge.share_minter import ShareMinter
from client.kalshi import KalshiClient, MarketNotFound
from state.ledger import BridgeLedger

logger = logging.getLogger(__name__)

MARKET_ORDER_PRICE = 99  # cents; market orders cross at up to 99c on the chosen side
CANDLE_LOOKBACK_SEC = 7 * 24 * 60 * 60
CANDLE_DEFAULT_INTERVAL = 60  # minutes
REQUIRED_ORDER_FIELDS = ("ticker", "action", "side", "count", "type")


class OrderRequest(BaseModel):
    """POST /api/orders body. camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    ticker: str = Field(min_length=1)
    action: Literal["buy", "sell"]
    side: Literal["yes", "no"]
    count: int = Field(gt=0)
    type: Literal["market", "limit"]
    yes_price: int | None = Field(default=None, alias="yesPrice", ge=1, le=99)
    no_price: int | None = Field(default=None, alias="noPrice", ge=1, le=99)
    expiration_ts: int | None = Field(default=None, alias="expirationTs")
    sell_position_floor: int | None = Field(default=None, alias="sellPositionFloor")
    buy_max_cost: int | None = Field(default=None, alias="buyMaxCost")
    user_address: str | None = Field(default=None, alias="userAddress")

    @field_validator("yes_price", "no_price", "expiration_ts", "sell_position_floor", "buy_max_cost", mode="before")
    @classmethod
    def _falsy_to_none(cls, v: Any) -> Any:
        # The browser sends 0 / "" for unset numeric fields.
        return None if v in (0, "0", "", None) else v

    @field_validator("user_address")
    @classmethod
    def _check_address(cls, v: str | None) -> str | None:
        if v in (None, ""):
            return None
        if not Web3.is_address(v):
            raise ValueError(f"not an EVM address: {v}")
        return Web3.to_checksum_address(v)


def missing_order_fields(body: dict) -> list[str]:
    """Required fields that are absent or empty (0 counts as missing for count)."""
    return [f for f in REQUIRED_ORDER_FIELDS if not body.get(f)]


def apply_market_price(order: OrderRequest) -> OrderRequest:
    """Market orders are sent as limit-at-99 on the chosen side to guarantee a fill."""
    if order.type != "market":
        return order
    if order.side == "yes":
        return order.model_copy(update={"yes_price": MARKET_ORDER_PRICE})
    return order.model_copy(update={"no_price": MARKET_ORDER_PRICE})


def candle_window(
    now: float,
    start_ts: int | None = None,
    end_ts: int | None = None,
    period_interval: int | None = None,
) -> tuple[int, int, int]:
    """Resolve candlestick query defaults: last 7 days ending now, 60-minute buckets."""
    now_s = int(now)
    start = start_ts if start_ts else now_s - CANDLE_LOOKBACK_SEC
    end = end_ts if end_ts else now_s
    interval = period_interval if period_interval else CANDLE_DEFAULT_INTERVAL
    return start, end, interval


def filled_count(order: dict, requested: int) -> int:
    """Contracts filled according to a Kalshi order payload."""
    if order.get("fill_count") is not None:
        return int(order["fill_count"])
    if order.get("status") == "executed":
        return requested - int(order.get("remaining_count") or 0)
    return 0


def _venue_payload(e: httpx.HTTPStatusError) -> Any:
    try:
        return e.response.json()
    except ValueError:
        return e.response.text


def _error(status_code: int, error: str, details: Any = None, **extra: Any) -> JSONResponse:
    body: dict[str, Any] = {"error": error}
    if details is not None:
        body["details"] = details
    body.update(extra)
    return JSONResponse(body, status_code=status_code)


def create_app(
    venue: KalshiClient,
    minter: ShareMinter | None = None,
    ledger: BridgeLedger | None = None,
    cors_origins: str = "*",
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(title="Kalshi Deposit Bridge API", docs_url="/docs")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins.split(",") if o.strip()],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Markets ──

    @app.get("/api/markets")
    async def list_markets(
        limit: int | None = Query(None, ge=1, le=1000),
        cursor: str | None = None,
        event_ticker: str | None = None,
        series_ticker: str | None = None,
        max_close_ts: int | None = None,
        min_close_ts: int | None = None,
        status: str | None = None,
        tickers: str | None = None,
    ):
        try:
            markets = await venue.get_markets(
                limit=limit,
                cursor=cursor,
                event_ticker=event_ticker,
                series_ticker=series_ticker,
                max_close_ts=max_close_ts,
                min_close_ts=min_close_ts,
                status=status,
                tickers=tickers,
            )
        except Exception as e:
            logger.error("Error fetching markets: %s", e, exc_info=True)
            return _error(500, "Failed to fetch markets")

        markets = sorted(markets, key=lambda m: m.get("volume") or 0, reverse=True)
        return {"markets": markets}

    @app.get("/api/markets/{ticker}")
    async def get_market(ticker: str):
        try:
            market = await venue.get_market(ticker)
        except Exception as e:
            logger.error("Error fetching market %s: %s", ticker, e, exc_info=True)
            return _error(500, "Failed to fetch market")
        if not market:
            return _error(404, "Market not found")
        return {"market": market}

    @app.get("/api/markets/{ticker}/candlesticks")
    async def get_candlesticks(
        ticker: str,
        start_ts: int | None = None,
        end_ts: int | None = None,
        period_interval: int | None = None,
    ):
        start, end, interval = candle_window(clock(), start_ts, end_ts, period_interval)
        try:
            candlesticks = await venue.get_candlesticks(ticker, start, end, interval)
        except MarketNotFound as e:
            return _error(404, "Market not found", str(e))
        except Exception as e:
            details = _venue_payload(e) if isinstance(e, httpx.HTTPStatusError) else str(e)
            logger.error("Error fetching candlesticks for %s: %s (%s)", ticker, e, details)
            return _error(500, "Failed to fetch candlesticks", details)
        return {"candlesticks": candlesticks}

    # ── Orders ──

    @app.post("/api/orders")
    async def create_order(request: Request):
        try:
            body = await request.json()
        except ValueError:
            return _error(400, "Request body must be JSON")
        if not isinstance(body, dict):
            return _error(400, "Request body must be a JSON object")

        missing = missing_order_fields(body)
        if missing:
            return _error(
                400,
                "Missing required fields: ticker, action, side, count, type",
                f"missing: {', '.join(missing)}",
            )
        try:
            order_req = apply_market_price(OrderRequest.model_validate(body))
        except ValidationError as e:
            return _error(400, "Invalid order", e.errors(include_url=False, include_context=False))

        try:
            order = await venue.create_order(
                ticker=order_req.ticker,
                action=order_req.action,
                side=order_req.side,
                count=order_req.count,
                type=order_req.type,
                yes_price=order_req.yes_price,
                no_price=order_req.no_price,
                expiration_ts=order_req.expiration_ts,
                sell_position_floor=order_req.sell_position_floor,
                buy_max_cost=order_req.buy_max_cost,
            )
        except httpx.HTTPStatusError as e:
            payload = _venue_payload(e)
            logger.error(
                "Kalshi rejected order (%d): %s", e.response.status_code, payload,
            )
            details = payload.get("error") if isinstance(payload, dict) else None
            return _error(
                e.response.status_code,
                "Failed to create order",
                details or str(e),
                kalshiError=payload,
            )
        except Exception as e:
            logger.error("Error creating order: %s", e, exc_info=True)
            return _error(500, "Failed to create order", str(e))

        result: dict[str, Any] = {"order": order}
        mint = await _mirror_fill(order_req, order)
        if mint is not None:
            result["mint"] = mint
        return result

    async def _mirror_fill(order_req: OrderRequest, order: dict) -> dict | None:
        """Mint shares for a filled buy. Never fails the order request."""
        if minter is None or not order_req.user_address or order_req.action != "buy":
            return None

        count = filled_count(order, order_req.count)
        if count <= 0:
            return {"status": "skipped", "reason": "order not filled"}

        order_id = str(order.get("order_id") or "")
        if order_id and ledger is not None:
            existing = ledger.get_mint(order_id)
            if existing is not None:
                logger.info(
                    "Order %s already minted in %s", order_id, existing["tx_hash"],
                    extra={"order_id": order_id, "tx_hash": existing["tx_hash"]},
                )
                return {"status": "already_minted", "tx_hash": existing["tx_hash"]}

        try:
            tx_hash = await minter.mint_shares(order_req.user_address, order_req.side, count)
        except Exception as e:
            logger.error(
                "Mint for order %s failed: %s", order_id or "?", e,
                exc_info=True, extra={"order_id": order_id},
            )
            return {"status": "failed", "error": str(e)}

        if order_id and ledger is not None:
            try:
                ledger.record_mint(order_id, order_req.user_address, order_req.side, count, tx_hash)
            except Exception as e:
                # The shares exist on chain; only the dedup record is missing.
                logger.error(
                    "Order %s minted in %s but ledger write failed: %s", order_id, tx_hash, e,
                    exc_info=True, extra={"order_id": order_id, "tx_hash": tx_hash},
                )
        return {
            "status": "minted",
            "tx_hash": tx_hash,
            "side": order_req.side,
            "count": count,
            "network": minter.network_name,
        }

    # ── Portfolio ──

    @app.get("/api/positions")
    async def get_positions(
        ticker: str | None = None,
        event_ticker: str | None = None,
        limit: int | None = Query(None, ge=1, le=1000),
        cursor: str | None = None,
    ):
        try:
            positions = await venue.get_positions(
                ticker=ticker, event_ticker=event_ticker, limit=limit, cursor=cursor,
            )
        except Exception as e:
            logger.error("Error fetching positions: %s", e, exc_info=True)
            return _error(500, "Failed to fetch positions", str(e))
        return {"positions": [p for p in positions if (p.get("position") or 0) > 0]}

    @app.get("/api/balance")
    async def get_balance():
        try:
            balance = await venue.get_balance()
        except Exception as e:
            logger.error("Error fetching balance: %s", e, exc_info=True)
            return _error(500, "Failed to fetch balance", str(e))
        return {"balance": balance}

    # ── Shares ──

    @app.get("/api/shares/{address}")
    async def get_share_balance(address: str, side: Literal["yes", "no"] = "yes"):
        if minter is None:
            return _error(503, "Share minting is not configured")
        if not Web3.is_address(address):
            return _error(400, "Invalid address", address)
        try:
            balance = await minter.get_share_balance(address, side)
        except Exception as e:
            logger.error("Error reading %s share balance for %s: %s", side, address, e)
            return _error(500, "Failed to fetch share balance", str(e))
        return {"address": Web3.to_checksum_address(address), "side": side, "balance": str(balance)}

    # ── Health ──

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def build_server(app: FastAPI, host: str = "0.0.0.0", port: int = 3001):
    """uvicorn server to run on the current event loop via `await server.serve()`."""
    import uvicorn

    config = uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
    logger.info("API server starting at http://%s:%d", host, port)
    return uvicorn.Server(config)
