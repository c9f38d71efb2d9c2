"""USD price lookup with a database-backed snapshot cache.

Resolution order for a symbol: fresh snapshot (younger than the cache TTL),
live fetch, stale snapshot of any age, hardcoded default. Only when all four
come up empty is ``PriceUnavailable`` raised, which never happens for BTC.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from measured_in_btc.assets import (
    BTC, DEFAULT_PRICES_USD, TROY_OUNCE_GRAMS, YAHOO_SYMBOLS, normalize_symbol,
)
from measured_in_btc.config import Settings
from measured_in_btc.database import utcnow
from measured_in_btc.errors import PriceUnavailable
from measured_in_btc.models import PriceSnapshot

logger = logging.getLogger(__name__)

GOLD = "XAU"
BTC_PRICE_RANGE = (Decimal("10000"), Decimal("500000"))
PRICE_SCALE = Decimal("0.00000001")

HEADERS = {"User-Agent": "Measured-in-Bitcoin/1.0"}


class PriceFetchError(Exception):
    """Raised when a live source returns nothing usable."""


def _to_price(value) -> Decimal:
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise PriceFetchError(f"Malformed price: {value!r}")
    if not price.is_finite() or price <= 0:
        raise PriceFetchError(f"Invalid price: {value!r}")
    return price


class PriceOracle:
    def __init__(
        self,
        session_factory,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._sessions = session_factory
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            timeout=settings.price_timeout_seconds, headers=HEADERS
        )
        self._cache_ttl = timedelta(seconds=settings.price_cache_ttl_seconds)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get_price(self, symbol: str) -> Decimal:
        symbol = normalize_symbol(symbol)

        snapshot = await self._load_snapshot(symbol)
        if snapshot is not None and utcnow() - snapshot.last_updated < self._cache_ttl:
            return Decimal(snapshot.current_price_usd)

        try:
            # Same scale as the snapshot column, so cached and live reads agree
            price = (await self.fetch_live(symbol)).quantize(PRICE_SCALE)
        except (httpx.HTTPError, PriceFetchError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Live price fetch failed for {symbol}: {e}")
        else:
            await self._store_snapshot(symbol, price)
            return price

        if snapshot is not None and snapshot.current_price_usd is not None:
            logger.info(f"Using cached {symbol} price from {snapshot.last_updated.isoformat()}")
            return Decimal(snapshot.current_price_usd)

        default = DEFAULT_PRICES_USD.get(symbol)
        if default is not None:
            logger.warning(f"Using default {symbol} price ${default}")
            return default

        raise PriceUnavailable(symbol)

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        unique = list(dict.fromkeys(normalize_symbol(s) for s in symbols))
        prices = await asyncio.gather(*(self.get_price(s) for s in unique))
        return dict(zip(unique, prices))

    async def fetch_live(self, symbol: str) -> Decimal:
        if symbol == BTC:
            return await self._fetch_bitcoin()
        if symbol == GOLD:
            return await self._fetch_gold()
        return await self._fetch_yahoo(YAHOO_SYMBOLS.get(symbol, symbol))

    async def _get_json(self, url: str, **kwargs):
        response = await self._client.get(url, **kwargs)
        if response.status_code == 429:
            raise PriceFetchError(f"Rate limited by {response.url.host}")
        response.raise_for_status()
        return response.json()

    async def _fetch_bitcoin(self) -> Decimal:
        data = await self._get_json(
            f"{self._settings.coingecko_api_url}/simple/price",
            params={"ids": "bitcoin", "vs_currencies": "usd"},
        )
        price = _to_price(data["bitcoin"]["usd"])
        low, high = BTC_PRICE_RANGE
        if not low < price < high:
            raise PriceFetchError(f"BTC price out of range: {price}")
        logger.info(f"Fetched BTC price: ${price}")
        return price

    async def _fetch_gold(self) -> Decimal:
        headers = {"x-access-token": self._settings.gold_api_key} if self._settings.gold_api_key else {}
        data = await self._get_json(self._settings.gold_api_url, headers=headers)
        # Quoted per gram; holdings are denominated in troy ounces
        price = _to_price(data["price_gram_24k"]) * TROY_OUNCE_GRAMS
        logger.info(f"Fetched XAU price: ${price}")
        return price

    async def _fetch_yahoo(self, ticker: str) -> Decimal:
        data = await self._get_json(f"{self._settings.yahoo_chart_url}/{ticker}")
        result = (data.get("chart") or {}).get("result") or []
        if not result or "meta" not in result[0]:
            raise PriceFetchError(f"Invalid response format for {ticker}")
        price = _to_price(result[0]["meta"].get("regularMarketPrice"))
        logger.info(f"Fetched {ticker} price: ${price}")
        return price

    async def _load_snapshot(self, symbol: str) -> Optional[PriceSnapshot]:
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    select(PriceSnapshot).where(PriceSnapshot.symbol == symbol)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Price cache read failed for {symbol}: {str(e)}")
            return None

    async def _store_snapshot(self, symbol: str, price: Decimal) -> None:
        try:
            async with self._sessions() as session, session.begin():
                snapshot = await session.get(PriceSnapshot, symbol)
                if snapshot is None:
                    session.add(PriceSnapshot(symbol=symbol, current_price_usd=price, last_updated=utcnow()))
                else:
                    snapshot.current_price_usd = price
                    snapshot.last_updated = utcnow()
        except SQLAlchemyError as e:
            # Advisory cache; a lost write only costs a refetch
            logger.error(f"Failed to cache price for {symbol}: {str(e)}")
