from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from measured_in_btc.config import Settings
from measured_in_btc.database import utcnow
from measured_in_btc.errors import PriceUnavailable
from measured_in_btc.models import PriceSnapshot
from measured_in_btc.prices import PriceOracle


def yahoo_body(price):
    return {"chart": {"result": [{"meta": {"regularMarketPrice": price}}]}}


class Upstream:
    """Counts requests and answers them with a fixed handler."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)


@pytest.fixture
def make_oracle(sessions):
    def build(handler, **overrides):
        upstream = Upstream(handler)
        client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        return PriceOracle(sessions, Settings(**overrides), client=client), upstream

    return build


async def seed_snapshot(sessions, symbol, price, age):
    async with sessions() as session, session.begin():
        session.add(PriceSnapshot(symbol=symbol, current_price_usd=price, last_updated=utcnow() - age))


async def test_live_price_is_cached(make_oracle) -> None:
    oracle, upstream = make_oracle(lambda request: httpx.Response(200, json=yahoo_body(189.5)))

    first = await oracle.get_price("aapl")
    second = await oracle.get_price("AAPL")

    assert first == second == Decimal("189.5")
    assert len(upstream.requests) == 1
    assert upstream.requests[0].url.path.endswith("/AAPL")
    await oracle.aclose()


async def test_expired_snapshot_is_refreshed(make_oracle, sessions) -> None:
    await seed_snapshot(sessions, "SPY", Decimal("500"), age=timedelta(minutes=10))
    oracle, upstream = make_oracle(lambda request: httpx.Response(200, json=yahoo_body(612.25)))

    assert await oracle.get_price("SPY") == Decimal("612.25")
    assert len(upstream.requests) == 1
    await oracle.aclose()


async def test_rate_limited_falls_back_to_stale_snapshot(make_oracle, sessions) -> None:
    await seed_snapshot(sessions, "AAPL", Decimal("123.45"), age=timedelta(days=3))
    oracle, upstream = make_oracle(lambda request: httpx.Response(429))

    assert await oracle.get_price("AAPL") == Decimal("123.45")
    assert len(upstream.requests) == 1
    await oracle.aclose()


async def test_bitcoin_falls_back_to_default(make_oracle) -> None:
    oracle, _ = make_oracle(lambda request: httpx.Response(503))

    assert await oracle.get_price("BTC") == Decimal("115000")
    await oracle.aclose()


async def test_bitcoin_outside_sanity_range_is_rejected(make_oracle) -> None:
    oracle, _ = make_oracle(lambda request: httpx.Response(200, json={"bitcoin": {"usd": 12}}))

    assert await oracle.get_price("BTC") == Decimal("115000")
    await oracle.aclose()


async def test_bitcoin_from_coingecko(make_oracle) -> None:
    oracle, upstream = make_oracle(lambda request: httpx.Response(200, json={"bitcoin": {"usd": 97123.45}}))

    assert await oracle.get_price("BTC") == Decimal("97123.45")
    assert upstream.requests[0].url.params["ids"] == "bitcoin"
    await oracle.aclose()


async def test_stock_falls_back_to_default_quote(make_oracle) -> None:
    oracle, upstream = make_oracle(lambda request: httpx.Response(503))

    assert await oracle.get_price("AAPL") == Decimal("175.50")
    assert await oracle.get_price("XAU") == Decimal("2700")
    assert len(upstream.requests) == 2
    await oracle.aclose()


async def test_unpriced_asset_raises(make_oracle) -> None:
    oracle, _ = make_oracle(lambda request: httpx.Response(500))

    with pytest.raises(PriceUnavailable) as excinfo:
        await oracle.get_price("QQQ")

    assert excinfo.value.status_code == 424
    await oracle.aclose()


async def test_malformed_payload_counts_as_failure(make_oracle) -> None:
    oracle, _ = make_oracle(lambda request: httpx.Response(200, json={"chart": {"result": []}}))

    with pytest.raises(PriceUnavailable):
        await oracle.get_price("VTI")
    await oracle.aclose()


async def test_gold_is_converted_from_grams_to_troy_ounces(make_oracle) -> None:
    oracle, upstream = make_oracle(
        lambda request: httpx.Response(200, json={"price_gram_24k": 64.30}),
        gold_api_key="secret",
    )

    assert await oracle.get_price("XAU") == Decimal("1999.95505")
    assert upstream.requests[0].headers["x-access-token"] == "secret"
    await oracle.aclose()


async def test_silver_uses_futures_ticker(make_oracle) -> None:
    oracle, upstream = make_oracle(lambda request: httpx.Response(200, json=yahoo_body(31.2)))

    assert await oracle.get_price("XAG") == Decimal("31.2")
    assert upstream.requests[0].url.path.rsplit("/", 1)[-1] in ("SI=F", "SI%3DF")
    await oracle.aclose()


async def test_get_prices_deduplicates(make_oracle) -> None:
    def handler(request):
        if "coingecko" in request.url.host:
            return httpx.Response(200, json={"bitcoin": {"usd": 60000}})
        return httpx.Response(200, json=yahoo_body(150))

    oracle, upstream = make_oracle(handler)

    prices = await oracle.get_prices(["BTC", "aapl", "AAPL"])

    assert prices == {"BTC": Decimal("60000"), "AAPL": Decimal("150")}
    assert len(upstream.requests) == 2
    await oracle.aclose()
