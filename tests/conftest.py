from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from measured_in_btc.auth import create_user
from measured_in_btc.database import build_engine, build_sessionmaker, init_models
from measured_in_btc.errors import PriceUnavailable
from measured_in_btc.portfolio import PortfolioValuator
from measured_in_btc.trading import TradeEngine

START = datetime(2025, 1, 1, 12, 0, 0)


class FakeOracle:
    def __init__(self, prices):
        self.prices = dict(prices)

    async def get_price(self, symbol):
        try:
            return self.prices[symbol]
        except KeyError:
            raise PriceUnavailable(symbol)

    async def get_prices(self, symbols):
        return {symbol: await self.get_price(symbol) for symbol in symbols}


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def default_prices():
    return {"BTC": Decimal("50000"), "AAPL": Decimal("150"), "XAU": Decimal("2000")}


@pytest.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(db_engine):
    return build_sessionmaker(db_engine)


@pytest.fixture
def clock():
    return Clock(START)


@pytest.fixture
def oracle():
    return FakeOracle(default_prices())


@pytest.fixture
def trade_engine(sessions, oracle, clock):
    return TradeEngine(sessions, oracle, clock)


@pytest.fixture
def valuator(sessions, oracle, clock):
    return PortfolioValuator(sessions, oracle, clock)


@pytest.fixture
async def user(sessions):
    async with sessions() as session:
        return await create_user(session, "satoshi", "satoshi@example.com")
