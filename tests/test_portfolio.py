from decimal import Decimal

import pytest

from measured_in_btc.errors import NotFound
from measured_in_btc.portfolio import lock_status, percent_change

SHARE = 100_000_000


def by_symbol(valuation):
    return {h.symbol: h for h in valuation.holdings}


async def test_new_user_is_worth_one_bitcoin(valuator, user) -> None:
    portfolio = await valuator.get_portfolio(user.id)
    performance = await valuator.get_performance(user.id)

    assert portfolio.total_value_sats == 100_000_000
    assert by_symbol(portfolio)["BTC"].lock_status == "unlocked"
    assert performance.percent_change == 0.0
    assert performance.unrealized_pnl_sats == 0
    assert performance.realized_pnl_sats == 0


async def test_valuation_follows_asset_price(trade_engine, valuator, oracle, user) -> None:
    await trade_engine.execute_buy(user.id, "AAPL", 30_000_000)
    oracle.prices["AAPL"] = Decimal("300")

    portfolio = await valuator.get_portfolio(user.id)
    aapl = by_symbol(portfolio)["AAPL"]

    assert aapl.value_sats == 60_000_000
    assert aapl.cost_basis_sats == 30_000_000
    assert aapl.locked_amount == 100 * SHARE
    assert aapl.lock_status == "locked"
    assert aapl.name == "Apple Inc."
    assert portfolio.total_value_sats == 130_000_000

    performance = await valuator.get_performance(user.id)
    assert performance.current_value_sats == 130_000_000
    assert performance.percent_change == 30.0
    assert performance.cost_basis_sats == 100_000_000
    assert performance.unrealized_pnl_sats == 30_000_000


async def test_asset_without_price_is_valued_at_zero(trade_engine, valuator, oracle, user) -> None:
    await trade_engine.execute_buy(user.id, "XAU", 10_000_000)
    del oracle.prices["XAU"]

    portfolio = await valuator.get_portfolio(user.id)
    xau = by_symbol(portfolio)["XAU"]

    assert xau.price_usd is None
    assert xau.value_sats == 0
    assert portfolio.total_value_sats == 90_000_000


async def test_realized_pnl_after_partial_sell(trade_engine, valuator, oracle, user, clock) -> None:
    await trade_engine.execute_buy(user.id, "AAPL", 30_000_000)
    clock.advance(hours=25)
    oracle.prices["AAPL"] = Decimal("300")
    await trade_engine.execute_sell(user.id, "AAPL", 50 * SHARE)

    performance = await valuator.get_performance(user.id)

    assert performance.realized_pnl_sats == 15_000_000
    assert performance.current_value_sats == 130_000_000
    assert performance.cost_basis_sats == 115_000_000
    assert performance.unrealized_pnl_sats == 15_000_000

    aapl = by_symbol(await valuator.get_portfolio(user.id))["AAPL"]
    assert aapl.lock_status == "unlocked"
    assert aapl.cost_basis_sats == 15_000_000


async def test_partially_locked_holding(trade_engine, valuator, user, clock) -> None:
    await trade_engine.execute_buy(user.id, "AAPL", 30_000_000)
    clock.advance(hours=25)
    await trade_engine.execute_buy(user.id, "AAPL", 15_000_000)

    aapl = by_symbol(await valuator.get_portfolio(user.id))["AAPL"]

    assert aapl.amount == 150 * SHARE
    assert aapl.locked_amount == 50 * SHARE
    assert aapl.lock_status == "partial"


async def test_unknown_user(valuator) -> None:
    with pytest.raises(NotFound):
        await valuator.get_portfolio(12345)


def test_lock_status_labels() -> None:
    assert lock_status(100, 0) == "unlocked"
    assert lock_status(100, 40) == "partial"
    assert lock_status(100, 100) == "locked"


def test_percent_change() -> None:
    assert percent_change(130_000_000, 100_000_000) == 30.0
    assert percent_change(50_000_000, 100_000_000) == -50.0
