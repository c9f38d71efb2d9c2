import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from fractions import Fraction
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from measured_in_btc.assets import ASSET_CATALOGUE, BTC, STARTING_BALANCE_SATS
from measured_in_btc.database import utcnow
from measured_in_btc.errors import InternalError, PriceUnavailable
from measured_in_btc.ledger import asset_units_to_sats, remaining_cost, split_unlocked
from measured_in_btc.prices import PriceOracle
from measured_in_btc.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass
class AssetValuation:
    symbol: str
    name: str
    category: str
    amount: int
    price_usd: Optional[Decimal]
    value_sats: int
    cost_basis_sats: int
    locked_amount: int
    lock_status: str


@dataclass
class PortfolioValuation:
    user_id: int
    holdings: List[AssetValuation] = field(default_factory=list)
    total_value_sats: int = 0
    total_cost_sats: int = 0
    btc_price_usd: Optional[Decimal] = None


@dataclass
class Performance:
    user_id: int
    baseline_sats: int
    current_value_sats: int
    percent_change: float
    cost_basis_sats: int
    unrealized_pnl_sats: int
    realized_pnl_sats: int


def lock_status(amount: int, locked_amount: int) -> str:
    if locked_amount <= 0:
        return "unlocked"
    return "locked" if locked_amount >= amount else "partial"


def percent_change(current: int, baseline: int) -> float:
    return float(Fraction(current - baseline, baseline) * 100)


class PortfolioValuator:
    """Read-only valuation of a user's holdings in sats."""

    def __init__(
        self,
        session_factory,
        oracle: PriceOracle,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = session_factory
        self._oracle = oracle
        self._clock = clock

    async def _price_or_none(self, symbol: str) -> Optional[Decimal]:
        try:
            return await self._oracle.get_price(symbol)
        except PriceUnavailable:
            logger.warning(f"No price for {symbol}; valuing holding at 0")
            return None

    async def get_portfolio(self, user_id: int) -> PortfolioValuation:
        now = self._clock()
        try:
            async with self._sessions() as session:
                store = LedgerStore(session)
                await store.get_user(user_id)
                holdings = await store.list_holdings(user_id)
                lots = await store.all_open_lots(user_id)
        except SQLAlchemyError as e:
            logger.exception(f"Portfolio read failed for user {user_id}: {e}")
            raise InternalError() from e

        btc_price = await self._oracle.get_price(BTC)
        valuation = PortfolioValuation(user_id=user_id, btc_price_usd=btc_price)

        for holding in holdings:
            symbol, amount = holding.asset_symbol, int(holding.amount)
            name, category = ASSET_CATALOGUE.get(symbol, (symbol, "Other"))

            if symbol == BTC:
                price, value, cost, locked = btc_price, amount, amount, 0
            else:
                price = await self._price_or_none(symbol)
                value = asset_units_to_sats(amount, price, btc_price) if price is not None else 0
                asset_lots = [lot for lot in lots if lot.asset_symbol == symbol]
                cost = sum(remaining_cost(lot) for lot in asset_lots)
                _, locked_lots = split_unlocked(asset_lots, now)
                locked = sum(lot.remaining for lot in locked_lots)

            valuation.holdings.append(
                AssetValuation(
                    symbol=symbol,
                    name=name,
                    category=category,
                    amount=amount,
                    price_usd=price,
                    value_sats=value,
                    cost_basis_sats=cost,
                    locked_amount=locked,
                    lock_status=lock_status(amount, locked),
                )
            )
            valuation.total_value_sats += value
            valuation.total_cost_sats += cost

        return valuation

    async def get_performance(self, user_id: int) -> Performance:
        portfolio = await self.get_portfolio(user_id)
        try:
            async with self._sessions() as session:
                realized = await LedgerStore(session).realized_pnl(user_id)
        except SQLAlchemyError as e:
            logger.exception(f"Realized P&L read failed for user {user_id}: {e}")
            raise InternalError() from e

        current = portfolio.total_value_sats
        return Performance(
            user_id=user_id,
            baseline_sats=STARTING_BALANCE_SATS,
            current_value_sats=current,
            percent_change=percent_change(current, STARTING_BALANCE_SATS),
            cost_basis_sats=portfolio.total_cost_sats,
            unrealized_pnl_sats=current - portfolio.total_cost_sats,
            realized_pnl_sats=realized,
        )

