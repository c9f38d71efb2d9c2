"""Buy/sell execution against the ledger.

Every trade is one side of a BTC pair: a buy converts sats into asset units
and opens a lot locked for 24 hours, a sell consumes unlocked lots FIFO and
converts the units back into sats. Prices are resolved before the database
transaction opens; the transaction then locks the user row, re-validates
balances and writes holdings, lots and the trade record together.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from measured_in_btc.assets import BTC, is_supported, normalize_symbol
from measured_in_btc.database import begin_write, utcnow
from measured_in_btc.errors import (
    AssetLocked, InsufficientBalance, InternalError, LedgerError, UnsupportedAsset, ValidationError,
)
from measured_in_btc.ledger import (
    LOCK_PERIOD, ConsumptionPlan, asset_units_to_sats, btc_to_asset_units, consume_fifo, split_unlocked,
)
from measured_in_btc.models import Holding, Trade
from measured_in_btc.prices import PriceOracle
from measured_in_btc.store import LedgerStore, LockSummary

logger = logging.getLogger(__name__)

BUY = "buy"
SELL = "sell"


@dataclass
class LockStatus:
    eligible: bool
    available_amount: int
    locked_amount: int
    earliest_unlock: Optional[datetime] = None
    locked_until: Optional[datetime] = None


@dataclass
class Quote:
    side: str
    from_asset: str
    to_asset: str
    from_amount: int
    to_amount: int
    btc_price_usd: Decimal
    asset_price_usd: Decimal
    lock_status: LockStatus
    cost_basis_sats: Optional[int] = None
    plan: Optional[ConsumptionPlan] = None

    @property
    def asset(self) -> str:
        return self.to_asset if self.side == BUY else self.from_asset


@dataclass
class ExecutionResult:
    trade: Trade
    quote: Quote
    holdings: List[Holding]


def classify_pair(from_asset: str, to_asset: str):
    """Return (side, non-BTC asset) for a trading pair."""
    from_asset, to_asset = normalize_symbol(from_asset), normalize_symbol(to_asset)
    if not from_asset or not to_asset:
        raise ValidationError("Both fromAsset and toAsset are required")
    for symbol in (from_asset, to_asset):
        if not is_supported(symbol):
            raise UnsupportedAsset(symbol)
    if from_asset == to_asset:
        raise ValidationError("Cannot trade asset to itself")
    if from_asset == BTC:
        return BUY, to_asset
    if to_asset == BTC:
        return SELL, from_asset
    raise ValidationError("One asset must be BTC")


class TradeEngine:
    def __init__(
        self,
        session_factory,
        oracle: PriceOracle,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = session_factory
        self._oracle = oracle
        self._clock = clock

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self._sessions() as session, session.begin():
                await begin_write(session)
                yield LedgerStore(session)
        except LedgerError:
            raise
        except SQLAlchemyError as e:
            logger.exception(f"Ledger transaction rolled back: {e}")
            raise InternalError() from e

    @asynccontextmanager
    async def _read(self):
        try:
            async with self._sessions() as session:
                yield LedgerStore(session)
        except LedgerError:
            raise
        except SQLAlchemyError as e:
            logger.exception(f"Ledger read failed: {e}")
            raise InternalError() from e

    async def _prices(self, asset: str) -> Dict[str, Decimal]:
        return await self._oracle.get_prices([BTC, asset])

    async def _quote(
        self,
        store: LedgerStore,
        user_id: int,
        side: str,
        asset: str,
        amount: int,
        prices: Dict[str, Decimal],
        now: datetime,
        allow_locked: bool = False,
    ) -> Quote:
        btc_price, asset_price = prices[BTC], prices[asset]

        if side == BUY:
            balance = await store.holding_amount(user_id, BTC)
            if balance < amount:
                raise InsufficientBalance(BTC, amount, balance)
            to_amount = btc_to_asset_units(amount, btc_price, asset_price)
            if to_amount <= 0:
                raise ValidationError(f"Amount too small to buy any {asset}")
            return Quote(
                side=BUY,
                from_asset=BTC,
                to_asset=asset,
                from_amount=amount,
                to_amount=to_amount,
                btc_price_usd=btc_price,
                asset_price_usd=asset_price,
                lock_status=LockStatus(
                    eligible=True,
                    available_amount=balance,
                    locked_amount=0,
                    locked_until=now + LOCK_PERIOD,
                ),
            )

        balance = await store.holding_amount(user_id, asset)
        if balance < amount:
            raise InsufficientBalance(asset, amount, balance)

        lots = await store.open_lots(user_id, asset)
        unlocked, locked = split_unlocked(lots, now)
        lock_status = LockStatus(
            eligible=True,
            available_amount=sum(lot.remaining for lot in unlocked),
            locked_amount=sum(lot.remaining for lot in locked),
            earliest_unlock=min((lot.locked_until for lot in locked), default=None),
        )

        plan = None
        try:
            plan = consume_fifo(lots, amount, now, asset)
        except AssetLocked:
            if not allow_locked:
                raise
            lock_status.eligible = False

        to_amount = asset_units_to_sats(amount, asset_price, btc_price)
        if to_amount <= 0:
            raise ValidationError("Amount too small to receive any sats")
        return Quote(
            side=SELL,
            from_asset=asset,
            to_asset=BTC,
            from_amount=amount,
            to_amount=to_amount,
            btc_price_usd=btc_price,
            asset_price_usd=asset_price,
            lock_status=lock_status,
            cost_basis_sats=plan.cost_basis if plan is not None else None,
            plan=plan,
        )

    async def preview_trade(self, user_id: int, from_asset: str, to_asset: str, amount: int) -> Quote:
        """Quote a trade without writing anything; a locked sell is reported, not raised."""
        side, asset = classify_pair(from_asset, to_asset)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        prices = await self._prices(asset)
        async with self._read() as store:
            await store.get_user(user_id)
            return await self._quote(
                store, user_id, side, asset, amount, prices, self._clock(), allow_locked=True
            )

    async def execute_trade(self, user_id: int, from_asset: str, to_asset: str, amount: int) -> ExecutionResult:
        side, asset = classify_pair(from_asset, to_asset)
        if side == BUY:
            return await self.execute_buy(user_id, asset, amount)
        return await self.execute_sell(user_id, asset, amount)

    async def execute_buy(self, user_id: int, to_asset: str, btc_amount_sats: int) -> ExecutionResult:
        side, asset = classify_pair(BTC, to_asset)
        if btc_amount_sats <= 0:
            raise ValidationError("Amount must be positive")
        prices = await self._prices(asset)

        async with self._transaction() as store:
            await store.lock_user(user_id)
            now = self._clock()
            quote = await self._quote(store, user_id, side, asset, btc_amount_sats, prices, now)

            await store.adjust_holding(user_id, BTC, -quote.from_amount)
            await store.adjust_holding(user_id, asset, quote.to_amount)
            await store.add_purchase(
                user_id,
                asset,
                amount=quote.to_amount,
                btc_spent=quote.from_amount,
                purchase_price_usd=quote.asset_price_usd,
                btc_price_usd=quote.btc_price_usd,
                created_at=now,
                locked_until=now + LOCK_PERIOD,
            )
            trade = await store.add_trade(
                user_id,
                BTC,
                asset,
                from_amount=quote.from_amount,
                to_amount=quote.to_amount,
                btc_price_usd=quote.btc_price_usd,
                asset_price_usd=quote.asset_price_usd,
                created_at=now,
            )
            holdings = await store.list_holdings(user_id)

        logger.info(
            f"User {user_id} bought {quote.to_amount} {asset} units for {quote.from_amount} sats"
        )
        return ExecutionResult(trade=trade, quote=quote, holdings=holdings)

    async def execute_sell(self, user_id: int, from_asset: str, asset_amount: int) -> ExecutionResult:
        side, asset = classify_pair(from_asset, BTC)
        if asset_amount <= 0:
            raise ValidationError("Amount must be positive")
        prices = await self._prices(asset)

        async with self._transaction() as store:
            await store.lock_user(user_id)
            now = self._clock()
            quote = await self._quote(store, user_id, side, asset, asset_amount, prices, now)

            await store.adjust_holding(user_id, asset, -quote.from_amount)
            await store.adjust_holding(user_id, BTC, quote.to_amount)
            await store.apply_consumption(quote.plan)
            trade = await store.add_trade(
                user_id,
                asset,
                BTC,
                from_amount=quote.from_amount,
                to_amount=quote.to_amount,
                btc_price_usd=quote.btc_price_usd,
                asset_price_usd=quote.asset_price_usd,
                created_at=now,
                cost_basis_sats=quote.cost_basis_sats,
            )
            holdings = await store.list_holdings(user_id)

        logger.info(
            f"User {user_id} sold {quote.from_amount} {asset} units for {quote.to_amount} sats "
            f"(cost basis {quote.cost_basis_sats})"
        )
        return ExecutionResult(trade=trade, quote=quote, holdings=holdings)

    async def get_history(self, user_id: int, limit: int = 50) -> List[Trade]:
        async with self._read() as store:
            await store.get_user(user_id)
            return await store.list_trades(user_id, limit=limit)

    async def get_lock_info(self, user_id: int, symbol: str) -> LockSummary:
        symbol = normalize_symbol(symbol)
        if not is_supported(symbol):
            raise UnsupportedAsset(symbol)
        async with self._read() as store:
            await store.get_user(user_id)
            return await store.lock_summary(user_id, symbol, self._clock())
