import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from measured_in_btc.assets import BTC, STARTING_BALANCE_SATS
from measured_in_btc.errors import InsufficientBalance, NotFound
from measured_in_btc.ledger import Lot, ConsumptionPlan, TradeRecord, replay_trades
from measured_in_btc.models import Holding, Purchase, Trade, User

logger = logging.getLogger(__name__)


def lot_from_row(row: Purchase) -> Lot:
    return Lot(
        id=row.id,
        asset_symbol=row.asset_symbol,
        amount=int(row.amount),
        remaining=int(row.remaining),
        btc_spent=int(row.btc_spent),
        locked_until=row.locked_until,
        created_at=row.created_at,
    )


@dataclass
class LockSummary:
    symbol: str
    locked_amount: int = 0
    locked_lots: int = 0
    earliest_unlock: Optional[datetime] = None
    latest_unlock: Optional[datetime] = None
    total_amount: int = 0

    @property
    def available_amount(self) -> int:
        return max(0, self.total_amount - self.locked_amount)


@dataclass
class LedgerCheck:
    user_id: int
    expected: Dict[str, int]
    actual: Dict[str, int]
    mismatches: Dict[str, Dict[str, int]] = field(default_factory=dict)
    oversold: Dict[int, int] = field(default_factory=dict)

    @property
    def consistent(self) -> bool:
        return not self.mismatches and not self.oversold

    @property
    def repairable(self) -> bool:
        """Whether the trade log replays into a valid ledger."""
        return not self.oversold and all(amount >= 0 for amount in self.expected.values())


class LedgerStore:
    """Reads and writes holdings, lots and trades through one session.

    Callers own the transaction; nothing here commits.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def lock_user(self, user_id: int) -> User:
        # Serialises every ledger write for this user until the transaction ends
        result = await self.session.execute(
            select(User).where(User.id == user_id).with_for_update()
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFound(f"User {user_id} not found", userId=user_id)
        return user

    async def get_user(self, user_id: int) -> User:
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found", userId=user_id)
        return user

    # Holdings are changed with UPDATE ... SET amount = amount + delta, so reads
    # refresh whatever the identity map already holds.
    async def get_holding(self, user_id: int, symbol: str) -> Optional[Holding]:
        result = await self.session.execute(
            select(Holding)
            .where(Holding.user_id == user_id, Holding.asset_symbol == symbol)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def holding_amount(self, user_id: int, symbol: str) -> int:
        holding = await self.get_holding(user_id, symbol)
        return int(holding.amount) if holding is not None else 0

    async def list_holdings(self, user_id: int) -> List[Holding]:
        result = await self.session.execute(
            select(Holding)
            .where(Holding.user_id == user_id)
            .order_by(Holding.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def adjust_holding(self, user_id: int, symbol: str, delta: int) -> None:
        """Add ``delta`` to a holding in SQL; a debit only applies if it is covered."""
        stmt = (
            update(Holding)
            .where(Holding.user_id == user_id, Holding.asset_symbol == symbol)
            .values(amount=Holding.amount + delta)
            .execution_options(synchronize_session=False)
        )
        if delta < 0:
            stmt = stmt.where(Holding.amount >= -delta)
        result = await self.session.execute(stmt)
        if result.rowcount == 1:
            return

        if delta < 0:
            raise InsufficientBalance(symbol, -delta, await self.holding_amount(user_id, symbol))
        self.session.add(Holding(user_id=user_id, asset_symbol=symbol, amount=delta))
        await self.session.flush()

    async def open_lots(self, user_id: int, symbol: str) -> List[Lot]:
        result = await self.session.execute(
            select(Purchase)
            .where(
                Purchase.user_id == user_id,
                Purchase.asset_symbol == symbol,
                Purchase.remaining > 0,
            )
            .order_by(Purchase.created_at, Purchase.id)
        )
        return [lot_from_row(row) for row in result.scalars().all()]

    async def all_open_lots(self, user_id: int) -> List[Lot]:
        result = await self.session.execute(
            select(Purchase)
            .where(Purchase.user_id == user_id, Purchase.remaining > 0)
            .order_by(Purchase.created_at, Purchase.id)
        )
        return [lot_from_row(row) for row in result.scalars().all()]

    async def add_purchase(
        self,
        user_id: int,
        symbol: str,
        amount: int,
        btc_spent: int,
        purchase_price_usd: Decimal,
        btc_price_usd: Decimal,
        created_at: datetime,
        locked_until: datetime,
    ) -> Purchase:
        purchase = Purchase(
            user_id=user_id,
            asset_symbol=symbol,
            amount=amount,
            remaining=amount,
            btc_spent=btc_spent,
            purchase_price_usd=purchase_price_usd,
            btc_price_usd=btc_price_usd,
            locked_until=locked_until,
            created_at=created_at,
        )
        self.session.add(purchase)
        await self.session.flush()
        return purchase

    async def apply_consumption(self, plan: ConsumptionPlan) -> None:
        for s in plan.slices:
            await self.session.execute(
                update(Purchase)
                .where(Purchase.id == s.lot.id)
                .values(remaining=s.remaining_after)
            )

    async def add_trade(
        self,
        user_id: int,
        from_asset: str,
        to_asset: str,
        from_amount: int,
        to_amount: int,
        btc_price_usd: Decimal,
        asset_price_usd: Decimal,
        created_at: datetime,
        cost_basis_sats: Optional[int] = None,
    ) -> Trade:
        trade = Trade(
            user_id=user_id,
            from_asset=from_asset,
            to_asset=to_asset,
            from_amount=from_amount,
            to_amount=to_amount,
            btc_price_usd=btc_price_usd,
            asset_price_usd=asset_price_usd,
            cost_basis_sats=cost_basis_sats,
            created_at=created_at,
        )
        self.session.add(trade)
        await self.session.flush()
        return trade

    async def list_trades(
        self, user_id: int, limit: Optional[int] = None, newest_first: bool = True
    ) -> List[Trade]:
        order = (Trade.created_at.desc(), Trade.id.desc()) if newest_first else (Trade.created_at, Trade.id)
        stmt = select(Trade).where(Trade.user_id == user_id).order_by(*order)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def realized_pnl(self, user_id: int) -> int:
        result = await self.session.execute(
            select(func.sum(Trade.to_amount - Trade.cost_basis_sats)).where(
                Trade.user_id == user_id, Trade.cost_basis_sats.is_not(None)
            )
        )
        return int(result.scalar() or 0)

    async def lock_summary(self, user_id: int, symbol: str, now: datetime) -> LockSummary:
        result = await self.session.execute(
            select(
                func.sum(Purchase.remaining).label("locked_amount"),
                func.count(Purchase.id).label("locked_lots"),
                func.min(Purchase.locked_until).label("earliest_unlock"),
                func.max(Purchase.locked_until).label("latest_unlock"),
            ).where(
                Purchase.user_id == user_id,
                Purchase.asset_symbol == symbol,
                Purchase.remaining > 0,
                Purchase.locked_until > now,
            )
        )
        row = result.first()
        return LockSummary(
            symbol=symbol,
            locked_amount=int(row.locked_amount or 0),
            locked_lots=int(row.locked_lots or 0),
            earliest_unlock=row.earliest_unlock,
            latest_unlock=row.latest_unlock,
            total_amount=await self.holding_amount(user_id, symbol),
        )

    async def _replay(self, user_id: int):
        trades = await self.list_trades(user_id, newest_first=False)
        records = [
            TradeRecord(
                id=t.id,
                from_asset=t.from_asset,
                to_asset=t.to_asset,
                from_amount=int(t.from_amount),
                to_amount=int(t.to_amount),
                created_at=t.created_at,
            )
            for t in trades
        ]
        return replay_trades(records, STARTING_BALANCE_SATS)

    async def verify_user(self, user_id: int) -> LedgerCheck:
        """Compare live holdings with the ones implied by the trade history."""
        await self.get_user(user_id)
        replay = await self._replay(user_id)
        expected = {symbol: amount for symbol, amount in replay.holdings.items() if amount != 0}
        actual = {
            h.asset_symbol: int(h.amount) for h in await self.list_holdings(user_id) if int(h.amount) != 0
        }

        check = LedgerCheck(user_id=user_id, expected=expected, actual=actual, oversold=replay.oversold)
        if replay.oversold:
            logger.error(f"Trade log for user {user_id} sells more than it bought: {replay.oversold}")
        for symbol in sorted(set(expected) | set(actual)):
            if expected.get(symbol, 0) != actual.get(symbol, 0):
                check.mismatches[symbol] = {
                    "expected": expected.get(symbol, 0),
                    "actual": actual.get(symbol, 0),
                }
        return check

    async def rebuild_user(self, user_id: int) -> LedgerCheck:
        """Replace the user's holdings and lots with the ones replayed from trades.

        Nothing is written when the trade log itself does not add up; the
        returned check then has ``repairable`` False.
        """
        await self.lock_user(user_id)
        check = await self.verify_user(user_id)
        if not check.repairable:
            logger.error(f"Not rebuilding user {user_id}: trade log is inconsistent")
            return check
        replay = await self._replay(user_id)
        trades = {t.id: t for t in await self.list_trades(user_id, newest_first=False)}

        await self.session.execute(delete(Holding).where(Holding.user_id == user_id))
        await self.session.execute(delete(Purchase).where(Purchase.user_id == user_id))
        await self.session.flush()

        for symbol, amount in replay.holdings.items():
            if amount > 0 or symbol == BTC:
                self.session.add(Holding(user_id=user_id, asset_symbol=symbol, amount=amount))

        buys = [t for t in trades.values() if t.from_asset == BTC]
        buys.sort(key=lambda t: (t.created_at, t.id))
        for lot, trade in zip(replay.lots, buys):
            self.session.add(
                Purchase(
                    user_id=user_id,
                    asset_symbol=lot.asset_symbol,
                    amount=lot.amount,
                    remaining=lot.remaining,
                    btc_spent=lot.btc_spent,
                    purchase_price_usd=trade.asset_price_usd,
                    btc_price_usd=trade.btc_price_usd,
                    locked_until=lot.locked_until,
                    created_at=lot.created_at,
                )
            )
        await self.session.flush()

        if check.consistent:
            logger.info(f"Rebuilt ledger for user {user_id}: already consistent")
        else:
            logger.warning(f"Rebuilt ledger for user {user_id}; corrected {check.mismatches}")
        return check

