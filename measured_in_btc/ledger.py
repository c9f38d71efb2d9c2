"""Integer ledger arithmetic: price conversion, FIFO lot consumption, replay.

Nothing in here touches the database. Amounts are always ints in smallest
units (sats for BTC, 1e-8 share for everything else); USD prices are
Decimals and every ratio is evaluated exactly with Fraction before flooring.
"""

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from fractions import Fraction
from typing import Dict, Iterable, List, Optional, Tuple

from measured_in_btc.assets import (
    BTC, LOCK_PERIOD_HOURS, SATS_PER_BTC, STARTING_BALANCE_SATS, UNITS_PER_ASSET,
)
from measured_in_btc.errors import AssetLocked, InsufficientBalance, ValidationError

LOCK_PERIOD = timedelta(hours=LOCK_PERIOD_HOURS)

UNIT_MULTIPLIERS: Dict[str, Fraction] = {
    "sat": Fraction(1),
    "msat": Fraction(1, 1000),
    "ksat": Fraction(1000),
    "btc": Fraction(SATS_PER_BTC),
    "asset": Fraction(UNITS_PER_ASSET),
}


def _positive_price(price: Decimal, label: str) -> Fraction:
    value = Fraction(price)
    if value <= 0:
        raise ValidationError(f"Invalid {label} price: {price}")
    return value


def btc_to_asset_units(sats: int, btc_price: Decimal, asset_price: Decimal) -> int:
    """floor(sats * btc_price / asset_price)."""
    return math.floor(
        sats * _positive_price(btc_price, "BTC") / _positive_price(asset_price, "asset")
    )


def asset_units_to_sats(units: int, asset_price: Decimal, btc_price: Decimal) -> int:
    """floor(units * asset_price / btc_price)."""
    return math.floor(
        units * _positive_price(asset_price, "asset") / _positive_price(btc_price, "BTC")
    )


def to_smallest_units(amount, unit: Optional[str] = None) -> int:
    """Convert a user-entered amount into integer smallest units, rounding down.

    Without a unit the amount is taken to be in smallest units already and must
    be integral.
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount}")

    if unit is None:
        if value != value.to_integral_value():
            raise ValidationError("Amount must be a whole number of smallest units")
        units = int(value)
    else:
        multiplier = UNIT_MULTIPLIERS.get(unit.lower())
        if multiplier is None:
            raise ValidationError(f"Invalid unit: {unit}")
        units = math.floor(Fraction(value) * multiplier)

    if units <= 0:
        raise ValidationError("Amount must be positive")
    return units


@dataclass
class Lot:
    id: Optional[int]
    asset_symbol: str
    amount: int
    remaining: int
    btc_spent: int
    locked_until: datetime
    created_at: datetime

    @property
    def consumed(self) -> int:
        return self.amount - self.remaining

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until > now


@dataclass
class LotSlice:
    lot: Lot
    consumed: int
    cost_basis: int
    remaining_after: int


@dataclass
class ConsumptionPlan:
    slices: List[LotSlice] = field(default_factory=list)

    @property
    def amount(self) -> int:
        return sum(s.consumed for s in self.slices)

    @property
    def cost_basis(self) -> int:
        return sum(s.cost_basis for s in self.slices)


def cost_of_consumed(lot: Lot, consumed_total: int) -> int:
    """Cost basis attributed to the first ``consumed_total`` units of a lot."""
    if lot.amount <= 0:
        return 0
    return math.floor(Fraction(consumed_total * lot.btc_spent, lot.amount))


def remaining_cost(lot: Lot) -> int:
    return lot.btc_spent - cost_of_consumed(lot, lot.consumed)


def slice_cost(lot: Lot, take: int) -> int:
    # Telescoping difference: the slices of one lot always add up to btc_spent
    return cost_of_consumed(lot, lot.consumed + take) - cost_of_consumed(lot, lot.consumed)


def fifo_order(lots: Iterable[Lot]) -> List[Lot]:
    return sorted(lots, key=lambda lot: (lot.created_at, lot.id or 0))


def split_unlocked(lots: Iterable[Lot], now: datetime) -> Tuple[List[Lot], List[Lot]]:
    """Partition open lots into (unlocked, locked), both in FIFO order."""
    unlocked, locked = [], []
    for lot in fifo_order(lots):
        if lot.remaining <= 0:
            continue
        (locked if lot.is_locked(now) else unlocked).append(lot)
    return unlocked, locked


def consume_fifo(
    lots: Iterable[Lot], amount: int, now: datetime, symbol: str = ""
) -> ConsumptionPlan:
    """Plan the consumption of ``amount`` units from the oldest unlocked lots.

    Locked lots are never touched, whatever their position in the queue. The
    lots themselves are not modified; apply the plan with ``apply_plan``.
    """
    if amount <= 0:
        raise ValidationError("Amount must be positive")

    lots = list(lots)
    unlocked, locked = split_unlocked(lots, now)
    available = sum(lot.remaining for lot in unlocked)
    locked_amount = sum(lot.remaining for lot in locked)
    symbol = symbol or (lots[0].asset_symbol if lots else "")

    if available + locked_amount < amount:
        raise InsufficientBalance(symbol, amount, available + locked_amount)
    if available < amount:
        earliest = min(lot.locked_until for lot in locked)
        raise AssetLocked(
            symbol,
            requested=amount,
            available=available,
            locked=locked_amount,
            earliest_unlock=earliest,
            remaining_seconds=max(0, math.ceil((earliest - now).total_seconds())),
        )

    plan = ConsumptionPlan()
    queue = deque(unlocked)
    outstanding = amount
    while outstanding > 0:
        lot = queue.popleft()
        take = min(lot.remaining, outstanding)
        plan.slices.append(
            LotSlice(
                lot=lot,
                consumed=take,
                cost_basis=slice_cost(lot, take),
                remaining_after=lot.remaining - take,
            )
        )
        outstanding -= take
    return plan


def apply_plan(plan: ConsumptionPlan) -> None:
    for s in plan.slices:
        s.lot.remaining = s.remaining_after


@dataclass
class TradeRecord:
    from_asset: str
    to_asset: str
    from_amount: int
    to_amount: int
    created_at: datetime
    id: Optional[int] = None


@dataclass
class ReplayResult:
    holdings: Dict[str, int]
    lots: List[Lot]
    cost_basis: Dict[int, int]
    # Sells that exceeded the replayed lots: trade key -> units missing
    oversold: Dict[int, int] = field(default_factory=dict)


def replay_trades(
    trades: Iterable[TradeRecord],
    starting_sats: int = STARTING_BALANCE_SATS,
) -> ReplayResult:
    """Rebuild holdings and lots from the trade history.

    Lots are recreated from buy trades with ``locked_until`` derived from the
    trade time; sells consume them FIFO. Historical sells were already
    validated against the lock, so replay does not enforce it again.

    A corrupt log is replayed as far as it goes: a sell larger than the open
    lots consumes what is there and the shortfall is reported in ``oversold``.
    Holdings may then come out negative.
    """
    holdings: Dict[str, int] = {BTC: starting_sats}
    open_lots: Dict[str, List[Lot]] = {}
    all_lots: List[Lot] = []
    cost_basis: Dict[int, int] = {}
    oversold: Dict[int, int] = {}

    ordered = sorted(trades, key=lambda t: (t.created_at, t.id or 0))
    for index, trade in enumerate(ordered):
        holdings[trade.from_asset] = holdings.get(trade.from_asset, 0) - trade.from_amount
        holdings[trade.to_asset] = holdings.get(trade.to_asset, 0) + trade.to_amount
        key = trade.id if trade.id is not None else index

        if trade.from_asset == BTC:
            lot = Lot(
                id=None,
                asset_symbol=trade.to_asset,
                amount=trade.to_amount,
                remaining=trade.to_amount,
                btc_spent=trade.from_amount,
                locked_until=trade.created_at + LOCK_PERIOD,
                created_at=trade.created_at,
            )
            open_lots.setdefault(trade.to_asset, []).append(lot)
            all_lots.append(lot)
            continue

        lots = open_lots.get(trade.from_asset, [])
        covered = min(trade.from_amount, sum(lot.remaining for lot in lots))
        if covered < trade.from_amount:
            oversold[key] = trade.from_amount - covered
        if covered > 0:
            plan = consume_fifo(lots, covered, datetime.max, trade.from_asset)
            apply_plan(plan)
            cost_basis[key] = plan.cost_basis
        else:
            cost_basis[key] = 0

    return ReplayResult(holdings=holdings, lots=all_lots, cost_basis=cost_basis, oversold=oversold)
