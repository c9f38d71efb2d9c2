from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Dict, List, Optional
from datetime import datetime
from decimal import Decimal


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class TradeRequest(CamelModel):
    from_asset: str = Field(min_length=1, max_length=10)
    to_asset: str = Field(min_length=1, max_length=10)
    # Smallest units unless a unit (btc, sat, msat, ksat, asset) is given
    amount: Decimal = Field(gt=0)
    unit: Optional[str] = None


class UserCreate(CamelModel):
    username: str = Field(min_length=3, max_length=50)
    email: str = Field(max_length=255, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class UserOut(CamelModel):
    id: int
    username: str
    email: str
    is_admin: bool
    created_at: datetime


class HoldingOut(CamelModel):
    asset_symbol: str
    amount: int


class TradeOut(CamelModel):
    id: int
    from_asset: str
    to_asset: str
    from_amount: int
    to_amount: int
    btc_price_usd: Optional[Decimal] = None
    asset_price_usd: Optional[Decimal] = None
    cost_basis_sats: Optional[int] = None
    created_at: datetime


class LockStatusOut(CamelModel):
    eligible: bool
    available_amount: int
    locked_amount: int
    earliest_unlock: Optional[datetime] = None
    locked_until: Optional[datetime] = None


class TradeExecution(CamelModel):
    trade: TradeOut
    new_holdings: List[HoldingOut]
    cost_basis_sats: Optional[int] = None


class TradePreview(CamelModel):
    from_asset: str
    to_asset: str
    from_amount: int
    expected_output: int
    btc_price_usd: Decimal
    asset_price_usd: Decimal
    cost_basis_sats: Optional[int] = None
    lock_status: LockStatusOut


class LockInfo(CamelModel):
    symbol: str
    locked_amount: int
    locked_lots: int
    earliest_unlock: Optional[datetime] = None
    latest_unlock: Optional[datetime] = None
    total_amount: int
    available_amount: int


class AssetValuationOut(CamelModel):
    symbol: str
    name: str
    category: str
    amount: int
    price_usd: Optional[Decimal] = None
    value_sats: int
    cost_basis_sats: int
    locked_amount: int
    lock_status: str


class PortfolioOut(CamelModel):
    holdings: List[AssetValuationOut]
    total_value_sats: int
    total_cost_sats: int
    btc_price_usd: Optional[Decimal] = None


class PerformanceOut(CamelModel):
    baseline_sats: int
    current_value_sats: int
    percent_change: float
    cost_basis_sats: int
    unrealized_pnl_sats: int
    realized_pnl_sats: int


class AssetOut(CamelModel):
    symbol: str
    name: str
    category: str


class LedgerCheckOut(CamelModel):
    user_id: int
    consistent: bool
    expected: Dict[str, int]
    actual: Dict[str, int]
    mismatches: Dict[str, Dict[str, int]]
    oversold: Dict[int, int]
    repairable: bool
