from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index,
    Integer, Numeric, String, UniqueConstraint,
)

from measured_in_btc.database import Base, utcnow


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), nullable=False, unique=True)
    email = Column(String(255), nullable=False, unique=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Holding(Base):
    __tablename__ = "holdings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    asset_symbol = Column(String(10), nullable=False)
    amount = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "asset_symbol", name="uq_holdings_user_asset"),
        CheckConstraint("amount >= 0", name="ck_holdings_amount_non_negative"),
    )


class Purchase(Base):
    """One buy lot. Only ``remaining`` ever changes, and only downward."""

    __tablename__ = "purchases"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    asset_symbol = Column(String(10), nullable=False)
    amount = Column(BigInteger, nullable=False)
    remaining = Column(BigInteger, nullable=False)
    btc_spent = Column(BigInteger, nullable=False)
    purchase_price_usd = Column(Numeric(20, 8))
    btc_price_usd = Column(Numeric(15, 2))
    locked_until = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    # FIFO ordering and the lock queries both scan by user/asset
    __table_args__ = (
        Index("idx_purchases_user_asset_created", "user_id", "asset_symbol", "created_at"),
        Index("idx_purchases_locked_until", "locked_until"),
        CheckConstraint("remaining >= 0 AND remaining <= amount", name="ck_purchases_remaining"),
    )


class Trade(Base):
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    from_asset = Column(String(10), nullable=False)
    to_asset = Column(String(10), nullable=False)
    from_amount = Column(BigInteger, nullable=False)
    to_amount = Column(BigInteger, nullable=False)
    btc_price_usd = Column(Numeric(15, 2))
    asset_price_usd = Column(Numeric(20, 8))
    cost_basis_sats = Column(BigInteger)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_trades_user_created", "user_id", "created_at"),
    )


class PriceSnapshot(Base):
    __tablename__ = "assets"

    symbol = Column(String(10), primary_key=True)
    current_price_usd = Column(Numeric(20, 8))
    last_updated = Column(DateTime, nullable=False, default=utcnow)
