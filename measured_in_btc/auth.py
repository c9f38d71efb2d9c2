"""Users, request identity and the admin check.

Login itself (magic links, sessions) happens upstream; by the time a request
reaches this API the gateway has put the authenticated user id in the
``X-User-Id`` header.
"""

import logging
from typing import AbstractSet, Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from measured_in_btc.assets import BTC, STARTING_BALANCE_SATS
from measured_in_btc.config import Settings, settings
from measured_in_btc.database import get_db, utcnow
from measured_in_btc.errors import ValidationError
from measured_in_btc.models import Holding, User

logger = logging.getLogger(__name__)


def get_settings() -> Settings:
    return settings


def is_admin(user: Optional[User], admin_emails: AbstractSet[str]) -> bool:
    """Admin if the flag is set on the user or the email is on the configured list."""
    if user is None:
        return False
    if user.is_admin:
        return True
    return bool(user.email) and user.email.strip().lower() in admin_emails


async def create_user(db: AsyncSession, username: str, email: str) -> User:
    """Insert a user with the starting 1 BTC grant and commit."""
    user = User(username=username.strip(), email=email.strip().lower(), is_admin=False, created_at=utcnow())
    db.add(user)
    try:
        await db.flush()
        db.add(Holding(user_id=user.id, asset_symbol=BTC, amount=STARTING_BALANCE_SATS))
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationError("Username or email already registered")
    logger.info(f"Created user {user.id} ({user.username}) with {STARTING_BALANCE_SATS} sats")
    return user


async def get_current_user(
    x_user_id: Optional[int] = Header(None),
    db: AsyncSession = Depends(get_db),
) -> User:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    result = await db.execute(select(User).where(User.id == x_user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


async def require_admin(
    user: User = Depends(get_current_user),
    config: Settings = Depends(get_settings),
) -> User:
    if not is_admin(user, config.admin_emails):
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
