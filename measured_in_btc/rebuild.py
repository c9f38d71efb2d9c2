"""Rebuild holdings and purchase lots from the trade history.

    python -m measured_in_btc.rebuild --user-id 42 --dry-run
    python -m measured_in_btc.rebuild            # every user
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from sqlalchemy import select

from measured_in_btc.database import AsyncSessionLocal, begin_write
from measured_in_btc.errors import LedgerError
from measured_in_btc.models import User
from measured_in_btc.store import LedgerCheck, LedgerStore

logger = logging.getLogger("measured_in_btc.rebuild")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Recompute holdings and purchase lots by replaying trades",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--user-id",
        type=int,
        default=None,
        help="Only rebuild this user (default: all users)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report mismatches without writing anything",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    return parser.parse_args(argv)


async def rebuild(session_factory, user_ids: Optional[List[int]], dry_run: bool) -> List[LedgerCheck]:
    if user_ids is None:
        async with session_factory() as session:
            result = await session.execute(select(User.id).order_by(User.id))
            user_ids = list(result.scalars().all())

    checks = []
    for user_id in user_ids:
        async with session_factory() as session:
            store = LedgerStore(session)
            if dry_run:
                check = await store.verify_user(user_id)
            else:
                async with session.begin():
                    await begin_write(session)
                    check = await store.rebuild_user(user_id)
        if check.consistent:
            status = "OK"
        elif not check.repairable:
            status = f"UNREPAIRABLE oversold={check.oversold} mismatches={check.mismatches}"
        else:
            status = f"MISMATCH {check.mismatches}"
        logger.info(f"User {user_id}: {status}")
        checks.append(check)
    return checks


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    user_ids = [args.user_id] if args.user_id is not None else None
    try:
        checks = asyncio.run(rebuild(AsyncSessionLocal, user_ids, args.dry_run))
    except LedgerError as e:
        logger.error(f"Rebuild failed: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1

    broken = [c.user_id for c in checks if not c.consistent]
    unrepairable = [c.user_id for c in checks if not c.repairable]
    verb = "had" if args.dry_run else "corrected"
    logger.info(f"{len(checks)} users checked, {len(broken)} {verb} mismatches")
    if unrepairable:
        logger.error(f"Trade log needs manual repair for users {unrepairable}")
        return 1
    return 1 if args.dry_run and broken else 0


if __name__ == "__main__":
    sys.exit(main())
