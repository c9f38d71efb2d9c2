import logging
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Depends, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from measured_in_btc.assets import ASSET_CATALOGUE
from measured_in_btc.auth import create_user, get_current_user, require_admin
from measured_in_btc.config import settings
from measured_in_btc.database import AsyncSessionLocal, begin_write, engine as db_engine, get_db, init_models
from measured_in_btc.errors import LedgerError, ValidationError
from measured_in_btc.ledger import to_smallest_units
from measured_in_btc.models import User
from measured_in_btc.portfolio import PortfolioValuator
from measured_in_btc.prices import PriceOracle
from measured_in_btc.schemas import (
    AssetOut, HoldingOut, LedgerCheckOut, LockInfo, LockStatusOut, PerformanceOut, PortfolioOut,
    TradeExecution, TradeOut, TradePreview, TradeRequest, UserCreate, UserOut,
)
from measured_in_btc.store import LedgerStore
from measured_in_btc.trading import TradeEngine

# Setup logging
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models(db_engine)
    app.state.oracle = PriceOracle(AsyncSessionLocal, settings)
    yield
    await app.state.oracle.aclose()


app = FastAPI(title="Measured in Bitcoin API", lifespan=lifespan)

# CORS Management
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Malformed bodies and parameters share the ledger's validation_error shape
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    error = ValidationError(f"Invalid {field or 'request'}: {first.get('msg', 'malformed request')}", field=field)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def get_sessions():
    return AsyncSessionLocal


def get_price_oracle(request: Request) -> PriceOracle:
    return request.app.state.oracle


def get_trade_engine(
    sessions=Depends(get_sessions), oracle: PriceOracle = Depends(get_price_oracle)
) -> TradeEngine:
    return TradeEngine(sessions, oracle)


def get_valuator(
    sessions=Depends(get_sessions), oracle: PriceOracle = Depends(get_price_oracle)
) -> PortfolioValuator:
    return PortfolioValuator(sessions, oracle)


def request_amount(body: TradeRequest) -> int:
    return to_smallest_units(body.amount, body.unit)


@app.post("/users", response_model=UserOut, status_code=201)
async def register_user(body: UserCreate, db: AsyncSession = Depends(get_db)):
    try:
        return UserOut.model_validate(await create_user(db, body.username, body.email))
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error creating user: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/assets", response_model=List[AssetOut])
async def list_assets():
    return [
        AssetOut(symbol=symbol, name=name, category=category)
        for symbol, (name, category) in ASSET_CATALOGUE.items()
    ]


@app.post("/trades/execute", response_model=TradeExecution)
async def execute_trade(
    body: TradeRequest,
    user: User = Depends(get_current_user),
    engine: TradeEngine = Depends(get_trade_engine),
):
    try:
        amount = request_amount(body)
        result = await engine.execute_trade(user.id, body.from_asset, body.to_asset, amount)
        return TradeExecution(
            trade=TradeOut.model_validate(result.trade),
            new_holdings=[HoldingOut.model_validate(h) for h in result.holdings],
            cost_basis_sats=result.quote.cost_basis_sats,
        )
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error executing trade: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/trades/preview", response_model=TradePreview)
async def preview_trade(
    body: TradeRequest,
    user: User = Depends(get_current_user),
    engine: TradeEngine = Depends(get_trade_engine),
):
    try:
        amount = request_amount(body)
        quote = await engine.preview_trade(user.id, body.from_asset, body.to_asset, amount)
        return TradePreview(
            from_asset=quote.from_asset,
            to_asset=quote.to_asset,
            from_amount=quote.from_amount,
            expected_output=quote.to_amount,
            btc_price_usd=quote.btc_price_usd,
            asset_price_usd=quote.asset_price_usd,
            cost_basis_sats=quote.cost_basis_sats,
            lock_status=LockStatusOut.model_validate(quote.lock_status),
        )
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error previewing trade: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/trades/history", response_model=List[TradeOut])
async def trade_history(
    limit: int = Query(50, ge=1, le=500),
    user: User = Depends(get_current_user),
    engine: TradeEngine = Depends(get_trade_engine),
):
    trades = await engine.get_history(user.id, limit=limit)
    return [TradeOut.model_validate(t) for t in trades]


@app.get("/trades/lock-info/{symbol}", response_model=LockInfo)
async def lock_info(
    symbol: str,
    user: User = Depends(get_current_user),
    engine: TradeEngine = Depends(get_trade_engine),
):
    return LockInfo.model_validate(await engine.get_lock_info(user.id, symbol))


@app.get("/portfolio", response_model=PortfolioOut)
async def get_portfolio(
    user: User = Depends(get_current_user),
    valuator: PortfolioValuator = Depends(get_valuator),
):
    try:
        return PortfolioOut.model_validate(await valuator.get_portfolio(user.id))
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error valuing portfolio: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/portfolio/performance", response_model=PerformanceOut)
async def get_performance(
    user: User = Depends(get_current_user),
    valuator: PortfolioValuator = Depends(get_valuator),
):
    try:
        return PerformanceOut.model_validate(await valuator.get_performance(user.id))
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error computing performance: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")


@app.get("/admin/users", response_model=List[UserOut])
async def admin_list_users(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(User).order_by(User.id))
    return [UserOut.model_validate(u) for u in result.scalars().all()]


@app.get("/admin/users/{user_id}/verify", response_model=LedgerCheckOut)
async def admin_verify_user(
    user_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return LedgerCheckOut.model_validate(await LedgerStore(db).verify_user(user_id))


@app.post("/admin/users/{user_id}/rebuild", response_model=LedgerCheckOut)
async def admin_rebuild_user(
    user_id: int,
    admin: User = Depends(require_admin),
    sessions=Depends(get_sessions),
):
    try:
        async with sessions() as session, session.begin():
            await begin_write(session)
            check = await LedgerStore(session).rebuild_user(user_id)
    except LedgerError:
        raise
    except Exception as e:
        logger.error(f"Error rebuilding ledger for user {user_id}: {str(e)}")
        raise HTTPException(status_code=500, detail="Internal server error")
    logger.info(f"Admin {admin.id} rebuilt ledger for user {user_id}")
    return LedgerCheckOut.model_validate(check)
