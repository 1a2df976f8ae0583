import asyncio
import hashlib
import hmac
import json
import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional
from urllib.parse import parse_qsl

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

# Our modules
from bot import start_bot, stop_bot
from cashier import Cashier
from config import settings
from crash import CrashGame
from database import async_session, get_db, init_db
from errors import (
    CasinoError,
    ConcurrentModification,
    GeneratorFailure,
    InsufficientBalance,
    InvalidBetAmount,
    InvalidMove,
    InvalidStateTransition,
    LedgerError,
    NotFound,
)
from events import EventBus
from mines import MinesGame
from models import GAME_CRASH, User
from wallet import WalletLedger

logger = logging.getLogger(__name__)


# === Pydantic models (request validation) ===
class InitDataSchema(BaseModel):
    initData: str  # signed string from Telegram


class CrashBetSchema(InitDataSchema):
    amount: Decimal = Field(..., gt=0)
    auto_cashout: Optional[float] = Field(None, gt=1.0)


class MinesStartSchema(InitDataSchema):
    amount: Decimal = Field(..., gt=0)
    mines_count: int = settings.MINES_DEFAULT_COUNT


class MinesSessionSchema(InitDataSchema):
    session_id: str


class MinesRevealSchema(MinesSessionSchema):
    cell: int


class CashierSchema(InitDataSchema):
    amount: Decimal = Field(..., gt=0)
    phone: str = Field(..., min_length=9)


class BonusClaimSchema(InitDataSchema):
    bonus_id: int


class AdminActionSchema(InitDataSchema):
    notes: str = ""


class AdminAdjustSchema(InitDataSchema):
    amount: Decimal  # signed
    reason: str = Field(..., min_length=1)


class AdminBonusSchema(InitDataSchema):
    name: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    bonus_type: str = "promotional"


class PaymentCallbackSchema(BaseModel):
    reference: str
    success: bool
    receipt: Optional[str] = None
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: str = ""
    cancelled: bool = False


# === Lifecycle (startup and shutdown) ===
@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("🚀 SERVER STARTED")
    await init_db()

    bus = EventBus()
    ledger = WalletLedger(async_session, retries=settings.LEDGER_RETRIES, retry_delay=settings.LEDGER_RETRY_DELAY)
    app.state.bus = bus
    app.state.ledger = ledger
    app.state.cashier = Cashier(
        ledger,
        min_deposit=settings.MIN_DEPOSIT,
        max_deposit=settings.MAX_DEPOSIT,
        min_withdrawal=settings.MIN_WITHDRAWAL,
        welcome_bonus_enabled=settings.WELCOME_BONUS_ENABLED,
        welcome_bonus_amount=settings.WELCOME_BONUS_AMOUNT,
    )
    app.state.crash = CrashGame(
        ledger,
        bus,
        min_bet=settings.MIN_BET,
        max_bet=settings.MAX_BET,
        house_edge=settings.CRASH_HOUSE_EDGE,
        numerator=settings.CRASH_NUMERATOR,
        max_multiplier=settings.CRASH_MAX_MULTIPLIER,
        betting_seconds=settings.CRASH_BETTING_SECONDS,
        cooldown_seconds=settings.CRASH_COOLDOWN_SECONDS,
        tick_seconds=settings.CRASH_TICK_SECONDS,
        history_size=settings.CRASH_HISTORY_SIZE,
        settlement_retries=settings.CRASH_SETTLEMENT_RETRIES,
        settlement_delay=settings.CRASH_SETTLEMENT_DELAY,
    )
    app.state.mines = MinesGame(
        ledger,
        bus,
        min_bet=settings.MIN_BET,
        max_bet=settings.MAX_BET,
        grid_size=settings.MINES_GRID_SIZE,
        house_edge=settings.MINES_HOUSE_EDGE,
        max_multiplier=settings.MINES_MAX_MULTIPLIER,
    )

    # bets left riding by a crashed process go back to their owners
    await app.state.crash.recover_orphaned_sessions()
    await app.state.crash.start()

    bot_task = None
    if settings.BOT_POLLING:
        # run the bot in the background
        bot_task = asyncio.create_task(start_bot(ledger))

    yield  # the server is running here

    logger.info("🛑 SERVER STOPPED")
    await app.state.crash.stop()
    if bot_task is not None:
        bot_task.cancel()
        try:
            await bot_task
        except asyncio.CancelledError:
            pass
    await stop_bot()


app = FastAPI(lifespan=lifespan)


# === Domain errors -> HTTP ===
ERROR_STATUS = [
    (InvalidBetAmount, 400),
    (InvalidMove, 400),
    (InsufficientBalance, 402),
    (NotFound, 404),
    (InvalidStateTransition, 409),
    (ConcurrentModification, 409),
    (LedgerError, 503),
    (GeneratorFailure, 503),
]


@app.exception_handler(CasinoError)
async def casino_error_handler(request: Request, exc: CasinoError):
    status = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 400)
    if status >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})


# === SECURITY: verify data signed by Telegram ===
def validate_telegram_data(init_data: str) -> dict:
    """
    Check that the request really comes from Telegram WebApp and return the user.
    """
    if not init_data:
        raise HTTPException(status_code=400, detail="No initData")

    try:
        parsed_data = dict(parse_qsl(init_data, keep_blank_values=True, strict_parsing=True))

        # the hash Telegram sent
        hash_check = parsed_data.pop("hash")

        # sorted key=value lines
        data_check_string = "\n".join(f"{k}={v}" for k, v in sorted(parsed_data.items()))

        secret_key = hmac.new(b"WebAppData", settings.BOT_TOKEN.encode(), hashlib.sha256).digest()
        calculated_hash = hmac.new(secret_key, data_check_string.encode(), hashlib.sha256).hexdigest()

        if not hmac.compare_digest(calculated_hash, hash_check):
            raise ValueError("Invalid hash")

        user = json.loads(parsed_data["user"])
        # signed but without a usable Telegram id is still a failed login
        user["id"] = int(user["id"])
        return user

    except (ValueError, KeyError, TypeError) as e:
        logger.warning("Auth error: %s", e)
        raise HTTPException(status_code=403, detail="Auth failed")


async def current_user_id(init_data: str, db: AsyncSession) -> int:
    tg_user = validate_telegram_data(init_data)
    user = await db.get(User, tg_user["id"])
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if user.is_suspended:
        raise HTTPException(status_code=403, detail="Account suspended")
    user_id = user.id
    # end the read transaction; the ledger runs its own and SQLite allows one writer
    await db.commit()
    return user_id


async def current_admin_id(init_data: str, db: AsyncSession) -> int:
    user_id = await current_user_id(init_data, db)
    if user_id not in settings.admin_ids_list:
        raise HTTPException(status_code=403, detail="Admins only")
    return user_id


# === API: AUTH ===
@app.post("/api/login")
async def login(data: InitDataSchema, request: Request):
    tg_user = validate_telegram_data(data.initData)
    user_id = tg_user["id"]
    username = tg_user.get("username", "Player")

    # registers the user and wallet on first login
    wallet = await request.app.state.ledger.open_wallet(user_id, username)
    return {"status": "ok", "balance": str(wallet.balance), "username": username}


# === API: WALLET ===
@app.post("/api/wallet")
async def wallet_summary(data: InitDataSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    ledger: WalletLedger = request.app.state.ledger
    balance = await ledger.get_balance(user_id)
    transactions = await ledger.recent_transactions(user_id, limit=10)
    bonuses = await request.app.state.cashier.pending_bonuses(user_id)
    return {
        "balance": str(balance),
        "transactions": [
            {
                "id": tx.id,
                "type": tx.type,
                "amount": str(tx.amount),
                "status": tx.status,
                "reference": tx.reference,
                "description": tx.description,
            }
            for tx in transactions
        ],
        "bonuses": [{"id": b.id, "name": b.name, "amount": str(b.amount)} for b in bonuses],
    }


# === API: CRASH ===
@app.get("/api/crash/state")
async def crash_state(request: Request):
    return request.app.state.crash.state()


@app.post("/api/crash/bet")
async def crash_bet(data: CrashBetSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    participant = await request.app.state.crash.place_bet(user_id, data.amount, data.auto_cashout)
    balance = await request.app.state.ledger.get_balance(user_id)
    return {"bet": participant.to_dict(), "balance": str(balance)}


@app.post("/api/crash/cashout")
async def crash_cashout(data: InitDataSchema, request: Request, db: AsyncSession = Depends(get_db)):
    # the cash-out instant is taken on receipt, before any other work
    requested_at = request.app.state.crash.now()
    user_id = await current_user_id(data.initData, db)
    result = await request.app.state.crash.cashout(user_id, requested_at=requested_at)
    balance = await request.app.state.ledger.get_balance(user_id)
    return {"multiplier": result.multiplier, "payout": str(result.payout), "balance": str(balance)}


@app.websocket("/ws/crash")
async def crash_feed(websocket: WebSocket):
    await websocket.accept()
    bus: EventBus = websocket.app.state.bus
    queue = bus.subscribe()
    try:
        await websocket.send_json({"type": "state", "data": websocket.app.state.crash.state()})
        while True:
            event = await queue.get()
            if event.game == GAME_CRASH:
                await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    finally:
        bus.unsubscribe(queue)


# === API: MINES ===
@app.post("/api/mines/start")
async def mines_start(data: MinesStartSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    view = await request.app.state.mines.start(user_id, data.amount, data.mines_count)
    return view.to_dict()


@app.post("/api/mines/reveal")
async def mines_reveal(data: MinesRevealSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    view = await request.app.state.mines.reveal(user_id, data.session_id, data.cell)
    return view.to_dict()


@app.post("/api/mines/cashout")
async def mines_cashout(data: MinesSessionSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    view = await request.app.state.mines.cash_out(user_id, data.session_id)
    return view.to_dict()


@app.post("/api/mines/active")
async def mines_active(data: InitDataSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    view = await request.app.state.mines.active_game(user_id)
    return {"game": view.to_dict() if view else None}


# === API: CASHIER ===
@app.post("/api/deposit")
async def deposit(data: CashierSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    tx = await request.app.state.cashier.create_deposit(user_id, data.amount, data.phone)
    # the payment gateway is given tx.reference and reports back to /api/payments/callback
    return {"reference": tx.reference, "status": tx.status, "amount": str(tx.amount)}


@app.post("/api/withdraw")
async def withdraw(data: CashierSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    withdrawal = await request.app.state.cashier.request_withdrawal(user_id, data.amount, data.phone)
    balance = await request.app.state.ledger.get_balance(user_id)
    return {"id": withdrawal.id, "status": withdrawal.status, "balance": str(balance)}


@app.post("/api/bonus/claim")
async def claim_bonus(data: BonusClaimSchema, request: Request, db: AsyncSession = Depends(get_db)):
    user_id = await current_user_id(data.initData, db)
    bonus = await request.app.state.cashier.claim_bonus(user_id, data.bonus_id)
    balance = await request.app.state.ledger.get_balance(user_id)
    return {"bonus_id": bonus.id, "amount": str(bonus.amount), "balance": str(balance)}


@app.post("/api/payments/callback")
async def payment_callback(
    data: PaymentCallbackSchema,
    request: Request,
    x_callback_secret: str = Header(""),
):
    if not hmac.compare_digest(x_callback_secret, settings.SECRET_KEY):
        raise HTTPException(status_code=403, detail="Bad callback secret")
    cashier: Cashier = request.app.state.cashier
    if data.success:
        tx = await cashier.complete_deposit(data.reference, receipt=data.receipt, amount=data.amount)
    else:
        tx = await cashier.fail_deposit(data.reference, data.reason, cancelled=data.cancelled)
    return {"reference": tx.reference, "status": tx.status}


# === API: ADMIN ===
@app.post("/api/admin/withdrawals/{withdrawal_id}/approve")
async def approve_withdrawal(
    withdrawal_id: int, data: AdminActionSchema, request: Request, db: AsyncSession = Depends(get_db)
):
    admin_id = await current_admin_id(data.initData, db)
    withdrawal = await request.app.state.cashier.approve_withdrawal(withdrawal_id, admin_id)
    return {"id": withdrawal.id, "status": withdrawal.status}


@app.post("/api/admin/withdrawals/{withdrawal_id}/reject")
async def reject_withdrawal(
    withdrawal_id: int, data: AdminActionSchema, request: Request, db: AsyncSession = Depends(get_db)
):
    admin_id = await current_admin_id(data.initData, db)
    withdrawal = await request.app.state.cashier.reject_withdrawal(withdrawal_id, admin_id, data.notes)
    return {"id": withdrawal.id, "status": withdrawal.status}


@app.post("/api/admin/users/{user_id}/adjust")
async def adjust_balance(
    user_id: int, data: AdminAdjustSchema, request: Request, db: AsyncSession = Depends(get_db)
):
    admin_id = await current_admin_id(data.initData, db)
    balance = await request.app.state.cashier.adjust(user_id, data.amount, admin_id, data.reason)
    return {"user_id": user_id, "balance": str(balance)}


@app.post("/api/admin/users/{user_id}/bonus")
async def grant_bonus(
    user_id: int, data: AdminBonusSchema, request: Request, db: AsyncSession = Depends(get_db)
):
    await current_admin_id(data.initData, db)
    bonus = await request.app.state.cashier.grant_bonus(user_id, data.name, data.amount, data.bonus_type)
    return {"id": bonus.id, "user_id": user_id, "amount": str(bonus.amount), "status": bonus.status}


@app.post("/api/admin/users/{user_id}/suspend")
async def suspend_user(user_id: int, data: InitDataSchema, request: Request, db: AsyncSession = Depends(get_db)):
    admin_id = await current_admin_id(data.initData, db)
    user = await request.app.state.cashier.set_suspended(user_id, True, admin_id)
    return {"user_id": user.id, "is_suspended": user.is_suspended}


@app.post("/api/admin/users/{user_id}/unsuspend")
async def unsuspend_user(user_id: int, data: InitDataSchema, request: Request, db: AsyncSession = Depends(get_db)):
    admin_id = await current_admin_id(data.initData, db)
    user = await request.app.state.cashier.set_suspended(user_id, False, admin_id)
    return {"user_id": user.id, "is_suspended": user.is_suspended}


@app.get("/")
async def root():
    return {"status": "ok", "games": ["mines", "crash"]}


# === Run (locally, not through gunicorn) ===
if __name__ == "__main__":
    import uvicorn
    # 0.0.0.0 and port 8000 are the container defaults
    uvicorn.run(app, host="0.0.0.0", port=8000)
