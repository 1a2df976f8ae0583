import uuid
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import JSON, BigInteger, Boolean, Column, DateTime, Float, ForeignKey, Integer, String
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

from database import Base

CENT = Decimal("0.01")

# Transaction.type
TX_DEPOSIT = "deposit"
TX_WITHDRAWAL = "withdrawal"
TX_BET = "bet"
TX_WIN = "win"
TX_BONUS = "bonus"
TX_ADJUSTMENT = "adjustment"

# Transaction.status
TX_PENDING = "pending"
TX_COMPLETED = "completed"
TX_FAILED = "failed"
TX_CANCELLED = "cancelled"

# GameSession.status
SESSION_ACTIVE = "active"
SESSION_WON = "won"
SESSION_LOST = "lost"
SESSION_CASHED_OUT = "cashed_out"
SESSION_REFUNDED = "refunded"

# UserBonus.bonus_type
BONUS_WELCOME = "welcome"
BONUS_DEPOSIT = "deposit"
BONUS_MANUAL = "manual"
BONUS_PROMOTIONAL = "promotional"
BONUS_TYPES = (BONUS_WELCOME, BONUS_DEPOSIT, BONUS_MANUAL, BONUS_PROMOTIONAL)

GAME_MINES = "mines"
GAME_CRASH = "crash"


def to_money(value) -> Decimal:
    """Coerce ints, strings, floats and Decimals to a 2-place Decimal."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class Money(TypeDecorator):
    """KES amount stored as integer cents, exposed as Decimal('0.00')."""

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int(to_money(value) / CENT)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) * CENT).quantize(CENT)


def new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    __tablename__ = "users"
    id = Column(BigInteger, primary_key=True, index=True)  # Telegram ID
    username = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    is_suspended = Column(Boolean, default=False, nullable=False)
    registered_at = Column(DateTime(timezone=True), server_default=func.now())


class Wallet(Base):
    __tablename__ = "wallets"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), unique=True, nullable=False)
    balance = Column(Money, default=Decimal("0.00"), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), index=True, nullable=False)
    type = Column(String, nullable=False)
    amount = Column(Money, nullable=False)  # + credit, - debit
    status = Column(String, default=TX_COMPLETED, nullable=False)
    reference = Column(String, unique=True, nullable=True)
    description = Column(String, nullable=True)
    mpesa_receipt = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class GameSession(Base):
    __tablename__ = "game_sessions"
    id = Column(String(32), primary_key=True, default=new_id)
    user_id = Column(BigInteger, ForeignKey("users.id"), index=True, nullable=False)
    game_type = Column(String, nullable=False)  # 'mines', 'crash'
    bet_amount = Column(Money, nullable=False)
    multiplier = Column(Float, default=1.0, nullable=False)
    payout = Column(Money, default=Decimal("0.00"), nullable=False)
    status = Column(String, default=SESSION_ACTIVE, nullable=False, index=True)
    game_data = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    ended_at = Column(DateTime(timezone=True), nullable=True)


class WithdrawalRequest(Base):
    __tablename__ = "withdrawal_requests"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), index=True, nullable=False)
    amount = Column(Money, nullable=False)
    phone = Column(String, nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending, approved, rejected, completed
    admin_notes = Column(String, nullable=True)
    processed_by = Column(BigInteger, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class UserBonus(Base):
    __tablename__ = "user_bonuses"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(BigInteger, ForeignKey("users.id"), index=True, nullable=False)
    name = Column(String, nullable=False)
    amount = Column(Money, nullable=False)
    bonus_type = Column(String, default=BONUS_WELCOME, nullable=False)
    status = Column(String, default="pending", nullable=False)  # pending, claimed, expired
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
