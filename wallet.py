# Every balance change: one conditional UPDATE on wallets + one transactions row, same DB transaction.
# Pass `db=` to bundle a movement with your own writes.

import asyncio
import logging
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from errors import InvalidBetAmount, LedgerError, LedgerInconsistency
from models import TX_BET, TX_COMPLETED, TX_WIN, Transaction, User, Wallet, new_id, to_money

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def move_balance(db: AsyncSession, user_id: int, delta: Decimal) -> bool:
    # negative deltas only apply while the balance covers them; False if nothing was updated
    delta = to_money(delta)
    stmt = update(Wallet).where(Wallet.user_id == user_id)
    if delta < 0:
        stmt = stmt.where(Wallet.balance >= -delta)
    stmt = stmt.values(balance=Wallet.balance + delta, updated_at=func.now())
    result = await db.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount == 1


async def _reference_applied(db: AsyncSession, reference: str) -> bool:
    result = await db.execute(
        select(Transaction.id).where(
            Transaction.reference == reference,
            Transaction.status == TX_COMPLETED,
        )
    )
    return result.first() is not None


class WalletLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        retries: int = 3,
        retry_delay: float = 0.05,
    ) -> None:
        self._session_factory = session_factory
        self._retries = retries
        self._retry_delay = retry_delay

    async def run(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run `work(db)` in one transaction; transient OperationalErrors are retried, then LedgerError."""
        attempt = 0
        while True:
            try:
                async with self._session_factory() as db:
                    async with db.begin():
                        return await work(db)
            except OperationalError as e:
                attempt += 1
                if attempt > self._retries:
                    logger.critical("Ledger unavailable after %s attempts: %s", attempt, e)
                    raise LedgerError("Wallet service unavailable, please try again.") from e
                logger.warning("Ledger transaction failed (attempt %s), retrying: %s", attempt, e)
                await asyncio.sleep(self._retry_delay * attempt)

    # === Accounts ===

    async def open_wallet(self, user_id: int, username: Optional[str] = None) -> Wallet:
        async def work(db: AsyncSession) -> Wallet:
            user = await db.get(User, user_id)
            if user is None:
                db.add(User(id=user_id, username=username))
            wallet = await self._get_wallet(db, user_id)
            if wallet is None:
                wallet = Wallet(user_id=user_id, balance=Decimal("0.00"))
                db.add(wallet)
                await db.flush()
                logger.info("Opened wallet for user %s", user_id)
            return wallet

        try:
            return await self.run(work)
        except IntegrityError:
            # lost a race with a concurrent first login; the other one created it
            return await self.run(lambda db: self._get_wallet(db, user_id))

    async def get_wallet(self, user_id: int) -> Optional[Wallet]:
        async with self._session_factory() as db:
            return await self._get_wallet(db, user_id)

    async def get_balance(self, user_id: int) -> Decimal:
        wallet = await self.get_wallet(user_id)
        return wallet.balance if wallet else Decimal("0.00")

    async def recent_transactions(self, user_id: int, limit: int = 10) -> List[Transaction]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Transaction)
                .where(Transaction.user_id == user_id)
                .order_by(Transaction.id.desc())
                .limit(limit)
            )
            return list(result.scalars())

    @staticmethod
    async def _get_wallet(db: AsyncSession, user_id: int) -> Optional[Wallet]:
        result = await db.execute(select(Wallet).where(Wallet.user_id == user_id))
        return result.scalar_one_or_none()

    # === Movements ===

    async def debit(
        self,
        user_id: int,
        amount,
        *,
        tx_type: str = TX_BET,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> bool:
        """Take `amount` out of the wallet. False (and no change) if it does not cover it."""
        return await self._post(user_id, -self._positive(amount), tx_type, description, reference, db)

    async def credit(
        self,
        user_id: int,
        amount,
        *,
        tx_type: str = TX_WIN,
        description: Optional[str] = None,
        reference: Optional[str] = None,
        db: Optional[AsyncSession] = None,
    ) -> bool:
        """Add `amount` to the wallet. Storage failures raise LedgerError, never return False."""
        applied = await self._post(user_id, self._positive(amount), tx_type, description, reference, db)
        if not applied:
            logger.critical("Credit of %s for user %s found no wallet", amount, user_id)
            raise LedgerError(f"No wallet for user {user_id}")
        return True

    @staticmethod
    def _positive(amount) -> Decimal:
        try:
            amount = to_money(amount)
        except ArithmeticError as e:
            raise InvalidBetAmount("Amount must be a number.") from e
        if amount <= 0:
            raise InvalidBetAmount("Amount must be greater than zero.")
        return amount

    async def _post(
        self,
        user_id: int,
        delta: Decimal,
        tx_type: str,
        description: Optional[str],
        reference: Optional[str],
        db: Optional[AsyncSession],
    ) -> bool:
        # fixed before any retry, so a replayed commit is recognised
        reference = reference or f"{tx_type}:{new_id()}"

        async def work(session: AsyncSession) -> bool:
            if await _reference_applied(session, reference):
                logger.info("Ledger reference %s already applied, skipping", reference)
                return True
            if not await move_balance(session, user_id, delta):
                return False
            session.add(Transaction(
                user_id=user_id,
                type=tx_type,
                amount=delta,
                status=TX_COMPLETED,
                reference=reference,
                description=description,
            ))
            await session.flush()
            return True

        if db is not None:
            return await work(db)

        try:
            return await self.run(work)
        except IntegrityError:
            # a concurrent request recorded the same reference first
            if await self.run(lambda session: _reference_applied(session, reference)):
                return True
            raise

    # === Audit ===

    async def reconcile(self, user_id: int) -> Decimal:
        """balance == sum(completed transactions), or LedgerInconsistency."""
        async with self._session_factory() as db:
            wallet = await self._get_wallet(db, user_id)
            result = await db.execute(
                select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                    Transaction.user_id == user_id,
                    Transaction.status == TX_COMPLETED,
                )
            )
            total = to_money(result.scalar_one())

        balance = wallet.balance if wallet else Decimal("0.00")
        if balance != total:
            logger.critical("Ledger mismatch for user %s: wallet=%s ledger=%s", user_id, balance, total)
            raise LedgerInconsistency(f"Wallet {balance} does not match ledger {total} for user {user_id}")
        return balance
