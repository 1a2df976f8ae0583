"""
Deposits, withdrawals and bonuses.

Only the ledger side of these flows lives here. The payment gateway (M-Pesa STK
push and its callback format) is handled elsewhere and reports back through
complete_deposit / fail_deposit using the reference we hand out.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import InsufficientBalance, InvalidBetAmount, InvalidStateTransition, NotFound
from models import (
    BONUS_MANUAL,
    BONUS_TYPES,
    BONUS_WELCOME,
    TX_ADJUSTMENT,
    TX_BONUS,
    TX_CANCELLED,
    TX_COMPLETED,
    TX_DEPOSIT,
    TX_FAILED,
    TX_PENDING,
    TX_WITHDRAWAL,
    Transaction,
    User,
    UserBonus,
    WithdrawalRequest,
    new_id,
    to_money,
)
from wallet import WalletLedger, move_balance

logger = logging.getLogger(__name__)


class Cashier:
    def __init__(
        self,
        ledger: WalletLedger,
        min_deposit: Decimal = Decimal("200"),
        max_deposit: Decimal = Decimal("100000"),
        min_withdrawal: Decimal = Decimal("100"),
        welcome_bonus_enabled: bool = True,
        welcome_bonus_amount: Decimal = Decimal("100"),
    ) -> None:
        self._ledger = ledger
        self.min_deposit = to_money(min_deposit)
        self.max_deposit = to_money(max_deposit)
        self.min_withdrawal = to_money(min_withdrawal)
        self.welcome_bonus_enabled = welcome_bonus_enabled
        self.welcome_bonus_amount = to_money(welcome_bonus_amount)

    # === Deposits ===

    async def create_deposit(self, user_id: int, amount, phone: str) -> Transaction:
        """Record a pending deposit; the wallet is only credited once the payment settles."""
        amount = to_money(amount)
        if amount < self.min_deposit:
            raise InvalidBetAmount(f"Minimum deposit is KES {self.min_deposit}")
        if amount > self.max_deposit:
            raise InvalidBetAmount(f"Maximum deposit is KES {self.max_deposit}")

        reference = f"{TX_DEPOSIT}:{new_id()}"

        async def work(db: AsyncSession) -> Transaction:
            tx = Transaction(
                user_id=user_id,
                type=TX_DEPOSIT,
                amount=amount,
                status=TX_PENDING,
                reference=reference,
                description=f"M-Pesa deposit from {phone}",
            )
            db.add(tx)
            await db.flush()
            return tx

        tx = await self._ledger.run(work)
        logger.info("Deposit %s of %s pending for user %s", reference, amount, user_id)
        return tx

    async def complete_deposit(
        self,
        reference: str,
        receipt: Optional[str] = None,
        amount=None,
    ) -> Transaction:
        """
        Settle a pending deposit: flip it to completed and credit the wallet in
        one transaction. The settled `amount`, when the gateway reports one,
        replaces the requested amount. Repeated callbacks are no-ops.
        """

        async def work(db: AsyncSession) -> Transaction:
            tx = await self._deposit_for_update(db, reference)
            if tx.status == TX_COMPLETED:
                return tx
            if tx.status != TX_PENDING:
                raise InvalidStateTransition(f"Deposit {reference} is already {tx.status}")

            if amount is not None:
                tx.amount = to_money(amount)
            tx.status = TX_COMPLETED
            tx.mpesa_receipt = receipt
            tx.description = f"M-Pesa deposit - Receipt: {receipt}" if receipt else tx.description
            if not await move_balance(db, tx.user_id, tx.amount):
                raise NotFound(f"No wallet for user {tx.user_id}")
            await db.flush()

            if self.welcome_bonus_enabled and await self._completed_deposits(db, tx.user_id) == 1:
                db.add(UserBonus(
                    user_id=tx.user_id,
                    name="Welcome bonus",
                    amount=self.welcome_bonus_amount,
                    bonus_type=BONUS_WELCOME,
                ))
                logger.info("Granted welcome bonus to user %s", tx.user_id)
            return tx

        tx = await self._ledger.run(work)
        logger.info("Deposit %s completed: +%s for user %s", reference, tx.amount, tx.user_id)
        return tx

    async def fail_deposit(self, reference: str, reason: str, cancelled: bool = False) -> Transaction:
        async def work(db: AsyncSession) -> Transaction:
            tx = await self._deposit_for_update(db, reference)
            if tx.status != TX_PENDING:
                raise InvalidStateTransition(f"Deposit {reference} is already {tx.status}")
            tx.status = TX_CANCELLED if cancelled else TX_FAILED
            tx.description = f"M-Pesa: {reason}"
            return tx

        tx = await self._ledger.run(work)
        logger.info("Deposit %s %s: %s", reference, tx.status, reason)
        return tx

    @staticmethod
    async def _deposit_for_update(db: AsyncSession, reference: str) -> Transaction:
        result = await db.execute(
            select(Transaction)
            .where(Transaction.reference == reference, Transaction.type == TX_DEPOSIT)
            .with_for_update()
        )
        tx = result.scalar_one_or_none()
        if tx is None:
            raise NotFound(f"Deposit {reference} not found")
        return tx

    @staticmethod
    async def _completed_deposits(db: AsyncSession, user_id: int) -> int:
        result = await db.execute(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == user_id,
                Transaction.type == TX_DEPOSIT,
                Transaction.status == TX_COMPLETED,
            )
        )
        return result.scalar_one()

    # === Withdrawals ===

    async def request_withdrawal(self, user_id: int, amount, phone: str) -> WithdrawalRequest:
        """Funds leave the wallet immediately and are held until an admin processes the request."""
        amount = to_money(amount)
        if amount < self.min_withdrawal:
            raise InvalidBetAmount(f"Minimum withdrawal is KES {self.min_withdrawal}")

        async def work(db: AsyncSession) -> WithdrawalRequest:
            debited = await self._ledger.debit(
                user_id,
                amount,
                tx_type=TX_WITHDRAWAL,
                description=f"Withdrawal request to {phone}",
                db=db,
            )
            if not debited:
                raise InsufficientBalance("You do not have enough funds to withdraw.")
            request = WithdrawalRequest(user_id=user_id, amount=amount, phone=phone)
            db.add(request)
            await db.flush()
            return request

        request = await self._ledger.run(work)
        logger.info("Withdrawal #%s of %s requested by user %s", request.id, amount, user_id)
        return request

    async def approve_withdrawal(self, request_id: int, admin_id: int) -> WithdrawalRequest:
        async def work(db: AsyncSession) -> WithdrawalRequest:
            request = await self._pending_withdrawal(db, request_id)
            request.status = "approved"
            request.processed_by = admin_id
            request.processed_at = datetime.now(timezone.utc)
            return request

        request = await self._ledger.run(work)
        logger.info("Withdrawal #%s approved by %s", request_id, admin_id)
        return request

    async def reject_withdrawal(self, request_id: int, admin_id: int, notes: str = "") -> WithdrawalRequest:
        """Reject and give the held funds back."""

        async def work(db: AsyncSession) -> WithdrawalRequest:
            request = await self._pending_withdrawal(db, request_id)
            request.status = "rejected"
            request.admin_notes = notes or None
            request.processed_by = admin_id
            request.processed_at = datetime.now(timezone.utc)
            await self._ledger.credit(
                request.user_id,
                request.amount,
                tx_type=TX_ADJUSTMENT,
                description=f"Withdrawal #{request.id} rejected, funds returned",
                reference=f"{TX_WITHDRAWAL}:{request.id}:refund",
                db=db,
            )
            return request

        request = await self._ledger.run(work)
        logger.info("Withdrawal #%s rejected by %s", request_id, admin_id)
        return request

    @staticmethod
    async def _pending_withdrawal(db: AsyncSession, request_id: int) -> WithdrawalRequest:
        result = await db.execute(
            select(WithdrawalRequest).where(WithdrawalRequest.id == request_id).with_for_update()
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise NotFound(f"Withdrawal #{request_id} not found")
        if request.status != "pending":
            raise InvalidStateTransition(f"Withdrawal #{request_id} is already {request.status}")
        return request

    # === Bonuses ===

    async def pending_bonuses(self, user_id: int) -> List[UserBonus]:
        async def work(db: AsyncSession) -> List[UserBonus]:
            result = await db.execute(
                select(UserBonus).where(UserBonus.user_id == user_id, UserBonus.status == "pending")
            )
            return list(result.scalars())

        return await self._ledger.run(work)

    async def claim_bonus(self, user_id: int, bonus_id: int) -> UserBonus:
        async def work(db: AsyncSession) -> UserBonus:
            result = await db.execute(
                select(UserBonus)
                .where(UserBonus.id == bonus_id, UserBonus.user_id == user_id)
                .with_for_update()
            )
            bonus = result.scalar_one_or_none()
            if bonus is None:
                raise NotFound("Bonus not found")
            if bonus.status != "pending":
                raise InvalidStateTransition(f"Bonus is already {bonus.status}")
            bonus.status = "claimed"
            bonus.claimed_at = datetime.now(timezone.utc)
            await self._ledger.credit(
                user_id,
                bonus.amount,
                tx_type=TX_BONUS,
                description=f"{bonus.name} claimed",
                reference=f"{TX_BONUS}:{bonus.id}",
                db=db,
            )
            return bonus

        bonus = await self._ledger.run(work)
        logger.info("User %s claimed bonus #%s (%s)", user_id, bonus_id, bonus.amount)
        return bonus

    # === Admin ===

    async def adjust(self, user_id: int, amount, admin_id: int, reason: str) -> Decimal:
        """Signed manual correction; a negative adjustment never overdraws."""
        amount = to_money(amount)
        if amount == 0:
            raise InvalidBetAmount("Adjustment must not be zero.")
        if await self._ledger.get_wallet(user_id) is None:
            raise NotFound(f"No wallet for user {user_id}")
        description = f"Adjustment by {admin_id}: {reason}"
        if amount > 0:
            await self._ledger.credit(user_id, amount, tx_type=TX_ADJUSTMENT, description=description)
        elif not await self._ledger.debit(user_id, -amount, tx_type=TX_ADJUSTMENT, description=description):
            raise InsufficientBalance("Adjustment exceeds the wallet balance.")
        logger.info("User %s adjusted by %s (%s): %s", user_id, admin_id, amount, reason)
        return await self._ledger.get_balance(user_id)

    async def grant_bonus(self, user_id: int, name: str, amount, bonus_type: str = BONUS_MANUAL) -> UserBonus:
        """Pending bonus the player claims later, e.g. a promotion."""
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidBetAmount("Bonus amount must be greater than zero.")
        if bonus_type not in BONUS_TYPES:
            raise InvalidBetAmount(f"Unknown bonus type {bonus_type!r}")

        async def work(db: AsyncSession) -> UserBonus:
            if await db.get(User, user_id) is None:
                raise NotFound(f"User {user_id} not found")
            bonus = UserBonus(user_id=user_id, name=name, amount=amount, bonus_type=bonus_type)
            db.add(bonus)
            await db.flush()
            return bonus

        bonus = await self._ledger.run(work)
        logger.info("Granted %s bonus #%s of %s to user %s", bonus_type, bonus.id, amount, user_id)
        return bonus

    async def set_suspended(self, user_id: int, suspended: bool, admin_id: int) -> User:
        async def work(db: AsyncSession) -> User:
            user = await db.get(User, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            user.is_suspended = suspended
            return user

        user = await self._ledger.run(work)
        logger.warning("User %s %s by %s", user_id, "suspended" if suspended else "reinstated", admin_id)
        return user
