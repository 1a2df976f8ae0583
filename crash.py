"""
Crash: one shared round, betting -> playing -> crashed -> cooldown.

Round state changes under `self._lock`; the database is never awaited while
holding it.
"""

import asyncio
import logging
import math
import random
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

import fairness
from errors import (
    CashoutTooLate,
    GeneratorFailure,
    InsufficientBalance,
    InvalidBetAmount,
    InvalidStateTransition,
    LedgerError,
)
from events import EventBus, RoundEvent
from models import (
    GAME_CRASH,
    SESSION_ACTIVE,
    SESSION_CASHED_OUT,
    SESSION_LOST,
    SESSION_REFUNDED,
    TX_ADJUSTMENT,
    TX_BET,
    TX_WIN,
    GameSession,
    new_id,
    to_money,
)
from payouts import compute_payout, crash_elapsed_ms_for, crash_multiplier_at, floor_multiplier
from wallet import WalletLedger

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    BETTING = "betting"
    PLAYING = "playing"
    CRASHED = "crashed"


# Participant.status
PENDING = "pending"  # debit in flight
ACTIVE = "active"
CASHED_OUT = "cashed_out"
LOST = "lost"
REFUNDED = "refunded"


@dataclass
class Participant:
    user_id: int
    session_id: str
    bet_amount: Decimal
    auto_cashout: Optional[float] = None
    status: str = PENDING
    multiplier: Optional[float] = None
    payout: Decimal = Decimal("0.00")

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "bet_amount": str(self.bet_amount),
            "auto_cashout": self.auto_cashout,
            "status": self.status,
            "multiplier": self.multiplier,
            "payout": str(self.payout),
        }


@dataclass
class CrashRound:
    round_id: str
    betting_ends_at: float
    phase: Phase = Phase.BETTING
    crash_point: Optional[float] = None
    start_time: Optional[float] = None
    crashed_at: Optional[float] = None
    commitment: Optional[str] = None
    salt: Optional[str] = None
    participants: Dict[int, Participant] = field(default_factory=dict)

    @property
    def crash_ms(self) -> float:
        return crash_elapsed_ms_for(self.crash_point)

    def elapsed_ms(self, now: float) -> float:
        if self.start_time is None:
            return 0.0
        return max(0.0, (now - self.start_time) * 1000.0)

    def active(self) -> List[Participant]:
        return [p for p in self.participants.values() if p.status == ACTIVE]


@dataclass
class CashoutResult:
    user_id: int
    session_id: str
    multiplier: float
    payout: Decimal
    auto: bool = False


class CrashGame:
    def __init__(
        self,
        ledger: WalletLedger,
        bus: Optional[EventBus] = None,
        *,
        min_bet: Decimal = Decimal("10"),
        max_bet: Decimal = Decimal("100000"),
        house_edge: float = 0.04,
        numerator: float = 0.99,
        max_multiplier: float = 100.0,
        betting_seconds: float = 5.0,
        cooldown_seconds: float = 3.0,
        tick_seconds: float = 0.05,
        history_size: int = 10,
        settlement_retries: int = 5,
        settlement_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._ledger = ledger
        self._bus = bus or EventBus()
        self.min_bet = to_money(min_bet)
        self.max_bet = to_money(max_bet)
        self.house_edge = house_edge
        self.numerator = numerator
        self.max_multiplier = max_multiplier
        self.betting_seconds = betting_seconds
        self.cooldown_seconds = cooldown_seconds
        self.tick_seconds = tick_seconds
        self.settlement_retries = settlement_retries
        self.settlement_delay = settlement_delay
        self._clock = clock
        self._rng = rng

        self._lock = asyncio.Lock()
        self._round: Optional[CrashRound] = None
        self._history: Deque[float] = deque(maxlen=history_size)
        self._task: Optional[asyncio.Task] = None
        self._settlements: set = set()

    @property
    def round(self) -> Optional[CrashRound]:
        return self._round

    @property
    def history(self) -> List[float]:
        """Most recent crash points first."""
        return list(self._history)

    # === Lifecycle ===

    def now(self) -> float:
        return self._clock()

    async def start(self) -> None:
        if self._task is not None:
            return
        # betting is open as soon as start() returns
        await self.open_betting()
        self._task = asyncio.create_task(self._run(), name="crash-round-loop")
        logger.info("Crash game started")

    async def stop(self) -> None:
        """Stop the round clock; every bet still riding is refunded."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.drain()
        refunded = await self._refund_round("server shutdown")
        if refunded:
            logger.warning("Refunded %s active crash bets on shutdown", refunded)
        logger.info("Crash game stopped")

    async def drain(self) -> None:
        while self._settlements:
            await asyncio.gather(*list(self._settlements), return_exceptions=True)

    async def _run(self) -> None:
        while True:
            try:
                await self._play_round()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Crash round loop failed, refunding the round")
                await self._refund_round("round error")
            await asyncio.sleep(self.cooldown_seconds)
            await self.open_betting()

    async def _play_round(self) -> None:
        await self._countdown()
        try:
            await self.close_betting()
        except GeneratorFailure:
            # no fair round possible; everyone gets their stake back
            await self._refund_round("outcome generator failure")
            return
        while not await self.tick():
            await asyncio.sleep(self.tick_seconds)

    async def _countdown(self) -> None:
        remaining = self.betting_seconds
        while remaining > 0:
            self._publish("countdown", {"seconds": math.ceil(remaining)})
            step = min(1.0, remaining)
            await asyncio.sleep(step)
            remaining -= step

    # === Phase transitions ===

    async def open_betting(self) -> CrashRound:
        async with self._lock:
            if self._round is not None and self._round.phase != Phase.CRASHED:
                raise InvalidStateTransition(f"Round {self._round.round_id} is still {self._round.phase.value}")
            self._round = CrashRound(
                round_id=new_id(),
                betting_ends_at=self._clock() + self.betting_seconds,
            )
            round_ = self._round
        logger.info("Crash round %s: betting open", round_.round_id)
        self._publish("betting", {"seconds": self.betting_seconds, "history": self.history})
        return round_

    async def close_betting(self) -> CrashRound:
        """Betting -> playing. The crash point is drawn here and never changes afterwards."""
        async with self._lock:
            round_ = self._require_round(Phase.BETTING)
            crash_point = fairness.generate_crash_point(
                self.house_edge, self.numerator, self.max_multiplier, rng=self._rng
            )
            round_.crash_point = crash_point
            round_.salt, round_.commitment = fairness.commit(round_.round_id, crash_point)
            round_.start_time = self._clock()
            round_.phase = Phase.PLAYING
            riding = round_.active()
            players = len(riding)
        # recovery settles active sessions from this instead of refunding them
        await self._store_crash_point(round_, riding)
        logger.info("Crash round %s: playing with %s players", round_.round_id, players)
        self._publish("playing", {"commitment": round_.commitment, "players": players})
        return round_

    async def tick(self, now: Optional[float] = None) -> bool:
        """Fire due auto cash-outs and the crash. True once crashed."""
        settled: List[Participant] = []
        losers: List[Participant] = []
        async with self._lock:
            round_ = self._round
            if round_ is None or round_.phase == Phase.BETTING:
                return False
            if round_.phase == Phase.CRASHED:
                return True

            now = self._clock() if now is None else now
            elapsed = round_.elapsed_ms(now)
            live = crash_multiplier_at(elapsed)
            crashed = elapsed >= round_.crash_ms

            for p in round_.active():
                # thresholds at or above the crash point never pay
                if p.auto_cashout is None or p.auto_cashout >= round_.crash_point:
                    continue
                if live >= p.auto_cashout or crashed:
                    p.status = CASHED_OUT
                    p.multiplier = p.auto_cashout
                    p.payout = compute_payout(p.bet_amount, p.auto_cashout)
                    settled.append(p)

            if crashed:
                round_.phase = Phase.CRASHED
                round_.crashed_at = now
                for p in round_.active():
                    p.status = LOST
                    p.multiplier = round_.crash_point
                    losers.append(p)
                self._history.appendleft(round_.crash_point)

        for p in settled:
            self._publish("cashout", {"user_id": p.user_id, "multiplier": p.multiplier,
                                      "payout": str(p.payout), "auto": True}, round_.round_id)
            self._spawn(self._settle_auto_cashout(round_.round_id, p))

        if not crashed:
            self._publish("tick", {"multiplier": floor_multiplier(live), "elapsed_ms": int(elapsed)},
                          round_.round_id)
            return False

        logger.info("Crash round %s: crashed at %.2fx, %s lost", round_.round_id, round_.crash_point, len(losers))
        self._publish("crashed", {
            "crash_point": round_.crash_point,
            "salt": round_.salt,
            "commitment": round_.commitment,
            "losers": [p.user_id for p in losers],
            "history": self.history,
        }, round_.round_id)
        if losers:
            self._spawn(self._record_losses(round_.crash_point, losers))
        return True

    # === Player actions ===

    async def place_bet(self, user_id: int, amount, auto_cashout: Optional[float] = None) -> Participant:
        amount = self._validate_bet(amount, auto_cashout)

        async with self._lock:
            round_ = self._require_round(Phase.BETTING)
            if user_id in round_.participants:
                raise InvalidStateTransition("You already have a bet in this round.")
            participant = Participant(
                user_id=user_id,
                session_id=new_id(),
                bet_amount=amount,
                auto_cashout=auto_cashout,
            )
            round_.participants[user_id] = participant

        try:
            await self._ledger.run(lambda db: self._record_bet(db, round_.round_id, participant))
        except Exception:
            async with self._lock:
                round_.participants.pop(user_id, None)
            raise

        async with self._lock:
            accepted = self._round is round_ and round_.phase == Phase.BETTING
            if accepted:
                participant.status = ACTIVE
                players = len(round_.active())
            else:
                participant.status = REFUNDED

        if not accepted:
            # betting closed while the debit was in flight
            await self._refund(participant, "betting closed")
            raise InvalidStateTransition("Betting is closed for this round.")

        logger.info("Crash round %s: user %s bet %s (auto %s)", round_.round_id, user_id, amount, auto_cashout)
        self._publish("bet", {"user_id": user_id, "amount": str(amount), "players": players}, round_.round_id)
        return participant

    async def cashout(self, user_id: int, requested_at: Optional[float] = None) -> CashoutResult:
        # timestamp on receipt, before waiting for the lock
        requested_at = self._clock() if requested_at is None else requested_at

        async with self._lock:
            round_ = self._round
            participant = round_.participants.get(user_id) if round_ else None
            if participant is None or participant.status == PENDING:
                raise InvalidStateTransition("You have no active bet in this round.")
            if participant.status == LOST:
                raise CashoutTooLate(f"Too late, crashed at {round_.crash_point:.2f}x")
            if participant.status != ACTIVE:
                raise InvalidStateTransition(f"Bet is already {participant.status}.")
            if round_.phase == Phase.BETTING:
                raise InvalidStateTransition("The round has not started yet.")

            elapsed = round_.elapsed_ms(requested_at)
            if elapsed >= round_.crash_ms:
                # the crash tick has not run yet, but this request is past the crash moment
                raise CashoutTooLate(f"Too late, crashed at {round_.crash_point:.2f}x")

            multiplier = max(1.0, floor_multiplier(crash_multiplier_at(elapsed)))
            participant.status = CASHED_OUT
            participant.multiplier = multiplier
            participant.payout = compute_payout(participant.bet_amount, multiplier)

        try:
            await self._with_retries(lambda: self._settle_cashout(participant),
                                     f"cash-out of session {participant.session_id}")
        except Exception:
            await self._revert_cashout(round_, participant)
            raise

        logger.info("Crash round %s: user %s cashed out at %.2fx for %s",
                    round_.round_id, user_id, multiplier, participant.payout)
        self._publish("cashout", {"user_id": user_id, "multiplier": multiplier,
                                  "payout": str(participant.payout), "auto": False}, round_.round_id)
        return CashoutResult(user_id, participant.session_id, multiplier, participant.payout)

    def get_bet(self, user_id: int) -> Optional[Participant]:
        if self._round is None:
            return None
        return self._round.participants.get(user_id)

    def state(self) -> dict:
        """Public snapshot. The crash point is only included once the round has crashed."""
        round_ = self._round
        if round_ is None:
            return {"phase": None, "multiplier": 1.0, "history": self.history}

        now = self._clock()
        snapshot = {
            "round_id": round_.round_id,
            "phase": round_.phase.value,
            "multiplier": 1.0,
            "players": sum(1 for p in round_.participants.values() if p.status in (ACTIVE, CASHED_OUT, LOST)),
            "commitment": round_.commitment,
            "history": self.history,
        }
        if round_.phase == Phase.BETTING:
            snapshot["countdown"] = max(0.0, round(round_.betting_ends_at - now, 2))
        elif round_.phase == Phase.PLAYING:
            elapsed = min(round_.elapsed_ms(now), round_.crash_ms)
            snapshot["multiplier"] = floor_multiplier(crash_multiplier_at(elapsed))
            snapshot["elapsed_ms"] = int(elapsed)
        else:
            snapshot["multiplier"] = round_.crash_point
            snapshot["crash_point"] = round_.crash_point
            snapshot["salt"] = round_.salt
        return snapshot

    # === Ledger side ===

    def _validate_bet(self, amount, auto_cashout: Optional[float]) -> Decimal:
        try:
            amount = to_money(amount)
        except ArithmeticError as e:
            raise InvalidBetAmount("Bet amount must be a number.") from e
        if amount < self.min_bet:
            raise InvalidBetAmount(f"Minimum bet is KES {self.min_bet}")
        if amount > self.max_bet:
            raise InvalidBetAmount(f"Maximum bet is KES {self.max_bet}")
        if auto_cashout is not None and auto_cashout <= 1.0:
            raise InvalidBetAmount("Auto cash-out must be above 1.00x")
        return amount

    async def _record_bet(self, db: AsyncSession, round_id: str, p: Participant) -> None:
        debited = await self._ledger.debit(
            p.user_id,
            p.bet_amount,
            tx_type=TX_BET,
            description="Crash game bet",
            reference=f"crash:{p.session_id}:bet",
            db=db,
        )
        if not debited:
            raise InsufficientBalance("Insufficient balance. Please deposit more funds to play.")
        db.add(GameSession(
            id=p.session_id,
            user_id=p.user_id,
            game_type=GAME_CRASH,
            bet_amount=p.bet_amount,
            multiplier=1.0,
            status=SESSION_ACTIVE,
            game_data={"round_id": round_id, "auto_cashout": p.auto_cashout},
        ))

    async def _settle_cashout(self, p: Participant) -> None:
        async def work(db: AsyncSession) -> None:
            await self._close_session(db, p.session_id, SESSION_CASHED_OUT, p.multiplier, p.payout)
            await self._ledger.credit(
                p.user_id,
                p.payout,
                tx_type=TX_WIN,
                description=f"Crash cash-out at {p.multiplier:.2f}x",
                reference=f"crash:{p.session_id}:win",
                db=db,
            )

        await self._ledger.run(work)

    async def _settle_auto_cashout(self, round_id: str, p: Participant) -> None:
        try:
            await self._with_retries(lambda: self._settle_cashout(p), f"auto cash-out of session {p.session_id}")
        except Exception:
            await self._revert_cashout(self._round if self._round and self._round.round_id == round_id else None, p)
            raise

    async def _revert_cashout(self, round_: Optional[CrashRound], p: Participant) -> None:
        async with self._lock:
            if round_ is not None and self._round is round_ and round_.phase == Phase.PLAYING:
                # back to riding; the player (or the next tick) may cash out again
                p.status = ACTIVE
                p.multiplier = None
                p.payout = Decimal("0.00")
                return
        logger.critical(
            "Crash payout of %s owed to user %s (session %s) could not be credited",
            p.payout, p.user_id, p.session_id,
        )

    async def _record_losses(self, crash_point: float, losers: List[Participant]) -> None:
        async def work(db: AsyncSession) -> None:
            await db.execute(
                update(GameSession)
                .where(
                    GameSession.id.in_([p.session_id for p in losers]),
                    GameSession.status == SESSION_ACTIVE,
                )
                .values(status=SESSION_LOST, multiplier=crash_point, payout=Decimal("0.00"),
                        ended_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )

        try:
            await self._with_retries(lambda: self._ledger.run(work), f"{len(losers)} crash losses")
        except LedgerError:
            logger.critical("Could not record %s crash losses; recovery closes them from the stored crash point",
                            len(losers))
            raise

    async def _with_retries(self, settle: Callable[[], Awaitable[None]], what: str) -> None:
        attempt = 0
        while True:
            try:
                return await settle()
            except LedgerError as e:
                attempt += 1
                if attempt > self.settlement_retries:
                    raise
                logger.warning("Settling %s failed (attempt %s), retrying: %s", what, attempt, e)
                await asyncio.sleep(self.settlement_delay * attempt)

    async def _store_crash_point(self, round_: CrashRound, riding: List[Participant]) -> None:
        if not riding:
            return

        async def work(db: AsyncSession) -> None:
            for p in riding:
                await db.execute(
                    update(GameSession)
                    .where(GameSession.id == p.session_id, GameSession.status == SESSION_ACTIVE)
                    .values(game_data={
                        "round_id": round_.round_id,
                        "auto_cashout": p.auto_cashout,
                        "crash_point": round_.crash_point,
                    })
                    .execution_options(synchronize_session=False)
                )

        await self._ledger.run(work)

    async def _refund(self, p: Participant, reason: str) -> None:
        async def work(db: AsyncSession) -> None:
            await self._close_session(db, p.session_id, SESSION_REFUNDED, 1.0, Decimal("0.00"))
            await self._ledger.credit(
                p.user_id,
                p.bet_amount,
                tx_type=TX_ADJUSTMENT,
                description=f"Crash bet refunded: {reason}",
                reference=f"crash:{p.session_id}:refund",
                db=db,
            )

        await self._ledger.run(work)
        logger.info("Refunded crash bet %s of user %s (%s)", p.session_id, p.user_id, reason)

    async def _refund_round(self, reason: str) -> int:
        async with self._lock:
            round_ = self._round
            if round_ is None or round_.phase == Phase.CRASHED:
                return 0
            riding = round_.active()
            for p in riding:
                p.status = REFUNDED
            round_.phase = Phase.CRASHED

        for p in riding:
            try:
                await self._refund(p, reason)
            except LedgerError:
                logger.critical("Refund of %s for user %s (session %s) failed", p.bet_amount, p.user_id, p.session_id)
        return len(riding)

    async def recover_orphaned_sessions(self) -> int:
        """Settle crash sessions a previous process left active: refund if undecided, else pay or lose."""
        async def load(db: AsyncSession) -> List[GameSession]:
            result = await db.execute(
                select(GameSession).where(
                    GameSession.game_type == GAME_CRASH,
                    GameSession.status == SESSION_ACTIVE,
                )
            )
            return list(result.scalars())

        orphans = await self._ledger.run(load)
        for session in orphans:
            data = session.game_data or {}
            crash_point = data.get("crash_point")
            auto_cashout = data.get("auto_cashout")
            p = Participant(session.user_id, session.id, session.bet_amount, auto_cashout, status=REFUNDED)
            if crash_point is None:
                await self._refund(p, "round interrupted")
            elif auto_cashout is not None and auto_cashout < crash_point:
                p.status = CASHED_OUT
                p.multiplier = auto_cashout
                p.payout = compute_payout(p.bet_amount, auto_cashout)
                await self._settle_cashout(p)
                logger.info("Recovered auto cash-out of session %s at %.2fx", session.id, auto_cashout)
            else:
                p.status = LOST
                await self._record_losses(crash_point, [p])
                logger.info("Recovered loss of session %s at %.2fx", session.id, crash_point)
        if orphans:
            logger.warning("Settled %s crash sessions left active by a restart", len(orphans))
        return len(orphans)

    @staticmethod
    async def _close_session(db: AsyncSession, session_id: str, status: str, multiplier: float, payout: Decimal) -> None:
        result = await db.execute(
            update(GameSession)
            .where(GameSession.id == session_id, GameSession.status == SESSION_ACTIVE)
            .values(status=status, multiplier=multiplier, payout=payout, ended_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateTransition(f"Game session {session_id} is no longer active.")

    # === Helpers ===

    def _require_round(self, phase: Phase) -> CrashRound:
        if self._round is None or self._round.phase != phase:
            current = self._round.phase.value if self._round else "not started"
            raise InvalidStateTransition(f"Round is {current}, not {phase.value}.")
        return self._round

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._settlements.add(task)
        task.add_done_callback(self._settlement_done)

    def _settlement_done(self, task: asyncio.Task) -> None:
        self._settlements.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Crash settlement failed: %s", task.exception())

    def _publish(self, type_: str, data: dict, round_id: Optional[str] = None) -> None:
        if round_id is None and self._round is not None:
            round_id = self._round.round_id
        self._bus.publish(RoundEvent(type=type_, game=GAME_CRASH, round_id=round_id, data=data))
