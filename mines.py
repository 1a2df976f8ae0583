# Mines: grid kept server-side in GameSession.game_data, one active game per player.

import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import fairness
from errors import (
    GameNotFound,
    InsufficientBalance,
    InvalidBetAmount,
    InvalidMove,
    InvalidStateTransition,
)
from events import EventBus, RoundEvent
from models import (
    GAME_MINES,
    SESSION_ACTIVE,
    SESSION_CASHED_OUT,
    SESSION_LOST,
    SESSION_WON,
    TX_BET,
    TX_WIN,
    GameSession,
    new_id,
    to_money,
)
from payouts import compute_payout, mines_multiplier_at
from wallet import WalletLedger

logger = logging.getLogger(__name__)


@dataclass
class Cell:
    is_mine: bool = False
    is_revealed: bool = False


@dataclass
class MinesGrid:
    cells: List[Cell]
    mines_count: int
    exploded: Optional[int] = None

    @classmethod
    def create(cls, mines: set, grid_size: int = 25) -> "MinesGrid":
        return cls(cells=[Cell(is_mine=i in mines) for i in range(grid_size)], mines_count=len(mines))

    @classmethod
    def from_data(cls, data: dict) -> "MinesGrid":
        mines = set(data["mines"])
        revealed = set(data["revealed"])
        cells = [Cell(is_mine=i in mines, is_revealed=i in revealed) for i in range(data["grid_size"])]
        return cls(cells=cells, mines_count=data["mines_count"], exploded=data.get("exploded"))

    def to_data(self) -> dict:
        return {
            "grid_size": len(self.cells),
            "mines_count": self.mines_count,
            "mines": [i for i, c in enumerate(self.cells) if c.is_mine],
            "revealed": [i for i, c in enumerate(self.cells) if c.is_revealed],
            "exploded": self.exploded,
        }

    @property
    def safe_spots(self) -> int:
        return len(self.cells) - self.mines_count

    @property
    def safe_revealed(self) -> int:
        return sum(1 for c in self.cells if c.is_revealed and not c.is_mine)

    def reveal_mines(self) -> None:
        for c in self.cells:
            if c.is_mine:
                c.is_revealed = True

    def public_cells(self, game_over: bool) -> List[str]:
        """'hidden' / 'gem' / 'mine' per cell; unrevealed mines stay hidden while playing."""
        out = []
        for c in self.cells:
            if c.is_revealed or game_over:
                out.append("mine" if c.is_mine else "gem")
            else:
                out.append("hidden")
        return out


@dataclass
class MinesView:
    session_id: str
    status: str
    bet_amount: Decimal
    mines_count: int
    revealed: int
    multiplier: float
    next_multiplier: Optional[float]
    payout: Decimal
    cells: List[str] = field(default_factory=list)
    exploded: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "status": self.status,
            "bet_amount": str(self.bet_amount),
            "mines_count": self.mines_count,
            "revealed": self.revealed,
            "multiplier": round(self.multiplier, 4),
            "next_multiplier": round(self.next_multiplier, 4) if self.next_multiplier else None,
            "payout": str(self.payout),
            "cells": self.cells,
            "exploded": self.exploded,
        }


class MinesGame:
    def __init__(
        self,
        ledger: WalletLedger,
        bus: Optional[EventBus] = None,
        *,
        min_bet: Decimal = Decimal("10"),
        max_bet: Decimal = Decimal("100000"),
        grid_size: int = 25,
        house_edge: float = 0.03,
        max_multiplier: float = 25.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._ledger = ledger
        self._bus = bus or EventBus()
        self.min_bet = to_money(min_bet)
        self.max_bet = to_money(max_bet)
        self.grid_size = grid_size
        self.house_edge = house_edge
        self.max_multiplier = max_multiplier
        self._rng = rng

    def multiplier(self, revealed: int, mines_count: int) -> float:
        return mines_multiplier_at(revealed, mines_count, self.house_edge, self.max_multiplier, self.grid_size)

    # === Actions ===

    async def start(self, user_id: int, amount, mines_count: int) -> MinesView:
        """not_started -> active: debit the stake and deal a fresh grid."""
        amount = self._validate(amount, mines_count)
        # drawn before touching the wallet; a generator failure costs the player nothing
        grid = MinesGrid.create(fairness.generate_mines_layout(mines_count, self.grid_size, rng=self._rng),
                                self.grid_size)

        async def work(db: AsyncSession) -> GameSession:
            if await self._find_active(db, user_id) is not None:
                raise InvalidStateTransition("Finish your current Mines game first.")
            session_id = new_id()
            debited = await self._ledger.debit(
                user_id,
                amount,
                tx_type=TX_BET,
                description=f"Mines game bet - {mines_count} mines",
                reference=f"mines:{session_id}:bet",
                db=db,
            )
            if not debited:
                raise InsufficientBalance("Insufficient balance. Please deposit more funds to play.")
            session = GameSession(
                id=session_id,
                user_id=user_id,
                game_type=GAME_MINES,
                bet_amount=amount,
                multiplier=1.0,
                payout=Decimal("0.00"),
                status=SESSION_ACTIVE,
                game_data=grid.to_data(),
            )
            db.add(session)
            await db.flush()
            return session

        session = await self._ledger.run(work)
        logger.info("Mines %s: user %s bet %s with %s mines", session.id, user_id, amount, mines_count)
        self._publish("mines_started", session, {"mines_count": mines_count})
        return self._view(session, grid)

    async def reveal(self, user_id: int, session_id: str, cell: int) -> MinesView:
        if not 0 <= cell < self.grid_size:
            raise InvalidMove(f"Cell must be between 0 and {self.grid_size - 1}")

        async def work(db: AsyncSession):
            session = await self._load_active(db, user_id, session_id)
            grid = MinesGrid.from_data(session.game_data)
            target = grid.cells[cell]
            if target.is_revealed:
                raise InvalidMove("Cell already revealed.")
            target.is_revealed = True

            if target.is_mine:
                grid.exploded = cell
                grid.reveal_mines()
                self._finish(session, SESSION_LOST, Decimal("0.00"))
            else:
                session.multiplier = self.multiplier(grid.safe_revealed, grid.mines_count)
                if grid.safe_revealed == grid.safe_spots:
                    # every safe cell found: automatic win, no cash-out call needed
                    await self._pay(db, session, SESSION_WON)
            session.game_data = grid.to_data()
            return session, grid

        session, grid = await self._ledger.run(work)
        if session.status == SESSION_LOST:
            logger.info("Mines %s: user %s hit a mine at cell %s", session_id, user_id, cell)
            self._publish("mines_lost", session, {"cell": cell})
        elif session.status == SESSION_WON:
            logger.info("Mines %s: user %s cleared the board for %s", session_id, user_id, session.payout)
            self._publish("mines_won", session, {"payout": str(session.payout)})
        return self._view(session, grid)

    async def cash_out(self, user_id: int, session_id: str) -> MinesView:
        async def work(db: AsyncSession):
            session = await self._load_active(db, user_id, session_id)
            grid = MinesGrid.from_data(session.game_data)
            if grid.safe_revealed == 0:
                raise InvalidStateTransition("Reveal at least one tile before cashing out.")
            await self._pay(db, session, SESSION_CASHED_OUT)
            return session, grid

        session, grid = await self._ledger.run(work)
        logger.info("Mines %s: user %s cashed out at %.4fx for %s",
                    session_id, user_id, session.multiplier, session.payout)
        self._publish("mines_cashout", session, {"multiplier": session.multiplier, "payout": str(session.payout)})
        return self._view(session, grid)

    async def active_game(self, user_id: int) -> Optional[MinesView]:
        """The player's unfinished game, e.g. after a page reload."""

        async def work(db: AsyncSession) -> Optional[GameSession]:
            return await self._find_active(db, user_id)

        session = await self._ledger.run(work)
        if session is None:
            return None
        return self._view(session, MinesGrid.from_data(session.game_data))

    # === Internals ===

    def _validate(self, amount, mines_count: int) -> Decimal:
        try:
            amount = to_money(amount)
        except ArithmeticError as e:
            raise InvalidBetAmount("Bet amount must be a number.") from e
        if amount < self.min_bet:
            raise InvalidBetAmount(f"Minimum bet is KES {self.min_bet}")
        if amount > self.max_bet:
            raise InvalidBetAmount(f"Maximum bet is KES {self.max_bet}")
        if not 1 <= mines_count <= self.grid_size - 1:
            raise InvalidBetAmount(f"Mines must be between 1 and {self.grid_size - 1}")
        return amount

    async def _pay(self, db: AsyncSession, session: GameSession, status: str) -> None:
        payout = compute_payout(session.bet_amount, session.multiplier)
        self._finish(session, status, payout)
        await self._ledger.credit(
            session.user_id,
            payout,
            tx_type=TX_WIN,
            description=f"Mines win at {session.multiplier:.2f}x",
            reference=f"mines:{session.id}:win",
            db=db,
        )

    @staticmethod
    def _finish(session: GameSession, status: str, payout: Decimal) -> None:
        session.status = status
        session.payout = payout
        session.ended_at = datetime.now(timezone.utc)

    @staticmethod
    async def _find_active(db: AsyncSession, user_id: int) -> Optional[GameSession]:
        result = await db.execute(
            select(GameSession).where(
                GameSession.user_id == user_id,
                GameSession.game_type == GAME_MINES,
                GameSession.status == SESSION_ACTIVE,
            ).limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _load_active(db: AsyncSession, user_id: int, session_id: str) -> GameSession:
        result = await db.execute(
            select(GameSession)
            .where(GameSession.id == session_id, GameSession.game_type == GAME_MINES)
            .with_for_update()
        )
        session = result.scalar_one_or_none()
        if session is None or session.user_id != user_id:
            raise GameNotFound("Game not found.")
        if session.status != SESSION_ACTIVE:
            raise InvalidStateTransition(f"This game is already {session.status}.")
        return session

    def _view(self, session: GameSession, grid: MinesGrid) -> MinesView:
        game_over = session.status != SESSION_ACTIVE
        revealed = grid.safe_revealed
        next_multiplier = None
        if not game_over and revealed < grid.safe_spots:
            next_multiplier = self.multiplier(revealed + 1, grid.mines_count)
        return MinesView(
            session_id=session.id,
            status=session.status,
            bet_amount=session.bet_amount,
            mines_count=grid.mines_count,
            revealed=revealed,
            multiplier=session.multiplier,
            next_multiplier=next_multiplier,
            payout=session.payout,
            cells=grid.public_cells(game_over),
            exploded=grid.exploded,
        )

    def _publish(self, type_: str, session: GameSession, data: dict) -> None:
        data = {"user_id": session.user_id, **data}
        self._bus.publish(RoundEvent(type=type_, game=GAME_MINES, round_id=session.id, data=data))
