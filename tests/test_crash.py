import asyncio
import unittest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from crash import ACTIVE, CASHED_OUT, LOST, REFUNDED, CrashGame, Phase
from errors import CashoutTooLate, InsufficientBalance, InvalidBetAmount, InvalidStateTransition, LedgerError
from events import EventBus
from payouts import crash_elapsed_ms_for
from tests.base import FakeClock, FixedDraws, LedgerTestCase


class CrashGameTests(LedgerTestCase):
    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.clock = FakeClock()
        self.bus = EventBus()
        self.events = self.bus.subscribe()
        self.game = CrashGame(self.ledger, self.bus, clock=self.clock)
        await self.fund(1, "1000")
        await self.fund(2, "1000")

    async def fly(self, crash_point: float):
        """Close betting with a known crash point."""
        round_ = await self.game.close_betting()
        round_.crash_point = crash_point
        return round_

    def at(self, round_, multiplier: float, extra_ms: float = 0.0) -> float:
        """Clock reading at which the curve shows `multiplier`."""
        return round_.start_time + (crash_elapsed_ms_for(multiplier) + extra_ms) / 1000.0

    def event_types(self):
        types = []
        while not self.events.empty():
            types.append(self.events.get_nowait().type)
        return types

    async def test_auto_cashout_pays_threshold(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "50", auto_cashout=2.0)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("950.00"))

        round_ = await self.fly(2.5)
        self.clock.now = self.at(round_, 2.0, extra_ms=30)
        self.assertFalse(await self.game.tick())
        self.clock.now = self.at(round_, 2.5, extra_ms=1)
        self.assertTrue(await self.game.tick())
        await self.game.drain()

        bet = self.game.get_bet(1)
        self.assertEqual(bet.status, CASHED_OUT)
        self.assertEqual(bet.multiplier, 2.0)
        self.assertEqual(bet.payout, Decimal("100.00"))
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1050.00"))
        await self.ledger.reconcile(1)

    async def test_auto_cashout_fires_on_crash_tick_even_if_skipped(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100", auto_cashout=2.0)
        round_ = await self.fly(2.5)
        # one late tick straight past both the threshold and the crash
        self.clock.now = self.at(round_, 3.0)
        self.assertTrue(await self.game.tick())
        await self.game.drain()
        self.assertEqual(self.game.get_bet(1).status, CASHED_OUT)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1100.00"))

    async def test_auto_cashout_at_crash_point_loses(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100", auto_cashout=2.5)
        round_ = await self.fly(2.5)
        self.clock.now = self.at(round_, 2.5, extra_ms=1)
        self.assertTrue(await self.game.tick())
        await self.game.drain()
        self.assertEqual(self.game.get_bet(1).status, LOST)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("900.00"))

    async def test_manual_cashout(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100")
        round_ = await self.fly(3.0)
        self.clock.now = self.at(round_, 1.5, extra_ms=1)
        result = await self.game.cashout(1)
        self.assertEqual(result.multiplier, 1.5)
        self.assertEqual(result.payout, Decimal("150.00"))
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1050.00"))

        with self.assertRaises(InvalidStateTransition):
            await self.game.cashout(1)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1050.00"))
        await self.ledger.reconcile(1)

    async def test_cashout_after_crash_moment_is_too_late(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100")
        round_ = await self.fly(1.2)
        # the crash tick has not run yet
        self.clock.now = self.at(round_, 1.2, extra_ms=1)
        with self.assertRaises(CashoutTooLate):
            await self.game.cashout(1)
        self.assertTrue(await self.game.tick())
        await self.game.drain()
        with self.assertRaises(CashoutTooLate):
            await self.game.cashout(1)
        self.assertEqual(self.game.get_bet(1).status, LOST)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("900.00"))
        await self.ledger.reconcile(1)

    async def test_cashout_stamped_before_crash_wins(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100")
        round_ = await self.fly(2.0)
        requested_at = self.at(round_, 1.9)
        self.clock.now = self.at(round_, 2.0, extra_ms=5)
        result = await self.game.cashout(1, requested_at=requested_at)
        self.assertEqual(result.payout, Decimal("190.00"))

    async def test_instant_crash_pays_nobody(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100")
        await self.game.place_bet(2, "50", auto_cashout=1.01)
        round_ = await self.fly(1.0)
        with self.assertRaises(CashoutTooLate):
            await self.game.cashout(1)
        self.clock.now = round_.start_time
        self.assertTrue(await self.game.tick())
        await self.game.drain()
        self.assertEqual(await self.ledger.get_balance(1), Decimal("900.00"))
        self.assertEqual(await self.ledger.get_balance(2), Decimal("950.00"))

    async def test_concurrent_cashouts_settle_once(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100")
        round_ = await self.fly(5.0)
        self.clock.now = self.at(round_, 2.0, extra_ms=1)
        results = await asyncio.gather(self.game.cashout(1), self.game.cashout(1), return_exceptions=True)
        self.assertEqual(sum(1 for r in results if isinstance(r, InvalidStateTransition)), 1)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1100.00"))
        await self.ledger.reconcile(1)

    async def test_no_bet_no_wallet_change(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100")
        round_ = await self.fly(1.8)
        with self.assertRaises(InvalidStateTransition):
            await self.game.cashout(2)
        self.clock.now = self.at(round_, 1.8, extra_ms=1)
        await self.game.tick()
        await self.game.drain()
        self.assertEqual(await self.ledger.get_balance(2), Decimal("1000.00"))

    async def test_betting_rules(self):
        with self.assertRaises(InvalidStateTransition):
            await self.game.place_bet(1, "100")
        await self.game.open_betting()
        with self.assertRaises(InvalidBetAmount):
            await self.game.place_bet(1, "9")
        with self.assertRaises(InvalidBetAmount):
            await self.game.place_bet(1, "100", auto_cashout=1.0)
        with self.assertRaises(InsufficientBalance):
            await self.game.place_bet(1, "1000.01")
        self.assertIsNone(self.game.get_bet(1))

        await self.game.place_bet(1, "100")
        with self.assertRaises(InvalidStateTransition):
            await self.game.place_bet(1, "100")
        await self.fly(2.0)
        with self.assertRaises(InvalidStateTransition):
            await self.game.place_bet(2, "100")
        self.assertEqual(await self.ledger.get_balance(1), Decimal("900.00"))
        self.assertEqual(await self.ledger.get_balance(2), Decimal("1000.00"))

    async def test_phase_order(self):
        with self.assertRaises(InvalidStateTransition):
            await self.game.close_betting()
        await self.game.open_betting()
        with self.assertRaises(InvalidStateTransition):
            await self.game.open_betting()
        round_ = await self.fly(1.5)
        self.assertEqual(round_.phase, Phase.PLAYING)
        self.assertIsNotNone(round_.commitment)
        self.clock.now = self.at(round_, 1.5, extra_ms=1)
        await self.game.tick()
        self.assertEqual(round_.phase, Phase.CRASHED)
        self.assertEqual(self.event_types(), ["betting", "playing", "crashed"])

    async def test_history_is_most_recent_first(self):
        for point in (1.5, 3.0, 1.1):
            await self.game.open_betting()
            round_ = await self.fly(point)
            self.clock.now = self.at(round_, point, extra_ms=1)
            self.assertTrue(await self.game.tick())
        self.assertEqual(self.game.history, [1.1, 3.0, 1.5])

    async def test_state_hides_crash_point_until_crash(self):
        await self.game.open_betting()
        round_ = await self.fly(4.0)
        self.clock.now = self.at(round_, 2.0, extra_ms=1)
        state = self.game.state()
        self.assertEqual(state["phase"], "playing")
        self.assertEqual(state["multiplier"], 2.0)
        self.assertNotIn("crash_point", state)
        self.clock.now = self.at(round_, 4.0, extra_ms=1)
        await self.game.tick()
        self.assertEqual(self.game.state()["crash_point"], 4.0)

    async def test_stop_refunds_riding_bets(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100")
        await self.game.place_bet(2, "100")
        round_ = await self.fly(10.0)
        self.clock.now = self.at(round_, 1.5)
        await self.game.cashout(2)
        await self.game.stop()
        self.assertEqual(self.game.get_bet(1).status, REFUNDED)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1000.00"))
        self.assertEqual(await self.ledger.get_balance(2), Decimal("1050.00"))
        await self.ledger.reconcile(1)
        await self.ledger.reconcile(2)

    async def test_recover_orphaned_sessions(self):
        await self.game.open_betting()
        await self.game.place_bet(1, "100")
        # a new process finds the session still active
        fresh = CrashGame(self.ledger, clock=self.clock)
        self.assertEqual(await fresh.recover_orphaned_sessions(), 1)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1000.00"))
        self.assertEqual(await fresh.recover_orphaned_sessions(), 0)

    async def test_bet_after_round_loop_start(self):
        game = CrashGame(self.ledger, self.bus, clock=self.clock, betting_seconds=60)
        await game.start()
        try:
            bet = await game.place_bet(1, "100")
            self.assertEqual(bet.status, ACTIVE)
        finally:
            await game.stop()
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1000.00"))

    def decided_game(self) -> CrashGame:
        # numerator 1.0 and u = 0.5 crash at exactly 2.00x
        return CrashGame(self.ledger, clock=self.clock, numerator=1.0, rng=FixedDraws(0.5, 0.5),
                         settlement_retries=1, settlement_delay=0)

    async def test_unrecorded_outcome_is_settled_not_refunded_after_restart(self):
        game = self.decided_game()
        await game.open_betting()
        await game.place_bet(1, "100")
        await game.place_bet(2, "50", auto_cashout=1.5)
        round_ = await game.close_betting()
        self.assertEqual(round_.crash_point, 2.0)

        # storage goes away for the whole crash tick and its settlements
        with patch.object(self.ledger, "run", AsyncMock(side_effect=LedgerError("database down"))):
            self.clock.now = self.at(round_, 2.0, extra_ms=1)
            self.assertTrue(await game.tick())
            await game.drain()
        self.assertEqual(await self.ledger.get_balance(1), Decimal("900.00"))
        self.assertEqual(await self.ledger.get_balance(2), Decimal("950.00"))

        restarted = CrashGame(self.ledger, clock=self.clock)
        self.assertEqual(await restarted.recover_orphaned_sessions(), 2)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("900.00"))
        self.assertEqual(await self.ledger.get_balance(2), Decimal("1025.00"))
        self.assertEqual(await restarted.recover_orphaned_sessions(), 0)
        await self.ledger.reconcile(1)
        await self.ledger.reconcile(2)

    async def test_losses_are_retried(self):
        game = self.decided_game()
        await game.open_betting()
        await game.place_bet(1, "100")
        round_ = await game.close_betting()

        real_run = self.ledger.run
        failures = [LedgerError("database down")]

        async def flaky_run(work):
            if failures:
                raise failures.pop()
            return await real_run(work)

        with patch.object(self.ledger, "run", flaky_run):
            self.clock.now = self.at(round_, 2.0, extra_ms=1)
            await game.tick()
            await game.drain()
        # recorded on the retry, so nothing is left for recovery
        self.assertEqual(await CrashGame(self.ledger, clock=self.clock).recover_orphaned_sessions(), 0)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("900.00"))

    async def test_failed_crash_point_storage_refunds_the_round(self):
        game = self.decided_game()
        await game.open_betting()
        await game.place_bet(1, "100")
        with patch.object(self.ledger, "run", AsyncMock(side_effect=LedgerError("database down"))):
            with self.assertRaises(LedgerError):
                await game.close_betting()
        # an undecided round is refunded, as the round loop does after any error
        await game.stop()
        self.assertEqual(game.get_bet(1).status, REFUNDED)
        self.assertEqual(await self.ledger.get_balance(1), Decimal("1000.00"))


if __name__ == "__main__":
    unittest.main()
