"""Errors raised by the wager/settlement core. main.py maps them to HTTP codes."""


class CasinoError(Exception):
    """Base error"""


class InvalidBetAmount(CasinoError):
    """Below the minimum, above the maximum, or otherwise malformed amount."""


class InsufficientBalance(CasinoError):
    """Debit rejected: the wallet does not cover the amount."""


class InvalidStateTransition(CasinoError):
    """Action performed in a state that does not allow it."""


class InvalidMove(CasinoError):
    """A move that can never be valid, e.g. a cell outside the grid."""


class NotFound(CasinoError):
    pass


class GameNotFound(NotFound):
    pass


class ConcurrentModification(CasinoError):
    """A race on shared round state, resolved by the tie-break rule."""


class CashoutTooLate(ConcurrentModification):
    """The cash-out was evaluated at or after the crash point."""


class LedgerError(CasinoError):
    """The ledger could not apply a movement (storage unavailable)."""


class LedgerInconsistency(LedgerError):
    """Balance and transaction history disagree."""


class GeneratorFailure(CasinoError):
    """No fair outcome could be produced."""
