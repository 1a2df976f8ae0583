"""
Random outcome generator.

Crash points and mine layouts are drawn from the operating system CSPRNG
(`secrets.SystemRandom`). If the entropy source is unavailable we raise
GeneratorFailure; there is no fallback to a predictable generator.

Crash points are committed with a salted SHA-256 digest when the round starts
flying and revealed when it crashes, so players can verify the value was not
changed mid-round.
"""

import hashlib
import logging
import random
import secrets
from typing import Optional, Set, Tuple

from errors import GeneratorFailure

logger = logging.getLogger(__name__)

_system_random = secrets.SystemRandom()


def generate_crash_point(
    house_edge: float = 0.04,
    numerator: float = 0.99,
    max_multiplier: float = 100.0,
    rng: Optional[random.Random] = None,
) -> float:
    """
    With probability `house_edge` the round crashes instantly at 1.00.
    Otherwise u ~ U(0, 1) and the crash point is numerator / (1 - u),
    clamped to [1, max_multiplier].
    """
    if not 0 <= house_edge < 1:
        raise ValueError(f"house_edge must be in [0, 1), got {house_edge}")
    rng = rng or _system_random
    try:
        if rng.random() < house_edge:
            return 1.0
        u = rng.random()
    except (OSError, NotImplementedError) as e:
        logger.critical("Entropy source unavailable: %s", e)
        raise GeneratorFailure("Entropy source unavailable") from e

    crash = numerator / (1.0 - u)
    return max(1.0, min(max_multiplier, crash))


def generate_mines_layout(
    mine_count: int,
    grid_size: int = 25,
    rng: Optional[random.Random] = None,
) -> Set[int]:
    """Pick `mine_count` distinct cells out of `grid_size`, without replacement."""
    if not 1 <= mine_count <= grid_size - 1:
        raise ValueError(f"mine_count must be between 1 and {grid_size - 1}")
    rng = rng or _system_random
    try:
        positions = rng.sample(range(grid_size), mine_count)
    except (OSError, NotImplementedError) as e:
        logger.critical("Entropy source unavailable: %s", e)
        raise GeneratorFailure("Entropy source unavailable") from e
    return set(positions)


def commit(round_id: str, crash_point: float) -> Tuple[str, str]:
    """Return (salt, digest) committing to `crash_point` for `round_id`."""
    salt = secrets.token_hex(16)
    return salt, _digest(round_id, crash_point, salt)


def verify_commitment(round_id: str, crash_point: float, salt: str, digest: str) -> bool:
    return secrets.compare_digest(_digest(round_id, crash_point, salt), digest)


def _digest(round_id: str, crash_point: float, salt: str) -> str:
    combined = f"{round_id}:{crash_point!r}:{salt}"
    return hashlib.sha256(combined.encode()).hexdigest()
