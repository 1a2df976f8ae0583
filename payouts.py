"""
Multiplier and payout math. Pure functions only.

Crash curve:  m(t) = 1 + s * (base_speed + s * 1000 / acceleration_ms), s = t / 1000
Mines:        m(k) = (1 - edge) * prod_{i<k} safe / (safe - i), capped, m(0) = 1
"""

import math
from decimal import ROUND_DOWN, Decimal

from models import CENT

CRASH_BASE_SPEED = 0.3
CRASH_ACCELERATION_MS = 30000.0


def crash_multiplier_at(
    elapsed_ms: float,
    base_speed: float = CRASH_BASE_SPEED,
    acceleration_ms: float = CRASH_ACCELERATION_MS,
) -> float:
    if elapsed_ms <= 0:
        return 1.0
    speed = base_speed + elapsed_ms / acceleration_ms
    return 1.0 + (elapsed_ms / 1000.0) * speed


def crash_elapsed_ms_for(
    multiplier: float,
    base_speed: float = CRASH_BASE_SPEED,
    acceleration_ms: float = CRASH_ACCELERATION_MS,
) -> float:
    """Inverse of crash_multiplier_at: the instant the curve reaches `multiplier`."""
    if multiplier <= 1.0:
        return 0.0
    # 1 + s*b + s^2 * (1000/A) = m, solved for s >= 0
    a = 1000.0 / acceleration_ms
    s = (-base_speed + math.sqrt(base_speed * base_speed + 4 * a * (multiplier - 1.0))) / (2 * a)
    return s * 1000.0


def floor_multiplier(multiplier: float) -> float:
    """Truncate to the 2 places shown to players; never rounds up."""
    return math.floor(round(multiplier * 100, 6)) / 100


def mines_multiplier_at(
    revealed: int,
    mine_count: int,
    house_edge: float = 0.03,
    max_multiplier: float = 25.0,
    grid_size: int = 25,
) -> float:
    if not 1 <= mine_count <= grid_size - 1:
        raise ValueError(f"mine_count must be between 1 and {grid_size - 1}")
    safe_spots = grid_size - mine_count
    if not 0 <= revealed <= safe_spots:
        raise ValueError(f"revealed must be between 0 and {safe_spots}")
    if revealed == 0:
        return 1.0

    multiplier = 1.0
    for i in range(revealed):
        # i < revealed <= safe_spots, so the divisor stays positive
        multiplier *= safe_spots / (safe_spots - i)
    return min(multiplier * (1.0 - house_edge), max_multiplier)


def compute_payout(bet_amount: Decimal, multiplier: float) -> Decimal:
    """bet * multiplier in whole cents, rounded down in the house's favour."""
    payout = Decimal(bet_amount) * Decimal(str(multiplier))
    return payout.quantize(CENT, rounding=ROUND_DOWN)
