import random
import unittest

import fairness
from errors import GeneratorFailure


class BrokenEntropy(random.Random):
    def random(self):
        raise OSError("no entropy")

    def sample(self, population, k, **kwargs):
        raise OSError("no entropy")


class CrashPointTests(unittest.TestCase):
    def setUp(self):
        rng = random.Random(1234)
        self.points = [fairness.generate_crash_point(rng=rng) for _ in range(20000)]

    def test_bounds(self):
        self.assertTrue(all(1.0 <= p <= 100.0 for p in self.points))

    def test_instant_crash_frequency(self):
        # house edge plus the draws below 1.00 that clamp up: 0.04 + 0.96 * 0.01
        share = sum(1 for p in self.points if p == 1.0) / len(self.points)
        self.assertAlmostEqual(share, 0.0496, delta=0.008)

    def test_doubling_frequency(self):
        # 0.96 * P(0.99 / (1 - u) >= 2) = 0.96 * 0.495
        share = sum(1 for p in self.points if p >= 2.0) / len(self.points)
        self.assertAlmostEqual(share, 0.4752, delta=0.02)

    def test_return_to_player_reflects_edge(self):
        # a fixed 2.00x cash-out only pays when the round flies past it
        returns = [2.0 if p > 2.0 else 0.0 for p in self.points]
        self.assertAlmostEqual(sum(returns) / len(returns), 0.9504, delta=0.04)

    def test_zero_edge_never_forces_instant_crash(self):
        rng = random.Random(7)
        points = [fairness.generate_crash_point(house_edge=0.0, rng=rng) for _ in range(5000)]
        share = sum(1 for p in points if p == 1.0) / len(points)
        self.assertLess(share, 0.02)

    def test_entropy_failure(self):
        with self.assertRaises(GeneratorFailure):
            fairness.generate_crash_point(rng=BrokenEntropy())

    def test_invalid_edge(self):
        with self.assertRaises(ValueError):
            fairness.generate_crash_point(house_edge=1.0)


class MinesLayoutTests(unittest.TestCase):
    def test_distinct_positions_inside_grid(self):
        rng = random.Random(99)
        for count in (1, 5, 24):
            mines = fairness.generate_mines_layout(count, rng=rng)
            self.assertEqual(len(mines), count)
            self.assertTrue(all(0 <= m < 25 for m in mines))

    def test_every_cell_can_hold_a_mine(self):
        rng = random.Random(5)
        seen = set()
        for _ in range(500):
            seen |= fairness.generate_mines_layout(3, rng=rng)
        self.assertEqual(seen, set(range(25)))

    def test_invalid_count(self):
        with self.assertRaises(ValueError):
            fairness.generate_mines_layout(0)
        with self.assertRaises(ValueError):
            fairness.generate_mines_layout(25)

    def test_entropy_failure(self):
        with self.assertRaises(GeneratorFailure):
            fairness.generate_mines_layout(5, rng=BrokenEntropy())


class CommitmentTests(unittest.TestCase):
    def test_commitment_verifies(self):
        salt, digest = fairness.commit("round1", 2.37)
        self.assertTrue(fairness.verify_commitment("round1", 2.37, salt, digest))

    def test_commitment_binds_the_crash_point(self):
        salt, digest = fairness.commit("round1", 2.37)
        self.assertFalse(fairness.verify_commitment("round1", 2.38, salt, digest))
        self.assertFalse(fairness.verify_commitment("round2", 2.37, salt, digest))


if __name__ == "__main__":
    unittest.main()
