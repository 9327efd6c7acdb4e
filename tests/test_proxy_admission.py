#!/usr/bin/env python3
"""
Tests for the fixed-window rate limiter
"""
import unittest

from proxy_admission import RateLimiter


class TestRateLimiter(unittest.TestCase):

    def setUp(self):
        self.now = 0.0
        self.limiter = RateLimiter(window=60, max_requests=3, clock=lambda: self.now)

    def test_allows_up_to_ceiling(self):
        decisions = [self.limiter.hit('1.2.3.4') for _ in range(4)]
        self.assertEqual([d.allowed for d in decisions], [True, True, True, False])
        self.assertEqual([d.remaining for d in decisions], [2, 1, 0, 0])

    def test_clients_are_independent(self):
        for _ in range(3):
            self.limiter.hit('a')
        self.assertFalse(self.limiter.hit('a').allowed)
        self.assertTrue(self.limiter.hit('b').allowed)

    def test_window_resets(self):
        for _ in range(4):
            self.limiter.hit('a')
        self.now = 59
        decision = self.limiter.hit('a')
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.reset_in, 1)
        self.now = 60
        self.assertTrue(self.limiter.hit('a').allowed)

    def test_reset_clears_state(self):
        for _ in range(4):
            self.limiter.hit('a')
        self.limiter.reset()
        self.assertTrue(self.limiter.hit('a').allowed)


if __name__ == '__main__':
    unittest.main()
