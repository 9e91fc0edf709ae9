# PATH: tests/unit/test_time.py
"""
Unit tests for time utilities.
"""

import unittest

from core.time import IntervalTimer, monotonic, now_iso, now_ms, now_utc


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestNowFunctions(unittest.TestCase):
    """Tests for now_* functions."""

    def test_now_utc(self):
        """now_utc returns timezone-aware datetime."""
        self.assertIsNotNone(now_utc().tzinfo)

    def test_now_iso(self):
        iso = now_iso()
        self.assertIn("T", iso)
        self.assertIn("+", iso)

    def test_now_ms(self):
        self.assertGreater(now_ms(), 1_600_000_000_000)

    def test_monotonic_never_decreases(self):
        first = monotonic()
        self.assertGreaterEqual(monotonic(), first)


class TestIntervalTimer(unittest.TestCase):

    def test_unmarked_timer_is_due(self):
        timer = IntervalTimer(60, FakeClock())
        self.assertTrue(timer.due())
        self.assertIsNone(timer.seconds_since())

    def test_start_marked_waits_full_interval(self):
        clock = FakeClock()
        timer = IntervalTimer(60, clock, start_marked=True)
        self.assertFalse(timer.due())

        clock.advance(59)
        self.assertFalse(timer.due())

        clock.advance(1)
        self.assertTrue(timer.due())

    def test_mark_resets(self):
        clock = FakeClock()
        timer = IntervalTimer(10, clock)
        timer.mark()
        clock.advance(4)
        self.assertEqual(timer.seconds_since(), 4)
        self.assertFalse(timer.due())

    def test_zero_interval_disabled(self):
        self.assertFalse(IntervalTimer(0, FakeClock()).due())


if __name__ == "__main__":
    unittest.main()
