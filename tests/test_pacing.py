"""Tests for the fixed-interval rate gate."""

import unittest

from noveltracker.pacing import RateGate, site_key


class FakeClock:

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateGate(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.gate = RateGate(2.0, clock=self.clock, sleep=self.clock.sleep)

    async def test_first_request_passes_immediately(self):
        self.assertEqual(await self.gate.wait("example.com"), 0.0)
        self.assertEqual(self.clock.sleeps, [])

    async def test_back_to_back_requests_are_spaced(self):
        await self.gate.wait("example.com")
        waited = await self.gate.wait("example.com")
        self.assertEqual(waited, 2.0)
        self.assertEqual(self.clock.sleeps, [2.0])

    async def test_partial_wait_after_some_time_passed(self):
        await self.gate.wait("example.com")
        self.clock.now += 1.5
        self.assertAlmostEqual(await self.gate.wait("example.com"), 0.5)

    async def test_keys_are_paced_independently(self):
        await self.gate.wait("a.example.com")
        self.assertEqual(await self.gate.wait("b.example.com"), 0.0)

    async def test_no_wait_once_interval_elapsed(self):
        await self.gate.wait()
        self.clock.now += 5
        self.assertEqual(await self.gate.wait(), 0.0)

    async def test_reset_forgets_history(self):
        await self.gate.wait("example.com")
        self.gate.reset()
        self.assertEqual(await self.gate.wait("example.com"), 0.0)

    async def test_zero_interval_never_sleeps(self):
        gate = RateGate(0, clock=self.clock, sleep=self.clock.sleep)
        for _ in range(3):
            await gate.wait("example.com")
        self.assertEqual(self.clock.sleeps, [])


class TestSiteKey(unittest.TestCase):

    def test_host_is_the_key(self):
        self.assertEqual(site_key("https://WWW.Example.com/book/1.html"), "www.example.com")

    def test_non_url_falls_back_to_input(self):
        self.assertEqual(site_key("not a url"), "not a url")


if __name__ == "__main__":
    unittest.main()
