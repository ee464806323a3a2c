import os
from unittest import IsolatedAsyncioTestCase

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("JWT_SECRET", "test-secret")

from filecdn.security.blocklist import Blocklist  # noqa: E402

from fakes import FakeClock, FakeRedis  # noqa: E402


class BlocklistTests(IsolatedAsyncioTestCase):
    def setUp(self):
        self.clock = FakeClock()

    async def test_block_expires_after_duration(self):
        bl = Blocklist(clock=self.clock)
        await bl.block("1.2.3.4", "testing", duration=60)
        self.assertTrue(await bl.is_blocked("1.2.3.4"))
        self.clock.advance(61)
        self.assertFalse(await bl.is_blocked("1.2.3.4"))
        self.assertEqual(bl.entries(), [])

    async def test_default_duration(self):
        bl = Blocklist(default_duration=100, clock=self.clock)
        entry = await bl.block("1.2.3.4", "testing")
        self.assertEqual(entry.expires_at, self.clock.now + 100)

    async def test_sweep_drops_only_expired(self):
        bl = Blocklist(clock=self.clock)
        await bl.block("1.1.1.1", "short", duration=10)
        await bl.block("2.2.2.2", "long", duration=1000)
        self.clock.advance(11)
        self.assertEqual(bl.sweep(), 1)
        self.assertEqual([e.ip for e in bl.entries()], ["2.2.2.2"])

    async def test_static_entries_always_blocked(self):
        bl = Blocklist(static_ips={"6.6.6.6"}, clock=self.clock)
        self.clock.advance(10**6)
        self.assertTrue(await bl.is_blocked("6.6.6.6"))
        self.assertFalse(await bl.is_blocked("7.7.7.7"))

    async def test_local_map_is_bounded(self):
        bl = Blocklist(max_entries=2, clock=self.clock)
        await bl.block("1.1.1.1", "a", duration=10)
        await bl.block("2.2.2.2", "b", duration=500)
        await bl.block("3.3.3.3", "c", duration=500)
        ips = {e.ip for e in bl.entries()}
        # the soonest-expiring entry made room
        self.assertEqual(ips, {"2.2.2.2", "3.3.3.3"})

    async def test_unblock(self):
        bl = Blocklist(clock=self.clock)
        await bl.block("1.2.3.4", "testing")
        self.assertTrue(await bl.unblock("1.2.3.4"))
        self.assertFalse(await bl.is_blocked("1.2.3.4"))
        self.assertFalse(await bl.unblock("1.2.3.4"))

    async def test_block_is_mirrored_to_redis_in_seconds(self):
        redis = FakeRedis()
        bl = Blocklist(redis=redis, clock=self.clock)
        await bl.block("1.2.3.4", "testing", duration=3600)
        self.assertEqual(redis.values["blocked:1.2.3.4"], "testing")
        self.assertEqual(redis.ttls["blocked:1.2.3.4"], 3600)

    async def test_local_miss_consults_redis(self):
        redis = FakeRedis()
        await redis.set("blocked:5.5.5.5", "set by another worker", ex=120)
        bl = Blocklist(redis=redis, clock=self.clock)
        self.assertTrue(await bl.is_blocked("5.5.5.5"))
        self.assertEqual([e.ip for e in bl.entries()], ["5.5.5.5"])

    async def test_load_restores_entries(self):
        redis = FakeRedis()
        await redis.set("blocked:5.5.5.5", "one", ex=120)
        await redis.set("blocked:6.6.6.6", "two", ex=240)
        await redis.set("unrelated", "x")
        bl = Blocklist(redis=redis, clock=self.clock)
        self.assertEqual(await bl.load(), 2)
        self.assertEqual({e.ip for e in bl.entries()}, {"5.5.5.5", "6.6.6.6"})

    async def test_unblock_removes_redis_key(self):
        redis = FakeRedis()
        bl = Blocklist(redis=redis, clock=self.clock)
        await bl.block("1.2.3.4", "testing")
        await bl.unblock("1.2.3.4")
        self.assertNotIn("blocked:1.2.3.4", redis.values)
        self.assertFalse(await bl.is_blocked("1.2.3.4"))
