"""
Ephemera — Lease Tests

Tests:
  1. Exclusive acquire, expiry, takeover (memory, SQLite, Redis)
  2. Renew / release by token; a stale holder cannot touch the new lease
  3. create_lease_manager backend selection
"""

import os
import sys
import tempfile
import shutil
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from lifecycle.errors import LeaseLostError
from lifecycle.lease import (
    _RELEASE_SCRIPT,
    _RENEW_SCRIPT,
    InMemoryLeaseManager,
    RedisLeaseManager,
    SQLiteLeaseManager,
    create_lease_manager,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRedis:
    """Just enough of redis.Redis for the lease manager, expiring on a fake clock."""

    def __init__(self, clock):
        self.clock = clock
        self.data = {}
        self.closed = False

    def _live(self, key):
        entry = self.data.get(key)
        if entry is None:
            return None
        value, expires = entry
        if expires <= self.clock():
            del self.data[key]
            return None
        return value

    def set(self, key, value, nx=False, px=None):
        if nx and self._live(key) is not None:
            return None
        self.data[key] = (value, self.clock() + px / 1000.0)
        return True

    def get(self, key):
        return self._live(key)

    def eval(self, script, numkeys, key, value, *args):
        if self._live(key) != value:
            return 0
        if script == _RENEW_SCRIPT:
            self.data[key] = (value, self.clock() + int(args[0]) / 1000.0)
            return 1
        if script == _RELEASE_SCRIPT:
            del self.data[key]
            return 1
        raise AssertionError("unexpected script")

    def close(self):
        self.closed = True


class LeaseContract:

    def make_manager(self, clock):
        raise NotImplementedError

    def setUp(self):
        self.clock = FakeClock()
        self.leases = self.make_manager(self.clock)

    def tearDown(self):
        self.leases.close()

    def test_acquire_is_exclusive(self):
        lease = self.leases.acquire("1", "worker-a", ttl=30)
        self.assertIsNotNone(lease)
        self.assertEqual(lease.owner, "worker-a")
        self.assertIsNone(self.leases.acquire("1", "worker-b", ttl=30))
        self.assertEqual(self.leases.holder("1"), "worker-a")

    def test_different_environments_independent(self):
        self.assertIsNotNone(self.leases.acquire("1", "worker-a", ttl=30))
        self.assertIsNotNone(self.leases.acquire("2", "worker-b", ttl=30))

    def test_expired_lease_can_be_taken_over(self):
        self.leases.acquire("1", "worker-a", ttl=30)
        self.clock.advance(31)
        self.assertIsNone(self.leases.holder("1"))
        lease = self.leases.acquire("1", "worker-b", ttl=30)
        self.assertIsNotNone(lease)
        self.assertEqual(self.leases.holder("1"), "worker-b")

    def test_renew_extends(self):
        lease = self.leases.acquire("1", "worker-a", ttl=30)
        self.clock.advance(20)
        renewed = self.leases.renew(lease, ttl=30)
        self.assertEqual(renewed.token, lease.token)
        self.clock.advance(20)
        self.assertEqual(self.leases.holder("1"), "worker-a")

    def test_renew_after_expiry_raises(self):
        lease = self.leases.acquire("1", "worker-a", ttl=30)
        self.clock.advance(31)
        with self.assertRaises(LeaseLostError):
            self.leases.renew(lease, ttl=30)

    def test_stale_holder_cannot_renew_or_release_new_lease(self):
        old = self.leases.acquire("1", "worker-a", ttl=30)
        self.clock.advance(31)
        new = self.leases.acquire("1", "worker-b", ttl=30)

        with self.assertRaises(LeaseLostError):
            self.leases.renew(old, ttl=30)
        self.assertFalse(self.leases.release(old))
        self.assertEqual(self.leases.holder("1"), "worker-b")
        self.assertTrue(self.leases.release(new))

    def test_release_frees(self):
        lease = self.leases.acquire("1", "worker-a", ttl=30)
        self.assertTrue(self.leases.release(lease))
        self.assertIsNone(self.leases.holder("1"))
        self.assertIsNotNone(self.leases.acquire("1", "worker-b", ttl=30))

    def test_release_twice(self):
        lease = self.leases.acquire("1", "worker-a", ttl=30)
        self.assertTrue(self.leases.release(lease))
        self.assertFalse(self.leases.release(lease))


class TestInMemoryLeases(LeaseContract, unittest.TestCase):

    def make_manager(self, clock):
        return InMemoryLeaseManager(clock=clock)


class TestSQLiteLeases(LeaseContract, unittest.TestCase):

    def make_manager(self, clock):
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.tmpdir, "leases.db")
        return SQLiteLeaseManager(self.db_path, clock=clock)

    def tearDown(self):
        super().tearDown()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_two_managers_share_one_file(self):
        other = SQLiteLeaseManager(self.db_path, clock=self.clock)
        try:
            self.assertIsNotNone(self.leases.acquire("1", "host-a", ttl=30))
            self.assertIsNone(other.acquire("1", "host-b", ttl=30))
            self.assertEqual(other.holder("1"), "host-a")
        finally:
            other.close()


class TestRedisLeases(LeaseContract, unittest.TestCase):

    def make_manager(self, clock):
        self.fake = FakeRedis(clock)
        return RedisLeaseManager(client=self.fake, clock=clock)

    def test_key_layout(self):
        lease = self.leases.acquire("42", "worker-a", ttl=30)
        value, _ = self.fake.data["ephemera:lease:42"]
        self.assertEqual(value, f"worker-a|{lease.token}")

    def test_holder_decodes_bytes(self):
        self.fake.data["ephemera:lease:9"] = (b"worker-z|abc", self.clock() + 10)
        self.assertEqual(self.leases.holder("9"), "worker-z")

    def test_close_closes_client(self):
        self.leases.close()
        self.assertTrue(self.fake.closed)


class TestCreateLeaseManager(unittest.TestCase):

    def test_memory(self):
        self.assertIsInstance(create_lease_manager({"lease": {"backend": "memory"}}),
                              InMemoryLeaseManager)

    def test_sqlite_defaults_to_registry_path(self):
        mgr = create_lease_manager({
            "lease": {"backend": "sqlite"},
            "registry": {"path": ":memory:"},
        })
        try:
            self.assertIsInstance(mgr, SQLiteLeaseManager)
            self.assertEqual(mgr.db_path, ":memory:")
        finally:
            mgr.close()

    def test_unknown(self):
        with self.assertRaises(ValueError):
            create_lease_manager({"lease": {"backend": "zookeeper"}})


if __name__ == "__main__":
    unittest.main()
