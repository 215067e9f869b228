"""
Ephemera — Dispatcher Tests

Tests:
  1. Concurrent deploy + cleanup for one environment end consistent
  2. At most one reconciliation per environment at a time
  3. Per-environment submission order preserved
  4. Lease held elsewhere → retried later, intents kept
  5. Crashing reconciler reported, lease released; a failed release
     never strands the environment
  6. Observations routed to the reconciler
"""

import os
import sys
import threading
import time
import unittest
from collections import Counter
from unittest.mock import MagicMock

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from infra.retry import RetryPolicy
from lifecycle.dispatcher import Dispatcher
from lifecycle.intents import IntentQueue
from lifecycle.lease import InMemoryLeaseManager
from lifecycle.provisioner import InMemoryProvisioner
from lifecycle.reconciler import HealthWaitConfig, Outcome, Reconciler
from lifecycle.store import InMemoryRegistry
from lifecycle.types import (
    EnvironmentState as S,
    Intent,
    IntentAction as A,
    NamingScheme,
    Observation,
    ResourceKind,
    ServiceSpec,
)


class SteppingClock:
    """Advances on every read so queued intents never fall inside the coalesce window."""

    def __init__(self):
        self.now = 0.0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.now += 10.0
            return self.now


class TrackingReconciler(Reconciler):
    """Records handled intents and the peak concurrency per environment."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.lock = threading.Lock()
        self.active = Counter()
        self.peak = Counter()
        self.total_active = 0
        self.total_peak = 0
        self.handled = []

    def handle(self, intent, lease=None, should_yield=None):
        env_id = intent.environment_id
        with self.lock:
            self.active[env_id] += 1
            self.peak[env_id] = max(self.peak[env_id], self.active[env_id])
            self.total_active += 1
            self.total_peak = max(self.total_peak, self.total_active)
            self.handled.append((env_id, intent.action))
        try:
            return super().handle(intent, lease=lease, should_yield=should_yield)
        finally:
            with self.lock:
                self.active[env_id] -= 1
                self.total_active -= 1


class DispatcherTestCase(unittest.TestCase):

    def setUp(self):
        self.registry = InMemoryRegistry()
        self.provisioner = InMemoryProvisioner(latency=0.002)
        self.leases = InMemoryLeaseManager()
        self.reconciler = TrackingReconciler(
            registry=self.registry,
            provisioner=self.provisioner,
            naming=NamingScheme(prefix="pr", domain="preview.test"),
            services=[ServiceSpec("web"), ServiceSpec("api", path_prefix="/api")],
            retry_policy=RetryPolicy(max_attempts=3, backoff_base=0.0, jitter=0.0,
                                     call_timeout_seconds=None),
            health=HealthWaitConfig(poll_interval_seconds=0.0, timeout_seconds=1.0),
            lease_manager=self.leases,
            lease_ttl=30,
            sleep_fn=lambda x: None,
        )
        self.queue = IntentQueue(coalesce_window=2.0, clock=SteppingClock())
        self.dispatcher = self.make_dispatcher(self.reconciler)

    def make_dispatcher(self, reconciler, **kwargs):
        return Dispatcher(
            queue=self.queue,
            reconciler=reconciler,
            lease_manager=self.leases,
            max_workers=4,
            lease_ttl=30,
            lease_retry_seconds=0.05,
            owner_id="test-worker",
            **kwargs,
        )

    def tearDown(self):
        self.dispatcher.shutdown(wait=True)

    def submit(self, action, env_id="1"):
        return self.dispatcher.submit(Intent.create(env_id, action))


class TestSerialization(DispatcherTestCase):

    def test_deploy_then_cleanup_ends_deleted(self):
        self.submit(A.DEPLOY)
        self.submit(A.CLEANUP)
        self.assertTrue(self.dispatcher.wait_idle(10))

        env = self.registry.get("1")
        self.assertEqual(env.state, S.DELETED)
        for kind in ResourceKind:
            self.assertEqual(self.provisioner.names(kind), [], kind)

    def test_cleanup_then_deploy_ends_active(self):
        self.submit(A.DEPLOY)
        self.assertTrue(self.dispatcher.wait_idle(10))
        self.submit(A.CLEANUP)
        self.submit(A.DEPLOY)
        self.assertTrue(self.dispatcher.wait_idle(10))

        env = self.registry.get("1")
        self.assertEqual(env.state, S.ACTIVE)
        self.assertEqual(sorted(env.resources.services), ["api", "web"])

    def test_one_reconciliation_per_environment_at_a_time(self):
        for _ in range(3):
            for env_id in ("1", "2", "3"):
                self.submit(A.DEPLOY, env_id)
                self.submit(A.CLEANUP, env_id)
        self.assertTrue(self.dispatcher.wait_idle(30))

        for env_id in ("1", "2", "3"):
            self.assertEqual(self.reconciler.peak[env_id], 1, env_id)
            self.assertEqual(self.registry.get(env_id).state, S.DELETED)
        duplicates = {k: n for k, n in self.provisioner.created.items() if n > 3}
        self.assertEqual(duplicates, {})

    def test_submission_order_preserved(self):
        for action in (A.DEPLOY, A.CLEANUP, A.DEPLOY, A.RESTART):
            self.submit(action)
        self.assertTrue(self.dispatcher.wait_idle(10))
        handled = [action for env_id, action in self.reconciler.handled if env_id == "1"]
        self.assertEqual(handled, [A.DEPLOY, A.CLEANUP, A.DEPLOY, A.RESTART])
        self.assertEqual(self.registry.get("1").state, S.ACTIVE)

    def test_environments_reconciled_in_parallel(self):
        self.provisioner.latency = 0.01
        for env_id in ("a", "b", "c", "d"):
            self.submit(A.DEPLOY, env_id)
        self.assertTrue(self.dispatcher.wait_idle(30))
        self.assertGreater(self.reconciler.total_peak, 1)
        for env_id in ("a", "b", "c", "d"):
            self.assertEqual(self.registry.get(env_id).state, S.ACTIVE)

    def test_lease_released_after_drain(self):
        self.submit(A.DEPLOY)
        self.assertTrue(self.dispatcher.wait_idle(10))
        self.assertIsNone(self.leases.holder("1"))


class TestLeaseContention(DispatcherTestCase):

    def test_lease_held_elsewhere_retries_and_keeps_intent(self):
        foreign = self.leases.acquire("1", "other-host", ttl=30)
        self.submit(A.DEPLOY)

        self.assertFalse(self.dispatcher.wait_idle(0.3))
        self.assertIsNone(self.registry.get("1"))
        self.assertEqual(self.queue.pending_count("1"), 1)

        self.leases.release(foreign)
        self.assertTrue(self.dispatcher.wait_idle(10))
        self.assertEqual(self.registry.get("1").state, S.ACTIVE)

    def test_lease_acquire_failure_retried(self):
        flaky = MagicMock(wraps=self.leases)
        flaky.acquire.side_effect = [ConnectionError("lease store down"),
                                     self.leases.acquire("1", "test-worker", 30)]
        self.dispatcher.shutdown()
        self.dispatcher = Dispatcher(
            queue=self.queue, reconciler=self.reconciler, lease_manager=flaky,
            max_workers=2, lease_ttl=30, lease_retry_seconds=0.05,
        )
        self.submit(A.DEPLOY)
        self.assertTrue(self.dispatcher.wait_idle(10))
        self.assertEqual(self.registry.get("1").state, S.ACTIVE)
        self.assertEqual(flaky.acquire.call_count, 2)

    def test_failed_release_does_not_strand_environment(self):
        flaky = MagicMock(wraps=self.leases)
        failures = [ConnectionError("lease store down")]

        def release(lease):
            released = self.leases.release(lease)
            if failures:
                # Release reached the store but the reply was lost
                raise failures.pop()
            return released

        flaky.release.side_effect = release
        self.dispatcher.shutdown()
        self.dispatcher = Dispatcher(
            queue=self.queue, reconciler=self.reconciler, lease_manager=flaky,
            max_workers=2, lease_ttl=30, lease_retry_seconds=0.05,
        )
        self.submit(A.DEPLOY)
        self.assertTrue(self.dispatcher.wait_idle(10))
        self.assertEqual(self.dispatcher.stats()["active_environments"], [])

        self.submit(A.CLEANUP)
        self.assertTrue(self.dispatcher.wait_idle(10))
        self.assertEqual(self.registry.get("1").state, S.DELETED)
        self.assertEqual(flaky.release.call_count, 2)


class TestFailures(DispatcherTestCase):

    def test_crashing_reconciler_reported(self):
        broken = MagicMock()
        broken.handle.side_effect = RuntimeError("kaboom")
        self.dispatcher.shutdown()
        self.dispatcher = self.make_dispatcher(broken)
        results = []
        self.dispatcher.add_listener(results.append)

        self.submit(A.DEPLOY)
        self.assertTrue(self.dispatcher.wait_idle(10))

        self.assertEqual(len(results), 1)
        self.assertEqual(results[0].outcome, Outcome.REJECTED)
        self.assertIn("kaboom", results[0].reason)
        self.assertIsNone(self.leases.holder("1"))

    def test_listener_failure_does_not_stop_worker(self):
        def explode(result):
            raise RuntimeError("listener down")

        self.dispatcher.add_listener(explode)
        self.submit(A.DEPLOY)
        self.submit(A.RESTART, "2")
        self.assertTrue(self.dispatcher.wait_idle(10))
        self.assertEqual(self.registry.get("1").state, S.ACTIVE)


class TestObservationsAndStats(DispatcherTestCase):

    def test_observation_applied_after_deploy(self):
        self.submit(A.DEPLOY)
        self.dispatcher.observe(Observation.create("1", closed=True))
        self.assertTrue(self.dispatcher.wait_idle(10))
        env = self.registry.get("1")
        self.assertTrue(env.closed)
        self.assertEqual(env.state, S.ACTIVE)

    def test_recent_results_and_stats(self):
        self.submit(A.DEPLOY)
        self.submit(A.RESTART, "missing")
        self.assertTrue(self.dispatcher.wait_idle(10))

        ok = self.dispatcher.recent_results("1")
        self.assertEqual(ok[-1].outcome, Outcome.APPLIED)
        rejected = self.dispatcher.recent_results("missing")
        self.assertEqual(rejected[-1].outcome, Outcome.REJECTED)

        stats = self.dispatcher.stats()
        self.assertEqual(stats["owner_id"], "test-worker")
        self.assertEqual(stats["active_environments"], [])
        self.assertEqual(stats["pending"], 0)
        self.assertEqual(stats["outcomes"]["applied"], 1)
        self.assertEqual(stats["outcomes"]["rejected"], 1)

    def test_shutdown_stops_scheduling(self):
        self.dispatcher.shutdown()
        self.submit(A.DEPLOY)
        time.sleep(0.1)
        self.assertIsNone(self.registry.get("1"))


if __name__ == "__main__":
    unittest.main()
