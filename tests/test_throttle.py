"""
Ephemera — Provisioner Throttle Tests

Tests:
  - Config read from rate_limits.provisioner / rate_limits.default
  - In-flight calls never exceed max_concurrent
  - Full throttle raises BackpressureError, a transient error
  - Per-minute budget delays calls, then rejects past queue_timeout
  - A throttled deploy either waits its turn or degrades as "backpressure"
"""

import os
import sys
import threading
import time
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from infra.retry import RetryPolicy
from lifecycle.errors import BackpressureError, TransientError
from lifecycle.provisioner import InMemoryProvisioner
from lifecycle.reconciler import HealthWaitConfig, Outcome, Reconciler
from lifecycle.store import InMemoryRegistry
from lifecycle.throttle import ProvisionerThrottle, ThrottleConfig
from lifecycle.types import EnvironmentState as S, Intent, IntentAction as A


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


class TestThrottleConfig(unittest.TestCase):

    def test_provisioner_section(self):
        cfg = {"rate_limits": {"provisioner": {"max_concurrent": 4,
                                               "requests_per_minute": 120,
                                               "queue_timeout": 5}}}
        config = ThrottleConfig.from_config(cfg)
        self.assertEqual(config.max_concurrent, 4)
        self.assertEqual(config.requests_per_minute, 120)
        self.assertEqual(config.queue_timeout, 5.0)

    def test_default_section_fallback(self):
        cfg = {"rate_limits": {"default": {"max_concurrent": 2}}}
        self.assertEqual(ThrottleConfig.from_config(cfg).max_concurrent, 2)

    def test_missing_section_uses_defaults(self):
        self.assertEqual(ThrottleConfig.from_config({}), ThrottleConfig())


class TestConcurrency(unittest.TestCase):

    def test_in_flight_never_exceeds_max_concurrent(self):
        throttle = ProvisionerThrottle(ThrottleConfig(max_concurrent=2, requests_per_minute=0))
        lock = threading.Lock()
        current, peak = [0], [0]

        def call():
            with throttle.slot("ensure_service"):
                with lock:
                    current[0] += 1
                    peak[0] = max(peak[0], current[0])
                time.sleep(0.02)
                with lock:
                    current[0] -= 1

        threads = [threading.Thread(target=call) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        self.assertLessEqual(peak[0], 2)
        self.assertEqual(throttle.stats()["calls"], 6)
        self.assertEqual(throttle.stats()["in_flight"], 0)

    def test_full_throttle_raises_backpressure(self):
        throttle = ProvisionerThrottle(ThrottleConfig(max_concurrent=1, requests_per_minute=0,
                                                      queue_timeout=0.05))
        held, release = threading.Event(), threading.Event()

        def hold():
            with throttle.slot("ensure_namespace"):
                held.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        try:
            self.assertTrue(held.wait(5))
            with self.assertRaises(BackpressureError) as ctx:
                with throttle.slot("ensure_dns"):
                    pass
        finally:
            release.set()
            holder.join(timeout=5)

        self.assertIsInstance(ctx.exception, TransientError)
        self.assertEqual(ctx.exception.kind, "backpressure")
        self.assertIn("ensure_dns", str(ctx.exception))
        self.assertEqual(throttle.stats()["rejected"], 1)

    def test_slot_released_when_call_fails(self):
        throttle = ProvisionerThrottle(ThrottleConfig(max_concurrent=1, requests_per_minute=0,
                                                      queue_timeout=0.05))
        with self.assertRaises(ValueError):
            with throttle.slot():
                raise ValueError("provisioner blew up")
        with throttle.slot():
            pass
        self.assertEqual(throttle.stats()["in_flight"], 0)


class TestPerMinuteBudget(unittest.TestCase):

    def make(self, per_minute, queue_timeout):
        clock = FakeClock()
        throttle = ProvisionerThrottle(
            ThrottleConfig(max_concurrent=10, requests_per_minute=per_minute,
                           queue_timeout=queue_timeout),
            clock=clock, sleep_fn=clock.sleep)
        return throttle, clock

    def test_budget_delays_next_call(self):
        throttle, clock = self.make(per_minute=2, queue_timeout=60)
        for _ in range(3):
            with throttle.slot():
                pass
        self.assertAlmostEqual(clock.now, 30.0, places=3)
        self.assertEqual(throttle.stats()["delayed"], 1)

    def test_budget_exhausted_past_queue_timeout(self):
        throttle, clock = self.make(per_minute=1, queue_timeout=10)
        with throttle.slot():
            pass
        with self.assertRaises(BackpressureError):
            with throttle.slot("ensure_route"):
                pass
        self.assertAlmostEqual(clock.now, 10.0, places=3)
        self.assertEqual(throttle.stats()["rejected"], 1)

    def test_zero_disables_budget(self):
        throttle, clock = self.make(per_minute=0, queue_timeout=1)
        for _ in range(100):
            with throttle.slot():
                pass
        self.assertEqual(clock.now, 0.0)
        self.assertEqual(throttle.stats()["calls"], 100)


class TestThrottledDeploy(unittest.TestCase):

    def deploy(self, per_minute, queue_timeout):
        clock = FakeClock()
        throttle = ProvisionerThrottle(
            ThrottleConfig(max_concurrent=4, requests_per_minute=per_minute,
                           queue_timeout=queue_timeout),
            clock=clock, sleep_fn=clock.sleep)
        self.registry = InMemoryRegistry()
        reconciler = Reconciler(
            registry=self.registry,
            provisioner=InMemoryProvisioner(),
            retry_policy=RetryPolicy(max_attempts=3, backoff_base=0.0, jitter=0.0,
                                     call_timeout_seconds=None),
            throttle=throttle,
            health=HealthWaitConfig(poll_interval_seconds=0.0, timeout_seconds=1.0),
            sleep_fn=lambda x: None,
        )
        return reconciler.handle(Intent.create("1", A.DEPLOY)), throttle

    def test_deploy_waits_for_budget(self):
        result, throttle = self.deploy(per_minute=2, queue_timeout=40)
        self.assertEqual(result.state, S.ACTIVE)
        self.assertGreater(throttle.stats()["delayed"], 0)
        self.assertEqual(throttle.stats()["rejected"], 0)

    def test_deploy_degrades_when_throttle_never_frees(self):
        result, throttle = self.deploy(per_minute=1, queue_timeout=1)
        self.assertEqual(result.outcome, Outcome.DEGRADED)
        error = self.registry.get("1").last_error
        self.assertEqual(error.kind, "backpressure")
        self.assertEqual(error.retry_count, 3)
        self.assertEqual(throttle.stats()["rejected"], 3)


if __name__ == "__main__":
    unittest.main()
