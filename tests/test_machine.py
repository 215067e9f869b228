"""
Ephemera — State Machine Tests
"""

import os
import sys
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from lifecycle.errors import InvalidTransition
from lifecycle.machine import Plan, assert_transition, can_transition, plan
from lifecycle.types import EnvironmentState as S, IntentAction as A


class TestPlan(unittest.TestCase):

    def test_absent_environment(self):
        self.assertEqual(plan(None, A.DEPLOY), Plan.PROVISION)
        self.assertEqual(plan(None, A.RESTART), Plan.REJECT_NOT_FOUND)
        self.assertEqual(plan(None, A.CLEANUP), Plan.REJECT_NOT_FOUND)

    def test_deleted_environment(self):
        self.assertEqual(plan(S.DELETED, A.DEPLOY), Plan.PROVISION)
        self.assertEqual(plan(S.DELETED, A.RESTART), Plan.REJECT_NOT_FOUND)
        self.assertEqual(plan(S.DELETED, A.CLEANUP), Plan.REJECT_NOT_FOUND)

    def test_deploy_resumes_unfinished_provisioning(self):
        for state in (S.REQUESTED, S.PROVISIONING, S.DEGRADED, S.RESTARTING):
            self.assertEqual(plan(state, A.DEPLOY), Plan.RESUME_PROVISION, state)

    def test_deploy_on_active_updates(self):
        self.assertEqual(plan(S.ACTIVE, A.DEPLOY), Plan.UPDATE)

    def test_deploy_while_draining_serializes(self):
        self.assertEqual(plan(S.DRAINING, A.DEPLOY), Plan.DRAIN_THEN_PROVISION)

    def test_restart_only_from_active(self):
        self.assertEqual(plan(S.ACTIVE, A.RESTART), Plan.RESTART)
        self.assertEqual(plan(S.RESTARTING, A.RESTART), Plan.RESTART)
        for state in (S.REQUESTED, S.PROVISIONING, S.DRAINING, S.DEGRADED):
            self.assertEqual(plan(state, A.RESTART), Plan.REJECT_INVALID, state)

    def test_cleanup_drains_every_live_state(self):
        for state in (S.REQUESTED, S.PROVISIONING, S.ACTIVE, S.RESTARTING,
                      S.DEGRADED, S.DRAINING):
            self.assertEqual(plan(state, A.CLEANUP), Plan.DRAIN, state)


class TestTransitions(unittest.TestCase):

    def test_lifecycle_path(self):
        path = [S.REQUESTED, S.PROVISIONING, S.ACTIVE, S.RESTARTING, S.ACTIVE,
                S.DRAINING, S.DELETED, S.REQUESTED]
        for a, b in zip(path, path[1:]):
            self.assertTrue(can_transition(a, b), f"{a} → {b}")

    def test_degraded_reachable_from_working_states(self):
        for state in (S.REQUESTED, S.PROVISIONING, S.ACTIVE, S.RESTARTING, S.DRAINING):
            self.assertTrue(can_transition(state, S.DEGRADED), state)

    def test_degraded_exits_only_via_new_attempt(self):
        self.assertTrue(can_transition(S.DEGRADED, S.PROVISIONING))
        self.assertTrue(can_transition(S.DEGRADED, S.DRAINING))
        self.assertFalse(can_transition(S.DEGRADED, S.ACTIVE))
        self.assertFalse(can_transition(S.DEGRADED, S.DELETED))

    def test_deleted_only_via_draining(self):
        for state in S:
            if state != S.DRAINING:
                self.assertFalse(can_transition(state, S.DELETED), state)

    def test_assert_transition_raises(self):
        with self.assertRaises(InvalidTransition) as ctx:
            assert_transition(S.ACTIVE, S.DELETED)
        self.assertIn("draining", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
