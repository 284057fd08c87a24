"""Tests for governed secret access evaluation."""

import unittest
from unittest.mock import Mock

from meta_enterprise.config import SecretGovernance
from meta_enterprise.errors import ConfigError, DenyError, RequestError, is_authorization_denied
from meta_enterprise.hooks import HookRejected
from meta_enterprise.secret_governance import SecretAccessTrace, evaluate_secret_access

from enterprise_fixtures import build_config


class TestSecretAccessBaseline(unittest.TestCase):
    """Test scope, ownership and policy grants."""

    def setUp(self):
        self.cfg = build_config()

    def test_owner_allowed_without_policies(self):
        self.cfg.secret_governance.policies = []
        for action in ("read", "write", "rotate"):
            with self.subTest(action=action):
                trace = evaluate_secret_access(self.cfg, "owner@example.com", "ads_token", action)
                self.assertTrue(trace.allowed)
                self.assertTrue(trace.owner_matched)
                self.assertEqual(trace.matched_policies, [])

    def test_steward_allowed(self):
        trace = evaluate_secret_access(self.cfg, "steward@example.com", "ads_token", "rotate")
        self.assertTrue(trace.allowed)
        self.assertTrue(trace.owner_matched)
        self.assertEqual(trace.ownership.owner_team, "growth")

    def test_policy_grants_action(self):
        trace = evaluate_secret_access(self.cfg, "reader@example.com", "ads_token", "read")
        self.assertTrue(trace.allowed)
        self.assertFalse(trace.owner_matched)
        self.assertEqual(len(trace.matched_policies), 2)
        self.assertEqual(trace.matched_policies[0].index, 0)
        self.assertTrue(trace.matched_policies[0].grants_action)
        self.assertFalse(trace.matched_policies[1].principal_matched)
        self.assertFalse(trace.matched_policies[1].grants_action)

    def test_action_is_case_insensitive(self):
        trace = evaluate_secret_access(self.cfg, "writer@example.com", "ads_token", "WRITE")
        self.assertEqual(trace.action, "write")
        self.assertTrue(trace.matched_policies[1].grants_action)

    def test_policy_without_action_denies(self):
        with self.assertRaises(DenyError) as ctx:
            evaluate_secret_access(self.cfg, "reader@example.com", "ads_token", "write")
        error = ctx.exception
        self.assertEqual(
            error.reason,
            'principal "reader@example.com" is not allowed to write secret "ads_token" in "agency"/"alpha"',
        )
        self.assertEqual(error.capability, "secret.write:ads_token")
        self.assertFalse(error.trace.allowed)
        self.assertEqual(error.trace.deny_reason, error.reason)

    def test_scope_mismatch_overrides_policy(self):
        with self.assertRaises(DenyError) as ctx:
            evaluate_secret_access(self.cfg, "reader@example.com", "bravo_token", "read")
        self.assertEqual(
            ctx.exception.reason,
            'secret "bravo_token" is scoped to "agency"/"bravo" not "agency"/"alpha"',
        )
        self.assertFalse(ctx.exception.trace.scope_matched)

    def test_scope_mismatch_overrides_ownership(self):
        with self.assertRaises(DenyError):
            evaluate_secret_access(self.cfg, "owner@example.com", "bravo_token", "read", "agency", "alpha")

    def test_scope_match_in_other_workspace(self):
        trace = evaluate_secret_access(self.cfg, "reader@example.com", "bravo_token", "read", "agency", "bravo")
        self.assertTrue(trace.allowed)
        self.assertEqual(trace.workspace_id, "2002")

    def test_unknown_secret_denies(self):
        with self.assertRaises(DenyError) as ctx:
            evaluate_secret_access(self.cfg, "owner@example.com", "ghost", "read")
        self.assertEqual(ctx.exception.reason, 'secret "ghost" is not governed')

    def test_unsupported_action(self):
        with self.assertRaises(RequestError) as ctx:
            evaluate_secret_access(self.cfg, "owner@example.com", "ads_token", "delete")
        self.assertEqual(str(ctx.exception), 'secret action "delete" is not supported')

    def test_governance_not_configured(self):
        self.cfg.secret_governance = SecretGovernance()
        with self.assertRaises(ConfigError):
            evaluate_secret_access(self.cfg, "owner@example.com", "ads_token", "read")


class TestEnforcementHooks(unittest.TestCase):
    """Test the ordered enforcement hook chain."""

    def setUp(self):
        self.cfg = build_config()

    def test_hooks_run_in_order(self):
        calls = []
        hooks = [lambda trace: calls.append("first"), lambda trace: calls.append("second")]
        trace = evaluate_secret_access(self.cfg, "reader@example.com", "ads_token", "read", hooks=hooks)
        self.assertEqual(calls, ["first", "second"])
        self.assertEqual([(d.index, d.allowed) for d in trace.hook_decisions], [(0, True), (1, True)])

    def test_first_failing_hook_denies_and_stops(self):
        last = Mock()

        def freeze(trace):
            raise HookRejected("blocked by change freeze")

        with self.assertRaises(DenyError) as ctx:
            evaluate_secret_access(self.cfg, "reader@example.com", "ads_token", "read",
                                   hooks=[lambda trace: None, freeze, last])
        error = ctx.exception
        self.assertEqual(error.reason, "policy enforcement hook[1] denied access: blocked by change freeze")
        self.assertFalse(error.trace.allowed)
        self.assertEqual(
            [(d.index, d.allowed, d.reason) for d in error.trace.hook_decisions],
            [(0, True, ""), (1, False, "blocked by change freeze")],
        )
        last.enforce.assert_not_called()

    def test_hooks_not_run_when_baseline_denies(self):
        hook = Mock()
        with self.assertRaises(DenyError):
            evaluate_secret_access(self.cfg, "reader@example.com", "ads_token", "rotate", hooks=[hook])
        hook.enforce.assert_not_called()

    def test_nil_hook_is_request_error_and_keeps_allowed(self):
        with self.assertRaises(RequestError) as ctx:
            evaluate_secret_access(self.cfg, "reader@example.com", "ads_token", "read",
                                   hooks=[lambda trace: None, None])
        error = ctx.exception
        self.assertEqual(str(error), "policy enforcement hook[1] is nil")
        self.assertFalse(is_authorization_denied(error))
        self.assertIsInstance(error.trace, SecretAccessTrace)
        self.assertTrue(error.trace.allowed)

    def test_hook_object_receives_copy(self):
        class Tamper:
            def enforce(self, trace):
                trace.allowed = False
                trace.principal = "someone-else"

        trace = evaluate_secret_access(self.cfg, "reader@example.com", "ads_token", "read", hooks=[Tamper()])
        self.assertTrue(trace.allowed)
        self.assertEqual(trace.principal, "reader@example.com")

    def test_hook_sees_resolved_trace(self):
        seen = []
        evaluate_secret_access(self.cfg, "owner@example.com", "ads_token", "rotate",
                               hooks=[lambda trace: seen.append((trace.secret, trace.action, trace.allowed))])
        self.assertEqual(seen, [("ads_token", "rotate", True)])


if __name__ == '__main__':
    unittest.main()
