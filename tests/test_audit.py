"""Tests for the audit pipeline and audit log sink."""

import json
import os
import shutil
import stat
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

from meta_enterprise.audit import AuditLogSink, AuditPipeline
from meta_enterprise.errors import AuditError, AuditInvariantViolation

IDENTITY = ("reader@example.com", "api get", "graph.read", "agency", "alpha")


class TestAuditPipeline(unittest.TestCase):
    """Test audit event recording and invariants."""

    def setUp(self):
        self.pipeline = AuditPipeline(clock=lambda: datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

    def decide(self, correlation_id="corr-1", allowed=True, deny_reason=""):
        return self.pipeline.record_decision(*IDENTITY, allowed, deny_reason, correlation_id)

    def execute(self, correlation_id="corr-1", status="succeeded", reason=""):
        return self.pipeline.record_execution(*IDENTITY, status, reason, correlation_id)

    def test_decision_then_execution(self):
        decision = self.decide()
        execution = self.execute()

        self.assertEqual(decision.event_id, "audit-000001")
        self.assertEqual(execution.event_id, "audit-000002")
        self.assertEqual(decision.timestamp, "2026-01-02T03:04:05Z")
        self.assertTrue(decision.allowed)
        self.assertIsNone(execution.allowed)
        self.assertEqual(execution.execution_status, "succeeded")
        self.assertEqual(execution.previous_digest, decision.digest)
        self.assertEqual(len(decision.digest), 64)
        self.assertTrue(self.pipeline.verify_chain())

    def test_events_are_copies(self):
        self.decide()
        events = self.pipeline.events()
        events[0].principal = "mallory@example.com"
        self.assertEqual(self.pipeline.events()[0].principal, "reader@example.com")
        self.assertTrue(self.pipeline.verify_chain())

    def test_tampering_breaks_chain(self):
        self.decide()
        self.execute()
        self.pipeline._events[0].deny_reason = "edited"
        self.assertFalse(self.pipeline.verify_chain())

    def test_one_decision_per_correlation_id(self):
        self.decide()
        with self.assertRaises(AuditInvariantViolation):
            self.decide()

    def test_execution_requires_decision(self):
        with self.assertRaises(AuditInvariantViolation):
            self.execute(correlation_id="corr-9")

    def test_one_execution_per_correlation_id(self):
        self.decide()
        self.execute()
        with self.assertRaises(AuditInvariantViolation):
            self.execute(status="failed", reason="again")

    def test_denied_decision_only_fails(self):
        self.decide(allowed=False, deny_reason="no role binding")
        with self.assertRaises(AuditInvariantViolation):
            self.execute()
        event = self.execute(status="failed", reason="authorization denied")
        self.assertEqual(event.execution_status, "failed")

    def test_execution_identity_must_match(self):
        self.decide()
        with self.assertRaises(AuditInvariantViolation):
            self.pipeline.record_execution("writer@example.com", "api get", "graph.read",
                                           "agency", "alpha", "succeeded", "", "corr-1")

    def test_execution_capability_must_match(self):
        self.decide()
        with self.assertRaises(AuditInvariantViolation):
            self.pipeline.record_execution("reader@example.com", "api get", "graph.write",
                                           "agency", "alpha", "succeeded", "", "corr-1")

    def test_input_validation(self):
        cases = [
            lambda: self.decide(correlation_id=""),
            lambda: self.decide(correlation_id="corr 1"),
            lambda: self.decide(allowed=False),
            lambda: self.pipeline.record_decision("", "api get", "", "agency", "alpha", True, "", "c"),
        ]
        for index, case in enumerate(cases):
            with self.subTest(case=index):
                with self.assertRaises(AuditError):
                    case()

    def test_execution_status_rules(self):
        self.decide()
        with self.assertRaises(AuditError):
            self.execute(status="skipped")
        with self.assertRaises(AuditError):
            self.execute(status="failed")
        with self.assertRaises(AuditError):
            self.execute(status="succeeded", reason="unexpected")
        self.assertEqual(self.execute(status=" SUCCEEDED ").execution_status, "succeeded")


class TestAuditLogSink(unittest.TestCase):
    """Test JSON-lines audit log output."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.log_dir = Path(self.temp_dir) / "logs"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_events_written_as_json_lines(self):
        sink = AuditLogSink(self.log_dir)
        pipeline = AuditPipeline(sink=sink)
        pipeline.record_decision(*IDENTITY, True, "", "corr-1")
        pipeline.record_execution(*IDENTITY, "succeeded", "", "corr-1")
        sink.close()

        lines = (self.log_dir / "audit.log").read_text(encoding="utf-8").splitlines()
        self.assertEqual(len(lines), 2)
        records = [json.loads(line) for line in lines]
        self.assertEqual([r["event_type"] for r in records], ["decision", "execution"])
        self.assertEqual(records[1]["previous_digest"], records[0]["digest"])

    def test_permissions(self):
        sink = AuditLogSink(self.log_dir)
        sink.close()
        self.assertEqual(stat.S_IMODE(os.stat(self.log_dir).st_mode), 0o700)
        self.assertEqual(stat.S_IMODE(os.stat(self.log_dir / "audit.log").st_mode), 0o600)

    def test_write_failure_is_raised(self):
        sink = AuditLogSink(self.log_dir)
        pipeline = AuditPipeline(sink=sink)
        stream = sink.handler.stream
        sink.handler.stream = Mock(write=Mock(side_effect=OSError("disk full")))
        try:
            with self.assertRaises(AuditError) as ctx:
                pipeline.record_decision(*IDENTITY, True, "", "corr-1")
        finally:
            sink.handler.stream = stream
            sink.close()
        self.assertIn("disk full", str(ctx.exception))
        self.assertEqual(pipeline.events(), [])
        self.assertEqual((self.log_dir / "audit.log").read_text(encoding="utf-8"), "")

    def test_closed_sink_is_raised(self):
        sink = AuditLogSink(self.log_dir)
        sink.close()
        with self.assertRaises(AuditError):
            AuditPipeline(sink=sink).record_decision(*IDENTITY, True, "", "corr-1")

    def test_unusable_directory(self):
        blocker = Path(self.temp_dir) / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        with self.assertRaises(AuditError):
            AuditLogSink(blocker / "logs")


class TestAuditSinkFailures(unittest.TestCase):
    """Test that a failed sink write leaves the pipeline unchanged."""

    def setUp(self):
        self.sink = Mock()
        self.sink.write.side_effect = OSError("remote log unavailable")
        self.pipeline = AuditPipeline(sink=self.sink)

    def test_failed_decision_can_be_retried_once(self):
        with self.assertRaises(AuditError):
            self.pipeline.record_decision(*IDENTITY, True, "", "corr-1")
        self.assertEqual(self.pipeline.events(), [])

        self.sink.write.side_effect = None
        event = self.pipeline.record_decision(*IDENTITY, True, "", "corr-1")
        self.assertEqual(event.event_id, "audit-000001")
        self.assertEqual(event.previous_digest, "")

        with self.assertRaises(AuditInvariantViolation):
            self.pipeline.record_decision(*IDENTITY, True, "", "corr-1")
        self.assertEqual(len(self.pipeline.events()), 1)
        self.assertTrue(self.pipeline.verify_chain())

    def test_failed_execution_can_be_retried_once(self):
        self.sink.write.side_effect = None
        self.pipeline.record_decision(*IDENTITY, True, "", "corr-1")

        self.sink.write.side_effect = OSError("remote log unavailable")
        with self.assertRaises(AuditError):
            self.pipeline.record_execution(*IDENTITY, "succeeded", "", "corr-1")
        self.assertEqual(len(self.pipeline.events()), 1)

        self.sink.write.side_effect = None
        self.pipeline.record_execution(*IDENTITY, "succeeded", "", "corr-1")
        with self.assertRaises(AuditInvariantViolation):
            self.pipeline.record_execution(*IDENTITY, "succeeded", "", "corr-1")
        self.assertEqual(len(self.pipeline.events()), 2)
        self.assertTrue(self.pipeline.verify_chain())


if __name__ == '__main__':
    unittest.main()
