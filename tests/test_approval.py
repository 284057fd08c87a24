"""Tests for approval tokens and the approval gate."""

import os
import shutil
import stat
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

from cryptography.fernet import Fernet

from meta_enterprise.approval import (
    ApprovalGrantHook,
    ApprovalTokenCodec,
    approval_fingerprint,
    create_approval_grant_token,
    create_approval_request_token,
    evaluate_approval_gate,
    generate_approval_key,
    parse_ttl,
    validate_approval_grant_token,
)
from meta_enterprise.errors import ApprovalError, DenyError, RequestError
from meta_enterprise.secret_governance import evaluate_secret_access

from enterprise_fixtures import build_config

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def clock(offset=timedelta()):
    return lambda: NOW + offset


class TestParseTTL(unittest.TestCase):
    """Test duration parsing."""

    def test_valid(self):
        cases = {
            "15m": timedelta(minutes=15),
            "1h": timedelta(hours=1),
            "1h30m": timedelta(hours=1, minutes=30),
            "45s": timedelta(seconds=45),
            "500ms": timedelta(milliseconds=500),
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(parse_ttl(raw), expected)

    def test_invalid(self):
        for raw in ("", "abc", "15", "10m junk", "0s", "-5m"):
            with self.subTest(raw=raw):
                with self.assertRaises(RequestError):
                    parse_ttl(raw)


class TestApprovalTokens(unittest.TestCase):
    """Test request, grant and validation of approval tokens."""

    def setUp(self):
        self.codec = ApprovalTokenCodec(key=Fernet.generate_key())

    def request(self, principal="writer@example.com", command="meta auth rotate", now=None):
        return create_approval_request_token(
            principal, command, "agency", "alpha", timedelta(minutes=15),
            codec=self.codec, now=now or clock(),
        )

    def grant(self, decision="approved", **kwargs):
        return create_approval_grant_token(
            self.request(**kwargs).request_token, "lead@example.com", decision, timedelta(minutes=30),
            codec=self.codec, now=clock(),
        )

    def validate(self, token, principal="writer@example.com", command="auth rotate", now=None):
        return validate_approval_grant_token(
            token, principal, command, "agency", "alpha", codec=self.codec, now=now or clock(),
        )

    def test_request_token(self):
        request = self.request()
        self.assertEqual(request.normalized_command, "auth rotate")
        self.assertEqual(request.expires_at, "2026-05-01T12:15:00Z")
        self.assertEqual(
            request.fingerprint,
            approval_fingerprint("writer@example.com", "auth rotate", "agency", "alpha"),
        )

    def test_approved_grant_validates(self):
        grant = self.grant()
        self.assertEqual(grant.decision, "approved")
        self.assertEqual(grant.approver, "lead@example.com")

        result = self.validate(grant.grant_token)
        self.assertTrue(result.valid)
        self.assertEqual(result.status, "approved")
        self.assertEqual(result.fingerprint, result.expected_fingerprint)

    def test_rejected_grant(self):
        result = self.validate(self.grant(decision="rejected").grant_token)
        self.assertFalse(result.valid)
        self.assertEqual(result.status, "rejected")
        self.assertIn("lead@example.com", result.deny_reason)

    def test_expired_grant(self):
        result = self.validate(self.grant().grant_token, now=clock(timedelta(hours=1)))
        self.assertEqual(result.status, "expired")
        self.assertFalse(result.valid)

    def test_fingerprint_mismatch(self):
        token = self.grant().grant_token
        for principal, command in (("reader@example.com", "auth rotate"), ("writer@example.com", "api post")):
            with self.subTest(principal=principal, command=command):
                result = self.validate(token, principal=principal, command=command)
                self.assertEqual(result.status, "fingerprint_mismatch")

    def test_request_expired_before_approval(self):
        request = self.request()
        with self.assertRaises(ApprovalError):
            create_approval_grant_token(
                request.request_token, "lead@example.com", "approved", timedelta(minutes=5),
                codec=self.codec, now=clock(timedelta(minutes=20)),
            )

    def test_tampered_token(self):
        token = self.grant().grant_token
        with self.assertRaises(ApprovalError):
            self.validate(token[:-4] + "AAAA")

    def test_token_from_other_key(self):
        other = ApprovalTokenCodec(key=Fernet.generate_key())
        request = create_approval_request_token(
            "writer@example.com", "auth rotate", "agency", "alpha", timedelta(minutes=15),
            codec=other, now=clock(),
        )
        with self.assertRaises(ApprovalError):
            create_approval_grant_token(request.request_token, "lead@example.com", "approved",
                                        timedelta(minutes=5), codec=self.codec, now=clock())

    def test_token_types_are_not_interchangeable(self):
        request = self.request()
        with self.assertRaises(ApprovalError):
            self.validate(request.request_token)
        grant = self.grant()
        with self.assertRaises(ApprovalError):
            create_approval_grant_token(grant.grant_token, "lead@example.com", "approved",
                                        timedelta(minutes=5), codec=self.codec, now=clock())

    def test_invalid_arguments(self):
        request = self.request()
        with self.assertRaises(RequestError):
            create_approval_grant_token(request.request_token, "", "approved", timedelta(minutes=5),
                                        codec=self.codec, now=clock())
        with self.assertRaises(RequestError):
            create_approval_grant_token(request.request_token, "lead@example.com", "maybe",
                                        timedelta(minutes=5), codec=self.codec, now=clock())
        with self.assertRaises(RequestError):
            self.request(principal=" ")


class TestApprovalGate(unittest.TestCase):
    """Test the approval gate and approval hook."""

    def setUp(self):
        self.codec = ApprovalTokenCodec(key=Fernet.generate_key())

    def grant_token(self, principal="writer@example.com", command="auth rotate"):
        request = create_approval_request_token(principal, command, "agency", "alpha",
                                                timedelta(minutes=15), codec=self.codec, now=clock())
        return create_approval_grant_token(request.request_token, "lead@example.com", "approved",
                                           timedelta(minutes=15), codec=self.codec, now=clock()).grant_token

    def test_low_risk_command(self):
        gate = evaluate_approval_gate("writer@example.com", "api get", "agency", "alpha", "", codec=self.codec)
        self.assertFalse(gate.required)
        self.assertEqual(gate.status, "not_required")
        self.assertEqual(gate.deny_reason, "")

    def test_missing_token(self):
        gate = evaluate_approval_gate("writer@example.com", "auth rotate", "agency", "alpha", "", codec=self.codec)
        self.assertTrue(gate.required)
        self.assertEqual(gate.status, "required")
        self.assertIn("approval token is required", gate.deny_reason)

    def test_garbage_token(self):
        gate = evaluate_approval_gate("writer@example.com", "auth rotate", "agency", "alpha",
                                      "not-a-token", codec=self.codec)
        self.assertEqual(gate.status, "invalid")
        self.assertTrue(gate.deny_reason.startswith("invalid approval token"))

    def test_approved_token(self):
        gate = evaluate_approval_gate("writer@example.com", "auth rotate", "agency", "alpha",
                                      self.grant_token(), codec=self.codec, now=clock())
        self.assertEqual(gate.status, "approved")
        self.assertEqual(gate.deny_reason, "")
        self.assertEqual(gate.approver, "lead@example.com")

    def test_grant_hook_allows_secret_access(self):
        cfg = build_config()
        hook = ApprovalGrantHook(self.grant_token(), "auth rotate", codec=self.codec, now=clock())
        trace = evaluate_secret_access(cfg, "writer@example.com", "ads_token", "write", hooks=[hook])
        self.assertTrue(trace.allowed)

    def test_grant_hook_denies_other_principal(self):
        cfg = build_config()
        hook = ApprovalGrantHook(self.grant_token(principal="reader@example.com"), "auth rotate",
                                 codec=self.codec, now=clock())
        with self.assertRaises(DenyError) as ctx:
            evaluate_secret_access(cfg, "writer@example.com", "ads_token", "write", hooks=[hook])
        self.assertIn("policy enforcement hook[0] denied access", ctx.exception.reason)


class TestApprovalTokenCodec(unittest.TestCase):
    """Test approval key sourcing."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.key_file = Path(self.temp_dir) / "keys" / "approval.key"

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_key_from_environment(self):
        key = generate_approval_key()
        with patch.dict(os.environ, {"META_APPROVAL_KEY": key}):
            codec = ApprovalTokenCodec(key_file=self.key_file)
        self.assertEqual(codec.key, key.encode())
        self.assertFalse(self.key_file.exists())

    def test_key_file_created(self):
        with patch.dict(os.environ, {"META_APPROVAL_KEY": ""}):
            codec = ApprovalTokenCodec(key_file=self.key_file)
            again = ApprovalTokenCodec(key_file=self.key_file)
        self.assertEqual(codec.key, again.key)
        self.assertEqual(stat.S_IMODE(os.stat(self.key_file).st_mode), 0o600)
        self.assertEqual(stat.S_IMODE(os.stat(self.key_file.parent).st_mode), 0o700)

    def test_key_file_never_overwritten(self):
        self.key_file.parent.mkdir(parents=True)
        with patch.dict(os.environ, {"META_APPROVAL_KEY": ""}):
            with patch("meta_enterprise.approval.os.open", side_effect=FileExistsError("exists")):
                with self.assertRaises(ApprovalError):
                    ApprovalTokenCodec(key_file=self.key_file)

    def test_invalid_key(self):
        with self.assertRaises(ApprovalError):
            ApprovalTokenCodec(key=b"short")


if __name__ == '__main__':
    unittest.main()
