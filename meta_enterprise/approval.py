"""Approval tokens for high-risk commands.

A principal requests approval for one command in one workspace; an approver
turns the request token into a grant token; the grant is validated against
the context it is later presented in. Tokens are JSON claims sealed with
Fernet, so they cannot be edited or forged without the approval key.
"""

import hashlib
import json
import os
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from .commands import normalize_command_reference, requires_approval
from .config import quote
from .errors import ApprovalError, RequestError

APPROVAL_TOKEN_VERSION = 1

TOKEN_TYPE_REQUEST = "approval_request"
TOKEN_TYPE_GRANT = "approval_grant"

DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"

STATUS_NOT_REQUIRED = "not_required"
STATUS_REQUIRED = "required"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_EXPIRED = "expired"
STATUS_FINGERPRINT_MISMATCH = "fingerprint_mismatch"
STATUS_INVALID = "invalid"

APPROVAL_KEY_ENV = "META_APPROVAL_KEY"

Clock = Callable[[], datetime]

_DURATION_PART = re.compile(r'(\d+(?:\.\d+)?)(ms|h|m|s)')


class ApprovalTokenCodec:
    """Seals and opens approval token claims."""

    def __init__(self, key: Optional[bytes] = None, key_file: Optional[Path] = None) -> None:
        """Initialize the codec.

        Args:
            key: Optional Fernet key. If not provided, the key is read from
                the environment or the key file, or generated.
            key_file: Key file location. Defaults to ~/.meta/approval.key

        Raises:
            ApprovalError: If no usable key can be obtained.
        """
        self.key_file = key_file or Path.home() / ".meta" / "approval.key"
        self.key = key or self._get_or_create_key()
        try:
            self.cipher = Fernet(self.key)
        except (ValueError, TypeError) as e:
            raise ApprovalError(f"Invalid approval key: {e}")

    def _get_or_create_key(self) -> bytes:
        env_key = os.environ.get(APPROVAL_KEY_ENV)
        if env_key:
            return env_key.strip().encode()

        if self.key_file.exists():
            try:
                return self.key_file.read_bytes().strip()
            except OSError as e:
                raise ApprovalError(f"Failed to read approval key file: {e}")

        try:
            key = Fernet.generate_key()
            if not self.key_file.parent.exists():
                self.key_file.parent.mkdir(parents=True, mode=0o700)
                os.chmod(self.key_file.parent, 0o700)
            fd = os.open(self.key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(key)
            return key
        except OSError as e:
            raise ApprovalError(f"Failed to generate approval key: {e}")

    def encode(self, claims: Dict[str, Any]) -> str:
        payload = json.dumps(claims, separators=(",", ":"), sort_keys=True).encode()
        return self.cipher.encrypt(payload).decode()

    def decode(self, token: str) -> Dict[str, Any]:
        token = (token or "").strip()
        if not token:
            raise ApprovalError("approval token is required")
        try:
            payload = self.cipher.decrypt(token.encode())
        except InvalidToken:
            raise ApprovalError("approval token is invalid or was not issued with this key")
        try:
            claims = json.loads(payload)
        except ValueError as e:
            raise ApprovalError(f"decode approval token claims: {e}")
        if not isinstance(claims, dict):
            raise ApprovalError("decode approval token claims: claims must be an object")
        if claims.get("version") != APPROVAL_TOKEN_VERSION:
            raise ApprovalError(f"approval token version {claims.get('version')} is unsupported")
        return claims


@dataclass
class ApprovalRequestToken:
    request_token: str
    fingerprint: str
    principal: str
    normalized_command: str
    org_name: str
    workspace_name: str
    expires_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ApprovalGrantToken:
    grant_token: str
    fingerprint: str
    decision: str
    approver: str
    principal: str
    normalized_command: str
    org_name: str
    workspace_name: str
    expires_at: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ApprovalValidationResult:
    valid: bool = False
    status: str = STATUS_INVALID
    deny_reason: str = ""
    fingerprint: str = ""
    expected_fingerprint: str = ""
    decision: str = ""
    approver: str = ""
    expires_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ApprovalGateTrace:
    required: bool = False
    status: str = STATUS_NOT_REQUIRED
    deny_reason: str = ""
    fingerprint: str = ""
    decision: str = ""
    approver: str = ""
    expires_at: str = ""


def parse_ttl(raw: str) -> timedelta:
    """Parse a duration such as ``15m``, ``1h30m`` or ``45s``.

    Raises:
        RequestError: If the value is blank, malformed or not positive.
    """
    value = (raw or "").strip()
    if not value:
        raise RequestError("ttl is required")
    position = 0
    total = timedelta()
    units = {"h": "hours", "m": "minutes", "s": "seconds", "ms": "milliseconds"}
    for match in _DURATION_PART.finditer(value):
        if match.start() != position:
            break
        total += timedelta(**{units[match.group(2)]: float(match.group(1))})
        position = match.end()
    if position != len(value):
        raise RequestError(f"parse ttl {quote(raw)}: invalid duration")
    if total <= timedelta():
        raise RequestError("ttl must be greater than zero")
    return total


def approval_fingerprint(principal: str, normalized_command: str, org_name: str, workspace_name: str) -> str:
    payload = "\n".join([principal, normalized_command, org_name, workspace_name])
    return hashlib.sha256(payload.encode()).hexdigest()


def _now(clock: Optional[Clock]) -> datetime:
    return (clock or (lambda: datetime.now(timezone.utc)))().astimezone(timezone.utc)


def _format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_time(value: Any, field_name: str) -> datetime:
    normalized = str(value or "").strip()
    if not normalized:
        raise ApprovalError(f"{field_name} is required")
    try:
        return datetime.fromisoformat(normalized.replace("Z", "+00:00")).astimezone(timezone.utc)
    except ValueError as e:
        raise ApprovalError(f"parse {field_name}: {e}")


def _normalize_context(principal: str, command: str, org_name: str, workspace_name: str):
    principal = (principal or "").strip()
    if not principal:
        raise RequestError("principal is required")
    normalized_command = normalize_command_reference(command)
    org_name = (org_name or "").strip()
    if not org_name:
        raise RequestError("org_name is required")
    workspace_name = (workspace_name or "").strip()
    if not workspace_name:
        raise RequestError("workspace_name is required")
    return principal, normalized_command, org_name, workspace_name


def _normalize_decision(value: str) -> str:
    decision = (value or "").strip().lower()
    if decision not in (DECISION_APPROVED, DECISION_REJECTED):
        raise RequestError(f"approval decision {quote(value)} is not supported")
    return decision


def _require_positive(ttl: timedelta) -> None:
    if ttl <= timedelta():
        raise RequestError("ttl must be greater than zero")


def create_approval_request_token(
    principal: str,
    command: str,
    org_name: str,
    workspace_name: str,
    ttl: timedelta,
    codec: Optional[ApprovalTokenCodec] = None,
    now: Optional[Clock] = None,
) -> ApprovalRequestToken:
    _require_positive(ttl)
    principal, normalized_command, org_name, workspace_name = _normalize_context(
        principal, command, org_name, workspace_name
    )
    codec = codec or ApprovalTokenCodec()
    issued_at = _now(now)
    expires_at = issued_at + ttl
    fingerprint = approval_fingerprint(principal, normalized_command, org_name, workspace_name)
    token = codec.encode({
        "version": APPROVAL_TOKEN_VERSION,
        "token_type": TOKEN_TYPE_REQUEST,
        "principal": principal,
        "command": normalized_command,
        "org_name": org_name,
        "workspace_name": workspace_name,
        "fingerprint": fingerprint,
        "requested_at": _format_time(issued_at),
        "request_expires_at": _format_time(expires_at),
    })
    return ApprovalRequestToken(
        request_token=token,
        fingerprint=fingerprint,
        principal=principal,
        normalized_command=normalized_command,
        org_name=org_name,
        workspace_name=workspace_name,
        expires_at=_format_time(expires_at),
    )


def create_approval_grant_token(
    request_token: str,
    approver: str,
    decision: str,
    ttl: timedelta,
    codec: Optional[ApprovalTokenCodec] = None,
    now: Optional[Clock] = None,
) -> ApprovalGrantToken:
    """Approve or reject a request token.

    Args:
        request_token: Token produced by ``create_approval_request_token``.
        approver: Principal making the decision.
        decision: ``approved`` or ``rejected``.
        ttl: Lifetime of the grant.

    Returns:
        The grant token and the context it is bound to.

    Raises:
        RequestError: If an argument is invalid.
        ApprovalError: If the request token is invalid or expired.
    """
    _require_positive(ttl)
    approver = (approver or "").strip()
    if not approver:
        raise RequestError("approver is required")
    decision = _normalize_decision(decision)

    codec = codec or ApprovalTokenCodec()
    claims = codec.decode(request_token)
    if claims.get("token_type") != TOKEN_TYPE_REQUEST:
        raise ApprovalError(f"approval request token type {quote(claims.get('token_type'))} is invalid")

    current = _now(now)
    request_expires_at = _parse_time(claims.get("request_expires_at"), "request_expires_at")
    if current >= request_expires_at:
        raise ApprovalError(f"approval request token expired at {claims.get('request_expires_at')}")

    principal, normalized_command, org_name, workspace_name = _normalize_context(
        claims.get("principal", ""), claims.get("command", ""),
        claims.get("org_name", ""), claims.get("workspace_name", ""),
    )
    fingerprint = approval_fingerprint(principal, normalized_command, org_name, workspace_name)
    if claims.get("fingerprint") != fingerprint:
        raise ApprovalError("approval request token fingerprint does not match token context")

    expires_at = current + ttl
    token = codec.encode({
        "version": APPROVAL_TOKEN_VERSION,
        "token_type": TOKEN_TYPE_GRANT,
        "principal": principal,
        "command": normalized_command,
        "org_name": org_name,
        "workspace_name": workspace_name,
        "fingerprint": fingerprint,
        "decision": decision,
        "approver": approver,
        "approved_at": _format_time(current),
        "grant_expires_at": _format_time(expires_at),
    })
    return ApprovalGrantToken(
        grant_token=token,
        fingerprint=fingerprint,
        decision=decision,
        approver=approver,
        principal=principal,
        normalized_command=normalized_command,
        org_name=org_name,
        workspace_name=workspace_name,
        expires_at=_format_time(expires_at),
    )


def validate_approval_grant_token(
    grant_token: str,
    principal: str,
    command: str,
    org_name: str,
    workspace_name: str,
    codec: Optional[ApprovalTokenCodec] = None,
    now: Optional[Clock] = None,
) -> ApprovalValidationResult:
    """Check a grant token against the context it is presented in.

    A well-formed grant that does not approve this context yields a result
    with ``valid=False`` and a status explaining why; a malformed token
    raises.

    Raises:
        RequestError: If the presented context is incomplete.
        ApprovalError: If the token cannot be decoded or is inconsistent.
    """
    principal, normalized_command, org_name, workspace_name = _normalize_context(
        principal, command, org_name, workspace_name
    )
    expected = approval_fingerprint(principal, normalized_command, org_name, workspace_name)

    codec = codec or ApprovalTokenCodec()
    claims = codec.decode(grant_token)
    if claims.get("token_type") != TOKEN_TYPE_GRANT:
        raise ApprovalError(f"approval grant token type {quote(claims.get('token_type'))} is invalid")

    claim_fingerprint = approval_fingerprint(*_normalize_context(
        claims.get("principal", ""), claims.get("command", ""),
        claims.get("org_name", ""), claims.get("workspace_name", ""),
    ))
    if claims.get("fingerprint") != claim_fingerprint:
        raise ApprovalError("approval grant token fingerprint does not match token context")

    decision = _normalize_decision(claims.get("decision", ""))
    expires_at = _parse_time(claims.get("grant_expires_at"), "grant_expires_at")
    approver = str(claims.get("approver", "")).strip()

    result = ApprovalValidationResult(
        fingerprint=claim_fingerprint,
        expected_fingerprint=expected,
        decision=decision,
        approver=approver,
        expires_at=_format_time(expires_at),
    )
    if claim_fingerprint != expected:
        result.status = STATUS_FINGERPRINT_MISMATCH
        result.deny_reason = "approval grant fingerprint does not match command context"
    elif _now(now) >= expires_at:
        result.status = STATUS_EXPIRED
        result.deny_reason = f"approval grant expired at {claims.get('grant_expires_at')}"
    elif decision == DECISION_REJECTED:
        result.status = STATUS_REJECTED
        result.deny_reason = f"approval grant was rejected by {quote(approver)}"
    else:
        result.valid = True
        result.status = STATUS_APPROVED
    return result


def evaluate_approval_gate(
    principal: str,
    normalized_command: str,
    org_name: str,
    workspace_name: str,
    token: str,
    codec: Optional[ApprovalTokenCodec] = None,
    now: Optional[Clock] = None,
) -> ApprovalGateTrace:
    """Evaluate the approval requirement for a command.

    Returns:
        The gate trace; ``deny_reason`` is set when the gate refuses.
    """
    if not requires_approval(normalized_command):
        return ApprovalGateTrace()

    trace = ApprovalGateTrace(
        required=True,
        status=STATUS_REQUIRED,
        fingerprint=approval_fingerprint(principal, normalized_command, org_name, workspace_name),
    )
    if not (token or "").strip():
        trace.deny_reason = f"approval token is required for high-risk command {quote(normalized_command)}"
        return trace

    try:
        result = validate_approval_grant_token(
            token, principal, normalized_command, org_name, workspace_name, codec=codec, now=now
        )
    except (ApprovalError, RequestError) as e:
        trace.status = STATUS_INVALID
        trace.deny_reason = f"invalid approval token: {e}"
        return trace

    trace.status = result.status
    trace.decision = result.decision
    trace.approver = result.approver
    trace.expires_at = result.expires_at
    trace.fingerprint = result.expected_fingerprint
    if not result.valid:
        trace.deny_reason = result.deny_reason or "approval grant denied"
    return trace


class ApprovalGrantHook:
    """Secret enforcement hook that requires an approved grant for a command.

    The grant is checked against the principal and workspace of the secret
    access being evaluated.
    """

    def __init__(self, grant_token: str, command: str,
                 codec: Optional[ApprovalTokenCodec] = None, now: Optional[Clock] = None) -> None:
        self.grant_token = grant_token
        self.command = command
        self.codec = codec
        self.now = now

    def enforce(self, trace: Any) -> None:
        result = validate_approval_grant_token(
            self.grant_token,
            trace.principal,
            self.command,
            trace.org_name,
            trace.workspace_name,
            codec=self.codec,
            now=self.now,
        )
        if not result.valid:
            raise ApprovalError(result.deny_reason or "approval grant denied")


def generate_approval_key() -> str:
    """Return a new key suitable for ``META_APPROVAL_KEY``."""
    return Fernet.generate_key().decode()
