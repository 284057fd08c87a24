"""Decision and execution audit events.

``AuditPipeline`` is the reference implementation of the audit contract the
authorization gate and execution pipeline call. Events are kept in memory,
hash-chained, and optionally appended as JSON lines to an audit log for
compliance review.
"""

import copy
import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import quote
from .errors import AuditError, AuditInvariantViolation

AUDIT_EVENT_TYPE_DECISION = "decision"
AUDIT_EVENT_TYPE_EXECUTION = "execution"

EXECUTION_STATUS_SUCCEEDED = "succeeded"
EXECUTION_STATUS_FAILED = "failed"

_DIGEST_FIELDS = (
    "sequence", "event_id", "correlation_id", "event_type", "timestamp",
    "principal", "command", "capability", "org_name", "workspace_name",
    "allowed", "deny_reason", "execution_status", "execution_error",
    "previous_digest",
)


@dataclass
class AuditEvent:
    sequence: int
    event_id: str
    correlation_id: str
    event_type: str
    timestamp: str
    principal: str
    command: str
    org_name: str
    workspace_name: str
    capability: str = ""
    allowed: Optional[bool] = None
    deny_reason: str = ""
    execution_status: str = ""
    execution_error: str = ""
    previous_digest: str = ""
    digest: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {key: value for key, value in data.items()
                if value not in ("", None) or key in ("event_id", "digest")}

    def compute_digest(self) -> str:
        payload = {}
        for name in _DIGEST_FIELDS:
            value = getattr(self, name)
            if value in ("", None) and name not in ("sequence", "event_id", "correlation_id",
                                                     "event_type", "timestamp", "principal",
                                                     "command", "org_name", "workspace_name"):
                continue
            payload[name] = value
        encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        return hashlib.sha256((self.previous_digest + encoded).encode("utf-8")).hexdigest()


class _AuditFileHandler(logging.FileHandler):
    """File handler that lets write failures reach the caller."""

    def handleError(self, record: logging.LogRecord) -> None:
        raise


class AuditLogSink:
    """Appends audit events as JSON lines to ``<log_dir>/audit.log``."""

    LOGGER_NAME = "meta_enterprise.audit_log"

    def __init__(self, log_dir: Optional[Path] = None) -> None:
        """Initialize the audit log sink.

        Args:
            log_dir: Directory for the audit log. Defaults to ~/.meta/logs

        Raises:
            AuditError: If the log directory or file cannot be prepared.
        """
        if log_dir is None:
            log_dir = Path.home() / ".meta" / "logs"

        self.log_dir = Path(log_dir)
        self.audit_log_file = self.log_dir / "audit.log"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            os.chmod(self.log_dir, 0o700)
            if not self.audit_log_file.exists():
                self.audit_log_file.touch(mode=0o600)
            os.chmod(self.audit_log_file, 0o600)
        except OSError as e:
            raise AuditError(f"prepare audit log {self.audit_log_file}: {e}")

        self.audit_logger = logging.getLogger(self.LOGGER_NAME)
        self.audit_logger.setLevel(logging.INFO)
        self.audit_logger.propagate = False
        self.close()

        try:
            handler = _AuditFileHandler(self.audit_log_file, encoding="utf-8")
        except OSError as e:
            raise AuditError(f"open audit log {self.audit_log_file}: {e}")
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter('%(message)s'))
        self.audit_logger.addHandler(handler)
        self.handler = handler

    def write(self, event: AuditEvent) -> None:
        """Append one event.

        Raises:
            AuditError: If the event cannot be written.
        """
        if self.handler not in self.audit_logger.handlers:
            raise AuditError(f"audit log {self.audit_log_file} is closed")
        try:
            self.audit_logger.info(json.dumps(event.to_dict(), default=str))
        except (OSError, ValueError) as e:
            raise AuditError(f"write audit log {self.audit_log_file}: {e}")

    def close(self) -> None:
        for handler in list(self.audit_logger.handlers):
            self.audit_logger.removeHandler(handler)
            handler.close()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_correlation_id(value: str) -> str:
    correlation_id = (value or "").strip()
    if not correlation_id:
        raise AuditError("correlation_id is required")
    if any(ch.isspace() for ch in correlation_id):
        raise AuditError(f"correlation_id {quote(value)} cannot contain whitespace")
    return correlation_id


def _required(value: str, field_name: str) -> str:
    normalized = (value or "").strip()
    if not normalized:
        raise AuditError(f"{field_name} is required")
    return normalized


class AuditPipeline:
    """Records one decision event and at most one execution event per
    correlation id, chaining every event to its predecessor by digest."""

    def __init__(self, sink: Optional[AuditLogSink] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self.sink = sink
        self._clock = clock or _utc_now
        self._events: List[AuditEvent] = []
        self._last_digest = ""
        self._decisions: Dict[str, AuditEvent] = {}
        self._executions: Dict[str, AuditEvent] = {}

    def _timestamp(self) -> str:
        return self._clock().astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

    def _append(self, event: AuditEvent, index: Dict[str, AuditEvent]) -> AuditEvent:
        """Write an event to the sink, then commit it to the chain and index.

        Nothing is committed when the sink fails, so the same correlation id
        can be recorded again.
        """
        event.previous_digest = self._last_digest
        event.digest = event.compute_digest()
        if self.sink is not None:
            try:
                self.sink.write(event)
            except AuditError:
                raise
            except Exception as e:
                raise AuditError(f"write audit event {event.event_id}: {e}") from e
        self._events.append(event)
        self._last_digest = event.digest
        index[event.correlation_id] = event
        return copy.deepcopy(event)

    def record_decision(
        self,
        principal: str,
        command: str,
        capability: str,
        org_name: str,
        workspace_name: str,
        allowed: bool,
        deny_reason: str,
        correlation_id: str,
    ) -> AuditEvent:
        """Record an authorization decision.

        Raises:
            AuditError: If a required field is missing or the sink fails.
            AuditInvariantViolation: If a decision was already recorded for
                the correlation id.
        """
        correlation_id = _normalize_correlation_id(correlation_id)
        principal = _required(principal, "principal")
        command = _required(command, "command")
        org_name = _required(org_name, "org_name")
        workspace_name = _required(workspace_name, "workspace_name")
        deny_reason = (deny_reason or "").strip()
        if not allowed and not deny_reason:
            raise AuditError("deny_reason is required when decision is denied")

        if correlation_id in self._decisions:
            raise AuditInvariantViolation(
                f"audit invariant violation: decision event already recorded for correlation_id {quote(correlation_id)}"
            )

        sequence = len(self._events) + 1
        event = self._append(AuditEvent(
            sequence=sequence,
            event_id=f"audit-{sequence:06d}",
            correlation_id=correlation_id,
            event_type=AUDIT_EVENT_TYPE_DECISION,
            timestamp=self._timestamp(),
            principal=principal,
            command=command,
            capability=(capability or "").strip(),
            org_name=org_name,
            workspace_name=workspace_name,
            allowed=bool(allowed),
            deny_reason=deny_reason,
        ), self._decisions)
        return event

    def record_execution(
        self,
        principal: str,
        command: str,
        capability: str,
        org_name: str,
        workspace_name: str,
        status: str,
        failure_reason: str,
        correlation_id: str,
    ) -> AuditEvent:
        """Record the outcome of a command linked to an earlier decision.

        A denied decision may only be followed by a failed execution.

        Raises:
            AuditError: If a field is missing or the status is unsupported.
            AuditInvariantViolation: If the event does not line up with the
                decision recorded for the correlation id.
        """
        correlation_id = _normalize_correlation_id(correlation_id)
        principal = _required(principal, "principal")
        command = _required(command, "command")
        org_name = _required(org_name, "org_name")
        workspace_name = _required(workspace_name, "workspace_name")
        capability = (capability or "").strip()
        normalized_status = (status or "").strip().lower()
        failure_reason = (failure_reason or "").strip()
        if normalized_status not in (EXECUTION_STATUS_SUCCEEDED, EXECUTION_STATUS_FAILED):
            raise AuditError(f"execution status {quote(status)} is not supported")
        if normalized_status == EXECUTION_STATUS_FAILED and not failure_reason:
            raise AuditError("failure reason is required when execution status is failed")
        if normalized_status == EXECUTION_STATUS_SUCCEEDED and failure_reason:
            raise AuditError("failure reason is only allowed when execution status is failed")

        decision = self._decisions.get(correlation_id)
        if decision is None:
            raise AuditInvariantViolation(
                "audit invariant violation: execution event requires a prior decision event "
                f"for correlation_id {quote(correlation_id)}"
            )
        if correlation_id in self._executions:
            raise AuditInvariantViolation(
                f"audit invariant violation: execution event already recorded for correlation_id {quote(correlation_id)}"
            )
        if not decision.allowed and normalized_status != EXECUTION_STATUS_FAILED:
            raise AuditInvariantViolation(
                "audit invariant violation: execution cannot succeed for denied decision "
                f"correlation_id {quote(correlation_id)}"
            )
        if (decision.principal, decision.command, decision.org_name, decision.workspace_name) != (
                principal, command, org_name, workspace_name):
            raise AuditInvariantViolation(
                "audit invariant violation: execution event identity does not match decision event "
                f"for correlation_id {quote(correlation_id)}"
            )
        if decision.capability and capability and capability != decision.capability:
            raise AuditInvariantViolation(
                f"audit invariant violation: execution capability {quote(capability)} does not match "
                f"decision capability {quote(decision.capability)} for correlation_id {quote(correlation_id)}"
            )

        sequence = len(self._events) + 1
        event = self._append(AuditEvent(
            sequence=sequence,
            event_id=f"audit-{sequence:06d}",
            correlation_id=correlation_id,
            event_type=AUDIT_EVENT_TYPE_EXECUTION,
            timestamp=self._timestamp(),
            principal=principal,
            command=command,
            capability=capability or decision.capability,
            org_name=org_name,
            workspace_name=workspace_name,
            execution_status=normalized_status,
            execution_error=failure_reason,
        ), self._executions)
        return event

    def events(self) -> List[AuditEvent]:
        return copy.deepcopy(self._events)

    def verify_chain(self) -> bool:
        """Recompute every digest and check the links between events."""
        previous = ""
        for event in self._events:
            if event.previous_digest != previous or event.compute_digest() != event.digest:
                return False
            previous = event.digest
        return True
