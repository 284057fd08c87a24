"""Command authorization gate.

Maps a CLI command to its capability through the compiled command table,
evaluates the capability against role bindings, optionally requires an
approval grant for high-risk commands, and records exactly one decision
audit event when an audit pipeline is supplied.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .approval import ApprovalTokenCodec, Clock, evaluate_approval_gate
from .audit import AuditEvent, AuditPipeline
from .commands import capability_for_command, normalize_command_reference
from .config import Config, quote
from .errors import DenyError, RequestError, combine_errors
from .policy import BindingAuthorization, PolicyDecision, evaluate_policy

logger = logging.getLogger(__name__)


@dataclass
class CommandAuthorizationTrace:
    principal: str = ""
    command: str = ""
    normalized_command: str = ""
    required_capability: str = ""
    org_name: str = ""
    org_id: str = ""
    workspace_name: str = ""
    workspace_id: str = ""
    correlation_id: str = ""
    matched_bindings: List[BindingAuthorization] = field(default_factory=list)
    decision_trace: List[PolicyDecision] = field(default_factory=list)
    audit_events: List[AuditEvent] = field(default_factory=list)
    approval_status: str = ""
    allowed: bool = False
    deny_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["audit_events"] = [event.to_dict() for event in self.audit_events]
        return data


def _attach(error: BaseException, trace: Any) -> BaseException:
    error.trace = trace
    return error


def authorize_command(
    config: Config,
    principal: str,
    command: str,
    org_name: str = "",
    workspace_name: str = "",
    correlation_id: str = "",
    audit_pipeline: Optional[AuditPipeline] = None,
    approval_token: str = "",
    require_approval: bool = False,
    approval_codec: Optional[ApprovalTokenCodec] = None,
    now: Optional[Clock] = None,
) -> CommandAuthorizationTrace:
    """Authorize a principal to run a command in a workspace.

    Args:
        config: A loaded enterprise config.
        principal: Identity running the command.
        command: Free-text command such as ``"meta api get"``.
        org_name: Requested org, or blank for ``default_org``.
        workspace_name: Requested workspace, or blank for the org default.
        correlation_id: Links the decision event to a later execution
            event. Required when ``audit_pipeline`` is set.
        audit_pipeline: Optional recorder for the decision event.
        approval_token: Grant token presented for a high-risk command.
        require_approval: Enforce the approval gate for high-risk commands.
        approval_codec: Codec used to open ``approval_token``.
        now: Clock used for approval expiry checks.

    Returns:
        The authorization trace of an allowed command.

    Raises:
        DenyError: If the command is denied. A failure to record the
            decision is combined with the denial in a ``CombinedError``.
        RequestError: If the request is malformed or cannot be resolved.
        ConfigValidationError: If the config is invalid.
        AuditError: If the decision of an allowed command cannot be recorded.

    Every error raised after workspace resolution carries the trace as
    ``.trace``.
    """
    config.validate()

    principal = (principal or "").strip()
    if not principal:
        raise RequestError("principal is required")
    normalized_command = normalize_command_reference(command)
    context = config.resolve_workspace(org_name, workspace_name)

    correlation_id = (correlation_id or "").strip()
    if audit_pipeline is not None and not correlation_id:
        raise RequestError("correlation_id is required when audit pipeline is configured")

    trace = CommandAuthorizationTrace(
        principal=principal,
        command=command,
        normalized_command=normalized_command,
        org_name=context.org_name,
        org_id=context.org_id,
        workspace_name=context.workspace_name,
        workspace_id=context.workspace_id,
        correlation_id=correlation_id,
    )

    denial: Optional[DenyError] = None
    capability = capability_for_command(normalized_command)
    trace.required_capability = capability
    if not capability:
        trace.deny_reason = f"command {quote(normalized_command)} is not mapped to a capability"
        logger.warning("authorization denied: %s", trace.deny_reason)
        denial = DenyError(
            principal=principal,
            command=normalized_command,
            org_name=context.org_name,
            workspace_name=context.workspace_name,
            reason=trace.deny_reason,
        )
    else:
        try:
            policy_trace = evaluate_policy(config, principal, capability, context.org_name, context.workspace_name)
        except DenyError as e:
            policy_trace = e.trace
            e.command = normalized_command
            denial = e
        trace.matched_bindings = list(policy_trace.matched_bindings)
        trace.decision_trace = list(policy_trace.decision_trace)
        trace.allowed = policy_trace.allowed
        trace.deny_reason = policy_trace.deny_reason

    if denial is None and require_approval:
        gate = evaluate_approval_gate(
            principal, normalized_command, context.org_name, context.workspace_name,
            approval_token, codec=approval_codec, now=now,
        )
        trace.approval_status = gate.status
        if gate.deny_reason:
            trace.allowed = False
            trace.deny_reason = gate.deny_reason
            logger.warning("authorization denied: %s", gate.deny_reason)
            denial = DenyError(
                principal=principal,
                command=normalized_command,
                capability=capability,
                org_name=context.org_name,
                workspace_name=context.workspace_name,
                reason=gate.deny_reason,
            )

    if denial is not None:
        denial.with_trace(trace)
    error: Optional[BaseException] = denial
    if audit_pipeline is not None:
        try:
            event = audit_pipeline.record_decision(
                principal,
                normalized_command,
                capability,
                context.org_name,
                context.workspace_name,
                trace.allowed,
                trace.deny_reason,
                correlation_id,
            )
            trace.audit_events.append(event)
        except Exception as audit_error:
            error = combine_errors(denial, audit_error)

    if error is not None:
        raise _attach(error, trace)

    logger.debug("authorized %s for %s in %s/%s", normalized_command, principal,
                 context.org_name, context.workspace_name)
    return trace
