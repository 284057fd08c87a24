"""Audited command execution.

``execute_command`` authorizes a command, checks every secret it needs and
only then runs the caller's action. Whatever happens after the decision
event is recorded, exactly one execution event follows it.
"""

import copy
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .approval import ApprovalTokenCodec
from .audit import (
    AUDIT_EVENT_TYPE_DECISION,
    EXECUTION_STATUS_FAILED,
    EXECUTION_STATUS_SUCCEEDED,
    AuditEvent,
    AuditPipeline,
)
from .authz import CommandAuthorizationTrace, authorize_command
from .config import Config, normalize_secret_action, quote
from .errors import EnterpriseError, ExecutionFailedError, RequestError, combine_errors
from .secret_governance import SecretAccessTrace, evaluate_secret_access

logger = logging.getLogger(__name__)


@dataclass
class SecretExecutionRequirement:
    secret: str
    action: str


@dataclass(frozen=True)
class CommandExecutionContext:
    """Snapshot handed to the action; changes to it never reach the pipeline."""

    authorization: CommandAuthorizationTrace
    secret_access: List[SecretAccessTrace]


@dataclass
class CommandExecutionRequest:
    principal: str
    command: str
    execute: Optional[Callable[[CommandExecutionContext], Any]] = None
    audit_pipeline: Optional[AuditPipeline] = None
    org_name: str = ""
    workspace_name: str = ""
    correlation_id: str = ""
    required_secrets: Sequence[SecretExecutionRequirement] = ()
    secret_enforcement_hooks: Sequence[Any] = ()
    approval_token: str = ""
    require_approval: bool = False
    approval_codec: Optional[ApprovalTokenCodec] = None


@dataclass
class ExecutionOutcome:
    status: str = ""
    failure_reason: str = ""


@dataclass
class CommandExecutionTrace:
    authorization: CommandAuthorizationTrace = field(default_factory=CommandAuthorizationTrace)
    secret_access: List[SecretAccessTrace] = field(default_factory=list)
    audit_events: List[AuditEvent] = field(default_factory=list)
    execution: ExecutionOutcome = field(default_factory=ExecutionOutcome)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authorization": self.authorization.to_dict(),
            "secret_access": [access.to_dict() for access in self.secret_access],
            "audit_events": [event.to_dict() for event in self.audit_events],
            "execution": asdict(self.execution),
        }


def normalize_secret_requirements(
    requirements: Sequence[SecretExecutionRequirement],
) -> List[SecretExecutionRequirement]:
    """Trim and check secret requirements, keeping their declared order.

    Raises:
        RequestError: If a requirement is blank, has an unsupported action or
            repeats an earlier (secret, action) pair.
    """
    normalized: List[SecretExecutionRequirement] = []
    seen = set()
    for index, requirement in enumerate(requirements or ()):
        secret_name = (requirement.secret or "").strip()
        if not secret_name:
            raise RequestError(f"required_secret[{index}] secret is required")
        try:
            action = normalize_secret_action(requirement.action)
        except RequestError as e:
            raise RequestError(f"required_secret[{index}] {e.message}") from e
        key = (secret_name, action)
        if key in seen:
            raise RequestError(
                f"required_secret[{index}] secret/action {quote(secret_name)}:{quote(action)} is duplicated"
            )
        seen.add(key)
        normalized.append(SecretExecutionRequirement(secret=secret_name, action=action))
    return normalized


def _finalize(request: CommandExecutionRequest, trace: CommandExecutionTrace,
              error: Optional[BaseException]) -> Optional[BaseException]:
    """Record the execution event and fold any audit failure into ``error``."""
    authorization = trace.authorization
    try:
        event = request.audit_pipeline.record_execution(
            authorization.principal,
            authorization.normalized_command or authorization.command,
            authorization.required_capability,
            authorization.org_name,
            authorization.workspace_name,
            trace.execution.status or EXECUTION_STATUS_FAILED,
            trace.execution.failure_reason,
            authorization.correlation_id,
        )
    except Exception as audit_error:
        return combine_errors(error, audit_error)
    trace.audit_events.append(event)
    return error


def _fail(request: CommandExecutionRequest, trace: CommandExecutionTrace, error: BaseException) -> BaseException:
    trace.execution = ExecutionOutcome(status=EXECUTION_STATUS_FAILED, failure_reason=str(error).strip())
    final = _finalize(request, trace, error)
    final.trace = trace
    return final


def _decision_recorded(authorization: Optional[CommandAuthorizationTrace]) -> bool:
    return authorization is not None and any(
        event.event_type == AUDIT_EVENT_TYPE_DECISION for event in authorization.audit_events
    )


def execute_command(config: Config, request: CommandExecutionRequest) -> CommandExecutionTrace:
    """Authorize and run a command under audit.

    Duplicate secret requirements are rejected before anything else happens.
    A denied command or secret never reaches ``request.execute``. Once the
    decision event is recorded an execution event always follows it: failed
    on any denial or action error, succeeded otherwise.

    Args:
        config: A loaded enterprise config.
        request: The command, its secret requirements and the action to run.

    Returns:
        The execution trace of a successful run.

    Raises:
        RequestError: If the request is malformed.
        DenyError: If the command or a required secret is denied.
        ExecutionFailedError: If the action raised; the original exception
            is its ``__cause__``.
        CombinedError: If recording an audit event failed while another
            error was already in flight.

    Errors raised after authorization has started carry the execution trace
    as ``.trace``.
    """
    if config is None:
        raise RequestError("enterprise config is nil")
    if request.audit_pipeline is None:
        raise RequestError("audit pipeline is required for enterprise execution")
    if request.execute is None:
        raise RequestError("execute function is required for enterprise execution")

    requirements = normalize_secret_requirements(request.required_secrets)

    trace = CommandExecutionTrace()
    try:
        authorization = authorize_command(
            config,
            request.principal,
            request.command,
            org_name=request.org_name,
            workspace_name=request.workspace_name,
            correlation_id=request.correlation_id,
            audit_pipeline=request.audit_pipeline,
            approval_token=request.approval_token,
            require_approval=request.require_approval,
            approval_codec=request.approval_codec,
        )
    except EnterpriseError as e:
        partial = e.trace if isinstance(e.trace, CommandAuthorizationTrace) else None
        if not _decision_recorded(partial):
            raise
        trace.authorization = partial
        trace.audit_events.extend(copy.deepcopy(partial.audit_events))
        raise _fail(request, trace, e)

    trace.authorization = authorization
    trace.audit_events.extend(copy.deepcopy(authorization.audit_events))

    for requirement in requirements:
        try:
            access = evaluate_secret_access(
                config,
                authorization.principal,
                requirement.secret,
                requirement.action,
                org_name=authorization.org_name,
                workspace_name=authorization.workspace_name,
                hooks=request.secret_enforcement_hooks,
            )
        except Exception as e:
            partial = getattr(e, "trace", None)
            if isinstance(partial, SecretAccessTrace):
                trace.secret_access.append(partial)
            raise _fail(request, trace, e)
        trace.secret_access.append(access)

    context = CommandExecutionContext(
        authorization=copy.deepcopy(authorization),
        secret_access=copy.deepcopy(trace.secret_access),
    )
    try:
        request.execute(context)
    except Exception as e:
        logger.warning("command %s failed: %s", authorization.normalized_command, e)
        failure = ExecutionFailedError(str(e).strip() or type(e).__name__)
        failure.__cause__ = e
        raise _fail(request, trace, failure)

    trace.execution = ExecutionOutcome(status=EXECUTION_STATUS_SUCCEEDED)
    error = _finalize(request, trace, None)
    if error is not None:
        error.trace = trace
        raise error
    logger.debug("command %s succeeded for %s", authorization.normalized_command, authorization.principal)
    return trace
