"""Governed secret access evaluation.

Access to a governed secret is decided in a fixed order:

1. the secret must be scoped to exactly the resolved workspace, which
   overrides everything else, ownership included;
2. the owner principal or steward is implicitly allowed any action;
3. otherwise a policy row must grant the action to the principal;
4. enforcement hooks then run in order and the first veto denies.
"""

import copy
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .config import (
    Config,
    SecretOwnership,
    WorkspaceContext,
    normalize_secret_action,
    normalize_secret_actions,
    quote,
)
from .errors import ConfigError, DenyError, RequestError
from .hooks import as_hook

logger = logging.getLogger(__name__)


@dataclass
class SecretPolicyDecisionTrace:
    index: int
    principal: str
    secret: str
    actions: List[str]
    org: str = ""
    workspace: str = ""
    principal_matched: bool = False
    scope_matched: bool = False
    grants_action: bool = False


@dataclass
class SecretHookDecisionTrace:
    index: int
    allowed: bool
    reason: str = ""


@dataclass
class SecretAccessTrace:
    principal: str = ""
    secret: str = ""
    action: str = ""
    org_name: str = ""
    org_id: str = ""
    workspace_name: str = ""
    workspace_id: str = ""
    scope_matched: bool = False
    ownership: SecretOwnership = field(default_factory=SecretOwnership)
    owner_matched: bool = False
    matched_policies: List[SecretPolicyDecisionTrace] = field(default_factory=list)
    hook_decisions: List[SecretHookDecisionTrace] = field(default_factory=list)
    allowed: bool = False
    deny_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _deny(trace: SecretAccessTrace, context: WorkspaceContext, reason: str) -> DenyError:
    trace.deny_reason = reason
    logger.warning("secret access denied: %s", reason)
    return DenyError(
        principal=trace.principal,
        capability=f"secret.{trace.action}:{trace.secret}",
        org_name=context.org_name,
        workspace_name=context.workspace_name,
        reason=reason,
    ).with_trace(trace)


def evaluate_secret_access(
    config: Config,
    principal: str,
    secret: str,
    action: str,
    org_name: str = "",
    workspace_name: str = "",
    hooks: Optional[Sequence[Any]] = None,
) -> SecretAccessTrace:
    """Decide whether a principal may act on a governed secret.

    Args:
        config: A loaded enterprise config.
        principal: Identity requesting access.
        secret: Name of the governed secret.
        action: ``read``, ``write`` or ``rotate`` (any case).
        org_name: Requested org, or blank for ``default_org``.
        workspace_name: Requested workspace, or blank for the org default.
        hooks: Enforcement hooks run in order once access is otherwise
            granted. Callables are accepted as hooks.

    Returns:
        The trace of an allowed access.

    Raises:
        DenyError: If access is denied; the trace is attached as ``.trace``.
        RequestError: If the request is malformed or a hook is None. A None
            hook leaves ``trace.allowed`` as it was when the chain reached it.
        ConfigError: If the config is invalid or has no governed secrets.
    """
    config.validate()
    governance = config.secret_governance
    if not governance.secrets:
        raise ConfigError("secret governance is not configured")

    principal = (principal or "").strip()
    if not principal:
        raise RequestError("principal is required")
    secret_name = (secret or "").strip()
    if not secret_name:
        raise RequestError("secret is required")
    action = normalize_secret_action(action)

    context = config.resolve_workspace(org_name, workspace_name)
    trace = SecretAccessTrace(
        principal=principal,
        secret=secret_name,
        action=action,
        org_name=context.org_name,
        org_id=context.org_id,
        workspace_name=context.workspace_name,
        workspace_id=context.workspace_id,
    )

    governed = governance.secrets.get(secret_name)
    if governed is None:
        raise _deny(trace, context, f"secret {quote(secret_name)} is not governed")
    trace.ownership = copy.deepcopy(governed.ownership)

    scope_org = governed.scope.org.strip()
    scope_workspace = governed.scope.workspace.strip()
    if scope_org != context.org_name or scope_workspace != context.workspace_name:
        raise _deny(trace, context, (
            f"secret {quote(secret_name)} is scoped to {quote(scope_org)}/{quote(scope_workspace)} "
            f"not {quote(context.org_name)}/{quote(context.workspace_name)}"
        ))
    trace.scope_matched = True

    owner = governed.ownership.owner_principal.strip()
    steward = governed.ownership.steward.strip()
    trace.owner_matched = principal == owner or (bool(steward) and principal == steward)

    policy_allows = False
    for index, policy in enumerate(governance.policies):
        policy_secret = policy.secret.strip()
        if policy_secret != secret_name:
            continue
        policy_principal = policy.principal.strip()
        policy_org = policy.org.strip()
        policy_workspace = policy.workspace.strip()
        scope_matched = True
        if policy_org or policy_workspace:
            scope_matched = policy_org == context.org_name and policy_workspace == context.workspace_name
        try:
            actions = normalize_secret_actions(policy.actions)
        except RequestError as e:
            raise ConfigError(f"invalid secret_governance.policies[{index}]: {e.message}") from e

        principal_matched = policy_principal == principal
        grants = principal_matched and scope_matched and action in actions
        trace.matched_policies.append(SecretPolicyDecisionTrace(
            index=index,
            principal=policy_principal,
            secret=policy_secret,
            actions=actions,
            org=policy_org,
            workspace=policy_workspace,
            principal_matched=principal_matched,
            scope_matched=scope_matched,
            grants_action=grants,
        ))
        policy_allows = policy_allows or grants

    if not trace.owner_matched and not policy_allows:
        raise _deny(trace, context, (
            f"principal {quote(principal)} is not allowed to {action} secret {quote(secret_name)} "
            f"in {quote(context.org_name)}/{quote(context.workspace_name)}"
        ))

    trace.allowed = True
    for index, raw_hook in enumerate(hooks or ()):
        hook = as_hook(raw_hook)
        if hook is None:
            raise RequestError(f"policy enforcement hook[{index}] is nil").with_trace(trace)
        try:
            hook.enforce(copy.deepcopy(trace))
        except Exception as e:
            reason = str(e).strip() or "hook rejected access"
            trace.hook_decisions.append(SecretHookDecisionTrace(index=index, allowed=False, reason=reason))
            trace.allowed = False
            raise _deny(trace, context, f"policy enforcement hook[{index}] denied access: {reason}") from e
        trace.hook_decisions.append(SecretHookDecisionTrace(index=index, allowed=True))

    logger.debug("secret access allowed: %s %s %s", principal, action, secret_name)
    return trace
