"""Role binding evaluation with deny-override semantics."""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List

from .config import Config, quote
from .errors import DenyError, RequestError

logger = logging.getLogger(__name__)

POLICY_EFFECT_DENY = "deny"
POLICY_EFFECT_ALLOW = "allow"


@dataclass
class BindingAuthorization:
    index: int
    principal: str
    role: str
    org_name: str
    workspace_name: str
    capabilities: List[str] = field(default_factory=list)
    deny_capabilities: List[str] = field(default_factory=list)
    grants_required_capability: bool = False
    denies_required_capability: bool = False


@dataclass
class PolicyDecision:
    step: int
    binding_index: int
    role: str
    effect: str
    capability: str
    matched: bool


@dataclass
class PolicyEvaluationTrace:
    principal: str = ""
    capability: str = ""
    org_name: str = ""
    org_id: str = ""
    workspace_name: str = ""
    workspace_id: str = ""
    matched_bindings: List[BindingAuthorization] = field(default_factory=list)
    decision_trace: List[PolicyDecision] = field(default_factory=list)
    allowed: bool = False
    deny_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def unique_sorted_capabilities(capabilities: Iterable[str]) -> List[str]:
    return sorted({capability.strip() for capability in capabilities if capability.strip()})


def evaluate_policy(
    config: Config,
    principal: str,
    capability: str,
    org_name: str = "",
    workspace_name: str = "",
) -> PolicyEvaluationTrace:
    """Evaluate whether a principal holds a capability in a workspace.

    Bindings are walked in declared order. Each binding for the principal in
    the resolved workspace contributes a deny check followed by an allow
    check to the decision trace. Any matching deny wins over every allow.

    Args:
        config: A loaded enterprise config.
        principal: Identity being evaluated.
        capability: Capability string required.
        org_name: Requested org, or blank for ``default_org``.
        workspace_name: Requested workspace, or blank for the org default.

    Returns:
        The evaluation trace of an allowed request.

    Raises:
        DenyError: If the capability is denied or not granted; the trace is
            attached as ``.trace``.
        ConfigValidationError: If the config is invalid.
        RequestError: If the request is malformed or cannot be resolved.
    """
    config.validate()

    principal = (principal or "").strip()
    if not principal:
        raise RequestError("principal is required")
    capability = (capability or "").strip()
    if not capability:
        raise RequestError("capability is required")

    context = config.resolve_workspace(org_name, workspace_name)
    trace = PolicyEvaluationTrace(
        principal=principal,
        capability=capability,
        org_name=context.org_name,
        org_id=context.org_id,
        workspace_name=context.workspace_name,
        workspace_id=context.workspace_id,
    )

    allowed = False
    denied = False
    step = 0
    for index, binding in enumerate(config.bindings):
        binding_principal = binding.principal.strip()
        binding_role = binding.role.strip()
        binding_org = binding.org.strip()
        binding_workspace = binding.workspace.strip()
        if (binding_principal != principal
                or binding_org != context.org_name
                or binding_workspace != context.workspace_name):
            continue

        role = config.roles[binding_role]
        allow_capabilities = unique_sorted_capabilities(role.capabilities)
        deny_capabilities = unique_sorted_capabilities(role.deny_capabilities)
        grants = capability in allow_capabilities
        denies = capability in deny_capabilities

        trace.matched_bindings.append(BindingAuthorization(
            index=index,
            principal=binding_principal,
            role=binding_role,
            org_name=binding_org,
            workspace_name=binding_workspace,
            capabilities=allow_capabilities,
            deny_capabilities=deny_capabilities,
            grants_required_capability=grants,
            denies_required_capability=denies,
        ))
        trace.decision_trace.append(PolicyDecision(
            step=step, binding_index=index, role=binding_role,
            effect=POLICY_EFFECT_DENY, capability=capability, matched=denies,
        ))
        step += 1
        trace.decision_trace.append(PolicyDecision(
            step=step, binding_index=index, role=binding_role,
            effect=POLICY_EFFECT_ALLOW, capability=capability, matched=grants,
        ))
        step += 1

        allowed = allowed or grants
        denied = denied or denies

    workspace_ref = f"{quote(context.org_name)}/{quote(context.workspace_name)}"
    if denied:
        trace.deny_reason = (
            f"principal {quote(principal)} is explicitly denied capability {quote(capability)} in {workspace_ref}"
        )
    elif allowed:
        trace.allowed = True
        logger.debug("policy allowed %s for %s in %s", capability, principal, workspace_ref)
        return trace
    elif not trace.matched_bindings:
        trace.deny_reason = f"principal {quote(principal)} has no role binding in {workspace_ref}"
    else:
        trace.deny_reason = (
            f"principal {quote(principal)} is missing capability {quote(capability)} in {workspace_ref}"
        )

    logger.warning("policy denied: %s", trace.deny_reason)
    raise DenyError(
        principal=principal,
        capability=capability,
        org_name=context.org_name,
        workspace_name=context.workspace_name,
        reason=trace.deny_reason,
    ).with_trace(trace)
