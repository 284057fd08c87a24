"""One-shot migration from the legacy profile config to enterprise mode."""

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from . import config as enterprise_config
from .commands import all_known_capabilities
from .config import Binding, Config, Org, Role, Workspace
from .errors import ConfigError, RequestError
from .legacy import load_legacy

logger = logging.getLogger(__name__)

CUTOVER_BOOTSTRAP_ROLE = "legacy-cutover-operator"


@dataclass
class ModeCutoverRequest:
    legacy_config_path: str
    enterprise_config_path: str
    org_name: str
    org_id: str
    workspace_name: str
    workspace_id: str
    principal: str
    force: bool = False


@dataclass
class ModeCutoverResult:
    legacy_config_path: str
    enterprise_config_path: str
    org_name: str
    org_id: str
    workspace_name: str
    workspace_id: str
    bootstrap_role: str
    bootstrap_principal: str
    migrated_profiles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _required(value: Any, name: str) -> str:
    normalized = str(value or "").strip()
    if not normalized:
        raise RequestError(f"{name} is required")
    return normalized


def cutover_legacy_config(request: ModeCutoverRequest) -> ModeCutoverResult:
    """Write an enterprise config bootstrapped from a legacy profile config.

    The new config has one org and workspace, a bootstrap role granting every
    capability in the command table, and one binding of the operator to that
    role. Legacy secrets are not migrated.

    Args:
        request: Source and target paths, the workspace to create and the
            principal to bind.

    Returns:
        The cutover summary, including the sorted legacy profile names.

    Raises:
        RequestError: If a field of the request is blank.
        ConfigError: If the target exists without ``force``, the legacy
            config cannot be loaded or has no profiles, or saving fails.
    """
    legacy_path = _required(request.legacy_config_path, "legacy_config_path")
    target_path = _required(request.enterprise_config_path, "enterprise_config_path")
    org_name = _required(request.org_name, "org_name")
    org_id = _required(request.org_id, "org_id")
    workspace_name = _required(request.workspace_name, "workspace_name")
    workspace_id = _required(request.workspace_id, "workspace_id")
    principal = _required(request.principal, "principal")

    if not request.force:
        try:
            exists = Path(target_path).exists()
        except OSError as e:
            raise ConfigError(f"stat enterprise config {target_path}: {e}")
        if exists:
            raise ConfigError(
                f"enterprise config already exists at {target_path}; rerun cutover with force to overwrite",
                ["Pass --force to overwrite the existing enterprise config"],
            )

    try:
        legacy = load_legacy(legacy_path)
    except ConfigError as e:
        raise ConfigError(f"load legacy config {legacy_path}: {e.message}") from e
    if not legacy.profiles:
        raise ConfigError("legacy config profiles map is required for cutover")

    cfg = Config(
        default_org=org_name,
        orgs={
            org_name: Org(
                id=org_id,
                default_workspace=workspace_name,
                workspaces={workspace_name: Workspace(id=workspace_id)},
            ),
        },
        roles={CUTOVER_BOOTSTRAP_ROLE: Role(capabilities=all_known_capabilities())},
        bindings=[Binding(principal=principal, role=CUTOVER_BOOTSTRAP_ROLE, org=org_name, workspace=workspace_name)],
    )
    enterprise_config.save(target_path, cfg)

    migrated = sorted(legacy.profiles)
    logger.info("cutover wrote %s from %s (%d profiles)", target_path, legacy_path, len(migrated))
    return ModeCutoverResult(
        legacy_config_path=legacy_path,
        enterprise_config_path=target_path,
        org_name=org_name,
        org_id=org_id,
        workspace_name=workspace_name,
        workspace_id=workspace_id,
        bootstrap_role=CUTOVER_BOOTSTRAP_ROLE,
        bootstrap_principal=principal,
        migrated_profiles=migrated,
    )
