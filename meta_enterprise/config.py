"""Enterprise configuration: data model, strict decoding, validation and
atomic persistence.

The document is reloaded and revalidated by every entry point; nothing in
this module caches a loaded config between calls.
"""

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Self, Union

import yaml

from .errors import (
    ConfigError,
    ConfigNotFoundError,
    ConfigValidationError,
    LegacyConfigError,
    RequestError,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
ENTERPRISE_MODE = "enterprise"

CONFIG_PATH_ENV = "META_ENTERPRISE_CONFIG"

SECRET_ACTION_READ = "read"
SECRET_ACTION_WRITE = "write"
SECRET_ACTION_ROTATE = "rotate"
SECRET_ACTIONS = (SECRET_ACTION_READ, SECRET_ACTION_WRITE, SECRET_ACTION_ROTATE)

PathLike = Union[str, os.PathLike]


def quote(value: Any) -> str:
    """Render a value double-quoted, the way error messages cite names."""
    return json.dumps(str(value), ensure_ascii=False)


def default_path() -> Path:
    """Return the enterprise config path, honouring ``META_ENTERPRISE_CONFIG``."""
    override = os.environ.get(CONFIG_PATH_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".meta" / "enterprise.yaml"


# -- decoding helpers -------------------------------------------------------

def _mapping(value: Any, where: str) -> Dict[Any, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where} must be a mapping")
    return value


def _check_fields(data: Dict[Any, Any], allowed: Iterable[str], where: str) -> None:
    allowed = set(allowed)
    for key in data:
        if key not in allowed:
            raise ConfigError(f"unknown field {quote(key)} in {where}")


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        raise ConfigError(f"{where} must be a string")
    if isinstance(value, (str, int)):
        return str(value)
    raise ConfigError(f"{where} must be a string")


def _string_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{where} must be a list")
    return [_string(item, f"{where}[{index}]") for index, item in enumerate(value)]


def _omit_empty(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value not in ("", None, [], {})}


# -- data model -------------------------------------------------------------

@dataclass
class Workspace:
    id: str = ""

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "Workspace":
        data = _mapping(data, where)
        _check_fields(data, ("id",), where)
        return cls(id=_string(data.get("id"), f"{where}.id"))

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id}


@dataclass
class Org:
    id: str = ""
    default_workspace: str = ""
    workspaces: Dict[str, Workspace] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "Org":
        data = _mapping(data, where)
        _check_fields(data, ("id", "default_workspace", "workspaces"), where)
        workspaces = {}
        for name, value in _mapping(data.get("workspaces"), f"{where}.workspaces").items():
            name = _string(name, f"{where}.workspaces key")
            workspaces[name] = Workspace.from_dict(value, f"{where}.workspaces[{quote(name)}]")
        return cls(
            id=_string(data.get("id"), f"{where}.id"),
            default_workspace=_string(data.get("default_workspace"), f"{where}.default_workspace"),
            workspaces=workspaces,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _omit_empty({
            "id": self.id,
            "default_workspace": self.default_workspace,
            "workspaces": {name: self.workspaces[name].to_dict() for name in self.workspaces},
        })


@dataclass
class Role:
    capabilities: List[str] = field(default_factory=list)
    deny_capabilities: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "Role":
        data = _mapping(data, where)
        _check_fields(data, ("capabilities", "deny_capabilities"), where)
        return cls(
            capabilities=_string_list(data.get("capabilities"), f"{where}.capabilities"),
            deny_capabilities=_string_list(data.get("deny_capabilities"), f"{where}.deny_capabilities"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _omit_empty({
            "capabilities": list(self.capabilities),
            "deny_capabilities": list(self.deny_capabilities),
        })


@dataclass
class Binding:
    principal: str = ""
    role: str = ""
    org: str = ""
    workspace: str = ""

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "Binding":
        data = _mapping(data, where)
        _check_fields(data, ("principal", "role", "org", "workspace"), where)
        return cls(**{key: _string(data.get(key), f"{where}.{key}")
                      for key in ("principal", "role", "org", "workspace")})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": self.principal,
            "role": self.role,
            "org": self.org,
            "workspace": self.workspace,
        }


@dataclass
class SecretScope:
    org: str = ""
    workspace: str = ""

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "SecretScope":
        data = _mapping(data, where)
        _check_fields(data, ("org", "workspace"), where)
        return cls(
            org=_string(data.get("org"), f"{where}.org"),
            workspace=_string(data.get("workspace"), f"{where}.workspace"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"org": self.org, "workspace": self.workspace}


@dataclass
class SecretOwnership:
    owner_principal: str = ""
    owner_team: str = ""
    steward: str = ""

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "SecretOwnership":
        data = _mapping(data, where)
        _check_fields(data, ("owner_principal", "owner_team", "steward"), where)
        return cls(**{key: _string(data.get(key), f"{where}.{key}")
                      for key in ("owner_principal", "owner_team", "steward")})

    def to_dict(self) -> Dict[str, Any]:
        data = _omit_empty({"owner_team": self.owner_team, "steward": self.steward})
        return {"owner_principal": self.owner_principal, **data}


@dataclass
class GovernedSecret:
    scope: SecretScope = field(default_factory=SecretScope)
    ownership: SecretOwnership = field(default_factory=SecretOwnership)
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "GovernedSecret":
        data = _mapping(data, where)
        _check_fields(data, ("scope", "ownership", "metadata"), where)
        metadata = {}
        for key, value in _mapping(data.get("metadata"), f"{where}.metadata").items():
            key = _string(key, f"{where}.metadata key")
            metadata[key] = _string(value, f"{where}.metadata[{quote(key)}]")
        return cls(
            scope=SecretScope.from_dict(data.get("scope"), f"{where}.scope"),
            ownership=SecretOwnership.from_dict(data.get("ownership"), f"{where}.ownership"),
            metadata=metadata,
        )

    def to_dict(self) -> Dict[str, Any]:
        return _omit_empty({
            "scope": self.scope.to_dict(),
            "ownership": self.ownership.to_dict(),
            "metadata": dict(self.metadata),
        })


@dataclass
class SecretAccessPolicy:
    principal: str = ""
    secret: str = ""
    actions: List[str] = field(default_factory=list)
    org: str = ""
    workspace: str = ""

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "SecretAccessPolicy":
        data = _mapping(data, where)
        _check_fields(data, ("principal", "secret", "actions", "org", "workspace"), where)
        return cls(
            principal=_string(data.get("principal"), f"{where}.principal"),
            secret=_string(data.get("secret"), f"{where}.secret"),
            actions=_string_list(data.get("actions"), f"{where}.actions"),
            org=_string(data.get("org"), f"{where}.org"),
            workspace=_string(data.get("workspace"), f"{where}.workspace"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"principal": self.principal, "secret": self.secret, "actions": list(self.actions)}
        data.update(_omit_empty({"org": self.org, "workspace": self.workspace}))
        return data


@dataclass
class SecretGovernance:
    secrets: Dict[str, GovernedSecret] = field(default_factory=dict)
    policies: List[SecretAccessPolicy] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any, where: str = "secret_governance") -> "SecretGovernance":
        data = _mapping(data, where)
        _check_fields(data, ("secrets", "policies"), where)
        secrets = {}
        for name, value in _mapping(data.get("secrets"), f"{where}.secrets").items():
            name = _string(name, f"{where}.secrets key")
            secrets[name] = GovernedSecret.from_dict(value, f"{where}.secrets[{quote(name)}]")
        raw_policies = data.get("policies") or []
        if not isinstance(raw_policies, list):
            raise ConfigError(f"{where}.policies must be a list")
        policies = [SecretAccessPolicy.from_dict(value, f"{where}.policies[{index}]")
                    for index, value in enumerate(raw_policies)]
        return cls(secrets=secrets, policies=policies)

    def to_dict(self) -> Dict[str, Any]:
        return _omit_empty({
            "secrets": {name: self.secrets[name].to_dict() for name in self.secrets},
            "policies": [policy.to_dict() for policy in self.policies],
        })


@dataclass(frozen=True)
class WorkspaceContext:
    """A resolved org/workspace pair. Produced by resolution, never stored."""

    org_name: str
    org_id: str
    workspace_name: str
    workspace_id: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "org_name": self.org_name,
            "org_id": self.org_id,
            "workspace_name": self.workspace_name,
            "workspace_id": self.workspace_id,
        }


@dataclass
class Config:
    """The enterprise authorization document."""

    schema_version: int = SCHEMA_VERSION
    mode: str = ENTERPRISE_MODE
    default_org: str = ""
    orgs: Dict[str, Org] = field(default_factory=dict)
    roles: Dict[str, Role] = field(default_factory=dict)
    bindings: List[Binding] = field(default_factory=list)
    secret_governance: SecretGovernance = field(default_factory=SecretGovernance)

    FIELDS = ("schema_version", "mode", "default_org", "orgs", "roles", "bindings", "secret_governance")

    @classmethod
    def from_dict(cls, data: Any) -> "Config":
        """Decode a document, rejecting unknown fields at every level.

        Args:
            data: The parsed YAML document.

        Returns:
            The decoded, not yet validated, config.

        Raises:
            ConfigError: If the document has an unexpected shape.
        """
        if not isinstance(data, dict):
            raise ConfigError("enterprise config must be a mapping")
        _check_fields(data, cls.FIELDS, "config")

        schema_version = data.get("schema_version", 0)
        if isinstance(schema_version, bool) or not isinstance(schema_version, int):
            raise ConfigError("schema_version must be an integer")

        orgs = {}
        for name, value in _mapping(data.get("orgs"), "orgs").items():
            name = _string(name, "orgs key")
            orgs[name] = Org.from_dict(value, f"orgs[{quote(name)}]")

        roles = {}
        for name, value in _mapping(data.get("roles"), "roles").items():
            name = _string(name, "roles key")
            roles[name] = Role.from_dict(value, f"roles[{quote(name)}]")

        raw_bindings = data.get("bindings") or []
        if not isinstance(raw_bindings, list):
            raise ConfigError("bindings must be a list")

        return cls(
            schema_version=schema_version,
            mode=_string(data.get("mode"), "mode"),
            default_org=_string(data.get("default_org"), "default_org"),
            orgs=orgs,
            roles=roles,
            bindings=[Binding.from_dict(value, f"bindings[{index}]")
                      for index, value in enumerate(raw_bindings)],
            secret_governance=SecretGovernance.from_dict(data.get("secret_governance")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"schema_version": self.schema_version, "mode": self.mode}
        if self.default_org:
            data["default_org"] = self.default_org
        data["orgs"] = {name: self.orgs[name].to_dict() for name in self.orgs}
        data.update(_omit_empty({
            "roles": {name: self.roles[name].to_dict() for name in self.roles},
            "bindings": [binding.to_dict() for binding in self.bindings],
            "secret_governance": self.secret_governance.to_dict(),
        }))
        return data

    def validate(self: Self) -> None:
        """Validate the whole document.

        Keys of every map are visited in sorted order so the first error
        reported is the same on every run.

        Raises:
            ConfigValidationError: Naming the offending path.
        """
        if self.schema_version != SCHEMA_VERSION:
            raise ConfigValidationError(
                f"unsupported enterprise schema_version={self.schema_version} (expected {SCHEMA_VERSION})"
            )
        mode = self.mode.strip()
        if not mode:
            raise ConfigValidationError(
                "enterprise mode is required; run `meta enterprise mode cutover`",
                ["Migrate a legacy config: meta enterprise mode cutover --help"],
            )
        if mode != ENTERPRISE_MODE:
            raise ConfigValidationError(
                f"unsupported enterprise mode {quote(mode)}; only {quote(ENTERPRISE_MODE)} is allowed "
                "(run `meta enterprise mode cutover`)"
            )
        if not self.orgs:
            raise ConfigValidationError("enterprise orgs map is required")

        for org_name in sorted(self.orgs):
            _validate_org(org_name, self.orgs[org_name])

        default_org = self.default_org.strip()
        if default_org and default_org not in self.orgs:
            raise ConfigValidationError(f"default_org {quote(default_org)} does not exist")

        _validate_roles(self.roles)
        _validate_bindings(self.orgs, self.roles, self.bindings)
        _validate_secret_governance(self.orgs, self.secret_governance)

    def resolve_workspace(self: Self, org_name: str = "", workspace_name: str = "") -> WorkspaceContext:
        """Resolve an org/workspace pair, falling back to configured defaults.

        Args:
            org_name: Requested org; blank uses ``default_org``.
            workspace_name: Requested workspace; blank uses the org's
                ``default_workspace``.

        Returns:
            The resolved workspace context.

        Raises:
            ConfigValidationError: If the config is invalid.
            RequestError: If the org or workspace cannot be resolved.
        """
        self.validate()

        org_name = (org_name or "").strip() or self.default_org.strip()
        if not org_name:
            raise RequestError("org is required (--org or default_org)")
        org = self.orgs.get(org_name)
        if org is None:
            raise RequestError(f"org {quote(org_name)} does not exist")

        workspace_name = (workspace_name or "").strip() or org.default_workspace.strip()
        if not workspace_name:
            raise RequestError(
                f"workspace is required (--workspace or org {quote(org_name)} default_workspace)"
            )
        workspace = org.workspaces.get(workspace_name)
        if workspace is None:
            raise RequestError(f"workspace {quote(workspace_name)} does not exist in org {quote(org_name)}")

        return WorkspaceContext(
            org_name=org_name,
            org_id=org.id,
            workspace_name=workspace_name,
            workspace_id=workspace.id,
        )


# -- validation -------------------------------------------------------------

def _validate_org(name: str, org: Org) -> None:
    name = name.strip()
    if not name:
        raise ConfigValidationError("org name cannot be empty")
    if not org.id.strip():
        raise ConfigValidationError(f"org {quote(name)} id is required")
    if not org.workspaces:
        raise ConfigValidationError(f"org {quote(name)} workspaces map is required")

    for workspace_name in sorted(org.workspaces):
        if not workspace_name.strip():
            raise ConfigValidationError(f"org {quote(name)} workspace name cannot be empty")
        if not org.workspaces[workspace_name].id.strip():
            raise ConfigValidationError(f"org {quote(name)} workspace {quote(workspace_name)} id is required")

    default_workspace = org.default_workspace.strip()
    if default_workspace and default_workspace not in org.workspaces:
        raise ConfigValidationError(
            f"org {quote(name)} default_workspace {quote(default_workspace)} does not exist"
        )


def _validate_capabilities(role_name: str, capabilities: List[str], label: str) -> None:
    seen = set()
    for raw in capabilities:
        capability = raw.strip()
        if not capability:
            raise ConfigValidationError(f"role {quote(role_name)} {label} cannot be empty")
        if capability in seen:
            raise ConfigValidationError(f"role {quote(role_name)} {label} {quote(capability)} is duplicated")
        seen.add(capability)


def _validate_roles(roles: Dict[str, Role]) -> None:
    for role_name in sorted(roles):
        role = roles[role_name]
        if not role_name.strip():
            raise ConfigValidationError("role name cannot be empty")
        if not role.capabilities and not role.deny_capabilities:
            raise ConfigValidationError(
                f"role {quote(role_name)} capabilities or deny_capabilities are required"
            )
        _validate_capabilities(role_name, role.capabilities, "capability")
        _validate_capabilities(role_name, role.deny_capabilities, "deny capability")


def _validate_bindings(orgs: Dict[str, Org], roles: Dict[str, Role], bindings: List[Binding]) -> None:
    if not bindings:
        return
    if not roles:
        raise ConfigValidationError("enterprise roles map is required when bindings are defined")

    for index, binding in enumerate(bindings):
        where = f"binding[{index}]"
        if not binding.principal.strip():
            raise ConfigValidationError(f"{where} principal is required")

        role_name = binding.role.strip()
        if not role_name:
            raise ConfigValidationError(f"{where} role is required")
        if role_name not in roles:
            raise ConfigValidationError(f"{where} role {quote(role_name)} does not exist")

        org_name = binding.org.strip()
        if not org_name:
            raise ConfigValidationError(f"{where} org is required")
        org = orgs.get(org_name)
        if org is None:
            raise ConfigValidationError(f"{where} org {quote(org_name)} does not exist")

        workspace_name = binding.workspace.strip()
        if not workspace_name:
            raise ConfigValidationError(f"{where} workspace is required")
        if workspace_name not in org.workspaces:
            raise ConfigValidationError(
                f"{where} workspace {quote(workspace_name)} does not exist in org {quote(org_name)}"
            )


def normalize_secret_action(action: str) -> str:
    """Lower-case and check a secret action.

    Raises:
        RequestError: If the action is not read, write or rotate.
    """
    normalized = (action or "").strip().lower()
    if normalized not in SECRET_ACTIONS:
        raise RequestError(f"secret action {quote(action)} is not supported")
    return normalized


def normalize_secret_actions(actions: Iterable[str]) -> List[str]:
    """Normalize a list of actions, rejecting duplicates; returns them sorted."""
    seen: List[str] = []
    for raw in actions:
        action = normalize_secret_action(raw)
        if action in seen:
            raise RequestError(f"action {quote(action)} is duplicated")
        seen.append(action)
    return sorted(seen)


def _validate_secret_governance(orgs: Dict[str, Org], governance: SecretGovernance) -> None:
    if not governance.secrets and not governance.policies:
        return
    if not governance.secrets:
        raise ConfigValidationError("secret_governance.secrets map is required when policies are defined")

    for secret_name in sorted(governance.secrets):
        _validate_governed_secret(secret_name, governance.secrets[secret_name], orgs)
    for index, policy in enumerate(governance.policies):
        _validate_secret_policy(index, policy, governance.secrets, orgs)


def _validate_governed_secret(secret_name: str, secret: GovernedSecret, orgs: Dict[str, Org]) -> None:
    if not secret_name.strip():
        raise ConfigValidationError("secret_governance secret name cannot be empty")
    where = f"secret_governance.secrets[{quote(secret_name)}]"

    scope_org = secret.scope.org.strip()
    scope_workspace = secret.scope.workspace.strip()
    if not scope_org or not scope_workspace:
        raise ConfigValidationError(f"{where} scope org/workspace are required")
    org = orgs.get(scope_org)
    if org is None:
        raise ConfigValidationError(f"{where} scope org {quote(scope_org)} does not exist")
    if scope_workspace not in org.workspaces:
        raise ConfigValidationError(
            f"{where} scope workspace {quote(scope_workspace)} does not exist in org {quote(scope_org)}"
        )

    if not secret.ownership.owner_principal.strip():
        raise ConfigValidationError(f"{where} ownership.owner_principal is required")
    for key in secret.metadata:
        if not key.strip():
            raise ConfigValidationError(f"{where} metadata key cannot be empty")


def _validate_secret_policy(
    index: int,
    policy: SecretAccessPolicy,
    secrets: Dict[str, GovernedSecret],
    orgs: Dict[str, Org],
) -> None:
    where = f"secret_governance.policies[{index}]"
    if not policy.principal.strip():
        raise ConfigValidationError(f"{where} principal is required")

    secret_name = policy.secret.strip()
    if not secret_name:
        raise ConfigValidationError(f"{where} secret is required")
    secret = secrets.get(secret_name)
    if secret is None:
        raise ConfigValidationError(f"{where} secret {quote(secret_name)} does not exist")

    try:
        actions = normalize_secret_actions(policy.actions)
    except RequestError as e:
        raise ConfigValidationError(f"{where} {e.message}") from e
    if not actions:
        raise ConfigValidationError(f"{where} actions are required")

    policy_org = policy.org.strip()
    policy_workspace = policy.workspace.strip()
    if not policy_org and not policy_workspace:
        return
    if not policy_org or not policy_workspace:
        raise ConfigValidationError(f"{where} org and workspace must be provided together")

    org = orgs.get(policy_org)
    if org is None:
        raise ConfigValidationError(f"{where} org {quote(policy_org)} does not exist")
    if policy_workspace not in org.workspaces:
        raise ConfigValidationError(
            f"{where} workspace {quote(policy_workspace)} does not exist in org {quote(policy_org)}"
        )
    scope_org = secret.scope.org.strip()
    scope_workspace = secret.scope.workspace.strip()
    if policy_org != scope_org or policy_workspace != scope_workspace:
        raise ConfigValidationError(
            f"{where} scope {quote(policy_org)}/{quote(policy_workspace)} does not match secret "
            f"{quote(secret_name)} scope {quote(scope_org)}/{quote(scope_workspace)}"
        )


# -- persistence ------------------------------------------------------------

def is_legacy_document(data: Any) -> bool:
    """Return True for a legacy single-profile document."""
    return isinstance(data, dict) and ("profiles" in data or "default_profile" in data)


def legacy_cutover_command_hint(path: PathLike) -> str:
    return (
        f"meta enterprise mode cutover --legacy-config {path} --config {path} "
        "--org <org> --org-id <org-id> --workspace <workspace> "
        "--workspace-id <workspace-id> --principal <principal>"
    )


def load(path: PathLike) -> Config:
    """Load, decode and validate an enterprise config.

    Args:
        path: Location of the YAML document.

    Returns:
        A validated config snapshot.

    Raises:
        ConfigNotFoundError: If the file does not exist.
        LegacyConfigError: If the file holds a legacy profile document.
        ConfigError: If the document cannot be decoded or is invalid.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigNotFoundError(
            f"enterprise config file does not exist at {path}",
            [f"Create one with: {legacy_cutover_command_hint(path)}"],
        )
    except OSError as e:
        raise ConfigError(f"read enterprise config {path}: {e}")
    except UnicodeDecodeError as e:
        raise ConfigError(f"decode enterprise config {path}: {e}")

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"decode enterprise config {path}: {e}")

    if is_legacy_document(data):
        hint = legacy_cutover_command_hint(path)
        raise LegacyConfigError(f"legacy CLI config detected at {path}; run {quote(hint)}", [hint])
    if data is None:
        raise ConfigError(f"decode enterprise config {path}: document is empty")

    try:
        cfg = Config.from_dict(data)
    except ConfigError as e:
        raise ConfigError(f"decode enterprise config {path}: {e.message}") from e

    cfg.validate()
    logger.debug("loaded enterprise config from %s (%d orgs, %d bindings)",
                 path, len(cfg.orgs), len(cfg.bindings))
    return cfg


def save(path: PathLike, cfg: Optional[Config]) -> None:
    """Validate and atomically write an enterprise config.

    The document is written to a temporary file in the target directory,
    restricted to 0600 and renamed over the target. The temporary file is
    removed on every failure path.

    Args:
        path: Destination of the YAML document.
        cfg: Config to persist.

    Raises:
        ConfigValidationError: If the config is invalid.
        ConfigError: If writing fails.
    """
    if cfg is None:
        raise ConfigError("enterprise config is nil")
    cfg.validate()

    path = Path(path)
    directory = path.parent
    if not directory.exists():
        try:
            directory.mkdir(parents=True, mode=0o700)
            os.chmod(directory, 0o700)
        except OSError as e:
            raise ConfigError(f"create enterprise config directory for {path}: {e}")

    payload = yaml.safe_dump(cfg.to_dict(), sort_keys=False, default_flow_style=False)

    try:
        fd, temp_name = tempfile.mkstemp(prefix=".enterprise-", suffix=".yaml", dir=directory)
    except OSError as e:
        raise ConfigError(f"create temp enterprise config file: {e}")

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.chmod(temp_name, 0o600)
        os.replace(temp_name, path)
    except OSError as e:
        raise ConfigError(f"replace enterprise config file {path}: {e}")
    finally:
        if os.path.exists(temp_name):
            os.unlink(temp_name)

    logger.debug("saved enterprise config to %s", path)
