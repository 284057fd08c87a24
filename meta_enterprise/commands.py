"""Compiled command to capability table.

Adding a CLI command requires adding its entry here; an unmapped command
is always denied.
"""

from typing import Dict, FrozenSet, List

from .errors import RequestError

COMMAND_TABLE_VERSION = 1

COMMAND_CAPABILITIES: Dict[str, str] = {
    "auth add system-user": "auth.profile.write",
    "auth login": "auth.user.login",
    "auth page-token": "auth.page-token.write",
    "auth app-token set": "auth.app-token.write",
    "auth validate": "auth.validate",
    "auth rotate": "auth.rotate",
    "auth debug-token": "auth.debug-token",
    "auth list": "auth.profile.read",
    "api get": "graph.read",
    "api post": "graph.write",
    "api delete": "graph.write",
    "api batch": "graph.batch.read",
    "insights run": "insights.run",
    "lint request": "lint.request",
    "schema list": "schema.read",
    "schema sync": "schema.write",
    "changelog check": "changelog.read",
    "ig health": "plugin.ig.health",
    "ops init": "ops.baseline.write",
    "ops run": "ops.baseline.read",
    "enterprise context": "enterprise.workspace.read",
    "enterprise authz check": "enterprise.authz.check",
    "enterprise policy eval": "enterprise.policy.eval",
}

HIGH_RISK_COMMANDS: FrozenSet[str] = frozenset({
    "auth add system-user",
    "auth page-token",
    "auth app-token set",
    "auth rotate",
    "api post",
    "api delete",
    "schema sync",
})


def normalize_command_reference(command: str) -> str:
    """Lower-case a command, drop a leading ``meta`` and collapse whitespace.

    Raises:
        RequestError: If nothing is left to look up.
    """
    parts = (command or "").lower().split()
    if parts and parts[0] == "meta":
        parts = parts[1:]
    if not parts:
        raise RequestError("command is required")
    return " ".join(parts)


def capability_for_command(normalized_command: str) -> str:
    """Return the mapped capability, or an empty string when unmapped."""
    return COMMAND_CAPABILITIES.get(normalized_command, "")


def all_known_capabilities() -> List[str]:
    return sorted({capability.strip() for capability in COMMAND_CAPABILITIES.values() if capability.strip()})


def requires_approval(normalized_command: str) -> bool:
    return normalized_command.strip() in HIGH_RISK_COMMANDS
