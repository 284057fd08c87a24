"""Shared enterprise config documents for the test suite."""

from pathlib import Path

import yaml

from meta_enterprise.config import Config

ENTERPRISE_YAML = """
schema_version: 1
mode: enterprise
default_org: agency
orgs:
  agency:
    id: 1001
    default_workspace: alpha
    workspaces:
      alpha:
        id: "2001"
      bravo:
        id: "2002"
roles:
  reader:
    capabilities: [graph.read, enterprise.workspace.read]
  writer:
    capabilities: [graph.read, graph.write, auth.rotate]
  blocked:
    deny_capabilities: [graph.read]
bindings:
  - {principal: reader@example.com, role: reader, org: agency, workspace: alpha}
  - {principal: writer@example.com, role: writer, org: agency, workspace: alpha}
  - {principal: mixed@example.com, role: reader, org: agency, workspace: alpha}
  - {principal: mixed@example.com, role: blocked, org: agency, workspace: alpha}
secret_governance:
  secrets:
    ads_token:
      scope: {org: agency, workspace: alpha}
      ownership:
        owner_principal: owner@example.com
        owner_team: growth
        steward: steward@example.com
      metadata:
        rotation: 30d
    bravo_token:
      scope: {org: agency, workspace: bravo}
      ownership:
        owner_principal: owner@example.com
  policies:
    - {principal: reader@example.com, secret: ads_token, actions: [read]}
    - {principal: writer@example.com, secret: ads_token, actions: [read, write], org: agency, workspace: alpha}
    - {principal: reader@example.com, secret: bravo_token, actions: [read]}
"""

LEGACY_YAML = """
schema_version: 2
default_profile: prod
profiles:
  prod:
    token_type: system_user
    token_ref: keychain://meta/prod
    app_id: "123"
    scopes: [ads_management]
    issued_at: "2026-01-01T00:00:00Z"
    expires_at: "2026-03-01T00:00:00Z"
  dev:
    token_type: user
    token_ref: keychain://meta/dev
"""


def enterprise_document() -> dict:
    return yaml.safe_load(ENTERPRISE_YAML)


def build_config() -> Config:
    return Config.from_dict(enterprise_document())


def write_file(directory: Path, name: str, content: str) -> Path:
    path = Path(directory) / name
    path.write_text(content, encoding="utf-8")
    return path
