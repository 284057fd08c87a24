"""Loader for the legacy single-profile CLI config.

Only what cutover needs is supported: strict decoding and validation of the
``profiles`` document. Legacy configs are never written by this package.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .config import PathLike, _check_fields, _mapping, _string, _string_list, quote
from .errors import ConfigError, ConfigNotFoundError, ConfigValidationError

logger = logging.getLogger(__name__)

LEGACY_SCHEMA_VERSION = 2
DEFAULT_GRAPH_VERSION = "v25.0"
DEFAULT_DOMAIN = "marketing"

TOKEN_TYPES = ("system_user", "user", "page", "app")

TIMESTAMP_FIELDS = ("issued_at", "expires_at", "last_validated_at")


def default_legacy_path() -> Path:
    return Path.home() / ".meta" / "config.yaml"


def _format_timestamp(value: date) -> str:
    """Render a timestamp YAML resolved from an unquoted scalar as RFC3339."""
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    return value.isoformat()


@dataclass
class LegacyProfile:
    domain: str = DEFAULT_DOMAIN
    graph_version: str = DEFAULT_GRAPH_VERSION
    token_type: str = ""
    business_id: str = ""
    app_id: str = ""
    page_id: str = ""
    source_profile: str = ""
    token_ref: str = ""
    app_secret_ref: str = ""
    auth_provider: str = ""
    auth_mode: str = ""
    scopes: List[str] = field(default_factory=list)
    issued_at: str = ""
    expires_at: str = ""
    last_validated_at: str = ""
    ig_user_id: str = ""

    FIELDS = (
        "domain", "graph_version", "token_type", "business_id", "app_id", "page_id",
        "source_profile", "token_ref", "app_secret_ref", "auth_provider", "auth_mode",
        "scopes", "issued_at", "expires_at", "last_validated_at", "ig_user_id",
    )

    @classmethod
    def from_dict(cls, data: Any, where: str) -> "LegacyProfile":
        data = _mapping(data, where)
        _check_fields(data, cls.FIELDS, where)
        values: Dict[str, Any] = {}
        for name in cls.FIELDS:
            if name not in data:
                continue
            if name == "scopes":
                values[name] = _string_list(data[name], f"{where}.scopes")
            elif name in TIMESTAMP_FIELDS and isinstance(data[name], (date, datetime)):
                values[name] = _format_timestamp(data[name])
            else:
                values[name] = _string(data[name], f"{where}.{name}")
        profile = cls(**values)
        profile.domain = profile.domain or DEFAULT_DOMAIN
        profile.graph_version = profile.graph_version or DEFAULT_GRAPH_VERSION
        return profile


@dataclass
class LegacyConfig:
    schema_version: int = LEGACY_SCHEMA_VERSION
    default_profile: str = ""
    profiles: Dict[str, LegacyProfile] = field(default_factory=dict)

    def validate(self) -> None:
        """Validate the legacy document.

        Raises:
            ConfigValidationError: Naming the offending profile.
        """
        if self.schema_version != LEGACY_SCHEMA_VERSION:
            raise ConfigValidationError(
                f"unsupported config schema_version={self.schema_version} (expected {LEGACY_SCHEMA_VERSION})"
            )
        for name in sorted(self.profiles):
            _validate_profile(name, self.profiles[name])
        if self.default_profile and self.default_profile not in self.profiles:
            raise ConfigValidationError(f"default_profile {quote(self.default_profile)} does not exist")


def _parse_timestamp(value: str, profile_name: str, field_name: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as e:
        raise ConfigValidationError(f"profile {quote(profile_name)} {field_name} must be RFC3339: {e}")
    if parsed.tzinfo is None:
        raise ConfigValidationError(
            f"profile {quote(profile_name)} {field_name} must be RFC3339: missing timezone offset"
        )
    return parsed


def _validate_profile(name: str, profile: LegacyProfile) -> None:
    if not name:
        raise ConfigValidationError("profile name cannot be empty")
    if not profile.token_type:
        raise ConfigValidationError(f"profile {quote(name)} token_type is required")
    if profile.token_type not in TOKEN_TYPES:
        raise ConfigValidationError(
            f"profile {quote(name)} token_type must be one of [{' '.join(TOKEN_TYPES)}]"
        )
    if not profile.token_ref:
        raise ConfigValidationError(f"profile {quote(name)} token_ref is required")
    if any(not scope.strip() for scope in profile.scopes):
        raise ConfigValidationError(f"profile {quote(name)} scopes contains blank entries")

    issued_at = _parse_timestamp(profile.issued_at, name, "issued_at") if profile.issued_at else None
    expires_at = _parse_timestamp(profile.expires_at, name, "expires_at") if profile.expires_at else None
    if profile.last_validated_at:
        _parse_timestamp(profile.last_validated_at, name, "last_validated_at")
    if issued_at and expires_at and expires_at <= issued_at:
        raise ConfigValidationError(f"profile {quote(name)} expires_at must be after issued_at")


def load_legacy(path: PathLike) -> LegacyConfig:
    """Load and validate a legacy profile config.

    Raises:
        ConfigNotFoundError: If the file does not exist.
        ConfigError: If the document cannot be decoded or is invalid.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigNotFoundError(f"config file does not exist at {path}")
    except OSError as e:
        raise ConfigError(f"read config file {path}: {e}")
    except UnicodeDecodeError as e:
        raise ConfigError(f"decode config file {path}: {e}")

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"decode config file {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"decode config file {path}: document must be a mapping")

    try:
        _check_fields(data, ("schema_version", "default_profile", "profiles"), "config")
        schema_version = data.get("schema_version", 0)
        if isinstance(schema_version, bool) or not isinstance(schema_version, int):
            raise ConfigError("schema_version must be an integer")
        profiles = {}
        for name, value in _mapping(data.get("profiles"), "profiles").items():
            name = _string(name, "profiles key")
            profiles[name] = LegacyProfile.from_dict(value, f"profiles[{quote(name)}]")
        cfg = LegacyConfig(
            schema_version=schema_version,
            default_profile=_string(data.get("default_profile"), "default_profile"),
            profiles=profiles,
        )
    except ConfigError as e:
        raise ConfigError(f"decode config file {path}: {e.message}") from e

    cfg.validate()
    logger.debug("loaded legacy config from %s (%d profiles)", path, len(cfg.profiles))
    return cfg
