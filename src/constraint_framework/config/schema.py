"""
constraint-framework — configuration schema and validation.

File: src/constraint_framework/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Profile overlay validation and deterministic deep-merge helpers.
- Redaction rules for sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support profile overlays (``strict``, ``debug``).

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from constraint_framework.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_QUERY_TIMEOUT_SECONDS,
    DEFAULT_REMOTE_TIMEOUT_SECONDS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "debug")
KNOWN_DRIVERS: Final[tuple[str, ...]] = ("local", "remote")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_TARGET_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9.]*$")
_URL_PATTERN = re.compile(r"^https?://[^\s/]+(/\S*)?$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "auth"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)


class MetaConfig(TypedDict):
    schema_version: int


class ClientConfig(TypedDict):
    query_timeout_seconds: float
    audit_chunk_size: int
    targets: list[str]


class LocalDriverConfig(TypedDict):
    tracing: bool
    print_enabled: bool
    max_workers: int


class RemoteDriverConfig(TypedDict):
    url: str
    timeout_seconds: float
    max_retries: int
    max_concurrent_requests: int
    token_env: str


class DriversConfig(TypedDict):
    enabled: list[str]
    local: LocalDriverConfig
    remote: RemoteDriverConfig


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool
    metrics_enabled: bool


class ProfileOverlay(TypedDict, total=False):
    client: dict[str, object]
    drivers: dict[str, object]
    observability: dict[str, object]


class FrameworkConfig(TypedDict):
    meta: MetaConfig
    client: ClientConfig
    drivers: DriversConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[FrameworkConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "client": {
        "query_timeout_seconds": DEFAULT_QUERY_TIMEOUT_SECONDS,
        "audit_chunk_size": 500,
        "targets": ["admission.k8s.gatekeeper.sh"],
    },
    "drivers": {
        "enabled": ["local"],
        "local": {"tracing": False, "print_enabled": False, "max_workers": 4},
        "remote": {
            "url": "http://127.0.0.1:8181",
            "timeout_seconds": DEFAULT_REMOTE_TIMEOUT_SECONDS,
            "max_retries": 2,
            "max_concurrent_requests": 8,
            "token_env": "CONSTRAINT_FRAMEWORK_REMOTE_TOKEN",
        },
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": True,
        "redact_secrets": True,
        "metrics_enabled": True,
    },
    "profiles": {
        "strict": {"client": {"query_timeout_seconds": 1.0}},
        "debug": {
            "drivers": {"local": {"tracing": True, "print_enabled": True}},
            "observability": {"log_level": "DEBUG"},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> FrameworkConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade constraint-framework.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the constraint-framework package"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    selected = profile.strip() if isinstance(profile, str) else ""
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    if not isinstance(profiles_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )
    overlay_raw = profiles_raw.get(selected)
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())
    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections: dict[str, _SectionValidator] = {
        "meta": _validate_meta,
        "client": _validate_client,
        "drivers": _validate_drivers,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, {*sections, "profiles"}, "", issues)
    _require_keys(payload, {*sections, "profiles"}, "", issues)

    out: dict[str, Any] = {}
    for name, validator in sections.items():
        if name not in payload:
            continue
        section = _as_object(payload[name], name, issues)
        if section is not None:
            out[name] = validator(section, name, issues, False)

    if "profiles" in payload:
        profiles = _as_object(payload["profiles"], "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, "profiles", issues)

    drivers = out.get("drivers")
    if isinstance(drivers, Mapping) and "remote" in drivers.get("enabled", ()):
        remote = drivers.get("remote")
        if not isinstance(remote, Mapping) or not remote.get("url"):
            issues.add("drivers.remote.url", "remote driver URL not set")
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        version = _as_int(payload["schema_version"], _join(path, "schema_version"), issues)
        if version is not None:
            if version != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(version))
            else:
                out["schema_version"] = version
    return out


def _validate_client(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"query_timeout_seconds", "audit_chunk_size", "targets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "query_timeout_seconds" in payload:
        timeout = _as_float(
            payload["query_timeout_seconds"],
            _join(path, "query_timeout_seconds"),
            issues,
            minimum=0.001,
        )
        if timeout is not None:
            out["query_timeout_seconds"] = timeout
    if "audit_chunk_size" in payload:
        chunk = _as_int(
            payload["audit_chunk_size"], _join(path, "audit_chunk_size"), issues, minimum=1
        )
        if chunk is not None:
            out["audit_chunk_size"] = chunk
    if "targets" in payload:
        targets = _as_str_list(payload["targets"], _join(path, "targets"), issues)
        if targets is not None:
            for index, name in enumerate(targets):
                if not _TARGET_NAME_PATTERN.fullmatch(name):
                    issues.add(
                        f"{_join(path, 'targets')}[{index}]",
                        "target name must match ^[a-zA-Z][a-zA-Z0-9.]*$",
                    )
            out["targets"] = targets
    return out


def _validate_drivers(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"enabled", "local", "remote"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "enabled" in payload:
        enabled = _as_str_list(payload["enabled"], _join(path, "enabled"), issues)
        if enabled is not None:
            if not enabled:
                issues.add(_join(path, "enabled"), "at least one driver must be enabled")
            for name in enabled:
                if name not in KNOWN_DRIVERS:
                    expected = ", ".join(KNOWN_DRIVERS)
                    issues.add(
                        _join(path, "enabled"),
                        f"invalid driver {name!r}; expected one of: {expected}",
                    )
            if len(set(enabled)) != len(enabled):
                issues.add(_join(path, "enabled"), "drivers must not repeat")
            out["enabled"] = enabled

    if "local" in payload:
        local_path = _join(path, "local")
        local = _as_object(payload["local"], local_path, issues)
        if local is not None:
            local_allowed = {"tracing", "print_enabled", "max_workers"}
            _reject_unknown_keys(local, local_allowed, local_path, issues)
            if not partial:
                _require_keys(local, local_allowed, local_path, issues)
            parsed: dict[str, Any] = {}
            for key in ("tracing", "print_enabled"):
                if key in local:
                    flag = _as_bool(local[key], _join(local_path, key), issues)
                    if flag is not None:
                        parsed[key] = flag
            if "max_workers" in local:
                workers = _as_int(
                    local["max_workers"], _join(local_path, "max_workers"), issues, minimum=1
                )
                if workers is not None:
                    parsed["max_workers"] = workers
            out["local"] = parsed

    if "remote" in payload:
        remote_path = _join(path, "remote")
        remote = _as_object(payload["remote"], remote_path, issues)
        if remote is not None:
            out["remote"] = _validate_remote(remote, remote_path, issues, partial)
    return out


def _validate_remote(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"url", "timeout_seconds", "max_retries", "max_concurrent_requests", "token_env"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "url" in payload:
        url = _as_str(payload["url"], _join(path, "url"), issues)
        if url is not None:
            if not _URL_PATTERN.fullmatch(url):
                issues.add(_join(path, "url"), "must be an http(s) URL")
            else:
                out["url"] = url.rstrip("/")
    if "timeout_seconds" in payload:
        timeout = _as_float(
            payload["timeout_seconds"], _join(path, "timeout_seconds"), issues, minimum=0.001
        )
        if timeout is not None:
            out["timeout_seconds"] = timeout
    if "max_retries" in payload:
        retries = _as_int(payload["max_retries"], _join(path, "max_retries"), issues, minimum=0)
        if retries is not None:
            out["max_retries"] = retries
    if "max_concurrent_requests" in payload:
        limit = _as_int(
            payload["max_concurrent_requests"],
            _join(path, "max_concurrent_requests"),
            issues,
            minimum=1,
        )
        if limit is not None:
            out["max_concurrent_requests"] = limit
    if "token_env" in payload:
        env_name = _as_env_name(payload["token_env"], _join(path, "token_env"), issues)
        if env_name is not None:
            out["token_env"] = env_name
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout", "redact_secrets", "metrics_enabled"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        )
        if level is not None:
            out["log_level"] = level
    if "log_dir" in payload:
        log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if log_dir is not None:
            out["log_dir"] = log_dir
    for key in ("log_to_stdout", "redact_secrets", "metrics_enabled"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag
    return out


def _validate_profiles(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    overlay_sections: dict[str, _SectionValidator] = {
        "client": _validate_client,
        "drivers": _validate_drivers,
        "observability": _validate_observability,
    }
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile = _as_object(payload[profile_name], profile_path, issues)
        if profile is None:
            continue
        _reject_unknown_keys(profile, set(overlay_sections), profile_path, issues)
        overlay: dict[str, Any] = {}
        for section, validator in overlay_sections.items():
            if section not in profile:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(profile[section], section_path, issues)
            if section_obj is not None:
                overlay[section] = validator(section_obj, section_path, issues, True)
        out[profile_name] = overlay
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, Sequence) or isinstance(value, str):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_str(item, f"{path}[{index}]", issues)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: CONSTRAINT_FRAMEWORK_REMOTE_TOKEN)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    return any(token in _SENSITIVE_KEY_TOKENS for token in normalized.split("_") if token)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    return key if not path else f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            nested = _deep_copy_mapping(existing) if isinstance(existing, Mapping) else {}
            _merge_into(nested, value)
            target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "FrameworkConfig",
    "KNOWN_DRIVERS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
