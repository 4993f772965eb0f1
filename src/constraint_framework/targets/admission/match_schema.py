"""Match schema and selector validation for the admission target."""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping
from typing import Final

from constraint_framework.domain.models import JSONValue

# Namespace names, optionally with a prefix (``kube-*``) or suffix (``*-system``) wildcard.
WILDCARD_PATTERN: Final[str] = (
    r"^(\*|\*-)?[a-z0-9]([-a-z0-9]*[a-z0-9])?$|^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\*|-\*)?$"
)
SELECTOR_OPERATORS: Final[tuple[str, ...]] = ("In", "NotIn", "Exists", "DoesNotExist")
SCOPES: Final[tuple[str, ...]] = ("*", "Cluster", "Namespaced")

_LABEL_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^([A-Za-z0-9][-A-Za-z0-9_.]*)?[A-Za-z0-9]$")
_LABEL_PREFIX_RE: Final[re.Pattern[str]] = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)

_WILDCARD_LIST: Final[dict[str, JSONValue]] = {
    "type": "array",
    "items": {"type": "string", "pattern": WILDCARD_PATTERN},
}
_NULLABLE_STRING_LIST: Final[dict[str, JSONValue]] = {
    "type": "array",
    "items": {"type": ["string", "null"]},
}
_LABEL_SELECTOR: Final[dict[str, JSONValue]] = {
    "type": "object",
    "properties": {
        "matchLabels": {
            "type": "object",
            "description": (
                "A mapping of label keys to sets of allowed label values for those keys. "
                "A selected resource will match all of these expressions."
            ),
            "additionalProperties": {"type": "string"},
        },
        "matchExpressions": {
            "type": "array",
            "description": (
                "a list of label selection expressions. A selected resource will match all "
                "of these expressions."
            ),
            "items": {
                "type": "object",
                "properties": {
                    "key": {"type": "string"},
                    "operator": {"type": "string", "enum": list(SELECTOR_OPERATORS)},
                    "values": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
    },
}


def match_schema() -> dict[str, JSONValue]:
    """Return a fresh copy of the ``spec.match`` schema."""

    return {
        "type": "object",
        "properties": {
            "kinds": {
                "type": "array",
                "items": {
                    "type": "object",
                    "description": (
                        "The Group and Kind of objects that should be matched. If multiple "
                        "groups/kinds combinations are specified, an incoming resource need "
                        "only match one to be in scope."
                    ),
                    "properties": {
                        "apiGroups": copy.deepcopy(_NULLABLE_STRING_LIST),
                        "kinds": copy.deepcopy(_NULLABLE_STRING_LIST),
                    },
                },
            },
            "namespaces": copy.deepcopy(_WILDCARD_LIST),
            "excludedNamespaces": copy.deepcopy(_WILDCARD_LIST),
            "labelSelector": copy.deepcopy(_LABEL_SELECTOR),
            "namespaceSelector": copy.deepcopy(_LABEL_SELECTOR),
            "scope": {"type": "string", "enum": list(SCOPES)},
            "name": {"type": "string", "pattern": WILDCARD_PATTERN},
        },
    }


def _valid_label_key(key: str) -> bool:
    prefix, slash, name = key.rpartition("/")
    if slash and (not prefix or len(prefix) > 253 or not _LABEL_PREFIX_RE.match(prefix)):
        return False
    return 0 < len(name) <= 63 and bool(_LABEL_NAME_RE.match(name))


def _valid_label_value(value: str) -> bool:
    return value == "" or (len(value) <= 63 and bool(_LABEL_NAME_RE.match(value)))


def selector_issues(selector: object, path: str) -> list[str]:
    """Return label selector problems using Kubernetes selector rules."""

    if selector is None:
        return []
    if not isinstance(selector, Mapping):
        return [f"{path}: expected object"]
    issues: list[str] = []
    labels = selector.get("matchLabels") or {}
    if not isinstance(labels, Mapping):
        issues.append(f"{path}.matchLabels: expected object")
        labels = {}
    for key, value in labels.items():
        if not isinstance(key, str) or not _valid_label_key(key):
            issues.append(f"{path}.matchLabels: invalid label key {key!r}")
        if not isinstance(value, str) or not _valid_label_value(value):
            issues.append(f"{path}.matchLabels[{key}]: invalid label value {value!r}")

    expressions = selector.get("matchExpressions") or []
    if not isinstance(expressions, list):
        return [*issues, f"{path}.matchExpressions: expected array"]
    for index, expression in enumerate(expressions):
        where = f"{path}.matchExpressions[{index}]"
        if not isinstance(expression, Mapping):
            issues.append(f"{where}: expected object")
            continue
        key = expression.get("key")
        operator = expression.get("operator")
        values = expression.get("values") or []
        if not isinstance(key, str) or not _valid_label_key(key):
            issues.append(f"{where}.key: invalid label key {key!r}")
        if operator not in SELECTOR_OPERATORS:
            issues.append(f"{where}.operator: not a valid selector operator: {operator!r}")
            continue
        if not isinstance(values, list):
            issues.append(f"{where}.values: expected array")
            continue
        if operator in ("In", "NotIn") and not values:
            issues.append(f"{where}.values: must be specified when `operator` is 'In' or 'NotIn'")
        if operator in ("Exists", "DoesNotExist") and values:
            issues.append(
                f"{where}.values: may not be specified when `operator` is 'Exists' or "
                "'DoesNotExist'"
            )
    return issues


__all__ = [
    "SCOPES",
    "SELECTOR_OPERATORS",
    "WILDCARD_PATTERN",
    "match_schema",
    "selector_issues",
]
