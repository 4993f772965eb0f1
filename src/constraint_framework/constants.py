"""Stable constants shared across the constraint framework."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Constraint API identity.
CONSTRAINT_GROUP: Final[str] = "constraints.gatekeeper.sh"
CONSTRAINT_VERSIONS: Final[tuple[str, ...]] = ("v1alpha1", "v1beta1", "v1")
DEFAULT_CONSTRAINT_VERSION: Final[str] = "v1beta1"
TEMPLATE_GROUP: Final[str] = "templates.gatekeeper.sh"
TEMPLATE_KIND: Final[str] = "ConstraintTemplate"

# Enforcement action applied when a constraint names none.
DEFAULT_ENFORCEMENT_ACTION: Final[str] = "deny"

# Rule language spoken by the in-process driver.
PYTHON_ENGINE: Final[str] = "python"

# Logical roots inside a driver's per-target data document.
CONSTRAINTS_ROOT: Final[str] = "constraints"
EXTERNAL_DATA_ROOT: Final[str] = "external"
MODULE_PREFIX: Final[str] = "templates"

# Library placeholders substituted at binding time.
CONSTRAINTS_ROOT_PLACEHOLDER: Final[str] = "{{constraints_root}}"
DATA_ROOT_PLACEHOLDER: Final[str] = "{{data_root}}"

# Relation names; the user rule may only define ``violation`` as an entry point.
VIOLATION_RELATION: Final[str] = "violation"
MATCHING_CONSTRAINTS_RELATION: Final[str] = "matching_constraints"
MATCHING_REVIEWS_RELATION: Final[str] = "matching_reviews_and_constraints"
INVENTORY_RELATION: Final[str] = "inventory"

# Timeouts (seconds).
DEFAULT_QUERY_TIMEOUT_SECONDS: Final[float] = 3.0
DEFAULT_REMOTE_TIMEOUT_SECONDS: Final[float] = 5.0

# Audit results kept per constraint status.
DEFAULT_STATUS_VIOLATION_LIMIT: Final[int] = 20

TARGET_NAME_PATTERN: Final[str] = r"^[a-zA-Z][a-zA-Z0-9.]*$"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "CONSTRAINTS_ROOT",
    "CONSTRAINTS_ROOT_PLACEHOLDER",
    "CONSTRAINT_GROUP",
    "CONSTRAINT_VERSIONS",
    "DATA_ROOT_PLACEHOLDER",
    "DEFAULT_CONSTRAINT_VERSION",
    "DEFAULT_ENFORCEMENT_ACTION",
    "DEFAULT_QUERY_TIMEOUT_SECONDS",
    "DEFAULT_REMOTE_TIMEOUT_SECONDS",
    "DEFAULT_STATUS_VIOLATION_LIMIT",
    "EXTERNAL_DATA_ROOT",
    "INVENTORY_RELATION",
    "MATCHING_CONSTRAINTS_RELATION",
    "MATCHING_REVIEWS_RELATION",
    "MODULE_PREFIX",
    "PYTHON_ENGINE",
    "TARGET_NAME_PATTERN",
    "TEMPLATE_GROUP",
    "TEMPLATE_KIND",
    "VIOLATION_RELATION",
]
