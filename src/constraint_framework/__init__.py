"""
constraint-framework — package root.

File: src/constraint_framework/__init__.py

Purpose
- Policy constraint framework: templates compiled into sandboxed rule modules, constraints
  bound to them, and admission reviews or cached inventory audited through pluggable drivers.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from constraint_framework.client import AuditBatch, Client, summarize_audit
from constraint_framework.domain.models import Constraint, ConstraintKey, ConstraintTemplate
from constraint_framework.domain.results import Response, Responses, Result
from constraint_framework.factory import create_client

__version__ = "0.1.0"

__all__ = [
    "AuditBatch",
    "Client",
    "Constraint",
    "ConstraintKey",
    "ConstraintTemplate",
    "Response",
    "Responses",
    "Result",
    "__version__",
    "create_client",
    "summarize_audit",
]
