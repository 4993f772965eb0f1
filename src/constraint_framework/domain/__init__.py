"""Domain models: templates, constraints, inventory keys and results."""

from constraint_framework.domain.models import (
    Constraint,
    ConstraintKey,
    ConstraintStatus,
    ConstraintTemplate,
    InventoryKey,
    TemplateCode,
    TemplateTarget,
)
from constraint_framework.domain.results import Divergence, Response, Responses, Result

__all__ = [
    "Constraint",
    "ConstraintKey",
    "ConstraintStatus",
    "ConstraintTemplate",
    "Divergence",
    "InventoryKey",
    "Response",
    "Responses",
    "Result",
    "TemplateCode",
    "TemplateTarget",
]
