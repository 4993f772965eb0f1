"""Target handlers and their registry."""

from constraint_framework.targets.admission import ADMISSION_TARGET_NAME, AdmissionTarget
from constraint_framework.targets.base import (
    DataClassification,
    ReviewClassification,
    Target,
    TargetProtocol,
    TargetRegistry,
    validate_target_name,
)


def default_target_registry() -> TargetRegistry:
    """Registry with the built-in admission target."""

    registry = TargetRegistry()
    registry.register(ADMISSION_TARGET_NAME, AdmissionTarget)
    return registry


__all__ = [
    "ADMISSION_TARGET_NAME",
    "AdmissionTarget",
    "DataClassification",
    "ReviewClassification",
    "Target",
    "TargetProtocol",
    "TargetRegistry",
    "default_target_registry",
    "validate_target_name",
]
