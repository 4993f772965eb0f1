"""Admission target: reviews of cluster objects."""

from constraint_framework.targets.admission.handler import ADMISSION_TARGET_NAME, AdmissionTarget
from constraint_framework.targets.admission.reviews import (
    AugmentedObject,
    AugmentedReview,
    WipeData,
)

__all__ = [
    "ADMISSION_TARGET_NAME",
    "AdmissionTarget",
    "AugmentedObject",
    "AugmentedReview",
    "WipeData",
]
