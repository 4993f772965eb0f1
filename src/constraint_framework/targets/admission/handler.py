"""
constraint-framework — admission target

File: src/constraint_framework/targets/admission/handler.py

Purpose
- Bind the framework to admission reviews of cluster objects.

What should be included in this file
- Data classification into ``cluster``/``namespace`` inventory paths.
- Review classification of admission reviews, requests, augmented inputs and bare objects.
- Violation enrichment that rebuilds the offending resource.
- Label/namespace selector validation for constraints.

Functional requirements
- Inputs of a shape this target does not own are reported as not handled.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Final

from constraint_framework.domain.models import Constraint, JSONValue
from constraint_framework.domain.results import Result
from constraint_framework.errors import (
    ConstraintValidationError,
    InvalidReviewError,
    InventoryError,
)
from constraint_framework.targets.admission.library import LIBRARY_SOURCE
from constraint_framework.targets.admission.match_schema import match_schema, selector_issues
from constraint_framework.targets.admission.reviews import (
    ADMISSION_REVIEW_KIND,
    AugmentedObject,
    AugmentedReview,
    WipeData,
    is_admission_request,
    object_to_request,
    unstable_section,
    validate_admission_request,
)
from constraint_framework.targets.base import DataClassification, ReviewClassification, Target

ADMISSION_TARGET_NAME: Final[str] = "admission.k8s.gatekeeper.sh"


class AdmissionTarget(Target):
    """Target for admission requests against cluster objects."""

    name = ADMISSION_TARGET_NAME

    def match_schema(self) -> dict[str, JSONValue]:
        return match_schema()

    def library(self) -> str:
        return LIBRARY_SOURCE

    def process_data(self, obj: object) -> DataClassification:
        if isinstance(obj, WipeData):
            return DataClassification(handled=True, path=(), data=None)
        if not isinstance(obj, Mapping):
            return DataClassification.not_handled()

        metadata = obj.get("metadata")
        metadata = metadata if isinstance(metadata, Mapping) else {}
        name = metadata.get("name")
        api_version = obj.get("apiVersion")
        kind = obj.get("kind")
        if not isinstance(name, str) or not name:
            raise InventoryError("resource has no name", target=self.name)
        if not isinstance(api_version, str) or not api_version:
            raise InventoryError(f"resource {name} has no version", target=self.name)
        if not isinstance(kind, str) or not kind:
            raise InventoryError(f"resource {name} has no kind", target=self.name)

        namespace = metadata.get("namespace")
        if isinstance(namespace, str) and namespace:
            path: tuple[str, ...] = ("namespace", namespace, api_version, kind, name)
        else:
            path = ("cluster", api_version, kind, name)
        return DataClassification(handled=True, path=path, data=obj)

    def handle_review(self, obj: object) -> ReviewClassification:
        if isinstance(obj, AugmentedReview):
            review = validate_admission_request(obj.admission_request)
            unstable = unstable_section(obj.namespace, obj.source)
            if unstable:
                review["_unstable"] = unstable
            return ReviewClassification(handled=True, review=review)

        if isinstance(obj, AugmentedObject):
            review = object_to_request(obj.object)
            unstable = unstable_section(obj.namespace, obj.source)
            if unstable:
                review["_unstable"] = unstable
            namespace_name = _name_of(obj.namespace)
            if namespace_name:
                review["namespace"] = namespace_name
            return ReviewClassification(handled=True, review=review)

        if not isinstance(obj, Mapping):
            return ReviewClassification.not_handled()

        if obj.get("kind") == ADMISSION_REVIEW_KIND and isinstance(obj.get("request"), Mapping):
            return ReviewClassification(
                handled=True, review=validate_admission_request(obj["request"])
            )
        if is_admission_request(obj):
            return ReviewClassification(handled=True, review=validate_admission_request(obj))
        if isinstance(obj.get("apiVersion"), str) and isinstance(obj.get("kind"), str):
            return ReviewClassification(handled=True, review=object_to_request(obj))
        return ReviewClassification.not_handled()

    def handle_violation(self, result: Result) -> Result:
        review = result.review
        if not isinstance(review, Mapping):
            raise InvalidReviewError(f"could not read review as object: {review!r}")
        kind = review.get("kind")
        if not isinstance(kind, Mapping):
            raise InvalidReviewError("review[kind] does not exist")
        fields: dict[str, str] = {}
        for key in ("group", "version", "kind"):
            value = kind.get(key)
            if value is None:
                raise InvalidReviewError(f"review[kind][{key}] does not exist")
            if not isinstance(value, str):
                raise InvalidReviewError(f"review[kind][{key}] is not a string: {value!r}")
            fields[key] = value

        resource = _nested_object(review, "object")
        if resource is None:
            resource = _nested_object(review, "oldObject")
        if resource is None:
            raise InvalidReviewError("no object or oldObject returned in review")

        group, version = fields["group"], fields["version"]
        resource["apiVersion"] = f"{group}/{version}" if group else version
        resource["kind"] = fields["kind"]
        return result.with_resource(resource)

    def validate_constraint(self, constraint: Constraint) -> None:
        issues: list[str] = []
        issues.extend(
            selector_issues(constraint.match.get("labelSelector"), "spec.match.labelSelector")
        )
        issues.extend(
            selector_issues(
                constraint.match.get("namespaceSelector"), "spec.match.namespaceSelector"
            )
        )
        if issues:
            raise ConstraintValidationError(
                f"constraint {constraint.key} has an invalid match", issues=issues
            )


def _nested_object(review: Mapping[str, Any], key: str) -> dict[str, Any] | None:
    # A null-valued field counts as missing.
    value = review.get(key)
    if isinstance(value, Mapping):
        return dict(value)
    return None


def _name_of(namespace: Mapping[str, Any] | None) -> str:
    if not isinstance(namespace, Mapping):
        return ""
    metadata = namespace.get("metadata")
    if isinstance(metadata, Mapping) and isinstance(metadata.get("name"), str):
        return str(metadata["name"])
    return ""


__all__ = ["ADMISSION_TARGET_NAME", "AdmissionTarget"]
