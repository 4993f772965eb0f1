"""Review and data input types understood by the admission target."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Final

from constraint_framework.domain.models import split_api_version, to_json_value
from constraint_framework.errors import InvalidReviewError

ADMISSION_REVIEW_KIND: Final[str] = "AdmissionReview"
SOURCE_ORIGINAL: Final[str] = "Original"
SOURCE_GENERATED: Final[str] = "Generated"
SOURCE_ALL: Final[str] = "All"
REVIEW_SOURCES: Final[tuple[str, ...]] = (SOURCE_ORIGINAL, SOURCE_GENERATED, SOURCE_ALL)


@dataclass(frozen=True, slots=True)
class AugmentedReview:
    """An admission request plus the namespace object it targets."""

    admission_request: Mapping[str, Any]
    namespace: Mapping[str, Any] | None = None
    source: str | None = None


@dataclass(frozen=True, slots=True)
class AugmentedObject:
    """A bare object plus its namespace, reviewed as if it were being created."""

    object: Mapping[str, Any]
    namespace: Mapping[str, Any] | None = None
    source: str | None = None


class WipeData:
    """Data marker addressing every cached object of the target."""

    def __repr__(self) -> str:
        return "WipeData()"


def is_admission_request(value: Mapping[str, Any]) -> bool:
    return isinstance(value.get("kind"), Mapping) and (
        "object" in value or "oldObject" in value or "operation" in value
    )


def validate_admission_request(request: Mapping[str, Any]) -> dict[str, Any]:
    """Check the fields rules rely on and return a plain JSON copy."""

    errors: dict[str, str] = {}
    kind = request.get("kind")
    if not isinstance(kind, Mapping):
        errors["kind"] = "expected object with group, version and kind"
    else:
        for field_name in ("version", "kind"):
            value = kind.get(field_name)
            if not isinstance(value, str) or not value:
                errors[f"kind.{field_name}"] = "expected non-empty string"
        group = kind.get("group", "")
        if group is not None and not isinstance(group, str):
            errors["kind.group"] = "expected string"
    for field_name in ("object", "oldObject"):
        value = request.get(field_name)
        if value is not None and not isinstance(value, Mapping):
            errors[field_name] = "expected object"
    if errors:
        detail = "; ".join(f"{key}: {message}" for key, message in sorted(errors.items()))
        raise InvalidReviewError(f"invalid admission request: {detail}", errors=errors)
    try:
        converted = to_json_value(request, path="request")
    except ValueError as exc:
        raise InvalidReviewError(str(exc)) from exc
    if not isinstance(converted, dict):
        raise InvalidReviewError("admission request must be an object")
    kind_copy = dict(converted["kind"])
    kind_copy.setdefault("group", "")
    if kind_copy["group"] is None:
        kind_copy["group"] = ""
    converted["kind"] = kind_copy
    return converted


def object_to_request(obj: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a bare object into the admission request shape rules see."""

    api_version = obj.get("apiVersion")
    kind = obj.get("kind")
    if not isinstance(api_version, str) or not api_version:
        raise InvalidReviewError("object has no apiVersion")
    if not isinstance(kind, str) or not kind:
        raise InvalidReviewError("object has no kind")
    group, version = split_api_version(api_version)
    metadata = obj.get("metadata")
    metadata = metadata if isinstance(metadata, Mapping) else {}
    try:
        document = to_json_value(obj, path="object")
    except ValueError as exc:
        raise InvalidReviewError(str(exc)) from exc
    return {
        "kind": {"group": group, "version": version, "kind": kind},
        "object": document,
        "name": str(metadata.get("name") or ""),
        "namespace": str(metadata.get("namespace") or ""),
    }


def unstable_section(namespace: Mapping[str, Any] | None, source: str | None) -> dict[str, Any]:
    section: dict[str, Any] = {}
    if namespace is not None:
        if not isinstance(namespace, Mapping):
            raise InvalidReviewError("augmented namespace must be an object")
        section["namespace"] = to_json_value(namespace, path="namespace")
    if source is not None:
        if source not in REVIEW_SOURCES:
            raise InvalidReviewError(
                f"invalid review source {source!r}; expected one of {', '.join(REVIEW_SOURCES)}"
            )
        section["source"] = source
    return section


__all__ = [
    "ADMISSION_REVIEW_KIND",
    "AugmentedObject",
    "AugmentedReview",
    "REVIEW_SOURCES",
    "SOURCE_ALL",
    "SOURCE_GENERATED",
    "SOURCE_ORIGINAL",
    "WipeData",
    "is_admission_request",
    "object_to_request",
    "unstable_section",
    "validate_admission_request",
]
