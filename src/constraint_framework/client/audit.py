"""
constraint-framework — audit batches and status summarization.

File: src/constraint_framework/client/audit.py

Purpose
- Describe one audit batch (one inventory shard of one target).
- Fold audit results into per-constraint status values.

Functional requirements
- Violations recorded on a status are capped; the total is not.
- Evaluation errors are recorded on the status of the constraint that produced them.
- Constraints that produced no results still get a status (zero violations).
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from constraint_framework.constants import DEFAULT_STATUS_VIOLATION_LIMIT
from constraint_framework.domain.models import (
    Constraint,
    ConstraintKey,
    ConstraintStatus,
    JSONValue,
    split_api_version,
)
from constraint_framework.domain.results import Responses, Result


@dataclass(frozen=True, slots=True)
class AuditBatch:
    """Results of auditing one (target, group/version, kind) inventory shard."""

    target: str
    group_version: str
    kind: str
    responses: Responses

    @property
    def result_count(self) -> int:
        return len(self.responses.results())


def _violation_entry(result: Result) -> dict[str, JSONValue]:
    entry: dict[str, JSONValue] = {
        "message": result.msg,
        "enforcementAction": result.enforcement_action,
    }
    resource = result.resource
    if resource is None and isinstance(result.review, Mapping):
        candidate = result.review.get("object")
        resource = candidate if isinstance(candidate, Mapping) else None
    if resource is None:
        return entry
    api_version = resource.get("apiVersion")
    if isinstance(api_version, str) and api_version:
        group, version = split_api_version(api_version)
        entry["group"] = group
        entry["version"] = version
    kind = resource.get("kind")
    if isinstance(kind, str):
        entry["kind"] = kind
    metadata = resource.get("metadata")
    if isinstance(metadata, Mapping):
        for field_name in ("namespace", "name"):
            value = metadata.get(field_name)
            if isinstance(value, str) and value:
                entry[field_name] = value
    return entry


def summarize_audit(
    responses: Responses,
    *,
    constraints: Iterable[Constraint] = (),
    limit: int = DEFAULT_STATUS_VIOLATION_LIMIT,
    timestamp: datetime | None = None,
) -> dict[ConstraintKey, ConstraintStatus]:
    """Return the audit status of every constraint seen in ``responses`` or ``constraints``."""

    if limit < 0:
        raise ValueError("limit must be >= 0")
    audited_at = (timestamp or datetime.now(tz=UTC)).isoformat()
    generations = {constraint.key: constraint.generation for constraint in constraints}

    totals: dict[ConstraintKey, int] = dict.fromkeys(generations, 0)
    violations: dict[ConstraintKey, list[dict[str, JSONValue]]] = {}
    errors: dict[ConstraintKey, list[str]] = {}
    for result in responses.sorted_results():
        key = result.constraint_key
        totals.setdefault(key, 0)
        if result.is_error:
            errors.setdefault(key, []).append(str(result.error))
            continue
        totals[key] += 1
        recorded = violations.setdefault(key, [])
        if len(recorded) < limit:
            recorded.append(_violation_entry(result))

    return {
        key: ConstraintStatus(
            total_violations=totals[key],
            violations=tuple(violations.get(key, ())),
            errors=tuple(errors.get(key, ())),
            audit_timestamp=audited_at,
            observed_generation=generations.get(key, 0),
        )
        for key in sorted(totals)
    }


__all__ = ["AuditBatch", "summarize_audit"]
