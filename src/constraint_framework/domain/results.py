"""Evaluation results: per-constraint violations grouped by target."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Final

from constraint_framework.constants import DEFAULT_ENFORCEMENT_ACTION
from constraint_framework.domain.models import (
    ConstraintKey,
    JSONValue,
    constraint_key_of,
    to_json_value,
)

if TYPE_CHECKING:
    from constraint_framework.instrumentation import StatsEntry

TRACING_DISABLED_HEADER: Final[str] = "Trace: TRACING DISABLED"


@dataclass(frozen=True, slots=True)
class Result:
    """One violation (or evaluation fault) for a (constraint, reviewed object) pair."""

    target: str
    msg: str
    constraint: Mapping[str, JSONValue]
    metadata: Mapping[str, JSONValue] = field(default_factory=dict)
    review: Mapping[str, JSONValue] | None = None
    resource: Mapping[str, JSONValue] | None = None
    enforcement_action: str = DEFAULT_ENFORCEMENT_ACTION
    error: str | None = None
    driver: str = ""

    @property
    def constraint_key(self) -> ConstraintKey:
        return constraint_key_of(self.constraint)

    @property
    def details(self) -> JSONValue:
        return self.metadata.get("details")

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def with_resource(self, resource: Mapping[str, JSONValue]) -> Result:
        return replace(self, resource=resource)

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "target": self.target,
            "msg": self.msg,
            "constraint": to_json_value(self.constraint),
            "enforcementAction": self.enforcement_action,
        }
        if self.metadata:
            payload["metadata"] = to_json_value(self.metadata)
        if self.review is not None:
            payload["review"] = to_json_value(self.review)
        if self.resource is not None:
            payload["resource"] = to_json_value(self.resource)
        if self.error is not None:
            payload["error"] = self.error
        if self.driver:
            payload["driver"] = self.driver
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object], *, target: str, driver: str) -> Result:
        """Build a result from the wire form returned by a networked driver."""

        constraint = data.get("constraint")
        if not isinstance(constraint, Mapping):
            raise ValueError("Result.constraint: expected object")
        msg = data.get("msg")
        if not isinstance(msg, str):
            raise ValueError("Result.msg: expected string")
        metadata = data.get("metadata")
        if metadata is None and "details" in data:
            metadata = {"details": data.get("details")}
        review = data.get("review")
        error = data.get("error")
        action = data.get("enforcementAction")
        return cls(
            target=target,
            msg=msg,
            constraint=_json_mapping(constraint),
            metadata=_json_mapping(metadata) if isinstance(metadata, Mapping) else {},
            review=_json_mapping(review) if isinstance(review, Mapping) else None,
            enforcement_action=action if isinstance(action, str) else _action_of(constraint),
            error=str(error) if error not in (None, False) else None,
            driver=driver,
        )


def _json_mapping(value: Mapping[str, object]) -> dict[str, JSONValue]:
    converted = to_json_value(value)
    return converted if isinstance(converted, dict) else {}


def _action_of(constraint: Mapping[str, object]) -> str:
    spec = constraint.get("spec")
    if isinstance(spec, Mapping):
        action = spec.get("enforcementAction")
        if isinstance(action, str) and action:
            return action
    return DEFAULT_ENFORCEMENT_ACTION


def enforcement_action_of(constraint: Mapping[str, object]) -> str:
    """Return a constraint document's enforcement action (``deny`` when unset)."""

    return _action_of(constraint)


def _constraint_sort_key(result: Result) -> tuple[str, str, str]:
    key = result.constraint_key
    return (key.kind, key.name, result.msg)


@dataclass(slots=True)
class Response:
    """Results of one target."""

    target: str
    results: list[Result] = field(default_factory=list)
    trace: str | None = None

    def add_result(self, result: Result) -> None:
        self.results.append(result)

    def sort(self) -> None:
        """Sort results by constraint kind, then constraint name."""

        self.results.sort(key=_constraint_sort_key)

    def trace_dump(self) -> str:
        lines = [f"Target: {self.target}"]
        if self.trace is None:
            # Only claim tracing was disabled when there is something to explain.
            if self.results:
                lines.append(TRACING_DISABLED_HEADER)
                lines.append("")
        else:
            lines.append(f"Trace:\n{self.trace}")
            lines.append("")
        for index, result in enumerate(self.results):
            rendered = json.dumps(result.to_dict(), sort_keys=True, indent=2, ensure_ascii=False)
            lines.append(f"Result({index}):\n{rendered}")
            lines.append("")
        return "\n".join(lines) + "\n"


@dataclass(frozen=True, slots=True)
class Divergence:
    """Drivers disagreed on whether a constraint is violated for one reviewed object."""

    target: str
    constraint: ConstraintKey
    subject: str
    verdicts: Mapping[str, bool]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "target": self.target,
            "constraint": str(self.constraint),
            "subject": self.subject,
            "verdicts": dict(sorted(self.verdicts.items())),
        }


@dataclass(slots=True)
class Responses:
    """Aggregated results for a Review, an Audit batch or a whole Audit."""

    by_target: dict[str, Response] = field(default_factory=dict)
    handled: dict[str, bool] = field(default_factory=dict)
    stats_entries: list[StatsEntry] = field(default_factory=list)
    divergences: list[Divergence] = field(default_factory=list)

    def response_for(self, target: str) -> Response:
        response = self.by_target.get(target)
        if response is None:
            response = Response(target=target)
            self.by_target[target] = response
        return response

    def merge(self, other: Responses) -> None:
        for target, response in other.by_target.items():
            merged = self.response_for(target)
            merged.results.extend(response.results)
            if response.trace is not None:
                merged.trace = (
                    response.trace if merged.trace is None else f"{merged.trace}\n{response.trace}"
                )
        for target, handled in other.handled.items():
            self.handled[target] = self.handled.get(target, False) or handled
        self.stats_entries.extend(other.stats_entries)
        self.divergences.extend(other.divergences)

    def results(self) -> list[Result]:
        """Return all results, ordered by enforcement action then message."""

        flattened = [result for response in self.by_target.values() for result in response.results]
        flattened.sort(key=lambda item: (item.enforcement_action, item.msg))
        return flattened

    def sorted_results(self) -> list[Result]:
        """Return all results ordered by constraint identity."""

        flattened = [result for response in self.by_target.values() for result in response.results]
        flattened.sort(key=lambda item: (item.target, *_constraint_sort_key(item)))
        return flattened

    def errors(self) -> list[Result]:
        return [result for result in self.sorted_results() if result.is_error]

    def handled_count(self) -> int:
        return sum(1 for handled in self.handled.values() if handled)

    def trace_dump(self) -> str:
        return "\n".join(
            self.by_target[target].trace_dump() for target in sorted(self.by_target)
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "byTarget": {
                target: [result.to_dict() for result in self.by_target[target].results]
                for target in sorted(self.by_target)
            },
            "handled": dict(sorted(self.handled.items())),
            "statsEntries": [to_json_value(entry.to_dict()) for entry in self.stats_entries],
            "divergences": [item.to_dict() for item in self.divergences],
        }


__all__ = [
    "Divergence",
    "Response",
    "Responses",
    "Result",
    "TRACING_DISABLED_HEADER",
    "enforcement_action_of",
]
