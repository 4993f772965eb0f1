"""
constraint-framework — target handler contract

File: src/constraint_framework/targets/base.py

Purpose
- Pluggable per-domain adapter binding the framework to one class of reviewed objects.

What should be included in this file
- ``Target`` ABC: match schema, matching library, data/review classification,
  violation enrichment and target-specific constraint validation.
- Classification result models.
- Target registry resolved at startup and target name validation.

Functional requirements
- Classifiers report "not handled" by returning ``handled=False``; malformed input the
  target does own raises a typed error.
"""

from __future__ import annotations

import abc
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable

from constraint_framework.constants import TARGET_NAME_PATTERN
from constraint_framework.domain.models import Constraint, JSONValue
from constraint_framework.domain.results import Result
from constraint_framework.errors import UnknownTargetError

_TARGET_NAME_RE = re.compile(TARGET_NAME_PATTERN)


def validate_target_name(name: str) -> str:
    """Return ``name`` unchanged or raise ``ValueError`` when it is not a valid target name."""

    if not isinstance(name, str) or not _TARGET_NAME_RE.fullmatch(name):
        raise ValueError(
            f"target name {name!r} is invalid; it must match {TARGET_NAME_PATTERN}"
        )
    return name


@dataclass(frozen=True, slots=True)
class DataClassification:
    """Outcome of ``Target.process_data``.

    An empty ``path`` on a handled classification addresses the whole target
    data root (used to wipe cached data).
    """

    handled: bool
    path: tuple[str, ...] = ()
    data: Any = None

    @classmethod
    def not_handled(cls) -> DataClassification:
        return cls(handled=False)


@dataclass(frozen=True, slots=True)
class ReviewClassification:
    handled: bool
    review: Mapping[str, JSONValue] = field(default_factory=dict)

    @classmethod
    def not_handled(cls) -> ReviewClassification:
        return cls(handled=False)


class Target(abc.ABC):
    """Domain adapter consumed by the client and the template compiler."""

    name: str = "target"

    @abc.abstractmethod
    def match_schema(self) -> dict[str, JSONValue]:
        """JSON schema of a constraint's ``spec.match``."""

    @abc.abstractmethod
    def library(self) -> str:
        """Matching library source with constraints/data root placeholders."""

    @abc.abstractmethod
    def process_data(self, obj: object) -> DataClassification:
        """Classify ``obj`` into an inventory path, or report it as not handled."""

    @abc.abstractmethod
    def handle_review(self, obj: object) -> ReviewClassification:
        """Convert ``obj`` into the review document rules evaluate."""

    @abc.abstractmethod
    def handle_violation(self, result: Result) -> Result:
        """Return ``result`` enriched with target-specific fields."""

    @abc.abstractmethod
    def validate_constraint(self, constraint: Constraint) -> None:
        """Raise ``ConstraintValidationError`` for semantic errors schemas cannot catch."""


@runtime_checkable
class TargetProtocol(Protocol):
    name: str

    def match_schema(self) -> dict[str, JSONValue]: ...

    def library(self) -> str: ...

    def process_data(self, obj: object) -> DataClassification: ...

    def handle_review(self, obj: object) -> ReviewClassification: ...

    def handle_violation(self, result: Result) -> Result: ...

    def validate_constraint(self, constraint: Constraint) -> None: ...


TargetFactory: TypeAlias = Callable[[], TargetProtocol]


class TargetRegistry:
    """Registry for target factories, keyed by target name."""

    def __init__(self) -> None:
        self._factories: dict[str, TargetFactory] = {}

    def register(self, name: str, factory: TargetFactory, *, overwrite: bool = False) -> None:
        validate_target_name(name)
        if name in self._factories and not overwrite:
            raise ValueError(f"target already registered: {name}")
        self._factories[name] = factory

    def unregister(self, name: str) -> None:
        self._factories.pop(name, None)

    def is_registered(self, name: str) -> bool:
        return name in self._factories

    def list(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))

    def create(self, name: str) -> TargetProtocol:
        factory = self._factories.get(name)
        if factory is None:
            raise UnknownTargetError(name)
        target = factory()
        if not isinstance(target, TargetProtocol):
            raise TypeError(f"target factory returned invalid target for {name}")
        if target.name != name:
            raise ValueError(f"target factory for {name} produced target named {target.name!r}")
        return target


__all__ = [
    "DataClassification",
    "ReviewClassification",
    "Target",
    "TargetFactory",
    "TargetProtocol",
    "TargetRegistry",
    "validate_target_name",
]
