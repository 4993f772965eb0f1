"""Dataclass domain models for templates, constraints and inventory keys."""

from __future__ import annotations

import copy
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, NoReturn, cast

from constraint_framework.constants import (
    CONSTRAINT_GROUP,
    DEFAULT_CONSTRAINT_VERSION,
    DEFAULT_ENFORCEMENT_ACTION,
    PYTHON_ENGINE,
    TEMPLATE_GROUP,
    TEMPLATE_KIND,
)

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_MAX_TEXT = 253
_DEFAULT_TEMPLATE_API_VERSION = f"{TEMPLATE_GROUP}/v1beta1"


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _expect_object(value: object, path: str) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {type(value).__name__}")
    parsed: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {type(key).__name__}")
        parsed[key] = item
    return parsed


def _optional_object(value: object, path: str) -> dict[str, object]:
    if value is None:
        return {}
    return _expect_object(value, path)


def _as_str(value: object, path: str, *, max_len: int | None = None) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        _fail(path, "must not be empty")
    if max_len is not None and len(normalized) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return normalized


def _as_int(value: object, path: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def to_json_value(value: object, *, path: str = "value") -> JSONValue:
    """Deep-copy ``value`` into plain JSON containers (dict/list/scalars)."""

    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        out: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object keys must be strings, got {type(key).__name__}")
            out[key] = to_json_value(item, path=f"{path}.{key}")
        return out
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [to_json_value(item, path=f"{path}[{index}]") for index, item in enumerate(value)]
    _fail(path, f"value of type {type(value).__name__} is not JSON-compatible")


def _json_object(value: object, path: str) -> dict[str, JSONValue]:
    return cast("dict[str, JSONValue]", to_json_value(_optional_object(value, path), path=path))


def canonical_json(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def split_api_version(api_version: str) -> tuple[str, str]:
    """Split ``group/version`` (or a core ``version``) into ``(group, version)``."""

    if "/" not in api_version:
        return "", api_version
    group, _, version = api_version.rpartition("/")
    return group, version


# --- templates ------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TemplateCode:
    """Rule source for one driver language."""

    engine: str
    source: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "engine", _as_str(self.engine, "TemplateCode.engine").lower())
        if not isinstance(self.source, str):
            _fail("TemplateCode.source", f"expected string, got {type(self.source).__name__}")

    def to_dict(self) -> dict[str, JSONValue]:
        return {"engine": self.engine, "source": self.source}


@dataclass(frozen=True, slots=True)
class TemplateTarget:
    """Binding of a template to one target plus its per-language sources."""

    target: str
    code: tuple[TemplateCode, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "target", _as_str(self.target, "TemplateTarget.target"))
        code = tuple(self.code)
        if not code:
            _fail("TemplateTarget.code", "at least one rule source is required")
        engines = [item.engine for item in code]
        duplicates = sorted({engine for engine in engines if engines.count(engine) > 1})
        if duplicates:
            _fail("TemplateTarget.code", f"duplicate engines: {duplicates}")
        object.__setattr__(self, "code", code)

    def source_for(self, engine: str) -> str | None:
        normalized = engine.lower()
        for item in self.code:
            if item.engine == normalized:
                return item.source
        return None

    @property
    def engines(self) -> tuple[str, ...]:
        return tuple(sorted(item.engine for item in self.code))

    def to_dict(self) -> dict[str, JSONValue]:
        return {"target": self.target, "code": [item.to_dict() for item in self.code]}


@dataclass(frozen=True, slots=True)
class ConstraintTemplate:
    """Reusable policy definition: parameter schema, rule sources and one target."""

    name: str
    kind: str
    targets: tuple[TemplateTarget, ...]
    parameters_schema: Mapping[str, JSONValue] = field(default_factory=dict)
    api_version: str = _DEFAULT_TEMPLATE_API_VERSION

    def __post_init__(self) -> None:
        name = _as_str(self.name, "ConstraintTemplate.name", max_len=_MAX_TEXT)
        kind = _as_str(self.kind, "ConstraintTemplate.kind", max_len=_MAX_TEXT)
        if name != kind.lower():
            _fail(
                "ConstraintTemplate.name",
                f"the ConstraintTemplate's name {name!r} is not equal to the lowercase of "
                f"CRD's Kind: {kind.lower()!r}",
            )
        targets = tuple(self.targets)
        if not targets:
            _fail("ConstraintTemplate.targets", "No targets specified")
        if len(targets) > 1:
            _fail(
                "ConstraintTemplate.targets",
                "Multi-target templates are not currently supported",
            )
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "targets", targets)
        object.__setattr__(
            self,
            "parameters_schema",
            _json_object(self.parameters_schema, "ConstraintTemplate.parameters_schema"),
        )

    @property
    def target(self) -> TemplateTarget:
        return self.targets[0]

    @property
    def target_name(self) -> str:
        return self.targets[0].target

    def to_dict(self) -> dict[str, JSONValue]:
        crd_spec: dict[str, JSONValue] = {"names": {"kind": self.kind}}
        if self.parameters_schema:
            schema = copy.deepcopy(dict(self.parameters_schema))
            crd_spec["validation"] = {"openAPIV3Schema": schema}
        return {
            "apiVersion": self.api_version,
            "kind": TEMPLATE_KIND,
            "metadata": {"name": self.name},
            "spec": {
                "crd": {"spec": crd_spec},
                "targets": [item.to_dict() for item in self.targets],
            },
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> ConstraintTemplate:
        root = _expect_object(data, "ConstraintTemplate")
        api_version = root.get("apiVersion", _DEFAULT_TEMPLATE_API_VERSION)
        kind_field = root.get("kind", TEMPLATE_KIND)
        if kind_field != TEMPLATE_KIND:
            _fail("ConstraintTemplate.kind", f"expected {TEMPLATE_KIND!r}, got {kind_field!r}")
        metadata = _expect_object(root.get("metadata"), "ConstraintTemplate.metadata")
        spec = _expect_object(root.get("spec"), "ConstraintTemplate.spec")
        crd = _optional_object(spec.get("crd"), "ConstraintTemplate.spec.crd")
        crd_spec = _optional_object(crd.get("spec"), "ConstraintTemplate.spec.crd.spec")
        names = _optional_object(crd_spec.get("names"), "ConstraintTemplate.spec.crd.spec.names")
        validation = _optional_object(
            crd_spec.get("validation"), "ConstraintTemplate.spec.crd.spec.validation"
        )

        raw_targets = spec.get("targets")
        if raw_targets is None:
            raw_targets = []
        if not isinstance(raw_targets, Sequence) or isinstance(raw_targets, str):
            _fail("ConstraintTemplate.spec.targets", "expected array")

        targets = tuple(
            _parse_template_target(item, f"ConstraintTemplate.spec.targets[{index}]")
            for index, item in enumerate(raw_targets)
        )
        return cls(
            name=_as_str(metadata.get("name"), "ConstraintTemplate.metadata.name"),
            kind=_as_str(names.get("kind"), "ConstraintTemplate.spec.crd.spec.names.kind"),
            targets=targets,
            parameters_schema=_json_object(
                validation.get("openAPIV3Schema"),
                "ConstraintTemplate.spec.crd.spec.validation.openAPIV3Schema",
            ),
            api_version=_as_str(api_version, "ConstraintTemplate.apiVersion"),
        )


def _parse_template_target(value: object, path: str) -> TemplateTarget:
    raw = _expect_object(value, path)
    code_items: list[TemplateCode] = []
    raw_code = raw.get("code")
    if raw_code is not None:
        if not isinstance(raw_code, Sequence) or isinstance(raw_code, str):
            _fail(f"{path}.code", "expected array")
        for index, entry in enumerate(raw_code):
            entry_obj = _expect_object(entry, f"{path}.code[{index}]")
            source = entry_obj.get("source")
            if isinstance(source, Mapping):
                # Some engines nest the text under ``source.rego``-style keys.
                source = source.get("source", source.get("code"))
            if not isinstance(source, str):
                _fail(f"{path}.code[{index}].source", "expected string")
            code_items.append(
                TemplateCode(
                    engine=_as_str(entry_obj.get("engine"), f"{path}.code[{index}].engine"),
                    source=source,
                )
            )
    shorthand = raw.get("source")
    if shorthand is not None:
        if not isinstance(shorthand, str):
            _fail(f"{path}.source", "expected string")
        code_items.append(TemplateCode(engine=PYTHON_ENGINE, source=shorthand))
    return TemplateTarget(
        target=_as_str(raw.get("target"), f"{path}.target"), code=tuple(code_items)
    )


# --- constraints ----------------------------------------------------------


@dataclass(frozen=True, order=True, slots=True)
class ConstraintKey:
    """Identity of a constraint: template kind plus constraint name."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True, slots=True)
class ConstraintStatus:
    """Mutable-by-replacement status bookkeeping for one constraint."""

    total_violations: int = 0
    violations: tuple[Mapping[str, JSONValue], ...] = ()
    errors: tuple[str, ...] = ()
    audit_timestamp: str | None = None
    observed_generation: int = 0
    by_replica: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        _as_int(self.total_violations, "ConstraintStatus.total_violations")
        _as_int(self.observed_generation, "ConstraintStatus.observed_generation")
        object.__setattr__(
            self,
            "violations",
            tuple(
                _json_object(item, f"ConstraintStatus.violations[{index}]")
                for index, item in enumerate(self.violations)
            ),
        )
        object.__setattr__(self, "errors", tuple(str(item) for item in self.errors))
        replicas: dict[str, int] = {}
        for replica, generation in dict(self.by_replica).items():
            replicas[_as_str(replica, "ConstraintStatus.by_replica")] = _as_int(
                generation, f"ConstraintStatus.by_replica.{replica}"
            )
        object.__setattr__(self, "by_replica", replicas)

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "totalViolations": self.total_violations,
            "violations": [dict(item) for item in self.violations],
            "errors": list(self.errors),
            "observedGeneration": self.observed_generation,
            "byPod": [
                {"id": replica, "observedGeneration": generation}
                for replica, generation in sorted(self.by_replica.items())
            ],
        }
        if self.audit_timestamp is not None:
            payload["auditTimestamp"] = self.audit_timestamp
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object] | None) -> ConstraintStatus:
        if data is None:
            return cls()
        raw = _expect_object(data, "Constraint.status")
        by_replica: dict[str, int] = {}
        raw_pods = raw.get("byPod") or []
        if not isinstance(raw_pods, Sequence) or isinstance(raw_pods, str):
            _fail("Constraint.status.byPod", "expected array")
        for index, pod in enumerate(raw_pods):
            pod_obj = _expect_object(pod, f"Constraint.status.byPod[{index}]")
            by_replica[_as_str(pod_obj.get("id"), f"Constraint.status.byPod[{index}].id")] = (
                _as_int(
                    pod_obj.get("observedGeneration", 0),
                    f"Constraint.status.byPod[{index}].observedGeneration",
                )
            )
        raw_violations = raw.get("violations") or []
        raw_errors = raw.get("errors") or []
        if not isinstance(raw_violations, Sequence) or not isinstance(raw_errors, Sequence):
            _fail("Constraint.status", "violations and errors must be arrays")
        timestamp = raw.get("auditTimestamp")
        return cls(
            total_violations=_as_int(
                raw.get("totalViolations", 0), "Constraint.status.totalViolations"
            ),
            violations=tuple(
                _json_object(item, f"Constraint.status.violations[{index}]")
                for index, item in enumerate(raw_violations)
            ),
            errors=tuple(str(item) for item in raw_errors),
            audit_timestamp=timestamp if isinstance(timestamp, str) else None,
            observed_generation=_as_int(
                raw.get("observedGeneration", 0), "Constraint.status.observedGeneration"
            ),
            by_replica=by_replica,
        )


@dataclass(frozen=True, slots=True)
class Constraint:
    """Named, parameterized instance of one template kind."""

    kind: str
    name: str
    match: Mapping[str, JSONValue] = field(default_factory=dict)
    parameters: Mapping[str, JSONValue] = field(default_factory=dict)
    enforcement_action: str = DEFAULT_ENFORCEMENT_ACTION
    api_version: str = f"{CONSTRAINT_GROUP}/{DEFAULT_CONSTRAINT_VERSION}"
    generation: int = 1
    labels: Mapping[str, str] = field(default_factory=dict)
    status: ConstraintStatus = field(default_factory=ConstraintStatus)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _as_str(self.kind, "Constraint.kind"))
        object.__setattr__(self, "name", _as_str(self.name, "Constraint.name"))
        object.__setattr__(self, "match", _json_object(self.match, "Constraint.spec.match"))
        object.__setattr__(
            self, "parameters", _json_object(self.parameters, "Constraint.spec.parameters")
        )
        object.__setattr__(
            self,
            "enforcement_action",
            _as_str(self.enforcement_action, "Constraint.spec.enforcementAction"),
        )
        object.__setattr__(self, "api_version", _as_str(self.api_version, "Constraint.apiVersion"))
        _as_int(self.generation, "Constraint.metadata.generation")
        labels: dict[str, str] = {}
        for key, value in dict(self.labels).items():
            labels[_as_str(key, "Constraint.metadata.labels")] = str(value)
        object.__setattr__(self, "labels", labels)
        if not isinstance(self.status, ConstraintStatus):
            _fail("Constraint.status", "expected ConstraintStatus")

    @property
    def key(self) -> ConstraintKey:
        return ConstraintKey(kind=self.kind, name=self.name)

    @property
    def group(self) -> str:
        return split_api_version(self.api_version)[0]

    @property
    def version(self) -> str:
        return split_api_version(self.api_version)[1]

    def with_status(self, status: ConstraintStatus) -> Constraint:
        return replace(self, status=status)

    def to_dict(self, *, include_status: bool = False) -> dict[str, JSONValue]:
        metadata: dict[str, JSONValue] = {"name": self.name, "generation": self.generation}
        if self.labels:
            metadata["labels"] = dict(self.labels)
        spec: dict[str, JSONValue] = {"enforcementAction": self.enforcement_action}
        if self.match:
            spec["match"] = copy.deepcopy(dict(self.match))
        if self.parameters:
            spec["parameters"] = copy.deepcopy(dict(self.parameters))
        payload: dict[str, JSONValue] = {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "metadata": metadata,
            "spec": spec,
        }
        if include_status:
            payload["status"] = self.status.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Constraint:
        root = _expect_object(data, "Constraint")
        metadata = _expect_object(root.get("metadata"), "Constraint.metadata")
        spec = _optional_object(root.get("spec"), "Constraint.spec")
        raw_status = root.get("status")
        raw_labels = _optional_object(metadata.get("labels"), "Constraint.metadata.labels")
        action = spec.get("enforcementAction")
        api_version = root.get("apiVersion")
        return cls(
            kind=_as_str(root.get("kind"), "Constraint.kind"),
            name=_as_str(metadata.get("name"), "Constraint.metadata.name"),
            match=_json_object(spec.get("match"), "Constraint.spec.match"),
            parameters=_json_object(spec.get("parameters"), "Constraint.spec.parameters"),
            enforcement_action=(
                _as_str(action, "Constraint.spec.enforcementAction")
                if action is not None
                else DEFAULT_ENFORCEMENT_ACTION
            ),
            api_version=(
                _as_str(api_version, "Constraint.apiVersion")
                if api_version is not None
                else f"{CONSTRAINT_GROUP}/{DEFAULT_CONSTRAINT_VERSION}"
            ),
            generation=_as_int(metadata.get("generation", 1), "Constraint.metadata.generation"),
            labels={key: str(value) for key, value in raw_labels.items()},
            status=ConstraintStatus.from_dict(
                raw_status if isinstance(raw_status, Mapping) else None
            ),
        )


def constraint_key_of(document: Mapping[str, Any]) -> ConstraintKey:
    """Return the identity of a constraint in mapping form (as stored by drivers)."""

    metadata = document.get("metadata")
    name = metadata.get("name") if isinstance(metadata, Mapping) else None
    return ConstraintKey(kind=str(document.get("kind", "")), name=str(name or ""))


# --- inventory ------------------------------------------------------------


@dataclass(frozen=True, order=True, slots=True)
class InventoryKey:
    """Unique address of one inventory entry."""

    target: str
    group_version: str
    kind: str
    namespace: str
    name: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "target", _as_str(self.target, "InventoryKey.target"))
        object.__setattr__(
            self, "group_version", _as_str(self.group_version, "InventoryKey.group_version")
        )
        object.__setattr__(self, "kind", _as_str(self.kind, "InventoryKey.kind"))
        if not isinstance(self.namespace, str):
            _fail("InventoryKey.namespace", "expected string")
        object.__setattr__(self, "name", _as_str(self.name, "InventoryKey.name"))

    @property
    def shard(self) -> tuple[str, str, str]:
        return (self.target, self.group_version, self.kind)

    @property
    def cluster_scoped(self) -> bool:
        return not self.namespace

    def __str__(self) -> str:
        scope = self.namespace or "<cluster>"
        return f"{self.target}:{self.group_version}/{self.kind}:{scope}/{self.name}"


__all__ = [
    "Constraint",
    "ConstraintKey",
    "ConstraintStatus",
    "ConstraintTemplate",
    "InventoryKey",
    "JSONScalar",
    "JSONValue",
    "TemplateCode",
    "TemplateTarget",
    "canonical_json",
    "constraint_key_of",
    "split_api_version",
    "to_json_value",
]
