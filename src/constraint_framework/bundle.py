"""
constraint-framework — policy bundles.

File: src/constraint_framework/bundle.py

Purpose
- Load multi-document YAML streams of templates, constraints and data objects.
- Apply a loaded bundle to a client in dependency order.

Functional requirements
- Documents are sorted by shape: ``ConstraintTemplate`` documents, constraint documents
  (group ``constraints.gatekeeper.sh``) and everything else as data.
- Empty documents are skipped; non-mapping documents are rejected with their position.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

import yaml

from constraint_framework.constants import CONSTRAINT_GROUP, TEMPLATE_KIND
from constraint_framework.domain.models import Constraint, ConstraintTemplate

if TYPE_CHECKING:
    from constraint_framework.client import Client


class BundleError(ValueError):
    """Raised when a bundle cannot be read or one of its documents is malformed."""


@dataclass(frozen=True, slots=True)
class PolicyBundle:
    templates: tuple[ConstraintTemplate, ...] = ()
    constraints: tuple[Constraint, ...] = ()
    data: tuple[Mapping[str, Any], ...] = ()

    def __len__(self) -> int:
        return len(self.templates) + len(self.constraints) + len(self.data)


@dataclass(frozen=True, slots=True)
class BundleApplyReport:
    templates_changed: int = 0
    constraints_changed: int = 0
    data_changed: int = 0


def _is_constraint(document: Mapping[str, Any]) -> bool:
    api_version = document.get("apiVersion")
    return isinstance(api_version, str) and api_version.split("/", 1)[0] == CONSTRAINT_GROUP


def parse_bundle(text: str | IO[str], *, source: str = "<bundle>") -> PolicyBundle:
    """Parse a YAML stream into templates, constraints and data objects."""

    try:
        documents = list(yaml.safe_load_all(text))
    except yaml.YAMLError as exc:
        raise BundleError(f"{source}: invalid YAML: {exc}") from exc

    templates: list[ConstraintTemplate] = []
    constraints: list[Constraint] = []
    data: list[Mapping[str, Any]] = []
    for index, document in enumerate(documents):
        if document is None:
            continue
        if not isinstance(document, Mapping):
            raise BundleError(f"{source}: document {index} is not a mapping")
        try:
            if document.get("kind") == TEMPLATE_KIND:
                templates.append(ConstraintTemplate.from_dict(document))
            elif _is_constraint(document):
                constraints.append(Constraint.from_dict(document))
            else:
                data.append(dict(document))
        except ValueError as exc:
            raise BundleError(f"{source}: document {index}: {exc}") from exc
    return PolicyBundle(
        templates=tuple(templates), constraints=tuple(constraints), data=tuple(data)
    )


def load_bundle(path: str | Path) -> PolicyBundle:
    """Read and parse a bundle file."""

    bundle_path = Path(path).expanduser()
    try:
        with bundle_path.open("r", encoding="utf-8") as handle:
            return parse_bundle(handle, source=str(bundle_path))
    except OSError as exc:
        raise BundleError(f"unable to read bundle {bundle_path}: {exc}") from exc


async def apply_bundle(client: Client, bundle: PolicyBundle) -> BundleApplyReport:
    """Register templates, then constraints, then data objects."""

    templates_changed = 0
    for template in bundle.templates:
        templates_changed += int(await client.add_template(template))
    constraints_changed = 0
    for constraint in bundle.constraints:
        constraints_changed += int(await client.add_constraint(constraint))
    data_changed = 0
    for obj in bundle.data:
        data_changed += int(await client.add_data(obj))
    return BundleApplyReport(
        templates_changed=templates_changed,
        constraints_changed=constraints_changed,
        data_changed=data_changed,
    )


__all__ = [
    "BundleApplyReport",
    "BundleError",
    "PolicyBundle",
    "apply_bundle",
    "load_bundle",
    "parse_bundle",
]
