"""
constraint-framework — template compiler

File: src/constraint_framework/compiler.py

Purpose
- Turn a ConstraintTemplate into validated rule modules plus the schema its constraints obey.

What should be included in this file
- Parameter schema validation against the Draft 7 meta-schema.
- Constraint schema synthesis (target match schema + template parameter schema).
- Module assembly: sandbox preamble, target library with its roots bound, template rules.
- Policy checks with diagnostics located per segment.

Functional requirements
- Compilation is pure: nothing is installed anywhere until the client commits the result.
"""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Final

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError as JSONSchemaError

from constraint_framework.constants import (
    CONSTRAINTS_ROOT,
    CONSTRAINTS_ROOT_PLACEHOLDER,
    DATA_ROOT_PLACEHOLDER,
    EXTERNAL_DATA_ROOT,
    INVENTORY_RELATION,
    MATCHING_CONSTRAINTS_RELATION,
    MATCHING_REVIEWS_RELATION,
    MODULE_PREFIX,
    PYTHON_ENGINE,
    VIOLATION_RELATION,
)
from constraint_framework.domain.models import ConstraintTemplate, JSONValue
from constraint_framework.errors import (
    CompileDiagnostic,
    SchemaError,
    TemplateCompileError,
    TemplateValidationError,
)
from constraint_framework.sandbox.policy import SourceSegment, assemble_module, check_module
from constraint_framework.sandbox.runtime import render_preamble
from constraint_framework.targets.base import TargetProtocol

PREAMBLE_SEGMENT: Final[str] = "preamble"
LIBRARY_SEGMENT: Final[str] = "library"
TEMPLATE_SEGMENT: Final[str] = "template"

LIBRARY_ENTRY_POINTS: Final[Mapping[str, int]] = {
    MATCHING_CONSTRAINTS_RELATION: 2,
    MATCHING_REVIEWS_RELATION: 2,
    INVENTORY_RELATION: 1,
}
TEMPLATE_ENTRY_POINTS: Final[Mapping[str, int]] = {VIOLATION_RELATION: 3}


def module_name_for(target: str, kind: str) -> str:
    return f"{MODULE_PREFIX}/{target}/{kind}"


def bind_library(library: str) -> str:
    """Replace the two root placeholders with lookups on the module's data argument."""

    constraints_root = f'lookup(data, "{CONSTRAINTS_ROOT}", TEMPLATE_KIND)'
    data_root = f'lookup(data, "{EXTERNAL_DATA_ROOT}")'
    return library.replace(CONSTRAINTS_ROOT_PLACEHOLDER, constraints_root).replace(
        DATA_ROOT_PLACEHOLDER, data_root
    )


def constraint_schema(
    match_schema: Mapping[str, JSONValue],
    parameters_schema: Mapping[str, JSONValue],
) -> dict[str, JSONValue]:
    """Schema every constraint document of one template kind must satisfy."""

    return {
        "type": "object",
        "required": ["metadata"],
        "properties": {
            "metadata": {
                "type": "object",
                "required": ["name"],
                "properties": {"name": {"type": "string", "maxLength": 63}},
            },
            "spec": {
                "type": "object",
                "properties": {
                    "match": copy.deepcopy(dict(match_schema)),
                    "parameters": copy.deepcopy(dict(parameters_schema)),
                    "enforcementAction": {"type": "string"},
                },
            },
        },
    }


@dataclass(frozen=True, slots=True)
class CompiledTemplate:
    """A template ready to be installed: module sources per language plus its schema."""

    template: ConstraintTemplate
    target: str
    module_name: str
    sources: Mapping[str, str]
    constraint_schema: Mapping[str, JSONValue]
    validator: Draft7Validator = field(repr=False, compare=False)

    @property
    def kind(self) -> str:
        return self.template.kind

    @property
    def languages(self) -> tuple[str, ...]:
        return tuple(sorted(self.sources))

    def validate_document(self, document: Mapping[str, object]) -> list[str]:
        """Return schema violations of a constraint document as ``path: message`` strings."""

        issues: list[str] = []
        for error in sorted(self.validator.iter_errors(dict(document)), key=lambda e: list(e.path)):
            path = ".".join(str(part) for part in error.path) if error.path else "root"
            issues.append(f"{path}: {error.message}")
        return issues


class TemplateCompiler:
    """Compiles templates for the rule languages the configured drivers speak."""

    def __init__(self, *, languages: Iterable[str] = (PYTHON_ENGINE,)) -> None:
        normalized = tuple(sorted({language.lower() for language in languages}))
        if not normalized:
            raise ValueError("at least one rule language is required")
        unsupported = [language for language in normalized if language != PYTHON_ENGINE]
        if unsupported:
            raise ValueError(f"unsupported rule language(s): {', '.join(unsupported)}")
        self._languages = normalized

    @property
    def languages(self) -> tuple[str, ...]:
        return self._languages

    def compile(self, template: ConstraintTemplate, target: TargetProtocol) -> CompiledTemplate:
        if template.target_name != target.name:
            raise TemplateValidationError(
                f"template {template.kind} binds target {template.target_name!r}, "
                f"not {target.name!r}"
            )

        try:
            Draft7Validator.check_schema(dict(template.parameters_schema))
        except JSONSchemaError as exc:
            raise SchemaError(
                f"invalid parameters schema: {exc.message}", kind=template.kind
            ) from exc

        schema = constraint_schema(target.match_schema(), template.parameters_schema)
        try:
            Draft7Validator.check_schema(schema)
        except JSONSchemaError as exc:
            raise SchemaError(
                f"invalid constraint schema: {exc.message}", kind=template.kind
            ) from exc

        module_name = module_name_for(target.name, template.kind)
        library = bind_library(target.library())
        sources: dict[str, str] = {}
        for language in self._languages:
            user_source = template.target.source_for(language)
            if user_source is None:
                continue
            sources[language] = self._assemble(
                template, target.name, module_name, library, user_source
            )

        if not sources:
            offered = ", ".join(template.target.engines) or "none"
            raise TemplateCompileError(
                f"no rule source for a supported language "
                f"(supported: {', '.join(self._languages)}; offered: {offered})",
                kind=template.kind,
            )

        return CompiledTemplate(
            template=template,
            target=target.name,
            module_name=module_name,
            sources=sources,
            constraint_schema=schema,
            validator=Draft7Validator(schema),
        )

    def _assemble(
        self,
        template: ConstraintTemplate,
        target: str,
        module_name: str,
        library: str,
        user_source: str,
    ) -> str:
        assembled = assemble_module(
            (
                SourceSegment(
                    name=PREAMBLE_SEGMENT,
                    text=render_preamble(
                        module_name=module_name, target=target, kind=template.kind
                    ),
                ),
                SourceSegment(
                    name=LIBRARY_SEGMENT,
                    text=library,
                    required_functions=LIBRARY_ENTRY_POINTS,
                ),
                SourceSegment(
                    name=TEMPLATE_SEGMENT,
                    text=user_source,
                    restricted=True,
                    required_functions=TEMPLATE_ENTRY_POINTS,
                ),
            )
        )
        diagnostics: tuple[CompileDiagnostic, ...] = check_module(assembled)
        if diagnostics:
            raise TemplateCompileError(
                "rule source rejected", kind=template.kind, diagnostics=diagnostics
            )
        return assembled.source


__all__ = [
    "CompiledTemplate",
    "LIBRARY_SEGMENT",
    "PREAMBLE_SEGMENT",
    "TEMPLATE_SEGMENT",
    "TemplateCompiler",
    "bind_library",
    "constraint_schema",
    "module_name_for",
]
