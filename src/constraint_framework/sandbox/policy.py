"""
constraint-framework — rule module sandbox policy

File: src/constraint_framework/sandbox/policy.py

Purpose
- Assemble rule modules from ordered source segments and statically reject code that
  could reach state outside the explicit read-only roots handed to it at evaluation time.

What should be included in this file
- Segment assembly with line maps so diagnostics point at the preamble, the target
  library or the user template.
- AST policy: no imports, no ``global``/``nonlocal``, no ``while`` loops, no classes,
  no async constructs, no ``with`` blocks, no underscore-prefixed identifiers or
  attributes, no frame/code introspection attributes, no ``str.format`` escapes,
  no attribute assignment, no bare ``except`` or ``finally`` clauses, no non-constant
  default arguments.
- Restricted-segment rules: no direct ``data`` access, no redefinition of framework
  names, required entry points with exact arity.

Functional requirements
- Diagnostics are deterministic and sorted by (line, column).
"""

from __future__ import annotations

import ast
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final

from constraint_framework.errors import CompileDiagnostic

FORBIDDEN_NAMES: Final[frozenset[str]] = frozenset(
    {
        "breakpoint",
        "compile",
        "delattr",
        "dir",
        "eval",
        "exec",
        "exit",
        "getattr",
        "globals",
        "hasattr",
        "help",
        "input",
        "locals",
        "memoryview",
        "object",
        "open",
        "quit",
        "setattr",
        "super",
        "type",
        "vars",
    }
)
FORBIDDEN_ATTRIBUTES: Final[frozenset[str]] = frozenset({"format", "format_map", "mro"})
_FORBIDDEN_ATTRIBUTE_PREFIXES: Final[tuple[str, ...]] = (
    "_",
    "ag_",
    "co_",
    "cr_",
    "f_",
    "func_",
    "gi_",
    "tb_",
)
DATA_DOCUMENT_NAME: Final[str] = "data"


@dataclass(frozen=True, slots=True)
class SourceSegment:
    """One named piece of an assembled module."""

    name: str
    text: str
    restricted: bool = False
    required_functions: Mapping[str, int] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class _SegmentSpan:
    name: str
    first_line: int
    last_line: int
    restricted: bool
    required_functions: Mapping[str, int]


@dataclass(frozen=True, slots=True)
class AssembledModule:
    """Concatenated module source plus the line span of every segment."""

    source: str
    spans: tuple[_SegmentSpan, ...]

    def locate(self, line: int) -> tuple[str, int]:
        """Map an absolute line to ``(segment name, segment-relative line)``."""

        for span in self.spans:
            if span.first_line <= line <= span.last_line:
                return span.name, line - span.first_line + 1
        if self.spans:
            last = self.spans[-1]
            return last.name, max(1, line - last.first_line + 1)
        return "module", line

    def span_for(self, line: int) -> _SegmentSpan | None:
        for span in self.spans:
            if span.first_line <= line <= span.last_line:
                return span
        return None


def assemble_module(segments: Sequence[SourceSegment]) -> AssembledModule:
    """Concatenate ``segments`` in order, recording each segment's line span."""

    parts: list[str] = []
    spans: list[_SegmentSpan] = []
    next_line = 1
    for segment in segments:
        text = segment.text if segment.text.endswith("\n") else segment.text + "\n"
        line_count = text.count("\n")
        spans.append(
            _SegmentSpan(
                name=segment.name,
                first_line=next_line,
                last_line=next_line + line_count - 1,
                restricted=segment.restricted,
                required_functions=dict(segment.required_functions),
            )
        )
        parts.append(text)
        next_line += line_count
    return AssembledModule(source="".join(parts), spans=tuple(spans))


def check_module(module: AssembledModule) -> tuple[CompileDiagnostic, ...]:
    """Return every policy violation in ``module`` (empty when the module is acceptable)."""

    try:
        tree = ast.parse(module.source, mode="exec")
    except SyntaxError as exc:
        segment, line = module.locate(exc.lineno or 1)
        return (
            CompileDiagnostic(
                segment=segment,
                line=line,
                column=exc.offset or 0,
                message=f"syntax error: {exc.msg}",
            ),
        )

    checker = _PolicyChecker(module)
    checker.check(tree)
    return checker.diagnostics()


def check_source(
    source: str,
    *,
    segment: str = "module",
    required_functions: Mapping[str, int] | None = None,
) -> tuple[CompileDiagnostic, ...]:
    """Check a single, already assembled source text."""

    return check_module(
        assemble_module(
            (
                SourceSegment(
                    name=segment,
                    text=source,
                    required_functions=dict(required_functions or {}),
                ),
            )
        )
    )


def top_level_names(source: str) -> frozenset[str]:
    """Return names bound at module level by ``source`` (functions and assignments)."""

    try:
        tree = ast.parse(source, mode="exec")
    except SyntaxError:
        return frozenset()
    names: set[str] = set()
    for statement in tree.body:
        names.update(_bound_names(statement))
    return frozenset(names)


def _bound_names(statement: ast.stmt) -> set[str]:
    if isinstance(statement, ast.FunctionDef):
        return {statement.name}
    targets: list[ast.expr] = []
    if isinstance(statement, ast.Assign):
        targets.extend(statement.targets)
    elif isinstance(statement, ast.AnnAssign):
        targets.append(statement.target)
    names: set[str] = set()
    for target in targets:
        for node in ast.walk(target):
            if isinstance(node, ast.Name):
                names.add(node.id)
    return names


class _PolicyChecker:
    """Walks one parsed module and collects located diagnostics."""

    def __init__(self, module: AssembledModule) -> None:
        self._module = module
        self._items: list[CompileDiagnostic] = []

    def diagnostics(self) -> tuple[CompileDiagnostic, ...]:
        unique = {
            (item.segment, item.line, item.column, item.message): item for item in self._items
        }
        return tuple(
            sorted(unique.values(), key=lambda item: (item.segment, item.line, item.column))
        )

    def check(self, tree: ast.Module) -> None:
        framework_names: set[str] = set()
        defined_by_segment: dict[str, dict[str, ast.stmt]] = {}

        for statement in tree.body:
            span = self._module.span_for(statement.lineno)
            segment_name = span.name if span is not None else "module"
            self._check_top_level(statement)
            bound = _bound_names(statement)
            defined = defined_by_segment.setdefault(segment_name, {})
            for name in bound:
                defined[name] = statement
            if span is not None and not span.restricted:
                framework_names.update(bound)

        for statement in tree.body:
            span = self._module.span_for(statement.lineno)
            if span is None or not span.restricted:
                continue
            for name in sorted(_bound_names(statement)):
                if name in framework_names:
                    self._add(statement, f"name {name!r} is reserved by the framework")

        for span in self._module.spans:
            defined = defined_by_segment.get(span.name, {})
            for function_name, arity in sorted(span.required_functions.items()):
                self._check_required(span, defined.get(function_name), function_name, arity)

        for node in ast.walk(tree):
            self._check_node(node)

    def _check_top_level(self, statement: ast.stmt) -> None:
        if isinstance(statement, (ast.FunctionDef, ast.Assign, ast.AnnAssign, ast.Pass)):
            return
        if isinstance(statement, ast.Expr) and isinstance(statement.value, ast.Constant):
            return
        if isinstance(statement, (ast.Import, ast.ImportFrom)):
            return  # reported by the node walk
        self._add(
            statement,
            f"top-level {type(statement).__name__} statements are not allowed; "
            "define functions and constants only",
        )

    def _check_required(
        self,
        span: _SegmentSpan,
        statement: ast.stmt | None,
        function_name: str,
        arity: int,
    ) -> None:
        if not isinstance(statement, ast.FunctionDef):
            self._items.append(
                CompileDiagnostic(
                    segment=span.name,
                    line=1,
                    column=0,
                    message=f"required function {function_name!r} is not defined",
                )
            )
            return
        arguments = statement.args
        positional = [*arguments.posonlyargs, *arguments.args]
        if (
            len(positional) != arity
            or arguments.vararg is not None
            or arguments.kwarg is not None
            or arguments.kwonlyargs
            or arguments.defaults
        ):
            self._add(
                statement,
                f"function {function_name!r} must take exactly {arity} positional argument(s)",
            )

    def _check_node(self, node: ast.AST) -> None:
        if isinstance(node, (ast.Import, ast.ImportFrom)):
            self._add(node, "import statements are not allowed")
        elif isinstance(node, (ast.Global, ast.Nonlocal)):
            self._add(node, "global and nonlocal statements are not allowed")
        elif isinstance(node, ast.While):
            self._add(node, "while loops are not allowed; iterate over data instead")
        elif isinstance(node, ast.ClassDef):
            self._add(node, "class definitions are not allowed")
        elif isinstance(node, (ast.AsyncFunctionDef, ast.AsyncFor, ast.AsyncWith, ast.Await)):
            self._add(node, "async constructs are not allowed")
        elif isinstance(node, (ast.With, ast.AsyncWith)):
            self._add(node, "with statements are not allowed")
        elif isinstance(node, ast.Attribute):
            self._check_attribute(node)
        elif isinstance(node, ast.Name):
            self._check_name(node, node.id)
        elif isinstance(node, ast.ExceptHandler) and node.type is None:
            self._add(node, "bare except clauses are not allowed")
        elif isinstance(node, (ast.Try, ast.TryStar)) and node.finalbody:
            self._add(node, "finally clauses are not allowed")
        elif isinstance(node, ast.FunctionDef):
            self._check_identifier(node, node.name)
            self._check_defaults(node, node.args)
        elif isinstance(node, ast.Lambda):
            self._check_defaults(node, node.args)
        elif isinstance(node, ast.arg):
            self._check_identifier(node, node.arg)
        elif isinstance(node, ast.keyword) and node.arg is not None:
            self._check_identifier(node, node.arg)

    def _check_defaults(self, node: ast.AST, arguments: ast.arguments) -> None:
        for default in (*arguments.defaults, *arguments.kw_defaults):
            if default is not None and not _is_constant(default):
                self._add(default, "default argument values must be constants")

    def _check_attribute(self, node: ast.Attribute) -> None:
        attribute = node.attr
        if isinstance(node.ctx, (ast.Store, ast.Del)):
            self._add(node, f"assignment to attribute {attribute!r} is not allowed")
        if attribute in FORBIDDEN_ATTRIBUTES or attribute.startswith(_FORBIDDEN_ATTRIBUTE_PREFIXES):
            self._add(node, f"access to attribute {attribute!r} is not allowed")

    def _check_name(self, node: ast.AST, name: str) -> None:
        self._check_identifier(node, name)
        if name in FORBIDDEN_NAMES:
            self._add(node, f"use of {name!r} is not allowed")
        if name == DATA_DOCUMENT_NAME:
            span = self._module.span_for(getattr(node, "lineno", 0))
            if span is not None and span.restricted:
                self._add(
                    node,
                    "direct access to the data document is not allowed; "
                    "read external data through the inventory argument",
                )

    def _check_identifier(self, node: ast.AST, name: str) -> None:
        if name.startswith("__"):
            self._add(node, f"identifier {name!r} is not allowed")

    def _add(self, node: ast.AST, message: str) -> None:
        line = getattr(node, "lineno", 1)
        segment, relative = self._module.locate(line)
        self._items.append(
            CompileDiagnostic(
                segment=segment,
                line=relative,
                column=getattr(node, "col_offset", 0),
                message=message,
            )
        )


def _is_constant(node: ast.expr) -> bool:
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        return isinstance(node.operand, ast.Constant)
    return isinstance(node, ast.Constant)


__all__ = [
    "AssembledModule",
    "DATA_DOCUMENT_NAME",
    "FORBIDDEN_ATTRIBUTES",
    "FORBIDDEN_NAMES",
    "SourceSegment",
    "assemble_module",
    "check_module",
    "check_source",
    "top_level_names",
]
