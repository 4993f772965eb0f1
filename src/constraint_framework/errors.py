"""
constraint-framework — error taxonomy

File: src/constraint_framework/errors.py

Purpose
- Normalized, machine-readable errors for every failure class the framework surfaces.

What should be included in this file
- Compile errors: malformed rule source, invalid schemas (raised at mutation time).
- Validation errors: constraints referencing missing templates or failing schema/target checks.
- Driver/transport errors: unreachable or timed-out evaluation back-ends.
- Inventory errors: data rejected by a target's classifier.

Functional requirements
- Every error exposes ``code``, ``detail`` and ``retryable`` fields.
- Evaluation faults of a single constraint are never raised; they surface on ``Result.error``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


def _normalize_detail(value: object) -> str:
    text = str(value).strip()
    if not text:
        return "unknown error"
    return " ".join(text.split())


class FrameworkError(RuntimeError):
    """Base normalized error with deterministic machine-readable fields."""

    def __init__(self, *, code: str, detail: str, retryable: bool = False) -> None:
        self.code = code
        self.detail = _normalize_detail(detail)
        self.retryable = bool(retryable)
        super().__init__(self.detail)


@dataclass(frozen=True, slots=True)
class CompileDiagnostic:
    """Single compile finding located in one segment of an assembled module."""

    segment: str
    line: int
    column: int
    message: str

    def render(self) -> str:
        return f"{self.segment} source line {self.line}: {self.message}"


# --- compile errors -------------------------------------------------------


class TemplateCompileError(FrameworkError):
    """Template rule source or schema could not be compiled into a module."""

    def __init__(
        self,
        detail: str,
        *,
        kind: str | None = None,
        diagnostics: Sequence[CompileDiagnostic] = (),
    ) -> None:
        self.kind = kind
        self.diagnostics = tuple(diagnostics)
        rendered = detail
        if self.diagnostics:
            rendered = f"{detail}: " + "; ".join(item.render() for item in self.diagnostics)
        if kind is not None:
            rendered = f"template {kind}: {rendered}"
        super().__init__(code="compile", detail=rendered)


class SchemaError(TemplateCompileError):
    """The template's parameter schema is not a valid schema document."""


class ModuleCompileError(FrameworkError):
    """A driver refused a module during ``put_module``."""

    def __init__(
        self,
        detail: str,
        *,
        module: str,
        driver: str,
        diagnostics: Sequence[CompileDiagnostic] = (),
    ) -> None:
        self.module = module
        self.driver = driver
        self.diagnostics = tuple(diagnostics)
        rendered = f"driver={driver} module={module} detail={detail}"
        if self.diagnostics:
            rendered += " " + "; ".join(item.render() for item in self.diagnostics)
        super().__init__(code="module_compile", detail=rendered)


# --- validation errors ----------------------------------------------------


class TemplateValidationError(FrameworkError):
    """Template is structurally valid but cannot be registered."""

    def __init__(self, detail: str) -> None:
        super().__init__(code="template_invalid", detail=detail)


class UnknownTargetError(FrameworkError):
    """Raised when a template or data call names a target that is not registered."""

    def __init__(self, target: str) -> None:
        self.target = target
        super().__init__(code="unknown_target", detail=f"target {target!r} is not registered")


class UnrecognizedConstraintError(FrameworkError):
    """Raised when a constraint's kind has no registered template."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(
            code="unrecognized_constraint",
            detail=f"Constraint kind {kind} is not recognized",
        )


class ConstraintValidationError(FrameworkError):
    """Constraint failed schema or target-specific validation."""

    def __init__(self, detail: str, *, issues: Sequence[str] = ()) -> None:
        self.issues = tuple(issues)
        rendered = detail
        if self.issues:
            rendered = f"{detail}: " + "; ".join(self.issues)
        super().__init__(code="constraint_invalid", detail=rendered)


class InvalidReviewError(FrameworkError):
    """A target accepted a review object but found it structurally invalid."""

    def __init__(self, detail: str, *, errors: dict[str, str] | None = None) -> None:
        self.errors = dict(errors or {})
        self.responses: object | None = None
        super().__init__(code="invalid_review", detail=detail)


# --- driver/transport errors ----------------------------------------------


class DriverError(FrameworkError):
    """Base driver failure; aborts the enclosing Review/Audit call."""

    def __init__(
        self,
        detail: str,
        *,
        driver: str = "driver",
        code: str = "driver",
        retryable: bool = False,
        http_status: int | None = None,
    ) -> None:
        self.driver = driver
        self.http_status = http_status
        parts = [f"driver={driver}", f"code={code}", f"retryable={str(retryable).lower()}"]
        if http_status is not None:
            parts.append(f"http_status={http_status}")
        parts.append(f"detail={_normalize_detail(detail)}")
        super().__init__(code=code, detail=" ".join(parts), retryable=retryable)


class DriverTimeoutError(DriverError):
    """Driver did not answer within the configured bound."""

    def __init__(self, detail: str, *, driver: str = "driver") -> None:
        super().__init__(detail, driver=driver, code="timeout", retryable=True)


class DriverUnavailableError(DriverError):
    """Driver is unreachable or not configured."""

    def __init__(self, detail: str, *, driver: str = "driver", retryable: bool = True) -> None:
        super().__init__(detail, driver=driver, code="unavailable", retryable=retryable)


class DriverServiceError(DriverError):
    """Driver answered with a failure that is not attributable to the input."""

    def __init__(
        self,
        detail: str,
        *,
        driver: str = "driver",
        retryable: bool = True,
        http_status: int | None = None,
    ) -> None:
        super().__init__(
            detail,
            driver=driver,
            code="service",
            retryable=retryable,
            http_status=http_status,
        )


class InvalidQueryError(DriverError):
    """Query input is structurally invalid."""

    def __init__(self, detail: str, *, driver: str = "driver") -> None:
        super().__init__(detail, driver=driver, code="invalid_query", retryable=False)


# --- inventory errors -----------------------------------------------------


class InventoryError(FrameworkError):
    """Data was rejected by a target's classifier; the inventory is unchanged."""

    def __init__(self, detail: str, *, target: str | None = None) -> None:
        self.target = target
        rendered = detail if target is None else f"target {target}: {detail}"
        super().__init__(code="inventory", detail=rendered)


def is_retryable_error(error: BaseException) -> bool:
    """Return retryability classification for normalized framework errors."""

    return isinstance(error, FrameworkError) and error.retryable


__all__ = [
    "CompileDiagnostic",
    "ConstraintValidationError",
    "DriverError",
    "DriverServiceError",
    "DriverTimeoutError",
    "DriverUnavailableError",
    "FrameworkError",
    "InvalidQueryError",
    "InvalidReviewError",
    "InventoryError",
    "ModuleCompileError",
    "SchemaError",
    "TemplateCompileError",
    "TemplateValidationError",
    "UnknownTargetError",
    "UnrecognizedConstraintError",
    "is_retryable_error",
]
