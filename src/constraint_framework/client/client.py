"""
constraint-framework — client.

File: src/constraint_framework/client/client.py

Purpose
- Own the registered templates, constraints and cached inventory, and drive every
  configured driver through Review and Audit.

What should be included in this file
- Template and constraint mutations (add/remove/get/list) with per-kind serialization.
- Data mutations classified by every target (inventory kept in sync with drivers).
- Review: classify with every target, query drivers with a bounded timeout, enrich results.
- Audit: one batch per inventory shard, at most one audit pass at a time.
- Dump and Reset.

Functional requirements
- Reviews never take a lock; client state is an immutable snapshot replaced atomically.
- A failed template install rolls back every driver that already accepted the module.
- Results from several drivers are unioned; differing verdicts are reported as divergences.
- Driver timeouts surface as ``DriverTimeoutError``; evaluation faults stay error Results.
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Final

import structlog

from constraint_framework.client.audit import AuditBatch
from constraint_framework.compiler import CompiledTemplate, TemplateCompiler
from constraint_framework.constants import (
    CONSTRAINT_GROUP,
    CONSTRAINT_VERSIONS,
    CONSTRAINTS_ROOT,
    DEFAULT_QUERY_TIMEOUT_SECONDS,
    EXTERNAL_DATA_ROOT,
)
from constraint_framework.domain.models import (
    Constraint,
    ConstraintKey,
    ConstraintTemplate,
    InventoryKey,
    JSONValue,
)
from constraint_framework.domain.results import Divergence, Responses, Result
from constraint_framework.drivers.base import (
    DriverProtocol,
    QueryInput,
    QueryOptions,
    QueryResponse,
)
from constraint_framework.errors import (
    ConstraintValidationError,
    DriverError,
    DriverTimeoutError,
    InvalidReviewError,
    InventoryError,
    TemplateValidationError,
    UnknownTargetError,
    UnrecognizedConstraintError,
)
from constraint_framework.inventory import Inventory
from constraint_framework.observability.logging import correlation_scope
from constraint_framework.observability.metrics import (
    AUDIT_BATCHES_TOTAL,
    AUDIT_RESULTS_TOTAL,
    CONSTRAINTS_GAUGE,
    DRIVER_ERRORS_TOTAL,
    EVALUATION_ERRORS_TOTAL,
    INVENTORY_ENTRIES_GAUGE,
    REVIEW_DURATION_MS,
    REVIEW_RESULTS_TOTAL,
    REVIEWS_TOTAL,
    TEMPLATES_GAUGE,
    MetricsRegistry,
)
from constraint_framework.targets.base import DataClassification, TargetProtocol
from constraint_framework.utils.concurrency import CancellationToken, KeyedLocks, run_with_timeout

_DNS1123_SUBDOMAIN: Final[re.Pattern[str]] = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)
_DNS1123_MAX_LEN: Final[int] = 253


@dataclass(frozen=True, slots=True)
class _TemplateEntry:
    template: ConstraintTemplate
    compiled: CompiledTemplate
    target: TargetProtocol


@dataclass(frozen=True, slots=True)
class _ClientState:
    templates: Mapping[str, _TemplateEntry] = field(default_factory=lambda: MappingProxyType({}))
    constraints: Mapping[str, Mapping[str, Constraint]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def with_template(self, kind: str, entry: _TemplateEntry | None) -> _ClientState:
        templates = dict(self.templates)
        constraints = dict(self.constraints)
        if entry is None:
            templates.pop(kind, None)
            constraints.pop(kind, None)
        else:
            templates[kind] = entry
            constraints.setdefault(kind, MappingProxyType({}))
        return _ClientState(MappingProxyType(templates), MappingProxyType(constraints))

    def with_constraint(self, kind: str, name: str, constraint: Constraint | None) -> _ClientState:
        by_name = dict(self.constraints.get(kind, {}))
        if constraint is None:
            by_name.pop(name, None)
        else:
            by_name[name] = constraint
        constraints = dict(self.constraints)
        constraints[kind] = MappingProxyType(by_name)
        return _ClientState(self.templates, MappingProxyType(constraints))

    def constraint_count(self) -> int:
        return sum(len(by_name) for by_name in self.constraints.values())


def _template_lock_key(kind: str) -> tuple[str, str]:
    return ("template", kind)


def _inventory_key(target: str, path: Sequence[str]) -> InventoryKey:
    if len(path) == 4 and path[0] == "cluster":
        return InventoryKey(target, path[1], path[2], "", path[3])
    if len(path) == 5 and path[0] == "namespace":
        return InventoryKey(target, path[2], path[3], path[1], path[4])
    raise InventoryError(f"unsupported inventory path {'/'.join(path)!r}", target=target)


def _subject_of(review: Mapping[str, JSONValue] | None) -> str:
    if not isinstance(review, Mapping):
        return ""
    kind = review.get("kind")
    kind_name = kind.get("kind", "") if isinstance(kind, Mapping) else ""
    name = review.get("name")
    namespace = review.get("namespace")
    if not isinstance(name, str) or not name:
        obj = review.get("object") or review.get("oldObject")
        metadata = obj.get("metadata") if isinstance(obj, Mapping) else None
        if isinstance(metadata, Mapping):
            name = metadata.get("name")
            namespace = namespace or metadata.get("namespace")
    return f"{kind_name}:{namespace or ''}/{name or ''}"


def _result_identity(result: Result) -> tuple[object, ...]:
    return (result.constraint_key, _subject_of(result.review), result.msg, result.error)


class Client:
    """Entry point for template/constraint management, Review and Audit."""

    def __init__(
        self,
        *,
        targets: Iterable[TargetProtocol],
        drivers: Iterable[DriverProtocol],
        query_timeout_seconds: float = DEFAULT_QUERY_TIMEOUT_SECONDS,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
        compiler: TemplateCompiler | None = None,
    ) -> None:
        self._targets: dict[str, TargetProtocol] = {}
        for target in targets:
            if target.name in self._targets:
                raise ValueError(f"duplicate target {target.name!r}")
            self._targets[target.name] = target
        if not self._targets:
            raise ValueError("at least one target is required")

        self._drivers: dict[str, DriverProtocol] = {}
        for driver in drivers:
            if driver.name in self._drivers:
                raise ValueError(f"duplicate driver {driver.name!r}")
            self._drivers[driver.name] = driver
        if not self._drivers:
            raise ValueError("at least one driver is required")

        if query_timeout_seconds <= 0:
            raise ValueError("query_timeout_seconds must be > 0")
        self._query_timeout_seconds = float(query_timeout_seconds)
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        languages = sorted({driver.language for driver in self._drivers.values()})
        self._compiler = compiler or TemplateCompiler(languages=languages)

        self._state = _ClientState()
        self._inventory = Inventory()
        self._locks = KeyedLocks()
        self._audit_lock = asyncio.Lock()

    # --- introspection -------------------------------------------------------

    @property
    def target_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._targets))

    @property
    def driver_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._drivers))

    @property
    def inventory(self) -> Inventory:
        return self._inventory

    # --- templates -----------------------------------------------------------

    async def add_template(self, template: ConstraintTemplate | Mapping[str, object]) -> bool:
        """Compile and install ``template`` on every driver speaking one of its languages.

        Returns ``False`` when an identical template is already registered.
        """

        if not isinstance(template, ConstraintTemplate):
            try:
                template = ConstraintTemplate.from_dict(template)
            except ValueError as exc:
                raise TemplateValidationError(str(exc)) from exc
        target = self._targets.get(template.target_name)
        if target is None:
            raise UnknownTargetError(template.target_name)

        kind = template.kind
        async with self._locks.hold(_template_lock_key(kind)):
            existing = self._state.templates.get(kind)
            if existing is not None:
                if existing.template.target_name != template.target_name:
                    raise TemplateValidationError(
                        f"template {kind} is bound to target {existing.template.target_name}; "
                        f"cannot rebind it to {template.target_name}"
                    )
                if existing.template == template:
                    return False

            compiled = self._compiler.compile(template, target)
            await self._install_module(compiled, existing.compiled if existing else None)

            entry = _TemplateEntry(template=template, compiled=compiled, target=target)
            self._state = self._state.with_template(kind, entry)

        self._logger.info(
            "template_added",
            kind=kind,
            target=template.target_name,
            module_name=compiled.module_name,
            replaced=existing is not None,
        )
        self._record_state_gauges()
        return True

    async def _install_module(
        self, compiled: CompiledTemplate, previous: CompiledTemplate | None
    ) -> None:
        installed: list[DriverProtocol] = []
        try:
            for driver in self._drivers_for(compiled):
                await driver.put_module(compiled.module_name, compiled.sources[driver.language])
                installed.append(driver)
        except Exception:
            for driver in reversed(installed):
                await self._restore_module(driver, compiled.module_name, previous)
            raise

    async def _restore_module(
        self, driver: DriverProtocol, module_name: str, previous: CompiledTemplate | None
    ) -> None:
        previous_source = previous.sources.get(driver.language) if previous is not None else None
        try:
            if previous_source is None:
                await driver.delete_module(module_name)
            else:
                await driver.put_module(module_name, previous_source)
        except (DriverError, OSError) as exc:
            self._logger.warning(
                "template_rollback_failed",
                driver=driver.name,
                module_name=module_name,
                error=str(exc),
            )

    async def remove_template(self, kind: str | ConstraintTemplate) -> tuple[ConstraintKey, ...]:
        """Remove a template and every constraint of its kind.

        Returns the keys of the removed constraints; an unknown kind is a no-op.
        """

        if isinstance(kind, ConstraintTemplate):
            kind = kind.kind
        async with self._locks.hold(_template_lock_key(kind)):
            entry = self._state.templates.get(kind)
            if entry is None:
                return ()
            removed = tuple(
                sorted(
                    constraint.key
                    for constraint in self._state.constraints.get(kind, {}).values()
                )
            )
            await self._uninstall_template(kind, entry)
            self._state = self._state.with_template(kind, None)

        self._logger.info(
            "template_removed",
            kind=kind,
            target=entry.compiled.target,
            constraints_removed=len(removed),
        )
        self._record_state_gauges()
        return removed

    async def _uninstall_template(self, kind: str, entry: _TemplateEntry) -> None:
        compiled = entry.compiled
        constraints = tuple(self._state.constraints.get(kind, {}).values())
        cleared: list[DriverProtocol] = []
        deleted: list[DriverProtocol] = []
        try:
            for driver in self._drivers.values():
                await driver.remove_data(compiled.target, (CONSTRAINTS_ROOT, kind))
                cleared.append(driver)
            for driver in self._drivers_for(compiled):
                await driver.delete_module(compiled.module_name)
                deleted.append(driver)
        except Exception:
            for driver in reversed(deleted):
                await self._restore_module(driver, compiled.module_name, compiled)
            for driver in reversed(cleared):
                for constraint in constraints:
                    path = (CONSTRAINTS_ROOT, kind, constraint.name)
                    await self._restore_constraint(driver, compiled.target, path, constraint)
            raise

    def get_template(self, kind: str) -> ConstraintTemplate | None:
        entry = self._state.templates.get(kind)
        return entry.template if entry is not None else None

    def list_templates(self) -> tuple[ConstraintTemplate, ...]:
        state = self._state
        return tuple(state.templates[kind].template for kind in sorted(state.templates))

    # --- constraints ---------------------------------------------------------

    async def add_constraint(self, constraint: Constraint | Mapping[str, object]) -> bool:
        """Validate and register ``constraint``; ``False`` when it is already registered as-is."""

        if not isinstance(constraint, Constraint):
            try:
                constraint = Constraint.from_dict(constraint)
            except ValueError as exc:
                raise ConstraintValidationError(str(exc)) from exc

        kind = constraint.kind
        async with self._locks.hold(_template_lock_key(kind)):
            entry = self._state.templates.get(kind)
            if entry is None:
                raise UnrecognizedConstraintError(kind)
            self._validate_constraint(entry, constraint)

            existing = self._state.constraints.get(kind, {}).get(constraint.name)
            if existing == constraint:
                return False

            path = (CONSTRAINTS_ROOT, kind, constraint.name)
            document = constraint.to_dict()
            written: list[DriverProtocol] = []
            try:
                for driver in self._drivers.values():
                    await driver.add_data(entry.compiled.target, path, document)
                    written.append(driver)
            except Exception:
                for driver in reversed(written):
                    await self._restore_constraint(driver, entry.compiled.target, path, existing)
                raise
            self._state = self._state.with_constraint(kind, constraint.name, constraint)

        self._logger.info(
            "constraint_added",
            kind=kind,
            constraint_name=constraint.name,
            enforcement_action=constraint.enforcement_action,
            replaced=existing is not None,
        )
        self._record_state_gauges()
        return True

    def _validate_constraint(self, entry: _TemplateEntry, constraint: Constraint) -> None:
        issues: list[str] = []
        if len(constraint.name) > _DNS1123_MAX_LEN or not _DNS1123_SUBDOMAIN.match(
            constraint.name
        ):
            issues.append(
                f"metadata.name: {constraint.name!r} is not a valid DNS-1123 subdomain"
            )
        if constraint.group != CONSTRAINT_GROUP:
            issues.append(
                f"apiVersion: wrong group {constraint.group!r}, expected {CONSTRAINT_GROUP!r}"
            )
        if constraint.version not in CONSTRAINT_VERSIONS:
            issues.append(
                f"apiVersion: unsupported version {constraint.version!r}, expected one of "
                f"{', '.join(CONSTRAINT_VERSIONS)}"
            )
        issues.extend(entry.compiled.validate_document(constraint.to_dict()))
        if issues:
            raise ConstraintValidationError(f"invalid constraint {constraint.key}", issues=issues)
        entry.target.validate_constraint(constraint)

    async def _restore_constraint(
        self,
        driver: DriverProtocol,
        target: str,
        path: tuple[str, ...],
        previous: Constraint | None,
    ) -> None:
        try:
            if previous is None:
                await driver.remove_data(target, path)
            else:
                await driver.add_data(target, path, previous.to_dict())
        except (DriverError, OSError) as exc:
            self._logger.warning(
                "constraint_rollback_failed",
                driver=driver.name,
                path="/".join(path),
                error=str(exc),
            )

    async def remove_constraint(
        self, constraint: Constraint | ConstraintKey | Mapping[str, object]
    ) -> bool:
        """Remove one constraint; ``False`` when it is not registered."""

        if isinstance(constraint, (Constraint, ConstraintKey)):
            key = constraint.key if isinstance(constraint, Constraint) else constraint
        else:
            try:
                key = Constraint.from_dict(constraint).key
            except ValueError as exc:
                raise ConstraintValidationError(str(exc)) from exc

        async with self._locks.hold(_template_lock_key(key.kind)):
            entry = self._state.templates.get(key.kind)
            if entry is None:
                raise UnrecognizedConstraintError(key.kind)
            if key.name not in self._state.constraints.get(key.kind, {}):
                return False
            for driver in self._drivers.values():
                await driver.remove_data(
                    entry.compiled.target, (CONSTRAINTS_ROOT, key.kind, key.name)
                )
            self._state = self._state.with_constraint(key.kind, key.name, None)

        self._logger.info("constraint_removed", kind=key.kind, constraint_name=key.name)
        self._record_state_gauges()
        return True

    def get_constraint(self, kind: str, name: str) -> Constraint | None:
        return self._state.constraints.get(kind, {}).get(name)

    def list_constraints(self, kind: str | None = None) -> tuple[Constraint, ...]:
        state = self._state
        kinds = sorted(state.constraints) if kind is None else [kind]
        return tuple(
            by_name[name]
            for current in kinds
            for by_name in (state.constraints.get(current, {}),)
            for name in sorted(by_name)
        )

    # --- data ----------------------------------------------------------------

    def _classify(self, obj: object) -> list[tuple[TargetProtocol, DataClassification]]:
        handled: list[tuple[TargetProtocol, DataClassification]] = []
        for name in sorted(self._targets):
            target = self._targets[name]
            classification = target.process_data(obj)
            if classification.handled:
                handled.append((target, classification))
        return handled

    async def add_data(self, obj: object) -> bool:
        """Cache ``obj`` for every target that claims it; ``True`` if anything changed."""

        classified = self._classify(obj)
        keys: list[InventoryKey] = []
        for target, classification in classified:
            if not classification.path:
                raise InventoryError("data cannot be added at the target root", target=target.name)
            keys.append(_inventory_key(target.name, classification.path))

        changed = False
        for key, (target, classification) in zip(keys, classified, strict=True):
            async with self._locks.hold(("inventory", key)):
                path = (EXTERNAL_DATA_ROOT, *classification.path)
                for driver in self._drivers.values():
                    written = await driver.add_data(target.name, path, classification.data)
                    changed = written or changed
                changed = self._inventory.put(key, classification.data) or changed
            self._logger.info("data_added", target=target.name, key=str(key))
        self._record_inventory_gauge()
        return changed

    async def remove_data(self, obj: object) -> bool:
        """Drop ``obj`` (or, for a wipe marker, every cached object) from each claiming target."""

        classified = self._classify(obj)
        keys: list[InventoryKey | None] = [
            _inventory_key(target.name, classification.path) if classification.path else None
            for target, classification in classified
        ]

        changed = False
        for key, (target, classification) in zip(keys, classified, strict=True):
            path = (EXTERNAL_DATA_ROOT, *classification.path)
            if key is None:
                async with self._locks.hold(("inventory-wipe", target.name)):
                    for driver in self._drivers.values():
                        changed = await driver.remove_data(target.name, path) or changed
                    changed = self._inventory.clear(target.name) > 0 or changed
                self._logger.info("data_removed", target=target.name, key="*")
                continue
            async with self._locks.hold(("inventory", key)):
                for driver in self._drivers.values():
                    changed = await driver.remove_data(target.name, path) or changed
                changed = self._inventory.remove(key) or changed
            self._logger.info("data_removed", target=target.name, key=str(key))
        self._record_inventory_gauge()
        return changed

    # --- review --------------------------------------------------------------

    async def review(
        self,
        obj: object,
        *,
        tracing: bool = False,
        stats: bool = False,
        timeout_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Responses:
        """Evaluate ``obj`` against every matching constraint of every target that accepts it."""

        started = time.perf_counter()
        state = self._state
        options = QueryOptions(tracing=tracing, stats=stats)
        responses = Responses()
        failures: dict[str, str] = {}

        with correlation_scope(review_id=uuid.uuid4().hex):
            for name in sorted(self._targets):
                target = self._targets[name]
                try:
                    classification = target.handle_review(obj)
                except InvalidReviewError as exc:
                    failures[name] = exc.detail
                    responses.handled[name] = False
                    continue
                responses.handled[name] = classification.handled
                if not classification.handled:
                    continue
                batch = await self._evaluate(
                    state,
                    target,
                    QueryInput(review=classification.review),
                    options,
                    timeout_seconds=timeout_seconds,
                    cancel_token=cancel_token,
                )
                responses.merge(batch)

            duration_ms = (time.perf_counter() - started) * 1000.0
            result_count = len(responses.results())
            if self._metrics is not None:
                self._metrics.inc(REVIEWS_TOTAL)
                self._metrics.inc(REVIEW_RESULTS_TOTAL, result_count)
                self._metrics.observe(REVIEW_DURATION_MS, duration_ms)
            self._logger.info(
                "review_completed",
                handled=responses.handled_count(),
                results=result_count,
                divergences=len(responses.divergences),
                duration_ms=round(duration_ms, 3),
            )

        if failures:
            detail = "; ".join(f"{name}: {message}" for name, message in sorted(failures.items()))
            error = InvalidReviewError(detail, errors=failures)
            error.responses = responses
            raise error
        return responses

    # --- audit ---------------------------------------------------------------

    async def audit_batches(
        self,
        *,
        tracing: bool = False,
        stats: bool = False,
        timeout_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AsyncIterator[AuditBatch]:
        """Yield one batch per inventory shard of every target that has templates.

        Each call starts from a fresh snapshot of the shard list. Concurrent
        passes on one client wait for each other.
        """

        options = QueryOptions(tracing=tracing, stats=stats)
        async with self._audit_lock:
            audit_id = uuid.uuid4().hex
            for name in sorted(self._targets):
                target = self._targets[name]
                for _, group_version, kind in self._inventory.shards(name):
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled()
                    state = self._state
                    if not any(entry.compiled.target == name for entry in state.templates.values()):
                        break
                    responses = await self._evaluate(
                        state,
                        target,
                        QueryInput(audit_scope={"group_version": group_version, "kind": kind}),
                        options,
                        timeout_seconds=timeout_seconds,
                        cancel_token=cancel_token,
                    )
                    responses.handled[name] = True
                    result_count = len(responses.results())
                    if self._metrics is not None:
                        self._metrics.inc(AUDIT_BATCHES_TOTAL, labels={"target": name})
                        self._metrics.inc(
                            AUDIT_RESULTS_TOTAL, result_count, labels={"target": name}
                        )
                    self._logger.info(
                        "audit_batch_completed",
                        audit_id=audit_id,
                        target=name,
                        group_version=group_version,
                        kind=kind,
                        results=result_count,
                    )
                    yield AuditBatch(
                        target=name, group_version=group_version, kind=kind, responses=responses
                    )

    async def audit(
        self,
        *,
        tracing: bool = False,
        stats: bool = False,
        timeout_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Responses:
        """Run a whole audit pass and merge every batch."""

        merged = Responses()
        batches = self.audit_batches(
            tracing=tracing, stats=stats, timeout_seconds=timeout_seconds, cancel_token=cancel_token
        )
        try:
            async for batch in batches:
                merged.merge(batch.responses)
        finally:
            await batches.aclose()
        return merged

    # --- evaluation ----------------------------------------------------------

    def _drivers_for(self, compiled: CompiledTemplate) -> list[DriverProtocol]:
        return [
            self._drivers[name]
            for name in sorted(self._drivers)
            if self._drivers[name].language in compiled.sources
        ]

    async def _evaluate(
        self,
        state: _ClientState,
        target: TargetProtocol,
        query_input: QueryInput,
        options: QueryOptions,
        *,
        timeout_seconds: float | None,
        cancel_token: CancellationToken | None,
    ) -> Responses:
        kinds_by_driver: dict[str, set[str]] = {}
        for kind, entry in state.templates.items():
            if entry.compiled.target != target.name:
                continue
            for driver in self._drivers_for(entry.compiled):
                kinds_by_driver.setdefault(driver.name, set()).add(kind)

        responses = Responses()
        response = responses.response_for(target.name)
        if not kinds_by_driver:
            return responses

        driver_names = sorted(kinds_by_driver)
        outcomes = await asyncio.gather(
            *(
                self._query_driver(
                    self._drivers[name],
                    target.name,
                    query_input,
                    options,
                    timeout_seconds=timeout_seconds,
                    cancel_token=cancel_token,
                )
                for name in driver_names
            ),
            return_exceptions=True,
        )
        per_driver: dict[str, list[Result]] = {}
        traces: list[str] = []
        seen: set[tuple[object, ...]] = set()
        for name, outcome in zip(driver_names, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                raise outcome
            enriched = [self._enrich(target, result) for result in outcome.results]
            per_driver[name] = enriched
            for result in enriched:
                if result.is_error:
                    self._logger.warning(
                        "rule_evaluation_failed",
                        driver=name,
                        target=target.name,
                        constraint=str(result.constraint_key),
                        error=result.error,
                    )
                    if self._metrics is not None:
                        self._metrics.inc(EVALUATION_ERRORS_TOTAL, labels={"driver": name})
                identity = _result_identity(result)
                if identity in seen:
                    continue
                seen.add(identity)
                response.add_result(result)
            if outcome.trace is not None:
                traces.append(f"Driver {name}:\n{outcome.trace}")
            responses.stats_entries.extend(outcome.stats_entries)

        response.sort()
        if traces:
            response.trace = "\n".join(traces)
        responses.divergences.extend(self._divergences(target.name, per_driver, kinds_by_driver))
        return responses

    async def _query_driver(
        self,
        driver: DriverProtocol,
        target: str,
        query_input: QueryInput,
        options: QueryOptions,
        *,
        timeout_seconds: float | None,
        cancel_token: CancellationToken | None,
    ) -> QueryResponse:
        timeout = self._query_timeout_seconds if timeout_seconds is None else timeout_seconds
        try:
            return await run_with_timeout(
                driver.query(target, query_input, options), timeout, cancel_token
            )
        except TimeoutError as exc:
            self._record_driver_failure(driver.name, target, "timeout")
            raise DriverTimeoutError(
                f"query on target {target} timed out after {timeout} seconds", driver=driver.name
            ) from exc
        except DriverError as exc:
            self._record_driver_failure(driver.name, target, exc.code)
            raise

    def _record_driver_failure(self, driver: str, target: str, code: str) -> None:
        if self._metrics is not None:
            self._metrics.inc(DRIVER_ERRORS_TOTAL, labels={"driver": driver, "code": code})
        self._logger.warning("driver_query_failed", driver=driver, target=target, code=code)

    def _enrich(self, target: TargetProtocol, result: Result) -> Result:
        if result.is_error:
            return result
        return target.handle_violation(result)

    def _divergences(
        self,
        target: str,
        per_driver: Mapping[str, Sequence[Result]],
        kinds_by_driver: Mapping[str, set[str]],
    ) -> list[Divergence]:
        if len(per_driver) < 2:
            return []
        violated: dict[str, set[tuple[ConstraintKey, str]]] = {}
        errored: dict[str, set[ConstraintKey]] = {}
        for name, results in per_driver.items():
            violated[name] = set()
            errored[name] = set()
            for result in results:
                if result.is_error:
                    errored[name].add(result.constraint_key)
                else:
                    violated[name].add((result.constraint_key, _subject_of(result.review)))

        divergences: list[Divergence] = []
        for key, subject in sorted(set().union(*violated.values())):
            verdicts = {
                name: (key, subject) in violated[name]
                for name in sorted(per_driver)
                if key.kind in kinds_by_driver.get(name, set()) and key not in errored[name]
            }
            if len(verdicts) < 2 or len(set(verdicts.values())) < 2:
                continue
            divergence = Divergence(
                target=target, constraint=key, subject=subject, verdicts=verdicts
            )
            divergences.append(divergence)
            self._logger.warning(
                "driver_results_diverged",
                target=target,
                constraint=str(key),
                subject=subject,
                verdicts=dict(verdicts),
            )
        return divergences

    # --- dump / reset --------------------------------------------------------

    async def dump(self) -> dict[str, Any]:
        """Return a JSON-serializable view of client state and every driver's contents."""

        state = self._state
        drivers: dict[str, Any] = {}
        for name in sorted(self._drivers):
            drivers[name] = await self._drivers[name].dump()
        return {
            "templates": {
                kind: state.templates[kind].template.to_dict() for kind in sorted(state.templates)
            },
            "constraints": {
                kind: {
                    name: state.constraints[kind][name].to_dict(include_status=True)
                    for name in sorted(state.constraints[kind])
                }
                for kind in sorted(state.constraints)
            },
            "inventory": self._inventory.dump(),
            "drivers": drivers,
        }

    async def reset(self) -> None:
        """Remove every template, constraint and cached object from drivers and client state."""

        for kind in sorted(self._state.templates):
            await self.remove_template(kind)
        for name in sorted(self._targets):
            async with self._locks.hold(("inventory-wipe", name)):
                for driver in self._drivers.values():
                    await driver.remove_data(name, (EXTERNAL_DATA_ROOT,))
                self._inventory.clear(name)
        self._record_inventory_gauge()
        self._logger.info("client_reset", targets=list(self.target_names))

    async def close(self) -> None:
        for name in sorted(self._drivers):
            await self._drivers[name].close()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    # --- metrics -------------------------------------------------------------

    def _record_state_gauges(self) -> None:
        if self._metrics is None:
            return
        state = self._state
        self._metrics.set_gauge(TEMPLATES_GAUGE, len(state.templates))
        self._metrics.set_gauge(CONSTRAINTS_GAUGE, state.constraint_count())

    def _record_inventory_gauge(self) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge(INVENTORY_ENTRIES_GAUGE, len(self._inventory))


__all__ = ["Client"]
