"""
constraint-framework — in-process driver

File: src/constraint_framework/drivers/local.py

Purpose
- Evaluate sandboxed Python rule modules inside the current process.

What should be included in this file
- Copy-on-write module snapshot; writers are serialized, readers never lock.
- One copy-on-write data tree per target (path copying over read-only nodes).
- Query loop: library relations, per-constraint ``violation`` calls, fault isolation,
  optional trace and stats.
- Thread-pool execution; an abandoned query stops its rule code at the next traced line.

Functional requirements
- ``put_module``/``add_data`` with identical content are no-ops returning ``False``.
- A faulting rule yields one error result for its constraint and evaluation continues.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
from types import MappingProxyType
from typing import Any, Final

import structlog

from constraint_framework.constants import (
    INVENTORY_RELATION,
    MATCHING_CONSTRAINTS_RELATION,
    MATCHING_REVIEWS_RELATION,
    PYTHON_ENGINE,
    VIOLATION_RELATION,
)
from constraint_framework.domain.models import constraint_key_of
from constraint_framework.domain.results import Result, enforcement_action_of
from constraint_framework.drivers.base import (
    DataPath,
    Driver,
    QueryInput,
    QueryOptions,
    QueryResponse,
    normalize_path,
)
from constraint_framework.errors import CompileDiagnostic, ModuleCompileError
from constraint_framework.instrumentation import StatLabel, StatsCollector
from constraint_framework.sandbox.policy import check_source
from constraint_framework.sandbox.runtime import (
    EvaluationInterrupted,
    LoadedModule,
    freeze,
    interruptible,
    iter_records,
    load_module,
    normalize_record,
    thaw,
)

LOCAL_DRIVER_NAME: Final[str] = "local"

MODULE_ENTRY_POINTS: Final[Mapping[str, int]] = MappingProxyType(
    {
        VIOLATION_RELATION: 3,
        MATCHING_CONSTRAINTS_RELATION: 2,
        MATCHING_REVIEWS_RELATION: 2,
        INVENTORY_RELATION: 1,
    }
)

_EMPTY: Final[Mapping[str, object]] = MappingProxyType({})


@dataclass(frozen=True, slots=True)
class _InstalledModule:
    name: str
    target: str
    kind: str
    module: LoadedModule

    def relation(self, name: str) -> Callable[..., object]:
        function = self.module.function(name)
        if function is None:
            raise RuntimeError(f"module {self.name} does not define {name}")
        return function


def _assoc(node: Mapping[str, object], path: DataPath, value: object) -> Mapping[str, object]:
    children = dict(node)
    head = path[0]
    if len(path) == 1:
        children[head] = value
    else:
        child = children.get(head)
        children[head] = _assoc(child if isinstance(child, Mapping) else _EMPTY, path[1:], value)
    return MappingProxyType(children)


def _dissoc(node: Mapping[str, object], path: DataPath) -> Mapping[str, object] | None:
    """Return ``node`` without ``path`` (pruning emptied parents), or ``None`` if absent."""

    head = path[0]
    if head not in node:
        return None
    children = dict(node)
    if len(path) == 1:
        del children[head]
    else:
        child = children[head]
        if not isinstance(child, Mapping):
            return None
        updated = _dissoc(child, path[1:])
        if updated is None:
            return None
        if updated:
            children[head] = updated
        else:
            del children[head]
    return MappingProxyType(children)


def _get_path(node: Mapping[str, object], path: DataPath) -> object | None:
    current: object = node
    for segment in path:
        if not isinstance(current, Mapping) or segment not in current:
            return None
        current = current[segment]
    return current


class LocalDriver(Driver):
    """Evaluates rule modules with the in-process sandbox runtime."""

    name = LOCAL_DRIVER_NAME
    language = PYTHON_ENGINE

    def __init__(
        self,
        *,
        tracing: bool = False,
        print_enabled: bool = False,
        max_workers: int = 4,
        logger: Any | None = None,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self._tracing = bool(tracing)
        self._print_enabled = bool(print_enabled)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="policy-eval"
        )
        self._write_lock = threading.Lock()
        self._active_lock = threading.Lock()
        self._active: set[threading.Event] = set()
        self._modules: Mapping[str, _InstalledModule] = MappingProxyType({})
        self._data: Mapping[str, Mapping[str, object]] = MappingProxyType({})

    @property
    def tracing(self) -> bool:
        return self._tracing

    @property
    def print_enabled(self) -> bool:
        return self._print_enabled

    # --- modules -------------------------------------------------------------

    async def put_module(self, name: str, source: str) -> bool:
        if not isinstance(name, str) or not name.strip():
            raise ValueError("module name cannot be empty")
        if not isinstance(source, str):
            raise TypeError("module source must be a string")
        current = self._modules.get(name)
        if current is not None and current.module.source == source:
            return False

        installed = self._compile(name, source)
        with self._write_lock:
            current = self._modules.get(name)
            if current is not None and current.module.source == source:
                return False
            modules = dict(self._modules)
            modules[name] = installed
            self._modules = MappingProxyType(modules)
        return True

    async def delete_module(self, name: str) -> bool:
        with self._write_lock:
            if name not in self._modules:
                return False
            modules = dict(self._modules)
            del modules[name]
            self._modules = MappingProxyType(modules)
        return True

    def module_names(self) -> tuple[str, ...]:
        return tuple(sorted(self._modules))

    def _compile(self, name: str, source: str) -> _InstalledModule:
        diagnostics = check_source(source, segment="module", required_functions=MODULE_ENTRY_POINTS)
        if diagnostics:
            raise ModuleCompileError(
                "module rejected by sandbox policy",
                module=name,
                driver=self.name,
                diagnostics=diagnostics,
            )
        sink = partial(self._log_print, name) if self._print_enabled else None
        try:
            module = load_module(name, source, print_sink=sink)
        except SyntaxError as exc:
            raise ModuleCompileError(
                "module failed to compile",
                module=name,
                driver=self.name,
                diagnostics=(
                    CompileDiagnostic(
                        segment="module",
                        line=exc.lineno or 1,
                        column=exc.offset or 0,
                        message=f"syntax error: {exc.msg}",
                    ),
                ),
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise ModuleCompileError(
                f"module failed to load: {type(exc).__name__}: {exc}",
                module=name,
                driver=self.name,
            ) from exc

        target = module.constant("TARGET")
        kind = module.constant("TEMPLATE_KIND")
        if not isinstance(target, str) or not isinstance(kind, str):
            raise ModuleCompileError(
                "module must define string constants TARGET and TEMPLATE_KIND",
                module=name,
                driver=self.name,
            )
        return _InstalledModule(name=name, target=target, kind=kind, module=module)

    def _log_print(self, module_name: str, text: str) -> None:
        self._logger.info("rule_print", driver=self.name, module_name=module_name, text=text)

    # --- data ----------------------------------------------------------------

    async def add_data(self, target: str, path: Sequence[str], obj: object) -> bool:
        segments = normalize_path(path)
        frozen = freeze(thaw(obj))
        with self._write_lock:
            tree = self._data.get(target, _EMPTY)
            existing = _get_path(tree, segments)
            if existing is not None and thaw(existing) == thaw(frozen):
                return False
            data = dict(self._data)
            data[target] = _assoc(tree, segments, frozen)
            self._data = MappingProxyType(data)
        return True

    async def remove_data(self, target: str, path: Sequence[str]) -> bool:
        segments = normalize_path(path)
        with self._write_lock:
            tree = self._data.get(target)
            if tree is None:
                return False
            updated = _dissoc(tree, segments)
            if updated is None:
                return False
            data = dict(self._data)
            if updated:
                data[target] = updated
            else:
                del data[target]
            self._data = MappingProxyType(data)
        return True

    # --- query ---------------------------------------------------------------

    async def query(
        self,
        target: str,
        query_input: QueryInput,
        options: QueryOptions | None = None,
    ) -> QueryResponse:
        opts = options or QueryOptions()
        # Both snapshots are taken together so one query sees one consistent state.
        modules = self._modules
        tree = self._data.get(target, _EMPTY)
        bound = sorted(
            (item for item in modules.values() if item.target == target),
            key=lambda item: item.kind,
        )
        if not bound:
            return QueryResponse(trace=self._empty_trace(target) if self._traced(opts) else None)

        cancel = threading.Event()
        with self._active_lock:
            self._active.add(cancel)
        loop = asyncio.get_running_loop()
        work = partial(self._evaluate, target, bound, tree, query_input, opts, cancel)
        try:
            return await loop.run_in_executor(self._executor, work)
        except asyncio.CancelledError:
            cancel.set()
            raise
        finally:
            with self._active_lock:
                self._active.discard(cancel)

    def _traced(self, options: QueryOptions) -> bool:
        return self._tracing or options.tracing

    def _empty_trace(self, target: str) -> str:
        return f"target {target}: no modules bound"

    def _evaluate(
        self,
        target: str,
        bound: Sequence[_InstalledModule],
        tree: Mapping[str, object],
        query_input: QueryInput,
        options: QueryOptions,
        cancel: threading.Event,
    ) -> QueryResponse:
        traced = self._traced(options)
        trace: list[str] | None = [] if traced else None
        collector = (
            StatsCollector(
                driver=self.name,
                labels=(
                    StatLabel(name="tracing_enabled", value=traced),
                    StatLabel(name="print_enabled", value=self._print_enabled),
                ),
            )
            if options.stats
            else None
        )
        results: list[Result] = []
        review = freeze(query_input.review) if query_input.review is not None else None
        scope = freeze(query_input.audit_scope) if query_input.audit_scope is not None else None

        try:
            with interruptible(cancel.is_set):
                for installed in bound:
                    started = time.perf_counter_ns()
                    evaluated = self._evaluate_module(
                        target, installed, tree, review, scope, results, trace, cancel
                    )
                    if collector is not None:
                        collector.record_template(
                            installed.kind,
                            run_time_ns=time.perf_counter_ns() - started,
                            constraint_count=evaluated,
                        )
        except EvaluationInterrupted:
            if trace is not None:
                trace.append("evaluation cancelled")

        return QueryResponse(
            results=tuple(results),
            trace="\n".join(trace) if trace is not None else None,
            stats_entries=collector.entries() if collector is not None else (),
        )

    def _evaluate_module(
        self,
        target: str,
        installed: _InstalledModule,
        tree: Mapping[str, object],
        review: object,
        scope: object,
        results: list[Result],
        trace: list[str] | None,
        cancel: threading.Event,
    ) -> int:
        try:
            inventory = installed.relation(INVENTORY_RELATION)(tree)
            if review is not None:
                matching = installed.relation(MATCHING_CONSTRAINTS_RELATION)(review, tree)
                pairs = [(review, constraint) for constraint in _iterate(matching)]
            else:
                matching = installed.relation(MATCHING_REVIEWS_RELATION)(tree, scope)
                pairs = [_as_pair(item) for item in _iterate(matching)]
                pairs = [(freeze(subject), constraint) for subject, constraint in pairs]
        except Exception as exc:  # noqa: BLE001
            self._logger.warning(
                "rule_evaluation_failed",
                driver=self.name,
                module_name=installed.name,
                stage="library",
                error=f"{type(exc).__name__}: {exc}",
            )
            results.append(
                Result(
                    target=target,
                    msg=f"error evaluating library for {installed.kind}: {exc}",
                    constraint={"kind": installed.kind},
                    error=f"{type(exc).__name__}: {exc}",
                    driver=self.name,
                )
            )
            if trace is not None:
                trace.append(f"module {installed.name}: library error {type(exc).__name__}")
            return 0

        violation = installed.relation(VIOLATION_RELATION)
        evaluated: set[str] = set()
        for subject, constraint in pairs:
            if cancel.is_set():
                raise EvaluationInterrupted
            constraint_doc = thaw(constraint)
            key = constraint_key_of(constraint_doc)
            evaluated.add(key.name)
            review_doc = thaw(subject)
            parameters = _parameters_of(constraint)
            try:
                records = [
                    normalize_record(record)
                    for record in iter_records(violation(subject, parameters, inventory))
                ]
            except Exception as exc:  # noqa: BLE001
                detail = f"{type(exc).__name__}: {exc}"
                self._logger.warning(
                    "rule_evaluation_failed",
                    driver=self.name,
                    module_name=installed.name,
                    constraint=str(key),
                    stage="violation",
                    error=detail,
                )
                results.append(
                    Result(
                        target=target,
                        msg=f"error evaluating constraint {key}: {detail}",
                        constraint=constraint_doc,
                        review=review_doc,
                        enforcement_action=enforcement_action_of(constraint_doc),
                        error=detail,
                        driver=self.name,
                    )
                )
                if trace is not None:
                    trace.append(f"constraint {key}: error {detail}")
                continue

            for msg, details in records:
                results.append(
                    Result(
                        target=target,
                        msg=msg,
                        constraint=constraint_doc,
                        metadata={"details": details} if details is not None else {},
                        review=review_doc,
                        enforcement_action=enforcement_action_of(constraint_doc),
                        driver=self.name,
                    )
                )
            if trace is not None:
                trace.append(f"constraint {key}: {len(records)} violation(s)")
        if trace is not None:
            trace.append(
                f"module {installed.name}: {len(pairs)} pair(s), {len(evaluated)} constraint(s)"
            )
        return len(evaluated)

    # --- debugging -----------------------------------------------------------

    async def dump(self) -> dict[str, Any]:
        modules = self._modules
        data = self._data
        return {
            "modules": {name: modules[name].module.source for name in sorted(modules)},
            "data": {target: thaw(data[target]) for target in sorted(data)},
        }

    async def close(self) -> None:
        with self._active_lock:
            for cancel in self._active:
                cancel.set()
        self._executor.shutdown(wait=False, cancel_futures=True)


def _iterate(value: object) -> Iterable[object]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise TypeError(f"library relation must be iterable, got {type(value).__name__}")
    return value


def _as_pair(item: object) -> tuple[object, object]:
    if not isinstance(item, tuple) or len(item) != 2:
        raise TypeError("matching_reviews_and_constraints must yield (review, constraint) pairs")
    return item[0], item[1]


def _parameters_of(constraint: object) -> object:
    if isinstance(constraint, Mapping):
        spec = constraint.get("spec")
        if isinstance(spec, Mapping):
            parameters = spec.get("parameters")
            if isinstance(parameters, Mapping):
                return parameters
    return _EMPTY


__all__ = ["LOCAL_DRIVER_NAME", "LocalDriver", "MODULE_ENTRY_POINTS"]
