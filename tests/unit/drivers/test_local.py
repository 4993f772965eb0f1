"""
Unit tests for the in-process driver.

Coverage:
- Module installation: idempotence, sandbox rejection, required module constants.
- Copy-on-write data tree writes, removals and pruning.
- Review and audit queries over compiled admission modules.
- Fault isolation for library and rule errors, print sink, trace and stats.
- Abandoned and closed queries stop runaway rule code and free their worker.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import pytest

from constraint_framework.compiler import CompiledTemplate, TemplateCompiler
from constraint_framework.domain.models import ConstraintTemplate
from constraint_framework.drivers.base import QueryInput, QueryOptions
from constraint_framework.drivers.local import LocalDriver
from constraint_framework.errors import ModuleCompileError
from constraint_framework.instrumentation import CONSTRAINT_COUNT
from constraint_framework.targets.admission import ADMISSION_TARGET_NAME, AdmissionTarget
from constraint_framework.utils.concurrency import run_with_timeout

ADMISSION = ADMISSION_TARGET_NAME

OWNER_SOURCE = '''
def violation(review, parameters, inventory):
    print("checking", get(review, "name"))
    labels = get(get(get(review, "object", EMPTY), "metadata", EMPTY), "labels", EMPTY) or EMPTY
    if "owner" not in labels:
        yield {"msg": "missing owner", "details": {"name": get(review, "name")}}
'''

SPINNING_SOURCE = '''
def violation(review, parameters, inventory):
    total = 0
    for outer in range(1000000):
        for inner in range(1000000):
            total = total + 1
    yield {"msg": f"counted {total}"}
'''

BROKEN_LIBRARY_MODULE = '''
TARGET = "admission.k8s.gatekeeper.sh"
TEMPLATE_KIND = "Broken"


def inventory(data):
    return {}


def matching_constraints(review, data):
    return 5


def matching_reviews_and_constraints(data, scope):
    return ()


def violation(review, parameters, inventory):
    return ()
'''


@dataclass(slots=True)
class RecordingLogger:
    events: list[tuple[str, dict[str, object]]] = field(default_factory=list)

    def info(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))

    def warning(self, event: str, **kwargs: object) -> None:
        self.events.append((event, dict(kwargs)))


def _compile(kind: str = "RequiredOwner", source: str = OWNER_SOURCE) -> CompiledTemplate:
    template = ConstraintTemplate.from_dict(
        {
            "kind": "ConstraintTemplate",
            "metadata": {"name": kind.lower()},
            "spec": {
                "crd": {"spec": {"names": {"kind": kind}}},
                "targets": [{"target": ADMISSION, "source": source}],
            },
        }
    )
    return TemplateCompiler().compile(template, AdmissionTarget())


def _constraint(kind: str, name: str) -> dict[str, Any]:
    return {
        "apiVersion": "constraints.gatekeeper.sh/v1beta1",
        "kind": kind,
        "metadata": {"name": name},
        "spec": {"enforcementAction": "warn"},
    }


def _namespace_review(name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "kind": {"group": "", "version": "v1", "kind": "Namespace"},
        "name": name,
        "namespace": "",
        "object": {
            "apiVersion": "v1",
            "kind": "Namespace",
            "metadata": {"name": name, "labels": labels or {}},
        },
    }


async def _install(driver: LocalDriver, compiled: CompiledTemplate, *constraints: str) -> None:
    await driver.put_module(compiled.module_name, compiled.sources["python"])
    for name in constraints:
        await driver.add_data(
            ADMISSION, ("constraints", compiled.kind, name), _constraint(compiled.kind, name)
        )


@pytest.fixture
def logger() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
async def driver(logger: RecordingLogger) -> AsyncIterator[LocalDriver]:
    instance = LocalDriver(max_workers=2, logger=logger)
    try:
        yield instance
    finally:
        await instance.close()


async def test_put_module_is_idempotent(driver: LocalDriver) -> None:
    compiled = _compile()

    assert await driver.put_module(compiled.module_name, compiled.sources["python"]) is True
    assert await driver.put_module(compiled.module_name, compiled.sources["python"]) is False
    assert driver.module_names() == (compiled.module_name,)

    assert await driver.delete_module(compiled.module_name) is True
    assert await driver.delete_module(compiled.module_name) is False


async def test_put_module_rejects_policy_violations(driver: LocalDriver) -> None:
    source = BROKEN_LIBRARY_MODULE + "\nimport os\n"

    with pytest.raises(ModuleCompileError) as excinfo:
        await driver.put_module("templates/x/Broken", source)

    assert excinfo.value.driver == "local"
    assert any("import" in item.message for item in excinfo.value.diagnostics)
    assert driver.module_names() == ()


async def test_put_module_requires_module_constants(driver: LocalDriver) -> None:
    source = BROKEN_LIBRARY_MODULE.replace('TEMPLATE_KIND = "Broken"', "TEMPLATE_KIND = 3")

    with pytest.raises(ModuleCompileError, match="TEMPLATE_KIND"):
        await driver.put_module("templates/x/Broken", source)


async def test_data_writes_are_idempotent_and_pruned(driver: LocalDriver) -> None:
    path = ("external", "cluster", "v1", "Namespace", "payments")
    obj = {"metadata": {"name": "payments"}}

    assert await driver.add_data(ADMISSION, path, obj) is True
    assert await driver.add_data(ADMISSION, path, dict(obj)) is False
    dump = await driver.dump()
    assert dump["data"][ADMISSION]["external"]["cluster"]["v1"]["Namespace"]["payments"] == obj

    assert await driver.remove_data(ADMISSION, path) is True
    assert await driver.remove_data(ADMISSION, path) is False
    assert (await driver.dump())["data"] == {}


async def test_remove_data_of_unknown_target_is_a_no_op(driver: LocalDriver) -> None:
    assert await driver.remove_data("missing.example.com", ("external",)) is False


async def test_review_query_evaluates_matching_constraints(driver: LocalDriver) -> None:
    compiled = _compile()
    await _install(driver, compiled, "owner-b", "owner-a")

    response = await driver.query(ADMISSION, QueryInput(review=_namespace_review("payments")))

    assert [result.constraint_key.name for result in response.results] == ["owner-a", "owner-b"]
    first = response.results[0]
    assert first.msg == "missing owner"
    assert first.details == {"name": "payments"}
    assert first.enforcement_action == "warn"
    assert first.driver == "local"
    assert response.trace is None
    assert response.stats_entries == ()


async def test_review_query_without_violation_returns_nothing(driver: LocalDriver) -> None:
    compiled = _compile()
    await _install(driver, compiled, "owner")

    response = await driver.query(
        ADMISSION, QueryInput(review=_namespace_review("payments", {"owner": "alice"}))
    )

    assert response.results == ()


async def test_audit_query_walks_cached_inventory(driver: LocalDriver) -> None:
    compiled = _compile()
    await _install(driver, compiled, "owner")
    for name, labels in (("payments", {}), ("billing", {"owner": "bob"})):
        await driver.add_data(
            ADMISSION,
            ("external", "cluster", "v1", "Namespace", name),
            {
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": name, "labels": labels},
            },
        )

    response = await driver.query(
        ADMISSION, QueryInput(audit_scope={"group_version": "v1", "kind": "Namespace"})
    )

    [result] = response.results
    assert result.review is not None
    assert result.review["name"] == "payments"


async def test_library_fault_becomes_error_result(
    driver: LocalDriver, logger: RecordingLogger
) -> None:
    await driver.put_module("templates/admission/Broken", BROKEN_LIBRARY_MODULE)

    response = await driver.query(ADMISSION, QueryInput(review=_namespace_review("payments")))

    [result] = response.results
    assert result.constraint == {"kind": "Broken"}
    assert result.error is not None and result.error.startswith("TypeError")
    assert ("rule_evaluation_failed", "library") in [
        (event, fields.get("stage")) for event, fields in logger.events
    ]


async def test_query_without_bound_modules(driver: LocalDriver) -> None:
    plain = await driver.query(ADMISSION, QueryInput(review=_namespace_review("payments")))
    traced = await driver.query(
        ADMISSION,
        QueryInput(review=_namespace_review("payments")),
        QueryOptions(tracing=True),
    )

    assert plain.results == ()
    assert plain.trace is None
    assert traced.trace == f"target {ADMISSION}: no modules bound"


async def test_trace_and_stats_on_request(driver: LocalDriver) -> None:
    compiled = _compile()
    await _install(driver, compiled, "owner")

    response = await driver.query(
        ADMISSION,
        QueryInput(review=_namespace_review("payments")),
        QueryOptions(tracing=True, stats=True),
    )

    assert response.trace is not None
    assert "constraint RequiredOwner/owner: 1 violation(s)" in response.trace
    [entry] = response.stats_entries
    assert entry.stats_for == "RequiredOwner"
    count = entry.stat(CONSTRAINT_COUNT)
    assert count is not None and count.value == 1
    assert {label.name for label in entry.labels} == {"tracing_enabled", "print_enabled"}


async def test_driver_level_tracing_applies_to_every_query() -> None:
    driver = LocalDriver(tracing=True)
    try:
        await _install(driver, _compile(), "owner")
        response = await driver.query(ADMISSION, QueryInput(review=_namespace_review("payments")))
    finally:
        await driver.close()

    assert driver.tracing is True
    assert response.trace is not None


async def test_print_is_routed_to_logger_only_when_enabled(logger: RecordingLogger) -> None:
    quiet = LocalDriver(logger=logger)
    loud = LocalDriver(print_enabled=True, logger=logger)
    try:
        for instance in (quiet, loud):
            await _install(instance, _compile(), "owner")
        await quiet.query(ADMISSION, QueryInput(review=_namespace_review("payments")))
        assert [event for event, _ in logger.events if event == "rule_print"] == []

        await loud.query(ADMISSION, QueryInput(review=_namespace_review("payments")))
    finally:
        await quiet.close()
        await loud.close()

    printed = [fields["text"] for event, fields in logger.events if event == "rule_print"]
    assert printed == ["checking payments"]


def test_max_workers_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_workers"):
        LocalDriver(max_workers=0)


async def test_timed_out_rule_releases_its_worker(logger: RecordingLogger) -> None:
    driver = LocalDriver(max_workers=1, logger=logger)
    review = QueryInput(review=_namespace_review("payments"))
    try:
        spinning = _compile("Spinning", SPINNING_SOURCE)
        await _install(driver, spinning, "spin")
        for _ in range(3):
            with pytest.raises(TimeoutError):
                await run_with_timeout(driver.query(ADMISSION, review), 0.2)

        await driver.delete_module(spinning.module_name)
        await _install(driver, _compile(), "owner")
        response = await run_with_timeout(driver.query(ADMISSION, review), 5.0)
    finally:
        await driver.close()

    assert [result.msg for result in response.results] == ["missing owner"]


async def test_close_stops_in_flight_rule_evaluation() -> None:
    driver = LocalDriver(tracing=True)
    await _install(driver, _compile("Spinning", SPINNING_SOURCE), "spin")

    pending = asyncio.create_task(
        driver.query(ADMISSION, QueryInput(review=_namespace_review("payments")))
    )
    await asyncio.sleep(0.1)
    await driver.close()
    response = await asyncio.wait_for(pending, timeout=5.0)

    assert response.results == ()
    assert response.trace is not None
    assert response.trace.endswith("evaluation cancelled")
