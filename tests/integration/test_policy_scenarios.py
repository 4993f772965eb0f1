"""
constraint-framework — end-to-end policy scenarios.

Coverage:
- Required-label template reviewed against namespaces with and without the label.
- Unique ingress host audit over cached inventory.
- Bounded review time against a driver that never answers.
- A runaway rule on the local driver times out without starving later reviews.
- Reviews racing an in-flight constraint registration.
- Template removal leaves no rule module or constraint data behind.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from typing import Any

import pytest

from constraint_framework.client import Client
from constraint_framework.drivers.base import Driver, QueryInput, QueryOptions, QueryResponse
from constraint_framework.drivers.local import LocalDriver
from constraint_framework.errors import DriverTimeoutError
from constraint_framework.targets.admission import ADMISSION_TARGET_NAME, AdmissionTarget

REQUIRED_LABELS_SOURCE = '''
def violation(review, parameters, inventory):
    obj = get(review, "object", EMPTY)
    provided = get(get(obj, "metadata", EMPTY), "labels", EMPTY) or EMPTY
    for entry in get(parameters, "labels", ()):
        key = get(entry, "key")
        if key not in provided:
            yield {"msg": f"you must provide labels: {key}", "details": {"missing_labels": [key]}}
            continue
        pattern = get(entry, "allowedRegex", "")
        if pattern and not re_fullmatch(pattern, provided[key]):
            yield {
                "msg": f"label {key} has value {provided[key]} not matching {pattern}",
                "details": {"label": key},
            }
'''

REQUIRED_LABELS_SCHEMA = {
    "type": "object",
    "properties": {
        "labels": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "key": {"type": "string"},
                    "allowedRegex": {"type": "string"},
                },
            },
        }
    },
}

UNIQUE_HOST_SOURCE = '''
def hosts_of(obj):
    found = []
    for rule in get(get(obj, "spec", EMPTY), "rules", ()):
        host = get(rule, "host")
        if host:
            found.append(host)
    return found


def violation(review, parameters, inventory):
    obj = get(review, "object", EMPTY)
    metadata = get(obj, "metadata", EMPTY)
    identity = (get(metadata, "namespace", ""), get(metadata, "name", ""))
    mine = hosts_of(obj)
    namespaces = get(inventory, "namespace", EMPTY)
    for other_namespace in sorted(namespaces):
        ingresses = lookup(namespaces, other_namespace, "networking.k8s.io/v1", "Ingress")
        for other_name in sorted(ingresses):
            if (other_namespace, other_name) >= identity:
                continue
            for host in hosts_of(ingresses[other_name]):
                if host in mine:
                    yield {
                        "msg": f"ingress host {host} conflicts with {other_namespace}/{other_name}",
                        "details": {"host": host},
                    }
'''

SPINNING_SOURCE = '''
def violation(review, parameters, inventory):
    total = 0
    for outer in range(1000000):
        for inner in range(1000000):
            total = total + 1
    yield {"msg": f"counted {total}"}
'''


def _template(kind: str, source: str, schema: dict[str, Any] | None = None) -> dict[str, Any]:
    crd_spec: dict[str, Any] = {"names": {"kind": kind}}
    if schema is not None:
        crd_spec["validation"] = {"openAPIV3Schema": schema}
    return {
        "apiVersion": "templates.gatekeeper.sh/v1",
        "kind": "ConstraintTemplate",
        "metadata": {"name": kind.lower()},
        "spec": {
            "crd": {"spec": crd_spec},
            "targets": [
                {"target": ADMISSION_TARGET_NAME, "code": [{"engine": "python", "source": source}]}
            ],
        },
    }


def _constraint(
    kind: str, name: str, *, match: dict[str, Any], parameters: dict[str, Any]
) -> dict[str, Any]:
    return {
        "apiVersion": "constraints.gatekeeper.sh/v1beta1",
        "kind": kind,
        "metadata": {"name": name},
        "spec": {"match": match, "parameters": parameters},
    }


def _namespace(name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if labels is not None:
        metadata["labels"] = labels
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": metadata}


def _ingress(namespace: str, name: str, host: str) -> dict[str, Any]:
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"rules": [{"host": host}]},
    }


NAMESPACE_MATCH = {"kinds": [{"apiGroups": [""], "kinds": ["Namespace"]}]}
OWNER_PARAMETERS = {"labels": [{"key": "owner", "allowedRegex": "^[a-z]+$"}]}


@pytest.fixture
async def client() -> AsyncIterator[Client]:
    instance = Client(targets=[AdmissionTarget()], drivers=[LocalDriver()])
    try:
        yield instance
    finally:
        await instance.close()


async def _register_required_labels(client: Client) -> None:
    await client.add_template(
        _template("K8sRequiredLabels", REQUIRED_LABELS_SOURCE, REQUIRED_LABELS_SCHEMA)
    )
    await client.add_constraint(
        _constraint(
            "K8sRequiredLabels",
            "ns-must-have-owner",
            match=NAMESPACE_MATCH,
            parameters=OWNER_PARAMETERS,
        )
    )


async def test_review_reports_missing_required_label(client: Client) -> None:
    await _register_required_labels(client)

    responses = await client.review(_namespace("payments"))

    results = responses.results()
    assert len(results) == 1
    assert "owner" in results[0].msg
    assert results[0].error is None
    assert results[0].details == {"missing_labels": ["owner"]}
    assert results[0].resource is not None
    assert results[0].resource["kind"] == "Namespace"
    assert responses.handled == {ADMISSION_TARGET_NAME: True}


async def test_review_accepts_namespace_with_valid_owner(client: Client) -> None:
    await _register_required_labels(client)

    responses = await client.review(_namespace("payments", {"owner": "alice"}))

    assert responses.results() == []
    assert responses.handled_count() == 1


async def test_review_reports_owner_not_matching_regex(client: Client) -> None:
    await _register_required_labels(client)

    responses = await client.review(_namespace("payments", {"owner": "Alice-1"}))

    [result] = responses.results()
    assert "Alice-1" in result.msg
    assert "^[a-z]+$" in result.msg


async def test_audit_flags_one_violation_per_conflicting_host_pair(client: Client) -> None:
    await client.add_template(_template("K8sUniqueIngressHost", UNIQUE_HOST_SOURCE))
    await client.add_constraint(
        _constraint(
            "K8sUniqueIngressHost",
            "unique-ingress-host",
            match={"kinds": [{"apiGroups": ["networking.k8s.io"], "kinds": ["Ingress"]}]},
            parameters={},
        )
    )
    await client.add_data(_ingress("team-b", "shop", "shop.example.com"))
    await client.add_data(_ingress("team-a", "storefront", "shop.example.com"))
    await client.add_data(_ingress("team-a", "blog", "blog.example.com"))

    first = await client.audit()
    second = await client.audit()

    violations = [result for result in first.results() if not result.is_error]
    assert len(violations) == 1
    assert violations[0].details == {"host": "shop.example.com"}
    assert violations[0].resource is not None
    assert violations[0].resource["metadata"]["namespace"] == "team-b"
    assert sorted(result.msg for result in first.results()) == sorted(
        result.msg for result in second.results()
    )


class _StalledDriver(Driver):
    name = "stalled"
    language = "python"

    async def put_module(self, name: str, source: str) -> bool:
        return True

    async def delete_module(self, name: str) -> bool:
        return True

    async def add_data(self, target: str, path: Sequence[str], obj: object) -> bool:
        return True

    async def remove_data(self, target: str, path: Sequence[str]) -> bool:
        return True

    async def query(
        self, target: str, query_input: QueryInput, options: QueryOptions | None = None
    ) -> QueryResponse:
        await asyncio.Event().wait()
        return QueryResponse()

    async def dump(self) -> dict[str, Any]:
        return {}


async def test_review_against_unresponsive_driver_fails_in_bounded_time() -> None:
    stalled = Client(
        targets=[AdmissionTarget()], drivers=[_StalledDriver()], query_timeout_seconds=0.01
    )
    await _register_required_labels(stalled)

    with pytest.raises(DriverTimeoutError) as excinfo:
        await asyncio.wait_for(stalled.review(_namespace("payments")), timeout=2.0)

    assert excinfo.value.driver == "stalled"
    assert excinfo.value.retryable is True



async def test_runaway_rule_does_not_starve_later_reviews() -> None:
    spinning = Client(
        targets=[AdmissionTarget()],
        drivers=[LocalDriver(max_workers=2)],
        query_timeout_seconds=0.2,
    )
    try:
        await spinning.add_template(_template("K8sSpinning", SPINNING_SOURCE))
        await spinning.add_constraint(
            _constraint("K8sSpinning", "spin", match=NAMESPACE_MATCH, parameters={})
        )
        for _ in range(3):
            with pytest.raises(DriverTimeoutError):
                await asyncio.wait_for(spinning.review(_namespace("payments")), timeout=5.0)

        await spinning.remove_template("K8sSpinning")
        await _register_required_labels(spinning)
        responses = await asyncio.wait_for(spinning.review(_namespace("payments")), timeout=5.0)
    finally:
        await spinning.close()

    [result] = responses.results()
    assert "owner" in result.msg


class _GatedDriver(LocalDriver):
    """Local driver that parks constraint writes until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def add_data(self, target: str, path: Sequence[str], obj: object) -> bool:
        if path[0] == "constraints":
            self.entered.set()
            await self.release.wait()
        return await super().add_data(target, path, obj)


async def test_reviews_never_observe_a_partially_registered_constraint() -> None:
    driver = _GatedDriver()
    gated = Client(targets=[AdmissionTarget()], drivers=[driver])
    try:
        await gated.add_template(
            _template("K8sRequiredLabels", REQUIRED_LABELS_SOURCE, REQUIRED_LABELS_SCHEMA)
        )
        registration = asyncio.create_task(
            gated.add_constraint(
                _constraint(
                    "K8sRequiredLabels",
                    "ns-must-have-owner",
                    match=NAMESPACE_MATCH,
                    parameters=OWNER_PARAMETERS,
                )
            )
        )
        await driver.entered.wait()

        during = await asyncio.gather(
            gated.review(_namespace("payments")), gated.review(_namespace("billing"))
        )
        assert gated.get_constraint("K8sRequiredLabels", "ns-must-have-owner") is None
        for responses in during:
            assert responses.results() == []

        driver.release.set()
        assert await registration is True

        after = await asyncio.gather(
            gated.review(_namespace("payments")), gated.review(_namespace("billing"))
        )
        for responses in after:
            [result] = responses.results()
            assert result.error is None
            assert result.constraint_key.name == "ns-must-have-owner"
    finally:
        await gated.close()


async def test_removed_template_is_no_longer_evaluated(client: Client) -> None:
    before = await client.dump()
    await _register_required_labels(client)

    removed = await client.remove_template("K8sRequiredLabels")
    responses = await client.review(_namespace("payments"))
    after = await client.dump()

    assert [str(key) for key in removed] == ["K8sRequiredLabels/ns-must-have-owner"]
    assert responses.results() == []
    assert after["drivers"] == before["drivers"]
    assert after["templates"] == {}
    assert after["constraints"] == {}
