"""Property tests: data idempotence, match/violation equivalence and audit determinism."""

from __future__ import annotations

import asyncio
from typing import Any

from hypothesis import given, settings
from hypothesis import strategies as st

from constraint_framework.client import Client
from constraint_framework.drivers.local import LocalDriver
from constraint_framework.targets.admission import ADMISSION_TARGET_NAME, AdmissionTarget

LABEL_KEYS = ("owner", "team", "tier", "cost-center")

REQUIRED_LABEL_SOURCE = '''
def violation(review, parameters, inventory):
    labels = get(get(get(review, "object", EMPTY), "metadata", EMPTY), "labels", EMPTY) or EMPTY
    key = get(parameters, "key", "")
    if key not in labels:
        yield {"msg": f"missing label {key}"}
'''

_names = st.from_regex(r"[a-z][a-z0-9]{0,8}", fullmatch=True)
_labels = st.dictionaries(st.sampled_from(LABEL_KEYS), _names, max_size=len(LABEL_KEYS))


def _template() -> dict[str, Any]:
    return {
        "kind": "ConstraintTemplate",
        "metadata": {"name": "requiredlabel"},
        "spec": {
            "crd": {"spec": {"names": {"kind": "RequiredLabel"}}},
            "targets": [{"target": ADMISSION_TARGET_NAME, "source": REQUIRED_LABEL_SOURCE}],
        },
    }


def _constraint(key: str, kinds: list[str]) -> dict[str, Any]:
    return {
        "apiVersion": "constraints.gatekeeper.sh/v1",
        "kind": "RequiredLabel",
        "metadata": {"name": "required-label"},
        "spec": {
            "match": {"kinds": [{"apiGroups": [""], "kinds": kinds}]},
            "parameters": {"key": key},
        },
    }


def _object(kind: str, name: str, labels: dict[str, str], namespace: str = "") -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "labels": labels}
    if namespace:
        metadata["namespace"] = namespace
    return {"apiVersion": "v1", "kind": kind, "metadata": metadata}


@settings(max_examples=25, deadline=None)
@given(name=_names, namespace=_names, labels=_labels)
def test_add_data_twice_matches_a_single_add(
    name: str, namespace: str, labels: dict[str, str]
) -> None:
    async def scenario() -> tuple[bool, bool, dict[str, Any], dict[str, Any]]:
        client = Client(targets=[AdmissionTarget()], drivers=[LocalDriver()])
        try:
            obj = _object("ConfigMap", name, labels, namespace)
            first = await client.add_data(obj)
            once = await client.dump()
            second = await client.add_data(obj)
            twice = await client.dump()
            return first, second, once, twice
        finally:
            await client.close()

    first, second, once, twice = asyncio.run(scenario())

    assert first is True
    assert second is False
    assert once == twice


@settings(max_examples=25, deadline=None)
@given(
    required=st.sampled_from(LABEL_KEYS),
    labels=_labels,
    reviewed_kind=st.sampled_from(("Namespace", "ConfigMap")),
    matched_kinds=st.lists(
        st.sampled_from(("Namespace", "ConfigMap", "Secret")), min_size=1, unique=True
    ),
)
def test_violation_iff_match_and_rule_fires(
    required: str, labels: dict[str, str], reviewed_kind: str, matched_kinds: list[str]
) -> None:
    async def scenario() -> int:
        client = Client(targets=[AdmissionTarget()], drivers=[LocalDriver()])
        try:
            await client.add_template(_template())
            await client.add_constraint(_constraint(required, matched_kinds))
            responses = await client.review(_object(reviewed_kind, "subject", labels))
            assert responses.errors() == []
            return len(responses.results())
        finally:
            await client.close()

    violations = asyncio.run(scenario())

    expected = reviewed_kind in matched_kinds and required not in labels
    assert violations == (1 if expected else 0)


@settings(max_examples=15, deadline=None)
@given(
    inventory=st.lists(
        st.tuples(_names, _names, _labels), min_size=1, max_size=6, unique_by=lambda item: item[:2]
    )
)
def test_audit_is_deterministic_without_mutation(
    inventory: list[tuple[str, str, dict[str, str]]],
) -> None:
    async def scenario() -> tuple[list[str], list[str]]:
        client = Client(targets=[AdmissionTarget()], drivers=[LocalDriver()])
        try:
            await client.add_template(_template())
            await client.add_constraint(_constraint("owner", ["ConfigMap"]))
            for namespace, name, labels in inventory:
                await client.add_data(_object("ConfigMap", name, labels, namespace))
            first = await client.audit()
            second = await client.audit()
            return (
                sorted(f"{r.resource}{r.msg}" for r in first.results()),
                sorted(f"{r.resource}{r.msg}" for r in second.results()),
            )
        finally:
            await client.close()

    first, second = asyncio.run(scenario())

    assert first == second
    assert len(first) == sum(1 for _, _, labels in inventory if "owner" not in labels)
