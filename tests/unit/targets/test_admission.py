"""
Unit tests for the admission target.

Coverage:
- Data classification into cluster/namespace inventory paths and wipe markers.
- Review classification of admission reviews, requests, augmented inputs and bare objects.
- Violation enrichment and selector validation.
- Match semantics (kinds, namespaces, scope, selectors, name) evaluated end to end.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import pytest

from constraint_framework.client import Client
from constraint_framework.domain.models import Constraint
from constraint_framework.domain.results import Result
from constraint_framework.drivers.local import LocalDriver
from constraint_framework.errors import (
    ConstraintValidationError,
    InvalidReviewError,
    InventoryError,
)
from constraint_framework.targets.admission import (
    ADMISSION_TARGET_NAME,
    AdmissionTarget,
    AugmentedObject,
    AugmentedReview,
    WipeData,
)

ALWAYS_SOURCE = '''
def violation(review, parameters, inventory):
    yield {"msg": "matched"}
'''


def _pod(namespace: str, name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "namespace": namespace, "labels": labels or {}},
    }


def _namespace(name: str, labels: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": name, "labels": labels or {}},
    }


def _result(review: dict[str, Any] | None) -> Result:
    return Result(
        target=ADMISSION_TARGET_NAME,
        msg="denied",
        constraint={"kind": "Check", "metadata": {"name": "check"}},
        review=review,
    )


@pytest.fixture
def target() -> AdmissionTarget:
    return AdmissionTarget()


# --- data ----------------------------------------------------------------------


def test_process_data_paths(target: AdmissionTarget) -> None:
    namespaced = target.process_data(_pod("payments", "api"))
    cluster = target.process_data(_namespace("payments"))

    assert namespaced.handled is True
    assert namespaced.path == ("namespace", "payments", "v1", "Pod", "api")
    assert cluster.path == ("cluster", "v1", "Namespace", "payments")
    assert cluster.data == _namespace("payments")


def test_process_data_wipe_and_unhandled(target: AdmissionTarget) -> None:
    wipe = target.process_data(WipeData())

    assert wipe.handled is True
    assert wipe.path == ()
    assert target.process_data("text").handled is False


@pytest.mark.parametrize(
    ("obj", "fragment"),
    [
        ({"apiVersion": "v1", "kind": "Pod", "metadata": {}}, "no name"),
        ({"kind": "Pod", "metadata": {"name": "api"}}, "no version"),
        ({"apiVersion": "v1", "metadata": {"name": "api"}}, "no kind"),
    ],
)
def test_process_data_rejects_incomplete_objects(
    target: AdmissionTarget, obj: dict[str, Any], fragment: str
) -> None:
    with pytest.raises(InventoryError, match=fragment):
        target.process_data(obj)


# --- reviews -------------------------------------------------------------------


def test_handle_review_of_bare_object(target: AdmissionTarget) -> None:
    classification = target.handle_review(_pod("payments", "api"))

    assert classification.handled is True
    assert classification.review["kind"] == {"group": "", "version": "v1", "kind": "Pod"}
    assert classification.review["name"] == "api"
    assert classification.review["namespace"] == "payments"


def test_handle_review_of_admission_review(target: AdmissionTarget) -> None:
    request = {
        "kind": {"group": "apps", "version": "v1", "kind": "Deployment"},
        "operation": "CREATE",
        "object": {"metadata": {"name": "web"}},
    }

    wrapped = target.handle_review({"kind": "AdmissionReview", "request": request})
    bare = target.handle_review(request)

    assert wrapped.review == bare.review
    assert wrapped.review["operation"] == "CREATE"


def test_handle_review_defaults_missing_group(target: AdmissionTarget) -> None:
    classification = target.handle_review(
        {"kind": {"version": "v1", "kind": "Pod"}, "object": {"metadata": {"name": "x"}}}
    )

    assert classification.review["kind"]["group"] == ""


def test_handle_review_rejects_malformed_request(target: AdmissionTarget) -> None:
    with pytest.raises(InvalidReviewError) as excinfo:
        target.handle_review({"kind": {"group": "", "kind": "Pod"}, "object": "nope"})

    assert set(excinfo.value.errors) == {"kind.version", "object"}


def test_handle_review_of_augmented_inputs(target: AdmissionTarget) -> None:
    namespace = _namespace("payments", {"tier": "gold"})
    augmented = target.handle_review(
        AugmentedObject(object=_pod("", "api"), namespace=namespace, source="Original")
    )

    assert augmented.review["namespace"] == "payments"
    assert augmented.review["_unstable"] == {"namespace": namespace, "source": "Original"}

    request = {"kind": {"group": "", "version": "v1", "kind": "Pod"}, "object": _pod("x", "y")}
    reviewed = target.handle_review(AugmentedReview(admission_request=request))
    assert "_unstable" not in reviewed.review


def test_handle_review_rejects_unknown_source(target: AdmissionTarget) -> None:
    with pytest.raises(InvalidReviewError, match="source"):
        target.handle_review(AugmentedObject(object=_pod("x", "y"), source="Sideways"))


def test_handle_review_ignores_foreign_shapes(target: AdmissionTarget) -> None:
    assert target.handle_review(42).handled is False
    assert target.handle_review({"echo": "hi"}).handled is False


# --- violations ----------------------------------------------------------------


def test_handle_violation_rebuilds_resource(target: AdmissionTarget) -> None:
    review = {
        "kind": {"group": "apps", "version": "v1", "kind": "Deployment"},
        "object": None,
        "oldObject": {"metadata": {"name": "web"}},
    }

    enriched = target.handle_violation(_result(review))

    assert enriched.resource == {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "web"},
    }


@pytest.mark.parametrize(
    ("review", "fragment"),
    [
        (None, "could not read review"),
        ({"object": {}}, "review\\[kind\\] does not exist"),
        ({"kind": {"version": "v1", "kind": "Pod"}, "object": {}}, "\\[group\\] does not exist"),
        ({"kind": {"group": "", "version": "v1", "kind": "Pod"}}, "no object or oldObject"),
    ],
)
def test_handle_violation_rejects_unusable_reviews(
    target: AdmissionTarget, review: dict[str, Any] | None, fragment: str
) -> None:
    with pytest.raises(InvalidReviewError, match=fragment):
        target.handle_violation(_result(review))


def test_validate_constraint_checks_selectors(target: AdmissionTarget) -> None:
    valid = Constraint(
        kind="Check",
        name="ok",
        match={"labelSelector": {"matchExpressions": [{"key": "tier", "operator": "Exists"}]}},
    )
    target.validate_constraint(valid)

    invalid = Constraint(
        kind="Check",
        name="bad",
        match={
            "namespaceSelector": {
                "matchLabels": {"bad key!": "x"},
                "matchExpressions": [{"key": "tier", "operator": "In", "values": []}],
            }
        },
    )
    with pytest.raises(ConstraintValidationError) as excinfo:
        target.validate_constraint(invalid)

    assert len(excinfo.value.issues) == 2
    assert all(issue.startswith("spec.match.namespaceSelector") for issue in excinfo.value.issues)


# --- match semantics -----------------------------------------------------------


@pytest.fixture
async def client() -> AsyncIterator[Client]:
    instance = Client(targets=[AdmissionTarget()], drivers=[LocalDriver()])
    await instance.add_template(
        {
            "kind": "ConstraintTemplate",
            "metadata": {"name": "always"},
            "spec": {
                "crd": {"spec": {"names": {"kind": "Always"}}},
                "targets": [{"target": ADMISSION_TARGET_NAME, "source": ALWAYS_SOURCE}],
            },
        }
    )
    try:
        yield instance
    finally:
        await instance.close()


async def _matches(client: Client, match: dict[str, Any], obj: object) -> bool:
    await client.add_constraint(
        {
            "apiVersion": "constraints.gatekeeper.sh/v1beta1",
            "kind": "Always",
            "metadata": {"name": "probe"},
            "spec": {"match": match},
        }
    )
    responses = await client.review(obj)
    assert responses.errors() == []
    return len(responses.results()) == 1


@pytest.mark.parametrize(
    ("match", "obj", "expected"),
    [
        ({}, _pod("payments", "api"), True),
        ({"kinds": [{"apiGroups": [""], "kinds": ["Pod"]}]}, _pod("payments", "api"), True),
        ({"kinds": [{"apiGroups": ["apps"], "kinds": ["*"]}]}, _pod("payments", "api"), False),
        ({"namespaces": ["pay*"]}, _pod("payments", "api"), True),
        ({"namespaces": ["billing"]}, _pod("payments", "api"), False),
        ({"excludedNamespaces": ["*ments"]}, _pod("payments", "api"), False),
        ({"scope": "Cluster"}, _pod("payments", "api"), False),
        ({"scope": "Cluster"}, _namespace("payments"), True),
        ({"scope": "Namespaced"}, _namespace("payments"), False),
        ({"labelSelector": {"matchLabels": {"app": "api"}}}, _pod("p", "a", {"app": "api"}), True),
        ({"labelSelector": {"matchLabels": {"app": "api"}}}, _pod("p", "a", {"app": "web"}), False),
        ({"name": "api-*"}, _pod("payments", "api-1"), True),
        ({"name": "api-*"}, _pod("payments", "web-1"), False),
    ],
)
async def test_match_criteria(
    client: Client, match: dict[str, Any], obj: dict[str, Any], expected: bool
) -> None:
    assert await _matches(client, match, obj) is expected


async def test_namespace_selector_uses_cached_namespace(client: Client) -> None:
    selector = {"namespaceSelector": {"matchLabels": {"tier": "gold"}}}

    assert await _matches(client, selector, _pod("payments", "api")) is False

    await client.add_data(_namespace("payments", {"tier": "gold"}))
    assert await _matches(client, selector, _pod("payments", "api")) is True


async def test_namespace_selector_prefers_augmented_namespace(client: Client) -> None:
    selector = {"namespaceSelector": {"matchLabels": {"tier": "gold"}}}
    augmented = AugmentedObject(
        object=_pod("payments", "api"), namespace=_namespace("payments", {"tier": "gold"})
    )

    assert await _matches(client, selector, augmented) is True
