"""Unit tests for loading and applying YAML policy bundles."""

from __future__ import annotations

import io
from pathlib import Path

import pytest

from constraint_framework.bundle import BundleError, apply_bundle, load_bundle, parse_bundle
from constraint_framework.client import Client
from constraint_framework.drivers.local import LocalDriver
from constraint_framework.targets.admission import ADMISSION_TARGET_NAME, AdmissionTarget

BUNDLE = """
apiVersion: templates.gatekeeper.sh/v1beta1
kind: ConstraintTemplate
metadata:
  name: requiredowner
spec:
  crd:
    spec:
      names:
        kind: RequiredOwner
  targets:
    - target: admission.k8s.gatekeeper.sh
      code:
        - engine: python
          source: |
            def violation(review, parameters, inventory):
                labels = get(lookup(review, "object", "metadata"), "labels", EMPTY)
                if "owner" not in (labels or EMPTY):
                    yield {"msg": "owner label required"}
---
apiVersion: constraints.gatekeeper.sh/v1beta1
kind: RequiredOwner
metadata:
  name: pods-need-owner
spec:
  match:
    kinds:
      - apiGroups: [""]
        kinds: ["Pod"]
---
---
apiVersion: v1
kind: Namespace
metadata:
  name: payments
"""


def test_parse_bundle_sorts_documents_by_shape() -> None:
    bundle = parse_bundle(BUNDLE)

    assert [template.kind for template in bundle.templates] == ["RequiredOwner"]
    assert [constraint.name for constraint in bundle.constraints] == ["pods-need-owner"]
    assert [item["kind"] for item in bundle.data] == ["Namespace"]
    assert len(bundle) == 3


def test_parse_bundle_accepts_streams() -> None:
    bundle = parse_bundle(io.StringIO(BUNDLE), source="stream.yaml")

    assert len(bundle) == 3


@pytest.mark.parametrize(
    ("text", "fragment"),
    [
        ("key: [unterminated\n", "invalid YAML"),
        ("- just\n- a list\n", "document 0 is not a mapping"),
        ("---\nkind: ConstraintTemplate\nmetadata: {}\n", "document 0: ConstraintTemplate"),
        (
            "apiVersion: constraints.gatekeeper.sh/v1\nkind: K\nmetadata: {}\n",
            "Constraint.metadata.name",
        ),
    ],
)
def test_parse_bundle_reports_document_position(text: str, fragment: str) -> None:
    with pytest.raises(BundleError, match=fragment) as excinfo:
        parse_bundle(text, source="policy.yaml")

    assert str(excinfo.value).startswith("policy.yaml: ")


def test_load_bundle_reads_files(tmp_path: Path) -> None:
    path = tmp_path / "bundle.yaml"
    path.write_text(BUNDLE, encoding="utf-8")

    assert len(load_bundle(path)) == 3
    with pytest.raises(BundleError, match="unable to read bundle"):
        load_bundle(tmp_path / "missing.yaml")


async def test_apply_bundle_registers_in_dependency_order() -> None:
    client = Client(targets=[AdmissionTarget()], drivers=[LocalDriver()])
    bundle = parse_bundle(BUNDLE)
    try:
        report = await apply_bundle(client, bundle)
        again = await apply_bundle(client, bundle)

        assert (report.templates_changed, report.constraints_changed, report.data_changed) == (
            1,
            1,
            1,
        )
        assert (again.templates_changed, again.constraints_changed, again.data_changed) == (
            0,
            0,
            0,
        )

        responses = await client.review(
            {
                "apiVersion": "v1",
                "kind": "Pod",
                "metadata": {"name": "api", "namespace": "payments"},
            }
        )
        assert [result.msg for result in responses.results()] == ["owner label required"]
        assert responses.handled == {ADMISSION_TARGET_NAME: True}
    finally:
        await client.close()
