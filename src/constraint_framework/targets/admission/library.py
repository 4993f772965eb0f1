"""Sandboxed matching library for the admission target.

The text below is rule-module source, not host code: it is concatenated after
the framework preamble (``lookup``, ``get``, ``EMPTY``, ``TEMPLATE_KIND``) and
before the template's own rules. ``{{constraints_root}}`` and ``{{data_root}}``
are replaced by the client when a template is bound.
"""

from __future__ import annotations

from typing import Final

LIBRARY_SOURCE: Final[str] = '''\
"""Admission matching library."""


def target_constraints(data):
    return {{constraints_root}}


def target_data(data):
    return {{data_root}}


def inventory(data):
    return target_data(data)


def wildcard_matches(pattern, value):
    if not is_string(pattern) or not is_string(value):
        return False
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    if pattern.startswith("*"):
        return value.endswith(pattern[1:])
    return value == pattern


def review_group_kind(review):
    kind = get(review, "kind", EMPTY)
    return get(kind, "group", "") or "", get(kind, "kind", "") or ""


def object_metadata(obj):
    return get(obj, "metadata", EMPTY) or EMPTY


def object_labels(obj):
    return get(object_metadata(obj), "labels", EMPTY) or EMPTY


def is_namespace_kind(group, kind):
    return group == "" and kind == "Namespace"


def review_objects(review):
    found = []
    for field in ("object", "oldObject"):
        value = get(review, field)
        if is_object(value) and value:
            found.append(value)
    return found


def kinds_match(match, group, kind):
    selectors = get(match, "kinds") or ()
    if not selectors:
        return True
    for selector in selectors:
        kinds = get(selector, "kinds") or ()
        groups = get(selector, "apiGroups") or ()
        kind_ok = not kinds or "*" in kinds or kind in kinds
        group_ok = not groups or "*" in groups or group in groups
        if kind_ok and group_ok:
            return True
    return False


def selector_matches(selector, labels):
    for key, value in (get(selector, "matchLabels") or EMPTY).items():
        if get(labels, key) != value:
            return False
    for expression in get(selector, "matchExpressions") or ():
        key = get(expression, "key", "")
        operator = get(expression, "operator", "")
        values = get(expression, "values") or ()
        present = key in labels
        if operator == "In" and not (present and labels[key] in values):
            return False
        if operator == "NotIn" and present and labels[key] in values:
            return False
        if operator == "Exists" and not present:
            return False
        if operator == "DoesNotExist" and present:
            return False
    return True


def review_namespace_object(review, namespace, data):
    cached = get(get(review, "_unstable", EMPTY), "namespace")
    if is_object(cached) and cached:
        return cached
    if not namespace:
        return None
    found = lookup(target_data(data), "cluster", "v1", "Namespace", namespace)
    if found:
        return found
    return None


def object_matches(match, review, obj, data):
    group, kind = review_group_kind(review)
    if not kinds_match(match, group, kind):
        return False

    is_namespace = is_namespace_kind(group, kind)
    name = get(object_metadata(obj), "name") or get(review, "name") or ""
    declared = get(review, "namespace") or get(object_metadata(obj), "namespace") or ""
    unstable_namespace = get(get(review, "_unstable", EMPTY), "namespace")
    has_namespace = bool(declared) or bool(unstable_namespace)

    scope = get(match, "scope") or "*"
    if scope == "Cluster" and not (is_namespace or not has_namespace):
        return False
    if scope == "Namespaced" and not (not is_namespace and has_namespace):
        return False

    if is_namespace:
        namespace = name
    elif declared:
        namespace = declared
    else:
        namespace = get(object_metadata(unstable_namespace), "name") or ""

    namespaces = get(match, "namespaces") or ()
    if namespaces and namespace:
        if not any(wildcard_matches(item, namespace) for item in namespaces):
            return False
    excluded = get(match, "excludedNamespaces") or ()
    if excluded and namespace:
        if any(wildcard_matches(item, namespace) for item in excluded):
            return False

    label_selector = get(match, "labelSelector")
    if label_selector is not None and not selector_matches(label_selector, object_labels(obj)):
        return False

    namespace_selector = get(match, "namespaceSelector")
    if namespace_selector is not None:
        if is_namespace:
            if not selector_matches(namespace_selector, object_labels(obj)):
                return False
        elif namespace:
            namespace_object = review_namespace_object(review, namespace, data)
            if namespace_object is None:
                return False
            if not selector_matches(namespace_selector, object_labels(namespace_object)):
                return False

    pattern = get(match, "name")
    if pattern and not wildcard_matches(pattern, name):
        return False
    return True


def constraint_matches(constraint, review, data):
    match = get(get(constraint, "spec", EMPTY), "match") or EMPTY
    return any(object_matches(match, review, obj, data) for obj in review_objects(review))


def matching_constraints(review, data):
    constraints = target_constraints(data)
    for name in sorted(constraints):
        if constraint_matches(constraints[name], review, data):
            yield constraints[name]


def split_group_version(group_version):
    if "/" in group_version:
        parts = group_version.split("/")
        return parts[0], parts[-1]
    return "", group_version


def audit_review(obj, group_version, kind, namespace, data):
    group, version = split_group_version(group_version)
    review = {
        "kind": {"group": group, "version": version, "kind": kind},
        "name": get(object_metadata(obj), "name", ""),
        "object": obj,
    }
    if namespace:
        review["namespace"] = namespace
        namespace_object = lookup(target_data(data), "cluster", "v1", "Namespace", namespace)
        if namespace_object:
            review["_unstable"] = {"namespace": namespace_object}
    return review


def inventory_objects(data, group_version, kind):
    root = target_data(data)
    cluster = lookup(root, "cluster", group_version, kind)
    for name in sorted(cluster):
        yield cluster[name], ""
    namespaces = lookup(root, "namespace")
    for namespace in sorted(namespaces):
        objects = lookup(namespaces, namespace, group_version, kind)
        for name in sorted(objects):
            yield objects[name], namespace


def matching_reviews_and_constraints(data, scope):
    constraints = target_constraints(data)
    if not constraints:
        return
    group_version = get(scope, "group_version", "")
    kind = get(scope, "kind", "")
    for obj, namespace in inventory_objects(data, group_version, kind):
        review = audit_review(obj, group_version, kind, namespace, data)
        for name in sorted(constraints):
            if constraint_matches(constraints[name], review, data):
                yield review, constraints[name]
'''

__all__ = ["LIBRARY_SOURCE"]
