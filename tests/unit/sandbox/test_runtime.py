"""
Unit tests for the sandbox runtime and its static policy.

Coverage:
- freeze/thaw conversion and read-only inputs.
- Restricted builtins and host helpers visible to rule modules.
- Segment assembly and located diagnostics.
- Violation record normalization.
- Rules cannot carry state between calls and stop once their evaluation is abandoned.
"""

from __future__ import annotations

import sys
from types import MappingProxyType

import pytest

from constraint_framework.sandbox import (
    SourceSegment,
    assemble_module,
    check_module,
    check_source,
    freeze,
    load_module,
    render_preamble,
    thaw,
    top_level_names,
)
from constraint_framework.sandbox.runtime import (
    MAX_RANGE_LENGTH,
    EvaluationInterrupted,
    interruptible,
    iter_records,
    normalize_record,
    re_findall,
    re_fullmatch,
    re_match,
)

PREAMBLE = render_preamble(module_name="templates/t/K", target="t", kind="K")

SPIN_MODULE = (
    "def spin():\n"
    "    total = 0\n"
    "    for outer in range(300):\n"
    "        for inner in range(300):\n"
    "            try:\n"
    "                total = total + 1\n"
    "            except Exception:\n"
    "                total = 0\n"
    "    return total\n"
)


def test_freeze_produces_read_only_views_and_thaw_reverses_it() -> None:
    value = {"a": [1, {"b": 2}], "c": {"d"}}

    frozen = freeze(value)

    assert isinstance(frozen, MappingProxyType)
    assert frozen["a"] == (1, MappingProxyType({"b": 2}))
    with pytest.raises(TypeError):
        frozen["a"] = 1  # type: ignore[index]
    assert thaw(frozen) == {"a": [1, {"b": 2}], "c": ["d"]}


def test_preamble_helpers_walk_missing_paths() -> None:
    module = load_module("templates/t/K", PREAMBLE)
    lookup = module.function("lookup")
    get = module.function("get")
    assert lookup is not None and get is not None

    root = freeze({"a": {"b": {"c": 1}}})
    assert lookup(root, "a", "b", "c") == 1
    assert lookup(root, "a", "missing") == {}
    assert get("not a mapping", "k", "fallback") == "fallback"
    assert module.constant("TARGET") == "t"
    assert module.constant("TEMPLATE_KIND") == "K"


def test_module_constants_are_frozen_after_load() -> None:
    module = load_module("m", "ITEMS = [1, 2]\nTABLE = {'a': [1]}\n")

    assert module.constant("ITEMS") == (1, 2)
    assert isinstance(module.constant("TABLE"), MappingProxyType)


def test_restricted_builtins_hide_dangerous_names() -> None:
    module = load_module("m", "def reach():\n    return open('/etc/passwd')\n")
    reach = module.function("reach")
    assert reach is not None

    with pytest.raises(NameError):
        reach()


def test_print_goes_to_sink_only_when_given() -> None:
    printed: list[str] = []
    source = "def speak():\n    print('hello', 3)\n    return 1\n"

    silent = load_module("m", source).function("speak")
    loud = load_module("m", source, print_sink=printed.append).function("speak")
    assert silent is not None and loud is not None

    assert silent() == 1
    assert loud() == 1
    assert printed == ["hello 3"]


def test_regex_helpers_ignore_non_strings() -> None:
    assert re_match("b", "abc") is True
    assert re_fullmatch("b", "abc") is False
    assert re_fullmatch("[a-c]+", "abc") is True
    assert re_findall(r"\d", "a1b2") == ("1", "2")
    assert re_match("a", 5) is False
    assert re_findall("a", None) == ()


def test_assemble_module_tracks_segment_spans() -> None:
    assembled = assemble_module(
        (
            SourceSegment(name="first", text="a = 1\nb = 2"),
            SourceSegment(name="second", text="c = 3\n"),
        )
    )

    assert assembled.source == "a = 1\nb = 2\nc = 3\n"
    assert assembled.locate(2) == ("first", 2)
    assert assembled.locate(3) == ("second", 1)


def test_restricted_segment_may_not_rebind_framework_names() -> None:
    assembled = assemble_module(
        (
            SourceSegment(name="library", text="def helper(x):\n    return x\n"),
            SourceSegment(
                name="rules",
                text="helper = 1\n",
                restricted=True,
                required_functions={"violation": 3},
            ),
        )
    )

    messages = [(item.segment, item.message) for item in check_module(assembled)]

    assert ("rules", "name 'helper' is reserved by the framework") in messages
    assert ("rules", "required function 'violation' is not defined") in messages


def test_check_source_flags_forbidden_constructs() -> None:
    source = (
        "class Thing:\n"
        "    pass\n"
        "def f():\n"
        "    global x\n"
        "    with ctx():\n"
        "        return '{}'.format(1)\n"
    )

    messages = [item.message for item in check_source(source)]

    assert any("top-level ClassDef" in message for message in messages)
    assert "class definitions are not allowed" in messages
    assert "global and nonlocal statements are not allowed" in messages
    assert "with statements are not allowed" in messages
    assert "access to attribute 'format' is not allowed" in messages


def test_check_source_orders_diagnostics() -> None:
    diagnostics = check_source("def f():\n    eval('1')\n    exec('2')\n")

    assert [item.line for item in diagnostics] == [2, 3]


def test_top_level_names() -> None:
    assert top_level_names("A = 1\nB: int = 2\ndef f():\n    C = 3\n") == {"A", "B", "f"}
    assert top_level_names("def (") == frozenset()


def test_iter_records_normalizes_return_shapes() -> None:
    assert list(iter_records(None)) == []
    assert list(iter_records({"msg": "x"})) == [{"msg": "x"}]
    assert list(iter_records(iter([{"msg": "y"}]))) == [{"msg": "y"}]
    with pytest.raises(TypeError):
        iter_records("text")


def test_normalize_record_validates_fields() -> None:
    assert normalize_record({"msg": "m"}) == ("m", None)
    assert normalize_record(freeze({"msg": "m", "details": {"a": [1]}})) == ("m", {"a": [1]})
    with pytest.raises(TypeError, match="msg"):
        normalize_record({"msg": 3})
    with pytest.raises(TypeError, match="details"):
        normalize_record({"msg": "m", "details": [1]})
    with pytest.raises(TypeError, match="mapping"):
        normalize_record(["msg"])


def test_check_source_rejects_state_carrying_constructs() -> None:
    source = (
        "def bump(acc=[], *, seen={}):\n"
        "    acc.append(1)\n"
        "    return len(acc)\n"
        "def tag(value, limit=-1, label='x', fallback=None):\n"
        "    tag.calls = 1\n"
        "    try:\n"
        "        return value\n"
        "    except:\n"
        "        return None\n"
        "    finally:\n"
        "        pass\n"
        "def pick(items):\n"
        "    return sorted(items, key=lambda item, cache=[]: item)\n"
    )

    diagnostics = [(item.line, item.message) for item in check_source(source)]

    defaults = [line for line, message in diagnostics if message.startswith("default argument")]
    assert defaults == [1, 1, 13]
    assert (5, "assignment to attribute 'calls' is not allowed") in diagnostics
    assert (6, "finally clauses are not allowed") in diagnostics
    assert (8, "bare except clauses are not allowed") in diagnostics
    assert all(line != 4 for line, _ in diagnostics)


def test_module_level_iterators_are_rejected_at_load() -> None:
    with pytest.raises(TypeError, match="'PENDING' must be plain data"):
        load_module("m", "PENDING = map(str, (1, 2))\n")


def test_range_is_capped_for_rule_code() -> None:
    span = load_module("m", "def span(n):\n    return len(range(n))\n").function("span")
    assert span is not None

    assert span(MAX_RANGE_LENGTH) == MAX_RANGE_LENGTH
    with pytest.raises(ValueError, match="range exceeds"):
        span(MAX_RANGE_LENGTH + 1)
    with pytest.raises(ValueError, match="range exceeds"):
        span(10**30)


def test_interruptible_stops_rule_code_and_restores_tracing() -> None:
    spin = load_module("m", SPIN_MODULE).function("spin")
    assert spin is not None
    checks: list[int] = []

    def should_stop() -> bool:
        checks.append(1)
        return len(checks) > 50

    before = sys.gettrace()
    with pytest.raises(EvaluationInterrupted):
        with interruptible(should_stop):
            spin()

    assert len(checks) == 51
    assert sys.gettrace() is before
    with interruptible(lambda: False):
        assert spin() == 90_000
