"""
constraint-framework — sandboxed rule module runtime

File: src/constraint_framework/sandbox/runtime.py

Purpose
- Execute policy-checked rule modules with a restricted builtin set and read-only inputs.

What should be included in this file
- The builtin allowlist and host-provided helper functions visible to rule code.
- ``freeze``/``thaw`` conversion between plain JSON containers and read-only views.
- The preamble rendered ahead of every module.
- ``load_module`` which executes an assembled, already checked source.
- ``interruptible`` which stops running rule code once its evaluation is abandoned.

Functional requirements
- Module-level constants are frozen after execution and must be plain data or functions.
- ``print`` is a no-op unless a sink is supplied.
- ``range`` is capped at MAX_RANGE_LENGTH items; rule loops are interrupted line by line.
"""

from __future__ import annotations

import builtins
import re
import sys
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache
from types import FrameType, FunctionType, MappingProxyType
from typing import Any, Final

from constraint_framework.sandbox.policy import top_level_names

PrintSink = Callable[[str], None]

MODULE_FILENAME_PREFIX: Final[str] = "<policy:"
MAX_RANGE_LENGTH: Final[int] = 1_000_000

_ALLOWED_BUILTINS: Final[tuple[str, ...]] = (
    "abs",
    "all",
    "any",
    "bool",
    "chr",
    "dict",
    "divmod",
    "enumerate",
    "filter",
    "float",
    "frozenset",
    "int",
    "isinstance",
    "len",
    "list",
    "map",
    "max",
    "min",
    "ord",
    "repr",
    "reversed",
    "round",
    "set",
    "sorted",
    "str",
    "sum",
    "tuple",
    "zip",
    # Exceptions rules may raise or catch.
    "ArithmeticError",
    "Exception",
    "IndexError",
    "KeyError",
    "LookupError",
    "TypeError",
    "ValueError",
    "ZeroDivisionError",
)


def freeze(value: object) -> object:
    """Return a deep read-only view of ``value`` (mappings → proxies, sequences → tuples)."""

    if isinstance(value, MappingProxyType):
        return value
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(item) for item in value)
    return value


def thaw(value: object) -> Any:
    """Inverse of :func:`freeze`: plain dicts and lists, sets sorted where possible."""

    if isinstance(value, Mapping):
        return {str(key): thaw(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(item) for item in value]
    if isinstance(value, (set, frozenset)):
        items = [thaw(item) for item in value]
        try:
            return sorted(items)
        except TypeError:
            return items
    return value


@lru_cache(maxsize=512)
def _compiled_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def re_match(pattern: str, text: object) -> bool:
    """True when ``pattern`` matches anywhere in ``text``."""

    if not isinstance(text, str):
        return False
    return _compiled_pattern(pattern).search(text) is not None


def re_fullmatch(pattern: str, text: object) -> bool:
    if not isinstance(text, str):
        return False
    return _compiled_pattern(pattern).fullmatch(text) is not None


def re_findall(pattern: str, text: object) -> tuple[str, ...]:
    if not isinstance(text, str):
        return ()
    return tuple(str(item) for item in _compiled_pattern(pattern).findall(text))


def is_object(value: object) -> bool:
    return isinstance(value, Mapping)


def is_array(value: object) -> bool:
    return isinstance(value, (list, tuple))


def is_string(value: object) -> bool:
    return isinstance(value, str)


def is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def bounded_range(*args: int) -> range:
    """``range`` for rule code; refuses sequences longer than MAX_RANGE_LENGTH."""

    produced = range(*args)
    try:
        size = len(produced)
    except OverflowError:
        size = MAX_RANGE_LENGTH + 1
    if size > MAX_RANGE_LENGTH:
        raise ValueError(f"range exceeds {MAX_RANGE_LENGTH} items")
    return produced


class EvaluationInterrupted(BaseException):
    """Raised inside rule code once its evaluation has been abandoned.

    Derives from ``BaseException`` so ``except Exception`` handlers in rules do not swallow it.
    """


@contextmanager
def interruptible(should_stop: Callable[[], bool]) -> Iterator[None]:
    """Trace rule frames on the current thread and abort them once ``should_stop()`` holds.

    Only frames compiled by :func:`load_module` are traced line by line. The previous
    trace function is restored on exit.
    """

    def trace_rule_line(frame: FrameType, event: str, arg: object) -> object:
        if should_stop():
            raise EvaluationInterrupted
        return trace_rule_line

    def trace_call(frame: FrameType, event: str, arg: object) -> object:
        if frame.f_code.co_filename.startswith(MODULE_FILENAME_PREFIX):
            return trace_rule_line
        return None

    previous = sys.gettrace()
    sys.settrace(trace_call)
    try:
        yield
    finally:
        sys.settrace(previous)


HOST_HELPERS: Final[Mapping[str, Callable[..., object]]] = MappingProxyType(
    {
        "is_array": is_array,
        "is_number": is_number,
        "is_object": is_object,
        "is_string": is_string,
        "re_findall": re_findall,
        "re_fullmatch": re_fullmatch,
        "re_match": re_match,
    }
)

PREAMBLE_TEMPLATE: Final[str] = '''\
"""Framework preamble for {module_name}."""
TARGET = {target!r}
TEMPLATE_KIND = {kind!r}
EMPTY = {{}}


def lookup(root, *path):
    """Walk mapping keys in ``path``; any miss yields an empty mapping."""
    node = root
    for key in path:
        if not is_object(node) or key not in node:
            return EMPTY
        node = node[key]
    return node


def get(mapping, key, default=None):
    """Mapping ``get`` that tolerates non-mapping values."""
    if is_object(mapping) and key in mapping:
        return mapping[key]
    return default
'''


def render_preamble(*, module_name: str, target: str, kind: str) -> str:
    return PREAMBLE_TEMPLATE.format(module_name=module_name, target=target, kind=kind)


def build_builtins(print_sink: PrintSink | None = None) -> dict[str, object]:
    """Return the ``__builtins__`` mapping handed to rule modules."""

    allowed: dict[str, object] = {name: getattr(builtins, name) for name in _ALLOWED_BUILTINS}
    allowed.update(HOST_HELPERS)
    allowed["range"] = bounded_range

    def sandbox_print(*args: object, **_kwargs: object) -> None:
        if print_sink is not None:
            print_sink(" ".join(str(item) for item in args))

    allowed["print"] = sandbox_print
    return allowed


@dataclass(frozen=True, slots=True)
class LoadedModule:
    """A rule module executed inside the sandbox namespace."""

    name: str
    source: str
    namespace: Mapping[str, object]

    def function(self, name: str) -> Callable[..., object] | None:
        candidate = self.namespace.get(name)
        if isinstance(candidate, FunctionType):
            return candidate
        return None

    def constant(self, name: str, default: object = None) -> object:
        return self.namespace.get(name, default)


def load_module(
    name: str,
    source: str,
    *,
    print_sink: PrintSink | None = None,
) -> LoadedModule:
    """Compile and execute a checked module source in a fresh restricted namespace.

    Raises ``SyntaxError`` for unparsable source and whatever the module's top level
    raises while executing; callers convert both into compile diagnostics.
    """

    code = compile(source, f"{MODULE_FILENAME_PREFIX}{name}>", "exec")
    namespace: dict[str, object] = {"__builtins__": build_builtins(print_sink), "__name__": name}
    exec(code, namespace)  # noqa: S102 - source passed the sandbox policy
    for binding in top_level_names(source):
        value = namespace.get(binding)
        if isinstance(value, FunctionType):
            continue
        frozen = freeze(value)
        if not _is_plain_data(frozen):
            raise TypeError(f"module-level {binding!r} must be plain data or a function")
        namespace[binding] = frozen
    return LoadedModule(name=name, source=source, namespace=MappingProxyType(namespace))


def _is_plain_data(value: object) -> bool:
    if value is None or isinstance(value, (str, int, float, bool)):
        return True
    if isinstance(value, Mapping):
        return all(_is_plain_data(item) for item in value.values())
    if isinstance(value, (tuple, frozenset)):
        return all(_is_plain_data(item) for item in value)
    return False


def iter_records(produced: object) -> Iterable[object]:
    """Normalize what a ``violation`` call returned into an iterable of records."""

    if produced is None:
        return ()
    if isinstance(produced, Mapping):
        return (produced,)
    if isinstance(produced, (str, bytes)) or not isinstance(produced, Iterable):
        raise TypeError(
            f"violation must yield records, got {type(produced).__name__}"
        )
    return produced


def normalize_record(record: object) -> tuple[str, dict[str, Any] | None]:
    """Validate one violation record and return ``(msg, details)``."""

    if not isinstance(record, Mapping):
        raise TypeError(f"violation record must be a mapping, got {type(record).__name__}")
    msg = record.get("msg")
    if not isinstance(msg, str):
        raise TypeError("violation record field 'msg' must be a string")
    details = record.get("details")
    if details is None:
        return msg, None
    if not isinstance(details, Mapping):
        raise TypeError("violation record field 'details' must be a mapping")
    return msg, thaw(details)


__all__ = [
    "EvaluationInterrupted",
    "HOST_HELPERS",
    "LoadedModule",
    "MAX_RANGE_LENGTH",
    "MODULE_FILENAME_PREFIX",
    "PREAMBLE_TEMPLATE",
    "PrintSink",
    "bounded_range",
    "build_builtins",
    "freeze",
    "interruptible",
    "is_array",
    "is_number",
    "is_object",
    "is_string",
    "iter_records",
    "load_module",
    "normalize_record",
    "re_findall",
    "re_fullmatch",
    "re_match",
    "render_preamble",
    "thaw",
]
