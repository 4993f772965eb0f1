"""
constraint-framework — driver base models and shared utilities

File: src/constraint_framework/drivers/base.py

Purpose
- Abstract rule-evaluation back-end interface plus the query models every driver speaks.

What should be included in this file
- Query input/options/response models.
- ``Driver`` ABC and the runtime-checkable ``DriverProtocol``.
- Driver registry resolved at startup.
- Bounded exponential backoff for drivers that talk to remote engines.

Functional requirements
- Module and data operations are idempotent; re-adding identical content is a no-op.
- ``query`` never mutates driver state.

Non-functional requirements
- Adding a driver must not require touching the client.
"""

from __future__ import annotations

import abc
import asyncio
import random as random_module
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol, TypeAlias, TypeVar, runtime_checkable

from constraint_framework.domain.models import JSONValue, to_json_value
from constraint_framework.domain.results import Result
from constraint_framework.errors import DriverError, DriverUnavailableError, InvalidQueryError
from constraint_framework.instrumentation import StatsEntry

SleepFn: TypeAlias = Callable[[float], Awaitable[None]]
RandomFn: TypeAlias = Callable[[], float]
DataPath: TypeAlias = tuple[str, ...]


def _validate_non_empty_str(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} cannot be empty")
    return normalized


def normalize_path(path: Sequence[str]) -> DataPath:
    """Validate a data path: a non-empty sequence of non-empty strings."""

    if isinstance(path, str):
        raise TypeError("data path must be a sequence of segments, not a string")
    segments = tuple(path)
    if not segments:
        raise ValueError("data path cannot be empty")
    for index, segment in enumerate(segments):
        if not isinstance(segment, str) or not segment:
            raise ValueError(f"data path segment {index} must be a non-empty string")
    return segments


@dataclass(frozen=True, slots=True)
class QueryInput:
    """Either one classified review or an audit scope, never both."""

    review: Mapping[str, JSONValue] | None = None
    audit_scope: Mapping[str, str] | None = None

    def __post_init__(self) -> None:
        if (self.review is None) == (self.audit_scope is None):
            raise InvalidQueryError("query input needs exactly one of review or audit_scope")
        if self.review is not None:
            if not isinstance(self.review, Mapping):
                raise InvalidQueryError("query review must be an object")
            try:
                object.__setattr__(self, "review", to_json_value(self.review, path="review"))
            except ValueError as exc:
                raise InvalidQueryError(str(exc)) from exc
        if self.audit_scope is not None:
            scope = dict(self.audit_scope)
            for key in ("group_version", "kind"):
                if not isinstance(scope.get(key), str) or not scope[key]:
                    raise InvalidQueryError(f"audit scope requires a non-empty {key!r}")
            object.__setattr__(self, "audit_scope", scope)

    @property
    def is_audit(self) -> bool:
        return self.audit_scope is not None

    def to_dict(self) -> dict[str, JSONValue]:
        if self.review is not None:
            return {"review": to_json_value(self.review)}
        return {"audit": dict(self.audit_scope or {})}


@dataclass(frozen=True, slots=True)
class QueryOptions:
    tracing: bool = False
    stats: bool = False


@dataclass(frozen=True, slots=True)
class QueryResponse:
    """Driver answer for one target."""

    results: tuple[Result, ...] = ()
    trace: str | None = None
    stats_entries: tuple[StatsEntry, ...] = ()


class Driver(abc.ABC):
    """Rule-evaluation back-end holding compiled modules and per-target data."""

    name: str = "driver"
    language: str = "python"

    @abc.abstractmethod
    async def put_module(self, name: str, source: str) -> bool:
        """Install or replace a module; return ``False`` when identical source is present."""

    @abc.abstractmethod
    async def delete_module(self, name: str) -> bool:
        """Remove a module; return ``False`` when it was not installed."""

    @abc.abstractmethod
    async def add_data(self, target: str, path: Sequence[str], obj: object) -> bool:
        """Store ``obj`` at ``path`` in the target's data document."""

    @abc.abstractmethod
    async def remove_data(self, target: str, path: Sequence[str]) -> bool:
        """Delete the value at ``path``; a missing path is not an error."""

    @abc.abstractmethod
    async def query(
        self,
        target: str,
        query_input: QueryInput,
        options: QueryOptions | None = None,
    ) -> QueryResponse:
        """Evaluate every module bound to ``target`` against ``query_input``."""

    @abc.abstractmethod
    async def dump(self) -> dict[str, Any]:
        """Return installed modules and data for debugging."""

    async def close(self) -> None:
        """Release resources held by the driver."""


@runtime_checkable
class DriverProtocol(Protocol):
    """Protocol implemented by concrete drivers."""

    name: str
    language: str

    async def put_module(self, name: str, source: str) -> bool: ...

    async def delete_module(self, name: str) -> bool: ...

    async def add_data(self, target: str, path: Sequence[str], obj: object) -> bool: ...

    async def remove_data(self, target: str, path: Sequence[str]) -> bool: ...

    async def query(
        self,
        target: str,
        query_input: QueryInput,
        options: QueryOptions | None = None,
    ) -> QueryResponse: ...

    async def dump(self) -> dict[str, Any]: ...

    async def close(self) -> None: ...


DriverFactory: TypeAlias = Callable[..., DriverProtocol]


class DriverRegistry:
    """Registry for driver factories."""

    def __init__(self) -> None:
        self._factories: dict[str, DriverFactory] = {}

    def register(self, name: str, factory: DriverFactory, *, overwrite: bool = False) -> None:
        normalized = _validate_non_empty_str(name, "name").lower()
        if normalized in self._factories and not overwrite:
            raise ValueError(f"driver already registered: {normalized}")
        self._factories[normalized] = factory

    def unregister(self, name: str) -> None:
        normalized = _validate_non_empty_str(name, "name").lower()
        self._factories.pop(normalized, None)

    def is_registered(self, name: str) -> bool:
        normalized = _validate_non_empty_str(name, "name").lower()
        return normalized in self._factories

    def list(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories.keys()))

    def create(self, name: str, **options: Any) -> DriverProtocol:
        normalized = _validate_non_empty_str(name, "name").lower()
        factory = self._factories.get(normalized)
        if factory is None:
            raise DriverUnavailableError(
                "driver is not registered",
                driver=normalized,
                retryable=False,
            )
        driver = factory(**options)
        if not isinstance(driver, DriverProtocol):
            raise TypeError(f"driver factory returned invalid driver for {normalized}")
        return driver


@dataclass(frozen=True, slots=True)
class BackoffConfig:
    """Bounded exponential backoff policy."""

    max_retries: int = 2
    initial_delay_seconds: float = 0.1
    multiplier: float = 2.0
    max_delay_seconds: float = 2.0
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must be <= max_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")


def compute_backoff_delay(
    *,
    retry_number: int,
    config: BackoffConfig,
    random_fn: RandomFn = random_module.random,
) -> float:
    """Return bounded exponential backoff delay for retry attempt N (1-based)."""

    if retry_number <= 0:
        raise ValueError("retry_number must be > 0")

    base_delay = config.initial_delay_seconds * (config.multiplier ** (retry_number - 1))
    bounded_delay = min(base_delay, config.max_delay_seconds)

    if config.jitter_ratio == 0.0:
        return bounded_delay

    random_value = random_fn()
    if not (0.0 <= random_value <= 1.0):
        raise ValueError("random_fn must return values in [0.0, 1.0]")

    max_jitter = bounded_delay * config.jitter_ratio
    jitter = ((random_value * 2.0) - 1.0) * max_jitter
    return max(0.0, min(config.max_delay_seconds, bounded_delay + jitter))


_T = TypeVar("_T")
RetryCallback: TypeAlias = Callable[[int, DriverError, float], None]


async def run_with_retries(
    operation: Callable[[], Awaitable[_T]],
    *,
    map_exception: Callable[[Exception], DriverError],
    backoff: BackoffConfig,
    sleep: SleepFn = asyncio.sleep,
    random_fn: RandomFn = random_module.random,
    on_retry: RetryCallback | None = None,
) -> _T:
    """Run an async operation with bounded retries based on DriverError retryability."""

    retry_count = 0
    while True:
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            mapped = exc if isinstance(exc, DriverError) else map_exception(exc)
            if not isinstance(mapped, DriverError):
                raise TypeError("map_exception must return DriverError") from exc

            if not mapped.retryable or retry_count >= backoff.max_retries:
                if mapped is exc:
                    raise
                raise mapped from exc

            retry_count += 1
            delay_seconds = compute_backoff_delay(
                retry_number=retry_count,
                config=backoff,
                random_fn=random_fn,
            )
            if on_retry is not None:
                on_retry(retry_count, mapped, delay_seconds)
            await sleep(delay_seconds)


__all__ = [
    "BackoffConfig",
    "DataPath",
    "Driver",
    "DriverFactory",
    "DriverProtocol",
    "DriverRegistry",
    "QueryInput",
    "QueryOptions",
    "QueryResponse",
    "RandomFn",
    "SleepFn",
    "compute_backoff_delay",
    "normalize_path",
    "run_with_retries",
]
