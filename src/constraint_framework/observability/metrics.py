"""Thread-safe client metrics registry with a deterministic snapshot."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Mapping

    from constraint_framework.domain.models import JSONValue

_MetricLabels = tuple[tuple[str, str], ...]

_METRIC_NAME_MAX_LEN: Final[int] = 128
_LABEL_VALUE_MAX_LEN: Final[int] = 256

# Names recorded by the client.
REVIEWS_TOTAL: Final[str] = "reviews_total"
REVIEW_RESULTS_TOTAL: Final[str] = "review_results_total"
REVIEW_DURATION_MS: Final[str] = "review_duration_ms"
AUDIT_BATCHES_TOTAL: Final[str] = "audit_batches_total"
AUDIT_RESULTS_TOTAL: Final[str] = "audit_results_total"
DRIVER_ERRORS_TOTAL: Final[str] = "driver_errors_total"
EVALUATION_ERRORS_TOTAL: Final[str] = "evaluation_errors_total"
TEMPLATES_GAUGE: Final[str] = "templates"
CONSTRAINTS_GAUGE: Final[str] = "constraints"
INVENTORY_ENTRIES_GAUGE: Final[str] = "inventory_entries"


@dataclass(frozen=True, order=True, slots=True)
class _MetricKey:
    name: str
    labels: _MetricLabels


@dataclass(slots=True)
class _DistributionState:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


class MetricsRegistry:
    """In-memory counters, gauges and distributions for review/audit activity."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._created_at = datetime.now(tz=UTC)
        self._counters: dict[_MetricKey, float] = {}
        self._gauges: dict[_MetricKey, float] = {}
        self._distributions: dict[_MetricKey, _DistributionState] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        delta = _as_finite_float(amount, path="amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")
        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def set_gauge(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        gauge_value = _as_finite_float(value, path="value")
        with self._lock:
            self._gauges[key] = gauge_value

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        sample = _as_finite_float(value, path="value")
        with self._lock:
            state = self._distributions.get(key)
            if state is None:
                state = _DistributionState()
                self._distributions[key] = state
            state.observe(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        key = _metric_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def get_gauge(self, name: str, *, labels: Mapping[str, str] | None = None) -> float | None:
        key = _metric_key(name, labels)
        with self._lock:
            return self._gauges.get(key)

    def get_distribution(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        key = _metric_key(name, labels)
        with self._lock:
            state = self._distributions.get(key)
            return None if state is None else state.as_dict()

    def snapshot(self) -> dict[str, JSONValue]:
        """Return a snapshot with stable key ordering."""

        with self._lock:
            created_at = self._created_at
            counters = sorted(self._counters.items())
            gauges = sorted(self._gauges.items())
            distributions = sorted(
                (key, state.as_dict()) for key, state in self._distributions.items()
            )
        return {
            "created_at": created_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "counters": {_metric_identifier(key): value for key, value in counters},
            "gauges": {_metric_identifier(key): value for key, value in gauges},
            "distributions": {_metric_identifier(key): value for key, value in distributions},
        }


def _metric_key(name: str, labels: Mapping[str, str] | None) -> _MetricKey:
    return _MetricKey(name=_validate_metric_name(name), labels=_normalize_labels(labels))


def _metric_identifier(key: _MetricKey) -> str:
    if not key.labels:
        return key.name
    labels = ",".join(f"{k}={v}" for k, v in key.labels)
    return f"{key.name}{{{labels}}}"


def _validate_metric_name(name: str) -> str:
    if not isinstance(name, str):
        raise ValueError(f"metric name must be a string, got {type(name).__name__}")
    normalized = name.strip()
    if not normalized:
        raise ValueError("metric name must not be empty")
    if len(normalized) > _METRIC_NAME_MAX_LEN:
        raise ValueError(f"metric name must be <= {_METRIC_NAME_MAX_LEN} characters")
    return normalized


def _normalize_labels(labels: Mapping[str, str] | None) -> _MetricLabels:
    if not labels:
        return ()
    out: list[tuple[str, str]] = []
    for key, value in labels.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("label keys must be non-empty strings")
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"label value for {key!r} must be a non-empty string")
        if len(value) > _LABEL_VALUE_MAX_LEN:
            raise ValueError(f"label value for {key!r} exceeds {_LABEL_VALUE_MAX_LEN} characters")
        out.append((key.strip(), value.strip()))
    out.sort()
    return tuple(out)


def _as_finite_float(value: float, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    return parsed


__all__ = [
    "AUDIT_BATCHES_TOTAL",
    "AUDIT_RESULTS_TOTAL",
    "CONSTRAINTS_GAUGE",
    "DRIVER_ERRORS_TOTAL",
    "EVALUATION_ERRORS_TOTAL",
    "INVENTORY_ENTRIES_GAUGE",
    "MetricsRegistry",
    "REVIEWS_TOTAL",
    "REVIEW_DURATION_MS",
    "REVIEW_RESULTS_TOTAL",
    "TEMPLATES_GAUGE",
]
