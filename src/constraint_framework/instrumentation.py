"""Evaluation statistics emitted alongside results when explicitly requested."""

from __future__ import annotations

import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

JSONScalar = str | int | float | bool | None

ENGINE_SOURCE_TYPE: Final[str] = "engine"
TEMPLATE_SCOPE: Final[str] = "template"

TEMPLATE_RUN_TIME_NS: Final[str] = "templateRunTimeNS"
CONSTRAINT_COUNT: Final[str] = "constraintCount"

_STAT_DESCRIPTIONS: Final[dict[str, str]] = {
    TEMPLATE_RUN_TIME_NS: (
        "the number of nanoseconds it took to evaluate all constraints for a template"
    ),
    CONSTRAINT_COUNT: "the number of constraints that were evaluated for the given constraint kind",
}


def describe_stat(name: str) -> str:
    """Return the human readable description for a known stat name."""

    try:
        return _STAT_DESCRIPTIONS[name]
    except KeyError:
        raise KeyError(f"unknown stat name: {name!r}") from None


@dataclass(frozen=True, slots=True)
class StatSource:
    """Where a measurement came from (for example ``engine``/``local``)."""

    type: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "value": self.value}


@dataclass(frozen=True, slots=True)
class Stat:
    name: str
    value: JSONScalar
    source: StatSource

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "value": self.value, "source": self.source.to_dict()}


@dataclass(frozen=True, slots=True)
class StatLabel:
    name: str
    value: JSONScalar

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "value": self.value}


@dataclass(frozen=True, slots=True)
class StatsEntry:
    """Measurements for one subject (``stats_for``) within a scope."""

    scope: str
    stats_for: str
    stats: tuple[Stat, ...]
    labels: tuple[StatLabel, ...] = ()

    def stat(self, name: str) -> Stat | None:
        for item in self.stats:
            if item.name == name:
                return item
        return None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "scope": self.scope,
            "statsFor": self.stats_for,
            "stats": [item.to_dict() for item in self.stats],
        }
        if self.labels:
            payload["labels"] = [item.to_dict() for item in self.labels]
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> StatsEntry:
        raw_stats = data.get("stats") or []
        raw_labels = data.get("labels") or []
        if not isinstance(raw_stats, Sequence) or not isinstance(raw_labels, Sequence):
            raise ValueError("StatsEntry: stats and labels must be arrays")
        stats: list[Stat] = []
        for item in raw_stats:
            if not isinstance(item, Mapping):
                raise ValueError("StatsEntry.stats: expected objects")
            source = item.get("source")
            source_map = source if isinstance(source, Mapping) else {}
            stats.append(
                Stat(
                    name=str(item.get("name", "")),
                    value=_scalar(item.get("value")),
                    source=StatSource(
                        type=str(source_map.get("type", "")),
                        value=str(source_map.get("value", "")),
                    ),
                )
            )
        labels = tuple(
            StatLabel(name=str(item.get("name", "")), value=_scalar(item.get("value")))
            for item in raw_labels
            if isinstance(item, Mapping)
        )
        return cls(
            scope=str(data.get("scope", "")),
            stats_for=str(data.get("statsFor", "")),
            stats=tuple(stats),
            labels=labels,
        )


def _scalar(value: object) -> JSONScalar:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


class StatsCollector:
    """Accumulates per-template stats for one driver query.

    Only constructed when a caller asks for stats, so evaluation without
    instrumentation never touches it.
    """

    def __init__(self, *, driver: str, labels: Sequence[StatLabel] = ()) -> None:
        self._source = StatSource(type=ENGINE_SOURCE_TYPE, value=driver)
        self._labels = tuple(labels)
        self._lock = threading.Lock()
        self._entries: list[StatsEntry] = []

    def record_template(self, kind: str, *, run_time_ns: int, constraint_count: int) -> None:
        entry = StatsEntry(
            scope=TEMPLATE_SCOPE,
            stats_for=kind,
            stats=(
                Stat(name=TEMPLATE_RUN_TIME_NS, value=int(run_time_ns), source=self._source),
                Stat(name=CONSTRAINT_COUNT, value=int(constraint_count), source=self._source),
            ),
            labels=self._labels,
        )
        with self._lock:
            self._entries.append(entry)

    def entries(self) -> tuple[StatsEntry, ...]:
        with self._lock:
            return tuple(self._entries)


__all__ = [
    "CONSTRAINT_COUNT",
    "ENGINE_SOURCE_TYPE",
    "TEMPLATE_RUN_TIME_NS",
    "TEMPLATE_SCOPE",
    "Stat",
    "StatLabel",
    "StatSource",
    "StatsCollector",
    "StatsEntry",
    "describe_stat",
]
