"""Unit tests for evaluation stats."""

from __future__ import annotations

import threading

import pytest

from constraint_framework.instrumentation import (
    CONSTRAINT_COUNT,
    TEMPLATE_RUN_TIME_NS,
    StatLabel,
    StatsCollector,
    StatsEntry,
    describe_stat,
)


def test_collector_records_template_stats_with_labels() -> None:
    collector = StatsCollector(driver="local", labels=(StatLabel("tracing_enabled", False),))

    collector.record_template("RequiredLabels", run_time_ns=1500, constraint_count=3)

    [entry] = collector.entries()
    assert entry.scope == "template"
    assert entry.stats_for == "RequiredLabels"
    assert entry.stat(CONSTRAINT_COUNT).value == 3
    assert entry.stat(TEMPLATE_RUN_TIME_NS).source.to_dict() == {
        "type": "engine",
        "value": "local",
    }
    assert entry.stat("missing") is None
    assert entry.to_dict()["labels"] == [{"name": "tracing_enabled", "value": False}]


def test_stats_entry_from_wire_form() -> None:
    entry = StatsEntry.from_dict(
        {
            "scope": "template",
            "statsFor": "K",
            "stats": [
                {
                    "name": TEMPLATE_RUN_TIME_NS,
                    "value": 12,
                    "source": {"type": "engine", "value": "remote"},
                },
                {"name": "odd", "value": [1, 2]},
            ],
        }
    )

    assert entry.stat(TEMPLATE_RUN_TIME_NS).value == 12
    assert entry.stat("odd").value == "[1, 2]"
    assert entry.stat("odd").source.type == ""
    assert entry.labels == ()
    assert "labels" not in entry.to_dict()
    with pytest.raises(ValueError, match="must be arrays"):
        StatsEntry.from_dict({"stats": 5})


def test_describe_stat() -> None:
    assert "nanoseconds" in describe_stat(TEMPLATE_RUN_TIME_NS)
    assert "constraints" in describe_stat(CONSTRAINT_COUNT)
    with pytest.raises(KeyError, match="unknown stat name"):
        describe_stat("bogus")


def test_collector_is_safe_across_threads() -> None:
    collector = StatsCollector(driver="local")

    def record(kind: str) -> None:
        for _ in range(25):
            collector.record_template(kind, run_time_ns=1, constraint_count=1)

    threads = [threading.Thread(target=record, args=(f"K{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(collector.entries()) == 100
