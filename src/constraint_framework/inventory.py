"""
constraint-framework — inventory of external reference data

File: src/constraint_framework/inventory.py

Purpose
- Client-side cache of objects rules may consult (namespaces, existing resources).

What should be included in this file
- Shards keyed by (target, group/version, kind), each with its own lock.
- Shards emptied by ``remove`` or ``clear`` are retired so the shard map only holds live data.
- Copy-on-write entry maps so readers iterate a stable snapshot without locking.
- Enumeration helpers used by audit to walk one shard at a time.

Functional requirements
- ``put`` of an identical value is a no-op; ``remove`` of a missing key is a no-op.
- Stored objects are frozen; callers never share mutable state with the cache.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from constraint_framework.domain.models import InventoryKey, JSONValue
from constraint_framework.sandbox.runtime import freeze, thaw

ShardKey = tuple[str, str, str]
_EntryKey = tuple[str, str]


@dataclass(slots=True)
class _Shard:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: Mapping[_EntryKey, object] = field(default_factory=lambda: MappingProxyType({}))
    retired: bool = False


class Inventory:
    """Sharded, copy-on-write store of inventory objects."""

    def __init__(self) -> None:
        self._shards_lock = threading.Lock()
        self._shards: dict[ShardKey, _Shard] = {}

    def _shard(self, key: ShardKey) -> _Shard | None:
        return self._shards.get(key)

    def _writable_shard(self, key: ShardKey) -> _Shard:
        shard = self._shards.get(key)
        if shard is not None:
            return shard
        with self._shards_lock:
            return self._shards.setdefault(key, _Shard())

    def put(self, key: InventoryKey, obj: object) -> bool:
        """Store ``obj`` under ``key``; return ``False`` when the identical value is present."""

        frozen = freeze(thaw(obj))
        entry_key = (key.namespace, key.name)
        while True:
            shard = self._writable_shard(key.shard)
            with shard.lock:
                if shard.retired:
                    continue
                existing = shard.entries.get(entry_key)
                if existing is not None and thaw(existing) == thaw(frozen):
                    return False
                entries = dict(shard.entries)
                entries[entry_key] = frozen
                shard.entries = MappingProxyType(entries)
                return True

    def remove(self, key: InventoryKey) -> bool:
        """Drop ``key``; a shard left empty is retired and forgotten."""

        entry_key = (key.namespace, key.name)
        with self._shards_lock:
            shard = self._shards.get(key.shard)
            if shard is None:
                return False
            with shard.lock:
                if entry_key not in shard.entries:
                    return False
                entries = dict(shard.entries)
                del entries[entry_key]
                shard.entries = MappingProxyType(entries)
                if not entries:
                    shard.retired = True
                    del self._shards[key.shard]
        return True

    def get(self, key: InventoryKey) -> JSONValue | None:
        shard = self._shard(key.shard)
        if shard is None:
            return None
        found = shard.entries.get((key.namespace, key.name))
        return thaw(found) if found is not None else None

    def shards(self, target: str | None = None) -> tuple[ShardKey, ...]:
        """Non-empty shards, sorted; restricted to ``target`` when given."""

        return tuple(
            sorted(
                key
                for key, shard in list(self._shards.items())
                if shard.entries and (target is None or key[0] == target)
            )
        )

    def entries(
        self, target: str, group_version: str, kind: str
    ) -> Iterator[tuple[InventoryKey, object]]:
        """Yield frozen objects of one shard, ordered by namespace then name."""

        shard = self._shard((target, group_version, kind))
        if shard is None:
            return
        snapshot = shard.entries
        for namespace, name in sorted(snapshot):
            yield (
                InventoryKey(
                    target=target,
                    group_version=group_version,
                    kind=kind,
                    namespace=namespace,
                    name=name,
                ),
                snapshot[(namespace, name)],
            )

    def keys(self, target: str | None = None) -> tuple[InventoryKey, ...]:
        found: list[InventoryKey] = []
        for shard_key in self.shards(target):
            found.extend(key for key, _ in self.entries(*shard_key))
        return tuple(found)

    def clear(self, target: str | None = None) -> int:
        """Drop every entry (of ``target`` when given); return how many were removed."""

        removed = 0
        with self._shards_lock:
            for key in [key for key in self._shards if target is None or key[0] == target]:
                shard = self._shards.pop(key)
                with shard.lock:
                    removed += len(shard.entries)
                    shard.entries = MappingProxyType({})
                    shard.retired = True
        return removed

    def dump(self) -> dict[str, list[dict[str, JSONValue]]]:
        """JSON-ready view grouped by target."""

        grouped: dict[str, list[dict[str, JSONValue]]] = {}
        for shard_key in self.shards():
            for key, obj in self.entries(*shard_key):
                grouped.setdefault(key.target, []).append(
                    {
                        "groupVersion": key.group_version,
                        "kind": key.kind,
                        "namespace": key.namespace,
                        "name": key.name,
                        "object": thaw(obj),
                    }
                )
        return grouped

    def __len__(self) -> int:
        return sum(len(shard.entries) for shard in list(self._shards.values()))


__all__ = ["Inventory", "ShardKey"]
