"""
Keyed table storage.

The stores only rely on five coroutines: get, put, update, delete and the two
query forms. `MemoryTable` implements them in process; any backend exposing the
same methods can be passed to `Tables` instead.
"""

import copy
from dataclasses import dataclass
from typing import Any

from bubble_timer.config import Settings

Item = dict[str, Any]


class MemoryTable:
    """Items keyed by one or two attributes, with optional single-attribute indexes."""

    def __init__(self, name: str, key: tuple[str, ...], indexes: dict[str, str] | None = None):
        self.name = name
        self.key = key
        self.indexes = indexes or {}
        self._items: dict[tuple, Item] = {}

    def _key_of(self, item: Item) -> tuple:
        try:
            return tuple(item[attr] for attr in self.key)
        except KeyError as e:
            raise ValueError(f"{self.name}: missing key attribute {e.args[0]}") from None

    async def get(self, key: Item) -> Item | None:
        item = self._items.get(self._key_of(key))
        return copy.deepcopy(item) if item is not None else None

    async def put(self, item: Item) -> None:
        self._items[self._key_of(item)] = copy.deepcopy(item)

    async def update(self, key: Item, values: Item, remove: tuple[str, ...] = ()) -> Item:
        """Set and remove attributes, creating the item when it does not exist."""
        k = self._key_of(key)
        item = self._items.get(k) or dict(key)
        item.update(copy.deepcopy(values))
        for attr in remove:
            item.pop(attr, None)
        self._items[k] = item
        return copy.deepcopy(item)

    async def delete(self, key: Item) -> None:
        self._items.pop(self._key_of(key), None)

    async def query(self, partition_value: Any) -> list[Item]:
        """All items whose first key attribute equals `partition_value`."""
        return [
            copy.deepcopy(item) for k, item in self._items.items() if k[0] == partition_value
        ]

    async def query_index(self, index_name: str, value: Any) -> list[Item]:
        attr = self.indexes[index_name]
        return [copy.deepcopy(item) for item in self._items.values() if item.get(attr) == value]

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class Tables:
    timers: MemoryTable
    shared_timers: MemoryTable
    user_connections: MemoryTable
    device_tokens: MemoryTable

    @classmethod
    def in_memory(cls, settings: Settings) -> "Tables":
        return cls(
            timers=MemoryTable(settings.timers_table_name, key=("id",)),
            shared_timers=MemoryTable(
                settings.shared_timers_table_name,
                key=("timer_id", "shared_with_user"),
                indexes={"SharedWithUserIndex": "shared_with_user"},
            ),
            user_connections=MemoryTable(
                settings.user_connections_table_name,
                key=("user_id", "device_id"),
                indexes={"ConnectionIdIndex": "connection_id"},
            ),
            device_tokens=MemoryTable(
                settings.device_tokens_table_name, key=("user_id", "device_id")
            ),
        )
