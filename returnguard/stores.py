"""
returnguard/stores.py
======================
In-Memory Entity Stores — ReturnGuard

Owned stores for customers, return requests and chat sessions. The engine
is the only writer; the UI reads through the engine's API. Lookups of a
missing id raise UnknownEntity.
"""

import threading
from typing import Callable, Generic, Iterator, TypeVar

from returnguard.errors import UnknownEntity

T = TypeVar("T")


class EntityStore(Generic[T]):
    def __init__(self, kind: str, key: Callable[[T], str]) -> None:
        self.kind = kind
        self._key = key
        self._lock = threading.Lock()
        self._items: dict[str, T] = {}

    def add(self, item: T) -> T:
        item_id = self._key(item)
        with self._lock:
            if item_id in self._items:
                raise ValueError(f"{self.kind} {item_id!r} already exists")
            self._items[item_id] = item
        return item

    def get(self, item_id: str) -> T:
        with self._lock:
            try:
                return self._items[item_id]
            except KeyError:
                raise UnknownEntity(self.kind, item_id) from None

    def __contains__(self, item_id: object) -> bool:
        with self._lock:
            return item_id in self._items

    def __iter__(self) -> Iterator[T]:
        with self._lock:
            return iter(list(self._items.values()))

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
