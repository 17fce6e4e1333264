"""
returnguard/locks.py
=====================
Per-Entity Locks — ReturnGuard

One ``threading.Lock`` per (kind, id). Decisions that touch the same
customer, return or chat session are serialized; decisions on different
entities run in parallel. Multi-entity scopes acquire in sorted order so
two decisions can never wait on each other.

A lock lives in the registry only while some thread holds or waits for it,
so the registry does not grow with every entity ever seen.

Never hold one of these locks across external I/O (classifier calls).
"""

import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from returnguard.models import EntityRef


@dataclass
class _LockSlot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class EntityLocks:
    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._slots: dict[EntityRef, _LockSlot] = {}

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._slots)

    def _checkout(self, ref: EntityRef) -> threading.Lock:
        with self._registry_lock:
            slot = self._slots.get(ref)
            if slot is None:
                slot = self._slots[ref] = _LockSlot()
            slot.users += 1
            return slot.lock

    def _checkin(self, ref: EntityRef) -> None:
        with self._registry_lock:
            slot = self._slots[ref]
            slot.users -= 1
            if slot.users == 0:
                del self._slots[ref]

    @contextmanager
    def hold(self, *refs: EntityRef) -> Iterator[None]:
        """Hold the locks of all given entities for the block's duration."""
        with ExitStack() as stack:
            for ref in sorted(set(refs)):
                lock = self._checkout(ref)
                stack.callback(self._checkin, ref)
                stack.enter_context(lock)
            yield
