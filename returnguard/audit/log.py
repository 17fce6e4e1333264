"""
returnguard/audit/log.py
=========================
Append-Only Audit Log — ReturnGuard

Responsibility:
    - Record every state-changing decision and every policy change
    - Persist entries through an optional sink before they become visible
    - Answer per-entity trail queries, oldest first

Commit rule:
    Decision components build their entries, call ``append``/``append_many``
    and only then mutate the entity. If the sink fails, AuditWriteError is
    raised, nothing is recorded, and the caller's mutation never happens.

This module does NOT:
    - Decide anything
    - Mutate or delete an entry once recorded
"""

import json
import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol
from uuid import uuid4

from returnguard.errors import AuditWriteError
from returnguard.models import AuditLogEntry, EntityRef

logger = logging.getLogger("returnguard.audit")


class AuditSink(Protocol):
    """Durable destination for audit entries."""

    def write(self, entries: list[AuditLogEntry]) -> None: ...


class JsonlAuditSink:
    """Appends entries to a file, one JSON object per line."""

    def __init__(self, path: str) -> None:
        self.path = path

    def write(self, entries: list[AuditLogEntry]) -> None:
        payload = "".join(
            json.dumps(entry.to_dict(), default=str) + "\n" for entry in entries
        )
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(payload)
            fh.flush()


def make_entry(
    actor: str,
    action: str,
    target: EntityRef,
    reason: str,
    policy_version: int | None = None,
    details: dict[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> AuditLogEntry:
    """Build an AuditLogEntry with a fresh id and UTC timestamp."""
    return AuditLogEntry(
        entry_id=f"AUD-{uuid4().hex[:12].upper()}",
        timestamp=timestamp or datetime.now(timezone.utc),
        actor=actor,
        action=action,
        target=target,
        reason=reason,
        policy_version=policy_version,
        details=tuple(sorted((details or {}).items())),
    )


class AuditLog:
    """
    In-memory audit trail with an optional durable sink.

    Thread-safe: writes are serialized so the sink and the in-memory index
    always agree on ordering.
    """

    def __init__(self, sink: AuditSink | None = None) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self._entries: list[AuditLogEntry] = []
        self._by_target: dict[EntityRef, list[AuditLogEntry]] = defaultdict(list)

    def append(self, entry: AuditLogEntry) -> None:
        self.append_many([entry])

    def append_many(self, entries: Iterable[AuditLogEntry]) -> None:
        """
        Record all entries or none of them.

        Raises:
            AuditWriteError: If the sink rejects the write.
        """
        batch = list(entries)
        if not batch:
            return

        with self._lock:
            if self._sink is not None:
                try:
                    self._sink.write(batch)
                except Exception as exc:
                    logger.error(
                        "Audit write failed for %d entr%s: %s",
                        len(batch), "y" if len(batch) == 1 else "ies", exc,
                    )
                    raise AuditWriteError(f"Audit write failed: {exc}") from exc

            for entry in batch:
                self._entries.append(entry)
                self._by_target[entry.target].append(entry)

        for entry in batch:
            logger.info(
                "Audit: %s %s by %s — %s",
                entry.action, entry.target, entry.actor, entry.reason,
            )

    def query_by_target(self, target: EntityRef) -> list[AuditLogEntry]:
        """Entries for one entity, oldest first."""
        with self._lock:
            return list(self._by_target.get(target, ()))

    def recent(self, limit: int = 20) -> list[AuditLogEntry]:
        """Most recent entries, newest first."""
        with self._lock:
            return list(reversed(self._entries[-limit:])) if limit > 0 else []

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
