"""
In-process implementation of the store interfaces.

MemoryStore keeps tables as lists of dicts and objects as a dict keyed by
(bucket, path). It mirrors the behaviour the backup engine relies on from a
hosted deployment: generated UUID ids, a created_at default, membership and
null filters, no overwrite on upload. It is thread-safe so the exporter's
concurrent fan-out can run against it.

Failure injection hooks let callers simulate partial outages:

    store = MemoryStore()
    store.fail_selects.add("project_messages")
    store.fail_downloads.add(("task-submissions", "u1/report.pdf"))
    store.fail_inserts["task_notes"] = lambda row: row["version_name"] == "v2"
"""

from __future__ import annotations

import copy
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from teamvault.store.base import (
    DataStore,
    ObjectNotFoundError,
    ObjectStorage,
    StoreError,
)

_MEMBERSHIP_TYPES = (list, tuple, set, frozenset)


def _matches(row: dict[str, Any], filters: dict[str, Any]) -> bool:
    for column, expected in filters.items():
        value = row.get(column)
        if isinstance(expected, _MEMBERSHIP_TYPES):
            if value not in expected:
                return False
        elif expected is None:
            if value is not None:
                return False
        elif value != expected:
            return False
    return True


class MemoryStore(DataStore, ObjectStorage):
    """Thread-safe in-memory tables and buckets."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._objects: dict[tuple[str, str], bytes] = {}

        self.fail_selects: set[str] = set()
        self.fail_downloads: set[tuple[str, str]] = set()
        self.fail_uploads: set[str] = set()
        self.fail_inserts: dict[str, Callable[[dict[str, Any]], bool]] = {}

    # -- DataStore ----------------------------------------------------------

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        if table in self.fail_selects:
            raise StoreError("simulated select failure", resource=table)

        with self._lock:
            rows = [
                copy.deepcopy(row)
                for row in self._tables.get(table, [])
                if _matches(row, filters or {})
            ]

        if order_by:
            # Nulls sort last in both directions, like the hosted API
            present = [r for r in rows if r.get(order_by) is not None]
            missing = [r for r in rows if r.get(order_by) is None]
            present.sort(key=lambda r: r[order_by], reverse=descending)
            rows = present + missing

        if limit is not None:
            rows = rows[:limit]
        return rows

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        predicate = self.fail_inserts.get(table)
        if predicate is not None and predicate(row):
            raise StoreError("simulated insert failure", resource=table)

        stored = copy.deepcopy(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", datetime.now(UTC).isoformat())

        with self._lock:
            rows = self._tables.setdefault(table, [])
            if any(existing["id"] == stored["id"] for existing in rows):
                raise StoreError(f"duplicate id {stored['id']}", resource=table)
            rows.append(stored)

        return copy.deepcopy(stored)

    # -- ObjectStorage ------------------------------------------------------

    def download(self, bucket: str, path: str) -> bytes:
        if (bucket, path) in self.fail_downloads:
            raise StoreError(f"simulated download failure: {path}", resource=bucket)
        with self._lock:
            data = self._objects.get((bucket, path))
        if data is None:
            raise ObjectNotFoundError(f"object not found: {path}", resource=bucket)
        return data

    def upload(
        self,
        bucket: str,
        path: str,
        data: bytes,
        content_type: str | None = None,
    ) -> None:
        if bucket in self.fail_uploads:
            raise StoreError(f"simulated upload failure: {path}", resource=bucket)
        with self._lock:
            if (bucket, path) in self._objects:
                raise StoreError(f"object already exists: {path}", resource=bucket)
            self._objects[(bucket, path)] = bytes(data)

    # -- Helpers ------------------------------------------------------------

    def seed(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Insert fixture rows, bypassing failure injection."""
        created = []
        saved = self.fail_inserts.pop(table, None)
        try:
            for row in rows:
                created.append(self.insert(table, row))
        finally:
            if saved is not None:
                self.fail_inserts[table] = saved
        return created

    def rows(self, table: str) -> list[dict[str, Any]]:
        """Return a copy of every row in a table, in insertion order."""
        with self._lock:
            return copy.deepcopy(self._tables.get(table, []))

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._tables.get(table, []))

    def objects(self, bucket: str | None = None) -> dict[tuple[str, str], bytes]:
        """Return stored objects, optionally restricted to one bucket."""
        with self._lock:
            return {
                key: value
                for key, value in self._objects.items()
                if bucket is None or key[0] == bucket
            }
