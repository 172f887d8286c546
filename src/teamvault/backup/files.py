"""
File collection (export) and file re-hosting (import).

Export side: every binary attachment referenced from the graph is
discovered, deduplicated by (bucket, path), given a deterministic archive
name and fetched on a bounded thread pool. A file that cannot be fetched is
logged and left out of both the archive and the index.

Import side: every indexed file present in the archive is uploaded to a new
path under the importing actor and the new project, and the resulting
(bucket, original path) -> new path table is used to rewrite references.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
import re
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any

from teamvault.backup.models import (
    FILES_PREFIX,
    NOTE_ATTACHMENTS_BUCKET,
    RESOURCES_BUCKET,
    SUBMISSIONS_BUCKET,
    FileIndexEntry,
    FileRef,
    _as_int,
    parse_submission_payload,
)
from teamvault.store.base import ObjectStorage, StoreError

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[/\\]")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def archive_path_for(ref: FileRef, taken: set[str]) -> str:
    """
    Return the archive entry name for a file and add it to `taken`.

    The name is `files/<bucket>_<path with separators replaced>`. If that is
    already used by a different (bucket, path), a short digest of the pair
    is inserted before the extension.
    """
    sanitized = _SEPARATORS.sub("_", ref.path).lstrip(".") or "file"
    name = f"{FILES_PREFIX}{ref.bucket}_{sanitized}"
    if name in taken:
        digest = hashlib.sha256(f"{ref.bucket}/{ref.path}".encode()).hexdigest()[:8]
        root, ext = os.path.splitext(sanitized)
        name = f"{FILES_PREFIX}{ref.bucket}_{root}-{digest}{ext}"
    taken.add(name)
    return name


def discover_files(
    tasks: Iterable[dict[str, Any]] = (),
    submissions: Iterable[dict[str, Any]] = (),
    note_attachments: Iterable[dict[str, Any]] = (),
    resources: Iterable[dict[str, Any]] = (),
) -> list[FileRef]:
    """
    Find every attachment referenced by the given rows.

    Sources are task submission payloads, submission history rows (their
    own file column and their payload), note attachments and file
    resources. The result is deduplicated by (bucket, path), first
    occurrence wins, in discovery order.
    """
    found: dict[tuple[str, str], FileRef] = {}

    def add(bucket: str, path: Any, name: Any, size: Any) -> None:
        if not path:
            return
        ref = FileRef(bucket, str(path), str(name or "file"), _as_int(size))
        found.setdefault(ref.key, ref)

    for task in tasks:
        for f in parse_submission_payload(task.get("submission_link")).files:
            add(SUBMISSIONS_BUCKET, f.file_path, f.file_name, f.file_size)

    for sub in submissions:
        if sub.get("file_name"):
            add(SUBMISSIONS_BUCKET, sub.get("file_path"), sub["file_name"], sub.get("file_size"))
        for f in parse_submission_payload(sub.get("submission_link")).files:
            add(SUBMISSIONS_BUCKET, f.file_path, f.file_name, f.file_size)

    for att in note_attachments:
        add(NOTE_ATTACHMENTS_BUCKET, att.get("file_path"), att.get("file_name"), att.get("file_size"))

    for res in resources:
        if res.get("resource_type") == "link":
            continue
        add(RESOURCES_BUCKET, res.get("file_path"), res.get("name"), res.get("file_size"))

    return list(found.values())


@dataclass
class CollectedFiles:
    """Fetched attachments ready to pack."""

    entries: list[FileIndexEntry] = field(default_factory=list)
    payloads: dict[str, bytes] = field(default_factory=dict)
    failures: list[str] = field(default_factory=list)


class FileCollector:
    """
    Fetches discovered attachments concurrently.

    Usage:
        collector = FileCollector(storage, max_workers=8)
        collected = collector.collect(discover_files(tasks, subs, atts, res))
    """

    def __init__(self, storage: ObjectStorage, max_workers: int = 8) -> None:
        self.storage = storage
        self.max_workers = max_workers

    def collect(self, refs: list[FileRef]) -> CollectedFiles:
        """
        Fetch each file; omit (and record) any that fail.

        Archive names are assigned in `refs` order before fetching, so the
        result does not depend on which download finishes first.
        """
        taken: set[str] = set()
        named = [(ref, archive_path_for(ref, taken)) for ref in refs]
        fetched: dict[str, bytes] = {}
        failures: list[str] = []

        if named:
            workers = max(1, min(self.max_workers, len(named)))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self.storage.download, ref.bucket, ref.path): (ref, zip_path)
                    for ref, zip_path in named
                }
                for future in as_completed(futures):
                    ref, zip_path = futures[future]
                    try:
                        fetched[zip_path] = future.result()
                    except StoreError as e:
                        logger.warning(f"Could not fetch {ref.bucket}/{ref.path}: {e}")
                        failures.append(f"{ref.bucket}/{ref.path}")

        collected = CollectedFiles(failures=failures)
        for ref, zip_path in named:
            data = fetched.get(zip_path)
            if data is None:
                continue
            collected.payloads[zip_path] = data
            collected.entries.append(
                FileIndexEntry(
                    original_path=ref.path,
                    file_name=ref.file_name,
                    file_size=ref.file_size or len(data),
                    zip_path=zip_path,
                    bucket=ref.bucket,
                    sha256=sha256_hex(data),
                )
            )

        logger.info(
            f"Collected {len(collected.entries)}/{len(refs)} files"
            + (f" ({len(failures)} failed)" if failures else "")
        )
        return collected


# -----------------------------------------------------------------------------
# Import side
# -----------------------------------------------------------------------------


class PathRewriteTable:
    """(bucket, original path) -> new path, with a path-only fallback."""

    def __init__(self) -> None:
        self._by_key: dict[tuple[str, str], str] = {}
        self._by_path: dict[str, str] = {}

    def add(self, bucket: str, original_path: str, new_path: str) -> None:
        self._by_key[(bucket, original_path)] = new_path
        self._by_path.setdefault(original_path, new_path)

    def new_path(self, original_path: str | None, bucket: str | None = None) -> str | None:
        if not original_path:
            return None
        if bucket is not None:
            found = self._by_key.get((bucket, original_path))
            if found is not None:
                return found
        return self._by_path.get(original_path)

    def for_bucket(self, bucket: str) -> Callable[[str], str | None]:
        """Return a one-argument lookup bound to a bucket."""
        return lambda path: self.new_path(path, bucket)

    def __len__(self) -> int:
        return len(self._by_key)


@dataclass
class RestoredFiles:
    """Outcome of re-hosting archived files."""

    table: PathRewriteTable = field(default_factory=PathRewriteTable)
    restored: int = 0
    skipped: int = 0
    failed: int = 0
    warnings: list[str] = field(default_factory=list)


def new_storage_path(actor_id: str, project_id: str, file_name: str, original_path: str) -> str:
    """Collision-proof destination path for a restored file."""
    ext = os.path.splitext(file_name)[1] or os.path.splitext(original_path)[1]
    return f"{actor_id}/{project_id}/{uuid.uuid4().hex}{ext.lower()}"


class FileRestorer:
    """Uploads archived files to fresh destination paths."""

    def __init__(self, storage: ObjectStorage, max_workers: int = 8) -> None:
        self.storage = storage
        self.max_workers = max_workers

    def restore(
        self,
        entries: list[FileIndexEntry],
        read: Callable[[str], bytes | None],
        actor_id: str,
        project_id: str,
    ) -> RestoredFiles:
        """
        Upload every entry whose bytes are in the archive.

        Args:
            entries: The manifest's file index.
            read: Returns an archive entry's bytes, or None when absent.
            actor_id: Importing actor (first path segment).
            project_id: The new project (second path segment).
        """
        result = RestoredFiles()
        pending: list[tuple[FileIndexEntry, bytes, str]] = []

        for entry in entries:
            data = read(entry.zip_path) if entry.zip_path else None
            if data is None:
                logger.warning(f"File missing from archive: {entry.zip_path or entry.original_path}")
                result.skipped += 1
                continue
            if entry.sha256 and sha256_hex(data) != entry.sha256:
                logger.warning(f"Checksum mismatch, skipping: {entry.zip_path}")
                result.warnings.append(f"Checksum mismatch: {entry.zip_path}")
                result.skipped += 1
                continue
            new_path = new_storage_path(actor_id, project_id, entry.file_name, entry.original_path)
            pending.append((entry, data, new_path))

        if not pending:
            return result

        workers = max(1, min(self.max_workers, len(pending)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(
                    self.storage.upload,
                    entry.bucket,
                    new_path,
                    data,
                    mimetypes.guess_type(entry.file_name)[0],
                ): (entry, new_path)
                for entry, data, new_path in pending
            }
            uploaded: dict[int, str] = {}
            for future in as_completed(futures):
                entry, new_path = futures[future]
                try:
                    future.result()
                    uploaded[id(entry)] = new_path
                except StoreError as e:
                    logger.warning(f"Could not upload {entry.file_name}: {e}")
                    result.failed += 1

        # Insert in index order so the path-only fallback is deterministic
        for entry, _, _ in pending:
            new_path = uploaded.get(id(entry))
            if new_path is not None:
                result.table.add(entry.bucket, entry.original_path, new_path)
                result.restored += 1

        return result
