"""
Data types shared by the exporter, importer and archive codec.

The manifest itself stays a plain JSON-compatible dict (it is written and
read verbatim); the types here cover everything around it: export options,
the submission payload variant, file references, results and errors.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any

MANIFEST_VERSION = "4.0"
MANIFEST_NAME = "backup.json"
FILES_PREFIX = "files/"

SUBMISSIONS_BUCKET = "task-submissions"
NOTE_ATTACHMENTS_BUCKET = "task-note-attachments"
RESOURCES_BUCKET = "project-resources"
BUCKETS = (SUBMISSIONS_BUCKET, NOTE_ATTACHMENTS_BUCKET, RESOURCES_BUCKET)

MEMBER_ROLES = ("admin", "leader", "member")

ProgressCallback = Callable[[int, str], None]


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------


class BackupError(Exception):
    """Base class for fatal export/import failures."""

    pass


class ArchiveError(BackupError):
    """The archive cannot be used at all."""

    pass


class ArchiveReadError(ArchiveError):
    """The blob is not a readable archive, or its manifest is not JSON."""

    pass


class ManifestMissingError(ArchiveError):
    """The archive has no manifest entry."""

    pass


class ManifestShapeError(ArchiveError):
    """The manifest lacks a version tag or a project root object."""

    pass


class ExportError(BackupError):
    """The project could not be exported."""

    pass


class DuplicateNaturalKeyError(ExportError):
    """
    Two entities of the same kind share a natural key and the duplicate
    policy is "reject".

    Attributes:
        kind: Entity kind ("stage", "task", "folder").
        keys: The natural keys that occur more than once.
    """

    def __init__(self, kind: str, keys: list[str]) -> None:
        self.kind = kind
        self.keys = keys
        quoted = ", ".join(f"'{k}'" for k in keys)
        super().__init__(f"Duplicate {kind} names: {quoted}")


class ProjectCreationError(BackupError):
    """The destination project shell could not be created."""

    pass


# -----------------------------------------------------------------------------
# Export options
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ExportOptions:
    """
    Switches gating the optional manifest sections.

    A section that is switched off is absent from the manifest, so the
    importer can tell "not requested" apart from "requested but empty".
    """

    messages: bool = True
    task_notes: bool = True
    task_comments: bool = True
    resources: bool = True
    activity_logs: bool = True
    scores: bool = True

    @classmethod
    def none(cls) -> ExportOptions:
        return cls(**{f.name: False for f in fields(cls)})

    def sections(self) -> list[str]:
        """Return the optional manifest keys these options produce."""
        keys: list[str] = []
        for option, section_keys in OPTIONAL_SECTIONS.items():
            if getattr(self, option):
                keys.extend(section_keys)
        return keys


# Option -> manifest keys it controls
OPTIONAL_SECTIONS: dict[str, tuple[str, ...]] = {
    "messages": ("messages",),
    "task_notes": ("task_notes",),
    "task_comments": ("task_comments",),
    "resources": ("resources", "resource_folders"),
    "activity_logs": ("activity_logs",),
    "scores": (
        "stage_weights",
        "member_stage_scores",
        "member_final_scores",
        "score_appeals",
    ),
}

ALL_OPTIONAL_KEYS = tuple(k for keys in OPTIONAL_SECTIONS.values() for k in keys)


# -----------------------------------------------------------------------------
# Submission payload
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class FileDescriptor:
    """One uploaded file referenced from a submission payload."""

    file_path: str
    file_name: str = "file"
    file_size: int = 0


@dataclass(frozen=True)
class LinkOnly:
    """
    A submission payload that is not a JSON list: a bare URL, free text,
    malformed JSON, or nothing at all. It carries no files.
    """

    raw: str | None = None

    @property
    def files(self) -> list[FileDescriptor]:
        return []

    def rewrite(self, new_path_for: Callable[[str], str | None]) -> LinkOnly:
        return self

    def encode(self) -> str | None:
        return self.raw


@dataclass(frozen=True)
class FileList:
    """
    A JSON-encoded list of submission items. Items with a `file_path` are
    files; anything else (link items with `url`/`title`) is carried through
    untouched.
    """

    items: tuple[Any, ...] = ()

    @property
    def files(self) -> list[FileDescriptor]:
        found = []
        for item in self.items:
            if isinstance(item, dict) and item.get("file_path"):
                found.append(
                    FileDescriptor(
                        file_path=str(item["file_path"]),
                        file_name=str(item.get("file_name") or "file"),
                        file_size=_as_int(item.get("file_size")),
                    )
                )
        return found

    def rewrite(self, new_path_for: Callable[[str], str | None]) -> FileList:
        """
        Point every file item at its restored path.

        `new_path_for` returns the new path or None; file items without a new
        path are dropped so the payload never references a missing object.
        """
        items = []
        for item in self.items:
            if isinstance(item, dict) and item.get("file_path"):
                new_path = new_path_for(str(item["file_path"]))
                if new_path is None:
                    continue
                item = {**item, "file_path": new_path}
            items.append(item)
        return FileList(tuple(items))

    def encode(self) -> str:
        return json.dumps(list(self.items), ensure_ascii=False)


SubmissionPayload = LinkOnly | FileList


def parse_submission_payload(raw: Any) -> SubmissionPayload:
    """
    Parse a `submission_link` column value. Never raises.

    A JSON array becomes a FileList; everything else is LinkOnly.
    """
    if not raw or not isinstance(raw, str):
        return LinkOnly(raw if isinstance(raw, str) else None)
    try:
        parsed = json.loads(raw)
    except ValueError:
        return LinkOnly(raw)
    if isinstance(parsed, list):
        return FileList(tuple(parsed))
    return LinkOnly(raw)


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class FileRef:
    """A binary attachment discovered in the graph."""

    bucket: str
    path: str
    file_name: str
    file_size: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.bucket, self.path)


@dataclass
class FileIndexEntry:
    """One row of the manifest's `files` index."""

    original_path: str
    file_name: str
    file_size: int
    zip_path: str
    bucket: str
    sha256: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "original_path": self.original_path,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "zip_path": self.zip_path,
            "bucket": self.bucket,
        }
        if self.sha256:
            data["sha256"] = self.sha256
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FileIndexEntry:
        return cls(
            original_path=str(data.get("original_path") or ""),
            file_name=str(data.get("file_name") or "file"),
            file_size=_as_int(data.get("file_size")),
            zip_path=str(data.get("zip_path") or ""),
            bucket=str(data.get("bucket") or SUBMISSIONS_BUCKET),
            sha256=data.get("sha256"),
        )


# -----------------------------------------------------------------------------
# Snapshot and results
# -----------------------------------------------------------------------------


@dataclass
class ProjectSnapshot:
    """
    Everything the exporter fetched for one project, with source ids intact.

    Handed to the evidence report generator so it never has to query the
    store itself.
    """

    project: dict[str, Any]
    members: list[dict[str, Any]] = field(default_factory=list)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)
    stages: list[dict[str, Any]] = field(default_factory=list)
    tasks: list[dict[str, Any]] = field(default_factory=list)
    assignments: list[dict[str, Any]] = field(default_factory=list)
    task_scores: list[dict[str, Any]] = field(default_factory=list)
    submissions: list[dict[str, Any]] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    notes: list[dict[str, Any]] = field(default_factory=list)
    note_attachments: list[dict[str, Any]] = field(default_factory=list)
    comments: list[dict[str, Any]] = field(default_factory=list)
    resource_folders: list[dict[str, Any]] = field(default_factory=list)
    resources: list[dict[str, Any]] = field(default_factory=list)
    activity_logs: list[dict[str, Any]] = field(default_factory=list)
    stage_weights: list[dict[str, Any]] = field(default_factory=list)
    member_stage_scores: list[dict[str, Any]] = field(default_factory=list)
    member_final_scores: list[dict[str, Any]] = field(default_factory=list)
    score_appeals: list[dict[str, Any]] = field(default_factory=list)
    options: ExportOptions = field(default_factory=ExportOptions)
    exported_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def profile_for(self, user_id: str | None) -> dict[str, Any]:
        return self.profiles.get(user_id or "", {})


@dataclass
class ExportResult:
    """
    Outcome of a successful export.

    Attributes:
        data: The archive bytes.
        filename: Suggested file name derived from the project name.
        manifest: The manifest written into the archive.
        counts: What was included, per category.
        warnings: Degraded conditions (failed optional sections, files that
            could not be fetched, duplicate names).
        report_name: Archive entry name of the embedded evidence report.
    """

    data: bytes
    filename: str
    manifest: dict[str, Any]
    counts: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    report_name: str | None = None

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    def summary(self) -> str:
        parts = [f"{count} {name}" for name, count in self.counts.items() if count]
        return ", ".join(parts) if parts else "empty project"


@dataclass
class ImportResult:
    """
    Outcome of an import whose project shell was created.

    Individual rows can still have been skipped (unresolved references,
    missing files) or failed (store errors); neither makes the import fail.
    """

    project_id: str
    project_name: str = ""
    restored: dict[str, int] = field(default_factory=dict)
    skipped: dict[str, int] = field(default_factory=dict)
    failed: dict[str, int] = field(default_factory=dict)
    dropped_members: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def _count(self, tally: dict[str, int], category: str, n: int = 1) -> None:
        tally[category] = tally.get(category, 0) + n

    def restore(self, category: str, n: int = 1) -> None:
        self._count(self.restored, category, n)

    def skip(self, category: str, n: int = 1) -> None:
        self._count(self.skipped, category, n)

    def fail(self, category: str, n: int = 1) -> None:
        self._count(self.failed, category, n)

    @property
    def total_failed(self) -> int:
        return sum(self.failed.values())

    def summary(self) -> str:
        """Human-readable tally of what was restored."""
        restored = [f"{n} {name}" for name, n in self.restored.items() if n]
        text = "Restored " + (", ".join(restored) if restored else "nothing")
        if self.dropped_members:
            text += f"; {len(self.dropped_members)} member(s) not found"
        if self.total_failed:
            text += f"; {self.total_failed} row(s) failed"
        return text


def count_rows(manifest: Mapping[str, Any], keys: Iterable[str]) -> dict[str, int]:
    """Count the entries of each list-valued manifest key that is present."""
    counts = {}
    for key in keys:
        value = manifest.get(key)
        if isinstance(value, list):
            counts[key] = len(value)
    return counts
