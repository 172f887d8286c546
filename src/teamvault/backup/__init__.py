"""
Project backup and restore.

Exports a project's whole graph (members, stages, tasks, scores, notes,
comments, resources, logs and attached files) into a portable ZIP archive,
and restores such an archive as a brand-new project, in the same or another
deployment.

Usage:
    from teamvault.backup import BackupManager, ExportOptions

    manager = BackupManager(store, storage)

    # Export a project
    result = manager.export_project(project_id, ExportOptions(messages=False))
    manager.save_export(result, Path("./backups"))

    # Restore it as a new project
    imported = manager.import_archive(result.data, actor_id)

    # Verify archive integrity
    valid, errors = manager.verify_archive(result.data)
"""

from teamvault.backup.archive import ArchiveCodec, UnpackedArchive
from teamvault.backup.exporter import GraphExporter
from teamvault.backup.importer import GraphImporter
from teamvault.backup.manager import (
    BackupManager,
    describe_archive,
    suggested_filename,
)
from teamvault.backup.models import (
    ArchiveError,
    ArchiveReadError,
    BackupError,
    DuplicateNaturalKeyError,
    ExportError,
    ExportOptions,
    ExportResult,
    FileList,
    ImportResult,
    LinkOnly,
    ManifestMissingError,
    ManifestShapeError,
    ProjectCreationError,
    ProjectSnapshot,
    parse_submission_payload,
)
from teamvault.backup.resolver import KeyKind, NaturalKeyResolver

__all__ = [
    "BackupManager",
    "suggested_filename",
    "describe_archive",
    "GraphExporter",
    "GraphImporter",
    "ArchiveCodec",
    "UnpackedArchive",
    "NaturalKeyResolver",
    "KeyKind",
    "ExportOptions",
    "ExportResult",
    "ImportResult",
    "ProjectSnapshot",
    "LinkOnly",
    "FileList",
    "parse_submission_payload",
    "BackupError",
    "ArchiveError",
    "ArchiveReadError",
    "ManifestMissingError",
    "ManifestShapeError",
    "ExportError",
    "DuplicateNaturalKeyError",
    "ProjectCreationError",
]
