"""
Backup and restore manager for team projects.

Wires the exporter, file collector, archive codec, importer and evidence
report generator together behind four operations:

    export_project   project id -> archive bytes + suggested filename
    import_archive   archive bytes + actor id -> new project
    inspect_archive  archive bytes -> manifest summary
    verify_archive   archive bytes -> (ok, errors)
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from teamvault.backup.archive import ArchiveCodec
from teamvault.backup.exporter import GraphExporter
from teamvault.backup.files import FileCollector
from teamvault.backup.importer import GraphImporter
from teamvault.backup.models import (
    ALL_OPTIONAL_KEYS,
    ExportOptions,
    ExportResult,
    ImportResult,
    ProgressCallback,
    ProjectSnapshot,
    count_rows,
)
from teamvault.config.settings import BackupConfig, ReportingConfig
from teamvault.reports.evidence_report import (
    EvidenceReportConfig,
    EvidenceReportGenerator,
)
from teamvault.store.base import DataStore, ObjectStorage

logger = logging.getLogger(__name__)

CORE_KEYS = ("members", "stages", "tasks")


def suggested_filename(project_name: str, when: datetime | None = None) -> str:
    """`<name with non-alphanumerics as _>_<YYYY-MM-DD>.zip`"""
    when = when or datetime.now(UTC)
    safe = re.sub(r"[^a-zA-Z0-9]", "_", project_name or "project")
    return f"{safe}_{when.strftime('%Y-%m-%d')}.zip"


def _monotonic(progress: ProgressCallback | None) -> ProgressCallback | None:
    """Wrap a progress callback so percentages never go backwards."""
    if progress is None:
        return None
    last = [0]

    def report(percent: int, phase: str) -> None:
        percent = max(last[0], min(100, percent))
        last[0] = percent
        progress(percent, phase)

    return report


def describe_archive(blob: bytes, codec: ArchiveCodec | None = None) -> dict[str, Any]:
    """
    Summarize an archive without importing it.

    Returns:
        Dictionary with version, project name, export time, per-section
        counts (None for sections that were not exported), file totals,
        the report entry name and the integrity check outcome.

    Raises:
        ArchiveError: If the archive cannot be unpacked.
    """
    codec = codec or ArchiveCodec()
    archive = codec.unpack(blob)
    manifest = archive.manifest
    index = archive.file_index()
    ok, errors = codec.verify(blob)

    sections: dict[str, int | None] = {}
    for key in CORE_KEYS + ALL_OPTIONAL_KEYS:
        value = manifest.get(key)
        sections[key] = len(value) if isinstance(value, list) else None

    return {
        "version": manifest.get("version"),
        "project_name": manifest.get("project_name"),
        "exported_at": manifest.get("exported_at"),
        "sections": sections,
        "files": len(index),
        "files_bytes": sum(entry.file_size for entry in index),
        "report": archive.report_name,
        "valid": ok,
        "errors": errors,
    }


class BackupManager:
    """
    Exports projects to portable archives and restores them as new projects.

    Usage:
        manager = BackupManager(store, storage, settings.backup, settings.reporting)

        result = manager.export_project(project_id)
        path = manager.save_export(result, Path("./backups"))

        imported = manager.import_archive(path.read_bytes(), actor_id)
        print(imported.summary())
    """

    def __init__(
        self,
        store: DataStore,
        storage: ObjectStorage,
        config: BackupConfig | None = None,
        reporting: ReportingConfig | None = None,
    ) -> None:
        self.store = store
        self.storage = storage
        self.config = config or BackupConfig()
        self.reporting = reporting or ReportingConfig()
        self.codec = ArchiveCodec()

    def export_project(
        self,
        project_id: str,
        options: ExportOptions | None = None,
        include_report: bool | None = None,
        progress: ProgressCallback | None = None,
    ) -> ExportResult:
        """
        Export one project to archive bytes.

        Args:
            project_id: Source project.
            options: Optional sections to include (all by default).
            include_report: Embed the evidence report; defaults to config.
            progress: Optional callback receiving (percent, phase).

        Returns:
            ExportResult with the archive bytes and a tally of its contents.

        Raises:
            ExportError: If the project is missing or a required fetch fails.
        """
        options = options or ExportOptions()
        progress = _monotonic(progress)
        if include_report is None:
            include_report = self.config.include_report

        exporter = GraphExporter(
            self.store,
            activity_log_limit=self.config.activity_log_limit,
            duplicate_names=self.config.duplicate_names,
            max_workers=self.config.max_workers,
        )
        graph = exporter.export(project_id, options, progress)
        warnings = list(graph.warnings)

        if progress:
            progress(50, "Fetching files")
        collected = FileCollector(self.storage, self.config.max_workers).collect(graph.file_refs)
        warnings.extend(f"File could not be fetched: {f}" for f in collected.failures)

        manifest = graph.manifest
        manifest["files"] = [entry.to_dict() for entry in collected.entries]

        report = None
        if include_report:
            if progress:
                progress(90, "Generating evidence report")
            report = self._build_report(graph.snapshot, warnings)

        if progress:
            progress(95, "Packing archive")
        data = self.codec.pack(manifest, collected.payloads, report)

        counts = {"files": len(collected.entries)}
        counts.update(count_rows(manifest, CORE_KEYS + ALL_OPTIONAL_KEYS))

        result = ExportResult(
            data=data,
            filename=suggested_filename(manifest["project_name"]),
            manifest=manifest,
            counts=counts,
            warnings=warnings,
            report_name=report[0] if report else None,
        )
        if progress:
            progress(100, "Done")
        logger.info(
            f"Exported '{manifest['project_name']}' ({result.size_bytes} bytes): "
            f"{result.summary()}"
        )
        return result

    def _build_report(
        self, snapshot: ProjectSnapshot, warnings: list[str]
    ) -> tuple[str, bytes] | None:
        generator = EvidenceReportGenerator(
            EvidenceReportConfig(
                organization=self.reporting.organization,
                activity_log_limit=self.reporting.activity_log_limit,
                footer_text=self.reporting.footer_text,
            )
        )
        try:
            report = generator.generate(snapshot)
        except Exception as e:
            # Report failures never fail the export
            logger.warning(f"Could not generate evidence report: {e}")
            warnings.append(f"Evidence report not generated: {e}")
            return None
        return report.name, report.data

    def save_export(self, result: ExportResult, output_dir: Path | None = None) -> Path:
        """Write an export to `output_dir` under its suggested filename."""
        output_dir = Path(output_dir or ".")
        output_dir.mkdir(parents=True, exist_ok=True)
        path = output_dir / result.filename
        path.write_bytes(result.data)
        logger.info(f"Wrote archive: {path}")
        return path

    def import_archive(
        self,
        blob: bytes,
        actor_id: str,
        progress: ProgressCallback | None = None,
    ) -> ImportResult:
        """
        Restore an archive as a new project owned by `actor_id`.

        Raises:
            ArchiveReadError, ManifestMissingError, ManifestShapeError:
                If the archive cannot be used. Nothing is created.
            ProjectCreationError: If the project shell cannot be created.
        """
        archive = self.codec.unpack(blob)
        importer = GraphImporter(
            self.store,
            self.storage,
            name_suffix=self.config.import_name_suffix,
            max_workers=self.config.max_workers,
        )
        return importer.import_archive(archive, actor_id, _monotonic(progress))

    def inspect_archive(self, blob: bytes) -> dict[str, Any]:
        """Summarize an archive without importing it. See describe_archive()."""
        return describe_archive(blob, self.codec)

    def verify_archive(self, blob: bytes) -> tuple[bool, list[str]]:
        """
        Verify archive integrity.

        Returns:
            Tuple of (is_valid, list of error messages).
        """
        return self.codec.verify(blob)
