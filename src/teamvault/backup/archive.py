"""
Archive codec.

An archive is a ZIP container with:
    backup.json         - the manifest (UTF-8 JSON)
    files/<name>        - one entry per unique (bucket, path) attachment
    evidence-<slug>.*   - optionally, one generated report (ignored on import)

Unpacking fails with a distinct error when the blob is not a readable
archive, when the manifest entry is missing, and when the manifest fails the
minimal shape check (a version string and a project object).
"""

from __future__ import annotations

import io
import json
import logging
import zipfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from teamvault.backup.files import sha256_hex
from teamvault.backup.models import (
    FILES_PREFIX,
    MANIFEST_NAME,
    ArchiveReadError,
    BackupError,
    FileIndexEntry,
    ManifestMissingError,
    ManifestShapeError,
)

logger = logging.getLogger(__name__)


def validate_manifest(manifest: Any) -> None:
    """
    Minimal shape check shared by unpack and verify.

    Raises:
        ManifestShapeError: If the manifest has no version or no project.
    """
    if not isinstance(manifest, dict):
        raise ManifestShapeError("Manifest is not a JSON object")
    version = manifest.get("version")
    if not isinstance(version, str) or not version:
        raise ManifestShapeError("Manifest has no version")
    if not isinstance(manifest.get("group"), dict):
        raise ManifestShapeError("Manifest has no project ('group') object")
    files = manifest.get("files", [])
    if not isinstance(files, list):
        raise ManifestShapeError("Manifest 'files' is not a list")


@dataclass
class UnpackedArchive:
    """A decoded archive: the manifest plus access to its file entries."""

    manifest: dict[str, Any]
    files: dict[str, bytes] = field(default_factory=dict)
    report_name: str | None = None

    def read(self, zip_path: str) -> bytes | None:
        """Bytes of a file entry, or None if the archive lacks it."""
        return self.files.get(zip_path)

    def file_index(self) -> list[FileIndexEntry]:
        return [
            FileIndexEntry.from_dict(row)
            for row in self.manifest.get("files", [])
            if isinstance(row, dict)
        ]


class ArchiveCodec:
    """Packs and unpacks backup archives."""

    def pack(
        self,
        manifest: dict[str, Any],
        files: Mapping[str, bytes],
        report: tuple[str, bytes] | None = None,
    ) -> bytes:
        """
        Serialize a manifest and its files into ZIP bytes.

        Args:
            manifest: The manifest document.
            files: Archive path (under files/) -> bytes.
            report: Optional (entry name, bytes) of a generated report.
        """
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            zf.writestr(
                MANIFEST_NAME,
                json.dumps(manifest, indent=2, ensure_ascii=False, default=str),
            )
            for zip_path in sorted(files):
                if not zip_path.startswith(FILES_PREFIX):
                    raise ValueError(f"File entry outside {FILES_PREFIX}: {zip_path}")
                zf.writestr(zip_path, files[zip_path])
            if report is not None:
                name, data = report
                zf.writestr(name, data)
        return buffer.getvalue()

    def unpack(self, blob: bytes) -> UnpackedArchive:
        """
        Decode archive bytes.

        Raises:
            ArchiveReadError: If the blob is not a ZIP or the manifest is
                not valid UTF-8 JSON.
            ManifestMissingError: If there is no manifest entry.
            ManifestShapeError: If the manifest fails the shape check.
        """
        try:
            zf = zipfile.ZipFile(io.BytesIO(blob))
        except (zipfile.BadZipFile, ValueError) as e:
            raise ArchiveReadError(f"Not a readable archive: {e}") from e

        with zf:
            names = zf.namelist()
            if MANIFEST_NAME not in names:
                raise ManifestMissingError(f"Archive has no {MANIFEST_NAME}")

            try:
                manifest = json.loads(zf.read(MANIFEST_NAME).decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as e:
                raise ArchiveReadError(f"Manifest is not valid JSON: {e}") from e
            except (zipfile.BadZipFile, OSError) as e:
                raise ArchiveReadError(f"Cannot read manifest: {e}") from e

            validate_manifest(manifest)

            files: dict[str, bytes] = {}
            report_name = None
            for name in names:
                if name.endswith("/"):
                    continue
                if name.startswith(FILES_PREFIX):
                    try:
                        files[name] = zf.read(name)
                    except (zipfile.BadZipFile, OSError) as e:
                        # Corrupt entries are treated as absent
                        logger.warning(f"Cannot read archive entry {name}: {e}")
                elif name != MANIFEST_NAME and report_name is None:
                    report_name = name

        return UnpackedArchive(manifest=manifest, files=files, report_name=report_name)

    def verify(self, blob: bytes) -> tuple[bool, list[str]]:
        """
        Check an archive without importing it.

        Returns:
            (ok, errors). Errors cover unreadable archives, manifest shape
            and every indexed file that is missing or fails its checksum.
        """
        try:
            archive = self.unpack(blob)
        except BackupError as e:
            return False, [str(e)]

        errors: list[str] = []
        for entry in archive.file_index():
            data = archive.read(entry.zip_path)
            if data is None:
                errors.append(f"Missing file: {entry.zip_path}")
            elif entry.sha256 and sha256_hex(data) != entry.sha256:
                errors.append(f"Checksum mismatch: {entry.zip_path}")

        return len(errors) == 0, errors
