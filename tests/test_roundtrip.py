"""
End-to-end export -> import tests through BackupManager.

The source project lives in one MemoryStore and is restored into another
where only students S001 and S002 have accounts.
"""

from __future__ import annotations

import json
import tempfile
import unittest
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

from project_fixtures import (
    ACTOR_ID,
    DIAGRAM_PNG,
    GUIDE_DOCX,
    PROJECT_ID,
    SURVEY_PDF,
    build_destination_store,
    build_source_store,
)

import teamvault.reports.evidence_report as report_module
from teamvault.backup import (
    ArchiveCodec,
    BackupManager,
    ExportOptions,
    ManifestShapeError,
    describe_archive,
    suggested_filename,
)
from teamvault.config.settings import BackupConfig
from teamvault.store.memory import MemoryStore


class RoundTripTestCase(unittest.TestCase):
    """Shared setup: export the fixture project once per test."""

    def setUp(self) -> None:
        self.source = build_source_store()
        self.destination = build_destination_store()
        config = BackupConfig(max_workers=4, include_report=False)
        self.exporter = BackupManager(self.source, self.source, config)
        self.importer = BackupManager(self.destination, self.destination, config)

    def export(self, options: ExportOptions | None = None):
        return self.exporter.export_project(PROJECT_ID, options)


class TestRoundTrip(RoundTripTestCase):
    """Full export and import of the fixture project."""

    def test_counts_survive_the_round_trip(self) -> None:
        """Everything that can resolve is recreated."""
        exported = self.export()
        result = self.importer.import_archive(exported.data, ACTOR_ID)
        store = self.destination

        self.assertEqual(exported.counts["files"], 3)
        self.assertEqual(store.count("groups"), 1)
        self.assertEqual(store.count("stages"), 2)
        self.assertEqual(store.count("tasks"), 2)
        self.assertEqual(store.count("task_assignments"), 2)
        self.assertEqual(store.count("task_scores"), 1)
        self.assertEqual(store.count("submission_history"), 1)
        self.assertEqual(store.count("project_messages"), 2)
        self.assertEqual(store.count("task_notes"), 1)
        self.assertEqual(store.count("task_note_attachments"), 1)
        self.assertEqual(store.count("task_comments"), 2)
        self.assertEqual(store.count("resource_folders"), 1)
        self.assertEqual(store.count("project_resources"), 2)
        self.assertEqual(store.count("stage_weights"), 2)
        self.assertEqual(store.count("member_stage_scores"), 1)
        self.assertEqual(store.count("member_final_scores"), 1)
        self.assertEqual(store.count("score_appeals"), 1)
        self.assertEqual(store.count("activity_logs"), 0)

        self.assertEqual(result.restored["files"], 3)
        self.assertEqual(result.skipped["activity_logs"], 3)
        self.assertEqual(result.total_failed, 0)

    def test_unresolvable_member_is_dropped(self) -> None:
        """S003 has no account here: membership and their rows are skipped."""
        result = self.importer.import_archive(self.export().data, ACTOR_ID)

        self.assertEqual(result.dropped_members, ["S003"])
        members = {m["user_id"]: m["role"] for m in self.destination.rows("group_members")}
        self.assertEqual(members, {ACTOR_ID: "leader", "d1": "leader", "d2": "member"})
        self.assertEqual(result.skipped["assignments"], 1)
        self.assertEqual(result.skipped["task_scores"], 1)

    def test_references_point_at_new_rows(self) -> None:
        """Stage, parent comment, folder and score references are remapped."""
        result = self.importer.import_archive(self.export().data, ACTOR_ID)
        store = self.destination

        stages = {s["name"]: s["id"] for s in store.rows("stages")}
        tasks = {t["title"]: t for t in store.rows("tasks")}
        self.assertEqual(tasks["Survey"]["stage_id"], stages["Research"])
        self.assertEqual(tasks["Prototype"]["stage_id"], stages["Build"])
        self.assertTrue(all(t["group_id"] == result.project_id for t in tasks.values()))

        comments = {c["content"]: c for c in store.rows("task_comments")}
        self.assertEqual(comments["Thanks"]["parent_id"], comments["Looks good"]["id"])
        self.assertIsNone(comments["Looks good"]["parent_id"])

        folder = store.rows("resource_folders")[0]
        guide = next(r for r in store.rows("project_resources") if r["name"] == "Guide")
        self.assertEqual(guide["folder_id"], folder["id"])

        drive = next(r for r in store.rows("project_resources") if r["name"] == "Drive")
        # Uploaded by S003, who is not here
        self.assertEqual(drive["uploaded_by"], ACTOR_ID)
        self.assertEqual(drive["link_url"], "https://drive.example.com/x")

        appeal = store.rows("score_appeals")[0]
        self.assertEqual(appeal["task_score_id"], store.rows("task_scores")[0]["id"])
        self.assertEqual(appeal["reviewer_id"], "d2")

    def test_files_are_rehosted(self) -> None:
        """Files land under the actor and new project with identical bytes."""
        result = self.importer.import_archive(self.export().data, ACTOR_ID)
        store = self.destination
        prefix = f"{ACTOR_ID}/{result.project_id}/"

        survey = next(t for t in store.rows("tasks") if t["title"] == "Survey")
        items = json.loads(survey["submission_link"])
        self.assertEqual(len(items), 2)
        self.assertTrue(items[0]["file_path"].startswith(prefix))
        self.assertEqual(items[1]["url"], "https://example.com/doc")
        self.assertEqual(store.download("task-submissions", items[0]["file_path"]), SURVEY_PDF)

        submission = store.rows("submission_history")[0]
        self.assertEqual(submission["file_path"], items[0]["file_path"])

        attachment = store.rows("task_note_attachments")[0]
        self.assertEqual(store.download("task-note-attachments", attachment["file_path"]), DIAGRAM_PNG)

        guide = next(r for r in store.rows("project_resources") if r["name"] == "Guide")
        self.assertEqual(store.download("project-resources", guide["file_path"]), GUIDE_DOCX)

        prototype = next(t for t in store.rows("tasks") if t["title"] == "Prototype")
        self.assertEqual(prototype["submission_link"], "https://example.com/prototype")

    def test_importing_twice_creates_two_projects(self) -> None:
        """Imports are additive; the source is never touched."""
        data = self.export().data
        before = self.source.count("groups")

        first = self.importer.import_archive(data, ACTOR_ID)
        second = self.importer.import_archive(data, ACTOR_ID)

        self.assertNotEqual(first.project_id, second.project_id)
        self.assertEqual(self.destination.count("groups"), 2)
        self.assertEqual(self.destination.count("tasks"), 4)
        self.assertEqual(len(self.destination.objects()), 6)
        self.assertEqual(self.source.count("groups"), before)

    def test_optional_sections_omitted(self) -> None:
        """Sections left out of the export are not restored."""
        exported = self.export(ExportOptions.none())
        result = self.importer.import_archive(exported.data, ACTOR_ID)

        self.assertEqual(exported.counts["files"], 1)
        self.assertEqual(self.destination.count("tasks"), 2)
        for table in (
            "project_messages",
            "task_notes",
            "task_comments",
            "project_resources",
            "stage_weights",
            "member_stage_scores",
            "score_appeals",
        ):
            self.assertEqual(self.destination.count(table), 0, table)
        self.assertNotIn("activity_logs", result.skipped)

    def test_failed_download_is_omitted_from_archive(self) -> None:
        """A file that cannot be fetched is left out and its reference cleared."""
        self.source.fail_downloads.add(("task-submissions", "u1/survey.pdf"))
        exported = self.export()

        self.assertEqual(exported.counts["files"], 2)
        self.assertTrue(any("u1/survey.pdf" in w for w in exported.warnings))

        self.importer.import_archive(exported.data, ACTOR_ID)
        survey = next(t for t in self.destination.rows("tasks") if t["title"] == "Survey")
        items = json.loads(survey["submission_link"])
        self.assertEqual(items, [{"url": "https://example.com/doc", "title": "Shared doc"}])
        self.assertIsNone(self.destination.rows("submission_history")[0]["file_path"])

    def test_fatal_shape_error_creates_nothing(self) -> None:
        """An archive without a version is refused before any write."""
        blob = ArchiveCodec().pack({"group": {"name": "x"}, "version": ""}, {})

        with self.assertRaises(ManifestShapeError):
            self.importer.import_archive(blob, ACTOR_ID)
        self.assertEqual(self.destination.count("groups"), 0)
        self.assertEqual(self.destination.objects(), {})

    def test_empty_project_round_trip(self) -> None:
        """A project with no members, stages or tasks exports and imports."""
        source = MemoryStore()
        source.seed("groups", [{"id": "empty", "name": "Empty", "created_by": "u0"}])
        exporter = BackupManager(source, source, BackupConfig(include_report=False))

        exported = exporter.export_project("empty")
        manifest = exported.manifest
        self.assertEqual(manifest["members"], [])
        self.assertEqual(manifest["stages"], [])
        self.assertEqual(manifest["tasks"], [])
        self.assertEqual(manifest["files"], [])

        result = self.importer.import_archive(exported.data, ACTOR_ID)
        self.assertTrue(result.project_id)
        self.assertEqual(self.destination.get("groups", result.project_id)["name"], "Empty (Copy)")
        self.assertEqual(result.total_failed, 0)


class TestManagerHelpers(RoundTripTestCase):
    """Tests for filenames, saving, inspecting and the embedded report."""

    def test_suggested_filename(self) -> None:
        """Non-alphanumerics become underscores and the date is appended."""
        name = suggested_filename("\u0110\u1ed3 \u00e1n: Web #2", datetime(2024, 5, 6))
        self.assertEqual(name, "____n__Web__2_2024-05-06.zip")
        self.assertEqual(self.export().filename[:17], "Capstone_Project_")

    def test_save_export(self) -> None:
        """The archive is written under its suggested name."""
        exported = self.export()
        with tempfile.TemporaryDirectory() as tmpdir:
            path = self.exporter.save_export(exported, Path(tmpdir) / "out")

            self.assertEqual(path.name, exported.filename)
            self.assertEqual(path.read_bytes(), exported.data)

    def test_inspect_archive(self) -> None:
        """Inspection reports sections, files and integrity."""
        info = describe_archive(self.export(ExportOptions(messages=False)).data)

        self.assertEqual(info["version"], "4.0")
        self.assertEqual(info["project_name"], "Capstone Project")
        self.assertEqual(info["sections"]["tasks"], 2)
        self.assertIsNone(info["sections"]["messages"])
        self.assertEqual(info["files"], 3)
        self.assertTrue(info["valid"])
        self.assertIsNone(info["report"])

    def test_progress_is_monotonic(self) -> None:
        """Export and import progress never goes backwards and ends at 100."""
        export_progress: list[int] = []
        exported = self.exporter.export_project(
            PROJECT_ID, progress=lambda p, phase: export_progress.append(p)
        )
        import_progress: list[int] = []
        self.importer.import_archive(
            exported.data, ACTOR_ID, progress=lambda p, phase: import_progress.append(p)
        )

        for seen in (export_progress, import_progress):
            self.assertEqual(seen, sorted(seen))
            self.assertEqual(seen[-1], 100)

    def test_html_report_embedded_without_weasyprint(self) -> None:
        """Without weasyprint the evidence report is embedded as HTML."""
        with patch.object(report_module, "WEASYPRINT_AVAILABLE", False):
            exported = self.exporter.export_project(PROJECT_ID, include_report=True)

        self.assertEqual(exported.report_name, "evidence-capstone-project.html")
        archive = ArchiveCodec().unpack(exported.data)
        self.assertEqual(archive.report_name, "evidence-capstone-project.html")

        # The report is ignored on import
        self.importer.import_archive(exported.data, ACTOR_ID)
        self.assertEqual(self.destination.count("tasks"), 2)

    def test_report_failure_does_not_fail_export(self) -> None:
        """A crashing report generator only adds a warning."""
        with patch.object(
            report_module.EvidenceReportGenerator,
            "generate",
            side_effect=RuntimeError("renderer exploded"),
        ):
            exported = self.exporter.export_project(PROJECT_ID, include_report=True)

        self.assertIsNone(exported.report_name)
        self.assertTrue(any("renderer exploded" in w for w in exported.warnings))


if __name__ == "__main__":
    unittest.main()
