"""
Tests for the evidence report generator.

Uses Python's unittest module. weasyprint is always patched so the tests
behave the same whether or not it is installed.
"""

from __future__ import annotations

import unittest
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import teamvault.reports.evidence_report as report_module
from teamvault.backup.models import ExportOptions, ProjectSnapshot
from teamvault.reports.evidence_report import (
    REPORT_CSS,
    EvidenceReport,
    EvidenceReportConfig,
    EvidenceReportGenerator,
    report_slug,
)


def _snapshot(options: ExportOptions | None = None, log_count: int = 3) -> ProjectSnapshot:
    return ProjectSnapshot(
        project={
            "id": "g1",
            "name": "Capstone <Project>",
            "description": "Final year project",
            "instructor_name": "Dr. Pham",
            "leader_id": "u1",
        },
        members=[
            {"user_id": "u1", "role": "leader", "joined_at": "2024-01-01"},
            {"user_id": "u2", "role": "member", "joined_at": "2024-01-02"},
        ],
        profiles={
            "u1": {"id": "u1", "full_name": "Alice Nguyen", "student_id": "S001"},
            "u2": {"id": "u2", "full_name": "Bao Tran", "student_id": "S002"},
        },
        stages=[
            {"id": "st1", "name": "Research"},
            {"id": "st2", "name": "Build"},
        ],
        tasks=[
            {"id": "t1", "stage_id": "st1", "title": "Survey", "status": "DONE"},
            {"id": "t2", "stage_id": "st1", "title": "Interviews", "status": "IN_PROGRESS"},
        ],
        assignments=[{"task_id": "t1", "user_id": "u2"}],
        task_scores=[
            {
                "task_id": "t1",
                "user_id": "u2",
                "base_score": 10,
                "final_score": 9,
                "adjustment": -1,
                "adjustment_reason": "Late draft",
            }
        ],
        score_appeals=[{"user_id": "u2", "reason": "Penalty too high", "status": "pending"}],
        resources=[
            {"name": "Drive", "resource_type": "link", "link_url": "https://drive.example.com/x"}
        ],
        activity_logs=[
            {"created_at": f"2024-02-{i:02d}", "user_name": "Alice", "action": f"action-{i}"}
            for i in range(1, log_count + 1)
        ],
        options=options or ExportOptions(),
    )


class TestReportSlug(unittest.TestCase):
    """Tests for report_slug."""

    def test_slug(self) -> None:
        """Test names are lowercased and non-alphanumerics collapsed."""
        self.assertEqual(report_slug("Capstone <Project> 2024"), "capstone-project-2024")

    def test_empty_name(self) -> None:
        """Test an empty or symbol-only name falls back to 'project'."""
        self.assertEqual(report_slug(""), "project")
        self.assertEqual(report_slug("!!!"), "project")


class TestEvidenceReportHtml(unittest.TestCase):
    """Tests for HTML generation."""

    def setUp(self) -> None:
        self.config = EvidenceReportConfig(
            organization="UEH",
            activity_log_limit=2,
            report_date=datetime(2024, 5, 6, tzinfo=UTC),
        )
        self.generator = EvidenceReportGenerator(self.config)

    def test_document_structure(self) -> None:
        """Test the cover and every section are present."""
        html_content = self.generator.generate_html(_snapshot())

        self.assertTrue(html_content.startswith("<!DOCTYPE html>"))
        self.assertTrue(html_content.endswith("</body></html>"))
        self.assertIn("May 06, 2024", html_content)
        self.assertIn("UEH", html_content)
        for heading in (
            "General Information",
            "Members",
            "Progress",
            "Tasks",
            "Scores",
            "Resources",
            "Activity Log",
        ):
            self.assertIn(f"<h1>{heading}</h1>", html_content)

    def test_values_are_escaped(self) -> None:
        """Test user content is HTML-escaped."""
        html_content = self.generator.generate_html(_snapshot())

        self.assertIn("Capstone &lt;Project&gt;", html_content)
        self.assertNotIn("Capstone <Project>", html_content)

    def test_members_and_assignees(self) -> None:
        """Test members are labelled by name and student id."""
        html_content = self.generator.generate_html(_snapshot())

        self.assertIn("Alice Nguyen (S001)", html_content)
        self.assertIn("Bao Tran (S002)", html_content)

    def test_stage_progress(self) -> None:
        """Test per-stage completion percentage."""
        html_content = self.generator.generate_html(_snapshot())

        self.assertIn("<td>50%</td>", html_content)

    def test_adjustments_and_appeals(self) -> None:
        """Test score adjustments and appeals are listed."""
        html_content = self.generator.generate_html(_snapshot())

        self.assertIn("Late draft", html_content)
        self.assertIn("Penalty too high", html_content)

    def test_activity_capped(self) -> None:
        """Test only the configured number of activity entries are listed."""
        html_content = self.generator.generate_html(_snapshot(log_count=5))

        self.assertIn("action-1", html_content)
        self.assertIn("action-2", html_content)
        self.assertNotIn("action-3", html_content)
        self.assertIn("... and 3 more entries", html_content)

    def test_activity_under_cap(self) -> None:
        """Test no overflow note when all entries fit."""
        html_content = self.generator.generate_html(_snapshot(log_count=2))

        self.assertNotIn("more entries", html_content)

    def test_sections_follow_export_options(self) -> None:
        """Test unexported sections are left out of the report."""
        html_content = self.generator.generate_html(_snapshot(ExportOptions.none()))

        self.assertNotIn("<h1>Scores</h1>", html_content)
        self.assertNotIn("<h1>Resources</h1>", html_content)
        self.assertNotIn("<h1>Activity Log</h1>", html_content)
        self.assertIn("<h1>Tasks</h1>", html_content)

    def test_empty_tables(self) -> None:
        """Test an empty project still renders."""
        html_content = self.generator.generate_html(ProjectSnapshot(project={"name": "Empty"}))

        self.assertIn("No entries.", html_content)

    def test_custom_footer(self) -> None:
        """Test footer text comes from config."""
        generator = EvidenceReportGenerator(EvidenceReportConfig(footer_text="Archived copy"))
        self.assertIn("Archived copy", generator.generate_html(_snapshot()))


class TestEvidenceReportGenerate(unittest.TestCase):
    """Tests for generate() with and without weasyprint."""

    def setUp(self) -> None:
        self.generator = EvidenceReportGenerator()

    def test_html_when_weasyprint_missing(self) -> None:
        """Test HTML output is used when weasyprint is not installed."""
        with patch.object(report_module, "WEASYPRINT_AVAILABLE", False):
            report = self.generator.generate(_snapshot())

        self.assertIsInstance(report, EvidenceReport)
        self.assertEqual(report.name, "evidence-capstone-project.html")
        self.assertEqual(report.content_type, "text/html")
        self.assertFalse(report.is_pdf)
        self.assertIn(b"<!DOCTYPE html>", report.data)

    def test_pdf_with_weasyprint(self) -> None:
        """Test PDF generation with mocked weasyprint."""
        mock_html_class = MagicMock()
        mock_css_class = MagicMock()
        mock_html_class.return_value.write_pdf.return_value = b"%PDF-1.7 mock"

        with patch.object(report_module, "WEASYPRINT_AVAILABLE", True):
            with patch.object(report_module, "HTML", mock_html_class, create=True):
                with patch.object(report_module, "CSS", mock_css_class, create=True):
                    report = self.generator.generate(_snapshot())

        self.assertTrue(report.is_pdf)
        self.assertEqual(report.name, "evidence-capstone-project.pdf")
        self.assertEqual(report.data, b"%PDF-1.7 mock")
        mock_html_class.assert_called_once()
        mock_css_class.assert_called_once_with(string=REPORT_CSS)

    def test_pdf_failure_falls_back_to_html(self) -> None:
        """Test a weasyprint exception yields the HTML report."""
        mock_html_class = MagicMock(side_effect=Exception("PDF generation error"))

        with patch.object(report_module, "WEASYPRINT_AVAILABLE", True):
            with patch.object(report_module, "HTML", mock_html_class, create=True):
                with patch.object(report_module, "CSS", MagicMock(), create=True):
                    report = self.generator.generate(_snapshot())

        self.assertFalse(report.is_pdf)
        self.assertTrue(report.name.endswith(".html"))

    def test_pdf_available_property(self) -> None:
        """Test pdf_available reflects weasyprint availability."""
        with patch.object(report_module, "WEASYPRINT_AVAILABLE", False):
            self.assertFalse(self.generator.pdf_available)


class TestReportCSS(unittest.TestCase):
    """Tests for REPORT_CSS constant."""

    def test_css_has_page_rules(self) -> None:
        """Test CSS defines A4 pages and a cover page."""
        self.assertIn("size: A4", REPORT_CSS)
        self.assertIn("@page cover", REPORT_CSS)


if __name__ == "__main__":
    unittest.main()
