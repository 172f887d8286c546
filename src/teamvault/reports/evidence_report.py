"""
Project evidence report generation.

Produces a paginated, human-readable summary of an exported project: what
the team was, who was in it, how the work progressed and how it was scored.
The report is built from the ProjectSnapshot the exporter already fetched,
so it never queries the store, and it is an additive entry in the archive
that the importer ignores.

Report Structure:
    - Cover page with project name and date
    - General information (project, instructor, team)
    - Member list
    - Progress overview and per-stage progress
    - Task detail table
    - Scores: per task, per stage, final, adjustments, appeals
    - Resources
    - Activity log (most recent entries, capped)

Requires weasyprint optional dependency for PDF generation.
Falls back to HTML-only output if weasyprint is not installed.
"""

from __future__ import annotations

import html
import logging
import re
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from teamvault.backup.models import ProjectSnapshot

logger = logging.getLogger(__name__)

# Check for weasyprint availability
try:
    from weasyprint import CSS, HTML
    WEASYPRINT_AVAILABLE = True
except ImportError:
    WEASYPRINT_AVAILABLE = False
    logger.debug("weasyprint not installed - PDF generation unavailable")


REPORT_CSS = """
@page {
    size: A4;
    margin: 2cm;
    @top-right {
        content: counter(page);
        font-family: "Helvetica Neue", Arial, sans-serif;
        font-size: 9pt;
        color: #666666;
    }
}

@page cover {
    margin: 0;
    @top-right { content: none; }
}

body {
    font-family: "Helvetica Neue", Arial, sans-serif;
    font-size: 10pt;
    line-height: 1.4;
    color: #000000;
}

.cover {
    page: cover;
    height: 100vh;
    display: flex;
    flex-direction: column;
    justify-content: center;
    align-items: center;
    text-align: center;
}

.cover h1 {
    font-size: 30pt;
    font-weight: 300;
    margin-bottom: 0.5em;
}

.cover .subtitle {
    font-size: 16pt;
    color: #333333;
}

.cover .date {
    font-size: 12pt;
    color: #666666;
    margin-top: 2em;
}

.page-break {
    page-break-after: always;
}

h1 {
    font-size: 18pt;
    border-bottom: 2px solid #000000;
    padding-bottom: 0.25em;
}

h2 {
    font-size: 13pt;
    color: #333333;
    margin-top: 1.2em;
}

table {
    width: 100%;
    border-collapse: collapse;
    margin: 0.75em 0;
}

th, td {
    padding: 0.4em 0.5em;
    text-align: left;
    border-bottom: 1px solid #cccccc;
    vertical-align: top;
}

th {
    background: #f0f0f0;
    font-weight: 600;
}

.stats-grid {
    display: grid;
    grid-template-columns: repeat(4, 1fr);
    gap: 0.75em;
}

.stat-box {
    background: #f5f5f5;
    padding: 0.75em;
    text-align: center;
}

.stat-box .value {
    font-size: 20pt;
    font-weight: 700;
}

.stat-box .label {
    font-size: 9pt;
    color: #666666;
}

.muted {
    color: #666666;
}

.footer {
    margin-top: 2em;
    padding-top: 1em;
    border-top: 1px solid #cccccc;
    font-size: 8pt;
    color: #666666;
    text-align: center;
}
"""


@dataclass
class EvidenceReportConfig:
    """
    Configuration for evidence report generation.

    Attributes:
        organization: Shown on the cover under the project name.
        activity_log_limit: Most recent activity entries listed.
        report_date: Date for the report (defaults to now).
        footer_text: Custom footer text.
    """

    organization: str = ""
    activity_log_limit: int = 150
    report_date: datetime | None = None
    footer_text: str = "Generated by teamvault"


@dataclass
class EvidenceReport:
    """A rendered report ready to be written or embedded."""

    name: str
    data: bytes
    content_type: str

    @property
    def is_pdf(self) -> bool:
        return self.content_type == "application/pdf"


def _e(value: Any) -> str:
    if value is None or value == "":
        return "-"
    return html.escape(str(value))


def report_slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug or "project"


class EvidenceReportGenerator:
    """
    Generator for project evidence reports.

    Example:
        generator = EvidenceReportGenerator(EvidenceReportConfig(activity_log_limit=150))
        report = generator.generate(snapshot)
        archive_entry = (report.name, report.data)
    """

    def __init__(self, config: EvidenceReportConfig | None = None) -> None:
        self.config = config or EvidenceReportConfig()

    @property
    def pdf_available(self) -> bool:
        """Check if PDF generation is available."""
        return WEASYPRINT_AVAILABLE

    def generate(self, snapshot: ProjectSnapshot) -> EvidenceReport:
        """
        Render the report as PDF when possible, otherwise as HTML.

        Returns:
            EvidenceReport named `evidence-<slug>.pdf` or `.html`.
        """
        html_content = self.generate_html(snapshot)
        slug = report_slug(snapshot.project.get("name") or "")

        if WEASYPRINT_AVAILABLE:
            try:
                pdf_bytes = HTML(string=html_content).write_pdf(
                    stylesheets=[CSS(string=REPORT_CSS)]
                )
                logger.info(f"Generated evidence PDF for '{snapshot.project.get('name')}'")
                return EvidenceReport(f"evidence-{slug}.pdf", pdf_bytes, "application/pdf")
            except Exception as e:
                logger.error(f"Failed to generate PDF, falling back to HTML: {e}")
        else:
            logger.debug("weasyprint not installed - embedding HTML evidence report")

        return EvidenceReport(
            f"evidence-{slug}.html", html_content.encode("utf-8"), "text/html"
        )

    def generate_html(self, snapshot: ProjectSnapshot) -> str:
        """
        Generate HTML report content.

        Scores, resources and activity sections follow the snapshot's export
        options, so a report never shows data the archive does not carry.
        """
        report_date = self.config.report_date or datetime.now(UTC)
        options = snapshot.options

        sections = [
            self._html_header(snapshot),
            self._generate_cover(snapshot, report_date.strftime("%B %d, %Y")),
            self._generate_general_section(snapshot),
            self._generate_members_section(snapshot),
            self._generate_progress_section(snapshot),
            self._generate_tasks_section(snapshot),
        ]
        if options.scores:
            sections.append(self._generate_scores_section(snapshot))
        if options.resources:
            sections.append(self._generate_resources_section(snapshot))
        if options.activity_logs:
            sections.append(self._generate_activity_section(snapshot))
        sections.append(self._generate_footer())
        sections.append("</body></html>")

        return "\n".join(sections)

    # -- Helpers ------------------------------------------------------------

    def _member_label(self, snapshot: ProjectSnapshot, user_id: str | None) -> str:
        profile = snapshot.profile_for(user_id)
        if not profile:
            return "-"
        name = profile.get("full_name") or "Unknown"
        student_id = profile.get("student_id")
        return _e(f"{name} ({student_id})" if student_id else name)

    def _table(self, headers: list[str], rows: list[list[str]]) -> str:
        if not rows:
            return '<p class="muted">No entries.</p>'
        head = "".join(f"<th>{h}</th>" for h in headers)
        body = "".join("<tr>" + "".join(f"<td>{c}</td>" for c in row) + "</tr>" for row in rows)
        return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"

    # -- Sections -----------------------------------------------------------

    def _html_header(self, snapshot: ProjectSnapshot) -> str:
        """Generate HTML document header."""
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Project Evidence - {_e(snapshot.project.get("name"))}</title>
    <style>{REPORT_CSS}</style>
</head>
<body>"""

    def _generate_cover(self, snapshot: ProjectSnapshot, date_str: str) -> str:
        organization = ""
        if self.config.organization:
            organization = f'<div class="subtitle">{_e(self.config.organization)}</div>'
        return f"""
<div class="cover">
    <h1>{_e(snapshot.project.get("name"))}</h1>
    <div class="subtitle">Project Evidence Report</div>
    {organization}
    <div class="date">{date_str}</div>
</div>
<div class="page-break"></div>"""

    def _generate_general_section(self, snapshot: ProjectSnapshot) -> str:
        project = snapshot.project
        leader = self._member_label(snapshot, project.get("leader_id"))
        rows = [
            ["Project", _e(project.get("name"))],
            ["Description", _e(project.get("description"))],
            ["Class code", _e(project.get("class_code"))],
            ["Created", _e(project.get("created_at"))],
            ["Instructor", _e(project.get("instructor_name"))],
            ["Instructor email", _e(project.get("instructor_email"))],
            ["Leader", leader],
            ["Members", str(len(snapshot.members))],
        ]
        body = "".join(f"<tr><th>{k}</th><td>{v}</td></tr>" for k, v in rows)
        return f"<h1>General Information</h1><table>{body}</table>"

    def _generate_members_section(self, snapshot: ProjectSnapshot) -> str:
        rows = []
        for index, member in enumerate(snapshot.members, start=1):
            profile = snapshot.profile_for(member.get("user_id"))
            rows.append(
                [
                    str(index),
                    _e(profile.get("full_name")),
                    _e(profile.get("student_id")),
                    _e(profile.get("email")),
                    _e(member.get("role")),
                    _e(member.get("joined_at")),
                ]
            )
        return "<h1>Members</h1>" + self._table(
            ["#", "Name", "Student ID", "Email", "Role", "Joined"], rows
        )

    def _generate_progress_section(self, snapshot: ProjectSnapshot) -> str:
        statuses = Counter(t.get("status") or "TODO" for t in snapshot.tasks)
        stats = [
            ("Stages", len(snapshot.stages)),
            ("Tasks", len(snapshot.tasks)),
            ("Done", statuses.get("DONE", 0) + statuses.get("VERIFIED", 0)),
            ("In progress", statuses.get("IN_PROGRESS", 0)),
        ]
        boxes = "".join(
            f'<div class="stat-box"><div class="value">{value}</div>'
            f'<div class="label">{label}</div></div>'
            for label, value in stats
        )

        rows = []
        for stage in snapshot.stages:
            stage_tasks = [t for t in snapshot.tasks if t.get("stage_id") == stage["id"]]
            done = sum(1 for t in stage_tasks if t.get("status") in ("DONE", "VERIFIED"))
            percent = f"{done * 100 // len(stage_tasks)}%" if stage_tasks else "-"
            rows.append(
                [
                    _e(stage.get("name")),
                    _e(stage.get("start_date")),
                    _e(stage.get("end_date")),
                    str(len(stage_tasks)),
                    percent,
                ]
            )

        return (
            f'<h1>Progress</h1><div class="stats-grid">{boxes}</div>'
            "<h2>By stage</h2>"
            + self._table(["Stage", "Start", "End", "Tasks", "Completed"], rows)
        )

    def _generate_tasks_section(self, snapshot: ProjectSnapshot) -> str:
        stage_names = {s["id"]: s.get("name") for s in snapshot.stages}
        assignees: dict[str, list[str]] = {}
        for assignment in snapshot.assignments:
            assignees.setdefault(assignment.get("task_id"), []).append(
                self._member_label(snapshot, assignment.get("user_id"))
            )

        rows = [
            [
                _e(task.get("title")),
                _e(stage_names.get(task.get("stage_id"))),
                _e(task.get("status")),
                _e(task.get("deadline")),
                ", ".join(assignees.get(task["id"], [])) or "-",
            ]
            for task in snapshot.tasks
        ]
        return '<div class="page-break"></div><h1>Tasks</h1>' + self._table(
            ["Task", "Stage", "Status", "Deadline", "Assignees"], rows
        )

    def _generate_scores_section(self, snapshot: ProjectSnapshot) -> str:
        task_titles = {t["id"]: t.get("title") for t in snapshot.tasks}
        stage_names = {s["id"]: s.get("name") for s in snapshot.stages}

        task_rows = [
            [
                self._member_label(snapshot, s.get("user_id")),
                _e(task_titles.get(s.get("task_id"))),
                _e(s.get("base_score")),
                _e(s.get("late_penalty")),
                _e(s.get("early_bonus")),
                _e(s.get("final_score")),
            ]
            for s in snapshot.task_scores
        ]
        stage_rows = [
            [
                self._member_label(snapshot, s.get("user_id")),
                _e(stage_names.get(s.get("stage_id"))),
                _e(s.get("average_score")),
                _e(s.get("k_coefficient")),
                _e(s.get("final_stage_score")),
            ]
            for s in snapshot.member_stage_scores
        ]
        final_rows = [
            [
                self._member_label(snapshot, s.get("user_id")),
                _e(s.get("weighted_average")),
                _e(s.get("adjustment")),
                _e(s.get("final_score")),
            ]
            for s in snapshot.member_final_scores
        ]
        adjustment_rows = [
            [
                self._member_label(snapshot, s.get("user_id")),
                _e(task_titles.get(s.get("task_id"))),
                _e(s.get("adjustment")),
                _e(s.get("adjustment_reason")),
            ]
            for s in snapshot.task_scores
            if s.get("adjustment")
        ]
        appeal_rows = [
            [
                self._member_label(snapshot, a.get("user_id")),
                _e(a.get("reason")),
                _e(a.get("status")),
                _e(a.get("reviewer_response")),
            ]
            for a in snapshot.score_appeals
        ]

        return (
            '<div class="page-break"></div><h1>Scores</h1>'
            "<h2>Task scores</h2>"
            + self._table(["Member", "Task", "Base", "Late", "Early", "Final"], task_rows)
            + "<h2>Stage scores</h2>"
            + self._table(["Member", "Stage", "Average", "K", "Final"], stage_rows)
            + "<h2>Final scores</h2>"
            + self._table(["Member", "Weighted avg", "Adjustment", "Final"], final_rows)
            + "<h2>Adjustments</h2>"
            + self._table(["Member", "Task", "Adjustment", "Reason"], adjustment_rows)
            + "<h2>Appeals</h2>"
            + self._table(["Member", "Reason", "Status", "Response"], appeal_rows)
        )

    def _generate_resources_section(self, snapshot: ProjectSnapshot) -> str:
        folders = {f["id"]: f.get("name") for f in snapshot.resource_folders}
        rows = [
            [
                _e(r.get("name")),
                _e(r.get("resource_type") or "file"),
                _e(folders.get(r.get("folder_id"))),
                _e(r.get("link_url") if r.get("resource_type") == "link" else r.get("file_type")),
                self._member_label(snapshot, r.get("uploaded_by")),
            ]
            for r in snapshot.resources
        ]
        return "<h1>Resources</h1>" + self._table(
            ["Name", "Type", "Folder", "Link / format", "Uploaded by"], rows
        )

    def _generate_activity_section(self, snapshot: ProjectSnapshot) -> str:
        limit = self.config.activity_log_limit
        logs = snapshot.activity_logs
        rows = [
            [
                str(index),
                _e(log.get("created_at")),
                _e(log.get("user_name")),
                _e(log.get("action")),
                _e(log.get("description")),
            ]
            for index, log in enumerate(logs[:limit], start=1)
        ]
        more = ""
        if len(logs) > limit:
            more = f'<p class="muted">... and {len(logs) - limit} more entries</p>'
        return (
            '<div class="page-break"></div><h1>Activity Log</h1>'
            + self._table(["#", "Time", "User", "Action", "Description"], rows)
            + more
        )

    def _generate_footer(self) -> str:
        """Generate report footer."""
        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")
        return f"""
<div class="footer">
    {_e(self.config.footer_text)}<br>
    Report generated: {timestamp}
</div>"""
