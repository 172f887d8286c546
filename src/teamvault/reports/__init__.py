"""
Human-readable reports for exported projects.

Supported Formats:
    - PDF: Paginated evidence report. Requires weasyprint.
    - HTML: The same document, used when weasyprint is not installed.

Example:
    from teamvault.reports import EvidenceReportGenerator, EvidenceReportConfig

    generator = EvidenceReportGenerator(EvidenceReportConfig(organization="UEH"))
    report = generator.generate(snapshot)
"""

from teamvault.reports.evidence_report import (
    WEASYPRINT_AVAILABLE,
    EvidenceReport,
    EvidenceReportConfig,
    EvidenceReportGenerator,
)

__all__ = [
    "EvidenceReportGenerator",
    "EvidenceReportConfig",
    "EvidenceReport",
    "WEASYPRINT_AVAILABLE",
]
