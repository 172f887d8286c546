"""
teamvault - Project backup and restore for team-project workspaces

Exports an entire team project (members, stages, tasks, scores, notes,
comments, resources, activity and every attached file) into one portable
archive, and restores it as a new project in any deployment.

Key Features:
    - Full-graph export with natural keys instead of database ids
    - Attachment collection with deduplication and checksums
    - Transaction-free, additive restore that tolerates partial failures
    - Optional evidence report (PDF/HTML) embedded in the archive
    - Encrypted storage of deployment service keys

Design Principles:
    - Portability: Archives mean something without the source database
    - Additivity: Restores only ever create new rows
    - Tolerance: One bad row or file never sinks the rest
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from teamvault.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
