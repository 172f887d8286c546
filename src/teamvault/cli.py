"""
Command-line interface for teamvault.

Provides commands for managing deployment service keys, exporting a project
to an archive, importing an archive as a new project, and inspecting an
archive without touching any deployment.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, NoReturn

from teamvault import __version__
from teamvault.config.credentials import (
    SERVICE_KEY_ENV,
    CredentialNotFoundError,
    CredentialStore,
    CredentialStoreLockedError,
    CredentialStoreNotInitializedError,
    InvalidPassphraseError,
    resolve_service_key,
)
from teamvault.config.settings import (
    ConfigurationError,
    DeploymentConfig,
    Settings,
    get_config_path,
    load_config,
    save_config,
)

if TYPE_CHECKING:
    from teamvault.backup.models import ProgressCallback
    from teamvault.store.rest import RestDataStore, RestObjectStorage

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False
_verbose_level = 0


def set_output_mode(quiet: bool = False, verbose: int = 0) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
        verbose: Verbosity level (0=normal, 1+=verbose).
    """
    global _quiet_mode, _verbose_level
    _quiet_mode = quiet
    _verbose_level = verbose


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode (for essential output like JSON).
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """Print an error message (always shown, even in quiet mode)."""
    print(message, file=sys.stderr)


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the teamvault CLI."""
    parser = argparse.ArgumentParser(
        prog="teamvault",
        description="Project backup and restore for team-project workspaces",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"teamvault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.teamvault/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # configure command
    configure_parser = subparsers.add_parser(
        "configure",
        help="Manage deployment service keys",
        description="Store, remove or list encrypted deployment service keys.",
    )
    configure_sub = configure_parser.add_subparsers(
        dest="action",
        metavar="<action>",
    )
    configure_sub.required = True

    set_key_parser = configure_sub.add_parser(
        "set-key",
        help="Store the service key for a deployment",
    )
    set_key_parser.add_argument("deployment", help="Deployment name")
    set_key_parser.add_argument(
        "--url",
        help="Also record the deployment URL in the config file",
    )

    delete_key_parser = configure_sub.add_parser(
        "delete-key",
        help="Remove the service key for a deployment",
    )
    delete_key_parser.add_argument("deployment", help="Deployment name")

    configure_sub.add_parser(
        "list",
        help="List configured deployments",
    )
    configure_parser.set_defaults(func=cmd_configure)

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export a project to a backup archive",
        description="Export a whole project graph and its files into a ZIP archive.",
    )
    export_parser.add_argument(
        "--deployment",
        required=True,
        help="Deployment to export from",
    )
    export_parser.add_argument(
        "--project",
        required=True,
        metavar="ID",
        help="Project (group) id to export",
    )
    export_parser.add_argument(
        "--output",
        metavar="DIR",
        help="Output directory (default: current directory)",
    )
    for flag, section in (
        ("--no-messages", "chat messages"),
        ("--no-notes", "task notes and their attachments"),
        ("--no-comments", "task comments"),
        ("--no-resources", "resource folders and resources"),
        ("--no-activity-logs", "activity logs"),
        ("--no-scores", "stage weights, member scores and appeals"),
    ):
        export_parser.add_argument(
            flag,
            action="store_true",
            help=f"Leave out {section}",
        )
    export_parser.add_argument(
        "--no-report",
        action="store_true",
        help="Do not embed the evidence report",
    )
    export_parser.set_defaults(func=cmd_export)

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Restore a backup archive as a new project",
        description="Create a new project from a backup archive.",
    )
    import_parser.add_argument(
        "archive_file",
        metavar="FILE",
        help="Path to the backup archive (.zip)",
    )
    import_parser.add_argument(
        "--deployment",
        required=True,
        help="Deployment to import into",
    )
    import_parser.add_argument(
        "--actor",
        metavar="ID",
        help="User id that will own the new project (default: config actor_id)",
    )
    import_parser.add_argument(
        "--force",
        action="store_true",
        help="Import even if the archive integrity check fails",
    )
    import_parser.set_defaults(func=cmd_import)

    # inspect command
    inspect_parser = subparsers.add_parser(
        "inspect",
        help="Show what an archive contains and check its integrity",
    )
    inspect_parser.add_argument(
        "archive_file",
        metavar="FILE",
        help="Path to the backup archive (.zip)",
    )
    inspect_parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON",
    )
    inspect_parser.set_defaults(func=cmd_inspect)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _load_settings(args: argparse.Namespace) -> Settings:
    config_path = Path(args.config) if args.config else None
    return load_config(config_path)


def _unlock_credentials(credential_store: CredentialStore) -> None:
    """Prompt for the passphrase and unlock the store."""
    if not credential_store.is_initialized():
        raise CredentialStoreNotInitializedError(
            "No service keys stored. Run 'teamvault configure set-key' first, "
            f"or set {SERVICE_KEY_ENV}."
        )
    passphrase = getpass.getpass("Enter passphrase to unlock credentials: ")
    credential_store.unlock(passphrase)


def _service_key_for(deployment: str) -> str:
    if os.environ.get(SERVICE_KEY_ENV):
        return resolve_service_key(deployment)
    credential_store = CredentialStore()
    _unlock_credentials(credential_store)
    try:
        return resolve_service_key(deployment, credential_store)
    finally:
        credential_store.lock()


def _connect(
    settings: Settings, name: str
) -> tuple[RestDataStore, RestObjectStorage]:
    from teamvault.store import connect

    deployment = settings.get_deployment(name)
    if not deployment.url:
        raise ConfigurationError(f"Deployment '{name}' has no url configured")
    service_key = _service_key_for(name)
    return connect(
        deployment.url,
        service_key,
        timeout=deployment.timeout,
        page_size=settings.backup.page_size,
    )


def _progress_printer() -> ProgressCallback:
    """Progress callback that prints each phase once."""
    last_phase = [""]

    def report(percent: int, phase: str) -> None:
        if phase != last_phase[0]:
            last_phase[0] = phase
            output(f"  [{percent:3d}%] {phase}")

    return report


def cmd_configure(args: argparse.Namespace) -> int:
    """Manage encrypted deployment service keys."""
    settings = _load_settings(args)
    credential_store = CredentialStore()

    if args.action == "set-key":
        if not credential_store.is_initialized():
            output("No credential store yet; choose a passphrase to create one.")
            passphrase = getpass.getpass("New passphrase (min 12 characters): ")
            confirm = getpass.getpass("Confirm passphrase: ")
            if passphrase != confirm:
                output_error("Error: Passphrases do not match.")
                return 1
            try:
                credential_store.initialize(passphrase)
            except ValueError as e:
                output_error(f"Error: {e}")
                return 1
        else:
            _unlock_credentials(credential_store)

        service_key = getpass.getpass(f"Service key for '{args.deployment}': ").strip()
        if not service_key:
            output_error("Error: Service key cannot be empty.")
            credential_store.lock()
            return 1
        credential_store.set_service_key(args.deployment, service_key)
        credential_store.lock()

        if args.url:
            deployment = settings.deployments.setdefault(args.deployment, DeploymentConfig())
            deployment.url = args.url
            config_path = Path(args.config) if args.config else get_config_path()
            save_config(settings, config_path)
            output(f"Deployment URL saved to {config_path}")

        output(f"Service key stored for '{args.deployment}'.")
        return 0

    if args.action == "delete-key":
        _unlock_credentials(credential_store)
        try:
            credential_store.delete_service_key(args.deployment)
        finally:
            credential_store.lock()
        output(f"Service key removed for '{args.deployment}'.")
        return 0

    # list
    stored: set[str] = set()
    if credential_store.is_initialized():
        _unlock_credentials(credential_store)
        stored = set(credential_store.list_deployments())
        credential_store.lock()

    names = sorted(set(settings.deployments) | stored)
    if not names:
        output("No deployments configured.")
        return 0

    output("Deployments")
    output("=" * 50)
    for name in names:
        url = settings.deployments[name].url if name in settings.deployments else ""
        key_state = "key stored" if name in stored else "no key"
        output(f"  {name:<20} {url or '(no url)'}  [{key_state}]")
    return 0


def cmd_export(args: argparse.Namespace) -> int:
    """Export one project to a backup archive."""
    from teamvault.backup import BackupManager, ExportError, ExportOptions

    settings = _load_settings(args)
    store, storage = _connect(settings, args.deployment)

    options = ExportOptions(
        messages=not args.no_messages,
        task_notes=not args.no_notes,
        task_comments=not args.no_comments,
        resources=not args.no_resources,
        activity_logs=not args.no_activity_logs,
        scores=not args.no_scores,
    )

    output("teamvault Export")
    output("=" * 50)
    output(f"Deployment: {args.deployment}")
    output(f"Project:    {args.project}")
    output(f"Sections:   {', '.join(options.sections()) or 'core only'}")
    output()

    manager = BackupManager(store, storage, settings.backup, settings.reporting)
    try:
        result = manager.export_project(
            args.project,
            options,
            include_report=False if args.no_report else None,
            progress=_progress_printer(),
        )
    except ExportError as e:
        output_error(f"Export failed: {e}")
        return 1

    path = manager.save_export(result, Path(args.output) if args.output else None)

    output()
    output("Export complete!")
    output()
    output(f"  File: {path}")
    output(f"  Size: {result.size_bytes:,} bytes ({result.size_bytes / 1024 / 1024:.2f} MB)")
    for key, count in result.counts.items():
        output(f"  {key.replace('_', ' ').capitalize()}: {count}")
    if result.report_name:
        output(f"  Report: {result.report_name}")

    if result.warnings:
        output()
        output(f"Warnings ({len(result.warnings)}):")
        for warning in result.warnings:
            output(f"  - {warning}")

    output()
    output("To restore this project, run:")
    output(f"  teamvault import {path} --deployment <name>")
    return 0


def cmd_import(args: argparse.Namespace) -> int:
    """Restore an archive as a new project."""
    from teamvault.backup import ArchiveError, BackupManager, ProjectCreationError

    archive_path = Path(args.archive_file)
    if not archive_path.exists():
        output_error(f"Error: Archive not found: {archive_path}")
        return 1

    settings = _load_settings(args)
    actor_id = args.actor or settings.actor_id
    if not actor_id:
        output_error(
            "Error: No importing user. Pass --actor or set teamvault.actor_id in config."
        )
        return 2

    blob = archive_path.read_bytes()

    output("teamvault Import")
    output("=" * 50)
    output(f"Archive:    {archive_path}")
    output(f"Deployment: {args.deployment}")
    output(f"Actor:      {actor_id}")
    output()

    store, storage = _connect(settings, args.deployment)
    manager = BackupManager(store, storage, settings.backup, settings.reporting)

    try:
        ok, errors = manager.verify_archive(blob)
        if not ok:
            output_error("Archive integrity check failed:")
            for error in errors:
                output_error(f"  - {error}")
            if not args.force:
                output_error("Use --force to import anyway; damaged files are skipped.")
                return 1
            output("Continuing because --force was given.")

        result = manager.import_archive(blob, actor_id, progress=_progress_printer())
    except ArchiveError as e:
        output_error(f"Invalid archive: {e}")
        return 1
    except ProjectCreationError as e:
        output_error(f"Import failed: {e}")
        return 1

    output()
    output("Import complete!")
    output()
    output(f"  Project: {result.project_name} ({result.project_id})")
    output(f"  {result.summary()}")
    if result.dropped_members:
        output(f"  Members not found here: {', '.join(result.dropped_members)}")

    if result.warnings:
        output()
        output(f"Warnings ({len(result.warnings)}):")
        for warning in result.warnings:
            output(f"  - {warning}")
    return 0


def cmd_inspect(args: argparse.Namespace) -> int:
    """Summarize an archive without importing it."""
    from teamvault.backup import ArchiveError, describe_archive

    archive_path = Path(args.archive_file)
    if not archive_path.exists():
        output_error(f"Error: Archive not found: {archive_path}")
        return 1

    try:
        info = describe_archive(archive_path.read_bytes())
    except ArchiveError as e:
        output_error(f"Invalid archive: {e}")
        return 1

    if args.json:
        output(json.dumps(info, indent=2), force=True)
        return 0 if info["valid"] else 1

    output(f"Archive: {archive_path}")
    output("=" * 50)
    output(f"  Project:     {info['project_name']}")
    output(f"  Version:     {info['version']}")
    output(f"  Exported at: {info['exported_at']}")
    output(f"  Files:       {info['files']} ({info['files_bytes']:,} bytes)")
    output(f"  Report:      {info['report'] or 'none'}")
    output()
    output("Sections:")
    for key, count in info["sections"].items():
        shown = "not exported" if count is None else str(count)
        output(f"  {key:<22} {shown}")
    output()
    if info["valid"]:
        output("Integrity: OK")
        return 0

    output_error("Integrity: FAILED")
    for error in info["errors"]:
        output_error(f"  - {error}")
    return 1


def main() -> NoReturn:
    """Main entry point for the teamvault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Set up logging and output mode
    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet, args.verbose)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except (
        CredentialStoreNotInitializedError,
        CredentialStoreLockedError,
        CredentialNotFoundError,
        InvalidPassphraseError,
    ) as e:
        output_error(f"Credential error: {e}")
        sys.exit(2)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
