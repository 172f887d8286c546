#!/usr/bin/env python3
"""
End-to-end integration test for teamvault.

Exports a populated project from one in-memory deployment, restores it into
another, then drives the installed CLI against the resulting archive. No
hosted deployment or service key is needed.
"""

import json
import shutil
import subprocess
import sys
import tempfile
from datetime import datetime
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent / "src"))

# Test results tracking
RESULTS = {"passed": 0, "failed": 0, "tests": []}
STATE: dict = {}


def log(msg: str, level: str = "INFO") -> None:
    """Print a log message."""
    timestamp = datetime.now().strftime("%H:%M:%S")
    print(f"[{timestamp}] [{level}] {msg}")


def integration_test(name: str):
    """Decorator for test functions."""
    def decorator(func):
        def wrapper(*args, **kwargs):
            log(f"Running: {name}")
            try:
                result = func(*args, **kwargs)
                if result:
                    RESULTS["passed"] += 1
                    RESULTS["tests"].append({"name": name, "status": "PASS"})
                    log(f"  PASS: {name}", "PASS")
                else:
                    RESULTS["failed"] += 1
                    RESULTS["tests"].append({"name": name, "status": "FAIL"})
                    log(f"  FAIL: {name}", "FAIL")
                return None
            except Exception as e:
                RESULTS["failed"] += 1
                RESULTS["tests"].append({"name": name, "status": "ERROR", "error": str(e)})
                log(f"  ERROR: {name} - {e}", "ERROR")
                import traceback
                traceback.print_exc()
                return None
        return wrapper
    return decorator


def section(title: str) -> None:
    """Print a section header."""
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}\n")


def build_source():
    from teamvault.store import MemoryStore

    store = MemoryStore()
    store.seed("profiles", [
        {"id": "u1", "student_id": "S001", "full_name": "Alice"},
        {"id": "u2", "student_id": "S002", "full_name": "Bao"},
    ])
    store.seed("groups", [{"id": "g1", "name": "Integration Project", "leader_id": "u1"}])
    store.seed("group_members", [
        {"group_id": "g1", "user_id": "u1", "role": "leader", "joined_at": "2024-01-01"},
        {"group_id": "g1", "user_id": "u2", "role": "member", "joined_at": "2024-01-02"},
    ])
    store.seed("stages", [{"id": "st1", "group_id": "g1", "name": "Design", "order_index": 0}])
    store.seed("tasks", [{
        "id": "t1",
        "group_id": "g1",
        "stage_id": "st1",
        "title": "Wireframes",
        "status": "DONE",
        "submission_link": json.dumps(
            [{"file_path": "u1/wire.pdf", "file_name": "wire.pdf", "file_size": 8}]
        ),
    }])
    store.seed("task_assignments", [{"task_id": "t1", "user_id": "u2"}])
    store.seed("task_scores", [{"id": "ts1", "task_id": "t1", "user_id": "u2", "base_score": 9}])
    store.seed("task_comments", [
        {"id": "c1", "task_id": "t1", "user_id": "u1", "content": "Nice", "created_at": "1"},
        {"id": "c2", "task_id": "t1", "user_id": "u2", "content": "Thanks", "parent_id": "c1",
         "created_at": "2"},
    ])
    store.upload("task-submissions", "u1/wire.pdf", b"%PDF-1.4")
    return store


def build_destination():
    from teamvault.store import MemoryStore

    store = MemoryStore()
    store.seed("profiles", [
        {"id": "d1", "student_id": "S001", "full_name": "Alice"},
        {"id": "d2", "student_id": "S002", "full_name": "Bao"},
    ])
    return store


# =============================================================================
# SECTION 1: Module Import Tests
# =============================================================================

@integration_test("Import teamvault.store module")
def test_import_store():
    from teamvault import store
    return hasattr(store, "MemoryStore") and hasattr(store, "connect")


@integration_test("Import teamvault.backup module")
def test_import_backup():
    from teamvault import backup
    return hasattr(backup, "BackupManager")


@integration_test("Import teamvault.reports module")
def test_import_reports():
    from teamvault import reports
    return hasattr(reports, "EvidenceReportGenerator")


@integration_test("Import teamvault.config module")
def test_import_config():
    from teamvault import config
    return hasattr(config, "CredentialStore")


# =============================================================================
# SECTION 2: Export
# =============================================================================

@integration_test("Export project to archive")
def test_export():
    from teamvault.backup import BackupManager
    from teamvault.config.settings import BackupConfig

    source = build_source()
    manager = BackupManager(source, source, BackupConfig(max_workers=4))
    result = manager.export_project("g1")
    STATE["archive"] = manager.save_export(result, TEMP_DIR)
    return result.counts["tasks"] == 1 and result.counts["files"] == 1


@integration_test("Archive carries an evidence report")
def test_export_report():
    from teamvault.backup import describe_archive

    info = describe_archive(STATE["archive"].read_bytes())
    return (info["report"] or "").startswith("evidence-integration-project")


@integration_test("Archive verifies")
def test_verify():
    from teamvault.backup import describe_archive

    info = describe_archive(STATE["archive"].read_bytes())
    return info["valid"] and info["version"] == "4.0"


# =============================================================================
# SECTION 3: Import
# =============================================================================

@integration_test("Import archive as a new project")
def test_import():
    from teamvault.backup import BackupManager

    destination = build_destination()
    manager = BackupManager(destination, destination)
    result = manager.import_archive(STATE["archive"].read_bytes(), "d1")
    STATE["destination"] = destination
    STATE["import"] = result
    return result.project_name == "Integration Project (Copy)" and result.total_failed == 0


@integration_test("Members and assignments remapped by student id")
def test_members_remapped():
    destination = STATE["destination"]
    members = {row["user_id"] for row in destination.rows("group_members")}
    assignees = {row["user_id"] for row in destination.rows("task_assignments")}
    return members == {"d1", "d2"} and assignees == {"d2"}


@integration_test("Comment thread preserved")
def test_comment_thread():
    comments = STATE["destination"].rows("task_comments")
    by_content = {row["content"]: row for row in comments}
    return by_content["Thanks"]["parent_id"] == by_content["Nice"]["id"]


@integration_test("Submission file restored under a new path")
def test_file_restored():
    destination = STATE["destination"]
    task = destination.rows("tasks")[0]
    payload = json.loads(task["submission_link"])
    new_path = payload[0]["file_path"]
    return new_path != "u1/wire.pdf" and destination.download("task-submissions", new_path) == b"%PDF-1.4"


# =============================================================================
# SECTION 4: CLI Commands
# =============================================================================

@integration_test("CLI --version")
def test_cli_version():
    result = subprocess.run(
        ["teamvault", "--version"],
        capture_output=True, text=True
    )
    return result.returncode == 0 and "0.1.0" in result.stdout


@integration_test("CLI inspect --json")
def test_cli_inspect_json():
    result = subprocess.run(
        ["teamvault", "inspect", str(STATE["archive"]), "--json"],
        capture_output=True, text=True
    )
    if result.returncode != 0:
        return False
    info = json.loads(result.stdout)
    return info["sections"]["tasks"] == 1


@integration_test("CLI inspect rejects a non-archive")
def test_cli_inspect_bad():
    bad = TEMP_DIR / "bad.zip"
    bad.write_bytes(b"not a zip")
    result = subprocess.run(
        ["teamvault", "inspect", str(bad)],
        capture_output=True, text=True
    )
    return result.returncode == 1 and "Invalid archive" in result.stderr


@integration_test("CLI export/import help")
def test_cli_help():
    export = subprocess.run(["teamvault", "export", "--help"], capture_output=True, text=True)
    imp = subprocess.run(["teamvault", "import", "--help"], capture_output=True, text=True)
    return export.returncode == 0 and "--no-scores" in export.stdout and imp.returncode == 0


TEMP_DIR = Path(tempfile.mkdtemp(prefix="teamvault_integration_"))


def cleanup() -> None:
    """Remove temporary files."""
    shutil.rmtree(TEMP_DIR, ignore_errors=True)


def main() -> int:
    """Run all integration tests."""
    print("\n" + "="*60)
    print("  TEAMVAULT INTEGRATION TEST")
    print("="*60)
    log(f"Temp directory: {TEMP_DIR}")

    try:
        section("1. Module Imports")
        test_import_store()
        test_import_backup()
        test_import_reports()
        test_import_config()

        section("2. Export")
        test_export()
        test_export_report()
        test_verify()

        section("3. Import")
        test_import()
        test_members_remapped()
        test_comment_thread()
        test_file_restored()

        section("4. CLI Commands")
        test_cli_version()
        test_cli_inspect_json()
        test_cli_inspect_bad()
        test_cli_help()

    finally:
        cleanup()

    section("TEST SUMMARY")

    total = RESULTS["passed"] + RESULTS["failed"]
    pass_rate = (RESULTS["passed"] / total * 100) if total > 0 else 0

    print(f"Total Tests: {total}")
    print(f"Passed:      {RESULTS['passed']}")
    print(f"Failed:      {RESULTS['failed']}")
    print(f"Pass Rate:   {pass_rate:.1f}%")

    if RESULTS["failed"] > 0:
        print("\nFailed Tests:")
        for test in RESULTS["tests"]:
            if test["status"] != "PASS":
                error = test.get("error", "")
                print(f"  - {test['name']}: {test['status']}" + (f" ({error})" if error else ""))

    print("\n" + "="*60)
    if RESULTS["failed"] == 0:
        print("  ALL TESTS PASSED!")
    else:
        print(f"  {RESULTS['failed']} TEST(S) FAILED")
    print("="*60 + "\n")

    return 0 if RESULTS["failed"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
