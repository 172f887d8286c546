"""
Graph exporter.

Walks one project's entity graph and builds the manifest document, with
every foreign reference replaced by its natural key. Fetches that do not
depend on each other run concurrently on a thread pool and are joined before
the next phase:

    1. project, members, stages, tasks
    2. member profiles (member natural keys)
    3. assignments, task scores, submission history (by task id set)
    4. optional collections, per ExportOptions
    5. note attachments (by note id set), score appeals (by score id sets)

A failure in phases 1 to 3 aborts the export. A failure in an optional fetch
leaves that section present but empty and records a warning.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from teamvault.backup.files import discover_files
from teamvault.backup.models import (
    MANIFEST_VERSION,
    DuplicateNaturalKeyError,
    ExportError,
    ExportOptions,
    FileRef,
    ProgressCallback,
    ProjectSnapshot,
)
from teamvault.backup.resolver import KeyKind, NaturalKeyResolver
from teamvault.store.base import DataStore, StoreError

logger = logging.getLogger(__name__)

GROUP_FIELDS = (
    "name",
    "description",
    "class_code",
    "instructor_name",
    "instructor_email",
    "additional_info",
    "zalo_link",
    "created_by",
    "created_at",
    "updated_at",
    "image_url",
    "is_public",
    "show_activity_public",
    "show_members_public",
    "show_resources_public",
)

STAGE_FIELDS = (
    "name",
    "description",
    "order_index",
    "start_date",
    "end_date",
    "weight",
    "is_hidden",
)

TASK_FIELDS = (
    "title",
    "description",
    "status",
    "deadline",
    "extended_deadline",
    "submission_link",
)

TASK_SCORE_FIELDS = (
    "base_score",
    "late_penalty",
    "review_penalty",
    "review_count",
    "early_bonus",
    "bug_hunter_bonus",
    "final_score",
    "adjustment",
    "adjustment_reason",
)

SUBMISSION_FIELDS = (
    "submission_link",
    "note",
    "submitted_at",
    "submission_type",
    "file_path",
    "file_name",
    "file_size",
)

STAGE_SCORE_FIELDS = (
    "average_score",
    "k_coefficient",
    "adjusted_score",
    "final_stage_score",
    "late_task_count",
    "early_submission_bonus",
    "bug_hunter_bonus",
)

FINAL_SCORE_FIELDS = ("weighted_average", "adjustment", "final_score")


def _pick(row: dict[str, Any], names: tuple[str, ...]) -> dict[str, Any]:
    return {name: row.get(name) for name in names}


def _group_by(rows: list[dict[str, Any]], column: str) -> dict[Any, list[dict[str, Any]]]:
    grouped: dict[Any, list[dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row.get(column), []).append(row)
    return grouped


@dataclass
class ExportedGraph:
    """Manifest (without the file index) plus what was fetched to build it."""

    manifest: dict[str, Any]
    snapshot: ProjectSnapshot
    file_refs: list[FileRef]
    resolver: NaturalKeyResolver
    warnings: list[str] = field(default_factory=list)


class GraphExporter:
    """
    Builds the manifest for one project.

    Usage:
        exporter = GraphExporter(store, activity_log_limit=500)
        graph = exporter.export(project_id, ExportOptions(messages=False))
    """

    def __init__(
        self,
        store: DataStore,
        activity_log_limit: int = 500,
        duplicate_names: str = "warn",
        max_workers: int = 8,
    ) -> None:
        self.store = store
        self.activity_log_limit = activity_log_limit
        self.duplicate_names = duplicate_names
        self.max_workers = max_workers

    def export(
        self,
        project_id: str,
        options: ExportOptions | None = None,
        progress: ProgressCallback | None = None,
    ) -> ExportedGraph:
        """
        Fetch and fold the project graph.

        Raises:
            ExportError: If the project does not exist, a required fetch
                fails, or duplicate names are rejected.
        """
        options = options or ExportOptions()
        warnings: list[str] = []
        resolver = NaturalKeyResolver()

        def report(percent: int, phase: str) -> None:
            if progress is not None:
                progress(percent, phase)

        report(5, "Fetching project")
        core = self._fetch(
            {
                "project": lambda: self.store.select("groups", {"id": project_id}, limit=1),
                "members": lambda: self.store.select(
                    "group_members", {"group_id": project_id}, order_by="joined_at"
                ),
                "stages": lambda: self.store.select(
                    "stages", {"group_id": project_id}, order_by="order_index"
                ),
                "tasks": lambda: self.store.select(
                    "tasks", {"group_id": project_id}, order_by="created_at"
                ),
            },
            required=True,
            warnings=warnings,
        )
        if not core["project"]:
            raise ExportError(f"Project not found: {project_id}")
        project = core["project"][0]
        members, stages, tasks = core["members"], core["stages"], core["tasks"]

        report(15, "Resolving members")
        member_ids = [m["user_id"] for m in members if m.get("user_id")]
        profiles = self._fetch(
            {"profiles": lambda: self.store.select("profiles", {"id": member_ids})},
            required=True,
            warnings=warnings,
        )["profiles"]
        profiles_by_id = {p["id"]: p for p in profiles}
        for profile in profiles:
            resolver.register(KeyKind.MEMBER, profile["id"], profile.get("student_id") or "")

        for stage in stages:
            resolver.register(KeyKind.STAGE, stage["id"], stage.get("name") or "")
        for task in tasks:
            resolver.register(KeyKind.TASK, task["id"], task.get("title") or "")

        report(25, "Fetching task details")
        task_ids = [t["id"] for t in tasks]
        stage_ids = [s["id"] for s in stages]
        details = self._fetch(
            {
                "assignments": lambda: self.store.select("task_assignments", {"task_id": task_ids}),
                "task_scores": lambda: self.store.select("task_scores", {"task_id": task_ids}),
                "submissions": lambda: self.store.select(
                    "submission_history", {"task_id": task_ids}, order_by="submitted_at"
                ),
            },
            required=True,
            warnings=warnings,
        )
        for score in details["task_scores"]:
            title = resolver.resolve(score.get("task_id"), KeyKind.TASK)
            student = resolver.resolve(score.get("user_id"), KeyKind.MEMBER)
            resolver.register(KeyKind.TASK_SCORE, score["id"], (title, student))

        report(35, "Fetching optional sections")
        optional = self._fetch(
            self._optional_fetches(project_id, task_ids, stage_ids, options),
            required=False,
            warnings=warnings,
        )

        notes = optional.get("task_notes", [])
        note_ids = [n["id"] for n in notes]
        task_score_ids = [s["id"] for s in details["task_scores"]]
        stage_score_ids = [s["id"] for s in optional.get("member_stage_scores", [])]

        for score in optional.get("member_stage_scores", []):
            name = resolver.resolve(score.get("stage_id"), KeyKind.STAGE)
            student = resolver.resolve(score.get("user_id"), KeyKind.MEMBER)
            resolver.register(KeyKind.STAGE_SCORE, score["id"], (name, student))
        for folder in optional.get("resource_folders", []):
            resolver.register(KeyKind.FOLDER, folder["id"], folder.get("name") or "")
        for position, comment in enumerate(optional.get("task_comments", [])):
            resolver.register(KeyKind.COMMENT, comment["id"], position)

        dependent: dict[str, Callable[[], list[dict[str, Any]]]] = {}
        if options.task_notes and note_ids:
            dependent["note_attachments"] = lambda: self.store.select(
                "task_note_attachments", {"note_id": note_ids}
            )
        if options.scores and (task_score_ids or stage_score_ids):
            dependent["score_appeals"] = lambda: self._fetch_appeals(
                task_score_ids, stage_score_ids
            )
        optional.update(self._fetch(dependent, required=False, warnings=warnings))

        self._check_duplicates(resolver, warnings)

        report(45, "Building manifest")
        snapshot = ProjectSnapshot(
            project=project,
            members=members,
            profiles=profiles_by_id,
            stages=stages,
            tasks=tasks,
            assignments=details["assignments"],
            task_scores=details["task_scores"],
            submissions=details["submissions"],
            messages=optional.get("messages", []),
            notes=notes,
            note_attachments=optional.get("note_attachments", []),
            comments=optional.get("task_comments", []),
            resource_folders=optional.get("resource_folders", []),
            resources=optional.get("resources", []),
            activity_logs=optional.get("activity_logs", []),
            stage_weights=optional.get("stage_weights", []),
            member_stage_scores=optional.get("member_stage_scores", []),
            member_final_scores=optional.get("member_final_scores", []),
            score_appeals=optional.get("score_appeals", []),
            options=options,
        )

        manifest = self._build_manifest(snapshot, resolver)
        file_refs = discover_files(
            tasks=snapshot.tasks,
            submissions=snapshot.submissions,
            note_attachments=snapshot.note_attachments if options.task_notes else [],
            resources=snapshot.resources if options.resources else [],
        )

        logger.info(
            f"Exported graph for '{project.get('name')}': {len(stages)} stages, "
            f"{len(tasks)} tasks, {len(members)} members, {len(file_refs)} files referenced"
        )
        return ExportedGraph(
            manifest=manifest,
            snapshot=snapshot,
            file_refs=file_refs,
            resolver=resolver,
            warnings=warnings,
        )

    # -- Fetching -----------------------------------------------------------

    def _fetch(
        self,
        fetches: dict[str, Callable[[], list[dict[str, Any]]]],
        required: bool,
        warnings: list[str],
    ) -> dict[str, list[dict[str, Any]]]:
        """
        Run independent fetches concurrently and join them.

        Required fetches raise ExportError on failure; optional ones degrade
        to an empty list and a warning.
        """
        if not fetches:
            return {}

        results: dict[str, list[dict[str, Any]]] = {}
        workers = max(1, min(self.max_workers, len(fetches)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {name: executor.submit(fn) for name, fn in fetches.items()}

        for name, future in futures.items():
            try:
                results[name] = future.result()
            except StoreError as e:
                if required:
                    raise ExportError(f"Failed to fetch {name}: {e}") from e
                logger.warning(f"Optional section '{name}' could not be fetched: {e}")
                warnings.append(f"{name} could not be fetched: {e}")
                results[name] = []
        return results

    def _optional_fetches(
        self,
        project_id: str,
        task_ids: list[str],
        stage_ids: list[str],
        options: ExportOptions,
    ) -> dict[str, Callable[[], list[dict[str, Any]]]]:
        store = self.store
        fetches: dict[str, Callable[[], list[dict[str, Any]]]] = {}

        if options.messages:
            fetches["messages"] = lambda: store.select(
                "project_messages", {"group_id": project_id}, order_by="created_at"
            )
        if options.task_notes:
            fetches["task_notes"] = lambda: store.select(
                "task_notes", {"task_id": task_ids}, order_by="created_at"
            )
        if options.task_comments:
            fetches["task_comments"] = lambda: store.select(
                "task_comments", {"task_id": task_ids}, order_by="created_at"
            )
        if options.resources:
            fetches["resources"] = lambda: store.select(
                "project_resources", {"group_id": project_id}, order_by="order_index"
            )
            fetches["resource_folders"] = lambda: store.select(
                "resource_folders", {"group_id": project_id}, order_by="created_at"
            )
        if options.activity_logs:
            fetches["activity_logs"] = lambda: store.select(
                "activity_logs",
                {"group_id": project_id},
                order_by="created_at",
                descending=True,
                limit=self.activity_log_limit,
            )
        if options.scores:
            fetches["stage_weights"] = lambda: store.select(
                "stage_weights", {"group_id": project_id}
            )
            fetches["member_stage_scores"] = lambda: store.select(
                "member_stage_scores", {"stage_id": stage_ids}
            )
            fetches["member_final_scores"] = lambda: store.select(
                "member_final_scores", {"group_id": project_id}
            )
        return fetches

    def _fetch_appeals(
        self, task_score_ids: list[str], stage_score_ids: list[str]
    ) -> list[dict[str, Any]]:
        appeals: dict[str, dict[str, Any]] = {}
        for column, ids in (("task_score_id", task_score_ids), ("stage_score_id", stage_score_ids)):
            if not ids:
                continue
            for row in self.store.select("score_appeals", {column: ids}, order_by="created_at"):
                appeals.setdefault(row["id"], row)
        return list(appeals.values())

    def _check_duplicates(self, resolver: NaturalKeyResolver, warnings: list[str]) -> None:
        for kind in (KeyKind.STAGE, KeyKind.TASK, KeyKind.FOLDER):
            dupes = [str(k) for k in resolver.duplicates(kind)]
            if not dupes:
                continue
            if self.duplicate_names == "reject":
                raise DuplicateNaturalKeyError(kind.value, dupes)
            message = (
                f"Duplicate {kind.value} names {', '.join(dupes)}: "
                "only the first of each will receive references on import"
            )
            logger.warning(message)
            warnings.append(message)

    # -- Manifest -----------------------------------------------------------

    def _build_manifest(
        self, snap: ProjectSnapshot, resolver: NaturalKeyResolver
    ) -> dict[str, Any]:
        def student(user_id: str | None) -> str:
            return str(resolver.resolve(user_id, KeyKind.MEMBER))

        options = snap.options
        group = _pick(snap.project, GROUP_FIELDS)
        group["leader_id"] = None
        group["share_token"] = None

        manifest: dict[str, Any] = {
            "version": MANIFEST_VERSION,
            "exported_at": snap.exported_at,
            "project_name": snap.project.get("name") or "",
            "group": group,
            "members": [self._member_row(m, snap) for m in snap.members],
            "stages": [_pick(s, STAGE_FIELDS) for s in snap.stages],
            "tasks": self._build_tasks(snap, resolver),
        }

        if options.messages:
            manifest["messages"] = [
                {
                    "student_id": student(msg.get("user_id")),
                    "content": msg.get("content"),
                    "source_type": msg.get("source_type"),
                    "created_at": msg.get("created_at"),
                }
                for msg in snap.messages
            ]

        if options.task_notes:
            attachments = _group_by(snap.note_attachments, "note_id")
            manifest["task_notes"] = [
                {
                    "task_title": resolver.resolve(note.get("task_id"), KeyKind.TASK),
                    "version_name": note.get("version_name"),
                    "content": note.get("content"),
                    "is_locked": bool(note.get("is_locked")),
                    "created_by_student_id": student(note.get("created_by")),
                    "created_at": note.get("created_at"),
                    "attachments": [
                        {
                            "file_name": att.get("file_name"),
                            "file_size": att.get("file_size"),
                            "original_path": att.get("file_path"),
                        }
                        for att in attachments.get(note["id"], [])
                    ],
                }
                for note in snap.notes
            ]

        if options.task_comments:
            manifest["task_comments"] = [
                {
                    "task_title": resolver.resolve(c.get("task_id"), KeyKind.TASK),
                    "student_id": student(c.get("user_id")),
                    "content": c.get("content"),
                    "parent_index": resolver.resolve_optional(c.get("parent_id"), KeyKind.COMMENT),
                    "created_at": c.get("created_at"),
                }
                for c in snap.comments
            ]

        if options.resources:
            manifest["resource_folders"] = [
                {
                    "name": f.get("name"),
                    "description": f.get("description"),
                    "created_by_student_id": student(f.get("created_by")),
                    "created_at": f.get("created_at"),
                }
                for f in snap.resource_folders
            ]
            manifest["resources"] = [
                {
                    "name": r.get("name"),
                    "description": r.get("description"),
                    "file_path": r.get("file_path"),
                    "file_size": r.get("file_size"),
                    "file_type": r.get("file_type"),
                    "category": r.get("category"),
                    "folder_name": resolver.resolve_optional(r.get("folder_id"), KeyKind.FOLDER),
                    "uploaded_by_student_id": student(r.get("uploaded_by")),
                    "created_at": r.get("created_at"),
                    "resource_type": r.get("resource_type") or "file",
                    "link_url": r.get("link_url") or None,
                    "order_index": r.get("order_index") or 0,
                }
                for r in snap.resources
            ]

        if options.activity_logs:
            manifest["activity_logs"] = [
                {
                    "action": log.get("action"),
                    "action_type": log.get("action_type"),
                    "description": log.get("description"),
                    "user_name": log.get("user_name"),
                    "student_id": student(log.get("user_id")),
                    "created_at": log.get("created_at"),
                    "metadata": log.get("metadata"),
                }
                for log in snap.activity_logs
            ]

        if options.scores:
            manifest["stage_weights"] = [
                {
                    "stage_name": resolver.resolve(sw.get("stage_id"), KeyKind.STAGE),
                    "weight": sw.get("weight"),
                }
                for sw in snap.stage_weights
            ]
            manifest["member_stage_scores"] = [
                {
                    "student_id": student(s.get("user_id")),
                    "stage_name": resolver.resolve(s.get("stage_id"), KeyKind.STAGE),
                    **_pick(s, STAGE_SCORE_FIELDS),
                }
                for s in snap.member_stage_scores
            ]
            manifest["member_final_scores"] = [
                {"student_id": student(s.get("user_id")), **_pick(s, FINAL_SCORE_FIELDS)}
                for s in snap.member_final_scores
            ]
            manifest["score_appeals"] = [
                self._appeal_row(appeal, resolver) for appeal in snap.score_appeals
            ]

        return manifest

    def _member_row(self, member: dict[str, Any], snap: ProjectSnapshot) -> dict[str, Any]:
        # Source user ids never go into the manifest
        profile = snap.profile_for(member.get("user_id"))
        return {
            "role": member.get("role"),
            "joined_at": member.get("joined_at"),
            "profile": {
                "student_id": profile.get("student_id") or "",
                "full_name": profile.get("full_name") or "",
                "email": profile.get("email") or "",
            },
        }

    def _build_tasks(
        self, snap: ProjectSnapshot, resolver: NaturalKeyResolver
    ) -> list[dict[str, Any]]:
        assignments = _group_by(snap.assignments, "task_id")
        scores = _group_by(snap.task_scores, "task_id")
        submissions = _group_by(snap.submissions, "task_id")

        rows = []
        for task in snap.tasks:
            row = _pick(task, TASK_FIELDS)
            row["stage_name"] = resolver.resolve_optional(task.get("stage_id"), KeyKind.STAGE)
            row["max_file_size"] = task.get("max_file_size")
            row["is_hidden"] = task.get("is_hidden")
            row["assignments"] = [
                {"student_id": resolver.resolve(a.get("user_id"), KeyKind.MEMBER)}
                for a in assignments.get(task["id"], [])
            ]
            row["scores"] = [
                {
                    "student_id": resolver.resolve(s.get("user_id"), KeyKind.MEMBER),
                    **_pick(s, TASK_SCORE_FIELDS),
                }
                for s in scores.get(task["id"], [])
            ]
            row["submissions"] = [
                {
                    "student_id": resolver.resolve(s.get("user_id"), KeyKind.MEMBER),
                    **_pick(s, SUBMISSION_FIELDS),
                }
                for s in submissions.get(task["id"], [])
            ]
            rows.append(row)
        return rows

    def _appeal_row(
        self, appeal: dict[str, Any], resolver: NaturalKeyResolver
    ) -> dict[str, Any]:
        task_key = resolver.resolve_optional(appeal.get("task_score_id"), KeyKind.TASK_SCORE)
        stage_key = resolver.resolve_optional(appeal.get("stage_score_id"), KeyKind.STAGE_SCORE)
        return {
            "student_id": resolver.resolve(appeal.get("user_id"), KeyKind.MEMBER),
            "task_title": task_key[0] if task_key else None,
            "stage_name": stage_key[0] if stage_key else None,
            "reason": appeal.get("reason"),
            "status": appeal.get("status"),
            "reviewer_student_id": resolver.resolve_optional(
                appeal.get("reviewer_id"), KeyKind.MEMBER
            ),
            "reviewer_response": appeal.get("reviewer_response"),
            "created_at": appeal.get("created_at"),
        }
