"""
Graph importer.

Recreates a project graph from an unpacked archive as a brand-new project
owned by the importing actor. The destination store offers no transactions,
so the importer only ever inserts, in strict dependency order:

    project -> members -> files -> stages -> tasks (+ assignments, scores,
    submissions) -> messages -> notes (+ attachments) -> comments ->
    folders -> resources -> stage weights, stage scores, final scores,
    appeals

Each row is inserted on its own. A row whose natural-key references do not
resolve is skipped; a row the store rejects is counted as failed. Neither
stops the rows after it. Only a failure to create the project shell aborts.
"""

from __future__ import annotations

import logging
from typing import Any

from teamvault.backup.archive import UnpackedArchive, validate_manifest
from teamvault.backup.files import FileRestorer, PathRewriteTable
from teamvault.backup.models import (
    MEMBER_ROLES,
    NOTE_ATTACHMENTS_BUCKET,
    RESOURCES_BUCKET,
    SUBMISSIONS_BUCKET,
    ImportResult,
    ProgressCallback,
    ProjectCreationError,
    parse_submission_payload,
)
from teamvault.backup.resolver import KeyKind, NaturalKeyResolver
from teamvault.store.base import DataStore, ObjectStorage, StoreError

logger = logging.getLogger(__name__)


def _rows(manifest: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = manifest.get(key)
    if not isinstance(value, list):
        return []
    return [row for row in value if isinstance(row, dict)]


def _copy(row: dict[str, Any], *names: str) -> dict[str, Any]:
    return {name: row.get(name) for name in names}


class GraphImporter:
    """
    Replays a manifest into a destination deployment.

    Usage:
        importer = GraphImporter(store, storage)
        result = importer.import_archive(codec.unpack(blob), actor_id)
        print(result.summary())
    """

    def __init__(
        self,
        store: DataStore,
        storage: ObjectStorage,
        name_suffix: str = " (Copy)",
        max_workers: int = 8,
    ) -> None:
        self.store = store
        self.storage = storage
        self.name_suffix = name_suffix
        self.max_workers = max_workers

    def import_archive(
        self,
        archive: UnpackedArchive,
        actor_id: str,
        progress: ProgressCallback | None = None,
    ) -> ImportResult:
        """
        Create a new project from an archive.

        Args:
            archive: Output of ArchiveCodec.unpack().
            actor_id: Destination user who becomes leader and creator.
            progress: Optional callback receiving (percent, phase).

        Returns:
            ImportResult with the new project id and per-category counts.

        Raises:
            ManifestShapeError: If the manifest fails the shape check.
            ProjectCreationError: If the project shell cannot be created.
        """
        manifest = archive.manifest
        validate_manifest(manifest)
        if not actor_id:
            raise ProjectCreationError("An importing actor is required")

        def report(percent: int, phase: str) -> None:
            if progress is not None:
                progress(percent, phase)

        report(5, "Creating project")
        project = self._create_project(manifest, actor_id)
        project_id = project["id"]
        result = ImportResult(project_id=project_id, project_name=project.get("name") or "")
        resolver = NaturalKeyResolver()

        report(10, "Adding members")
        self._restore_members(manifest, project_id, actor_id, resolver, result)

        report(20, "Restoring files")
        restored = FileRestorer(self.storage, self.max_workers).restore(
            archive.file_index(), archive.read, actor_id, project_id
        )
        result.restore("files", restored.restored)
        result.skip("files", restored.skipped)
        result.fail("files", restored.failed)
        result.warnings.extend(restored.warnings)
        paths = restored.table

        report(40, "Restoring stages")
        self._restore_stages(manifest, project_id, resolver, result)

        report(50, "Restoring tasks")
        self._restore_tasks(manifest, project_id, actor_id, resolver, paths, result)

        if "messages" in manifest:
            report(65, "Restoring messages")
            self._restore_messages(manifest, project_id, resolver, result)

        if "task_notes" in manifest:
            report(70, "Restoring task notes")
            self._restore_notes(manifest, resolver, paths, result)

        if "task_comments" in manifest:
            report(80, "Restoring task comments")
            self._restore_comments(manifest, resolver, result)

        if "resource_folders" in manifest or "resources" in manifest:
            report(85, "Restoring resources")
            self._restore_resources(manifest, project_id, actor_id, resolver, paths, result)

        report(95, "Restoring scores")
        self._restore_scores(manifest, project_id, resolver, result)

        logs = _rows(manifest, "activity_logs")
        if logs:
            # Activity logs are exported for reference only
            result.skip("activity_logs", len(logs))

        report(100, "Done")
        logger.info(f"Imported '{result.project_name}' ({project_id}): {result.summary()}")
        return result

    # -- Helpers ------------------------------------------------------------

    def _insert(
        self,
        table: str,
        row: dict[str, Any],
        category: str,
        result: ImportResult,
    ) -> dict[str, Any] | None:
        """Insert one row; on failure count it and carry on."""
        try:
            created = self.store.insert(table, row)
        except StoreError as e:
            logger.warning(f"Failed to restore {category} row: {e}")
            result.fail(category)
            return None
        result.restore(category)
        return created

    # -- Phases -------------------------------------------------------------

    def _create_project(self, manifest: dict[str, Any], actor_id: str) -> dict[str, Any]:
        group = manifest["group"]
        name = group.get("name") or manifest.get("project_name") or "Imported project"
        row = _copy(
            group,
            "description",
            "class_code",
            "instructor_name",
            "instructor_email",
            "additional_info",
            "zalo_link",
            "show_activity_public",
            "show_members_public",
            "show_resources_public",
        )
        row.update(
            {
                "name": f"{name}{self.name_suffix}",
                "image_url": group.get("image_url") or None,
                "leader_id": actor_id,
                "created_by": actor_id,
                "is_public": False,
                "slug": "",
            }
        )
        try:
            return self.store.insert("groups", row)
        except StoreError as e:
            raise ProjectCreationError(f"Could not create project: {e}") from e

    def _restore_members(
        self,
        manifest: dict[str, Any],
        project_id: str,
        actor_id: str,
        resolver: NaturalKeyResolver,
        result: ImportResult,
    ) -> None:
        members = _rows(manifest, "members")
        student_ids = []
        for member in members:
            profile = member.get("profile")
            student_id = profile.get("student_id") if isinstance(profile, dict) else None
            if student_id and student_id not in student_ids:
                student_ids.append(student_id)

        try:
            profiles = self.store.select("profiles", {"student_id": student_ids})
        except StoreError as e:
            logger.warning(f"Could not look up member profiles: {e}")
            result.warnings.append(f"Member lookup failed: {e}")
            profiles = []
        for profile in profiles:
            resolver.register(KeyKind.MEMBER, profile["id"], profile.get("student_id") or "")

        result.dropped_members = [s for s in student_ids if not resolver.has(s, KeyKind.MEMBER)]
        if result.dropped_members:
            logger.info(
                f"{len(result.dropped_members)} member(s) have no account here: "
                f"{', '.join(result.dropped_members)}"
            )

        self._insert(
            "group_members",
            {"group_id": project_id, "user_id": actor_id, "role": "leader"},
            "members",
            result,
        )

        added = {actor_id}
        for member in members:
            profile = member.get("profile")
            student_id = profile.get("student_id") if isinstance(profile, dict) else None
            user_id = resolver.lookup(student_id, KeyKind.MEMBER)
            if user_id is None:
                result.skip("members")
                continue
            if user_id in added:
                continue
            added.add(user_id)
            role = member.get("role") if member.get("role") in MEMBER_ROLES else "member"
            self._insert(
                "group_members",
                {"group_id": project_id, "user_id": user_id, "role": role},
                "members",
                result,
            )

    def _restore_stages(
        self,
        manifest: dict[str, Any],
        project_id: str,
        resolver: NaturalKeyResolver,
        result: ImportResult,
    ) -> None:
        for stage in _rows(manifest, "stages"):
            row = _copy(
                stage,
                "name",
                "description",
                "order_index",
                "start_date",
                "end_date",
                "weight",
                "is_hidden",
            )
            row["group_id"] = project_id
            created = self._insert("stages", row, "stages", result)
            if created:
                resolver.register(KeyKind.STAGE, created["id"], stage.get("name") or "")

    def _restore_tasks(
        self,
        manifest: dict[str, Any],
        project_id: str,
        actor_id: str,
        resolver: NaturalKeyResolver,
        paths: PathRewriteTable,
        result: ImportResult,
    ) -> None:
        submission_path = paths.for_bucket(SUBMISSIONS_BUCKET)

        for task in _rows(manifest, "tasks"):
            stage_name = task.get("stage_name")
            payload = parse_submission_payload(task.get("submission_link"))
            row = _copy(
                task,
                "title",
                "description",
                "status",
                "deadline",
                "extended_deadline",
                "max_file_size",
                "is_hidden",
            )
            row.update(
                {
                    "group_id": project_id,
                    # A task without a resolvable stage is kept, unstaged
                    "stage_id": resolver.lookup(stage_name, KeyKind.STAGE) if stage_name else None,
                    "submission_link": payload.rewrite(submission_path).encode(),
                    "created_by": actor_id,
                    "slug": "",
                }
            )
            created = self._insert("tasks", row, "tasks", result)
            if created is None:
                continue
            task_id = created["id"]
            title = task.get("title") or ""
            resolver.register(KeyKind.TASK, task_id, title)

            for assignment in task.get("assignments") or []:
                user_id = resolver.lookup(assignment.get("student_id"), KeyKind.MEMBER)
                if user_id is None:
                    result.skip("assignments")
                    continue
                self._insert(
                    "task_assignments",
                    {"task_id": task_id, "user_id": user_id},
                    "assignments",
                    result,
                )

            for score in task.get("scores") or []:
                student_id = score.get("student_id")
                user_id = resolver.lookup(student_id, KeyKind.MEMBER)
                if user_id is None:
                    result.skip("task_scores")
                    continue
                row = _copy(
                    score,
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
                row.update({"task_id": task_id, "user_id": user_id})
                created_score = self._insert("task_scores", row, "task_scores", result)
                if created_score:
                    resolver.register(KeyKind.TASK_SCORE, created_score["id"], (title, student_id))

            for sub in task.get("submissions") or []:
                user_id = resolver.lookup(sub.get("student_id"), KeyKind.MEMBER)
                if user_id is None:
                    result.skip("submissions")
                    continue
                sub_payload = parse_submission_payload(sub.get("submission_link"))
                self._insert(
                    "submission_history",
                    {
                        "task_id": task_id,
                        "user_id": user_id,
                        "submission_link": sub_payload.rewrite(submission_path).encode(),
                        "note": sub.get("note"),
                        "submitted_at": sub.get("submitted_at"),
                        "submission_type": sub.get("submission_type") or "link",
                        # Cleared when the file was not restored
                        "file_path": submission_path(sub["file_path"]) if sub.get("file_path") else None,
                        "file_name": sub.get("file_name"),
                        "file_size": sub.get("file_size"),
                    },
                    "submissions",
                    result,
                )

    def _restore_messages(
        self,
        manifest: dict[str, Any],
        project_id: str,
        resolver: NaturalKeyResolver,
        result: ImportResult,
    ) -> None:
        for message in _rows(manifest, "messages"):
            user_id = resolver.lookup(message.get("student_id"), KeyKind.MEMBER)
            if user_id is None:
                result.skip("messages")
                continue
            self._insert(
                "project_messages",
                {
                    "group_id": project_id,
                    "user_id": user_id,
                    "content": message.get("content"),
                    "source_type": message.get("source_type") or "direct",
                    "created_at": message.get("created_at"),
                },
                "messages",
                result,
            )

    def _restore_notes(
        self,
        manifest: dict[str, Any],
        resolver: NaturalKeyResolver,
        paths: PathRewriteTable,
        result: ImportResult,
    ) -> None:
        attachment_path = paths.for_bucket(NOTE_ATTACHMENTS_BUCKET)

        for note in _rows(manifest, "task_notes"):
            task_id = resolver.lookup(note.get("task_title"), KeyKind.TASK)
            user_id = resolver.lookup(note.get("created_by_student_id"), KeyKind.MEMBER)
            attachments = [a for a in note.get("attachments") or [] if isinstance(a, dict)]
            if task_id is None or user_id is None:
                result.skip("task_notes")
                result.skip("note_attachments", len(attachments))
                continue

            created = self._insert(
                "task_notes",
                {
                    "task_id": task_id,
                    "version_name": note.get("version_name"),
                    "content": note.get("content"),
                    "is_locked": bool(note.get("is_locked")),
                    "created_by": user_id,
                    "created_at": note.get("created_at"),
                },
                "task_notes",
                result,
            )
            if created is None:
                result.skip("note_attachments", len(attachments))
                continue
            resolver.register(
                KeyKind.NOTE, created["id"], (note.get("task_title"), note.get("version_name"))
            )

            for att in attachments:
                new_path = attachment_path(att.get("original_path"))
                if new_path is None:
                    result.skip("note_attachments")
                    continue
                self._insert(
                    "task_note_attachments",
                    {
                        "note_id": created["id"],
                        "file_name": att.get("file_name"),
                        "file_path": new_path,
                        "file_size": att.get("file_size"),
                        "storage_name": att.get("file_name"),
                    },
                    "note_attachments",
                    result,
                )

    def _restore_comments(
        self,
        manifest: dict[str, Any],
        resolver: NaturalKeyResolver,
        result: ImportResult,
    ) -> None:
        # Positions are registered as comments are created, so a parent only
        # resolves if it came earlier in the list and was itself restored
        for position, comment in enumerate(_rows(manifest, "task_comments")):
            task_id = resolver.lookup(comment.get("task_title"), KeyKind.TASK)
            user_id = resolver.lookup(comment.get("student_id"), KeyKind.MEMBER)
            if task_id is None or user_id is None:
                result.skip("task_comments")
                continue

            parent_index = comment.get("parent_index")
            parent_id = None
            if isinstance(parent_index, int) and not isinstance(parent_index, bool):
                parent_id = resolver.lookup(parent_index, KeyKind.COMMENT)

            created = self._insert(
                "task_comments",
                {
                    "task_id": task_id,
                    "user_id": user_id,
                    "content": comment.get("content"),
                    "parent_id": parent_id,
                    "created_at": comment.get("created_at"),
                },
                "task_comments",
                result,
            )
            if created:
                resolver.register(KeyKind.COMMENT, created["id"], position)

    def _restore_resources(
        self,
        manifest: dict[str, Any],
        project_id: str,
        actor_id: str,
        resolver: NaturalKeyResolver,
        paths: PathRewriteTable,
        result: ImportResult,
    ) -> None:
        # Folders and resources are project-owned: an unknown creator becomes
        # the importing actor instead of dropping the row
        for folder in _rows(manifest, "resource_folders"):
            created = self._insert(
                "resource_folders",
                {
                    "group_id": project_id,
                    "name": folder.get("name"),
                    "description": folder.get("description"),
                    "created_by": resolver.lookup(folder.get("created_by_student_id"), KeyKind.MEMBER)
                    or actor_id,
                    "created_at": folder.get("created_at"),
                },
                "resource_folders",
                result,
            )
            if created:
                resolver.register(KeyKind.FOLDER, created["id"], folder.get("name") or "")

        resource_path = paths.for_bucket(RESOURCES_BUCKET)
        for resource in _rows(manifest, "resources"):
            is_link = resource.get("resource_type") == "link" or (
                not resource.get("file_path") and bool(resource.get("link_url"))
            )
            file_path = None
            if not is_link:
                file_path = resource_path(resource.get("file_path"))
                if file_path is None:
                    result.skip("resources")
                    continue

            folder_name = resource.get("folder_name")
            self._insert(
                "project_resources",
                {
                    "group_id": project_id,
                    "name": resource.get("name"),
                    "description": resource.get("description"),
                    "file_path": file_path,
                    "file_size": resource.get("file_size") or 0,
                    "file_type": resource.get("file_type"),
                    "category": resource.get("category"),
                    "folder_id": resolver.lookup(folder_name, KeyKind.FOLDER) if folder_name else None,
                    "uploaded_by": resolver.lookup(
                        resource.get("uploaded_by_student_id"), KeyKind.MEMBER
                    )
                    or actor_id,
                    "storage_name": resource.get("name"),
                    "created_at": resource.get("created_at"),
                    "resource_type": "link" if is_link else resource.get("resource_type") or "file",
                    "link_url": resource.get("link_url") if is_link else None,
                    "order_index": resource.get("order_index") or 0,
                },
                "resources",
                result,
            )

    def _restore_scores(
        self,
        manifest: dict[str, Any],
        project_id: str,
        resolver: NaturalKeyResolver,
        result: ImportResult,
    ) -> None:
        for weight in _rows(manifest, "stage_weights"):
            stage_id = resolver.lookup(weight.get("stage_name"), KeyKind.STAGE)
            if stage_id is None:
                result.skip("stage_weights")
                continue
            self._insert(
                "stage_weights",
                {"group_id": project_id, "stage_id": stage_id, "weight": weight.get("weight")},
                "stage_weights",
                result,
            )

        for score in _rows(manifest, "member_stage_scores"):
            student_id = score.get("student_id")
            user_id = resolver.lookup(student_id, KeyKind.MEMBER)
            stage_id = resolver.lookup(score.get("stage_name"), KeyKind.STAGE)
            if user_id is None or stage_id is None:
                result.skip("member_stage_scores")
                continue
            row = _copy(
                score,
                "average_score",
                "k_coefficient",
                "adjusted_score",
                "final_stage_score",
                "late_task_count",
                "early_submission_bonus",
                "bug_hunter_bonus",
            )
            row.update({"user_id": user_id, "stage_id": stage_id})
            created = self._insert("member_stage_scores", row, "member_stage_scores", result)
            if created:
                resolver.register(
                    KeyKind.STAGE_SCORE, created["id"], (score.get("stage_name"), student_id)
                )

        for score in _rows(manifest, "member_final_scores"):
            user_id = resolver.lookup(score.get("student_id"), KeyKind.MEMBER)
            if user_id is None:
                result.skip("member_final_scores")
                continue
            row = _copy(score, "weighted_average", "adjustment", "final_score")
            row.update({"group_id": project_id, "user_id": user_id})
            self._insert("member_final_scores", row, "member_final_scores", result)

        for appeal in _rows(manifest, "score_appeals"):
            student_id = appeal.get("student_id")
            user_id = resolver.lookup(student_id, KeyKind.MEMBER)
            task_score_id = None
            stage_score_id = None
            if appeal.get("task_title"):
                task_score_id = resolver.lookup(
                    (appeal["task_title"], student_id), KeyKind.TASK_SCORE
                )
            if appeal.get("stage_name"):
                stage_score_id = resolver.lookup(
                    (appeal["stage_name"], student_id), KeyKind.STAGE_SCORE
                )
            if user_id is None or (task_score_id is None and stage_score_id is None):
                result.skip("score_appeals")
                continue
            self._insert(
                "score_appeals",
                {
                    "user_id": user_id,
                    "task_score_id": task_score_id,
                    "stage_score_id": stage_score_id,
                    "reason": appeal.get("reason"),
                    "status": appeal.get("status"),
                    "reviewer_id": resolver.lookup(
                        appeal.get("reviewer_student_id"), KeyKind.MEMBER
                    ),
                    "reviewer_response": appeal.get("reviewer_response"),
                    "created_at": appeal.get("created_at"),
                },
                "score_appeals",
                result,
            )
