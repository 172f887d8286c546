"""
Natural-key resolver.

Internal identifiers do not survive a move between deployments, so the
manifest references members, stages, tasks, notes, folders, comments and
score rows by natural keys instead. The resolver is a single arena of
(kind, key) entries used from both directions:

    export:  resolver.register(KeyKind.MEMBER, user_id, student_id)
             resolver.resolve(user_id, KeyKind.MEMBER)      -> "S001" or ""

    import:  resolver.register(KeyKind.MEMBER, new_user_id, "S001")
             resolver.lookup("S001", KeyKind.MEMBER)        -> new id or None

Keeping every mapping in one place makes the skip rule uniform: a dependent
row whose reference does not look up is dropped, never created with a null
or stale foreign key.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable
from enum import Enum

logger = logging.getLogger(__name__)


class KeyKind(str, Enum):
    """Entity kinds that carry a natural key."""

    MEMBER = "member"
    STAGE = "stage"
    TASK = "task"
    NOTE = "note"
    FOLDER = "folder"
    COMMENT = "comment"
    TASK_SCORE = "task_score"
    STAGE_SCORE = "stage_score"


class NaturalKeyResolver:
    """
    Two-directional (kind, internal id) <-> (kind, natural key) table.

    The first registration of a natural key wins. A later registration of
    the same key for a different id is remembered as a duplicate, so callers
    can warn or refuse; it never overwrites the first mapping.
    """

    def __init__(self) -> None:
        self._by_id: dict[tuple[KeyKind, str], Hashable] = {}
        self._by_key: dict[tuple[KeyKind, Hashable], str] = {}
        self._duplicates: dict[KeyKind, list[Hashable]] = {}

    def register(self, kind: KeyKind, internal_id: str | None, natural_key: Hashable) -> bool:
        """
        Record that `internal_id` is known by `natural_key`.

        Empty ids and empty keys are ignored.

        Returns:
            True if the key now maps to this id, False if it was ignored or
            already taken by another id.
        """
        if not internal_id or _is_empty(natural_key):
            return False

        self._by_id.setdefault((kind, internal_id), natural_key)

        existing = self._by_key.get((kind, natural_key))
        if existing is None:
            self._by_key[(kind, natural_key)] = internal_id
            return True
        if existing != internal_id:
            dupes = self._duplicates.setdefault(kind, [])
            if natural_key not in dupes:
                dupes.append(natural_key)
                logger.debug(f"Duplicate {kind.value} key: {natural_key!r}")
        return existing == internal_id

    def resolve(self, internal_id: str | None, kind: KeyKind) -> Hashable:
        """Natural key for an internal id, or "" when unknown."""
        if not internal_id:
            return ""
        return self._by_id.get((kind, internal_id), "")

    def resolve_optional(self, internal_id: str | None, kind: KeyKind) -> Hashable | None:
        """Natural key for an internal id, or None when unknown or unset."""
        key = self.resolve(internal_id, kind)
        return None if _is_empty(key) else key

    def lookup(self, natural_key: Hashable, kind: KeyKind) -> str | None:
        """Internal id for a natural key, or None when unknown."""
        if not isinstance(natural_key, Hashable) or _is_empty(natural_key):
            return None
        return self._by_key.get((kind, natural_key))

    def has(self, natural_key: Hashable, kind: KeyKind) -> bool:
        return self.lookup(natural_key, kind) is not None

    def duplicates(self, kind: KeyKind) -> list[Hashable]:
        """Natural keys registered for more than one id, in first-seen order."""
        return list(self._duplicates.get(kind, []))

    def keys(self, kind: KeyKind) -> list[Hashable]:
        return [key for (k, key) in self._by_key if k == kind]

    def __len__(self) -> int:
        return len(self._by_key)


def _is_empty(key: Hashable) -> bool:
    if key is None or key == "":
        return True
    if isinstance(key, tuple):
        return any(_is_empty(part) for part in key)
    return False
