"""Tests for the natural-key resolver."""

import unittest

from teamvault.backup.resolver import KeyKind, NaturalKeyResolver


class TestNaturalKeyResolver(unittest.TestCase):
    """Tests for NaturalKeyResolver."""

    def setUp(self) -> None:
        self.resolver = NaturalKeyResolver()

    def test_register_and_resolve(self) -> None:
        """Registered ids resolve to their key and back."""
        self.assertTrue(self.resolver.register(KeyKind.MEMBER, "u1", "S001"))

        self.assertEqual(self.resolver.resolve("u1", KeyKind.MEMBER), "S001")
        self.assertEqual(self.resolver.lookup("S001", KeyKind.MEMBER), "u1")
        self.assertTrue(self.resolver.has("S001", KeyKind.MEMBER))

    def test_unknown_id_resolves_to_empty_string(self) -> None:
        """Unknown or missing ids resolve to an empty key."""
        self.assertEqual(self.resolver.resolve("missing", KeyKind.MEMBER), "")
        self.assertEqual(self.resolver.resolve(None, KeyKind.MEMBER), "")
        self.assertIsNone(self.resolver.resolve_optional("missing", KeyKind.STAGE))

    def test_kinds_are_separate(self) -> None:
        """The same key under different kinds maps independently."""
        self.resolver.register(KeyKind.STAGE, "st1", "Build")
        self.resolver.register(KeyKind.FOLDER, "f1", "Build")

        self.assertEqual(self.resolver.lookup("Build", KeyKind.STAGE), "st1")
        self.assertEqual(self.resolver.lookup("Build", KeyKind.FOLDER), "f1")
        self.assertIsNone(self.resolver.lookup("Build", KeyKind.TASK))

    def test_first_registration_wins(self) -> None:
        """A duplicate key keeps the first id and is reported."""
        self.assertTrue(self.resolver.register(KeyKind.TASK, "t1", "Report"))
        self.assertFalse(self.resolver.register(KeyKind.TASK, "t2", "Report"))

        self.assertEqual(self.resolver.lookup("Report", KeyKind.TASK), "t1")
        self.assertEqual(self.resolver.duplicates(KeyKind.TASK), ["Report"])
        # The second id still knows its own key
        self.assertEqual(self.resolver.resolve("t2", KeyKind.TASK), "Report")

    def test_reregistering_same_pair_is_not_duplicate(self) -> None:
        """Registering the same id and key twice is harmless."""
        self.resolver.register(KeyKind.STAGE, "st1", "Build")
        self.assertTrue(self.resolver.register(KeyKind.STAGE, "st1", "Build"))
        self.assertEqual(self.resolver.duplicates(KeyKind.STAGE), [])

    def test_empty_keys_are_ignored(self) -> None:
        """Empty ids, empty keys and tuples with an empty part are ignored."""
        self.assertFalse(self.resolver.register(KeyKind.MEMBER, "u1", ""))
        self.assertFalse(self.resolver.register(KeyKind.MEMBER, "", "S001"))
        self.assertFalse(self.resolver.register(KeyKind.TASK_SCORE, "ts1", ("Survey", "")))

        self.assertEqual(len(self.resolver), 0)
        self.assertIsNone(self.resolver.lookup("", KeyKind.MEMBER))

    def test_position_zero_is_a_valid_key(self) -> None:
        """Integer position 0 registers and looks up."""
        self.assertTrue(self.resolver.register(KeyKind.COMMENT, "c1", 0))

        self.assertEqual(self.resolver.lookup(0, KeyKind.COMMENT), "c1")
        self.assertEqual(self.resolver.resolve_optional("c1", KeyKind.COMMENT), 0)

    def test_tuple_keys(self) -> None:
        """Composite keys work for score rows."""
        self.resolver.register(KeyKind.TASK_SCORE, "ts1", ("Survey", "S001"))

        self.assertEqual(self.resolver.lookup(("Survey", "S001"), KeyKind.TASK_SCORE), "ts1")
        self.assertIsNone(self.resolver.lookup(("Survey", "S002"), KeyKind.TASK_SCORE))

    def test_lookup_unhashable_key(self) -> None:
        """Malformed manifest values never raise."""
        self.assertIsNone(self.resolver.lookup(["S001"], KeyKind.MEMBER))  # type: ignore[arg-type]
        self.assertIsNone(self.resolver.lookup({"id": 1}, KeyKind.MEMBER))  # type: ignore[arg-type]

    def test_keys_lists_registered_keys(self) -> None:
        """keys() returns the registered keys of one kind."""
        self.resolver.register(KeyKind.STAGE, "st1", "Research")
        self.resolver.register(KeyKind.STAGE, "st2", "Build")
        self.resolver.register(KeyKind.TASK, "t1", "Survey")

        self.assertEqual(sorted(self.resolver.keys(KeyKind.STAGE)), ["Build", "Research"])
        self.assertEqual(len(self.resolver), 3)


if __name__ == "__main__":
    unittest.main()
