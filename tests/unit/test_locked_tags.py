"""locked_tags.py のユニットテスト（ロック強制・DNP 保護）."""

from datetime import UTC, datetime

from booru_tag_engine.core.categories import TagCategory
from booru_tag_engine.core.collaborators import (
    InMemoryTagRegistry,
    StaticAliasResolver,
    StaticImplicationExpander,
    TagRecord,
)
from booru_tag_engine.core.locked_tags import (
    LockDirective,
    add_dnp_tags_to_locked,
    apply_locked_tags,
    normalize_locked_tags,
    parse_lock_directive,
    remove_dnp_tags,
    resolve_lock_directive,
    strip_invalid_category_locks,
)

DNP = ("avoid_posting", "conditional_dnp")
NOW = datetime(2024, 1, 1, tzinfo=UTC)


class TestParse:
    def test_normalize_blank(self) -> None:
        assert normalize_locked_tags("   ") is None
        assert normalize_locked_tags(None) is None
        assert normalize_locked_tags("cat") == "cat"

    def test_parse_directive(self) -> None:
        directive = parse_lock_directive("Cat -Dog -")

        assert directive == LockDirective(add=("cat",), remove=("dog",))
        assert not directive.is_empty
        assert LockDirective().is_empty


class TestResolve:
    def test_remove_side_expands_to_implying_tags(self) -> None:
        """ロック削除は、そのタグを implication で再追加しうる antecedent まで広がること."""
        implications = StaticImplicationExpander({"kitten": ["cat"], "cat": ["animal"]})
        aliases = StaticAliasResolver({"kitty": "cat"})

        directive = resolve_lock_directive(parse_lock_directive("-kitty fox"), aliases, implications)

        assert directive.add == ("fox",)
        assert directive.remove == ("cat", "kitten")

    def test_strip_invalid_category_locks(self) -> None:
        registry = InMemoryTagRegistry([TagRecord("bad_tag", TagCategory.INVALID, 0, NOW)])

        locked, warnings = strip_invalid_category_locks("cat -bad_tag", registry)

        assert locked == "cat"
        assert warnings == ["Forcefully removed 1 invalid locked tag: -bad_tag"]

    def test_strip_invalid_category_locks_to_none(self) -> None:
        registry = InMemoryTagRegistry([TagRecord("bad_tag", TagCategory.INVALID, 0, NOW)])

        locked, _ = strip_invalid_category_locks("bad_tag", registry)

        assert locked is None


class TestApply:
    def test_warns_only_on_effect(self) -> None:
        """ロックが実際に効いたときだけ警告すること."""
        directive = LockDirective(add=("cat",), remove=("dog",))

        tags, warnings = apply_locked_tags(["cat", "fox"], directive)

        assert tags == ["cat", "fox"]
        assert warnings == []

    def test_forced_add_and_remove(self) -> None:
        directive = LockDirective(add=("cat", "red"), remove=("dog",))

        tags, warnings = apply_locked_tags(["dog", "fox"], directive)

        assert tags == ["fox", "cat", "red"]
        assert warnings == [
            "Forcefully removed 1 locked tag: dog",
            "Forcefully added 2 locked tags: cat, red",
        ]


class TestDnp:
    def test_dnp_removed_unless_locked(self) -> None:
        tags = ["cat", "avoid_posting", "conditional_dnp"]

        assert remove_dnp_tags(tags, LockDirective(), DNP) == ["cat"]
        assert remove_dnp_tags(tags, LockDirective(add=("avoid_posting",)), DNP) == ["cat", "avoid_posting"]

    def test_dnp_copied_into_locked(self) -> None:
        """残った DNP タグはロック対象になる."""
        assert add_dnp_tags_to_locked(["cat", "avoid_posting"], None, DNP) == "avoid_posting"
        assert add_dnp_tags_to_locked(["avoid_posting"], "Dog", DNP) == "dog avoid_posting"
        assert add_dnp_tags_to_locked(["avoid_posting"], "avoid_posting", DNP) == "avoid_posting"

    def test_no_dnp_tags_present(self) -> None:
        assert add_dnp_tags_to_locked(["cat"], None, DNP) is None
        assert add_dnp_tags_to_locked(["cat"], "Dog", DNP) == "dog"
