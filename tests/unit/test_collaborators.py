"""collaborators.py のユニットテスト（辞書ベースの alias / implication / タグ台帳）."""

from datetime import UTC, datetime

from booru_tag_engine.core.categories import TagCategory
from booru_tag_engine.core.collaborators import (
    InMemoryTagRegistry,
    StaticAliasResolver,
    StaticImplicationExpander,
    TagRecord,
)
from booru_tag_engine.core.exceptions import TagCreationError

NOW = datetime(2024, 1, 1, tzinfo=UTC)


class TestAliasAndImplication:
    def test_alias_resolution_dedupes(self) -> None:
        aliases = StaticAliasResolver({"kitty": "cat"})

        assert aliases.resolve(["kitty", "cat", "dog"]) == ["cat", "dog"]

    def test_transitive_implications(self) -> None:
        implications = StaticImplicationExpander({"kitten": ["cat"], "cat": ["feline"], "feline": ["animal"]})

        assert implications.expand(["kitten"]) == ["kitten", "animal", "cat", "feline"]
        assert implications.implying("animal") == {"feline", "cat", "kitten"}

    def test_implication_cycle_terminates(self) -> None:
        implications = StaticImplicationExpander({"a": ["b"], "b": ["a"]})

        assert implications.expand(["a"]) == ["a", "b"]


class TestInMemoryTagRegistry:
    def test_find_or_create(self) -> None:
        registry = InMemoryTagRegistry()

        results = registry.find_or_create(["cat", "-bad"], categories={"cat": TagCategory.SPECIES}, now=NOW)

        assert results[0] == TagRecord("cat", TagCategory.SPECIES, 0, NOW)
        assert isinstance(results[1], TagCreationError)
        assert registry.category_for("cat") is TagCategory.SPECIES

    def test_category_change_only_for_small_tags(self) -> None:
        registry = InMemoryTagRegistry(
            [
                TagRecord("empty", TagCategory.GENERAL, 0, NOW),
                TagRecord("popular", TagCategory.GENERAL, 10, NOW),
            ]
        )
        categories = {"empty": TagCategory.ARTIST, "popular": TagCategory.ARTIST}

        empty, popular = registry.find_or_create(["empty", "popular"], categories=categories, now=NOW)

        assert empty.category is TagCategory.ARTIST
        assert popular.category_rejected
        assert registry.category_for("popular") is TagCategory.GENERAL

    def test_find_or_plan_does_not_write(self) -> None:
        """find_or_plan は台帳を変えず、commit_tags で初めて反映されること."""
        registry = InMemoryTagRegistry([TagRecord("someone", TagCategory.GENERAL, 0, NOW)])

        new, changed = registry.find_or_plan(
            ["cat", "someone"], categories={"someone": TagCategory.ARTIST}, now=NOW
        )

        assert new.is_new
        assert changed.category_changed
        assert changed.category is TagCategory.ARTIST
        assert registry.get("cat") is None
        assert registry.category_for("someone") is TagCategory.GENERAL

        registry.commit_tags([new, changed])

        assert registry.get("cat") == TagRecord("cat", TagCategory.GENERAL, 0, NOW)
        assert registry.category_for("someone") is TagCategory.ARTIST

    def test_post_count_deltas(self) -> None:
        registry = InMemoryTagRegistry([TagRecord("cat", TagCategory.GENERAL, 1, NOW)])

        registry.apply_post_count_deltas({"cat": 2, "missing": 1})

        assert registry.get("cat").post_count == 3
        assert registry.categories_for(["cat", "missing"]) == {"cat": TagCategory.GENERAL}
