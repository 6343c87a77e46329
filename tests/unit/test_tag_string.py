"""tag_string.py のユニットテスト（scan / diff / serialize / source diff）."""

from booru_tag_engine.core.collaborators import StaticAliasResolver
from booru_tag_engine.core.tag_string import (
    TagDiff,
    apply_source_diff,
    apply_tag_diff,
    parse_tag_diff,
    scan_tags,
    serialize_tags,
    split_sources,
)


class TestScanAndSerialize:
    def test_scan_preserves_case_and_dedupes(self) -> None:
        """大文字小文字を保持したまま、出現順で重複除去されること."""
        assert scan_tags("  cat  Dog cat ") == ["cat", "Dog"]

    def test_scan_empty(self) -> None:
        assert scan_tags(None) == []
        assert scan_tags("   ") == []

    def test_serialize_is_sorted_lowercase(self) -> None:
        """直列化は小文字・重複なし・辞書順."""
        assert serialize_tags(["dog", "Cat", "dog", "apple"]) == "apple cat dog"

    def test_serialize_empty(self) -> None:
        assert serialize_tags([]) == ""


class TestParseTagDiff:
    def test_split_add_remove(self) -> None:
        diff = parse_tag_diff("red -Blue cat")

        assert diff == TagDiff(add=("red", "cat"), remove=("blue",))

    def test_negated_metatags_stay_in_add(self) -> None:
        """`-pool:3` のような否定メタタグは削除扱いにしないこと."""
        diff = parse_tag_diff("-pool:3 -fav:me -child:4 -dog")

        assert diff.add == ("-pool:3", "-fav:me", "-child:4")
        assert diff.remove == ("dog",)

    def test_lone_dash_ignored(self) -> None:
        assert parse_tag_diff("- cat") == TagDiff(add=("cat",), remove=())


class TestApplyTagDiff:
    def test_red_minus_blue_cat(self) -> None:
        """{blue, dog} に `red -blue cat` を適用すると {red, cat, dog}."""
        tags, removed = apply_tag_diff(["blue", "dog"], parse_tag_diff("red -blue cat"), StaticAliasResolver())

        assert sorted(tags) == ["cat", "dog", "red"]
        assert removed == ["blue"]

    def test_aliases_applied_to_both_sides(self) -> None:
        """削除側も alias 解決されること（antecedent 名で消せる）."""
        aliases = StaticAliasResolver({"colour": "color", "kitty": "cat"})

        tags, removed = apply_tag_diff(["color"], parse_tag_diff("kitty -colour"), aliases)

        assert tags == ["cat"]
        assert removed == ["color"]

    def test_remove_wins_over_add(self) -> None:
        tags, _ = apply_tag_diff([], parse_tag_diff("cat -cat"), StaticAliasResolver())

        assert tags == []


class TestSources:
    def test_split_sources_normalizes_newlines(self) -> None:
        assert split_sources("http://a\r\nhttp://b%0Ahttp://c\n\n") == ["http://a", "http://b", "http://c"]

    def test_apply_source_diff(self) -> None:
        """`-url` で削除、それ以外は追加."""
        result = apply_source_diff("http://a\nhttp://b", "-http://a\nhttp://c")

        assert result == "http://b\nhttp://c"

    def test_apply_source_diff_without_diff(self) -> None:
        assert apply_source_diff("http://a\r\nhttp://a", None) == "http://a\nhttp://a"
