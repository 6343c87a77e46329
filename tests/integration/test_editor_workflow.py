"""PostEditor の統合テスト（作成 → 編集 → バージョン統合 → revert → post メタタグ）."""

from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from booru_tag_engine.adapters.sqlite_store import SqliteRecordStore
from booru_tag_engine.config import EngineConfig
from booru_tag_engine.core.auto_tagger import FileMetadata
from booru_tag_engine.core.categories import TagCategory
from booru_tag_engine.core.context import Actor, EditContext
from booru_tag_engine.core.database import create_database
from booru_tag_engine.core.exceptions import PostNotFoundError, RevertError
from booru_tag_engine.core.metatags import Metatag, MetatagKind
from booru_tag_engine.core.models import EditRequest, PostState
from booru_tag_engine.core.versions import CreateNewVersion, ExtendVersion, NoOp
from booru_tag_engine.editor import PostEditor, parse_id_list

USER = EditContext(actor=Actor(id=7, name="user"))
OTHER = EditContext(actor=Actor(id=8, name="other"))
NOW = datetime(2024, 1, 1, tzinfo=UTC)
BOT = EditContext(actor=Actor(id=99, name="bot"), automated=True)


@pytest.fixture
def store(tmp_path: Path) -> Iterator[SqliteRecordStore]:
    db_path = tmp_path / "engine.db"
    create_database(db_path)
    with SqliteRecordStore(db_path) as s:
        yield s


@pytest.fixture
def editor(store: SqliteRecordStore) -> PostEditor:
    return PostEditor(store, EngineConfig())


def test_parse_id_list() -> None:
    assert parse_id_list("3,1..2,3", 10) == [3, 1, 2]
    assert parse_id_list("1..1000000", 10) == list(range(1, 11))
    assert parse_id_list("5..3,x", 10) == [3, 4, 5]


@pytest.mark.integration
class TestCreateAndUpdate:
    def test_create_post(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        """新規作成で version 1 が作られ、カウンタと post_count が保存されること."""
        result = editor.create_post(
            EditRequest(tag_string="artist:someone cat dog"),
            USER,
            file=FileMetadata(width=4000, height=3000),
        )

        assert result.saved
        assert isinstance(result.version_action, CreateNewVersion)
        assert result.version_action.version.version == 1
        post = store.load_post(result.post.id)
        assert post.tag_string == "absurd_res cat dog someone"
        assert post.counts.total == 4
        assert post.counts.get(TagCategory.ARTIST) == 1
        assert store.get_tag("cat").post_count == 1
        assert "Uploads must have at least 10 general tags" in result.warnings

    def test_update_with_diff(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        post_id = editor.create_post(EditRequest(tag_string="cat dog"), USER).post.id

        result = editor.update_post(post_id, EditRequest(tag_string_diff="-dog fox"), USER)

        assert result.post.tag_string == "cat fox"
        assert store.get_tag("dog").post_count == 0
        assert store.get_tag("fox").post_count == 1
        versions = store.list_versions(post_id)
        assert [v.version for v in versions] == [1, 2]
        assert versions[1].added_tags == ("fox",)
        assert versions[1].removed_tags == ("dog",)
        assert versions[1].original_tags == "fox"

    def test_unchanged_edit_is_noop(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        post_id = editor.create_post(EditRequest(tag_string="cat"), USER).post.id

        result = editor.update_post(post_id, EditRequest(tag_string="cat"), USER)

        assert isinstance(result.version_action, NoOp)
        assert len(store.list_versions(post_id)) == 1

    def test_missing_post(self, editor: PostEditor) -> None:
        with pytest.raises(PostNotFoundError):
            editor.update_post(404, EditRequest(tag_string="cat"), USER)

    def test_aliases_and_implications_from_store(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        store.add_alias("kitty", "cat")
        store.add_implication("cat", "animal")

        result = editor.create_post(EditRequest(tag_string="kitty"), USER)

        assert result.post.tag_string == "animal cat"

    def test_hard_error_saves_nothing(self, store: SqliteRecordStore) -> None:
        """タグ数超過の編集では新規タグ・カテゴリ変更も台帳に残らないこと."""
        store.add_tag("dog", created_at=NOW)
        editor = PostEditor(store, EngineConfig(max_tags_per_post=2))
        post_id = editor.create_post(EditRequest(tag_string="cat"), USER).post.id

        result = editor.update_post(post_id, EditRequest(tag_string="brand_new_a brand_new_b artist:dog"), USER)

        assert not result.saved
        assert result.pipeline.hard_error is not None
        assert store.load_post(post_id).tag_string == "cat"
        assert len(store.list_versions(post_id)) == 1
        assert store.get_tag("brand_new_a") is None
        assert store.get_tag("brand_new_b") is None
        assert store.get_tag("dog").category is TagCategory.GENERAL

    def test_new_tags_are_saved_with_the_post(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        store.add_tag("dog", created_at=NOW)

        result = editor.create_post(EditRequest(tag_string="brand_new artist:dog"), USER)

        assert result.saved
        assert store.get_tag("brand_new").post_count == 1
        assert store.get_tag("dog").category is TagCategory.ARTIST
        assert store.get_tag("dog").post_count == 1

    def test_child_metatag_requires_saved_post(self, editor: PostEditor) -> None:
        with pytest.raises(ValueError, match="unsaved post"):
            editor._apply_child_metatag(PostState(), Metatag(MetatagKind.CHILD, "1"), USER)


@pytest.mark.integration
class TestVersionMerge:
    def test_automated_edits_by_same_actor_merge(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        """同じ Bot による連続した自動タグ編集は1つのバージョンにまとまること."""
        post_id = editor.create_post(EditRequest(tag_string="cat"), USER).post.id

        first = editor.update_post(post_id, EditRequest(tag_string_diff="a1"), BOT)
        second = editor.update_post(post_id, EditRequest(tag_string_diff="a2"), BOT)

        assert isinstance(first.version_action, CreateNewVersion)
        assert isinstance(second.version_action, ExtendVersion)
        versions = store.list_versions(post_id)
        assert len(versions) == 2
        assert versions[1].tags == "a1 a2 cat"
        assert versions[1].added_tags == ("a1", "a2")
        assert versions[1].updater_id == 99

    def test_rating_change_forces_new_version(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        post_id = editor.create_post(EditRequest(tag_string="cat"), USER).post.id
        editor.update_post(post_id, EditRequest(tag_string_diff="a1"), BOT)

        result = editor.update_post(post_id, EditRequest(rating="e"), BOT)

        assert isinstance(result.version_action, CreateNewVersion)
        assert [v.version for v in store.list_versions(post_id)] == [1, 2, 3]
        assert store.list_versions(post_id)[2].rating_changed


@pytest.mark.integration
class TestRevert:
    def test_revert_to_previous_version(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        post_id = editor.create_post(EditRequest(tag_string="cat", rating="s"), USER).post.id
        editor.update_post(post_id, EditRequest(tag_string_diff="dog", rating="e"), OTHER)
        first = store.list_versions(post_id)[0]

        diff = editor.diff_against_version(post_id, first.id)
        result = editor.revert_to(post_id, first.id, USER)

        assert diff.added_tags == ["dog"]
        assert diff.rating_changed
        assert result.post.tag_string == "cat"
        assert result.post.rating == "s"
        versions = store.list_versions(post_id)
        assert len(versions) == 3
        assert versions[2].reason == "Revert to version 1"

    def test_revert_to_other_posts_version(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        a = editor.create_post(EditRequest(tag_string="cat"), USER).post.id
        b = editor.create_post(EditRequest(tag_string="dog"), USER).post.id
        version_of_b = store.list_versions(b)[0]

        with pytest.raises(RevertError):
            editor.revert_to(a, version_of_b.id, USER)

    def test_revert_to_missing_version(self, editor: PostEditor) -> None:
        post_id = editor.create_post(EditRequest(tag_string="cat"), USER).post.id

        with pytest.raises(RevertError, match="Version not found"):
            editor.revert_to(post_id, 12345, USER)


@pytest.mark.integration
class TestPostMetatags:
    def test_pool_fav_vote(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        series = store.create_pool("Series", creator_id=7)
        post_id = editor.create_post(EditRequest(tag_string="cat"), USER).post.id

        result = editor.update_post(
            post_id,
            EditRequest(tag_string="cat pool:series newpool:Fresh_Pool fav:me upvote:x"),
            USER,
        )

        fresh = store.find_pool("Fresh_Pool")
        assert result.post.tag_string == "cat"
        assert fresh is not None
        assert fresh.post_ids == [post_id]
        assert result.post.pool_ids == [series.id, fresh.id]
        assert store.favorite_user_ids(post_id) == [7]
        assert store.vote_score(post_id) == 1
        assert result.directive_warnings == []

    def test_remove_from_pool_and_missing_pool(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        series = store.create_pool("Series", creator_id=7)
        post_id = editor.create_post(EditRequest(tag_string="cat pool:series"), USER).post.id

        result = editor.update_post(post_id, EditRequest(tag_string_diff="-pool:series pool:nope"), USER)

        assert store.find_pool(str(series.id)).post_ids == []
        assert result.directive_warnings == ["Pool not found: nope"]

    def test_set_permission(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        store.create_set("faves", creator_id=7)
        post_id = editor.create_post(EditRequest(tag_string="cat"), USER).post.id

        denied = editor.update_post(post_id, EditRequest(tag_string_diff="set:faves"), OTHER)
        allowed = editor.update_post(post_id, EditRequest(tag_string_diff="set:faves"), USER)

        assert denied.directive_warnings == ["You do not have permission to edit set faves"]
        assert allowed.directive_warnings == []
        assert store.find_set("faves").post_ids == [post_id]

    def test_child_metatags(self, editor: PostEditor, store: SqliteRecordStore) -> None:
        parent = editor.create_post(EditRequest(tag_string="cat"), USER).post.id
        child_a = editor.create_post(EditRequest(tag_string="cat"), USER).post.id
        child_b = editor.create_post(EditRequest(tag_string="cat"), USER).post.id

        editor.update_post(parent, EditRequest(tag_string_diff=f"child:{child_a},{child_b},{parent}"), USER)
        assert store.child_ids(parent) == [child_a, child_b]

        editor.update_post(parent, EditRequest(tag_string_diff=f"-child:{child_a}"), USER)
        assert store.child_ids(parent) == [child_b]

        editor.update_post(parent, EditRequest(tag_string_diff="child:none"), USER)
        assert store.child_ids(parent) == []
