"""tools（init_db / edit_post / reconcile_counts）の統合テスト."""

import argparse
import sqlite3
from pathlib import Path

import pytest

from booru_tag_engine.adapters.sqlite_store import SqliteRecordStore
from booru_tag_engine.core.context import Actor, EditContext
from booru_tag_engine.core.models import EditRequest
from booru_tag_engine.editor import PostEditor
from booru_tag_engine.tools.edit_post import build_request, edit_post
from booru_tag_engine.tools.init_db import init_db
from booru_tag_engine.tools.reconcile_counts import reconcile_counts

USER = EditContext(actor=Actor(id=7, name="user"))


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "engine.db"
    init_db(path)
    with SqliteRecordStore(path) as store:
        editor = PostEditor(store)
        editor.create_post(EditRequest(tag_string="cat dog"), USER)
        editor.create_post(EditRequest(tag_string="cat artist:someone"), USER)
    return path


def _corrupt(db_path: Path) -> None:
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("UPDATE TAGS SET post_count = 5 WHERE name = 'cat'")
        conn.execute("UPDATE POSTS SET tag_count_general = 9 WHERE post_id = 1")
        conn.commit()
    finally:
        conn.close()


@pytest.mark.integration
class TestInitDb:
    def test_refuses_existing_file(self, tmp_path: Path) -> None:
        path = tmp_path / "engine.db"
        init_db(path)

        with pytest.raises(FileExistsError):
            init_db(path)

    def test_creates_indexes(self, tmp_path: Path) -> None:
        path = tmp_path / "engine.db"
        init_db(path)

        conn = sqlite3.connect(path)
        try:
            names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")}
        finally:
            conn.close()
        assert any(n.startswith("idx_") for n in names)


@pytest.mark.integration
class TestReconcileCounts:
    def test_clean_database_has_no_drift(self, db_path: Path) -> None:
        drift = reconcile_counts(db_path)

        assert drift["tag_post_count_drift"].is_empty()
        assert drift["post_counter_drift"].is_empty()

    def test_detects_and_fixes_drift(self, db_path: Path, tmp_path: Path) -> None:
        _corrupt(db_path)
        report_dir = tmp_path / "reports"

        drift = reconcile_counts(db_path, report_dir, apply=True)

        tag_drift = drift["tag_post_count_drift"]
        assert tag_drift.to_dicts() == [{"name": "cat", "post_count": 5, "actual": 2}]
        post_drift = drift["post_counter_drift"]
        assert post_drift.to_dicts() == [
            {"post_id": 1, "column": "tag_count_general", "stored": 9, "actual": 2}
        ]
        assert (report_dir / "tag_post_count_drift.csv").exists()
        assert (report_dir / "post_counter_drift.csv").exists()

        after = reconcile_counts(db_path)
        assert after["tag_post_count_drift"].is_empty()
        assert after["post_counter_drift"].is_empty()

    def test_missing_database(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            reconcile_counts(tmp_path / "missing.db")


@pytest.mark.integration
class TestEditPost:
    def test_build_request(self) -> None:
        args = argparse.Namespace(tags=None, diff="fox -dog", old_tags=None, locked_tags=None, reason="cleanup")

        request = build_request(args)

        assert request == EditRequest(tag_string_diff="fox -dog", edit_reason="cleanup")

    def test_edit_post(self, db_path: Path) -> None:
        result = edit_post(db_path, 1, EditRequest(tag_string_diff="fox -dog"), USER)

        assert result.saved
        with SqliteRecordStore(db_path) as store:
            assert store.load_post(1).tag_string == "cat fox"
            assert [v.version for v in store.list_versions(1)] == [1, 2]
