"""SQLite レコードストア.

core/database.py のスキーマ上にポスト・タグ台帳・編集履歴を保存する。

トランザクション:
    接続は autocommit（isolation_level=None）で開き、書き込みの塊だけ
    `BEGIN IMMEDIATE` で明示的に囲む。save_edit と post_lock はこの経路を通り、入れ子にはできない。
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path

from loguru import logger

from booru_tag_engine.core.auto_tagger import FileMetadata
from booru_tag_engine.core.categories import TagCategory
from booru_tag_engine.core.collaborators import NameValidator, TagRecord, default_name_validator
from booru_tag_engine.core.counters import TagCounts
from booru_tag_engine.core.database import apply_connection_pragmas
from booru_tag_engine.core.exceptions import PostNotFoundError, TagCreationError
from booru_tag_engine.core.models import PostState
from booru_tag_engine.core.tag_string import split_sources, uniq
from booru_tag_engine.core.versions import CreateNewVersion, ExtendVersion, Version, VersionAction

from .base_store import BaseRecordStore, Pool, PostSet

# SQLite のプレースホルダ上限より十分小さく
_CHUNK_SIZE = 500

_POST_SCALAR_COLUMNS = (
    "tag_string",
    "locked_tags",
    "rating",
    "parent_id",
    "source",
    "description",
    "pool_string",
    "is_note_locked",
    "is_rating_locked",
    "is_status_locked",
    "is_deleted",
)

_VERSION_COLUMNS = (
    "post_id",
    "version",
    "tags",
    "added_tags",
    "removed_tags",
    "locked_tags",
    "added_locked_tags",
    "removed_locked_tags",
    "rating",
    "rating_changed",
    "parent_id",
    "parent_changed",
    "source",
    "source_changed",
    "description",
    "description_changed",
    "updater_id",
    "reason",
    "original_tags",
    "created_at",
    "updated_at",
)


def _chunks(items: list[str]) -> Iterator[list[str]]:
    for i in range(0, len(items), _CHUNK_SIZE):
        yield items[i : i + _CHUNK_SIZE]


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


def _file_ext(file: FileMetadata) -> str:
    if file.is_webm:
        return "webm"
    if file.is_gif:
        return "gif"
    if file.is_png:
        return "png"
    return "jpg"


def _parse_ids(text: str) -> list[int]:
    return [int(t) for t in text.split() if t.isdigit()]


def _normalize_pool_name(name: str) -> str:
    return "_".join(name.split())


class SqliteRecordStore(BaseRecordStore):
    """SQLite によるレコードストア.

    Args:
        db_path: create_database() で作成済みのデータベースファイル
        name_validator: 新規タグ名の検証関数（エラー理由を返す、問題なければ None）
    """

    def __init__(self, db_path: Path | str, *, name_validator: NameValidator = default_name_validator) -> None:
        db_path = Path(db_path)
        if not db_path.exists():
            msg = f"Database does not exist: {db_path}"
            raise FileNotFoundError(msg)

        self.db_path = db_path
        self._validate_name = name_validator
        self._conn = sqlite3.connect(db_path, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        apply_connection_pragmas(self._conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> SqliteRecordStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        if self._conn.in_transaction:
            raise RuntimeError("Nested transactions are not supported")

        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except Exception as e:
            self._conn.execute("ROLLBACK")
            logger.error(f"Transaction rolled back: {e}")
            raise
        else:
            self._conn.execute("COMMIT")

    @contextmanager
    def post_lock(self, post_id: int) -> Iterator[None]:
        logger.debug(f"Acquiring write lock for post {post_id}")
        with self._transaction():
            yield

    # --- alias / implication ---

    def add_alias(self, antecedent: str, consequent: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO TAG_ALIASES (antecedent_name, consequent_name) VALUES (?, ?)",
            (antecedent, consequent),
        )

    def add_implication(self, antecedent: str, consequent: str) -> None:
        self._conn.execute(
            "INSERT OR IGNORE INTO TAG_IMPLICATIONS (antecedent_name, consequent_name) VALUES (?, ?)",
            (antecedent, consequent),
        )

    def resolve(self, names: list[str]) -> list[str]:
        names = uniq(names)
        mapping: dict[str, str] = {}
        for chunk in _chunks(names):
            rows = self._conn.execute(
                "SELECT antecedent_name, consequent_name FROM TAG_ALIASES "
                f"WHERE antecedent_name IN ({_placeholders(len(chunk))})",
                chunk,
            ).fetchall()
            mapping.update({row["antecedent_name"]: row["consequent_name"] for row in rows})
        return uniq([mapping.get(n, n) for n in names])

    def _neighbors(self, names: set[str], *, reverse: bool) -> set[str]:
        source, target = ("consequent_name", "antecedent_name") if reverse else ("antecedent_name", "consequent_name")
        found: set[str] = set()
        for chunk in _chunks(sorted(names)):
            rows = self._conn.execute(
                f"SELECT {target} FROM TAG_IMPLICATIONS WHERE {source} IN ({_placeholders(len(chunk))})",
                chunk,
            ).fetchall()
            found.update(row[0] for row in rows)
        return found

    def _closure(self, start: set[str], *, reverse: bool) -> set[str]:
        seen: set[str] = set()
        frontier = set(start)
        while frontier:
            frontier = self._neighbors(frontier, reverse=reverse) - seen - start
            seen |= frontier
        return seen

    def expand(self, names: list[str]) -> list[str]:
        implied = self._closure(set(names), reverse=False)
        return uniq([*names, *sorted(implied - set(names))])

    def implying(self, name: str) -> set[str]:
        return self._closure({name}, reverse=True)

    # --- タグ台帳 ---

    @staticmethod
    def _row_to_tag(row: sqlite3.Row) -> TagRecord:
        return TagRecord(
            name=row["name"],
            category=TagCategory.from_id(row["category"]),
            post_count=row["post_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def get_tag(self, name: str) -> TagRecord | None:
        row = self._conn.execute(
            "SELECT name, category, post_count, created_at FROM TAGS WHERE name = ?", (name,)
        ).fetchone()
        return self._row_to_tag(row) if row else None

    def add_tag(
        self,
        name: str,
        category: TagCategory = TagCategory.GENERAL,
        *,
        post_count: int = 0,
        created_at: datetime,
    ) -> TagRecord:
        """タグを台帳に直接登録する（既存なら上書き）."""
        self._conn.execute(
            """
            INSERT INTO TAGS (name, category, post_count, created_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
                category = excluded.category,
                post_count = excluded.post_count,
                updated_at = CURRENT_TIMESTAMP
            """,
            (name, category.category_id, post_count, created_at.isoformat()),
        )
        return TagRecord(name=name, category=category, post_count=post_count, created_at=created_at)

    def find_or_plan(
        self,
        names: list[str],
        *,
        categories: dict[str, TagCategory] | None = None,
        now: datetime,
        category_change_max_post_count: int = 0,
    ) -> list[TagRecord | TagCreationError]:
        """台帳を読むだけで、新規タグ・カテゴリ変更は未保存の TagRecord として返す."""
        categories = categories or {}
        results: list[TagRecord | TagCreationError] = []

        for name in uniq(names):
            requested = categories.get(name)
            record = self.get_tag(name)

            if record is None:
                reason = self._validate_name(name)
                if reason:
                    results.append(TagCreationError(name, reason))
                    continue
                record = TagRecord(
                    name=name, category=requested or TagCategory.GENERAL, post_count=0, created_at=now, is_new=True
                )
            elif requested is not None and requested != record.category:
                if record.post_count > category_change_max_post_count:
                    record = replace(record, category_rejected=True)
                else:
                    record = replace(record, category=requested, category_changed=True)

            results.append(record)
        return results

    def _commit_tags(self, records: Sequence[TagRecord]) -> None:
        created = 0
        for record in records:
            if record.is_new:
                self._conn.execute(
                    "INSERT INTO TAGS (name, category, post_count, created_at) VALUES (?, ?, 0, ?) "
                    "ON CONFLICT(name) DO NOTHING",
                    (record.name, record.category.category_id, record.created_at.isoformat()),
                )
                created += 1
            elif record.category_changed:
                self._conn.execute(
                    "UPDATE TAGS SET category = ?, updated_at = CURRENT_TIMESTAMP WHERE name = ?",
                    (record.category.category_id, record.name),
                )
                logger.info(f"Changed category of tag {record.name!r} to {record.category.value}")
        if created:
            logger.debug(f"Created {created} tags")

    def find_or_create(
        self,
        names: list[str],
        *,
        categories: dict[str, TagCategory] | None = None,
        now: datetime,
        category_change_max_post_count: int = 0,
    ) -> list[TagRecord | TagCreationError]:
        """find_or_plan の結果をその場で台帳に書き込む（シード・保守用）."""
        results = self.find_or_plan(
            names, categories=categories, now=now, category_change_max_post_count=category_change_max_post_count
        )
        with self._transaction():
            self._commit_tags([r for r in results if isinstance(r, TagRecord)])
        return [
            replace(r, is_new=False, category_changed=False) if isinstance(r, TagRecord) else r for r in results
        ]

    def category_for(self, name: str) -> TagCategory | None:
        record = self.get_tag(name)
        return record.category if record else None

    def categories_for(self, names: list[str]) -> dict[str, TagCategory]:
        out: dict[str, TagCategory] = {}
        for chunk in _chunks(uniq(names)):
            rows = self._conn.execute(
                f"SELECT name, category FROM TAGS WHERE name IN ({_placeholders(len(chunk))})", chunk
            ).fetchall()
            out.update({row["name"]: TagCategory.from_id(row["category"]) for row in rows})
        return out

    def _apply_post_count_deltas(self, deltas: dict[str, int]) -> None:
        self._conn.executemany(
            "UPDATE TAGS SET post_count = post_count + ?, updated_at = CURRENT_TIMESTAMP WHERE name = ?",
            [(delta, name) for name, delta in deltas.items()],
        )

    # --- ポスト ---

    def post_exists(self, post_id: int) -> bool:
        row = self._conn.execute("SELECT 1 FROM POSTS WHERE post_id = ?", (post_id,)).fetchone()
        return row is not None

    @staticmethod
    def _row_to_post(row: sqlite3.Row) -> PostState:
        ext = row["file_ext"]
        return PostState(
            id=row["post_id"],
            tag_string=row["tag_string"],
            locked_tags=row["locked_tags"],
            rating=row["rating"],
            parent_id=row["parent_id"],
            source=row["source"],
            description=row["description"],
            pool_string=row["pool_string"],
            is_note_locked=bool(row["is_note_locked"]),
            is_rating_locked=bool(row["is_rating_locked"]),
            is_status_locked=bool(row["is_status_locked"]),
            is_deleted=bool(row["is_deleted"]),
            file=FileMetadata(
                width=row["image_width"],
                height=row["image_height"],
                size_bytes=row["file_size"],
                is_webm=ext == "webm",
                is_gif=ext == "gif",
                is_png=ext == "png",
                source_urls=tuple(split_sources(row["source"])),
            ),
            counts=TagCounts.from_columns(dict(row)),
        )

    def load_post(self, post_id: int) -> PostState:
        row = self._conn.execute("SELECT * FROM POSTS WHERE post_id = ?", (post_id,)).fetchone()
        if row is None:
            raise PostNotFoundError(post_id)
        return self._row_to_post(row)

    def child_ids(self, post_id: int) -> list[int]:
        rows = self._conn.execute(
            "SELECT post_id FROM POSTS WHERE parent_id = ? ORDER BY post_id", (post_id,)
        ).fetchall()
        return [row[0] for row in rows]

    @staticmethod
    def _post_columns(post: PostState) -> dict[str, object]:
        columns: dict[str, object] = {name: getattr(post, name) for name in _POST_SCALAR_COLUMNS}
        columns.update(
            image_width=post.file.width,
            image_height=post.file.height,
            file_size=post.file.size_bytes,
            file_ext=_file_ext(post.file),
        )
        columns.update(post.counts.as_columns())
        return columns

    def _write_post(self, post: PostState) -> PostState:
        columns = self._post_columns(post)
        if post.id is None:
            cursor = self._conn.execute(
                f"INSERT INTO POSTS ({', '.join(columns)}) VALUES ({_placeholders(len(columns))})",
                list(columns.values()),
            )
            return replace(post, id=cursor.lastrowid)

        assignments = ", ".join(f"{name} = ?" for name in columns)
        cursor = self._conn.execute(
            f"UPDATE POSTS SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE post_id = ?",
            [*columns.values(), post.id],
        )
        if cursor.rowcount == 0:
            raise PostNotFoundError(post.id)
        return post

    def save_edit(
        self,
        post: PostState,
        *,
        post_count_deltas: dict[str, int],
        version_action_for: Callable[[PostState], VersionAction],
        tag_changes: Sequence[TagRecord] = (),
    ) -> tuple[PostState, VersionAction]:
        with self._transaction():
            self._commit_tags(tag_changes)
            saved = self._write_post(post)
            if post_count_deltas:
                self._apply_post_count_deltas(post_count_deltas)

            action = version_action_for(saved)
            if isinstance(action, CreateNewVersion):
                version_id = self._insert_version(action.version)
                action = CreateNewVersion(replace(action.version, id=version_id))
                logger.info(f"Created version {action.version.version} of post {saved.id}")
            elif isinstance(action, ExtendVersion):
                self._update_version(action.version_id, action.version, action.updated_at)
                logger.info(f"Extended version {action.version.version} of post {saved.id}")

        return saved, action

    # --- 編集履歴 ---

    @staticmethod
    def _version_values(version: Version) -> list[object]:
        values = {
            **asdict(version),
            "added_tags": " ".join(version.added_tags),
            "removed_tags": " ".join(version.removed_tags),
            "added_locked_tags": " ".join(version.added_locked_tags),
            "removed_locked_tags": " ".join(version.removed_locked_tags),
            "created_at": version.created_at.isoformat(),
            "updated_at": version.created_at.isoformat(),
        }
        return [values[name] for name in _VERSION_COLUMNS]

    def _insert_version(self, version: Version) -> int:
        cursor = self._conn.execute(
            f"INSERT INTO POST_VERSIONS ({', '.join(_VERSION_COLUMNS)}) "
            f"VALUES ({_placeholders(len(_VERSION_COLUMNS))})",
            self._version_values(version),
        )
        return int(cursor.lastrowid)

    def _update_version(self, version_id: int, version: Version, updated_at: datetime) -> None:
        # created_at と version 番号は統合前のまま
        columns = [c for c in _VERSION_COLUMNS if c not in ("post_id", "version", "created_at")]
        values = dict(zip(_VERSION_COLUMNS, self._version_values(version), strict=True))
        values["updated_at"] = updated_at.isoformat()
        assignments = ", ".join(f"{c} = ?" for c in columns)
        self._conn.execute(
            f"UPDATE POST_VERSIONS SET {assignments} WHERE version_id = ?",
            [*(values[c] for c in columns), version_id],
        )

    @staticmethod
    def _row_to_version(row: sqlite3.Row) -> Version:
        return Version(
            id=row["version_id"],
            post_id=row["post_id"],
            version=row["version"],
            tags=row["tags"],
            added_tags=tuple(row["added_tags"].split()),
            removed_tags=tuple(row["removed_tags"].split()),
            locked_tags=row["locked_tags"],
            added_locked_tags=tuple(row["added_locked_tags"].split()),
            removed_locked_tags=tuple(row["removed_locked_tags"].split()),
            rating=row["rating"],
            rating_changed=bool(row["rating_changed"]),
            parent_id=row["parent_id"],
            parent_changed=bool(row["parent_changed"]),
            source=row["source"],
            source_changed=bool(row["source_changed"]),
            description=row["description"],
            description_changed=bool(row["description_changed"]),
            updater_id=row["updater_id"],
            reason=row["reason"],
            original_tags=row["original_tags"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def latest_version(self, post_id: int) -> Version | None:
        row = self._conn.execute(
            "SELECT * FROM POST_VERSIONS WHERE post_id = ? ORDER BY version DESC LIMIT 1", (post_id,)
        ).fetchone()
        return self._row_to_version(row) if row else None

    def get_version(self, version_id: int) -> Version | None:
        row = self._conn.execute("SELECT * FROM POST_VERSIONS WHERE version_id = ?", (version_id,)).fetchone()
        return self._row_to_version(row) if row else None

    def list_versions(self, post_id: int) -> list[Version]:
        rows = self._conn.execute(
            "SELECT * FROM POST_VERSIONS WHERE post_id = ? ORDER BY version", (post_id,)
        ).fetchall()
        return [self._row_to_version(row) for row in rows]

    # --- プール ---

    @staticmethod
    def _row_to_pool(row: sqlite3.Row) -> Pool:
        return Pool(
            id=row["pool_id"], name=row["name"], creator_id=row["creator_id"], post_ids=_parse_ids(row["post_ids"])
        )

    def find_pool(self, key: str) -> Pool | None:
        if key.isdigit():
            row = self._conn.execute("SELECT * FROM POOLS WHERE pool_id = ?", (int(key),)).fetchone()
        else:
            row = self._conn.execute(
                "SELECT * FROM POOLS WHERE lower(name) = ?", (_normalize_pool_name(key).lower(),)
            ).fetchone()
        return self._row_to_pool(row) if row else None

    def create_pool(self, name: str, creator_id: int) -> Pool:
        name = _normalize_pool_name(name)
        if not name or name.isdigit():
            raise ValueError(f"Invalid pool name: {name!r}")
        cursor = self._conn.execute("INSERT INTO POOLS (name, creator_id) VALUES (?, ?)", (name, creator_id))
        logger.info(f"Created pool {name!r} (id={cursor.lastrowid})")
        return Pool(id=int(cursor.lastrowid), name=name, creator_id=creator_id)

    def _update_membership(
        self, table: str, key_column: str, prefix: str, group_id: int, post_id: int, add: bool
    ) -> None:
        with self.post_lock(post_id):
            row = self._conn.execute(f"SELECT post_ids FROM {table} WHERE {key_column} = ?", (group_id,)).fetchone()
            if row is None:
                raise ValueError(f"{table} row not found: {group_id}")
            post_row = self._conn.execute("SELECT pool_string FROM POSTS WHERE post_id = ?", (post_id,)).fetchone()
            if post_row is None:
                raise PostNotFoundError(post_id)

            post_ids = _parse_ids(row["post_ids"])
            tokens = post_row["pool_string"].split()
            token = f"{prefix}:{group_id}"
            if add:
                post_ids = uniq([*map(str, post_ids), str(post_id)])
                tokens = uniq([*tokens, token])
            else:
                post_ids = [str(p) for p in post_ids if p != post_id]
                tokens = [t for t in tokens if t != token]

            self._conn.execute(
                f"UPDATE {table} SET post_ids = ? WHERE {key_column} = ?", (" ".join(post_ids), group_id)
            )
            self._conn.execute("UPDATE POSTS SET pool_string = ? WHERE post_id = ?", (" ".join(tokens), post_id))

    def add_post_to_pool(self, pool_id: int, post_id: int) -> None:
        self._update_membership("POOLS", "pool_id", "pool", pool_id, post_id, add=True)

    def remove_post_from_pool(self, pool_id: int, post_id: int) -> None:
        self._update_membership("POOLS", "pool_id", "pool", pool_id, post_id, add=False)

    # --- セット ---

    def create_set(self, shortname: str, creator_id: int, *, maintainer_ids: tuple[int, ...] = ()) -> PostSet:
        with self._transaction():
            cursor = self._conn.execute(
                "INSERT INTO POST_SETS (shortname, creator_id) VALUES (?, ?)", (shortname, creator_id)
            )
            set_id = int(cursor.lastrowid)
            self._conn.executemany(
                "INSERT INTO POST_SET_MAINTAINERS (set_id, user_id) VALUES (?, ?)",
                [(set_id, user_id) for user_id in maintainer_ids],
            )
        return PostSet(id=set_id, shortname=shortname, creator_id=creator_id, maintainer_ids=frozenset(maintainer_ids))

    def find_set(self, key: str) -> PostSet | None:
        if key.isdigit():
            row = self._conn.execute("SELECT * FROM POST_SETS WHERE set_id = ?", (int(key),)).fetchone()
        else:
            row = self._conn.execute("SELECT * FROM POST_SETS WHERE shortname = ?", (key,)).fetchone()
        if row is None:
            return None

        maintainers = self._conn.execute(
            "SELECT user_id FROM POST_SET_MAINTAINERS WHERE set_id = ?", (row["set_id"],)
        ).fetchall()
        return PostSet(
            id=row["set_id"],
            shortname=row["shortname"],
            creator_id=row["creator_id"],
            is_public=bool(row["is_public"]),
            post_ids=_parse_ids(row["post_ids"]),
            maintainer_ids=frozenset(m[0] for m in maintainers),
        )

    def add_post_to_set(self, set_id: int, post_id: int) -> None:
        self._update_membership("POST_SETS", "set_id", "set", set_id, post_id, add=True)

    def remove_post_from_set(self, set_id: int, post_id: int) -> None:
        self._update_membership("POST_SETS", "set_id", "set", set_id, post_id, add=False)

    # --- お気に入り / 投票 ---

    def add_favorite(self, user_id: int, post_id: int) -> None:
        self._conn.execute("INSERT OR IGNORE INTO FAVORITES (user_id, post_id) VALUES (?, ?)", (user_id, post_id))

    def remove_favorite(self, user_id: int, post_id: int) -> None:
        self._conn.execute("DELETE FROM FAVORITES WHERE user_id = ? AND post_id = ?", (user_id, post_id))

    def favorite_user_ids(self, post_id: int) -> list[int]:
        rows = self._conn.execute(
            "SELECT user_id FROM FAVORITES WHERE post_id = ? ORDER BY user_id", (post_id,)
        ).fetchall()
        return [row[0] for row in rows]

    def vote(self, user_id: int, post_id: int, score: int) -> None:
        if score not in (-1, 1):
            raise ValueError(f"Vote score must be -1 or 1, got {score}")
        self._conn.execute(
            """
            INSERT INTO POST_VOTES (user_id, post_id, score) VALUES (?, ?, ?)
            ON CONFLICT(user_id, post_id) DO UPDATE SET score = excluded.score
            """,
            (user_id, post_id, score),
        )

    def vote_score(self, post_id: int) -> int:
        row = self._conn.execute(
            "SELECT COALESCE(SUM(score), 0) FROM POST_VOTES WHERE post_id = ?", (post_id,)
        ).fetchone()
        return int(row[0])
