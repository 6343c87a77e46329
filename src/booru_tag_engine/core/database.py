"""SQLiteデータベース作成ユーティリティ.

タグ編集エンジン用の SQLite スキーマ作成とインデックス作成を提供します。

注意:
    journal_mode = WAL は DB ファイルに永続化されますが、foreign_keys / busy_timeout は
    接続単位の設定です。接続を開くたびに apply_connection_pragmas() を呼んでください。
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

from loguru import logger

from .categories import TagCategory

PERSISTENT_PRAGMAS = [
    "PRAGMA journal_mode = WAL;",  # 保存中も読み取りを止めない
    "PRAGMA synchronous = NORMAL;",
]
CONNECTION_PRAGMAS = [
    "PRAGMA foreign_keys = ON;",
    "PRAGMA busy_timeout = 5000;",  # post_lock 待ち
]


def apply_connection_pragmas(conn: sqlite3.Connection) -> None:
    """接続ごとに適用が必要な PRAGMA を設定する。"""
    for pragma in CONNECTION_PRAGMAS:
        conn.execute(pragma)


_CATEGORY_COUNT_COLUMNS = "\n".join(
    f"        tag_count_{category.value} INTEGER NOT NULL DEFAULT 0," for category in TagCategory
)

# 必須インデックス（想定クエリに基づく）
REQUIRED_INDEXES = [
    # TAGS 検索用（カテゴリ別・件数順）
    "CREATE INDEX IF NOT EXISTS idx_tags_category ON TAGS(category);",
    "CREATE INDEX IF NOT EXISTS idx_tags_post_count ON TAGS(post_count DESC);",
    # implication の逆引き（ロック削除の展開）
    "CREATE INDEX IF NOT EXISTS idx_implications_consequent ON TAG_IMPLICATIONS(consequent_name);",
    # 親子関係（child: メタタグ）
    "CREATE INDEX IF NOT EXISTS idx_posts_parent ON POSTS(parent_id);",
    # 直近バージョン取得
    "CREATE INDEX IF NOT EXISTS idx_post_versions_post ON POST_VERSIONS(post_id, version DESC);",
    "CREATE INDEX IF NOT EXISTS idx_favorites_post ON FAVORITES(post_id);",
    "CREATE INDEX IF NOT EXISTS idx_post_votes_post ON POST_VOTES(post_id);",
]

# DBスキーマ
SCHEMA_SQL = [
    """
    CREATE TABLE IF NOT EXISTS TAGS (
        tag_id INTEGER NOT NULL PRIMARY KEY,
        name TEXT NOT NULL,
        category INTEGER NOT NULL DEFAULT 0,
        post_count INTEGER NOT NULL DEFAULT 0,
        created_at DATETIME NOT NULL,
        updated_at DATETIME DEFAULT (CURRENT_TIMESTAMP),
        UNIQUE(name)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS TAG_ALIASES (
        antecedent_name TEXT NOT NULL PRIMARY KEY,
        consequent_name TEXT NOT NULL,
        CONSTRAINT ck_alias_not_self CHECK (antecedent_name != consequent_name)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS TAG_IMPLICATIONS (
        antecedent_name TEXT NOT NULL,
        consequent_name TEXT NOT NULL,
        PRIMARY KEY (antecedent_name, consequent_name),
        CONSTRAINT ck_implication_not_self CHECK (antecedent_name != consequent_name)
    );
    """,
    f"""
    CREATE TABLE IF NOT EXISTS POSTS (
        post_id INTEGER NOT NULL PRIMARY KEY,
        tag_string TEXT NOT NULL DEFAULT '',
        locked_tags TEXT NULL,
        rating TEXT NOT NULL DEFAULT 'q',
        parent_id INTEGER NULL,
        source TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        pool_string TEXT NOT NULL DEFAULT '',
        is_note_locked BOOLEAN NOT NULL DEFAULT 0,
        is_rating_locked BOOLEAN NOT NULL DEFAULT 0,
        is_status_locked BOOLEAN NOT NULL DEFAULT 0,
        is_deleted BOOLEAN NOT NULL DEFAULT 0,
        image_width INTEGER NOT NULL DEFAULT 0,
        image_height INTEGER NOT NULL DEFAULT 0,
        file_size INTEGER NOT NULL DEFAULT 0,
        file_ext TEXT NOT NULL DEFAULT '',
        tag_count INTEGER NOT NULL DEFAULT 0,
{_CATEGORY_COUNT_COLUMNS}
        created_at DATETIME DEFAULT (CURRENT_TIMESTAMP),
        updated_at DATETIME DEFAULT (CURRENT_TIMESTAMP),
        CONSTRAINT ck_rating CHECK (rating IN ('s', 'q', 'e'))
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS POST_VERSIONS (
        version_id INTEGER NOT NULL PRIMARY KEY,
        post_id INTEGER NOT NULL,
        version INTEGER NOT NULL,
        tags TEXT NOT NULL,
        added_tags TEXT NOT NULL DEFAULT '',
        removed_tags TEXT NOT NULL DEFAULT '',
        locked_tags TEXT NULL,
        added_locked_tags TEXT NOT NULL DEFAULT '',
        removed_locked_tags TEXT NOT NULL DEFAULT '',
        rating TEXT NOT NULL,
        rating_changed BOOLEAN NOT NULL DEFAULT 0,
        parent_id INTEGER NULL,
        parent_changed BOOLEAN NOT NULL DEFAULT 0,
        source TEXT NOT NULL DEFAULT '',
        source_changed BOOLEAN NOT NULL DEFAULT 0,
        description TEXT NOT NULL DEFAULT '',
        description_changed BOOLEAN NOT NULL DEFAULT 0,
        updater_id INTEGER NOT NULL,
        reason TEXT NULL,
        original_tags TEXT NOT NULL DEFAULT '',
        created_at DATETIME NOT NULL,
        updated_at DATETIME NOT NULL,
        FOREIGN KEY(post_id) REFERENCES POSTS(post_id),
        UNIQUE(post_id, version)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS POOLS (
        pool_id INTEGER NOT NULL PRIMARY KEY,
        name TEXT NOT NULL,
        post_ids TEXT NOT NULL DEFAULT '',
        creator_id INTEGER NOT NULL,
        created_at DATETIME DEFAULT (CURRENT_TIMESTAMP),
        UNIQUE(name)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS POST_SETS (
        set_id INTEGER NOT NULL PRIMARY KEY,
        shortname TEXT NOT NULL,
        creator_id INTEGER NOT NULL,
        is_public BOOLEAN NOT NULL DEFAULT 1,
        post_ids TEXT NOT NULL DEFAULT '',
        created_at DATETIME DEFAULT (CURRENT_TIMESTAMP),
        UNIQUE(shortname)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS POST_SET_MAINTAINERS (
        set_id INTEGER NOT NULL,
        user_id INTEGER NOT NULL,
        PRIMARY KEY (set_id, user_id),
        FOREIGN KEY(set_id) REFERENCES POST_SETS(set_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS FAVORITES (
        user_id INTEGER NOT NULL,
        post_id INTEGER NOT NULL,
        created_at DATETIME DEFAULT (CURRENT_TIMESTAMP),
        PRIMARY KEY (user_id, post_id),
        FOREIGN KEY(post_id) REFERENCES POSTS(post_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS POST_VOTES (
        user_id INTEGER NOT NULL,
        post_id INTEGER NOT NULL,
        score INTEGER NOT NULL,
        created_at DATETIME DEFAULT (CURRENT_TIMESTAMP),
        PRIMARY KEY (user_id, post_id),
        FOREIGN KEY(post_id) REFERENCES POSTS(post_id),
        CONSTRAINT ck_vote_score CHECK (score IN (-1, 1))
    );
    """,
]


def create_database(db_path: Path | str) -> None:
    """データベースファイルを新規作成する.

    Args:
        db_path: 作成するデータベースファイルパス
    """
    db_path = Path(db_path)

    if db_path.exists():
        logger.warning(f"Database already exists: {db_path}")
        return

    db_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info(f"Creating database: {db_path}")

    conn = sqlite3.connect(db_path)
    try:
        for pragma in PERSISTENT_PRAGMAS:
            conn.execute(pragma)
            logger.debug(f"Applied: {pragma}")

        for stmt in SCHEMA_SQL:
            conn.executescript(stmt)

        conn.commit()
        logger.info("Database created successfully")

    except Exception as e:
        logger.error(f"Failed to create database: {e}")
        raise
    finally:
        conn.close()


def build_indexes(db_path: Path | str) -> None:
    """必須インデックスを作成する.

    Args:
        db_path: データベースファイルパス
    """
    db_path = Path(db_path)

    if not db_path.exists():
        msg = f"Database does not exist: {db_path}"
        raise FileNotFoundError(msg)

    logger.info(f"Building indexes: {db_path}")

    conn = sqlite3.connect(db_path)
    try:
        for index_sql in REQUIRED_INDEXES:
            logger.debug(f"Creating index: {index_sql}")
            conn.execute(index_sql)

        conn.commit()
        logger.info(f"Created {len(REQUIRED_INDEXES)} indexes successfully")

    except Exception as e:
        logger.error(f"Failed to build indexes: {e}")
        raise
    finally:
        conn.close()
