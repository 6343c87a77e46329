"""空のタグ編集エンジン用データベースを作成する。"""

from __future__ import annotations

import argparse
from pathlib import Path

from loguru import logger

from booru_tag_engine.core.database import build_indexes, create_database


def init_db(db_path: Path) -> None:
    if db_path.exists():
        raise FileExistsError(db_path)

    create_database(db_path)
    build_indexes(db_path)
    logger.info(f"Initialized DB: {db_path}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Create an empty booru tag engine SQLite file.")
    parser.add_argument("--db", type=Path, required=True, help="SQLite DB path (must not exist)")
    args = parser.parse_args()

    init_db(args.db)


if __name__ == "__main__":
    main()
