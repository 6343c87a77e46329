"""タグ post_count とポストのカテゴリ別カウンタのずれを検出・補正する。

post_count は編集時に差分で増減させているだけなので、同じタグへの同時編集でずれうる。
このスイープは全ポストの tag_string から真の値を再計算し、ずれを CSV に出力する（--apply で補正）。
"""

from __future__ import annotations

import argparse
import sqlite3
from pathlib import Path

import polars as pl
from loguru import logger

from booru_tag_engine.core.categories import CATEGORY_IDS, TagCategory

COUNTER_COLUMNS = ["tag_count", *(f"tag_count_{c.value}" for c in TagCategory)]
_COLUMN_BY_CATEGORY_ID = {cid: f"tag_count_{c.value}" for c, cid in CATEGORY_IDS.items()}


def _read_frames(db_path: Path) -> tuple[pl.DataFrame, pl.DataFrame]:
    conn = sqlite3.connect(db_path)
    try:
        conn.row_factory = sqlite3.Row
        post_rows = conn.execute(
            f"SELECT post_id, tag_string, is_deleted, {', '.join(COUNTER_COLUMNS)} FROM POSTS"
        ).fetchall()
        tag_rows = conn.execute("SELECT name, category, post_count FROM TAGS").fetchall()
    finally:
        conn.close()

    posts = pl.DataFrame(
        [dict(r) for r in post_rows],
        schema={
            "post_id": pl.Int64,
            "tag_string": pl.String,
            "is_deleted": pl.Int64,
            **{c: pl.Int64 for c in COUNTER_COLUMNS},
        },
    )
    tags = pl.DataFrame(
        [dict(r) for r in tag_rows],
        schema={"name": pl.String, "category": pl.Int64, "post_count": pl.Int64},
    )
    return posts, tags


def _explode_tags(posts: pl.DataFrame) -> pl.DataFrame:
    """ポスト×タグの縦持ちに展開する."""
    return (
        posts.select("post_id", "is_deleted", pl.col("tag_string").str.split(" ").alias("name"))
        .explode("name")
        .filter(pl.col("name").is_not_null() & (pl.col("name") != ""))
    )


def find_tag_post_count_drift(posts: pl.DataFrame, tags: pl.DataFrame) -> pl.DataFrame:
    """TAGS.post_count と実際の（削除済みでない）ポスト数の差分."""
    actual = (
        _explode_tags(posts)
        .filter(pl.col("is_deleted") == 0)
        .group_by("name")
        .agg(pl.len().cast(pl.Int64).alias("actual"))
    )
    return (
        tags.join(actual, on="name", how="left")
        .with_columns(pl.col("actual").fill_null(0))
        .filter(pl.col("post_count") != pl.col("actual"))
        .select("name", "post_count", "actual")
        .sort("name")
    )


def find_post_counter_drift(posts: pl.DataFrame, tags: pl.DataFrame) -> pl.DataFrame:
    """POSTS.tag_count / tag_count_<category> と tag_string から数えた値の差分."""
    exploded = _explode_tags(posts).join(tags.select("name", "category"), on="name", how="left")
    by_category = (
        exploded.with_columns(
            pl.col("category")
            .fill_null(CATEGORY_IDS[TagCategory.GENERAL])
            .replace_strict(_COLUMN_BY_CATEGORY_ID, default="tag_count_general", return_dtype=pl.String)
            .alias("column")
        )
        .group_by("post_id", "column")
        .agg(pl.len().cast(pl.Int64).alias("actual"))
    )
    totals = (
        exploded.group_by("post_id")
        .agg(pl.len().cast(pl.Int64).alias("actual"))
        .with_columns(pl.lit("tag_count").alias("column"))
        .select("post_id", "column", "actual")
    )
    actual = pl.concat([by_category, totals])

    stored = posts.unpivot(
        index="post_id",
        on=COUNTER_COLUMNS,
        variable_name="column",
        value_name="stored",
    )
    return (
        stored.join(actual, on=["post_id", "column"], how="left")
        .with_columns(pl.col("actual").fill_null(0))
        .filter(pl.col("stored") != pl.col("actual"))
        .sort("post_id", "column")
    )


def export_drift_reports(drift: dict[str, pl.DataFrame], output_dir: Path | str) -> dict[str, Path | None]:
    """ずれのレポートを CSV として出力する（ずれが無ければ None）."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    result_paths: dict[str, Path | None] = {}
    for key, df in drift.items():
        path = output_dir / f"{key}.csv"
        if len(df) > 0:
            df.write_csv(path)
            result_paths[key] = path
        else:
            result_paths[key] = None
    return result_paths


def apply_fixes(db_path: Path, drift: dict[str, pl.DataFrame]) -> int:
    """レポート内容どおりに TAGS / POSTS を補正する."""
    fixed = 0
    conn = sqlite3.connect(db_path)
    try:
        tag_drift = drift["tag_post_count_drift"]
        conn.executemany(
            "UPDATE TAGS SET post_count = ?, updated_at = CURRENT_TIMESTAMP WHERE name = ?",
            [(row["actual"], row["name"]) for row in tag_drift.iter_rows(named=True)],
        )
        fixed += len(tag_drift)

        post_drift = drift["post_counter_drift"]
        for column in COUNTER_COLUMNS:
            rows = post_drift.filter(pl.col("column") == column)
            # column は COUNTER_COLUMNS 由来のみ
            conn.executemany(
                f"UPDATE POSTS SET {column} = ? WHERE post_id = ?",
                [(row["actual"], row["post_id"]) for row in rows.iter_rows(named=True)],
            )
            fixed += len(rows)

        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error(f"Failed to apply counter fixes: {e}")
        raise
    finally:
        conn.close()
    return fixed


def reconcile_counts(db_path: Path, report_dir: Path | None = None, *, apply: bool = False) -> dict[str, pl.DataFrame]:
    if not db_path.exists():
        raise FileNotFoundError(db_path)

    logger.info(f"Reconciling counters: {db_path}")
    posts, tags = _read_frames(db_path)
    drift = {
        "tag_post_count_drift": find_tag_post_count_drift(posts, tags),
        "post_counter_drift": find_post_counter_drift(posts, tags),
    }
    for key, df in drift.items():
        logger.info(f"{key}: {len(df)} rows")

    if report_dir is not None:
        export_drift_reports(drift, report_dir)
    if apply:
        fixed = apply_fixes(db_path, drift)
        logger.info(f"Reconciliation complete. fixed={fixed}")
    return drift


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute tag post counts and per-post tag counters.")
    parser.add_argument("--db", type=Path, required=True, help="SQLite DB path")
    parser.add_argument("--report-dir", type=Path, default=None, help="Write drift CSV reports here")
    parser.add_argument("--apply", action="store_true", help="Write the recomputed values back")
    args = parser.parse_args()

    reconcile_counts(args.db, args.report_dir, apply=args.apply)


if __name__ == "__main__":
    main()
