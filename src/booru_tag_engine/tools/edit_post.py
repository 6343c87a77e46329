"""1件のポストにタグ編集を適用する（運用・デバッグ用）。"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger

from booru_tag_engine.adapters.sqlite_store import SqliteRecordStore
from booru_tag_engine.config import EngineConfig, load_config
from booru_tag_engine.core.context import Actor, EditContext, UserLevel
from booru_tag_engine.core.models import UNSET, EditRequest
from booru_tag_engine.editor import EditResult, PostEditor


def build_request(args: argparse.Namespace) -> EditRequest:
    return EditRequest(
        tag_string=args.tags,
        tag_string_diff=args.diff,
        old_tag_string=args.old_tags,
        locked_tags=args.locked_tags if args.locked_tags is not None else UNSET,
        edit_reason=args.reason,
    )


def edit_post(
    db_path: Path,
    post_id: int,
    request: EditRequest,
    ctx: EditContext,
    config: EngineConfig | None = None,
) -> EditResult:
    with SqliteRecordStore(db_path) as store:
        result = PostEditor(store, config).update_post(post_id, request, ctx)

    for warning in result.warnings:
        logger.warning(warning)
    if result.pipeline.hard_error is not None:
        logger.error(f"Edit rejected: {result.pipeline.hard_error}")
    else:
        logger.info(f"Post {post_id}: {result.post.tag_string}")
    return result


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply one tag edit to a post.")
    parser.add_argument("--db", type=Path, required=True, help="SQLite DB path")
    parser.add_argument("--post-id", type=int, required=True)
    parser.add_argument("--tags", default=None, help="Full replacement tag string")
    parser.add_argument("--diff", default=None, help='Tag diff, e.g. "red -blue"')
    parser.add_argument("--locked-tags", default=None)
    parser.add_argument("--old-tags", default=None, help="Tag string the editor originally saw")
    parser.add_argument("--reason", default=None, help="Edit reason recorded on the version")
    parser.add_argument("--actor-id", type=int, default=1)
    parser.add_argument(
        "--actor-level",
        choices=[level.name.lower() for level in UserLevel],
        default="member",
    )
    parser.add_argument("--automated", action="store_true", help="Mark the edit as automated")
    parser.add_argument("--config", type=Path, default=None, help="Engine config YAML")
    args = parser.parse_args()

    config = load_config(args.config) if args.config else None
    ctx = EditContext(
        actor=Actor(id=args.actor_id, level=UserLevel[args.actor_level.upper()]),
        automated=args.automated,
    )
    result = edit_post(args.db, args.post_id, build_request(args), ctx, config)
    if not result.saved:
        sys.exit(1)


if __name__ == "__main__":
    main()
