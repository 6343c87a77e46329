"""編集履歴（VersionManager）.

保存ごとに「新しいバージョンを作る / 直近バージョンへ統合する / 何もしない」を決める。

状態遷移:
    - 初回保存、または強制スナップショット → 新規バージョン（version=1 なら first）
    - 自動編集 かつ 統合可能属性（tags/source/locked_tags）のみ変化
      かつ 直近バージョンが同じ actor・basic・first でない → 直近バージョンを拡張
    - 監視属性のいずれかが変化 → 新規バージョン（version = 直近 + 1）
    - それ以外 → NoOp

revert は対象バージョンのスナップショットから EditRequest を組み立てて通常の保存経路に流す。
履歴は書き換えない（常に新しいバージョンが増える）。
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime

from .context import EditContext
from .exceptions import RevertError
from .models import EditRequest, PostState
from .tag_string import scan_tags

MERGEABLE_ATTRIBUTES = ("tag_string", "source", "locked_tags")
UNMERGEABLE_ATTRIBUTES = ("rating", "parent_id", "description")


@dataclass(frozen=True)
class Version:
    """ポストの編集履歴1件（不変スナップショット + 差分）."""

    post_id: int
    version: int
    tags: str
    added_tags: tuple[str, ...]
    removed_tags: tuple[str, ...]
    locked_tags: str | None
    added_locked_tags: tuple[str, ...]
    removed_locked_tags: tuple[str, ...]
    rating: str
    rating_changed: bool
    parent_id: int | None
    parent_changed: bool
    source: str
    source_changed: bool
    description: str
    description_changed: bool
    updater_id: int
    created_at: datetime
    reason: str | None = None
    original_tags: str = ""
    id: int | None = None

    @property
    def is_first(self) -> bool:
        return self.version == 1

    @property
    def is_basic(self) -> bool:
        """理由付き（revert 等の管理操作）でない通常の編集か."""
        return not self.reason


@dataclass(frozen=True)
class CreateNewVersion:
    version: Version


@dataclass(frozen=True)
class ExtendVersion:
    version_id: int
    version: Version
    updated_at: datetime


@dataclass(frozen=True)
class NoOp:
    pass


VersionAction = CreateNewVersion | ExtendVersion | NoOp


@dataclass(frozen=True)
class VersionDiff:
    added_tags: list[str]
    removed_tags: list[str]
    rating_changed: bool
    parent_changed: bool
    source_changed: bool
    description_changed: bool


def changed_attributes(before: PostState, after: PostState) -> set[str]:
    changed = set()
    for name in (*MERGEABLE_ATTRIBUTES, *UNMERGEABLE_ATTRIBUTES):
        if getattr(before, name) != getattr(after, name):
            changed.add(name)
    return changed


def _delta(before: list[str], after: list[str]) -> tuple[tuple[str, ...], tuple[str, ...]]:
    before_set, after_set = set(before), set(after)
    return tuple(sorted(after_set - before_set)), tuple(sorted(before_set - after_set))


def build_new_version(
    before: PostState | None,
    after: PostState,
    latest: Version | None,
    ctx: EditContext,
    *,
    reason: str | None = None,
    original_tags: str = "",
) -> Version:
    """編集前のポスト状態との差分で新しいバージョンを組み立てる."""
    if after.id is None:
        raise ValueError("Cannot version a post without an id")

    before_tags = before.tag_array if before else []
    before_locked = scan_tags(before.locked_tags) if before else []
    added, removed = _delta(before_tags, after.tag_array)
    added_locked, removed_locked = _delta(before_locked, scan_tags(after.locked_tags))

    def _changed(name: str) -> bool:
        if before is None:
            return bool(getattr(after, name))
        return getattr(before, name) != getattr(after, name)

    return Version(
        post_id=after.id,
        version=latest.version + 1 if latest else 1,
        tags=after.tag_string,
        added_tags=added,
        removed_tags=removed,
        locked_tags=after.locked_tags,
        added_locked_tags=added_locked,
        removed_locked_tags=removed_locked,
        rating=after.rating,
        rating_changed=before is None or before.rating != after.rating,
        parent_id=after.parent_id,
        parent_changed=_changed("parent_id"),
        source=after.source,
        source_changed=_changed("source"),
        description=after.description,
        description_changed=_changed("description"),
        updater_id=ctx.actor.id,
        created_at=ctx.now,
        reason=reason,
        original_tags=original_tags,
    )


def merge_into_version(latest: Version, before: PostState, after: PostState) -> Version:
    """直近バージョンに今回の変更を畳み込む.

    差分は「直近バージョン以前の状態」からの正味の変化として再計算するので、
    2回の編集で互いに打ち消したタグはどちらにも残らない。created_at と version 番号は変えない。
    """
    base_tags = (set(scan_tags(latest.tags)) - set(latest.added_tags)) | set(latest.removed_tags)
    added, removed = _delta(sorted(base_tags), after.tag_array)

    base_locked = (set(scan_tags(latest.locked_tags)) - set(latest.added_locked_tags)) | set(
        latest.removed_locked_tags
    )
    added_locked, removed_locked = _delta(sorted(base_locked), scan_tags(after.locked_tags))

    return replace(
        latest,
        tags=after.tag_string,
        added_tags=added,
        removed_tags=removed,
        locked_tags=after.locked_tags,
        added_locked_tags=added_locked,
        removed_locked_tags=removed_locked,
        source=after.source,
        source_changed=latest.source_changed or before.source != after.source,
    )


def decide_version_action(
    before: PostState | None,
    after: PostState,
    latest: Version | None,
    ctx: EditContext,
    *,
    force: bool = False,
    reason: str | None = None,
    original_tags: str = "",
) -> VersionAction:
    """保存時のバージョン操作を決める."""
    if ctx.do_not_version:
        return NoOp()

    if before is None or force or latest is None:
        return CreateNewVersion(
            build_new_version(before, after, latest, ctx, reason=reason, original_tags=original_tags)
        )

    changed = changed_attributes(before, after)
    mergeable_changed = bool(changed & set(MERGEABLE_ATTRIBUTES))
    unmergeable_changed = bool(changed & set(UNMERGEABLE_ATTRIBUTES))

    if (
        ctx.automated
        and mergeable_changed
        and not unmergeable_changed
        and latest.updater_id == ctx.actor.id
        and latest.is_basic
        and not latest.is_first
        and latest.id is not None
    ):
        return ExtendVersion(
            version_id=latest.id, version=merge_into_version(latest, before, after), updated_at=ctx.now
        )

    if changed:
        # 自動編集では元の入力文字列は意味を持たない
        return CreateNewVersion(
            build_new_version(
                before,
                after,
                latest,
                ctx,
                reason=reason,
                original_tags="" if ctx.automated else original_tags,
            )
        )

    return NoOp()


def build_revert_request(post: PostState, target: Version) -> EditRequest:
    """対象バージョンの内容へ戻す編集リクエストを組み立てる.

    Raises:
        RevertError: 別ポストのバージョンが指定された場合
    """
    if post.id != target.post_id:
        raise RevertError("You cannot revert to a previous version of another post.")

    return EditRequest(
        tag_string=target.tags,
        rating=target.rating,
        source=target.source,
        parent_id=target.parent_id,
        description=target.description,
        edit_reason=f"Revert to version {target.version}",
    )


def diff_against_version(post: PostState, target: Version) -> VersionDiff:
    """現在のポストと指定バージョンのスナップショットを比較する."""
    added, removed = _delta(scan_tags(target.tags), post.tag_array)
    return VersionDiff(
        added_tags=list(added),
        removed_tags=list(removed),
        rating_changed=post.rating != target.rating,
        parent_changed=post.parent_id != target.parent_id,
        source_changed=post.source != target.source,
        description_changed=post.description != target.description,
    )
