"""ポスト編集の実行（PostEditor）.

prepare_edit（純粋なパイプライン）→ store.save_edit（1トランザクション）→ post メタタグの再生、の順に進める。

post メタタグ（pool / set / fav / vote / child）は保存済みのポストIDが必要なため、保存の後に適用する。
再生中の失敗は警告にとどめ、保存済みの編集は巻き戻さない。
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from booru_tag_engine.adapters.base_store import BaseRecordStore
from booru_tag_engine.config import EngineConfig
from booru_tag_engine.core.auto_tagger import FileMetadata
from booru_tag_engine.core.context import EditContext
from booru_tag_engine.core.exceptions import RevertError
from booru_tag_engine.core.metatags import Metatag, MetatagKind
from booru_tag_engine.core.models import EditRequest, PostState
from booru_tag_engine.core.pipeline import PipelineResult, PipelineServices, prepare_edit
from booru_tag_engine.core.versions import (
    NoOp,
    VersionAction,
    VersionDiff,
    build_revert_request,
    decide_version_action,
    diff_against_version,
)


@dataclass(frozen=True)
class EditResult:
    """1回の編集の結果.

    hard_error で中止された場合、version_action は None で、post は編集前の状態のまま。
    """

    post: PostState
    pipeline: PipelineResult
    version_action: VersionAction | None
    directive_warnings: list[str] = field(default_factory=list)

    @property
    def saved(self) -> bool:
        return self.version_action is not None

    @property
    def warnings(self) -> list[str]:
        return [*self.pipeline.warnings, *self.directive_warnings]


def parse_id_list(text: str, limit: int) -> list[int]:
    """`1,2,3` / `10..15` 形式のポストID指定を展開する（最大 limit 件）.

    Examples:
        >>> parse_id_list("3,1..2,3", 10)
        [3, 1, 2]
    """
    ids: list[int] = []
    for part in text.split(","):
        if len(ids) >= limit:
            break
        low, sep, high = part.partition("..")
        if sep:
            if low.isdigit() and high.isdigit():
                a, b = sorted((int(low), int(high)))
                ids.extend(range(a, min(b, a + limit - 1) + 1))
        elif part.isdigit():
            ids.append(int(part))
    return list(dict.fromkeys(ids))[:limit]


class PostEditor:
    """ポストの作成・更新・revert を行う.

    Args:
        store: 永続化ストア（パイプラインのコラボレータも兼ねる）
        config: エンジン設定
    """

    def __init__(self, store: BaseRecordStore, config: EngineConfig | None = None) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.services = PipelineServices(
            aliases=store,
            implications=store,
            registry=store,
            post_exists=store.post_exists,
        )

    def create_post(
        self,
        request: EditRequest,
        ctx: EditContext,
        *,
        file: FileMetadata | None = None,
    ) -> EditResult:
        """新規ポストを作成する（最初のバージョンは常に作られる）."""
        blank = PostState(file=file or FileMetadata())
        result = prepare_edit(blank, request, ctx, self.services, self.config, is_new=True)
        if result.hard_error is not None:
            return EditResult(post=blank, pipeline=result, version_action=None)

        saved, action = self.store.save_edit(
            result.post,
            post_count_deltas=result.post_count_deltas,
            tag_changes=result.tag_changes,
            version_action_for=lambda post: decide_version_action(
                None,
                post,
                None,
                ctx,
                reason=request.edit_reason,
                original_tags=result.original_tags,
            ),
        )
        logger.info(f"Created post {saved.id} with {saved.counts.total} tags")
        return self._finish(saved, result, action, ctx)

    def update_post(self, post_id: int, request: EditRequest, ctx: EditContext) -> EditResult:
        """既存ポストを編集する.

        Raises:
            PostNotFoundError: ポストが存在しない場合
        """
        before = self.store.load_post(post_id)
        result = prepare_edit(before, request, ctx, self.services, self.config)
        if result.hard_error is not None:
            return EditResult(post=before, pipeline=result, version_action=None)

        saved, action = self.store.save_edit(
            result.post,
            post_count_deltas=result.post_count_deltas,
            tag_changes=result.tag_changes,
            version_action_for=lambda post: decide_version_action(
                before,
                post,
                self.store.latest_version(post_id),
                ctx,
                force=request.force_version,
                reason=request.edit_reason,
                original_tags=result.original_tags,
            ),
        )
        if not isinstance(action, NoOp):
            logger.info(f"Updated post {post_id}")
        return self._finish(saved, result, action, ctx)

    def revert_to(self, post_id: int, version_id: int, ctx: EditContext) -> EditResult:
        """指定バージョンの内容へ戻す（履歴は書き換えず、新しい編集として保存する）.

        Raises:
            RevertError: バージョンが存在しない、または別ポストのものである場合
        """
        target = self.store.get_version(version_id)
        if target is None:
            raise RevertError(f"Version not found: {version_id}")

        post = self.store.load_post(post_id)
        request = build_revert_request(post, target)
        logger.info(f"Reverting post {post_id} to version {target.version}")
        return self.update_post(post_id, request, ctx)

    def diff_against_version(self, post_id: int, version_id: int) -> VersionDiff:
        target = self.store.get_version(version_id)
        if target is None:
            raise RevertError(f"Version not found: {version_id}")
        return diff_against_version(self.store.load_post(post_id), target)

    def _finish(
        self,
        saved: PostState,
        result: PipelineResult,
        action: VersionAction,
        ctx: EditContext,
    ) -> EditResult:
        warnings = self._replay_post_metatags(saved, result.post_directives, ctx)
        if result.post_directives:
            saved = self.store.load_post(saved.id)
        return EditResult(post=saved, pipeline=result, version_action=action, directive_warnings=warnings)

    def _replay_post_metatags(self, post: PostState, directives: list[Metatag], ctx: EditContext) -> list[str]:
        """保存後に pool / set / fav / vote / child メタタグを適用する."""
        warnings: list[str] = []
        actor = ctx.actor

        for metatag in directives:
            kind = metatag.kind

            if kind is MetatagKind.POOL:
                pool = self.store.find_pool(metatag.value)
                if pool is None:
                    warnings.append(f"Pool not found: {metatag.value}")
                elif metatag.negated:
                    self.store.remove_post_from_pool(pool.id, post.id)
                else:
                    self.store.add_post_to_pool(pool.id, post.id)

            elif kind is MetatagKind.NEWPOOL:
                pool = self.store.find_pool(metatag.value)
                if pool is None:
                    try:
                        pool = self.store.create_pool(metatag.value, actor.id)
                    except ValueError as e:
                        warnings.append(str(e))
                        continue
                self.store.add_post_to_pool(pool.id, post.id)

            elif kind is MetatagKind.SET:
                post_set = self.store.find_set(metatag.value)
                if post_set is None:
                    warnings.append(f"Set not found: {metatag.value}")
                elif not post_set.can_edit_posts(actor):
                    warnings.append(f"You do not have permission to edit set {post_set.shortname}")
                elif metatag.negated:
                    self.store.remove_post_from_set(post_set.id, post.id)
                else:
                    self.store.add_post_to_set(post_set.id, post.id)

            elif kind is MetatagKind.FAVORITE:
                if metatag.negated:
                    self.store.remove_favorite(actor.id, post.id)
                else:
                    self.store.add_favorite(actor.id, post.id)

            elif kind is MetatagKind.UPVOTE:
                self.store.vote(actor.id, post.id, 1)

            elif kind is MetatagKind.DOWNVOTE:
                self.store.vote(actor.id, post.id, -1)

            elif kind is MetatagKind.CHILD:
                warnings.extend(self._apply_child_metatag(post, metatag, ctx))

        return warnings

    def _apply_child_metatag(self, post: PostState, metatag: Metatag, ctx: EditContext) -> list[str]:
        if post.id is None:
            raise ValueError("Cannot apply child metatags to an unsaved post")
        value = metatag.value.lower()

        if value == "none":
            if metatag.negated:
                return []
            targets = self.store.child_ids(post.id)
            new_parent = None
        elif metatag.negated:
            children = set(self.store.child_ids(post.id))
            targets = [i for i in parse_id_list(value, self.config.child_metatag_limit) if i in children]
            new_parent = None
        else:
            targets = [
                i
                for i in parse_id_list(value, self.config.child_metatag_limit)
                if i != post.id and self.store.post_exists(i)
            ]
            new_parent = post.id

        warnings: list[str] = []
        for child_id in targets:
            child = self.update_post(child_id, EditRequest(parent_id=new_parent), ctx)
            warnings.extend(child.warnings)
        return warnings
