"""タグ正規化パイプライン（NormalizationPipeline）.

生の編集（全置換 / diff / 両方 + locked_tags の変更）から、ポストの最終タグ集合を決定的に算出する。

ステージは固定順序の純粋関数 `(WorkState, StageEnv) -> WorkState` の列で、
警告は WorkState.warnings に蓄積して受け渡す。ハードエラー（タグ数超過）は例外ではなく
PipelineResult.hard_error として返す。

    1. case-sensitive メタタグ（source: / newpool:）の捕捉
    2. 小文字化
    3. アスペクト比トークン（16:9 等）の除外（警告）
    4. メタタグ区分の除去（pre は解釈、post は保存後の再生用に保持）
    5. 否定タグ（-tag）の除去
    6. DNP タグの除去（ロック追加側にあるものは残す）
    7. alias 解決
    8. ロックタグの強制削除/追加
    9. 空なら tagme
    10. 自動タグ
    11. implication 展開
    12. 残った DNP タグをロックに写す
    13. ロック削除セットを最終適用（implication で復活させない）
    14. 重複除去・タグ台帳の参照（未登録タグは保存時に作成、作成できないタグは警告して落とす）
    15. ソート済み空白区切りの tag_string
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import timedelta

from loguru import logger

from booru_tag_engine.config import EngineConfig

from .auto_tagger import add_automatic_tags
from .categories import TagCategory
from .collaborators import AliasResolver, ImplicationExpander, TagRecord, TagRegistry
from .context import EditContext
from .counters import TagCounts, count_tags, counter_deltas, post_count_deltas
from .exceptions import TagCountExceededError, TagCreationError
from .locked_tags import (
    LockDirective,
    add_dnp_tags_to_locked,
    apply_locked_tags,
    normalize_locked_tags,
    parse_lock_directive,
    remove_dnp_tags,
    resolve_lock_directive,
    strip_invalid_category_locks,
)
from .metatags import (
    Metatag,
    MetatagKind,
    apply_pre_metatags,
    capture_case_sensitive,
    extract_metatags,
    source_from_metatags,
    strip_metatags_for_display,
)
from .models import EditRequest, PostState, is_set
from .reconcile import reconcile_scalar, reconcile_tags
from .tag_string import (
    apply_source_diff,
    apply_tag_diff,
    parse_tag_diff,
    scan_tags,
    serialize_tags,
    split_sources,
    uniq,
)

ASPECT_RATIO_REGEX = re.compile(r"^\d+:\d+$")
EMPTY_TAG_SENTINEL = "tagme"


@dataclass(frozen=True)
class PipelineServices:
    """パイプラインが依存する外部コラボレータ."""

    aliases: AliasResolver
    implications: ImplicationExpander
    registry: TagRegistry
    post_exists: Callable[[int], bool] = lambda _post_id: False


@dataclass(frozen=True)
class StageEnv:
    post: PostState
    ctx: EditContext
    services: PipelineServices
    config: EngineConfig


@dataclass(frozen=True)
class WorkState:
    """ステージ間で受け渡す作業状態."""

    tags: tuple[str, ...]
    locked_tags: str | None
    lock: LockDirective = field(default_factory=LockDirective)
    warnings: tuple[str, ...] = ()
    negated: tuple[str, ...] = ()
    case_sensitive: tuple[Metatag, ...] = ()
    post_directives: tuple[Metatag, ...] = ()
    attribute_changes: tuple[tuple[str, object], ...] = ()
    planned: tuple[TagRecord, ...] = ()
    records: tuple[TagRecord, ...] = ()
    tag_string: str = ""

    def warn(self, *messages: str) -> WorkState:
        return replace(self, warnings=(*self.warnings, *messages))

    def with_tags(self, tags: list[str]) -> WorkState:
        return replace(self, tags=tuple(tags))


Stage = Callable[[WorkState, StageEnv], WorkState]


def _stage_prepare_locks(state: WorkState, env: StageEnv) -> WorkState:
    locked_tags = normalize_locked_tags(state.locked_tags)
    if locked_tags is None:
        return replace(state, locked_tags=None, lock=LockDirective())

    locked_tags, warnings = strip_invalid_category_locks(locked_tags, env.services.registry)
    directive = resolve_lock_directive(
        parse_lock_directive(locked_tags), env.services.aliases, env.services.implications
    )
    return replace(state, locked_tags=locked_tags, lock=directive).warn(*warnings)


def _stage_capture_case_sensitive(state: WorkState, env: StageEnv) -> WorkState:
    tags, captured = capture_case_sensitive(list(state.tags))
    state = replace(state, case_sensitive=tuple(captured)).with_tags(tags)

    source = source_from_metatags(captured)
    if source is not None:
        state = replace(state, attribute_changes=(*state.attribute_changes, ("source", source)))
    return state


def _stage_lowercase(state: WorkState, env: StageEnv) -> WorkState:
    return state.with_tags(uniq([t.lower() for t in state.tags]))


def _stage_reject_aspect_ratios(state: WorkState, env: StageEnv) -> WorkState:
    rejected = [t for t in state.tags if ASPECT_RATIO_REGEX.match(t)]
    if not rejected:
        return state
    return state.with_tags([t for t in state.tags if t not in set(rejected)]).warn(
        f"Aspect ratios cannot be added to posts: {', '.join(rejected)}"
    )


def _stage_strip_metatags(state: WorkState, env: StageEnv) -> WorkState:
    partition = extract_metatags(list(state.tags))

    changes = apply_pre_metatags(
        partition.pre,
        post_id=env.post.id,
        parent_id=env.post.parent_id,
        actor=env.ctx.actor,
        post_exists=env.services.post_exists,
    )

    categorized_names: list[str] = []
    planned: list[TagRecord] = []
    bad_type_changes: list[str] = []
    creation_errors: list[str] = []
    if partition.categorized:
        categories = {name: category for name, category in partition.categorized}
        results = env.services.registry.find_or_plan(
            list(categories),
            categories=categories,
            now=env.ctx.now,
            category_change_max_post_count=env.config.category_change_max_post_count,
        )
        for result in results:
            if isinstance(result, TagCreationError):
                logger.warning(f"Dropping tag {result.name!r}: {result.reason}")
                creation_errors.append(str(result))
                continue
            if result.category_rejected:
                bad_type_changes.append(result.name)
            planned.append(result)
            categorized_names.append(result.name)

    newpools = [m for m in state.case_sensitive if m.kind is MetatagKind.NEWPOOL]
    state = replace(
        state,
        post_directives=(*partition.post, *newpools),
        planned=(*state.planned, *planned),
        attribute_changes=(*state.attribute_changes, *changes.items()),
    ).with_tags([*partition.plain, *categorized_names]).warn(*creation_errors)

    if bad_type_changes:
        state = state.warn(
            "Failed to update the tag category for the following tags: "
            f"{', '.join(bad_type_changes)}. You can not edit the tag category of existing tags using prefixes."
        )
    return state


def _stage_remove_negated(state: WorkState, env: StageEnv) -> WorkState:
    negated = [t[1:] for t in state.tags if t.startswith("-") and len(t) > 1]
    negated = env.services.aliases.resolve(negated)
    removing = set(negated)
    tags = [t for t in state.tags if not t.startswith("-") and t not in removing]
    return replace(state, negated=tuple(negated)).with_tags(tags)


def _stage_remove_dnp(state: WorkState, env: StageEnv) -> WorkState:
    return state.with_tags(remove_dnp_tags(list(state.tags), state.lock, env.config.dnp_tags))


def _stage_resolve_aliases(state: WorkState, env: StageEnv) -> WorkState:
    return state.with_tags(env.services.aliases.resolve(list(state.tags)))


def _stage_apply_locks(state: WorkState, env: StageEnv) -> WorkState:
    if state.lock.is_empty:
        return state
    tags, warnings = apply_locked_tags(list(state.tags), state.lock)
    return state.with_tags(tags).warn(*warnings)


def _stage_empty_sentinel(state: WorkState, env: StageEnv) -> WorkState:
    if state.tags:
        return state
    return state.with_tags([EMPTY_TAG_SENTINEL])


def _stage_automatic_tags(state: WorkState, env: StageEnv) -> WorkState:
    file = env.post.file
    source = dict(state.attribute_changes).get("source")
    if source is not None:
        file = replace(file, source_urls=tuple(split_sources(str(source))))
    return state.with_tags(add_automatic_tags(list(state.tags), file, env.config))


def _stage_expand_implications(state: WorkState, env: StageEnv) -> WorkState:
    return state.with_tags(env.services.implications.expand(list(state.tags)))


def _stage_lock_dnp_tags(state: WorkState, env: StageEnv) -> WorkState:
    locked_tags = add_dnp_tags_to_locked(list(state.tags), state.locked_tags, env.config.dnp_tags)
    return replace(state, locked_tags=locked_tags)


def _stage_final_lock_removal(state: WorkState, env: StageEnv) -> WorkState:
    if not state.lock.remove:
        return state
    removing = set(state.lock.remove)
    return state.with_tags([t for t in state.tags if t not in removing])


def _stage_find_or_plan(state: WorkState, env: StageEnv) -> WorkState:
    # プレフィックス付きで計画済みのタグは台帳を読み直さない（カテゴリ変更は未保存のため）
    planned = {r.name: r for r in state.planned}
    names = uniq([t for t in state.tags if t])
    looked_up = iter(
        env.services.registry.find_or_plan(
            [n for n in names if n not in planned],
            now=env.ctx.now,
            category_change_max_post_count=env.config.category_change_max_post_count,
        )
    )
    results = [planned[n] if n in planned else next(looked_up) for n in names]
    records: list[TagRecord] = []
    warnings: list[str] = []
    for result in results:
        if isinstance(result, TagCreationError):
            logger.warning(f"Dropping tag {result.name!r}: {result.reason}")
            warnings.append(str(result))
            continue
        records.append(result)
    return replace(state, records=tuple(records)).with_tags([r.name for r in records]).warn(*warnings)


def _stage_serialize(state: WorkState, env: StageEnv) -> WorkState:
    return replace(state, tag_string=serialize_tags(list(state.tags)))


STAGES: tuple[Stage, ...] = (
    _stage_prepare_locks,
    _stage_capture_case_sensitive,
    _stage_lowercase,
    _stage_reject_aspect_ratios,
    _stage_strip_metatags,
    _stage_remove_negated,
    _stage_remove_dnp,
    _stage_resolve_aliases,
    _stage_apply_locks,
    _stage_empty_sentinel,
    _stage_automatic_tags,
    _stage_expand_implications,
    _stage_lock_dnp_tags,
    _stage_final_lock_removal,
    _stage_find_or_plan,
    _stage_serialize,
)


def run_normalization(
    tags: list[str],
    *,
    locked_tags: str | None,
    post: PostState,
    ctx: EditContext,
    services: PipelineServices,
    config: EngineConfig,
) -> WorkState:
    """トークン列に全ステージを順に適用する."""
    env = StageEnv(post=post, ctx=ctx, services=services, config=config)
    state = WorkState(tags=tuple(tags), locked_tags=locked_tags)
    for stage in STAGES:
        state = stage(state, env)
        logger.debug(f"{stage.__name__}: {len(state.tags)} tags")
    return state


@dataclass(frozen=True)
class PipelineResult:
    """パイプラインの出力.

    post は保存予定のポスト状態（tag_string / locked_tags / カウンタ / 属性変更を反映済み）。
    tag_changes は台帳に未保存の新規タグ・カテゴリ変更で、ポストと同じトランザクションで書き込む。
    hard_error がある場合は何も保存してはならない。
    """

    post: PostState
    warnings: list[str]
    hard_error: TagCountExceededError | None
    counter_deltas: dict[TagCategory, int]
    post_count_deltas: dict[str, int]
    post_directives: list[Metatag]
    removed_tags: list[str] = field(default_factory=list)
    negated_tags: list[str] = field(default_factory=list)
    original_tags: str = ""
    tags_processed: bool = False
    tag_changes: list[TagRecord] = field(default_factory=list)

    @property
    def final_tag_string(self) -> str:
        return self.post.tag_string

    @property
    def final_locked_tags(self) -> str | None:
        return self.post.locked_tags

    @property
    def ok(self) -> bool:
        return self.hard_error is None


def _pluralize(n: int, word: str = "tag") -> str:
    return word if n == 1 else f"{word}s"


def validate_added_tags(
    added: list[TagRecord],
    *,
    ctx: EditContext,
    config: EngineConfig,
) -> list[str]:
    """追加されたタグに関する警告（保存は止めない）."""
    warnings: list[str] = []
    invalid = [r.name for r in added if r.category == TagCategory.INVALID]
    new_tags = [r for r in added if r.post_count <= 0]
    new_general = [r.name for r in new_tags if r.category == TagCategory.GENERAL]

    # 作成直後のタグはプレフィックス付きで作られたとみなし、再利用扱いにしない
    grace_cutoff = ctx.now - timedelta(seconds=config.repopulated_grace_seconds)
    repopulated = [
        r.name
        for r in new_tags
        if r.category not in (TagCategory.GENERAL, TagCategory.META) and r.created_at < grace_cutoff
    ]

    if invalid:
        n = len(invalid)
        warnings.append(
            f"Added {n} invalid {_pluralize(n)}. See the wiki page for each tag for help on resolving these: "
            f"{', '.join(invalid)}"
        )
    if new_general:
        n = len(new_general)
        warnings.append(f"Created {n} new {_pluralize(n)}: {', '.join(new_general)}")
    if repopulated:
        n = len(repopulated)
        warnings.append(f"Repopulated {n} old {_pluralize(n)}: {', '.join(repopulated)}")
    return warnings


def validate_removed_tags(final_tags: list[str], attempted: list[str]) -> list[str]:
    present = set(final_tags)
    unremoved = [t for t in uniq(attempted) if t in present]
    if not unremoved:
        return []
    return [f"{', '.join(unremoved)} could not be removed. Check for implications and locked tags and try again"]


def validate_upload(records: list[TagRecord], config: EngineConfig) -> list[str]:
    """新規アップロード時のみの警告."""
    warnings: list[str] = []
    if not any(r.category == TagCategory.ARTIST for r in records):
        warnings.append("Artist tag is required. Ask on the forum if you need naming help")
    general = sum(1 for r in records if r.category == TagCategory.GENERAL)
    if general < config.min_general_tags_on_upload:
        warnings.append(f"Uploads must have at least {config.min_general_tags_on_upload} general tags")
    return warnings


def _resolve_scalar(request_value: object, old_value: object, current: object) -> object:
    if not is_set(request_value):
        return current
    if is_set(old_value):
        return reconcile_scalar(old_value, request_value, current)
    return request_value


def prepare_edit(
    post: PostState,
    request: EditRequest,
    ctx: EditContext,
    services: PipelineServices,
    config: EngineConfig,
    *,
    is_new: bool = False,
) -> PipelineResult:
    """1回の編集を保存可能なポスト状態まで解決する.

    順序: 三者マージ → source diff → tag diff → 正規化 → 検証 → カウンタ集計。
    post は編集前の状態（新規アップロードでは空のタグ集合）。
    """
    warnings: list[str] = []
    removed: list[str] = []
    before_tags = post.tag_array

    # スカラー属性（三者マージ込み）
    rating = _resolve_scalar(request.rating, request.old_rating, post.rating)
    parent_id = _resolve_scalar(request.parent_id, request.old_parent_id, post.parent_id)
    source = _resolve_scalar(request.source, request.old_source, post.source)
    description = request.description if is_set(request.description) else post.description
    source = apply_source_diff(str(source or ""), request.source_diff)

    # タグ（全置換 + 三者マージ + diff）
    tags = scan_tags(request.tag_string) if request.tag_string is not None else list(before_tags)
    if request.old_tag_string is not None and request.tag_string is not None:
        reconciled = reconcile_tags(scan_tags(request.old_tag_string.lower()), before_tags, tags)
        tags = reconciled.tags
        removed.extend(reconciled.removed)

    if request.tag_string_diff:
        diff = parse_tag_diff(request.tag_string_diff)
        tags, diff_removed = apply_tag_diff(tags, diff, services.aliases)
        removed.extend(diff_removed)
        original_tags = " ".join(strip_metatags_for_display(list(diff.add)))
    else:
        before_set = set(before_tags)
        original_tags = " ".join(strip_metatags_for_display([t for t in tags if t not in before_set]))

    locked_tags = request.locked_tags if is_set(request.locked_tags) else post.locked_tags
    working = replace(
        post,
        rating=str(rating),
        parent_id=parent_id,
        source=source,
        description=str(description or ""),
    )
    working = replace(working, file=replace(working.file, source_urls=tuple(working.source_array)))

    process_tags = request.touches_tags or is_new
    directives: list[Metatag] = []
    negated: list[str] = []
    records: list[TagRecord]

    if process_tags:
        state = run_normalization(
            tags, locked_tags=locked_tags, post=working, ctx=ctx, services=services, config=config
        )
        warnings.extend(state.warnings)
        directives = list(state.post_directives)
        negated = list(state.negated)
        records = list(state.records)
        working = replace(working, **dict(state.attribute_changes))
        if working.source != source:
            working = replace(working, file=replace(working.file, source_urls=tuple(working.source_array)))
        working = replace(working, tag_string=state.tag_string, locked_tags=state.locked_tags)
    else:
        final = before_tags
        if working.source != post.source and config.enable_autotagging:
            final = add_automatic_tags(before_tags, working.file, config)
        found = services.registry.find_or_plan(final, now=ctx.now)
        records = [r for r in found if isinstance(r, TagRecord)]
        working = replace(working, tag_string=serialize_tags([r.name for r in records]))

    # rating ロック（同じ編集でロックを切り替えた場合は許可）
    if working.rating != post.rating and post.is_rating_locked and working.is_rating_locked == post.is_rating_locked:
        warnings.append("Rating is locked and cannot be changed. Unlock the post first.")
        working = replace(working, rating=post.rating)

    final_tags = working.tag_array
    if process_tags:
        before_set = set(before_tags)
        added_records = [r for r in records if r.name not in before_set]
        warnings.extend(validate_added_tags(added_records, ctx=ctx, config=config))
        warnings.extend(validate_removed_tags(final_tags, [*removed, *negated]))
        if is_new:
            warnings.extend(validate_upload(records, config))

    hard_error = None
    if process_tags and not (ctx.automated or ctx.do_not_version):
        if len(final_tags) > config.max_tags_per_post:
            hard_error = TagCountExceededError(len(final_tags), config.max_tags_per_post)
            logger.warning(f"Rejecting edit of post {post.id}: {hard_error}")

    counts: TagCounts = count_tags(final_tags, {r.name: r.category for r in records})
    working = replace(working, counts=counts)
    deltas = counter_deltas(post.counts, counts)
    tag_deltas = {} if post.is_deleted else post_count_deltas(before_tags, final_tags)

    return PipelineResult(
        post=working,
        warnings=warnings,
        hard_error=hard_error,
        counter_deltas=deltas,
        post_count_deltas=tag_deltas,
        post_directives=directives,
        removed_tags=removed,
        negated_tags=negated,
        original_tags=original_tags,
        tags_processed=process_tags,
        tag_changes=[r for r in records if r.is_pending],
    )
