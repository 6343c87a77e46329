"""メタタグの抽出と適用（MetatagExtractor）.

タグ文字列に埋め込まれたディレクティブを4つの互いに素な区分に分ける:
    - pre メタタグ（rating / parent / locked）: 正規化の前に解釈する
    - カテゴリプレフィックス付きトークン（`artist:name` 等）
    - post メタタグ（pool / set / fav / vote / child）: 保存後に呼び出し側が再生する
    - 通常タグ

不正・重複したメタタグはエラーにせず単に無視する（寛容な設計を維持する）。
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .categories import TagCategory, parse_category_prefix
from .context import Actor

_PRE_METATAG = re.compile(r"^(?:rating|parent|-parent|-?locked):", re.IGNORECASE)
_POST_METATAG = re.compile(
    r"^(?:-pool|pool|newpool|-set|set|fav|-fav|child|-child|upvote|downvote):", re.IGNORECASE
)
_CASE_SENSITIVE_METATAG = re.compile(r"^(?:source|newpool):", re.IGNORECASE)
_DISPLAY_HIDDEN_METATAG = re.compile(r"^(?:-set|set|fav|-fav|upvote|downvote):", re.IGNORECASE)

_RATING = re.compile(r"^rating:([qse])", re.IGNORECASE)
_PARENT_NONE = re.compile(r"^parent:(?:none|0)$", re.IGNORECASE)
_PARENT_ID = re.compile(r"^(-?)parent:(\d+)$", re.IGNORECASE)
_LOCK = re.compile(r"^(-?)locked:(notes?|rating|status)$", re.IGNORECASE)
_SOURCE = re.compile(r'^source:"?([^"]*)"?$', re.IGNORECASE)


class MetatagKind(str, Enum):
    RATING = "rating"
    PARENT = "parent"
    LOCK = "locked"
    SOURCE = "source"
    NEWPOOL = "newpool"
    POOL = "pool"
    SET = "set"
    FAVORITE = "fav"
    UPVOTE = "upvote"
    DOWNVOTE = "downvote"
    CHILD = "child"


@dataclass(frozen=True)
class Metatag:
    kind: MetatagKind
    value: str
    negated: bool = False

    @property
    def token(self) -> str:
        return f"{'-' if self.negated else ''}{self.kind.value}:{self.value}"


@dataclass(frozen=True)
class MetatagPartition:
    pre: list[Metatag] = field(default_factory=list)
    categorized: list[tuple[str, TagCategory]] = field(default_factory=list)
    post: list[Metatag] = field(default_factory=list)
    plain: list[str] = field(default_factory=list)


def parse_metatag(token: str) -> Metatag | None:
    """`[-]kind:value` を Metatag に変換する（未知の kind は None）."""
    negated = token.startswith("-")
    body = token[1:] if negated else token
    kind_text, sep, value = body.partition(":")
    if not sep:
        return None
    try:
        kind = MetatagKind(kind_text.lower())
    except ValueError:
        return None
    return Metatag(kind=kind, value=value, negated=negated)


def capture_case_sensitive(tokens: list[str]) -> tuple[list[str], list[Metatag]]:
    """`source:` / `newpool:` を小文字化の前に取り出す.

    これらは保存後（ポストIDやプール作成が確定した後）に適用するため、値の大文字小文字を保持する。
    """
    captured: list[Metatag] = []
    rest: list[str] = []
    for token in tokens:
        if _CASE_SENSITIVE_METATAG.match(token):
            metatag = parse_metatag(token)
            if metatag is not None:
                captured.append(metatag)
            continue
        rest.append(token)
    return rest, captured


def extract_metatags(tokens: list[str]) -> MetatagPartition:
    """小文字化済みトークン列を4区分に分ける."""
    pre: list[Metatag] = []
    categorized: list[tuple[str, TagCategory]] = []
    post: list[Metatag] = []
    plain: list[str] = []

    for token in tokens:
        if _PRE_METATAG.match(token):
            metatag = parse_metatag(token)
            if metatag is not None:
                pre.append(metatag)
            continue

        prefixed = parse_category_prefix(token)
        if prefixed is not None:
            categorized.append(prefixed)
            continue

        if _POST_METATAG.match(token):
            metatag = parse_metatag(token)
            if metatag is not None:
                post.append(metatag)
            continue

        plain.append(token)

    return MetatagPartition(pre=pre, categorized=categorized, post=post, plain=plain)


def source_from_metatags(captured: list[Metatag]) -> str | None:
    """捕捉済み source: メタタグから新しい source を得る（最後のものが勝つ）."""
    sources = [m for m in captured if m.kind is MetatagKind.SOURCE and not m.negated]
    if not sources:
        return None
    value = sources[-1].value
    if value.lower() == "none":
        return ""
    m = _SOURCE.match(f"source:{value}")
    return m.group(1) if m else None


def apply_pre_metatags(
    pre: list[Metatag],
    *,
    post_id: int | None,
    parent_id: int | None,
    actor: Actor,
    post_exists: Callable[[int], bool],
) -> dict[str, object]:
    """pre メタタグを解釈し、ポスト属性の変更を dict で返す.

    Returns:
        PostState のフィールド名 → 新しい値（変更がないフィールドは含まない）
    """
    changes: dict[str, object] = {}
    current_parent = parent_id

    for metatag in pre:
        token = metatag.token

        if _PARENT_NONE.match(token) and not metatag.negated:
            changes["parent_id"] = current_parent = None
            continue

        m = _PARENT_ID.match(token)
        if m:
            target = int(m.group(2))
            if m.group(1) == "-":
                if current_parent == target:
                    changes["parent_id"] = current_parent = None
            elif target != post_id and post_exists(target):
                changes["parent_id"] = current_parent = target
            continue

        m = _RATING.match(token)
        if m and not metatag.negated:
            changes["rating"] = m.group(1).lower()
            continue

        m = _LOCK.match(token)
        if m:
            enabled = m.group(1) != "-"
            target_lock = m.group(2).lower()
            if target_lock.startswith("note"):
                if actor.is_janitor:
                    changes["is_note_locked"] = enabled
            elif target_lock == "rating":
                if actor.is_janitor:
                    changes["is_rating_locked"] = enabled
            elif actor.is_admin:
                changes["is_status_locked"] = enabled

    return changes


def strip_metatags_for_display(tokens: list[str]) -> list[str]:
    """バージョン記録用に、表示不要なメタタグとカテゴリプレフィックスを落とす."""
    out: list[str] = []
    for token in tokens:
        if _DISPLAY_HIDDEN_METATAG.match(token):
            continue
        prefixed = parse_category_prefix(token)
        out.append(prefixed[0] if prefixed else token)
    return out
