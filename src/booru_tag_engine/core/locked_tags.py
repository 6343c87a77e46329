"""ロックタグの強制（LockedTagEnforcer）と DNP タグ保護（DnpGuard）.

locked_tags 自体が小さなタグ diff 文字列になっている:
    - `tag`  : 常に存在しなければならない
    - `-tag` : 決して存在してはならない

文字列のまま各ステージで正規表現を当て直すのではなく、最初に LockDirective へパースする。
警告は「ロックが実際に効いたとき」だけ出す（設定されているだけでは出さない）。
"""

from __future__ import annotations

from dataclasses import dataclass

from .categories import TagCategory
from .collaborators import AliasResolver, ImplicationExpander, TagRegistry
from .tag_string import scan_tags, uniq


@dataclass(frozen=True)
class LockDirective:
    add: tuple[str, ...] = ()
    remove: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.add and not self.remove


def _pluralize(n: int, word: str = "tag") -> str:
    return word if n == 1 else f"{word}s"


def normalize_locked_tags(value: str | None) -> str | None:
    """空白のみの locked_tags は None に寄せる."""
    if value is None or not value.strip():
        return None
    return value


def parse_lock_directive(locked_tags: str | None) -> LockDirective:
    """locked_tags 文字列を追加/削除セットに分解する（alias 解決前）."""
    add: list[str] = []
    remove: list[str] = []
    for token in scan_tags((locked_tags or "").lower()):
        if token.startswith("-"):
            if len(token) > 1:
                remove.append(token[1:])
        else:
            add.append(token)
    return LockDirective(add=tuple(add), remove=tuple(remove))


def strip_invalid_category_locks(
    locked_tags: str | None,
    registry: TagRegistry,
) -> tuple[str | None, list[str]]:
    """invalid カテゴリのタグをロック対象から外す.

    Returns:
        (整理後の locked_tags, 警告)
    """
    tokens = (locked_tags or "").lower().split()
    invalid = [t for t in tokens if registry.category_for(t.removeprefix("-")) == TagCategory.INVALID]
    warnings: list[str] = []
    if invalid:
        n = len(invalid)
        warnings.append(f"Forcefully removed {n} invalid locked {_pluralize(n)}: {', '.join(invalid)}")
    kept = uniq([t for t in tokens if t not in set(invalid)])
    return normalize_locked_tags(" ".join(kept)), warnings


def resolve_lock_directive(
    directive: LockDirective,
    aliases: AliasResolver,
    implications: ImplicationExpander,
) -> LockDirective:
    """ロック指定を alias 解決し、削除側は含意元（それを再追加しうるタグ）まで広げる."""
    remove = aliases.resolve(list(directive.remove))
    expanded = list(remove)
    for name in remove:
        expanded.extend(sorted(implications.implying(name)))
    return LockDirective(add=tuple(aliases.resolve(list(directive.add))), remove=tuple(uniq(expanded)))


def apply_locked_tags(tags: list[str], directive: LockDirective) -> tuple[list[str], list[str]]:
    """強制削除・強制追加を適用する."""
    warnings: list[str] = []

    removing = set(directive.remove)
    overlap = [t for t in tags if t in removing]
    if overlap:
        n = len(overlap)
        warnings.append(f"Forcefully removed {n} locked {_pluralize(n)}: {', '.join(overlap)}")
    tags = [t for t in tags if t not in removing]

    missing = [t for t in directive.add if t not in set(tags)]
    if missing:
        n = len(missing)
        warnings.append(f"Forcefully added {n} locked {_pluralize(n)}: {', '.join(missing)}")
    return uniq([*tags, *directive.add]), warnings


def remove_dnp_tags(tags: list[str], directive: LockDirective, dnp_tags: tuple[str, ...]) -> list[str]:
    """DNP タグはロック経由でしか追加させない.

    ロックの追加側に含まれる DNP タグはここで落とさない（後段で再追加されて警告が揺れるのを防ぐ）。
    """
    locked = set(directive.add)
    dropping = {t for t in dnp_tags if t not in locked}
    return [t for t in tags if t not in dropping]


def add_dnp_tags_to_locked(
    tags: list[str],
    locked_tags: str | None,
    dnp_tags: tuple[str, ...],
) -> str | None:
    """残った DNP タグをロック対象に写す（一度付いたら常にロック）."""
    locked = scan_tags((locked_tags or "").lower())
    present = set(tags)
    locked.extend(t for t in dnp_tags if t in present)
    if not locked:
        return locked_tags
    return " ".join(uniq(locked))
