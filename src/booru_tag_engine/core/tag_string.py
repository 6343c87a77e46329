"""タグ文字列のパースと直列化（TagSetParser）.

設計方針:
    - tag_string は「小文字・空白区切り・重複なし・辞書順ソート」で書き戻す
    - scan_tags は大文字小文字を保持する（case-sensitive メタタグ捕捉がパイプライン側で先に走るため）
    - diff（`tag -tag`）の否定メタタグ（`-pool:1` 等）は削除扱いにせず、メタタグとして後段に渡す
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .collaborators import AliasResolver

_NEGATED_METATAG = re.compile(r"^-(?:pool|set|fav|child|parent|locked):", re.IGNORECASE)
_NEWLINES = re.compile(r"\r\n?")
_ENCODED_NEWLINE = re.compile(r"%0A", re.IGNORECASE)


@dataclass(frozen=True)
class TagDiff:
    """`tag -tag` 形式の差分."""

    add: tuple[str, ...]
    remove: tuple[str, ...]


def uniq(items: list[str]) -> list[str]:
    """出現順を保ったまま重複除去する."""
    return list(dict.fromkeys(items))


def scan_tags(text: str | None) -> list[str]:
    """空白区切りのタグ文字列をトークン列に分解する.

    Examples:
        >>> scan_tags("  cat  Dog cat ")
        ['cat', 'Dog']
    """
    if not text:
        return []
    return uniq([t for t in text.split() if t])


def serialize_tags(tags: list[str] | set[str]) -> str:
    """タグ集合を tag_string 表現に直列化する.

    Examples:
        >>> serialize_tags(["dog", "Cat", "dog"])
        'cat dog'
    """
    return " ".join(sorted({t.lower() for t in tags if t}))


def is_negated_metatag(token: str) -> bool:
    return bool(_NEGATED_METATAG.match(token))


def parse_tag_diff(text: str | None) -> TagDiff:
    """diff 文字列を追加/削除に分解する（小文字化済み）.

    Examples:
        >>> parse_tag_diff("red -Blue cat -pool:3")
        TagDiff(add=('red', 'cat', '-pool:3'), remove=('blue',))
    """
    add: list[str] = []
    remove: list[str] = []
    for token in scan_tags((text or "").lower()):
        if token.startswith("-") and not is_negated_metatag(token):
            name = token[1:]
            if name:
                remove.append(name)
        else:
            add.append(token)
    return TagDiff(add=tuple(add), remove=tuple(remove))


def apply_tag_diff(
    current: list[str],
    diff: TagDiff,
    aliases: AliasResolver,
) -> tuple[list[str], list[str]]:
    """現在のタグ列に diff を適用する.

    追加・削除の双方を alias 解決してから適用する。

    Returns:
        (適用後のタグ列, 削除を試みたタグ名の列)
    """
    to_add = aliases.resolve(list(diff.add))
    to_remove = aliases.resolve(list(diff.remove))
    removing = set(to_remove)
    tags = [t for t in uniq([*current, *to_add]) if t not in removing]
    return tags, to_remove


def split_sources(source: str | None) -> list[str]:
    """改行区切りの source 文字列を URL のリストにする."""
    if not source:
        return []
    normalized = _ENCODED_NEWLINE.sub("\n", _NEWLINES.sub("\n", source))
    return [s.strip() for s in normalized.split("\n") if s.strip()]


def apply_source_diff(source: str | None, source_diff: str | None) -> str:
    """source diff（改行区切り、`-url` で削除）を適用する."""
    current = split_sources(source)
    if not source_diff:
        return "\n".join(current)

    to_remove: list[str] = []
    to_add: list[str] = []
    for line in split_sources(source_diff):
        if line.startswith("-"):
            to_remove.append(line[1:])
        else:
            to_add.append(line)

    merged = [s for s in uniq([*current, *to_add]) if s not in set(to_remove)]
    return "\n".join(merged)
