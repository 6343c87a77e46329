"""ポスト（タグ付けエンティティ）と編集リクエストのデータ型.

ポストはミュータブルなレコードではなく、ステージ間を値で受け渡す単純なデータ構造として扱う。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .auto_tagger import FileMetadata
from .counters import TagCounts
from .tag_string import scan_tags, split_sources


class _Unset:
    """「変更しない」を表す番兵（None は「クリア」の意味で使うため区別する）."""

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


def is_set(value: object) -> bool:
    return value is not UNSET


@dataclass(frozen=True)
class PostState:
    """タグ付けエンティティ（ポスト）の状態.

    tag_string は解決済みタグ集合を「ソート済み・空白区切り」で保持する。
    locked_tags は `-tag`（強制削除）を含みうる保護タグ指定。
    """

    id: int | None = None
    tag_string: str = ""
    locked_tags: str | None = None
    rating: str = "q"
    parent_id: int | None = None
    source: str = ""
    description: str = ""
    pool_string: str = ""
    is_note_locked: bool = False
    is_rating_locked: bool = False
    is_status_locked: bool = False
    is_deleted: bool = False
    file: FileMetadata = field(default_factory=FileMetadata)
    counts: TagCounts = field(default_factory=TagCounts)

    @property
    def tag_array(self) -> list[str]:
        return scan_tags(self.tag_string)

    @property
    def source_array(self) -> list[str]:
        return split_sources(self.source)

    @property
    def pool_ids(self) -> list[int]:
        return [int(t[5:]) for t in self.pool_string.split() if t.startswith("pool:") and t[5:].isdigit()]

    @property
    def set_ids(self) -> list[int]:
        return [int(t[4:]) for t in self.pool_string.split() if t.startswith("set:") and t[4:].isdigit()]


@dataclass(frozen=True)
class EditRequest:
    """1回の編集リクエスト.

    tag_string（全置換）と tag_string_diff（`tag -tag`）はどちらか、または両方を指定できる。
    両方ある場合は置換の後に diff を適用する。
    old_* はクライアントが最後に見た値（三者マージ用、保存はされない）。
    UNSET の属性は変更しない。
    """

    tag_string: str | None = None
    tag_string_diff: str | None = None
    locked_tags: Any = UNSET
    old_tag_string: str | None = None
    rating: Any = UNSET
    parent_id: Any = UNSET
    source: Any = UNSET
    source_diff: str | None = None
    description: Any = UNSET
    old_rating: Any = UNSET
    old_parent_id: Any = UNSET
    old_source: Any = UNSET
    edit_reason: str | None = None
    force_version: bool = False

    @property
    def touches_tags(self) -> bool:
        return self.tag_string is not None or bool(self.tag_string_diff) or is_set(self.locked_tags)
