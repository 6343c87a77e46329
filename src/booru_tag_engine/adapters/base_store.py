"""永続化ストア（基底クラス）.

ポスト・タグ台帳・編集履歴・プール/セット/お気に入り/投票を共通インターフェースで扱うための
抽象基底クラスを定義します。

ストアはパイプラインのコラボレータ（AliasResolver / ImplicationExpander / TagRegistry）も兼ねる。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime

from booru_tag_engine.core.categories import TagCategory
from booru_tag_engine.core.collaborators import TagRecord
from booru_tag_engine.core.context import Actor
from booru_tag_engine.core.exceptions import TagCreationError
from booru_tag_engine.core.models import PostState
from booru_tag_engine.core.versions import Version, VersionAction


@dataclass(frozen=True)
class Pool:
    id: int
    name: str
    creator_id: int
    post_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class PostSet:
    id: int
    shortname: str
    creator_id: int
    is_public: bool = True
    post_ids: list[int] = field(default_factory=list)
    maintainer_ids: frozenset[int] = frozenset()

    def can_edit_posts(self, actor: Actor) -> bool:
        return actor.id == self.creator_id or actor.id in self.maintainer_ids


class BaseRecordStore(ABC):
    """レコードストアの基底クラス.

    全てのストアはこのクラスを継承し、以下を実装します。
    save_edit はタグ台帳・ポスト行・バージョンへの書き込みを1トランザクションで行い、
    途中で失敗した場合は全体をロールバックして例外を再送出しなければならない。
    """

    # --- コラボレータ ---

    @abstractmethod
    def resolve(self, names: list[str]) -> list[str]:
        """alias 解決（AliasResolver）."""
        ...

    @abstractmethod
    def expand(self, names: list[str]) -> list[str]:
        """implication 展開（ImplicationExpander）."""
        ...

    @abstractmethod
    def implying(self, name: str) -> set[str]:
        ...

    @abstractmethod
    def find_or_plan(
        self,
        names: list[str],
        *,
        categories: dict[str, TagCategory] | None = None,
        now: datetime,
        category_change_max_post_count: int = 0,
    ) -> list[TagRecord | TagCreationError]:
        """タグ台帳の参照（TagRegistry）。書き込みは save_edit の tag_changes で行う."""
        ...

    @abstractmethod
    def category_for(self, name: str) -> TagCategory | None:
        ...

    @abstractmethod
    def categories_for(self, names: list[str]) -> dict[str, TagCategory]:
        ...

    # --- ポスト ---

    @abstractmethod
    def post_exists(self, post_id: int) -> bool:
        ...

    @abstractmethod
    def load_post(self, post_id: int) -> PostState:
        """ポストを読み込む.

        Raises:
            PostNotFoundError: ポストが存在しない場合
        """
        ...

    @abstractmethod
    def child_ids(self, post_id: int) -> list[int]:
        ...

    @abstractmethod
    def save_edit(
        self,
        post: PostState,
        *,
        post_count_deltas: dict[str, int],
        version_action_for: Callable[[PostState], VersionAction],
        tag_changes: Sequence[TagRecord] = (),
    ) -> tuple[PostState, VersionAction]:
        """編集結果をアトミックに保存する.

        Args:
            post: 保存するポスト状態（id が None なら新規作成して採番する）
            tag_changes: find_or_plan が返した未保存の新規タグ・カテゴリ変更
            post_count_deltas: タグ名 → post_count 増減
            version_action_for: 採番済みポストを受け取り、バージョン操作を決める関数

        Returns:
            (採番済みポスト, 実行したバージョン操作)
        """
        ...

    # --- 編集履歴 ---

    @abstractmethod
    def latest_version(self, post_id: int) -> Version | None:
        ...

    @abstractmethod
    def get_version(self, version_id: int) -> Version | None:
        ...

    @abstractmethod
    def list_versions(self, post_id: int) -> list[Version]:
        ...

    # --- post メタタグの対象 ---

    @abstractmethod
    def post_lock(self, post_id: int) -> AbstractContextManager[None]:
        """ポスト単位の排他ロック（pool_string 等の read-modify-write 用、入れ子不可）."""
        ...

    @abstractmethod
    def find_pool(self, key: str) -> Pool | None:
        """ID または名前でプールを探す."""
        ...

    @abstractmethod
    def create_pool(self, name: str, creator_id: int) -> Pool:
        ...

    @abstractmethod
    def add_post_to_pool(self, pool_id: int, post_id: int) -> None:
        ...

    @abstractmethod
    def remove_post_from_pool(self, pool_id: int, post_id: int) -> None:
        ...

    @abstractmethod
    def find_set(self, key: str) -> PostSet | None:
        """ID または shortname でセットを探す."""
        ...

    @abstractmethod
    def add_post_to_set(self, set_id: int, post_id: int) -> None:
        ...

    @abstractmethod
    def remove_post_from_set(self, set_id: int, post_id: int) -> None:
        ...

    @abstractmethod
    def add_favorite(self, user_id: int, post_id: int) -> None:
        ...

    @abstractmethod
    def remove_favorite(self, user_id: int, post_id: int) -> None:
        ...

    @abstractmethod
    def vote(self, user_id: int, post_id: int, score: int) -> None:
        ...
