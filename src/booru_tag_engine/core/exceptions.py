"""Tag engine exceptions.

カスタム例外クラスを定義します。

重大度は2段階のみ:
    - 警告（PipelineResult.warnings に蓄積、保存は止めない）
    - ハードエラー（TagCountExceededError。保存全体を中止する）
"""

from __future__ import annotations


class TagCountExceededError(Exception):
    """タグ数が設定上限を超えた場合のハードエラー.

    パイプラインはこの例外を送出せず、PipelineResult.hard_error として返します。
    呼び出し側が必要なら raise します。

    Attributes:
        count: 正規化後のタグ数
        maximum: 設定上の上限（EngineConfig.max_tags_per_post）
    """

    def __init__(self, count: int, maximum: int) -> None:
        """例外初期化.

        Args:
            count: 正規化後のタグ数
            maximum: 設定上の上限
        """
        self.count = count
        self.maximum = maximum
        super().__init__(f"tag count exceeds maximum of {maximum} (got {count})")


class RevertError(Exception):
    """別ポストのバージョンへ revert しようとした場合の例外."""


class PostNotFoundError(LookupError):
    """ストアに存在しないポストを参照した場合の例外.

    Attributes:
        post_id: 参照されたポストID
    """

    def __init__(self, post_id: int) -> None:
        self.post_id = post_id
        super().__init__(f"Post not found: {post_id}")


class TagCreationError(Exception):
    """個々のタグ作成失敗（警告に格下げされ、そのタグだけが落とされる）.

    Attributes:
        name: 作成に失敗したタグ名
        reason: 失敗理由
    """

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Can't add tag {name}: {reason}")
