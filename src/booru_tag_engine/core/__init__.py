"""タグ編集パイプラインのコア処理群.

- タグ文字列のパース（diff / メタタグ / ロックタグ）
- 正規化パイプライン（alias / implication / 自動タグ / DNP）
- 同時編集の三者マージ、カウンタ集計、編集履歴
"""

from .pipeline import PipelineResult, PipelineServices, prepare_edit, run_normalization
from .reconcile import reconcile_tags
from .versions import decide_version_action

__all__ = [
    "prepare_edit",
    "run_normalization",
    "PipelineResult",
    "PipelineServices",
    "reconcile_tags",
    "decide_version_action",
]
