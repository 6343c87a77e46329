"""同時編集の三者マージ（ConcurrentEditReconciler）.

編集者のクライアントがスナップショット S を読み込み、意図した最終タグ N を送信したが、
保存時点の実際のタグ C が別の編集者によって S から変わっている場合に使う。

和集合寄りのマージ:
    - どちらかの編集者が追加したタグは落とさない（C - S は残す、N は残す）
    - 落ちるのは「送信者が S から外した」タグのうち、相手側が新たに追加していないものだけ
    - removed は「送信者が外そうとしたタグ」で、外せなかった場合の警告にだけ使う

例: S={a,b}, C={a,c}, N={b,d} → {b,c,d}（a は送信者が外した、c は相手が追加した）

注意: 残す集合は S∩N で計算する（C∩N ではない）。
そのため相手が削除したタグでも、送信者が残していれば結果に戻る。
例: S={a,b}, C={a}, N={a,b} → {a,b}
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TypeVar

from .tag_string import uniq

T = TypeVar("T")


@dataclass(frozen=True)
class ReconcileResult:
    tags: list[str]
    removed: list[str]


def reconcile_tags(snapshot: list[str], current: list[str], intended: list[str]) -> ReconcileResult:
    """S（スナップショット）, C（現在値）, N（送信値）から作業用タグ集合を作る.

    エラーにはならず、常にベストエフォートの結果を返す。
    """
    snapshot_set = set(snapshot)
    intended_set = set(intended)

    # kept は送信者が S から残したタグ（S ∩ N）
    kept = {t for t in snapshot if t in intended_set}
    removed = [t for t in snapshot if t not in intended_set]

    # (C ∪ N) - S + kept
    tags = [t for t in uniq([*current, *intended]) if t not in snapshot_set or t in kept]
    return ReconcileResult(tags=sorted(tags), removed=removed)


def reconcile_scalar(old: T | None, submitted: T, current: T) -> T:
    """スカラー属性（rating/parent/source）の三者マージ.

    送信値がスナップショット値と同じ（= 送信者はこの属性に触れていない）なら現在値を優先する。
    """
    if old == submitted:
        return current
    return submitted
