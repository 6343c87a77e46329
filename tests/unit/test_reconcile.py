"""reconcile.py のユニットテスト（同時編集の三者マージ）."""

import pytest

from booru_tag_engine.core.reconcile import reconcile_scalar, reconcile_tags


class TestReconcileTags:
    def test_both_editors_changes_survive(self) -> None:
        """S={a,b}, C={a,c}, N={b,d} → {b,c,d}."""
        result = reconcile_tags(["a", "b"], ["a", "c"], ["b", "d"])

        assert result.tags == ["b", "c", "d"]
        assert result.removed == ["a"]

    @pytest.mark.parametrize(
        ("snapshot", "current", "intended", "expected"),
        [
            # 誰も変更していない
            (["a"], ["a"], ["a"], ["a"]),
            # 送信者だけが追加
            (["a"], ["a"], ["a", "b"], ["a", "b"]),
            # 相手だけが追加
            (["a"], ["a", "c"], ["a"], ["a", "c"]),
            # 相手が削除したタグを送信者は残した → 送信者の意図で戻る
            (["a", "b"], ["a"], ["a", "b"], ["a", "b"]),
            # 両者が同じタグを削除
            (["a", "b"], ["a"], ["a"], ["a"]),
        ],
    )
    def test_table(self, snapshot: list[str], current: list[str], intended: list[str], expected: list[str]) -> None:
        assert reconcile_tags(snapshot, current, intended).tags == expected

    def test_unchanged_snapshot_is_plain_replacement(self) -> None:
        """S == C なら結果は N そのもの."""
        result = reconcile_tags(["a", "b"], ["a", "b"], ["b", "z"])

        assert result.tags == ["b", "z"]


class TestReconcileScalar:
    def test_untouched_field_keeps_current(self) -> None:
        assert reconcile_scalar("s", "s", "e") == "e"

    def test_changed_field_wins(self) -> None:
        assert reconcile_scalar("s", "q", "e") == "q"
