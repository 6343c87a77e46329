"""カテゴリ別タグ数とタグ post_count 差分の集計（CounterAggregator）.

不変条件: tag_count == Σ tag_count_<category> == tag_string のトークン数

post_count は編集前後のタグ集合の差分で増減させる。アトミックな CAS ではないため、
別ポストへの同時編集で同じタグのカウンタが競合しうる。ずれは tools/reconcile_counts.py の
定期スイープで補正する。
"""

from __future__ import annotations

from dataclasses import dataclass, field

import polars as pl

from .categories import TagCategory


@dataclass(frozen=True)
class TagCounts:
    total: int = 0
    by_category: dict[TagCategory, int] = field(default_factory=dict)

    def get(self, category: TagCategory) -> int:
        return self.by_category.get(category, 0)

    def as_columns(self) -> dict[str, int]:
        """posts テーブルの列名 → 値."""
        columns = {"tag_count": self.total}
        for category in TagCategory:
            columns[f"tag_count_{category.value}"] = self.get(category)
        return columns

    @classmethod
    def from_columns(cls, row: dict[str, int]) -> TagCounts:
        return cls(
            total=int(row.get("tag_count", 0)),
            by_category={c: int(row.get(f"tag_count_{c.value}", 0)) for c in TagCategory},
        )


def count_tags(names: list[str], categories: dict[str, TagCategory]) -> TagCounts:
    """最終タグ集合からカテゴリ別件数を再計算する.

    台帳にカテゴリが無いタグは general として数える。
    """
    names = list(dict.fromkeys(names))
    df = pl.DataFrame(
        {
            "tag": names,
            "category": [categories.get(n, TagCategory.GENERAL).value for n in names],
        },
        schema={"tag": pl.String, "category": pl.String},
    )
    grouped = df.group_by("category").agg(pl.len().alias("n"))
    by_category = {c: 0 for c in TagCategory}
    for category, n in zip(grouped["category"].to_list(), grouped["n"].to_list(), strict=True):
        by_category[TagCategory(category)] = int(n)
    return TagCounts(total=len(names), by_category=by_category)


def counter_deltas(before: TagCounts, after: TagCounts) -> dict[TagCategory, int]:
    """カテゴリ別カウンタの増減（変化がないカテゴリは含めない）."""
    deltas: dict[TagCategory, int] = {}
    for category in TagCategory:
        delta = after.get(category) - before.get(category)
        if delta:
            deltas[category] = delta
    return deltas


def post_count_deltas(before_tags: list[str], after_tags: list[str]) -> dict[str, int]:
    """タグ台帳の post_count 増減（tag 名 → ±1）."""
    before = set(before_tags)
    after = set(after_tags)
    deltas = {t: 1 for t in sorted(after - before)}
    deltas.update({t: -1 for t in sorted(before - after)})
    return deltas
