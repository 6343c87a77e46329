"""外部コラボレータ（alias / implication / タグ台帳）のインターフェース.

alias・implication グラフの解決アルゴリズムそのものはこのパッケージの責務外で、
パイプラインは解決結果だけを消費する。ここではそのインターフェース（Protocol）と、
テストや小規模運用向けの辞書ベース実装を提供する。
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Protocol

from .categories import TagCategory
from .exceptions import TagCreationError

NameValidator = Callable[[str], "str | None"]


@dataclass(frozen=True)
class TagRecord:
    """タグ台帳の1レコード.

    category_rejected は「プレフィックスでカテゴリ変更を要求されたが拒否された」ことを示す。
    is_new / category_changed は find_or_plan が返す未保存の変更で、commit_tags で台帳に書き込まれる。
    """

    name: str
    category: TagCategory
    post_count: int
    created_at: datetime
    category_rejected: bool = False
    is_new: bool = False
    category_changed: bool = False

    @property
    def is_pending(self) -> bool:
        return self.is_new or self.category_changed


class AliasResolver(Protocol):
    def resolve(self, names: list[str]) -> list[str]:
        """antecedent を consequent に置換する（正規名は素通し、出現順維持・重複除去）."""
        ...


class ImplicationExpander(Protocol):
    def expand(self, names: list[str]) -> list[str]:
        """names に推移的な consequent をすべて加えた列を返す."""
        ...

    def implying(self, name: str) -> set[str]:
        """name を推移的に含意する antecedent の集合を返す."""
        ...


class TagRegistry(Protocol):
    def find_or_plan(
        self,
        names: list[str],
        *,
        categories: dict[str, TagCategory] | None = None,
        now: datetime,
        category_change_max_post_count: int = 0,
    ) -> list[TagRecord | TagCreationError]:
        """台帳を読むだけで、未登録タグ・カテゴリ変更は未保存の TagRecord として返す."""
        ...

    def category_for(self, name: str) -> TagCategory | None:
        ...

    def categories_for(self, names: list[str]) -> dict[str, TagCategory]:
        ...


def default_name_validator(name: str) -> str | None:
    """最小限のタグ名チェック（文法バリデータ本体は外部から注入する想定）."""
    if not name:
        return "name cannot be blank"
    if name[0] in "-~":
        return f"name cannot begin with '{name[0]}'"
    if "*" in name or "," in name:
        return "name cannot contain '*' or ','"
    return None


def _uniq(names: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(names))


class StaticAliasResolver:
    """辞書（antecedent → consequent）による alias 解決."""

    def __init__(self, aliases: dict[str, str] | None = None) -> None:
        self._aliases = dict(aliases or {})

    def resolve(self, names: list[str]) -> list[str]:
        return _uniq(self._aliases.get(n, n) for n in names)


class StaticImplicationExpander:
    """辞書（antecedent → consequent 群）による implication 展開."""

    def __init__(self, implications: dict[str, Iterable[str]] | None = None) -> None:
        self._forward: dict[str, set[str]] = {}
        self._reverse: dict[str, set[str]] = {}
        for antecedent, consequents in (implications or {}).items():
            for consequent in consequents:
                self._forward.setdefault(antecedent, set()).add(consequent)
                self._reverse.setdefault(consequent, set()).add(antecedent)

    @staticmethod
    def _walk(graph: dict[str, set[str]], start: str) -> set[str]:
        seen: set[str] = set()
        stack = [start]
        while stack:
            for nxt in graph.get(stack.pop(), ()):
                if nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        seen.discard(start)
        return seen

    def expand(self, names: list[str]) -> list[str]:
        out = list(names)
        for name in names:
            out.extend(sorted(self._walk(self._forward, name)))
        return _uniq(out)

    def implying(self, name: str) -> set[str]:
        return self._walk(self._reverse, name)


class InMemoryTagRegistry:
    """メモリ上のタグ台帳（find or create）."""

    def __init__(
        self,
        records: Iterable[TagRecord] = (),
        *,
        name_validator: NameValidator = default_name_validator,
    ) -> None:
        self._records: dict[str, TagRecord] = {r.name: r for r in records}
        self._validate_name = name_validator

    def get(self, name: str) -> TagRecord | None:
        return self._records.get(name)

    def find_or_plan(
        self,
        names: list[str],
        *,
        categories: dict[str, TagCategory] | None = None,
        now: datetime,
        category_change_max_post_count: int = 0,
    ) -> list[TagRecord | TagCreationError]:
        categories = categories or {}
        results: list[TagRecord | TagCreationError] = []
        for name in _uniq(names):
            requested = categories.get(name)
            record = self._records.get(name)
            if record is None:
                reason = self._validate_name(name)
                if reason:
                    results.append(TagCreationError(name, reason))
                    continue
                record = TagRecord(
                    name=name,
                    category=requested or TagCategory.GENERAL,
                    post_count=0,
                    created_at=now,
                    is_new=True,
                )
            elif requested is not None and requested != record.category:
                if record.post_count <= category_change_max_post_count:
                    record = replace(record, category=requested, category_changed=True)
                else:
                    record = replace(record, category_rejected=True)
            results.append(record)
        return results

    def commit_tags(self, records: Iterable[TagRecord]) -> None:
        for record in records:
            if record.is_pending:
                self._records[record.name] = replace(record, is_new=False, category_changed=False)

    def find_or_create(
        self,
        names: list[str],
        *,
        categories: dict[str, TagCategory] | None = None,
        now: datetime,
        category_change_max_post_count: int = 0,
    ) -> list[TagRecord | TagCreationError]:
        """find_or_plan の結果をその場で台帳に反映する."""
        results = self.find_or_plan(
            names, categories=categories, now=now, category_change_max_post_count=category_change_max_post_count
        )
        records = [r for r in results if isinstance(r, TagRecord)]
        self.commit_tags(records)
        return [
            replace(r, is_new=False, category_changed=False) if isinstance(r, TagRecord) else r for r in results
        ]

    def category_for(self, name: str) -> TagCategory | None:
        record = self._records.get(name)
        return record.category if record else None

    def categories_for(self, names: list[str]) -> dict[str, TagCategory]:
        return {n: self._records[n].category for n in names if n in self._records}

    def apply_post_count_deltas(self, deltas: dict[str, int]) -> None:
        for name, delta in deltas.items():
            record = self._records.get(name)
            if record is not None:
                self._records[name] = replace(record, post_count=record.post_count + delta)
