"""タグカテゴリ定義.

カテゴリIDは e621 系の TAG_TYPE_FORMAT_MAPPING と同じ並びに寄せている
（contributor の枠は voice_actor に読み替え）。
"""

from __future__ import annotations

import re
from enum import Enum


class TagCategory(str, Enum):
    """タグカテゴリ（ポストの tag_count_<category> 列と1対1）."""

    GENERAL = "general"
    ARTIST = "artist"
    VOICE_ACTOR = "voice_actor"
    COPYRIGHT = "copyright"
    CHARACTER = "character"
    SPECIES = "species"
    INVALID = "invalid"
    META = "meta"
    LORE = "lore"
    GENDER = "gender"

    @property
    def category_id(self) -> int:
        return CATEGORY_IDS[self]

    @classmethod
    def from_id(cls, category_id: int) -> TagCategory:
        for category, cid in CATEGORY_IDS.items():
            if cid == category_id:
                return category
        raise ValueError(f"Unknown tag category id: {category_id}")


CATEGORY_IDS: dict[TagCategory, int] = {
    TagCategory.GENERAL: 0,
    TagCategory.ARTIST: 1,
    TagCategory.VOICE_ACTOR: 2,
    TagCategory.COPYRIGHT: 3,
    TagCategory.CHARACTER: 4,
    TagCategory.SPECIES: 5,
    TagCategory.INVALID: 6,
    TagCategory.META: 7,
    TagCategory.LORE: 8,
    TagCategory.GENDER: 9,
}

# `art:foo` のような短縮プレフィックス
CATEGORY_SHORT_PREFIXES: dict[str, TagCategory] = {
    "gen": TagCategory.GENERAL,
    "art": TagCategory.ARTIST,
    "va": TagCategory.VOICE_ACTOR,
    "copy": TagCategory.COPYRIGHT,
    "co": TagCategory.COPYRIGHT,
    "char": TagCategory.CHARACTER,
    "ch": TagCategory.CHARACTER,
    "spec": TagCategory.SPECIES,
    "inv": TagCategory.INVALID,
    "lor": TagCategory.LORE,
}

_ALL_PREFIXES = sorted(
    [c.value for c in TagCategory] + list(CATEGORY_SHORT_PREFIXES),
    key=len,
    reverse=True,
)
CATEGORY_PREFIX_REGEX = re.compile(rf"^({'|'.join(_ALL_PREFIXES)}):(.+)$", re.IGNORECASE)


def parse_category_prefix(token: str) -> tuple[str, TagCategory] | None:
    """`category:name` 形式のトークンを (name, category) に分解する.

    Examples:
        >>> parse_category_prefix("art:someone")
        ('someone', <TagCategory.ARTIST: 'artist'>)
        >>> parse_category_prefix("plain_tag") is None
        True
    """
    m = CATEGORY_PREFIX_REGEX.match(token)
    if not m:
        return None
    prefix = m.group(1).lower()
    category = CATEGORY_SHORT_PREFIXES.get(prefix) or TagCategory(prefix)
    return m.group(2), category
