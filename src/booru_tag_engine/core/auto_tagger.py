"""ファイルメタデータ由来の自動タグ（AutoTagger）.

解像度・アスペクト比・ファイルサイズ・形式・source の妥当性から、システム管理タグを付与する。
ここで扱うタグはこのモジュールが排他的に所有し、毎回いったん全て外してから再計算する（冪等）。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from booru_tag_engine.config import EngineConfig

_VALID_SOURCE = re.compile(r"^-?https?://", re.IGNORECASE)

RESOLUTION_TAGS = ("superabsurd_res", "absurd_res", "hi_res")
AUTO_TAGS = frozenset(
    {
        "thumbnail",
        "low_res",
        "hi_res",
        "absurd_res",
        "superabsurd_res",
        "huge_filesize",
        "webm",
        "wide_image",
        "tall_image",
        "long_image",
        "invalid_source",
    }
)


@dataclass(frozen=True)
class FileMetadata:
    """ポストのファイル情報（不変）."""

    width: int = 0
    height: int = 0
    size_bytes: int = 0
    is_webm: bool = False
    is_gif: bool = False
    is_png: bool = False
    source_urls: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_dimensions(self) -> bool:
        return self.width > 0 and self.height > 0


def is_invalid_source(source_urls: tuple[str, ...] | list[str]) -> bool:
    return any(not _VALID_SOURCE.match(s) for s in source_urls)


def _resolution_tag(width: int, height: int) -> str | None:
    # 上位クラスのみを付与する（absurd_res なら hi_res は付けない）
    if width >= 10_000 and height >= 10_000:
        return "superabsurd_res"
    if width >= 3200 or height >= 2400:
        return "absurd_res"
    if width >= 1600 or height >= 1200:
        return "hi_res"
    if width <= 250 and height <= 250:
        return "thumbnail"
    if width <= 500 and height <= 500:
        return "low_res"
    return None


def compute_automatic_tags(file: FileMetadata, config: EngineConfig) -> list[str]:
    """ファイル情報だけから自動タグを算出する."""
    tags: list[str] = []

    if file.has_dimensions:
        resolution = _resolution_tag(file.width, file.height)
        if resolution:
            tags.append(resolution)

        if file.width >= 1024 and file.width / file.height >= 4:
            tags.extend(["wide_image", "long_image"])
        elif file.height >= 1024 and file.height / file.width >= 4:
            tags.extend(["tall_image", "long_image"])

    if file.size_bytes >= config.huge_filesize_bytes:
        tags.append("huge_filesize")

    if file.is_webm:
        tags.append("webm")

    if is_invalid_source(file.source_urls):
        tags.append("invalid_source")

    return tags


def add_automatic_tags(tags: list[str], file: FileMetadata, config: EngineConfig) -> list[str]:
    """管理対象タグを外してから再計算して付け直す.

    animated_gif / animated_png は手動で付けるタグだが、形式が一致しない場合は外す。
    """
    if not config.enable_autotagging:
        return tags

    out = [t for t in tags if t not in AUTO_TAGS]
    if not file.is_gif:
        out = [t for t in out if t != "animated_gif"]
    if not file.is_png:
        out = [t for t in out if t != "animated_png"]

    out.extend(t for t in compute_automatic_tags(file, config) if t not in out)
    return out
