"""エンジン設定.

YAML から読み込む。未指定のキーはデフォルト値を使う。

使用例:
    >>> config = load_config(Path("engine.yml"))
    >>> config.max_tags_per_post
    2000
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml
from loguru import logger

MEGABYTE = 1024 * 1024


@dataclass(frozen=True)
class EngineConfig:
    """タグ編集パイプラインの設定値.

    repopulated_grace_seconds / category_change_max_post_count は業務上の判断値であり、
    不変条件ではなく設定として扱う。
    """

    max_tags_per_post: int = 2000
    enable_autotagging: bool = True
    repopulated_grace_seconds: int = 10
    min_general_tags_on_upload: int = 10
    huge_filesize_bytes: int = 30 * MEGABYTE
    category_change_max_post_count: int = 0
    child_metatag_limit: int = 10
    dnp_tags: tuple[str, ...] = field(default=("avoid_posting", "conditional_dnp"))


def config_from_dict(data: dict) -> EngineConfig:
    """dict から EngineConfig を作る.

    Raises:
        ValueError: 未知のキー、または dnp_tags がリストでない場合
    """
    known = {f.name for f in fields(EngineConfig)}
    unknown = set(data) - known
    if unknown:
        msg = f"Unknown config keys: {sorted(unknown)}. Valid keys: {sorted(known)}"
        raise ValueError(msg)

    values = dict(data)
    if "dnp_tags" in values:
        if not isinstance(values["dnp_tags"], list | tuple):
            raise ValueError(f"dnp_tags must be a list, got {type(values['dnp_tags'])}")
        values["dnp_tags"] = tuple(str(t).lower() for t in values["dnp_tags"])
    return EngineConfig(**values)


def load_config(config_path: Path | str) -> EngineConfig:
    """YAML ファイルから設定を読み込む.

    Args:
        config_path: 設定ファイルのパス（トップレベルが mapping、または `engine:` セクション）

    Raises:
        FileNotFoundError: ファイルが存在しない場合
        ValueError: YAML の形式が不正な場合
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file: {config_path}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping, got {type(data)}")

    data = data.get("engine", data)
    config = config_from_dict(data)
    logger.info(f"Loaded engine config from {config_path}")
    return config
