"""config.py のユニットテスト."""

from pathlib import Path

import pytest

from booru_tag_engine.config import EngineConfig, config_from_dict, load_config


class TestLoadConfig:
    def test_load_engine_section(self, tmp_path: Path) -> None:
        """`engine:` セクションから読み込めること."""
        config_file = tmp_path / "engine.yml"
        config_file.write_text(
            "engine:\n  max_tags_per_post: 50\n  dnp_tags: [Avoid_Posting]\n",
            encoding="utf-8",
        )

        config = load_config(config_file)

        assert config.max_tags_per_post == 50
        assert config.dnp_tags == ("avoid_posting",)
        assert config.enable_autotagging is True

    def test_load_top_level_mapping(self, tmp_path: Path) -> None:
        config_file = tmp_path / "engine.yml"
        config_file.write_text("enable_autotagging: false\n", encoding="utf-8")

        assert load_config(config_file).enable_autotagging is False

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "engine.yml"
        config_file.write_text("", encoding="utf-8")

        assert load_config(config_file) == EngineConfig()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(tmp_path / "missing.yml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "engine.yml"
        config_file.write_text("engine: [unclosed\n", encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid YAML"):
            load_config(config_file)

    def test_non_mapping(self, tmp_path: Path) -> None:
        config_file = tmp_path / "engine.yml"
        config_file.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ValueError, match="must contain a mapping"):
            load_config(config_file)


class TestConfigFromDict:
    def test_unknown_key(self) -> None:
        with pytest.raises(ValueError, match="Unknown config keys"):
            config_from_dict({"max_tags": 10})

    def test_dnp_tags_must_be_list(self) -> None:
        with pytest.raises(ValueError, match="dnp_tags must be a list"):
            config_from_dict({"dnp_tags": "avoid_posting"})
