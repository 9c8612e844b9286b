"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml

from supamail.config import Settings, _deep_merge, load_settings


class TestLoadSettings:
    def test_defaults(self, temp_dir: Path) -> None:
        settings = load_settings(temp_dir)
        assert settings.config_dir == temp_dir
        assert settings.classifier.default_category == "Updates"
        assert settings.db_path == settings.data_dir / "supamail.db"

    def test_local_file_overrides(self, temp_dir: Path) -> None:
        (temp_dir / "config.yaml").write_text(
            yaml.safe_dump({"mailgun": {"domain": "mail.example.com", "timeout": 5}, "llm": {"model": "m1"}})
        )
        (temp_dir / "config.local.yaml").write_text(yaml.safe_dump({"mailgun": {"signing_key": "secret"}}))

        settings = load_settings(temp_dir)

        assert settings.mailgun.domain == "mail.example.com"
        assert settings.mailgun.timeout == 5
        assert settings.mailgun.signing_key == "secret"
        assert settings.llm.model == "m1"

    def test_env_api_key(self, temp_dir: Path, monkeypatch) -> None:
        monkeypatch.setenv("SUPAMAIL_OPENAI_API_KEY", "sk-test")
        settings = load_settings(temp_dir)
        assert settings.llm_api_key() == "sk-test"

    def test_llm_api_key_per_provider(self, temp_dir: Path) -> None:
        settings = Settings(
            config_dir=temp_dir,
            data_dir=temp_dir,
            openai_api_key="sk-openai",
            anthropic_api_key="sk-anthropic",
            llm={"provider": "anthropic"},
        )
        assert settings.llm_api_key() == "sk-anthropic"
        settings.llm.provider = "ollama"
        assert settings.llm_api_key() is None


class TestDeepMerge:
    def test_nested_merge(self) -> None:
        merged = _deep_merge({"a": {"b": 1, "c": 2}, "d": [1]}, {"a": {"c": 3}, "d": [2]})
        assert merged == {"a": {"b": 1, "c": 3}, "d": [2]}


class TestDbPath:
    def test_derived_from_data_dir(self, temp_dir: Path) -> None:
        settings = Settings(config_dir=temp_dir, data_dir=temp_dir / "data")
        assert settings.get_db_path() == temp_dir / "data" / "supamail.db"

    def test_explicit_path(self, temp_dir: Path) -> None:
        settings = Settings(config_dir=temp_dir, data_dir=temp_dir, db_path=temp_dir / "other.db")
        assert settings.get_db_path() == temp_dir / "other.db"

    def test_unset_path_raises(self, temp_dir: Path) -> None:
        settings = Settings(config_dir=temp_dir, data_dir=temp_dir)
        settings.db_path = None
        with pytest.raises(ValueError):
            settings.get_db_path()
