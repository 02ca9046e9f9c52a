"""
Unit tests for engine configuration loading.
"""

import json
import logging
from pathlib import Path

import pytest

from chanroot.core.config import EngineConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    # setenv first so teardown also removes anything a .env file loaded
    for name in ("SUBMISSION_TIMEOUT", "DEFAULT_PAGE_LIMIT", "DATA_DIR", "DB_NAME", "LOG_DIR", "LOG_LEVEL"):
        monkeypatch.setenv(f"CHANROOT_{name}", "")
        monkeypatch.delenv(f"CHANROOT_{name}")


class TestEngineConfig:
    """Tests for defaults and validation."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.submission_timeout == 30.0
        assert config.default_page_limit == 50
        assert config.db_path == Path("data") / "chanroot.db"
        assert config.logging_level == logging.INFO

    def test_coerces_strings(self):
        config = EngineConfig(submission_timeout="2.5", default_page_limit="10", data_dir="x", log_level="debug")
        assert config.submission_timeout == 2.5
        assert config.default_page_limit == 10
        assert config.data_dir == Path("x")
        assert config.logging_level == logging.DEBUG

    @pytest.mark.parametrize("kwargs", [{"submission_timeout": 0}, {"default_page_limit": -1}])
    def test_rejects_non_positive(self, kwargs):
        with pytest.raises(ValueError):
            EngineConfig(**kwargs)

    def test_ensure_directories(self, tmp_path):
        config = EngineConfig(data_dir=tmp_path / "d", log_dir=tmp_path / "l")
        config.ensure_directories()
        assert (tmp_path / "d").is_dir()
        assert (tmp_path / "l").is_dir()


class TestLoadConfig:
    """Tests for file and environment resolution."""

    def test_defaults_without_sources(self, tmp_path):
        config = load_config(env_file=str(tmp_path / "missing.env"))
        assert config == EngineConfig()

    def test_json_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"submission_timeout": 5, "db_name": "x.db"}))
        config = load_config(str(path), env_file=str(tmp_path / "missing.env"))
        assert config.submission_timeout == 5.0
        assert config.db_name == "x.db"

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"bogus": 1}))
        with pytest.raises(ValueError):
            load_config(str(path))

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"submission_timeout": 5}))
        monkeypatch.setenv("CHANROOT_SUBMISSION_TIMEOUT", "7")
        assert load_config(str(path), env_file=str(tmp_path / "missing.env")).submission_timeout == 7.0

    def test_dotenv_file(self, tmp_path, monkeypatch):
        env_file = tmp_path / ".env"
        env_file.write_text("CHANROOT_DEFAULT_PAGE_LIMIT=3\n")
        config = load_config(env_file=str(env_file))
        assert config.default_page_limit == 3
