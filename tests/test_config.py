"""Tests for vogon.config: YAML configuration loader."""

import tempfile
from pathlib import Path

import pytest

from vogon.config import Config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("VOGON_CONFIG", "DATABASE_DIR", "VOGON_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "custom.yaml"
    path.write_text(text)
    return path


class TestConfigInit:
    def test_defaults_without_file(self):
        config = Config()
        assert config.settings == {}
        assert config.database_dir == Path(tempfile.gettempdir()) / "vogon"
        assert config.database_path.name == "vogon.db"
        assert config.log_level == "INFO"
        assert config.bcrypt_rounds is None

    def test_raises_on_missing_explicit_file(self):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            Config("/nonexistent/vogon.yaml")

    def test_raises_on_missing_env_file(self, monkeypatch):
        monkeypatch.setenv("VOGON_CONFIG", "/nonexistent/vogon.yaml")
        with pytest.raises(FileNotFoundError):
            Config()

    def test_default_file_in_working_dir(self, tmp_path):
        (tmp_path / "vogon.yaml").write_text("database_file: ledger.db\n")
        assert Config().database_file == "ledger.db"

    def test_env_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VOGON_CONFIG", str(_write(tmp_path, "log_level: debug\n")))
        assert Config().log_level == "DEBUG"

    def test_empty_file(self, tmp_path):
        assert Config(_write(tmp_path, "")).settings == {}

    def test_invalid_yaml(self, tmp_path):
        config = Config(_write(tmp_path, "key: [unclosed\n"))
        with pytest.raises(ValueError, match="Invalid YAML"):
            config.settings

    def test_not_a_mapping(self, tmp_path):
        config = Config(_write(tmp_path, "- a\n- b\n"))
        with pytest.raises(ValueError, match="mapping"):
            config.settings


class TestDatabaseSettings:
    def test_yaml_dir(self, tmp_path):
        config = Config(_write(tmp_path, f"database_dir: {tmp_path / 'data'}\n"))
        assert config.database_path == tmp_path / "data" / "vogon.db"

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_DIR", str(tmp_path / "env"))
        config = Config(_write(tmp_path, "database_dir: /elsewhere\n"))
        assert config.database_dir == tmp_path / "env"

    def test_home_expanded(self, tmp_path):
        config = Config(_write(tmp_path, "database_dir: ~/vogon-data\n"))
        assert config.database_dir == Path.home() / "vogon-data"


class TestLogLevel:
    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        monkeypatch.setenv("VOGON_LOG_LEVEL", "warning")
        config = Config(_write(tmp_path, "log_level: debug\n"))
        assert config.log_level == "WARNING"


class TestBcryptRounds:
    def test_valid(self, tmp_path):
        assert Config(_write(tmp_path, "bcrypt_rounds: 10\n")).bcrypt_rounds == 10

    @pytest.mark.parametrize("value", ["3", "32", "ten", "true"])
    def test_invalid(self, tmp_path, value):
        config = Config(_write(tmp_path, f"bcrypt_rounds: {value}\n"))
        with pytest.raises(ValueError, match="bcrypt_rounds"):
            config.bcrypt_rounds
