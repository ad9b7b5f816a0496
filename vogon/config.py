"""YAML configuration loader for Vogon.

Settings come from an optional YAML file (VOGON_CONFIG, default
vogon.yaml in the working directory) and environment overrides:

  DATABASE_DIR      directory holding the database (default: <tmp>/vogon)
  VOGON_LOG_LEVEL   logging level name (default: INFO)

Recognised YAML keys: database_dir, database_file, log_level, bcrypt_rounds.
"""

import os
import tempfile
from pathlib import Path

import yaml

DEFAULT_CONFIG_FILE = "vogon.yaml"
DEFAULT_DATABASE_FILE = "vogon.db"
DEFAULT_LOG_LEVEL = "INFO"


class Config:
    """Loads and provides access to Vogon settings."""

    def __init__(self, config_file: Path | str | None = None):
        explicit = config_file is not None or "VOGON_CONFIG" in os.environ
        if config_file is None:
            config_file = os.environ.get("VOGON_CONFIG", DEFAULT_CONFIG_FILE)
        self.config_file = Path(config_file)
        if explicit and not self.config_file.is_file():
            raise FileNotFoundError(f"Config file not found: {self.config_file}")

        self._settings: dict | None = None

    def _load(self) -> dict:
        if not self.config_file.is_file():
            return {}
        with open(self.config_file) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {self.config_file}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a mapping: {self.config_file}")
        return data

    @property
    def settings(self) -> dict:
        if self._settings is None:
            self._settings = self._load()
        return self._settings

    @property
    def database_dir(self) -> Path:
        value = os.environ.get("DATABASE_DIR") or self.settings.get("database_dir")
        if not value:
            return Path(tempfile.gettempdir()) / "vogon"
        return Path(value).expanduser()

    @property
    def database_file(self) -> str:
        return str(self.settings.get("database_file") or DEFAULT_DATABASE_FILE)

    @property
    def database_path(self) -> Path:
        return self.database_dir / self.database_file

    @property
    def log_level(self) -> str:
        level = os.environ.get("VOGON_LOG_LEVEL") or self.settings.get("log_level")
        return str(level or DEFAULT_LOG_LEVEL).upper()

    @property
    def bcrypt_rounds(self) -> int | None:
        """bcrypt work factor; None selects the library default."""
        rounds = self.settings.get("bcrypt_rounds")
        if rounds is None:
            return None
        if isinstance(rounds, bool) or not isinstance(rounds, int) or not 4 <= rounds <= 31:
            raise ValueError(f"bcrypt_rounds must be an integer between 4 and 31, got {rounds!r}")
        return rounds
