"""
Engine configuration parameters for chanroot.

Defines commit-protocol timeouts, input limits and on-disk locations.
Values are resolved in order: dataclass defaults, then an optional JSON
file, then CHANROOT_* environment variables (a .env file is loaded first).
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ENV_PREFIX = "CHANROOT_"


@dataclass
class EngineConfig:
    """Engine-wide configuration parameters"""

    # Commit protocol
    submission_timeout: float = 30.0  # Seconds to wait for the external verifier

    # Query limits
    default_page_limit: int = 50  # tokens_for_owner page size

    # Paths
    data_dir: Path = Path("data")
    db_name: str = "chanroot.db"
    log_dir: Path = Path("logs")
    log_level: str = "INFO"

    def __post_init__(self):
        """Coerce values that may arrive as strings from files or the environment."""
        self.submission_timeout = float(self.submission_timeout)
        self.default_page_limit = int(self.default_page_limit)
        self.data_dir = Path(self.data_dir)
        self.log_dir = Path(self.log_dir)
        self.log_level = str(self.log_level).upper()

        if self.submission_timeout <= 0:
            raise ValueError(f"submission_timeout must be positive, got {self.submission_timeout}")
        if self.default_page_limit <= 0:
            raise ValueError(f"default_page_limit must be positive, got {self.default_page_limit}")

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level, logging.INFO)

    def ensure_directories(self):
        """Create data and log directories."""
        self.data_dir.mkdir(exist_ok=True, parents=True)
        self.log_dir.mkdir(exist_ok=True, parents=True)


def load_config(config_path: Optional[str] = None, env_file: Optional[str] = None) -> EngineConfig:
    """
    Load configuration from file and environment, or use defaults.

    Args:
        config_path: Optional path to a JSON config file
        env_file: Optional .env file (defaults to searching from the cwd)

    Returns:
        EngineConfig instance
    """
    values = {}
    known = {f.name for f in fields(EngineConfig)}

    if config_path:
        data = json.loads(Path(config_path).read_text())
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        values.update(data)

    load_dotenv(env_file)
    for name in known:
        env_value = os.environ.get(ENV_PREFIX + name.upper())
        if env_value is not None:
            values[name] = env_value

    return EngineConfig(**values)
