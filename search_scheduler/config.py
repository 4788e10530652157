"""
Scheduler configuration management.

Handles loading, saving, and validating scheduler configuration: tick
and reconciliation intervals, worker pool size, logging, and the search
API the default job work talks to.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from config import get_config

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass
class TimingConfig:
    """Tick and reconciliation timing."""
    tick_interval_ms: int = 10000
    reconcile_interval_seconds: int = 10
    max_workers: int = 8


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None  # Set dynamically in __post_init__
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    def __post_init__(self):
        if self.file is None:
            self.file = str(_get_default_log_file())


@dataclass
class SearchAPIConfig:
    """External search API settings."""
    base_url: str = "http://localhost:8080/api"
    token_env: str = "SEARCH_API_TOKEN"
    timeout: int = 30


def _get_default_log_file() -> Path:
    """Get default log file path from environment or the data directory."""
    if os.environ.get('SCHEDULER_LOG_DIR'):
        return Path(os.environ['SCHEDULER_LOG_DIR']).expanduser() / "scheduler.log"
    return get_config().logs_dir / "scheduler.log"


class SchedulerConfig:
    """
    Scheduler configuration manager.

    Loads and manages scheduler configuration from a JSON file,
    with support for validation and defaults.

    Configuration path priority:
    1. Explicit config_path argument
    2. SEARCH_SCHEDULER_CONFIG_PATH environment variable
    3. Default: <data_dir>/scheduler_config.json
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize scheduler configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
        """
        if config_path:
            self.config_path = Path(config_path)
        elif os.environ.get('SEARCH_SCHEDULER_CONFIG_PATH'):
            self.config_path = Path(os.environ['SEARCH_SCHEDULER_CONFIG_PATH']).expanduser()
        else:
            self.config_path = get_config().scheduler_config_file

        self.timing: TimingConfig = TimingConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.search_api: SearchAPIConfig = SearchAPIConfig()
        self.required_env: List[str] = [self.search_api.token_env]

        if self.config_path.exists():
            self.load()
        else:
            logger.info(f"No config found at {self.config_path}, using defaults")

        self._apply_env_overrides()

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            if 'timing' in data:
                self.timing = TimingConfig(**data['timing'])
            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])
            if 'search_api' in data:
                self.search_api = SearchAPIConfig(**data['search_api'])
            self.required_env = list(data.get('required_env', [self.search_api.token_env]))

            logger.info(f"Loaded scheduler configuration from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def _apply_env_overrides(self):
        """Environment variables take precedence over the file."""
        if os.environ.get('SEARCH_API_URL'):
            self.search_api.base_url = os.environ['SEARCH_API_URL']
        if os.environ.get('SCHEDULER_TICK_INTERVAL_MS'):
            self.timing.tick_interval_ms = int(os.environ['SCHEDULER_TICK_INTERVAL_MS'])
        if os.environ.get('SCHEDULER_LOG_LEVEL'):
            self.logging.level = os.environ['SCHEDULER_LOG_LEVEL'].upper()

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'timing': asdict(self.timing),
            'logging': asdict(self.logging),
            'search_api': asdict(self.search_api),
            'required_env': self.required_env,
        }

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    @property
    def api_token(self) -> Optional[str]:
        return os.environ.get(self.search_api.token_env)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.timing.tick_interval_ms <= 0:
            errors.append("'tick_interval_ms' must be positive")
        if self.timing.reconcile_interval_seconds <= 0:
            errors.append("'reconcile_interval_seconds' must be positive")
        if self.timing.max_workers <= 0:
            errors.append("'max_workers' must be positive")
        if self.search_api.timeout <= 0:
            errors.append("'search_api.timeout' must be positive")
        if not self.search_api.base_url:
            errors.append("'search_api.base_url' cannot be empty")
        if logging.getLevelName(self.logging.level.upper()) == f"Level {self.logging.level.upper()}":
            errors.append(f"Unknown log level '{self.logging.level}'")

        return errors

    def __repr__(self):
        return f"SchedulerConfig(path={self.config_path}, tick={self.timing.tick_interval_ms}ms)"
