"""Application settings and configuration."""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


# Load environment variables from .env file if present
load_dotenv()


def _default_app_dir() -> Path:
    """Resolve the data directory, honouring FACEOFF_HOME."""
    override = os.getenv("FACEOFF_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".faceoff"


@dataclass
class AppSettings:
    """Application-wide settings."""

    # Window defaults
    window_width: int = 1400
    window_height: int = 860
    window_title: str = "Model Faceoff"

    # Comparison layout
    panel_count: int = 3

    # OpenRouter
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    http_referer: str = "https://www.modelfaceoff.com"
    app_title: str = "Model Faceoff"
    connect_timeout: float = 15.0

    # Free model used for conversation titles (works without an API key)
    title_model: str = "meta-llama/llama-3.2-3b-instruct:free"
    title_max_tokens: int = 32

    # Models list cache lifetime in seconds
    models_cache_ttl: float = 300.0

    # Allow running without an API key (free models only)
    allow_free_mode: bool = True

    # Seconds to wait for streams to wind down on shutdown
    task_cancellation_timeout: float = 2.0

    # Paths
    app_data_dir: Path = field(default_factory=_default_app_dir)

    def __post_init__(self) -> None:
        """Ensure directories exist."""
        self.app_data_dir.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    @property
    def logs_dir(self) -> Path:
        return self.app_data_dir / "logs"

    @property
    def database_path(self) -> Path:
        return self.app_data_dir / "faceoff.db"

    @property
    def preferences_path(self) -> Path:
        return self.app_data_dir / "config.json"


def get_api_key(provider: str) -> Optional[str]:
    """Get API key for a provider from environment variables.

    Args:
        provider: The provider name (openrouter)

    Returns:
        The API key if found, None otherwise
    """
    key_map = {
        "openrouter": "OPENROUTER_API_KEY",
    }
    env_var = key_map.get(provider.lower())
    if env_var:
        return os.getenv(env_var) or None
    return None


def configure_logging(verbose: bool = False, log_dir: Optional[Path] = None) -> None:
    """Install console and rotating file handlers on the root logger.

    Args:
        verbose: Log at DEBUG instead of INFO
        log_dir: Directory for faceoff.log, defaults to the settings logs dir
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
    )

    root = logging.getLogger()
    root.setLevel(level)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    log_dir = log_dir or settings.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / "faceoff.log",
        maxBytes=1_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# Global settings instance
settings = AppSettings()
