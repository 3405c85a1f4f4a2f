"""Settings persistence for Faceoff.

Saves and loads user preferences and window state to ~/.faceoff/config.json
"""

import json
import logging
import os
import tempfile
from contextlib import suppress
from typing import Optional, Dict, Any, List
from pathlib import Path
from dataclasses import asdict, dataclass, field, fields

from .settings import settings, get_api_key as get_env_api_key


logger = logging.getLogger(__name__)


@dataclass
class WindowState:
    """Window position and size state."""

    x: int = 100
    y: int = 100
    width: int = 1400
    height: int = 860
    maximized: bool = False


@dataclass
class UserPreferences:
    """User preferences that persist between sessions."""

    # Model selected in each panel, None for an empty panel
    last_model_selection: List[Optional[str]] = field(default_factory=list)

    # Window state
    window: WindowState = field(default_factory=WindowState)

    # OpenRouter API key entered in Settings (environment wins)
    openrouter_api_key: Optional[str] = None


class PersistenceManager:
    """Manages saving and loading user preferences."""

    def __init__(self, config_path: Optional[Path] = None) -> None:
        """Initialize the persistence manager.

        Args:
            config_path: Path to config file, defaults to ~/.faceoff/config.json
        """
        self._config_path = config_path or settings.preferences_path
        self._preferences: Optional[UserPreferences] = None

    @property
    def preferences(self) -> UserPreferences:
        """Get current preferences, loading from disk if needed."""
        if self._preferences is None:
            self._preferences = self.load()
        return self._preferences

    def load(self) -> UserPreferences:
        """Load preferences from disk.

        Unknown keys are ignored and an unreadable file yields defaults,
        so a config written by another version never blocks startup.
        """
        if not self._config_path.exists():
            return UserPreferences()

        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return self._dict_to_preferences(data)
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.warning("Ignoring unreadable preferences %s: %s", self._config_path, e)
            return UserPreferences()

    def save(self, preferences: Optional[UserPreferences] = None) -> None:
        """Write preferences atomically (temp file, then replace).

        Args:
            preferences: Preferences to save, or current if None

        Raises:
            OSError: If the file cannot be written
        """
        if preferences is not None:
            self._preferences = preferences
        if self._preferences is None:
            return

        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=self._config_path.parent, suffix=".tmp")
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(asdict(self._preferences), f, indent=2)
            os.replace(temp_path, self._config_path)
        except OSError:
            with suppress(OSError):
                os.unlink(temp_path)
            raise

    def update_window_state(
        self,
        x: int,
        y: int,
        width: int,
        height: int,
        maximized: bool = False,
    ) -> None:
        """Update window state and save."""
        self.preferences.window = WindowState(x, y, width, height, maximized)
        self.save()

    def update_model_selection(self, model_ids: List[Optional[str]]) -> None:
        """Remember the model chosen for each panel and save.

        Args:
            model_ids: One entry per panel, None for an empty panel
        """
        self.preferences.last_model_selection = list(model_ids)
        self.save()

    def update_api_key(self, api_key: Optional[str]) -> None:
        """Store (or clear, with None/empty) the OpenRouter API key."""
        self.preferences.openrouter_api_key = api_key or None
        self.save()

    def get_api_key(self) -> Optional[str]:
        """Resolve the OpenRouter credential.

        The OPENROUTER_API_KEY environment variable takes precedence over
        the key saved in preferences. Returns None in free mode.
        """
        return get_env_api_key("openrouter") or self.preferences.openrouter_api_key

    @staticmethod
    def _dict_to_preferences(data: Dict[str, Any]) -> UserPreferences:
        window_keys = {f.name for f in fields(WindowState)}
        window = WindowState(
            **{k: v for k, v in (data.get("window") or {}).items() if k in window_keys}
        )

        selection = data.get("last_model_selection", [])
        if not isinstance(selection, list):
            selection = []

        return UserPreferences(
            last_model_selection=[m or None for m in selection],
            window=window,
            openrouter_api_key=data.get("openrouter_api_key") or None,
        )


# Global instance
persistence = PersistenceManager()
