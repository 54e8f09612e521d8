"""Plugin settings store - persists user-entered values per plugin."""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class PluginConfigService:
    """Manages the plugin settings JSON file.

    Config format:
    {
        "plugins": {
            "openai": {
                "apiToken": "sk-...",
                "baseUrl": null
            }
        }
    }
    """

    def __init__(self, config_file: Path):
        self.config_file = Path(config_file)
        self._lock = threading.Lock()
        self._config: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        """Load config from file, creating defaults if not found."""
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                if isinstance(data, dict):
                    return data
                logger.error(f"Plugin settings file {self.config_file} must contain an object")
            except (json.JSONDecodeError, IOError) as e:
                logger.error(f"Error loading plugin settings: {e}")

        return {"plugins": {}}

    def _save(self) -> None:
        """Save config to file."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self._config, f, indent=2, ensure_ascii=False)
        logger.debug(f"Saved plugin settings to {self.config_file}")

    def get_plugin_settings(self, name: str) -> Dict[str, Optional[str]]:
        """Get stored values for a plugin."""
        with self._lock:
            return dict(self._config.get("plugins", {}).get(name, {}))

    def update_plugin_settings(self, name: str, values: Dict[str, Optional[str]]) -> None:
        """Replace stored values for a plugin."""
        with self._lock:
            plugins = self._config.setdefault("plugins", {})
            plugins[name] = dict(values)
            self._save()
        logger.info(f"Updated settings for plugin: {name}")
