"""Global constants for the plugin host."""

import os
from pathlib import Path

# Directory paths
HOST_ROOT = Path(__file__).resolve().parent.parent

_plugins_dir_env = os.getenv("PLUGINS_DIR", "")
PLUGINS_DIR = Path(_plugins_dir_env) if _plugins_dir_env else HOST_ROOT / "plugins" / "installed"

# User-entered plugin settings (see PluginConfigService)
PLUGIN_SETTINGS_FILE = Path(os.getenv("PLUGIN_SETTINGS_FILE", str(HOST_ROOT / "plugins" / "settings.json")))

# Community registry listing published plugin filenames (optional)
PLUGIN_REGISTRY_FILE = Path(os.getenv("PLUGIN_REGISTRY_FILE", str(PLUGINS_DIR / "registry.json")))

# Where .ai archives are unpacked; defaults to the system temp dir
_extract_dir_env = os.getenv("PLUGIN_EXTRACT_DIR", "")
PLUGIN_EXTRACT_DIR = Path(_extract_dir_env) if _extract_dir_env else None

# Timeouts (seconds) for calls into plugin code
PLUGIN_PROMPT_TIMEOUT = float(os.getenv("PLUGIN_PROMPT_TIMEOUT", "120"))
PLUGIN_CATALOG_TIMEOUT = float(os.getenv("PLUGIN_CATALOG_TIMEOUT", "30"))
PLUGIN_START_TIMEOUT = float(os.getenv("PLUGIN_START_TIMEOUT", "30"))
