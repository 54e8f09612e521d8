"""Plugin registry - process-wide table of loaded plugins."""
from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, TYPE_CHECKING

from aihost.plugins.errors import PluginUnloaded
from aihost.plugins.manifest import PluginManifest
from aihost.plugins.settings import Settings

if TYPE_CHECKING:
    from aihost.plugins.isolation import PluginModule
    from aihost.plugins.loader import PluginLoader

logger = logging.getLogger(__name__)


@dataclass
class LoadedPlugin:
    """A validated plugin with a live isolation context."""

    manifest: PluginManifest
    module: PluginModule = field(repr=False)
    settings: Settings
    package_path: Path
    workdir: Optional[Path] = field(default=None, repr=False)  # extraction dir owned by this plugin
    _unloaded: bool = field(default=False, init=False, repr=False)

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def unloaded(self) -> bool:
        return self._unloaded

    def ensure_active(self, operation: str = "call") -> None:
        """Raise PluginUnloaded if this handle has been torn down."""
        if self._unloaded or self.module.closed:
            raise PluginUnloaded(self.name, operation)

    def close(self) -> None:
        """Tear down the isolation context and remove extracted files."""
        if self._unloaded:
            return
        self._unloaded = True
        self.module.close()
        if self.workdir is not None:
            shutil.rmtree(self.workdir, ignore_errors=True)

    def to_dict(self) -> dict:
        """Serialize plugin for API responses. Setting values are not included."""
        return {
            "name": self.manifest.name,
            "author": self.manifest.author,
            "version": self.manifest.version,
            "description": self.manifest.description,
            "dependencies": dict(self.manifest.dependencies),
            "parameters": [p.model_dump(mode="json") for p in self.manifest.parameters],
            "configured": [k for k in self.settings if self.settings.is_set(k)],
            "exports": sorted(self.module.exports),
            "package": str(self.package_path),
        }


class PluginRegistry:
    """Central registry for loaded plugins, keyed by manifest name.

    All mutations happen under one lock, so a lookup sees either the previous
    or the next entry for a name, never a half-initialized one.
    """

    def __init__(self):
        self._plugins: Dict[str, LoadedPlugin] = {}
        self._lock = threading.RLock()

    def register(self, plugin: LoadedPlugin) -> Optional[LoadedPlugin]:
        """Register a plugin, replacing any entry with the same name.

        Returns:
            The replaced plugin, still open. The caller tears it down.
        """
        with self._lock:
            previous = self._plugins.get(plugin.name)
            self._plugins[plugin.name] = plugin
        if previous is not None:
            logger.info(f"Replaced plugin: {plugin.name} ({previous.manifest.version} -> {plugin.manifest.version})")
        else:
            logger.info(f"Registered plugin: {plugin.name} {plugin.manifest.version}")
        return previous

    def get(self, name: str) -> Optional[LoadedPlugin]:
        """Get a plugin by name."""
        with self._lock:
            return self._plugins.get(name)

    def list(self) -> List[LoadedPlugin]:
        """Get all registered plugins."""
        with self._lock:
            return list(self._plugins.values())

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._plugins

    def count(self) -> int:
        with self._lock:
            return len(self._plugins)

    def unload(self, name: str) -> bool:
        """Remove a plugin and tear down its isolation context.

        Returns:
            True if a plugin was unloaded
        """
        with self._lock:
            plugin = self._plugins.pop(name, None)
        if plugin is None:
            return False
        plugin.close()
        logger.info(f"Unloaded plugin: {name}")
        return True

    def reload_all(self, loader: PluginLoader) -> Dict[str, Optional[str]]:
        """Re-load every registered plugin from its package.

        A plugin that fails to reload keeps its current entry.

        Returns:
            Plugin name -> error message, or None when the reload succeeded
        """
        results: Dict[str, Optional[str]] = {}
        for plugin in self.list():
            try:
                loader.load(plugin.package_path, settings=plugin.settings)
                results[plugin.name] = None
            except Exception as e:
                results[plugin.name] = str(e)
                logger.error(f"Failed to reload plugin {plugin.name}: {e}")
        return results

    def clear(self) -> None:
        """Unload every plugin (host shutdown)."""
        with self._lock:
            plugins = list(self._plugins.values())
            self._plugins.clear()
        for plugin in plugins:
            try:
                plugin.close()
            except Exception as e:
                logger.error(f"Error while unloading plugin {plugin.name}: {e}")
        logger.info(f"Unloaded {len(plugins)} plugin(s)")
