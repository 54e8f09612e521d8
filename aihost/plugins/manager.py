"""Plugin manager - the host-facing API of the plugin runtime."""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from aihost.plugins.catalog import get_models
from aihost.plugins.config import PluginConfigService
from aihost.plugins.discovery import PluginDiscovery
from aihost.plugins.errors import LoadError, PluginNotFound
from aihost.plugins.invocation import send_prompt
from aihost.plugins.loader import ModuleFactory, PluginLoader
from aihost.plugins.models import ModelDescriptor
from aihost.plugins.registry import LoadedPlugin, PluginRegistry
from aihost.plugins.settings import Settings, resolve_settings

logger = logging.getLogger(__name__)


class PluginManager:
    """Top-level plugin runtime orchestrator.

    Coordinates discovery, loading, settings and calls into plugins. Every
    call looks the plugin up in the registry by name.
    """

    def __init__(
        self,
        plugins_dir: Path,
        config_file: Path,
        registry_file: Optional[Path] = None,
        extract_dir: Optional[Path] = None,
        prompt_timeout: Optional[float] = 120.0,
        catalog_timeout: Optional[float] = 30.0,
        start_timeout: float = 30.0,
        module_factory: Optional[ModuleFactory] = None,
    ):
        self.plugins_dir = Path(plugins_dir)
        self.prompt_timeout = prompt_timeout
        self.catalog_timeout = catalog_timeout

        self.registry = PluginRegistry()
        self.config_service = PluginConfigService(config_file)
        self.discovery = PluginDiscovery(self.plugins_dir, registry_file)
        self.loader = PluginLoader(
            self.registry,
            extract_dir=extract_dir,
            start_timeout=start_timeout,
            module_factory=module_factory,
            settings_provider=self.config_service.get_plugin_settings,
        )

    def load_all(self) -> None:
        """Discover and load every plugin package. Failures are logged and skipped."""
        packages = self.discovery.discover_all()
        for package_path in packages:
            try:
                self.load_plugin(package_path)
            except LoadError as e:
                logger.error(f"Failed to load plugin package {package_path}: {e}")

        logger.info(
            f"Plugin runtime initialized, "
            f"{self.registry.count()}/{len(packages)} plugin(s) loaded"
        )

    def shutdown(self) -> None:
        """Unload every plugin."""
        self.registry.clear()
        logger.info("All plugins unloaded")

    def load_plugin(self, package_path: Path) -> LoadedPlugin:
        """Load (or replace) a plugin from a package path.

        Stored settings for the plugin's name are applied when they still
        match its manifest.
        """
        return self.loader.load(Path(package_path))

    def unload_plugin(self, name: str) -> bool:
        return self.registry.unload(name)

    def reload_all(self) -> Dict[str, Optional[str]]:
        return self.registry.reload_all(self.loader)

    def get_plugin(self, name: str) -> LoadedPlugin:
        plugin = self.registry.get(name)
        if plugin is None:
            raise PluginNotFound(name)
        return plugin

    def configure_plugin(self, name: str, values: Mapping[str, Any]) -> Settings:
        """Resolve and store user-entered values for a plugin.

        Raises:
            PluginNotFound: no such plugin
            ValidationError: values do not match the plugin's parameters
        """
        plugin = self.get_plugin(name)
        settings = resolve_settings(plugin.manifest, values)
        self.config_service.update_plugin_settings(name, settings.to_dict())
        plugin.settings = settings
        return settings

    async def list_models(self, name: str) -> List[ModelDescriptor]:
        return await get_models(self.get_plugin(name), timeout=self.catalog_timeout)

    async def send_prompt(
        self,
        name: str,
        settings: Optional[Mapping[str, Any]],
        history: Iterable[Any],
        model_id: Optional[str],
    ) -> str:
        plugin = self.get_plugin(name)
        return await send_prompt(plugin, settings, history, model_id, timeout=self.prompt_timeout)

    def get_plugin_info(self, name: str) -> Optional[dict]:
        """Get plugin information as dict."""
        plugin = self.registry.get(name)
        if not plugin:
            return None
        return plugin.to_dict()

    def list_plugins(self) -> List[dict]:
        """List all loaded plugins as dicts."""
        return [p.to_dict() for p in self.registry.list()]

