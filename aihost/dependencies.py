"""Dependency injection container for services."""

import logging

from aihost.plugins.manager import PluginManager

logger = logging.getLogger(__name__)

# ============================================================================
# Global service instances (singleton, exposed via functions for easier testing/mocking)
# ============================================================================

_plugin_manager_instance = None


def get_plugin_manager() -> PluginManager:
    """Get plugin manager (singleton)."""
    global _plugin_manager_instance
    if _plugin_manager_instance is None:
        from aihost.constants import (
            PLUGIN_CATALOG_TIMEOUT,
            PLUGIN_EXTRACT_DIR,
            PLUGIN_PROMPT_TIMEOUT,
            PLUGIN_REGISTRY_FILE,
            PLUGIN_SETTINGS_FILE,
            PLUGIN_START_TIMEOUT,
            PLUGINS_DIR,
        )

        _plugin_manager_instance = PluginManager(
            plugins_dir=PLUGINS_DIR,
            config_file=PLUGIN_SETTINGS_FILE,
            registry_file=PLUGIN_REGISTRY_FILE,
            extract_dir=PLUGIN_EXTRACT_DIR,
            prompt_timeout=PLUGIN_PROMPT_TIMEOUT,
            catalog_timeout=PLUGIN_CATALOG_TIMEOUT,
            start_timeout=PLUGIN_START_TIMEOUT,
        )
        logger.info("Created PluginManager instance")
    return _plugin_manager_instance


def set_plugin_manager(manager: PluginManager) -> None:
    """Install a specific manager instance (tests, embedding applications)."""
    global _plugin_manager_instance
    _plugin_manager_instance = manager


# Test utility function (for unit testing - resets all singletons)
def reset_services():
    """Reset all service instances (only for testing)."""
    global _plugin_manager_instance

    if _plugin_manager_instance is not None:
        _plugin_manager_instance.shutdown()
    _plugin_manager_instance = None
    logger.info("Reset all service instances")
