"""Plugin runtime for AI provider plugins.

Imports are lazy so that the worker process spawned for each plugin only
pulls in the isolation module, not the whole host.
"""

__all__ = [
    "PluginManifest",
    "ParameterSpec",
    "ParameterType",
    "validate_manifest",
    "Settings",
    "resolve_settings",
    "ConversationMessage",
    "ModelDescriptor",
    "PluginModule",
    "ProcessPluginModule",
    "PluginLoader",
    "pack_plugin",
    "LoadedPlugin",
    "PluginRegistry",
    "PluginDiscovery",
    "PluginConfigService",
    "PluginManager",
    "get_models",
    "send_prompt",
]


def __getattr__(name):
    if name in ("PluginManifest", "ParameterSpec", "ParameterType", "validate_manifest"):
        from aihost.plugins import manifest
        return getattr(manifest, name)
    if name in ("Settings", "resolve_settings"):
        from aihost.plugins import settings
        return getattr(settings, name)
    if name in ("ConversationMessage", "ModelDescriptor"):
        from aihost.plugins import models
        return getattr(models, name)
    if name in ("PluginModule", "ProcessPluginModule"):
        from aihost.plugins import isolation
        return getattr(isolation, name)
    if name in ("PluginLoader", "pack_plugin"):
        from aihost.plugins import loader
        return getattr(loader, name)
    if name in ("LoadedPlugin", "PluginRegistry"):
        from aihost.plugins import registry
        return getattr(registry, name)
    if name == "PluginDiscovery":
        from aihost.plugins.discovery import PluginDiscovery
        return PluginDiscovery
    if name == "PluginConfigService":
        from aihost.plugins.config import PluginConfigService
        return PluginConfigService
    if name == "PluginManager":
        from aihost.plugins.manager import PluginManager
        return PluginManager
    if name == "get_models":
        from aihost.plugins.catalog import get_models
        return get_models
    if name == "send_prompt":
        from aihost.plugins.invocation import send_prompt
        return send_prompt
    raise AttributeError(f"module 'aihost.plugins' has no attribute {name!r}")
