"""Model catalog - asks a plugin which models it offers and orders them."""

import asyncio
import logging
from typing import Any, List, Optional

from aihost.plugins.errors import (
    CatalogUnavailable,
    InvocationTimeout,
    MalformedResult,
)
from aihost.plugins.isolation import MALFORMED_RESULT, IsolationFailure, PluginCallError
from aihost.plugins.models import ModelDescriptor
from aihost.plugins.registry import LoadedPlugin

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = " (Default)"


async def get_models(plugin: LoadedPlugin, timeout: Optional[float] = None) -> List[ModelDescriptor]:
    """Build the ordered model catalog for a plugin.

    Entries are deduplicated by id (first wins) and unnamed entries are named
    after their id. When the plugin reports a default model, that entry moves
    to the front with DEFAULT_SUFFIX appended. Every call rebuilds the catalog
    from the plugin's answer, so the suffix never accumulates.

    Raises:
        CatalogUnavailable: listModels or getDefaultModuleID raised
        MalformedResult: the plugin returned something that is not a model list
        InvocationTimeout: the plugin did not answer in time
        PluginUnloaded: the plugin has been unloaded
    """
    plugin.ensure_active("listModels")

    raw = await _call(plugin, "list_models", "listModels", timeout, plugin.settings.to_dict())
    models = normalize_models(plugin.name, raw)

    default_id = None
    if plugin.module.has_export("get_default_model_id"):
        default_id = await _call(plugin, "get_default_model_id", "getDefaultModuleID", timeout)
        if default_id is not None and not isinstance(default_id, str):
            raise MalformedResult(
                plugin.name,
                "getDefaultModuleID",
                f"expected a model id string, got {type(default_id).__name__}",
            )

    return order_catalog(models, default_id or None, plugin_name=plugin.name)


def normalize_models(plugin_name: str, raw: Any) -> List[ModelDescriptor]:
    """Validate listModels output, dropping duplicate ids and filling names."""
    if not isinstance(raw, (list, tuple)):
        raise MalformedResult(
            plugin_name, "listModels", f"expected a list of models, got {type(raw).__name__}"
        )

    models = []
    seen = set()
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str) or not entry["id"]:
            raise MalformedResult(plugin_name, "listModels", f"entry {index} has no string 'id'")
        model_id = entry["id"]
        if model_id in seen:
            logger.debug(f"Plugin {plugin_name}: dropping duplicate model id '{model_id}'")
            continue
        seen.add(model_id)

        name = entry.get("name")
        if not isinstance(name, str) or not name:
            name = model_id
        models.append(ModelDescriptor(id=model_id, name=name))
    return models


def order_catalog(
    models: List[ModelDescriptor],
    default_id: Optional[str],
    plugin_name: str = "",
) -> List[ModelDescriptor]:
    """Move the default model to the front and mark it, without mutating inputs."""
    if default_id is None:
        return list(models)

    for index, model in enumerate(models):
        if model.id == default_id:
            promoted = model.model_copy(update={"name": f"{model.display_name}{DEFAULT_SUFFIX}"})
            return [promoted] + models[:index] + models[index + 1:]

    logger.warning(
        f"Plugin {plugin_name}: default model '{default_id}' is not in its catalog, "
        f"keeping catalog order"
    )
    return list(models)


async def _call(plugin: LoadedPlugin, export: str, operation: str, timeout: Optional[float], *args):
    try:
        return await plugin.module.call(export, *args, timeout=timeout)
    except asyncio.TimeoutError:
        raise InvocationTimeout(plugin.name, operation, timeout) from None
    except PluginCallError as e:
        if e.error_type == MALFORMED_RESULT:
            raise MalformedResult(plugin.name, operation, e.message) from e
        raise CatalogUnavailable(plugin.name, operation, e.message) from e
    except IsolationFailure as e:
        raise CatalogUnavailable(plugin.name, operation, str(e)) from e
