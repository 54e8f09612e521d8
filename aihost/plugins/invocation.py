"""Invocation engine - sends a conversation to a plugin's prompt function."""

import asyncio
import logging
from typing import Any, Iterable, Mapping, Optional, Union

from aihost.plugins.errors import (
    InvocationTimeout,
    MalformedResult,
    PluginError,
)
from aihost.plugins.isolation import MALFORMED_RESULT, IsolationFailure, PluginCallError
from aihost.plugins.models import history_payload, normalize_history
from aihost.plugins.registry import LoadedPlugin
from aihost.plugins.settings import Settings, resolve_settings

logger = logging.getLogger(__name__)

DEFAULT_PROMPT_TIMEOUT = 120.0


async def send_prompt(
    plugin: LoadedPlugin,
    settings: Optional[Union[Settings, Mapping[str, Any]]],
    history: Iterable[Any],
    model_id: Optional[str],
    timeout: Optional[float] = DEFAULT_PROMPT_TIMEOUT,
) -> str:
    """Call the plugin's prompt function once and return its reply.

    The history reaches the plugin in exactly the order given. Nothing is
    retried: a timeout or plugin failure is reported to the caller as is.

    Args:
        plugin: Target plugin
        settings: Resolved Settings, raw user values, or None for the plugin's own
        history: ConversationMessage objects or {"role", "content"} mappings
        model_id: Model to use, passed through untouched
        timeout: Seconds before the call is cancelled; None waits forever

    Raises:
        ValidationError: settings or history are malformed
        InvocationTimeout: no reply within timeout
        PluginError: the plugin raised; carries its message verbatim
        MalformedResult: the reply is not a string
        PluginUnloaded: the plugin has been unloaded
    """
    plugin.ensure_active("prompt")

    if settings is None:
        settings = plugin.settings
    elif not isinstance(settings, Settings):
        settings = resolve_settings(plugin.manifest, settings)

    messages = normalize_history(history)
    logger.debug(f"Sending {len(messages)} message(s) to plugin {plugin.name} (model={model_id})")

    try:
        result = await plugin.module.call(
            "prompt",
            settings.to_dict(),
            history_payload(messages),
            model_id,
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning(f"Plugin {plugin.name} prompt timed out after {timeout}s")
        raise InvocationTimeout(plugin.name, "prompt", timeout) from None
    except PluginCallError as e:
        if e.error_type == MALFORMED_RESULT:
            raise MalformedResult(plugin.name, "prompt", e.message) from e
        logger.info(f"Plugin {plugin.name} prompt failed: {e.error_type}: {e.message}")
        raise PluginError(plugin.name, "prompt", e.message, e.error_type) from e
    except IsolationFailure as e:
        raise PluginError(plugin.name, "prompt", str(e)) from e

    if not isinstance(result, str):
        raise MalformedResult(
            plugin.name, "prompt", f"expected a string, got {type(result).__name__}"
        )
    return result
