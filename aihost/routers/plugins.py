"""Plugin runtime REST API endpoints."""

import logging
from pathlib import Path

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool

from aihost.dependencies import get_plugin_manager
from aihost.models.requests import PluginLoadRequest, PluginSettingsUpdate, PromptRequest
from aihost.plugins.errors import (
    InvocationError,
    InvocationTimeout,
    LoadError,
    PluginHostError,
    PluginNotFound,
    PluginUnloaded,
    ValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/plugins", tags=["plugins"])


def _http_error(e: PluginHostError) -> HTTPException:
    """Map a host error to an HTTP error, keeping the plugin's own message."""
    if isinstance(e, PluginNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (ValidationError, LoadError)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, PluginUnloaded):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvocationTimeout):
        return HTTPException(status_code=504, detail=str(e))
    if isinstance(e, InvocationError):
        return HTTPException(
            status_code=502,
            detail={
                "plugin": e.plugin_name,
                "operation": e.operation,
                "error": e.plugin_message or str(e),
            },
        )
    return HTTPException(status_code=500, detail=str(e))


@router.get("/")
async def list_plugins():
    """List all loaded plugins."""
    manager = get_plugin_manager()
    return {"plugins": manager.list_plugins()}


@router.post("/load")
async def load_plugin(body: PluginLoadRequest):
    """Load a plugin package, replacing any loaded plugin with the same name."""
    path = Path(body.path)
    if not path.exists():
        raise HTTPException(status_code=400, detail=f"Path does not exist: {body.path}")

    manager = get_plugin_manager()
    try:
        plugin = await run_in_threadpool(manager.load_plugin, path)
    except PluginHostError as e:
        raise _http_error(e)
    return {"message": f"Plugin '{plugin.name}' loaded", "plugin": plugin.to_dict()}


@router.post("/reload")
async def reload_plugins():
    """Reload every loaded plugin from its package."""
    manager = get_plugin_manager()
    results = await run_in_threadpool(manager.reload_all)
    return {"results": results}


@router.get("/{name}")
async def get_plugin(name: str):
    """Get detailed information about a loaded plugin."""
    manager = get_plugin_manager()
    info = manager.get_plugin_info(name)
    if not info:
        raise HTTPException(status_code=404, detail=f"Plugin '{name}' not found")
    return info


@router.delete("/{name}")
async def unload_plugin(name: str):
    """Unload a plugin and stop its worker."""
    manager = get_plugin_manager()
    if not await run_in_threadpool(manager.unload_plugin, name):
        raise HTTPException(status_code=404, detail=f"Plugin '{name}' not found")
    return {"message": f"Plugin '{name}' unloaded"}


@router.put("/{name}/settings")
async def update_plugin_settings(name: str, body: PluginSettingsUpdate):
    """Store user-entered values for a plugin's parameters."""
    manager = get_plugin_manager()
    try:
        settings = await run_in_threadpool(manager.configure_plugin, name, body.settings)
    except PluginHostError as e:
        raise _http_error(e)
    return {
        "message": f"Settings updated for plugin '{name}'",
        "configured": [k for k in settings if settings.is_set(k)],
    }


@router.get("/{name}/models")
async def list_models(name: str):
    """List the plugin's models, default model first."""
    manager = get_plugin_manager()
    try:
        models = await manager.list_models(name)
    except PluginHostError as e:
        raise _http_error(e)
    return {"models": [m.model_dump() for m in models]}


@router.post("/{name}/prompt")
async def send_prompt(name: str, body: PromptRequest):
    """Send a conversation to the plugin and return its reply."""
    manager = get_plugin_manager()
    try:
        reply = await manager.send_prompt(name, body.settings, body.history, body.model)
    except PluginHostError as e:
        raise _http_error(e)
    return {"reply": reply}
