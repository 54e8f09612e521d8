"""Shared fixtures for plugin runtime tests."""

import asyncio
import inspect
import json
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pytest

from aihost.plugins.errors import PluginUnloaded
from aihost.plugins.isolation import PluginCallError, PluginModule
from aihost.plugins.loader import PluginLoader
from aihost.plugins.manifest import validate_manifest
from aihost.plugins.registry import LoadedPlugin, PluginRegistry
from aihost.plugins.settings import Settings


class FakeModule(PluginModule):
    """In-process PluginModule that mimics the worker's error reporting."""

    def __init__(self, name: str = "fake", **functions: Callable):
        self.name = name
        self.functions: Dict[str, Callable] = functions
        self.calls = []
        self._closed = False

    @property
    def exports(self):
        return frozenset(self.functions)

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        pass

    async def call(self, export: str, *args: Any, timeout: Optional[float] = None) -> Any:
        if self._closed:
            raise PluginUnloaded(self.name, export)
        self.calls.append((export, args))
        fn = self.functions[export]

        async def run():
            try:
                result = fn(*args)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                raise PluginCallError(type(e).__name__, str(e)) from e
            return result

        return await asyncio.wait_for(run(), timeout)

    def close(self) -> None:
        self._closed = True


def make_manifest(**overrides) -> dict:
    data = {
        "name": "openai",
        "author": "Jane Doe",
        "description": "OpenAI provider",
        "version": "1.2.3",
        "dependencies": {"openai": "^4.0.0"},
        "parameters": [
            {"id": "apiToken", "name": "API Token", "description": "Secret key", "type": "password"},
            {"id": "baseUrl", "name": "Base URL", "type": "url"},
        ],
    }
    data.update(overrides)
    return data


def make_loaded(module: PluginModule, manifest: Optional[dict] = None, settings=None) -> LoadedPlugin:
    parsed = validate_manifest(manifest or make_manifest(name=module.name))
    return LoadedPlugin(
        manifest=parsed,
        module=module,
        settings=settings if settings is not None else Settings.empty(parsed),
        package_path=Path(f"{parsed.name}.ai"),
    )


@pytest.fixture
def registry():
    registry = PluginRegistry()
    yield registry
    registry.clear()


@pytest.fixture
def loader(registry, tmp_path):
    return PluginLoader(registry, extract_dir=tmp_path / "extract", start_timeout=60)


@pytest.fixture
def write_plugin(tmp_path):
    """Write an unpacked plugin directory and return its path."""

    def _write(
        name: str,
        source: str,
        parameters=(),
        version: str = "1.0.0",
        dependencies: Optional[Dict[str, str]] = None,
        packages: Optional[Dict[str, str]] = None,
        directory: Optional[Path] = None,
    ) -> Path:
        plugin_dir = directory or tmp_path / "src" / f"{name}-{version}"
        plugin_dir.mkdir(parents=True, exist_ok=True)
        manifest = {
            "name": name,
            "author": "Test",
            "description": f"{name} test plugin",
            "version": version,
            "dependencies": dependencies or {},
            "parameters": list(parameters),
        }
        (plugin_dir / "plugin.json").write_text(json.dumps(manifest), encoding="utf-8")
        (plugin_dir / "plugin.py").write_text(textwrap.dedent(source), encoding="utf-8")
        for relative, content in (packages or {}).items():
            target = plugin_dir / "packages" / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(textwrap.dedent(content), encoding="utf-8")
        return plugin_dir

    return _write


ECHO_SOURCE = '''
    async def prompt(settings, history, model):
        return f"{model}:{history[-1]['content']}"

    async def list_models(settings):
        return [{"id": "small"}, {"id": "large", "name": "Large"}]

    def get_default_model_id():
        return "large"
'''
