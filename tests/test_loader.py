"""Tests for the plugin loader and process isolation."""

import asyncio
import concurrent.futures
import threading
import time
import zipfile

import pytest

from aihost.plugins.catalog import get_models
from aihost.plugins.errors import (
    CatalogUnavailable,
    InvalidArchive,
    InvalidManifest,
    InvocationTimeout,
    MissingExport,
    ModuleFailed,
    PluginError,
    PluginUnloaded,
    UnknownParameterType,
)
from aihost.plugins.invocation import send_prompt
from aihost.plugins.isolation import MALFORMED_RESULT, PluginCallError, ProcessPluginModule
from aihost.plugins.loader import pack_plugin, read_package_manifest

from conftest import ECHO_SOURCE

USER_HI = [{"role": "user", "content": "hi"}]


class TestLoad:
    """Loading plugin packages."""

    def test_load_directory(self, loader, registry, write_plugin):
        plugin_dir = write_plugin("echo", ECHO_SOURCE)

        plugin = loader.load(plugin_dir)

        assert registry.get("echo") is plugin
        assert plugin.module.exports == {"prompt", "list_models", "get_default_model_id"}
        assert asyncio.run(send_prompt(plugin, None, USER_HI, "large")) == "large:hi"
        models = asyncio.run(get_models(plugin))
        assert [(m.id, m.name) for m in models] == [("large", "Large (Default)"), ("small", "small")]

    def test_load_archive(self, loader, registry, write_plugin, tmp_path):
        archive = pack_plugin(write_plugin("echo", ECHO_SOURCE), tmp_path / "echo.ai")

        plugin = loader.load(archive)

        assert plugin.package_path == archive
        assert plugin.workdir is not None and plugin.workdir.exists()
        assert asyncio.run(send_prompt(plugin, None, USER_HI, "small")) == "small:hi"

        registry.unload("echo")
        assert not plugin.workdir.exists()

    def test_archive_with_top_level_folder(self, loader, write_plugin, tmp_path):
        plugin_dir = write_plugin("echo", ECHO_SOURCE)
        archive = tmp_path / "wrapped.ai"
        with zipfile.ZipFile(archive, "w") as zf:
            for name in ("plugin.json", "plugin.py"):
                zf.write(plugin_dir / name, f"echo/{name}")

        plugin = loader.load(archive)

        assert plugin.name == "echo"

    def test_camel_case_exports(self, loader, write_plugin):
        source = '''
            def prompt(settings, history, model):
                return "sync reply"

            def listModels(settings):
                return [{"id": "a"}, {"id": "b"}]

            def getDefaultModuleID():
                return "b"
        '''
        plugin = loader.load(write_plugin("camel", source))

        assert plugin.module.has_export("get_default_model_id")
        assert [m.id for m in asyncio.run(get_models(plugin))] == ["b", "a"]
        assert asyncio.run(send_prompt(plugin, None, [], None)) == "sync reply"

    def test_stored_settings_applied(self, loader, write_plugin):
        params = [{"id": "apiToken", "name": "Token", "type": "password"}]
        source = '''
            def prompt(settings, history, model):
                return settings["apiToken"] or "unset"

            def list_models(settings):
                return []
        '''
        loader.settings_provider = lambda name: {"apiToken": "sk-1"}
        plugin = loader.load(write_plugin("tok", source, parameters=params))
        assert asyncio.run(send_prompt(plugin, None, [], None)) == "sk-1"

    def test_stale_stored_settings_start_unset(self, loader, write_plugin):
        params = [{"id": "apiToken", "name": "Token", "type": "password"}]
        loader.settings_provider = lambda name: {"apiKey": "renamed"}

        plugin = loader.load(write_plugin("tok", "def prompt(*a): pass\ndef list_models(s): pass\n", parameters=params))

        assert plugin.settings.to_dict() == {"apiToken": None}


class TestLoadErrors:
    """Load failures leave the registry unchanged."""

    def test_missing_manifest(self, loader, tmp_path):
        (tmp_path / "empty").mkdir()
        with pytest.raises(InvalidArchive):
            loader.load(tmp_path / "empty")

    def test_missing_package(self, loader, tmp_path):
        with pytest.raises(InvalidArchive):
            loader.load(tmp_path / "nope.ai")

    def test_not_a_zip(self, loader, tmp_path):
        bogus = tmp_path / "bogus.ai"
        bogus.write_text("definitely not a zip")
        with pytest.raises(InvalidArchive):
            loader.load(bogus)

    def test_unsafe_member(self, loader, tmp_path):
        archive = tmp_path / "evil.ai"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../escape.py", "x = 1")
        with pytest.raises(InvalidArchive, match="Unsafe"):
            loader.load(archive)
        assert list((tmp_path / "extract").iterdir()) == []

    def test_invalid_json(self, loader, write_plugin):
        plugin_dir = write_plugin("broken", ECHO_SOURCE)
        (plugin_dir / "plugin.json").write_text("{", encoding="utf-8")
        with pytest.raises(InvalidManifest):
            loader.load(plugin_dir)

    def test_invalid_manifest(self, loader, registry, write_plugin):
        params = [{"id": "c", "name": "Color", "type": "color"}]
        with pytest.raises(InvalidManifest) as exc_info:
            loader.load(write_plugin("bad", ECHO_SOURCE, parameters=params))
        assert isinstance(exc_info.value.__cause__, UnknownParameterType)
        assert registry.count() == 0

    def test_missing_entry_module(self, loader, write_plugin):
        plugin_dir = write_plugin("noentry", ECHO_SOURCE)
        (plugin_dir / "plugin.py").unlink()
        with pytest.raises(InvalidArchive, match="plugin.py"):
            loader.load(plugin_dir)

    def test_missing_export(self, loader, registry, write_plugin):
        source = '''
            def prompt(settings, history, model):
                return "x"
        '''
        with pytest.raises(MissingExport) as exc_info:
            loader.load(write_plugin("half", source))
        assert exc_info.value.exports == ["list_models"]
        assert registry.get("half") is None

    def test_module_failure_isolated(self, loader, registry, write_plugin):
        healthy = loader.load(write_plugin("echo", ECHO_SOURCE))
        source = '''
            raise RuntimeError("boom at import")
        '''

        with pytest.raises(ModuleFailed, match="boom at import"):
            loader.load(write_plugin("crashy", source))

        assert registry.get("crashy") is None
        assert registry.get("echo") is healthy
        assert asyncio.run(send_prompt(healthy, None, USER_HI, "m")) == "m:hi"

    def test_module_hard_exit(self, loader, registry, write_plugin):
        source = '''
            import os
            os._exit(3)
        '''
        with pytest.raises(ModuleFailed, match="exit code 3"):
            loader.load(write_plugin("exiter", source))
        assert registry.count() == 0

    def test_settings_provider_failure_cleans_up(self, loader, registry, write_plugin, tmp_path):
        archive = pack_plugin(write_plugin("echo", ECHO_SOURCE), tmp_path / "echo.ai")
        started = []

        def factory(*args):
            module = loader._process_module(*args)
            started.append(module)
            return module

        def broken_provider(name):
            raise RuntimeError("settings store corrupted")

        loader.module_factory = factory
        loader.settings_provider = broken_provider

        with pytest.raises(RuntimeError, match="corrupted"):
            loader.load(archive)

        assert registry.count() == 0
        assert len(started) == 1 and started[0].closed
        assert list((tmp_path / "extract").iterdir()) == []


class TestIsolation:
    """Plugins cannot interfere with each other."""

    def test_same_dependency_different_versions(self, loader, write_plugin):
        source = '''
            import tokenizer_lib

            def prompt(settings, history, model):
                return tokenizer_lib.VERSION

            def list_models(settings):
                return []
        '''
        first = loader.load(write_plugin(
            "first", source,
            dependencies={"tokenizer_lib": "^1.0.0"},
            packages={"tokenizer_lib/__init__.py": 'VERSION = "1.4.0"\n'},
        ))
        second = loader.load(write_plugin(
            "second", source,
            dependencies={"tokenizer_lib": "^2.0.0"},
            packages={"tokenizer_lib/__init__.py": 'VERSION = "2.0.1"\n'},
        ))

        async def both():
            return await asyncio.gather(
                send_prompt(first, None, [], None),
                send_prompt(second, None, [], None),
            )

        assert asyncio.run(both()) == ["1.4.0", "2.0.1"]

    def test_global_mutation_stays_inside_plugin(self, loader, write_plugin):
        mutator = '''
            import json
            json.dumps = lambda *a, **k: "hijacked"

            def prompt(settings, history, model):
                return json.dumps({})

            def list_models(settings):
                return []
        '''
        observer = '''
            import json

            def prompt(settings, history, model):
                return json.dumps({"ok": True})

            def list_models(settings):
                return []
        '''
        hijacked = loader.load(write_plugin("mutator", mutator))
        clean = loader.load(write_plugin("observer", observer))

        assert asyncio.run(send_prompt(hijacked, None, [], None)) == "hijacked"
        assert asyncio.run(send_prompt(clean, None, [], None)) == '{"ok": true}'

    def test_plugin_exception_message_preserved(self, loader, write_plugin):
        source = '''
            class AuthenticationError(Exception):
                pass

            async def prompt(settings, history, model):
                raise AuthenticationError("Incorrect API key provided: sk-abc")

            async def list_models(settings):
                raise ConnectionError("network unreachable")
        '''
        plugin = loader.load(write_plugin("failing", source))

        with pytest.raises(PluginError) as exc_info:
            asyncio.run(send_prompt(plugin, None, USER_HI, None))
        assert exc_info.value.plugin_message == "Incorrect API key provided: sk-abc"
        assert exc_info.value.error_type == "AuthenticationError"

        with pytest.raises(CatalogUnavailable) as catalog_exc:
            asyncio.run(get_models(plugin))
        assert catalog_exc.value.plugin_message == "network unreachable"

    def test_non_plain_result_is_malformed(self, loader, write_plugin):
        from aihost.plugins.errors import MalformedResult

        source = '''
            class Reply:
                pass

            def prompt(settings, history, model):
                return Reply()

            def list_models(settings):
                return []
        '''
        plugin = loader.load(write_plugin("odd", source))
        with pytest.raises(MalformedResult):
            asyncio.run(send_prompt(plugin, None, [], None))

    def test_builtin_subclass_results_arrive_as_builtins(self, loader, write_plugin):
        source = '''
            class Reply(str):
                pass

            class Entry(dict):
                pass

            def prompt(settings, history, model):
                if model == "sub":
                    return Reply("subclassed")
                return "plain"

            def list_models(settings):
                return [Entry(id="a", name=Reply("Model A"))]
        '''
        plugin = loader.load(write_plugin("subclass", source))

        reply = asyncio.run(send_prompt(plugin, None, [], "sub", timeout=10))
        assert reply == "subclassed" and type(reply) is str
        assert asyncio.run(send_prompt(plugin, None, [], "other", timeout=10)) == "plain"
        models = asyncio.run(get_models(plugin, timeout=10))
        assert [(m.id, m.name) for m in models] == [("a", "Model A")]

    def test_cyclic_result_is_malformed(self, loader, write_plugin):
        from aihost.plugins.errors import MalformedResult

        source = '''
            def prompt(settings, history, model):
                if model == "loop":
                    reply = []
                    reply.append(reply)
                    return reply
                return "ok"

            def list_models(settings):
                return []
        '''
        plugin = loader.load(write_plugin("cyclic", source))

        with pytest.raises(MalformedResult, match="cycle"):
            asyncio.run(send_prompt(plugin, None, [], "loop", timeout=10))
        assert asyncio.run(send_prompt(plugin, None, [], None, timeout=10)) == "ok"

    def test_worker_crash_during_prompt(self, loader, write_plugin):
        source = '''
            import os

            def prompt(settings, history, model):
                os._exit(7)

            def list_models(settings):
                return []
        '''
        plugin = loader.load(write_plugin("dies", source))

        with pytest.raises(PluginError, match="exit code"):
            asyncio.run(send_prompt(plugin, None, [], None))


class TestTimeout:
    """Timeouts cancel one call without retrying it."""

    SOURCE = '''
        import asyncio

        async def prompt(settings, history, model):
            with open(settings["counterFile"], "a") as f:
                f.write("call\\n")
            await asyncio.sleep(float(settings["delay"] or 0))
            return "done"

        def list_models(settings):
            return []
    '''
    PARAMS = [
        {"id": "counterFile", "name": "Counter file", "type": "text"},
        {"id": "delay", "name": "Delay", "type": "number"},
    ]

    def test_timeout_not_retried(self, loader, write_plugin, tmp_path):
        counter = tmp_path / "calls.txt"
        plugin = loader.load(write_plugin("slow", self.SOURCE, parameters=self.PARAMS))

        with pytest.raises(InvocationTimeout):
            asyncio.run(send_prompt(plugin, {"counterFile": str(counter), "delay": "30"}, USER_HI, None, timeout=1.0))

        time.sleep(0.5)
        assert counter.read_text().splitlines() == ["call"]

        # the worker is still healthy after the cancelled call
        reply = asyncio.run(send_prompt(plugin, {"counterFile": str(counter), "delay": "0"}, USER_HI, None))
        assert reply == "done"

    def test_timeout_does_not_affect_other_calls(self, loader, write_plugin, tmp_path):
        counter = tmp_path / "calls.txt"
        plugin = loader.load(write_plugin("slow", self.SOURCE, parameters=self.PARAMS))

        async def run():
            slow = send_prompt(plugin, {"counterFile": str(counter), "delay": "30"}, [], None, timeout=1.0)
            fast = send_prompt(plugin, {"counterFile": str(counter), "delay": "0.2"}, [], None, timeout=10)
            return await asyncio.gather(slow, fast, return_exceptions=True)

        slow_result, fast_result = asyncio.run(run())

        assert isinstance(slow_result, InvocationTimeout)
        assert fast_result == "done"

    def test_cancelled_prompt_leaves_plugins_usable(self, loader, write_plugin, tmp_path):
        counter = tmp_path / "calls.txt"
        plugin = loader.load(write_plugin("slow", self.SOURCE, parameters=self.PARAMS))
        other = loader.load(write_plugin("echo", ECHO_SOURCE))

        async def run():
            task = asyncio.ensure_future(
                send_prompt(plugin, {"counterFile": str(counter), "delay": "30"}, USER_HI, None, timeout=None)
            )
            await asyncio.sleep(1.0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            other_reply = await send_prompt(other, None, USER_HI, "m", timeout=10)
            same_reply = await send_prompt(
                plugin, {"counterFile": str(counter), "delay": "0"}, USER_HI, None, timeout=10
            )
            return other_reply, same_reply

        assert asyncio.run(run()) == ("m:hi", "done")
        assert counter.read_text().splitlines() == ["call", "call"]


class TestReload:
    """Re-loading a name swaps entries atomically."""

    def test_reload_swaps_after_new_version_loads(self, loader, registry, write_plugin):
        v1 = loader.load(write_plugin("swap", ECHO_SOURCE, version="1.0.0"))
        misses = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                if registry.get("swap") is None:
                    misses.append(True)

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            v2 = loader.load(write_plugin("swap", ECHO_SOURCE, version="2.0.0"))
        finally:
            stop.set()
            thread.join()

        assert misses == []
        assert registry.get("swap") is v2
        assert v2.manifest.version == "2.0.0"
        assert v1.unloaded
        with pytest.raises(PluginUnloaded):
            asyncio.run(send_prompt(v1, None, USER_HI, None))

    def test_failed_reload_keeps_old_entry(self, loader, registry, write_plugin, tmp_path):
        v1 = loader.load(write_plugin("swap", ECHO_SOURCE, version="1.0.0"))

        with pytest.raises(ModuleFailed):
            loader.load(write_plugin("swap", "raise ImportError('missing sdk')\n", version="2.0.0"))

        assert registry.get("swap") is v1
        assert asyncio.run(send_prompt(v1, None, USER_HI, "m")) == "m:hi"

    def test_reload_all(self, loader, registry, write_plugin):
        plugin_dir = write_plugin("echo", ECHO_SOURCE)
        original = loader.load(plugin_dir)

        results = registry.reload_all(loader)

        assert results == {"echo": None}
        assert registry.get("echo") is not original
        assert original.unloaded


class TestPack:
    """Tests for pack_plugin and read_package_manifest."""

    def test_pack_and_inspect(self, write_plugin, tmp_path):
        plugin_dir = write_plugin("echo", ECHO_SOURCE, packages={"dep/__init__.py": "X = 1\n"})

        archive = pack_plugin(plugin_dir)

        assert archive.name == "echo-1.0.0.ai"
        with zipfile.ZipFile(archive) as zf:
            assert sorted(zf.namelist()) == ["packages/dep/__init__.py", "plugin.json", "plugin.py"]
        assert read_package_manifest(archive).name == "echo"

    def test_pack_rejects_invalid_manifest(self, write_plugin):
        plugin_dir = write_plugin("bad", ECHO_SOURCE, version="one")
        with pytest.raises(InvalidManifest):
            pack_plugin(plugin_dir)


class _ScriptedConnection:
    """Connection whose recv() replays values, exceptions or callables."""

    def __init__(self, *script):
        self.script = list(script)

    def recv(self):
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item()
        return item

    def close(self):
        pass


class TestReadLoop:
    """Host side of the worker pipe."""

    def test_unreadable_reply_does_not_stop_the_reader(self, tmp_path):
        module = ProcessPluginModule("broken", tmp_path / "plugin.py")
        first = concurrent.futures.Future()
        later = concurrent.futures.Future()
        module._pending[1] = first

        def second_call_reply():
            module._pending[2] = later
            return ("result", 2, "later")

        module._conn = _ScriptedConnection(
            ModuleNotFoundError("No module named 'plugin'"),
            second_call_reply,
            EOFError(),
        )
        module._closed = True

        module._read_loop()

        error = first.exception(timeout=0)
        assert isinstance(error, PluginCallError)
        assert error.error_type == MALFORMED_RESULT
        assert "No module named 'plugin'" in error.message
        assert later.result(timeout=0) == "later"
