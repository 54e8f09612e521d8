"""Plugin isolation - runs each plugin's entry module in its own worker process.

The host only ever talks to a ``PluginModule``. ``ProcessPluginModule`` is the
implementation used in production: one spawned interpreter per loaded plugin,
so a plugin's top-level crash, global mutation or vendored dependency
versions never reach the host or another plugin.

Wire protocol (tuples over a multiprocessing pipe):

    host -> worker   ("call", call_id, export, args)
                     ("cancel", call_id)
                     ("shutdown",)
    worker -> host   ("loaded", [export, ...])
                     ("load_failed", message)
                     ("result", call_id, value)
                     ("error", call_id, error_type, message)
                     ("cancelled", call_id)
"""
from __future__ import annotations

import asyncio
import concurrent.futures
import importlib.util
import inspect
import itertools
import logging
import multiprocessing
import sys
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from aihost.plugins.errors import ModuleFailed, PluginUnloaded

logger = logging.getLogger(__name__)

# Canonical export name -> attribute names accepted on the entry module
EXPORT_ALIASES: Dict[str, Sequence[str]] = {
    "prompt": ("prompt",),
    "list_models": ("list_models", "listModels"),
    "get_default_model_id": ("get_default_model_id", "getDefaultModuleID", "getDefaultModelID"),
}
REQUIRED_EXPORTS = ("prompt", "list_models")

# error_type reported when a plugin returns something that cannot cross the pipe
MALFORMED_RESULT = "MalformedResult"


class PluginCallError(Exception):
    """Plugin code raised inside the worker."""

    def __init__(self, error_type: str, message: str):
        self.error_type = error_type
        self.message = message
        super().__init__(f"{error_type}: {message}")


class IsolationFailure(Exception):
    """The isolation context itself failed (worker died, pipe broke)."""


class PluginModule(ABC):
    """Capability interface for a loaded plugin's entry module."""

    name: str

    @property
    @abstractmethod
    def exports(self) -> FrozenSet[str]:
        """Canonical names of the contract functions the module provides."""

    def has_export(self, export: str) -> bool:
        return export in self.exports

    @property
    @abstractmethod
    def closed(self) -> bool: ...

    @abstractmethod
    def start(self) -> None:
        """Instantiate the module. Raises ModuleFailed on failure."""

    @abstractmethod
    async def call(self, export: str, *args: Any, timeout: Optional[float] = None) -> Any:
        """Call an exported function.

        Raises:
            asyncio.TimeoutError: timeout elapsed; the call is cancelled
            PluginCallError: the plugin raised
            IsolationFailure: the isolation context broke down
            PluginUnloaded: the module was closed
        """

    @abstractmethod
    def close(self) -> None:
        """Tear down the isolation context. Safe to call twice."""


class ProcessPluginModule(PluginModule):
    """Runs a plugin's entry module in a dedicated spawned process."""

    def __init__(
        self,
        name: str,
        entry_file: Path,
        search_paths: Sequence[Path] = (),
        start_timeout: float = 30.0,
        close_timeout: float = 5.0,
    ):
        self.name = name
        self.entry_file = Path(entry_file)
        self.search_paths = [str(p) for p in search_paths]
        self.start_timeout = start_timeout
        self.close_timeout = close_timeout

        self._ctx = multiprocessing.get_context("spawn")
        self._process = None
        self._conn = None
        self._reader: Optional[threading.Thread] = None
        self._exports: FrozenSet[str] = frozenset()
        self._pending: Dict[int, concurrent.futures.Future] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._closed = False

    @property
    def exports(self) -> FrozenSet[str]:
        return self._exports

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        parent_conn, child_conn = self._ctx.Pipe(duplex=True)
        self._process = self._ctx.Process(
            target=_worker_main,
            args=(child_conn, str(self.entry_file), self.search_paths),
            name=f"plugin-{self.name}",
            daemon=True,
        )
        self._process.start()
        child_conn.close()
        self._conn = parent_conn

        try:
            if not parent_conn.poll(self.start_timeout):
                raise ModuleFailed(
                    f"Plugin '{self.name}' did not finish loading within {self.start_timeout:g}s"
                )
            message = parent_conn.recv()
        except EOFError:
            self._process.join(self.close_timeout)
            self._teardown()
            raise ModuleFailed(
                f"Plugin '{self.name}' worker exited during load "
                f"(exit code {self._process.exitcode})"
            )
        except ModuleFailed:
            self._teardown()
            raise

        if message[0] == "load_failed":
            self._process.join(self.close_timeout)
            self._teardown()
            raise ModuleFailed(f"Plugin '{self.name}' failed to load: {message[1]}")

        self._exports = frozenset(message[1])
        self._reader = threading.Thread(
            target=self._read_loop, name=f"plugin-{self.name}-reader", daemon=True
        )
        self._reader.start()
        logger.debug(f"Worker for plugin '{self.name}' started (pid {self._process.pid})")

    async def call(self, export: str, *args: Any, timeout: Optional[float] = None) -> Any:
        future: concurrent.futures.Future = concurrent.futures.Future()
        with self._lock:
            if self._closed:
                raise PluginUnloaded(self.name, export)
            call_id = next(self._ids)
            self._pending[call_id] = future
            try:
                self._conn.send(("call", call_id, export, list(args)))
            except (OSError, ValueError) as e:
                self._pending.pop(call_id, None)
                raise IsolationFailure(f"Cannot reach plugin worker: {e}") from e

        try:
            return await asyncio.wait_for(asyncio.wrap_future(future), timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            self._cancel(call_id)
            raise

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._process is None:
                return
            try:
                self._conn.send(("shutdown",))
            except (OSError, ValueError):
                pass

        self._process.join(self.close_timeout)
        if self._process.is_alive():
            logger.warning(f"Worker for plugin '{self.name}' did not exit, terminating")
            self._process.terminate()
            self._process.join(self.close_timeout)

        if self._reader is not None:
            self._reader.join(self.close_timeout)
        self._teardown()
        self._fail_pending(lambda: PluginUnloaded(self.name))
        logger.debug(f"Worker for plugin '{self.name}' stopped")

    def _cancel(self, call_id: int) -> None:
        with self._lock:
            self._pending.pop(call_id, None)
            if self._closed:
                return
            try:
                self._conn.send(("cancel", call_id))
            except (OSError, ValueError) as e:
                logger.debug(f"Could not send cancel to plugin '{self.name}': {e}")

    def _read_loop(self) -> None:
        while True:
            try:
                message = self._conn.recv()
            except (EOFError, OSError):
                break
            except Exception as e:
                # the frame was consumed, so the stream is still usable
                detail = f"unreadable reply from worker: {type(e).__name__}: {e}"
                logger.error(f"Plugin '{self.name}': {detail}")
                self._fail_pending(lambda: PluginCallError(MALFORMED_RESULT, detail))
                continue

            kind, call_id = message[0], message[1]
            with self._lock:
                future = self._pending.pop(call_id, None)
            if future is None:
                continue

            try:
                if kind == "result":
                    future.set_result(message[2])
                elif kind == "error":
                    future.set_exception(PluginCallError(message[2], message[3]))
                elif kind == "cancelled":
                    future.cancel()
            except concurrent.futures.InvalidStateError:
                # caller already gave up on this call
                pass

        if not self._closed:
            self._process.join(self.close_timeout)
            exitcode = self._process.exitcode
            logger.error(f"Worker for plugin '{self.name}' exited unexpectedly (exit code {exitcode})")
            self._fail_pending(
                lambda: IsolationFailure(f"plugin process exited unexpectedly (exit code {exitcode})")
            )

    def _fail_pending(self, make_error) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            try:
                future.set_exception(make_error())
            except concurrent.futures.InvalidStateError:
                pass

    def _teardown(self) -> None:
        self._closed = True
        if self._conn is not None:
            self._conn.close()
        if self._process is not None and self._process.is_alive():
            self._process.terminate()


# ---------------------------------------------------------------------------
# Worker side (runs inside the spawned process)
# ---------------------------------------------------------------------------


def _worker_main(conn, entry_file: str, search_paths: List[str]) -> None:
    for path in reversed(search_paths):
        sys.path.insert(0, path)

    try:
        module = _import_entry(Path(entry_file))
    except BaseException as e:  # SystemExit/KeyboardInterrupt raised at plugin top level too
        conn.send(("load_failed", f"{type(e).__name__}: {e}"))
        conn.close()
        return

    exports = {}
    for export, attributes in EXPORT_ALIASES.items():
        for attribute in attributes:
            fn = getattr(module, attribute, None)
            if callable(fn):
                exports[export] = fn
                break

    conn.send(("loaded", sorted(exports)))
    try:
        asyncio.run(_serve(conn, exports))
    finally:
        conn.close()


def _import_entry(entry_file: Path):
    spec = importlib.util.spec_from_file_location("plugin", entry_file)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load entry module {entry_file}")
    module = importlib.util.module_from_spec(spec)
    sys.modules["plugin"] = module
    spec.loader.exec_module(module)
    return module


def _recv(conn):
    try:
        return conn.recv()
    except (EOFError, OSError):
        return None


async def _serve(conn, exports: Dict[str, Any]) -> None:
    loop = asyncio.get_running_loop()
    tasks: Dict[int, asyncio.Task] = {}
    # dedicated reader so blocking sync exports cannot starve incoming cancels
    receiver = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="plugin-recv")

    while True:
        message = await loop.run_in_executor(receiver, _recv, conn)
        if message is None or message[0] == "shutdown":
            break

        if message[0] == "call":
            _, call_id, export, args = message
            fn = exports.get(export)
            if fn is None:
                _send(conn, ("error", call_id, "AttributeError", f"plugin does not export '{export}'"))
                continue
            task = loop.create_task(_run_call(conn, call_id, fn, args))
            tasks[call_id] = task
            task.add_done_callback(lambda _t, c=call_id: tasks.pop(c, None))
        elif message[0] == "cancel":
            task = tasks.get(message[1])
            if task is not None:
                task.cancel()

    receiver.shutdown(wait=False)
    for task in list(tasks.values()):
        task.cancel()


async def _run_call(conn, call_id: int, fn, args) -> None:
    try:
        if inspect.iscoroutinefunction(fn):
            result = await fn(*args)
        else:
            result = await asyncio.to_thread(fn, *args)
            if inspect.isawaitable(result):
                result = await result
    except asyncio.CancelledError:
        _send(conn, ("cancelled", call_id))
        return
    except Exception as e:
        _send(conn, ("error", call_id, type(e).__name__, str(e) or type(e).__name__))
        return

    try:
        result = _plain(result)
    except Exception as e:
        _send(conn, ("error", call_id, MALFORMED_RESULT, str(e) or type(e).__name__))
        return
    _send(conn, ("result", call_id, result))


def _send(conn, message) -> None:
    try:
        conn.send(message)
    except (OSError, ValueError):
        # host side is gone; nothing left to report to
        pass


def _plain(value: Any, _path: FrozenSet[int] = frozenset()) -> Any:
    """Copy a result into builtin types only.

    Subclasses defined in plugin code would be pickled by reference to the
    ``plugin`` module, which the host cannot import, so they are converted
    to their builtin base. Anything else raises TypeError or ValueError.
    """
    if value is None or type(value) in (str, bool, int, float):
        return value
    if isinstance(value, str):
        return str.__str__(value)
    if isinstance(value, int):
        return int.__int__(value)
    if isinstance(value, float):
        return float.__float__(value)

    if isinstance(value, (list, tuple, dict)):
        if id(value) in _path:
            raise ValueError(f"result contains a reference cycle through {type(value).__name__}")
        path = _path | {id(value)}
        if isinstance(value, dict):
            plain = {}
            for key, item in dict.items(value):
                if not isinstance(key, str):
                    raise TypeError(f"result has a non-string key of type {type(key).__name__}")
                plain[str.__str__(key)] = _plain(item, path)
            return plain
        return [_plain(item, path) for item in value]

    raise TypeError(f"result of type {type(value).__name__} is not plain data")
