"""Plugin host error hierarchy.

Three families, all rooted at ``PluginHostError``:

- ``ValidationError``: malformed manifest or settings. Always caller-fixable.
- ``LoadError``: archive, module-resolution or export-shape failures.
- ``InvocationError``: runtime failures while calling into plugin code.

None of them are retried by the host.
"""

from typing import Iterable, Optional


class PluginHostError(Exception):
    """Base class for every error raised by the plugin host."""


class PluginNotFound(PluginHostError):
    """No plugin with the given name is registered."""

    def __init__(self, plugin_name: str):
        self.plugin_name = plugin_name
        super().__init__(f"Plugin '{plugin_name}' not found")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(PluginHostError):
    """Manifest or settings do not match the expected shape."""


class ManifestError(ValidationError):
    """The metadata document is structurally invalid."""


class DuplicateParameterId(ValidationError):
    def __init__(self, parameter_id: str):
        self.parameter_id = parameter_id
        super().__init__(f"Duplicate parameter id '{parameter_id}'")


class UnknownParameterType(ValidationError):
    def __init__(self, parameter_id: str, parameter_type: object):
        self.parameter_id = parameter_id
        self.parameter_type = parameter_type
        super().__init__(
            f"Parameter '{parameter_id}' has unknown type {parameter_type!r}"
        )


class UnrecognizedParameter(ValidationError):
    """User values contain keys the manifest does not declare."""

    def __init__(self, keys: Iterable[str]):
        self.keys = sorted(keys)
        super().__init__(f"Unrecognized parameter(s): {', '.join(self.keys)}")


class InvalidSettingValue(ValidationError):
    def __init__(self, parameter_id: str, value: object):
        self.parameter_id = parameter_id
        super().__init__(
            f"Value for parameter '{parameter_id}' must be a string, "
            f"got {type(value).__name__}"
        )


class InvalidHistory(ValidationError):
    """Conversation history contains a malformed message."""


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class LoadError(PluginHostError):
    """A plugin package could not be loaded. The registry is left unchanged."""

    def __init__(self, message: str, package_path: Optional[str] = None):
        self.package_path = package_path
        if package_path:
            message = f"{message} ({package_path})"
        super().__init__(message)


class InvalidArchive(LoadError):
    pass


class InvalidManifest(LoadError):
    pass


class ModuleFailed(LoadError):
    pass


class MissingExport(LoadError):
    def __init__(self, exports: Iterable[str], package_path: Optional[str] = None):
        self.exports = sorted(exports)
        super().__init__(
            f"Entry module is missing required export(s): {', '.join(self.exports)}",
            package_path,
        )


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


class InvocationError(PluginHostError):
    """A call into plugin code failed.

    Attributes:
        plugin_name: Name of the plugin that was called
        operation: Contract function name (``prompt``, ``listModels``, ...)
        plugin_message: The plugin's own error text, if any
    """

    def __init__(
        self,
        plugin_name: str,
        operation: str,
        message: str,
        plugin_message: Optional[str] = None,
    ):
        self.plugin_name = plugin_name
        self.operation = operation
        self.plugin_message = plugin_message
        super().__init__(f"[{plugin_name}] {operation}: {message}")


class InvocationTimeout(InvocationError):
    def __init__(self, plugin_name: str, operation: str, timeout: float):
        self.timeout = timeout
        super().__init__(plugin_name, operation, f"timed out after {timeout:g}s")


class PluginError(InvocationError):
    """The plugin raised. ``plugin_message`` is its message, verbatim."""

    def __init__(
        self,
        plugin_name: str,
        operation: str,
        plugin_message: str,
        error_type: Optional[str] = None,
    ):
        self.error_type = error_type
        super().__init__(plugin_name, operation, plugin_message, plugin_message)


class MalformedResult(InvocationError):
    def __init__(self, plugin_name: str, operation: str, detail: str):
        super().__init__(plugin_name, operation, f"malformed result: {detail}")


class CatalogUnavailable(InvocationError):
    def __init__(self, plugin_name: str, operation: str, plugin_message: str):
        super().__init__(
            plugin_name,
            operation,
            f"model catalog unavailable: {plugin_message}",
            plugin_message,
        )


class PluginUnloaded(InvocationError):
    def __init__(self, plugin_name: str, operation: str = "call"):
        super().__init__(plugin_name, operation, "plugin has been unloaded")
