"""Plugin loader - unpacks a package, validates it and starts its module."""
from __future__ import annotations

import json
import logging
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Callable, Mapping, Optional, Tuple

from aihost.plugins.errors import (
    InvalidArchive,
    InvalidManifest,
    MissingExport,
    ValidationError,
)
from aihost.plugins.isolation import REQUIRED_EXPORTS, PluginModule, ProcessPluginModule
from aihost.plugins.manifest import PluginManifest, validate_manifest
from aihost.plugins.registry import LoadedPlugin, PluginRegistry
from aihost.plugins.settings import Settings, resolve_settings

logger = logging.getLogger(__name__)

MANIFEST_FILE = "plugin.json"
ENTRY_MODULE = "plugin.py"
DEPENDENCY_DIR = "packages"
PACKAGE_SUFFIX = ".ai"

# (name, entry_file, search_paths) -> PluginModule
ModuleFactory = Callable[..., PluginModule]


class PluginLoader:
    """Turns a plugin package into a registered LoadedPlugin.

    Packages are either ``.ai`` zip archives or unpacked directories holding
    ``plugin.json``, ``plugin.py`` and an optional ``packages/`` directory with
    vendored dependencies.
    """

    def __init__(
        self,
        registry: PluginRegistry,
        extract_dir: Optional[Path] = None,
        start_timeout: float = 30.0,
        module_factory: Optional[ModuleFactory] = None,
        settings_provider: Optional[Callable[[str], Mapping[str, object]]] = None,
    ):
        self.registry = registry
        self.settings_provider = settings_provider
        self.extract_dir = Path(extract_dir) if extract_dir else Path(tempfile.gettempdir()) / "aihost-plugins"
        self.start_timeout = start_timeout
        self.module_factory = module_factory or self._process_module

    def load(self, package_path: Path, settings: Optional[Mapping[str, object]] = None) -> LoadedPlugin:
        """Load a plugin package and register it.

        An existing plugin with the same name is replaced only after the new
        one is fully started; the old one is then torn down.

        Args:
            package_path: ``.ai`` archive or plugin directory
            settings: User values to resolve against the manifest. Defaults to
                what settings_provider returns for the plugin name

        Returns:
            The registered LoadedPlugin

        Raises:
            LoadError: InvalidArchive, InvalidManifest, ModuleFailed or MissingExport
        """
        package_path = Path(package_path)
        plugin_dir, workdir = self._unpack(package_path)

        try:
            manifest = self.read_manifest(plugin_dir, package_path)
            entry_file = plugin_dir / ENTRY_MODULE
            if not entry_file.is_file():
                raise InvalidArchive(f"Package has no {ENTRY_MODULE}", str(package_path))

            self._check_dependencies(manifest, plugin_dir)
            module = self.module_factory(
                manifest.name,
                entry_file,
                [plugin_dir / DEPENDENCY_DIR, plugin_dir],
            )
            module.start()
        except BaseException:
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)
            raise

        try:
            missing = [e for e in REQUIRED_EXPORTS if not module.has_export(e)]
            if missing:
                raise MissingExport(missing, str(package_path))

            if settings is None and self.settings_provider is not None:
                settings = self.settings_provider(manifest.name)

            plugin = LoadedPlugin(
                manifest=manifest,
                module=module,
                settings=self._initial_settings(manifest, settings),
                package_path=package_path,
                workdir=workdir,
            )
        except BaseException:
            module.close()
            if workdir is not None:
                shutil.rmtree(workdir, ignore_errors=True)
            raise

        previous = self.registry.register(plugin)
        if previous is not None and previous is not plugin:
            previous.close()

        logger.info(f"Loaded plugin: {manifest.name} {manifest.version} from {package_path}")
        return plugin

    @staticmethod
    def read_manifest(plugin_dir: Path, package_path: Optional[Path] = None) -> PluginManifest:
        """Read and validate plugin.json from an unpacked plugin directory.

        Raises:
            InvalidArchive: plugin.json is missing
            InvalidManifest: plugin.json is not valid JSON or fails validation
        """
        source = str(package_path or plugin_dir)
        manifest_file = plugin_dir / MANIFEST_FILE
        if not manifest_file.is_file():
            raise InvalidArchive(f"Package has no {MANIFEST_FILE}", source)

        try:
            with open(manifest_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidManifest(f"Invalid JSON in {MANIFEST_FILE}: {e}", source) from e

        try:
            return validate_manifest(data)
        except ValidationError as e:
            raise InvalidManifest(str(e), source) from e

    def _unpack(self, package_path: Path) -> Tuple[Path, Optional[Path]]:
        """Return (plugin_dir, owned_workdir). Directories are used in place."""
        if package_path.is_dir():
            return package_path, None
        if not package_path.is_file():
            raise InvalidArchive("Package not found", str(package_path))
        if package_path.suffix != PACKAGE_SUFFIX:
            logger.warning(f"Package {package_path} does not have the {PACKAGE_SUFFIX} extension")

        try:
            archive = zipfile.ZipFile(package_path)
        except zipfile.BadZipFile as e:
            raise InvalidArchive(f"Not a valid archive: {e}", str(package_path)) from e

        self.extract_dir.mkdir(parents=True, exist_ok=True)
        # fresh directory per load, the previous version may still be running
        workdir = Path(tempfile.mkdtemp(prefix=f"{package_path.stem}-", dir=self.extract_dir))
        try:
            with archive:
                for member in archive.namelist():
                    parts = PurePosixPath(member).parts
                    if member.startswith(("/", "\\")) or ".." in parts:
                        raise InvalidArchive(f"Unsafe archive member '{member}'", str(package_path))
                archive.extractall(workdir)
        except BaseException:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

        return self._find_root(workdir), workdir

    @staticmethod
    def _find_root(workdir: Path) -> Path:
        """Accept archives that wrap the plugin in a single top-level folder."""
        if (workdir / MANIFEST_FILE).exists():
            return workdir
        children = [p for p in workdir.iterdir() if not p.name.startswith(("__MACOSX", "."))]
        if len(children) == 1 and children[0].is_dir():
            return children[0]
        return workdir

    @staticmethod
    def _check_dependencies(manifest: PluginManifest, plugin_dir: Path) -> None:
        vendored = plugin_dir / DEPENDENCY_DIR
        for name, version_range in manifest.dependencies.items():
            if not (vendored / name).exists() and not (vendored / f"{name}.py").exists():
                logger.debug(
                    f"Plugin {manifest.name}: dependency {name} {version_range} "
                    f"not vendored, resolved from the worker's import path"
                )

    @staticmethod
    def _initial_settings(manifest: PluginManifest, values: Optional[Mapping[str, object]]) -> Settings:
        if not values:
            return Settings.empty(manifest)
        try:
            return resolve_settings(manifest, values)
        except ValidationError as e:
            logger.warning(
                f"Stored settings for plugin {manifest.name} do not match its manifest ({e}); "
                f"starting with all parameters unset"
            )
            return Settings.empty(manifest)

    def _process_module(self, name: str, entry_file: Path, search_paths) -> PluginModule:
        return ProcessPluginModule(
            name,
            entry_file,
            search_paths,
            start_timeout=self.start_timeout,
        )


def pack_plugin(source_dir: Path, dest: Optional[Path] = None) -> Path:
    """Write a plugin directory to a ``.ai`` archive.

    Args:
        source_dir: Directory with plugin.json and plugin.py
        dest: Archive path, defaults to ``<name>-<version>.ai`` next to source_dir

    Returns:
        Path of the written archive
    """
    source_dir = Path(source_dir)
    manifest = PluginLoader.read_manifest(source_dir)
    if not (source_dir / ENTRY_MODULE).is_file():
        raise InvalidArchive(f"Package has no {ENTRY_MODULE}", str(source_dir))

    if dest is None:
        dest = source_dir.parent / f"{manifest.name}-{manifest.version}{PACKAGE_SUFFIX}"
    dest = Path(dest)

    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path in sorted(source_dir.rglob("*")):
            if "__pycache__" in path.parts or not path.is_file():
                continue
            archive.write(path, path.relative_to(source_dir).as_posix())

    logger.info(f"Packed plugin {manifest.name} {manifest.version} to {dest}")
    return dest


def read_package_manifest(package_path: Path) -> PluginManifest:
    """Validate a package's manifest without starting its module."""
    package_path = Path(package_path)
    if package_path.is_dir():
        return PluginLoader.read_manifest(package_path)

    with tempfile.TemporaryDirectory(prefix="aihost-inspect-") as tmp:
        loader = PluginLoader(PluginRegistry(), extract_dir=Path(tmp))
        plugin_dir, _ = loader._unpack(package_path)
        return loader.read_manifest(plugin_dir, package_path)
