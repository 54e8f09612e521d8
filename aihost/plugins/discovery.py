"""Plugin discovery - finds candidate plugin packages on disk."""

import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, ValidationError

from aihost.plugins.loader import MANIFEST_FILE, PACKAGE_SUFFIX

logger = logging.getLogger(__name__)


class RegistryEntry(BaseModel):
    """One published plugin listed in the community registry file."""

    name: str
    author: str = ""
    description: str = ""
    version: str = ""
    filename: str = Field(..., min_length=1)


class PluginDiscovery:
    """Discovers plugin packages in a plugins directory.

    Candidates come from two sources, in this order:
      1. filenames listed in the registry file (if configured)
      2. ``*.ai`` archives and unpacked plugin directories in plugins_dir
    """

    def __init__(self, plugins_dir: Path, registry_file: Optional[Path] = None):
        self.plugins_dir = Path(plugins_dir)
        self.registry_file = Path(registry_file) if registry_file else None

    def discover_all(self) -> List[Path]:
        """Discover all candidate packages.

        Returns:
            Package paths, first-found wins on duplicates
        """
        discovered = []
        seen = set()

        if not self.plugins_dir.exists():
            logger.debug(f"Plugin directory does not exist: {self.plugins_dir}")
            return discovered

        for path in self._from_registry_file() + self._scan_directory():
            key = path.resolve()
            if key in seen:
                continue
            seen.add(key)
            discovered.append(path)

        logger.info(f"Discovered {len(discovered)} plugin package(s) in {self.plugins_dir}")
        return discovered

    def read_registry(self) -> List[RegistryEntry]:
        """Read the registry file.

        Accepts a JSON list of entries or an object with a "plugins" list.
        Invalid entries are skipped.
        """
        if self.registry_file is None or not self.registry_file.exists():
            return []

        try:
            with open(self.registry_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Error loading plugin registry file {self.registry_file}: {e}")
            return []

        if isinstance(data, dict):
            data = data.get("plugins", [])
        if not isinstance(data, list):
            logger.error(f"Plugin registry file {self.registry_file} must contain a list")
            return []

        entries = []
        for item in data:
            try:
                entries.append(RegistryEntry.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping invalid registry entry {item!r}: {e}")
        return entries

    def _from_registry_file(self) -> List[Path]:
        paths = []
        for entry in self.read_registry():
            path = self.plugins_dir / entry.filename
            if not path.exists():
                logger.warning(f"Registry lists '{entry.name}' as {entry.filename}, but it is not installed")
                continue
            paths.append(path)
        return paths

    def _scan_directory(self) -> List[Path]:
        paths = []
        for item in sorted(self.plugins_dir.iterdir()):
            if item.is_file() and item.suffix == PACKAGE_SUFFIX:
                paths.append(item)
            elif item.is_dir() and (item / MANIFEST_FILE).exists():
                paths.append(item)
        return paths
