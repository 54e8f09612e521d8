"""Parameter resolver - turns user-entered values into plugin settings."""

from typing import Dict, Iterator, Mapping, Optional

from aihost.plugins.errors import InvalidSettingValue, UnrecognizedParameter
from aihost.plugins.manifest import PluginManifest


class Settings(Mapping[str, Optional[str]]):
    """Read-only mapping of parameter id -> value.

    Keys are exactly the manifest's parameter ids. Unset parameters map to
    ``None`` rather than being absent, so plugin code can default them.
    """

    def __init__(self, values: Mapping[str, Optional[str]]):
        self._values: Dict[str, Optional[str]] = dict(values)

    @classmethod
    def empty(cls, manifest: PluginManifest) -> "Settings":
        return cls({param_id: None for param_id in manifest.parameter_ids})

    def __getitem__(self, key: str) -> Optional[str]:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def is_set(self, key: str) -> bool:
        return self._values.get(key) is not None

    def to_dict(self) -> Dict[str, Optional[str]]:
        """Plain dict copy, as handed to plugin code."""
        return dict(self._values)

    def __repr__(self) -> str:
        # values may be secrets
        state = ", ".join(
            f"{k}={'set' if v is not None else 'unset'}" for k, v in self._values.items()
        )
        return f"Settings({state})"


def resolve_settings(
    manifest: PluginManifest, user_values: Optional[Mapping[str, object]] = None
) -> Settings:
    """Merge a manifest's declared parameters with user-entered values.

    Values are copied verbatim; per-type input checks belong to the UI.

    Raises:
        UnrecognizedParameter: user_values has keys the manifest does not declare
        InvalidSettingValue: a value is neither a string nor None
    """
    user_values = dict(user_values or {})

    unknown = set(user_values) - set(manifest.parameter_ids)
    if unknown:
        raise UnrecognizedParameter(unknown)

    resolved: Dict[str, Optional[str]] = {}
    for param in manifest.parameters:
        value = user_values.get(param.id)
        if value is not None and not isinstance(value, str):
            raise InvalidSettingValue(param.id, value)
        resolved[param.id] = value

    return Settings(resolved)
