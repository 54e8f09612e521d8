"""Plugin manifest model - describes a plugin's identity and parameters."""

import re
from enum import Enum
from typing import Any, Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from aihost.plugins.errors import (
    DuplicateParameterId,
    ManifestError,
    UnknownParameterType,
)

# MAJOR.MINOR.PATCH with optional -prerelease and +build metadata
SEMVER_PATTERN = re.compile(
    r"^[0-9]+\.[0-9]+\.[0-9]+"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


class ParameterType(str, Enum):
    """Input types a plugin parameter may declare."""

    PASSWORD = "password"
    TEXT = "text"
    EMAIL = "email"
    NUMBER = "number"
    TEL = "tel"
    URL = "url"


class ParameterSpec(BaseModel):
    """A user-configurable parameter declared by a plugin."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Settings key")
    name: str = Field(..., description="Display label")
    description: str = Field(default="", description="Help text")
    type: ParameterType = Field(..., description="Input type")


class PluginManifest(BaseModel):
    """Plugin manifest loaded from plugin.json."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique plugin name, used as registry key")
    author: str = Field(..., description="Plugin author")
    version: str = Field(..., description="Semantic version")
    description: str = Field(default="", description="Plugin description")
    dependencies: Dict[str, str] = Field(
        default_factory=dict,
        description="Package name -> version range, vendored under packages/",
    )
    parameters: Tuple[ParameterSpec, ...] = Field(
        default=(),
        description="Ordered parameter declarations",
    )

    @field_validator("name", "author", "version")
    @classmethod
    def not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("version")
    @classmethod
    def version_is_semver(cls, v: str) -> str:
        if not SEMVER_PATTERN.match(v):
            raise ValueError(f"'{v}' is not a semantic version")
        return v

    @model_validator(mode="after")
    def parameter_ids_unique(self):
        ids = [p.id for p in self.parameters]
        if len(ids) != len(set(ids)):
            raise ValueError("parameter ids must be unique")
        return self

    @property
    def parameter_ids(self) -> Tuple[str, ...]:
        return tuple(p.id for p in self.parameters)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


_PARAMETER_TYPES = {t.value for t in ParameterType}


def validate_manifest(raw: Any) -> PluginManifest:
    """Validate a raw metadata document.

    Args:
        raw: Parsed plugin.json content

    Returns:
        Immutable PluginManifest

    Raises:
        DuplicateParameterId: Two parameters share an id
        UnknownParameterType: A parameter type is outside ParameterType
        ManifestError: Any other structural problem
    """
    if not isinstance(raw, dict):
        raise ManifestError("Manifest must be a JSON object")

    parameters = raw.get("parameters")
    if parameters is not None:
        if not isinstance(parameters, list):
            raise ManifestError("'parameters' must be a list")
        seen = set()
        for index, param in enumerate(parameters):
            if not isinstance(param, dict):
                raise ManifestError(f"parameters[{index}] must be an object")
            param_id = param.get("id")
            if isinstance(param_id, str):
                if param_id in seen:
                    raise DuplicateParameterId(param_id)
                seen.add(param_id)
            param_type = param.get("type")
            if param_type is not None and (
                not isinstance(param_type, str) or param_type not in _PARAMETER_TYPES
            ):
                raise UnknownParameterType(str(param_id), param_type)

    try:
        return PluginManifest.model_validate(raw)
    except PydanticValidationError as e:
        raise ManifestError(_describe(e)) from e


def _describe(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item["loc"]) or "manifest"
        parts.append(f"{location}: {item['msg']}")
    return "Invalid manifest: " + "; ".join(parts)
