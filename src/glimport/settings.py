"""Import configuration and YAML settings loading."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from glimport.errors import SettingsError


class ShaderSettings(BaseModel):
    """Shader names assigned to resolved materials.

    Passed explicitly into the material stage; nothing is cached globally.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    metallic: str = "standard/metallic"
    metallic_blend: str = "standard/metallic-blend"
    specular: str = "standard/specular"
    specular_blend: str = "standard/specular-blend"
    unlit: str = "standard/unlit"

    def select(self, *, specular: bool, blend: bool, unlit: bool = False) -> str:
        if unlit:
            return self.unlit
        if specular:
            return self.specular_blend if blend else self.specular
        return self.metallic_blend if blend else self.metallic


class ImportSettings(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    enable_materials: bool = True
    shader_override_set: ShaderSettings = Field(default_factory=ShaderSettings)
    use_legacy_animation_clips: bool = False
    treat_input_as_local_file: bool = True
    resolve_relative_paths: bool = True
    request_headers: dict[str, str] = Field(default_factory=dict)
    max_workers: int = Field(default=4, ge=1)


def load_settings(source: str | Path) -> ImportSettings:
    """Load ImportSettings from a YAML file path or YAML text.

    Keys may use either the camelCase option names or snake_case.

    Raises:
        SettingsError: On unreadable files, YAML errors, duplicate keys or
            schema violations.
    """
    if isinstance(source, Path):
        try:
            text = source.read_text(encoding="utf-8")
        except OSError as e:
            raise SettingsError(f"Cannot read settings file: {e}") from e
    else:
        text = source

    yml = YAML(typ="safe")
    yml.allow_duplicate_keys = False
    try:
        data = yml.load(text)
    except YAMLError as e:
        raise SettingsError(f"Invalid YAML in settings: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise SettingsError("Settings top-level YAML value must be a mapping")

    try:
        return ImportSettings.model_validate(data)
    except PydanticValidationError as e:
        raise SettingsError(f"Settings schema validation failed:\n{e}") from e
