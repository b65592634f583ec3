"""Session configuration loading and validation from YAML files."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from bluezctl.core.errors import ConfigLoadError, ConfigValidationError
from bluezctl.core.model import SessionConfig

CONFIG_ENV_VAR = "BLUEZCTL_CONFIG"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class LoadedConfig:
    config: SessionConfig
    sources: tuple[str, ...]
    warnings: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("bluezctl.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def user_config_path() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "bluezctl/config.yaml"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _validate(doc: dict[str, Any], source: Path | Traversable) -> dict[str, Any]:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc
    return doc


def _build_config(merged: dict[str, Any]) -> SessionConfig:
    known = {f.name for f in fields(SessionConfig)}
    values = {key: value for key, value in merged.items() if key in known}
    for key in ("call_timeout_s", "connect_timeout_s", "orphan_staleness_s"):
        if key in values:
            values[key] = float(values[key])
    return SessionConfig(**values)


def load_config(path: str | Path | None = None) -> LoadedConfig:
    """Merge packaged defaults, the user file and an explicit override.

    ``path`` wins over ``$BLUEZCTL_CONFIG``. A missing explicit path is an
    error, while a missing environment-named file only produces a warning.
    """
    merged: dict[str, Any] = {}
    sources: list[str] = []
    warnings: list[str] = []

    defaults = resources.files("bluezctl.defaults").joinpath("config.yaml")
    merged.update(_validate(_read_yaml(defaults), defaults))
    sources.append("defaults")

    user_path = user_config_path()
    if user_path.is_file():
        merged.update(_validate(_read_yaml(user_path), user_path))
        sources.append(str(user_path))

    override: Path | None = None
    if path is not None:
        override = Path(path)
        if not override.is_file():
            raise ConfigLoadError(f"Config file {override} does not exist")
    elif os.environ.get(CONFIG_ENV_VAR):
        override = Path(os.environ[CONFIG_ENV_VAR])
        if not override.is_file():
            warning = f"{CONFIG_ENV_VAR} points at missing file {override}; ignoring it"
            LOGGER.warning(warning)
            warnings.append(warning)
            override = None

    if override is not None:
        merged.update(_validate(_read_yaml(override), override))
        sources.append(str(override))

    return LoadedConfig(config=_build_config(merged), sources=tuple(sources), warnings=tuple(warnings))
