import os
import re
from pathlib import Path
from typing import Callable, Optional, Type, TypeVar

import structlog
import yaml
from pydantic import BaseModel

from laneledger.config.schema import ProjectConfig
from laneledger.constants import CONFIG_FILE_NAME, STALE_LOCK_THRESHOLD_ENV

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)


def expand_env_vars(config: object) -> object:
    """Recursively replace ${VAR} patterns with environment variable values."""
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def _warn_unknown_keys(model: BaseModel, path: str, config_path: Path) -> None:
    """Recursively warn about unknown keys in a model and its nested models."""
    if model.model_extra:
        logger.warning("Unknown keys in %s at %s: %s", path, config_path, list(model.model_extra.keys()))

    for field_name, field_value in model.__dict__.items():
        if isinstance(field_value, BaseModel):
            _warn_unknown_keys(field_value, f"{path}.{field_name}", config_path)
        elif isinstance(field_value, list):
            for index, value in enumerate(field_value):
                if isinstance(value, BaseModel):
                    _warn_unknown_keys(value, f"{path}.{field_name}[{index}]", config_path)


def load_config(path: Path, model_class: Type[T]) -> T:
    """Load and validate configuration from a YAML file.

    A missing or unreadable file yields the model defaults; a readable file
    with invalid values raises pydantic's ValidationError.
    """
    if not path.exists():
        return model_class()

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read config file %s: %s", path, e)
        return model_class()

    model = model_class.model_validate(expand_env_vars(raw))
    _warn_unknown_keys(model, "root", path)
    return model


def load_project_config(root: Path) -> ProjectConfig:
    """Load `.laneledger.yaml` from a project root, applying environment overrides."""
    config = load_config(root / CONFIG_FILE_NAME, ProjectConfig)
    override = os.getenv(STALE_LOCK_THRESHOLD_ENV)
    if override:
        try:
            hours = float(override)
        except ValueError:
            logger.warning("Ignoring %s=%r: not a number", STALE_LOCK_THRESHOLD_ENV, override)
        else:
            if hours > 0:
                config.locks.stale_threshold_hours = hours
    return config


class ConfigCache:
    """Explicit, injectable cache around project configuration loading."""

    def __init__(self, root: Path, loader: Callable[[Path], ProjectConfig] = load_project_config) -> None:
        self._root = root
        self._loader = loader
        self._config: Optional[ProjectConfig] = None

    @property
    def root(self) -> Path:
        return self._root

    def get(self) -> ProjectConfig:
        if self._config is None:
            self._config = self._loader(self._root)
        return self._config

    def clear(self) -> None:
        self._config = None

    def reload(self) -> ProjectConfig:
        self.clear()
        return self.get()
