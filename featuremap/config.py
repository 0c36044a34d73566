"""featuremap configuration.

Process settings come from environment variables. Project settings (domains,
source directories) come from a YAML file and are passed explicitly to the
scanner and validator.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("featuremap")


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Project root (the repository whose features are tracked)
PROJECT_ROOT = Path(os.getenv("FEATUREMAP_PROJECT_ROOT", os.getcwd())).resolve()

# Database
DB_PATH = Path(os.getenv("FEATUREMAP_DB_PATH", str(PROJECT_ROOT / ".featuremap" / "registry.db")))
CONFIG_PATH = Path(os.getenv("FEATUREMAP_CONFIG_PATH", str(PROJECT_ROOT / "featuremap.yaml")))

# Query tuning
SEARCH_LIMIT = _env_int("FEATUREMAP_SEARCH_LIMIT", 100)
CHANGELOG_LIMIT = _env_int("FEATUREMAP_CHANGELOG_LIMIT", 50)

# Scanner
SCAN_CLEAR_BEFORE = _env_bool("FEATUREMAP_SCAN_CLEAR_BEFORE", False)

# Server settings
HOST = os.getenv("FEATUREMAP_HOST", "127.0.0.1")
PORT = _env_int("FEATUREMAP_PORT", 8100)


class ConfigError(Exception):
    """Raised when the project configuration file cannot be parsed."""


class DomainConfig(BaseModel):
    name: str = "Unknown"
    routers: list[str] = Field(default_factory=list)
    pages: list[str] = Field(default_factory=list)


class RegistryConfig(BaseModel):
    domains: list[DomainConfig] = Field(default_factory=list)
    components_dir: str = "src/components"
    app_dir: str = "src/app"


def load_registry_config(path: Path | None = None) -> RegistryConfig:
    """Load the project configuration, falling back to defaults when absent."""
    config_path = Path(path) if path is not None else CONFIG_PATH
    if not config_path.exists():
        logger.info(f"No project config at {config_path}; using defaults")
        return RegistryConfig()

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping at the top of {config_path}")

    paths = raw.get("paths") or {}
    data = {
        "domains": raw.get("domains") or [],
        "components_dir": raw.get("components_dir") or paths.get("components") or "src/components",
        "app_dir": raw.get("app_dir") or paths.get("app") or "src/app",
    }
    try:
        return RegistryConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid project config in {config_path}: {exc}") from exc
