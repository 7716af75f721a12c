"""Configuration loading, validation, and access."""

from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from market_mirror.core.exceptions import ConfigError

# Option keys recognized in the import configuration's "options" mapping
MAX_PARALLELIZATION = "Max Parallelization"
IMPORT_FILE_LOCATION = "Import File Location"
IMPORT_FILE_PREFIXES = "Import File Prefixes"
YEARS_OF_DATA = "Years of Data"

POLYGON_SOURCE = "polygon.io"


def _config_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


def split_tokens(value: str | None) -> list[str]:
    """Split a comma-separated config value, trimming and dropping blanks."""
    if value is None or not value.strip():
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


class ProviderConfig(BaseModel):
    """Remote provider endpoints and HTTP behaviour."""

    model_config = ConfigDict(frozen=True)

    base_url: str = "https://api.polygon.io"
    flat_files_endpoint: str = "https://files.polygon.io/"
    flat_files_bucket: str = "flatfiles"
    rate_limit: int = 5
    request_timeout: int = 30
    max_pages: int | None = None

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("rate_limit")
    @classmethod
    def rate_limit_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("rate_limit must be >= 1")
        return v

    @field_validator("max_pages")
    @classmethod
    def max_pages_positive(cls, v: int | None) -> int | None:
        if v is not None and v < 1:
            raise ValueError("max_pages must be >= 1 when set")
        return v


class StorageConfig(BaseModel):
    """SQLite storage configuration."""

    model_config = ConfigDict(frozen=True)

    sqlite_path: str = "./data/market_mirror.db"


class ImportConfig(BaseModel):
    """What to import and how.

    ``actions`` maps action names to comma-separated detail strings, e.g.
    ``{"Tickers": "stocks", "Splits": "stocks", "Purge": "false"}``.
    ``options`` holds the free-form option mapping whose recognised keys are
    exposed through the typed properties below.
    """

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    source: str = POLYGON_SOURCE
    api_key: str
    access_key: str = ""
    actions: dict[str, str] = Field(default_factory=dict)
    import_file_prefixes: list[str] = Field(default_factory=list)
    options: dict[str, str] = Field(default_factory=dict)

    @field_validator("api_key")
    @classmethod
    def api_key_present(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("api_key must not be empty")
        return v.strip()

    @field_validator("actions", "options", mode="before")
    @classmethod
    def stringify_values(cls, v: object) -> object:
        # YAML turns "false" and "5" into bool/int; keep the raw text form
        if isinstance(v, dict):
            return {str(k).strip(): _config_text(val) for k, val in v.items()}
        return v

    def option_values(self, key: str) -> list[str]:
        return split_tokens(self.options.get(key))

    @property
    def max_parallelization(self) -> int:
        """Concurrency ceiling; absent or unparseable means sequential."""
        values = self.option_values(MAX_PARALLELIZATION)
        if not values:
            return 1
        try:
            return max(int(values[0]), 0)
        except ValueError:
            return 1

    @property
    def import_file_location(self) -> Path | None:
        values = self.option_values(IMPORT_FILE_LOCATION)
        return Path(values[0]) if values else None

    @property
    def file_prefixes(self) -> list[str]:
        """Flat-file prefixes: the dedicated list first, then the option."""
        if self.import_file_prefixes:
            return [p.strip() for p in self.import_file_prefixes if p.strip()]
        return self.option_values(IMPORT_FILE_PREFIXES)

    @property
    def years_offset(self) -> int:
        """Retention window as a non-positive year offset from today."""
        values = self.option_values(YEARS_OF_DATA)
        if not values:
            return 0
        try:
            return -abs(int(values[0]))
        except ValueError as e:
            raise ConfigError(
                f"{YEARS_OF_DATA} must be an integer, got {values[0]!r}",
                context={"field": YEARS_OF_DATA, "value": values[0]},
            ) from e


class MirrorConfig(BaseModel):
    """Root configuration for the entire market-mirror system."""

    model_config = ConfigDict(frozen=True)

    importer: ImportConfig
    provider: ProviderConfig = ProviderConfig()
    storage: StorageConfig = StorageConfig()


def load_config(
    config_path: str | None = None,
    env_prefix: str = "MARKET_MIRROR_",
) -> MirrorConfig:
    """Load configuration from environment + YAML file + defaults.

    Resolution order (highest priority first):
    1. Environment variables (MARKET_MIRROR_IMPORTER__API_KEY, etc.)
    2. YAML file at config_path
    3. Built-in defaults

    Nested keys use double-underscore in env vars:
        MARKET_MIRROR_PROVIDER__RATE_LIMIT=5  ->  provider.rate_limit = 5
    """
    try:
        yaml_path = _resolve_config_path(config_path)
        base: dict = {}
        if yaml_path is not None:
            base = _load_yaml(yaml_path)

        merged = _merge_env_vars(base, env_prefix)
        return MirrorConfig.model_validate(merged)
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(str(e), context={"source": "load_config"}) from e


def _resolve_config_path(explicit: str | None) -> Path | None:
    """Determine config file path."""
    if explicit is not None:
        p = Path(explicit)
        if not p.exists():
            raise ConfigError(
                f"Config file not found: {explicit}",
                context={"field": "config_path", "value": explicit},
            )
        return p

    env_path = os.environ.get("MARKET_MIRROR_CONFIG")
    if env_path:
        p = Path(env_path)
        if not p.exists():
            raise ConfigError(
                f"Config file from MARKET_MIRROR_CONFIG not found: {env_path}",
                context={"field": "MARKET_MIRROR_CONFIG", "value": env_path},
            )
        return p

    default = Path("market-mirror.yml")
    if default.exists():
        return default

    return None


def _load_yaml(path: Path) -> dict:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"YAML config must be a mapping, got {type(data).__name__}",
                context={"field": "config_file", "value": str(path)},
            )
        return data
    except yaml.YAMLError as e:
        raise ConfigError(
            f"Failed to parse YAML config: {e}",
            context={"field": "config_file", "value": str(path)},
        ) from e


def _merge_env_vars(base: dict, prefix: str) -> dict:
    """Overlay environment variables onto base config dict.

    Double-underscore separates nesting levels. Keys inside the free-form
    ``actions`` and ``options`` mappings keep their configured spelling, so
    those are better set in YAML.
    """
    result = dict(base)

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        remainder = key[len(prefix) :]
        parts = [p.lower() for p in remainder.split("__")]

        if parts == ["config"]:
            continue

        cast_value = _auto_cast(value)

        target = result
        for part in parts[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            else:
                target[part] = dict(target[part])
            target = target[part]
        target[parts[-1]] = cast_value

    return result


def _auto_cast(value: str) -> str | int | float | bool:
    """Auto-cast string values from environment variables."""
    if value.lower() == "true":
        return True
    if value.lower() == "false":
        return False
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value
