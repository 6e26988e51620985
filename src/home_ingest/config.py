"""Configuration management using pydantic-settings.

Values come from, in increasing priority: field defaults, the TOML config
file, environment variables, and finally explicit CLI flags (applied by the
CLI when it builds an ``ImportRequest``).
"""

import tomllib
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

DEFAULT_CONFIG_FILE = Path("home-ingest.toml")


class _FileBackedSettings(BaseSettings):
    """Settings whose keyword arguments carry config-file values."""

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment overrides the config file.
        return env_settings, init_settings


class InfluxDBSettings(_FileBackedSettings):
    """InfluxDB connection settings."""

    model_config = SettingsConfigDict(env_prefix="INFLUXDB_")

    url: str = Field(default="http://localhost:8086", description="InfluxDB URL")
    token: str = Field(default="", description="InfluxDB API token")
    org: str = Field(default="home", description="InfluxDB organization")
    bucket: str = Field(default="home_data", description="InfluxDB bucket")
    timeout_ms: int = Field(default=10_000, description="Request timeout in milliseconds")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate the URL has an HTTP scheme."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"InfluxDB URL must start with http:// or https://, got {v!r}")
        return v.rstrip("/")

    @field_validator("timeout_ms")
    @classmethod
    def validate_timeout(cls, v: int) -> int:
        """Validate timeout is reasonable."""
        if v < 100:
            raise ValueError(f"Timeout must be at least 100ms, got {v}")
        return v


class ImporterSettings(_FileBackedSettings):
    """Import pipeline defaults."""

    model_config = SettingsConfigDict(env_prefix="IMPORTER_")

    batch_size: int = Field(default=1000, description="Points per sink write")
    max_retries: int = Field(default=3, description="Write attempts per batch")
    retry_delay: float = Field(default=1.0, description="Base backoff between attempts (s)")
    csv_state_file: Path = Field(default=Path(".import_state.json"))
    health_state_file: Path = Field(default=Path(".health_import_state.json"))
    header_rows: int = Field(default=1, description="Stacked header rows in CSV sources")
    time_format: str | None = Field(default=None, description="strptime format for CSV times")
    weight_unit: str = Field(default="g", description="Unit of weight values in health exports")

    @field_validator("batch_size")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Validate batch size is reasonable."""
        if v < 1:
            raise ValueError(f"Batch size must be at least 1, got {v}")
        if v > 50000:
            raise ValueError(f"Batch size too large (max 50000), got {v}")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError(f"Max retries must be between 1 and 10, got {v}")
        return v

    @field_validator("header_rows")
    @classmethod
    def validate_header_rows(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"Header rows must be at least 1, got {v}")
        return v


class AppSettings(_FileBackedSettings):
    """Application settings."""

    model_config = SettingsConfigDict(env_prefix="APP_")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: json or console")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        normalized = v.upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log level '{v}'. Must be one of: {', '.join(VALID_LOG_LEVELS)}"
            )
        return normalized

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        """Validate log format is valid."""
        normalized = v.lower()
        if normalized not in ("json", "console"):
            raise ValueError(f"Invalid log format '{v}'. Must be 'json' or 'console'")
        return normalized


def read_config_file(path: Path | str) -> dict[str, Any]:
    """Read a TOML config file, returning an empty mapping when it is absent.

    Raises:
        ValueError: If the file exists but is not valid TOML.
    """
    path = Path(path)
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        return tomllib.load(f)


class Settings(BaseSettings):
    """Combined application settings."""

    influxdb: InfluxDBSettings = Field(default_factory=InfluxDBSettings)
    importer: ImporterSettings = Field(default_factory=ImporterSettings)
    app: AppSettings = Field(default_factory=AppSettings)

    @classmethod
    def load(cls, config_file: Path | str | None = None) -> "Settings":
        """Load settings from environment variables and an optional TOML file.

        Args:
            config_file: TOML file to read; defaults to ``home-ingest.toml`` in
                the working directory when it exists.
        """
        if config_file is not None and not Path(config_file).is_file():
            raise FileNotFoundError(f"Config file not found: {config_file}")
        data = read_config_file(config_file or DEFAULT_CONFIG_FILE)
        return cls(
            influxdb=InfluxDBSettings(**data.get("influxdb", {})),
            importer=ImporterSettings(**data.get("importer", {})),
            app=AppSettings(**data.get("app", {})),
        )


CONFIG_TEMPLATE = """\
# home-ingest configuration.
# Environment variables (INFLUXDB_*, IMPORTER_*, APP_*) override these values,
# and command line flags override both.

[influxdb]
url = "http://localhost:8086"
org = "home"
bucket = "home_data"
# token = "..."
timeout_ms = 10000

[importer]
batch_size = 1000
max_retries = 3
retry_delay = 1.0
csv_state_file = ".import_state.json"
health_state_file = ".health_import_state.json"
header_rows = 1
# time_format = "%Y-%m-%d %H:%M:%S"
weight_unit = "g"

[app]
log_level = "INFO"
log_format = "console"
"""


def write_config_template(path: Path | str, overwrite: bool = False) -> Path:
    """Write a commented configuration template.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is false.
    """
    target = Path(path)
    if target.exists() and not overwrite:
        raise FileExistsError(f"Refusing to overwrite existing file: {target}")
    target.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    return target
