"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./shipdesk.yaml (working directory)
3. ~/.shipdesk/config.yaml (user home)

Environment variables override YAML: SHIPDESK_<SECTION>_<KEY>
(e.g. SHIPDESK_API_BASE_URL, SHIPDESK_BATCH_CONCURRENCY).
${VAR} references in YAML values resolve from environment at load time.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from shipdesk.services.carrier_models import Address

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

ENV_PREFIX = "SHIPDESK_"


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class ApiConfig(BaseModel):
    """Storefront API connection and resilience settings."""

    base_url: str = "http://localhost:5000/api"
    access_token: str = ""
    refresh_token: str | None = None
    timeout: float = 20.0
    max_retries: int = Field(default=1, ge=0)
    base_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    refresh_margin_seconds: float = Field(default=300, ge=0)


class BatchConfig(BaseModel):
    """Batch label defaults."""

    concurrency: int = Field(default=5, ge=1)
    default_carrier: str = "UPS"
    default_service: str = "UPS Ground"
    default_package_type: str = "Package"
    default_signature: Literal["required", "not_required", "adult"] = "not_required"
    default_status: str = "Processing"
    labels_dir: str = "~/.shipdesk/labels"

    @field_validator("default_carrier")
    @classmethod
    def _upper_carrier(cls, value: str) -> str:
        return value.strip().upper()


class ShipFromConfig(BaseModel):
    """Warehouse address every label ships from."""

    name: str = "SmartBlinds Inc."
    company: str | None = "SmartBlinds Inc."
    street1: str = "123 Warehouse Dr"
    street2: str | None = None
    city: str = "Indianapolis"
    state_code: str = "IN"
    postal_code: str = "46201"
    country_code: str = "US"
    phone: str | None = "800-555-1234"

    def to_address(self) -> Address:
        return Address(**self.model_dump())


class DatabaseConfig(BaseModel):
    """Database location. DATABASE_URL and SHIPDESK_DB_PATH take precedence."""

    url: str | None = None


class LoggingConfig(BaseModel):
    """Logging output."""

    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    file: str | None = None


class ShipDeskConfig(BaseModel):
    """Top-level ShipDesk configuration."""

    api: ApiConfig = ApiConfig()
    batch: BatchConfig = BatchConfig()
    ship_from: ShipFromConfig = ShipFromConfig()
    database: DatabaseConfig = DatabaseConfig()
    logging: LoggingConfig = LoggingConfig()


def _find_config_file() -> Path | None:
    """Search for config file in standard locations."""
    candidates = [
        Path.cwd() / "shipdesk.yaml",
        Path.cwd() / "shipdesk.yml",
        Path.home() / ".shipdesk" / "config.yaml",
        Path.home() / ".shipdesk" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _coerce(section: str, field: str, value: str) -> Any:
    """Convert an env var string to the type of the target field."""
    model = ShipDeskConfig.model_fields[section].annotation
    field_info = model.model_fields.get(field)
    annotation = field_info.annotation if field_info is not None else str
    if annotation is bool:
        return value.strip().lower() in ("1", "true", "yes", "on")
    if annotation is int:
        return int(value)
    if annotation is float:
        return float(value)
    return value


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply SHIPDESK_<SECTION>_<KEY> env var overrides to config data.

    Matches section names by longest prefix so ``ship_from`` wins over a
    hypothetical ``ship`` section.
    """
    known_sections = sorted(ShipDeskConfig.model_fields.keys(), key=len, reverse=True)
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        section_data = data.setdefault(matched_section, {})
        if not isinstance(section_data, dict):
            continue
        try:
            section_data[matched_field] = _coerce(matched_section, matched_field, value)
        except ValueError:
            raise ValueError(f"Invalid value for {key}: {value!r}") from None
    return data


def load_config(config_path: str | None = None) -> ShipDeskConfig:
    """Load ShipDesk configuration.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.shipdesk/).

    Returns:
        Validated ShipDeskConfig. Defaults plus env overrides when no
        file is found.

    Raises:
        FileNotFoundError: ``config_path`` does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return ShipDeskConfig(**data)


def configure_logging(config: LoggingConfig) -> None:
    """Configure root logging once from config."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=config.format,
        handlers=handlers,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
