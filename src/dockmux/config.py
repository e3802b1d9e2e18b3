"""Configuration management for dockmux."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from dockmux.errors import EndpointConfigError

DEFAULT_COMMAND = ("node", "index.js")


class Settings(BaseSettings):
    """Process-wide settings."""

    model_config = SettingsConfigDict(
        env_prefix="DOCKMUX_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_path: Path = Field(default=Path("mcp-config.json"), description="Endpoint definition file")
    docker_bin: str = Field(default="docker", description="Container engine executable")

    request_timeout: float = Field(default=30.0, gt=0, description="Default JSON-RPC call timeout in seconds")
    health_interval: float = Field(default=30.0, gt=0, description="Seconds between health probes")
    health_timeout: float = Field(default=10.0, gt=0, description="Timeout of one health probe in seconds")

    reconnect_base_delay: float = Field(default=5.0, ge=0, description="First reconnect delay in seconds")
    reconnect_cap_delay: float = Field(default=60.0, ge=0, description="Upper bound of the reconnect delay")
    reconnect_max_attempts: int = Field(default=5, ge=1, description="Consecutive failures before giving up")

    protocol_version: str = Field(default="2024-11-05", description="Protocol version sent in the handshake")
    log_level: str = Field(default="INFO", description="Log level")


class ContainerSpec(BaseModel):
    """Where and how the backend process is attached."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    command: tuple[str, ...] = Field(default=DEFAULT_COMMAND, min_length=1)
    workdir: str | None = None


class HealthCheckSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    interval: float | None = Field(default=None, gt=0)
    timeout: float | None = Field(default=None, gt=0)


class EndpointConfig(BaseModel):
    """Immutable descriptor of one backend endpoint."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(min_length=1)
    capabilities: frozenset[str] = Field(default_factory=frozenset)
    container: ContainerSpec
    health_check: HealthCheckSpec = Field(default_factory=HealthCheckSpec, alias="healthCheck")
    request_timeout: float | None = Field(default=None, gt=0, alias="requestTimeout")

    def call_timeout(self, settings: Settings) -> float:
        return self.request_timeout or settings.request_timeout

    def probe_interval(self, settings: Settings) -> float:
        return self.health_check.interval or settings.health_interval

    def probe_timeout(self, settings: Settings) -> float:
        return self.health_check.timeout or settings.health_timeout


def get_settings(**overrides: Any) -> Settings:
    """Get application settings.

    Values come from ``DOCKMUX_*`` environment variables and ``.env``;
    keyword overrides win over both.
    """
    return Settings(**{key: value for key, value in overrides.items() if value is not None})


def load_endpoints(path: Path) -> list[EndpointConfig]:
    """Load endpoint descriptors from a JSON or YAML file.

    The file holds a mapping with an ``mcps`` (or ``endpoints``) list.
    Endpoint names must be unique.
    """
    if not path.exists():
        raise EndpointConfigError(f"Endpoint file does not exist: {path}")
    try:
        raw_text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise EndpointConfigError(f"Cannot read endpoint file {path}: {exc}") from exc

    document = _parse_document(path, raw_text)
    if not isinstance(document, dict):
        raise EndpointConfigError(f"Endpoint file {path} must contain a mapping")
    items = document.get("mcps", document.get("endpoints"))
    if not isinstance(items, list):
        raise EndpointConfigError(f"Endpoint file {path} needs an 'mcps' or 'endpoints' list")

    endpoints: list[EndpointConfig] = []
    seen: set[str] = set()
    for index, item in enumerate(items):
        try:
            endpoint = EndpointConfig.model_validate(item)
        except ValidationError as exc:
            raise EndpointConfigError(f"Invalid endpoint #{index} in {path}: {exc}") from exc
        if endpoint.name in seen:
            raise EndpointConfigError(f"Duplicate endpoint name in {path}: {endpoint.name}")
        seen.add(endpoint.name)
        endpoints.append(endpoint)
    return endpoints


def _parse_document(path: Path, raw_text: str) -> Any:
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            return yaml.safe_load(raw_text)
        return json.loads(raw_text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise EndpointConfigError(f"Cannot parse endpoint file {path}: {exc}") from exc
