"""Configuration loading for nsdkit."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class DiscoveryConfig:
    """What to browse for."""

    service_type: str = "_http._tcp"
    browse: bool = True


@dataclass
class PublishConfig:
    """Service to announce, if any."""

    enabled: bool = False
    name: str = "nsdkit"
    service_type: str = "_http._tcp"
    port: int = 8080
    txt: dict[str, str | None] = field(default_factory=dict)


@dataclass
class ResolverConfig:
    """Resolve queue and platform resolver settings."""

    timeout_ms: int = 3000  # per resolve, enforced by the platform
    busy_retry_delay_seconds: float = 0.05  # zeroconf answers "busy" right away
    deduplicate: bool = False


@dataclass
class LoggingConfig:
    level: str = "info"
    json: bool = False


@dataclass
class Config:
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with NSDKIT_ prefix."""
    return os.environ.get(f"NSDKIT_{key}", default)


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Discovery overrides
    if service_type := _get_env("SERVICE_TYPE"):
        config.discovery.service_type = service_type
    if browse := _get_env("BROWSE"):
        config.discovery.browse = _as_bool(browse)

    # Publish overrides
    if publish_enabled := _get_env("PUBLISH_ENABLED"):
        config.publish.enabled = _as_bool(publish_enabled)
    if publish_name := _get_env("PUBLISH_NAME"):
        config.publish.name = publish_name
    if publish_type := _get_env("PUBLISH_SERVICE_TYPE"):
        config.publish.service_type = publish_type
    if publish_port := _get_env("PUBLISH_PORT"):
        config.publish.port = int(publish_port)

    # Resolver overrides
    if timeout := _get_env("RESOLVE_TIMEOUT_MS"):
        config.resolver.timeout_ms = int(timeout)
    if retry_delay := _get_env("RESOLVE_BUSY_RETRY_DELAY"):
        config.resolver.busy_retry_delay_seconds = float(retry_delay)
    if deduplicate := _get_env("RESOLVE_DEDUPLICATE"):
        config.resolver.deduplicate = _as_bool(deduplicate)

    # Logging overrides
    if level := _get_env("LOG_LEVEL"):
        config.logging.level = level.lower()
    if json_output := _get_env("LOG_JSON"):
        config.logging.json = _as_bool(json_output)

    return config


def _parse_txt(data: dict | None) -> dict[str, str | None]:
    """Parse TXT records; keys without a value stay None."""
    if not data:
        return {}
    return {str(k): (None if v is None else str(v)) for k, v in data.items()}


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "discovery" in data:
                discovery_data = data["discovery"]
                config.discovery = DiscoveryConfig(
                    service_type=discovery_data.get(
                        "service_type", config.discovery.service_type
                    ),
                    browse=discovery_data.get("browse", config.discovery.browse),
                )

            if "publish" in data:
                publish_data = data["publish"]
                config.publish = PublishConfig(
                    enabled=publish_data.get("enabled", config.publish.enabled),
                    name=publish_data.get("name", config.publish.name),
                    service_type=publish_data.get(
                        "service_type", config.publish.service_type
                    ),
                    port=int(publish_data.get("port", config.publish.port)),
                    txt=_parse_txt(publish_data.get("txt")),
                )

            if "resolver" in data:
                resolver_data = data["resolver"]
                config.resolver = ResolverConfig(
                    timeout_ms=int(resolver_data.get("timeout_ms", config.resolver.timeout_ms)),
                    busy_retry_delay_seconds=float(
                        resolver_data.get(
                            "busy_retry_delay_seconds",
                            config.resolver.busy_retry_delay_seconds,
                        )
                    ),
                    deduplicate=resolver_data.get("deduplicate", config.resolver.deduplicate),
                )

            if "logging" in data:
                logging_data = data["logging"]
                config.logging = LoggingConfig(
                    level=str(logging_data.get("level", config.logging.level)).lower(),
                    json=logging_data.get("json", config.logging.json),
                )

    return _apply_env_overrides(config)
