"""
Configuration loader with Pydantic validation.

Supports:
- YAML file loading
- Environment variable overrides (PORT, DATA_DIR, STORAGE_BACKEND)
- Secrets from environment
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseModel):
    """HTTP listener configuration."""

    host: str = "0.0.0.0"
    port: int = 10000
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("port must be between 1 and 65535")
        return v


class StorageConfig(BaseModel):
    """Persistence backend selection."""

    backend: str = "memory"  # memory or file
    data_dir: str = "/var/data"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "file"):
            raise ValueError("backend must be 'memory' or 'file'")
        return v


class IngressConfig(BaseModel):
    """Push validation parameters."""

    # Some masters only emit OPEN/CLOSE
    accepted_types: list[str] = Field(default_factory=lambda: ["OPEN", "MODIFY", "CLOSE"])

    @field_validator("accepted_types")
    @classmethod
    def validate_types(cls, v: list[str]) -> list[str]:
        normalized = [t.strip().upper() for t in v]
        unknown = set(normalized) - {"OPEN", "MODIFY", "CLOSE"}
        if unknown:
            raise ValueError(f"unknown event types: {sorted(unknown)}")
        if "OPEN" not in normalized or "CLOSE" not in normalized:
            raise ValueError("accepted_types must include OPEN and CLOSE")
        return normalized


class DeliveryConfig(BaseModel):
    """Poll batch sizing."""

    default_limit: int = 200
    max_limit: int = 500

    @field_validator("default_limit", "max_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("limits must be at least 1")
        return v


class RetentionConfig(BaseModel):
    """Garbage collection bounds."""

    max_events_per_group: int = 50_000
    max_event_age_seconds: int = 3 * 24 * 3600  # 3 days
    slave_inactive_seconds: int = 7 * 24 * 3600  # 0 disables pruning
    cascade_on_close: bool = True
    ack_grace_seconds: int = 300  # ack-complete events stay deliverable this long
    sweep_interval_seconds: int = 300

    @field_validator("max_events_per_group", "max_event_age_seconds")
    @classmethod
    def validate_bounds(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retention bounds must be positive")
        return v

    @field_validator("slave_inactive_seconds", "sweep_interval_seconds", "ack_grace_seconds")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must be non-negative")
        return v


class ObservabilityConfig(BaseModel):
    """Logging and metrics configuration."""

    log_level: str = "INFO"
    log_format: str = "json"  # json, text or clean
    metrics_enabled: bool = False
    metrics_port: int = 9090


class SecretsConfig(BaseSettings):
    """
    Secrets loaded exclusively from environment variables.
    Never logged or persisted.
    """

    # Empty means pushes are not protected
    master_key: str = ""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False, extra="ignore")


class AppConfig(BaseModel):
    """Complete application configuration."""

    config_version: str = "1.0.0"
    environment: str = "local"

    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    ingress: IngressConfig = Field(default_factory=IngressConfig)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_persistent(self) -> bool:
        return self.storage.backend == "file"

    def diff_from_defaults(self) -> dict[str, Any]:
        """
        Get configuration differences from defaults.

        Useful for logging what's been customized.
        """
        defaults = AppConfig()
        current = self.model_dump()
        default_dict = defaults.model_dump()

        def diff_dict(d1: dict, d2: dict, path: str = "") -> dict:
            differences = {}
            for key in set(d1.keys()) | set(d2.keys()):
                full_key = f"{path}.{key}" if path else key
                v1 = d1.get(key)
                v2 = d2.get(key)

                if isinstance(v1, dict) and isinstance(v2, dict):
                    nested = diff_dict(v1, v2, full_key)
                    if nested:
                        differences.update(nested)
                elif v1 != v2:
                    differences[full_key] = {"current": v1, "default": v2}

            return differences

        return diff_dict(current, default_dict)


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load configuration from YAML file."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def env_overrides(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Collect the deployment overrides the hosting platform sets."""
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    if env.get("PORT"):
        overrides.setdefault("server", {})["port"] = int(env["PORT"])
    if env.get("DATA_DIR"):
        overrides.setdefault("storage", {})["data_dir"] = env["DATA_DIR"]
    if env.get("STORAGE_BACKEND"):
        overrides.setdefault("storage", {})["backend"] = env["STORAGE_BACKEND"]

    return overrides


def load_config(
    config_path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> AppConfig:
    """
    Load configuration from YAML file with environment overrides.

    Priority (highest to lowest):
    1. Environment variables
    2. Specified config file
    3. Defaults
    """
    config_dict: dict[str, Any] = {}

    if config_path:
        config_dict = load_yaml_config(Path(config_path))

    config_dict = deep_merge(config_dict, env_overrides(environ))
    return AppConfig(**config_dict)


def load_secrets() -> SecretsConfig:
    """Load secrets from environment variables."""
    return SecretsConfig()
