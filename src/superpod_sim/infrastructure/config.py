"""Configuration for the SuperPOD simulator."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClusterConfig(BaseModel):
    """Simulated cluster shape."""

    name: str = Field(default="DGX SuperPOD")
    node_count: int = Field(default=8, ge=1, le=64)
    system_type: Literal["DGX-A100", "DGX-H100"] = Field(default="DGX-A100")
    domain: str = Field(default="cluster.local")
    max_import_bytes: int = Field(default=5 * 1024 * 1024)


class HealthConfig(BaseModel):
    """Health derivation thresholds."""

    thermal_warning_c: float = Field(default=85.0)
    power_warning_fraction: float = Field(default=0.95, gt=0.0, le=1.0)


class DriftConfig(BaseModel):
    """Metrics drift configuration."""

    enabled: bool = Field(default=False)
    interval_seconds: float = Field(default=1.0, gt=0.0)
    seed: Optional[int] = Field(default=None)


class EngineConfig(BaseModel):
    """Command engine configuration."""

    strict: bool = Field(default=False)
    history_limit: int = Field(default=1000, ge=1)


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0")
    http_port: int = Field(default=8080)
    metrics_port: int = Field(default=9108)
    serve_metrics: bool = Field(default=True)


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    otel_endpoint: str | None = Field(default=None)
    environment: str = Field(default="development")
    enable_tracing: bool = Field(default=False)


class Config(BaseSettings):
    """Main configuration."""

    model_config = SettingsConfigDict(env_prefix="SUPERPOD_SIM_", env_nested_delimiter="__")

    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    drift: DriftConfig = Field(default_factory=DriftConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


@lru_cache
def get_config() -> Config:
    return Config()
