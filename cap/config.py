"""Configuration models using Pydantic for validation."""
from typing import Dict, Optional, Literal
from pydantic import BaseModel, Field, field_validator, model_validator
import os
import re

from cap.errors import ConfigError
from cap.filters import MATCH_ALL, FilterConfig


class IdentityConfig(BaseModel):
    """Identity of the monitored host, attached to exported metrics."""
    project_id: str = ""
    location: str = ""
    cluster: str = ""


class ScraperConfig(BaseModel):
    """Where and how often to scrape."""
    cadvisor_host: str = "localhost:8080"
    scrape_interval_s: float = Field(default=30.0, gt=0)
    fetch_timeout_s: float = Field(default=10.0, gt=0)
    filter_pattern: str = MATCH_ALL

    @field_validator('cadvisor_host')
    @classmethod
    def default_host(cls, v):
        return v or "localhost:8080"

    @field_validator('filter_pattern')
    @classmethod
    def validate_pattern(cls, v):
        """Patterns are compiled up front so a bad one never reaches a cycle."""
        v = v or MATCH_ALL
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"failed to compile regex pattern {v!r}: {e}")
        return v


class PrometheusExporterConfig(BaseModel):
    """Local re-exposition of accepted samples."""
    enabled: bool = False
    port: int = 9102
    bind_address: str = "0.0.0.0"


class OTELExporterConfig(BaseModel):
    """OpenTelemetry push exporter configuration."""
    enabled: bool = True
    endpoint: str = "localhost:4317"
    insecure: bool = True
    export_interval_s: int = 30
    headers: Dict[str, str] = Field(default_factory=dict)
    resource: Dict[str, str] = Field(default_factory=dict)


class ExportersConfig(BaseModel):
    """Configuration for all exporters."""
    prometheus: PrometheusExporterConfig = Field(default_factory=PrometheusExporterConfig)
    otel: OTELExporterConfig = Field(default_factory=OTELExporterConfig)


class GlobalConfig(BaseModel):
    """Global configuration settings."""
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"
    control_api_enabled: bool = True
    control_api_port: int = 8081


class Config(BaseModel):
    """Root configuration model."""
    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    scraper: ScraperConfig = Field(default_factory=ScraperConfig)
    exporters: ExportersConfig = Field(default_factory=ExportersConfig)

    model_config = {"populate_by_name": True}

    @model_validator(mode='after')
    def validate_identity(self):
        """Project, location and cluster are all required."""
        identity = self.identity
        if not (identity.project_id and identity.location and identity.cluster):
            raise ValueError(
                "GCP environment variables (GCP_PROJECT, GCP_ZONE, GCP_INSTANCE_NAME) must be set"
            )
        return self

    @property
    def metrics_url(self) -> str:
        return f"http://{self.scraper.cadvisor_host}/metrics"

    def build_filter(self) -> FilterConfig:
        return FilterConfig.from_pattern(self.scraper.filter_pattern)


# env var -> (section, key)
ENV_OVERRIDES = {
    'GCP_PROJECT': ('identity', 'project_id'),
    'GCP_ZONE': ('identity', 'location'),
    'GCP_INSTANCE_NAME': ('identity', 'cluster'),
    'CADVISOR_HOST': ('scraper', 'cadvisor_host'),
    'SCRAPE_INTERVAL': ('scraper', 'scrape_interval_s'),
    'SERVICE_PATTERN': ('scraper', 'filter_pattern'),
    'LOG_LEVEL': ('global', 'log_level'),
}


def load_config(config_path: Optional[str] = None) -> Config:
    """Load configuration from an optional YAML file plus environment variables."""
    import yaml

    raw_config = {}
    if config_path:
        if not os.path.exists(config_path):
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                raw_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to read configuration file {config_path}: {e}") from e

        if not isinstance(raw_config, dict):
            raise ConfigError(
                f"Configuration file {config_path} must contain a mapping, "
                f"got {type(raw_config).__name__}"
            )

        # An empty section ("scraper:") loads as None
        raw_config = {k: ({} if v is None else v) for k, v in raw_config.items()}

    try:
        # Apply environment variable overrides
        for env_var, (section, key) in ENV_OVERRIDES.items():
            if value := os.getenv(env_var):
                _section(raw_config, section)[key] = value

        if env_endpoint := os.getenv('OTEL_ENDPOINT'):
            _section(_section(raw_config, 'exporters'), 'otel')['endpoint'] = env_endpoint

        return Config(**raw_config)
    except ConfigError:
        raise
    except Exception as e:
        raise ConfigError(f"Configuration validation failed: {e}") from e


def _section(raw: dict, name: str) -> dict:
    """Return the mapping under ``name``, creating it when missing or empty."""
    section = raw.get(name)
    if section is None:
        section = raw[name] = {}
    elif not isinstance(section, dict):
        raise ConfigError(f"Configuration section '{name}' must be a mapping")
    return section
