#!/usr/bin/env python3
"""Tests for configuration loading."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from cap.config import ENV_OVERRIDES, Config, IdentityConfig, ScraperConfig, load_config
from cap.errors import ConfigError

EXAMPLE_CONFIG = str(Path(__file__).parent.parent / "configs" / "example.yaml")


@pytest.fixture
def clean_env(monkeypatch):
    """Reset environment variables for each test."""
    for name in list(ENV_OVERRIDES) + ["OTEL_ENDPOINT"]:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def set_identity(monkeypatch):
    monkeypatch.setenv("GCP_PROJECT", "test-project")
    monkeypatch.setenv("GCP_ZONE", "us-central1-a")
    monkeypatch.setenv("GCP_INSTANCE_NAME", "test-cluster")


def test_load_from_env(clean_env):
    set_identity(clean_env)
    clean_env.setenv("SERVICE_PATTERN", "(test-service|other-service)")

    config = load_config()

    assert config.identity.project_id == "test-project"
    assert config.identity.location == "us-central1-a"
    assert config.identity.cluster == "test-cluster"
    assert config.scraper.cadvisor_host == "localhost:8080"
    assert config.scraper.scrape_interval_s == 30.0
    assert config.scraper.fetch_timeout_s == 10.0
    assert config.metrics_url == "http://localhost:8080/metrics"
    assert config.build_filter().pattern.pattern == "(test-service|other-service)"


def test_defaults_when_env_is_empty(clean_env):
    set_identity(clean_env)
    clean_env.setenv("SERVICE_PATTERN", "")
    clean_env.setenv("CADVISOR_HOST", "")

    config = load_config()

    assert config.scraper.filter_pattern == ".*"
    assert config.scraper.cadvisor_host == "localhost:8080"


def test_missing_identity(clean_env):
    clean_env.setenv("GCP_ZONE", "z")
    clean_env.setenv("GCP_INSTANCE_NAME", "c")

    with pytest.raises(ConfigError) as excinfo:
        load_config()

    assert "GCP environment variables (GCP_PROJECT, GCP_ZONE, GCP_INSTANCE_NAME) must be set" in str(excinfo.value)


def test_invalid_regex(clean_env):
    set_identity(clean_env)
    # trailing backslash
    clean_env.setenv("SERVICE_PATTERN", "\\")

    with pytest.raises(ConfigError) as excinfo:
        load_config()

    assert "failed to compile regex pattern" in str(excinfo.value)


def test_config_error_is_value_error(clean_env):
    with pytest.raises(ValueError):
        load_config()


def test_yaml_file(clean_env):
    config = load_config(EXAMPLE_CONFIG)

    assert config.identity.project_id == "example-project"
    assert config.scraper.filter_pattern == 'name="(my-app|other-app)"'
    assert config.exporters.prometheus.enabled
    assert config.exporters.otel.resource["deployment.environment"] == "dev"
    assert config.global_.control_api_port == 8081


def test_env_overrides_yaml(clean_env):
    clean_env.setenv("CADVISOR_HOST", "cadvisor:9000")
    clean_env.setenv("SCRAPE_INTERVAL", "5")
    clean_env.setenv("OTEL_ENDPOINT", "collector:4317")
    clean_env.setenv("LOG_LEVEL", "DEBUG")

    config = load_config(EXAMPLE_CONFIG)

    assert config.scraper.cadvisor_host == "cadvisor:9000"
    assert config.scraper.scrape_interval_s == 5.0
    assert config.exporters.otel.endpoint == "collector:4317"
    assert config.global_.log_level == "DEBUG"


def test_missing_file(clean_env):
    with pytest.raises(ConfigError):
        load_config("/nonexistent/cap.yaml")


def test_empty_yaml_section_with_env_override(clean_env, tmp_path):
    set_identity(clean_env)
    clean_env.setenv("CADVISOR_HOST", "h:1")
    clean_env.setenv("OTEL_ENDPOINT", "collector:4317")
    path = tmp_path / "cap.yaml"
    path.write_text("scraper:\nexporters:\n")

    config = load_config(str(path))

    assert config.scraper.cadvisor_host == "h:1"
    assert config.exporters.otel.endpoint == "collector:4317"


def test_non_mapping_yaml_rejected(clean_env, tmp_path):
    set_identity(clean_env)
    path = tmp_path / "cap.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError):
        load_config(str(path))


def test_non_mapping_section_rejected(clean_env, tmp_path):
    set_identity(clean_env)
    clean_env.setenv("CADVISOR_HOST", "h:1")
    path = tmp_path / "cap.yaml"
    path.write_text("scraper: oops\n")

    with pytest.raises(ConfigError):
        load_config(str(path))


def test_invalid_yaml_rejected(clean_env, tmp_path):
    path = tmp_path / "cap.yaml"
    path.write_text("scraper: [unclosed\n")

    with pytest.raises(ConfigError):
        load_config(str(path))


def test_non_positive_interval_rejected():
    with pytest.raises(ValueError):
        ScraperConfig(scrape_interval_s=0)


def test_config_built_directly():
    config = Config(
        identity=IdentityConfig(project_id="p", location="l", cluster="c"),
        scraper=ScraperConfig(cadvisor_host="host:1234"),
    )
    assert config.metrics_url == "http://host:1234/metrics"
    assert config.global_.log_level == "INFO"
