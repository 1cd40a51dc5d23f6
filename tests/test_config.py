"""Tests for the controller configuration."""

from pathlib import Path
from types import SimpleNamespace

import pytest

from gitops_sync.config import ControllerConfig, RetryConfig, load_config
from gitops_sync.exceptions import InputException


def test_load_defaults() -> None:
    config = load_config(None)
    assert config == ControllerConfig()
    assert config.ownership_label == "app.kubernetes.io/instance"


def test_load_config_file(tmp_path: Path) -> None:
    """Test loading a configuration file with kind overrides."""
    path = tmp_path / "config.yaml"
    path.write_text(
        """\
concurrency: 8
poll_interval: 30
retry:
  max_attempts: 2
kinds:
- kind: Certificate
  priority: 2
  ignore_fields:
  - spec.secretTemplate
- kind: Service
  ignore_fields:
  - spec.healthCheckNodePort
"""
    )
    config = load_config(path)
    assert config.concurrency == 8
    assert config.poll_interval == 30.0
    assert config.retry.max_attempts == 2
    assert config.retry.base_delay == 0.5

    registry = config.kind_registry()
    assert registry.priority("Certificate") == 2
    assert "spec.secretTemplate" in registry.ignore_fields("Certificate")
    assert "spec.clusterIP" in registry.ignore_fields("Service")
    assert "spec.healthCheckNodePort" in registry.ignore_fields("Service")


def test_empty_config_file(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(path) == ControllerConfig()


@pytest.mark.parametrize(
    ("content", "match"),
    [
        ("unknown_key: 1\n", "Invalid configuration"),
        ("kinds:\n- priority: 2\n", "Invalid configuration"),
        ("- a\n- b\n", "must be a mapping"),
        ("concurrency: [\n", "Invalid YAML"),
        ("concurrency: 0\n", "concurrency must be at least 1"),
        ("cycle_timeout: -1\n", "cycle_timeout must be positive"),
        ("ownership_label: ''\n", "ownership_label must not be empty"),
    ],
)
def test_invalid_config(tmp_path: Path, content: str, match: str) -> None:
    path = tmp_path / "config.yaml"
    path.write_text(content)
    with pytest.raises(InputException, match=match):
        load_config(path)


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(InputException, match="not found"):
        load_config(tmp_path / "missing.yaml")


def test_retry_backoff() -> None:
    """Test exponential backoff is bounded by max_delay."""
    backoff = RetryConfig(base_delay=1.0, factor=2.0, max_delay=5.0).backoff()
    assert [
        backoff(SimpleNamespace(attempt_number=attempt)) for attempt in range(1, 6)
    ] == [1.0, 2.0, 4.0, 5.0, 5.0]
