"""Configuration objects for gitops-sync.

The controller reads a single YAML file, every key is optional:
```yaml
concurrency: 4
poll_interval: 180
cycle_timeout: 300
history_limit: 10
ownership_label: app.kubernetes.io/instance
retry:
  max_attempts: 5
  base_delay: 0.5
kinds:
- kind: Certificate
  priority: 2
  ignore_fields:
  - spec.secretTemplate
```
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path

import yaml
from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig
from mashumaro.exceptions import MissingField, InvalidFieldValue, ExtraKeysError
from tenacity import wait_exponential

from .exceptions import InputException
from .kinds import KindRegistry

__all__ = [
    "ControllerConfig",
    "RetryConfig",
    "KindOverride",
    "load_config",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_OWNERSHIP_LABEL = "app.kubernetes.io/instance"


class _StrictConfig(BaseConfig):
    forbid_extra_keys = True


@dataclass
class RetryConfig(DataClassDictMixin):
    """Bounded exponential backoff for transient cluster errors."""

    max_attempts: int = 5
    """Total attempts per resource operation, including the first."""

    base_delay: float = 0.5
    """Delay in seconds before the first retry."""

    factor: float = 2.0
    """Multiplier applied to the delay after each attempt."""

    max_delay: float = 30.0
    """Upper bound on a single delay in seconds."""

    def backoff(self) -> wait_exponential:
        """Return the backoff as a tenacity wait strategy.

        The n-th retry waits `base_delay * factor ** (n - 1)` seconds, capped
        at `max_delay`.
        """
        return wait_exponential(
            multiplier=self.base_delay, exp_base=self.factor, max=self.max_delay
        )

    class Config(_StrictConfig):
        pass


@dataclass
class KindOverride(DataClassDictMixin):
    """Customization of the behavior of a resource kind."""

    kind: str
    priority: int | None = None
    namespaced: bool | None = None
    ignore_fields: list[str] = field(default_factory=list)

    class Config(_StrictConfig):
        pass


@dataclass
class ControllerConfig(DataClassDictMixin):
    """Configuration for the reconciliation controller."""

    concurrency: int = 4
    """Maximum number of reconciliation cycles running at once."""

    poll_interval: float = 180.0
    """Seconds between source polls for automated Applications."""

    cycle_timeout: float = 300.0
    """Deadline in seconds for a single reconciliation cycle."""

    history_limit: int = 10
    """Number of sync results retained per Application."""

    ownership_label: str = DEFAULT_OWNERSHIP_LABEL
    """Label stamped on applied resources naming the owning Application."""

    cache_dir: str | None = None
    """Directory for fetched sources, defaults to a temp directory."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    kinds: list[KindOverride] = field(default_factory=list)

    class Config(_StrictConfig):
        pass

    def validate(self) -> None:
        """Raise InputException if values are out of range."""
        if self.concurrency < 1:
            raise InputException(f"concurrency must be at least 1: {self.concurrency}")
        if self.poll_interval <= 0:
            raise InputException(
                f"poll_interval must be positive: {self.poll_interval}"
            )
        if self.cycle_timeout <= 0:
            raise InputException(
                f"cycle_timeout must be positive: {self.cycle_timeout}"
            )
        if self.history_limit < 1:
            raise InputException(
                f"history_limit must be at least 1: {self.history_limit}"
            )
        if self.retry.max_attempts < 1:
            raise InputException(
                f"retry.max_attempts must be at least 1: {self.retry.max_attempts}"
            )
        if self.retry.base_delay < 0 or self.retry.max_delay < 0:
            raise InputException("retry delays must not be negative")
        if not self.ownership_label:
            raise InputException("ownership_label must not be empty")

    def kind_registry(self) -> KindRegistry:
        """Return the default kind registry with the configured overrides."""
        registry = KindRegistry()
        for override in self.kinds:
            registry.update(
                override.kind,
                priority=override.priority,
                namespaced=override.namespaced,
                ignore_fields=override.ignore_fields,
            )
        return registry


def load_config(path: Path | None = None) -> ControllerConfig:
    """Load the controller configuration, returning defaults when path is None."""
    if path is None:
        config = ControllerConfig()
        config.validate()
        return config
    _LOGGER.debug("Loading configuration from %s", path)
    try:
        doc = yaml.safe_load(path.read_text())
    except FileNotFoundError as err:
        raise InputException(f"Configuration file not found: {path}") from err
    except yaml.YAMLError as err:
        raise InputException(f"Invalid YAML in configuration {path}: {err}") from err
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise InputException(f"Configuration {path} must be a mapping")
    try:
        config = ControllerConfig.from_dict(doc)
    except (MissingField, InvalidFieldValue, ExtraKeysError) as err:
        raise InputException(f"Invalid configuration {path}: {err}") from err
    config.validate()
    return config
