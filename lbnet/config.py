"""lbnet configuration management using Pydantic."""

from pathlib import Path
from typing import Any

import yaml  # type: ignore[import-untyped]
from pydantic import BaseModel, Field, model_validator

from lbnet.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_CONTROLLER_WORKERS,
    DEFAULT_MAX_PORT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_PORT,
    DEFAULT_PREWARM_INTERVAL_SECONDS,
    DEFAULT_RESYNC_INTERVAL_SECONDS,
    DEFAULT_VENDOR,
)


class AllocatorConfig(BaseModel):
    """Port range served by the shared-load-balancer allocator."""

    min_port: int = Field(default=DEFAULT_MIN_PORT, ge=1, le=65535)
    max_port: int = Field(default=DEFAULT_MAX_PORT, ge=1, le=65535)
    block_ports: list[int] = Field(default_factory=list)
    vendor: str = Field(default=DEFAULT_VENDOR, pattern="^(alibabacloud|volcengine)$")

    @model_validator(mode="after")
    def _check_range(self) -> "AllocatorConfig":
        if self.min_port >= self.max_port:
            raise ValueError(f"min_port ({self.min_port}) must be lower than max_port ({self.max_port})")
        return self


class ControllerConfig(BaseModel):
    """Reconcile loop settings."""

    workers: int = Field(default=DEFAULT_CONTROLLER_WORKERS, ge=1, le=64)
    prewarm_interval_seconds: int = Field(default=DEFAULT_PREWARM_INTERVAL_SECONDS, ge=1, le=3600)
    resync_interval_seconds: int = Field(default=DEFAULT_RESYNC_INTERVAL_SECONDS, ge=1, le=3600)
    backoff_strategy: str = Field(default="exponential", pattern="^(exponential|linear|fixed)$")
    backoff_base_seconds: int = Field(default=1, ge=1, le=600)
    backoff_max_seconds: int = Field(default=60, ge=1, le=3600)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=100)


class KubernetesConfig(BaseModel):
    """Cluster connection settings."""

    in_cluster: bool = False
    kubeconfig: str | None = None
    namespace: str | None = Field(
        default=None,
        description="Restrict listing to one namespace (default: all namespaces)",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="info", pattern="^(debug|info|warn|error)$")
    directory: str | None = None
    json_output: bool = True
    max_log_size_mb: int = Field(default=10, ge=1, le=1000)


class LbnetConfig(BaseModel):
    """Complete lbnet configuration."""

    allocator: AllocatorConfig = Field(default_factory=AllocatorConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "LbnetConfig":
        """Load configuration from YAML file.

        Args:
            config_path: Path to config file. Defaults to lbnet.yaml

        Returns:
            LbnetConfig instance
        """
        config_path = Path(DEFAULT_CONFIG_PATH) if config_path is None else Path(config_path)

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LbnetConfig":
        """Create configuration from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            LbnetConfig instance
        """
        return cls(**data)

    def save(self, config_path: str | Path | None = None) -> None:
        """Save configuration to YAML file.

        Args:
            config_path: Path to save config. Defaults to lbnet.yaml
        """
        config_path = Path(DEFAULT_CONFIG_PATH) if config_path is None else Path(config_path)

        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        return self.model_dump()

    @property
    def in_range_block_ports(self) -> list[int]:
        """Blocked ports that fall inside the allocator range."""
        return sorted(
            {p for p in self.allocator.block_ports if self.allocator.min_port <= p < self.allocator.max_port}
        )
