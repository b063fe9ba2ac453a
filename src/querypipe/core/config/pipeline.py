"""Transport and top-level pipeline configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from querypipe.core.errors import ConfigurationError

from .cache import CacheConfig
from .operations import BatchingConfig, DeduplicationConfig, OptimizerConfig
from .resilience import AuthConfig, RetryConfig


class TransportConfig(BaseModel):
    """HTTP endpoint settings."""

    endpoint: str = Field(
        default="http://localhost:4000/graphql",
        description="GraphQL endpoint URL",
    )
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")
    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra headers sent with every request",
    )
    wire_batching: bool = Field(
        default=False,
        description="Send multi-operation groups as one JSON array request",
    )


class PipelineConfig(BaseModel):
    """Complete request pipeline configuration.

    Example YAML:
        transport:
          endpoint: https://api.example.com/graphql
        batching:
          max_batch_size: 20
        retry:
          policies:
            network: {max_attempts: 5}
    """

    transport: TransportConfig = Field(default_factory=TransportConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    deduplication: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    batching: BatchingConfig = Field(default_factory=BatchingConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> PipelineConfig:
        """Load pipeline configuration from a YAML file.

        Raises:
            ConfigurationError: If the file cannot be read, parsed or validated.
        """
        try:
            with open(path) as f:
                text = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e
        return cls.from_yaml_string(text, source=str(path))

    @classmethod
    def from_yaml_string(cls, yaml_str: str, source: str = "<string>") -> PipelineConfig:
        """Load pipeline configuration from a YAML string."""
        try:
            data: Any = yaml.safe_load(yaml_str)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {source}: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config in {source} must be a mapping, got {type(data).__name__}"
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {source}:\n{e}") from e


__all__ = ["PipelineConfig", "TransportConfig"]
