"""Configuration models for the request pipeline.

Pydantic models for loading and validating YAML pipeline configuration,
re-exported here so ``from querypipe.core.config import ...`` works for
every model.
"""

from querypipe.core.config.cache import CacheConfig, FetchPolicy
from querypipe.core.config.operations import (
    BatchingConfig,
    DeduplicationConfig,
    OptimizerConfig,
)
from querypipe.core.config.pipeline import PipelineConfig, TransportConfig
from querypipe.core.config.resilience import AuthConfig, BackoffPolicyConfig, RetryConfig

__all__ = [
    "AuthConfig",
    "BackoffPolicyConfig",
    "BatchingConfig",
    "CacheConfig",
    "DeduplicationConfig",
    "FetchPolicy",
    "OptimizerConfig",
    "PipelineConfig",
    "RetryConfig",
    "TransportConfig",
]
