"""Tests for querypipe.core.config module."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from querypipe.core.config import (
    BackoffPolicyConfig,
    BatchingConfig,
    CacheConfig,
    OptimizerConfig,
    PipelineConfig,
    RetryConfig,
)
from querypipe.core.errors import ConfigurationError, ErrorClassifier, ErrorKind, TransportFailure


class TestPipelineConfig:
    """Tests for PipelineConfig loading."""

    def test_defaults(self):
        """Test every section gets its defaults."""
        config = PipelineConfig()
        assert config.transport.endpoint == "http://localhost:4000/graphql"
        assert config.transport.wire_batching is False
        assert config.batching.max_batch_size == 10
        assert config.batching.batch_timeout_seconds == 0.1
        assert config.cache.fetch_policy == "network-only"
        assert config.auth.login_path == "/login"
        assert config.auth.max_auth_replays == 1

    def test_from_yaml(self, tmp_path: Path):
        """Test loading a YAML file."""
        path = tmp_path / "pipeline.yaml"
        path.write_text(
            """
transport:
  endpoint: https://api.example.com/graphql
  headers:
    X-Team: core
batching:
  max_batch_size: 20
  batch_timeout_seconds: 0.05
retry:
  policies:
    network:
      max_attempts: 5
cache:
  fetch_policy: cache-first
  persistence_dir: /tmp/querypipe
"""
        )
        config = PipelineConfig.from_yaml(path)

        assert config.transport.endpoint == "https://api.example.com/graphql"
        assert config.transport.headers == {"X-Team": "core"}
        assert config.batching.max_batch_size == 20
        assert config.retry.policies[ErrorKind.NETWORK].max_attempts == 5
        assert config.cache.fetch_policy == "cache-first"
        assert config.cache.persistence_dir == Path("/tmp/querypipe")

    def test_empty_yaml(self):
        """Test an empty document means all defaults."""
        assert PipelineConfig.from_yaml_string("") == PipelineConfig()

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError, match="Cannot read config file"):
            PipelineConfig.from_yaml(tmp_path / "absent.yaml")

    def test_invalid_yaml(self):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            PipelineConfig.from_yaml_string("batching: [unclosed")

    def test_non_mapping(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            PipelineConfig.from_yaml_string("- just\n- a list\n")

    def test_invalid_values(self):
        """Test validation errors are wrapped with the source name."""
        with pytest.raises(ConfigurationError, match="pipeline.yaml"):
            PipelineConfig.from_yaml_string(
                "batching:\n  max_batch_size: 0\n",
                source="pipeline.yaml",
            )

    def test_unknown_fetch_policy(self):
        with pytest.raises(ValidationError):
            CacheConfig(fetch_policy="sometimes")


class TestBatchingConfig:
    """Tests for BatchingConfig presets."""

    @pytest.mark.parametrize(
        "name, size, timeout, intelligent",
        [
            ("aggressive", 20, 0.05, True),
            ("balanced", 10, 0.1, True),
            ("conservative", 5, 0.2, False),
        ],
    )
    def test_presets(self, name, size, timeout, intelligent):
        config = BatchingConfig.preset(name)
        assert config.max_batch_size == size
        assert config.batch_timeout_seconds == timeout
        assert config.intelligent is intelligent

    def test_unknown_preset(self):
        with pytest.raises(ValueError, match="Unknown batching preset 'turbo'"):
            BatchingConfig.preset("turbo")


class TestOptimizerConfig:
    """Tests for OptimizerConfig field lists."""

    def test_overlapping_lists_rejected(self):
        with pytest.raises(ValidationError, match="both included and excluded"):
            OptimizerConfig(always_include=["id", "email"], always_exclude=["email"])

    def test_depth_must_be_positive(self):
        with pytest.raises(ValidationError):
            OptimizerConfig(max_depth=0)


class TestRetryConfig:
    """Tests for RetryConfig and BackoffPolicyConfig."""

    def test_delay_range(self):
        """Test base delay may not exceed the cap."""
        with pytest.raises(ValidationError, match="must not exceed"):
            BackoffPolicyConfig(base_delay_seconds=30.0, max_delay_seconds=5.0)

    def test_multiplier_floor(self):
        with pytest.raises(ValidationError):
            BackoffPolicyConfig(multiplier=0.5)

    def test_to_policy(self):
        policy = BackoffPolicyConfig(max_attempts=5, base_delay_seconds=0.5).to_policy()
        assert policy.max_attempts == 5
        assert policy.base_delay == 0.5
        assert policy.max_delay == 10.0

    def test_to_override_only_has_set_fields(self):
        entry = BackoffPolicyConfig(base_delay_seconds=3.0)
        assert entry.to_override() == {"base_delay": 3.0}

    def test_build_calculator_uses_overrides(self):
        """Test server overrides reach policy resolution."""
        config = RetryConfig(server_overrides={"HTTP_503": BackoffPolicyConfig(max_attempts=7)})
        calculator = config.build_calculator()
        error = ErrorClassifier().classify(TransportFailure(message="down", status=503))
        assert calculator.policy_for(error).max_attempts == 7

    def test_build_checker(self):
        checker = RetryConfig(retryable_statuses=[503]).build_checker()
        classifier = ErrorClassifier()
        unavailable = classifier.classify(TransportFailure(message="x", status=503))
        bad_gateway = classifier.classify(TransportFailure(message="x", status=502))
        assert checker.is_retryable(unavailable, attempts=0, max_attempts=3) is True
        assert checker.is_retryable(bad_gateway, attempts=0, max_attempts=3) is False

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            RetryConfig(policies={"weather": {"max_attempts": 1}})
