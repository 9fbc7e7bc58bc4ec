"""Tests for configuration loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from converge.config import (
    DEFAULT_CONCURRENCY_LIMIT,
    DEFAULT_MAX_ATTEMPTS,
    Config,
    ConfigurationError,
)


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        """Test that a default configuration is valid."""
        config = Config()

        assert config.target == "default"
        assert config.concurrency_limit == DEFAULT_CONCURRENCY_LIMIT
        assert config.max_attempts == DEFAULT_MAX_ATTEMPTS
        assert config.enable_default_rules is True
        assert config.variables == {}

    def test_state_paths_keyed_by_target(self, tmp_path: Path) -> None:
        """Test that persisted files are named after the target."""
        config = Config(target="staging", state_dir=tmp_path)

        assert config.state_file == tmp_path / "staging.state.json"
        assert config.audit_file == tmp_path / "staging.runs.jsonl"

    def test_invalid_target(self) -> None:
        """Test that targets unusable as file names are rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(target="../etc")

        assert "target must match pattern" in str(exc_info.value)

    @pytest.mark.parametrize("limit", [0, 65])
    def test_invalid_concurrency_limit(self, limit: int) -> None:
        """Test that out-of-range concurrency limits are rejected."""
        with pytest.raises(ConfigurationError, match="concurrency limit"):
            Config(concurrency_limit=limit)

    def test_invalid_max_attempts(self) -> None:
        """Test that a zero retry budget is rejected."""
        with pytest.raises(ConfigurationError, match="max attempts"):
            Config(max_attempts=0)

    def test_negative_backoff(self) -> None:
        """Test that negative backoff is rejected."""
        with pytest.raises(ConfigurationError, match="backoff"):
            Config(backoff_seconds=-1)

    def test_zero_backoff_allowed(self) -> None:
        """Test that backoff can be disabled."""
        assert Config(backoff_seconds=0).backoff_seconds == 0

    def test_missing_ignore_rules_file(self, tmp_path: Path) -> None:
        """Test that a configured rules file must exist."""
        with pytest.raises(ConfigurationError, match="Ignore rules file does not exist"):
            Config(ignore_rules_file=tmp_path / "missing.yaml")

    def test_collects_all_errors(self) -> None:
        """Test that every violation is reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(concurrency_limit=0, max_attempts=0, max_changes_per_pass=0)

        message = str(exc_info.value)
        assert "concurrency limit" in message
        assert "max attempts" in message
        assert "max changes per pass" in message


class TestConfigFromEnv:
    """Tests for Config.from_env()."""

    def test_reads_environment(self, tmp_path: Path) -> None:
        """Test that CONVERGE_* variables are applied."""
        env = {
            "CONVERGE_TARGET": "prod",
            "CONVERGE_MANIFESTS_DIR": str(tmp_path / "manifests"),
            "CONVERGE_STATE_DIR": str(tmp_path / "state"),
            "CONVERGE_CONCURRENCY": "8",
            "CONVERGE_MAX_ATTEMPTS": "2",
            "CONVERGE_BACKOFF": "0.5",
            "CONVERGE_DEFAULT_RULES": "false",
            "CONVERGE_KUBE_CONTEXT": "kind-test",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.target == "prod"
        assert config.manifests_dir == tmp_path / "manifests"
        assert config.state_dir == tmp_path / "state"
        assert config.concurrency_limit == 8
        assert config.max_attempts == 2
        assert config.backoff_seconds == 0.5
        assert config.enable_default_rules is False
        assert config.kube_context == "kind-test"
        assert config.kubeconfig is None

    def test_non_integer_value(self) -> None:
        """Test that malformed numbers raise ConfigurationError."""
        with patch.dict(os.environ, {"CONVERGE_CONCURRENCY": "many"}, clear=True):
            with pytest.raises(ConfigurationError, match="CONVERGE_CONCURRENCY must be an integer"):
                Config.from_env()

    def test_out_of_range_value(self) -> None:
        """Test that environment values are validated like constructor arguments."""
        with patch.dict(os.environ, {"CONVERGE_MAX_ATTEMPTS": "100"}, clear=True):
            with pytest.raises(ConfigurationError, match="max attempts"):
                Config.from_env()
