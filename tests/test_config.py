"""
Tests for runtime configuration loading.

These tests verify:
1. runtime.yaml defaults and per-mode policies
2. CONDUCTOR_* environment overrides
3. Clamping of out-of-range settings
4. Retry backoff delays
"""

from __future__ import annotations

import pytest

from conductor.config.runtime_config import (
    CONCURRENCY_MAX,
    ModePolicy,
    RetryPolicy,
    RuntimeConfig,
    build_runtime_config,
    get_runtime_config,
)
from conductor.runtime.types import Mode


class TestYamlDefaults:
    """Tests for the shipped runtime.yaml."""

    def test_loads_execution_settings(self):
        config = get_runtime_config()

        assert config.max_command_concurrency == 4
        assert config.retry.max_attempts == 3
        assert config.evolution.acceptance == "non_dominated"
        assert config.evolution.max_consecutive_failures == 2
        assert config.history_db_path is None
        assert config.session_open_timeout_seconds == 30.0

    @pytest.mark.parametrize(
        "mode,max_adaptations,attempts,batch,corrective",
        [
            ("conservative", 2, 1, 2, "insert"),
            ("balanced", 4, 2, 1, "insert"),
            ("aggressive", 8, 3, 1, "replace"),
        ],
    )
    def test_mode_policies(self, mode, max_adaptations, attempts, batch, corrective):
        policy = get_runtime_config().mode_policy(mode)

        assert policy.confidence_threshold == 0.5
        assert policy.confidence_floor == 0.2
        assert policy.max_adaptations == max_adaptations
        assert policy.max_attempts_per_checkpoint == attempts
        assert policy.checkpoint_batch == batch
        assert policy.default_corrective == corrective

    def test_mode_policy_accepts_enum(self):
        config = RuntimeConfig()
        assert config.mode_policy(Mode.AGGRESSIVE).default_corrective == "replace"

    def test_unknown_mode_falls_back_to_balanced(self):
        assert RuntimeConfig().mode_policy("reckless") == ModePolicy()


class TestOverrides:
    """Tests for environment overrides and clamping."""

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_MAX_COMMAND_CONCURRENCY", "7")
        monkeypatch.setenv("CONDUCTOR_ORACLE_TIMEOUT_SECONDS", "1.5")

        config = get_runtime_config()

        assert config.max_command_concurrency == 7
        assert config.oracle_timeout_seconds == 1.5

    def test_invalid_env_value_ignored(self, monkeypatch):
        monkeypatch.setenv("CONDUCTOR_RETRY_MAX_ATTEMPTS", "many")
        assert get_runtime_config().retry.max_attempts == 3

    def test_history_path_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CONDUCTOR_HISTORY_DB_PATH", str(tmp_path / "h.duckdb"))
        assert get_runtime_config().history_db_path == str(tmp_path / "h.duckdb")

    def test_out_of_range_values_clamped(self):
        config = build_runtime_config(
            {
                "execution": {"max_command_concurrency": 1000, "step_timeout_seconds": -5},
                "modes": {"balanced": {"confidence_threshold": 1.7, "default_corrective": "rewrite"}},
            }
        )

        assert config.max_command_concurrency == CONCURRENCY_MAX
        assert config.step_timeout_seconds > 0
        policy = config.mode_policy("balanced")
        assert policy.confidence_threshold == 1.0
        assert policy.default_corrective == "insert"

    def test_unknown_acceptance_rule(self):
        config = build_runtime_config({"evolution": {"acceptance": "vibes"}})
        assert config.evolution.acceptance == "non_dominated"

    def test_empty_mapping_uses_defaults(self):
        config = build_runtime_config({})
        assert config.modes["aggressive"].max_adaptations == 8
        assert config.cancel_grace_seconds == 2.0


class TestRetryPolicy:
    def test_exponential_backoff_capped(self):
        policy = RetryPolicy(max_attempts=5, backoff_base_seconds=0.5, backoff_max_seconds=1.5)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 1.5]

    def test_zero_base_disables_backoff(self):
        assert RetryPolicy(backoff_base_seconds=0.0).delay_for(3) == 0.0
