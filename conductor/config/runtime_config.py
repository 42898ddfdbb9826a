"""Runtime configuration registry for the conductor orchestrator.

Provides centralized policy configuration for planning, execution, adaptation,
evolution and history. Environment variables take precedence over YAML config.

Usage:
    from conductor.config.runtime_config import get_runtime_config

    config = get_runtime_config()
    policy = config.mode_policy("balanced")
    if decision.confidence < policy.confidence_threshold:
        # Adapt the remaining plan

Building a config directly (tests, embedded use):
    from conductor.config.runtime_config import RuntimeConfig, RetryPolicy

    config = RuntimeConfig(retry=RetryPolicy(max_attempts=2, backoff_base_seconds=0.0))
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# Module logger for clamping warnings
logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

# =============================================================================
# Sanity Bounds
# =============================================================================

CONCURRENCY_MIN = 1
CONCURRENCY_MAX = 64

TIMEOUT_MIN_SECONDS = 0.01
TIMEOUT_MAX_SECONDS = 3600.0

RETRY_ATTEMPTS_MAX = 10

VALID_MODES = ("conservative", "balanced", "aggressive")
VALID_CORRECTIVES = ("insert", "replace")
VALID_ACCEPTANCE = ("non_dominated", "pareto_improvement")


def _clamp(value: float, name: str, min_val: float, max_val: float) -> float:
    """Clamp a numeric setting to sanity bounds with logging.

    Args:
        value: The configured value
        name: Human-readable setting name for logging
        min_val: Minimum allowed value
        max_val: Maximum allowed value

    Returns:
        Clamped value within [min_val, max_val]
    """
    if value < min_val:
        logger.warning(
            "Setting '%s' value %s is below minimum %s. Clamping to %s.",
            name,
            value,
            min_val,
            min_val,
        )
        return min_val
    if value > max_val:
        logger.warning(
            "Setting '%s' value %s exceeds maximum %s. Clamping to %s.",
            name,
            value,
            max_val,
            max_val,
        )
        return max_val
    return value


# =============================================================================
# Policy Dataclasses
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for transient failures."""

    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (1-based)."""
        if self.backoff_base_seconds <= 0:
            return 0.0
        return min(self.backoff_base_seconds * (2 ** (attempt - 1)), self.backoff_max_seconds)


@dataclass(frozen=True)
class ModePolicy:
    """Adaptation policy for one workflow mode.

    Attributes:
        confidence_threshold: Decisions below this confidence trigger adaptation.
        confidence_floor: Decisions below this confidence are unusable for
            recovering a failed step.
        max_adaptations: Plan rewrites allowed per workflow.
        max_attempts_per_checkpoint: Oracle consultations allowed when a
            failed step needs a usable decision.
        checkpoint_batch: Number of completed steps between checkpoints.
        default_corrective: Rewrite used when the oracle asks for adaptation
            without naming one ("insert" or "replace").
    """

    confidence_threshold: float = 0.5
    confidence_floor: float = 0.2
    max_adaptations: int = 4
    max_attempts_per_checkpoint: int = 2
    checkpoint_batch: int = 1
    default_corrective: str = "insert"


_DEFAULT_MODES: Dict[str, ModePolicy] = {
    "conservative": ModePolicy(
        max_adaptations=2, max_attempts_per_checkpoint=1, checkpoint_batch=2
    ),
    "balanced": ModePolicy(),
    "aggressive": ModePolicy(
        max_adaptations=8, max_attempts_per_checkpoint=3, default_corrective="replace"
    ),
}


@dataclass(frozen=True)
class EvolutionPolicy:
    """Acceptance and termination rules for the evolution phase."""

    acceptance: str = "non_dominated"
    max_consecutive_failures: int = 2
    protect_market_alignment: bool = True


@dataclass(frozen=True)
class RuntimeConfig:
    """Resolved runtime configuration.

    Passed explicitly to the orchestrator and its components; there is no
    process-wide mutable orchestration state.
    """

    max_command_concurrency: int = 4
    step_timeout_seconds: float = 120.0
    cancel_grace_seconds: float = 2.0
    oracle_timeout_seconds: float = 30.0
    analyzer_timeout_seconds: float = 30.0
    market_timeout_seconds: float = 10.0
    evolution_timeout_seconds: float = 120.0
    session_open_timeout_seconds: float = 30.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    modes: Dict[str, ModePolicy] = field(default_factory=lambda: dict(_DEFAULT_MODES))
    evolution: EvolutionPolicy = field(default_factory=EvolutionPolicy)
    history_db_path: Optional[str] = None
    bias_min_samples: int = 3

    def mode_policy(self, mode: str) -> ModePolicy:
        """Get the adaptation policy for a mode name (falls back to balanced)."""
        key = getattr(mode, "value", mode)
        policy = self.modes.get(key)
        if policy is None:
            logger.warning("Unknown mode '%s', using balanced policy", key)
            return self.modes.get("balanced", ModePolicy())
        return policy

    def with_overrides(self, **changes: Any) -> "RuntimeConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)


# =============================================================================
# YAML Loading
# =============================================================================


def _load_config() -> Dict[str, Any]:
    """Load runtime.yaml configuration, with caching."""
    global _cached_config
    if _cached_config is not None:
        return _cached_config

    if _CONFIG_PATH.exists():
        with open(_CONFIG_PATH) as f:
            _cached_config = yaml.safe_load(f) or {}
    else:
        _cached_config = _default_config()

    return _cached_config


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "execution": {
            "max_command_concurrency": 4,
            "step_timeout_seconds": 120,
            "cancel_grace_seconds": 2,
        },
        "timeouts": {
            "oracle_seconds": 30,
            "analyzer_seconds": 30,
            "market_seconds": 10,
            "evolution_seconds": 120,
            "session_open_seconds": 30,
        },
        "retry": {
            "max_attempts": 3,
            "backoff_base_seconds": 0.5,
            "backoff_max_seconds": 8.0,
        },
        "modes": {},
        "evolution": {
            "acceptance": "non_dominated",
            "max_consecutive_failures": 2,
            "protect_market_alignment": True,
        },
        "history": {"db_path": None, "bias_min_samples": 3},
    }


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _env_override(name: str, value: Any, cast: Any) -> Any:
    """Apply a CONDUCTOR_* environment override if one is set."""
    raw = os.environ.get(f"CONDUCTOR_{name}")
    if raw is None or raw == "":
        return value
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid CONDUCTOR_%s=%r", name, raw)
        return value


def _parse_mode_policy(name: str, data: Dict[str, Any]) -> ModePolicy:
    base = _DEFAULT_MODES.get(name, ModePolicy())
    corrective = str(data.get("default_corrective", base.default_corrective))
    if corrective not in VALID_CORRECTIVES:
        logger.warning(
            "Mode '%s' has unknown default_corrective '%s', using '%s'",
            name,
            corrective,
            base.default_corrective,
        )
        corrective = base.default_corrective

    threshold = float(data.get("confidence_threshold", base.confidence_threshold))
    floor = float(data.get("confidence_floor", base.confidence_floor))
    return ModePolicy(
        confidence_threshold=_clamp(threshold, f"{name}.confidence_threshold", 0.0, 1.0),
        confidence_floor=_clamp(floor, f"{name}.confidence_floor", 0.0, 1.0),
        max_adaptations=int(
            _clamp(int(data.get("max_adaptations", base.max_adaptations)), f"{name}.max_adaptations", 0, 100)
        ),
        max_attempts_per_checkpoint=int(
            _clamp(
                int(data.get("max_attempts_per_checkpoint", base.max_attempts_per_checkpoint)),
                f"{name}.max_attempts_per_checkpoint",
                1,
                RETRY_ATTEMPTS_MAX,
            )
        ),
        checkpoint_batch=int(
            _clamp(int(data.get("checkpoint_batch", base.checkpoint_batch)), f"{name}.checkpoint_batch", 1, 100)
        ),
        default_corrective=corrective,
    )


def build_runtime_config(data: Optional[Dict[str, Any]] = None) -> RuntimeConfig:
    """Resolve a RuntimeConfig from a raw config mapping plus env overrides.

    Args:
        data: Parsed YAML mapping. Defaults to the cached runtime.yaml.

    Returns:
        The resolved, clamped RuntimeConfig.
    """
    if data is None:
        data = _load_config()

    execution = data.get("execution") or {}
    timeouts = data.get("timeouts") or {}
    retry = data.get("retry") or {}
    evolution = data.get("evolution") or {}
    history = data.get("history") or {}

    concurrency = _env_override(
        "MAX_COMMAND_CONCURRENCY", int(execution.get("max_command_concurrency", 4)), int
    )
    step_timeout = _env_override(
        "STEP_TIMEOUT_SECONDS", float(execution.get("step_timeout_seconds", 120)), float
    )
    oracle_timeout = _env_override(
        "ORACLE_TIMEOUT_SECONDS", float(timeouts.get("oracle_seconds", 30)), float
    )
    max_attempts = _env_override("RETRY_MAX_ATTEMPTS", int(retry.get("max_attempts", 3)), int)
    backoff_base = _env_override(
        "RETRY_BACKOFF_BASE_SECONDS", float(retry.get("backoff_base_seconds", 0.5)), float
    )
    db_path = _env_override("HISTORY_DB_PATH", history.get("db_path"), str)
    acceptance = _env_override(
        "EVOLUTION_ACCEPTANCE", str(evolution.get("acceptance", "non_dominated")), str
    )
    if acceptance not in VALID_ACCEPTANCE:
        logger.warning("Unknown evolution acceptance '%s', using non_dominated", acceptance)
        acceptance = "non_dominated"

    modes = dict(_DEFAULT_MODES)
    for name, mode_data in (data.get("modes") or {}).items():
        if name not in VALID_MODES:
            logger.warning("Ignoring policy for unknown mode '%s'", name)
            continue
        modes[name] = _parse_mode_policy(name, mode_data or {})

    return RuntimeConfig(
        max_command_concurrency=int(
            _clamp(concurrency, "max_command_concurrency", CONCURRENCY_MIN, CONCURRENCY_MAX)
        ),
        step_timeout_seconds=_clamp(
            step_timeout, "step_timeout_seconds", TIMEOUT_MIN_SECONDS, TIMEOUT_MAX_SECONDS
        ),
        cancel_grace_seconds=_clamp(
            float(execution.get("cancel_grace_seconds", 2)), "cancel_grace_seconds", 0.0, 60.0
        ),
        oracle_timeout_seconds=_clamp(
            oracle_timeout, "oracle_timeout_seconds", TIMEOUT_MIN_SECONDS, TIMEOUT_MAX_SECONDS
        ),
        analyzer_timeout_seconds=_clamp(
            float(timeouts.get("analyzer_seconds", 30)),
            "analyzer_timeout_seconds",
            TIMEOUT_MIN_SECONDS,
            TIMEOUT_MAX_SECONDS,
        ),
        market_timeout_seconds=_clamp(
            float(timeouts.get("market_seconds", 10)),
            "market_timeout_seconds",
            TIMEOUT_MIN_SECONDS,
            TIMEOUT_MAX_SECONDS,
        ),
        evolution_timeout_seconds=_clamp(
            float(timeouts.get("evolution_seconds", 120)),
            "evolution_timeout_seconds",
            TIMEOUT_MIN_SECONDS,
            TIMEOUT_MAX_SECONDS,
        ),
        session_open_timeout_seconds=_clamp(
            float(timeouts.get("session_open_seconds", 30)),
            "session_open_timeout_seconds",
            TIMEOUT_MIN_SECONDS,
            TIMEOUT_MAX_SECONDS,
        ),
        retry=RetryPolicy(
            max_attempts=int(_clamp(max_attempts, "retry.max_attempts", 1, RETRY_ATTEMPTS_MAX)),
            backoff_base_seconds=_clamp(backoff_base, "retry.backoff_base_seconds", 0.0, 60.0),
            backoff_max_seconds=_clamp(
                float(retry.get("backoff_max_seconds", 8.0)), "retry.backoff_max_seconds", 0.0, 600.0
            ),
        ),
        modes=modes,
        evolution=EvolutionPolicy(
            acceptance=acceptance,
            max_consecutive_failures=int(
                _clamp(
                    int(evolution.get("max_consecutive_failures", 2)),
                    "evolution.max_consecutive_failures",
                    1,
                    RETRY_ATTEMPTS_MAX,
                )
            ),
            protect_market_alignment=bool(evolution.get("protect_market_alignment", True)),
        ),
        history_db_path=db_path,
        bias_min_samples=int(history.get("bias_min_samples", 3)),
    )


def get_runtime_config() -> RuntimeConfig:
    """Get the RuntimeConfig resolved from runtime.yaml and the environment."""
    return build_runtime_config(_load_config())
