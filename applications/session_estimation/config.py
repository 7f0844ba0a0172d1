"""
Configuration module for Session Estimation.

Defines the EstimationConfig dataclass with validation and YAML loading.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

# Default paths relative to this module
_MODULE_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = _MODULE_DIR / "configs" / "estimation_config.yaml"


class ConfigError(Exception):
    """Raised when configuration validation fails."""
    pass


@dataclass
class EstimationConfig:
    """
    Configuration for a session estimation run.

    Attributes:
        chain_count: Independent chains per sampling attempt.
        draws_per_chain: Post-warm-up draws per chain.
        warmup_draws: Warm-up draws per chain.
        attempt_budget: Maximum sampling attempts per session.
        rhat_threshold: A session converges once its diagnostic is below this.
        concurrency: Number of sessions estimated in parallel.
        outlier_z_cutoff: Credible-width z-score at or above which a session
            is excluded from its task's clean set.
        seed: Base seed; attempt seeds are derived from it per session.
        engine: Sampling engine ("cmdstan" or "metropolis").
        discounting_data: CSV trial table for the discounting task.
        risk_ambiguity_data: CSV trial table for the risk/ambiguity task.
        results_dir: Directory for the store and all outputs.
        convergence_params: Per-task override of the parameters whose R-hat
            decides convergence, e.g. ``{"discounting": ["log_discount_rate"]}``.
        show_progress: Whether to show a progress bar while scheduling.
    """

    # Sampler
    chain_count: int = 4
    draws_per_chain: int = 4000
    warmup_draws: int = 2000

    # Convergence-retry
    attempt_budget: int = 100
    rhat_threshold: float = 1.01

    # Scheduling
    concurrency: int = 4

    # Aggregation
    outlier_z_cutoff: float = 1.96

    # Reproducibility
    seed: int = 12345

    engine: str = "cmdstan"

    # Inputs / outputs
    discounting_data: Optional[str] = None
    risk_ambiguity_data: Optional[str] = None
    results_dir: Optional[str] = None

    convergence_params: Dict[str, List[str]] = field(default_factory=dict)
    show_progress: bool = True

    def __post_init__(self):
        """Set defaults that depend on module location and validate."""
        if self.results_dir is None:
            self.results_dir = str(_MODULE_DIR / "results")
        if self.convergence_params is None:
            self.convergence_params = {}

        self.validate()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> List[str]:
        """
        Validate configuration values.

        Returns:
            List of warning strings (empty if no warnings).

        Raises:
            ConfigError: On hard validation failures.
        """
        from .model_definitions import Task, get_model

        warnings: List[str] = []

        # Hard constraints
        if self.chain_count < 2:
            raise ConfigError("chain_count must be ≥ 2 (R-hat needs several chains)")
        if self.draws_per_chain < 1:
            raise ConfigError("draws_per_chain must be ≥ 1")
        if self.warmup_draws < 0:
            raise ConfigError("warmup_draws must be ≥ 0")
        if self.attempt_budget < 1:
            raise ConfigError("attempt_budget must be ≥ 1")
        if self.rhat_threshold <= 1.0:
            raise ConfigError("rhat_threshold must be > 1.0")
        if self.concurrency < 1:
            raise ConfigError("concurrency must be ≥ 1")
        if self.outlier_z_cutoff <= 0:
            raise ConfigError("outlier_z_cutoff must be > 0")
        if self.engine not in ("cmdstan", "metropolis"):
            raise ConfigError(f"Unknown engine: {self.engine}")

        for task_name, params in self.convergence_params.items():
            try:
                get_model(Task(task_name)).with_convergence_params(params)
            except ValueError as e:
                raise ConfigError(f"convergence_params[{task_name!r}]: {e}") from e

        # Soft warnings
        if self.draws_per_chain < 1000:
            warnings.append(
                f"draws_per_chain={self.draws_per_chain} is low; "
                "R-hat estimates will be noisy"
            )
        if self.rhat_threshold > 1.1:
            warnings.append(
                f"rhat_threshold={self.rhat_threshold} is lenient; "
                "1.01 is the usual acceptance level"
            )
        if self.discounting_data is None and self.risk_ambiguity_data is None:
            warnings.append("No trial tables configured; nothing to estimate")

        for w in warnings:
            logger.warning(w)

        return warnings

    # ------------------------------------------------------------------
    # Derived settings
    # ------------------------------------------------------------------

    def task_data(self) -> Dict[str, str]:
        """Configured trial tables keyed by task name."""
        out = {}
        if self.discounting_data:
            out["discounting"] = self.discounting_data
        if self.risk_ambiguity_data:
            out["risk_ambiguity"] = self.risk_ambiguity_data
        return out

    def sampler_config(self):
        from .sampling import SamplerConfig

        return SamplerConfig(
            chains=self.chain_count,
            draws=self.draws_per_chain,
            warmup=self.warmup_draws,
        )

    def model_for(self, task):
        """Model spec for ``task`` with any configured convergence override."""
        from .model_definitions import Task, get_model

        task = Task(task)
        model = get_model(task)
        override = self.convergence_params.get(task.value)
        if override:
            model = model.with_convergence_params(override)
        return model

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to plain dict (for JSON serialization)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EstimationConfig":
        """Create from a dict, ignoring unknown keys."""
        known_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in d.items() if k in known_fields}
        return cls(**filtered)

    @classmethod
    def from_yaml(cls, path: Optional[str | Path] = None) -> "EstimationConfig":
        """
        Load configuration from a YAML file.

        Args:
            path: Path to YAML file.  Falls back to the default
                  ``configs/estimation_config.yaml`` shipped with the module.

        Returns:
            Validated EstimationConfig instance.
        """
        path = Path(path) if path else DEFAULT_CONFIG_PATH
        if not path.exists():
            logger.warning(
                "Config file %s not found; using defaults", path
            )
            return cls()

        with open(path) as f:
            raw = yaml.safe_load(f) or {}

        logger.info("Loaded config from %s", path)
        return cls.from_dict(raw)

    def save_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
        logger.info("Saved config to %s", path)
