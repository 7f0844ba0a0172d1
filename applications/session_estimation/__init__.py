"""
Session Estimation Module

Per-session Bayesian estimation of hyperbolic discounting and
risk/ambiguity parameters, retried until the chains converge, followed by
credible-width outlier filtering and a cross-task join.
"""
import logging

# Configure module-level logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

from .config import EstimationConfig, ConfigError
from .model_definitions import (
    Task,
    ParameterSpec,
    ModelSpec,
    HYPERBOLIC_DISCOUNTING,
    RISK_AMBIGUITY,
    get_model,
)
from .data_preparation import Session, SessionKey, SessionDataError, sessions_from_frame
from .sampling import (
    SamplingEngine,
    CmdStanEngine,
    MetropolisEngine,
    SamplerConfig,
    SamplerFailure,
    create_engine,
)
from .retry_runner import (
    ConvergenceRetryRunner,
    FitResult,
    NoUsableAttemptError,
    RunnerState,
)
from .store import (
    CsvResultStore,
    DuplicateKeyError,
    InMemoryResultStore,
    ResultStore,
    StoreCorruptionError,
)
from .scheduler import JobScheduler
from .aggregation import aggregate_task, join_tasks
from .pipeline import EstimationPipeline

__all__ = [
    "EstimationConfig",
    "ConfigError",
    "Task",
    "ParameterSpec",
    "ModelSpec",
    "HYPERBOLIC_DISCOUNTING",
    "RISK_AMBIGUITY",
    "get_model",
    "Session",
    "SessionKey",
    "SessionDataError",
    "sessions_from_frame",
    "SamplingEngine",
    "CmdStanEngine",
    "MetropolisEngine",
    "SamplerConfig",
    "SamplerFailure",
    "create_engine",
    "ConvergenceRetryRunner",
    "FitResult",
    "NoUsableAttemptError",
    "RunnerState",
    "ResultStore",
    "InMemoryResultStore",
    "CsvResultStore",
    "DuplicateKeyError",
    "StoreCorruptionError",
    "JobScheduler",
    "aggregate_task",
    "join_tasks",
    "EstimationPipeline",
]

__version__ = "0.1.0"
