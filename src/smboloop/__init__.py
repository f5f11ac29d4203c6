"""Sequential model-based optimization of expensive external programs."""

from .config import ConfigError, OptimizationConfig, load_config, parse_run_config
from .design import DesignClampWarning, DesignGenerator, initial_design
from .evaluators import (
    CallableEvaluator,
    CommandEvaluator,
    EvalError,
    EvalTimeout,
    EvaluationOutcome,
    NonZeroExit,
    ParseFailure,
)
from .infill import InfillError, InfillOptimizer
from .optimization import Budget, LoopState, OptimizationResult, SMBOLoop, run_optimization
from .results import Direction, Observation, ResultLog, ResultSnapshot
from .space import DomainError, Parameter, ParameterSpace, SamplingStrategy
from .surrogate import GaussianProcessSurrogate, RandomForestSurrogate, SurrogateFitError

__all__ = [
    "Budget",
    "CallableEvaluator",
    "CommandEvaluator",
    "ConfigError",
    "DesignClampWarning",
    "DesignGenerator",
    "Direction",
    "DomainError",
    "EvalError",
    "EvalTimeout",
    "EvaluationOutcome",
    "GaussianProcessSurrogate",
    "InfillError",
    "InfillOptimizer",
    "LoopState",
    "NonZeroExit",
    "Observation",
    "OptimizationConfig",
    "OptimizationResult",
    "Parameter",
    "ParameterSpace",
    "ParseFailure",
    "RandomForestSurrogate",
    "ResultLog",
    "ResultSnapshot",
    "SMBOLoop",
    "SamplingStrategy",
    "SurrogateFitError",
    "initial_design",
    "load_config",
    "parse_run_config",
    "run_optimization",
]
