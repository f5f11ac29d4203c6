"""Evaluator package exports."""

from typing import Any, Mapping

from ..space import ParameterSpace
from .base import (
    AttemptResult,
    BaseEvaluator,
    EvalError,
    EvalTimeout,
    EvaluationOutcome,
    EvaluationStatus,
    ExecutionFailure,
    IdentityAllocator,
    InvocationIdentity,
    NonZeroExit,
    ParseFailure,
)
from .command import ArgumentStyle, CommandEvaluator
from .extractors import (
    Extractor,
    JsonExtractor,
    KeyValueExtractor,
    PatternExtractor,
    TableExtractor,
    build_extractor,
)
from .python import CallableEvaluator, load_objective


def load_evaluator(
    config: Mapping[str, Any],
    space: ParameterSpace,
    *,
    verbose: bool = False,
) -> BaseEvaluator:
    """Build the harness described by an ``evaluator`` configuration section."""

    timeout = config.get("timeout_sec")
    max_retries = int(config.get("max_retries") or 0)
    python_target = config.get("python")
    if python_target:
        module, _, attribute = str(python_target).partition(":")
        return CallableEvaluator(
            space,
            load_objective(module, attribute),
            metric=config.get("metric"),
            timeout=timeout,
            max_retries=max_retries,
        )

    return CommandEvaluator(
        space,
        list(config["command"]),
        extractor=build_extractor(config.get("extractor") or {}),
        workdir=config.get("workdir") or "runs/artifacts",
        argument_style=config.get("argument_style") or ArgumentStyle.TEMPLATE,
        timeout=timeout,
        max_retries=max_retries,
        cleanup=bool(config.get("cleanup", False)),
        env=config.get("env"),
        cwd=config.get("cwd"),
        verbose=verbose,
    )


__all__ = [
    "ArgumentStyle",
    "AttemptResult",
    "BaseEvaluator",
    "CallableEvaluator",
    "CommandEvaluator",
    "EvalError",
    "EvalTimeout",
    "EvaluationOutcome",
    "EvaluationStatus",
    "ExecutionFailure",
    "Extractor",
    "IdentityAllocator",
    "InvocationIdentity",
    "JsonExtractor",
    "KeyValueExtractor",
    "NonZeroExit",
    "ParseFailure",
    "PatternExtractor",
    "TableExtractor",
    "build_extractor",
    "load_evaluator",
    "load_objective",
]
