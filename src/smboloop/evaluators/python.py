"""In-process evaluation of plain Python objectives."""
from __future__ import annotations

import concurrent.futures
import importlib
import math
from typing import Any, Callable, Mapping

from ..space import ParameterSpace
from .base import (
    AttemptResult,
    BaseEvaluator,
    EvalTimeout,
    ExecutionFailure,
    InvocationIdentity,
    ParseFailure,
)


Objective = Callable[[Mapping[str, Any]], Any]


class CallableEvaluator(BaseEvaluator):
    """Evaluate points with a Python callable.

    The callable receives the point and returns either a number or a mapping
    that holds the number under ``metric``. Exceptions become
    :class:`ExecutionFailure` outcomes. With a timeout the call runs on a
    worker thread; a call that overruns is reported as a timeout but, unlike a
    subprocess, cannot be forcibly stopped.
    """

    def __init__(
        self,
        space: ParameterSpace,
        objective: Objective,
        *,
        metric: str | None = None,
        timeout: float | None = None,
        max_retries: int = 0,
        namespace: str | None = None,
    ) -> None:
        super().__init__(space, timeout=timeout, max_retries=max_retries, namespace=namespace)
        self.objective = objective
        self.metric = metric

    def _run(
        self,
        point: Mapping[str, Any],
        identity: InvocationIdentity,
        timeout: float | None,
    ) -> AttemptResult:
        raw = self._invoke(point, timeout)
        if isinstance(raw, Mapping):
            if self.metric is None or self.metric not in raw:
                raise ParseFailure(f"metric {self.metric!r} missing from result")
            raw = raw[self.metric]
        try:
            value = float(raw)
        except (TypeError, ValueError) as exc:
            raise ParseFailure(f"not a number: {raw!r}") from exc
        if math.isnan(value) or math.isinf(value):
            raise ParseFailure(f"non-finite value {value!r}")
        return AttemptResult(value=value, exit_status=0, artifact=None)

    def _invoke(self, point: Mapping[str, Any], timeout: float | None) -> Any:
        if timeout is None:
            try:
                return self.objective(point)
            except Exception as exc:  # noqa: BLE001 - objective failures are per-evaluation
                raise ExecutionFailure(exc) from exc

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = executor.submit(self.objective, point)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise EvalTimeout(timeout) from exc
        except Exception as exc:  # noqa: BLE001 - objective failures are per-evaluation
            raise ExecutionFailure(exc) from exc
        finally:
            executor.shutdown(wait=False)


def load_objective(module: str, attribute: str) -> Objective:
    """Import ``module`` and return its ``attribute`` callable."""

    target = getattr(importlib.import_module(module), attribute)
    if not callable(target):
        raise TypeError(f"{module}.{attribute} is not callable")
    return target


__all__ = ["CallableEvaluator", "Objective", "load_objective"]
