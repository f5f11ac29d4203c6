"""Base interfaces and utilities for evaluation harnesses."""
from __future__ import annotations

import concurrent.futures
import hashlib
import itertools
import json
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Mapping, Sequence
from uuid import uuid4

from ..space import ParameterSpace


def encoded_digest(values: Sequence[float]) -> str:
    canonical = json.dumps([float(value) for value in values])
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:10]


class EvalError(Exception):
    """Base class for failures confined to a single evaluation."""

    status = "error"

    @property
    def reason(self) -> str:
        return str(self)


class NonZeroExit(EvalError):
    def __init__(self, code: int, stderr: str = "") -> None:
        super().__init__(f"non_zero_exit:{code}")
        self.code = code
        self.stderr = stderr


class EvalTimeout(EvalError):
    status = "timeout"

    def __init__(self, timeout: float | None) -> None:
        super().__init__("trial_timeout")
        self.timeout = timeout


class ParseFailure(EvalError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"parse_failure:{detail}")
        self.detail = detail


class ExecutionFailure(EvalError):
    """An in-process objective raised an exception."""

    def __init__(self, error: BaseException) -> None:
        super().__init__(f"exception:{error.__class__.__name__}")
        self.error = error


class EvaluationStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class InvocationIdentity:
    """Collision-free name of one evaluation attempt."""

    namespace: str
    counter: int
    digest: str

    @property
    def token(self) -> str:
        return f"{self.namespace}-{self.counter:06d}-{self.digest}"

    def __str__(self) -> str:
        return self.token


class IdentityAllocator:
    """Hand out identities from a thread-safe, monotonically increasing counter.

    The namespace is random per allocator so that two harnesses sharing a
    working directory cannot produce the same token; the counter separates
    evaluations inside one harness, including repeated or concurrent
    evaluations of the same point.
    """

    def __init__(self, namespace: str | None = None) -> None:
        self.namespace = namespace or uuid4().hex[:8]
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def allocate(self, encoded: Sequence[float]) -> InvocationIdentity:
        digest = encoded_digest(encoded)
        with self._lock:
            counter = next(self._counter)
        return InvocationIdentity(self.namespace, counter, digest)


@dataclass(frozen=True)
class EvaluationOutcome:
    """Result of one harness call: either a value or a typed error."""

    identity: InvocationIdentity
    value: float | None
    error: EvalError | None
    exit_status: int | None
    duration: float
    artifact: Path | None = None
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None

    @property
    def status(self) -> EvaluationStatus:
        if self.error is None:
            return EvaluationStatus.OK
        return EvaluationStatus(self.error.status)

    @property
    def reason(self) -> str | None:
        return None if self.error is None else self.error.reason


@dataclass(frozen=True)
class AttemptResult:
    value: float
    exit_status: int | None
    artifact: Path | None


class BaseEvaluator(ABC):
    """Common interface for all evaluation harnesses.

    Subclasses implement :meth:`_run`, which performs one attempt and either
    returns the numeric result or raises an :class:`EvalError`. The base class
    allocates identities, times attempts, applies retries and converts errors
    into :class:`EvaluationOutcome` objects, so :meth:`evaluate` never raises
    for a failed run.
    """

    #: Errors eligible for automatic retries.
    RETRYABLE: tuple[type[EvalError], ...] = (NonZeroExit, EvalTimeout)

    def __init__(
        self,
        space: ParameterSpace,
        *,
        timeout: float | None = None,
        max_retries: int = 0,
        namespace: str | None = None,
    ) -> None:
        self.space = space
        self.timeout = timeout if timeout is None or timeout > 0 else None
        self.max_retries = max(0, int(max_retries))
        self._identities = IdentityAllocator(namespace)

    def allocate_identity(self, point: Mapping[str, Any]) -> InvocationIdentity:
        return self._identities.allocate(self.space.encode(point))

    def evaluate(
        self,
        point: Mapping[str, Any],
        identity: InvocationIdentity | None = None,
    ) -> EvaluationOutcome:
        """Evaluate ``point`` once, retrying transient failures.

        A :class:`~smboloop.space.DomainError` is a caller bug and propagates.
        """

        self.space.check(point)
        identity = identity or self.allocate_identity(point)
        attempts = self.max_retries + 1
        start = time.perf_counter()
        for attempt in range(1, attempts + 1):
            try:
                result = self._run(dict(point), identity, self.timeout)
            except EvalError as exc:
                if isinstance(exc, self.RETRYABLE) and attempt < attempts:
                    identity = self.allocate_identity(point)
                    continue
                return EvaluationOutcome(
                    identity=identity,
                    value=None,
                    error=exc,
                    exit_status=exc.code if isinstance(exc, NonZeroExit) else None,
                    duration=time.perf_counter() - start,
                    artifact=self.artifact_path(identity),
                    attempts=attempt,
                )
            return EvaluationOutcome(
                identity=identity,
                value=result.value,
                error=None,
                exit_status=result.exit_status,
                duration=time.perf_counter() - start,
                artifact=result.artifact,
                attempts=attempt,
            )

        # The loop should always return; this is a safeguard.
        raise RuntimeError("Evaluator execution loop exited unexpectedly.")

    def evaluate_batch(
        self,
        points: Sequence[Mapping[str, Any]],
        *,
        workers: int = 1,
        on_complete: Callable[[Mapping[str, Any], EvaluationOutcome], None] | None = None,
    ) -> List[EvaluationOutcome]:
        """Evaluate a batch, optionally on a bounded thread pool.

        Identities are allocated for the whole batch before any evaluation
        starts. ``on_complete`` runs in the worker thread as soon as each
        evaluation finishes. Outcomes are returned in input order.
        """

        identities = [self.allocate_identity(point) for point in points]

        def _task(point: Mapping[str, Any], identity: InvocationIdentity) -> EvaluationOutcome:
            outcome = self.evaluate(point, identity)
            if on_complete is not None:
                on_complete(point, outcome)
            return outcome

        if workers <= 1 or len(points) <= 1:
            return [_task(point, identity) for point, identity in zip(points, identities)]

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(_task, point, identity)
                for point, identity in zip(points, identities)
            ]
            return [future.result() for future in futures]

    def artifact_path(self, identity: InvocationIdentity) -> Path | None:
        """Location of the artifact written for ``identity``, if any."""

        return None

    def __call__(self, point: Mapping[str, Any]) -> EvaluationOutcome:
        return self.evaluate(point)

    @abstractmethod
    def _run(
        self,
        point: Mapping[str, Any],
        identity: InvocationIdentity,
        timeout: float | None,
    ) -> AttemptResult:
        """Perform a single attempt or raise :class:`EvalError`."""
