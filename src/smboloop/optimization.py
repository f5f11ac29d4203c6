"""SMBO loop, budget accounting and the configuration-driven runner."""
from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

import numpy as np
from pydantic import ValidationError

from .acquisition import build_acquisition
from .config import ConfigError, OptimizationConfig
from .design import DesignGenerator
from .evaluators import BaseEvaluator, EvaluationOutcome, load_evaluator
from .infill import InfillError, InfillOptimizer
from .results import Direction, Observation, ResultLog, ResultSnapshot, write_export
from .space import ParameterSpace, Point, SamplingStrategy
from .surrogate import SurrogateModel, SurrogateState, build_surrogate


StopPredicate = Callable[[ResultLog], bool]


class LoopState(str, Enum):
    INITIALIZING = "initializing"
    EVALUATING = "evaluating"
    FITTING = "fitting"
    PROPOSING = "proposing"
    TERMINATED = "terminated"


class Budget:
    """Remaining iterations and/or a wall-clock allowance.

    Only proposed points consume iterations; ``iterations=None`` leaves the
    count unbounded so the time budget alone ends the run. The clock starts
    on the first call to :meth:`start`; ``clock`` defaults to
    :func:`time.monotonic`.
    """

    def __init__(
        self,
        iterations: int | None,
        time_budget: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if iterations is None and time_budget is None:
            raise ValueError("a budget needs iterations, a time budget, or both")
        if iterations is not None and int(iterations) <= 0:
            raise ValueError("iterations must be a positive integer")
        if time_budget is not None and time_budget <= 0:
            raise ValueError("time_budget must be positive when provided")
        self.iterations = int(iterations) if iterations is not None else None
        self.time_budget = float(time_budget) if time_budget is not None else None
        self._remaining = self.iterations
        self._clock = clock
        self._started: float | None = None

    def start(self) -> None:
        if self._started is None:
            self._started = self._clock()

    @property
    def remaining_iterations(self) -> int | None:
        """Iterations left, or ``None`` when the count is unbounded."""

        return self._remaining

    @property
    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return self._clock() - self._started

    def consume(self, n: int) -> int:
        """Take up to ``n`` iterations and return how many were granted."""

        if self._remaining is None:
            return max(0, int(n))
        granted = max(0, min(int(n), self._remaining))
        self._remaining -= granted
        return granted

    def time_expired(self) -> bool:
        return self.time_budget is not None and self.elapsed >= self.time_budget

    def exhausted_reason(self) -> str | None:
        if self.time_expired():
            return "time_budget"
        if self._remaining is not None and self._remaining <= 0:
            return "iteration_budget"
        return None


def target_reached(target: float, direction: Direction | str = Direction.MINIMIZE) -> StopPredicate:
    """Stop once the best valid value reaches ``target``."""

    direction = Direction(direction)

    def _predicate(log: ResultLog) -> bool:
        best = log.best(direction)
        if best is None:
            return False
        if direction is Direction.MINIMIZE:
            return float(best.value) <= target
        return float(best.value) >= target

    return _predicate


def no_improvement(patience: int, direction: Direction | str = Direction.MINIMIZE) -> StopPredicate:
    """Stop after ``patience`` consecutive observations without a new best."""

    if patience <= 0:
        raise ValueError("patience must be positive")
    direction = Direction(direction)

    def _predicate(log: ResultLog) -> bool:
        history = log.history()
        best = log.best(direction)
        if best is None:
            return len(history) >= patience
        position = next(idx for idx, observation in enumerate(history) if observation is best)
        return len(history) - 1 - position >= patience

    return _predicate


def any_of(*predicates: StopPredicate) -> StopPredicate | None:
    active = [predicate for predicate in predicates if predicate is not None]
    if not active:
        return None
    if len(active) == 1:
        return active[0]

    def _predicate(log: ResultLog) -> bool:
        return any(predicate(log) for predicate in active)

    return _predicate


@dataclass
class OptimizationResult:
    """Container for summarising the optimization run."""

    best_point: Dict[str, Any] | None
    best_value: float | None
    trials_completed: int
    n_failed: int
    failure_fraction: float
    terminated_reason: str
    snapshot: ResultSnapshot
    transitions: List[LoopState] = field(default_factory=list)
    export_path: Path | None = None


class SMBOLoop:
    """Sequential model-based optimization driven by a budget.

    The initial design is evaluated first and does not consume iterations.
    Each following round fits the surrogate, asks the infill optimizer for a
    batch and evaluates it. Failed evaluations are recorded and the loop
    continues; surrogate and infill failures propagate.
    """

    def __init__(
        self,
        space: ParameterSpace,
        evaluator: BaseEvaluator,
        surrogate: SurrogateModel,
        infill: InfillOptimizer,
        budget: Budget,
        *,
        rng: np.random.Generator,
        design_size: int | None = None,
        design_strategy: SamplingStrategy | str = SamplingStrategy.LHS,
        design_resolution: int | None = None,
        direction: Direction | str = Direction.MINIMIZE,
        stop_predicate: StopPredicate | None = None,
        batch_size: int = 1,
        refit_every: int = 1,
        workers: int = 1,
        verbose: bool = True,
        result_log: ResultLog | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be a positive integer")
        if refit_every < 1:
            raise ValueError("refit_every must be a positive integer")
        self.space = space
        self.evaluator = evaluator
        self.surrogate = surrogate
        self.infill = infill
        self.budget = budget
        self.direction = Direction(direction)
        self.stop_predicate = stop_predicate
        self.batch_size = int(batch_size)
        self.refit_every = int(refit_every)
        self.workers = max(1, int(workers))
        self.verbose = verbose
        self.log = result_log if result_log is not None else ResultLog()
        self.transitions: List[LoopState] = []
        self.terminated_reason: str | None = None

        self._rng = rng
        self._design = DesignGenerator(rng)
        self._design_size = design_size
        self._design_strategy = SamplingStrategy(design_strategy)
        self._design_resolution = design_resolution
        self._trial_counter = itertools.count()
        self._record_lock = threading.Lock()

    @property
    def state(self) -> LoopState | None:
        return self.transitions[-1] if self.transitions else None

    def run(self) -> OptimizationResult:
        if self.state is not None:
            raise RuntimeError("SMBOLoop instances run once")

        self.budget.start()
        self._enter(LoopState.INITIALIZING)
        design = self._design.initial_design(
            self.space,
            self._design_size,
            self._design_strategy,
            resolution=self._design_resolution,
        )
        self._say(f"[loop] initial design: {len(design)} points ({self._design_strategy.value})")

        self._enter(LoopState.EVALUATING)
        self._evaluate(design, source="design")

        surrogate_state: SurrogateState | None = None
        rounds = 0
        while True:
            reason = self._termination_reason()
            if reason is not None:
                self.terminated_reason = reason
                break

            self._enter(LoopState.FITTING)
            if self.log.valid():
                if surrogate_state is None or rounds % self.refit_every == 0:
                    surrogate_state = self.surrogate.fit(self.log.history())
            else:
                surrogate_state = None

            self._enter(LoopState.PROPOSING)
            n = self.budget.consume(self.batch_size)
            if surrogate_state is None:
                print("[warning] No successful evaluations yet; proposing random points.")
                points = self.space.sample(n, SamplingStrategy.UNIFORM, self._rng)
                source = "fallback"
            else:
                points = self.infill.propose(surrogate_state, self.space, n)
                source = "infill"
            if not points:
                raise InfillError("infill optimizer proposed no points")
            rounds += 1

            self._enter(LoopState.EVALUATING)
            self._evaluate(points, source=source)

        self._enter(LoopState.TERMINATED)
        snapshot = self.log.export(self.direction)
        best = snapshot.best
        if best is not None:
            self._say(
                f"[loop] terminated ({self.terminated_reason}) after {snapshot.n_observations} "
                f"evaluations; best={best.value:.6g} at trial {best.trial}"
            )
        else:
            print(
                f"[warning] Run terminated ({self.terminated_reason}) without any successful evaluation."
            )
        return OptimizationResult(
            best_point=dict(best.point) if best is not None else None,
            best_value=best.value if best is not None else None,
            trials_completed=snapshot.n_observations,
            n_failed=snapshot.n_failed,
            failure_fraction=snapshot.failure_fraction,
            terminated_reason=str(self.terminated_reason),
            snapshot=snapshot,
            transitions=list(self.transitions),
        )

    def _termination_reason(self) -> str | None:
        reason = self.budget.exhausted_reason()
        if reason is not None:
            return reason
        if self.stop_predicate is not None and self.stop_predicate(self.log):
            return "stop_predicate"
        return None

    def _evaluate(self, points: Sequence[Point], *, source: str) -> None:
        """Evaluate a batch; sequential batches stop early once time runs out."""

        if self.workers > 1:
            self.evaluator.evaluate_batch(
                points,
                workers=self.workers,
                on_complete=lambda point, outcome: self._record(point, outcome, source),
            )
            return

        for point in points:
            if self.budget.time_expired():
                return
            self._record(point, self.evaluator.evaluate(point), source)

    def _record(self, point: Mapping[str, Any], outcome: EvaluationOutcome, source: str) -> None:
        with self._record_lock:
            observation = Observation.from_outcome(
                next(self._trial_counter), point, outcome, source=source
            )
            self.log.append(observation)
        if observation.failed:
            print(
                f"[warning] Trial {observation.trial} ({source}) failed: {observation.metadata.reason}"
            )
        else:
            self._say(
                f"[loop] trial {observation.trial} ({source}): value={observation.value:.6g} "
                f"[{outcome.duration:.2f}s]"
            )

    def _enter(self, state: LoopState) -> None:
        self.transitions.append(state)

    def _say(self, message: str) -> None:
        if self.verbose:
            print(message)


def run_optimization(config: OptimizationConfig | Mapping[str, Any]) -> OptimizationResult:
    """Execute the optimization loop using the provided configuration."""

    if not isinstance(config, OptimizationConfig):
        try:
            config = OptimizationConfig.model_validate(dict(config))
        except ValidationError as exc:
            raise ConfigError(f"Configuration validation failed:\n{exc}") from exc

    seed = config.run.seed
    rng = np.random.default_rng(seed)
    direction = Direction(config.direction)
    space = ParameterSpace.from_config(config.search_space)
    verbose = config.verbose

    evaluator = load_evaluator(config.evaluator.model_dump(), space, verbose=verbose)
    surrogate = build_surrogate(config.surrogate.model_dump(), space, seed=seed)
    infill_cfg = config.infill
    infill = InfillOptimizer(
        surrogate,
        build_acquisition(infill_cfg.model_dump()),
        rng,
        direction=direction,
        n_candidates=infill_cfg.n_candidates,
        n_trials=infill_cfg.n_trials,
        n_starts=infill_cfg.n_starts,
        tolerance=infill_cfg.tolerance,
    )

    stopping = config.stopping
    stop_predicate = any_of(
        target_reached(stopping.target_value, direction) if stopping.target_value is not None else None,
        no_improvement(stopping.no_improve_patience, direction)
        if stopping.no_improve_patience is not None
        else None,
    )

    loop = SMBOLoop(
        space,
        evaluator,
        surrogate,
        infill,
        Budget(config.run.iterations, config.run.time_budget_seconds),
        rng=rng,
        design_size=config.design.size,
        design_strategy=config.design.strategy,
        design_resolution=config.design.resolution,
        direction=direction,
        stop_predicate=stop_predicate,
        batch_size=infill_cfg.batch_size,
        refit_every=config.surrogate.refit_every,
        workers=config.evaluator.workers,
        verbose=verbose,
    )
    result = loop.run()

    result.export_path = write_export(
        config.export.path,
        result.snapshot,
        include_history=config.export.include_history,
        extra={
            "name": config.metadata.name,
            "seed": seed,
            "terminated_reason": result.terminated_reason,
            "search_space": space.describe(),
        },
    )
    if verbose:
        best = "n/a" if result.best_value is None else f"{result.best_value:.6g}"
        failure_pct = 100.0 * result.failure_fraction
        print(
            f"[loop] {result.trials_completed} evaluations, {result.n_failed} failed "
            f"({failure_pct:.1f}%), best={best}; wrote {result.export_path}"
        )
    return result


__all__ = [
    "Budget",
    "LoopState",
    "OptimizationResult",
    "SMBOLoop",
    "StopPredicate",
    "any_of",
    "no_improvement",
    "run_optimization",
    "target_reached",
]
