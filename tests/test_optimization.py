"""Tests for the SMBO loop, its budget and the configuration-driven runner."""
from __future__ import annotations

import contextlib
import io
import json
import math
import sys
import tempfile
import unittest
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import numpy as np

from smboloop.acquisition import ExpectedImprovement
from smboloop.evaluators import CallableEvaluator
from smboloop.infill import InfillOptimizer
from smboloop.optimization import (
    Budget,
    LoopState,
    SMBOLoop,
    any_of,
    no_improvement,
    run_optimization,
    target_reached,
)
from smboloop.results import Direction, EvaluationMetadata, Observation, ResultLog
from smboloop.space import Parameter, ParameterSpace
from smboloop.surrogate import GaussianProcessSurrogate, SurrogateFitError

FIXTURES = Path(__file__).parent / "fixtures"
FIXTURE = str(FIXTURES / "objective_program.py")
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def sine_paraboloid(point) -> float:
    return math.sin(point["x1"] - 1.0) + point["x1"] ** 2 + point["x2"] ** 2


def make_space() -> ParameterSpace:
    return ParameterSpace(
        [Parameter.continuous("x1", -3.0, 3.0), Parameter.continuous("x2", -2.5, 2.5)]
    )


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FailingSurrogate:
    def __init__(self, space: ParameterSpace) -> None:
        self.space = space

    def fit(self, observations):
        raise SurrogateFitError("singular design")

    def predict_encoded(self, X, state):  # pragma: no cover - never reached
        raise AssertionError

    def predict(self, points, state):  # pragma: no cover - never reached
        raise AssertionError


def build_loop(
    objective,
    *,
    iterations: int | None = 3,
    time_budget: float | None = None,
    clock=None,
    design_size: int = 3,
    batch_size: int = 1,
    surrogate=None,
    seed: int = 0,
    **kwargs,
) -> SMBOLoop:
    space = make_space()
    rng = np.random.default_rng(seed)
    surrogate = surrogate or GaussianProcessSurrogate(space, random_state=seed, n_restarts=0)
    infill = InfillOptimizer(surrogate, ExpectedImprovement(), rng, n_candidates=64, n_trials=4)
    budget_kwargs = {"clock": clock} if clock is not None else {}
    return SMBOLoop(
        space,
        CallableEvaluator(space, objective),
        surrogate,
        infill,
        Budget(iterations, time_budget, **budget_kwargs),
        rng=rng,
        design_size=design_size,
        design_strategy="lhs",
        batch_size=batch_size,
        verbose=False,
        **kwargs,
    )


class BudgetTests(unittest.TestCase):
    def test_consume_never_goes_negative(self) -> None:
        budget = Budget(3)
        self.assertEqual(budget.consume(2), 2)
        self.assertEqual(budget.consume(2), 1)
        self.assertEqual(budget.remaining_iterations, 0)
        self.assertEqual(budget.exhausted_reason(), "iteration_budget")

    def test_time_budget_uses_clock(self) -> None:
        clock = FakeClock()
        budget = Budget(10, 5.0, clock=clock)
        budget.start()
        clock.now = 4.9
        self.assertIsNone(budget.exhausted_reason())
        clock.now = 5.0
        self.assertEqual(budget.exhausted_reason(), "time_budget")

    def test_invalid_budget_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Budget(0)
        with self.assertRaises(ValueError):
            Budget(5, 0.0)
        with self.assertRaises(ValueError):
            Budget(None)

    def test_time_only_budget_never_runs_out_of_iterations(self) -> None:
        clock = FakeClock()
        budget = Budget(None, 2.0, clock=clock)
        budget.start()
        self.assertIsNone(budget.remaining_iterations)
        self.assertEqual(budget.consume(1000), 1000)
        self.assertIsNone(budget.exhausted_reason())
        clock.now = 2.0
        self.assertEqual(budget.exhausted_reason(), "time_budget")


class StopPredicateTests(unittest.TestCase):
    def _log(self, values) -> ResultLog:
        log = ResultLog()
        for trial, value in enumerate(values):
            log.append(
                Observation(
                    trial=trial,
                    point={"x1": 0.0, "x2": 0.0},
                    value=value,
                    timestamp=T0 + timedelta(seconds=trial),
                    metadata=EvaluationMetadata(f"t-{trial}", "ok", 0, 0.0, None),
                )
            )
        return log

    def test_target_reached(self) -> None:
        log = self._log([3.0, 1.0])
        self.assertTrue(target_reached(1.0)(log))
        self.assertFalse(target_reached(0.5)(log))
        self.assertTrue(target_reached(2.5, Direction.MAXIMIZE)(log))

    def test_no_improvement_counts_since_best(self) -> None:
        log = self._log([3.0, 1.0, 2.0, 4.0])
        self.assertTrue(no_improvement(2)(log))
        self.assertFalse(no_improvement(3)(log))

    def test_any_of(self) -> None:
        self.assertIsNone(any_of(None, None))
        log = self._log([3.0])
        self.assertTrue(any_of(target_reached(10.0), no_improvement(5))(log))


class SMBOLoopTests(unittest.TestCase):
    def test_iteration_budget_counts_proposals_only(self) -> None:
        loop = build_loop(sine_paraboloid, iterations=5, batch_size=2)
        result = loop.run()
        sources = Counter(observation.source for observation in result.snapshot.observations)
        self.assertEqual(sources, Counter({"design": 3, "infill": 5}))
        self.assertEqual(result.terminated_reason, "iteration_budget")
        self.assertEqual(result.trials_completed, 8)
        self.assertEqual(
            [obs.trial for obs in result.snapshot.observations], list(range(8))
        )

    def test_state_transitions(self) -> None:
        loop = build_loop(sine_paraboloid, iterations=2)
        result = loop.run()
        self.assertEqual(
            result.transitions,
            [
                LoopState.INITIALIZING,
                LoopState.EVALUATING,
                LoopState.FITTING,
                LoopState.PROPOSING,
                LoopState.EVALUATING,
                LoopState.FITTING,
                LoopState.PROPOSING,
                LoopState.EVALUATING,
                LoopState.TERMINATED,
            ],
        )
        self.assertIs(loop.state, LoopState.TERMINATED)
        with self.assertRaises(RuntimeError):
            loop.run()

    def test_time_budget_stops_within_one_batch(self) -> None:
        clock = FakeClock()

        def slow_objective(point) -> float:
            clock.now += 1.0
            return sine_paraboloid(point)

        loop = build_loop(
            slow_objective, iterations=100, time_budget=5.5, clock=clock, batch_size=4
        )
        result = loop.run()
        self.assertEqual(result.terminated_reason, "time_budget")
        self.assertEqual(result.trials_completed, 6)
        self.assertLessEqual(result.trials_completed, 3 + 4)

    def test_time_only_budget_ends_run(self) -> None:
        clock = FakeClock()

        def slow_objective(point) -> float:
            clock.now += 1.0
            return sine_paraboloid(point)

        loop = build_loop(slow_objective, iterations=None, time_budget=8.5, clock=clock)
        result = loop.run()
        self.assertEqual(result.terminated_reason, "time_budget")
        self.assertEqual(result.trials_completed, 9)
        self.assertIsNone(loop.budget.remaining_iterations)

    def test_time_budget_can_expire_during_initial_design(self) -> None:
        clock = FakeClock()

        def slow_objective(point) -> float:
            clock.now += 10.0
            return 1.0

        loop = build_loop(slow_objective, iterations=10, time_budget=15.0, clock=clock, design_size=6)
        result = loop.run()
        self.assertEqual(result.trials_completed, 2)
        self.assertEqual(result.terminated_reason, "time_budget")
        self.assertNotIn(LoopState.FITTING, result.transitions)

    def test_failed_evaluations_are_recorded_and_loop_continues(self) -> None:
        def flaky(point) -> float:
            if point["x1"] > 0.0:
                raise RuntimeError("solver diverged")
            return sine_paraboloid(point)

        stdout = io.StringIO()
        with contextlib.redirect_stdout(stdout):
            result = build_loop(flaky, iterations=4, design_size=6).run()
        self.assertEqual(result.trials_completed, 10)
        self.assertGreater(result.n_failed, 0)
        self.assertAlmostEqual(result.failure_fraction, result.n_failed / 10)
        self.assertIsNotNone(result.best_value)
        self.assertLessEqual(result.best_point["x1"], 0.0)
        failed = [obs for obs in result.snapshot.observations if obs.failed]
        self.assertTrue(all(obs.metadata.reason == "exception:RuntimeError" for obs in failed))
        self.assertIn("[warning]", stdout.getvalue())

    def test_all_failures_fall_back_to_random_proposals(self) -> None:
        def broken(point) -> float:
            raise ValueError("no licence")

        with contextlib.redirect_stdout(io.StringIO()):
            result = build_loop(broken, iterations=3, surrogate=None).run()
        self.assertIsNone(result.best_value)
        self.assertIsNone(result.best_point)
        self.assertEqual(result.failure_fraction, 1.0)
        sources = Counter(observation.source for observation in result.snapshot.observations)
        self.assertEqual(sources, Counter({"design": 3, "fallback": 3}))

    def test_surrogate_failure_is_fatal(self) -> None:
        space = make_space()
        loop = build_loop(sine_paraboloid, surrogate=FailingSurrogate(space))
        with self.assertRaises(SurrogateFitError):
            loop.run()

    def test_stop_predicate_ends_run_after_design(self) -> None:
        loop = build_loop(sine_paraboloid, iterations=10, stop_predicate=target_reached(100.0))
        result = loop.run()
        self.assertEqual(result.terminated_reason, "stop_predicate")
        self.assertEqual(result.trials_completed, 3)

    def test_parallel_batches_record_every_outcome(self) -> None:
        loop = build_loop(sine_paraboloid, iterations=4, batch_size=4, workers=4)
        result = loop.run()
        self.assertEqual(result.trials_completed, 7)
        self.assertEqual(
            sorted(obs.trial for obs in result.snapshot.observations), list(range(7))
        )


class RunOptimizationTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def make_config(self, **overrides) -> dict:
        config = {
            "metadata": {"name": "sine-paraboloid"},
            "direction": "minimize",
            "run": {"iterations": 10, "seed": 7},
            "search_space": {
                "x1": {"type": "float", "low": -3.0, "high": 3.0},
                "x2": {"type": "float", "low": -2.5, "high": 2.5},
            },
            "design": {"strategy": "grid", "resolution": 3},
            "evaluator": {
                "command": [sys.executable, FIXTURE, "--x1", "{x1}", "--x2", "{x2}", "--out", "{output}"],
                "workdir": str(self.root / "artifacts"),
                "timeout_sec": 60,
                "extractor": {"kind": "keyvalue", "field": "objective"},
            },
            "infill": {"n_candidates": 256, "n_trials": 16},
            "export": {"path": str(self.root / "result.json")},
            "verbose": False,
        }
        config.update(overrides)
        return config

    def test_end_to_end_grid_then_ten_proposals(self) -> None:
        result = run_optimization(self.make_config())

        design = [obs for obs in result.snapshot.observations if obs.source == "design"]
        proposed = [obs for obs in result.snapshot.observations if obs.source == "infill"]
        self.assertEqual(len(design), 9)
        grid_points = {(obs.point["x1"], obs.point["x2"]) for obs in design}
        self.assertEqual(
            grid_points,
            {(x1, x2) for x1 in (-3.0, 0.0, 3.0) for x2 in (-2.5, 0.0, 2.5)},
        )
        self.assertEqual(len(proposed), 10)
        self.assertEqual(result.n_failed, 0)
        for obs in design + proposed:
            self.assertAlmostEqual(obs.value, sine_paraboloid(obs.point), places=9)
        self.assertLessEqual(result.best_value, min(obs.value for obs in design))
        self.assertEqual(result.terminated_reason, "iteration_budget")

        payload = json.loads(result.export_path.read_text(encoding="utf-8"))
        self.assertEqual(payload["name"], "sine-paraboloid")
        self.assertEqual(payload["best"]["value"], result.best_value)
        self.assertEqual(len(payload["history"]), 19)
        self.assertEqual(payload["failures"]["count"], 0)

    def test_non_zero_exit_is_recorded_and_run_finishes(self) -> None:
        config = self.make_config(run={"iterations": 3, "seed": 1})
        config["evaluator"]["command"] += ["--fail-above", "1.0"]
        with contextlib.redirect_stdout(io.StringIO()):
            result = run_optimization(config)
        failed = [obs for obs in result.snapshot.observations if obs.failed]
        self.assertGreaterEqual(len(failed), 3)
        self.assertTrue(all(obs.metadata.exit_status == 1 for obs in failed))
        self.assertTrue(all(obs.metadata.reason == "non_zero_exit:1" for obs in failed))
        self.assertEqual(result.trials_completed, 12)
        self.assertIsNotNone(result.best_value)

    def test_maximize_with_python_objective(self) -> None:
        config = self.make_config(
            direction="maximize",
            run={"iterations": 4, "seed": 3},
            design={"strategy": "lhs", "size": 5},
            evaluator={"python": "objectives:reward", "metric": "reward"},
            export={"path": str(self.root / "max.json"), "include_history": False},
        )
        with mock.patch.object(sys, "path", [str(FIXTURES), *sys.path]):
            result = run_optimization(config)
        values = [obs.value for obs in result.snapshot.observations]
        self.assertEqual(len(values), 9)
        self.assertEqual(result.best_value, max(values))
        self.assertAlmostEqual(result.best_value, -sine_paraboloid(result.best_point))
        payload = json.loads(result.export_path.read_text(encoding="utf-8"))
        self.assertNotIn("history", payload)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
