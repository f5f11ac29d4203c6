"""Infill optimization: choose the next points by maximizing an acquisition score."""
from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np
import optuna
from optuna.trial import TrialState

from .acquisition import AcquisitionFunction
from .results import Direction
from .space import ParameterSpace, Point, SamplingStrategy
from .surrogate import SurrogateModel, SurrogateState


class InfillError(RuntimeError):
    """Raised when no candidate point could be scored."""


class InfillOptimizer:
    """Search the cheap surrogate for the most promising points.

    A batch of uniform random candidates is scored first. The best of them
    seed an in-memory optuna study that keeps searching the acquisition
    surface. Points are then picked greedily from everything scored; among
    candidates whose score is within ``tolerance`` of the best remaining one,
    the point farthest from all evaluated and already chosen points wins.
    """

    def __init__(
        self,
        surrogate: SurrogateModel,
        acquisition: AcquisitionFunction,
        rng: np.random.Generator,
        *,
        direction: Direction | str = Direction.MINIMIZE,
        n_candidates: int = 512,
        n_trials: int = 32,
        n_starts: int = 4,
        tolerance: float = 1e-9,
    ) -> None:
        if n_candidates < 1:
            raise ValueError("n_candidates must be positive")
        self.surrogate = surrogate
        self.acquisition = acquisition
        self.direction = Direction(direction)
        self.n_candidates = int(n_candidates)
        self.n_trials = max(0, int(n_trials))
        self.n_starts = max(0, int(n_starts))
        self.tolerance = float(tolerance)
        self._rng = rng
        optuna.logging.set_verbosity(optuna.logging.WARNING)

    @property
    def _sign(self) -> float:
        return 1.0 if self.direction is Direction.MINIMIZE else -1.0

    def propose(self, state: SurrogateState, space: ParameterSpace, n: int = 1) -> List[Point]:
        if n < 1:
            return []
        incumbent = float(np.min(self._sign * state.y))

        candidates = space.sample(self.n_candidates, SamplingStrategy.UNIFORM, self._rng)
        scores = self._score(candidates, state, space, incumbent)
        refined, refined_scores = self._refine(candidates, scores, state, space, incumbent)

        pool = candidates + refined
        pool_scores = np.concatenate([scores, refined_scores])
        finite = np.isfinite(pool_scores)
        if not np.any(finite):
            raise InfillError("acquisition produced no finite scores")
        pool = [point for point, keep in zip(pool, finite) if keep]
        return self._select(pool, pool_scores[finite], state, space, n)

    def score(self, points: Sequence[Point], state: SurrogateState, space: ParameterSpace) -> np.ndarray:
        """Acquisition scores of ``points`` under ``state``."""

        return self._score(points, state, space, float(np.min(self._sign * state.y)))

    def _score(
        self,
        points: Sequence[Point],
        state: SurrogateState,
        space: ParameterSpace,
        incumbent: float,
    ) -> np.ndarray:
        if not points:
            return np.empty(0, dtype=float)
        mean, std = self.surrogate.predict_encoded(space.encode_unit(list(points)), state)
        return np.asarray(self.acquisition.score(self._sign * mean, std, incumbent), dtype=float)

    def _refine(
        self,
        candidates: List[Point],
        scores: np.ndarray,
        state: SurrogateState,
        space: ParameterSpace,
        incumbent: float,
    ) -> Tuple[List[Point], np.ndarray]:
        if self.n_trials == 0:
            return [], np.empty(0, dtype=float)

        sampler = optuna.samplers.TPESampler(seed=int(self._rng.integers(0, 2**31 - 1)))
        study = optuna.create_study(direction="maximize", sampler=sampler)
        ranked = np.argsort(-np.nan_to_num(scores, nan=-np.inf))
        for index in ranked[: self.n_starts]:
            study.enqueue_trial(dict(candidates[int(index)]))

        def _objective(trial: optuna.trial.Trial) -> float:
            point = space.suggest(trial)
            return float(self._score([point], state, space, incumbent)[0])

        study.optimize(_objective, n_trials=self.n_trials)
        completed = study.get_trials(deepcopy=False, states=(TrialState.COMPLETE,))
        points = [dict(trial.params) for trial in completed]
        values = np.asarray([trial.value for trial in completed], dtype=float)
        return points, values

    def _select(
        self,
        pool: List[Point],
        scores: np.ndarray,
        state: SurrogateState,
        space: ParameterSpace,
        n: int,
    ) -> List[Point]:
        pool_unit = space.encode_unit(pool)
        reference = [row for row in np.atleast_2d(state.X)]
        available = np.ones(len(pool), dtype=bool)
        chosen: List[Point] = []

        while len(chosen) < n and np.any(available):
            indices = np.flatnonzero(available)
            distances = _min_distances(pool_unit[indices], reference)
            fresh = distances > 1e-12
            if np.any(fresh):
                indices, distances = indices[fresh], distances[fresh]

            top = float(np.max(scores[indices]))
            threshold = top - self.tolerance * max(1.0, abs(top))
            tied = scores[indices] >= threshold
            tied_indices, tied_distances = indices[tied], distances[tied]
            pick = int(tied_indices[int(np.argmax(tied_distances))])

            chosen.append(pool[pick])
            available[pick] = False
            reference.append(pool_unit[pick])
        return chosen


def _min_distances(points: np.ndarray, reference: List[np.ndarray]) -> np.ndarray:
    if not reference:
        return np.full(points.shape[0], np.inf)
    ref = np.vstack(reference)
    deltas = points[:, None, :] - ref[None, :, :]
    return np.sqrt((deltas**2).sum(axis=2)).min(axis=1)


__all__ = ["InfillError", "InfillOptimizer"]
