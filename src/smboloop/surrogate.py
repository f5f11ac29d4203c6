"""Surrogate models of the objective fitted to the result log."""
from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import Any, List, Mapping, Protocol, Sequence, Tuple

import numpy as np
from sklearn.ensemble import RandomForestRegressor
from sklearn.exceptions import ConvergenceWarning
from sklearn.gaussian_process import GaussianProcessRegressor
from sklearn.gaussian_process.kernels import ConstantKernel, Matern, WhiteKernel

from .results import Observation
from .space import ParameterSpace


class SurrogateFitError(RuntimeError):
    """Raised when a surrogate cannot be fitted to the observations."""


@dataclass(frozen=True)
class SurrogateState:
    """Fitted surrogate plus the data it was fitted on.

    ``X`` holds unit-cube encodings of the successful observations and ``y``
    their objective values. ``model`` is ``None`` for the degenerate
    single-observation state, which predicts ``y[0]`` with ``prior_std``.
    """

    X: np.ndarray
    y: np.ndarray
    model: Any | None
    prior_std: float

    @property
    def n_observations(self) -> int:
        return int(self.y.shape[0])

    @property
    def degenerate(self) -> bool:
        return self.model is None


class SurrogateModel(Protocol):
    """Capability contract: fit on observations, predict mean and uncertainty."""

    space: ParameterSpace

    def fit(self, observations: Sequence[Observation]) -> SurrogateState:
        ...

    def predict_encoded(self, X: np.ndarray, state: SurrogateState) -> Tuple[np.ndarray, np.ndarray]:
        ...

    def predict(
        self, points: Sequence[Mapping[str, Any]], state: SurrogateState
    ) -> List[Tuple[float, float]]:
        ...


def training_data(
    space: ParameterSpace,
    observations: Sequence[Observation],
) -> Tuple[np.ndarray, np.ndarray]:
    """Unit-cube inputs and values of the successful observations."""

    valid = [observation for observation in observations if observation.value is not None]
    if not valid:
        raise SurrogateFitError("no successful observations to fit")
    X = space.encode_unit([observation.point for observation in valid])
    y = np.asarray([float(observation.value) for observation in valid], dtype=float)
    return X, y


class _SurrogateBase:
    def __init__(self, space: ParameterSpace, *, prior_std: float = 1.0) -> None:
        if prior_std <= 0:
            raise ValueError("prior_std must be positive")
        self.space = space
        self.prior_std = float(prior_std)

    def fit(self, observations: Sequence[Observation]) -> SurrogateState:
        X, y = training_data(self.space, observations)
        if y.shape[0] == 1:
            return SurrogateState(X=X, y=y, model=None, prior_std=self.prior_std)
        try:
            model = self._fit_model(X, y)
        except (ValueError, np.linalg.LinAlgError) as exc:
            raise SurrogateFitError(f"{self.__class__.__name__} failed to fit: {exc}") from exc
        return SurrogateState(X=X, y=y, model=model, prior_std=self.prior_std)

    def predict_encoded(self, X: np.ndarray, state: SurrogateState) -> Tuple[np.ndarray, np.ndarray]:
        X = np.atleast_2d(np.asarray(X, dtype=float))
        if state.degenerate:
            mean = np.full(X.shape[0], float(state.y[0]))
            std = np.full(X.shape[0], state.prior_std)
            return mean, std
        mean, std = self._predict_model(state.model, X)
        return np.asarray(mean, dtype=float).reshape(-1), np.maximum(np.asarray(std, dtype=float).reshape(-1), 0.0)

    def predict(
        self, points: Sequence[Mapping[str, Any]], state: SurrogateState
    ) -> List[Tuple[float, float]]:
        mean, std = self.predict_encoded(self.space.encode_unit(list(points)), state)
        return [(float(m), float(s)) for m, s in zip(mean, std)]

    def _fit_model(self, X: np.ndarray, y: np.ndarray) -> Any:
        raise NotImplementedError

    def _predict_model(self, model: Any, X: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        raise NotImplementedError


class GaussianProcessSurrogate(_SurrogateBase):
    """Gaussian process with a Matern 5/2 kernel on unit-cube inputs."""

    def __init__(
        self,
        space: ParameterSpace,
        *,
        prior_std: float = 1.0,
        n_restarts: int = 2,
        random_state: int | None = None,
    ) -> None:
        super().__init__(space, prior_std=prior_std)
        self.n_restarts = n_restarts
        self.random_state = random_state

    def _fit_model(self, X: np.ndarray, y: np.ndarray) -> GaussianProcessRegressor:
        kernel = (
            ConstantKernel(1.0, (1e-3, 1e3))
            * Matern(length_scale=np.full(X.shape[1], 0.5), length_scale_bounds=(1e-3, 1e2), nu=2.5)
            + WhiteKernel(noise_level=1e-6, noise_level_bounds=(1e-10, 1e-1))
        )
        gp = GaussianProcessRegressor(
            kernel=kernel,
            normalize_y=True,
            n_restarts_optimizer=self.n_restarts,
            random_state=self.random_state,
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", ConvergenceWarning)
            gp.fit(X, y)
        return gp

    def _predict_model(self, model: GaussianProcessRegressor, X: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return model.predict(X, return_std=True)


class RandomForestSurrogate(_SurrogateBase):
    """Random forest whose uncertainty is the spread across trees."""

    def __init__(
        self,
        space: ParameterSpace,
        *,
        prior_std: float = 1.0,
        n_estimators: int = 100,
        random_state: int | None = None,
    ) -> None:
        super().__init__(space, prior_std=prior_std)
        self.n_estimators = n_estimators
        self.random_state = random_state

    def _fit_model(self, X: np.ndarray, y: np.ndarray) -> RandomForestRegressor:
        forest = RandomForestRegressor(
            n_estimators=self.n_estimators,
            min_samples_leaf=1,
            random_state=self.random_state,
        )
        forest.fit(X, y)
        return forest

    def _predict_model(self, model: RandomForestRegressor, X: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        per_tree = np.stack([tree.predict(X) for tree in model.estimators_])
        return per_tree.mean(axis=0), per_tree.std(axis=0)


SURROGATES = {
    "gp": GaussianProcessSurrogate,
    "forest": RandomForestSurrogate,
}


def build_surrogate(
    config: Mapping[str, Any],
    space: ParameterSpace,
    *,
    seed: int | None = None,
) -> SurrogateModel:
    kind = str(config.get("kind", "gp")).lower()
    surrogate_cls = SURROGATES.get(kind)
    if surrogate_cls is None:
        raise ValueError(f"Unsupported surrogate kind: {kind}")
    return surrogate_cls(
        space,
        prior_std=float(config.get("prior_std", 1.0)),
        random_state=seed,
    )


__all__ = [
    "GaussianProcessSurrogate",
    "RandomForestSurrogate",
    "SURROGATES",
    "SurrogateFitError",
    "SurrogateModel",
    "SurrogateState",
    "build_surrogate",
    "training_data",
]
