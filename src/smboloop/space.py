"""Declarative parameter space with validation, encoding and sampling."""
from __future__ import annotations

import itertools
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np
import optuna
from scipy.stats import qmc


ParamValue = float | int | str | bool
"""Values a point may carry for a single parameter."""


Point = Dict[str, ParamValue]
"""Mapping of parameter name to value."""


class DomainError(ValueError):
    """Raised when a point does not belong to the parameter space."""


class ParameterKind(str, Enum):
    CONTINUOUS = "float"
    INTEGER = "int"
    CATEGORICAL = "categorical"


class SamplingStrategy(str, Enum):
    """Strategies accepted by :meth:`ParameterSpace.sample`."""

    UNIFORM = "uniform"
    GRID = "grid"
    LHS = "lhs"


@dataclass(frozen=True)
class Parameter:
    """A single named dimension of the search space."""

    name: str
    kind: ParameterKind
    low: float | None = None
    high: float | None = None
    choices: Tuple[ParamValue, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("parameter names must be non-empty strings")
        kind = ParameterKind(self.kind)
        object.__setattr__(self, "kind", kind)
        if kind is ParameterKind.CATEGORICAL:
            choices = tuple(self.choices)
            if not choices:
                raise ValueError(f"categorical parameter '{self.name}' requires at least one choice")
            if len(set(choices)) != len(choices):
                raise ValueError(f"categorical parameter '{self.name}' has duplicate choices")
            object.__setattr__(self, "choices", choices)
            return
        if self.low is None or self.high is None:
            raise ValueError(f"numeric parameter '{self.name}' requires low and high")
        low, high = float(self.low), float(self.high)
        if kind is ParameterKind.INTEGER:
            if not (low.is_integer() and high.is_integer()):
                raise ValueError(f"int parameter '{self.name}' requires integral bounds")
            low, high = int(low), int(high)
        if low > high:
            raise ValueError(f"parameter '{self.name}' requires low <= high")
        object.__setattr__(self, "low", low)
        object.__setattr__(self, "high", high)

    @classmethod
    def continuous(cls, name: str, low: float, high: float) -> "Parameter":
        return cls(name, ParameterKind.CONTINUOUS, low=low, high=high)

    @classmethod
    def integer(cls, name: str, low: int, high: int) -> "Parameter":
        return cls(name, ParameterKind.INTEGER, low=low, high=high)

    @classmethod
    def categorical(cls, name: str, choices: Iterable[ParamValue]) -> "Parameter":
        return cls(name, ParameterKind.CATEGORICAL, choices=tuple(choices))

    @property
    def cardinality(self) -> float:
        if self.kind is ParameterKind.CATEGORICAL:
            return float(len(self.choices))
        if self.kind is ParameterKind.INTEGER:
            return float(int(self.high) - int(self.low) + 1)
        return 1.0 if self.low == self.high else math.inf

    def contains(self, value: Any) -> bool:
        if self.kind is ParameterKind.CATEGORICAL:
            return any(_same_choice(value, choice) for choice in self.choices)
        if isinstance(value, bool) or not isinstance(value, (int, float, np.integer, np.floating)):
            return False
        numeric = float(value)
        if math.isnan(numeric):
            return False
        if self.kind is ParameterKind.INTEGER and not numeric.is_integer():
            return False
        return self.low <= numeric <= self.high

    def encode_value(self, value: ParamValue) -> float:
        if self.kind is ParameterKind.CATEGORICAL:
            for index, choice in enumerate(self.choices):
                if _same_choice(value, choice):
                    return float(index)
            raise DomainError(f"{value!r} is not a valid choice for '{self.name}'")
        return float(value)

    def decode_value(self, encoded: float) -> ParamValue:
        if self.kind is ParameterKind.CATEGORICAL:
            index = int(round(float(encoded)))
            index = min(max(index, 0), len(self.choices) - 1)
            return self.choices[index]
        clipped = min(max(float(encoded), float(self.low)), float(self.high))
        if self.kind is ParameterKind.INTEGER:
            return int(min(max(int(round(clipped)), int(self.low)), int(self.high)))
        return clipped

    @property
    def encoded_bounds(self) -> Tuple[float, float]:
        if self.kind is ParameterKind.CATEGORICAL:
            return 0.0, float(len(self.choices) - 1)
        return float(self.low), float(self.high)

    def grid_values(self, resolution: int) -> List[ParamValue]:
        if self.kind is ParameterKind.CATEGORICAL:
            return list(self.choices)
        if resolution == 1:
            raw = [(float(self.low) + float(self.high)) / 2.0]
        else:
            raw = list(np.linspace(float(self.low), float(self.high), resolution))
        values: List[ParamValue] = []
        for item in raw:
            value = self.decode_value(item)
            if value not in values:
                values.append(value)
        return values


def _same_choice(value: Any, choice: ParamValue) -> bool:
    # True == 1 in Python; categorical membership must not conflate them.
    return type(value) is type(choice) and value == choice or (
        isinstance(value, (int, float))
        and isinstance(choice, (int, float))
        and not isinstance(value, bool)
        and not isinstance(choice, bool)
        and value == choice
    )


class ParameterSpace:
    """Ordered, immutable collection of uniquely named parameters.

    Points are plain ``dict`` objects. Vectors follow the declaration order of
    the parameters. Categorical values are encoded by their index in the
    declared ``choices`` list; decoding rounds to the nearest index.
    """

    def __init__(self, parameters: Sequence[Parameter]) -> None:
        params = tuple(parameters)
        if not params:
            raise ValueError("a parameter space requires at least one parameter")
        names = [param.name for param in params]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError("duplicate parameter names: " + ", ".join(duplicates))
        self._parameters = params
        self._index = {param.name: idx for idx, param in enumerate(params)}
        bounds = np.asarray([param.encoded_bounds for param in params], dtype=float)
        self._lower = bounds[:, 0]
        self._span = bounds[:, 1] - bounds[:, 0]

    @classmethod
    def from_config(cls, search_space: Mapping[str, Mapping[str, Any]]) -> "ParameterSpace":
        """Build a space from the ``search_space`` configuration section."""

        parameters: List[Parameter] = []
        for name, spec in search_space.items():
            param_type = str(spec.get("type", "")).lower()
            if param_type == "float":
                parameters.append(Parameter.continuous(name, spec["low"], spec["high"]))
            elif param_type == "int":
                parameters.append(Parameter.integer(name, spec["low"], spec["high"]))
            elif param_type == "categorical":
                parameters.append(Parameter.categorical(name, spec["choices"]))
            else:
                raise ValueError(f"Unsupported parameter type for '{name}': {param_type}")
        return cls(parameters)

    @property
    def parameters(self) -> Tuple[Parameter, ...]:
        return self._parameters

    @property
    def names(self) -> List[str]:
        return [param.name for param in self._parameters]

    @property
    def dimension(self) -> int:
        return len(self._parameters)

    @property
    def cardinality(self) -> float:
        """Number of distinct points, ``math.inf`` for continuous spaces."""

        total = 1.0
        for param in self._parameters:
            total *= param.cardinality
        return total

    def __len__(self) -> int:
        return len(self._parameters)

    def __iter__(self):
        return iter(self._parameters)

    def __getitem__(self, name: str) -> Parameter:
        return self._parameters[self._index[name]]

    # ------------------------------------------------------------------
    # Validation and encoding
    # ------------------------------------------------------------------
    def check(self, point: Mapping[str, Any]) -> None:
        """Raise :class:`DomainError` when ``point`` is not in the space."""

        unknown = sorted(set(point) - set(self._index))
        if unknown:
            raise DomainError("unknown parameters: " + ", ".join(unknown))
        missing = [name for name in self.names if name not in point]
        if missing:
            raise DomainError("missing parameters: " + ", ".join(missing))
        for param in self._parameters:
            value = point[param.name]
            if not param.contains(value):
                raise DomainError(f"value {value!r} is outside the domain of '{param.name}'")

    def validate(self, point: Mapping[str, Any]) -> bool:
        try:
            self.check(point)
        except DomainError:
            return False
        return True

    def encode(self, point: Mapping[str, Any]) -> np.ndarray:
        self.check(point)
        return np.asarray(
            [param.encode_value(point[param.name]) for param in self._parameters],
            dtype=float,
        )

    def decode(self, vector: Sequence[float]) -> Point:
        values = np.asarray(vector, dtype=float).reshape(-1)
        if values.shape[0] != self.dimension:
            raise DomainError(
                f"expected a vector of length {self.dimension}, got {values.shape[0]}"
            )
        if not np.all(np.isfinite(values)):
            raise DomainError("encoded vectors must be finite")
        return {
            param.name: param.decode_value(value)
            for param, value in zip(self._parameters, values)
        }

    def encode_unit(self, points: Sequence[Mapping[str, Any]]) -> np.ndarray:
        """Encode points into the unit hypercube, one row per point."""

        if not points:
            return np.empty((0, self.dimension), dtype=float)
        matrix = np.vstack([self.encode(point) for point in points])
        return self.to_unit(matrix)

    def decode_unit(self, matrix: np.ndarray) -> List[Point]:
        raw = self.from_unit(np.atleast_2d(matrix))
        return [self.decode(row) for row in raw]

    def to_unit(self, matrix: np.ndarray) -> np.ndarray:
        span = np.where(self._span > 0, self._span, 1.0)
        return (np.atleast_2d(matrix) - self._lower) / span

    def from_unit(self, matrix: np.ndarray) -> np.ndarray:
        clipped = np.clip(np.atleast_2d(matrix), 0.0, 1.0)
        return self._lower + clipped * self._span

    def distance(self, first: Mapping[str, Any], second: Mapping[str, Any]) -> float:
        """Euclidean distance between two points in unit-normalized coordinates."""

        unit = self.encode_unit([first, second])
        return float(np.linalg.norm(unit[0] - unit[1]))

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------
    def sample(
        self,
        n: int,
        strategy: SamplingStrategy | str = SamplingStrategy.UNIFORM,
        rng: np.random.Generator | None = None,
        *,
        resolution: int | None = None,
    ) -> List[Point]:
        """Draw points with the requested strategy.

        ``grid`` ignores ``n`` and returns the full Cartesian product for the
        given ``resolution``; its size grows exponentially with the number of
        numeric parameters and bounding it is the caller's responsibility.
        """

        strategy = SamplingStrategy(strategy)
        rng = rng if rng is not None else np.random.default_rng()
        if strategy is SamplingStrategy.GRID:
            if resolution is None or resolution < 1:
                raise ValueError("grid sampling requires a positive resolution")
            return self.grid(resolution)
        if n < 0:
            raise ValueError("sample size must be non-negative")
        if n == 0:
            return []
        if strategy is SamplingStrategy.LHS:
            seed = int(rng.integers(0, 2**32 - 1))
            unit = qmc.LatinHypercube(d=self.dimension, seed=seed).random(n)
        else:
            unit = rng.random((n, self.dimension))
        return self._points_from_unit_samples(unit)

    def grid(self, resolution: int) -> List[Point]:
        axes = [param.grid_values(resolution) for param in self._parameters]
        return [dict(zip(self.names, combo)) for combo in itertools.product(*axes)]

    def _points_from_unit_samples(self, unit: np.ndarray) -> List[Point]:
        # Stretch categorical cells so every choice owns an equal share of [0, 1).
        points: List[Point] = []
        for row in unit:
            point: Point = {}
            for param, u in zip(self._parameters, row):
                if param.kind is ParameterKind.CATEGORICAL:
                    index = min(int(u * len(param.choices)), len(param.choices) - 1)
                    point[param.name] = param.choices[index]
                elif param.kind is ParameterKind.INTEGER:
                    width = int(param.high) - int(param.low) + 1
                    offset = min(int(u * width), width - 1)
                    point[param.name] = int(param.low) + offset
                else:
                    point[param.name] = float(param.low) + float(u) * (
                        float(param.high) - float(param.low)
                    )
            points.append(point)
        return points

    def suggest(self, trial: optuna.trial.Trial) -> Point:
        """Sample a point through an optuna trial."""

        params: Point = {}
        for param in self._parameters:
            if param.kind is ParameterKind.CONTINUOUS:
                params[param.name] = trial.suggest_float(
                    param.name, float(param.low), float(param.high)
                )
            elif param.kind is ParameterKind.INTEGER:
                params[param.name] = trial.suggest_int(
                    param.name, int(param.low), int(param.high)
                )
            else:
                params[param.name] = trial.suggest_categorical(param.name, list(param.choices))
        return params

    def describe(self) -> List[Dict[str, Any]]:
        entries: List[Dict[str, Any]] = []
        for param in self._parameters:
            entry: Dict[str, Any] = {"name": param.name, "type": param.kind.value}
            if param.kind is ParameterKind.CATEGORICAL:
                entry["choices"] = list(param.choices)
            else:
                entry["low"] = param.low
                entry["high"] = param.high
            entries.append(entry)
        return entries


__all__ = [
    "DomainError",
    "ParamValue",
    "Parameter",
    "ParameterKind",
    "ParameterSpace",
    "Point",
    "SamplingStrategy",
]
