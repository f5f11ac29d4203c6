"""Initial design generation."""
from __future__ import annotations

import json
import math
import warnings
from typing import List

import numpy as np

from .space import ParameterKind, ParameterSpace, Point, SamplingStrategy


class DesignClampWarning(RuntimeWarning):
    """Emitted when a requested design is larger than the space allows."""


class DesignGenerator:
    """Draw initial designs from a parameter space using an explicit RNG."""

    def __init__(self, rng: np.random.Generator) -> None:
        self._rng = rng

    def initial_design(
        self,
        space: ParameterSpace,
        size: int | None,
        strategy: SamplingStrategy | str = SamplingStrategy.LHS,
        *,
        resolution: int | None = None,
    ) -> List[Point]:
        """Return at least one point drawn from ``space``.

        ``grid`` and ``lhs`` designs never contain duplicates. ``uniform``
        designs may. A ``size`` above the space's finite cardinality is clamped
        with a :class:`DesignClampWarning`.
        """

        strategy = SamplingStrategy(strategy)
        if size is not None and size < 1:
            raise ValueError("design size must be a positive integer")

        if strategy is SamplingStrategy.GRID:
            return self._grid_design(space, size, resolution)

        requested = int(size) if size is not None else max(2 * space.dimension, 1)
        target = self._clamp(requested, space.cardinality)
        if strategy is SamplingStrategy.UNIFORM:
            return space.sample(target, strategy, self._rng)
        return self._unique_lhs(space, target)

    def _grid_design(
        self,
        space: ParameterSpace,
        size: int | None,
        resolution: int | None,
    ) -> List[Point]:
        if resolution is None:
            resolution = _resolution_for(space, size or 1)
        grid = space.sample(0, SamplingStrategy.GRID, self._rng, resolution=resolution)
        if size is None:
            return grid
        target = self._clamp(int(size), float(len(grid)))
        if target >= len(grid):
            return grid
        chosen = sorted(self._rng.choice(len(grid), size=target, replace=False))
        return [grid[int(idx)] for idx in chosen]

    def _unique_lhs(self, space: ParameterSpace, target: int) -> List[Point]:
        points: List[Point] = []
        seen: set[str] = set()
        # Rounding of discrete parameters can merge strata; redraw a few times.
        for _ in range(10):
            for point in space.sample(target, SamplingStrategy.LHS, self._rng):
                key = _point_key(point)
                if key in seen:
                    continue
                seen.add(key)
                points.append(point)
                if len(points) >= target:
                    return points
        if len(points) < target:
            warnings.warn(
                f"Latin hypercube produced {len(points)} unique points out of {target} requested.",
                DesignClampWarning,
                stacklevel=3,
            )
        return points

    @staticmethod
    def _clamp(requested: int, cardinality: float) -> int:
        if requested <= cardinality:
            return requested
        clamped = max(int(cardinality), 1)
        warnings.warn(
            f"Requested design size {requested} exceeds the {clamped} distinct points "
            "available; clamping.",
            DesignClampWarning,
            stacklevel=4,
        )
        return clamped


def initial_design(
    space: ParameterSpace,
    size: int | None,
    strategy: SamplingStrategy | str = SamplingStrategy.LHS,
    *,
    seed: int | None = None,
    resolution: int | None = None,
) -> List[Point]:
    """Deterministic convenience wrapper around :class:`DesignGenerator`."""

    generator = DesignGenerator(np.random.default_rng(seed))
    return generator.initial_design(space, size, strategy, resolution=resolution)


def _resolution_for(space: ParameterSpace, size: int) -> int:
    numeric = [param for param in space if param.kind is not ParameterKind.CATEGORICAL]
    if not numeric:
        return 1
    categorical_cells = 1.0
    for param in space:
        if param.kind is ParameterKind.CATEGORICAL:
            categorical_cells *= len(param.choices)
    per_axis = max(size / categorical_cells, 1.0) ** (1.0 / len(numeric))
    return max(int(math.ceil(per_axis - 1e-9)), 1)


def _point_key(point: Point) -> str:
    return json.dumps(point, sort_keys=True, default=str)


__all__ = ["DesignClampWarning", "DesignGenerator", "initial_design"]
