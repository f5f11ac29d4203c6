"""Acquisition criteria scoring surrogate predictions.

All criteria work in minimization form: ``mean`` and ``incumbent`` are losses
and higher scores mark more promising candidates.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol

import numpy as np
from scipy.stats import norm


_MIN_STD = 1e-12


class AcquisitionFunction(Protocol):
    def score(self, mean: np.ndarray, std: np.ndarray, incumbent: float) -> np.ndarray:
        ...


@dataclass(frozen=True)
class ExpectedImprovement:
    xi: float = 0.01

    def score(self, mean: np.ndarray, std: np.ndarray, incumbent: float) -> np.ndarray:
        mean = np.asarray(mean, dtype=float)
        std = np.asarray(std, dtype=float)
        improvement = incumbent - mean - self.xi
        safe_std = np.maximum(std, _MIN_STD)
        z = improvement / safe_std
        ei = improvement * norm.cdf(z) + safe_std * norm.pdf(z)
        return np.where(std > _MIN_STD, ei, np.maximum(improvement, 0.0))


@dataclass(frozen=True)
class ProbabilityOfImprovement:
    xi: float = 0.01

    def score(self, mean: np.ndarray, std: np.ndarray, incumbent: float) -> np.ndarray:
        mean = np.asarray(mean, dtype=float)
        std = np.asarray(std, dtype=float)
        improvement = incumbent - mean - self.xi
        z = improvement / np.maximum(std, _MIN_STD)
        return np.where(std > _MIN_STD, norm.cdf(z), (improvement > 0).astype(float))


@dataclass(frozen=True)
class LowerConfidenceBound:
    kappa: float = 2.0

    def score(self, mean: np.ndarray, std: np.ndarray, incumbent: float) -> np.ndarray:
        return -(np.asarray(mean, dtype=float) - self.kappa * np.asarray(std, dtype=float))


def build_acquisition(config: Mapping[str, Any]) -> AcquisitionFunction:
    name = str(config.get("acquisition", "ei")).lower()
    if name == "ei":
        return ExpectedImprovement(xi=float(config.get("xi", 0.01)))
    if name == "pi":
        return ProbabilityOfImprovement(xi=float(config.get("xi", 0.01)))
    if name == "lcb":
        return LowerConfidenceBound(kappa=float(config.get("kappa", 2.0)))
    raise ValueError(f"Unsupported acquisition function: {name}")


__all__ = [
    "AcquisitionFunction",
    "ExpectedImprovement",
    "LowerConfidenceBound",
    "ProbabilityOfImprovement",
    "build_acquisition",
]
