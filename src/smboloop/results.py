"""Append-only record of observations and its exported snapshot."""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple

from .evaluators import EvaluationOutcome


class Direction(str, Enum):
    MINIMIZE = "minimize"
    MAXIMIZE = "maximize"


@dataclass(frozen=True)
class EvaluationMetadata:
    """How an observation came to be."""

    identity: str
    status: str
    exit_status: int | None
    duration: float
    artifact: str | None
    reason: str | None = None
    attempts: int = 1


@dataclass(frozen=True)
class Observation:
    """One completed evaluation. ``value`` is ``None`` when it failed."""

    trial: int
    point: Mapping[str, Any]
    value: float | None
    timestamp: datetime
    metadata: EvaluationMetadata
    source: str = "design"

    def __post_init__(self) -> None:
        object.__setattr__(self, "point", MappingProxyType(dict(self.point)))

    @property
    def failed(self) -> bool:
        return self.value is None

    @classmethod
    def from_outcome(
        cls,
        trial: int,
        point: Mapping[str, Any],
        outcome: EvaluationOutcome,
        *,
        source: str,
    ) -> "Observation":
        return cls(
            trial=trial,
            point=dict(point),
            value=outcome.value if outcome.ok else None,
            timestamp=datetime.now(timezone.utc),
            metadata=EvaluationMetadata(
                identity=outcome.identity.token,
                status=outcome.status.value,
                exit_status=outcome.exit_status,
                duration=float(outcome.duration),
                artifact=str(outcome.artifact) if outcome.artifact is not None else None,
                reason=outcome.reason,
                attempts=outcome.attempts,
            ),
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trial": self.trial,
            "point": dict(self.point),
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
            "status": self.metadata.status,
            "reason": self.metadata.reason,
            "exit_status": self.metadata.exit_status,
            "duration_seconds": self.metadata.duration,
            "identity": self.metadata.identity,
            "artifact": self.metadata.artifact,
            "attempts": self.metadata.attempts,
        }


@dataclass(frozen=True)
class ResultSnapshot:
    """Immutable export of a result log."""

    direction: Direction
    observations: Tuple[Observation, ...]
    best: Observation | None
    n_failed: int
    exported_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def n_observations(self) -> int:
        return len(self.observations)

    @property
    def failure_fraction(self) -> float:
        return self.n_failed / self.n_observations if self.observations else 0.0

    def to_dict(self, *, include_history: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "direction": self.direction.value,
            "exported_at": self.exported_at.isoformat(),
            "evaluations": self.n_observations,
            "failures": {"count": self.n_failed, "fraction": self.failure_fraction},
            "best": None,
        }
        if self.best is not None:
            payload["best"] = {
                "point": dict(self.best.point),
                "value": self.best.value,
                "trial": self.best.trial,
                "timestamp": self.best.timestamp.isoformat(),
            }
        if include_history:
            payload["history"] = [observation.to_dict() for observation in self.observations]
        return payload


class ResultLog:
    """Append-only, thread-safe sequence of observations."""

    def __init__(self) -> None:
        self._observations: List[Observation] = []
        self._lock = threading.Lock()

    def append(self, observation: Observation) -> None:
        with self._lock:
            self._observations.append(observation)

    def history(self) -> Tuple[Observation, ...]:
        with self._lock:
            return tuple(self._observations)

    def valid(self) -> List[Observation]:
        return [observation for observation in self.history() if not observation.failed]

    def failures(self) -> List[Observation]:
        return [observation for observation in self.history() if observation.failed]

    def __len__(self) -> int:
        with self._lock:
            return len(self._observations)

    def __iter__(self):
        return iter(self.history())

    def best(self, direction: Direction | str = Direction.MINIMIZE) -> Observation | None:
        """Extremal successful observation; ties go to the earliest timestamp."""

        direction = Direction(direction)
        sign = 1.0 if direction is Direction.MINIMIZE else -1.0
        ranked = [
            (sign * float(observation.value), observation.timestamp, position, observation)
            for position, observation in enumerate(self.history())
            if observation.value is not None
        ]
        if not ranked:
            return None
        return min(ranked, key=lambda item: item[:3])[3]

    def export(self, direction: Direction | str = Direction.MINIMIZE) -> ResultSnapshot:
        history = self.history()
        return ResultSnapshot(
            direction=Direction(direction),
            observations=history,
            best=self.best(direction),
            n_failed=sum(1 for observation in history if observation.failed),
        )


def write_export(
    path: str | Path,
    snapshot: ResultSnapshot,
    *,
    include_history: bool = True,
    extra: Mapping[str, Any] | None = None,
) -> Path:
    """Write ``snapshot`` as indented JSON and return the path."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = snapshot.to_dict(include_history=include_history)
    if extra:
        payload.update(dict(extra))
    target.write_text(
        json.dumps(payload, indent=2, ensure_ascii=False, default=str),
        encoding="utf-8",
    )
    return target


__all__ = [
    "Direction",
    "EvaluationMetadata",
    "Observation",
    "ResultLog",
    "ResultSnapshot",
    "write_export",
]
