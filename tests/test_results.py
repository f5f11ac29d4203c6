from __future__ import annotations

import json
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from smboloop.evaluators import EvaluationOutcome, InvocationIdentity, NonZeroExit
from smboloop.results import (
    Direction,
    EvaluationMetadata,
    Observation,
    ResultLog,
    write_export,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_observation(trial: int, value: float | None, *, seconds: int | None = None) -> Observation:
    status = "ok" if value is not None else "error"
    return Observation(
        trial=trial,
        point={"x": float(trial)},
        value=value,
        timestamp=T0 + timedelta(seconds=trial if seconds is None else seconds),
        metadata=EvaluationMetadata(
            identity=f"ns-{trial:06d}-abc",
            status=status,
            exit_status=0 if value is not None else 1,
            duration=0.1,
            artifact=None,
            reason=None if value is not None else "non_zero_exit:1",
        ),
    )


class ResultLogTests(unittest.TestCase):
    def test_best_minimize_prefers_earlier_tie(self) -> None:
        log = ResultLog()
        for trial, value in enumerate([5.0, 2.0, 9.0, 2.0]):
            log.append(make_observation(trial, value))
        best = log.best(Direction.MINIMIZE)
        self.assertEqual(best.value, 2.0)
        self.assertEqual(best.trial, 1)
        self.assertEqual(best.timestamp, T0 + timedelta(seconds=1))

    def test_best_maximize(self) -> None:
        log = ResultLog()
        for trial, value in enumerate([5.0, 2.0, 9.0, 9.0]):
            log.append(make_observation(trial, value))
        self.assertEqual(log.best("maximize").trial, 2)

    def test_equal_timestamps_fall_back_to_append_order(self) -> None:
        log = ResultLog()
        log.append(make_observation(7, 1.0, seconds=0))
        log.append(make_observation(3, 1.0, seconds=0))
        self.assertEqual(log.best().trial, 7)

    def test_failures_excluded_from_best_but_kept(self) -> None:
        log = ResultLog()
        log.append(make_observation(0, None))
        log.append(make_observation(1, 4.0))
        log.append(make_observation(2, None))
        self.assertEqual(log.best().trial, 1)
        self.assertEqual(len(log), 3)
        self.assertEqual([obs.trial for obs in log.failures()], [0, 2])
        self.assertEqual([obs.trial for obs in log.valid()], [1])

    def test_best_of_empty_or_failed_log_is_none(self) -> None:
        log = ResultLog()
        self.assertIsNone(log.best())
        log.append(make_observation(0, None))
        self.assertIsNone(log.best())

    def test_concurrent_appends_are_all_kept(self) -> None:
        log = ResultLog()

        def _writer(offset: int) -> None:
            for index in range(100):
                log.append(make_observation(offset + index, float(index)))

        threads = [threading.Thread(target=_writer, args=(1000 * n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(log), 800)


class SnapshotTests(unittest.TestCase):
    def test_export_is_immutable_snapshot(self) -> None:
        log = ResultLog()
        log.append(make_observation(0, 3.0))
        log.append(make_observation(1, None))
        snapshot = log.export(Direction.MINIMIZE)
        log.append(make_observation(2, 1.0))

        self.assertEqual(snapshot.n_observations, 2)
        self.assertEqual(snapshot.n_failed, 1)
        self.assertAlmostEqual(snapshot.failure_fraction, 0.5)
        self.assertEqual(snapshot.best.trial, 0)
        payload = snapshot.to_dict(include_history=False)
        self.assertNotIn("history", payload)
        self.assertEqual(payload["best"]["value"], 3.0)
        self.assertEqual(payload["failures"], {"count": 1, "fraction": 0.5})

    def test_snapshot_points_cannot_be_mutated(self) -> None:
        source = {"x": 2.0}
        log = ResultLog()
        log.append(
            Observation(
                trial=0,
                point=source,
                value=1.0,
                timestamp=T0,
                metadata=EvaluationMetadata("t-0", "ok", 0, 0.0, None),
            )
        )
        snapshot = log.export()
        with self.assertRaises(TypeError):
            snapshot.observations[0].point["x"] = 9.0
        with self.assertRaises(TypeError):
            log.best().point["x"] = 9.0
        source["x"] = 5.0
        self.assertEqual(snapshot.best.point, {"x": 2.0})
        self.assertEqual(snapshot.to_dict()["best"]["point"], {"x": 2.0})

    def test_write_export(self) -> None:
        log = ResultLog()
        log.append(make_observation(0, 3.0))
        with tempfile.TemporaryDirectory() as tmp:
            path = write_export(
                Path(tmp) / "nested" / "result.json",
                log.export(),
                extra={"name": "demo"},
            )
            payload = json.loads(path.read_text(encoding="utf-8"))
        self.assertEqual(payload["name"], "demo")
        self.assertEqual(payload["best"]["point"], {"x": 0.0})
        self.assertEqual(len(payload["history"]), 1)
        self.assertEqual(payload["history"][0]["status"], "ok")

    def test_observation_from_failed_outcome(self) -> None:
        outcome = EvaluationOutcome(
            identity=InvocationIdentity("ns", 4, "abcdef0123"),
            value=None,
            error=NonZeroExit(2),
            exit_status=2,
            duration=0.3,
        )
        observation = Observation.from_outcome(5, {"x": 1.0}, outcome, source="infill")
        self.assertTrue(observation.failed)
        self.assertEqual(observation.metadata.reason, "non_zero_exit:2")
        self.assertEqual(observation.metadata.identity, "ns-000004-abcdef0123")
        self.assertEqual(observation.to_dict()["source"], "infill")


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
