from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

import yaml

from smboloop.config import (
    ConfigError,
    OptimizationConfig,
    ValidationError,
    load_config,
    parse_run_config,
)


def make_base_config() -> dict:
    return {
        "metadata": {
            "name": "experiment",
            "description": "  example  ",
        },
        "run": {"iterations": 20, "time_budget": 120, "seed": 123},
        "search_space": {
            "x1": {"type": "float", "low": -3.0, "high": 3.0},
            "n": {"type": "int", "low": 1, "high": 4},
            "solver": {"type": "categorical", "choices": ["cg", "gmres"]},
        },
        "evaluator": {
            "command": ["./simulate", "--x1={x1}", "--n={n}", "--solver={solver}", "--out={output}"],
            "extractor": {"kind": "pattern", "marker": "objective"},
        },
    }


class RunConfigTests(unittest.TestCase):
    def test_parses_iso_duration_and_seconds(self) -> None:
        self.assertEqual(parse_run_config({"iterations": 5, "time_budget": "PT1M30S"}).time_budget_seconds, 90.0)
        self.assertEqual(parse_run_config({"iterations": 5, "time_budget": 45}).time_budget_seconds, 45.0)
        self.assertIsNone(parse_run_config({"iterations": 5}).time_budget_seconds)

    def test_rejects_unknown_keys(self) -> None:
        with self.assertRaises(ConfigError) as ctx:
            parse_run_config({"iterations": 5, "eval": "__import__('os')"})
        self.assertIn("eval", str(ctx.exception))

    def test_rejects_non_positive_values(self) -> None:
        for data in ({"iterations": 0}, {"iterations": 3, "time_budget": 0}, {"iterations": 3, "time_budget": "-PT5S"}):
            with self.subTest(data=data):
                with self.assertRaises(ConfigError):
                    parse_run_config(data)

    def test_time_budget_alone_is_enough(self) -> None:
        run = parse_run_config({"time_budget": "PT10M"})
        self.assertIsNone(run.iterations)
        self.assertEqual(run.time_budget_seconds, 600.0)
        with self.assertRaises(ConfigError):
            parse_run_config({"seed": 1})

    def test_rejects_non_mapping(self) -> None:
        with self.assertRaises(ConfigError):
            parse_run_config(["iterations", 5])


class OptimizationConfigValidationTests(unittest.TestCase):
    def test_valid_configuration_passes(self) -> None:
        config = OptimizationConfig.model_validate(make_base_config())
        self.assertEqual(config.direction, "minimize")
        self.assertEqual(config.metadata.description, "example")
        self.assertEqual(config.design.strategy, "lhs")
        self.assertEqual(config.surrogate.kind, "gp")
        self.assertEqual(config.infill.acquisition, "ei")
        self.assertEqual(config.run.time_budget_seconds, 120.0)
        self.assertEqual(config.search_space["n"], {"type": "int", "low": 1, "high": 4})

    def test_unknown_keys_rejected_in_every_section(self) -> None:
        for section in ("run", "evaluator", "metadata"):
            with self.subTest(section=section):
                data = make_base_config()
                data[section]["surprise"] = True
                with self.assertRaises(ValidationError):
                    OptimizationConfig.model_validate(data)
        data = make_base_config()
        data["plugins"] = []
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)

    def test_search_space_requires_valid_ranges(self) -> None:
        data = make_base_config()
        data["search_space"]["x1"]["low"] = 10
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)

    def test_search_space_rejects_duplicate_choices_and_unknown_types(self) -> None:
        data = make_base_config()
        data["search_space"]["solver"]["choices"] = ["cg", "cg"]
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)
        data = make_base_config()
        data["search_space"]["x1"] = {"type": "complex"}
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)

    def test_reserved_parameter_names_rejected(self) -> None:
        data = make_base_config()
        data["search_space"]["output"] = {"type": "float", "low": 0, "high": 1}
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)

    def test_unknown_placeholder_rejected(self) -> None:
        data = make_base_config()
        data["evaluator"]["command"].append("--x9={x9}")
        with self.assertRaises(ValidationError) as ctx:
            OptimizationConfig.model_validate(data)
        self.assertIn("x9", str(ctx.exception))

    def test_evaluator_requires_exactly_one_target(self) -> None:
        data = make_base_config()
        data["evaluator"]["python"] = "pkg.mod:objective"
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)
        data = make_base_config()
        data["evaluator"] = {"python": "no-colon"}
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)

    def test_extractor_options_must_match_kind(self) -> None:
        data = make_base_config()
        data["evaluator"]["extractor"] = {"kind": "table", "field": "loss"}
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)
        data["evaluator"]["extractor"] = {"kind": "keyvalue"}
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)
        data["evaluator"]["extractor"] = {"kind": "table", "column": "loss", "delimiter": ","}
        OptimizationConfig.model_validate(data)

    def test_design_resolution_only_for_grid(self) -> None:
        data = make_base_config()
        data["design"] = {"strategy": "lhs", "resolution": 3}
        with self.assertRaises(ValidationError):
            OptimizationConfig.model_validate(data)
        data["design"] = {"strategy": "GRID", "resolution": 3}
        self.assertEqual(OptimizationConfig.model_validate(data).design.strategy, "grid")

    def test_direction_and_numeric_sections(self) -> None:
        cases = [
            ("direction", "sideways"),
            ("surrogate", {"kind": "spline"}),
            ("infill", {"batch_size": 0}),
            ("stopping", {"no_improve_patience": 0}),
        ]
        for key, value in cases:
            with self.subTest(key=key):
                data = make_base_config()
                data[key] = value
                with self.assertRaises(ValidationError):
                    OptimizationConfig.model_validate(data)


class LoadConfigTests(unittest.TestCase):
    def test_loads_yaml_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yaml"
            path.write_text(yaml.safe_dump(make_base_config()), encoding="utf-8")
            config = load_config(path)
        self.assertEqual(config.metadata.name, "experiment")
        self.assertEqual(config.evaluator.extractor.marker, "objective")

    def test_errors_carry_dotted_locations(self) -> None:
        data = make_base_config()
        data["run"]["iterations"] = -1
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yaml"
            path.write_text(yaml.safe_dump(data), encoding="utf-8")
            with self.assertRaises(ConfigError) as ctx:
                load_config(path)
        self.assertIn("run", str(ctx.exception))

    def test_missing_file_and_non_mapping_root(self) -> None:
        with self.assertRaises(ConfigError):
            load_config("/nonexistent/config.yaml")
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.yaml"
            path.write_text("- just\n- a list\n", encoding="utf-8")
            with self.assertRaises(ConfigError):
                load_config(path)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
