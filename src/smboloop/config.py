"""Configuration schema, strict parsing and YAML loading."""

from __future__ import annotations

import string
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    field_validator,
    model_validator,
)


class ConfigError(ValueError):
    """Raised when a configuration document cannot be loaded or validated."""


class MetadataConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""

    @model_validator(mode="after")
    def validate_strings(self) -> "MetadataConfig":
        if not self.name.strip():
            raise ValueError("metadata.name must be a non-empty string")
        self.description = self.description.strip()
        return self


class RunConfig(BaseModel):
    """Recognised run options. Unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")

    iterations: int | None = None
    time_budget: timedelta | None = None
    seed: int | None = None

    @model_validator(mode="after")
    def validate_budget(self) -> "RunConfig":
        if self.iterations is None and self.time_budget is None:
            raise ValueError("run requires iterations, time_budget, or both")
        if self.iterations is not None and self.iterations <= 0:
            raise ValueError("run.iterations must be a positive integer")
        if self.time_budget is not None and self.time_budget.total_seconds() <= 0:
            raise ValueError("run.time_budget must be a positive duration when provided")
        return self

    @property
    def time_budget_seconds(self) -> float | None:
        if self.time_budget is None:
            return None
        return self.time_budget.total_seconds()


class StoppingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_value: float | None = None
    no_improve_patience: int | None = None

    @model_validator(mode="after")
    def validate_numbers(self) -> "StoppingConfig":
        if self.no_improve_patience is not None and self.no_improve_patience <= 0:
            raise ValueError("stopping.no_improve_patience must be positive when provided")
        return self


class FloatParam(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    low: float
    high: float

    @model_validator(mode="after")
    def validate_float(self) -> "FloatParam":
        if self.type.lower() != "float":
            raise ValueError("Search space entry type must be 'float'")
        if self.low > self.high:
            raise ValueError("float parameter requires low <= high")
        return self


class IntParam(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    low: int
    high: int

    @model_validator(mode="after")
    def validate_int(self) -> "IntParam":
        if self.type.lower() != "int":
            raise ValueError("Search space entry type must be 'int'")
        if self.low > self.high:
            raise ValueError("int parameter requires low <= high")
        return self


class CategoricalParam(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str
    choices: List[Any]

    @model_validator(mode="after")
    def validate_choices(self) -> "CategoricalParam":
        if self.type.lower() != "categorical":
            raise ValueError("Search space entry type must be 'categorical'")
        if not self.choices:
            raise ValueError("categorical parameter requires at least one choice")
        for choice in self.choices:
            if choice is None or not isinstance(choice, (bool, int, float, str)):
                raise ValueError("categorical choices must be strings, numbers or booleans")
        if len({(type(choice), choice) for choice in self.choices}) != len(self.choices):
            raise ValueError("categorical parameter choices must be unique")
        return self


PARAMETER_MODELS = {
    "float": FloatParam,
    "int": IntParam,
    "categorical": CategoricalParam,
}


class DesignConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: str = "lhs"
    size: int | None = None
    resolution: int | None = None

    @model_validator(mode="after")
    def validate_design(self) -> "DesignConfig":
        self.strategy = self.strategy.lower().strip()
        if self.strategy not in {"uniform", "grid", "lhs"}:
            raise ValueError("design.strategy must be one of grid, lhs, uniform")
        if self.size is not None and self.size <= 0:
            raise ValueError("design.size must be positive when provided")
        if self.resolution is not None and self.resolution <= 0:
            raise ValueError("design.resolution must be positive when provided")
        if self.resolution is not None and self.strategy != "grid":
            raise ValueError("design.resolution only applies to the grid strategy")
        return self


_EXTRACTOR_FIELDS = {
    "pattern": {"marker", "pattern"},
    "keyvalue": {"field"},
    "table": {"column", "row", "delimiter"},
    "json": {"field"},
}


class ExtractorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str = "pattern"
    marker: str | None = None
    pattern: str | None = None
    field: str | None = None
    column: str | None = None
    row: int | None = None
    delimiter: str | None = None

    @model_validator(mode="after")
    def validate_kind(self) -> "ExtractorConfig":
        self.kind = self.kind.lower().strip()
        allowed = _EXTRACTOR_FIELDS.get(self.kind)
        if allowed is None:
            raise ValueError(
                "evaluator.extractor.kind must be one of " + ", ".join(sorted(_EXTRACTOR_FIELDS))
            )
        provided = {
            name
            for name in ("marker", "pattern", "field", "column", "row", "delimiter")
            if getattr(self, name) is not None
        }
        unexpected = sorted(provided - allowed)
        if unexpected:
            raise ValueError(
                f"evaluator.extractor options {', '.join(unexpected)} do not apply to kind '{self.kind}'"
            )
        if self.kind in {"keyvalue", "json"} and not (self.field and self.field.strip()):
            raise ValueError(f"evaluator.extractor.field is required for kind '{self.kind}'")
        if self.kind == "table" and not (self.column and self.column.strip()):
            raise ValueError("evaluator.extractor.column is required for kind 'table'")
        return self


class EvaluatorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    command: List[str] | None = None
    python: str | None = None
    metric: str | None = None
    argument_style: str = "template"
    workdir: str = "runs/artifacts"
    cwd: str | None = None
    timeout_sec: float | None = None
    max_retries: int = 0
    workers: int = 1
    cleanup: bool = False
    env: Dict[str, str] | None = None
    extractor: ExtractorConfig = ExtractorConfig()

    @model_validator(mode="after")
    def validate_target(self) -> "EvaluatorConfig":
        if (self.command is None) == (self.python is None):
            raise ValueError("evaluator requires exactly one of command or python")
        if self.command is not None and not self.command:
            raise ValueError("evaluator.command must contain at least the program to run")
        if self.python is not None:
            module, _, attribute = self.python.partition(":")
            if not module.strip() or not attribute.strip():
                raise ValueError("evaluator.python must look like 'package.module:callable'")
        self.argument_style = self.argument_style.lower().strip()
        if self.argument_style not in {"template", "flags", "positional"}:
            raise ValueError("evaluator.argument_style must be template, flags or positional")
        if self.timeout_sec is not None and self.timeout_sec <= 0:
            raise ValueError("evaluator.timeout_sec must be positive when provided")
        if self.max_retries < 0:
            raise ValueError("evaluator.max_retries must be non-negative")
        if self.workers <= 0:
            raise ValueError("evaluator.workers must be a positive integer")
        if not self.workdir.strip():
            raise ValueError("evaluator.workdir must be a non-empty string")
        return self

    def placeholders(self) -> set[str]:
        names: set[str] = set()
        for part in self.command or []:
            for _, field_name, _, _ in string.Formatter().parse(part):
                if field_name is not None:
                    names.add(field_name)
        return names


class SurrogateConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str = "gp"
    refit_every: int = 1
    prior_std: float = 1.0

    @model_validator(mode="after")
    def validate_fields(self) -> "SurrogateConfig":
        self.kind = self.kind.lower().strip()
        if self.kind not in {"gp", "forest"}:
            raise ValueError("surrogate.kind must be 'gp' or 'forest'")
        if self.refit_every <= 0:
            raise ValueError("surrogate.refit_every must be a positive integer")
        if self.prior_std <= 0:
            raise ValueError("surrogate.prior_std must be positive")
        return self


class InfillConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    acquisition: str = "ei"
    xi: float = 0.01
    kappa: float = 2.0
    n_candidates: int = 512
    n_trials: int = 32
    n_starts: int = 4
    batch_size: int = 1
    tolerance: float = 1e-9

    @model_validator(mode="after")
    def validate_fields(self) -> "InfillConfig":
        self.acquisition = self.acquisition.lower().strip()
        if self.acquisition not in {"ei", "pi", "lcb"}:
            raise ValueError("infill.acquisition must be one of ei, pi, lcb")
        if self.n_candidates <= 0:
            raise ValueError("infill.n_candidates must be a positive integer")
        if self.n_trials < 0 or self.n_starts < 0:
            raise ValueError("infill.n_trials and infill.n_starts must be non-negative")
        if self.batch_size <= 0:
            raise ValueError("infill.batch_size must be a positive integer")
        if self.tolerance < 0:
            raise ValueError("infill.tolerance must be non-negative")
        return self


class ExportConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = "runs/result.json"
    include_history: bool = True

    @model_validator(mode="after")
    def validate_path(self) -> "ExportConfig":
        if not self.path.strip():
            raise ValueError("export.path must be a non-empty string")
        return self


class OptimizationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    metadata: MetadataConfig
    direction: str = "minimize"
    run: RunConfig
    stopping: StoppingConfig = StoppingConfig()
    search_space: Dict[str, Dict[str, Any]]
    design: DesignConfig = DesignConfig()
    evaluator: EvaluatorConfig
    surrogate: SurrogateConfig = SurrogateConfig()
    infill: InfillConfig = InfillConfig()
    export: ExportConfig = ExportConfig()
    verbose: bool = True

    @field_validator("direction")
    @classmethod
    def _validate_direction(cls, value: str) -> str:
        direction = value.lower().strip()
        if direction not in {"minimize", "maximize"}:
            raise ValueError("direction must be 'minimize' or 'maximize'")
        return direction

    @model_validator(mode="after")
    def validate_all(self) -> "OptimizationConfig":
        if not self.search_space:
            raise ValueError("search_space must define at least one parameter")

        normalised_space: Dict[str, Dict[str, Any]] = {}
        for name, spec in self.search_space.items():
            if not isinstance(name, str) or not name.strip():
                raise ValueError("search_space parameter names must be non-empty strings")
            if name in {"output", "identity", "workdir"}:
                raise ValueError(f"search_space.{name} clashes with a reserved placeholder")
            param_type = str(spec.get("type", "")).lower()
            model_cls = PARAMETER_MODELS.get(param_type)
            if model_cls is None:
                raise ValueError(f"search_space.{name}.type '{param_type}' is not supported")
            try:
                normalised_space[name] = model_cls.model_validate(dict(spec)).model_dump()
            except ValidationError as exc:
                messages = "; ".join(error["msg"] for error in exc.errors(include_url=False))
                raise ValueError(f"search_space.{name}: {messages}") from exc

        self.search_space = normalised_space

        if self.evaluator.command is not None and self.evaluator.argument_style == "template":
            unknown = sorted(
                self.evaluator.placeholders() - set(normalised_space) - {"output", "identity", "workdir"}
            )
            if unknown:
                raise ValueError(
                    "evaluator.command references unknown placeholders: " + ", ".join(unknown)
                )
        return self


def parse_run_config(data: Mapping[str, Any]) -> RunConfig:
    """Strictly parse the ``run`` section; unknown keys raise :class:`ConfigError`."""

    if not isinstance(data, Mapping):
        raise ConfigError("run configuration must be a mapping")
    try:
        return RunConfig.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigError(_format_errors("Run configuration is invalid", exc)) from exc


def load_config(path: str | Path) -> OptimizationConfig:
    """Read and validate a YAML configuration file."""

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)

    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping (YAML dictionary).")

    try:
        return OptimizationConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(_format_errors("Configuration validation failed", exc)) from exc


def _format_errors(title: str, exc: ValidationError) -> str:
    details = []
    for error in exc.errors(include_url=False):
        location = ".".join(str(loc) for loc in error["loc"])
        details.append(f"- {location or '<root>'}: {error['msg']}")
    return f"{title}:\n" + "\n".join(details)


__all__ = [
    "ConfigError",
    "DesignConfig",
    "EvaluatorConfig",
    "ExportConfig",
    "ExtractorConfig",
    "InfillConfig",
    "OptimizationConfig",
    "RunConfig",
    "StoppingConfig",
    "SurrogateConfig",
    "ValidationError",
    "load_config",
    "parse_run_config",
]
