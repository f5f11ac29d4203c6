"""External evaluation harness running a command-line program per point."""
from __future__ import annotations

import os
import signal
import string
import subprocess
from enum import Enum
from pathlib import Path
from typing import IO, Any, Dict, List, Mapping, Sequence, Tuple

from ..space import ParameterSpace
from .base import (
    AttemptResult,
    BaseEvaluator,
    EvalTimeout,
    InvocationIdentity,
    NonZeroExit,
    ParseFailure,
)
from .extractors import Extractor, PatternExtractor


#: Placeholders available to every command template besides parameter names.
RESERVED_PLACEHOLDERS = ("output", "identity", "workdir")

#: Exit status reported when the program cannot be started at all.
LAUNCH_FAILURE_EXIT = 127


class ArgumentStyle(str, Enum):
    """How parameter values reach the external program.

    ``template`` formats ``{name}`` placeholders inside the command list.
    ``flags`` appends ``--name value`` pairs and ``positional`` appends bare
    values, both in parameter-space order.
    """

    TEMPLATE = "template"
    FLAGS = "flags"
    POSITIONAL = "positional"


def format_value(value: Any) -> str:
    if isinstance(value, float):
        return repr(float(value))
    return str(value)


class CommandEvaluator(BaseEvaluator):
    """Evaluate points by invoking an external program.

    Every attempt receives an :class:`InvocationIdentity` and writes to
    ``<workdir>/<identity>.out``. When the command template contains an
    ``{output}`` placeholder the program is expected to write that file itself;
    otherwise its standard output is redirected into it. The artifact is then
    read back and handed to the configured extractor.
    """

    def __init__(
        self,
        space: ParameterSpace,
        command: Sequence[str],
        *,
        extractor: Extractor | None = None,
        workdir: str | Path = "runs/artifacts",
        argument_style: ArgumentStyle | str = ArgumentStyle.TEMPLATE,
        timeout: float | None = None,
        max_retries: int = 0,
        cleanup: bool = False,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        namespace: str | None = None,
        verbose: bool = False,
    ) -> None:
        super().__init__(space, timeout=timeout, max_retries=max_retries, namespace=namespace)
        if not command:
            raise ValueError("command must contain at least the program to run")
        self.command = [str(part) for part in command]
        self.extractor = extractor or PatternExtractor()
        self.workdir = Path(workdir).expanduser().resolve()
        self.cwd = Path(cwd) if cwd is not None else None
        self.argument_style = ArgumentStyle(argument_style)
        self.cleanup = bool(cleanup)
        self.env = dict(env) if env else None
        self.verbose = verbose
        self._writes_output = self._validate_template()
        self.workdir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Command construction
    # ------------------------------------------------------------------
    def _validate_template(self) -> bool:
        allowed = set(RESERVED_PLACEHOLDERS)
        if self.argument_style is ArgumentStyle.TEMPLATE:
            allowed.update(self.space.names)
        seen: set[str] = set()
        for part in self.command:
            for _, field_name, _, _ in string.Formatter().parse(part):
                if field_name is None:
                    continue
                if field_name not in allowed:
                    raise ValueError(f"Unknown placeholder '{{{field_name}}}' in command template")
                seen.add(field_name)
        return "output" in seen

    def build_command(self, point: Mapping[str, Any], identity: InvocationIdentity) -> List[str]:
        """Render the argument list for ``point`` under ``identity``."""

        substitutions: Dict[str, str] = {
            "output": str(self.artifact_path(identity)),
            "identity": identity.token,
            "workdir": str(self.workdir),
        }
        if self.argument_style is ArgumentStyle.TEMPLATE:
            for name in self.space.names:
                substitutions[name] = format_value(point[name])
        args = [part.format_map(substitutions) for part in self.command]

        if self.argument_style is ArgumentStyle.FLAGS:
            for name in self.space.names:
                args.extend([f"--{name}", format_value(point[name])])
        elif self.argument_style is ArgumentStyle.POSITIONAL:
            args.extend(format_value(point[name]) for name in self.space.names)
        return args

    def artifact_path(self, identity: InvocationIdentity) -> Path:
        return self.workdir / f"{identity.token}.out"

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _run(
        self,
        point: Mapping[str, Any],
        identity: InvocationIdentity,
        timeout: float | None,
    ) -> AttemptResult:
        artifact = self.artifact_path(identity)
        args = self.build_command(point, identity)
        env = None
        if self.env is not None:
            env = dict(os.environ)
            env.update(self.env)

        try:
            if self._writes_output:
                returncode, stderr = self._execute(args, env, subprocess.DEVNULL, timeout)
            else:
                with artifact.open("wb") as fh:
                    returncode, stderr = self._execute(args, env, fh, timeout)
        except subprocess.TimeoutExpired as exc:
            self._report(identity, "timeout")
            raise EvalTimeout(timeout) from exc
        except OSError as exc:
            self._report(identity, f"launch failed ({exc})")
            raise NonZeroExit(LAUNCH_FAILURE_EXIT, stderr=str(exc)) from exc

        if returncode != 0:
            self._report(identity, f"exit {returncode}")
            raise NonZeroExit(returncode, stderr=_tail(stderr))

        try:
            text = artifact.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError as exc:
            raise ParseFailure(f"artifact {artifact.name} missing") from exc
        except OSError as exc:
            raise ParseFailure(f"artifact {artifact.name} unreadable") from exc

        value = self.extractor.extract(text)
        if self.cleanup:
            self._remove_artifact(artifact)
        self._report(identity, f"ok value={value!r}")
        return AttemptResult(value=value, exit_status=returncode, artifact=artifact)

    def _execute(
        self,
        args: List[str],
        env: Dict[str, str] | None,
        stdout: IO[bytes] | int,
        timeout: float | None,
    ) -> Tuple[int, str]:
        """Run ``args`` in its own session and return exit status and stderr.

        On timeout the whole process group is killed before
        :class:`subprocess.TimeoutExpired` propagates, so helpers started by a
        wrapper script do not outlive the evaluation.
        """

        with subprocess.Popen(
            args,
            cwd=self.cwd,
            env=env,
            stdout=stdout,
            stderr=subprocess.PIPE,
            start_new_session=True,
        ) as process:
            try:
                _, stderr = process.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                _kill_process_group(process)
                process.communicate()
                raise
            except BaseException:
                _kill_process_group(process)
                raise
        return process.returncode, stderr.decode("utf-8", errors="replace")

    def _remove_artifact(self, artifact: Path) -> None:
        try:
            artifact.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            print(f"[warning] Failed to remove artifact {artifact}: {exc}")

    def _report(self, identity: InvocationIdentity, message: str) -> None:
        if self.verbose:
            print(f"[eval] {identity.token}: {message}")


def _kill_process_group(process: subprocess.Popen) -> None:
    if not hasattr(os, "killpg"):
        process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        # The group is already gone.
        pass


def _tail(text: str | None, limit: int = 2000) -> str:
    if not text:
        return ""
    return text[-limit:]


__all__ = ["ArgumentStyle", "CommandEvaluator", "LAUNCH_FAILURE_EXIT", "format_value"]
