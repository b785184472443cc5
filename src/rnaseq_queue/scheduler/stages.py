"""Black-box stage invocation: command rendering and subprocess execution."""

from __future__ import annotations

import shlex
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Protocol

SUPPORTED_PLACEHOLDERS = (
    "sample_id",
    "inputs",
    "outdir",
    "run_id",
    "threads",
    "index",
    "annotation",
    "format",
)


class StageCommandError(ValueError):
    """A stage command template cannot be rendered."""


class StageFailedError(RuntimeError):
    """A stage exited non-zero or timed out."""

    def __init__(self, message: str, *, stage: str, sample_id: str) -> None:
        super().__init__(message)
        self.stage = stage
        self.sample_id = sample_id


@dataclass(slots=True)
class StageInvocation:
    """Inputs required to run one stage for one sample (or one run)."""

    sample_id: str
    stage: str
    command_template: str
    outdir: Path
    log_dir: Path
    inputs: tuple[str, ...] = ()
    values: dict[str, str] = field(default_factory=dict)
    timeout_seconds: int = 86_400

    @property
    def label(self) -> str:
        variant = self.values.get("run_id") or self.values.get("format")
        return f"{self.stage}.{variant}" if variant else self.stage


@dataclass(slots=True)
class StageResult:
    """Execution outcome from a stage runner."""

    sample_id: str
    stage: str
    exit_code: int
    timed_out: bool
    outdir: Path
    stdout_path: Path
    stderr_path: Path


class StageExecutor(Protocol):
    """Protocol implemented by stage runners."""

    def run(self, invocation: StageInvocation) -> StageResult:
        """Run a stage and return its result; raise StageFailedError on failure."""


def build_stage_args(invocation: StageInvocation) -> list[str]:
    """Render the command template into an argv list."""

    stripped = invocation.command_template.strip()
    if not stripped:
        raise StageCommandError(f"Command template for stage {invocation.stage!r} is empty.")
    values = {
        "sample_id": shlex.quote(invocation.sample_id),
        "inputs": " ".join(shlex.quote(item) for item in invocation.inputs),
        "outdir": shlex.quote(str(invocation.outdir)),
    }
    for name, value in invocation.values.items():
        values[name] = shlex.quote(value)
    try:
        rendered = stripped.format(**values)
    except KeyError as error:
        raise StageCommandError(
            f"Unsupported or missing placeholder {error} in {invocation.stage!r} template. "
            f"Supported: {', '.join(SUPPORTED_PLACEHOLDERS)}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise StageCommandError(
            f"Command template for stage {invocation.stage!r} rendered an empty command.",
        )
    return argv


class SubprocessStageExecutor:
    """Runs a rendered stage command with per-stage logs and a timeout."""

    def __init__(self, *, poll_interval_seconds: float = 0.5) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, invocation: StageInvocation) -> StageResult:
        argv = build_stage_args(invocation)
        invocation.outdir.mkdir(parents=True, exist_ok=True)
        invocation.log_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = invocation.log_dir / f"{invocation.label}.out"
        stderr_path = invocation.log_dir / f"{invocation.label}.err"

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = self._run_subprocess(
                    argv=argv,
                    timeout_seconds=invocation.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise StageFailedError(
                f"Stage command not found: {argv[0]}",
                stage=invocation.stage,
                sample_id=invocation.sample_id,
            ) from error

        result = StageResult(
            sample_id=invocation.sample_id,
            stage=invocation.stage,
            exit_code=exit_code,
            timed_out=timed_out,
            outdir=invocation.outdir,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
        )
        if timed_out:
            raise StageFailedError(
                f"Stage {invocation.label} for {invocation.sample_id} timed out "
                f"after {invocation.timeout_seconds}s",
                stage=invocation.stage,
                sample_id=invocation.sample_id,
            )
        if exit_code != 0:
            raise StageFailedError(
                f"Stage {invocation.label} for {invocation.sample_id} exited with {exit_code}; "
                f"see {stderr_path}",
                stage=invocation.stage,
                sample_id=invocation.sample_id,
            )
        return result

    def _run_subprocess(
        self,
        *,
        argv: list[str],
        timeout_seconds: int,
        stdout_handle: IO[str],
        stderr_handle: IO[str],
    ) -> tuple[int, bool]:
        process = subprocess.Popen(  # noqa: S603
            argv,
            stdout=stdout_handle,
            stderr=stderr_handle,
            text=True,
        )
        start_monotonic = time.monotonic()
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False
            if time.monotonic() - start_monotonic >= timeout_seconds:
                _terminate_process(process)
                return 124, True
            time.sleep(self.poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
