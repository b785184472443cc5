"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from rnaseq_queue.config import (
    InputSettings,
    OutputSettings,
    PublishSettings,
    QueueSettings,
    Settings,
    ToolSettings,
)
from rnaseq_queue.scheduler.stages import StageFailedError, StageInvocation, StageResult


class FakeStageExecutor:
    """Records invocations and writes one small output file per stage."""

    def __init__(self, *, payload_bytes: int = 8192) -> None:
        self.payload_bytes = payload_bytes
        self.invocations: list[StageInvocation] = []
        self.failures: set[tuple[str, str]] = set()
        self.hooks: dict[str, Callable[[StageInvocation], None]] = {}
        self._lock = threading.Lock()

    def run(self, invocation: StageInvocation) -> StageResult:
        with self._lock:
            self.invocations.append(invocation)
        hook = self.hooks.get(invocation.stage)
        if hook is not None:
            hook(invocation)
        if (invocation.sample_id, invocation.stage) in self.failures:
            raise StageFailedError(
                f"Stage {invocation.label} for {invocation.sample_id} exited with 1",
                stage=invocation.stage,
                sample_id=invocation.sample_id,
            )
        invocation.outdir.mkdir(parents=True, exist_ok=True)
        invocation.log_dir.mkdir(parents=True, exist_ok=True)
        (invocation.outdir / f"{invocation.label}.dat").write_bytes(b"x" * self.payload_bytes)
        return StageResult(
            sample_id=invocation.sample_id,
            stage=invocation.stage,
            exit_code=0,
            timed_out=False,
            outdir=invocation.outdir,
            stdout_path=invocation.log_dir / f"{invocation.label}.out",
            stderr_path=invocation.log_dir / f"{invocation.label}.err",
        )

    def stages_for(self, sample_id: str) -> list[str]:
        with self._lock:
            return [item.label for item in self.invocations if item.sample_id == sample_id]


def write_sample_sheet(directory: Path, samples: dict[str, list[str]]) -> Path:
    """Create FASTQ files and a sheet with one row per file pair."""

    directory.mkdir(parents=True, exist_ok=True)
    lines = ["sample,fastq_1,fastq_2"]
    for sample_id, files in samples.items():
        for name in files:
            (directory / name).write_bytes(b"@read\nACGT\n+\nFFFF\n")
        for index in range(0, len(files), 2):
            pair = files[index : index + 2]
            lines.append(",".join([sample_id, pair[0], pair[1] if len(pair) > 1 else ""]))
    sheet = directory / "samples.csv"
    sheet.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return sheet


def tool_settings(root: Path, tool: str) -> ToolSettings:
    references = root / "references"
    references.mkdir(parents=True, exist_ok=True)
    if tool == "hisat2":
        (references / "genome.1.ht2").write_bytes(b"ht2")
        gtf = references / "genes.gtf"
        gtf.write_text("chr1\tsrc\tgene\t1\t10\t.\t+\t.\tgene_id \"g1\";\n", encoding="utf-8")
        return ToolSettings(
            hisat2=True,
            hisat2_index=references / "genome",
            annotation_gtf=gtf,
        )
    if tool == "kallisto":
        index = references / "transcripts.idx"
        index.write_bytes(b"idx")
        return ToolSettings(kallisto=True, kallisto_index=index)
    salmon_index = references / "salmon_index"
    salmon_index.mkdir(exist_ok=True)
    (salmon_index / "info.json").write_text("{}", encoding="utf-8")
    return ToolSettings(salmon=True, salmon_index=salmon_index)


SettingsFactory = Callable[..., Settings]


@pytest.fixture()
def settings_factory(tmp_path: Path) -> SettingsFactory:
    """Build validated-looking settings rooted in ``tmp_path``."""

    def _factory(  # noqa: PLR0913
        *,
        samples: dict[str, list[str]] | None = None,
        queue_size: int = 2,
        tool: str = "kallisto",
        remote_accessions: tuple[str, ...] = (),
        skip: tuple[str, ...] = (),
        publish: PublishSettings | None = None,
        matrix_formats: tuple[str, ...] = ("tsv",),
        **queue_overrides: object,
    ) -> Settings:
        sheet = None
        if samples is not None:
            sheet = write_sample_sheet(tmp_path / "inputs", samples)
        skip_list = None
        if skip:
            skip_list = tmp_path / "skip.txt"
            skip_list.write_text("\n".join(skip) + "\n", encoding="utf-8")
        queue = QueueSettings(
            queue_size=queue_size,
            lock_initial_delay_seconds=0.001,
            lock_poll_interval_seconds=0.01,
            watch_poll_interval_seconds=0.01,
        )
        for name, value in queue_overrides.items():
            setattr(queue, name, value)
        return Settings(
            work_dir=tmp_path / "work",
            queue=queue,
            inputs=InputSettings(
                sample_sheet=sheet,
                remote_accessions=remote_accessions,
                skip_list=skip_list,
            ),
            tools=tool_settings(tmp_path, tool),
            publish=publish or PublishSettings(),
            outputs=OutputSettings(matrix_formats=matrix_formats),
        )

    return _factory


@pytest.fixture()
def fake_executor() -> FakeStageExecutor:
    return FakeStageExecutor()
