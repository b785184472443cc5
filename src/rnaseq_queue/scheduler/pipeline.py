"""Per-sample stage sequencing with artifact and completion signals."""

from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path

from rnaseq_queue.config import Settings
from rnaseq_queue.scheduler.aggregator import CompletionAggregator
from rnaseq_queue.scheduler.events import SchedulerBuses
from rnaseq_queue.scheduler.models import (
    RAW_DATA_RENDEZVOUS,
    SAMPLE_COMPLETION,
    ArtifactClass,
    ArtifactKey,
    ArtifactSignal,
    SampleDescriptor,
)
from rnaseq_queue.scheduler.routing import BranchPlan, StageSpec, Tool
from rnaseq_queue.scheduler.stages import StageExecutor, StageInvocation

logger = logging.getLogger(__name__)

ORIGIN_CONSUMER = "origin"
RAW_DATA_CONSUMER = "raw_data"

ReleaseCallback = Callable[[ArtifactKey, Path], None]


class SampleLayout:
    """Deterministic per-sample directory layout under the work area."""

    def __init__(self, samples_root: Path) -> None:
        self.samples_root = samples_root

    def sample_dir(self, sample_id: str) -> Path:
        return self.samples_root / sample_id

    def artifact_dir(self, sample_id: str, artifact: ArtifactClass) -> Path:
        return self.sample_dir(sample_id) / artifact.value

    def stage_outdir(self, sample_id: str, stage: StageSpec) -> Path:
        if stage.produces is ArtifactClass.QC:
            return self.artifact_dir(sample_id, ArtifactClass.QC) / stage.name
        if stage.produces is None:
            return self.sample_dir(sample_id) / stage.name
        return self.artifact_dir(sample_id, stage.produces)

    def log_dir(self, sample_id: str) -> Path:
        return self.sample_dir(sample_id) / "logs"


def rendezvous_key(sample_id: str) -> ArtifactKey:
    return ArtifactKey(sample_id, RAW_DATA_RENDEZVOUS)


def completion_key(sample_id: str) -> ArtifactKey:
    return ArtifactKey(sample_id, SAMPLE_COMPLETION)


class SamplePipeline:
    """Runs one sample's branch plan and emits its completion signals.

    Acquire stages run first; the sample then waits on the raw-data
    rendezvous (origin marker plus raw-data-ready) before the process
    stages.  After each stage, one ``artifact_done`` signal is published per
    reclaimable artifact it consumed, and the last stage is followed by the
    sample completion signal.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        executor: StageExecutor,
        aggregator: CompletionAggregator,
        buses: SchedulerBuses,
        on_release: ReleaseCallback,
        layout: SampleLayout | None = None,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.aggregator = aggregator
        self.buses = buses
        self.on_release = on_release
        self.layout = layout or SampleLayout(settings.samples_root)

    def run(self, plan: BranchPlan) -> None:
        sample = plan.sample
        reclaimable = plan.reclaimable()
        joined = self.aggregator.register(rendezvous_key(sample.sample_id), expected=2)

        for stage in plan.acquire:
            self._run_stage(plan, stage, reclaimable, raw_inputs=())

        self.buses.artifact_done.publish(
            ArtifactSignal(
                key=rendezvous_key(sample.sample_id),
                consumer=RAW_DATA_CONSUMER,
                payload=self._raw_inputs(plan),
            ),
        )
        payloads = joined.result()
        raw_inputs = tuple(payloads[RAW_DATA_CONSUMER])  # type: ignore[arg-type]
        logger.info(
            "Sample %s (%s) joined with %d raw files",
            sample.sample_id,
            payloads[ORIGIN_CONSUMER],
            len(raw_inputs),
        )

        for stage in plan.process:
            self._run_stage(plan, stage, reclaimable, raw_inputs=raw_inputs)

        self.buses.artifact_done.publish(
            ArtifactSignal(key=completion_key(sample.sample_id), consumer=plan.tool.value),
        )

    def _run_stage(
        self,
        plan: BranchPlan,
        stage: StageSpec,
        reclaimable: dict[ArtifactClass, int],
        *,
        raw_inputs: tuple[str, ...],
    ) -> None:
        sample = plan.sample
        for invocation in self._invocations(plan, stage, raw_inputs):
            self.executor.run(invocation)

        if stage.produces is not None and stage.produces in reclaimable:
            artifact = stage.produces
            path = self.layout.artifact_dir(sample.sample_id, artifact)
            self.aggregator.register(
                ArtifactKey(sample.sample_id, artifact.value),
                expected=reclaimable[artifact],
                callback=lambda key, _payloads, path=path: self.on_release(key, path),
            )
        for artifact in stage.consumes:
            if artifact in reclaimable:
                self.buses.artifact_done.publish(
                    ArtifactSignal(
                        key=ArtifactKey(sample.sample_id, artifact.value),
                        consumer=stage.name,
                    ),
                )

    def _invocations(
        self,
        plan: BranchPlan,
        stage: StageSpec,
        raw_inputs: tuple[str, ...],
    ) -> list[StageInvocation]:
        sample = plan.sample
        base_values = self._tool_values(plan.tool)
        outdir = self.layout.stage_outdir(sample.sample_id, stage)
        template = getattr(self.settings.commands, stage.name)
        common = {
            "sample_id": sample.sample_id,
            "stage": stage.name,
            "command_template": template,
            "outdir": outdir,
            "log_dir": self.layout.log_dir(sample.sample_id),
            "timeout_seconds": self.settings.engine.stage_timeout_seconds,
        }
        if stage.per_run:
            return [
                StageInvocation(values={**base_values, "run_id": run_id}, **common)
                for run_id in sample.run_ids
            ]
        return [
            StageInvocation(
                inputs=self._stage_inputs(sample, stage, raw_inputs),
                values=base_values,
                **common,
            ),
        ]

    def _stage_inputs(
        self,
        sample: SampleDescriptor,
        stage: StageSpec,
        raw_inputs: tuple[str, ...],
    ) -> tuple[str, ...]:
        inputs: list[str] = []
        for artifact in stage.consumes:
            if artifact is ArtifactClass.RAW_READS:
                inputs.extend(raw_inputs)
            else:
                inputs.extend(_files_under(self.layout.artifact_dir(sample.sample_id, artifact)))
        return tuple(inputs)

    def _raw_inputs(self, plan: BranchPlan) -> tuple[str, ...]:
        if not plan.acquire:
            return plan.sample.payload
        raw_dir = self.layout.artifact_dir(plan.sample.sample_id, ArtifactClass.RAW_READS)
        return _files_under(raw_dir)

    def _tool_values(self, tool: Tool) -> dict[str, str]:
        tools = self.settings.tools
        values = {"threads": str(tools.threads)}
        index = {
            Tool.HISAT2: tools.hisat2_index,
            Tool.KALLISTO: tools.kallisto_index,
            Tool.SALMON: tools.salmon_index,
        }[tool]
        if index is not None:
            values["index"] = str(index)
        if tools.annotation_gtf is not None:
            values["annotation"] = str(tools.annotation_gtf)
        return values


def _files_under(directory: Path) -> tuple[str, ...]:
    if not directory.is_dir():
        return ()
    return tuple(str(path) for path in sorted(directory.rglob("*")) if path.is_file())
