"""Branch routing: which stages a sample runs for the selected tool."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from rnaseq_queue.config import ToolSettings
from rnaseq_queue.scheduler.models import ArtifactClass, SampleDescriptor, SampleOrigin


class Tool(str, Enum):
    """Mutually exclusive quantification branches."""

    HISAT2 = "hisat2"
    KALLISTO = "kallisto"
    SALMON = "salmon"


@dataclass(frozen=True, slots=True)
class StageSpec:
    """One black-box stage and the artifacts it reads and writes."""

    name: str
    consumes: tuple[ArtifactClass, ...] = ()
    produces: ArtifactClass | None = None
    per_run: bool = False


DOWNLOAD_TO_RAW = StageSpec("download", produces=ArtifactClass.RAW_READS, per_run=True)
DOWNLOAD_TO_RUNS = StageSpec("download", produces=ArtifactClass.RUN_READS, per_run=True)
MERGE = StageSpec(
    "merge",
    consumes=(ArtifactClass.RUN_READS,),
    produces=ArtifactClass.RAW_READS,
)
FASTQC = StageSpec("fastqc", consumes=(ArtifactClass.RAW_READS,), produces=ArtifactClass.QC)

TOOL_STAGES: dict[Tool, tuple[StageSpec, ...]] = {
    Tool.HISAT2: (
        StageSpec(
            "hisat2_align",
            consumes=(ArtifactClass.RAW_READS,),
            produces=ArtifactClass.ALIGNMENTS,
        ),
        StageSpec(
            "featurecounts",
            consumes=(ArtifactClass.ALIGNMENTS,),
            produces=ArtifactClass.COUNTS,
        ),
        StageSpec("flagstat", consumes=(ArtifactClass.ALIGNMENTS,), produces=ArtifactClass.QC),
    ),
    Tool.KALLISTO: (
        StageSpec(
            "kallisto_quant",
            consumes=(ArtifactClass.RAW_READS,),
            produces=ArtifactClass.COUNTS,
        ),
    ),
    Tool.SALMON: (
        StageSpec(
            "salmon_quant",
            consumes=(ArtifactClass.RAW_READS,),
            produces=ArtifactClass.COUNTS,
        ),
    ),
}

# Outputs read by post-processing; never reclaimed per sample.
RETAINED_ARTIFACTS = frozenset({ArtifactClass.COUNTS, ArtifactClass.QC})


@dataclass(frozen=True, slots=True)
class BranchPlan:
    """Ordered stages for one sample on one branch.

    ``acquire`` stages (download, merge) run before the raw-data rendezvous;
    ``process`` stages run after it.  Local samples have no acquire stages.
    """

    sample: SampleDescriptor
    tool: Tool
    acquire: tuple[StageSpec, ...]
    process: tuple[StageSpec, ...]

    @property
    def stages(self) -> tuple[StageSpec, ...]:
        return self.acquire + self.process

    def expected_consumers(self, artifact: ArtifactClass) -> int:
        return sum(1 for stage in self.stages if artifact in stage.consumes)

    def reclaimable(self) -> dict[ArtifactClass, int]:
        """Artifacts produced in the work area, with their consumer counts."""

        produced = {stage.produces for stage in self.stages if stage.produces is not None}
        return {
            artifact: self.expected_consumers(artifact)
            for artifact in ArtifactClass
            if artifact in produced
            and artifact not in RETAINED_ARTIFACTS
            and self.expected_consumers(artifact) > 0
        }


def select_tool(tools: ToolSettings) -> Tool:
    """Resolve the single configured branch; raises ConfigurationError otherwise."""

    return Tool(tools.selected_tool())


def route(descriptor: SampleDescriptor, tool: Tool) -> BranchPlan:
    """Build the branch plan for ``descriptor``; pure and deterministic."""

    if descriptor.origin is SampleOrigin.LOCAL:
        acquire: tuple[StageSpec, ...] = ()
    elif len(descriptor.run_ids) > 1:
        acquire = (DOWNLOAD_TO_RUNS, MERGE)
    else:
        acquire = (DOWNLOAD_TO_RAW,)
    return BranchPlan(
        sample=descriptor,
        tool=tool,
        acquire=acquire,
        process=(FASTQC, *TOOL_STAGES[tool]),
    )
