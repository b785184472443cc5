from __future__ import annotations

import allure
import pytest

from rnaseq_queue.config import ConfigurationError, ToolSettings
from rnaseq_queue.scheduler.models import ArtifactClass, SampleDescriptor, SampleOrigin
from rnaseq_queue.scheduler.routing import (
    RETAINED_ARTIFACTS,
    Tool,
    route,
    select_tool,
)

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Branch Routing"),
]

LOCAL = SampleDescriptor(sample_id="s1", origin=SampleOrigin.LOCAL, payload=("/d/s1.fq",))
REMOTE_SINGLE = SampleDescriptor(sample_id="SAMN1", origin=SampleOrigin.REMOTE, payload=("SRR1",))
REMOTE_MULTI = SampleDescriptor(
    sample_id="SAMN2",
    origin=SampleOrigin.REMOTE,
    payload=("SRR2", "SRR3"),
)


def _names(stages) -> list[str]:
    return [stage.name for stage in stages]


def test_local_sample_skips_acquisition() -> None:
    plan = route(LOCAL, Tool.HISAT2)

    assert plan.acquire == ()
    assert _names(plan.process) == ["fastqc", "hisat2_align", "featurecounts", "flagstat"]
    assert plan.reclaimable() == {ArtifactClass.ALIGNMENTS: 2}


def test_hisat2_expected_consumer_counts() -> None:
    plan = route(REMOTE_SINGLE, Tool.HISAT2)

    assert plan.expected_consumers(ArtifactClass.RAW_READS) == 2
    assert plan.expected_consumers(ArtifactClass.ALIGNMENTS) == 2
    assert plan.reclaimable() == {
        ArtifactClass.RAW_READS: 2,
        ArtifactClass.ALIGNMENTS: 2,
    }


def test_multi_run_remote_sample_downloads_then_merges() -> None:
    plan = route(REMOTE_MULTI, Tool.KALLISTO)

    assert _names(plan.acquire) == ["download", "merge"]
    assert plan.acquire[0].per_run is True
    assert plan.acquire[0].produces is ArtifactClass.RUN_READS
    assert _names(plan.process) == ["fastqc", "kallisto_quant"]
    assert plan.reclaimable() == {
        ArtifactClass.RUN_READS: 1,
        ArtifactClass.RAW_READS: 2,
    }


def test_single_run_remote_sample_downloads_straight_to_raw_reads() -> None:
    plan = route(REMOTE_SINGLE, Tool.SALMON)

    assert _names(plan.acquire) == ["download"]
    assert plan.acquire[0].produces is ArtifactClass.RAW_READS
    assert _names(plan.process) == ["fastqc", "salmon_quant"]


@pytest.mark.parametrize("tool", list(Tool))
@pytest.mark.parametrize("sample", [LOCAL, REMOTE_SINGLE, REMOTE_MULTI])
def test_counts_and_qc_are_never_reclaimable(tool: Tool, sample: SampleDescriptor) -> None:
    plan = route(sample, tool)

    assert RETAINED_ARTIFACTS.isdisjoint(plan.reclaimable())
    assert route(sample, tool) == plan


def test_select_tool_maps_flags_to_enum() -> None:
    assert select_tool(ToolSettings(kallisto=True)) is Tool.KALLISTO


@pytest.mark.parametrize(
    "tools",
    [ToolSettings(), ToolSettings(hisat2=True, kallisto=True, salmon=True)],
)
def test_select_tool_rejects_zero_or_several_tools(tools: ToolSettings) -> None:
    with pytest.raises(ConfigurationError):
        select_tool(tools)
