"""Run-level post-processing over every completed sample."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from rnaseq_queue.config import Settings
from rnaseq_queue.scheduler.models import ArtifactClass
from rnaseq_queue.scheduler.pipeline import SampleLayout
from rnaseq_queue.scheduler.stages import StageExecutor, StageInvocation, StageResult

logger = logging.getLogger(__name__)

POSTPROCESS_SAMPLE_ID = "all-samples"


@dataclass(slots=True)
class PostProcessResult:
    """Stages run by one post-processing pass."""

    sample_ids: list[str] = field(default_factory=list)
    results: list[StageResult] = field(default_factory=list)


class PostProcessor:
    """Builds the aggregate QC report and one count matrix per format."""

    def __init__(self, *, settings: Settings, executor: StageExecutor) -> None:
        self.settings = settings
        self.executor = executor
        self.layout = SampleLayout(settings.samples_root)

    def run(self, sample_ids: list[str]) -> PostProcessResult:
        result = PostProcessResult(sample_ids=list(sample_ids))
        if not sample_ids:
            logger.warning("No completed samples; skipping post-processing")
            return result

        results_root = self.settings.results_root
        log_dir = results_root / "logs"
        qc_dirs = self._existing(sample_ids, ArtifactClass.QC)
        counts_dirs = self._existing(sample_ids, ArtifactClass.COUNTS)
        timeout = self.settings.engine.stage_timeout_seconds

        result.results.append(
            self.executor.run(
                StageInvocation(
                    sample_id=POSTPROCESS_SAMPLE_ID,
                    stage="report",
                    command_template=self.settings.commands.report,
                    outdir=results_root / "report",
                    log_dir=log_dir,
                    inputs=qc_dirs + counts_dirs,
                    timeout_seconds=timeout,
                ),
            ),
        )
        for matrix_format in self.settings.outputs.matrix_formats:
            result.results.append(
                self.executor.run(
                    StageInvocation(
                        sample_id=POSTPROCESS_SAMPLE_ID,
                        stage="matrix",
                        command_template=self.settings.commands.matrix,
                        outdir=results_root / "matrix",
                        log_dir=log_dir,
                        inputs=counts_dirs,
                        values={"format": matrix_format},
                        timeout_seconds=timeout,
                    ),
                ),
            )
        logger.info(
            "Post-processed %d samples into %s",
            len(sample_ids),
            results_root,
        )
        return result

    def _existing(self, sample_ids: list[str], artifact: ArtifactClass) -> tuple[str, ...]:
        paths: list[Path] = [
            self.layout.artifact_dir(sample_id, artifact) for sample_id in sample_ids
        ]
        return tuple(str(path) for path in paths if path.is_dir())
