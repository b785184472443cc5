"""Prefect tasks that run black-box stages with engine-level retries.

The scheduler never retries a stage itself: a stage either returns through
the engine (success) or raises after the engine gave up.
"""

from __future__ import annotations

import logging

from prefect import task

from rnaseq_queue.config import EngineSettings
from rnaseq_queue.scheduler.stages import (
    StageInvocation,
    StageResult,
    SubprocessStageExecutor,
)

logger = logging.getLogger(__name__)

_STEP_RETRIES = 2
_STEP_RETRY_DELAY = 30


@task(name="run_stage", retries=_STEP_RETRIES, retry_delay_seconds=_STEP_RETRY_DELAY)
def run_stage_task(invocation: StageInvocation) -> StageResult:
    """Execute one stage command as a Prefect task."""

    logger.info("Running %s for %s", invocation.label, invocation.sample_id)
    return SubprocessStageExecutor().run(invocation)


class PrefectStageExecutor:
    """StageExecutor that routes each invocation through a Prefect task."""

    def __init__(self, engine: EngineSettings) -> None:
        self.engine = engine

    def run(self, invocation: StageInvocation) -> StageResult:
        configured = run_stage_task.with_options(
            retries=self.engine.stage_retries,
            retry_delay_seconds=self.engine.stage_retry_delay_seconds,
            task_run_name=f"{invocation.label}[{invocation.sample_id}]",
        )
        return configured(invocation=invocation)
