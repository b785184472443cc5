"""Controllers for scheduler CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from rnaseq_queue.config import Settings
from rnaseq_queue.scheduler.cleanup import reclaim_tree
from rnaseq_queue.scheduler.engine import PrefectStageExecutor
from rnaseq_queue.scheduler.models import QueueLocation
from rnaseq_queue.scheduler.runner import QueueScheduler
from rnaseq_queue.scheduler.stages import StageExecutor
from rnaseq_queue.scheduler.store import open_store


@dataclass(slots=True)
class RunCommand:
    """CLI input for a full scheduler run."""

    work_dir: Path | None
    queue_size: int | None = None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for enumerate-and-stage only."""

    work_dir: Path | None


@dataclass(slots=True)
class StatusCommand:
    """CLI input for queue location counts."""

    work_dir: Path | None
    show_ids: bool = False


@dataclass(slots=True)
class ReclaimCommand:
    """CLI input for a manual sparse reclaim."""

    paths: tuple[Path, ...]


@dataclass(slots=True)
class CommandOutcome:
    """Lines to print plus whether the command succeeded."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


ExecutorFactory = Callable[[Settings], StageExecutor]


def _prefect_executor(settings: Settings) -> StageExecutor:
    return PrefectStageExecutor(settings.engine)


class QueueCliController:
    """Coordinates run, enqueue, status and reclaim CLI operations."""

    def __init__(self, executor_factory: ExecutorFactory = _prefect_executor) -> None:
        self.executor_factory = executor_factory

    def run(
        self,
        command: RunCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> CommandOutcome:
        settings = _settings(command.work_dir)
        if command.queue_size is not None:
            settings.queue.queue_size = command.queue_size
        scheduler = QueueScheduler(
            settings=settings,
            executor=self.executor_factory(settings),
            on_progress=on_progress,
        )
        summary = scheduler.run()
        lines = [
            "Run summary: "
            f"staged={summary.staged} skipped={summary.skipped} "
            f"admitted={summary.admitted} completed={summary.completed} "
            f"failed={summary.failed}",
            f"Reclaimed: files={summary.reclaimed_files} bytes={summary.reclaimed_bytes}",
            f"Post-processed: {'yes' if summary.postprocessed else 'no'}"
            + (" (resumed)" if summary.resumed_to_postprocess else ""),
        ]
        if summary.stalled_keys:
            lines.append(f"Stalled joins: {', '.join(summary.stalled_keys)}")
        if summary.error is not None:
            lines.append(f"Error: {summary.error}")
        return CommandOutcome(lines=lines, success=summary.success)

    def enqueue(self, command: EnqueueCommand) -> CommandOutcome:
        settings = _settings(command.work_dir)
        scheduler = QueueScheduler(settings=settings, executor=self.executor_factory(settings))
        staged, dropped = scheduler.enqueue()
        return CommandOutcome(
            lines=[f"Enqueued: staged={staged} dropped={dropped} queue={settings.queue_root}"],
        )

    def status(self, command: StatusCommand) -> CommandOutcome:
        settings = _settings(command.work_dir)
        store = open_store(settings.queue_root, settings.inputs)
        counts = store.counts()
        lines = [
            f"Queue {settings.queue_root}: staged={counts.staged} "
            f"admitted={counts.admitted} done={counts.done} total={counts.total}",
        ]
        if command.show_ids:
            for location in QueueLocation:
                ids = store.ids(location)
                lines.append(f"{location.value}: {', '.join(ids) if ids else '-'}")
        return CommandOutcome(lines=lines)

    def reclaim(self, command: ReclaimCommand) -> CommandOutcome:
        outcome = CommandOutcome()
        for path in command.paths:
            try:
                results = reclaim_tree(path)
            except OSError as error:
                outcome.lines.append(f"Failed to reclaim {path}: {error}")
                outcome.success = False
                continue
            freed = sum(result.freed_bytes for result in results)
            outcome.lines.append(f"Reclaimed {path}: files={len(results)} freed_bytes={freed}")
        return outcome


def _settings(work_dir: Path | None) -> Settings:
    return Settings.from_env(work_dir=work_dir)
