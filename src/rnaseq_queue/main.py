"""CLI entrypoint for rnaseq-queue."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from rnaseq_queue import __version__
from rnaseq_queue.config import ConfigurationError
from rnaseq_queue.scheduler.controllers import (
    CommandOutcome,
    EnqueueCommand,
    QueueCliController,
    ReclaimCommand,
    RunCommand,
    StatusCommand,
)
from rnaseq_queue.scheduler.metadata import MetadataLookupError
from rnaseq_queue.scheduler.records import RecordFormatError

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@click.group()
@click.version_option(version=__version__, prog_name="rnaseq-queue")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def rnaseq_queue(log_level: str) -> None:
    """Admission-controlled RNA-seq sample queue.

    Configuration comes from `RNASEQ_QUEUE_*` environment variables.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@rnaseq_queue.command("run")
@click.option(
    "--work-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Work directory holding the queue, samples and results.",
)
@click.option(
    "--queue-size",
    type=click.IntRange(min=1),
    default=None,
    help="Override RNASEQ_QUEUE_QUEUE_SIZE.",
)
def run(work_dir: Path | None, queue_size: int | None) -> None:
    """Process every staged sample, then build the report and count matrix."""

    outcome = _guarded(
        lambda: QUEUE_CONTROLLER.run(
            RunCommand(work_dir=work_dir, queue_size=queue_size),
            on_progress=click.echo,
        ),
    )
    _emit_outcome(outcome, failure="Scheduler run failed.")


@rnaseq_queue.command("enqueue")
@click.option(
    "--work-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Work directory holding the queue.",
)
def enqueue(work_dir: Path | None) -> None:
    """Enumerate configured inputs into the staged queue without running."""

    outcome = _guarded(lambda: QUEUE_CONTROLLER.enqueue(EnqueueCommand(work_dir=work_dir)))
    _emit_outcome(outcome, failure="Enqueue failed.")


@rnaseq_queue.command("status")
@click.option(
    "--work-dir",
    type=click.Path(path_type=Path),
    default=None,
    help="Work directory holding the queue.",
)
@click.option("--ids", "show_ids", is_flag=True, help="List sample ids per location.")
def status(work_dir: Path | None, show_ids: bool) -> None:
    """Show how many samples sit in staged, admitted and done."""

    outcome = _guarded(
        lambda: QUEUE_CONTROLLER.status(StatusCommand(work_dir=work_dir, show_ids=show_ids)),
    )
    _emit_outcome(outcome, failure="Status failed.")


@rnaseq_queue.command("reclaim")
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(path_type=Path),
)
def reclaim(paths: tuple[Path, ...]) -> None:
    """Free the data blocks of files while keeping their size and timestamps."""

    outcome = QUEUE_CONTROLLER.reclaim(ReclaimCommand(paths=paths))
    _emit_outcome(outcome, failure="Reclaim failed for some paths.")


def _guarded(action: Callable[[], CommandOutcome]) -> CommandOutcome:
    try:
        return action()
    except (ConfigurationError, MetadataLookupError, RecordFormatError) as error:
        raise click.ClickException(str(error)) from error


def _emit_outcome(outcome: CommandOutcome, *, failure: str) -> None:
    _emit_lines(outcome.lines)
    if not outcome.success:
        raise click.ClickException(failure)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    rnaseq_queue()
