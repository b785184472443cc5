"""Domain models for the sample queue and its completion tracking."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

_SAMPLE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

LOCAL_PAYLOAD_SEPARATOR = "::"
REMOTE_PAYLOAD_SEPARATOR = " "


class SampleOrigin(str, Enum):
    """Where a sample's raw reads come from."""

    LOCAL = "local"
    REMOTE = "remote"


class QueueLocation(str, Enum):
    """Durable work item locations; an item lives in exactly one."""

    STAGED = "staged"
    ADMITTED = "admitted"
    DONE = "done"


class ArtifactClass(str, Enum):
    """Large intermediate artifacts tracked for reclaim."""

    RUN_READS = "run_reads"
    RAW_READS = "raw_reads"
    ALIGNMENTS = "alignments"
    COUNTS = "counts"
    QC = "qc"


SAMPLE_COMPLETION = "sample"
RAW_DATA_RENDEZVOUS = "rendezvous"


@dataclass(frozen=True, slots=True)
class SampleDescriptor:
    """Immutable description of one sample to process."""

    sample_id: str
    origin: SampleOrigin
    payload: tuple[str, ...]

    def __post_init__(self) -> None:
        validate_sample_id(self.sample_id)
        if not self.payload:
            raise ValueError(f"Sample {self.sample_id!r} has an empty payload.")

    @property
    def run_ids(self) -> tuple[str, ...]:
        if self.origin is not SampleOrigin.REMOTE:
            return ()
        return self.payload

    @property
    def local_paths(self) -> tuple[Path, ...]:
        if self.origin is not SampleOrigin.LOCAL:
            return ()
        return tuple(Path(value) for value in self.payload)

    def serialized_payload(self) -> str:
        separator = (
            LOCAL_PAYLOAD_SEPARATOR
            if self.origin is SampleOrigin.LOCAL
            else REMOTE_PAYLOAD_SEPARATOR
        )
        return separator.join(self.payload)


@dataclass(frozen=True, slots=True)
class ArtifactKey:
    """Reference-count key for one artifact class of one sample."""

    sample_id: str
    artifact_class: str

    def __str__(self) -> str:
        return f"{self.sample_id}/{self.artifact_class}"


@dataclass(slots=True)
class ArtifactSignal:
    """One consumer finished with an artifact."""

    key: ArtifactKey
    consumer: str
    payload: object | None = None


@dataclass(slots=True)
class AdvanceResult:
    """Outcome of one lock-guarded admission step."""

    completed: str
    admitted: SampleDescriptor | None
    terminal: bool


@dataclass(slots=True)
class QueueCounts:
    """Snapshot of how many items sit in each location."""

    staged: int = 0
    admitted: int = 0
    done: int = 0

    @property
    def total(self) -> int:
        return self.staged + self.admitted + self.done


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate run counters for CLI reporting."""

    staged: int = 0
    skipped: int = 0
    admitted: int = 0
    completed: int = 0
    failed: int = 0
    reclaimed_files: int = 0
    reclaimed_bytes: int = 0
    postprocessed: bool = False
    resumed_to_postprocess: bool = False
    error: str | None = None
    stalled_keys: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None


def validate_sample_id(sample_id: str) -> None:
    """Reject ids that cannot be used as a single file name."""

    if not _SAMPLE_ID_PATTERN.match(sample_id):
        raise ValueError(
            f"Invalid sample id: {sample_id!r}. "
            "Use letters, digits, '.', '_' or '-', starting with a letter or digit.",
        )
