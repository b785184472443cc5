"""On-disk formats for work item records, skip lists and sample sheets."""

from __future__ import annotations

import csv
import io
from pathlib import Path

from rnaseq_queue.config import ConfigurationError
from rnaseq_queue.scheduler.models import (
    LOCAL_PAYLOAD_SEPARATOR,
    SampleDescriptor,
    SampleOrigin,
)

RECORD_SUFFIX = ".sample"
SAMPLE_SHEET_FIELDS = ("sample", "fastq_1", "fastq_2")


class RecordFormatError(ValueError):
    """Persisted work item record cannot be parsed."""


def format_record(descriptor: SampleDescriptor) -> str:
    """Render one descriptor as a line of three quoted fields."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(
        [descriptor.sample_id, descriptor.serialized_payload(), descriptor.origin.value],
    )
    return buffer.getvalue()


def parse_record(text: str, *, source: str = "<record>") -> SampleDescriptor:
    """Parse a record produced by ``format_record``."""

    rows = [row for row in csv.reader(io.StringIO(text)) if row]
    if len(rows) != 1:
        raise RecordFormatError(f"Expected exactly one record line in {source}, got {len(rows)}")
    row = rows[0]
    if len(row) != 3:
        raise RecordFormatError(f"Expected 3 fields in {source}, got {len(row)}")
    sample_id, raw_payload, raw_origin = row
    try:
        origin = SampleOrigin(raw_origin.strip())
    except ValueError as error:
        raise RecordFormatError(f"Unknown origin {raw_origin!r} in {source}") from error

    if origin is SampleOrigin.LOCAL:
        payload = tuple(part for part in raw_payload.split(LOCAL_PAYLOAD_SEPARATOR) if part)
    else:
        payload = tuple(raw_payload.split())
    try:
        return SampleDescriptor(sample_id=sample_id, origin=origin, payload=payload)
    except ValueError as error:
        raise RecordFormatError(f"Invalid record in {source}: {error}") from error


def read_record(path: Path) -> SampleDescriptor:
    return parse_record(path.read_text("utf-8"), source=str(path))


def record_name(sample_id: str) -> str:
    return f"{sample_id}{RECORD_SUFFIX}"


def read_skip_list(path: Path | None) -> frozenset[str]:
    """Load newline-delimited sample ids; blank and ``#`` lines are ignored."""

    if path is None or not path.exists():
        return frozenset()
    skipped: set[str] = set()
    for line in path.read_text("utf-8").splitlines():
        token = line.strip()
        if not token or token.startswith("#"):
            continue
        skipped.add(token)
    return frozenset(skipped)


def read_sample_sheet(path: Path) -> list[SampleDescriptor]:
    """Load local samples from a ``sample,fastq_1,fastq_2`` CSV.

    Repeated sample rows are concatenated in file order, so technical
    replicates end up as one multi-file payload.  Relative paths resolve
    against the sheet's directory.
    """

    with path.open(newline="", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        header = tuple(name.strip() for name in (reader.fieldnames or ()))
        if not header or header[:2] != SAMPLE_SHEET_FIELDS[:2]:
            raise ConfigurationError(
                f"Sample sheet {path} must start with columns: {', '.join(SAMPLE_SHEET_FIELDS)}",
            )
        grouped: dict[str, list[str]] = {}
        for line_no, row in enumerate(reader, start=2):
            sample_id = (row.get("sample") or "").strip()
            if not sample_id:
                raise ConfigurationError(f"Sample sheet {path}:{line_no} has an empty sample id")
            files = [
                _resolve_sheet_path(path, value)
                for value in (row.get("fastq_1"), row.get("fastq_2"))
                if value and value.strip()
            ]
            if not files:
                raise ConfigurationError(
                    f"Sample sheet {path}:{line_no} lists no FASTQ files for {sample_id!r}",
                )
            grouped.setdefault(sample_id, []).extend(files)

    descriptors: list[SampleDescriptor] = []
    for sample_id, files in grouped.items():
        try:
            descriptors.append(
                SampleDescriptor(
                    sample_id=sample_id,
                    origin=SampleOrigin.LOCAL,
                    payload=tuple(files),
                ),
            )
        except ValueError as error:
            raise ConfigurationError(f"Sample sheet {path}: {error}") from error
    return descriptors


def _resolve_sheet_path(sheet_path: Path, value: str) -> str:
    candidate = Path(value.strip())
    if not candidate.is_absolute():
        candidate = sheet_path.parent / candidate
    return str(candidate)
