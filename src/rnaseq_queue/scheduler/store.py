"""Filesystem-backed work queue: one record file per sample and location."""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path

from rnaseq_queue.config import ConfigurationError, InputSettings
from rnaseq_queue.scheduler.metadata import EnaMetadataClient
from rnaseq_queue.scheduler.models import QueueCounts, QueueLocation, SampleDescriptor
from rnaseq_queue.scheduler.records import (
    RECORD_SUFFIX,
    format_record,
    read_record,
    read_sample_sheet,
    read_skip_list,
    record_name,
)

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "queue.lock"
INCOMING_DIR_NAME = ".incoming"


class WorkItemStore:
    """Durable ``staged`` / ``admitted`` / ``done`` queue under one root.

    Location moves are atomic renames between sibling directories, so a
    sample is visible in at most one location at any instant.  Callers that
    move items concurrently must hold the queue lock.
    """

    def __init__(self, root: Path, *, skip_list: frozenset[str] = frozenset()) -> None:
        self.root = root
        self.skip_list = skip_list

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILE_NAME

    def location_dir(self, location: QueueLocation) -> Path:
        return self.root / location.value

    def ensure_layout(self) -> None:
        for location in QueueLocation:
            self.location_dir(location).mkdir(parents=True, exist_ok=True)
        (self.root / INCOMING_DIR_NAME).mkdir(parents=True, exist_ok=True)

    def write(self, descriptor: SampleDescriptor) -> bool:
        """Stage a descriptor; returns ``False`` when it was dropped.

        Skip-listed ids and ids already known in any location are dropped
        silently, which makes re-enumeration after a restart idempotent.
        """

        if descriptor.sample_id in self.skip_list:
            logger.info("Skipping %s: listed in skip list", descriptor.sample_id)
            return False
        existing = self.locate(descriptor.sample_id)
        if existing is not None:
            logger.debug("Not staging %s: already %s", descriptor.sample_id, existing.value)
            return False

        incoming = self.root / INCOMING_DIR_NAME
        incoming.mkdir(parents=True, exist_ok=True)
        target = self.location_dir(QueueLocation.STAGED) / record_name(descriptor.sample_id)
        fd, tmp_name = tempfile.mkstemp(dir=incoming, prefix=f"{descriptor.sample_id}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(format_record(descriptor))
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return True

    def write_many(self, descriptors: Iterable[SampleDescriptor]) -> tuple[int, int]:
        """Stage descriptors; returns ``(staged, dropped)`` counts."""

        staged = 0
        dropped = 0
        for descriptor in descriptors:
            if self.write(descriptor):
                staged += 1
            else:
                dropped += 1
        return staged, dropped

    def list_location(self, location: QueueLocation) -> list[SampleDescriptor]:
        """Descriptors in ``location``, ordered by persisted file name."""

        return [read_record(path) for path in self._record_paths(location)]

    def list_staged(self) -> list[SampleDescriptor]:
        return self.list_location(QueueLocation.STAGED)

    def list_admitted(self) -> list[SampleDescriptor]:
        return self.list_location(QueueLocation.ADMITTED)

    def list_done(self) -> list[SampleDescriptor]:
        return self.list_location(QueueLocation.DONE)

    def ids(self, location: QueueLocation) -> list[str]:
        return [path.name[: -len(RECORD_SUFFIX)] for path in self._record_paths(location)]

    def read(self, location: QueueLocation, sample_id: str) -> SampleDescriptor:
        return read_record(self.location_dir(location) / record_name(sample_id))

    def locate(self, sample_id: str) -> QueueLocation | None:
        for location in QueueLocation:
            if (self.location_dir(location) / record_name(sample_id)).exists():
                return location
        return None

    def move(
        self,
        sample_id: str,
        source: QueueLocation,
        target: QueueLocation,
    ) -> SampleDescriptor:
        """Atomically move one record between locations."""

        source_path = self.location_dir(source) / record_name(sample_id)
        target_path = self.location_dir(target) / record_name(sample_id)
        descriptor = read_record(source_path)
        os.replace(source_path, target_path)
        return descriptor

    def discard(self, location: QueueLocation, sample_id: str) -> None:
        (self.location_dir(location) / record_name(sample_id)).unlink(missing_ok=True)

    def counts(self) -> QueueCounts:
        return QueueCounts(
            staged=len(self._record_paths(QueueLocation.STAGED)),
            admitted=len(self._record_paths(QueueLocation.ADMITTED)),
            done=len(self._record_paths(QueueLocation.DONE)),
        )

    def _record_paths(self, location: QueueLocation) -> list[Path]:
        directory = self.location_dir(location)
        if not directory.is_dir():
            return []
        return sorted(
            (path for path in directory.iterdir() if path.name.endswith(RECORD_SUFFIX)),
            key=lambda path: path.name,
        )


def enumerate_samples(
    inputs: InputSettings,
    *,
    metadata_client: EnaMetadataClient | None = None,
) -> list[SampleDescriptor]:
    """Merge local sample sheet entries with ENA-resolved remote samples."""

    descriptors: list[SampleDescriptor] = []
    if inputs.sample_sheet is not None:
        descriptors.extend(read_sample_sheet(inputs.sample_sheet))
    if inputs.remote_accessions:
        if metadata_client is None:
            raise ConfigurationError("Remote accessions configured without a metadata client.")
        descriptors.extend(metadata_client.resolve(inputs.remote_accessions))

    seen: dict[str, SampleDescriptor] = {}
    for descriptor in descriptors:
        previous = seen.get(descriptor.sample_id)
        if previous is not None:
            raise ConfigurationError(
                f"Duplicate sample id {descriptor.sample_id!r} "
                f"({previous.origin.value} and {descriptor.origin.value}).",
            )
        seen[descriptor.sample_id] = descriptor
    return descriptors


def open_store(root: Path, inputs: InputSettings) -> WorkItemStore:
    store = WorkItemStore(root, skip_list=read_skip_list(inputs.skip_list))
    store.ensure_layout()
    return store
