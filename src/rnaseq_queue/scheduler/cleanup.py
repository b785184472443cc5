"""Sparse reclaim of finished artifacts.

``reclaim`` frees a file's data blocks while keeping its apparent size and
its access/modification times.  The engine's result cache decides whether a
stage output is still valid from exactly that metadata, so a reclaimed file
still counts as a valid cached output on the next resumed run.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from rnaseq_queue.config import PublishSettings
from rnaseq_queue.scheduler.models import ArtifactClass

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReclaimResult:
    """What one reclaim call freed."""

    path: Path
    size_bytes: int
    freed_bytes: int


class CleanupExecutor:
    """Reclaims artifact files unless a ``publish_*`` flag retains them."""

    def __init__(self, publish: PublishSettings) -> None:
        self.publish = publish

    def is_retained(self, artifact_class: str) -> bool:
        retained = {
            ArtifactClass.RUN_READS.value: self.publish.raw_reads,
            ArtifactClass.RAW_READS.value: self.publish.raw_reads,
            ArtifactClass.ALIGNMENTS.value: self.publish.alignments,
        }
        return retained.get(artifact_class, True)

    def release(self, artifact_class: str, path: Path) -> list[ReclaimResult]:
        """Reclaim ``path`` for a released artifact; no-op when retained."""

        if self.is_retained(artifact_class):
            logger.debug("Retaining %s at %s", artifact_class, path)
            return []
        results = reclaim_tree(path)
        logger.info(
            "Reclaimed %s at %s: %d files, %d bytes",
            artifact_class,
            path,
            len(results),
            sum(result.freed_bytes for result in results),
        )
        return results


def reclaim(path: Path) -> ReclaimResult:
    """Punch the whole file into a hole, then restore size and timestamps."""

    target = path.resolve()
    before = target.stat()
    os.truncate(target, 0)
    os.truncate(target, before.st_size)
    os.utime(target, ns=(before.st_atime_ns, before.st_mtime_ns))
    after = target.stat()
    freed = max(0, (before.st_blocks - after.st_blocks) * 512)
    return ReclaimResult(path=target, size_bytes=before.st_size, freed_bytes=freed)


def reclaim_tree(path: Path) -> list[ReclaimResult]:
    """Reclaim a file, or every regular file below a directory."""

    if path.is_file():
        return [reclaim(path)]
    if not path.is_dir():
        raise FileNotFoundError(f"Artifact path not found: {path}")
    return [reclaim(item) for item in sorted(path.rglob("*")) if item.is_file()]
