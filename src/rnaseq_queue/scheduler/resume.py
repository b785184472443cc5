"""Startup repair of persisted queue state."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from rnaseq_queue.scheduler.models import QueueLocation
from rnaseq_queue.scheduler.store import WorkItemStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResumeDecision:
    """How the scheduler should start after inspecting the queue."""

    requeued: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    skip_to_postprocess: bool = False
    nothing_to_do: bool = False


class ResumeBootstrapper:
    """Un-admits leftovers of a crashed run and detects finished runs."""

    def __init__(self, store: WorkItemStore) -> None:
        self.store = store

    def bootstrap(self) -> ResumeDecision:
        decision = ResumeDecision()
        for sample_id in self.store.ids(QueueLocation.ADMITTED):
            self.store.move(sample_id, QueueLocation.ADMITTED, QueueLocation.STAGED)
            decision.requeued.append(sample_id)
        if decision.requeued:
            logger.warning(
                "Re-staged %d samples left admitted by a previous run: %s",
                len(decision.requeued),
                ", ".join(decision.requeued),
            )
        for sample_id in self.store.ids(QueueLocation.STAGED):
            if sample_id in self.store.skip_list:
                self.store.discard(QueueLocation.STAGED, sample_id)
                decision.dropped.append(sample_id)
        if decision.dropped:
            logger.info(
                "Dropped %d staged samples now in the skip list: %s",
                len(decision.dropped),
                ", ".join(decision.dropped),
            )

        counts = self.store.counts()
        if counts.staged == 0:
            if counts.done > 0:
                logger.info(
                    "No staged samples and %d done; resuming at post-processing",
                    counts.done,
                )
                decision.skip_to_postprocess = True
            else:
                decision.nothing_to_do = True
        return decision
