"""Admission gate bounding how many samples are in flight."""

from __future__ import annotations

import logging

from rnaseq_queue.scheduler.events import SchedulerBuses
from rnaseq_queue.scheduler.lock import QueueLock
from rnaseq_queue.scheduler.models import AdvanceResult, QueueLocation, SampleDescriptor
from rnaseq_queue.scheduler.store import WorkItemStore

logger = logging.getLogger(__name__)


class AdmissionController:
    """Moves staged samples into ``admitted`` as slots free up."""

    def __init__(
        self,
        *,
        store: WorkItemStore,
        lock: QueueLock,
        queue_size: int,
        buses: SchedulerBuses | None = None,
    ) -> None:
        if queue_size <= 0:
            raise ValueError("queue_size must be a positive integer")
        self.store = store
        self.lock = lock
        self.queue_size = queue_size
        self.buses = buses

    def seed(self) -> list[SampleDescriptor]:
        """Admit the first batch on a cold start.

        Runs before any sample pipeline exists, so it bypasses the lock.
        """

        free_slots = self.queue_size - len(self.store.ids(QueueLocation.ADMITTED))
        if free_slots <= 0:
            return []
        admitted = [
            self.store.move(sample_id, QueueLocation.STAGED, QueueLocation.ADMITTED)
            for sample_id in self.store.ids(QueueLocation.STAGED)[:free_slots]
        ]
        logger.info("Seeded %d of %d slots", len(admitted), self.queue_size)
        for descriptor in admitted:
            self._publish_admitted(descriptor)
        return admitted

    def advance(self, completed_sample_id: str) -> AdvanceResult:
        """Retire one completed sample and admit the next staged one.

        Raises ``LockTimeoutError`` when the lock retry budget runs out; the
        queue state is then left untouched.
        """

        with self.lock.hold():
            if self.store.locate(completed_sample_id) is QueueLocation.ADMITTED:
                self.store.move(completed_sample_id, QueueLocation.ADMITTED, QueueLocation.DONE)
            else:
                logger.warning(
                    "Completed sample %s is not admitted; nothing to retire",
                    completed_sample_id,
                )
            staged_ids = self.store.ids(QueueLocation.STAGED)
            in_flight = len(self.store.ids(QueueLocation.ADMITTED))
            admitted: SampleDescriptor | None = None
            if staged_ids and in_flight < self.queue_size:
                admitted = self.store.move(
                    staged_ids[0],
                    QueueLocation.STAGED,
                    QueueLocation.ADMITTED,
                )
                in_flight += 1
            terminal = not staged_ids and in_flight == 0

        result = AdvanceResult(
            completed=completed_sample_id,
            admitted=admitted,
            terminal=terminal,
        )
        logger.info(
            "Sample %s done; admitted=%s terminal=%s",
            completed_sample_id,
            admitted.sample_id if admitted is not None else None,
            terminal,
        )
        if self.buses is not None:
            self.buses.advanced.publish(result)
        if admitted is not None:
            self._publish_admitted(admitted)
        if terminal and self.buses is not None:
            self.buses.terminal.publish(None)
        return result

    def _publish_admitted(self, descriptor: SampleDescriptor) -> None:
        if self.buses is not None:
            self.buses.admitted.publish(descriptor)
