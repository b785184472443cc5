"""Watches the ``admitted`` location and feeds new samples downstream."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from rnaseq_queue.scheduler.models import QueueLocation, SampleDescriptor
from rnaseq_queue.scheduler.records import RecordFormatError
from rnaseq_queue.scheduler.store import WorkItemStore

logger = logging.getLogger(__name__)


class Watcher:
    """Polls ``admitted`` and emits each item once per process.

    ``wake()`` shortens the current poll wait, so an admission bus can make
    the watcher react immediately instead of on the next tick.
    """

    def __init__(
        self,
        *,
        store: WorkItemStore,
        on_admitted: Callable[[SampleDescriptor], None],
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.store = store
        self.on_admitted = on_admitted
        self.poll_interval_seconds = poll_interval_seconds
        self._emitted: set[str] = set()
        self._wake = threading.Event()
        self._stop_requested = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stop_requested.is_set()

    def poll_once(self) -> list[SampleDescriptor]:
        emitted: list[SampleDescriptor] = []
        for sample_id in self.store.ids(QueueLocation.ADMITTED):
            if sample_id in self._emitted:
                continue
            try:
                descriptor = self.store.read(QueueLocation.ADMITTED, sample_id)
            except FileNotFoundError:
                # Retired between listing and reading.
                continue
            except RecordFormatError:
                logger.exception("Unreadable admitted record for %s", sample_id)
                raise
            self._emitted.add(sample_id)
            emitted.append(descriptor)
            self.on_admitted(descriptor)
        return emitted

    def run(self, *, until: Callable[[], bool] | None = None) -> int:
        """Poll until stopped or ``until()`` is true; returns items emitted."""

        total = 0
        while not self._stop_requested.is_set():
            if until is not None and until():
                break
            total += len(self.poll_once())
            self._wake.wait(self.poll_interval_seconds)
            self._wake.clear()
        return total

    def wake(self, _: object | None = None) -> None:
        self._wake.set()

    def stop(self) -> None:
        self._stop_requested.set()
        self._wake.set()
