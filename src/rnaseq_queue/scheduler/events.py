"""Named, typed signal buses owned by one scheduler instance."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from rnaseq_queue.scheduler.models import AdvanceResult, ArtifactSignal, SampleDescriptor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BusClosedError(RuntimeError):
    """Publish attempted on a closed bus."""


class SignalBus(Generic[T]):
    """Synchronous fan-out of one event type to its subscribers."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, callback: Callable[[T], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: T) -> None:
        with self._lock:
            if self._closed:
                raise BusClosedError(f"Bus {self.name!r} is closed")
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(event)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        logger.debug("Closed bus %s", self.name)


@dataclass(slots=True)
class SampleFailure:
    """A sample's pipeline stopped on an error."""

    sample_id: str
    error: BaseException


@dataclass(slots=True)
class SchedulerBuses:
    """All buses a scheduler run wires its components through."""

    admitted: SignalBus[SampleDescriptor] = field(
        default_factory=lambda: SignalBus("admitted"),
    )
    artifact_done: SignalBus[ArtifactSignal] = field(
        default_factory=lambda: SignalBus("artifact_done"),
    )
    sample_failed: SignalBus[SampleFailure] = field(
        default_factory=lambda: SignalBus("sample_failed"),
    )
    advanced: SignalBus[AdvanceResult] = field(
        default_factory=lambda: SignalBus("advanced"),
    )
    terminal: SignalBus[None] = field(default_factory=lambda: SignalBus("terminal"))
    fatal: SignalBus[BaseException] = field(default_factory=lambda: SignalBus("fatal"))

    def close_all(self) -> None:
        for bus in (
            self.admitted,
            self.artifact_done,
            self.sample_failed,
            self.advanced,
            self.terminal,
            self.fatal,
        ):
            bus.close()
