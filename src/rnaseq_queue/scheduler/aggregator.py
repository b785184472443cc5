"""Keyed reference-count join over completion signals."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, field

from rnaseq_queue.scheduler.models import ArtifactKey

logger = logging.getLogger(__name__)

JoinCallback = Callable[[ArtifactKey, dict[str, object]], None]


class AggregatorClosedError(RuntimeError):
    """Signal or registration after the aggregator was cancelled."""


@dataclass(slots=True)
class _RefCount:
    expected: int | None
    created_at: float
    callback: JoinCallback | None = None
    future: Future[dict[str, object]] | None = None
    received: dict[str, object] = field(default_factory=dict)
    fired: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass(slots=True)
class StalledKey:
    """A join that has been waiting longer than allowed."""

    key: ArtifactKey
    expected: int | None
    received: tuple[str, ...]
    waiting_seconds: float


class CompletionAggregator:
    """Fires once per key when ``expected`` distinct consumers have signalled.

    The map lock only guards lookup and insertion; counting happens under a
    per-key lock, so signals for different keys never wait on each other.
    Signals arriving before ``register`` are buffered on the same counter.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._counters: dict[ArtifactKey, _RefCount] = {}
        # Fired keys only; late signals for them are logged and dropped.
        self._released: set[ArtifactKey] = set()
        self._map_lock = threading.Lock()
        self._cancelled: BaseException | None = None

    def register(
        self,
        key: ArtifactKey,
        expected: int,
        callback: JoinCallback | None = None,
    ) -> Future[dict[str, object]]:
        """Start tracking ``key``; the future resolves with consumer payloads."""

        if expected <= 0:
            raise ValueError(f"expected must be positive for {key}, got {expected}")
        counter = self._counter(key)
        if counter is None:
            raise ValueError(f"Key {key} is already registered")
        with counter.lock:
            if counter.expected is not None:
                raise ValueError(f"Key {key} is already registered")
            if len(counter.received) > expected:
                raise ValueError(
                    f"Key {key} already has {len(counter.received)} signals, "
                    f"more than expected {expected}",
                )
            counter.expected = expected
            counter.callback = callback
            counter.future = Future()
            future = counter.future
            ready = len(counter.received) == expected
        if ready:
            self._fire(key, counter)
        return future

    def signal(self, key: ArtifactKey, consumer: str, payload: object | None = None) -> bool:
        """Record that ``consumer`` is done with ``key``; returns True if it fired."""

        counter = self._counter(key)
        if counter is None:
            logger.warning("Late signal from %s for already released %s", consumer, key)
            return False
        with counter.lock:
            if counter.fired:
                logger.warning("Late signal from %s for already released %s", consumer, key)
                return False
            if consumer in counter.received:
                logger.warning("Duplicate signal from %s for %s ignored", consumer, key)
                return False
            if counter.expected is not None and len(counter.received) >= counter.expected:
                logger.warning("Extra signal from %s for %s ignored", consumer, key)
                return False
            counter.received[consumer] = payload
            ready = counter.expected is not None and len(counter.received) == counter.expected
        if ready:
            self._fire(key, counter)
        return ready

    def pending(self) -> dict[ArtifactKey, tuple[int | None, int]]:
        """Outstanding keys with ``(expected, received)`` counts."""

        with self._map_lock:
            items = list(self._counters.items())
        return {key: (counter.expected, len(counter.received)) for key, counter in items}

    def stalled(self, older_than_seconds: float) -> list[StalledKey]:
        now = self._clock()
        with self._map_lock:
            items = list(self._counters.items())
        stalled: list[StalledKey] = []
        for key, counter in items:
            waiting = now - counter.created_at
            if waiting >= older_than_seconds:
                stalled.append(
                    StalledKey(
                        key=key,
                        expected=counter.expected,
                        received=tuple(sorted(counter.received)),
                        waiting_seconds=waiting,
                    ),
                )
        return stalled

    def cancel(self, error: BaseException) -> None:
        """Fail every pending join with ``error`` and refuse further signals."""

        with self._map_lock:
            self._cancelled = error
            counters = list(self._counters.values())
            self._counters.clear()
            self._released.clear()
        for counter in counters:
            with counter.lock:
                counter.fired = True
                future = counter.future
            if future is not None and not future.done():
                future.set_exception(error)

    def forget(self, sample_id: str) -> None:
        """Drop every counter and released marker belonging to ``sample_id``."""

        with self._map_lock:
            for key in [key for key in self._counters if key.sample_id == sample_id]:
                del self._counters[key]
            self._released = {key for key in self._released if key.sample_id != sample_id}

    def _counter(self, key: ArtifactKey) -> _RefCount | None:
        with self._map_lock:
            if self._cancelled is not None:
                raise AggregatorClosedError(
                    f"Aggregator cancelled: {self._cancelled}",
                ) from self._cancelled
            if key in self._released:
                return None
            counter = self._counters.get(key)
            if counter is None:
                counter = _RefCount(expected=None, created_at=self._clock())
                self._counters[key] = counter
            return counter

    def _fire(self, key: ArtifactKey, counter: _RefCount) -> None:
        with counter.lock:
            if counter.fired:
                return
            counter.fired = True
            payloads = dict(counter.received)
        with self._map_lock:
            if self._counters.get(key) is counter:
                del self._counters[key]
                self._released.add(key)
        logger.debug("Join %s released after %d signals", key, len(payloads))
        try:
            if counter.callback is not None:
                counter.callback(key, payloads)
        except BaseException as error:
            if counter.future is not None:
                counter.future.set_exception(error)
            raise
        if counter.future is not None:
            counter.future.set_result(payloads)
