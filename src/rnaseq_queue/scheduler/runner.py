"""Scheduler run: enumerate, resume, admit, dispatch and post-process."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from functools import partial
from pathlib import Path

from rnaseq_queue.config import Settings
from rnaseq_queue.scheduler.admission import AdmissionController
from rnaseq_queue.scheduler.aggregator import AggregatorClosedError, CompletionAggregator
from rnaseq_queue.scheduler.cleanup import CleanupExecutor
from rnaseq_queue.scheduler.events import SampleFailure, SchedulerBuses
from rnaseq_queue.scheduler.lock import LockTimeoutError, QueueLock
from rnaseq_queue.scheduler.metadata import EnaMetadataClient
from rnaseq_queue.scheduler.models import (
    AdvanceResult,
    ArtifactKey,
    ArtifactSignal,
    QueueLocation,
    SampleDescriptor,
    SchedulerRunSummary,
)
from rnaseq_queue.scheduler.pipeline import (
    ORIGIN_CONSUMER,
    SamplePipeline,
    completion_key,
    rendezvous_key,
)
from rnaseq_queue.scheduler.postprocess import PostProcessor
from rnaseq_queue.scheduler.resume import ResumeBootstrapper
from rnaseq_queue.scheduler.routing import Tool, route, select_tool
from rnaseq_queue.scheduler.stages import StageExecutor, StageFailedError
from rnaseq_queue.scheduler.store import WorkItemStore, enumerate_samples, open_store
from rnaseq_queue.scheduler.watcher import Watcher

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class StalledJoinError(RuntimeError):
    """A completion join waited longer than ``join_timeout_seconds``."""


class SchedulerStoppedError(RuntimeError):
    """The run ended before reaching its terminal state."""


class QueueScheduler:
    """Runs the admission-controlled queue to completion.

    One ``run()`` call owns its buses, aggregator, lock and worker pool; a
    second call starts over from the persisted queue state.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        executor: StageExecutor,
        metadata_client: EnaMetadataClient | None = None,
        on_progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.executor = executor
        self.metadata_client = metadata_client
        self.on_progress = on_progress
        self.clock = clock

    def enqueue(self) -> tuple[int, int]:
        """Enumerate inputs into ``staged``; returns ``(staged, dropped)``."""

        store = open_store(self.settings.queue_root, self.settings.inputs)
        return self._enqueue_into(store)

    def run(self) -> SchedulerRunSummary:
        self.settings.validate()
        tool = select_tool(self.settings.tools)
        store = open_store(self.settings.queue_root, self.settings.inputs)
        summary = SchedulerRunSummary()
        summary.staged, summary.skipped = self._enqueue_into(store)
        self._progress(f"Staged {summary.staged} samples ({summary.skipped} skipped or known)")

        decision = ResumeBootstrapper(store).bootstrap()
        if decision.requeued:
            self._progress(f"Re-staged {len(decision.requeued)} interrupted samples")
        if decision.dropped:
            self._progress(f"Dropped {len(decision.dropped)} skip-listed samples from the queue")
        if decision.nothing_to_do:
            self._progress("Nothing to do: no staged or done samples")
            return summary
        if decision.skip_to_postprocess:
            summary.resumed_to_postprocess = True
            self._progress("All samples already done; running post-processing")
            self._postprocess(store, summary)
            return summary

        active_run = _ActiveRun(
            settings=self.settings,
            store=store,
            tool=tool,
            executor=self.executor,
            summary=summary,
            progress=self._progress,
            clock=self.clock,
        )
        terminal = active_run.execute()
        if terminal and summary.error is None:
            self._postprocess(store, summary)
        return summary

    def _enqueue_into(self, store: WorkItemStore) -> tuple[int, int]:
        inputs = self.settings.inputs
        if self.metadata_client is None and inputs.remote_accessions:
            with EnaMetadataClient(settings=self.settings.metadata) as client:
                descriptors = enumerate_samples(inputs, metadata_client=client)
        else:
            descriptors = enumerate_samples(inputs, metadata_client=self.metadata_client)
        return store.write_many(descriptors)

    def _postprocess(self, store: WorkItemStore, summary: SchedulerRunSummary) -> None:
        processor = PostProcessor(settings=self.settings, executor=self.executor)
        try:
            processor.run(store.ids(QueueLocation.DONE))
        except StageFailedError as error:
            logger.exception("Post-processing failed")
            summary.error = str(error)
            return
        summary.postprocessed = True
        self._progress(f"Post-processing written to {self.settings.results_root}")

    def _progress(self, line: str) -> None:
        if self.on_progress is not None:
            self.on_progress(line)


class _ActiveRun:
    """Wiring and state for one watch loop."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        store: WorkItemStore,
        tool: Tool,
        executor: StageExecutor,
        summary: SchedulerRunSummary,
        progress: ProgressCallback,
        clock: Callable[[], float],
    ) -> None:
        queue = settings.queue
        self.settings = settings
        self.store = store
        self.tool = tool
        self.summary = summary
        self.progress = progress
        self.buses = SchedulerBuses()
        self.aggregator = CompletionAggregator(clock=clock)
        self.cleanup = CleanupExecutor(settings.publish)
        self.admission = AdmissionController(
            store=store,
            lock=QueueLock(
                store.lock_path,
                initial_delay_seconds=queue.lock_initial_delay_seconds,
                max_delay_seconds=queue.lock_poll_interval_seconds,
                max_attempts=queue.lock_max_attempts,
            ),
            queue_size=queue.queue_size,
            buses=self.buses,
        )
        self.watcher = Watcher(
            store=store,
            on_admitted=self._dispatch,
            poll_interval_seconds=queue.watch_poll_interval_seconds,
        )
        self.pipeline = SamplePipeline(
            settings=settings,
            executor=executor,
            aggregator=self.aggregator,
            buses=self.buses,
            on_release=self._on_artifact_released,
        )
        self._pool = ThreadPoolExecutor(
            max_workers=queue.queue_size,
            thread_name_prefix="sample",
        )
        self._state_lock = threading.Lock()
        self._active: set[str] = set()
        self._held: set[str] = set()
        self._warned_stalls: set[ArtifactKey] = set()
        self._finished = threading.Event()
        self._terminal = False
        self._error: BaseException | None = None
        self._wire()

    def execute(self) -> bool:
        """Seed, watch until terminal or fatal; returns True on terminal."""

        try:
            self.admission.seed()
            with self._signal_handlers():
                self.watcher.run(until=self._tick)
        finally:
            self._pool.shutdown(wait=True, cancel_futures=self._error is not None)
            self.buses.close_all()

        if self._error is not None:
            self.summary.error = str(self._error) or type(self._error).__name__
        elif not self._terminal:
            self.summary.error = "Scheduler stopped before all samples completed"
        return self._terminal and self._error is None

    def _wire(self) -> None:
        self.buses.admitted.subscribe(self.watcher.wake)
        self.buses.admitted.subscribe(self._on_admitted)
        self.buses.artifact_done.subscribe(self._on_artifact_done)
        self.buses.advanced.subscribe(self._on_advanced)
        self.buses.sample_failed.subscribe(self._on_sample_failed)
        self.buses.terminal.subscribe(self._on_terminal)
        self.buses.fatal.subscribe(self._on_fatal)

    def _dispatch(self, descriptor: SampleDescriptor) -> None:
        if self._finished.is_set():
            return
        sample_id = descriptor.sample_id
        plan = route(descriptor, self.tool)
        try:
            self.aggregator.register(
                completion_key(sample_id),
                expected=1,
                callback=self._on_sample_complete,
            )
            self.aggregator.signal(
                rendezvous_key(sample_id),
                ORIGIN_CONSUMER,
                descriptor.origin.value,
            )
        except AggregatorClosedError:
            logger.debug("Not dispatching %s after cancellation", sample_id)
            return
        with self._state_lock:
            self._active.add(sample_id)
        logger.info(
            "Dispatching %s (%s, %d stages)",
            sample_id,
            descriptor.origin.value,
            len(plan.stages),
        )
        future = self._pool.submit(self.pipeline.run, plan)
        future.add_done_callback(partial(self._on_pipeline_done, sample_id))

    def _on_pipeline_done(self, sample_id: str, future: Future[None]) -> None:
        with self._state_lock:
            self._active.discard(sample_id)
        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            return
        if self._error is not None:
            logger.debug("Sample %s stopped after fatal error: %s", sample_id, error)
            return
        self.buses.sample_failed.publish(SampleFailure(sample_id=sample_id, error=error))
        self.watcher.wake()

    def _on_sample_complete(self, key: ArtifactKey, _payloads: dict[str, object]) -> None:
        try:
            self.admission.advance(key.sample_id)
        except LockTimeoutError as error:
            logger.error("Could not advance queue after %s: %s", key.sample_id, error)
            self.buses.fatal.publish(error)
            return
        self.aggregator.forget(key.sample_id)

    def _on_artifact_done(self, event: ArtifactSignal) -> None:
        self.aggregator.signal(event.key, event.consumer, event.payload)

    def _on_artifact_released(self, key: ArtifactKey, path: Path) -> None:
        try:
            results = self.cleanup.release(key.artifact_class, path)
        except OSError as error:
            logger.warning("Could not reclaim %s at %s: %s", key, path, error)
            return
        with self._state_lock:
            self.summary.reclaimed_files += len(results)
            self.summary.reclaimed_bytes += sum(result.freed_bytes for result in results)

    def _on_admitted(self, descriptor: SampleDescriptor) -> None:
        with self._state_lock:
            self.summary.admitted += 1
        self.progress(f"Admitted {descriptor.sample_id}")

    def _on_advanced(self, result: AdvanceResult) -> None:
        with self._state_lock:
            self.summary.completed += 1
        self.progress(f"Completed {result.completed}")

    def _on_sample_failed(self, failure: SampleFailure) -> None:
        with self._state_lock:
            self.summary.failed += 1
        self.progress(f"Failed {failure.sample_id}: {failure.error}")
        if self.settings.queue.on_stage_failure == "hold":
            logger.error(
                "Sample %s failed and is held in admitted: %s",
                failure.sample_id,
                failure.error,
            )
            with self._state_lock:
                self._held.add(failure.sample_id)
            return
        self.buses.fatal.publish(failure.error)

    def _on_terminal(self, _: None) -> None:
        self._terminal = True
        self._finished.set()
        self.watcher.stop()

    def _on_fatal(self, error: BaseException) -> None:
        with self._state_lock:
            if self._error is not None:
                return
            self._error = error
        logger.error("Aborting run: %s", error)
        self._finished.set()
        self.aggregator.cancel(error)
        self.watcher.stop()

    def _tick(self) -> bool:
        if not self._finished.is_set():
            self._check_stalls()
        if not self._finished.is_set():
            self._check_held()
        return self._finished.is_set()

    def _check_stalls(self) -> None:
        timeout = self.settings.queue.join_timeout_seconds
        if timeout <= 0:
            return
        for stalled in self.aggregator.stalled(timeout):
            if stalled.key in self._warned_stalls:
                continue
            self._warned_stalls.add(stalled.key)
            self.summary.stalled_keys.append(str(stalled.key))
            message = (
                f"Join {stalled.key} waiting {stalled.waiting_seconds:.0f}s: "
                f"received {list(stalled.received)} of {stalled.expected}"
            )
            if self.settings.queue.stall_policy == "abort":
                self.buses.fatal.publish(StalledJoinError(message))
                return
            logger.warning(message)

    def _check_held(self) -> None:
        with self._state_lock:
            if self._active or not self._held:
                return
            held = set(self._held)
        admitted = set(self.store.ids(QueueLocation.ADMITTED))
        if admitted and admitted <= held:
            self.buses.fatal.publish(
                SchedulerStoppedError(
                    f"All admitted samples are held after failures: {', '.join(sorted(held))}",
                ),
            )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self._request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Not the main thread; run without stop handlers.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _request_stop(self, *, signal_name: str) -> None:
        logger.warning("Received %s; finishing in-flight samples", signal_name)
        self.progress(f"Stopping on {signal_name}; in-flight samples will finish")
        self._finished.set()
        self.watcher.stop()
