from __future__ import annotations

import threading
import time

import allure
import httpx
import pytest

from rnaseq_queue.config import PublishSettings
from rnaseq_queue.scheduler import runner
from rnaseq_queue.scheduler.aggregator import CompletionAggregator
from rnaseq_queue.scheduler.lock import QueueLock
from rnaseq_queue.scheduler.metadata import EnaMetadataClient
from rnaseq_queue.scheduler.models import ArtifactClass, QueueLocation
from rnaseq_queue.scheduler.pipeline import SampleLayout
from rnaseq_queue.scheduler.postprocess import POSTPROCESS_SAMPLE_ID
from rnaseq_queue.scheduler.runner import QueueScheduler
from rnaseq_queue.scheduler.store import WorkItemStore

pytestmark = [
    allure.epic("Scheduling"),
    allure.feature("Queue Scheduler"),
]

THREE_SAMPLES = {
    "s1": ["s1_R1.fq", "s1_R2.fq"],
    "s2": ["s2_R1.fq", "s2_R2.fq"],
    "s3": ["s3_R1.fq", "s3_R2.fq"],
}

FILEREPORT = (
    "run_accession\tsample_accession\n"
    "SRR1\tSAMN1\n"
    "SRR2\tSAMN1\n"
    "SRR3\tSAMN2\n"
)


def _store(settings) -> WorkItemStore:
    return WorkItemStore(settings.queue_root)


def test_three_samples_run_through_two_slots(settings_factory, fake_executor) -> None:
    settings = settings_factory(samples=THREE_SAMPLES, queue_size=2, matrix_formats=("tsv", "csv"))
    store = _store(settings)
    admitted_sizes: list[int] = []
    sizes_lock = threading.Lock()

    def _observe(_invocation) -> None:
        with sizes_lock:
            admitted_sizes.append(store.counts().admitted)

    fake_executor.hooks["kallisto_quant"] = _observe
    progress: list[str] = []

    summary = QueueScheduler(
        settings=settings,
        executor=fake_executor,
        on_progress=progress.append,
    ).run()

    assert summary.success, summary.error
    assert (summary.staged, summary.admitted, summary.completed, summary.failed) == (3, 3, 3, 0)
    assert summary.postprocessed
    assert store.ids(QueueLocation.DONE) == ["s1", "s2", "s3"]
    assert store.counts().staged == store.counts().admitted == 0
    assert admitted_sizes and max(admitted_sizes) <= 2
    for sample_id in THREE_SAMPLES:
        assert fake_executor.stages_for(sample_id) == ["fastqc", "kallisto_quant"]
    assert fake_executor.stages_for(POSTPROCESS_SAMPLE_ID) == ["report", "matrix.tsv", "matrix.csv"]
    assert "Admitted s3" in progress
    assert "Completed s3" in progress


def test_rerun_after_completion_goes_straight_to_postprocess(
    settings_factory,
    fake_executor,
) -> None:
    settings = settings_factory(samples=THREE_SAMPLES)
    assert QueueScheduler(settings=settings, executor=fake_executor).run().success
    fake_executor.invocations.clear()

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert summary.success
    assert summary.resumed_to_postprocess
    assert summary.postprocessed
    assert (summary.staged, summary.skipped) == (0, 3)
    assert [item.stage for item in fake_executor.invocations] == ["report", "matrix"]
    report = fake_executor.invocations[0]
    layout = SampleLayout(settings.samples_root)
    assert str(layout.artifact_dir("s2", ArtifactClass.QC)) in report.inputs
    assert str(layout.artifact_dir("s2", ArtifactClass.COUNTS)) in report.inputs


def test_skip_listed_samples_are_never_processed(settings_factory, fake_executor) -> None:
    settings = settings_factory(samples=THREE_SAMPLES, skip=("s2",))

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert summary.success
    assert (summary.staged, summary.skipped, summary.completed) == (2, 1, 2)
    assert fake_executor.stages_for("s2") == []
    assert _store(settings).locate("s2") is None


def test_empty_sample_sheet_has_nothing_to_do(settings_factory, fake_executor) -> None:
    settings = settings_factory(samples={})

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert summary.success
    assert not summary.postprocessed
    assert fake_executor.invocations == []


def test_stage_failure_aborts_and_next_run_resumes(settings_factory, fake_executor) -> None:
    settings = settings_factory(samples=THREE_SAMPLES, queue_size=2)
    fake_executor.failures.add(("s2", "kallisto_quant"))

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert not summary.success
    assert "exited with 1" in (summary.error or "")
    assert summary.failed == 1
    assert not summary.postprocessed
    assert _store(settings).locate("s2") is QueueLocation.ADMITTED

    fake_executor.failures.clear()
    rerun = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert rerun.success, rerun.error
    assert rerun.postprocessed
    assert _store(settings).ids(QueueLocation.DONE) == ["s1", "s2", "s3"]


def test_hold_policy_keeps_failed_sample_admitted(settings_factory, fake_executor) -> None:
    settings = settings_factory(samples=THREE_SAMPLES, queue_size=2, on_stage_failure="hold")
    fake_executor.failures.add(("s1", "kallisto_quant"))

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    store = _store(settings)
    assert not summary.success
    assert "held" in (summary.error or "")
    assert (summary.completed, summary.failed) == (2, 1)
    assert store.ids(QueueLocation.DONE) == ["s2", "s3"]
    assert store.ids(QueueLocation.ADMITTED) == ["s1"]


def test_stalled_join_is_reported_under_warn_policy(settings_factory, fake_executor) -> None:
    settings = settings_factory(
        samples={"s1": ["s1.fq"]},
        join_timeout_seconds=0.05,
        stall_policy="warn",
    )
    fake_executor.hooks["kallisto_quant"] = lambda _: time.sleep(0.3)

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert summary.success, summary.error
    assert "s1/sample" in summary.stalled_keys
    assert summary.stalled_keys.count("s1/sample") == 1


def test_stalled_join_aborts_under_abort_policy(settings_factory, fake_executor) -> None:
    settings = settings_factory(
        samples={"s1": ["s1.fq"]},
        join_timeout_seconds=0.05,
        stall_policy="abort",
    )
    fake_executor.hooks["kallisto_quant"] = lambda _: time.sleep(0.3)

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert not summary.success
    assert "waiting" in (summary.error or "")
    assert _store(settings).locate("s1") is QueueLocation.ADMITTED


def test_lock_timeout_is_fatal_and_leaves_done_untouched(settings_factory, fake_executor) -> None:
    settings = settings_factory(samples=THREE_SAMPLES, lock_max_attempts=2)
    store = _store(settings)
    store.ensure_layout()

    with QueueLock(store.lock_path).hold():
        summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert not summary.success
    assert "could not obtain lock" in (summary.error or "")
    assert store.ids(QueueLocation.DONE) == []
    assert summary.completed == 0


def test_remote_samples_are_resolved_downloaded_and_reclaimed(
    settings_factory,
    fake_executor,
) -> None:
    requests: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, text=FILEREPORT)

    settings = settings_factory(remote_accessions=("PRJNA1",), queue_size=2)
    client = EnaMetadataClient(settings=settings.metadata, transport=httpx.MockTransport(_handler))

    summary = QueueScheduler(
        settings=settings,
        executor=fake_executor,
        metadata_client=client,
    ).run()

    assert summary.success, summary.error
    assert requests[0].url.params["accession"] == "PRJNA1"
    assert fake_executor.stages_for("SAMN1") == [
        "download.SRR1",
        "download.SRR2",
        "merge",
        "fastqc",
        "kallisto_quant",
    ]
    assert fake_executor.stages_for("SAMN2") == ["download.SRR3", "fastqc", "kallisto_quant"]
    assert summary.reclaimed_files == 4

    layout = SampleLayout(settings.samples_root)
    merged = layout.artifact_dir("SAMN1", ArtifactClass.RAW_READS) / "merge.dat"
    assert merged.stat().st_size == fake_executor.payload_bytes
    assert merged.read_bytes() == b"\0" * fake_executor.payload_bytes
    counts = layout.artifact_dir("SAMN1", ArtifactClass.COUNTS) / "kallisto_quant.dat"
    assert counts.read_bytes() == b"x" * fake_executor.payload_bytes


def test_published_raw_reads_are_kept(settings_factory, fake_executor) -> None:
    settings = settings_factory(
        remote_accessions=("PRJNA1",),
        publish=PublishSettings(raw_reads=True),
    )
    client = EnaMetadataClient(
        settings=settings.metadata,
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text=FILEREPORT)),
    )

    summary = QueueScheduler(
        settings=settings,
        executor=fake_executor,
        metadata_client=client,
    ).run()

    assert summary.success, summary.error
    assert summary.reclaimed_files == 0
    raw = SampleLayout(settings.samples_root).artifact_dir("SAMN2", ArtifactClass.RAW_READS)
    assert (raw / "download.SRR3.dat").read_bytes() == b"x" * fake_executor.payload_bytes


def test_completed_samples_leave_no_aggregator_state(
    monkeypatch: pytest.MonkeyPatch,
    settings_factory,
    fake_executor,
) -> None:
    created: list[CompletionAggregator] = []

    class _RecordingAggregator(CompletionAggregator):
        def __init__(self, **kwargs) -> None:
            super().__init__(**kwargs)
            created.append(self)

    monkeypatch.setattr(runner, "CompletionAggregator", _RecordingAggregator)
    settings = settings_factory(samples=THREE_SAMPLES, queue_size=2)

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert summary.success, summary.error
    [aggregator] = created
    assert aggregator.pending() == {}
    assert aggregator._released == set()


def test_stop_request_finishes_in_flight_samples_and_next_run_resumes(
    monkeypatch: pytest.MonkeyPatch,
    settings_factory,
    fake_executor,
) -> None:
    active_runs: list[runner._ActiveRun] = []

    class _RecordingRun(runner._ActiveRun):
        def __init__(self, **kwargs) -> None:
            super().__init__(**kwargs)
            active_runs.append(self)

    monkeypatch.setattr(runner, "_ActiveRun", _RecordingRun)
    settings = settings_factory(samples=THREE_SAMPLES, queue_size=2)
    both_quantifying = threading.Barrier(2, timeout=5)
    stop_requested = threading.Event()

    def _stop_once_both_run(invocation) -> None:
        both_quantifying.wait()
        if invocation.sample_id == "s1":
            active_runs[0]._request_stop(signal_name="SIGTERM")
            stop_requested.set()
        else:
            assert stop_requested.wait(timeout=5)

    fake_executor.hooks["kallisto_quant"] = _stop_once_both_run
    progress: list[str] = []

    summary = QueueScheduler(
        settings=settings,
        executor=fake_executor,
        on_progress=progress.append,
    ).run()

    store = _store(settings)
    assert not summary.success
    assert "stopped" in (summary.error or "")
    assert not summary.postprocessed
    assert summary.completed == 2
    assert fake_executor.stages_for("s1") == ["fastqc", "kallisto_quant"]
    assert fake_executor.stages_for("s2") == ["fastqc", "kallisto_quant"]
    assert fake_executor.stages_for("s3") == []
    assert store.ids(QueueLocation.DONE) == ["s1", "s2"]
    assert store.ids(QueueLocation.ADMITTED) == ["s3"]
    assert any(line.startswith("Stopping on SIGTERM") for line in progress)

    fake_executor.hooks.clear()
    rerun = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert rerun.success, rerun.error
    assert rerun.postprocessed
    assert fake_executor.stages_for("s3") == ["fastqc", "kallisto_quant"]
    assert store.ids(QueueLocation.DONE) == ["s1", "s2", "s3"]
    assert store.ids(QueueLocation.ADMITTED) == []


def test_skip_list_applies_to_samples_staged_by_earlier_enqueue(
    settings_factory,
    fake_executor,
) -> None:
    assert QueueScheduler(
        settings=settings_factory(samples=THREE_SAMPLES),
        executor=fake_executor,
    ).enqueue() == (3, 0)
    settings = settings_factory(samples=THREE_SAMPLES, skip=("s3",))

    summary = QueueScheduler(settings=settings, executor=fake_executor).run()

    assert summary.success, summary.error
    assert summary.completed == 2
    assert fake_executor.stages_for("s3") == []
    assert _store(settings).locate("s3") is None
