"""Runtime configuration for the sample scheduler and its stage commands."""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass, field, fields
from pathlib import Path
from urllib.parse import urlparse

SUPPORTED_MATRIX_FORMATS = ("tsv", "csv")
SUPPORTED_STALL_POLICIES = ("warn", "abort")
SUPPORTED_FAILURE_POLICIES = ("abort", "hold")


class ConfigurationError(ValueError):
    """Startup configuration problem; nothing is admitted when raised."""


@dataclass(slots=True)
class QueueSettings:
    """Admission bound, lock retry budget and liveness policy."""

    queue_size: int = 4
    lock_initial_delay_seconds: float = 0.05
    lock_poll_interval_seconds: float = 1.0
    lock_max_attempts: int = 6_000
    watch_poll_interval_seconds: float = 1.0
    join_timeout_seconds: float = 86_400.0
    stall_policy: str = "warn"
    on_stage_failure: str = "abort"


@dataclass(slots=True)
class InputSettings:
    """Where samples come from."""

    sample_sheet: Path | None = None
    remote_accessions: tuple[str, ...] = ()
    skip_list: Path | None = None


@dataclass(slots=True)
class ToolSettings:
    """Quantification branch selection and its reference inputs."""

    hisat2: bool = False
    kallisto: bool = False
    salmon: bool = False
    hisat2_index: Path | None = None
    annotation_gtf: Path | None = None
    kallisto_index: Path | None = None
    salmon_index: Path | None = None
    threads: int = 4

    def selected_tool(self) -> str:
        """Return the single enabled tool name or raise ConfigurationError."""

        enabled = [
            name
            for name, flag in (
                ("hisat2", self.hisat2),
                ("kallisto", self.kallisto),
                ("salmon", self.salmon),
            )
            if flag
        ]
        if not enabled:
            raise ConfigurationError(
                "No quantification tool selected. Enable exactly one of hisat2, kallisto, salmon.",
            )
        if len(enabled) > 1:
            raise ConfigurationError(
                f"Multiple quantification tools selected: {', '.join(enabled)}. "
                "Enable exactly one.",
            )
        return enabled[0]


@dataclass(slots=True)
class PublishSettings:
    """Artifact classes retained instead of sparse-reclaimed."""

    raw_reads: bool = False
    alignments: bool = False


@dataclass(slots=True)
class OutputSettings:
    """Post-processing outputs."""

    matrix_formats: tuple[str, ...] = ("tsv",)


@dataclass(slots=True)
class CommandSettings:
    """Command templates for the black-box stage tools."""

    download: str = "fasterq-dump --split-files --outdir {outdir} {run_id}"
    merge: str = "rnaseq-merge-runs --sample {sample_id} --outdir {outdir} {inputs}"
    fastqc: str = "fastqc --threads {threads} --outdir {outdir} {inputs}"
    hisat2_align: str = (
        "hisat2-align-sample --index {index} --threads {threads} "
        "--sample {sample_id} --outdir {outdir} {inputs}"
    )
    featurecounts: str = (
        "featureCounts -T {threads} -a {annotation} -o {outdir}/{sample_id}.counts {inputs}"
    )
    flagstat: str = "samtools-flagstat-dir --outdir {outdir} {inputs}"
    kallisto_quant: str = (
        "kallisto quant --index {index} --threads {threads} --output-dir {outdir} {inputs}"
    )
    salmon_quant: str = (
        "salmon quant --index {index} --libType A --threads {threads} "
        "--output {outdir} --reads {inputs}"
    )
    report: str = "multiqc --force --outdir {outdir} {inputs}"
    matrix: str = "rnaseq-count-matrix --format {format} --outdir {outdir} {inputs}"


@dataclass(slots=True)
class EngineSettings:
    """Execution engine knobs passed to Prefect tasks."""

    stage_retries: int = 2
    stage_retry_delay_seconds: int = 30
    stage_timeout_seconds: int = 86_400


@dataclass(slots=True)
class MetadataSettings:
    """ENA portal settings for resolving run accessions."""

    ena_filereport_url: str = "https://www.ebi.ac.uk/ena/portal/api/filereport"
    request_timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass(slots=True)
class Settings:
    """Scheduler settings loaded from ``RNASEQ_QUEUE_*`` environment variables."""

    work_dir: Path = Path(".rnaseq_queue")
    queue: QueueSettings = field(default_factory=QueueSettings)
    inputs: InputSettings = field(default_factory=InputSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    publish: PublishSettings = field(default_factory=PublishSettings)
    outputs: OutputSettings = field(default_factory=OutputSettings)
    commands: CommandSettings = field(default_factory=CommandSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    metadata: MetadataSettings = field(default_factory=MetadataSettings)

    @property
    def queue_root(self) -> Path:
        return self.work_dir / "queue"

    @property
    def samples_root(self) -> Path:
        return self.work_dir / "samples"

    @property
    def results_root(self) -> Path:
        return self.work_dir / "results"

    @classmethod
    def from_env(cls, work_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults suited to a local run."""

        defaults = CommandSettings()
        return cls(
            work_dir=work_dir or Path(os.getenv("RNASEQ_QUEUE_WORK_DIR", ".rnaseq_queue")),
            queue=QueueSettings(
                queue_size=int(os.getenv("RNASEQ_QUEUE_QUEUE_SIZE", "4")),
                lock_initial_delay_seconds=float(
                    os.getenv("RNASEQ_QUEUE_LOCK_INITIAL_DELAY_SECONDS", "0.05"),
                ),
                lock_poll_interval_seconds=float(
                    os.getenv("RNASEQ_QUEUE_LOCK_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                lock_max_attempts=int(os.getenv("RNASEQ_QUEUE_LOCK_MAX_ATTEMPTS", "6000")),
                watch_poll_interval_seconds=float(
                    os.getenv("RNASEQ_QUEUE_WATCH_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                join_timeout_seconds=float(
                    os.getenv("RNASEQ_QUEUE_JOIN_TIMEOUT_SECONDS", "86400"),
                ),
                stall_policy=os.getenv("RNASEQ_QUEUE_STALL_POLICY", "warn").strip().lower(),
                on_stage_failure=os.getenv("RNASEQ_QUEUE_ON_STAGE_FAILURE", "abort")
                .strip()
                .lower(),
            ),
            inputs=InputSettings(
                sample_sheet=_env_path("RNASEQ_QUEUE_SAMPLE_SHEET"),
                remote_accessions=_collect_accessions(),
                skip_list=_env_path("RNASEQ_QUEUE_SKIP_LIST"),
            ),
            tools=ToolSettings(
                hisat2=_env_bool("RNASEQ_QUEUE_HISAT2", default=False),
                kallisto=_env_bool("RNASEQ_QUEUE_KALLISTO", default=False),
                salmon=_env_bool("RNASEQ_QUEUE_SALMON", default=False),
                hisat2_index=_env_path("RNASEQ_QUEUE_HISAT2_INDEX"),
                annotation_gtf=_env_path("RNASEQ_QUEUE_ANNOTATION_GTF"),
                kallisto_index=_env_path("RNASEQ_QUEUE_KALLISTO_INDEX"),
                salmon_index=_env_path("RNASEQ_QUEUE_SALMON_INDEX"),
                threads=int(os.getenv("RNASEQ_QUEUE_THREADS", "4")),
            ),
            publish=PublishSettings(
                raw_reads=_env_bool("RNASEQ_QUEUE_PUBLISH_RAW_READS", default=False),
                alignments=_env_bool("RNASEQ_QUEUE_PUBLISH_ALIGNMENTS", default=False),
            ),
            outputs=OutputSettings(
                matrix_formats=_dedupe(
                    value.lower()
                    for value in _split_csv(os.getenv("RNASEQ_QUEUE_MATRIX_FORMATS", "tsv"))
                ),
            ),
            commands=CommandSettings(
                **{
                    item.name: os.getenv(
                        f"RNASEQ_QUEUE_{item.name.upper()}_COMMAND",
                        getattr(defaults, item.name),
                    )
                    for item in fields(CommandSettings)
                },
            ),
            engine=EngineSettings(
                stage_retries=int(os.getenv("RNASEQ_QUEUE_STAGE_RETRIES", "2")),
                stage_retry_delay_seconds=int(
                    os.getenv("RNASEQ_QUEUE_STAGE_RETRY_DELAY_SECONDS", "30"),
                ),
                stage_timeout_seconds=int(
                    os.getenv("RNASEQ_QUEUE_STAGE_TIMEOUT_SECONDS", "86400"),
                ),
            ),
            metadata=MetadataSettings(
                ena_filereport_url=os.getenv(
                    "RNASEQ_QUEUE_ENA_FILEREPORT_URL",
                    "https://www.ebi.ac.uk/ena/portal/api/filereport",
                ),
                request_timeout_seconds=float(
                    os.getenv("RNASEQ_QUEUE_ENA_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("RNASEQ_QUEUE_ENA_MAX_RETRIES", "3")),
            ),
        )

    def validate(self) -> None:
        """Raise ConfigurationError before any sample is admitted."""

        if self.queue.queue_size <= 0:
            raise ConfigurationError("RNASEQ_QUEUE_QUEUE_SIZE must be a positive integer.")
        if self.queue.lock_max_attempts <= 0:
            raise ConfigurationError("RNASEQ_QUEUE_LOCK_MAX_ATTEMPTS must be > 0.")
        if self.queue.lock_poll_interval_seconds <= 0:
            raise ConfigurationError("RNASEQ_QUEUE_LOCK_POLL_INTERVAL_SECONDS must be > 0.")
        if self.queue.join_timeout_seconds < 0:
            raise ConfigurationError("RNASEQ_QUEUE_JOIN_TIMEOUT_SECONDS must be >= 0.")
        if self.queue.stall_policy not in SUPPORTED_STALL_POLICIES:
            raise ConfigurationError(
                f"Unsupported stall policy: {self.queue.stall_policy!r}. "
                f"Use one of {SUPPORTED_STALL_POLICIES}.",
            )
        if self.queue.on_stage_failure not in SUPPORTED_FAILURE_POLICIES:
            raise ConfigurationError(
                f"Unsupported stage failure policy: {self.queue.on_stage_failure!r}. "
                f"Use one of {SUPPORTED_FAILURE_POLICIES}.",
            )
        if self.tools.threads <= 0:
            raise ConfigurationError("RNASEQ_QUEUE_THREADS must be a positive integer.")

        if self.inputs.sample_sheet is None and not self.inputs.remote_accessions:
            raise ConfigurationError(
                "No samples configured. "
                "Set RNASEQ_QUEUE_SAMPLE_SHEET or RNASEQ_QUEUE_REMOTE_ACCESSIONS.",
            )
        if self.inputs.sample_sheet is not None:
            _require_file(self.inputs.sample_sheet, "sample sheet")

        if not self.outputs.matrix_formats:
            raise ConfigurationError(
                "At least one output format is required. Set RNASEQ_QUEUE_MATRIX_FORMATS.",
            )
        for matrix_format in self.outputs.matrix_formats:
            if matrix_format not in SUPPORTED_MATRIX_FORMATS:
                raise ConfigurationError(
                    f"Unsupported matrix format: {matrix_format!r}. "
                    f"Use one of {SUPPORTED_MATRIX_FORMATS}.",
                )

        parsed = urlparse(self.metadata.ena_filereport_url)
        if self.inputs.remote_accessions and (
            parsed.scheme not in {"http", "https"} or not parsed.netloc
        ):
            raise ConfigurationError(
                f"Invalid ENA filereport URL: {self.metadata.ena_filereport_url!r}",
            )

        self.validate_references()

    def validate_references(self) -> None:
        """Check that the selected tool has non-empty reference inputs."""

        tool = self.tools.selected_tool()
        if tool == "hisat2":
            _require_hisat2_index(self.tools.hisat2_index)
            _require_file(self.tools.annotation_gtf, "annotation GTF")
        elif tool == "kallisto":
            _require_file(self.tools.kallisto_index, "kallisto index")
        else:
            _require_directory(self.tools.salmon_index, "salmon index")


def _require_file(path: Path | None, label: str) -> None:
    if path is None:
        raise ConfigurationError(f"Missing required {label}.")
    if not path.is_file():
        raise ConfigurationError(f"Required {label} not found: {path}")
    if path.stat().st_size == 0:
        raise ConfigurationError(f"Required {label} is empty: {path}")


def _require_directory(path: Path | None, label: str) -> None:
    if path is None:
        raise ConfigurationError(f"Missing required {label}.")
    if not path.is_dir():
        raise ConfigurationError(f"Required {label} directory not found: {path}")
    if not any(path.iterdir()):
        raise ConfigurationError(f"Required {label} directory is empty: {path}")


def _require_hisat2_index(prefix: Path | None) -> None:
    if prefix is None:
        raise ConfigurationError("Missing required HISAT2 index prefix.")
    candidates = [prefix.parent / f"{prefix.name}.1.ht2", prefix.parent / f"{prefix.name}.1.ht2l"]
    for candidate in candidates:
        if candidate.is_file() and candidate.stat().st_size > 0:
            return
    raise ConfigurationError(f"HISAT2 index not found or empty for prefix: {prefix}")


def _collect_accessions() -> tuple[str, ...]:
    values: list[str] = list(_split_csv(os.getenv("RNASEQ_QUEUE_REMOTE_ACCESSIONS", "")))
    accessions_file = _env_path("RNASEQ_QUEUE_REMOTE_ACCESSIONS_FILE")
    if accessions_file is not None:
        for line in accessions_file.read_text("utf-8").splitlines():
            token = line.strip()
            if token and not token.startswith("#"):
                values.append(token)
    return _dedupe(values)


def _split_csv(raw: str) -> tuple[str, ...]:
    return _dedupe(part.strip() for part in raw.split(","))


def _dedupe(values: Iterable[str]) -> tuple[str, ...]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        deduped.append(value)
    return tuple(deduped)


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")
