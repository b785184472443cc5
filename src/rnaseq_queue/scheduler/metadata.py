"""ENA portal client that resolves run accessions into sample groupings."""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Iterable

import httpx

from rnaseq_queue.config import MetadataSettings
from rnaseq_queue.scheduler.models import SampleDescriptor, SampleOrigin

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "rnaseq-queue/0.1 (+https://www.ebi.ac.uk/ena/portal/api)"
FILEREPORT_FIELDS = "run_accession,sample_accession"


class MetadataLookupError(RuntimeError):
    """Run metadata could not be retrieved for an accession."""


class EnaMetadataClient:
    """Resolves ENA study, sample or run accessions to run ids via the filereport endpoint."""

    def __init__(
        self,
        *,
        settings: MetadataSettings,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = settings.ena_filereport_url
        self._client = httpx.Client(
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
            transport=transport or httpx.HTTPTransport(retries=settings.max_retries),
            follow_redirects=True,
        )

    def runs_for(self, accession: str) -> list[tuple[str, str]]:
        """Return ``(run_accession, sample_accession)`` pairs for any ENA accession."""

        params = {
            "accession": accession,
            "result": "read_run",
            "fields": FILEREPORT_FIELDS,
            "format": "tsv",
        }
        try:
            response = self._client.get(self._url, params=params)
        except httpx.TimeoutException as error:
            logger.warning("Timeout resolving accession %s", accession)
            raise MetadataLookupError(f"Timeout resolving accession {accession!r}") from error
        except httpx.HTTPError as error:
            logger.warning("HTTP error resolving accession %s: %s", accession, error)
            raise MetadataLookupError(
                f"HTTP error resolving accession {accession!r}: {error}",
            ) from error

        if not response.is_success:
            raise MetadataLookupError(
                f"ENA returned HTTP {response.status_code} for accession {accession!r}",
            )
        pairs = _parse_filereport(response.text)
        if not pairs:
            raise MetadataLookupError(f"ENA returned no runs for accession {accession!r}")
        return pairs

    def resolve(self, accessions: Iterable[str]) -> list[SampleDescriptor]:
        """Group the runs behind ``accessions`` by sample accession."""

        grouped: dict[str, list[str]] = {}
        for accession in accessions:
            for run_id, sample_id in self.runs_for(accession):
                runs = grouped.setdefault(sample_id, [])
                if run_id not in runs:
                    runs.append(run_id)
        logger.info("Resolved %d remote samples from ENA", len(grouped))
        return [
            SampleDescriptor(
                sample_id=sample_id,
                origin=SampleOrigin.REMOTE,
                payload=tuple(sorted(runs)),
            )
            for sample_id, runs in sorted(grouped.items())
        ]

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> EnaMetadataClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _parse_filereport(text: str) -> list[tuple[str, str]]:
    reader = csv.DictReader(io.StringIO(text), delimiter="\t")
    pairs: list[tuple[str, str]] = []
    for row in reader:
        run_id = (row.get("run_accession") or "").strip()
        sample_id = (row.get("sample_accession") or "").strip()
        if run_id and sample_id:
            pairs.append((run_id, sample_id))
    return pairs
