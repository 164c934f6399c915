from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List

from .errors import TranscodingErrorKind
from .image_processing.catalog import OptimizedVariantCatalog
from .models import MaterializeReport

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobOutcome:
    source_id: str
    report: MaterializeReport
    attempts: int
    alert: bool

    @property
    def succeeded(self) -> bool:
        return self.report.complete


class MaterializeJob:
    """Unit of work for a scheduler: materialize one source, retrying transient failures.

    Re-running is safe because materialization skips pairs that already exist.
    """

    def __init__(
        self,
        catalog: OptimizedVariantCatalog,
        source_id: str,
        tries: int = 3,
        backoff: float = 60.0,
        workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if tries < 1:
            raise ValueError("tries must be at least 1")
        self.catalog = catalog
        self.source_id = source_id
        self.tries = tries
        self.backoff = backoff
        self.workers = workers
        self._sleep = sleep

    def run(self) -> JobOutcome:
        attempt = 0
        report = MaterializeReport(source_id=self.source_id)
        while attempt < self.tries:
            attempt += 1
            report = self.catalog.materialize(self.source_id, workers=self.workers)
            if report.complete:
                break
            retryable = [failure for _, _, failure in report.failures if failure.is_retryable]
            if not retryable:
                logger.error(
                    "Picture optimization for %s failed with non-retryable errors: %s",
                    self.source_id,
                    sorted({kind.value for kind in report.failure_kinds()}),
                )
                break
            if attempt < self.tries:
                logger.warning(
                    "Picture optimization for %s incomplete (%s failures), retrying in %ss (attempt %s/%s)",
                    self.source_id,
                    len(report.failures),
                    self.backoff,
                    attempt,
                    self.tries,
                )
                self._sleep(self.backoff)

        alert = TranscodingErrorKind.ALL_DRIVERS_FAILED in report.failure_kinds()
        if not report.complete:
            logger.error(
                "Picture optimization job for %s gave up after %s attempts; %s pairs still missing",
                self.source_id,
                attempt,
                len(report.failures),
            )
        if alert:
            logger.critical("All drivers failed while optimizing %s; check the image backends", self.source_id)
        return JobOutcome(source_id=self.source_id, report=report, attempts=attempt, alert=alert)


def pending_sources(catalog: OptimizedVariantCatalog) -> List[str]:
    """Ids of sources that still lack at least one (variant, format) row."""
    return [source.id for source in catalog.repository.list_sources() if catalog.missing_for(source)]


def run_pending(
    catalog: OptimizedVariantCatalog,
    tries: int = 3,
    backoff: float = 60.0,
    workers: int = 1,
    sleep: Callable[[float], None] = time.sleep,
) -> List[JobOutcome]:
    outcomes = []
    pending = pending_sources(catalog)
    logger.info("Found %s pictures to optimize", len(pending))
    for source_id in pending:
        job = MaterializeJob(catalog, source_id, tries=tries, backoff=backoff, workers=workers, sleep=sleep)
        outcomes.append(job.run())
    return outcomes
