from __future__ import annotations

from typing import List

from picture_transcoder.config import TranscoderConfig
from picture_transcoder.errors import TranscodingFailure
from picture_transcoder.image_processing.catalog import OptimizedVariantCatalog
from picture_transcoder.jobs import MaterializeJob, pending_sources, run_pending
from picture_transcoder.media.repository import InMemoryPictureRepository
from picture_transcoder.media.storage import MemoryStorage
from picture_transcoder.models import DriverId, ImageFormat, MaterializeReport, VariantSpec
from stubs import StubDriver, make_stack, png_header


def _transient_failure() -> TranscodingFailure:
    return TranscodingFailure.all_drivers_failed(
        [{"driver": "pillow", "format": "webp", "kind": "pillow_encoding_failed", "message": "boom"}]
    )


def _report(*failures: TranscodingFailure) -> MaterializeReport:
    return MaterializeReport(
        source_id="src",
        failures=[("thumbnail", ImageFormat.WEBP, failure) for failure in failures],
    )


class ScriptedCatalog:
    def __init__(self, reports: List[MaterializeReport]) -> None:
        self.reports = list(reports)
        self.calls = 0

    def materialize(self, source_id: str, workers: int = 1) -> MaterializeReport:
        self.calls += 1
        return self.reports.pop(0)


def test_transient_failures_are_retried_with_backoff() -> None:
    catalog = ScriptedCatalog([_report(_transient_failure()), _report(_transient_failure()), _report()])
    sleeps: List[float] = []

    outcome = MaterializeJob(catalog, "src", tries=3, backoff=60.0, sleep=sleeps.append).run()

    assert outcome.succeeded
    assert outcome.attempts == 3
    assert sleeps == [60.0, 60.0]
    assert not outcome.alert


def test_resource_veto_is_not_retried() -> None:
    veto = TranscodingFailure.resource_limit_exceeded("pillow", "dimensions")
    catalog = ScriptedCatalog([_report(veto)])
    sleeps: List[float] = []

    outcome = MaterializeJob(catalog, "src", tries=3, sleep=sleeps.append).run()

    assert catalog.calls == 1
    assert sleeps == []
    assert not outcome.succeeded
    assert not outcome.alert


def test_exhausted_retries_raise_an_alert() -> None:
    catalog = ScriptedCatalog([_report(_transient_failure()) for _ in range(3)])
    sleeps: List[float] = []

    outcome = MaterializeJob(catalog, "src", tries=3, backoff=5.0, sleep=sleeps.append).run()

    assert outcome.attempts == 3
    assert sleeps == [5.0, 5.0]
    assert outcome.alert
    assert not outcome.succeeded


def test_run_pending_only_visits_incomplete_sources() -> None:
    config = TranscoderConfig(
        drivers=(DriverId.PILLOW,),
        variants=(VariantSpec("thumbnail", 100),),
        formats=(ImageFormat.WEBP,),
    )
    stack = make_stack(config, StubDriver(DriverId.PILLOW))
    catalog = OptimizedVariantCatalog(
        config, stack.orchestrator, stack.analyzer, MemoryStorage(), InMemoryPictureRepository()
    )
    done = catalog.register("done.png", png_header(300, 200))
    catalog.materialize(done.id)
    todo = catalog.register("todo.png", png_header(200, 300))

    assert pending_sources(catalog) == [todo.id]

    outcomes = run_pending(catalog, sleep=lambda seconds: None)

    assert [outcome.source_id for outcome in outcomes] == [todo.id]
    assert outcomes[0].succeeded
    assert pending_sources(catalog) == []
