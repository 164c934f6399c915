from __future__ import annotations

from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from picture_transcoder.config import CacheSettings, TranscoderConfig
from picture_transcoder.errors import TranscodingErrorKind
from picture_transcoder.image_processing.catalog import OptimizedVariantCatalog, variant_path
from picture_transcoder.media.cache import OptimizationCache
from picture_transcoder.media.repository import InMemoryPictureRepository
from picture_transcoder.media.storage import MemoryStorage
from picture_transcoder.models import DriverId, ImageFormat, Size, SourceImage, TranscodeResult, VariantSpec
from stubs import StubDriver, fail_for, make_stack, png_header

SCENARIO_VARIANTS = (VariantSpec("thumbnail", 150), VariantSpec("full"))
SCENARIO_FORMATS = (ImageFormat.WEBP, ImageFormat.JPEG)


def _catalog(config: TranscoderConfig, *drivers: StubDriver, cache: OptimizationCache | None = None):
    stack = make_stack(config, *drivers)
    catalog = OptimizedVariantCatalog(
        config,
        stack.orchestrator,
        stack.analyzer,
        MemoryStorage(),
        InMemoryPictureRepository(),
        cache=cache,
    )
    return catalog, stack


def _scenario_config(**overrides) -> TranscoderConfig:
    return TranscoderConfig(
        drivers=(DriverId.PILLOW,),
        variants=SCENARIO_VARIANTS,
        formats=SCENARIO_FORMATS,
        **overrides,
    )


def test_materialize_creates_every_variant_with_scaled_dimensions() -> None:
    catalog, stack = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    source = catalog.register("photo.png", png_header(4000, 3000))

    report = catalog.materialize(source.id)

    assert report.complete
    rows = {(row.variant, row.format): row for row in catalog.repository.variants_for(source.id)}
    assert set(rows) == {
        ("thumbnail", ImageFormat.WEBP),
        ("thumbnail", ImageFormat.JPEG),
        ("full", ImageFormat.WEBP),
        ("full", ImageFormat.JPEG),
    }
    assert (rows["thumbnail", ImageFormat.WEBP].width, rows["thumbnail", ImageFormat.WEBP].height) == (150, 113)
    assert (rows["full", ImageFormat.JPEG].width, rows["full", ImageFormat.JPEG].height) == (4000, 3000)
    assert rows["thumbnail", ImageFormat.JPEG].path == f"{source.id}/photo_thumbnail_jpeg.jpg"
    assert catalog.storage.get(rows["full", ImageFormat.WEBP].path) == b"pillow:webp"
    assert catalog.repository.get_source(source.id).size == Size(4000, 3000)


def test_oversized_source_produces_no_rows() -> None:
    catalog, stack = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    source = catalog.register("huge.png", png_header(20000, 20000))

    report = catalog.materialize(source.id)

    assert report.created == []
    assert len(report.failures) == 4
    assert set(report.failure_kinds()) == {TranscodingErrorKind.RESOURCE_LIMIT_EXCEEDED}
    assert catalog.repository.variants_for(source.id) == []
    assert stack.encode_calls == 0


def test_second_materialize_creates_nothing() -> None:
    catalog, stack = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    source = catalog.register("photo.png", png_header(640, 480))

    first = catalog.materialize(source.id)
    calls_after_first = stack.encode_calls
    second = catalog.materialize(source.id)

    assert len(first.created) == 4
    assert second.created == []
    assert len(second.skipped) == 4
    assert stack.encode_calls == calls_after_first
    assert len(catalog.repository.variants_for(source.id)) == 4


def test_one_failing_pair_does_not_block_the_others() -> None:
    def fail_full_avif(fmt, options):
        if fmt is ImageFormat.AVIF and options.size is None:
            return RuntimeError("avif encoder ran out of memory")
        return None

    config = TranscoderConfig(
        drivers=(DriverId.PILLOW,),
        formats=(ImageFormat.AVIF, ImageFormat.WEBP),
        format_fallbacks={},
    )
    catalog, _ = _catalog(config, StubDriver(DriverId.PILLOW, fail_full_avif))
    source = catalog.register("photo.png", png_header(3000, 2000))

    report = catalog.materialize(source.id)

    assert len(catalog.matrix()) == 10
    assert len(report.created) == 9
    assert [(variant, fmt) for variant, fmt, _ in report.failures] == [("full", ImageFormat.AVIF)]
    assert report.failures[0][2].kind is TranscodingErrorKind.ALL_DRIVERS_FAILED

    retry = catalog.materialize(source.id)
    assert len(retry.skipped) == 9
    assert len(retry.failures) == 1


def test_parallel_materialize_matches_sequential() -> None:
    catalog, _ = _catalog(TranscoderConfig(drivers=(DriverId.PILLOW,)), StubDriver(DriverId.PILLOW))
    source = catalog.register("photo.png", png_header(2500, 1200))

    report = catalog.materialize(source.id, workers=4)

    assert report.complete
    assert len(report.created) == len(catalog.matrix()) == 10


def test_missing_original_fails_every_pair() -> None:
    catalog, stack = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    source = catalog.register("photo.png", png_header(640, 480))
    catalog.storage.delete(source.path)

    report = catalog.materialize(source.id)

    assert len(report.failures) == 4
    assert set(report.failure_kinds()) == {TranscodingErrorKind.INVALID_SOURCE}
    assert stack.encode_calls == 0


def test_unreadable_source_is_invalid() -> None:
    catalog, _ = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    source = catalog.register("notes.png", b"definitely not an image")

    report = catalog.materialize(source.id)

    assert set(report.failure_kinds()) == {TranscodingErrorKind.INVALID_SOURCE}


def test_register_deduplicates_identical_uploads() -> None:
    catalog, _ = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    data = png_header(640, 480)

    first = catalog.register("a.png", data)
    second = catalog.register("b.png", data)

    assert first == second
    assert len(catalog.repository.list_sources()) == 1


def test_register_rejects_empty_upload() -> None:
    catalog, _ = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))

    with pytest.raises(ValueError):
        catalog.register("empty.png", b"")


def test_cached_result_skips_the_encoder(tmp_path: Path) -> None:
    config = _scenario_config(cache=CacheSettings(enabled=True, directory=tmp_path))
    cache = OptimizationCache(config.cache)
    catalog, stack = _catalog(config, StubDriver(DriverId.PILLOW), cache=cache)
    data = png_header(640, 480)
    checksum = catalog.checksum(data)
    cache.put(
        checksum,
        "thumbnail",
        ImageFormat.WEBP,
        TranscodeResult(b"cached", "pillow", ImageFormat.WEBP, ImageFormat.WEBP, Size(150, 113)),
    )
    source = catalog.register("photo.png", data)

    report = catalog.materialize(source.id)

    assert len(report.created) == 4
    assert len(stack.drivers[DriverId.PILLOW].calls) == 3
    row = next(row for row in report.created if (row.variant, row.format) == ("thumbnail", ImageFormat.WEBP))
    assert catalog.storage.get(row.path) == b"cached"
    assert cache.stats()["total_keys"] == 4


def test_select_prefers_formats_in_order_then_the_original() -> None:
    catalog, _ = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    source = catalog.register("photo.png", png_header(640, 480))
    catalog.materialize(source.id)

    chosen = catalog.select(source, "thumbnail", ["avif", "jpeg", "webp"])
    assert chosen.format is ImageFormat.JPEG

    assert catalog.select(source, "medium", ["webp"]) == source

    catalog.storage.delete(source.path)
    assert catalog.select(source, "medium", ["webp"]) is None


def test_delete_cascades_to_variants_and_files() -> None:
    catalog, _ = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    source = catalog.register("photo.png", png_header(640, 480))
    catalog.materialize(source.id)

    removed = catalog.delete(source.id)

    assert removed == 4
    assert catalog.storage.files == {}
    assert catalog.repository.variants_for(source.id) == []
    assert catalog.repository.list_sources() == []


def test_variant_path_names_requested_format_and_encoded_extension() -> None:
    source = SourceImage("abc", "cat.photo.png", "abc/cat.photo.png", "sum", 10)

    assert variant_path(source, "small", ImageFormat.JPEG, ImageFormat.JPEG) == "abc/cat.photo_small_jpeg.jpg"
    assert variant_path(source, "small", ImageFormat.AVIF, ImageFormat.WEBP) == "abc/cat.photo_small_avif.webp"


def test_format_fallback_rows_do_not_share_files() -> None:
    config = TranscoderConfig(
        drivers=(DriverId.PILLOW,),
        variants=SCENARIO_VARIANTS,
        formats=(ImageFormat.AVIF, ImageFormat.WEBP),
    )
    catalog, stack = _catalog(config, StubDriver(DriverId.PILLOW, fail_for(ImageFormat.AVIF)))
    source = catalog.register("photo.png", png_header(640, 480))

    report = catalog.materialize(source.id)

    assert report.complete
    rows = {(row.variant, row.format): row for row in catalog.repository.variants_for(source.id)}
    avif_row = rows["thumbnail", ImageFormat.AVIF]
    webp_row = rows["thumbnail", ImageFormat.WEBP]
    assert avif_row.encoded_format is ImageFormat.WEBP
    assert avif_row.path != webp_row.path
    assert avif_row.path.endswith("_thumbnail_avif.webp")
    assert len({row.path for row in rows.values()}) == 4
    assert all(catalog.storage.exists(row.path) for row in rows.values())


def test_rotated_source_variants_follow_displayed_orientation() -> None:
    exif = Image.Exif()
    exif[0x0112] = 6
    buffer = BytesIO()
    Image.new("RGB", (400, 300), "red").save(buffer, format="JPEG", exif=exif)
    catalog, stack = _catalog(_scenario_config(), StubDriver(DriverId.PILLOW))
    source = catalog.register("sideways.jpg", buffer.getvalue())

    catalog.materialize(source.id)

    rows = {(row.variant, row.format): row for row in catalog.repository.variants_for(source.id)}
    thumb = rows["thumbnail", ImageFormat.WEBP]
    assert (thumb.width, thumb.height) == (113, 150)
    assert stack.drivers[DriverId.PILLOW].calls[0][1].size == Size(113, 150)
    assert catalog.repository.get_source(source.id).size == Size(300, 400)
