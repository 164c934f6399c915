from __future__ import annotations

import threading

import pytest

from picture_transcoder.config import TranscoderConfig
from picture_transcoder.drivers.registry import DRIVER_FACTORIES, DriverCapabilityRegistry
from picture_transcoder.errors import (
    ConfigurationError,
    NoDriversAvailableError,
    TranscodingErrorKind,
    TranscodingFailure,
)
from picture_transcoder.models import DriverId, ImageFormat
from stubs import StubDriver


class CountingFactory:
    def __init__(self, driver: StubDriver) -> None:
        self.driver = driver
        self.calls = 0

    def __call__(self, config: TranscoderConfig) -> StubDriver:
        self.calls += 1
        return self.driver


def _registry(config: TranscoderConfig, *drivers: StubDriver):
    factories = {driver.driver_id: CountingFactory(driver) for driver in drivers}
    return DriverCapabilityRegistry(config, factories=factories), factories


def test_detection_keeps_priority_order_and_skips_missing_drivers() -> None:
    config = TranscoderConfig(drivers=(DriverId.IMAGICK, DriverId.PILLOW, DriverId.OPENCV))
    registry, _ = _registry(
        config,
        StubDriver(DriverId.IMAGICK, available=False),
        StubDriver(DriverId.PILLOW),
        StubDriver(DriverId.OPENCV),
    )

    assert registry.detect() == (DriverId.PILLOW, DriverId.OPENCV)
    assert registry.primary() is DriverId.PILLOW
    assert registry.is_fallback_available()
    assert [(item.id, item.available) for item in registry.descriptors()] == [
        (DriverId.IMAGICK, False),
        (DriverId.PILLOW, True),
        (DriverId.OPENCV, True),
    ]


def test_detection_runs_once() -> None:
    config = TranscoderConfig(drivers=(DriverId.PILLOW,))
    registry, factories = _registry(config, StubDriver(DriverId.PILLOW))

    registry.detect()
    registry.detect()
    registry.candidates_for_format(ImageFormat.WEBP)

    assert factories[DriverId.PILLOW].calls == 1


def test_concurrent_first_use_probes_once() -> None:
    config = TranscoderConfig(drivers=(DriverId.PILLOW, DriverId.OPENCV))
    registry, factories = _registry(config, StubDriver(DriverId.PILLOW), StubDriver(DriverId.OPENCV))
    barrier = threading.Barrier(8)
    results = []

    def worker() -> None:
        barrier.wait()
        results.append(registry.detect())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert factories[DriverId.PILLOW].calls == 1
    assert factories[DriverId.OPENCV].calls == 1
    assert set(results) == {(DriverId.PILLOW, DriverId.OPENCV)}


def test_no_available_driver_is_fatal() -> None:
    config = TranscoderConfig(drivers=(DriverId.PILLOW, DriverId.OPENCV))
    registry, _ = _registry(config, StubDriver(DriverId.PILLOW, available=False))

    with pytest.raises(NoDriversAvailableError) as excinfo:
        registry.detect()

    assert excinfo.value.kind is TranscodingErrorKind.ALL_DRIVERS_FAILED
    assert excinfo.value.context["configured"] == ["pillow", "opencv"]
    assert [item.available for item in registry.descriptors()] == [False, False]


def test_broken_availability_probe_counts_as_missing() -> None:
    class ExplodingDriver(StubDriver):
        def is_available(self) -> bool:
            raise OSError("library failed to load")

    config = TranscoderConfig(drivers=(DriverId.OPENCV, DriverId.PILLOW))
    registry, _ = _registry(config, ExplodingDriver(DriverId.OPENCV), StubDriver(DriverId.PILLOW))

    assert registry.detect() == (DriverId.PILLOW,)
    assert not registry.is_fallback_available()


def test_unavailable_driver_lookup_fails() -> None:
    config = TranscoderConfig(drivers=(DriverId.PILLOW, DriverId.IMAGICK))
    registry, _ = _registry(config, StubDriver(DriverId.PILLOW), StubDriver(DriverId.IMAGICK, available=False))

    with pytest.raises(TranscodingFailure) as excinfo:
        registry.driver(DriverId.IMAGICK)

    assert excinfo.value.kind is TranscodingErrorKind.DRIVER_NOT_AVAILABLE


def test_candidates_follow_format_support() -> None:
    config = TranscoderConfig(drivers=(DriverId.OPENCV, DriverId.PILLOW))
    registry, _ = _registry(config, StubDriver(DriverId.OPENCV), StubDriver(DriverId.PILLOW))

    assert registry.candidates_for_format(ImageFormat.JPEG) == [DriverId.OPENCV, DriverId.PILLOW]
    assert registry.candidates_for_format(ImageFormat.AVIF) == [DriverId.PILLOW]
    assert registry.supports_format(DriverId.OPENCV, ImageFormat.WEBP)
    assert not registry.supports_format(DriverId.OPENCV, ImageFormat.GIF)


def test_resolve_format_walks_the_fallback_chain() -> None:
    config = TranscoderConfig(
        drivers=(DriverId.OPENCV,),
        format_support={DriverId.OPENCV: (ImageFormat.JPEG,)},
    )
    registry, _ = _registry(config, StubDriver(DriverId.OPENCV))

    assert registry.resolve_format(ImageFormat.AVIF) == (ImageFormat.JPEG, [DriverId.OPENCV])
    assert registry.resolve_format(ImageFormat.GIF) == (ImageFormat.GIF, [])


def test_cyclic_fallback_map_is_rejected_on_construction() -> None:
    with pytest.raises(ConfigurationError):
        TranscoderConfig(format_fallbacks={ImageFormat.AVIF: ImageFormat.WEBP, ImageFormat.WEBP: ImageFormat.AVIF})


def test_resolve_format_guards_against_cycles_at_runtime() -> None:
    config = TranscoderConfig(drivers=(DriverId.OPENCV,), format_support={DriverId.OPENCV: (ImageFormat.JPEG,)})
    object.__setattr__(config, "format_fallbacks", {ImageFormat.AVIF: ImageFormat.WEBP, ImageFormat.WEBP: ImageFormat.AVIF})
    registry, _ = _registry(config, StubDriver(DriverId.OPENCV))

    with pytest.raises(ConfigurationError):
        registry.resolve_format(ImageFormat.AVIF)


def test_constructor_table_covers_every_driver() -> None:
    assert set(DRIVER_FACTORIES) == set(DriverId)
    config = TranscoderConfig(imagemagick_binary="magick-test-binary", subprocess_timeout=12.0)
    driver = DRIVER_FACTORIES[DriverId.IMAGICK](config)
    assert driver.driver_id is DriverId.IMAGICK
    assert driver.timeout == 12.0
    assert driver.limits.max_area == 128_000_000
