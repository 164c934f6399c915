from __future__ import annotations

import struct
from io import BytesIO

import pytest
from PIL import Image, features

from picture_transcoder.config import TranscoderConfig
from picture_transcoder.errors import TranscodingErrorKind, TranscodingFailure
from picture_transcoder.image_processing.dimensions import DimensionAnalyzer, exif_orientation, oriented_size, probe_header
from picture_transcoder.models import DriverId, Size
from stubs import StubDriver, make_stack, png_header


def _encoded(fmt: str, size=(37, 21), mode: str = "RGB") -> bytes:
    buffer = BytesIO()
    Image.new(mode, size, "red").save(buffer, format=fmt)
    return buffer.getvalue()


def test_probe_reads_png_header() -> None:
    assert probe_header(png_header(4000, 3000)) == Size(4000, 3000)


def test_probe_reads_gif_header() -> None:
    data = b"GIF89a" + struct.pack("<HH", 320, 200) + b"\x00" * 8
    assert probe_header(data) == Size(320, 200)


@pytest.mark.parametrize("fmt", ["JPEG", "PNG", "BMP", "GIF", "TIFF"])
def test_probe_matches_pillow_for_real_files(fmt: str) -> None:
    assert probe_header(_encoded(fmt)) == Size(37, 21)


@pytest.mark.skipif(not features.check("webp"), reason="Pillow built without WebP")
@pytest.mark.parametrize("lossless", [False, True])
def test_probe_reads_webp_header(lossless: bool) -> None:
    buffer = BytesIO()
    Image.new("RGB", (37, 21), "red").save(buffer, format="WEBP", lossless=lossless)
    assert probe_header(buffer.getvalue()) == Size(37, 21)


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"plain text, no image here",
        b"\x89PNG\r\n\x1a\n\x00\x00",
        png_header(0, 10),
    ],
)
def test_probe_returns_none_when_unknown(data: bytes) -> None:
    assert probe_header(data) is None


def _analyzer(size=None) -> tuple[DimensionAnalyzer, StubDriver]:
    driver = StubDriver(DriverId.PILLOW, size=size)
    stack = make_stack(TranscoderConfig(drivers=(DriverId.PILLOW,)), driver)
    return stack.analyzer, driver


def test_dimensions_prefers_header_over_decode() -> None:
    analyzer, driver = _analyzer(size=Size(1, 1))

    assert analyzer.dimensions(png_header(1200, 800)) == Size(1200, 800)
    assert driver.read_size_calls == 0


def test_dimensions_falls_back_to_primary_driver() -> None:
    analyzer, driver = _analyzer(size=Size(64, 48))

    assert analyzer.dimensions(b"some exotic container") == Size(64, 48)
    assert driver.read_size_calls == 1


@pytest.mark.parametrize("data", [b"", b"garbage bytes"])
def test_undeterminable_dimensions_are_invalid_source(data: bytes) -> None:
    analyzer, _ = _analyzer(size=None)

    with pytest.raises(TranscodingFailure) as excinfo:
        analyzer.dimensions(data)

    assert excinfo.value.kind is TranscodingErrorKind.INVALID_SOURCE


@pytest.mark.parametrize(
    "size, bound, expected",
    [
        (Size(4000, 3000), 150, Size(150, 113)),
        (Size(3000, 4000), 150, Size(113, 150)),
        (Size(1000, 1000), 256, Size(256, 256)),
        (Size(100, 50), 256, Size(100, 50)),
        (Size(4000, 3000), None, Size(4000, 3000)),
        (Size(10000, 10), 100, Size(100, 1)),
    ],
)
def test_scale_to_fit(size: Size, bound, expected: Size) -> None:
    assert DimensionAnalyzer.scale_to_fit(size, bound) == expected


def test_orientation_helpers() -> None:
    analyzer, _ = _analyzer()

    assert analyzer.orientation(Size(1600, 900)) == "landscape"
    assert analyzer.orientation(Size(900, 1600)) == "portrait"
    assert analyzer.orientation(Size(1000, 1040)) == "square"
    assert not analyzer.is_square(Size(1000, 1040), tolerance=0.01)
    assert analyzer.aspect_ratio(png_header(400, 200)) == 2.0
    assert analyzer.is_landscape(png_header(400, 200))


def _jpeg_with_orientation(orientation: int, size=(400, 300)) -> bytes:
    exif = Image.Exif()
    exif[0x0112] = orientation
    buffer = BytesIO()
    Image.new("RGB", size, "red").save(buffer, format="JPEG", exif=exif)
    return buffer.getvalue()


@pytest.mark.parametrize(
    "orientation, expected",
    [(1, Size(400, 300)), (3, Size(400, 300)), (6, Size(300, 400)), (8, Size(300, 400))],
)
def test_oriented_size_follows_exif_rotation(orientation: int, expected: Size) -> None:
    data = _jpeg_with_orientation(orientation)

    assert exif_orientation(data) == orientation
    assert probe_header(data) == Size(400, 300)
    assert oriented_size(data, Size(400, 300)) == expected


def test_orientation_defaults_without_exif() -> None:
    assert exif_orientation(_encoded("JPEG")) == 1
    assert exif_orientation(png_header(10, 20)) == 1
    assert exif_orientation(b"\xff\xd8\xff\xe1\x00") == 1
