"""Cheap dimension probing and aspect-ratio helpers.

``probe_header`` reads only the container headers of the common raster formats
so that admission control can reject oversized inputs without decoding a
single pixel. Anything it cannot parse is handed to the primary driver for a
full decode.
"""

from __future__ import annotations

import logging
import math
import struct
from typing import Callable, Dict, Optional, Union

from ..drivers.registry import DriverCapabilityRegistry
from ..errors import TranscodingFailure
from ..models import Size

logger = logging.getLogger(__name__)

SizeSource = Union[bytes, Size]

_JPEG_SOF_MARKERS = frozenset(
    {0xC0, 0xC1, 0xC2, 0xC3, 0xC5, 0xC6, 0xC7, 0xC9, 0xCA, 0xCB, 0xCD, 0xCE, 0xCF}
)
_JPEG_STANDALONE_MARKERS = frozenset({0x01, 0xD0, 0xD1, 0xD2, 0xD3, 0xD4, 0xD5, 0xD6, 0xD7, 0xD8})
_EXIF_ORIENTATION_TAG = 0x0112
# EXIF orientations 5-8 rotate by 90 degrees, so width and height swap on display.
_TRANSPOSED_ORIENTATIONS = frozenset({5, 6, 7, 8})


def _png_size(data: bytes) -> Optional[Size]:
    if len(data) < 24 or data[12:16] != b"IHDR":
        return None
    width, height = struct.unpack(">II", data[16:24])
    return Size(width, height)


def _gif_size(data: bytes) -> Optional[Size]:
    if len(data) < 10:
        return None
    width, height = struct.unpack("<HH", data[6:10])
    return Size(width, height)


def _bmp_size(data: bytes) -> Optional[Size]:
    if len(data) < 26:
        return None
    (header_size,) = struct.unpack("<I", data[14:18])
    if header_size == 12:
        width, height = struct.unpack("<HH", data[18:22])
    else:
        width, height = struct.unpack("<ii", data[18:26])
    return Size(abs(width), abs(height))


def _jpeg_size(data: bytes) -> Optional[Size]:
    offset = 2
    length = len(data)
    while offset + 4 <= length:
        if data[offset] != 0xFF:
            return None
        marker = data[offset + 1]
        if marker == 0xFF:
            offset += 1
            continue
        if marker in _JPEG_STANDALONE_MARKERS:
            offset += 2
            continue
        (segment_length,) = struct.unpack(">H", data[offset + 2 : offset + 4])
        if marker in _JPEG_SOF_MARKERS:
            if offset + 9 > length:
                return None
            height, width = struct.unpack(">HH", data[offset + 5 : offset + 9])
            return Size(width, height)
        if marker == 0xD9 or segment_length < 2:
            return None
        offset += 2 + segment_length
    return None


def _webp_size(data: bytes) -> Optional[Size]:
    if len(data) < 30:
        return None
    chunk = data[12:16]
    if chunk == b"VP8 ":
        width, height = struct.unpack("<HH", data[26:30])
        return Size(width & 0x3FFF, height & 0x3FFF)
    if chunk == b"VP8L":
        b0, b1, b2, b3 = data[21:25]
        width = 1 + (((b1 & 0x3F) << 8) | b0)
        height = 1 + (((b3 & 0x0F) << 10) | (b2 << 2) | ((b1 & 0xC0) >> 6))
        return Size(width, height)
    if chunk == b"VP8X":
        width = 1 + int.from_bytes(data[24:27], "little")
        height = 1 + int.from_bytes(data[27:30], "little")
        return Size(width, height)
    return None


def _tiff_size(data: bytes) -> Optional[Size]:
    order = "<" if data[:2] == b"II" else ">"
    if len(data) < 8:
        return None
    (ifd_offset,) = struct.unpack(order + "I", data[4:8])
    if ifd_offset + 2 > len(data):
        return None
    (entries,) = struct.unpack(order + "H", data[ifd_offset : ifd_offset + 2])
    found: Dict[int, int] = {}
    for index in range(entries):
        start = ifd_offset + 2 + index * 12
        if start + 12 > len(data):
            break
        tag, field_type, _count = struct.unpack(order + "HHI", data[start : start + 8])
        if tag not in (256, 257):
            continue
        if field_type == 3:
            (value,) = struct.unpack(order + "H", data[start + 8 : start + 10])
        elif field_type == 4:
            (value,) = struct.unpack(order + "I", data[start + 8 : start + 12])
        else:
            continue
        found[tag] = value
    if 256 in found and 257 in found:
        return Size(found[256], found[257])
    return None


def _avif_size(data: bytes) -> Optional[Size]:
    marker = data.find(b"ispe", 0, 4096)
    if marker < 0 or marker + 16 > len(data):
        return None
    width, height = struct.unpack(">II", data[marker + 8 : marker + 16])
    return Size(width, height)


_HeaderParser = Callable[[bytes], Optional[Size]]


def _parser_for(data: bytes) -> Optional[_HeaderParser]:
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return _png_size
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return _gif_size
    if data.startswith(b"BM"):
        return _bmp_size
    if data.startswith(b"\xff\xd8"):
        return _jpeg_size
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return _webp_size
    if data[:4] in (b"II*\x00", b"MM\x00*"):
        return _tiff_size
    if data[4:8] == b"ftyp" and data[8:12] in (b"avif", b"avis", b"mif1"):
        return _avif_size
    return None


def probe_header(data: bytes) -> Optional[Size]:
    """Read width/height from the container header, or ``None`` if unknown."""
    parser = _parser_for(data)
    if parser is None:
        return None
    try:
        size = parser(data)
    except (struct.error, ValueError, IndexError):
        logger.debug("Header probe failed for %s", parser.__name__, exc_info=True)
        return None
    if size is None or size.width <= 0 or size.height <= 0:
        return None
    return size


def _ifd_orientation(data: bytes) -> Optional[int]:
    if len(data) < 8 or data[:2] not in (b"II", b"MM"):
        return None
    order = "<" if data[:2] == b"II" else ">"
    (ifd_offset,) = struct.unpack(order + "I", data[4:8])
    (entries,) = struct.unpack(order + "H", data[ifd_offset : ifd_offset + 2])
    for index in range(entries):
        start = ifd_offset + 2 + index * 12
        if start + 12 > len(data):
            break
        tag, field_type = struct.unpack(order + "HH", data[start : start + 4])
        if tag == _EXIF_ORIENTATION_TAG and field_type == 3:
            (value,) = struct.unpack(order + "H", data[start + 8 : start + 10])
            return value
    return None


def _jpeg_orientation(data: bytes) -> Optional[int]:
    offset = 2
    length = len(data)
    while offset + 4 <= length:
        if data[offset] != 0xFF:
            return None
        marker = data[offset + 1]
        if marker == 0xFF:
            offset += 1
            continue
        if marker in _JPEG_STANDALONE_MARKERS:
            offset += 2
            continue
        # EXIF lives in APP1 ahead of the frame header.
        if marker in _JPEG_SOF_MARKERS or marker in (0xD9, 0xDA):
            return None
        (segment_length,) = struct.unpack(">H", data[offset + 2 : offset + 4])
        if segment_length < 2:
            return None
        if marker == 0xE1 and data[offset + 4 : offset + 10] == b"Exif\x00\x00":
            return _ifd_orientation(data[offset + 10 : offset + 2 + segment_length])
        offset += 2 + segment_length
    return None


def exif_orientation(data: bytes) -> int:
    """EXIF orientation (1-8) of a JPEG or TIFF source; 1 when absent or unreadable."""
    if data.startswith(b"\xff\xd8"):
        reader = _jpeg_orientation
    elif data[:4] in (b"II*\x00", b"MM\x00*"):
        reader = _ifd_orientation
    else:
        return 1
    try:
        value = reader(data)
    except (struct.error, ValueError, IndexError):
        logger.debug("EXIF orientation probe failed", exc_info=True)
        return 1
    return value if value is not None and 1 <= value <= 8 else 1


def oriented_size(data: bytes, size: Size) -> Size:
    """``size`` as the image appears once its EXIF orientation is applied."""
    if exif_orientation(data) in _TRANSPOSED_ORIENTATIONS:
        return Size(size.height, size.width)
    return size


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class DimensionAnalyzer:
    def __init__(self, registry: DriverCapabilityRegistry, square_tolerance: float = 0.05) -> None:
        self.registry = registry
        self.square_tolerance = square_tolerance

    def dimensions(self, data: bytes) -> Size:
        if not data:
            raise TranscodingFailure.invalid_source("", "Source image is empty")

        size = probe_header(data)
        if size is not None:
            return size

        primary = self.registry.primary()
        logger.debug("Header probe inconclusive, decoding with %s", primary.value)
        try:
            size = self.registry.driver(primary).read_size(data)
        except TranscodingFailure:
            raise
        except Exception as exc:  # noqa: BLE001 - any decoder error means unreadable input
            raise TranscodingFailure.invalid_source(
                primary.value,
                f"Unable to determine image dimensions: {exc}",
                context={"byte_size": len(data)},
            ) from exc
        if size.width <= 0 or size.height <= 0:
            raise TranscodingFailure.invalid_source(primary.value, context={"byte_size": len(data)})
        return size

    def _as_size(self, source: SizeSource) -> Size:
        if isinstance(source, Size):
            return source
        return self.dimensions(source)

    def aspect_ratio(self, source: SizeSource) -> float:
        return self._as_size(source).aspect_ratio

    def is_landscape(self, source: SizeSource) -> bool:
        return self.aspect_ratio(source) > 1

    def is_portrait(self, source: SizeSource) -> bool:
        return self.aspect_ratio(source) < 1

    def is_square(self, source: SizeSource, tolerance: Optional[float] = None) -> bool:
        limit = self.square_tolerance if tolerance is None else tolerance
        return abs(self.aspect_ratio(source) - 1) <= limit

    def orientation(self, source: SizeSource) -> str:
        size = self._as_size(source)
        if self.is_square(size):
            return "square"
        return "landscape" if self.is_landscape(size) else "portrait"

    @staticmethod
    def scale_to_fit(size: Size, max_dimension: Optional[int]) -> Size:
        """Shrink ``size`` so its longest side is ``max_dimension``; never upscale."""
        if max_dimension is None or size.fits_within(max_dimension):
            return size
        ratio = size.aspect_ratio
        if size.width > size.height:
            return Size(max_dimension, max(1, _round_half_up(max_dimension / ratio)))
        return Size(max(1, _round_half_up(max_dimension * ratio)), max_dimension)
