from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

import numpy as np

from ..errors import TranscodingErrorKind, TranscodingFailure
from ..models import DriverId, ImageFormat, Size
from .base import EncodeOptions, ImageDriver

try:
    import cv2
except ImportError:  # pragma: no cover - reported through is_available()
    cv2 = None

logger = logging.getLogger(__name__)

_EXTENSIONS: Dict[ImageFormat, str] = {
    ImageFormat.WEBP: ".webp",
    ImageFormat.JPEG: ".jpg",
    ImageFormat.PNG: ".png",
    ImageFormat.BMP: ".bmp",
    ImageFormat.TIFF: ".tiff",
}

# Defaults compiled into OpenCV's imgcodecs when the env vars are unset.
_ENV_LIMITS = {
    "area": ("CV_IO_MAX_IMAGE_PIXELS", 1 << 30),
    "width": ("CV_IO_MAX_IMAGE_WIDTH", 1 << 20),
    "height": ("CV_IO_MAX_IMAGE_HEIGHT", 1 << 20),
}


class OpenCVDriver(ImageDriver):
    driver_id = DriverId.OPENCV
    failure_kind = TranscodingErrorKind.OPENCV_ENCODING_FAILED

    def is_available(self) -> bool:
        return cv2 is not None

    def encode(self, data: bytes, fmt: ImageFormat, options: EncodeOptions) -> bytes:
        extension = _EXTENSIONS.get(fmt)
        if extension is None:
            raise TranscodingFailure.unsupported_format(fmt.value, self.name)

        image = self._decode(data, options.auto_orient)
        if image.dtype != np.uint8:
            image = (image / 257).astype(np.uint8) if image.dtype == np.uint16 else image.astype(np.uint8)

        if options.size is not None:
            height, width = image.shape[:2]
            if (width, height) != (options.size.width, options.size.height):
                shrinking = options.size.width < width
                interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_CUBIC
                image = cv2.resize(image, (options.size.width, options.size.height), interpolation=interpolation)

        if image.ndim == 3 and image.shape[2] == 4 and not fmt.supports_alpha:
            image = _flatten_alpha(image, options.background_rgb)

        ok, buffer = cv2.imencode(extension, image, self._params(fmt, options))
        if not ok:
            raise RuntimeError(f"cv2.imencode refused to write {fmt.value}")
        return buffer.tobytes()

    def read_size(self, data: bytes) -> Size:
        image = self._decode(data, auto_orient=False)
        height, width = image.shape[:2]
        return Size(int(width), int(height))

    def current_limit(self, kind: str) -> Optional[int]:
        if kind not in _ENV_LIMITS:
            return None
        name, default = _ENV_LIMITS[kind]
        raw = os.environ.get(name)
        return int(raw) if raw else default

    def _decode(self, data: bytes, auto_orient: bool) -> np.ndarray:
        buffer = np.frombuffer(data, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
        if image is None:
            raise ValueError("OpenCV could not decode the source image")
        # IMREAD_UNCHANGED ignores EXIF orientation; re-decode opaque images to honour it.
        if auto_orient and (image.ndim == 2 or image.shape[2] == 3):
            oriented = cv2.imdecode(buffer, cv2.IMREAD_ANYCOLOR | cv2.IMREAD_ANYDEPTH)
            if oriented is not None:
                image = oriented
        return image

    @staticmethod
    def _params(fmt: ImageFormat, options: EncodeOptions) -> List[int]:
        if options.quality is None:
            return []
        if fmt is ImageFormat.JPEG:
            return [cv2.IMWRITE_JPEG_QUALITY, options.quality]
        if fmt is ImageFormat.WEBP:
            return [cv2.IMWRITE_WEBP_QUALITY, options.quality]
        return []


def _flatten_alpha(image: np.ndarray, background_rgb: tuple[int, int, int]) -> np.ndarray:
    color = image[:, :, :3].astype(np.float32)
    alpha = image[:, :, 3:4].astype(np.float32) / 255.0
    background = np.array(background_rgb[::-1], dtype=np.float32)
    blended = color * alpha + background * (1.0 - alpha)
    return np.clip(np.round(blended), 0, 255).astype(np.uint8)
