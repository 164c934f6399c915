from __future__ import annotations

import logging
import warnings
from io import BytesIO
from typing import Dict, Optional

from PIL import Image, ImageOps, features

from ..errors import TranscodingErrorKind, TranscodingFailure
from ..models import DriverId, ImageFormat, Size
from .base import EncodeOptions, ImageDriver

logger = logging.getLogger(__name__)

_PIL_FORMATS: Dict[ImageFormat, str] = {
    ImageFormat.AVIF: "AVIF",
    ImageFormat.WEBP: "WEBP",
    ImageFormat.JPEG: "JPEG",
    ImageFormat.PNG: "PNG",
    ImageFormat.GIF: "GIF",
    ImageFormat.BMP: "BMP",
    ImageFormat.TIFF: "TIFF",
}

_LOSSY_FORMATS = (ImageFormat.JPEG, ImageFormat.WEBP, ImageFormat.AVIF)


class PillowDriver(ImageDriver):
    driver_id = DriverId.PILLOW
    failure_kind = TranscodingErrorKind.PILLOW_ENCODING_FAILED

    def is_available(self) -> bool:
        Image.init()
        return "PNG" in Image.SAVE

    def can_encode(self, fmt: ImageFormat) -> bool:
        Image.init()
        if _PIL_FORMATS[fmt] not in Image.SAVE:
            return False
        if fmt in (ImageFormat.AVIF, ImageFormat.WEBP):
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                return bool(features.check(fmt.value))
        return True

    def encode(self, data: bytes, fmt: ImageFormat, options: EncodeOptions) -> bytes:
        if not self.can_encode(fmt):
            raise TranscodingFailure.unsupported_format(fmt.value, self.name)

        with Image.open(BytesIO(data)) as opened:
            opened.seek(0)
            if options.auto_orient:
                image = ImageOps.exif_transpose(opened)
            else:
                image = opened.copy()

        if options.size is not None and image.size != (options.size.width, options.size.height):
            logger.debug("Resizing %sx%s to %s", image.width, image.height, options.size)
            image = image.resize((options.size.width, options.size.height), Image.Resampling.LANCZOS)

        image = _prepare_mode(image, fmt, options)

        params: Dict[str, object] = {}
        if options.quality is not None and fmt in _LOSSY_FORMATS:
            params["quality"] = options.quality
        if fmt is ImageFormat.JPEG:
            params["optimize"] = True

        buffer = BytesIO()
        image.save(buffer, format=_PIL_FORMATS[fmt], **params)
        return buffer.getvalue()

    def read_size(self, data: bytes) -> Size:
        with Image.open(BytesIO(data)) as image:
            image.load()
            return Size(image.width, image.height)

    def current_limit(self, kind: str) -> Optional[int]:
        # Above MAX_IMAGE_PIXELS Pillow only warns; it refuses to open past twice that.
        if kind == "area" and Image.MAX_IMAGE_PIXELS is not None:
            return 2 * Image.MAX_IMAGE_PIXELS
        return None


def _prepare_mode(image: Image.Image, fmt: ImageFormat, options: EncodeOptions) -> Image.Image:
    if image.mode in ("P", "PA"):
        image = image.convert("RGBA")
    has_alpha = image.mode in ("RGBA", "LA", "RGBa", "La")

    if not fmt.supports_alpha:
        if has_alpha:
            rgba = image.convert("RGBA")
            background = Image.new("RGB", rgba.size, options.background_rgb)
            background.paste(rgba, mask=rgba.getchannel("A"))
            return background
        if image.mode not in ("RGB", "L"):
            return image.convert("RGB")
        return image

    if image.mode not in ("RGB", "RGBA", "L", "LA"):
        return image.convert("RGBA" if has_alpha else "RGB")
    return image
