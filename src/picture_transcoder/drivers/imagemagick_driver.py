from __future__ import annotations

import logging
import re
import shutil
import subprocess
from typing import Dict, List, Optional

from ..config import DriverLimits
from ..errors import TranscodingErrorKind
from ..models import DriverId, ImageFormat, Size
from .base import EncodeOptions, ImageDriver

logger = logging.getLogger(__name__)

_RESOURCE_LINE = re.compile(r"^\s*(Area|Width|Height):\s*(\S+)\s*$", re.IGNORECASE)
_PIXEL_VALUE = re.compile(r"^(\d+(?:\.\d+)?)([KMGTPE]?)$", re.IGNORECASE)
_SI_FACTORS = {"": 1, "K": 10**3, "M": 10**6, "G": 10**9, "T": 10**12, "P": 10**15, "E": 10**18}


def parse_pixel_value(raw: str) -> Optional[int]:
    """Convert ImageMagick's ``16KP`` / ``33.554GP`` notation to a pixel count."""
    if raw.lower() == "unlimited":
        return None
    # Pixel resources carry a trailing "P" unit after the SI prefix.
    value = raw[:-1] if raw.upper().endswith("P") else raw
    match = _PIXEL_VALUE.match(value)
    if not match:
        raise ValueError(f"Unrecognised ImageMagick resource value: {raw!r}")
    number, prefix = match.groups()
    return int(round(float(number) * _SI_FACTORS[prefix.upper()]))


def parse_resource_listing(output: str) -> Dict[str, Optional[int]]:
    limits: Dict[str, Optional[int]] = {}
    for line in output.splitlines():
        match = _RESOURCE_LINE.match(line)
        if match:
            limits[match.group(1).lower()] = parse_pixel_value(match.group(2))
    return limits


class ImageMagickDriver(ImageDriver):
    """Drives the ``magick`` (or legacy ``convert``) command line tool."""

    driver_id = DriverId.IMAGICK
    failure_kind = TranscodingErrorKind.IMAGICK_ENCODING_FAILED

    def __init__(
        self,
        binary: Optional[str] = None,
        limits: Optional[DriverLimits] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.binary = binary
        self.limits = limits or DriverLimits()
        self.timeout = timeout
        self._command: Optional[List[str]] = None
        self._resources: Optional[Dict[str, Optional[int]]] = None

    def is_available(self) -> bool:
        return self._resolve_command() is not None

    def encode(self, data: bytes, fmt: ImageFormat, options: EncodeOptions) -> bytes:
        args = self._base_command() + self._limit_args() + ["-[0]"]
        if options.auto_orient:
            args.append("-auto-orient")
        if options.size is not None:
            args += ["-resize", f"{options.size.width}x{options.size.height}!"]
        if not fmt.supports_alpha:
            args += ["-background", f"#{options.blending_color}", "-alpha", "remove", "-alpha", "off"]
        if options.quality is not None:
            args += ["-quality", str(options.quality)]
        args.append(f"{fmt.value.upper()}:-")
        return self._run(args, data)

    def read_size(self, data: bytes) -> Size:
        output = self._run(self._base_command() + ["-[0]", "-format", "%w %h", "info:-"], data)
        width, height = output.decode("ascii").split()[:2]
        return Size(int(width), int(height))

    def current_limit(self, kind: str) -> Optional[int]:
        if self._resources is None:
            listing = self._run(self._base_command() + ["-list", "resource"], b"")
            self._resources = parse_resource_listing(listing.decode("utf-8", errors="replace"))
        return self._resources.get(kind)

    def _resolve_command(self) -> Optional[List[str]]:
        if self._command is not None:
            return self._command
        if self.binary:
            found = shutil.which(self.binary)
            self._command = [found] if found else None
            return self._command
        magick = shutil.which("magick")
        if magick:
            self._command = [magick]
        else:
            convert = shutil.which("convert")
            self._command = [convert] if convert else None
        return self._command

    def _base_command(self) -> List[str]:
        command = self._resolve_command()
        if command is None:
            raise FileNotFoundError("ImageMagick binary not found on PATH")
        return list(command)

    def _limit_args(self) -> List[str]:
        args: List[str] = []
        if self.limits.max_width is not None:
            args += ["-limit", "width", str(self.limits.max_width)]
        if self.limits.max_height is not None:
            args += ["-limit", "height", str(self.limits.max_height)]
        if self.limits.max_area is not None:
            args += ["-limit", "area", str(self.limits.max_area)]
        return args

    def _run(self, args: List[str], data: bytes) -> bytes:
        logger.debug("Running %s", " ".join(args))
        proc = subprocess.run(args, input=data, capture_output=True, timeout=self.timeout, check=False)
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace").strip()
            raise RuntimeError(f"{args[0]} exited with {proc.returncode}: {stderr}")
        return proc.stdout
