from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from ..config import TranscoderConfig
from ..errors import ConfigurationError, TranscodingFailure
from ..models import DriverId, ImageFormat
from .base import ImageDriver
from .imagemagick_driver import ImageMagickDriver
from .opencv_driver import OpenCVDriver
from .pillow_driver import PillowDriver

logger = logging.getLogger(__name__)

DriverFactory = Callable[[TranscoderConfig], ImageDriver]


def _build_imagemagick(config: TranscoderConfig) -> ImageDriver:
    return ImageMagickDriver(
        binary=config.imagemagick_binary,
        limits=config.limits.for_driver(DriverId.IMAGICK),
        timeout=config.subprocess_timeout,
    )


DRIVER_FACTORIES: Mapping[DriverId, DriverFactory] = {
    DriverId.PILLOW: lambda config: PillowDriver(),
    DriverId.OPENCV: lambda config: OpenCVDriver(),
    DriverId.IMAGICK: _build_imagemagick,
}


@dataclass(frozen=True, slots=True)
class DriverDescriptor:
    id: DriverId
    formats: Tuple[ImageFormat, ...]
    available: bool


class DriverCapabilityRegistry:
    """Knows which backends exist on this host and which formats each can emit.

    Detection runs once, on first use, under a lock; afterwards the registry is
    read-only and may be shared between threads.
    """

    def __init__(
        self,
        config: TranscoderConfig,
        factories: Optional[Mapping[DriverId, DriverFactory]] = None,
    ) -> None:
        self.config = config
        self._factories: Dict[DriverId, DriverFactory] = dict(DRIVER_FACTORIES if factories is None else factories)
        self._lock = threading.Lock()
        self._detected: Optional[Tuple[DriverId, ...]] = None
        self._availability: Dict[DriverId, bool] = {}
        self._instances: Dict[DriverId, ImageDriver] = {}

    def detect(self) -> Tuple[DriverId, ...]:
        detected = self._ensure_probed()
        if not detected:
            raise TranscodingFailure.no_drivers_available(driver.value for driver in self.config.drivers)
        return detected

    def _ensure_probed(self) -> Tuple[DriverId, ...]:
        if self._detected is None:
            with self._lock:
                if self._detected is None:
                    self._detected = self._probe()
        return self._detected

    def _probe(self) -> Tuple[DriverId, ...]:
        available: List[DriverId] = []
        for driver_id in self.config.drivers:
            factory = self._factories.get(driver_id)
            if factory is None:
                logger.warning("No implementation registered for image driver %s", driver_id.value)
                self._availability[driver_id] = False
                continue
            instance = factory(self.config)
            try:
                present = instance.is_available()
            except Exception:  # noqa: BLE001 - a broken probe means the driver is absent
                logger.warning("Availability probe for driver %s failed", driver_id.value, exc_info=True)
                present = False
            self._availability[driver_id] = present
            if present:
                self._instances[driver_id] = instance
                available.append(driver_id)

        if available:
            logger.info("Available image drivers detected: %s", [driver.value for driver in available])
        else:
            logger.critical(
                "No image processing drivers available (configured: %s)",
                [driver.value for driver in self.config.drivers],
            )
        return tuple(available)

    def driver(self, driver_id: DriverId) -> ImageDriver:
        self.detect()
        instance = self._instances.get(driver_id)
        if instance is None:
            raise TranscodingFailure.driver_not_available(driver_id.value)
        return instance

    def supports_format(self, driver_id: DriverId, fmt: ImageFormat) -> bool:
        return fmt in self.config.supported_formats(driver_id)

    def candidates_for_format(self, fmt: ImageFormat) -> List[DriverId]:
        return self.resolve_format(fmt)[1]

    def resolve_format(self, fmt: ImageFormat) -> Tuple[ImageFormat, List[DriverId]]:
        """Return the first format along the fallback chain that some driver supports.

        The drivers are listed in priority order. When the chain ends without a
        match the last format is returned with an empty list.
        """
        detected = self.detect()
        visited: List[ImageFormat] = []
        current = fmt
        while True:
            if current in visited:
                chain = " -> ".join(item.value for item in visited + [current])
                raise ConfigurationError(f"Format fallback map contains a cycle: {chain}")
            visited.append(current)
            candidates = [driver for driver in detected if self.supports_format(driver, current)]
            if candidates:
                return current, candidates
            fallback = self.config.format_fallbacks.get(current)
            if fallback is None:
                return current, []
            logger.info("Format %s not supported, trying fallback format %s", current.value, fallback.value)
            current = fallback

    def primary(self) -> DriverId:
        return self.detect()[0]

    def descriptors(self) -> List[DriverDescriptor]:
        self._ensure_probed()
        return [
            DriverDescriptor(
                id=driver_id,
                formats=self.config.supported_formats(driver_id),
                available=self._availability.get(driver_id, False),
            )
            for driver_id in self.config.drivers
        ]

    def is_fallback_available(self) -> bool:
        return self.config.fallback.enabled and len(self.detect()) > 1
