from __future__ import annotations

import logging
from typing import Dict, Optional

from ..config import DriverLimits, ResourceLimits
from ..drivers.base import LIMIT_KINDS, ImageDriver
from ..drivers.registry import DriverCapabilityRegistry
from ..errors import TranscodingFailure
from ..models import DriverId, Size
from .dimensions import DimensionAnalyzer

logger = logging.getLogger(__name__)

# Decoders hold at least one RGBA buffer of the full source in memory.
BYTES_PER_PIXEL = 4


class ResourceLimitGuard:
    """Admission control run before any backend decodes the source."""

    def __init__(self, registry: DriverCapabilityRegistry, analyzer: DimensionAnalyzer) -> None:
        self.registry = registry
        self.analyzer = analyzer

    def check(
        self,
        data: bytes,
        driver_id: DriverId,
        limits: ResourceLimits,
        known_size: Optional[Size] = None,
    ) -> Size:
        """Return the source dimensions, or raise a fatal ``TranscodingFailure``.

        ``known_size`` skips re-measuring when the caller already probed the source.
        """
        driver_name = driver_id.value
        if limits.max_source_bytes is not None and len(data) > limits.max_source_bytes:
            raise TranscodingFailure.image_too_large(
                driver_name,
                {"byte_size": len(data), "max_source_bytes": limits.max_source_bytes},
            )

        size = known_size or self.analyzer.dimensions(data)
        effective = self.effective_limits(driver_id, limits)

        exceeded = []
        if effective.max_width is not None and size.width > effective.max_width:
            exceeded.append("width")
        if effective.max_height is not None and size.height > effective.max_height:
            exceeded.append("height")
        if effective.max_area is not None and size.area > effective.max_area:
            exceeded.append("area")
        if exceeded:
            logger.warning(
                "Rejecting %s image for driver %s: %s over limit %s",
                size,
                driver_name,
                ", ".join(exceeded),
                effective.as_dict(),
            )
            raise TranscodingFailure.resource_limit_exceeded(
                driver_name,
                "dimensions",
                {
                    "image_width": size.width,
                    "image_height": size.height,
                    "image_area": size.area,
                    "exceeded": exceeded,
                    **effective.as_dict(),
                },
            )

        if limits.max_memory is not None:
            estimated = size.area * BYTES_PER_PIXEL
            if estimated > limits.max_memory:
                raise TranscodingFailure.memory_limit_exceeded(
                    driver_name,
                    {
                        "image_width": size.width,
                        "image_height": size.height,
                        "estimated_memory": estimated,
                        "max_memory": limits.max_memory,
                    },
                )
        return size

    def effective_limits(self, driver_id: DriverId, limits: ResourceLimits) -> DriverLimits:
        """Configured ceilings for ``driver_id``, tightened by the backend's own live ceilings."""
        configured = limits.for_driver(driver_id)
        if not limits.prefer_live_limits:
            return configured
        driver = self._driver_or_none(driver_id)
        if driver is None:
            return configured

        live: Dict[str, Optional[int]] = {}
        for kind in LIMIT_KINDS:
            try:
                value = driver.current_limit(kind)
            except Exception as exc:  # noqa: BLE001 - a failed probe never blocks processing
                logger.warning("Failed to read live %s limit from driver %s: %s", kind, driver_id.value, exc)
                continue
            if value is not None and value > 0:
                live[kind] = value

        return configured.tightened(
            DriverLimits(max_width=live.get("width"), max_height=live.get("height"), max_area=live.get("area"))
        )

    def _driver_or_none(self, driver_id: DriverId) -> Optional[ImageDriver]:
        try:
            return self.registry.driver(driver_id)
        except TranscodingFailure as failure:
            logger.warning("Skipping live limit probe: %s", failure)
            return None
