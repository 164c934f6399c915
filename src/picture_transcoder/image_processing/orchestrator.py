"""Backend selection, admission control and fallback for a single transcode.

One call walks ``candidate_selection -> admission_check -> encode_attempt``
for every candidate driver of the requested format, then for each format of
the fallback chain, and ends in ``success`` (first success wins) or
``exhausted``. Fatal admission failures end the call immediately.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, NoReturn, Optional, Union

from ..config import ResourceLimits, TranscoderConfig
from ..drivers.base import EncodeOptions, EncodeResult
from ..drivers.registry import DriverCapabilityRegistry
from ..errors import TranscodingFailure
from ..models import AttemptRecord, DriverId, ImageFormat, Size, TranscodeResult, VariantSpec
from ..notifications import FallbackEvent, FallbackNotifier, NullNotifier
from .dimensions import DimensionAnalyzer, oriented_size
from .limits import ResourceLimitGuard

logger = logging.getLogger(__name__)


class TranscodingOrchestrator:
    def __init__(
        self,
        config: TranscoderConfig,
        registry: DriverCapabilityRegistry,
        guard: ResourceLimitGuard,
        notifier: Optional[FallbackNotifier] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.config = config
        self.registry = registry
        self.guard = guard
        self.notifier = notifier or NullNotifier()
        self._clock = clock

    def transcode(
        self,
        data: bytes,
        variant: VariantSpec,
        fmt: Union[ImageFormat, str],
        limits: Optional[ResourceLimits] = None,
        target: Optional[Size] = None,
    ) -> TranscodeResult:
        """Encode ``data`` for ``variant`` as ``fmt`` with the first backend that succeeds.

        ``target`` overrides the size otherwise derived from the variant bound.
        Raises ``TranscodingFailure``: fatal admission kinds as soon as they
        occur, ``all_drivers_failed`` once every candidate and format fallback
        has been exhausted.
        """
        requested = ImageFormat.parse(fmt)
        limits = limits or self.config.limits
        fallback = self.config.fallback
        started = self._clock()

        attempts: List[AttemptRecord] = []
        tried_formats: List[ImageFormat] = []
        source_size: Optional[Size] = None
        display_size: Optional[Size] = None
        encode_count = 0
        halted = False

        current: Optional[ImageFormat] = requested
        while current is not None and not halted:
            resolved, candidates = self.registry.resolve_format(current)
            if not candidates or resolved in tried_formats:
                break
            if resolved is not current:
                logger.info("No driver encodes %s, using fallback format %s", current.value, resolved.value)
            tried_formats.append(resolved)
            if not fallback.enabled:
                candidates = candidates[:1]

            for driver_id in candidates:
                if encode_count >= fallback.max_attempts:
                    logger.warning(
                        "Reached %s encode attempts for %s/%s, giving up",
                        fallback.max_attempts,
                        variant.name,
                        requested.value,
                    )
                    halted = True
                    break

                source_size = self._admit(data, driver_id, limits, source_size, variant, requested, attempts)
                if display_size is None:
                    display_size = self._display_size(data, source_size)
                output_size = target or DimensionAnalyzer.scale_to_fit(display_size, variant.max_dimension)
                options = EncodeOptions(
                    size=None if output_size == display_size else output_size,
                    quality=self.config.quality.get(resolved),
                    auto_orient=self.config.auto_orient,
                    blending_color=self.config.blending_color,
                )

                logger.debug(
                    "Attempting image transcoding driver=%s format=%s variant=%s size=%s",
                    driver_id.value,
                    resolved.value,
                    variant.name,
                    output_size,
                )
                encode_count += 1
                result = self._encode(driver_id, data, resolved, options)
                if result.succeeded:
                    return self._succeed(
                        result.data, driver_id, requested, resolved, output_size, attempts, variant, started
                    )

                failure = result.failure
                if failure.kind.is_fatal:
                    self._reject(failure, variant, requested, attempts)
                attempts.append(AttemptRecord(driver_id.value, resolved, failure.kind, str(failure)))
                log = logger.warning if fallback.log_attempts else logger.debug
                log(
                    "Driver %s failed for %s/%s (%s): %s",
                    driver_id.value,
                    variant.name,
                    resolved.value,
                    failure.kind.value,
                    failure,
                )
                if not failure.should_trigger_fallback:
                    logger.error(
                        "Driver %s failed with %s, which no other driver can recover from",
                        driver_id.value,
                        failure.kind.value,
                    )
                    halted = True
                    break

            if not fallback.enabled:
                break
            current = self.config.format_fallbacks.get(resolved)
            if current is not None and not halted:
                logger.warning(
                    "All drivers failed for format %s, falling back to %s", resolved.value, current.value
                )

        elapsed = self._clock() - started
        logger.error(
            "All image transcoding drivers failed for %s/%s after %.2fs: %s",
            variant.name,
            requested.value,
            elapsed,
            [attempt.to_dict() for attempt in attempts],
        )
        failure = TranscodingFailure.all_drivers_failed(
            [attempt.to_dict() for attempt in attempts],
            {
                "requested_format": requested.value,
                "tried_formats": [item.value for item in tried_formats],
                "variant": variant.name,
                "source_size": str(source_size) if source_size else None,
                "total_time": round(elapsed, 3),
            },
        )
        if len(attempts) > 1:
            failure.with_fallback(attempts[-1].driver)
        raise failure

    def _admit(
        self,
        data: bytes,
        driver_id: DriverId,
        limits: ResourceLimits,
        known: Optional[Size],
        variant: VariantSpec,
        requested: ImageFormat,
        attempts: List[AttemptRecord],
    ) -> Size:
        try:
            return self.guard.check(data, driver_id, limits, known_size=known)
        except TranscodingFailure as failure:
            self._reject(failure, variant, requested, attempts)

    def _display_size(self, data: bytes, size: Size) -> Size:
        if not self.config.auto_orient:
            return size
        return oriented_size(data, size)

    def _reject(
        self,
        failure: TranscodingFailure,
        variant: VariantSpec,
        requested: ImageFormat,
        attempts: List[AttemptRecord],
    ) -> NoReturn:
        failure.context.setdefault("requested_format", requested.value)
        failure.context.setdefault("variant", variant.name)
        if attempts:
            failure.context.setdefault("attempts", [attempt.to_dict() for attempt in attempts])
        logger.error("Transcoding vetoed: %s", failure)
        raise failure

    def _encode(self, driver_id: DriverId, data: bytes, fmt: ImageFormat, options: EncodeOptions) -> EncodeResult:
        try:
            driver = self.registry.driver(driver_id)
        except TranscodingFailure as failure:
            return EncodeResult.failed(failure)
        return driver.try_encode(data, fmt, options)

    def _succeed(
        self,
        data: bytes,
        driver_id: DriverId,
        requested: ImageFormat,
        produced: ImageFormat,
        size: Size,
        attempts: List[AttemptRecord],
        variant: VariantSpec,
        started: float,
    ) -> TranscodeResult:
        elapsed = self._clock() - started
        result = TranscodeResult(
            data=data,
            driver=driver_id.value,
            requested_format=requested,
            format=produced,
            size=size,
            attempts=tuple(attempts),
        )
        logger.info(
            "Image transcoding successful driver=%s variant=%s format=%s size=%s bytes=%s time=%.2fs fallback=%s",
            driver_id.value,
            variant.name,
            produced.value,
            size,
            len(data),
            elapsed,
            result.fallback_used,
        )
        if elapsed > self.config.slow_processing_threshold:
            logger.warning(
                "Slow image transcoding: %.2fs for %s/%s (threshold %.2fs)",
                elapsed,
                variant.name,
                produced.value,
                self.config.slow_processing_threshold,
            )
        if result.fallback_used and self.config.fallback.notify_on_fallback:
            self._notify(result)
        return result

    def _notify(self, result: TranscodeResult) -> None:
        event = FallbackEvent(
            successful_driver=result.driver,
            requested_format=result.requested_format,
            produced_format=result.format,
            failed_attempts=result.attempts,
        )
        try:
            self.notifier.notify_fallback(event)
        except Exception:  # noqa: BLE001 - notification is best effort
            logger.exception("Fallback notifier raised")
