from __future__ import annotations

import hashlib
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from pathlib import PurePosixPath
from typing import Iterable, List, Optional, Tuple, Union

from ..config import TranscoderConfig
from ..drivers.registry import DriverCapabilityRegistry
from ..errors import Severity, TranscodingFailure
from ..media.cache import OptimizationCache
from ..media.repository import PictureRepository
from ..media.storage import Storage, StorageNotFound
from ..models import ImageFormat, MaterializeReport, OptimizedVariant, Size, SourceImage, VariantSpec
from ..notifications import FallbackNotifier, WebhookNotifier
from .dimensions import DimensionAnalyzer, oriented_size
from .limits import ResourceLimitGuard
from .orchestrator import TranscodingOrchestrator

logger = logging.getLogger(__name__)

Pair = Tuple[VariantSpec, ImageFormat]

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


def variant_path(source: SourceImage, variant: str, requested: ImageFormat, encoded: ImageFormat) -> str:
    """Storage path of one variant row; unique per (variant, requested format)."""
    stem = source.path.rsplit(".", 1)[0] if "." in PurePosixPath(source.path).name else source.path
    return f"{stem}_{variant}_{requested.value}.{encoded.extension}"


class OptimizedVariantCatalog:
    """Decides which (variant, format) outputs a source needs and fills the gaps.

    Materialization tolerates partial failure: each pair is independent, failed
    pairs leave no row, and calling :meth:`materialize` again only works on
    what is still missing.
    """

    def __init__(
        self,
        config: TranscoderConfig,
        orchestrator: TranscodingOrchestrator,
        analyzer: DimensionAnalyzer,
        storage: Storage,
        repository: PictureRepository,
        cache: Optional[OptimizationCache] = None,
    ) -> None:
        self.config = config
        self.orchestrator = orchestrator
        self.analyzer = analyzer
        self.storage = storage
        self.repository = repository
        self.cache = cache

    def matrix(self) -> List[Pair]:
        return [(variant, fmt) for variant in self.config.variants for fmt in self.config.formats]

    def missing_for(self, source: SourceImage) -> List[Pair]:
        existing = {(row.variant, row.format) for row in self.repository.variants_for(source.id)}
        return [(variant, fmt) for variant, fmt in self.matrix() if (variant.name, fmt) not in existing]

    def checksum(self, data: bytes) -> str:
        return hashlib.new(self.config.cache.hash_algo, data, usedforsecurity=False).hexdigest()

    def register(self, filename: str, data: bytes, source_id: Optional[str] = None) -> SourceImage:
        """Store an upload and record it; identical bytes map to the existing source."""
        if not data:
            raise ValueError("Cannot register an empty image")
        checksum = self.checksum(data)
        existing = self.repository.find_by_checksum(checksum)
        if existing is not None and source_id in (None, existing.id):
            logger.info("Source image %s already registered as %s", filename, existing.id)
            return existing

        source_id = source_id or uuid.uuid4().hex
        name = PurePosixPath(filename.replace("\\", "/")).name or "image"
        path = self.storage.put(f"{source_id}/{name}", data)
        source = SourceImage(
            id=source_id,
            filename=name,
            path=path,
            checksum=checksum,
            byte_size=len(data),
        )
        self.repository.add_source(source)
        logger.info("Registered source image %s (%s, %s bytes)", source.id, name, len(data))
        return source

    def materialize(self, source_id: str, workers: int = 1) -> MaterializeReport:
        source = self.repository.get_source(source_id)
        report = MaterializeReport(source_id=source_id)
        missing = self.missing_for(source)
        missing_keys = {(variant.name, fmt) for variant, fmt in missing}
        report.skipped = [(variant.name, fmt) for variant, fmt in self.matrix() if (variant.name, fmt) not in missing_keys]
        if not missing:
            logger.info("Source image %s already has every variant", source_id)
            return report

        try:
            data = self.storage.get(source.path)
            size = self.analyzer.dimensions(data)
            if self.config.auto_orient:
                size = oriented_size(data, size)
        except StorageNotFound:
            logger.warning("Optimization failed for %s: file %s does not exist", source_id, source.path)
            failure = TranscodingFailure.invalid_source("", "Original file does not exist", {"path": source.path})
            report.failures = [(variant.name, fmt, failure) for variant, fmt in missing]
            return report
        except TranscodingFailure as failure:
            logger.error("Optimization failed for %s: %s", source_id, failure)
            report.failures = [(variant.name, fmt, failure) for variant, fmt in missing]
            return report

        if workers > 1 and len(missing) > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="materialize") as pool:
                outcomes = list(pool.map(lambda pair: self._materialize_pair(source, data, size, *pair), missing))
        else:
            outcomes = [self._materialize_pair(source, data, size, variant, fmt) for variant, fmt in missing]

        for (variant, fmt), outcome in zip(missing, outcomes):
            if isinstance(outcome, TranscodingFailure):
                report.failures.append((variant.name, fmt, outcome))
            elif outcome is None:
                report.skipped.append((variant.name, fmt))
            else:
                report.created.append(outcome)

        if not source.dimensions_known:
            self.repository.update_source(replace(source, width=size.width, height=size.height))

        logger.info(
            "Materialized source %s: %s created, %s skipped, %s failed",
            source_id,
            len(report.created),
            len(report.skipped),
            len(report.failures),
        )
        return report

    def _materialize_pair(
        self,
        source: SourceImage,
        data: bytes,
        size: Size,
        variant: VariantSpec,
        fmt: ImageFormat,
    ) -> Union[OptimizedVariant, TranscodingFailure, None]:
        target = DimensionAnalyzer.scale_to_fit(size, variant.max_dimension)
        result = self.cache.get(source.checksum, variant.name, fmt) if self.cache is not None else None
        if result is None:
            try:
                result = self.orchestrator.transcode(data, variant, fmt, target=target)
            except TranscodingFailure as failure:
                logger.log(
                    _LOG_LEVELS[failure.severity],
                    "Variant %s/%s of %s failed: %s",
                    variant.name,
                    fmt.value,
                    source.id,
                    failure,
                )
                return failure
            if self.cache is not None:
                self.cache.put(source.checksum, variant.name, fmt, result)

        path = self.storage.put(variant_path(source, variant.name, fmt, result.format), result.data)
        record = OptimizedVariant(
            source_id=source.id,
            variant=variant.name,
            format=fmt,
            path=path,
            byte_size=len(result.data),
            width=result.size.width,
            height=result.size.height,
            encoded_format=result.format,
            driver=result.driver,
        )
        if not self.repository.add_variant(record):
            logger.debug("Variant %s/%s of %s was created concurrently", variant.name, fmt.value, source.id)
            return None
        return record

    def select(
        self,
        source: SourceImage,
        variant: str,
        preferred_formats: Iterable[Union[ImageFormat, str]],
    ) -> Union[OptimizedVariant, SourceImage, None]:
        """First existing variant among ``preferred_formats``, else the original, else ``None``."""
        existing = {row.format: row for row in self.repository.variants_for(source.id) if row.variant == variant}
        for fmt in preferred_formats:
            row = existing.get(ImageFormat.parse(fmt))
            if row is not None:
                return row
        if self.storage.exists(source.path):
            return source
        return None

    def delete(self, source_id: str) -> int:
        source = self.repository.get_source(source_id)
        removed = self.repository.delete_source(source_id)
        for row in removed:
            self.storage.delete(row.path)
        self.storage.delete(source.path)
        logger.info("Deleted source image %s and %s variants", source_id, len(removed))
        return len(removed)


def build_catalog(
    config: TranscoderConfig,
    storage: Storage,
    repository: PictureRepository,
    notifier: Optional[FallbackNotifier] = None,
    registry: Optional[DriverCapabilityRegistry] = None,
) -> OptimizedVariantCatalog:
    """Wire the default component graph around ``storage`` and ``repository``."""
    registry = registry or DriverCapabilityRegistry(config)
    analyzer = DimensionAnalyzer(registry, square_tolerance=config.square_tolerance)
    guard = ResourceLimitGuard(registry, analyzer)
    if notifier is None and config.webhook_url:
        notifier = WebhookNotifier(config.webhook_url)
    orchestrator = TranscodingOrchestrator(config, registry, guard, notifier=notifier)
    cache = OptimizationCache(config.cache) if config.cache.enabled else None
    return OptimizedVariantCatalog(config, orchestrator, analyzer, storage, repository, cache=cache)
