from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence

from ..config import TranscoderConfig, load_config, parse_variants
from ..drivers.registry import DriverCapabilityRegistry
from ..errors import ConfigurationError, NoDriversAvailableError
from ..image_processing.catalog import OptimizedVariantCatalog, build_catalog
from ..jobs import JobOutcome, MaterializeJob
from ..media.cache import OptimizationCache
from ..media.repository import JsonPictureRepository
from ..media.storage import LocalStorage
from ..models import DriverId, ImageFormat
from ..notifications import CountingNotifier, WebhookNotifier

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
IMAGE_SUFFIXES = {".jpg", ".jpeg", ".jpe", ".png", ".gif", ".bmp", ".webp", ".tif", ".tiff", ".avif"}


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate optimized size/format variants of pictures")
    parser.add_argument("inputs", nargs="+", type=Path, help="Image files or directories containing images")
    parser.add_argument(
        "--output", type=Path, default=Path("output"), help="Directory to store originals, variants and the manifest"
    )
    parser.add_argument("--formats", default=None, help="Comma separated output formats, e.g. avif,webp")
    parser.add_argument(
        "--variants", default=None, help="Comma separated variants, e.g. thumbnail=256,medium=1024,full"
    )
    parser.add_argument("--drivers", default=None, help="Driver priority list, e.g. pillow,opencv,imagick")
    parser.add_argument("--workers", type=int, default=1, help="Parallel encodes per picture")
    parser.add_argument("--cache", type=Path, default=None, help="Enable the optimization cache in this directory")
    parser.add_argument("--env-file", type=Path, default=Path(".env"), help="Optional .env file with IMAGE_* settings")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report available drivers and the variants that would be generated",
    )
    parser.add_argument("--cache-stats", action="store_true", help="Print optimization cache statistics and exit")
    return parser.parse_args(argv)


def _build_config(args: argparse.Namespace) -> TranscoderConfig:
    config = load_config(env_file=args.env_file)
    changes = {}
    try:
        if args.formats:
            changes["formats"] = tuple(ImageFormat.parse(item) for item in args.formats.split(",") if item.strip())
        if args.drivers:
            changes["drivers"] = tuple(DriverId.parse(item) for item in args.drivers.split(",") if item.strip())
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc
    if args.variants:
        changes["variants"] = parse_variants(args.variants)
    if args.cache is not None:
        changes["cache"] = replace(config.cache, enabled=True, directory=args.cache)
    if args.workers < 1:
        raise ConfigurationError("--workers must be at least 1")
    return replace(config, **changes) if changes else config


def _collect_inputs(paths: Sequence[Path]) -> List[Path]:
    files: List[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(
                sorted(item for item in path.rglob("*") if item.is_file() and item.suffix.lower() in IMAGE_SUFFIXES)
            )
        elif path.is_file():
            files.append(path)
        else:
            logger.warning("Skipping missing input %s", path)
    return files


def _report_dry_run(registry: DriverCapabilityRegistry, catalog: OptimizedVariantCatalog, files: List[Path]) -> None:
    for descriptor in registry.descriptors():
        logger.info(
            "Driver %s: %s (formats: %s)",
            descriptor.id.value,
            "available" if descriptor.available else "missing",
            ", ".join(fmt.value for fmt in descriptor.formats),
        )
    for fmt in catalog.config.formats:
        resolved, candidates = registry.resolve_format(fmt)
        logger.info(
            "Format %s -> %s via %s", fmt.value, resolved.value, [driver.value for driver in candidates] or "nothing"
        )
    matrix = catalog.matrix()
    for path in files:
        existing = catalog.repository.find_by_checksum(catalog.checksum(path.read_bytes()))
        pending = catalog.missing_for(existing) if existing is not None else matrix
        logger.info(
            "%s: %s variants to generate (%s)",
            path,
            len(pending),
            ", ".join(f"{variant.name}/{fmt.value}" for variant, fmt in pending) or "none",
        )


def _process(catalog: OptimizedVariantCatalog, files: List[Path], workers: int) -> List[JobOutcome]:
    outcomes = []
    for path in files:
        try:
            source = catalog.register(path.name, path.read_bytes())
        except (OSError, ValueError) as exc:
            logger.error("Failed to register %s: %s", path, exc)
            continue
        outcome = MaterializeJob(catalog, source.id, tries=1, workers=workers).run()
        for row in outcome.report.created:
            logger.info("Stored %s/%s variant at %s", row.variant, row.format.value, row.path)
        outcomes.append(outcome)
    return outcomes


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    try:
        config = _build_config(args)
    except ConfigurationError as exc:
        logger.error("Invalid configuration: %s", exc)
        raise SystemExit(1) from exc

    if args.cache_stats:
        stats = OptimizationCache(config.cache).stats()
        for key, value in stats.items():
            logger.info("%s: %s", key, value)
        return

    files = _collect_inputs(args.inputs)
    if not files:
        logger.error("No input images found")
        raise SystemExit(1)

    registry = DriverCapabilityRegistry(config)
    try:
        registry.detect()
    except NoDriversAvailableError as exc:
        logger.error("Cannot optimize pictures: %s", exc)
        raise SystemExit(1) from exc

    counter = CountingNotifier(forward=WebhookNotifier(config.webhook_url) if config.webhook_url else None)
    storage = LocalStorage(args.output)
    repository = JsonPictureRepository(args.output / MANIFEST_NAME)
    catalog = build_catalog(config, storage, repository, notifier=counter, registry=registry)

    if args.dry_run:
        _report_dry_run(registry, catalog, files)
        return

    outcomes = _process(catalog, files, args.workers)
    if counter.count:
        logger.warning(
            "Fallback was needed for %s variants (failed drivers: %s)", counter.count, dict(counter.failed_drivers)
        )
    failed = [outcome for outcome in outcomes if not outcome.succeeded]
    if failed or len(outcomes) < len(files):
        logger.error("%s of %s pictures were not fully optimized", len(files) - len(outcomes) + len(failed), len(files))
        raise SystemExit(2)
    logger.info("Optimized %s pictures into %s", len(outcomes), args.output)


if __name__ == "__main__":
    main()
