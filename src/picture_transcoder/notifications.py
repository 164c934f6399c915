from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from .models import AttemptRecord, ImageFormat

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FallbackEvent:
    """Emitted when a transcode only succeeded after degrading."""

    successful_driver: str
    requested_format: ImageFormat
    produced_format: ImageFormat
    failed_attempts: Tuple[AttemptRecord, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": "Fallback driver used for image optimization",
            "successful_driver": self.successful_driver,
            "requested_format": self.requested_format.value,
            "produced_format": self.produced_format.value,
            "failed_attempts": [attempt.to_dict() for attempt in self.failed_attempts],
        }


class FallbackNotifier(Protocol):
    def notify_fallback(self, event: FallbackEvent) -> None: ...


class NullNotifier:
    def notify_fallback(self, event: FallbackEvent) -> None:
        return None


class CountingNotifier:
    """Keeps per-driver counters; frequent fallback hints at a sick primary backend."""

    def __init__(self, forward: Optional[FallbackNotifier] = None) -> None:
        self._lock = threading.Lock()
        self._forward = forward
        self.events: List[FallbackEvent] = []
        self.failed_drivers: Counter[str] = Counter()

    def notify_fallback(self, event: FallbackEvent) -> None:
        with self._lock:
            self.events.append(event)
            for attempt in event.failed_attempts:
                self.failed_drivers[attempt.driver] += 1
        if self._forward is not None:
            self._forward.notify_fallback(event)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.events)


class WebhookNotifier:
    """POST fallback events as JSON. Delivery problems are logged, never raised."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        retries: int = 2,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.retries = retries
        self._client = client

    def notify_fallback(self, event: FallbackEvent) -> None:
        payload = event.to_dict()
        for attempt in range(self.retries + 1):
            try:
                if self._client is not None:
                    response = self._client.post(self.url, json=payload)
                    response.raise_for_status()
                else:
                    with httpx.Client(timeout=self.timeout) as client:
                        response = client.post(self.url, json=payload)
                        response.raise_for_status()
                logger.debug("Delivered fallback notification to %s", self.url)
                return
            except httpx.HTTPError as exc:
                logger.warning(
                    "Failed to deliver fallback notification to %s (attempt %s): %s",
                    self.url,
                    attempt + 1,
                    exc,
                )
        logger.error("Giving up on fallback notification to %s", self.url)
