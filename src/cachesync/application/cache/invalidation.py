"""Application cache – InvalidationGateway.

Authenticates and validates inbound invalidation requests (database
triggers, background jobs, webhooks) and purges the covered entries of a
:class:`~cachesync.application.cache.response.ResponseCache`.

Two request shapes share one purge path:

* multi-tag: ``{"tags": [...]}`` checked against the cache-invalidation secret;
* single-tag revalidation: ``{"tag": "..."}`` checked against the
  revalidation secret.

The gateway keeps no state between calls. Upstream delivery is
at-least-once, so a repeated request purges nothing and still succeeds.
"""
from __future__ import annotations

import hmac
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from cachesync.application.cache.keys import CacheTag
from cachesync.application.cache.response import ResponseCache
from cachesync.config import CacheSyncSettings
from cachesync.kernel.errors import (
    AuthenticationError,
    ConfigurationError,
    InfrastructureError,
    ValidationError,
)
from cachesync.kernel.time import Clock, SystemClock
from cachesync.observability.logging import get_logger
from cachesync.observability.metrics import Metrics, NoopMetrics

__all__ = [
    "InvalidationGateway",
    "InvalidationReport",
    "InvalidationRequest",
    "TagResult",
]

logger = get_logger(__name__)


@dataclass(frozen=True)
class InvalidationRequest:
    """A validated request; transient, never persisted."""

    tags: tuple[str, ...]
    received_at: datetime


@dataclass(frozen=True)
class TagResult:
    tag: str
    success: bool
    purged: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"tag": self.tag, "success": self.success, "purged": self.purged}
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class InvalidationReport:
    """Per-tag outcome of one request, so callers can retry selectively."""

    results: tuple[TagResult, ...] = field(default_factory=tuple)

    @property
    def invalidated(self) -> int:
        """Number of cache entries actually purged by this request."""
        return sum(r.purged for r in self.results)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def success(self) -> bool:
        return self.failed == 0

    @property
    def failed_tags(self) -> list[str]:
        return [r.tag for r in self.results if not r.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "invalidated": self.invalidated,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


class InvalidationGateway:
    """Entry point for trigger-driven cache invalidation."""

    def __init__(
        self,
        cache: ResponseCache,
        *,
        secret: str | None,
        revalidation_secret: str | None = None,
        clock: Clock | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self._cache = cache
        self._secret = secret
        self._revalidation_secret = revalidation_secret
        self._clock = clock or SystemClock()

        metrics = metrics or NoopMetrics()
        self._requests = metrics.counter("cache_invalidation_requests_total")
        self._purged = metrics.counter("cache_invalidation_entries_purged_total")
        self._failed = metrics.counter("cache_invalidation_tags_failed_total")

    @classmethod
    def from_settings(
        cls,
        cache: ResponseCache,
        settings: CacheSyncSettings,
        **kwargs: Any,
    ) -> "InvalidationGateway":
        return cls(
            cache,
            secret=settings.cache_invalidation_secret,
            revalidation_secret=settings.revalidation_secret,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def invalidate(self, presented_secret: str | None, payload: Any) -> InvalidationReport:
        """Handle ``{"tags": [...]}`` authenticated by the cache-invalidation secret."""
        self.authenticate_invalidation(presented_secret)
        request = self.parse_tags(payload)
        return await self.purge(request, endpoint="invalidate")

    async def revalidate(self, presented_secret: str | None, payload: Any) -> InvalidationReport:
        """Handle ``{"tag": "..."}`` authenticated by the revalidation secret."""
        self.authenticate_revalidation(presented_secret)
        request = self.parse_single_tag(payload)
        return await self.purge(request, endpoint="revalidate")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def authenticate_invalidation(self, presented_secret: str | None) -> None:
        self._authenticate(presented_secret, self._secret, endpoint="invalidate")

    def authenticate_revalidation(self, presented_secret: str | None) -> None:
        self._authenticate(presented_secret, self._revalidation_secret, endpoint="revalidate")

    def _authenticate(self, presented: str | None, expected: str | None, *, endpoint: str) -> None:
        if not expected:
            logger.critical("cache_invalidation_secret_missing", endpoint=endpoint)
            raise ConfigurationError(
                "Invalidation endpoint is not configured",
                detail={"endpoint": endpoint},
            )
        if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
            logger.warning("cache_invalidation_unauthorized", endpoint=endpoint, secret_present=bool(presented))
            raise AuthenticationError("Invalid or missing invalidation secret")

    def parse_tags(self, payload: Any) -> InvalidationRequest:
        if not isinstance(payload, dict):
            raise self._rejected("Request body must be a JSON object", field="body")
        tags = payload.get("tags")
        if not isinstance(tags, list):
            raise self._rejected("'tags' must be an array of strings", field="tags")
        if not tags:
            raise self._rejected("'tags' must not be empty", field="tags")
        for index, tag in enumerate(tags):
            try:
                CacheTag.validate(tag, field=f"tags[{index}]")
            except ValidationError as exc:
                logger.debug("cache_invalidation_rejected", reason=exc.message)
                raise
        # duplicates within one request purge once
        return InvalidationRequest(tags=tuple(dict.fromkeys(tags)), received_at=self._clock.now())

    def parse_single_tag(self, payload: Any) -> InvalidationRequest:
        if not isinstance(payload, dict):
            raise self._rejected("Request body must be a JSON object", field="body")
        if "tag" not in payload:
            raise self._rejected("'tag' is required", field="tag")
        try:
            tag = CacheTag.validate(payload["tag"], field="tag")
        except ValidationError as exc:
            logger.debug("cache_invalidation_rejected", reason=exc.message)
            raise
        return InvalidationRequest(tags=(tag,), received_at=self._clock.now())

    async def purge(self, request: InvalidationRequest, *, endpoint: str = "invalidate") -> InvalidationReport:
        """Purge each tag independently; a failing tag does not stop the rest."""
        results: list[TagResult] = []
        for tag in request.tags:
            try:
                keys = await self._cache.purge_tag(tag)
            except InfrastructureError as exc:
                logger.warning("cache_invalidation_tag_failed", tag=tag, error=exc.message, code=exc.code)
                results.append(TagResult(tag=tag, success=False, error=exc.message))
                continue
            results.append(TagResult(tag=tag, success=True, purged=len(keys)))

        report = InvalidationReport(results=tuple(results))
        self._requests.add(labels={"endpoint": endpoint})
        self._purged.add(report.invalidated)
        self._failed.add(report.failed)
        logger.info(
            "cache_invalidation",
            endpoint=endpoint,
            requested=len(request.tags),
            purged=report.invalidated,
            failed=report.failed,
        )
        return report

    @staticmethod
    def _rejected(message: str, *, field: str) -> ValidationError:
        logger.debug("cache_invalidation_rejected", reason=message)
        return ValidationError(message, errors=[{"field": field, "message": message}])
