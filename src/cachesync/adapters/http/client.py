"""HTTP adapter – RevalidationClient.

Calls the revalidate-by-tag endpoint of a deployment, the way the debounced
invalidation worker does: ``POST <base_url>/api/revalidate`` with header
``x-revalidation-secret`` and body ``{"tag": "..."}``.
"""
from __future__ import annotations

from typing import Any

import tenacity as ten

from cachesync.application.cache.keys import CacheTag
from cachesync.config import CacheSyncSettings
from cachesync.kernel.errors import ConfigurationError, UpstreamError
from cachesync.observability.correlation import CorrelationContext
from cachesync.observability.logging import get_logger
from cachesync.resilience.retry import TenacityRetryPolicy

__all__ = ["REVALIDATION_SECRET_HEADER", "RevalidationClient"]

logger = get_logger(__name__)

REVALIDATION_SECRET_HEADER = "x-revalidation-secret"


def _require_httpx() -> Any:
    try:
        import httpx  # type: ignore[import-untyped]
        return httpx
    except ImportError as exc:
        raise ImportError("Install 'cachesync[httpx]' to use the HTTP adapter") from exc


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.retryable


class RevalidationClient:
    """Async httpx client for the revalidation endpoint.

    Transport errors, timeouts and 5xx answers are retried with tenacity;
    4xx answers are not. Every failure surfaces as :class:`UpstreamError`.
    """

    def __init__(
        self,
        base_url: str,
        secret: str,
        *,
        timeout: float = 10.0,
        max_attempts: int = 3,
        path: str = "/api/revalidate",
        retry_policy: TenacityRetryPolicy | None = None,
        **kwargs: Any,
    ) -> None:
        if not base_url or not secret:
            raise ConfigurationError("RevalidationClient needs a base URL and a revalidation secret")
        httpx = _require_httpx()
        self._secret = secret
        self._path = path
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout, **kwargs)
        self._retry = retry_policy or TenacityRetryPolicy(
            max_attempts=max_attempts,
            retry=ten.retry_if_exception(_is_retryable),
        )

    @classmethod
    def from_settings(cls, settings: CacheSyncSettings, **kwargs: Any) -> "RevalidationClient":
        return cls(
            settings.revalidation_base_url,
            settings.revalidation_secret or "",
            timeout=settings.http_timeout_seconds,
            max_attempts=settings.http_max_attempts,
            **kwargs,
        )

    async def __aenter__(self) -> "RevalidationClient":
        await self._client.__aenter__()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self._client.__aexit__(*args)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def revalidate(self, tag: str) -> dict[str, Any]:
        """Ask the deployment to drop everything tagged *tag*; return its JSON answer."""
        CacheTag.validate(tag)
        body = await self._retry.execute_async(lambda: self._post(tag), operation="revalidate")
        logger.info("revalidation_sent", tag=tag)
        return body

    async def _post(self, tag: str) -> dict[str, Any]:
        httpx = _require_httpx()
        headers = {REVALIDATION_SECRET_HEADER: self._secret}
        ctx = CorrelationContext.get()
        if ctx is not None:
            headers["X-Correlation-ID"] = ctx.correlation_id
        try:
            response = await self._client.post(self._path, json={"tag": tag}, headers=headers)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise UpstreamError("revalidation", f"Revalidation of '{tag}' timed out", cause=exc) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("revalidation_rejected", tag=tag, status_code=status)
            raise UpstreamError(
                "revalidation",
                f"HTTP {status} revalidating '{tag}'",
                status_code=status,
                cause=exc,
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError("revalidation", str(exc) or type(exc).__name__, cause=exc) from exc
        return self._check_body(tag, response)

    @staticmethod
    def _check_body(tag: str, response: Any) -> dict[str, Any]:
        """Raise a retryable error when a 2xx answer reports failed purges."""
        try:
            body = response.json()
        except ValueError:
            return {}
        if not isinstance(body, dict):
            return {}
        if body.get("success") is not False:
            return body
        failed = [
            result.get("tag")
            for result in body.get("results") or []
            if isinstance(result, dict) and result.get("success") is False
        ]
        logger.warning("revalidation_incomplete", tag=tag, failed_tags=failed)
        raise UpstreamError(
            "revalidation",
            f"Revalidation of '{tag}' reported failed purges",
            detail={"failed_tags": failed},
        )
