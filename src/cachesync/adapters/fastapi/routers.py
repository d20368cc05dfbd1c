"""FastAPI adapter – invalidation and revalidation endpoints.

``POST /api/cache/invalidate``
    header ``x-cache-invalidation-secret``, body ``{"tags": [...]}``
``POST /api/revalidate``
    header ``x-revalidation-secret``, body ``{"tag": "..."}``

Both answer ``200`` with the invalidation report, or ``400``/``401``/``500``
through :class:`FastAPIExceptionMapper`.
"""
import json
from typing import Any

from cachesync.application.cache.invalidation import InvalidationGateway
from cachesync.kernel.errors import ValidationError

CACHE_INVALIDATION_SECRET_HEADER = "x-cache-invalidation-secret"
REVALIDATION_SECRET_HEADER = "x-revalidation-secret"


def _require_fastapi() -> None:
    try:
        import fastapi  # noqa: F401
    except ImportError as exc:
        raise ImportError(
            "Install 'cachesync[fastapi]' to use the FastAPI adapter"
        ) from exc


async def _json_body(request: Any) -> Any:
    raw = await request.body()
    if not raw:
        raise ValidationError("Request body is required", errors=[{"field": "body", "message": "empty"}])
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError(
            "Request body is not valid JSON",
            errors=[{"field": "body", "message": "invalid JSON"}],
        ) from None


def FastAPIInvalidationRouter(
    gateway: InvalidationGateway,
    invalidate_path: str = "/api/cache/invalidate",
    revalidate_path: str = "/api/revalidate",
    tags: list[str] | None = None,
) -> Any:
    """Return a router exposing *gateway* over HTTP.

    The body is read raw rather than through a pydantic model so that every
    malformed payload goes through the gateway's own validation, after the
    secret has been checked.
    """
    _require_fastapi()
    from fastapi import APIRouter, Request  # type: ignore[import-untyped]

    router = APIRouter(tags=tags or ["cache"])

    @router.post(invalidate_path)
    async def invalidate(request: Request) -> dict[str, Any]:
        """Purge every cache entry tagged with any of the given tags."""
        secret = request.headers.get(CACHE_INVALIDATION_SECRET_HEADER)
        gateway.authenticate_invalidation(secret)
        tags = gateway.parse_tags(await _json_body(request))
        report = await gateway.purge(tags, endpoint="invalidate")
        return report.to_dict()

    @router.post(revalidate_path)
    async def revalidate(request: Request) -> dict[str, Any]:
        """Purge every cache entry tagged with one tag."""
        secret = request.headers.get(REVALIDATION_SECRET_HEADER)
        gateway.authenticate_revalidation(secret)
        tag = gateway.parse_single_tag(await _json_body(request))
        report = await gateway.purge(tag, endpoint="revalidate")
        return report.to_dict()

    return router


def create_app(gateway: InvalidationGateway, **kwargs: Any) -> Any:
    """A ready FastAPI app: invalidation router, error mapping and correlation ids."""
    _require_fastapi()
    from fastapi import FastAPI  # type: ignore[import-untyped]

    from cachesync.adapters.fastapi.exception_mapper import FastAPIExceptionMapper
    from cachesync.adapters.fastapi.middleware import FastAPICorrelationIdMiddleware

    app = FastAPI(**kwargs)
    app.include_router(FastAPIInvalidationRouter(gateway))
    FastAPIExceptionMapper().register(app)
    app.add_middleware(FastAPICorrelationIdMiddleware)
    return app


__all__ = [
    "CACHE_INVALIDATION_SECRET_HEADER",
    "REVALIDATION_SECRET_HEADER",
    "FastAPIInvalidationRouter",
    "create_app",
]
