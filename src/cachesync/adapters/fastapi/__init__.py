"""FastAPI adapter – invalidation endpoints, exception mapper, correlation middleware."""
from cachesync.adapters.fastapi.exception_mapper import FastAPIExceptionMapper
from cachesync.adapters.fastapi.middleware import FastAPICorrelationIdMiddleware
from cachesync.adapters.fastapi.routers import (
    CACHE_INVALIDATION_SECRET_HEADER,
    REVALIDATION_SECRET_HEADER,
    FastAPIInvalidationRouter,
    create_app,
)

__all__ = [
    "CACHE_INVALIDATION_SECRET_HEADER",
    "REVALIDATION_SECRET_HEADER",
    "FastAPICorrelationIdMiddleware",
    "FastAPIExceptionMapper",
    "FastAPIInvalidationRouter",
    "create_app",
]
