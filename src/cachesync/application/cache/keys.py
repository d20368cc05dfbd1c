"""Application cache – CacheKey and CacheTag builders."""
from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from cachesync.kernel.errors import ValidationError

__all__ = ["MAX_TAG_LENGTH", "TAG_PATTERN", "CacheKey", "CacheTag"]

MAX_TAG_LENGTH = 200
TAG_PATTERN = re.compile(r"[A-Za-z0-9_:\-]+")


class CacheKey:
    """Factory for deterministic cache key strings."""

    @staticmethod
    def for_resource(resource_type: str, resource_id: str | int) -> str:
        return f"{resource_type}:{resource_id}"

    @staticmethod
    def for_query(query_type: str, **kwargs: object) -> str:
        # sorted JSON, first 16 hex chars of SHA-256
        canonical = json.dumps(kwargs, sort_keys=True, default=str)
        digest = hashlib.sha256(canonical.encode()).hexdigest()[:16]
        return f"query:{query_type}:{digest}"


class CacheTag:
    """Builder and validator for cache tags such as ``course:5:staff``."""

    @staticmethod
    def for_scope(*parts: str | int) -> str:
        tag = ":".join(str(p) for p in parts)
        CacheTag.validate(tag)
        return tag

    @staticmethod
    def is_valid(tag: Any) -> bool:
        return (
            isinstance(tag, str)
            and 0 < len(tag) <= MAX_TAG_LENGTH
            and TAG_PATTERN.fullmatch(tag) is not None
        )

    @staticmethod
    def validate(tag: Any, *, field: str = "tag") -> str:
        """Return *tag* unchanged or raise :class:`ValidationError`."""
        if not isinstance(tag, str):
            reason = "must be a string"
        elif not tag:
            reason = "must not be empty"
        elif len(tag) > MAX_TAG_LENGTH:
            reason = f"must be at most {MAX_TAG_LENGTH} characters"
        elif TAG_PATTERN.fullmatch(tag) is None:
            reason = "may only contain letters, digits, '_', ':' and '-'"
        else:
            return tag
        raise ValidationError(
            f"Invalid cache tag: {field} {reason}",
            errors=[{"field": field, "message": reason}],
        )
