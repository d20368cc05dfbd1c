"""HTTP adapter – outbound revalidation calls."""
from cachesync.adapters.http.client import REVALIDATION_SECRET_HEADER, RevalidationClient

__all__ = ["REVALIDATION_SECRET_HEADER", "RevalidationClient"]
