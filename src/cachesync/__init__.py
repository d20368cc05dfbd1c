"""
cachesync – tag-addressed response cache invalidation and realtime table caches.

Import path convention::

    from cachesync.application.cache import ResponseCache, TagRegistry, InvalidationGateway
    from cachesync.application.realtime import ChangeStreamClient, Controller, TableCache
    from cachesync.adapters.fastapi import create_app
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
