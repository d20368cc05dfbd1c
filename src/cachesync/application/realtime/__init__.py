"""Application realtime – change stream, table caches and the session Controller."""
from cachesync.application.realtime.controller import (
    AccessCheck,
    Controller,
    ControllerHandle,
    MutationResult,
    TableSpec,
)
from cachesync.application.realtime.events import ChangeEvent, Operation, matches_filter
from cachesync.application.realtime.stream import (
    ChangeFeedTransport,
    ChangeStreamClient,
    ConnectionStatus,
    SubscriptionHandle,
    SubscriptionState,
)
from cachesync.application.realtime.table import (
    PENDING_FIELD,
    OptimisticChange,
    Speculation,
    TableCache,
    TableCacheEntry,
    TableSnapshot,
    paginated,
)

__all__ = [
    "PENDING_FIELD",
    "AccessCheck",
    "ChangeEvent",
    "ChangeFeedTransport",
    "ChangeStreamClient",
    "ConnectionStatus",
    "Controller",
    "ControllerHandle",
    "MutationResult",
    "Operation",
    "OptimisticChange",
    "Speculation",
    "SubscriptionHandle",
    "SubscriptionState",
    "TableCache",
    "TableCacheEntry",
    "TableSnapshot",
    "TableSpec",
    "matches_filter",
    "paginated",
]
