"""Application realtime – ChangeStreamClient.

Subscribes to the database change feed per table and filter and hands
:class:`ChangeEvent` deliveries to subscribers in receive order.

A dropped connection is never resumed in place: the client reconnects with
backoff and then asks every subscriber to resynchronise (full refetch),
because events may have been missed while it was away.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

from cachesync.application.realtime.events import ChangeEvent
from cachesync.config import CacheSyncSettings
from cachesync.kernel.errors import SubscriptionClosedError, TransportDisconnectedError, ValidationError
from cachesync.observability.logging import get_logger
from cachesync.observability.metrics import Metrics, NoopMetrics
from cachesync.resilience.retry import AdditiveJitter, ExponentialBackoff, RetryPolicy

__all__ = [
    "ChangeFeedTransport",
    "ChangeStreamClient",
    "ConnectionStatus",
    "SubscriptionHandle",
    "SubscriptionState",
]

logger = get_logger(__name__)

EventHandler = Callable[[ChangeEvent], Any]
ResyncHandler = Callable[[], Awaitable[Any]]
StatusListener = Callable[["ConnectionStatus"], Any]


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    CLOSED = "closed"


class SubscriptionState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CLOSED = "closed"


@runtime_checkable
class ChangeFeedTransport(Protocol):
    """Port: the realtime channel of the database.

    ``receive`` returns one raw message and raises
    :class:`TransportDisconnectedError` when the connection drops. Any other
    error it raises is handled like a drop.
    """

    async def open(self) -> None: ...
    async def join(self, table: str) -> None: ...
    async def leave(self, table: str) -> None: ...
    async def receive(self) -> Mapping[str, Any]: ...
    async def close(self) -> None: ...


@dataclass(eq=False)
class SubscriptionHandle:
    id: int
    table: str
    filter: Mapping[str, Any]
    on_event: EventHandler
    on_resync: ResyncHandler | None = None
    state: SubscriptionState = field(default=SubscriptionState.PENDING)

    @property
    def closed(self) -> bool:
        return self.state is SubscriptionState.CLOSED

    def close(self) -> None:
        """Stop deliveries immediately; transport teardown happens separately."""
        self.state = SubscriptionState.CLOSED

    def wants(self, event: ChangeEvent) -> bool:
        return not self.closed and event.table == self.table and event.matches(self.filter)


class ChangeStreamClient:
    """Owns one transport connection and fans its events out to subscriptions."""

    def __init__(
        self,
        transport: ChangeFeedTransport,
        *,
        reconnect_policy: RetryPolicy | None = None,
        metrics: Metrics | None = None,
    ) -> None:
        self._transport = transport
        self._reconnect_policy = reconnect_policy or RetryPolicy(
            max_attempts=5,
            backoff=ExponentialBackoff(base_delay=1.0, max_delay=30.0),
            jitter=AdditiveJitter(1.0),
            attempt_timeout=30.0,
        )
        self._subscriptions: list[SubscriptionHandle] = []
        self._joined: set[str] = set()
        self._ids = itertools.count(1)
        self._status = ConnectionStatus.DISCONNECTED
        self._status_listeners: list[StatusListener] = []
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._was_connected = False

        metrics = metrics or NoopMetrics()
        self._active_gauge = metrics.gauge("change_stream_subscriptions_active")
        self._reconnects = metrics.counter("change_stream_reconnects_total")

    @classmethod
    def from_settings(
        cls,
        transport: ChangeFeedTransport,
        settings: CacheSyncSettings,
        **kwargs: Any,
    ) -> "ChangeStreamClient":
        policy = RetryPolicy(
            max_attempts=settings.reconnect_max_attempts,
            backoff=ExponentialBackoff(base_delay=1.0, max_delay=30.0),
            jitter=AdditiveJitter(1.0),
            attempt_timeout=30.0,
        )
        return cls(transport, reconnect_policy=policy, **kwargs)

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def subscriptions(self) -> list[SubscriptionHandle]:
        return [s for s in self._subscriptions if not s.closed]

    def on_status(self, listener: StatusListener) -> Callable[[], None]:
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        table: str,
        filter: Mapping[str, Any] | None,
        on_event: EventHandler,
        on_resync: ResyncHandler | None = None,
    ) -> SubscriptionHandle:
        if self._stopping:
            raise SubscriptionClosedError("Change stream client is stopped")
        handle = SubscriptionHandle(
            id=next(self._ids),
            table=table,
            filter=dict(filter or {}),
            on_event=on_event,
            on_resync=on_resync,
        )
        self._subscriptions.append(handle)
        self._active_gauge.inc(labels={"table": table})
        if self._status is ConnectionStatus.CONNECTED:
            await self._join(table)
            if not handle.closed:
                handle.state = SubscriptionState.ACTIVE
        logger.debug("change_stream_subscribed", table=table, subscription=handle.id, state=handle.state.value)
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Close *handle* at once, then leave the table if nobody else needs it."""
        handle.close()
        if handle in self._subscriptions:
            self._subscriptions.remove(handle)
            self._active_gauge.dec(labels={"table": handle.table})
        if handle.table in self._joined and not any(s.table == handle.table for s in self.subscriptions):
            self._joined.discard(handle.table)
            if self._status is ConnectionStatus.CONNECTED:
                await self._transport.leave(handle.table)
        logger.debug("change_stream_unsubscribed", table=handle.table, subscription=handle.id)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect (with retry) and start the receive loop.

        This is also how to recover once a reconnect has given up (status
        ``DISCONNECTED`` with no receive loop running): call ``start`` again,
        e.g. when the network comes back. Every start after the first
        connection resynchronises the subscribers, since events may have been
        missed in between.
        """
        if self._task is not None and not self._task.done():
            return
        self._stopping = False
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            await self._reconnect_policy.execute_async(self._connect, operation="change_stream_connect")
        except Exception:
            self._set_status(ConnectionStatus.DISCONNECTED)
            raise
        self._set_status(ConnectionStatus.CONNECTED)
        if self._was_connected:
            await self._resync()
        self._was_connected = True
        self._task = asyncio.create_task(self._receive_loop(), name="change-stream-receive")

    async def stop(self) -> None:
        self._stopping = True
        for handle in self._subscriptions:
            handle.close()
            self._active_gauge.dec(labels={"table": handle.table})
        self._subscriptions.clear()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._joined.clear()
        await self._transport.close()
        self._set_status(ConnectionStatus.CLOSED)

    async def _connect(self) -> None:
        await self._transport.open()
        self._joined.clear()
        for table in dict.fromkeys(s.table for s in self.subscriptions):
            await self._join(table)
        for handle in self.subscriptions:
            handle.state = SubscriptionState.ACTIVE

    async def _join(self, table: str) -> None:
        if table in self._joined:
            return
        await self._transport.join(table)
        self._joined.add(table)

    # ------------------------------------------------------------------
    # Receive loop
    # ------------------------------------------------------------------

    async def _receive_loop(self) -> None:
        while not self._stopping:
            try:
                message = await self._transport.receive()
            except Exception as exc:
                # any receive failure leaves the connection in an unknown state
                if self._stopping:
                    return
                if not await self._reconnect(exc):
                    return
                continue
            await self.dispatch(message)

    async def dispatch(self, message: Any) -> int:
        """Deliver one raw feed message; return the number of subscribers reached."""
        try:
            event = ChangeEvent.from_payload(message)
        except ValidationError as exc:
            logger.warning("change_stream_malformed_message", error=exc.message)
            return 0
        delivered = 0
        for handle in list(self._subscriptions):
            # re-checked per handle: an earlier handler may have closed it
            if not handle.wants(event):
                continue
            try:
                result = handle.on_event(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "change_stream_handler_failed",
                    table=event.table,
                    subscription=handle.id,
                    commit_order=event.commit_order,
                )
                continue
            delivered += 1
        return delivered

    async def _reconnect(self, cause: Exception) -> bool:
        if isinstance(cause, TransportDisconnectedError):
            logger.warning("change_stream_disconnected", error=cause.message)
        else:
            logger.warning("change_stream_receive_failed", error=repr(cause))
        self._set_status(ConnectionStatus.DISCONNECTED)
        for handle in self.subscriptions:
            handle.state = SubscriptionState.PENDING
        self._reconnects.add()

        self._set_status(ConnectionStatus.CONNECTING)
        try:
            await self._reconnect_policy.execute_async(self._connect, operation="change_stream_reconnect")
        except Exception as exc:
            logger.error("change_stream_reconnect_failed", error=repr(exc))
            self._set_status(ConnectionStatus.DISCONNECTED)
            return False
        self._set_status(ConnectionStatus.CONNECTED)
        await self._resync()
        return True

    async def _resync(self) -> None:
        for handle in self.subscriptions:
            if handle.on_resync is None:
                continue
            try:
                await handle.on_resync()
            except Exception:
                logger.exception("change_stream_resync_failed", table=handle.table, subscription=handle.id)

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        logger.info("change_stream_status", status=status.value)
        for listener in list(self._status_listeners):
            listener(status)
