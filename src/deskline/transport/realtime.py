"""
Socket.IO change feed.

Connection: {baseUrl}/realtime/socket.io/ with auth={token}.
Waits for `ready` before resolving connect(). Subscriptions are kept locally
and sent with an ack; wait_subscribed() returns once the server has
acknowledged one. After every reconnect all subscriptions are sent again and
acknowledged before handlers see RECONNECTED. Handlers see DROPPED when the
socket goes away.
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Optional

import socketio
from socketio.exceptions import ConnectionError as SocketIOConnectionError

from deskline.errors import ConnectionError, SubscriptionDropped
from deskline.models.events import C2SEvent, ChangeEvent, ChangeFilter, S2CEvent
from deskline.transport.envelope import build_envelope, parse_envelope, to_change_event

logger = logging.getLogger(__name__)

SOCKETIO_PATH = "/realtime/socket.io/"

ChangeHandler = Callable[[ChangeEvent], None]


class _Subscription:
    __slots__ = ("handle", "change_filter", "handler", "established", "waiters")

    def __init__(self, handle: str, change_filter: ChangeFilter, handler: ChangeHandler):
        self.handle = handle
        self.change_filter = change_filter
        self.handler = handler
        self.established = False
        self.waiters: list[asyncio.Future] = []

    def confirm(self) -> None:
        self.established = True
        for fut in self.waiters:
            if not fut.done():
                fut.set_result(None)
        self.waiters.clear()

    def fail(self, error: Exception) -> None:
        self.established = False
        for fut in self.waiters:
            if not fut.done():
                fut.set_exception(error)
        self.waiters.clear()


class RealtimeFeed:
    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        device_id: Optional[str] = None,
        transports: Optional[list[str]] = None,
        ready_timeout: float = 15.0,
    ):
        self._base_url = base_url
        self._token = token
        self._user_id = user_id
        self._device_id = device_id or str(uuid.uuid4())
        self._transports = transports or ["websocket"]
        self._ready_timeout = ready_timeout
        self._sio: Optional[socketio.AsyncClient] = None
        self._connected = False
        self._dropped = False
        self._closing = False
        self._subscriptions: dict[str, _Subscription] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._connected and self._sio is not None and self._sio.connected

    def set_credentials(self, token: Optional[str], user_id: Optional[str]) -> None:
        self._token = token
        self._user_id = user_id

    def subscribe(self, change_filter: ChangeFilter, handler: ChangeHandler) -> str:
        handle = str(uuid.uuid4())
        sub = _Subscription(handle, change_filter, handler)
        self._subscriptions[handle] = sub
        if self.connected:
            self._spawn(self._subscribe_remote(sub))
        return handle

    def unsubscribe(self, handle: str) -> None:
        sub = self._subscriptions.pop(handle, None)
        if sub is None:
            return
        sub.fail(SubscriptionDropped("Subscription released"))
        if self.connected:
            self._emit(C2SEvent.REALTIME_UNSUBSCRIBE, handle, sub.change_filter)

    async def wait_subscribed(self, handle: str) -> None:
        """Wait for the server to acknowledge `handle`. Raises SubscriptionDropped."""
        sub = self._subscriptions.get(handle)
        if sub is None:
            raise SubscriptionDropped(f"Unknown subscription {handle}")
        if sub.established:
            return
        fut = asyncio.get_running_loop().create_future()
        sub.waiters.append(fut)
        try:
            await asyncio.wait_for(fut, timeout=self._ready_timeout)
        except asyncio.TimeoutError:
            raise SubscriptionDropped(f"Subscription not acknowledged after {self._ready_timeout}s")

    async def connect(self) -> None:
        """Connect and wait for `ready`."""
        if self._sio and self._sio.connected:
            return
        if not self._token:
            raise ConnectionError("access token required for the change feed")

        self._closing = False
        self._sio = socketio.AsyncClient(reconnection=True)
        ready_event = asyncio.Event()

        @self._sio.on(S2CEvent.READY)
        async def on_ready(*_args: Any) -> None:
            self._connected = True
            subs = list(self._subscriptions.values())
            await asyncio.gather(*(self._subscribe_remote(sub) for sub in subs))
            if self._dropped:
                self._dropped = False
                logger.info("Change feed reconnected, %d subscriptions restored", len(subs))
                self._dispatch(ChangeEvent.reconnected())
            ready_event.set()

        @self._sio.on(S2CEvent.REALTIME_CHANGE)
        async def on_change(data: Any) -> None:
            if not isinstance(data, dict):
                return
            envelope = parse_envelope(data)
            if envelope is None:
                logger.warning("Discarding malformed realtime envelope")
                return
            event = to_change_event(envelope)
            if event is None:
                return
            self._dispatch(event, only=envelope.payload.subscription_id)

        @self._sio.event
        async def disconnect(_reason: str = "") -> None:
            self._connected = False
            for sub in self._subscriptions.values():
                sub.established = False
            if self._closing:
                return
            self._dropped = True
            logger.warning("Change feed dropped: %s", _reason or "unknown reason")
            self._dispatch(ChangeEvent.dropped())

        try:
            await self._sio.connect(
                self._base_url,
                auth={"token": self._token},
                transports=self._transports,
                socketio_path=SOCKETIO_PATH,
            )
        except SocketIOConnectionError as e:
            raise ConnectionError(f"Change feed connection failed: {e}")

        try:
            await asyncio.wait_for(ready_event.wait(), timeout=self._ready_timeout)
        except asyncio.TimeoutError:
            await self._sio.disconnect()
            raise ConnectionError(f"Timed out waiting for 'ready' event after {self._ready_timeout}s")

    def _dispatch(self, event: ChangeEvent, only: Optional[str] = None) -> None:
        for sub in list(self._subscriptions.values()):
            if only and sub.handle != only:
                continue
            if not sub.change_filter.accepts(event):
                continue
            try:
                sub.handler(event)
            except Exception:
                logger.exception("Change handler failed for subscription %s", sub.handle)

    def _envelope(self, event_type: str, handle: str, change_filter: ChangeFilter) -> dict[str, Any]:
        return build_envelope(
            event_type,
            user_id=self._user_id,
            device_id=self._device_id,
            subscription_id=handle,
            table=change_filter.table,
            change_type=change_filter.event,
        )

    async def _subscribe_remote(self, sub: _Subscription) -> None:
        envelope = self._envelope(C2SEvent.REALTIME_SUBSCRIBE, sub.handle, sub.change_filter)
        try:
            await self._sio.call(  # type: ignore[union-attr]
                C2SEvent.REALTIME_SUBSCRIBE, envelope, timeout=self._ready_timeout,
            )
        except Exception as e:
            logger.warning("Subscribe %s was not acknowledged: %s", sub.handle, e)
            sub.fail(SubscriptionDropped(f"Subscribe not acknowledged: {e}"))
            return
        if sub.handle in self._subscriptions:
            sub.confirm()

    def _emit(self, event_type: str, handle: str, change_filter: ChangeFilter) -> None:
        envelope = self._envelope(event_type, handle, change_filter)

        async def _do_emit() -> None:
            try:
                await self._sio.emit(event_type, envelope)  # type: ignore[union-attr]
            except Exception as e:
                logger.error(f"Emit failed for {event_type}: {e}")

        self._spawn(_do_emit())

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def disconnect(self) -> None:
        self._closing = True
        self._connected = False
        for sub in self._subscriptions.values():
            sub.fail(SubscriptionDropped("Change feed closed"))
        if self._sio:
            await self._sio.disconnect()
            self._sio = None
