"""
Message stream synchronizer.

One ConversationView per selected counterpart. Opening a view:

1. subscribes to chat_messages inserts (the feed is not filtered by
   counterpart, so every event is re-checked with routing.matches);
2. starts the view's writer task, the only code that mutates its messages;
3. has the writer wait until the feed confirms the subscription, then fetch
   history, ascending by (created_at, id).

Feed events that arrive while history is in flight wait in the writer queue
and are merged after it. Merging is by id, so an event that is also in the
fetched history is kept once. Messages are inserted at their sorted position
and existing entries never move.

The feed restores its subscriptions before it reports RECONNECTED; the writer
then refetches history, recovering whatever was inserted while the feed was
down.
"""

import asyncio
import bisect
import logging
from datetime import datetime
from typing import Any, AsyncGenerator, Callable, Optional

from pydantic import ValidationError

from deskline import routing
from deskline.errors import HistoryFetchFailed, SubscriptionDropped
from deskline.models.events import ChangeEvent, ChangeFilter, ChangeType
from deskline.models.identity import Role
from deskline.models.message import Message, MessageFilter
from deskline.ports import ChangeFeed, MessageStore

logger = logging.getLogger(__name__)

InsertHook = Callable[[Message], None]


class _Op:
    __slots__ = ("kind", "message", "strict", "done")

    def __init__(
        self,
        kind: str,
        message: Optional[Message] = None,
        strict: bool = False,
        done: Optional[asyncio.Future] = None,
    ):
        self.kind = kind
        self.message = message
        self.strict = strict
        self.done = done

    def resolve(self, error: Optional[BaseException] = None) -> None:
        if self.done is None or self.done.done():
            return
        if error is not None and self.strict:
            self.done.set_exception(error)
        else:
            self.done.set_result(None)


class ConversationView:
    """Ordered, duplicate-free messages of one conversation."""

    def __init__(
        self,
        viewer_id: str,
        viewer_role: Role,
        counterpart_id: Optional[str],
        message_filter: MessageFilter,
    ):
        self.viewer_id = viewer_id
        self.viewer_role = viewer_role
        self.counterpart_id = counterpart_id
        self.message_filter = message_filter
        self.history_error: Optional[HistoryFetchFailed] = None
        self.feed_error: Optional[SubscriptionDropped] = None
        self.live = True
        self.closed = False
        self._messages: list[Message] = []
        self._keys: list[tuple[datetime, str]] = []
        self._ids: set[str] = set()
        self._ops: asyncio.Queue[_Op] = asyncio.Queue()
        self._listeners: list[asyncio.Queue[Optional[Message]]] = []
        self._writer: Optional[asyncio.Task] = None
        self._handle: Any = None

    def __repr__(self) -> str:
        return (
            f"ConversationView(viewer={self.viewer_id!r}, counterpart={self.counterpart_id!r}, "
            f"messages={len(self._messages)})"
        )

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def matches(self, message: Message) -> bool:
        return routing.matches(message, self.viewer_id, self.counterpart_id, self.viewer_role)

    async def updates(self) -> AsyncGenerator[Message, None]:
        """Messages as they are merged, until the view closes."""
        if self.closed:
            return
        queue: asyncio.Queue[Optional[Message]] = asyncio.Queue()
        self._listeners.append(queue)
        try:
            while True:
                message = await queue.get()
                if message is None:
                    return
                yield message
        finally:
            if queue in self._listeners:
                self._listeners.remove(queue)

    async def reload(self) -> None:
        """Refetch history. Raises HistoryFetchFailed."""
        await self._submit("fetch", strict=True)

    async def wait_idle(self) -> None:
        """Return once every operation queued so far has been applied."""
        await self._submit("barrier")

    def add_confirmed(self, message: Message) -> None:
        """Merge a message the store has confirmed."""
        if not self.closed and self.matches(message):
            self._ops.put_nowait(_Op("insert", message))

    async def _submit(self, kind: str, strict: bool = False) -> None:
        if self.closed:
            return
        done = asyncio.get_running_loop().create_future()
        self._ops.put_nowait(_Op(kind, strict=strict, done=done))
        await done

    def _merge(self, message: Message) -> bool:
        if message.id in self._ids:
            return False
        key = message.sort_key
        idx = bisect.bisect_right(self._keys, key)
        self._keys.insert(idx, key)
        self._messages.insert(idx, message)
        self._ids.add(message.id)
        for queue in self._listeners:
            queue.put_nowait(message)
        return True

    def _shutdown(self) -> None:
        self.closed = True
        while not self._ops.empty():
            self._ops.get_nowait().resolve(HistoryFetchFailed("Conversation view closed"))
        for queue in self._listeners:
            queue.put_nowait(None)


class MessageStream:
    def __init__(
        self,
        messages: MessageStore,
        feed: ChangeFeed,
        *,
        history_timeout: Optional[float] = None,
        on_insert: Optional[InsertHook] = None,
    ):
        self._messages = messages
        self._feed = feed
        self._history_timeout = history_timeout
        self._on_insert = on_insert
        self._view: Optional[ConversationView] = None
        self._lock = asyncio.Lock()

    @property
    def view(self) -> Optional[ConversationView]:
        return self._view

    def set_insert_hook(self, hook: Optional[InsertHook]) -> None:
        self._on_insert = hook

    async def open(
        self,
        viewer_id: str,
        viewer_role: Role,
        counterpart_id: Optional[str] = None,
    ) -> ConversationView:
        """Close the current view, then open one for `counterpart_id`.

        History failures do not raise; they are left on `view.history_error`
        and the live subscription stays up.
        """
        message_filter = routing.conversation_filter(viewer_id, counterpart_id, viewer_role)
        async with self._lock:
            await self._close_locked()
            view = ConversationView(viewer_id, viewer_role, counterpart_id, message_filter)
            view._handle = self._feed.subscribe(ChangeFilter(), self._handler_for(view))
            view._writer = asyncio.get_running_loop().create_task(self._run(view))
            self._view = view
            logger.info("Opened conversation %s for %s", counterpart_id or message_filter.involving, viewer_id)
        await view._submit("fetch")
        return view

    async def close(self) -> None:
        async with self._lock:
            await self._close_locked()

    async def _close_locked(self) -> None:
        view = self._view
        if view is None:
            return
        self._view = None
        # The subscription goes before anything else can open
        if view._handle is not None:
            self._feed.unsubscribe(view._handle)
            view._handle = None
        view._shutdown()
        writer = view._writer
        if writer is not None and not writer.done():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass
        logger.info("Closed conversation %s", view.counterpart_id or view.message_filter.involving)

    def _handler_for(self, view: ConversationView) -> Callable[[ChangeEvent], None]:
        def handler(event: ChangeEvent) -> None:
            if view.closed:
                return
            if event.type == ChangeType.DROPPED:
                view._ops.put_nowait(_Op("dropped"))
                return
            if event.type == ChangeType.RECONNECTED:
                view._ops.put_nowait(_Op("resync"))
                return
            try:
                message = Message.model_validate(event.record or {})
            except ValidationError as e:
                logger.warning("Skipping unreadable change row: %s", e.errors()[:1])
                return
            if self._on_insert is not None:
                try:
                    self._on_insert(message)
                except Exception:
                    logger.exception("Insert hook failed")
            if view.matches(message):
                logger.debug("Feed delivered %s into %r", message.id, view)
                view._ops.put_nowait(_Op("insert", message))
        return handler

    async def _run(self, view: ConversationView) -> None:
        while True:
            op = await view._ops.get()
            try:
                if op.kind == "insert":
                    view._merge(op.message)  # type: ignore[arg-type]
                    op.resolve()
                elif op.kind == "fetch":
                    op.resolve(await self._fetch_into(view))
                elif op.kind == "dropped":
                    view.live = False
                    view.feed_error = SubscriptionDropped()
                    logger.warning("Live updates for %r dropped, waiting for reconnect", view)
                    op.resolve()
                elif op.kind == "resync":
                    view.live = True
                    view.feed_error = None
                    op.resolve(await self._fetch_into(view))
                else:
                    op.resolve()
            except asyncio.CancelledError:
                op.resolve(HistoryFetchFailed("Conversation view closed"))
                raise
            except Exception as e:
                logger.exception("Conversation writer failed on %s", op.kind)
                op.resolve(e)

    async def _await_subscription(self, view: ConversationView) -> None:
        if view._handle is None:
            return
        try:
            await self._feed.wait_subscribed(view._handle)
        except SubscriptionDropped as e:
            # History is still worth loading; live stays off until RECONNECTED
            view.live = False
            view.feed_error = e
            logger.warning("Subscription for %r not confirmed: %s", view, e)

    async def _fetch_into(self, view: ConversationView) -> Optional[HistoryFetchFailed]:
        await self._await_subscription(view)
        try:
            rows = await self._fetch(view.message_filter)
        except HistoryFetchFailed as e:
            view.history_error = e
            logger.warning("History fetch for %r failed: %s", view, e)
            return e
        view.history_error = None
        added = 0
        for message in rows:
            if view.matches(message) and view._merge(message):
                added += 1
        logger.debug("History merged %d new of %d into %r", added, len(rows), view)
        return None

    async def _fetch(self, message_filter: MessageFilter) -> list[Message]:
        try:
            if self._history_timeout is None:
                return await self._messages.query(message_filter)
            return await asyncio.wait_for(self._messages.query(message_filter), timeout=self._history_timeout)
        except asyncio.TimeoutError:
            raise HistoryFetchFailed(
                f"History fetch timed out after {self._history_timeout}s",
                {"involving": message_filter.involving},
            )
        except HistoryFetchFailed:
            raise
        except Exception as e:
            raise HistoryFetchFailed(f"History fetch failed: {e}", {"involving": message_filter.involving})
