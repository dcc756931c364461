"""
Messenger: the headless chat screen.

Follows the session store. A user lands directly in the admin-pool
conversation; an admin lands with no counterpart selected and picks one with
select(). Signing out closes the open view and forgets the conversation list.

Sent messages are never shown before the store confirms them.
"""

import asyncio
import logging
from typing import Callable, Optional

from deskline import routing
from deskline.conversations import ConversationAggregator
from deskline.errors import DesklineError, RoutingError, SendFailed, SessionUnavailable
from deskline.models.identity import Identity, Role
from deskline.models.message import ADMIN_POOL_ID, Conversation, Message
from deskline.ports import MessageStore
from deskline.session import SessionSnapshot, SessionState, SessionStore
from deskline.stream import ConversationView, MessageStream

logger = logging.getLogger(__name__)

ConversationsListener = Callable[[list[Conversation]], None]


class Messenger:
    def __init__(
        self,
        session: SessionStore,
        aggregator: ConversationAggregator,
        stream: MessageStream,
        messages: MessageStore,
    ):
        self._session = session
        self._aggregator = aggregator
        self._stream = stream
        self._messages = messages
        self._conversations: list[Conversation] = []
        self._listeners: list[ConversationsListener] = []
        self._transition_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_again = False
        self._remove_observer: Optional[Callable[[], None]] = None
        stream.set_insert_hook(self._on_insert)

    @property
    def view(self) -> Optional[ConversationView]:
        return self._stream.view

    @property
    def selected(self) -> Optional[str]:
        view = self._stream.view
        return view.counterpart_id if view is not None else None

    @property
    def conversations(self) -> list[Conversation]:
        return list(self._conversations)

    def on_conversations(self, listener: ConversationsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass
        return remove

    def start(self) -> None:
        """Follow session transitions. Call from inside the event loop."""
        if self._remove_observer is None:
            self._remove_observer = self._session.subscribe(self._on_session)
        snap = self._session.snapshot()
        if snap.state == SessionState.READY:
            self._spawn(self._apply(snap))

    async def settle(self) -> None:
        """Wait for session-driven view changes and list refreshes in flight."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if self._refresh_task is not None and not self._refresh_task.done():
                pending.append(self._refresh_task)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def refresh_conversations(self) -> list[Conversation]:
        identity, role = self._ready()
        conversations = await self._aggregator.list_conversations(identity, role)
        if self._session.current_identity() != identity:
            # Signed out or switched accounts while the lookups ran
            return conversations
        self._set_conversations(conversations)
        return conversations

    async def select(self, counterpart_id: Optional[str]) -> ConversationView:
        """Open the conversation with `counterpart_id`, closing the current one first.

        Users always get the admin pool. Admins may only pick a user.
        """
        identity, role = self._ready()
        if role != Role.ADMIN:
            if counterpart_id not in (None, ADMIN_POOL_ID):
                raise RoutingError("users can only talk to the admin pool")
            counterpart_id = ADMIN_POOL_ID
        elif counterpart_id in (identity.id, ADMIN_POOL_ID):
            raise RoutingError("admins can only open conversations with users")
        elif counterpart_id and await self._aggregator.is_admin(counterpart_id):
            raise RoutingError(f"{counterpart_id} is an admin, not a user")
        async with self._transition_lock:
            return await self._stream.open(identity.id, role, counterpart_id)

    async def send(self, body: str) -> Message:
        identity, role = self._ready()
        view = self._stream.view
        counterpart_id = view.counterpart_id if view is not None and role == Role.ADMIN else None
        draft = routing.address(body, role, counterpart_id, identity.id)
        try:
            message = await self._messages.insert(draft)
        except Exception as e:
            raise SendFailed(f"Failed to send message: {e}", {"receiver_id": draft.receiver_id})
        logger.debug("Sent %s to %s", message.id, message.receiver_id or ADMIN_POOL_ID)
        if view is not None:
            view.add_confirmed(message)
        return message

    async def close(self) -> None:
        if self._remove_observer is not None:
            self._remove_observer()
            self._remove_observer = None
        for task in list(self._tasks):
            task.cancel()
        if self._refresh_task is not None:
            self._refresh_task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._stream.close()

    def _ready(self) -> tuple[Identity, Role]:
        identity = self._session.require_identity()
        role = self._session.current_role()
        if role is None:
            raise SessionUnavailable("Role not resolved yet")
        return identity, role

    def _set_conversations(self, conversations: list[Conversation]) -> None:
        self._conversations = conversations
        for listener in list(self._listeners):
            try:
                listener(self.conversations)
            except Exception:
                logger.exception("Conversations listener failed")

    def _on_session(self, snap: SessionSnapshot) -> None:
        # Runs inside the provider's notification; only schedule work here
        if snap.state in (SessionState.READY, SessionState.UNAUTHENTICATED):
            self._spawn(self._apply(snap))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _apply(self, snap: SessionSnapshot) -> None:
        async with self._transition_lock:
            try:
                await self._stream.close()
                if snap.state != SessionState.READY or snap.identity is None:
                    self._set_conversations([])
                    return
                if snap.identity != self._session.current_identity():
                    return
                if snap.role == Role.USER:
                    await self._stream.open(snap.identity.id, Role.USER, ADMIN_POOL_ID)
            except DesklineError as e:
                logger.warning("Could not apply session change: %s", e)
                return
            except Exception:
                logger.exception("Session change handling failed")
                return
        self._schedule_refresh()

    def _on_insert(self, message: Message) -> None:
        identity = self._session.current_identity()
        role = self._session.current_role()
        if identity is None or role is None:
            return
        if routing.visible_to(message, identity.id, role):
            self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_again = True
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        while True:
            self._refresh_again = False
            try:
                await self.refresh_conversations()
            except DesklineError as e:
                logger.warning("Conversation list refresh failed: %s", e)
            except Exception:
                logger.exception("Conversation list refresh failed")
            if not self._refresh_again:
                return
