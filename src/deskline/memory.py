"""
In-process backend: identity provider, role store, directory, message store
and change feed held in memory.

Used by the test-suite and for local demos. The change feed pushes events on
the next loop iteration, as a network feed would, and can be dropped and
reconnected on demand; events published while it is down are lost.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from deskline.errors import SubscriptionDropped
from deskline.models.events import ChangeEvent, ChangeFilter, ChangeType, MESSAGES_TABLE, SessionEvent
from deskline.models.identity import Identity, Profile, Role
from deskline.models.message import Message, MessageDraft, MessageFilter
from deskline.ports import ChangeHandler, SessionCallback

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryIdentityProvider:
    def __init__(self) -> None:
        self._accounts: dict[str, Identity] = {}
        self._current: Optional[Identity] = None
        self._listeners: list[SessionCallback] = []
        self._notifying = 0

    @property
    def notifying(self) -> bool:
        """True while session listeners are being called."""
        return self._notifying > 0

    def register(self, identity: Identity) -> None:
        self._accounts[identity.id] = identity

    async def get_current_session(self) -> Optional[Identity]:
        return self._current

    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass
        return remove

    async def sign_in(self, user_id: str) -> Identity:
        identity = self._accounts[user_id]
        self._current = identity
        self._notify(SessionEvent.SIGNED_IN, identity)
        return identity

    async def refresh(self) -> None:
        self._notify(SessionEvent.TOKEN_REFRESHED, self._current)

    async def sign_out(self) -> None:
        self._current = None
        self._notify(SessionEvent.SIGNED_OUT, None)

    def _notify(self, event: str, identity: Optional[Identity]) -> None:
        self._notifying += 1
        try:
            for listener in list(self._listeners):
                listener(event, identity)
        finally:
            self._notifying -= 1


class MemoryRoleStore:
    def __init__(self, provider: Optional[MemoryIdentityProvider] = None):
        self._provider = provider
        self.roles: dict[str, Role] = {}
        self.calls: list[str] = []
        self.reentrant_calls: list[str] = []
        self.fail_with: Optional[Exception] = None
        self.delay = 0.0

    async def get_role(self, user_id: str) -> Optional[Role]:
        self.calls.append(user_id)
        if self._provider is not None and self._provider.notifying:
            self.reentrant_calls.append(user_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return self.roles.get(user_id)


class MemoryDirectory:
    def __init__(self) -> None:
        self.profiles: dict[str, Profile] = {}
        self.fail_with: Optional[Exception] = None

    async def list_profiles(self) -> list[Profile]:
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.profiles.values())


class MemoryChangeFeed:
    def __init__(self) -> None:
        self._subscriptions: dict[str, tuple[ChangeFilter, ChangeHandler]] = {}
        self.connected = True
        self.max_active = 0
        # While set and not yet fired, subscriptions stay unconfirmed
        self.hold_acks: Optional[asyncio.Event] = None

    @property
    def active(self) -> int:
        return len(self._subscriptions)

    async def wait_subscribed(self, handle: str) -> None:
        if handle not in self._subscriptions:
            raise SubscriptionDropped(f"Unknown subscription {handle}")
        if self.hold_acks is not None:
            await self.hold_acks.wait()

    def subscribe(self, change_filter: ChangeFilter, handler: ChangeHandler) -> str:
        handle = str(uuid.uuid4())
        self._subscriptions[handle] = (change_filter, handler)
        self.max_active = max(self.max_active, len(self._subscriptions))
        return handle

    def unsubscribe(self, handle: str) -> None:
        self._subscriptions.pop(handle, None)

    def publish(self, event: ChangeEvent) -> None:
        if not self.connected:
            logger.debug("Feed down, %s on %s lost", event.type, event.table)
            return
        self._schedule(event)

    def drop(self) -> None:
        self.connected = False
        self._schedule(ChangeEvent.dropped())

    def reconnect(self) -> None:
        self.connected = True
        self._schedule(ChangeEvent.reconnected())

    def _schedule(self, event: ChangeEvent) -> None:
        asyncio.get_running_loop().call_soon(self._deliver, event)

    def _deliver(self, event: ChangeEvent) -> None:
        if not event.is_status and not self.connected:
            return
        for change_filter, handler in list(self._subscriptions.values()):
            if change_filter.accepts(event):
                try:
                    handler(event)
                except Exception:
                    logger.exception("Change handler failed")


class MemoryMessageStore:
    def __init__(self, feed: Optional[MemoryChangeFeed] = None, clock: Optional[Callable[[], datetime]] = None):
        self._feed = feed
        self._clock = clock or _utcnow
        self._rows: list[Message] = []
        self.insert_error: Optional[Exception] = None
        self.query_error: Optional[Exception] = None
        self.query_delay = 0.0
        self.queries = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self._before_query: list[Callable[[], Any]] = []

    @property
    def rows(self) -> list[Message]:
        return list(self._rows)

    def before_next_query(self, hook: Callable[[], Any]) -> None:
        """Run `hook` once at the start of the next query, before rows are read."""
        self._before_query.append(hook)

    def add(self, message: Message, publish: bool = False) -> Message:
        self._rows.append(message)
        if publish and self._feed is not None:
            self._feed.publish(ChangeEvent(
                type=ChangeType.INSERT,
                table=MESSAGES_TABLE,
                record=message.model_dump(by_alias=True, mode="json"),
            ))
        return message

    async def insert(self, draft: MessageDraft) -> Message:
        if self.insert_error is not None:
            raise self.insert_error
        message = Message(
            id=str(uuid.uuid4()),
            sender_id=draft.sender_id,
            receiver_id=draft.receiver_id,
            body=draft.body,
            is_admin_message=draft.is_admin_message,
            created_at=self._clock(),
        )
        return self.add(message, publish=True)

    async def query(
        self,
        message_filter: MessageFilter,
        *,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Message]:
        self.queries += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._before_query:
                hook = self._before_query.pop(0)
                hook()
            if self.query_delay:
                await asyncio.sleep(self.query_delay)
            if self.query_error is not None:
                raise self.query_error
            rows = [m for m in self._rows if message_filter.test(m)]
            rows.sort(key=lambda m: m.sort_key, reverse=descending)
            return rows[:limit] if limit is not None else rows
        finally:
            self.in_flight -= 1


class MemoryBackend:
    """All collaborators wired together."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self.provider = MemoryIdentityProvider()
        self.roles = MemoryRoleStore(self.provider)
        self.directory = MemoryDirectory()
        self.feed = MemoryChangeFeed()
        self.messages = MemoryMessageStore(self.feed, clock=clock)

    def add_user(
        self,
        user_id: str,
        email: str = "",
        full_name: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Identity:
        profile = Profile(id=user_id, email=email or f"{user_id}@example.com", full_name=full_name)
        self.directory.profiles[user_id] = profile
        if role is not None:
            self.roles.roles[user_id] = role
        identity = profile.to_identity()
        self.provider.register(identity)
        return identity
