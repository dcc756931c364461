"""Test helpers shared by the unit tests."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

from deskline.conversations import ConversationAggregator
from deskline.memory import MemoryBackend, MemoryIdentityProvider
from deskline.messenger import Messenger
from deskline.models.identity import Role
from deskline.models.message import Message
from deskline.session import SessionStore
from deskline.stream import ConversationView, MessageStream

BASE_TIME = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock:
    """Store clock: each call is one second later than the last."""

    def __init__(self, start: datetime = BASE_TIME + timedelta(hours=1)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def make_message(
    id: str,
    sender: str,
    receiver: Optional[str],
    body: str,
    at: float,
    admin: bool = False,
) -> Message:
    return Message(
        id=id,
        sender_id=sender,
        receiver_id=receiver,
        body=body,
        is_admin_message=admin,
        created_at=BASE_TIME + timedelta(seconds=at),
    )


async def drain(view: ConversationView) -> None:
    """Let pending feed deliveries reach the view, then wait for its writer."""
    await asyncio.sleep(0)
    await view.wait_idle()


class Stack:
    """One signed-in client over the shared backend."""

    def __init__(self, backend: MemoryBackend, user_id: str):
        self.user_id = user_id
        self.provider = MemoryIdentityProvider()
        for profile in backend.directory.profiles.values():
            self.provider.register(profile.to_identity())
        self.session = SessionStore(self.provider, backend.roles)
        self.aggregator = ConversationAggregator(backend.directory, backend.roles, backend.messages)
        self.stream = MessageStream(backend.messages, backend.feed)
        self.messenger = Messenger(self.session, self.aggregator, self.stream, backend.messages)

    async def sign_in(self) -> Role:
        self.messenger.start()
        await self.session.start()
        await self.provider.sign_in(self.user_id)
        role = await self.session.wait_ready(timeout=1)
        await self.messenger.settle()
        return role
