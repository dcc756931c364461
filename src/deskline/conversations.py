"""
Conversation aggregator.

For each counterpart visible to the viewer, fetch the single most recent
message (top-1, newest first) and project it into a Conversation. Lookups fan
out concurrently under a semaphore so a large directory does not flood the
store. Counterparts without history get a "No messages yet" entry stamped with
the current time; those always sort after every real conversation.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from deskline.errors import HistoryFetchFailed
from deskline.models.identity import Identity, Profile, Role
from deskline.models.message import ADMIN_POOL_ID, ADMIN_POOL_NAME, Conversation, MessageFilter
from deskline.ports import Directory, MessageStore, RoleStore

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 6


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def order_conversations(conversations: list[Conversation]) -> list[Conversation]:
    """Newest first; ties by name then id; sentinels last."""
    ordered = sorted(conversations, key=lambda c: (c.counterpart_display_name.lower(), c.counterpart_id))
    ordered.sort(key=lambda c: c.last_message_at, reverse=True)
    ordered.sort(key=lambda c: not c.has_messages)
    return ordered


class ConversationAggregator:
    def __init__(
        self,
        directory: Directory,
        role_store: RoleStore,
        messages: MessageStore,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._directory = directory
        self._role_store = role_store
        self._messages = messages
        self._concurrency = concurrency
        self._clock = clock or _utcnow

    async def list_conversations(self, identity: Identity, role: Role) -> list[Conversation]:
        if role == Role.ADMIN:
            return await self._admin_conversations(identity)
        return [await self._latest(ADMIN_POOL_ID, ADMIN_POOL_NAME, identity.id)]

    async def _admin_conversations(self, identity: Identity) -> list[Conversation]:
        try:
            profiles = await self._directory.list_profiles()
        except Exception as e:
            raise HistoryFetchFailed(f"Failed to list counterparts: {e}")

        semaphore = asyncio.Semaphore(self._concurrency)

        async def one(profile: Profile) -> Optional[Conversation]:
            async with semaphore:
                if await self.is_admin(profile.id):
                    return None
                return await self._latest(profile.id, profile.display_name, profile.id)

        candidates = [p for p in profiles if p.id != identity.id]
        results = await asyncio.gather(*(one(p) for p in candidates))
        return order_conversations([c for c in results if c is not None])

    async def is_admin(self, user_id: str) -> bool:
        """Role check for a counterpart. A failed lookup reads as not admin."""
        try:
            return await self._role_store.get_role(user_id) == Role.ADMIN
        except Exception as e:
            # Unknown role reads as user, never as admin
            logger.warning("Role lookup for counterpart %s failed: %s", user_id, e)
            return False

    async def _latest(self, counterpart_id: str, display_name: str, party_id: str) -> Conversation:
        try:
            rows = await self._messages.query(MessageFilter(involving=party_id), descending=True, limit=1)
        except Exception as e:
            logger.warning("Last message lookup for %s failed: %s", counterpart_id, e)
            rows = []
        if not rows:
            return Conversation.sentinel(counterpart_id, display_name, self._clock())
        return Conversation.from_last_message(counterpart_id, display_name, rows[0])
