"""
AsyncDeskline / Deskline — main SDK clients.
"""

import asyncio
import uuid
from pathlib import Path
from typing import Any, Optional

from deskline.auth import AuthAPI
from deskline.config import CONFIG_DIR
from deskline.conversations import DEFAULT_CONCURRENCY, ConversationAggregator
from deskline.directory import DirectoryAPI
from deskline.errors import ConnectionError
from deskline.messages import MessagesAPI
from deskline.messenger import Messenger
from deskline.models.identity import Identity, Role
from deskline.models.message import Conversation, Message
from deskline.session import SessionStore
from deskline.stream import ConversationView, MessageStream
from deskline.transport.http import DEFAULT_BASE_URL, HttpClient
from deskline.transport.realtime import RealtimeFeed

DEVICE_ID_FILE: Path = CONFIG_DIR / "device_id"


def _get_or_create_device_id(provided: Optional[str] = None) -> str:
    if provided:
        return provided
    try:
        return DEVICE_ID_FILE.read_text().strip()
    except FileNotFoundError:
        device_id = str(uuid.uuid4())
        try:
            DEVICE_ID_FILE.parent.mkdir(parents=True, exist_ok=True)
            DEVICE_ID_FILE.write_text(device_id)
        except OSError:
            pass
        return device_id


class AsyncDeskline:
    """Async Deskline client (primary)."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        device_id: Optional[str] = None,
        transports: Optional[list[str]] = None,
        ready_timeout: float = 15.0,
        lookup_concurrency: int = DEFAULT_CONCURRENCY,
        history_timeout: Optional[float] = None,
    ):
        self._base_url = base_url
        self._device_id = _get_or_create_device_id(device_id)

        self.http = HttpClient(base_url=base_url, token=access_token)
        self.auth = AuthAPI(self.http)
        if access_token:
            self.auth.restore(access_token, refresh_token)
        self.directory = DirectoryAPI(self.http)
        self.messages = MessagesAPI(self.http)
        self.feed = RealtimeFeed(
            base_url=base_url,
            device_id=self._device_id,
            transports=transports,
            ready_timeout=ready_timeout,
        )

        self.session = SessionStore(self.auth, self.directory)
        self.aggregator = ConversationAggregator(
            self.directory, self.directory, self.messages, concurrency=lookup_concurrency,
        )
        self.stream = MessageStream(self.messages, self.feed, history_timeout=history_timeout)
        self.messenger = Messenger(self.session, self.aggregator, self.stream, self.messages)

    @property
    def connected(self) -> bool:
        return self.feed.connected

    @property
    def identity(self) -> Optional[Identity]:
        return self.session.current_identity()

    @property
    def role(self) -> Optional[Role]:
        return self.session.current_role()

    @property
    def view(self) -> Optional[ConversationView]:
        return self.messenger.view

    async def sign_in(self, email: str, password: str) -> Identity:
        return await self.auth.sign_in(email, password)

    async def connect(self) -> Role:
        """Open the change feed, start following the session, wait for the role."""
        if not self.auth.access_token:
            raise ConnectionError("access token required. Sign in first.")
        self.messenger.start()
        await self.session.start()
        identity = self.session.require_identity()
        self.feed.set_credentials(self.auth.access_token, identity.id)
        await self.feed.connect()
        role = await self.session.wait_ready()
        await self.messenger.settle()
        return role

    async def disconnect(self) -> None:
        await self.messenger.close()
        self.session.close()
        await self.feed.disconnect()

    async def close(self) -> None:
        await self.disconnect()
        await self.http.close()

    async def sign_out(self) -> None:
        await self.session.sign_out()
        await self.messenger.settle()

    async def conversations(self) -> list[Conversation]:
        return await self.messenger.refresh_conversations()

    async def select(self, counterpart_id: Optional[str]) -> ConversationView:
        return await self.messenger.select(counterpart_id)

    async def send(self, body: str) -> Message:
        return await self.messenger.send(body)


class Deskline:
    """Sync wrapper around AsyncDeskline. Runs the event loop internally."""

    def __init__(self, **kwargs: Any):
        self._loop = asyncio.new_event_loop()
        self._async = self._run(self._build(kwargs))

    @staticmethod
    async def _build(kwargs: dict[str, Any]) -> AsyncDeskline:
        return AsyncDeskline(**kwargs)

    def _run(self, coro: Any) -> Any:
        return self._loop.run_until_complete(coro)

    @property
    def auth(self) -> AuthAPI:
        return self._async.auth

    @property
    def connected(self) -> bool:
        return self._async.connected

    @property
    def role(self) -> Optional[Role]:
        return self._async.role

    def sign_in(self, email: str, password: str) -> Identity:
        return self._run(self._async.sign_in(email, password))

    def connect(self) -> Role:
        return self._run(self._async.connect())

    def disconnect(self) -> None:
        self._run(self._async.disconnect())

    def close(self) -> None:
        self._run(self._async.close())
        self._loop.close()

    def conversations(self) -> list[Conversation]:
        return self._run(self._async.conversations())

    def select(self, counterpart_id: Optional[str]) -> list[Message]:
        view = self._run(self._async.select(counterpart_id))
        return view.messages

    def messages(self) -> list[Message]:
        view = self._async.view
        return view.messages if view is not None else []

    def send(self, body: str) -> Message:
        return self._run(self._async.send(body))
