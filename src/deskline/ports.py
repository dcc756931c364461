"""
Collaborator interfaces consumed by the messaging core.

The core never talks to a backend directly; it is handed objects satisfying
these protocols. `deskline.memory` and the HTTP/Socket.IO classes in
`deskline.auth`, `deskline.directory`, `deskline.messages` and
`deskline.transport.realtime` both implement them.
"""

from typing import Any, Callable, Optional, Protocol

from deskline.models.events import ChangeEvent, ChangeFilter
from deskline.models.identity import Identity, Profile, Role
from deskline.models.message import Message, MessageDraft, MessageFilter

SessionCallback = Callable[[str, Optional[Identity]], None]
ChangeHandler = Callable[[ChangeEvent], None]


class IdentityProvider(Protocol):
    async def get_current_session(self) -> Optional[Identity]: ...

    def on_session_change(self, callback: SessionCallback) -> Callable[[], None]: ...

    async def sign_out(self) -> None: ...


class RoleStore(Protocol):
    async def get_role(self, user_id: str) -> Optional[Role]: ...


class Directory(Protocol):
    async def list_profiles(self) -> list[Profile]: ...


class MessageStore(Protocol):
    async def insert(self, draft: MessageDraft) -> Message: ...

    async def query(
        self,
        message_filter: MessageFilter,
        *,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Message]: ...


class ChangeFeed(Protocol):
    def subscribe(self, change_filter: ChangeFilter, handler: ChangeHandler) -> Any: ...

    def unsubscribe(self, handle: Any) -> None: ...

    async def wait_subscribed(self, handle: Any) -> None:
        """Return once the feed has confirmed `handle`. Raises SubscriptionDropped."""
        ...
