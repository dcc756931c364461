"""
deskline — realtime admin/user direct messaging SDK for Python.

Session and role resolution, conversation list, live message streams and the
routing rules between an admin pool and its users.
"""

from deskline.client import Deskline, AsyncDeskline
from deskline.conversations import ConversationAggregator
from deskline.errors import (
    DesklineError,
    SessionUnavailable,
    RoleResolutionFailed,
    HistoryFetchFailed,
    SendFailed,
    SubscriptionDropped,
    RoutingError,
    AuthError,
    ConnectionError,
)
from deskline.messenger import Messenger
from deskline.models.identity import Identity, Profile, Role
from deskline.models.message import ADMIN_POOL_ID, Conversation, Message, MessageDraft, MessageFilter
from deskline.routing import address, matches
from deskline.session import SessionState, SessionStore
from deskline.stream import ConversationView, MessageStream

__version__ = "0.1.0"
__all__ = [
    "Deskline",
    "AsyncDeskline",
    "ConversationAggregator",
    "ConversationView",
    "MessageStream",
    "Messenger",
    "SessionStore",
    "SessionState",
    "Identity",
    "Profile",
    "Role",
    "Message",
    "MessageDraft",
    "MessageFilter",
    "Conversation",
    "ADMIN_POOL_ID",
    "address",
    "matches",
    "DesklineError",
    "SessionUnavailable",
    "RoleResolutionFailed",
    "HistoryFetchFailed",
    "SendFailed",
    "SubscriptionDropped",
    "RoutingError",
    "AuthError",
    "ConnectionError",
]
