"""
Routing policy: which messages belong to a conversation view, and how an
outgoing message is addressed.

Addressing is asymmetric. A user writes to the admin pool (no receiver,
is_admin_message=False) so that any admin can answer. An admin always names
the user it replies to (receiver set, is_admin_message=True), which is what
lets the per-counterpart conversation list find admin replies.
"""

from typing import Optional

from deskline.errors import RoutingError
from deskline.models.identity import Role
from deskline.models.message import Message, MessageDraft, MessageFilter


def matches(
    message: Message,
    viewer_id: str,
    counterpart_id: Optional[str],
    viewer_role: Role,
) -> bool:
    """Does `message` belong to the viewer's open conversation?"""
    if viewer_role == Role.ADMIN:
        if not counterpart_id:
            return False
        return message.sender_id == counterpart_id or message.receiver_id == counterpart_id
    # A broadcast carries no receiver but the viewer is then the sender
    return message.sender_id == viewer_id or message.receiver_id == viewer_id


def conversation_filter(viewer_id: str, counterpart_id: Optional[str], viewer_role: Role) -> MessageFilter:
    """Store-side form of `matches`."""
    if viewer_role == Role.ADMIN:
        if not counterpart_id:
            raise RoutingError("admin view requires a selected counterpart")
        return MessageFilter(involving=counterpart_id)
    return MessageFilter(involving=viewer_id)


def visible_to(message: Message, viewer_id: str, viewer_role: Role) -> bool:
    """Admins see every user's thread; users only their own."""
    if viewer_role == Role.ADMIN:
        return True
    return message.sender_id == viewer_id or message.receiver_id == viewer_id


def address(
    body: str,
    viewer_role: Role,
    counterpart_id: Optional[str],
    sender_id: str,
) -> MessageDraft:
    text = body.strip() if body else ""
    if not text:
        raise RoutingError("message body is empty")
    if viewer_role == Role.ADMIN:
        if not counterpart_id:
            raise RoutingError("admin messages need a selected counterpart")
        return MessageDraft(sender_id=sender_id, receiver_id=counterpart_id, is_admin_message=True, body=text)
    return MessageDraft(sender_id=sender_id, receiver_id=None, is_admin_message=False, body=text)
