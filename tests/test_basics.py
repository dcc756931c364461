"""Basic unit tests for the deskline package."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from deskline import (
    AsyncDeskline,
    Deskline,
    DesklineError,
    SessionUnavailable,
    RoleResolutionFailed,
    HistoryFetchFailed,
    SendFailed,
    SubscriptionDropped,
    RoutingError,
    AuthError,
    ConnectionError,
    Message,
    Role,
    __version__,
)
from deskline.models.events import ChangeEvent, ChangeFilter, ChangeType, SessionEvent
from deskline.models.identity import Profile
from deskline.models.message import Conversation, MessageDraft


def test_version():
    assert __version__ == "0.1.0"


def test_public_exports():
    assert Deskline is not None
    assert AsyncDeskline is not None


def test_error_hierarchy():
    for cls in (SessionUnavailable, RoleResolutionFailed, HistoryFetchFailed, SendFailed,
                SubscriptionDropped, RoutingError, AuthError, ConnectionError):
        assert issubclass(cls, DesklineError)


def test_error_attributes():
    err = DesklineError(code="test_code", message="something broke")
    assert err.code == "test_code"
    assert str(err) == "something broke"
    assert err.details is None

    fetch = HistoryFetchFailed("timed out", details={"involving": "u1"})
    assert fetch.code == "history_fetch_failed"
    assert fetch.retryable is True
    assert fetch.details == {"involving": "u1"}

    assert SessionUnavailable().code == "session_unavailable"
    assert RoleResolutionFailed("u1", "boom").details == {"user_id": "u1"}


def test_event_constants():
    assert SessionEvent.SIGNED_IN == "SIGNED_IN"
    assert ChangeType.INSERT == "INSERT"
    assert Role("admin") is Role.ADMIN


class TestMessageModel:
    def test_parses_wire_row(self):
        msg = Message.model_validate({
            "id": "m1",
            "sender_id": "u1",
            "receiver_id": None,
            "message": "hello",
            "is_admin_message": None,
            "created_at": "2024-05-01T12:00:00+00:00",
        })
        assert msg.body == "hello"
        assert msg.is_admin_message is False
        assert msg.is_broadcast
        assert msg.created_at.tzinfo is not None

    def test_naive_timestamps_read_as_utc(self):
        msg = Message(id="m1", sender_id="u1", body="x", created_at=datetime(2024, 5, 1, 12, 0))
        assert msg.created_at == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def test_admin_message_needs_receiver(self):
        with pytest.raises(ValidationError):
            Message(id="m1", sender_id="a", body="hi", is_admin_message=True,
                    created_at=datetime.now(timezone.utc))

    def test_empty_body_rejected(self):
        with pytest.raises(ValidationError):
            Message(id="m1", sender_id="u1", body="", created_at=datetime.now(timezone.utc))

    def test_messages_are_immutable(self):
        msg = Message(id="m1", sender_id="u1", body="x", created_at=datetime.now(timezone.utc))
        with pytest.raises(ValidationError):
            msg.body = "changed"

    def test_draft_row_uses_wire_names(self):
        row = MessageDraft(sender_id="u1", body="hello").to_row()
        assert row == {"sender_id": "u1", "receiver_id": None, "message": "hello", "is_admin_message": False}


def test_profile_display_name_falls_back_to_email():
    assert Profile(id="u2", email="dave@example.com").display_name == "dave"
    assert Profile(id="u1", email="c@example.com", full_name="Carol").display_name == "Carol"


def test_conversation_sentinel():
    now = datetime.now(timezone.utc)
    conv = Conversation.sentinel("u1", "Carol", now)
    assert conv.has_messages is False
    assert conv.last_message_body == "No messages yet"
    assert conv.last_message_at == now


def test_change_filter_passes_status_events():
    f = ChangeFilter()
    assert f.accepts(ChangeEvent.dropped())
    assert f.accepts(ChangeEvent(type=ChangeType.INSERT, record={}))
    assert not f.accepts(ChangeEvent(type=ChangeType.INSERT, table="profiles", record={}))
