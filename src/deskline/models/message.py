"""
Message, draft and conversation models.

Wire rows use the chat_messages column names (`message` carries the body).
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ADMIN_POOL_ID = "admin-pool"
ADMIN_POOL_NAME = "Admin"
NO_MESSAGES_YET = "No messages yet"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Message(BaseModel):
    """chat_messages row. Immutable once created."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    sender_id: str
    receiver_id: Optional[str] = None
    body: str = Field(alias="message", min_length=1)
    is_admin_message: bool = False
    created_at: datetime

    @field_validator("is_admin_message", mode="before")
    @classmethod
    def _null_is_false(cls, v: Any) -> Any:
        return False if v is None else v

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def _admin_messages_are_addressed(self) -> "Message":
        if self.is_admin_message and not self.receiver_id:
            raise ValueError("admin messages must name a receiver")
        return self

    @property
    def sort_key(self) -> tuple[datetime, str]:
        """Creation time, then id. Same key for history and feed ordering."""
        return (self.created_at, self.id)

    @property
    def is_broadcast(self) -> bool:
        return self.receiver_id is None


class MessageDraft(BaseModel):
    """Addressing fields of an outgoing message."""
    model_config = ConfigDict(frozen=True)

    sender_id: str
    receiver_id: Optional[str] = None
    is_admin_message: bool = False
    body: str = Field(min_length=1)

    def to_row(self) -> dict[str, Any]:
        return {
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "message": self.body,
            "is_admin_message": self.is_admin_message,
        }


class MessageFilter(BaseModel):
    """Store predicate: messages where `involving` is sender or receiver."""
    model_config = ConfigDict(frozen=True)

    involving: str

    def test(self, message: Message) -> bool:
        return message.sender_id == self.involving or message.receiver_id == self.involving


class Conversation(BaseModel):
    """Derived view, one per counterpart. Never stored."""
    counterpart_id: str
    counterpart_display_name: str
    last_message_body: str = NO_MESSAGES_YET
    last_message_at: datetime
    has_messages: bool = False

    @classmethod
    def sentinel(cls, counterpart_id: str, display_name: str, now: datetime) -> "Conversation":
        return cls(
            counterpart_id=counterpart_id,
            counterpart_display_name=display_name,
            last_message_at=now,
        )

    @classmethod
    def from_last_message(cls, counterpart_id: str, display_name: str, message: Message) -> "Conversation":
        return cls(
            counterpart_id=counterpart_id,
            counterpart_display_name=display_name,
            last_message_body=message.body,
            last_message_at=message.created_at,
            has_messages=True,
        )
