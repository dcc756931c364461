"""
Session transition and change-feed event types.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

MESSAGES_TABLE = "chat_messages"


class SessionEvent:
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


class ChangeType:
    INSERT = "INSERT"
    # Feed status, not row changes
    DROPPED = "DROPPED"
    RECONNECTED = "RECONNECTED"

    STATUS = frozenset({DROPPED, RECONNECTED})


class C2SEvent:
    REALTIME_SUBSCRIBE = "realtime:subscribe"
    REALTIME_UNSUBSCRIBE = "realtime:unsubscribe"


class S2CEvent:
    READY = "ready"
    REALTIME_CHANGE = "realtime:change"


class ChangeFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    table: str = MESSAGES_TABLE
    event: str = ChangeType.INSERT

    def accepts(self, event: "ChangeEvent") -> bool:
        if event.is_status:
            return True
        return event.table == self.table and event.type == self.event


class ChangeEvent(BaseModel):
    """One delivery from the change feed. `record` is the full inserted row."""
    model_config = ConfigDict(frozen=True)

    type: str
    table: str = MESSAGES_TABLE
    record: Optional[dict[str, Any]] = None

    @property
    def is_status(self) -> bool:
        return self.type in ChangeType.STATUS

    @classmethod
    def dropped(cls) -> "ChangeEvent":
        return cls(type=ChangeType.DROPPED)

    @classmethod
    def reconnected(cls) -> "ChangeEvent":
        return cls(type=ChangeType.RECONNECTED)
