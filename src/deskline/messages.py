"""
chat_messages REST API.
"""

from __future__ import annotations

from typing import Any, Optional

from deskline.models.events import MESSAGES_TABLE
from deskline.models.message import Message, MessageDraft, MessageFilter
from deskline.transport.http import HttpClient

_PATH = f"/rest/v1/{MESSAGES_TABLE}"


class MessagesAPI:
    def __init__(self, http: HttpClient):
        self._http = http

    async def insert(self, draft: MessageDraft) -> Message:
        """Append one message, return the stored row."""
        rows = await self._http.post(_PATH, [draft.to_row()], headers={"Prefer": "return=representation"})
        row = rows[0] if isinstance(rows, list) else rows
        return Message.model_validate(row)

    async def query(
        self,
        message_filter: MessageFilter,
        *,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[Message]:
        """Messages involving a party, ordered by creation time then id."""
        direction = "desc" if descending else "asc"
        party = message_filter.involving
        params: dict[str, Any] = {
            "select": "*",
            "or": f"(sender_id.eq.{party},receiver_id.eq.{party})",
            "order": f"created_at.{direction},id.{direction}",
        }
        if limit is not None:
            params["limit"] = limit
        rows = await self._http.get(_PATH, params)
        return [Message.model_validate(r) for r in rows or []]
