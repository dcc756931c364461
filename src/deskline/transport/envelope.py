"""
Realtime envelope construction and parsing.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from deskline.models.envelope import ChangePayload, ClientSource, EnvelopeMetadata, RealtimeEnvelope
from deskline.models.events import ChangeEvent, ChangeType


def build_envelope(
    event_type: str,
    user_id: Optional[str],
    device_id: str,
    subscription_id: Optional[str] = None,
    table: Optional[str] = None,
    change_type: Optional[str] = None,
) -> dict[str, Any]:
    """Build a C2S envelope as a dict ready for Socket.IO emit."""
    envelope = RealtimeEnvelope(
        metadata=EnvelopeMetadata(
            event_id=str(uuid.uuid4()),
            timestamp=datetime.now(timezone.utc).isoformat(),
            source=ClientSource(user_id=user_id, device_id=device_id),
        ),
        type=event_type,
        payload=ChangePayload(
            subscription_id=subscription_id,
            table=table,
            type=change_type,
        ),
    )
    return envelope.model_dump()


def parse_envelope(raw: dict[str, Any]) -> Optional[RealtimeEnvelope]:
    """Parse an S2C envelope. Returns None if invalid."""
    try:
        return RealtimeEnvelope.model_validate(raw)
    except Exception:
        return None


def to_change_event(envelope: RealtimeEnvelope) -> Optional[ChangeEvent]:
    payload = envelope.payload
    if payload.type != ChangeType.INSERT or not payload.table or payload.record is None:
        return None
    return ChangeEvent(type=payload.type, table=payload.table, record=payload.record)
