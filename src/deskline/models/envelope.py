"""
Realtime wire envelope.
"""

from typing import Any, Optional
from pydantic import BaseModel


class ClientSource(BaseModel):
    user_id: Optional[str] = None
    device_id: Optional[str] = None


class EnvelopeMetadata(BaseModel):
    event_id: str
    timestamp: str
    source: Optional[ClientSource] = None


class ChangePayload(BaseModel):
    subscription_id: Optional[str] = None
    table: Optional[str] = None
    type: Optional[str] = None
    record: Optional[dict[str, Any]] = None


class RealtimeEnvelope(BaseModel):
    metadata: EnvelopeMetadata
    type: str
    payload: ChangePayload
