from pydantic import BaseModel, Field
from typing import Any, Optional


class Participant(BaseModel):
    id: str
    name: str


class Envelope(BaseModel):
    event: str
    data: dict = Field(default_factory=dict)


class JoinPayload(BaseModel):
    room: str
    name: Optional[str] = None

class RelayOfferPayload(BaseModel):
    targetId: str
    signal: Any

class RelayAnswerPayload(BaseModel):
    targetId: str
    signal: Any

class ChatRelayPayload(BaseModel):
    room: str
    text: str
    name: Optional[str] = None

class ScreenSharePayload(BaseModel):
    room: str
    stream: Any = None

class ScreenShareEndedPayload(BaseModel):
    room: str

class LeavePayload(BaseModel):
    pass
