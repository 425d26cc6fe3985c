from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.interaction import ContactMode, InteractionStatus, MessageKind

SCANNER_ID = "scanner"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---- Records exchanged with the session store / directory ----

class MessageRecord(WireModel):
    message_id: str
    sender_id: str
    text: str
    kind: MessageKind = MessageKind.TEXT
    timestamp: datetime
    is_read: bool = False


class SessionRecord(WireModel):
    interaction_id: str
    user_id: str
    vehicle_id: str
    contact_type: ContactMode = ContactMode.SCAN
    status: InteractionStatus = InteractionStatus.ACTIVE
    resolved_at: Optional[datetime] = None
    messages: List[MessageRecord] = Field(default_factory=list)
    last_message: Optional[str] = None
    scanner: Dict[str, Any] = Field(default_factory=dict)

    @property
    def scanner_phone(self) -> Optional[str]:
        return self.scanner.get("phoneNumber")


class NotificationPreferences(WireModel):
    push_enabled: bool = True
    chat_enabled: bool = True
    call_enabled: bool = True

    def allows(self, kind: MessageKind) -> bool:
        if not self.push_enabled:
            return False
        if kind == MessageKind.CALL:
            return self.call_enabled
        return self.chat_enabled


class UserProfile(WireModel):
    user_id: str
    push_token: Optional[str] = None
    notification_preferences: NotificationPreferences = Field(default_factory=NotificationPreferences)
    blocked_numbers: List[str] = Field(default_factory=list)


class VehicleProfile(WireModel):
    vehicle_id: str
    display_number: str


# ---- Inbound socket payloads ----

class UserRoomPayload(WireModel):
    user_id: str = Field(..., min_length=1)


class SessionRoomPayload(WireModel):
    session_id: str = Field(..., min_length=1)


class SendMessagePayload(WireModel):
    session_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    sender_id: str = Field(..., min_length=1)
    message_id: Optional[str] = None


class StartCallPayload(WireModel):
    session_id: Optional[str] = None
    target_user_id: str = Field(..., min_length=1)
    signal: Any = None
    caller_id: str = Field(..., min_length=1)
    caller_name: Optional[str] = None


class AnswerCallPayload(WireModel):
    to: str = Field(..., min_length=1)
    signal: Any = None
    from_: Optional[str] = Field(default=None, alias="from")


class IceCandidatePayload(WireModel):
    to: str = Field(..., min_length=1)
    candidate: Dict[str, Any]
    from_: Optional[str] = Field(default=None, alias="from")


class EndCallPayload(WireModel):
    to: str = Field(..., min_length=1)
    session_id: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")


class EndSessionPayload(WireModel):
    session_id: str = Field(..., min_length=1)
    ended_by: str = Field(..., min_length=1)


# ---- Outbound ----

class InteractionSummary(WireModel):
    """Compact update for list views (interaction_update)."""
    interaction_id: str
    contact_type: ContactMode
    status: InteractionStatus
    resolved_at: Optional[datetime] = None
    last_message: Optional[str] = None
    message: Optional[MessageRecord] = None

    @classmethod
    def from_session(cls, session: SessionRecord, message: Optional[MessageRecord] = None) -> "InteractionSummary":
        return cls(
            interaction_id=session.interaction_id,
            contact_type=session.contact_type,
            status=session.status,
            resolved_at=session.resolved_at,
            last_message=session.last_message,
            message=message,
        )


class StatusChangeRequest(BaseModel):
    status: InteractionStatus
