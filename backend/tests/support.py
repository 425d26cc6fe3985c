"""
In-memory stand-ins for the relay's collaborators.
"""

from typing import Any, Dict, List, Optional, Tuple

from app.core.exceptions import SessionNotFoundError, SessionStoreError
from app.core.time_utils import get_utc_now
from app.models.interaction import ContactMode, InteractionStatus
from app.schemas.interaction import (
    MessageRecord,
    NotificationPreferences,
    SessionRecord,
    UserProfile,
    VehicleProfile,
)
from app.services.directory import DirectoryLookup
from app.services.group_registry import Connection
from app.services.notification_service import PushOutcome
from app.services.session_store import SessionStore, resolution_time_for

OWNER_ID = "user_owner1"
SESSION_ID = "int_001"
VEHICLE_ID = "veh_001"
SCANNER_PHONE = "+91 98765 43210"
OWNER_TOKEN = "ExponentPushToken[owner-device]"


class RecordingConnection(Connection):
    def __init__(self, name: Optional[str] = None, alive: bool = True):
        super().__init__(name)
        self.alive = alive
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def send(self, event: str, data: Dict[str, Any]) -> bool:
        if not self.alive:
            return False
        self.events.append((event, data))
        return True

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [data for name, data in self.events if name == event]

    def event_names(self) -> List[str]:
        return [name for name, _ in self.events]


class InMemorySessionStore(SessionStore):

    def __init__(self):
        self.sessions: Dict[str, SessionRecord] = {}
        self.writes = 0
        self.fail_appends = False

    def add(self, **overrides) -> SessionRecord:
        values = dict(
            interaction_id=SESSION_ID,
            user_id=OWNER_ID,
            vehicle_id=VEHICLE_ID,
            scanner={"phoneNumber": SCANNER_PHONE, "ip": "10.0.0.7"},
        )
        values.update(overrides)
        record = SessionRecord(**values)
        self.sessions[record.interaction_id] = record
        return record

    def _get(self, session_id: str) -> SessionRecord:
        if session_id not in self.sessions:
            raise SessionNotFoundError(session_id)
        return self.sessions[session_id]

    def _save(self, record: SessionRecord) -> SessionRecord:
        self.writes += 1
        self.sessions[record.interaction_id] = record
        return record.model_copy(deep=True)

    async def find_by_id(self, session_id: str) -> Optional[SessionRecord]:
        record = self.sessions.get(session_id)
        return record.model_copy(deep=True) if record else None

    async def append_message(self, session_id: str, message: MessageRecord) -> SessionRecord:
        if self.fail_appends:
            raise SessionStoreError("disk full")
        record = self._get(session_id)
        return self._save(record.model_copy(update={
            "messages": record.messages + [message],
            "last_message": message.text,
        }))

    async def set_status(self, session_id, status, resolved_at=None) -> SessionRecord:
        record = self._get(session_id)
        return self._save(record.model_copy(update={
            "status": status,
            "resolved_at": resolution_time_for(status, resolved_at),
        }))

    async def set_contact_mode(self, session_id, mode: ContactMode) -> SessionRecord:
        record = self._get(session_id)
        return self._save(record.model_copy(update={"contact_type": mode}))


class InMemoryDirectory(DirectoryLookup):

    def __init__(self):
        self.users: Dict[str, UserProfile] = {}
        self.vehicles: Dict[str, VehicleProfile] = {}

    def add_owner(self, user_id: str = OWNER_ID, token: str = OWNER_TOKEN, blocked=(), **prefs) -> UserProfile:
        profile = UserProfile(
            user_id=user_id,
            push_token=token,
            blocked_numbers=list(blocked),
            notification_preferences=NotificationPreferences(**prefs),
        )
        self.users[user_id] = profile
        return profile

    async def find_user(self, user_id: str) -> Optional[UserProfile]:
        return self.users.get(user_id)

    async def find_vehicle(self, vehicle_id: str) -> Optional[VehicleProfile]:
        return self.vehicles.get(vehicle_id)


class RecordingDispatcher:
    """Quacks like NotificationDispatcher.send."""

    def __init__(self, succeed: bool = True, raise_error: Optional[Exception] = None):
        self.succeed = succeed
        self.raise_error = raise_error
        self.sent: List[Dict[str, Any]] = []

    async def send(self, token, title, body, data=None) -> PushOutcome:
        if self.raise_error:
            raise self.raise_error
        self.sent.append({"token": token, "title": title, "body": body, "data": data or {}})
        if self.succeed:
            return PushOutcome(success=True, ticket={"status": "ok"})
        return PushOutcome(success=False, error="DeviceNotRegistered")


class Clock:
    def __init__(self, start=None):
        self.current = start or get_utc_now()

    def __call__(self):
        return self.current

    def advance(self, **delta):
        from datetime import timedelta
        self.current = self.current + timedelta(**delta)
