"""
Group Membership Registry - which live connections sit in which broadcast group.

Two group kinds exist: a session group per interaction (chat screen) and a
user group per account (list updates, call delivery). Keys are tagged so a
session and a user that share an identifier never collide.
"""

import asyncio
import enum
import uuid
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import structlog
from fastapi import WebSocket
from fastapi.websockets import WebSocketDisconnect, WebSocketState

logger = structlog.get_logger()


class GroupKind(str, enum.Enum):
    SESSION = "session"
    USER = "user"


@dataclass(frozen=True)
class GroupKey:
    kind: GroupKind
    ident: str

    @classmethod
    def session(cls, session_id: str) -> "GroupKey":
        return cls(GroupKind.SESSION, session_id)

    @classmethod
    def user(cls, user_id: str) -> "GroupKey":
        return cls(GroupKind.USER, user_id)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.ident}"


class Connection:
    """
    One live client. Subclasses implement the actual transport.
    Identity (not equality of fields) decides group membership.
    """

    def __init__(self, connection_id: Optional[str] = None):
        self.connection_id = connection_id or uuid.uuid4().hex

    async def send(self, event: str, data: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.connection_id}>"


class WebSocketConnection(Connection):

    def __init__(self, websocket: WebSocket):
        super().__init__()
        self.websocket = websocket

    async def send(self, event: str, data: Dict[str, Any]) -> bool:
        """
        Returns False instead of raising when the socket is already gone.
        """
        if self.websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await self.websocket.send_json({"event": event, "data": data})
            return True
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug("socket_send_failed", connection_id=self.connection_id, error=str(e))
            return False


class GroupRegistry:
    """
    In-process membership. The lock only covers the two maps; sends happen
    after the member set has been copied out.
    """

    def __init__(self) -> None:
        self._members: Dict[GroupKey, Set[Connection]] = defaultdict(set)
        self._groups_of: Dict[Connection, Set[GroupKey]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def join(self, connection: Connection, key: GroupKey) -> bool:
        """Returns False when the connection was already a member."""
        async with self._lock:
            members = self._members[key]
            if connection in members:
                return False
            members.add(connection)
            self._groups_of[connection].add(key)
        logger.debug("group_joined", group=str(key), connection_id=connection.connection_id)
        return True

    async def leave(self, connection: Connection, key: GroupKey) -> None:
        async with self._lock:
            self._discard(connection, key)
            groups = self._groups_of.get(connection)
            if groups is not None:
                groups.discard(key)
                if not groups:
                    del self._groups_of[connection]

    async def leave_all(self, connection: Connection) -> int:
        async with self._lock:
            groups = self._groups_of.pop(connection, set())
            for key in groups:
                self._discard(connection, key)
        return len(groups)

    def _discard(self, connection: Connection, key: GroupKey) -> None:
        members = self._members.get(key)
        if members is None:
            return
        members.discard(connection)
        if not members:
            del self._members[key]

    async def members(self, key: GroupKey) -> Set[Connection]:
        async with self._lock:
            return set(self._members.get(key, ()))

    async def groups_of(self, connection: Connection) -> Set[GroupKey]:
        async with self._lock:
            return set(self._groups_of.get(connection, ()))

    async def broadcast(self, key: GroupKey, event: str, data: Dict[str, Any]) -> int:
        """
        Deliver to everyone joined at call time. Returns how many sends succeeded.
        """
        recipients = list(await self.members(key))
        if not recipients:
            logger.debug("broadcast_no_members", group=str(key), event_name=event)
            return 0
        results = await asyncio.gather(
            *(c.send(event, data) for c in recipients), return_exceptions=True
        )
        for connection, result in zip(recipients, results):
            if isinstance(result, Exception):
                logger.warning("broadcast_send_error", group=str(key), connection_id=connection.connection_id, error=str(result))
        return sum(1 for ok in results if ok is True)
