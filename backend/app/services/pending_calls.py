from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import structlog

from app.core.config import settings
from app.core.time_utils import get_utc_now

logger = structlog.get_logger()


@dataclass
class PendingCall:
    target_user_id: str
    caller_id: str
    signal: Any = None
    caller_name: Optional[str] = None
    interaction_id: Optional[str] = None
    created_at: datetime = field(default_factory=get_utc_now)

    def to_call_made(self) -> Dict[str, Any]:
        return {
            "signal": self.signal,
            "from": self.caller_id,
            "name": self.caller_name,
            "interactionId": self.interaction_id,
        }


class PendingCallBuffer:
    """
    Call invitations waiting for a target to (re)connect, one per target.

    Expiry is checked on every read; purge_expired() is the eager sweep.
    None of the operations await, so each one is atomic on the event loop.
    """

    def __init__(
        self,
        ttl_seconds: float = settings.PENDING_CALL_TTL_SECONDS,
        clock: Callable[[], datetime] = get_utc_now,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, PendingCall] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, target_user_id: str) -> bool:
        return target_user_id in self._entries

    def now(self) -> datetime:
        return self._clock()

    def put(self, target_user_id: str, entry: PendingCall) -> None:
        if target_user_id in self._entries:
            logger.debug("pending_call_replaced", target_user_id=target_user_id)
        self._entries[target_user_id] = entry

    def _is_live(self, entry: PendingCall, now: datetime) -> bool:
        return now - entry.created_at < self.ttl

    def take(self, target_user_id: str, now: Optional[datetime] = None, consume: bool = False) -> Optional[PendingCall]:
        """
        Return the live entry for target_user_id. An expired entry is deleted
        and never returned. With consume=True a live entry is removed as well.
        """
        entry = self._entries.get(target_user_id)
        if entry is None:
            return None

        now = now or self._clock()
        if not self._is_live(entry, now):
            del self._entries[target_user_id]
            logger.info("pending_call_expired", target_user_id=target_user_id, caller_id=entry.caller_id)
            return None

        if consume:
            del self._entries[target_user_id]
        return entry

    def remove(self, target_user_id: str) -> Optional[PendingCall]:
        return self._entries.pop(target_user_id, None)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        expired = [uid for uid, entry in self._entries.items() if not self._is_live(entry, now)]
        for uid in expired:
            del self._entries[uid]
        if expired:
            logger.info("pending_calls_purged", count=len(expired))
        return len(expired)
