"""
Session Relay Engine - state machine and routing for scanner/owner sessions.

Inbound socket events are validated against the session's status and the
owner's block list, written to the session store, broadcast to the session
group and/or user groups, and may trigger call buffering or push delivery.

Rules:
- Only the scanner can bring a resolved/ignored/reported session back to active
  (by messaging or calling into it). The owner cannot.
- Ending a call never resolves the session; only end_session does.
- Guard failures go back to the caller as an `error` event and nowhere else.
- Push delivery is fire-and-forget and can never break the broadcast path.
"""

import asyncio
import enum
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Optional, Set

import structlog
from pydantic import ValidationError

from app.core.exceptions import RelayErrorKind, SessionNotFoundError, SessionStoreError
from app.core.time_utils import format_utc, get_utc_now
from app.models.interaction import ContactMode, InteractionStatus, MessageKind
from app.schemas.interaction import (
    SCANNER_ID,
    AnswerCallPayload,
    EndCallPayload,
    EndSessionPayload,
    IceCandidatePayload,
    InteractionSummary,
    MessageRecord,
    SendMessagePayload,
    SessionRecord,
    SessionRoomPayload,
    StartCallPayload,
    UserProfile,
    UserRoomPayload,
)
from app.services.directory import DirectoryLookup, is_blocked
from app.services.group_registry import Connection, GroupKey, GroupRegistry
from app.services.notification_service import NotificationDispatcher
from app.services.pending_calls import PendingCall, PendingCallBuffer
from app.services.session_store import SessionStore

logger = structlog.get_logger()


class GuardOutcome(str, enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    CLOSED = "session_closed"
    BLOCKED = "blocked"


_GUARD_ERRORS = {
    GuardOutcome.NOT_FOUND: (RelayErrorKind.NOT_FOUND, "Interaction not found"),
    GuardOutcome.CLOSED: (RelayErrorKind.SESSION_CLOSED, "This conversation has been closed"),
    GuardOutcome.BLOCKED: (RelayErrorKind.BLOCKED, "You cannot contact this owner"),
}


@dataclass
class GuardResult:
    outcome: GuardOutcome
    session: Optional[SessionRecord] = None
    owner: Optional[UserProfile] = None
    reactivated: bool = False
    # the record as read, before any reactivation write
    original: Optional[SessionRecord] = None

    @property
    def ok(self) -> bool:
        return self.outcome == GuardOutcome.OK


class SessionLocks:
    """
    One asyncio.Lock per interaction id, dropped once nobody holds or waits on it.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class RelayEngine:

    # inbound event name -> (payload model, handler)
    EVENTS = {
        "join_user_room": (UserRoomPayload, "join_user_room"),
        "leave_user_room": (UserRoomPayload, "leave_user_room"),
        "join_room": (SessionRoomPayload, "join_room"),
        "leave_room": (SessionRoomPayload, "leave_room"),
        "send_message": (SendMessagePayload, "send_message"),
        "start_call": (StartCallPayload, "start_call"),
        "answer_call": (AnswerCallPayload, "answer_call"),
        "ice_candidate": (IceCandidatePayload, "ice_candidate"),
        "end_call": (EndCallPayload, "end_call"),
        "end_session": (EndSessionPayload, "end_session"),
    }

    def __init__(
        self,
        store: SessionStore,
        directory: DirectoryLookup,
        dispatcher: NotificationDispatcher,
        registry: Optional[GroupRegistry] = None,
        pending_calls: Optional[PendingCallBuffer] = None,
    ):
        self.store = store
        self.directory = directory
        self.dispatcher = dispatcher
        self.registry = registry if registry is not None else GroupRegistry()
        self.pending_calls = pending_calls if pending_calls is not None else PendingCallBuffer()
        self._locks = SessionLocks()
        self._push_tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def dispatch(self, connection: Connection, frame: Any) -> None:
        """
        Route one inbound frame {"event": ..., "data": {...}} to its handler.
        """
        event = frame.get("event") if isinstance(frame, dict) else None
        route = self.EVENTS.get(event)
        if route is None:
            await self._emit_error(connection, event, RelayErrorKind.UNKNOWN_EVENT, f"Unknown event: {event}")
            return

        model, handler_name = route
        try:
            payload = model.model_validate(frame.get("data") or {})
        except ValidationError as e:
            await self._emit_error(
                connection, event, RelayErrorKind.INVALID_PAYLOAD,
                "; ".join(f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()),
            )
            return

        with structlog.contextvars.bound_contextvars(connection_id=connection.connection_id, event_name=event):
            try:
                await getattr(self, handler_name)(connection, payload)
            except Exception as e:
                logger.exception("relay_handler_failed", error=str(e))
                await self._emit_error(connection, event, RelayErrorKind.INTERNAL, "Something went wrong")

    async def disconnect(self, connection: Connection) -> None:
        left = await self.registry.leave_all(connection)
        logger.info("socket_disconnected", connection_id=connection.connection_id, groups_left=left)

    async def emit_to_user(self, user_id: str, event: str, data: Dict[str, Any]) -> int:
        return await self.registry.broadcast(GroupKey.user(user_id), event, data)

    # ------------------------------------------------------------------
    # Session-write guard
    # ------------------------------------------------------------------

    async def guard_session_write(self, session_id: str, writer_id: str) -> GuardResult:
        """
        Decide whether writer_id may write into the session right now.

        The block check runs before anything is mutated. A closed session is
        reactivated here when (and only when) the writer is the scanner.
        Callers must hold the session lock.
        """
        session = await self.store.find_by_id(session_id)
        if session is None:
            return GuardResult(GuardOutcome.NOT_FOUND)

        is_scanner = writer_id == SCANNER_ID
        owner = None
        if is_scanner:
            owner = await self.directory.find_user(session.user_id)
            if is_blocked(owner, session.scanner_phone):
                return GuardResult(GuardOutcome.BLOCKED, session, owner)

        if session.status == InteractionStatus.ACTIVE:
            return GuardResult(GuardOutcome.OK, session, owner)

        if not is_scanner:
            return GuardResult(GuardOutcome.CLOSED, session, owner)

        original = session
        session = await self.store.set_status(session_id, InteractionStatus.ACTIVE, None)
        logger.info("interaction_reactivated", interaction_id=session_id, previous_status=original.status.value)
        return GuardResult(GuardOutcome.OK, session, owner, reactivated=True, original=original)

    # ------------------------------------------------------------------
    # Membership events
    # ------------------------------------------------------------------

    async def join_user_room(self, connection: Connection, payload: UserRoomPayload) -> None:
        await self.registry.join(connection, GroupKey.user(payload.user_id))

        entry = self.pending_calls.take(payload.user_id, consume=True)
        if entry is None:
            return
        if await connection.send("callMade", entry.to_call_made()):
            logger.info("pending_call_delivered", target_user_id=payload.user_id, caller_id=entry.caller_id)
        else:
            # Socket went away before the ring got out; keep it for the next join
            self.pending_calls.put(payload.user_id, entry)

    async def leave_user_room(self, connection: Connection, payload: UserRoomPayload) -> None:
        await self.registry.leave(connection, GroupKey.user(payload.user_id))

    async def join_room(self, connection: Connection, payload: SessionRoomPayload) -> None:
        await self.registry.join(connection, GroupKey.session(payload.session_id))

    async def leave_room(self, connection: Connection, payload: SessionRoomPayload) -> None:
        await self.registry.leave(connection, GroupKey.session(payload.session_id))

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def send_message(self, connection: Connection, payload: SendMessagePayload) -> None:
        session_id = payload.session_id

        async with self._locks.hold(session_id):
            guard = None
            upgraded = False
            try:
                guard = await self.guard_session_write(session_id, payload.sender_id)
                if not guard.ok:
                    await self._reject(connection, "send_message", guard)
                    return

                session = guard.session
                if not session.messages and session.contact_type == ContactMode.SCAN:
                    session = await self.store.set_contact_mode(session_id, ContactMode.CHAT)
                    upgraded = True

                message = MessageRecord(
                    message_id=payload.message_id or uuid.uuid4().hex,
                    sender_id=payload.sender_id,
                    text=payload.text,
                    kind=MessageKind.TEXT,
                    timestamp=get_utc_now(),
                    is_read=False,
                )
                session = await self.store.append_message(session_id, message)
            except SessionNotFoundError:
                await self._reject(connection, "send_message", GuardResult(GuardOutcome.NOT_FOUND))
                return
            except SessionStoreError as e:
                if guard is not None and guard.ok:
                    await self._roll_back(guard, upgraded)
                await self._persistence_failed(connection, "send_message", session_id, e)
                return

            await self._publish_message(session, message)
            if guard.reactivated:
                await self._publish_status(session)
            await self._publish_summary(session, message)

        logger.info("message_relayed", interaction_id=session_id, sender_id=payload.sender_id)

        if payload.sender_id == SCANNER_ID:
            self._schedule_push(self._notify_owner_of_message(session, guard.owner, message))

    async def _roll_back(self, guard: GuardResult, upgraded: bool) -> None:
        """
        Undo the guard's reactivation and the contact-mode upgrade after the
        write they were made for failed, so the stored session matches what
        clients were last told.
        """
        original = guard.original or guard.session
        session_id = original.interaction_id
        try:
            if upgraded:
                await self.store.set_contact_mode(session_id, original.contact_type)
            if guard.reactivated:
                await self.store.set_status(session_id, original.status, original.resolved_at)
        except SessionStoreError as e:
            logger.error("session_rollback_failed", interaction_id=session_id, error=str(e))
            return
        logger.info("session_write_rolled_back", interaction_id=session_id, status=original.status.value)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def start_call(self, connection: Connection, payload: StartCallPayload) -> None:
        session_id = payload.session_id
        if not session_id:
            await self._place_call(payload)
            return

        # Held for the whole flow so an end_session can't land between the
        # ring and the call entry in the log
        async with self._locks.hold(session_id):
            guard = None
            upgraded = False
            try:
                guard = await self.guard_session_write(session_id, payload.caller_id)
                if not guard.ok:
                    await self._reject(connection, "start_call", guard)
                    return
                if guard.session.contact_type != ContactMode.CALL:
                    await self.store.set_contact_mode(session_id, ContactMode.CALL)
                    upgraded = True

                message = MessageRecord(
                    message_id=uuid.uuid4().hex,
                    sender_id=payload.caller_id,
                    text="Voice call started",
                    kind=MessageKind.CALL,
                    timestamp=get_utc_now(),
                )
                session = await self.store.append_message(session_id, message)
            except SessionNotFoundError:
                await self._reject(connection, "start_call", GuardResult(GuardOutcome.NOT_FOUND))
                return
            except SessionStoreError as e:
                if guard is not None and guard.ok:
                    await self._roll_back(guard, upgraded)
                await self._persistence_failed(connection, "start_call", session_id, e)
                return

            if guard.reactivated:
                await self._publish_status(session)
            await self.registry.broadcast(
                GroupKey.user(payload.target_user_id), "interaction_update",
                InteractionSummary.from_session(session).to_wire(),
            )
            await self._place_call(payload)
            await self._publish_message(session, message)

    async def _place_call(self, payload: StartCallPayload) -> None:
        target = payload.target_user_id
        entry = PendingCall(
            target_user_id=target,
            caller_id=payload.caller_id,
            signal=payload.signal,
            caller_name=payload.caller_name,
            interaction_id=payload.session_id,
            created_at=self.pending_calls.now(),
        )
        live = await self.registry.broadcast(GroupKey.user(target), "callMade", entry.to_call_made())
        # Buffered even when delivered live: the target may be mid-reconnect
        self.pending_calls.put(target, entry)
        logger.info("call_placed", target_user_id=target, caller_id=payload.caller_id, live_receivers=live)

        self._schedule_push(self._notify_incoming_call(entry))

    async def answer_call(self, connection: Connection, payload: AnswerCallPayload) -> None:
        if payload.from_:
            # Answered somewhere; don't ring the answerer again on reconnect
            self.pending_calls.remove(payload.from_)
        await self.registry.broadcast(
            GroupKey.user(payload.to), "callAccepted", {"signal": payload.signal, "from": payload.from_}
        )

    async def ice_candidate(self, connection: Connection, payload: IceCandidatePayload) -> None:
        await self.registry.broadcast(
            GroupKey.user(payload.to), "iceCandidate", {"candidate": payload.candidate, "from": payload.from_}
        )

    async def end_call(self, connection: Connection, payload: EndCallPayload) -> None:
        self.pending_calls.remove(payload.to)
        await self.registry.broadcast(
            GroupKey.user(payload.to), "callEnded", {"interactionId": payload.session_id, "from": payload.from_}
        )
        logger.info("call_ended", target_user_id=payload.to, interaction_id=payload.session_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def end_session(self, connection: Connection, payload: EndSessionPayload) -> None:
        session_id = payload.session_id

        async with self._locks.hold(session_id):
            try:
                session = await self.store.find_by_id(session_id)
                if session is None:
                    await self._reject(connection, "end_session", GuardResult(GuardOutcome.NOT_FOUND))
                    return
                if session.status != InteractionStatus.ACTIVE:
                    await self._reject(connection, "end_session", GuardResult(GuardOutcome.CLOSED, session))
                    return
                session = await self.store.set_status(session_id, InteractionStatus.RESOLVED, get_utc_now())
            except SessionNotFoundError:
                await self._reject(connection, "end_session", GuardResult(GuardOutcome.NOT_FOUND))
                return
            except SessionStoreError as e:
                await self._persistence_failed(connection, "end_session", session_id, e)
                return

            await self.registry.broadcast(GroupKey.session(session_id), "session_ended", {
                "interactionId": session_id,
                "endedBy": payload.ended_by,
                "status": session.status.value,
                "resolvedAt": format_utc(session.resolved_at),
            })
            await self._publish_summary(session)

        logger.info("interaction_resolved", interaction_id=session_id, ended_by=payload.ended_by)

    async def change_status(self, session_id: str, status: InteractionStatus) -> SessionRecord:
        """
        Apply a status change decided outside the relay (report filed, owner
        ignoring from the list view, ...) and tell the connected clients.
        Raises SessionNotFoundError for an unknown session.
        """
        async with self._locks.hold(session_id):
            session = await self.store.find_by_id(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status == status:
                return session

            resolved_at = get_utc_now() if status == InteractionStatus.RESOLVED else None
            session = await self.store.set_status(session_id, status, resolved_at)
            await self._publish_status(session)
            await self._publish_summary(session)

        logger.info("interaction_status_changed", interaction_id=session_id, status=status.value)
        return session

    # ------------------------------------------------------------------
    # Broadcast helpers
    # ------------------------------------------------------------------

    async def _publish_message(self, session: SessionRecord, message: MessageRecord) -> None:
        data = message.to_wire()
        data["interactionId"] = session.interaction_id
        await self.registry.broadcast(GroupKey.session(session.interaction_id), "receive_message", data)

    async def _publish_status(self, session: SessionRecord) -> None:
        await self.registry.broadcast(GroupKey.session(session.interaction_id), "status_update", {
            "interactionId": session.interaction_id,
            "status": session.status.value,
            "resolvedAt": format_utc(session.resolved_at),
        })

    async def _publish_summary(self, session: SessionRecord, message: Optional[MessageRecord] = None) -> None:
        summary = InteractionSummary.from_session(session, message)
        await self.registry.broadcast(GroupKey.user(session.user_id), "interaction_update", summary.to_wire())

    async def _emit_error(self, connection: Connection, event: Optional[str], kind: RelayErrorKind, message: str) -> None:
        await connection.send("error", {"kind": kind.value, "event": event, "message": message})

    async def _reject(self, connection: Connection, event: str, guard: GuardResult) -> None:
        kind, message = _GUARD_ERRORS[guard.outcome]
        logger.info("session_write_rejected", reason=guard.outcome.value, event_name=event)
        await self._emit_error(connection, event, kind, message)

    async def _persistence_failed(self, connection: Connection, event: str, session_id: str, exc: Exception) -> None:
        logger.error("session_write_failed", interaction_id=session_id, event_name=event, error=str(exc))
        await self._emit_error(connection, event, RelayErrorKind.PERSISTENCE_FAILURE, "Could not save your change")

    # ------------------------------------------------------------------
    # Push notifications (background, best effort)
    # ------------------------------------------------------------------

    def _schedule_push(self, job: Awaitable[None]) -> None:
        task = asyncio.create_task(self._run_push(job))
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)

    async def _run_push(self, job: Awaitable[None]) -> None:
        try:
            await job
        except Exception as e:
            logger.error("push_dispatch_failed", kind=RelayErrorKind.DELIVERY_FAILURE.value, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight push jobs (shutdown, tests)."""
        while self._push_tasks:
            await asyncio.gather(*list(self._push_tasks), return_exceptions=True)

    async def _notify_owner_of_message(
        self, session: SessionRecord, owner: Optional[UserProfile], message: MessageRecord
    ) -> None:
        owner = owner or await self.directory.find_user(session.user_id)
        if owner is None or not owner.push_token:
            return
        if not owner.notification_preferences.allows(MessageKind.TEXT):
            logger.debug("push_muted", user_id=owner.user_id, kind="chat")
            return

        vehicle = await self.directory.find_vehicle(session.vehicle_id)
        title = f"New message about {vehicle.display_number}" if vehicle else "New message"
        outcome = await self.dispatcher.send(
            owner.push_token, title, message.text,
            {"type": "chat", "interactionId": session.interaction_id},
        )
        if not outcome.success:
            logger.warning(
                "push_delivery_failed", kind=RelayErrorKind.DELIVERY_FAILURE.value,
                user_id=owner.user_id, error=outcome.error,
            )

    async def _notify_incoming_call(self, entry: PendingCall) -> None:
        profile = await self.directory.find_user(entry.target_user_id)
        if profile is None or not profile.push_token:
            return
        if not profile.notification_preferences.allows(MessageKind.CALL):
            logger.debug("push_muted", user_id=profile.user_id, kind="call")
            return

        outcome = await self.dispatcher.send(
            profile.push_token,
            "Incoming call",
            f"{entry.caller_name or 'Someone'} is calling you",
            {
                "type": "call",
                "interactionId": entry.interaction_id,
                "callerId": entry.caller_id,
                "callerName": entry.caller_name,
            },
        )
        if not outcome.success:
            logger.warning(
                "push_delivery_failed", kind=RelayErrorKind.DELIVERY_FAILURE.value,
                user_id=profile.user_id, error=outcome.error,
            )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    async def sweep_pending_calls(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            self.pending_calls.purge_expired()
