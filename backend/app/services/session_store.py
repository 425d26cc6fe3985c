"""
Session Store - durable interaction records behind a narrow contract.

The relay only ever reads a session, appends to its log, and changes its
status or contact mode. Everything else about interactions (creation, CRUD,
archival, reports) lives outside the relay.
"""

import abc
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from app.core.exceptions import SessionNotFoundError, SessionStoreError
from app.core.time_utils import ensure_utc, get_utc_now
from app.models.interaction import ContactMode, Interaction, InteractionMessage, InteractionStatus
from app.schemas.interaction import MessageRecord, SessionRecord

logger = structlog.get_logger()


class SessionStore(abc.ABC):

    @abc.abstractmethod
    async def find_by_id(self, session_id: str) -> Optional[SessionRecord]:
        ...

    @abc.abstractmethod
    async def append_message(self, session_id: str, message: MessageRecord) -> SessionRecord:
        """Append to the log and set last_message in one write."""

    @abc.abstractmethod
    async def set_status(
        self, session_id: str, status: InteractionStatus, resolved_at: Optional[datetime] = None
    ) -> SessionRecord:
        ...

    @abc.abstractmethod
    async def set_contact_mode(self, session_id: str, mode: ContactMode) -> SessionRecord:
        ...


def resolution_time_for(status: InteractionStatus, resolved_at: Optional[datetime]) -> Optional[datetime]:
    """
    resolved_at is kept iff the status is resolved.
    """
    if status == InteractionStatus.RESOLVED:
        return resolved_at or get_utc_now()
    return None


def _to_record(row: Interaction) -> SessionRecord:
    return SessionRecord(
        interaction_id=row.interaction_id,
        user_id=row.user_id,
        vehicle_id=row.vehicle_id,
        contact_type=ContactMode(row.contact_type),
        status=InteractionStatus(row.status),
        resolved_at=ensure_utc(row.resolved_at),
        last_message=row.last_message,
        scanner=dict(row.scanner or {}),
        messages=[
            MessageRecord(
                message_id=m.message_id,
                sender_id=m.sender_id,
                text=m.text,
                kind=m.kind,
                timestamp=ensure_utc(m.timestamp),
                is_read=m.is_read,
            )
            for m in row.messages
        ],
    )


class SqlSessionStore(SessionStore):
    """
    SessionStore over the async SQLAlchemy models.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def _load(self, db: AsyncSession, session_id: str) -> Optional[Interaction]:
        stmt = (
            select(Interaction)
            .options(selectinload(Interaction.messages))
            .where(Interaction.interaction_id == session_id)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_id(self, session_id: str) -> Optional[SessionRecord]:
        try:
            async with self._session_factory() as db:
                row = await self._load(db, session_id)
                return _to_record(row) if row else None
        except SQLAlchemyError as e:
            logger.error("session_store_read_failed", interaction_id=session_id, error=str(e))
            raise SessionStoreError(str(e)) from e

    async def _update(self, session_id: str, **values) -> SessionRecord:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    update(Interaction)
                    .where(Interaction.interaction_id == session_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    raise SessionNotFoundError(session_id)
                await db.commit()
                row = await self._load(db, session_id)
                return _to_record(row)
        except SQLAlchemyError as e:
            logger.error("session_store_write_failed", interaction_id=session_id, error=str(e))
            raise SessionStoreError(str(e)) from e

    async def append_message(self, session_id: str, message: MessageRecord) -> SessionRecord:
        try:
            async with self._session_factory() as db:
                exists = await db.execute(
                    select(Interaction.interaction_id).where(Interaction.interaction_id == session_id)
                )
                if exists.scalar_one_or_none() is None:
                    raise SessionNotFoundError(session_id)

                # Insert-only append: concurrent writers never overwrite each other's log
                db.add(InteractionMessage(
                    message_id=message.message_id,
                    interaction_id=session_id,
                    sender_id=message.sender_id,
                    text=message.text,
                    kind=message.kind.value,
                    timestamp=message.timestamp,
                    is_read=message.is_read,
                ))
                await db.execute(
                    update(Interaction)
                    .where(Interaction.interaction_id == session_id)
                    .values(last_message=message.text, updated_at=get_utc_now())
                )
                await db.commit()
                row = await self._load(db, session_id)
                return _to_record(row)
        except SQLAlchemyError as e:
            logger.error("session_store_append_failed", interaction_id=session_id, error=str(e))
            raise SessionStoreError(str(e)) from e

    async def set_status(
        self, session_id: str, status: InteractionStatus, resolved_at: Optional[datetime] = None
    ) -> SessionRecord:
        return await self._update(
            session_id,
            status=status.value,
            resolved_at=resolution_time_for(status, resolved_at),
            updated_at=get_utc_now(),
        )

    async def set_contact_mode(self, session_id: str, mode: ContactMode) -> SessionRecord:
        return await self._update(session_id, contact_type=mode.value, updated_at=get_utc_now())
