"""
Interaction Model - one scanner-to-owner contact episode and its message log.
"""

import enum
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Text, DateTime, Boolean, Integer, ForeignKey, JSON, UniqueConstraint
from sqlalchemy.orm import relationship

from app.db.base import Base


class InteractionStatus(str, enum.Enum):
    ACTIVE = 'active'
    RESOLVED = 'resolved'
    IGNORED = 'ignored'
    REPORTED = 'reported'


class ContactMode(str, enum.Enum):
    SCAN = 'scan'
    CHAT = 'chat'
    CALL = 'call'


class MessageKind(str, enum.Enum):
    TEXT = 'text'
    CALL = 'call'


class Interaction(Base):
    """
    Session record. resolved_at is only ever set while status is 'resolved'.
    """
    __tablename__ = "interactions"

    interaction_id = Column(String(64), primary_key=True, default=lambda: uuid.uuid4().hex)
    user_id = Column(String(64), nullable=False, index=True)    # owner
    vehicle_id = Column(String(64), nullable=False, index=True)
    type = Column(String(64), nullable=False, default="Scan")  # e.g. Wrong Parking

    contact_type = Column(String(16), nullable=False, default=ContactMode.SCAN.value)
    status = Column(String(16), nullable=False, default=InteractionStatus.ACTIVE.value, index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    # Scanner fingerprint captured at session start: phoneNumber, ip, userAgent, platform, ...
    scanner = Column(JSON, default=dict, nullable=False)
    last_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    messages = relationship(
        "InteractionMessage",
        back_populates="interaction",
        order_by="InteractionMessage.seq",
        cascade="all, delete-orphan",
    )


class InteractionMessage(Base):
    """
    Append-only log entry. seq gives append order.
    """
    __tablename__ = "interaction_messages"
    __table_args__ = (
        # client-supplied ids may repeat across interactions
        UniqueConstraint("interaction_id", "message_id", name="uq_interaction_message_id"),
    )

    seq = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(64), nullable=False, index=True)
    interaction_id = Column(String(64), ForeignKey("interactions.interaction_id"), nullable=False, index=True)

    sender_id = Column(String(64), nullable=False)  # 'scanner' or owner's user id
    text = Column(Text, nullable=False)
    kind = Column(String(16), nullable=False, default=MessageKind.TEXT.value)
    timestamp = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    is_read = Column(Boolean, default=False, nullable=False)

    interaction = relationship("Interaction", back_populates="messages")
