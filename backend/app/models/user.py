from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, JSON

from app.db.base import Base


class User(Base):
    """
    Vehicle owner profile, read by the relay for push delivery and block checks.
    """
    __tablename__ = "users"

    user_id = Column(String(64), primary_key=True)
    phone_number = Column(String(32), nullable=False)
    name = Column(String(128), nullable=True)
    status = Column(String(16), nullable=False, default="active")

    push_token = Column(String(255), nullable=True)  # ExponentPushToken[...]
    # {"pushEnabled": bool, "chatEnabled": bool, "callEnabled": bool}
    notification_preferences = Column(JSON, default=dict, nullable=False)
    blocked_numbers = Column(JSON, default=list, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
