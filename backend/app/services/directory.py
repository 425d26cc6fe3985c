import abc
import re
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.user import User
from app.models.vehicle import Vehicle
from app.schemas.interaction import NotificationPreferences, UserProfile, VehicleProfile

logger = structlog.get_logger()

_NON_DIGITS = re.compile(r"[^\d+]")


def normalize_number(number: Optional[str]) -> str:
    """
    Strip formatting from a phone number ("+91 98765-43210" -> "+919876543210").
    """
    if not number:
        return ""
    return _NON_DIGITS.sub("", number)


def is_blocked(profile: Optional[UserProfile], number: Optional[str]) -> bool:
    if profile is None or not number:
        return False
    wanted = normalize_number(number)
    return any(normalize_number(n) == wanted for n in profile.blocked_numbers)


class DirectoryLookup(abc.ABC):

    @abc.abstractmethod
    async def find_user(self, user_id: str) -> Optional[UserProfile]:
        ...

    @abc.abstractmethod
    async def find_vehicle(self, vehicle_id: str) -> Optional[VehicleProfile]:
        ...


class SqlDirectory(DirectoryLookup):

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def find_user(self, user_id: str) -> Optional[UserProfile]:
        async with self._session_factory() as db:
            result = await db.execute(select(User).where(User.user_id == user_id))
            user = result.scalar_one_or_none()

        if not user:
            logger.debug("directory_user_missing", user_id=user_id)
            return None

        return UserProfile(
            user_id=user.user_id,
            push_token=user.push_token,
            notification_preferences=NotificationPreferences.model_validate(user.notification_preferences or {}),
            blocked_numbers=list(user.blocked_numbers or []),
        )

    async def find_vehicle(self, vehicle_id: str) -> Optional[VehicleProfile]:
        async with self._session_factory() as db:
            result = await db.execute(select(Vehicle).where(Vehicle.vehicle_id == vehicle_id))
            vehicle = result.scalar_one_or_none()

        if not vehicle:
            return None
        return VehicleProfile(vehicle_id=vehicle.vehicle_id, display_number=vehicle.vehicle_number)
