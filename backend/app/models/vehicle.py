from sqlalchemy import Column, String, Boolean

from app.db.base import Base


class Vehicle(Base):
    __tablename__ = "vehicles"

    vehicle_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    vehicle_name = Column(String(128), nullable=True)
    vehicle_number = Column(String(32), nullable=False)  # shown in push titles
    tag_id = Column(String(64), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
