import enum

from sqlalchemy import (
    CheckConstraint, Column, DateTime, Enum, Float, ForeignKey, Index, Integer, String, Time, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base


class SessionState(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class VehicleType(str, enum.Enum):
    CAR = "car"
    MOTO = "moto"


class PhotoKind(str, enum.Enum):
    ENTRY_RIGHT = "entry_right"
    ENTRY_LEFT = "entry_left"
    ENTRY_REAR = "entry_rear"
    EXIT = "exit"


ENTRY_KINDS = (PhotoKind.ENTRY_RIGHT, PhotoKind.ENTRY_LEFT, PhotoKind.ENTRY_REAR)


def _values(enum_cls):
    return [member.value for member in enum_cls]


class ParkingSession(Base):
    __tablename__ = "parking_sessions"
    __table_args__ = (
        # Не больше одной активной сессии на номер
        Index(
            "ix_parking_sessions_active_plate",
            "plate",
            unique=True,
            sqlite_where=text("state = 'active'"),
            postgresql_where=text("state = 'active'"),
        ),
        CheckConstraint(
            "(state = 'active' AND exit_time IS NULL AND cost IS NULL)"
            " OR (state = 'closed' AND exit_time IS NOT NULL AND cost IS NOT NULL)",
            name="ck_parking_sessions_state_fields",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    plate = Column(String(10), index=True, nullable=False)
    vehicle_type = Column(
        Enum(VehicleType, native_enum=False, values_callable=_values),
        nullable=False,
        default=VehicleType.CAR,
    )
    entry_time = Column(Time, nullable=False)
    exit_time = Column(Time, nullable=True)
    cost = Column(Float, nullable=True)
    state = Column(
        Enum(SessionState, native_enum=False, values_callable=_values),
        nullable=False,
        default=SessionState.ACTIVE,
    )
    photo_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())

    photos = relationship("Photo", back_populates="session")


class Photo(Base):
    __tablename__ = "photos"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("parking_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
    kind = Column(Enum(PhotoKind, native_enum=False, values_callable=_values), nullable=False)
    image_url = Column(String(255), nullable=False)
    detected_plate = Column(String(10), nullable=True)
    confidence = Column(Float, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    session = relationship("ParkingSession", back_populates="photos")


class TariffConfig(Base):
    __tablename__ = "tariff_config"

    id = Column(Integer, primary_key=True, index=True)
    hourly_rate = Column(Float, nullable=True)
    monthly_price = Column(Float, nullable=True)
    monthly_price_moto = Column(Float, nullable=True)
    monthly_price_car = Column(Float, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class TariffChange(Base):
    """Журнал изменений тарифов, только добавление"""
    __tablename__ = "tariff_changes"

    id = Column(Integer, primary_key=True, index=True)
    field = Column(String(32), nullable=False)
    value = Column(Float, nullable=False)
    changed_by = Column(String(100), nullable=True)
    changed_at = Column(DateTime, server_default=func.now())
