import logging
import math
from datetime import time
from typing import List, Optional, Tuple

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TARIFF_FIELDS = ("hourly_rate", "monthly_price", "monthly_price_moto", "monthly_price_car")
CANONICAL_TARIFF_ID = 1

ENTRY_KIND_ORDER = {kind: index for index, kind in enumerate(models.ENTRY_KINDS)}

# Parking sessions
def get_session(db: Session, session_id: int) -> Optional[models.ParkingSession]:
    return db.query(models.ParkingSession).filter(models.ParkingSession.id == session_id).first()

def get_active_session_by_plate(db: Session, plate: str) -> Optional[models.ParkingSession]:
    return db.query(models.ParkingSession).filter(
        models.ParkingSession.plate == plate,
        models.ParkingSession.state == models.SessionState.ACTIVE,
    ).order_by(desc(models.ParkingSession.id)).first()

def get_sessions(db: Session, active: Optional[bool] = None, plate: Optional[str] = None,
                 limit: Optional[int] = None) -> List[models.ParkingSession]:
    query = db.query(models.ParkingSession)

    if active is not None:
        state = models.SessionState.ACTIVE if active else models.SessionState.CLOSED
        query = query.filter(models.ParkingSession.state == state)

    if plate:
        query = query.filter(models.ParkingSession.plate.contains(plate.upper()))

    query = query.order_by(desc(models.ParkingSession.id))
    if limit:
        query = query.limit(limit)
    return query.all()

def _insert_session(db: Session, plate: str, entry_time: time,
                    vehicle_type: models.VehicleType) -> models.ParkingSession:
    db_session = models.ParkingSession(
        plate=plate,
        entry_time=entry_time,
        vehicle_type=vehicle_type,
        state=models.SessionState.ACTIVE,
        photo_count=0,
    )
    db.add(db_session)
    db.commit()
    db.refresh(db_session)
    return db_session

def create_session(db: Session, plate: str, entry_time: time,
                   vehicle_type: models.VehicleType = models.VehicleType.CAR) -> models.ParkingSession:
    """Ручная регистрация въезда; повтор для активного номера - конфликт"""
    if get_active_session_by_plate(db, plate):
        raise ConflictError("Для этого номера уже есть активная запись")
    try:
        return _insert_session(db, plate, entry_time, vehicle_type)
    except IntegrityError:
        db.rollback()
        raise ConflictError("Для этого номера уже есть активная запись")

def find_or_create_active_session(db: Session, plate: str, entry_time: time,
                                  vehicle_type: models.VehicleType = models.VehicleType.CAR,
                                  ) -> Tuple[models.ParkingSession, bool]:
    """Активная сессия для номера; создается, если ее нет. Возвращает (сессия, создана)"""
    existing = get_active_session_by_plate(db, plate)
    if existing:
        return existing, False

    try:
        return _insert_session(db, plate, entry_time, vehicle_type), True
    except IntegrityError:
        # Параллельный запрос успел создать сессию: используем ее
        db.rollback()
        existing = get_active_session_by_plate(db, plate)
        if existing is None:
            raise
        logger.info(f"Сессия для {plate} создана параллельным запросом, используем ID {existing.id}")
        return existing, False

def close_session(db: Session, session_id: int, exit_time: time, cost: float) -> bool:
    """Закрытие одним UPDATE: состояние, время выезда и стоимость вместе"""
    updated = db.query(models.ParkingSession).filter(
        models.ParkingSession.id == session_id,
        models.ParkingSession.state == models.SessionState.ACTIVE,
    ).update(
        {
            models.ParkingSession.state: models.SessionState.CLOSED,
            models.ParkingSession.exit_time: exit_time,
            models.ParkingSession.cost: cost,
        },
        synchronize_session=False,
    )
    db.commit()
    return updated == 1

def update_vehicle_type(db: Session, session_id: int,
                        vehicle_type: models.VehicleType) -> Optional[models.ParkingSession]:
    db_session = get_session(db, session_id)
    if db_session:
        db_session.vehicle_type = vehicle_type
        db.commit()
        db.refresh(db_session)
    return db_session

def refresh_photo_count(db: Session, session_id: int) -> int:
    """photo_count = число сохраненных фото въезда сессии"""
    count = db.query(models.Photo).filter(
        models.Photo.session_id == session_id,
        models.Photo.kind.in_(models.ENTRY_KINDS),
    ).count()
    db.query(models.ParkingSession).filter(
        models.ParkingSession.id == session_id
    ).update({models.ParkingSession.photo_count: count}, synchronize_session=False)
    db.commit()
    return count

# Photos
def create_photo(db: Session, session_id: int, image_url: str, kind: models.PhotoKind,
                 detected_plate: Optional[str] = None,
                 confidence: Optional[float] = None) -> models.Photo:
    db_photo = models.Photo(
        session_id=session_id,
        image_url=image_url,
        kind=kind,
        detected_plate=detected_plate,
        confidence=confidence,
    )
    db.add(db_photo)
    db.commit()
    db.refresh(db_photo)
    return db_photo

def get_photo(db: Session, photo_id: int) -> Optional[models.Photo]:
    return db.query(models.Photo).filter(models.Photo.id == photo_id).first()

def get_entry_photos(db: Session, session_id: int) -> List[models.Photo]:
    """Фото въезда в порядке ракурсов: справа, слева, сзади"""
    photos = db.query(models.Photo).filter(
        models.Photo.session_id == session_id,
        models.Photo.kind.in_(models.ENTRY_KINDS),
    ).order_by(models.Photo.id).all()
    return sorted(photos, key=lambda photo: ENTRY_KIND_ORDER[photo.kind])

def update_photo_plate(db: Session, photo_id: int, plate: str) -> Optional[models.Photo]:
    db_photo = get_photo(db, photo_id)
    if db_photo:
        db_photo.detected_plate = plate
        db_photo.confidence = 1.0
        db.commit()
        db.refresh(db_photo)
    return db_photo

def delete_photo(db: Session, photo_id: int) -> Optional[models.Photo]:
    db_photo = get_photo(db, photo_id)
    if db_photo:
        db.delete(db_photo)
        db.commit()
    return db_photo

# Tariffs
def get_tariff(db: Session) -> Optional[models.TariffConfig]:
    return db.query(models.TariffConfig).order_by(desc(models.TariffConfig.id)).first()

def get_hourly_rate(db: Session) -> Optional[float]:
    tariff = get_tariff(db)
    return tariff.hourly_rate if tariff else None

def write_tariff(db: Session, field: str, value: float,
                 changed_by: Optional[str] = None) -> models.TariffConfig:
    """Запись в каноническую строку тарифа и в журнал изменений"""
    if field not in TARIFF_FIELDS:
        raise NotFoundError(f"Неизвестный параметр тарифа: {field}")
    # NaN и бесконечность тоже отклоняются
    if value is None or not math.isfinite(value) or value <= 0:
        raise ValidationError("Значение должно быть конечным числом больше нуля")

    db_tariff = db.query(models.TariffConfig).filter(
        models.TariffConfig.id == CANONICAL_TARIFF_ID
    ).first()
    if db_tariff is None:
        db_tariff = models.TariffConfig(id=CANONICAL_TARIFF_ID)
        db.add(db_tariff)

    setattr(db_tariff, field, value)
    db.add(models.TariffChange(field=field, value=value, changed_by=changed_by))
    db.commit()
    db.refresh(db_tariff)
    return db_tariff

def seed_tariff(db: Session, defaults: dict) -> Optional[models.TariffConfig]:
    """Создать тариф по умолчанию, если таблица пуста"""
    if get_tariff(db):
        return None
    db_tariff = models.TariffConfig(id=CANONICAL_TARIFF_ID, **defaults)
    db.add(db_tariff)
    db.commit()
    db.refresh(db_tariff)
    return db_tariff
