import logging
import threading
import time as time_module
from dataclasses import dataclass
from datetime import datetime, time
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from . import crud, models
from .config import settings
from .errors import InfrastructureError, NotFoundError, ValidationError
from .photo_storage import PhotoStorage
from .plate_format import canonical_plate
from .plate_recognition import PlateRecognitionService, RecognitionResult
from .tariff_service import Charge, TariffService

logger = logging.getLogger(__name__)

MAX_PHOTOS_PER_BURST = 3
FIRST_ANGLE = models.PhotoKind.ENTRY_RIGHT


class BurstTracker:
    """Текущая серия снимков въезда: к какой сессии относятся следующие ракурсы.

    Не больше MAX_PHOTOS_PER_BURST снимков на серию. photo_count сессии
    от серии не зависит: это число сохраненных фото въезда.
    """

    def __init__(self, window_seconds: float = None, clock=time_module.monotonic):
        self.window_seconds = settings.burst_window_seconds if window_seconds is None else window_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._session_id = None
        self._opened_at = 0.0
        self._count = 0

    def open(self, session_id: int) -> int:
        with self._lock:
            self._session_id = session_id
            self._opened_at = self.clock()
            self._count = 1
            return self._count

    def reset(self) -> None:
        with self._lock:
            self._session_id = None
            self._count = 0

    def attach(self) -> Optional[Tuple[int, int]]:
        """(session_id, номер снимка в серии) или None, если серии нет или она заполнена"""
        with self._lock:
            if self._session_id is None:
                return None
            if self.clock() - self._opened_at > self.window_seconds:
                self._session_id = None
                self._count = 0
                return None
            if self._count >= MAX_PHOTOS_PER_BURST:
                return None
            self._count += 1
            return self._session_id, self._count


@dataclass
class IngestionResult:
    recognition: RecognitionResult
    kind: models.PhotoKind
    photo: Optional[models.Photo] = None
    session_id: Optional[int] = None


class SessionService:
    def __init__(self, recognizer: PlateRecognitionService = None, storage: PhotoStorage = None,
                 tariffs: TariffService = None, bursts: BurstTracker = None, now=datetime.now):
        self.recognizer = recognizer or PlateRecognitionService()
        self.storage = storage or PhotoStorage()
        self.tariffs = tariffs or TariffService()
        self.bursts = bursts or BurstTracker()
        self.now = now

    def _detection_time(self) -> time:
        return self.now().time().replace(microsecond=0)

    def ingest_photo(self, db: Session, image_data: bytes, kind: models.PhotoKind,
                     content_type: str = "image/jpeg") -> IngestionResult:
        """Обработка снимка с камеры въезда"""
        logger.info(f"Получено фото {kind.value}")
        recognition = self.recognizer.recognize_plate(image_data)
        result = IngestionResult(recognition=recognition, kind=kind)

        if kind == FIRST_ANGLE:
            if not (recognition.success and recognition.plate):
                # Новая серия без номера: следующие ракурсы не к чему привязать
                self.bursts.reset()
                logger.warning("Номер не распознан, сессия не создана. Требуется ручная обработка")
                return result

            image_url = self.storage.save(image_data, kind.value, content_type)
            try:
                db_session, created = crud.find_or_create_active_session(
                    db, recognition.plate, self._detection_time()
                )
            except Exception:
                self.storage.remove(image_url)
                raise

            if created:
                logger.info(f"Создана сессия ID {db_session.id} для {db_session.plate}")
            else:
                logger.info(f"Используем активную сессию ID {db_session.id} для {db_session.plate}")
            self.bursts.open(db_session.id)
        else:
            attached = self.bursts.attach()
            if attached is None:
                logger.warning(f"Фото {kind.value} вне серии въезда, не сохранено")
                return result
            session_id, _ = attached
            image_url = self.storage.save(image_data, kind.value, content_type)
            db_session = crud.get_session(db, session_id)
            if db_session is None:
                self.storage.remove(image_url)
                return result

        try:
            photo = crud.create_photo(
                db,
                session_id=db_session.id,
                image_url=image_url,
                kind=kind,
                detected_plate=recognition.plate,
                confidence=recognition.confidence if recognition.success else None,
            )
            crud.refresh_photo_count(db, db_session.id)
        except Exception:
            db.rollback()
            self.storage.remove(image_url)
            raise

        result.photo = photo
        result.session_id = photo.session_id
        logger.info(f"Фото ID {photo.id} сохранено для сессии {photo.session_id}")
        return result

    def list_entry_photos(self, db: Session, session_id: int) -> List[models.Photo]:
        if crud.get_session(db, session_id) is None:
            raise NotFoundError("Сессия не найдена")
        return crud.get_entry_photos(db, session_id)

    def correct_photo_plate(self, db: Session, photo_id: int, corrected_plate: str) -> models.Photo:
        """Исправление номера на фото; номер сессии не меняется"""
        plate = canonical_plate(corrected_plate)
        if plate is None:
            raise ValidationError("Неверный формат номера. Ожидается: ABC123")

        photo = crud.update_photo_plate(db, photo_id, plate)
        if photo is None:
            raise NotFoundError("Фото не найдено")
        logger.info(f"Номер на фото ID {photo_id} исправлен на {plate}")
        return photo

    def delete_photo(self, db: Session, photo_id: int) -> models.Photo:
        photo = crud.delete_photo(db, photo_id)
        if photo is None:
            raise NotFoundError("Фото не найдено")
        if photo.session_id is not None:
            crud.refresh_photo_count(db, photo.session_id)
        self.storage.remove(photo.image_url)
        return photo

    def register_entry(self, db: Session, plate: str, entry_time: time,
                       vehicle_type: models.VehicleType = models.VehicleType.CAR) -> models.ParkingSession:
        """Ручная регистрация въезда"""
        canonical = canonical_plate(plate)
        if canonical is None:
            raise ValidationError("Неверный формат номера. Ожидается: ABC123")

        db_session = crud.create_session(db, canonical, entry_time.replace(microsecond=0), vehicle_type)
        logger.info(f"Въезд зарегистрирован вручную: {canonical}, сессия ID {db_session.id}")
        return db_session

    def register_exit(self, db: Session, session_id: int,
                      exit_time: time) -> Tuple[models.ParkingSession, Charge]:
        """Регистрация выезда: расчет стоимости и закрытие сессии"""
        db_session = crud.get_session(db, session_id)
        if db_session is None:
            raise NotFoundError("Сессия не найдена")
        if db_session.state != models.SessionState.ACTIVE:
            raise ValidationError("Сессия уже закрыта")

        exit_time = exit_time.replace(microsecond=0)
        self.tariffs.elapsed_minutes(db_session.entry_time, exit_time)

        hourly_rate = crud.get_hourly_rate(db)
        if hourly_rate is None:
            raise InfrastructureError("Почасовая ставка не настроена")

        charge = self.tariffs.calculate_charge(db_session.entry_time, exit_time, hourly_rate)
        if not crud.close_session(db, session_id, exit_time, charge.cost):
            raise ValidationError("Сессия уже закрыта")

        db.refresh(db_session)
        logger.info(
            f"Выезд {db_session.plate}: {charge.minutes} мин, {charge.billed_hours} ч, стоимость {charge.cost}"
        )
        return db_session, charge

    def correct_vehicle_type(self, db: Session, session_id: int,
                             vehicle_type: models.VehicleType) -> models.ParkingSession:
        db_session = crud.update_vehicle_type(db, session_id, vehicle_type)
        if db_session is None:
            raise NotFoundError("Сессия не найдена")
        return db_session
