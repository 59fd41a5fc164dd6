import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, UploadFile
from fastapi.requests import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import crud, models, schemas
from .auth import CurrentUser, Role, get_current_user, require_roles
from .config import settings
from .database import SessionLocal, engine, get_db
from .errors import InfrastructureError, NotFoundError, ParkingError, ValidationError
from .plate_format import normalize_plate
from .session_service import SessionService

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Lotkeeper", version="1.0.0")

session_service = SessionService()

ACCEPTED_CONTENT_TYPES = ("image/jpeg", "image/png")

# Имя в URL -> поле тарифа
TARIFF_NAMES = {
    "hourly-rate": "hourly_rate",
    "monthly-price": "monthly_price",
    "monthly-price-moto": "monthly_price_moto",
    "monthly-price-car": "monthly_price_car",
}

manager_only = require_roles(Role.ADMIN, Role.SUPERVISOR)


def get_session_service() -> SessionService:
    return session_service


@app.on_event("startup")
async def startup_event():
    """Создание таблиц и тарифа по умолчанию"""
    models.Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        seeded = crud.seed_tariff(db, {
            "hourly_rate": settings.default_hourly_rate,
            "monthly_price": settings.default_monthly_price,
            "monthly_price_moto": settings.default_monthly_price_moto,
            "monthly_price_car": settings.default_monthly_price_car,
        })
        if seeded:
            logger.info("Создан тариф по умолчанию")
    finally:
        db.close()


@app.exception_handler(ParkingError)
async def parking_error_handler(request: Request, exc: ParkingError):
    if isinstance(exc, InfrastructureError):
        logger.error(f"{request.method} {request.url.path}: {exc.message}", exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"Ошибка базы данных: {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"success": False, "message": "Ошибка базы данных"})


@app.get("/")
def health_check():
    return {"message": "Lotkeeper API работает", "version": app.version, "status": "active"}

# ==================== PHOTOS ====================

@app.post("/api/photos/entry", response_model=schemas.PhotoIngestResponse)
async def ingest_entry_photo(kind: models.PhotoKind = Form(...),
                             image: UploadFile = File(...),
                             db: Session = Depends(get_db),
                             service: SessionService = Depends(get_session_service)):
    """Прием фото с камеры въезда (без авторизации)"""
    if kind not in models.ENTRY_KINDS:
        raise ValidationError("Тип фото должен быть: entry_right, entry_left, entry_rear")
    if image.content_type not in ACCEPTED_CONTENT_TYPES:
        raise ValidationError("Принимаются только изображения JPG или PNG")

    content = await image.read()
    if len(content) > settings.max_upload_bytes:
        raise ValidationError("Размер изображения превышает 5 МБ")

    result = await run_in_threadpool(service.ingest_photo, db, content, kind, image.content_type)
    recognition = result.recognition

    return schemas.PhotoIngestResponse(
        ocr=schemas.RecognitionOutcome(
            success=recognition.success,
            plate=recognition.plate,
            confidence=recognition.confidence,
            raw_text=recognition.raw_text or "",
            needs_correction=recognition.needs_correction,
            message=recognition.message,
        ),
        photo=schemas.IngestedPhoto(
            id=result.photo.id if result.photo else None,
            session_id=result.session_id,
            kind=kind,
            detected_plate=recognition.plate,
            confidence=recognition.confidence,
        ),
    )


@app.get("/api/photos/entry/{session_id}", response_model=schemas.PhotoListResponse)
def list_entry_photos(session_id: int, db: Session = Depends(get_db),
                      service: SessionService = Depends(get_session_service),
                      user: CurrentUser = Depends(get_current_user)):
    photos = service.list_entry_photos(db, session_id)
    return {"session_id": session_id, "photos": photos}


@app.put("/api/photos/{photo_id}/plate", response_model=schemas.PhotoResponse)
def correct_photo_plate(photo_id: int, correction: schemas.PlateCorrection,
                        db: Session = Depends(get_db),
                        service: SessionService = Depends(get_session_service),
                        user: CurrentUser = Depends(get_current_user)):
    """Исправление номера сотрудником"""
    return service.correct_photo_plate(db, photo_id, correction.corrected_plate)


@app.delete("/api/photos/{photo_id}")
def delete_photo(photo_id: int, db: Session = Depends(get_db),
                 service: SessionService = Depends(get_session_service),
                 user: CurrentUser = Depends(manager_only)):
    photo = service.delete_photo(db, photo_id)
    return {"success": True, "message": f"Фото {photo.id} удалено"}

# ==================== SESSIONS ====================

@app.post("/api/sessions/entry", response_model=schemas.SessionResponse, status_code=201)
def register_entry(entry: schemas.SessionEntryCreate, db: Session = Depends(get_db),
                   service: SessionService = Depends(get_session_service),
                   user: CurrentUser = Depends(get_current_user)):
    """Ручная регистрация въезда"""
    return service.register_entry(db, entry.plate, entry.entry_time, entry.vehicle_type)


@app.get("/api/sessions", response_model=List[schemas.SessionResponse])
def list_sessions(active: Optional[bool] = None, plate: Optional[str] = None,
                  limit: Optional[int] = None, db: Session = Depends(get_db),
                  user: CurrentUser = Depends(get_current_user)):
    return crud.get_sessions(db, active=active, plate=plate, limit=limit)


@app.get("/api/sessions/search/{plate}", response_model=schemas.SessionResponse)
def find_active_session(plate: str, db: Session = Depends(get_db),
                        user: CurrentUser = Depends(get_current_user)):
    """Активная сессия по номеру"""
    db_session = crud.get_active_session_by_plate(db, normalize_plate(plate))
    if not db_session:
        raise NotFoundError("Активная запись для этого номера не найдена")
    return db_session


@app.put("/api/sessions/exit/{session_id}", response_model=schemas.SessionExitResponse)
def register_exit(session_id: int, exit_data: schemas.SessionExit, db: Session = Depends(get_db),
                  service: SessionService = Depends(get_session_service),
                  user: CurrentUser = Depends(get_current_user)):
    db_session, charge = service.register_exit(db, session_id, exit_data.exit_time)
    return {
        "session": db_session,
        "cost": charge.cost,
        "hourly_rate": charge.hourly_rate,
        "billed_hours": charge.billed_hours,
    }


@app.patch("/api/sessions/{session_id}/vehicle-type", response_model=schemas.SessionResponse)
def correct_vehicle_type(session_id: int, update: schemas.VehicleTypeUpdate,
                         db: Session = Depends(get_db),
                         service: SessionService = Depends(get_session_service),
                         user: CurrentUser = Depends(get_current_user)):
    return service.correct_vehicle_type(db, session_id, update.vehicle_type)

# ==================== TARIFFS ====================

@app.get("/api/tariffs", response_model=schemas.TariffResponse)
def get_tariffs(db: Session = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    tariff = crud.get_tariff(db)
    if not tariff:
        return schemas.TariffResponse()
    return {field: getattr(tariff, field) for field in crud.TARIFF_FIELDS}


def _tariff_field(name: str) -> str:
    field = TARIFF_NAMES.get(name)
    if field is None:
        raise NotFoundError("Параметр тарифа не найден")
    return field


@app.get("/api/tariffs/{name}", response_model=schemas.PriceResponse)
def get_tariff_value(name: str, db: Session = Depends(get_db),
                     user: CurrentUser = Depends(get_current_user)):
    field = _tariff_field(name)
    tariff = crud.get_tariff(db)
    value = getattr(tariff, field) if tariff else None
    if value is None:
        raise NotFoundError("Значение не настроено")
    return {"field": field, "value": value}


@app.put("/api/tariffs/{name}", response_model=schemas.PriceResponse)
def update_tariff_value(name: str, update: schemas.PriceUpdate, db: Session = Depends(get_db),
                        user: CurrentUser = Depends(manager_only)):
    field = _tariff_field(name)
    tariff = crud.write_tariff(db, field, update.value, changed_by=user.user_id)
    logger.info(f"{field} = {update.value} (пользователь {user.user_id})")
    return {"field": field, "value": getattr(tariff, field)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("lotkeeper.main:app", host="0.0.0.0", port=8000, reload=True)
