from pydantic import BaseModel
from datetime import datetime, time
from typing import Optional, List

from .models import PhotoKind, SessionState, VehicleType

class SessionEntryCreate(BaseModel):
    vehicle_type: VehicleType = VehicleType.CAR
    plate: str
    entry_time: time

class SessionExit(BaseModel):
    exit_time: time

class VehicleTypeUpdate(BaseModel):
    vehicle_type: VehicleType

class SessionResponse(BaseModel):
    id: int
    plate: str
    vehicle_type: VehicleType
    entry_time: time
    exit_time: Optional[time]
    cost: Optional[float]
    state: SessionState
    photo_count: int

    class Config:
        from_attributes = True

class SessionExitResponse(BaseModel):
    session: SessionResponse
    cost: float
    hourly_rate: float
    billed_hours: int

class PhotoResponse(BaseModel):
    id: int
    session_id: int
    kind: PhotoKind
    image_url: str
    detected_plate: Optional[str]
    confidence: Optional[float]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True

class PhotoListResponse(BaseModel):
    session_id: int
    photos: List[PhotoResponse]

class PlateCorrection(BaseModel):
    corrected_plate: str

class RecognitionOutcome(BaseModel):
    success: bool
    plate: Optional[str]
    confidence: float
    raw_text: str
    needs_correction: bool
    message: str = ""

class IngestedPhoto(BaseModel):
    id: Optional[int]
    session_id: Optional[int]
    kind: PhotoKind
    detected_plate: Optional[str]
    confidence: Optional[float]

class PhotoIngestResponse(BaseModel):
    ocr: RecognitionOutcome
    photo: IngestedPhoto

class TariffResponse(BaseModel):
    hourly_rate: Optional[float] = None
    monthly_price: Optional[float] = None
    monthly_price_moto: Optional[float] = None
    monthly_price_car: Optional[float] = None

class PriceUpdate(BaseModel):
    # > 0 проверяется в crud.write_tariff
    value: float

class PriceResponse(BaseModel):
    field: str
    value: float
