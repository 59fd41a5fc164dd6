from datetime import datetime

import cv2
import numpy as np
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lotkeeper import crud, models
from lotkeeper.photo_storage import PhotoStorage
from lotkeeper.plate_recognition import OcrReading, RecognitionResult
from lotkeeper.session_service import BurstTracker, SessionService


class FakeClock:
    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedOcrEngine:
    """OCR-заглушка: ответы по (метка кандидата, psm)"""

    def __init__(self, readings=None, default=None, clock=None, cost_per_call=0.0):
        self.readings = readings or {}
        self.default = default or OcrReading(text="", confidence=0.0)
        self.calls = []
        self.clock = clock
        self.cost_per_call = cost_per_call
        self.labels = {}

    def label_images(self, candidates):
        for candidate in candidates:
            self.labels[id(candidate.image)] = candidate.label

    def read(self, image, psm, timeout=0):
        label = self.labels.get(id(image), "?")
        self.calls.append((label, psm))
        if self.clock is not None:
            self.clock.advance(self.cost_per_call)
        reading = self.readings.get((label, psm), self.default)
        if isinstance(reading, Exception):
            raise reading
        return reading


class QueueRecognizer:
    """Возвращает заранее заданные результаты распознавания по очереди"""

    def __init__(self):
        self.results = []

    def push_plate(self, plate: str, confidence: float = 0.9):
        self.results.append(RecognitionResult(
            success=True, plate=plate, confidence=confidence, raw_text=plate,
            needs_correction=False, message="ok",
        ))

    def push_failure(self, raw_text: str = "???"):
        self.results.append(RecognitionResult.failure(raw_text, "not found"))

    def recognize_plate(self, image_data: bytes) -> RecognitionResult:
        return self.results.pop(0)


def encode_image(width: int, height: int, ext: str = ".jpg") -> bytes:
    image = np.full((height, width, 3), 200, dtype=np.uint8)
    cv2.rectangle(image, (width // 4, height // 2), (3 * width // 4, 3 * height // 4), (20, 20, 20), -1)
    ok, buffer = cv2.imencode(ext, image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def engine():
    db_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(bind=db_engine)
    yield db_engine
    models.Base.metadata.drop_all(bind=db_engine)


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tariff(db):
    return crud.seed_tariff(db, {
        "hourly_rate": 3000.0,
        "monthly_price": 120000.0,
        "monthly_price_moto": 60000.0,
        "monthly_price_car": 120000.0,
    })


@pytest.fixture
def recognizer():
    return QueueRecognizer()


@pytest.fixture
def burst_clock():
    return FakeClock()


@pytest.fixture
def storage(tmp_path):
    return PhotoStorage(upload_dir=str(tmp_path / "uploads"))


@pytest.fixture
def service(recognizer, storage, burst_clock):
    return SessionService(
        recognizer=recognizer,
        storage=storage,
        bursts=BurstTracker(window_seconds=60, clock=burst_clock),
        now=lambda: datetime(2026, 3, 2, 8, 0, 0, 123456),
    )
