import logging
import time
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence

import numpy as np
import pytesseract
from PIL import Image

from .config import settings
from .errors import InfrastructureError
from .image_processing import CandidateImage, ImagePreprocessor
from .plate_format import canonical_plate, find_plate_candidate

logger = logging.getLogger(__name__)

CHAR_WHITELIST = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-"


@dataclass(frozen=True)
class SegmentationStrategy:
    name: str
    psm: int


# Порядок важен: одна строка, однородный блок, разреженный текст
SEGMENTATION_STRATEGIES = (
    SegmentationStrategy("single_line", 7),
    SegmentationStrategy("uniform_block", 6),
    SegmentationStrategy("sparse_text", 11),
)


@dataclass
class OcrReading:
    text: str
    confidence: float  # 0-100, как отдает Tesseract


@dataclass
class RecognitionAttempt:
    candidate: CandidateImage
    strategy: SegmentationStrategy


@dataclass
class RecognitionResult:
    success: bool
    plate: Optional[str]
    confidence: float
    raw_text: str
    needs_correction: bool
    message: str = ""

    @classmethod
    def failure(cls, raw_text: str, message: str) -> "RecognitionResult":
        return cls(
            success=False,
            plate=None,
            confidence=0.0,
            raw_text=raw_text,
            needs_correction=True,
            message=message,
        )


class OcrTimeout(Exception):
    pass


class TesseractEngine:
    """OCR через pytesseract с белым списком символов номера"""

    def __init__(self, language: str = None, tesseract_cmd: Optional[str] = None):
        self.language = language or settings.ocr_language
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

        try:
            pytesseract.get_tesseract_version()
            self.available = True
            logger.info("Tesseract OCR доступен")
        except pytesseract.TesseractNotFoundError as e:
            logger.warning(f"Tesseract OCR недоступен: {e}")
            self.available = False

    def build_config(self, psm: int) -> str:
        return f"--oem 3 --psm {psm} -c tessedit_char_whitelist={CHAR_WHITELIST}"

    def read(self, image: np.ndarray, psm: int, timeout: float = 0) -> OcrReading:
        if not self.available:
            raise InfrastructureError("Tesseract OCR недоступен")

        try:
            data = pytesseract.image_to_data(
                Image.fromarray(image),
                lang=self.language,
                config=self.build_config(psm),
                output_type=pytesseract.Output.DICT,
                timeout=timeout,
            )
        except RuntimeError as e:
            # pytesseract сообщает о таймауте процесса через RuntimeError
            if "timeout" in str(e).lower():
                raise OcrTimeout(str(e)) from e
            raise InfrastructureError(f"Ошибка Tesseract: {e}") from e

        lines = {}
        confidences = []
        for i, word in enumerate(data.get("text", [])):
            word = (word or "").strip()
            if not word:
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            conf = float(data["conf"][i])
            if conf >= 0:
                confidences.append(conf)

        text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
        confidence = float(np.mean(confidences)) if confidences else 0.0
        return OcrReading(text=text, confidence=confidence)


def plan_attempts(candidates: Sequence[CandidateImage],
                  strategies: Sequence[SegmentationStrategy] = SEGMENTATION_STRATEGIES,
                  ) -> Iterator[RecognitionAttempt]:
    """Ленивый перебор (вырезка, режим) в порядке приоритета"""
    for candidate in candidates:
        for strategy in strategies:
            yield RecognitionAttempt(candidate, strategy)


class PlateRecognitionService:
    def __init__(self, engine=None, preprocessor: ImagePreprocessor = None,
                 strategies: Sequence[SegmentationStrategy] = SEGMENTATION_STRATEGIES,
                 timeout_seconds: float = None, clock=time.monotonic):
        self.engine = engine or TesseractEngine(tesseract_cmd=settings.tesseract_cmd)
        self.preprocessor = preprocessor or ImagePreprocessor()
        self.strategies = strategies
        self.timeout_seconds = settings.ocr_timeout_seconds if timeout_seconds is None else timeout_seconds
        self.clock = clock

    def recognize_plate(self, image_data: bytes) -> RecognitionResult:
        """Распознавание номера: первая каноническая находка завершает поиск"""
        candidates = self.preprocessor.build_candidates(image_data)
        return self.search(candidates)

    def search(self, candidates: List[CandidateImage]) -> RecognitionResult:
        deadline = self.clock() + self.timeout_seconds if self.timeout_seconds else None
        last_text = ""

        for attempt in plan_attempts(candidates, self.strategies):
            remaining = 0
            if deadline is not None:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    logger.warning("Время OCR истекло, оставшиеся попытки отменены")
                    return RecognitionResult.failure(last_text, "Время распознавания истекло")

            try:
                reading = self.engine.read(attempt.candidate.image, attempt.strategy.psm, timeout=remaining)
            except OcrTimeout:
                logger.warning(
                    f"Таймаут Tesseract ({attempt.candidate.label}, PSM{attempt.strategy.psm})"
                )
                return RecognitionResult.failure(last_text, "Время распознавания истекло")

            text = reading.text or ""
            logger.info(f"Текст OCR ({attempt.candidate.label}, PSM{attempt.strategy.psm}): '{text}'")
            if text.strip():
                last_text = text

            candidate = find_plate_candidate(text)
            if not candidate:
                continue

            plate = canonical_plate(candidate)
            if not plate:
                logger.info(f"Найденный текст '{candidate}' не соответствует формату номера")
                continue

            confidence = min(reading.confidence / 100.0, 1.0)
            logger.info(f"Номер распознан: {plate} (уверенность {confidence:.2f})")
            return RecognitionResult(
                success=True,
                plate=plate,
                confidence=confidence,
                raw_text=text,
                needs_correction=False,
                message="Номер распознан",
            )

        logger.warning(f"Номер не найден. Последний текст: '{last_text}'")
        return RecognitionResult.failure(last_text, f"Номер не найден. Текст: {last_text}")
