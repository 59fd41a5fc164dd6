import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .errors import ImageDecodeError

logger = logging.getLogger(__name__)

MAX_WIDTH = 1200
BINARY_THRESHOLD = 180

# Доли кадра (left, top, width, height): полоса, где обычно виден номер
# на камере видеорегистратора, установленной сзади/сбоку
PLATE_REGIONS: Tuple[Tuple[float, float, float, float], ...] = (
    (0.2, 0.55, 0.6, 0.25),
    (0.15, 0.45, 0.7, 0.3),
    (0.1, 0.65, 0.8, 0.25),
)


@dataclass
class CandidateImage:
    label: str
    image: np.ndarray


class ImagePreprocessor:
    def __init__(self, regions=PLATE_REGIONS, max_width: int = MAX_WIDTH,
                 threshold: int = BINARY_THRESHOLD):
        self.regions = regions
        self.max_width = max_width
        self.threshold = threshold

    def decode(self, image_data: bytes) -> np.ndarray:
        if not image_data:
            raise ImageDecodeError("Пустой файл изображения")
        image_array = np.frombuffer(image_data, np.uint8)
        cv_image = cv2.imdecode(image_array, cv2.IMREAD_COLOR)
        if cv_image is None:
            raise ImageDecodeError("Не удалось декодировать изображение")
        return cv_image

    def prepare(self, cv_image: np.ndarray) -> np.ndarray:
        """Уменьшение до MAX_WIDTH, серый, растяжение контраста, бинаризация"""
        height, width = cv_image.shape[:2]
        if width > self.max_width:
            new_height = max(1, int(round(height * self.max_width / width)))
            cv_image = cv2.resize(cv_image, (self.max_width, new_height), interpolation=cv2.INTER_AREA)

        gray = cv2.cvtColor(cv_image, cv2.COLOR_BGR2GRAY)
        normalized = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX)
        _, binary = cv2.threshold(normalized, self.threshold, 255, cv2.THRESH_BINARY)
        return binary

    def crop(self, cv_image: np.ndarray, region) -> Optional[np.ndarray]:
        height, width = cv_image.shape[:2]
        left_f, top_f, width_f, height_f = region
        left = int(width * left_f)
        top = int(height * top_f)
        crop_width = min(int(width * width_f), width - left)
        crop_height = min(int(height * height_f), height - top)
        if crop_width <= 0 or crop_height <= 0:
            return None
        return cv_image[top:top + crop_height, left:left + crop_width]

    def build_candidates(self, image_data: bytes) -> List[CandidateImage]:
        """Кандидаты для OCR: сначала вырезки, полный кадр последним"""
        cv_image = self.decode(image_data)
        candidates = [CandidateImage("full", self.prepare(cv_image))]

        for index, region in enumerate(self.regions, start=1):
            try:
                region_image = self.crop(cv_image, region)
                if region_image is None:
                    logger.warning(f"Вырезка {index} пропущена: пустая область {region}")
                    continue
                # Каждая следующая вырезка встает в начало списка
                candidates.insert(0, CandidateImage(f"crop{index}", self.prepare(region_image)))
            except cv2.error as e:
                logger.warning(f"Не удалось подготовить вырезку {index}: {e}")

        return candidates
