"""
Нормализация и проверка номерных знаков.

Канонический формат: три латинские буквы и три цифры без разделителей (ABC123).
"""

import re
from typing import Optional

# Номер внутри произвольного текста OCR: "ABC 123", "abc-123", "ABC - 123"
PLATE_SEARCH_PATTERN = re.compile(r'([A-Z]{3}\s*-?\s*[0-9]{3})', re.IGNORECASE)

CANONICAL_PLATE_PATTERN = re.compile(r'[A-Z]{3}[0-9]{3}')

_SEPARATORS = re.compile(r'[\s\-]+')


def normalize_plate(plate: str) -> str:
    """Верхний регистр, без пробелов и дефисов"""
    if not plate:
        return ""
    return _SEPARATORS.sub('', plate.upper())


def is_valid_plate(plate: str) -> bool:
    if not plate:
        return False
    return CANONICAL_PLATE_PATTERN.fullmatch(plate) is not None


def find_plate_candidate(text: str) -> Optional[str]:
    """Первая подстрока, похожая на номер, или None"""
    if not text:
        return None
    match = PLATE_SEARCH_PATTERN.search(text)
    return match.group(1) if match else None


def canonical_plate(plate: str) -> Optional[str]:
    normalized = normalize_plate(plate)
    return normalized if is_valid_plate(normalized) else None
