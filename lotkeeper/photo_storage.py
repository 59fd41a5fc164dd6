import logging
import os
import uuid
from datetime import datetime

from .config import settings
from .errors import InfrastructureError

logger = logging.getLogger(__name__)

EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png"}


class PhotoStorage:
    def __init__(self, upload_dir: str = None):
        self.upload_dir = upload_dir or settings.upload_dir

    def save(self, image_data: bytes, kind: str, content_type: str) -> str:
        """Сохранить файл и вернуть относительный URL /uploads/..."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        extension = EXTENSIONS.get(content_type, ".jpg")
        filename = f"{timestamp}_{uuid.uuid4().hex[:8]}_{kind}{extension}"
        filepath = os.path.join(self.upload_dir, filename)

        try:
            os.makedirs(self.upload_dir, exist_ok=True)
            with open(filepath, "wb") as buffer:
                buffer.write(image_data)
        except OSError as e:
            logger.exception("Не удалось сохранить фото")
            raise InfrastructureError(f"Не удалось сохранить фото: {e}") from e

        return f"/uploads/{filename}"

    def path_for(self, image_url: str) -> str:
        return os.path.join(self.upload_dir, os.path.basename(image_url))

    def remove(self, image_url: str) -> bool:
        """Удаление файла; ошибка только логируется"""
        try:
            os.remove(self.path_for(image_url))
            return True
        except OSError as e:
            logger.warning(f"Не удалось удалить файл {image_url}: {e}")
            return False
