from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = "sqlite:///./lotkeeper.db"
    secret_key: str = "your-secret-key-here"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 480
    log_level: str = "INFO"

    # Фото с камер
    upload_dir: str = "uploads"
    max_upload_bytes: int = 5 * 1024 * 1024
    burst_window_seconds: int = 60

    # OCR
    ocr_timeout_seconds: float = 30.0
    ocr_language: str = "eng"
    tesseract_cmd: Optional[str] = None

    # Тарифы по умолчанию (создаются при первом запуске)
    default_hourly_rate: float = 3000.0
    default_monthly_price: float = 120000.0
    default_monthly_price_moto: float = 60000.0
    default_monthly_price_car: float = 120000.0

    class Config:
        env_file = ".env"

settings = Settings()
