"""Ошибки предметной области и их HTTP-коды"""


class ParkingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ParkingError):
    """Некорректные входные данные: формат номера, цена, длительность"""
    status_code = 400


class ImageDecodeError(ValidationError):
    pass


class NotFoundError(ParkingError):
    status_code = 404


class ConflictError(ParkingError):
    """Уже есть активная сессия для номера"""
    status_code = 409


class InfrastructureError(ParkingError):
    """Недоступно хранилище, файловая система или Tesseract"""
    status_code = 500
