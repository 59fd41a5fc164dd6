import math
from dataclasses import dataclass
from datetime import time

from .errors import ValidationError


def minutes_of_day(value: time) -> int:
    return value.hour * 60 + value.minute


@dataclass
class Charge:
    minutes: int
    billed_hours: int
    hourly_rate: float
    cost: float


class TariffService:
    def elapsed_minutes(self, entry_time: time, exit_time: time) -> int:
        """Минуты стоянки в пределах одних суток; переход через полночь не поддерживается"""
        minutes = minutes_of_day(exit_time) - minutes_of_day(entry_time)
        if minutes <= 0:
            raise ValidationError("Время выезда должно быть позже времени въезда")
        return minutes

    def calculate_charge(self, entry_time: time, exit_time: time, hourly_rate: float) -> Charge:
        """Расчет стоимости: каждый начатый час оплачивается полностью"""
        if hourly_rate is None or not math.isfinite(hourly_rate) or hourly_rate <= 0:
            raise ValidationError("Некорректная почасовая ставка")

        minutes = self.elapsed_minutes(entry_time, exit_time)
        billed_hours = math.ceil(minutes / 60)
        return Charge(
            minutes=minutes,
            billed_hours=billed_hours,
            hourly_rate=hourly_rate,
            cost=billed_hours * hourly_rate,
        )
