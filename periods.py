from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from config import get_settings


def local_now() -> datetime:
    tz = ZoneInfo(get_settings().timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(base: date, months: int, *, anchor_day: Optional[int] = None) -> date:
    """Move ``base`` by whole calendar months.

    Days that do not exist in the target month are clamped to its last day,
    so Jan 31 + 1 month is Feb 28 (Feb 29 in leap years). ``anchor_day``
    replaces ``base.day`` as the desired day, which lets a series started on
    the 31st come back to the 31st after passing through a short month.
    """
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    desired_day = anchor_day or base.day
    return date(year, month, min(desired_day, days_in_month(year, month)))


@dataclass(frozen=True, order=True)
class MonthRef:
    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {self.month}")

    @classmethod
    def of(cls, day: date) -> "MonthRef":
        return cls(day.year, day.month)

    def previous(self) -> "MonthRef":
        if self.month == 1:
            return MonthRef(self.year - 1, 12)
        return MonthRef(self.year, self.month - 1)

    def next(self) -> "MonthRef":
        if self.month == 12:
            return MonthRef(self.year + 1, 1)
        return MonthRef(self.year, self.month + 1)

    @property
    def start(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def end(self) -> date:
        return date(self.year, self.month, days_in_month(self.year, self.month))

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"
