from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone

from zeitnachweis.errors import ValidationError
from zeitnachweis.settings import Settings, get_app_timezone

GERMAN_MONTH_NAMES = (
    "Januar",
    "Februar",
    "März",
    "April",
    "Mai",
    "Juni",
    "Juli",
    "August",
    "September",
    "Oktober",
    "November",
    "Dezember",
)

MIN_YEAR = 2000
MAX_YEAR = 2100


@dataclass(frozen=True, slots=True)
class Period:
    month: int
    year: int

    @classmethod
    def of(cls, day: date) -> Period:
        return cls(month=day.month, year=day.year)

    def previous(self) -> Period:
        if self.month == 1:
            return Period(month=12, year=self.year - 1)
        return Period(month=self.month - 1, year=self.year)

    @property
    def month_name(self) -> str:
        return GERMAN_MONTH_NAMES[self.month - 1]

    @property
    def label(self) -> str:
        return f"{self.month_name} {self.year}"

    def to_dict(self) -> dict[str, int]:
        return {"month": self.month, "year": self.year}


def local_today(settings: Settings | None = None, *, now_utc: datetime | None = None) -> date:
    current = now_utc or datetime.now(timezone.utc)
    return current.astimezone(get_app_timezone(settings)).date()


def current_period(settings: Settings | None = None, *, now_utc: datetime | None = None) -> Period:
    return Period.of(local_today(settings, now_utc=now_utc))


def reminder_target_period(settings: Settings | None = None, *, now_utc: datetime | None = None) -> Period:
    # Reminders chase the month that has just closed.
    return current_period(settings, now_utc=now_utc).previous()


def resolve_period(
    month: int | None,
    year: int | None,
    *,
    default: Period,
) -> Period:
    if month is None and year is None:
        return default
    resolved_month = default.month if month is None else month
    resolved_year = default.year if year is None else year
    if not 1 <= resolved_month <= 12:
        raise ValidationError("Monat muss zwischen 1 und 12 liegen.", code="INVALID_PERIOD")
    if not MIN_YEAR <= resolved_year <= MAX_YEAR:
        raise ValidationError(
            f"Jahr muss zwischen {MIN_YEAR} und {MAX_YEAR} liegen.",
            code="INVALID_PERIOD",
        )
    return Period(month=resolved_month, year=resolved_year)
