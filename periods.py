import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterator, Optional, Union
from zoneinfo import ZoneInfo

from config import get_settings
from errors import ValidationError
from models import GraphPeriod

MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)
_MONTH_INDEX = {name.lower(): idx for idx, name in enumerate(MONTH_NAMES)}

END_OF_DAY = time(23, 59, 59, 999000)


def local_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().timezone)


def month_index(name: str) -> int:
    """Zero-based index of an English month name."""
    if not isinstance(name, str) or name.strip().lower() not in _MONTH_INDEX:
        raise ValidationError(f"Unknown month name: {name!r}")
    return _MONTH_INDEX[name.strip().lower()]


def month_name(index: int) -> str:
    return MONTH_NAMES[index]


def canonical_month(name: str) -> str:
    return MONTH_NAMES[month_index(name)]


def parse_year(year: Union[int, str]) -> int:
    """Four-digit calendar year; stored years compare correctly as text."""
    try:
        value = int(str(year).strip())
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid year: {year!r}") from exc
    if not 1000 <= value <= 9999:
        raise ValidationError(f"Invalid year: {year!r}")
    return value


def days_in_month(month: str, year: Union[int, str]) -> int:
    return calendar.monthrange(parse_year(year), month_index(month) + 1)[1]


def local_day(value: str) -> date:
    """Calendar day of an ISO date or datetime string in the local zone."""
    try:
        parsed = datetime.fromisoformat(value.strip())
    except (AttributeError, ValueError) as exc:
        raise ValidationError(
            "Invalid date format. Please use a valid date string."
        ) from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(local_zone())
    return parsed.date()


def month_year_for(moment: date) -> tuple[str, str]:
    return month_name(moment.month - 1), str(moment.year)


def add_months(d: date, count: int) -> date:
    month_offset = (d.year * 12) + (d.month - 1) + count
    return date(month_offset // 12, (month_offset % 12) + 1, 1)


def bucket_label(moment: date, period: GraphPeriod) -> str:
    if period == GraphPeriod.yearly:
        return f"{moment.month:02d}/{moment.year}"
    return f"{moment.day:02d}/{moment.month:02d}"


@dataclass(frozen=True)
class BucketLabels:
    """Ordered, duplicate-free bucket labels covering ``start``..``end``.

    Iterating again starts over from ``start``.
    """

    period: GraphPeriod
    start: date
    end: date

    def _steps(self) -> Iterator[date]:
        if self.period == GraphPeriod.yearly:
            current = self.start.replace(day=1)
            last = self.end.replace(day=1)
            while current <= last:
                yield current
                # Stepping past December 9999 is not representable.
                if current == last:
                    return
                current = add_months(current, 1)
            return
        current = self.start
        while current <= self.end:
            yield current
            if current == self.end:
                return
            current += timedelta(days=1)

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for step in self._steps():
            label = bucket_label(step, self.period)
            if label in seen:
                continue
            seen.add(label)
            yield label


@dataclass(frozen=True)
class DateRange:
    start: Optional[date]
    end: Optional[date]

    def bounds(self, tz: ZoneInfo) -> tuple[Optional[datetime], Optional[datetime]]:
        lower = datetime.combine(self.start, time.min, tzinfo=tz) if self.start else None
        upper = datetime.combine(self.end, END_OF_DAY, tzinfo=tz) if self.end else None
        return lower, upper

    def contains(self, instant: datetime, tz: ZoneInfo) -> bool:
        lower, upper = self.bounds(tz)
        if lower is not None and instant < lower:
            return False
        if upper is not None and instant > upper:
            return False
        return True


def parse_day(value: Union[date, datetime, str, None], field: str) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid {field}: {value!r}") from exc


def resolve_range(
    start: Union[date, str, None],
    end: Union[date, str, None],
    *,
    required: bool = False,
) -> DateRange:
    start_date = parse_day(start, "start date")
    end_date = parse_day(end, "end date")
    if required and (start_date is None or end_date is None):
        raise ValidationError("Start date and end date are required")
    if start_date and end_date and start_date > end_date:
        raise ValidationError("Start date must be before end date")
    return DateRange(start_date, end_date)
