"""Business-day calendar for regulatory reporting deadlines.

Holiday rules are stored as pattern strings on the regional configuration:

  FIXED:MM-DD                 same calendar date every year
  EASTER_FRIDAY               Good Friday (Easter Sunday - 2 days)
  EASTER_MONDAY               Easter Sunday + 1 day
  EASTER_SUNDAY               Easter Sunday
  {NTH}_{DOW}_{MON}           e.g. FIRST_MON_MAY, LAST_MON_AUG, FOURTH_THU_NOV

Patterns the calendar cannot compute (lunar holidays such as
CHINESE_NEW_YEAR_1) never match.

Workweek indices follow the stored tenant convention: 0=Sunday ... 6=Saturday.
Timezone-aware datetimes are moved into the region's timezone before their
calendar date is taken.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from .config import RegionalConfig

_NTH_WEEKDAY = re.compile(
    r"^(FIRST|SECOND|THIRD|FOURTH|LAST)_(SUN|MON|TUE|WED|THU|FRI|SAT)_([A-Z]{3})$"
)

_NTH = {"FIRST": 1, "SECOND": 2, "THIRD": 3, "FOURTH": 4, "LAST": -1}

# Python weekday numbering (Monday=0)
_DOW = {"MON": 0, "TUE": 1, "WED": 2, "THU": 3, "FRI": 4, "SAT": 5, "SUN": 6}

_MONTHS = {
    "JAN": 1, "FEB": 2, "MAR": 3, "APR": 4, "MAY": 5, "JUN": 6,
    "JUL": 7, "AUG": 8, "SEP": 9, "OCT": 10, "NOV": 11, "DEC": 12,
}


# ---------------------------------------------------------------------------
# Holiday resolution
# ---------------------------------------------------------------------------


def easter_sunday(year: int) -> date:
    """Easter Sunday via the anonymous Gregorian algorithm (Meeus/Jones/Butcher)."""
    a = year % 19
    b = year // 100
    c = year % 100
    d = b // 4
    e = b % 4
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i = c // 4
    k = c % 4
    l = (32 + 2 * e + 2 * i - h - k) % 7  # noqa: E741
    m = (a + 11 * h + 22 * l) // 451
    month = (h + l - 7 * m + 114) // 31
    day = ((h + l - 7 * m + 114) % 31) + 1
    return date(year, month, day)


def nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> date:
    """The nth ``weekday`` (Monday=0) of a month; ``n=-1`` means the last one."""
    if n == -1:
        if month == 12:
            current = date(year, 12, 31)
        else:
            current = date(year, month + 1, 1) - timedelta(days=1)
        while current.weekday() != weekday:
            current -= timedelta(days=1)
        return current

    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


@lru_cache(maxsize=1024)
def _holiday_for_year(pattern: str, year: int) -> date | None:
    if pattern.startswith("FIXED:"):
        mm, _, dd = pattern[6:].partition("-")
        try:
            return date(year, int(mm), int(dd))
        except ValueError:
            # 02-29 outside leap years, or a malformed entry
            return None

    if pattern == "EASTER_SUNDAY":
        return easter_sunday(year)
    if pattern == "EASTER_FRIDAY":
        return easter_sunday(year) - timedelta(days=2)
    if pattern == "EASTER_MONDAY":
        return easter_sunday(year) + timedelta(days=1)

    if match := _NTH_WEEKDAY.match(pattern):
        nth, dow, mon = match.groups()
        if mon not in _MONTHS:
            return None
        return nth_weekday_of_month(year, _MONTHS[mon], _DOW[dow], _NTH[nth])

    return None


def is_public_holiday(d: date, holidays: list[str]) -> bool:
    d = _plain_date(d)
    return any(_holiday_for_year(pattern, d.year) == d for pattern in holidays)


def is_business_day(d: date, workweek: list[int], holidays: list[str]) -> bool:
    """True when ``d`` is a workweek day and not a public holiday."""
    d = _plain_date(d)
    # Convert Monday=0 to the stored Sunday=0 convention
    if (d.weekday() + 1) % 7 not in workweek:
        return False
    return not is_public_holiday(d, holidays)


# ---------------------------------------------------------------------------
# Business-day arithmetic
# ---------------------------------------------------------------------------


def _plain_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def local_date(value: date, config: RegionalConfig) -> date:
    """Calendar date of ``value`` as seen in the region's timezone."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(ZoneInfo(config.timezone))
        return value.date()
    return value


def today_in(config: RegionalConfig) -> date:
    return datetime.now(ZoneInfo(config.timezone)).date()


def add_business_days(start: date, n: int, config: RegionalConfig) -> date:
    """Walk forward from ``start`` until ``n`` business days have been counted.

    The start date itself is never counted, so ``n=0`` returns ``start``
    unchanged. A datetime start keeps its time of day.
    """
    if n < 0:
        raise ValueError(f"business day count must be non-negative, got {n}")

    current = start
    counted = 0
    while counted < n:
        current += timedelta(days=1)
        if is_business_day(current, config.workweek, config.holidays):
            counted += 1
    return current


def business_days_remaining(
    deadline: date, config: RegionalConfig, today: date | None = None
) -> int:
    """Business days in (today, deadline]; 0 once the deadline is today or past."""
    today = today or today_in(config)
    deadline_day = local_date(deadline, config)
    if deadline_day <= today:
        return 0

    remaining = 0
    current = today
    while current < deadline_day:
        current += timedelta(days=1)
        if is_business_day(current, config.workweek, config.holidays):
            remaining += 1
    return remaining


def is_deadline_passed(
    deadline: date, config: RegionalConfig, today: date | None = None
) -> bool:
    today = today or today_in(config)
    return local_date(deadline, config) < today


def is_deadline_approaching(
    deadline: date, threshold_days: int, config: RegionalConfig, today: date | None = None
) -> bool:
    return business_days_remaining(deadline, config, today) <= threshold_days


# ---------------------------------------------------------------------------
# Reporting deadlines
# ---------------------------------------------------------------------------


def _localized(start: date, config: RegionalConfig) -> date:
    if isinstance(start, datetime) and start.tzinfo is not None:
        return start.astimezone(ZoneInfo(config.timezone))
    return start


def calculate_ttr_deadline(transaction_date: date, config: RegionalConfig) -> date:
    return add_business_days(
        _localized(transaction_date, config), config.deadlines.ttr_submission, config
    )


def calculate_smr_deadline(
    suspicion_date: date, config: RegionalConfig, urgent: bool = False
) -> date:
    """SMR due date; urgent (terrorism financing) reports use calendar hours."""
    if urgent:
        if not isinstance(suspicion_date, datetime):
            suspicion_date = datetime.combine(suspicion_date, datetime.min.time())
        return suspicion_date + timedelta(hours=config.deadlines.smr_urgent_hours)
    return add_business_days(
        _localized(suspicion_date, config), config.deadlines.smr_submission, config
    )


def calculate_ifti_deadline(transfer_date: date, config: RegionalConfig) -> date:
    return add_business_days(
        _localized(transfer_date, config), config.deadlines.ifti_submission, config
    )


@dataclass(frozen=True)
class DeadlineStatus:
    status: str  # overdue | critical | warning | ok
    days_remaining: int
    message: str


def deadline_status(
    deadline: date, config: RegionalConfig, today: date | None = None
) -> DeadlineStatus:
    if is_deadline_passed(deadline, config, today):
        return DeadlineStatus("overdue", 0, "Deadline has passed")

    days = business_days_remaining(deadline, config, today)
    if days <= 1:
        message = "Due today" if days == 0 else "1 business day remaining"
        return DeadlineStatus("critical", days, message)
    if days <= 3:
        return DeadlineStatus("warning", days, f"{days} business days remaining")
    return DeadlineStatus("ok", days, f"{days} business days remaining")
