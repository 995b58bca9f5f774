"""
Date windows for bounded and historical sweeps.
Windows are half-open [start, end); historical windows are contiguous and
walk backward from now in fixed month steps.
"""

import calendar
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator

from kvsync.schemas.sync_run import Window

CLI_DATE_FORMAT = "%d/%m/%Y"
# KiotViet accepts local datetimes without an offset for purchase date filters
UPSTREAM_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def shift_months(value: datetime, months: int) -> datetime:
    """Move value by months (negative goes back), clamping the day to the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def start_of_day(d: date, tz=timezone.utc) -> datetime:
    return datetime.combine(d, time.min, tzinfo=tz)


def parse_cli_date(text: str) -> date:
    """Parse DD/MM/YYYY."""
    try:
        return datetime.strptime(text.strip(), CLI_DATE_FORMAT).date()
    except ValueError as e:
        raise ValueError(f"Invalid date {text!r}; expected DD/MM/YYYY") from e


def window_for_dates(from_date: date, to_date: date) -> Window:
    """Inclusive calendar days [from_date, to_date] as a half-open window."""
    if to_date < from_date:
        raise ValueError(f"--to {to_date:%d/%m/%Y} is before --from {from_date:%d/%m/%Y}")
    return Window(start=start_of_day(from_date), end=start_of_day(to_date + timedelta(days=1)))


def historical_windows(now: datetime, earliest: date, months: int) -> Iterator[Window]:
    """
    Yield [end - months, end) windows backward from now while end is after
    earliest; the oldest window is clamped to start at earliest.
    """
    if months < 1:
        raise ValueError("window size must be at least one month")
    floor = start_of_day(earliest, tz=now.tzinfo)
    end = now
    while end > floor:
        start = max(shift_months(end, -months), floor)
        yield Window(start=start, end=end)
        end = start


def window_params(window: Window, date_params: tuple[str, str]) -> dict[str, str]:
    from_param, to_param = date_params
    return {
        from_param: window.start.strftime(UPSTREAM_DATE_FORMAT),
        to_param: window.end.strftime(UPSTREAM_DATE_FORMAT),
    }
