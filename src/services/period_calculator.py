"""
Billing week calculator

A billing week runs Monday to Friday. The batch runs at the end of the week
(Sunday night) and bills the week that just finished.

Pure functions: "now" and the timezone are always injectable.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

from config.config import BILLING_TIMEZONE
from src.utils.dates import utcnow, ensure_utc


@dataclass(frozen=True)
class BillingWeek:
    """Monday..Friday pair (both inclusive)"""

    week_start: date
    week_end: date

    @property
    def label(self) -> str:
        return f"{self.week_start.isoformat()} to {self.week_end.isoformat()}"

    def to_dict(self) -> dict:
        return {"start": self.week_start.isoformat(), "end": self.week_end.isoformat()}


def billing_timezone(name: Optional[str] = None) -> tzinfo:
    return ZoneInfo(name or BILLING_TIMEZONE)


def get_last_week_dates(now: Optional[datetime] = None, tz: Optional[tzinfo] = None) -> BillingWeek:
    """
    Previous billing week relative to "now"

    Sunday backs up 6 days to the Monday of the week that just ended; any
    other day backs up to the Monday of the week before the current one.

    Args:
        now: Reference instant (default: current time). Naive values are UTC.
        tz: Timezone the calendar day is evaluated in (default BILLING_TIMEZONE)
    """
    tz = tz or billing_timezone()
    local_today = ensure_utc(now or utcnow()).astimezone(tz).date()

    # Sunday = 0 numbering: Monday..Saturday -> 1..6
    day_of_week = (local_today.weekday() + 1) % 7
    days_back = 6 if day_of_week == 0 else day_of_week + 6

    week_start = local_today - timedelta(days=days_back)
    return BillingWeek(week_start=week_start, week_end=week_start + timedelta(days=4))


def week_bounds(week: BillingWeek, tz: Optional[tzinfo] = None) -> Tuple[datetime, datetime]:
    """
    Half-open UTC range [Monday 00:00, Saturday 00:00) in the billing timezone
    """
    tz = tz or billing_timezone()
    start = datetime.combine(week.week_start, time.min, tzinfo=tz)
    end = datetime.combine(week.week_end + timedelta(days=1), time.min, tzinfo=tz)
    return ensure_utc(start), ensure_utc(end)


def is_billable_day(moment: datetime, tz: Optional[tzinfo] = None) -> bool:
    """Monday to Friday in the billing timezone"""
    tz = tz or billing_timezone()
    return ensure_utc(moment).astimezone(tz).weekday() < 5
