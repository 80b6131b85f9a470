# app/services/availability/holidays.py
"""Observed US federal holidays"""
import calendar
from datetime import date, timedelta
from functools import lru_cache
from typing import Dict, Optional


def nth_weekday(year: int, month: int, weekday: int, n: int) -> date:
    first = date(year, month, 1)
    offset = (weekday - first.weekday()) % 7
    return first + timedelta(days=offset + 7 * (n - 1))


def last_weekday(year: int, month: int, weekday: int) -> date:
    last = date(year, month, calendar.monthrange(year, month)[1])
    return last - timedelta(days=(last.weekday() - weekday) % 7)


def observed(day: date) -> date:
    """Saturday holidays move to Friday, Sunday holidays to Monday"""
    if day.weekday() == calendar.SATURDAY:
        return day - timedelta(days=1)
    if day.weekday() == calendar.SUNDAY:
        return day + timedelta(days=1)
    return day


@lru_cache(maxsize=32)
def us_federal_holidays(year: int) -> Dict[date, str]:
    holidays = {
        observed(date(year, 1, 1)): "New Year's Day",
        nth_weekday(year, 1, calendar.MONDAY, 3): "Martin Luther King Jr. Day",
        nth_weekday(year, 2, calendar.MONDAY, 3): "Presidents' Day",
        last_weekday(year, 5, calendar.MONDAY): "Memorial Day",
        observed(date(year, 6, 19)): "Juneteenth",
        observed(date(year, 7, 4)): "Independence Day",
        nth_weekday(year, 9, calendar.MONDAY, 1): "Labor Day",
        nth_weekday(year, 10, calendar.MONDAY, 2): "Columbus Day",
        observed(date(year, 11, 11)): "Veterans Day",
        nth_weekday(year, 11, calendar.THURSDAY, 4): "Thanksgiving Day",
        observed(date(year, 12, 25)): "Christmas Day",
    }
    return holidays


def holiday_name(day: date) -> Optional[str]:
    # Jan 1 on a Saturday is observed on Dec 31 of the year before
    for year in (day.year, day.year + 1):
        name = us_federal_holidays(year).get(day)
        if name:
            return name
    return None


def is_holiday(day: date) -> bool:
    return holiday_name(day) is not None
