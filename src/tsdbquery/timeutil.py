"""
Dashboard time range conversion.

Dashboards describe ranges as ``now-6h`` / ``now`` style expressions, absolute
timestamps or ISO strings. The backend wants epoch milliseconds and an absent
end when the range is open towards now.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Union

from dateutil import parser as dateparser
from dateutil.relativedelta import relativedelta

from tsdbquery.core.errors import BuildError

RawTime = Union[str, int, float, datetime]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MATH_PATTERN = re.compile(r"([+-])(\d*)([smhdwMy])|/([smhdwMy])")

_UNITS = {
    "s": lambda n: relativedelta(seconds=n),
    "m": lambda n: relativedelta(minutes=n),
    "h": lambda n: relativedelta(hours=n),
    "d": lambda n: relativedelta(days=n),
    "w": lambda n: relativedelta(weeks=n),
    "M": lambda n: relativedelta(months=n),
    "y": lambda n: relativedelta(years=n),
}


def _start_of(moment: datetime, unit: str) -> datetime:
    if unit == "s":
        return moment.replace(microsecond=0)
    if unit == "m":
        return moment.replace(second=0, microsecond=0)
    if unit == "h":
        return moment.replace(minute=0, second=0, microsecond=0)
    day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if unit == "d":
        return day
    if unit == "w":
        return day - timedelta(days=day.weekday())
    if unit == "M":
        return day.replace(day=1)
    return day.replace(month=1, day=1)


def _end_of(moment: datetime, unit: str) -> datetime:
    return _start_of(moment, unit) + _UNITS[unit](1) - timedelta(milliseconds=1)


def apply_date_math(moment: datetime, expression: str, round_up: bool = False) -> datetime:
    """Apply ``-6h``, ``+1d`` and ``/d`` style operations to ``moment``."""
    position = 0
    while position < len(expression):
        match = _MATH_PATTERN.match(expression, position)
        if match is None:
            raise BuildError("Invalid date math expression", {"expression": expression})
        sign, amount, unit, round_unit = match.groups()
        if round_unit:
            moment = _end_of(moment, round_unit) if round_up else _start_of(moment, round_unit)
        else:
            delta = _UNITS[unit](int(amount or 1))
            moment = moment + delta if sign == "+" else moment - delta
        position = match.end()
    return moment


def to_epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def convert_to_tsdb_time(
    raw: RawTime | None,
    round_up: bool = False,
    tz: tzinfo | None = None,
    now: datetime | None = None,
) -> int | None:
    """Convert a dashboard time expression into epoch milliseconds.

    ``now`` (and None) map to None, which the backend reads as "through now".
    """
    if raw is None or raw == "now":
        return None
    tz = tz or timezone.utc

    if isinstance(raw, datetime):
        return to_epoch_ms(raw if raw.tzinfo else raw.replace(tzinfo=tz))
    if isinstance(raw, (int, float)):
        return int(raw)

    text = raw.strip()
    if text.startswith("now"):
        current = now or datetime.now(tz)
        return to_epoch_ms(apply_date_math(current, text[3:], round_up))
    if text.isdigit():
        return int(text)

    try:
        parsed = dateparser.isoparse(text)
    except ValueError:
        try:
            parsed = dateparser.parse(text)
        except (ValueError, OverflowError) as exc:
            raise BuildError("Unparsable time value", {"value": text}) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return to_epoch_ms(parsed)
