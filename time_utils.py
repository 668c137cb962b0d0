"""
Wall-clock helpers for timetable periods.

Times are stored and exchanged as zero-padded 24-hour "HH:MM" strings.
The 12-hour form is for display only and is never persisted.
"""

import re

from errors import InvalidTimeFormat

TIME_12H_PATTERN = re.compile(r'^(\d{1,2}):(\d{2})\s*(AM|PM)$', re.IGNORECASE)


def time_to_minutes(time, field=None):
    """Parse "HH:MM" into minutes since midnight."""
    parts = str(time if time is not None else '').strip().split(':')
    if len(parts) != 2 or not all(p.isascii() and p.isdigit() for p in parts):
        raise InvalidTimeFormat(time, field, 'expected HH:MM')
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidTimeFormat(time, field, 'hour must be 0-23 and minute 0-59')
    return hour * 60 + minute


def calculate_duration(start_time, end_time):
    """Period length in minutes; negative when end_time is before start_time."""
    return time_to_minutes(end_time, 'end_time') - time_to_minutes(start_time, 'start_time')


def validate_period_times(start_time, end_time):
    """Strict boundary check for user-supplied period times. Returns the duration."""
    duration = calculate_duration(start_time, end_time)
    if duration <= 0:
        raise InvalidTimeFormat(end_time, 'end_time', 'must be later than start_time')
    return duration


def convert_to_12_hour(time24):
    """"14:30" -> "2:30 PM". Non-numeric input is returned unchanged."""
    try:
        hours_str, minutes_str = str(time24).split(':')
        hours24 = int(hours_str)
        minutes = int(minutes_str)
    except (TypeError, ValueError):
        return time24

    period = 'PM' if hours24 >= 12 else 'AM'
    hours12 = hours24 % 12 or 12
    return f"{hours12}:{minutes:02d} {period}"


def convert_to_24_hour(time12):
    """"2:30 PM" -> "14:30". Input that is not 12-hour time is returned unchanged."""
    match = TIME_12H_PATTERN.match(str(time12))
    if not match:
        return time12

    hours = int(match.group(1))
    minutes = int(match.group(2))
    period = match.group(3).upper()
    if period == 'PM' and hours != 12:
        hours += 12
    elif period == 'AM' and hours == 12:
        hours = 0
    return f"{hours:02d}:{minutes:02d}"


def format_time_range(start_time, end_time):
    return f"{convert_to_12_hour(start_time)} - {convert_to_12_hour(end_time)}"
