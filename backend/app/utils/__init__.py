"""
Utility modules for the scheduling engine
"""

from app.utils.time_utils import (
    time_to_minutes,
    minutes_to_time_str,
    hours_to_minutes,
    today_in_zone,
    to_utc
)

__all__ = [
    "time_to_minutes",
    "minutes_to_time_str",
    "hours_to_minutes",
    "today_in_zone",
    "to_utc"
]
