"""
Booking Ledger Model
Per-contractor, per-day claim set guarded by a version counter
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field

from app.models.common import utc_now


def ledger_key(contractor_id: str, day: date) -> str:
    """Unique key of a contractor's day"""
    return f"{contractor_id}:{day.isoformat()}"


class BookingClaim(BaseModel):
    """A job's hold on a time window"""
    job_id: str
    start_time: str
    end_time: str
    title: Optional[str] = None
    claimed_at: datetime = Field(default_factory=utc_now)


class DayLedger(BaseModel):
    """Snapshot of a day's claims at a given version"""
    ledger_key: str
    contractor_id: str
    date: date
    version: int = 0
    claims: list[BookingClaim] = Field(default_factory=list)

    # False until the first claim of the day is written
    exists: bool = Field(default=False, exclude=True)


@dataclass(frozen=True)
class ActiveBooking:
    """An occupied interval used by conflict checks (minutes since midnight)"""
    job_id: str
    start: int
    end: int
    title: Optional[str] = None

    def overlaps(self, start: int, end: int) -> bool:
        """Half-open interval overlap"""
        return start < self.end and self.start < end
