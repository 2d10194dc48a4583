"""
Test configuration and fixtures
"""

import asyncio
import copy
import pytest
import pytest_asyncio
from typing import Any, Optional
from unittest.mock import MagicMock
from datetime import datetime, date, timezone

from httpx import AsyncClient, ASGITransport
from pymongo.errors import DuplicateKeyError

from app.config import get_settings
from app.models.route_optimization import OptimizedRoute, RoutePoint
from app.services.notification_service import NotificationResult

# Monday 2026-10-19, 07:00 in America/Chicago
FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
MONDAY = date(2026, 10, 19)
CONTRACTOR_ID = "ctr_test123"
CUSTOMER_ID = "cus_test123"

MISSING = object()


def _get_path(doc: dict, key: str) -> Any:
    current = doc
    for part in key.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return MISSING
    return current


def _set_path(doc: dict, key: str, value: Any) -> None:
    parts = key.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


# Mock database
class MockCollection:
    """
    Mock MongoDB collection

    Every call yields to the event loop once before touching data, so
    concurrent coroutines interleave between calls the way they would against
    a real server, while each single call stays atomic.
    """

    def __init__(self, name: str = ""):
        self.name = name
        self.data = {}
        self.counter = 0
        self.unique_keys: list[tuple[str, ...]] = []

    async def find_one(self, query: dict = None, *args, **kwargs):
        await asyncio.sleep(0)
        for doc in self.data.values():
            if query is None or self._match(doc, query):
                return copy.deepcopy(doc)
        return None

    def find(self, query: dict = None, *args, **kwargs):
        results = [
            copy.deepcopy(doc) for doc in self.data.values()
            if query is None or self._match(doc, query)
        ]
        return MockCursor(results)

    async def insert_one(self, doc: dict):
        await asyncio.sleep(0)
        self.counter += 1
        doc_id = doc.get("_id") or f"mock_id_{self.counter}"
        stored = copy.deepcopy(doc)
        stored["_id"] = doc_id
        self._check_unique(stored)
        self.data[doc_id] = stored
        doc["_id"] = doc_id
        return MagicMock(inserted_id=doc_id)

    async def insert_many(self, docs: list[dict]):
        ids = []
        for doc in docs:
            result = await self.insert_one(doc)
            ids.append(result.inserted_id)
        return MagicMock(inserted_ids=ids)

    async def update_one(self, query: dict, update: dict, upsert: bool = False, *args, **kwargs):
        await asyncio.sleep(0)
        for doc_id, doc in self.data.items():
            if self._match(doc, query):
                updated = self._apply(copy.deepcopy(doc), update, inserting=False)
                self._check_unique(updated, ignore_id=doc_id)
                self.data[doc_id] = updated
                return MagicMock(modified_count=1, matched_count=1, upserted_id=None)

        if upsert:
            doc = self._upsert_doc(query, update)
            self._check_unique(doc)
            self.data[doc["_id"]] = doc
            return MagicMock(modified_count=0, matched_count=0, upserted_id=doc["_id"])

        return MagicMock(modified_count=0, matched_count=0, upserted_id=None)

    async def find_one_and_update(
        self,
        query: dict,
        update: dict,
        upsert: bool = False,
        return_document: bool = False,
        *args,
        **kwargs
    ):
        await asyncio.sleep(0)
        for doc_id, doc in self.data.items():
            if self._match(doc, query):
                before = copy.deepcopy(doc)
                updated = self._apply(copy.deepcopy(doc), update, inserting=False)
                self._check_unique(updated, ignore_id=doc_id)
                self.data[doc_id] = updated
                return copy.deepcopy(updated) if return_document else before

        if upsert:
            doc = self._upsert_doc(query, update)
            self._check_unique(doc)
            self.data[doc["_id"]] = doc
            return copy.deepcopy(doc) if return_document else None
        return None

    async def delete_one(self, query: dict):
        await asyncio.sleep(0)
        for doc_id, doc in list(self.data.items()):
            if self._match(doc, query):
                del self.data[doc_id]
                return MagicMock(deleted_count=1)
        return MagicMock(deleted_count=0)

    async def delete_many(self, query: dict):
        await asyncio.sleep(0)
        matched = [doc_id for doc_id, doc in self.data.items() if self._match(doc, query)]
        for doc_id in matched:
            del self.data[doc_id]
        return MagicMock(deleted_count=len(matched))

    async def count_documents(self, query: dict = None):
        await asyncio.sleep(0)
        if query is None:
            return len(self.data)
        return sum(1 for doc in self.data.values() if self._match(doc, query))

    async def create_index(self, keys, unique: bool = False, **kwargs):
        if isinstance(keys, str):
            fields = (keys,)
        else:
            fields = tuple(k for k, _ in keys)
        if unique and fields not in self.unique_keys:
            self.unique_keys.append(fields)
        return "_".join(fields)

    # ============== Internals ==============

    def _check_unique(self, doc: dict, ignore_id: Any = None) -> None:
        if ignore_id is None and doc["_id"] in self.data:
            raise DuplicateKeyError(f"E11000 duplicate key error _id: {doc['_id']}")
        for fields in self.unique_keys:
            values = tuple(_get_path(doc, f) for f in fields)
            if any(v is MISSING for v in values):
                continue
            for other_id, other in self.data.items():
                if other_id == ignore_id or other_id == doc["_id"]:
                    continue
                if tuple(_get_path(other, f) for f in fields) == values:
                    raise DuplicateKeyError(f"E11000 duplicate key error {fields}: {values}")

    def _upsert_doc(self, query: dict, update: dict) -> dict:
        self.counter += 1
        doc = {"_id": f"mock_id_{self.counter}"}
        for key, value in query.items():
            if not key.startswith("$") and not isinstance(value, dict):
                _set_path(doc, key, value)
        return self._apply(doc, update, inserting=True)

    def _apply(self, doc: dict, update: dict, inserting: bool) -> dict:
        for key, value in update.get("$set", {}).items():
            _set_path(doc, key, copy.deepcopy(value))
        for key, value in update.get("$inc", {}).items():
            current = _get_path(doc, key)
            _set_path(doc, key, (0 if current is MISSING else current) + value)
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                _set_path(doc, key, copy.deepcopy(value))
        return doc

    def _match(self, doc: dict, query: dict) -> bool:
        for key, value in query.items():
            if key.startswith("$"):
                continue
            current = _get_path(doc, key)

            if isinstance(value, dict) and any(k.startswith("$") for k in value):
                # Handle operators
                for op, op_val in value.items():
                    if op == "$ne" and current == op_val:
                        return False
                    elif op == "$eq" and current != op_val:
                        return False
                    elif op == "$in" and (current is MISSING or current not in op_val):
                        return False
                    elif op == "$nin" and current is not MISSING and current in op_val:
                        return False
                    elif op in ("$gt", "$gte", "$lt", "$lte"):
                        if current is MISSING or current is None:
                            return False
                        if op == "$gt" and not current > op_val:
                            return False
                        if op == "$gte" and not current >= op_val:
                            return False
                        if op == "$lt" and not current < op_val:
                            return False
                        if op == "$lte" and not current <= op_val:
                            return False
            elif current is MISSING:
                if value is not None:
                    return False
            elif current != value:
                return False
        return True


class MockCursor:
    """Mock MongoDB cursor"""

    def __init__(self, data: list):
        self._data = data
        self._skip = 0
        self._limit = None

    def skip(self, n: int):
        self._skip = n
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def sort(self, key_or_list, direction: Optional[int] = None):
        if isinstance(key_or_list, str):
            keys = [(key_or_list, direction or 1)]
        else:
            keys = list(key_or_list)
        for key, order in reversed(keys):
            self._data.sort(
                key=lambda d: (_get_path(d, key) is MISSING, _get_path(d, key)
                               if _get_path(d, key) is not MISSING else 0),
                reverse=order < 0
            )
        return self

    async def to_list(self, length: int = None):
        await asyncio.sleep(0)
        data = self._data[self._skip:]
        if self._limit:
            data = data[:self._limit]
        if length:
            data = data[:length]
        return data


class MockDatabase:
    """Mock MongoDB database"""

    def __init__(self):
        self._collections = {}

    def __getattr__(self, name: str):
        if name.startswith("_"):
            return super().__getattribute__(name)
        if name not in self._collections:
            self._collections[name] = MockCollection(name)
        return self._collections[name]

    def __getitem__(self, name: str):
        return self.__getattr__(name)


# Fakes for external collaborators
class RecordingNotifications:
    """Notification gateway stand-in that records what was sent"""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send_multi_channel(self, notification):
        if self.fail:
            raise RuntimeError("gateway down")
        self.sent.append(notification)
        return NotificationResult(success=True, message_id=notification.notification_id)


class FakeRouting:
    """
    Routing service stand-in.

    Either returns a preset route, or orders the stops by a preferred list of
    job IDs and reports total_seconds.
    """

    def __init__(
        self,
        route: Optional[OptimizedRoute] = None,
        error: Optional[Exception] = None,
        preferred: Optional[list[str]] = None,
        total_seconds: float = 0
    ):
        self.route = route
        self.error = error
        self.preferred = preferred
        self.total_seconds = total_seconds
        self.calls = []

    async def get_contractor_location(self, contractor_id: str) -> Optional[RoutePoint]:
        return None

    async def get_optimized_route(self, origin, destinations, options=None) -> OptimizedRoute:
        self.calls.append((origin, destinations))
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        if self.preferred is not None:
            order = sorted(
                range(len(destinations)),
                key=lambda i: self.preferred.index(destinations[i].job_id)
            )
            return OptimizedRoute(optimized_order=order, total_duration_seconds=self.total_seconds)
        return self.route


def fixed_clock() -> datetime:
    return FIXED_NOW


def weekday_hours(start: str = "08:00", end: str = "17:00") -> dict:
    """Mon-Fri working, weekend off"""
    hours = {}
    for day in ["monday", "tuesday", "wednesday", "thursday", "friday"]:
        hours[day] = {"enabled": True, "start": start, "end": end}
    for day in ["saturday", "sunday"]:
        hours[day] = {"enabled": False, "start": None, "end": None}
    return hours


def make_job(
    job_id: str,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    day: date = MONDAY,
    status: str = "assigned",
    contractor_id: str = CONTRACTOR_ID,
    coordinates: Optional[dict] = None,
    **extra
) -> dict:
    """Job document as the job lifecycle would store it"""
    doc = {
        "job_id": job_id,
        "contractor_id": contractor_id,
        "customer_id": extra.pop("customer_id", CUSTOMER_ID),
        "title": extra.pop("title", f"Job {job_id}"),
        "status": status,
        "address": extra.pop("address", "123 Main St, Springfield"),
    }
    if start_time and end_time:
        h1, m1 = map(int, start_time.split(":"))
        h2, m2 = map(int, end_time.split(":"))
        doc.update({
            "date": day.isoformat(),
            "start_time": start_time,
            "end_time": end_time,
            "duration_hours": ((h2 * 60 + m2) - (h1 * 60 + m1)) / 60,
        })
    if coordinates:
        doc["coordinates"] = coordinates
    doc.update(extra)
    return doc


@pytest.fixture
def settings():
    """Shared settings instance (use monkeypatch to change values)"""
    return get_settings()


@pytest.fixture
def mock_db():
    """Create a mock database"""
    return MockDatabase()


@pytest.fixture
def notifications():
    """Recording notification gateway"""
    return RecordingNotifications()


@pytest.fixture
def sample_availability():
    """Availability payload: Mon-Fri 08:00-17:00 in Chicago"""
    return {
        "working_hours": weekday_hours(),
        "time_zone": "America/Chicago",
        "break_duration_minutes": 30,
        "max_jobs_per_day": 3,
        "advance_booking_days": 30,
        "emergency_available": False,
        "blocked_dates": []
    }


@pytest_asyncio.fixture
async def seeded_db(mock_db, sample_availability):
    """Database with indexes and a configured contractor"""
    from app.database import create_indexes
    from app.models.availability import AvailabilityUpdate
    from app.services.availability_service import AvailabilityService

    await create_indexes(mock_db)
    await AvailabilityService(mock_db).set_availability(
        CONTRACTOR_ID, AvailabilityUpdate(**sample_availability)
    )
    return mock_db


async def assert_no_overlaps(db: MockDatabase, contractor_id: str = CONTRACTOR_ID) -> None:
    """Active jobs of a contractor never overlap on the same date"""
    jobs = await db.jobs.find({
        "contractor_id": contractor_id,
        "status": {"$in": ["assigned", "in_progress"]}
    }).to_list(length=1000)

    by_day = {}
    for job in jobs:
        by_day.setdefault(job["date"], []).append(job)

    for day, day_jobs in by_day.items():
        day_jobs.sort(key=lambda j: j["start_time"])
        for first, second in zip(day_jobs, day_jobs[1:]):
            assert first["end_time"] <= second["start_time"], (
                f"{first['job_id']} overlaps {second['job_id']} on {day}"
            )


@pytest_asyncio.fixture
async def api_client(seeded_db):
    """HTTP client against the app with the mock database injected"""
    from app.database import get_database
    from app.main import app

    app.dependency_overrides[get_database] = lambda: seeded_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
