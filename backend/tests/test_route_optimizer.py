"""
Route Optimizer Tests
Accept/reject decisions, day rewrites and lock behavior
"""

import asyncio
import pytest
import pytest_asyncio
from datetime import timedelta

from app.models.common import utc_now
from app.models.route_optimization import OptimizedRoute, RouteLeg
from tests.conftest import (
    CONTRACTOR_ID, MONDAY, FakeRouting, assert_no_overlaps, fixed_clock, make_job, weekday_hours
)

SPRINGFIELD = {"lat": 39.78, "lng": -89.65}
CHATHAM = {"lat": 39.67, "lng": -89.70}
ROCHESTER = {"lat": 39.75, "lng": -89.53}

PREFERRED = ["job_c", "job_a", "job_b"]


def make_optimizer(db, routing, notifications):
    from app.services.route_optimizer import RouteOptimizer
    return RouteOptimizer(db, routing=routing, notifications=notifications, clock=fixed_clock)


async def job_windows(db) -> dict:
    jobs = await db.jobs.find({"contractor_id": CONTRACTOR_ID}).to_list(length=100)
    return {j["job_id"]: (j["start_time"], j["end_time"]) for j in jobs}


@pytest_asyncio.fixture
async def route_day(seeded_db):
    """Three routable jobs: 09:00-11:00, 12:00-13:20, 14:00-15:20 (naive total 340 min)"""
    await seeded_db.jobs.insert_one(make_job("job_a", "09:00", "11:00", coordinates=SPRINGFIELD))
    await seeded_db.jobs.insert_one(make_job("job_b", "12:00", "13:20", coordinates=CHATHAM))
    await seeded_db.jobs.insert_one(make_job(
        "job_c", "14:00", "15:20", coordinates=ROCHESTER, customer_id="cus_other"
    ))
    return seeded_db


class TestOptimizationDecision:
    """Tests for the improvement threshold"""

    @pytest.mark.asyncio
    async def test_clear_improvement_accepted(self, route_day, notifications):
        """Test 4h30m against a naive 5h40m day is accepted and rewritten"""
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)
        optimizer = make_optimizer(route_day, routing, notifications)

        result = await optimizer.optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.accepted
        assert result.naive_total_minutes == 340
        assert result.optimized_total_minutes == 270
        assert result.estimated_time_savings_minutes == 70
        assert result.original_order == ["job_a", "job_b", "job_c"]
        assert result.optimized_order == PREFERRED

        assert await job_windows(route_day) == {
            "job_c": ("08:00", "09:20"),
            "job_a": ("09:50", "11:50"),
            "job_b": ("12:20", "13:40"),
        }
        await assert_no_overlaps(route_day)

        # Contractor plus one customer per moved job
        assert len(notifications.sent) == 4
        assert all(n.category.value == "schedule_optimized" for n in notifications.sent)
        assert all([c.value for c in n.channels] == ["push"] for n in notifications.sent)
        assert sorted(n.recipient_role.value for n in notifications.sent) == [
            "contractor", "customer", "customer", "customer"
        ]

    @pytest.mark.asyncio
    async def test_rewrite_updates_ledger(self, route_day, notifications):
        """Test the day's claims follow the rewritten windows"""
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)
        await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        ledger = await route_day.booking_ledgers.find_one({"ledger_key": f"{CONTRACTOR_ID}:2026-10-19"})
        claims = {c["job_id"]: (c["start_time"], c["end_time"]) for c in ledger["claims"]}
        assert claims == await job_windows(route_day)

    @pytest.mark.asyncio
    async def test_small_improvement_rejected(self, route_day, notifications):
        """Test a 5% improvement leaves the day untouched"""
        routing = FakeRouting(preferred=PREFERRED, total_seconds=340 * 0.95 * 60)
        optimizer = make_optimizer(route_day, routing, notifications)

        result = await optimizer.optimize_day(CONTRACTOR_ID, MONDAY)

        assert not result.accepted
        assert result.reason == "insufficient_improvement"
        assert await job_windows(route_day) == {
            "job_a": ("09:00", "11:00"),
            "job_b": ("12:00", "13:20"),
            "job_c": ("14:00", "15:20"),
        }
        assert notifications.sent == []

    @pytest.mark.asyncio
    async def test_threshold_is_strict(self, route_day, notifications):
        """Test a total exactly at the threshold is rejected"""
        routing = FakeRouting(preferred=PREFERRED, total_seconds=340 * 0.85 * 60)
        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.reason == "insufficient_improvement"

    @pytest.mark.asyncio
    async def test_leg_durations_used(self, route_day, notifications):
        """Test per-leg travel times replace the flat buffer"""
        route = OptimizedRoute(
            optimized_order=[2, 0, 1],
            total_duration_seconds=270 * 60,
            legs=[
                RouteLeg(duration_seconds=0),
                RouteLeg(duration_seconds=20 * 60),
                RouteLeg(duration_seconds=45 * 60),
            ]
        )
        result = await make_optimizer(
            route_day, FakeRouting(route=route), notifications
        ).optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.accepted
        assert [s.travel_from_previous_minutes for s in result.stops] == [0, 20, 45]
        assert await job_windows(route_day) == {
            "job_c": ("08:00", "09:20"),
            "job_a": ("09:40", "11:40"),
            "job_b": ("12:25", "13:45"),
        }

    @pytest.mark.asyncio
    async def test_flat_buffer_when_legs_disabled(self, route_day, notifications, settings, monkeypatch):
        """Test the flat buffer applies when leg durations are switched off"""
        monkeypatch.setattr(settings, "ROUTE_USE_LEG_DURATIONS", False)
        route = OptimizedRoute(
            optimized_order=[2, 0, 1],
            total_duration_seconds=270 * 60,
            legs=[RouteLeg(duration_seconds=0)] * 3
        )
        await make_optimizer(route_day, FakeRouting(route=route), notifications).optimize_day(
            CONTRACTOR_ID, MONDAY
        )

        assert (await job_windows(route_day))["job_a"] == ("09:50", "11:50")


class TestOptimizationFailures:
    """Tests for cases that leave the day untouched"""

    @pytest.mark.asyncio
    async def test_not_enough_stops(self, seeded_db, notifications):
        """Test a single routable job is not optimized"""
        await seeded_db.jobs.insert_one(make_job("job_a", "09:00", "11:00", coordinates=SPRINGFIELD))
        await seeded_db.jobs.insert_one(make_job("job_b", "12:00", "13:00"))
        routing = FakeRouting(preferred=PREFERRED, total_seconds=60)

        result = await make_optimizer(seeded_db, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.reason == "not_enough_stops"
        assert routing.calls == []

    @pytest.mark.asyncio
    async def test_routing_unavailable(self, route_day, notifications):
        """Test routing errors are reported, not raised"""
        from app.utils.exceptions import RoutingServiceError

        routing = FakeRouting(error=RoutingServiceError("OSRM down"))
        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert not result.accepted
        assert result.reason == "routing_unavailable"
        assert (await job_windows(route_day))["job_a"] == ("09:00", "11:00")
        await assert_no_overlaps(route_day)

    @pytest.mark.asyncio
    async def test_invalid_route(self, route_day, notifications):
        """Test an order that is not a permutation is rejected"""
        route = OptimizedRoute(optimized_order=[0, 0, 1], total_duration_seconds=60)
        result = await make_optimizer(
            route_day, FakeRouting(route=route), notifications
        ).optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.reason == "invalid_route"

    @pytest.mark.asyncio
    async def test_overlaps_unrouted_job(self, route_day, notifications):
        """Test a rewrite colliding with a job lacking coordinates is aborted"""
        await route_day.jobs.insert_one(make_job("job_d", "08:30", "09:00"))
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)

        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert not result.accepted
        assert result.reason == "overlaps_unrouted_job"
        assert (await job_windows(route_day))["job_c"] == ("14:00", "15:20")
        assert notifications.sent == []
        await assert_no_overlaps(route_day)

    @pytest.mark.asyncio
    async def test_exceeds_day(self, route_day, notifications, settings, monkeypatch):
        """Test a rewrite running past midnight is rejected"""
        monkeypatch.setattr(settings, "ROUTE_DAY_START", "22:00")
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)

        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.reason == "exceeds_day"
        assert (await job_windows(route_day))["job_a"] == ("09:00", "11:00")
        await assert_no_overlaps(route_day)

    @pytest.mark.asyncio
    async def test_outside_working_hours(self, route_day, notifications):
        """Test a rewrite starting before the contractor's day opens is rejected"""
        await route_day.contractor_availability.update_one(
            {"contractor_id": CONTRACTOR_ID}, {"$set": {"working_hours": weekday_hours("09:00", "17:00")}}
        )
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)

        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert not result.accepted
        assert result.reason == "outside_hours"
        assert await job_windows(route_day) == {
            "job_a": ("09:00", "11:00"),
            "job_b": ("12:00", "13:20"),
            "job_c": ("14:00", "15:20"),
        }
        assert notifications.sent == []
        await assert_no_overlaps(route_day)

    @pytest.mark.asyncio
    async def test_failed_write_rolled_back(self, route_day, notifications, monkeypatch):
        """Test a job write failing mid-rewrite puts the day back as it was"""
        from app.services.job_store import JobStore
        from app.utils.exceptions import PersistenceError

        update_timing = JobStore.update_timing
        calls = []

        async def failing_second_write(self, job_id, *args):
            calls.append(job_id)
            if len(calls) == 2:
                raise PersistenceError("update_timing")
            return await update_timing(self, job_id, *args)

        monkeypatch.setattr(JobStore, "update_timing", failing_second_write)
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)

        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert not result.accepted
        assert result.reason == "rewrite_failed"
        # job_c moved, job_a failed, job_c restored
        assert calls == ["job_c", "job_a", "job_c"]
        assert await job_windows(route_day) == {
            "job_a": ("09:00", "11:00"),
            "job_b": ("12:00", "13:20"),
            "job_c": ("14:00", "15:20"),
        }
        await assert_no_overlaps(route_day)

        ledger = await route_day.booking_ledgers.find_one({"ledger_key": f"{CONTRACTOR_ID}:2026-10-19"})
        assert len(ledger["claims"]) == 3
        claims = {c["job_id"]: (c["start_time"], c["end_time"]) for c in ledger["claims"]}
        assert claims == await job_windows(route_day)

        assert notifications.sent == []
        assert await route_day.schedule_locks.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_windows_held_during_rewrite(self, route_day, notifications, monkeypatch):
        """Test old and new windows are both claimed while jobs are being moved"""
        from app.services.job_store import JobStore

        update_timing = JobStore.update_timing
        seen = []

        async def recording_write(self, job_id, *args):
            ledger = await route_day.booking_ledgers.find_one({"ledger_key": f"{CONTRACTOR_ID}:2026-10-19"})
            seen.append(sorted((c["job_id"], c["start_time"]) for c in ledger["claims"]))
            return await update_timing(self, job_id, *args)

        monkeypatch.setattr(JobStore, "update_timing", recording_write)
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)

        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.accepted
        assert seen[0] == [
            ("job_a", "09:00"), ("job_a", "09:50"),
            ("job_b", "12:00"), ("job_b", "12:20"),
            ("job_c", "08:00"), ("job_c", "14:00"),
        ]
        await assert_no_overlaps(route_day)

    @pytest.mark.asyncio
    async def test_day_changed_during_routing(self, route_day, notifications):
        """Test a job moved while the route was computed aborts the rewrite"""

        class MovingRouting(FakeRouting):
            async def get_optimized_route(self, origin, destinations, options=None):
                await route_day.jobs.update_one(
                    {"job_id": "job_b"}, {"$set": {"start_time": "16:00", "end_time": "17:20"}}
                )
                return await super().get_optimized_route(origin, destinations, options)

        routing = MovingRouting(preferred=PREFERRED, total_seconds=270 * 60)
        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert not result.accepted
        assert result.reason == "day_changed"
        assert (await job_windows(route_day))["job_a"] == ("09:00", "11:00")
        await assert_no_overlaps(route_day)


class TestOptimizationLock:
    """Tests for the per-day lease lock"""

    @pytest.mark.asyncio
    async def test_held_lock(self, route_day, notifications, settings, monkeypatch):
        """Test a lock held elsewhere reports optimization_in_progress"""
        monkeypatch.setattr(settings, "ROUTE_LOCK_WAIT_SECONDS", 0.1)
        await route_day.schedule_locks.insert_one({
            "_id": f"route:{CONTRACTOR_ID}:2026-10-19",
            "owner": "lck_other",
            "acquired_at": utc_now(),
            "expires_at": utc_now() + timedelta(seconds=60)
        })
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)

        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.reason == "optimization_in_progress"
        assert routing.calls == []
        # The other holder's lease is left alone
        assert await route_day.schedule_locks.count_documents({}) == 1

    @pytest.mark.asyncio
    async def test_expired_lock_broken(self, route_day, notifications):
        """Test a lease left by a crashed holder does not block forever"""
        await route_day.schedule_locks.insert_one({
            "_id": f"route:{CONTRACTOR_ID}:2026-10-19",
            "owner": "lck_crashed",
            "acquired_at": utc_now() - timedelta(minutes=5),
            "expires_at": utc_now() - timedelta(minutes=4)
        })
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)

        result = await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert result.accepted
        assert await route_day.schedule_locks.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, route_day, notifications):
        """Test the lease is returned even when the run is rejected"""
        routing = FakeRouting(preferred=PREFERRED, total_seconds=340 * 60)
        await make_optimizer(route_day, routing, notifications).optimize_day(CONTRACTOR_ID, MONDAY)

        assert await route_day.schedule_locks.count_documents({}) == 0

    @pytest.mark.asyncio
    async def test_concurrent_runs(self, route_day, notifications):
        """Test two concurrent runs serialize and leave a consistent day"""
        routing = FakeRouting(preferred=PREFERRED, total_seconds=270 * 60)
        first = make_optimizer(route_day, routing, notifications)
        second = make_optimizer(route_day, routing, notifications)

        results = await asyncio.gather(
            first.optimize_day(CONTRACTOR_ID, MONDAY),
            second.optimize_day(CONTRACTOR_ID, MONDAY),
        )

        assert any(r.accepted for r in results)
        assert await job_windows(route_day) == {
            "job_c": ("08:00", "09:20"),
            "job_a": ("09:50", "11:50"),
            "job_b": ("12:20", "13:40"),
        }
        await assert_no_overlaps(route_day)
        # The second run finds nothing left to move
        assert len(notifications.sent) == 4


class TestScheduleTriggersOptimization:
    """Tests for optimization after a committed booking"""

    @pytest.mark.asyncio
    async def test_schedule_reorders_day(self, route_day, notifications):
        """Test a new booking can trigger a reorder and its result is returned"""
        from app.models.scheduled_job import ScheduleJobRequest
        from app.services.route_optimizer import RouteOptimizer
        from app.services.scheduling_service import SchedulingService

        await route_day.jobs.insert_one(make_job(
            "job_new", status="open", contractor_id=None, coordinates={"lat": 39.80, "lng": -89.60}
        ))
        await route_day.contractor_availability.update_one(
            {"contractor_id": CONTRACTOR_ID}, {"$set": {"max_jobs_per_day": 6}}
        )

        routing = FakeRouting(
            preferred=["job_new", "job_c", "job_a", "job_b"], total_seconds=300 * 60
        )
        optimizer = RouteOptimizer(route_day, routing=routing, notifications=notifications, clock=fixed_clock)
        scheduler = SchedulingService(
            route_day, notifications=notifications, optimizer=optimizer, clock=fixed_clock
        )

        result = await scheduler.schedule_job("job_new", ScheduleJobRequest(
            contractor_id=CONTRACTOR_ID, date=MONDAY, start_time="16:00", end_time="17:00"
        ))

        assert result.route_optimization.accepted
        assert result.job.start_time == "08:00"
        assert result.job.end_time == "09:00"
        assert "20261019T080000" in result.calendar_event.calendar_data
        await assert_no_overlaps(route_day)

        exported = await route_day.job_calendar_events.count_documents({})
        assert exported == 4
