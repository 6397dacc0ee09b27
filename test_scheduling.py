"""
Periodic Trigger Tests

Only one caller may win each run interval, and the Temporal activity
drains the queue only when it wins.
"""

import asyncio
import threading
from datetime import timedelta

import pytest

from activities.sync import RunSyncInput, SyncActivities
from storage.schedule import ScheduleRepository


@pytest.fixture
def schedule(db_path, clock):
    return ScheduleRepository(db_path, clock=clock)


class TestScheduleRepository:

    def test_first_claim_wins_then_waits_for_interval(self, schedule, clock):
        assert schedule.try_claim_run("process_queue", 60, "worker-a") is True
        assert schedule.try_claim_run("process_queue", 60, "worker-b") is False
        assert schedule.get_next_run("process_queue") == clock.now + timedelta(seconds=60)

        clock.advance(60)
        assert schedule.try_claim_run("process_queue", 60, "worker-b") is True

    def test_reset_makes_run_due(self, schedule):
        schedule.try_claim_run("process_queue", 60, "worker-a")
        schedule.reset("process_queue")
        assert schedule.try_claim_run("process_queue", 60, "worker-b") is True

    def test_unknown_schedule_has_no_next_run(self, schedule):
        assert schedule.get_next_run("nightly") is None

    def test_concurrent_claims_single_winner(self, db_path, clock):
        results = []
        lock = threading.Lock()

        def claim(owner):
            won = ScheduleRepository(db_path, clock=clock).try_claim_run("process_queue", 60, owner)
            with lock:
                results.append(won)

        threads = [threading.Thread(target=claim, args=(f"w{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestRunScheduledSync:

    def test_winner_drains_queue(self, context, store):
        store.save("contact", {"name": "Ada", "email": "ada@example.com"}, "1")
        context.enqueue(module="crm", entity_type="contact", local_id=1, action="create")

        activities = SyncActivities(context)
        result = asyncio.run(activities.run_scheduled_sync(RunSyncInput(owner="test")))

        assert result["ran"] is True
        assert result["summary"]["completed"] == 1

    def test_loser_does_not_run(self, context):
        activities = SyncActivities(context)
        asyncio.run(activities.run_scheduled_sync(RunSyncInput(owner="a")))

        result = asyncio.run(activities.run_scheduled_sync(RunSyncInput(owner="b")))
        assert result == {"ran": False, "summary": None}

    def test_force_skips_claim(self, context):
        activities = SyncActivities(context)
        asyncio.run(activities.run_scheduled_sync(RunSyncInput(owner="a")))

        result = asyncio.run(activities.run_scheduled_sync(RunSyncInput(owner="b", force=True)))
        assert result["ran"] is True
        assert result["summary"]["stopped_reason"] == "drained"
