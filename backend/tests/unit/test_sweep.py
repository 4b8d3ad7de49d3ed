"""
Unit tests for the sweep coordinator.

Tests:
- Expired cleanup with partial runtime failures
- Admin batch destroy
- Sweep time budget
- Background loop
"""

import asyncio

from instancer.infrastructure.orchestrator import SweepCoordinator
from tests.fixtures.instance_fixtures import (
    ALICE,
    CAROL,
    CONTEST,
    PWN,
    SCRIPTED,
    TEAM_ALPHA,
    WEB,
    ContestRow,
    run_scenario,
    update_row,
)


async def three_instances(h):
    await update_row(h.db, ContestRow, CONTEST, container_limit=0)
    return [
        await h.manager.create(ALICE, CONTEST, WEB),
        await h.manager.create(ALICE, CONTEST, PWN),
        await h.manager.create(CAROL, CONTEST, WEB),
    ]


class TestCleanExpired:
    """Test reclamation of expired instances."""

    def test_nothing_expired(self, db_path):
        async def scenario(h):
            await three_instances(h)
            h.clock.advance(minutes=60)
            return await h.sweeper.clean_expired()

        report = run_scenario(db_path, scenario)
        assert (report.cleaned, report.failed) == (0, 0)

    def test_all_expired(self, db_path):
        async def scenario(h):
            created = await three_instances(h)
            h.clock.advance(hours=3)
            report = await h.sweeper.clean_expired(actor_id=9)
            left = await h.instances.list_expired(h.clock())
            return created, report, left, h.runtime.stopped

        created, report, left, stopped = run_scenario(db_path, scenario)
        assert report.cleaned == 3
        assert report.failed == 0
        assert sorted(report.destroyed_ids) == sorted(d.id for d in created)
        assert left == []
        assert sorted(stopped) == sorted(d.runtime_ref for d in created)

    def test_failed_teardown_stays_running(self, db_path):
        async def scenario(h):
            created = await three_instances(h)
            stuck = created[1]
            h.runtime.failing_stops.add(stuck.runtime_ref)
            h.clock.advance(hours=3)

            first = await h.sweeper.clean_expired()
            still = await h.instances.get_running(TEAM_ALPHA, PWN)

            h.runtime.failing_stops.clear()
            second = await h.sweeper.clean_expired()
            return stuck, first, still, second

        stuck, first, still, second = run_scenario(db_path, scenario)
        assert (first.cleaned, first.failed) == (2, 1)
        assert first.failed_ids == [stuck.id]
        assert still.id == stuck.id
        assert (second.cleaned, second.failed) == (1, 0)

    def test_sweep_budget(self, db_path):
        async def scenario(h):
            await three_instances(h)
            h.clock.advance(hours=3)

            async def slow_stop(ref):
                await asyncio.sleep(0.5)

            h.runtime.stop = slow_stop
            sweeper = SweepCoordinator(h.manager, sweep_timeout=0.05)
            report = await sweeper.clean_expired()
            running = await h.instances.count_running_for_team(TEAM_ALPHA, CONTEST)
            return report, running

        report, running = run_scenario(db_path, scenario)
        assert report.cleaned == 0
        assert report.failed == 3
        assert running == 2

    def test_report_message(self, db_path):
        async def scenario(h):
            await three_instances(h)
            h.clock.advance(hours=3)
            return await h.sweeper.clean_expired()

        data = run_scenario(db_path, scenario).to_dict()
        assert data["cleaned"] == 3
        assert data["message"] == "Done: 3 destroyed, 0 failed"


class TestBatchDestroy:
    """Test admin destroy of selected instances."""

    def test_batch_destroy(self, db_path):
        async def scenario(h):
            created = await three_instances(h)
            ids = [created[0].id, created[2].id, created[0].id, 9999]
            report = await h.sweeper.batch_destroy(ids, actor_id=9)
            remaining = await h.manager.list_instances()
            return created, report, remaining

        created, report, remaining = run_scenario(db_path, scenario)
        assert report.cleaned == 2
        assert report.skipped == 1
        assert report.failed == 0
        assert [i["id"] for i in remaining] == [created[1].id]

    def test_batch_destroy_ignores_expiry(self, db_path):
        async def scenario(h):
            created = await three_instances(h)
            return await h.sweeper.batch_destroy([d.id for d in created])

        assert run_scenario(db_path, scenario).cleaned == 3


class TestBackgroundLoop:
    """Test the periodic sweep task."""

    def test_loop_cleans_expired(self, db_path):
        async def scenario(h):
            await three_instances(h)
            h.clock.advance(hours=3)
            sweeper = SweepCoordinator(h.manager, interval_seconds=0.01)
            await sweeper.start()
            for _ in range(100):
                await asyncio.sleep(0.02)
                if not await h.instances.list_expired(h.clock()):
                    break
            await sweeper.stop()
            return await h.instances.list_expired(h.clock())

        assert run_scenario(db_path, scenario) == []
