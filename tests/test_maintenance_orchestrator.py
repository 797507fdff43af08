"""Tests for wsus_manager/system_maintenance/maintenance_orchestrator.py."""

import asyncio

import pytest

from tests.helpers import index_row
from wsus_manager.models import MaintenanceKind
from wsus_manager.system_maintenance.maintenance_orchestrator import (
    MaintenanceOrchestrator,
    MaintenanceType,
    TaskStatus,
)


def _kinds(report):
    return [task.kind for task in report.tasks_executed]


class TestSequences:
    @pytest.mark.asyncio
    async def test_quick_cleanup(self, engine) -> None:
        report = await MaintenanceOrchestrator(engine).execute_maintenance(MaintenanceType.QUICK_CLEANUP)

        assert _kinds(report) == [MaintenanceKind.REMOVE_DECLINED, MaintenanceKind.UPDATE_STATISTICS]
        assert report.success is True
        assert report.success_rate == 100

    @pytest.mark.asyncio
    async def test_deep_cleanup(self, engine, executor) -> None:
        executor.indexes = [index_row('tbUpdate', 'IX_Heavy', 50.0)]

        report = await MaintenanceOrchestrator(engine).execute_maintenance(MaintenanceType.DEEP_CLEANUP)

        assert _kinds(report) == [
            MaintenanceKind.REMOVE_DECLINED,
            MaintenanceKind.REMOVE_SUPERSEDED,
            MaintenanceKind.OPTIMIZE_INDEXES,
            MaintenanceKind.UPDATE_STATISTICS,
        ]
        assert report.tasks_executed[0].result.affected == 37
        assert report.tasks_executed[1].result.affected == 25000
        assert report.tasks_executed[2].result.rebuilt == 1
        assert executor.mutations('SHRINKDATABASE') == []

    @pytest.mark.asyncio
    async def test_full_maintenance_shrinks_last(self, engine, executor) -> None:
        report = await MaintenanceOrchestrator(engine).execute_maintenance(MaintenanceType.FULL_MAINTENANCE)

        assert _kinds(report)[-1] == MaintenanceKind.SHRINK
        assert 'SHRINKDATABASE' in executor.executed[-1][0]
        assert report.success is True


class TestFailuresAndCancellation:
    @pytest.mark.asyncio
    async def test_every_step_attempted_after_failure(self, engine, executor) -> None:
        executor.fail_on.add('State = 2')

        report = await MaintenanceOrchestrator(engine).execute_maintenance(MaintenanceType.DEEP_CLEANUP)

        statuses = [task.status for task in report.tasks_executed]
        assert statuses == [TaskStatus.FAILED, TaskStatus.COMPLETED, TaskStatus.COMPLETED, TaskStatus.COMPLETED]
        assert report.success is False
        assert report.success_rate == 75
        assert report.issues_found[0]['task'] == "Remove Declined Supersession Records"
        assert any('failed tasks' in r for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_cancellation_skips_remaining_steps(self, engine) -> None:
        cancel = asyncio.Event()

        def sink(event):
            if event.message.startswith("Remove Superseded"):
                cancel.set()

        report = await MaintenanceOrchestrator(engine).execute_maintenance(
            MaintenanceType.DEEP_CLEANUP, progress=sink, cancel_event=cancel)

        statuses = [task.status for task in report.tasks_executed]
        assert statuses[0] == TaskStatus.COMPLETED
        assert statuses[1] == TaskStatus.FAILED
        assert statuses[2:] == [TaskStatus.SKIPPED, TaskStatus.SKIPPED]
        assert report.cancelled is True
        assert '(cancelled)' in report.message

    @pytest.mark.asyncio
    async def test_overlapping_run_is_refused(self, engine) -> None:
        orchestrator = MaintenanceOrchestrator(engine)
        engine.settings.batch_size = 1000
        engine.settings.batch_pause_seconds = 0.01

        first = asyncio.create_task(orchestrator.execute_maintenance(MaintenanceType.DEEP_CLEANUP))
        await asyncio.sleep(0.02)
        second = await MaintenanceOrchestrator(engine).execute_maintenance(MaintenanceType.QUICK_CLEANUP)
        finished = await first

        assert all(task.status == TaskStatus.SKIPPED for task in second.tasks_executed)
        assert second.success is False
        assert finished.success is True


class TestReport:
    @pytest.mark.asyncio
    async def test_size_recommendation_near_limit(self, engine, executor) -> None:
        executor.size_gb = 9.5

        report = await MaintenanceOrchestrator(engine, max_size_gb=10.0).execute_maintenance(
            MaintenanceType.QUICK_CLEANUP)

        assert report.size_before_gb == 9.5
        assert report.size_after_gb == 9.5
        assert any('10 GB limit' in r for r in report.recommendations)

    @pytest.mark.asyncio
    async def test_progress_reports_each_step(self, engine) -> None:
        events = []

        await MaintenanceOrchestrator(engine).execute_maintenance(
            MaintenanceType.QUICK_CLEANUP, progress=events.append)

        maintenance_events = [e for e in events if e.stage == 'maintenance']
        assert [e.completed for e in maintenance_events] == [0, 1, 2]
        assert maintenance_events[-1].percent == 100.0
