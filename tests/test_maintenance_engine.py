"""Tests for wsus_manager/system_maintenance/maintenance_engine.py."""

import asyncio

import pytest

from tests.helpers import FakeSqlExecutor, index_row
from wsus_manager.config import MaintenanceSettings
from wsus_manager.models import IndexOptimizationResult, MaintenanceKind
from wsus_manager.system_maintenance import queries
from wsus_manager.system_maintenance.maintenance_engine import BUSY_MESSAGE, MaintenanceEngine


class TestRemoveDeclinedRecords:
    @pytest.mark.asyncio
    async def test_removes_declined_links_then_nothing(self, engine) -> None:
        first = await engine.remove_declined_records()
        second = await engine.remove_declined_records()

        assert first.success is True
        assert first.affected == 37
        assert first.kind == MaintenanceKind.REMOVE_DECLINED
        assert second.success is True
        assert second.affected == 0

    @pytest.mark.asyncio
    async def test_runs_without_command_timeout(self, engine, executor) -> None:
        await engine.remove_declined_records()

        sql, _, timeout = executor.executed[0]
        assert sql == queries.DELETE_DECLINED_SUPERSESSION
        assert timeout == 0

    @pytest.mark.asyncio
    async def test_database_failure_returns_failed_result(self, engine, executor) -> None:
        executor.fail_on.add('tbRevisionSupersedesUpdate')

        result = await engine.remove_declined_records()

        assert result.success is False
        assert result.affected == 0
        assert result.error
        assert result.message


class TestRemoveSupersededRecords:
    @pytest.mark.asyncio
    async def test_deletes_in_batches_until_empty(self, engine, executor) -> None:
        result = await engine.remove_superseded_records(batch_size=10000)

        assert result.success is True
        assert result.affected == 25000
        batches = executor.mutations('DELETE TOP')
        # 10000, 10000, 5000, then an empty batch ends the loop
        assert len(batches) == 4
        assert all(params == (10000,) for sql, params, _ in executor.executed)

    @pytest.mark.asyncio
    async def test_second_run_removes_nothing(self, engine) -> None:
        await engine.remove_superseded_records()
        again = await engine.remove_superseded_records()

        assert again.success is True
        assert again.affected == 0

    @pytest.mark.asyncio
    async def test_reports_progress_at_interval_and_end(self, engine) -> None:
        events = []

        await engine.remove_superseded_records(batch_size=5000, progress=events.append)

        assert [e.completed for e in events] == [10000, 20000, 25000]
        assert events[-1].total == 25000

    @pytest.mark.asyncio
    async def test_raising_progress_sink_does_not_abort(self, engine) -> None:
        def sink(event):
            raise RuntimeError("display closed")

        result = await engine.remove_superseded_records(progress=sink)

        assert result.success is True
        assert result.affected == 25000

    @pytest.mark.asyncio
    async def test_cancellation_stops_between_batches(self, executor, maintenance_settings) -> None:
        engine = MaintenanceEngine(executor, maintenance_settings)
        cancel = asyncio.Event()
        events = []

        def sink(event):
            events.append(event)
            cancel.set()

        result = await engine.remove_superseded_records(batch_size=10000, progress=sink, cancel_event=cancel)

        assert result.success is False
        assert result.affected == 10000
        assert executor.superseded_links == 15000

    @pytest.mark.asyncio
    async def test_failure_keeps_partial_count(self, engine, executor) -> None:
        calls = 0
        original = executor.execute

        async def flaky(sql, params=(), timeout=None):
            nonlocal calls
            calls += 1
            if calls == 2:
                executor.fail_on.add('DELETE TOP')
            return await original(sql, params, timeout)

        executor.execute = flaky

        result = await engine.remove_superseded_records(batch_size=10000)

        assert result.success is False
        assert result.affected == 10000

    @pytest.mark.asyncio
    async def test_rejects_non_positive_batch(self, engine, executor) -> None:
        with pytest.raises(ValueError):
            await engine.remove_superseded_records(batch_size=0)
        assert executor.executed == []


class TestOptimizeIndexes:
    @pytest.mark.asyncio
    async def test_no_fragmented_indexes_means_no_mutation(self, engine, executor) -> None:
        executor.indexes = [
            index_row('tbUpdate', 'IX_A', 4.0),
            index_row('tbRevision', 'IX_B', 9.9),
        ]

        result = await engine.optimize_indexes()

        assert isinstance(result, IndexOptimizationResult)
        assert result.success is True
        assert (result.rebuilt, result.reorganized) == (0, 0)
        assert executor.mutations('ALTER INDEX') == []

    @pytest.mark.asyncio
    async def test_rebuilds_heavy_and_reorganizes_moderate(self, engine, executor) -> None:
        executor.indexes = [
            index_row('tbRevision', 'IX_Moderate', 15.0, page_count=2000),
            index_row('tbUpdate', 'IX_Heavy', 55.0, page_count=9000),
            index_row('tbFile', 'IX_Edge', 30.0, page_count=3000),
        ]

        result = await engine.optimize_indexes(fragmentation_threshold=10, rebuild_threshold=30)

        assert result.rebuilt == 1
        assert result.reorganized == 2
        assert result.affected == 3
        statements = executor.mutations('ALTER INDEX')
        # Largest first
        assert '[IX_Heavy]' in statements[0] and 'REBUILD' in statements[0]
        assert '[IX_Edge]' in statements[1] and 'REORGANIZE' in statements[1]
        assert '[IX_Moderate]' in statements[2] and 'REORGANIZE' in statements[2]
        assert all(s.startswith('SET DEADLOCK_PRIORITY LOW') for s in statements)
        assert 'SORT_IN_TEMPDB = ON' in statements[0]

    @pytest.mark.asyncio
    async def test_small_indexes_are_ignored(self, engine, executor) -> None:
        executor.indexes = [index_row('tbUpdate', 'IX_Tiny', 80.0, page_count=500)]

        result = await engine.optimize_indexes()

        assert result.affected == 0
        assert executor.mutations('ALTER INDEX') == []

    @pytest.mark.asyncio
    async def test_failed_index_is_skipped(self, engine, executor) -> None:
        executor.indexes = [
            index_row('tbUpdate', 'IX_Locked', 60.0, page_count=9000),
            index_row('tbRevision', 'IX_Fine', 60.0, page_count=8000),
        ]
        executor.fail_indexes.add('IX_Locked')

        result = await engine.optimize_indexes()

        assert result.success is True
        assert result.rebuilt == 1
        assert result.failed == ('tbUpdate.IX_Locked',)

    @pytest.mark.asyncio
    async def test_unreadable_fragmentation_fails(self, engine, executor) -> None:
        executor.fail_on.add('dm_db_index_physical_stats')

        result = await engine.optimize_indexes()

        assert result.success is False
        assert executor.mutations('ALTER INDEX') == []

    @pytest.mark.asyncio
    async def test_rejects_inverted_thresholds(self, engine) -> None:
        with pytest.raises(ValueError):
            await engine.optimize_indexes(fragmentation_threshold=40, rebuild_threshold=30)


class TestStatisticsAndShrink:
    @pytest.mark.asyncio
    async def test_update_statistics(self, engine, executor) -> None:
        result = await engine.update_statistics()

        assert result.success is True
        assert executor.executed[-1] == (queries.UPDATE_STATISTICS, (), 0)

    @pytest.mark.asyncio
    async def test_shrink_uses_target_percent(self, engine, executor) -> None:
        result = await engine.shrink_database(15)

        assert result.success is True
        statement = executor.mutations('SHRINKDATABASE')[0]
        assert 'SHRINKDATABASE([SUSDB], 15)' in statement
        assert statement.startswith('SET DEADLOCK_PRIORITY LOW')

    @pytest.mark.asyncio
    @pytest.mark.parametrize('percent', [-1, 100, 12.5])
    async def test_shrink_rejects_invalid_percent(self, engine, executor, percent) -> None:
        with pytest.raises(ValueError):
            await engine.shrink_database(percent)
        assert executor.executed == []


class TestReadOnlyQueries:
    @pytest.mark.asyncio
    async def test_space_usage(self, engine) -> None:
        usage = await engine.get_space_usage()

        assert usage.allocated_mb == 1024.0
        assert usage.free_mb == 256.0
        assert usage.used_percent == 75.0

    @pytest.mark.asyncio
    async def test_size_gb(self, engine, executor) -> None:
        executor.size_gb = 8.25
        assert await engine.get_size_gb() == 8.25

    @pytest.mark.asyncio
    async def test_size_gb_failure_is_zero(self, engine, executor) -> None:
        executor.fail_on.add('sys.master_files')
        assert await engine.get_size_gb() == 0.0

    @pytest.mark.asyncio
    async def test_database_stats(self, engine) -> None:
        stats = await engine.get_database_stats()

        assert stats.supersession_records == 25037
        assert stats.files_present == 900
        assert stats.size_gb == 2.5

    @pytest.mark.asyncio
    async def test_connection_probe(self, engine, executor) -> None:
        assert await engine.test_connection() is True
        executor.connected = False
        assert await engine.test_connection() is False


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_second_mutating_call_is_refused(self) -> None:
        executor = FakeSqlExecutor()
        settings = MaintenanceSettings(batch_size=1000, batch_pause_seconds=0.01, progress_interval_rows=0)
        engine = MaintenanceEngine(executor, settings)

        running = asyncio.create_task(engine.remove_superseded_records())
        await asyncio.sleep(0.02)
        refused = await engine.remove_declined_records()
        finished = await running

        assert refused.success is False
        assert refused.message == BUSY_MESSAGE
        assert finished.success is True
        assert executor.declined_links == 37
