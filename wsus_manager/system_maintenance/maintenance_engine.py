"""
WSUS Manager Maintenance Engine
Destructive and read-only maintenance of the SUSDB database: supersession
cleanup, index optimization, statistics, shrink and space reporting.

Mutating operations are serialized through one lock; a second call while one
is running is refused with a failed result rather than queued. Long-running
statements run without a command timeout. Every operation returns a result
value and never raises for data-access faults.
"""

import asyncio
import logging
import time
from typing import List, Optional

from wsus_manager.config import MaintenanceSettings, WsusConfig
from wsus_manager.models import (
    DatabaseStats,
    IndexOptimizationResult,
    MaintenanceKind,
    MaintenanceOperationResult,
    ProgressEvent,
    ProgressSink,
    SpaceUsage,
    report_progress,
)
from wsus_manager.system_maintenance import queries
from wsus_manager.system_maintenance.sql_executor import SqlExecutor, SqlServerExecutor

logger = logging.getLogger('wsus_manager.maintenance_engine')

NO_TIMEOUT = 0
BUSY_MESSAGE = "Another maintenance operation is in progress"


class MaintenanceEngine:
    """Runs SUSDB maintenance statements through a SqlExecutor."""

    def __init__(self, executor: SqlExecutor, settings: Optional[MaintenanceSettings] = None,
                 database: Optional[str] = None):
        self.executor = executor
        self.settings = settings or MaintenanceSettings()
        self.database = database or executor.database or 'SUSDB'
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: WsusConfig, executor: Optional[SqlExecutor] = None) -> 'MaintenanceEngine':
        return cls(
            executor or SqlServerExecutor(config.sql),
            config.maintenance,
            config.sql.database
        )

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _refused(self, kind: MaintenanceKind) -> MaintenanceOperationResult:
        logger.warning(f"Refusing {kind.value}: {BUSY_MESSAGE.lower()}")
        return MaintenanceOperationResult(kind=kind, success=False, message=BUSY_MESSAGE, error=BUSY_MESSAGE)

    def _failed(self, kind: MaintenanceKind, started: float, error: Exception,
                affected: int = 0) -> MaintenanceOperationResult:
        return MaintenanceOperationResult(
            kind=kind,
            success=False,
            affected=affected,
            duration_seconds=time.monotonic() - started,
            message=f"{kind.value.replace('_', ' ').capitalize()} failed: {error}",
            error=str(error)
        )

    async def remove_declined_records(self) -> MaintenanceOperationResult:
        """Delete supersession links that belong to declined revisions."""
        kind = MaintenanceKind.REMOVE_DECLINED
        if self.busy:
            return self._refused(kind)

        async with self._lock:
            started = time.monotonic()
            logger.info("Removing supersession records for declined updates...")
            try:
                deleted = await self.executor.execute(queries.DELETE_DECLINED_SUPERSESSION, timeout=NO_TIMEOUT)
            except Exception as e:
                logger.warning(f"Failed to remove declined supersession records: {e}")
                return self._failed(kind, started, e)

            deleted = max(0, deleted)
            logger.info(f"Removed {deleted} declined supersession records")
            return MaintenanceOperationResult(
                kind=kind,
                success=True,
                affected=deleted,
                duration_seconds=time.monotonic() - started,
                message=f"Removed {deleted} declined supersession records"
            )

    async def remove_superseded_records(
        self,
        batch_size: Optional[int] = None,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> MaintenanceOperationResult:
        """Delete supersession links of superseded revisions in bounded batches.

        Each batch commits on its own, so an interrupted run keeps the rows it
        already removed and a rerun continues where it left off. The loop ends
        when a batch deletes nothing.
        """
        kind = MaintenanceKind.REMOVE_SUPERSEDED
        batch_size = batch_size if batch_size is not None else self.settings.batch_size
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        if self.busy:
            return self._refused(kind)

        async with self._lock:
            started = time.monotonic()
            interval = self.settings.progress_interval_rows
            next_report = interval
            total = 0
            batches = 0

            logger.info(f"Removing superseded supersession records in batches of {batch_size}...")

            try:
                while True:
                    if cancel_event is not None and cancel_event.is_set():
                        logger.warning(f"Superseded record removal cancelled after {total} records")
                        report_progress(progress, ProgressEvent(
                            stage=kind.value, message=f"Cancelled after {total} records", completed=total))
                        return MaintenanceOperationResult(
                            kind=kind,
                            success=False,
                            affected=total,
                            duration_seconds=time.monotonic() - started,
                            message=f"Cancelled after removing {total} superseded records",
                            error="cancelled"
                        )

                    deleted = await self.executor.execute(
                        queries.DELETE_SUPERSEDED_SUPERSESSION_BATCH, (batch_size,), timeout=NO_TIMEOUT)
                    if deleted <= 0:
                        break

                    total += deleted
                    batches += 1

                    if interval and total >= next_report:
                        report_progress(progress, ProgressEvent(
                            stage=kind.value, message=f"Deleted {total} records...", completed=total))
                        next_report = (total // interval + 1) * interval

                    if self.settings.batch_pause_seconds > 0:
                        await asyncio.sleep(self.settings.batch_pause_seconds)

            except Exception as e:
                logger.warning(f"Superseded record removal failed after {total} records: {e}")
                return self._failed(kind, started, e, affected=total)

            report_progress(progress, ProgressEvent(
                stage=kind.value, message=f"Removed {total} superseded records", completed=total, total=total))
            logger.info(f"Removed {total} superseded supersession records in {batches} batch(es)")

            return MaintenanceOperationResult(
                kind=kind,
                success=True,
                affected=total,
                duration_seconds=time.monotonic() - started,
                message=f"Removed {total} superseded records"
            )

    async def optimize_indexes(
        self,
        fragmentation_threshold: Optional[float] = None,
        rebuild_threshold: Optional[float] = None
    ) -> IndexOptimizationResult:
        """Rebuild heavily fragmented indexes and reorganize moderately fragmented ones."""
        kind = MaintenanceKind.OPTIMIZE_INDEXES
        if fragmentation_threshold is None:
            fragmentation_threshold = self.settings.fragmentation_threshold
        if rebuild_threshold is None:
            rebuild_threshold = self.settings.rebuild_threshold
        if not 0 <= fragmentation_threshold <= rebuild_threshold <= 100:
            raise ValueError(
                f"Invalid thresholds: fragmentation {fragmentation_threshold}, rebuild {rebuild_threshold}")

        if self.busy:
            logger.warning(f"Refusing {kind.value}: {BUSY_MESSAGE.lower()}")
            return IndexOptimizationResult(kind=kind, success=False, message=BUSY_MESSAGE, error=BUSY_MESSAGE)

        async with self._lock:
            started = time.monotonic()
            min_pages = self.settings.min_page_count

            try:
                rows = await self.executor.query(
                    queries.FRAGMENTED_INDEXES, (fragmentation_threshold, min_pages), timeout=NO_TIMEOUT)
            except Exception as e:
                logger.warning(f"Could not read index fragmentation: {e}")
                return IndexOptimizationResult(
                    kind=kind,
                    success=False,
                    duration_seconds=time.monotonic() - started,
                    message=f"Index optimization failed: {e}",
                    error=str(e)
                )

            candidates = [
                row for row in rows
                if float(row['fragmentation']) >= fragmentation_threshold and int(row['page_count']) > min_pages
            ]
            candidates.sort(key=lambda row: int(row['page_count']), reverse=True)

            if not candidates:
                logger.info("No fragmented indexes found")
                return IndexOptimizationResult(
                    kind=kind,
                    success=True,
                    duration_seconds=time.monotonic() - started,
                    message="No fragmented indexes found"
                )

            logger.info(f"Optimizing {len(candidates)} fragmented index(es)...")

            rebuilt = 0
            reorganized = 0
            failed: List[str] = []

            for row in candidates:
                table = row['table_name']
                index = row['index_name']
                fragmentation = float(row['fragmentation'])
                name = f"{table}.{index}"
                rebuild = fragmentation > rebuild_threshold
                template = queries.REBUILD_INDEX if rebuild else queries.REORGANIZE_INDEX
                statement = template.format(
                    index=queries.quote_identifier(index),
                    table=queries.quote_identifier(table)
                )

                try:
                    await self.executor.execute(statement, timeout=NO_TIMEOUT)
                except Exception as e:
                    logger.warning(f"Skipping index {name}: {e}")
                    failed.append(name)
                    continue

                if rebuild:
                    rebuilt += 1
                    logger.info(f"Rebuilt {name} ({fragmentation:.1f}% fragmented)")
                else:
                    reorganized += 1
                    logger.info(f"Reorganized {name} ({fragmentation:.1f}% fragmented)")

            message = f"Rebuilt {rebuilt}, reorganized {reorganized} index(es)"
            if failed:
                message += f", {len(failed)} failed"
            logger.info(message)

            return IndexOptimizationResult(
                kind=kind,
                success=True,
                affected=rebuilt + reorganized,
                duration_seconds=time.monotonic() - started,
                message=message,
                rebuilt=rebuilt,
                reorganized=reorganized,
                failed=tuple(failed)
            )

    async def update_statistics(self) -> MaintenanceOperationResult:
        kind = MaintenanceKind.UPDATE_STATISTICS
        if self.busy:
            return self._refused(kind)

        async with self._lock:
            started = time.monotonic()
            logger.info("Updating database statistics...")
            try:
                await self.executor.execute(queries.UPDATE_STATISTICS, timeout=NO_TIMEOUT)
            except Exception as e:
                logger.warning(f"Statistics update failed: {e}")
                return self._failed(kind, started, e)

            logger.info("Database statistics updated")
            return MaintenanceOperationResult(
                kind=kind,
                success=True,
                duration_seconds=time.monotonic() - started,
                message="Statistics updated"
            )

    async def shrink_database(self, target_free_percent: Optional[int] = None) -> MaintenanceOperationResult:
        """Shrink SUSDB, leaving `target_free_percent` free space in its files."""
        kind = MaintenanceKind.SHRINK
        if target_free_percent is None:
            target_free_percent = self.settings.shrink_target_free_percent
        if not isinstance(target_free_percent, int) or not 0 <= target_free_percent <= 99:
            raise ValueError(f"target_free_percent must be an integer between 0 and 99, got {target_free_percent}")

        if self.busy:
            return self._refused(kind)

        async with self._lock:
            started = time.monotonic()
            size_before = await self.get_size_gb()
            logger.info(f"Shrinking {self.database} (target free space {target_free_percent}%)...")

            statement = queries.SHRINK_DATABASE.format(
                database=queries.quote_identifier(self.database),
                percent=target_free_percent
            )
            try:
                await self.executor.execute(statement, timeout=NO_TIMEOUT)
            except Exception as e:
                logger.warning(f"Database shrink failed: {e}")
                return self._failed(kind, started, e)

            size_after = await self.get_size_gb()
            message = f"Database shrunk from {size_before:.2f} GB to {size_after:.2f} GB"
            logger.info(message)

            return MaintenanceOperationResult(
                kind=kind,
                success=True,
                duration_seconds=time.monotonic() - started,
                message=message
            )

    async def get_space_usage(self) -> Optional[SpaceUsage]:
        try:
            rows = await self.executor.query(queries.SPACE_USAGE)
        except Exception as e:
            logger.warning(f"Could not read database space usage: {e}")
            return None

        if not rows or rows[0].get('allocated_mb') is None:
            return None

        allocated = float(rows[0]['allocated_mb'])
        used = float(rows[0].get('used_mb') or 0)
        return SpaceUsage(allocated_mb=allocated, used_mb=used, free_mb=max(0.0, allocated - used))

    async def get_size_gb(self) -> float:
        """Total SUSDB file size in GB; 0.0 when it cannot be read."""
        try:
            size = await self.executor.scalar(queries.DATABASE_SIZE_GB, (self.database,))
        except Exception as e:
            logger.warning(f"Could not read database size: {e}")
            return 0.0
        return float(size) if size is not None else 0.0

    async def get_database_stats(self) -> Optional[DatabaseStats]:
        try:
            rows = await self.executor.query(queries.DATABASE_STATS)
        except Exception as e:
            logger.warning(f"Could not read database statistics: {e}")
            return None

        if not rows:
            return None

        row = rows[0]
        return DatabaseStats(
            supersession_records=int(row.get('supersession_records') or 0),
            declined_revisions=int(row.get('declined_revisions') or 0),
            superseded_revisions=int(row.get('superseded_revisions') or 0),
            files_present=int(row.get('files_present') or 0),
            files_total=int(row.get('files_total') or 0),
            size_gb=await self.get_size_gb()
        )

    async def test_connection(self) -> bool:
        try:
            return await self.executor.test_connection()
        except Exception as e:
            logger.warning(f"Database connection test failed: {e}")
            return False
