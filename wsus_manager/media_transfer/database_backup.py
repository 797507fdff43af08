"""
SUSDB backup and restore through the SQL Server instance.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from wsus_manager.exceptions import DatabaseError, TransferError
from wsus_manager.models import ProgressEvent, ProgressSink, report_progress
from wsus_manager.system_maintenance import queries
from wsus_manager.system_maintenance.sql_executor import SqlExecutor

logger = logging.getLogger('wsus_manager.database_backup')

BACKUP_PREFIX = 'SUSDB_'
BACKUP_EXTENSION = '.bak'


def backup_file_name(timestamp: Optional[datetime] = None) -> str:
    return f"{BACKUP_PREFIX}{(timestamp or datetime.now()).strftime('%Y%m%d_%H%M%S')}{BACKUP_EXTENSION}"


def find_backup(folder: Path) -> Optional[Path]:
    """Newest .bak file directly inside `folder`."""
    backups = sorted(
        (p for p in Path(folder).glob(f'*{BACKUP_EXTENSION}') if p.is_file()),
        key=lambda p: p.stat().st_mtime,
        reverse=True
    )
    return backups[0] if backups else None


class DatabaseBackup:
    """Full backups to, and replacing restores from, a .bak file."""

    def __init__(self, executor: SqlExecutor, database: Optional[str] = None):
        self.executor = executor
        self.database = database or executor.database or 'SUSDB'

    async def backup(self, destination_dir: Path, progress: Optional[ProgressSink] = None) -> Path:
        """Write a full backup into `destination_dir` and return its path."""
        backup_path = Path(destination_dir) / backup_file_name()
        logger.info(f"Backing up {self.database} to {backup_path}")
        report_progress(progress, ProgressEvent(stage='database', message=f"Backing up {self.database}..."))

        statement = queries.BACKUP_DATABASE.format(database=queries.quote_identifier(self.database))
        try:
            await self.executor.execute(statement, (str(backup_path),), timeout=0)
        except DatabaseError as e:
            raise TransferError(f"Database backup failed: {e}") from e

        report_progress(progress, ProgressEvent(stage='database', message=f"Backup written: {backup_path.name}"))
        logger.info(f"Database backup completed: {backup_path}")
        return backup_path

    async def restore(self, backup_file: Path, progress: Optional[ProgressSink] = None):
        """Replace the database from `backup_file`.

        The database is put in single-user mode for the restore and always
        returned to multi-user mode, even when the restore fails.
        """
        database = queries.quote_identifier(self.database)
        master = self.executor.for_database('master')

        logger.info(f"Restoring {self.database} from {backup_file}")
        report_progress(progress, ProgressEvent(stage='database', message=f"Restoring {self.database}..."))

        try:
            await master.execute(queries.SET_SINGLE_USER.format(database=database), timeout=0)
            await master.execute(
                queries.RESTORE_DATABASE.format(database=database), (str(backup_file),), timeout=0)
        except DatabaseError as e:
            raise TransferError(f"Database restore failed: {e}") from e
        finally:
            try:
                await master.execute(queries.SET_MULTI_USER.format(database=database), timeout=0)
            except DatabaseError as e:
                logger.error(f"Could not return {self.database} to multi-user mode: {e}")

        report_progress(progress, ProgressEvent(stage='database', message="Database restore completed"))
        logger.info(f"Database {self.database} restored from {backup_file}")
