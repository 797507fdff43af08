"""
WSUS Manager SQL Access
Thin asynchronous wrapper over pyodbc for the SUSDB instance. Connections are
opened per call in autocommit mode so every statement (and every batch of a
batched delete) is its own transaction.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from wsus_manager.config import SqlSettings
from wsus_manager.exceptions import DatabaseError
from wsus_manager.system_maintenance.queries import CONNECTION_PROBE

logger = logging.getLogger('wsus_manager.sql_executor')

PROBE_TIMEOUT_SECONDS = 5


class SqlExecutor:
    """Database capability used by the maintenance engine and backups.

    `timeout` is None for the configured command timeout, 0 for no limit,
    or a number of seconds.
    """

    database: str = ''

    async def execute(self, sql: str, params: Sequence[Any] = (), timeout: Optional[int] = None) -> int:
        """Run a non-query statement and return the affected row count."""
        raise NotImplementedError

    async def query(self, sql: str, params: Sequence[Any] = (), timeout: Optional[int] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError

    async def scalar(self, sql: str, params: Sequence[Any] = (), timeout: Optional[int] = None) -> Any:
        rows = await self.query(sql, params, timeout)
        if not rows:
            return None
        return next(iter(rows[0].values()), None)

    async def test_connection(self) -> bool:
        try:
            return await self.scalar(CONNECTION_PROBE, timeout=PROBE_TIMEOUT_SECONDS) == 1
        except DatabaseError as e:
            logger.warning(f"Database connection test failed: {e}")
            return False

    def for_database(self, database: str) -> 'SqlExecutor':
        """Executor bound to another database on the same instance."""
        raise NotImplementedError


class SqlServerExecutor(SqlExecutor):
    """SqlExecutor for SQL Server through ODBC Driver 18."""

    def __init__(self, settings: SqlSettings, database: Optional[str] = None):
        self.settings = settings
        self.database = database or settings.database

    def connection_string(self) -> str:
        parts = [
            f"DRIVER={{{self.settings.driver}}}",
            f"SERVER={self.settings.server_instance}",
            f"DATABASE={self.database}",
        ]
        if self.settings.trusted_connection:
            parts.append("Trusted_Connection=yes")
        if self.settings.trust_server_certificate:
            parts.append("TrustServerCertificate=yes")
        return ';'.join(parts) + ';'

    def _command_timeout(self, timeout: Optional[int]) -> int:
        if timeout is None:
            return self.settings.command_timeout
        return max(0, int(timeout))

    def _connect(self, timeout: Optional[int]):
        # Deferred so hosts without the ODBC driver manager can still import the package
        import pyodbc

        try:
            connection = pyodbc.connect(
                self.connection_string(),
                autocommit=True,
                timeout=self.settings.connect_timeout
            )
        except pyodbc.Error as e:
            raise DatabaseError(f"Cannot connect to {self.settings.server_instance}/{self.database}: {e}") from e

        connection.timeout = self._command_timeout(timeout)
        return connection

    def _run(self, sql: str, params: Sequence[Any], timeout: Optional[int], fetch: bool):
        import pyodbc

        connection = self._connect(timeout)
        try:
            cursor = connection.cursor()
            cursor.execute(sql, *params)

            rows: List[Dict[str, Any]] = []
            affected = 0
            while True:
                if cursor.description is not None:
                    columns = [column[0] for column in cursor.description]
                    fetched = cursor.fetchall()
                    if fetch and not rows:
                        rows = [dict(zip(columns, row)) for row in fetched]
                elif cursor.rowcount is not None and cursor.rowcount >= 0:
                    affected += cursor.rowcount
                # BACKUP/RESTORE only finish once every informational result set is consumed
                if not cursor.nextset():
                    break

            return rows if fetch else affected
        except pyodbc.Error as e:
            raise DatabaseError(str(e)) from e
        finally:
            connection.close()

    async def execute(self, sql: str, params: Sequence[Any] = (), timeout: Optional[int] = None) -> int:
        return await asyncio.to_thread(self._run, sql, params, timeout, False)

    async def query(self, sql: str, params: Sequence[Any] = (), timeout: Optional[int] = None) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._run, sql, params, timeout, True)

    def for_database(self, database: str) -> 'SqlServerExecutor':
        return SqlServerExecutor(replace(self.settings), database)
