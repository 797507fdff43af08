"""Fakes and builders shared by the wsus_manager tests."""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple
from unittest.mock import AsyncMock, MagicMock

from wsus_manager.config import ServiceDefinition
from wsus_manager.exceptions import DatabaseError, ServiceControlError, ServiceNotFoundError
from wsus_manager.models import ResourceState, ServiceRole
from wsus_manager.services.service_control import ServiceControl
from wsus_manager.system_maintenance import queries
from wsus_manager.system_maintenance.sql_executor import SqlExecutor


class FakeServiceControl(ServiceControl):
    """In-memory service manager that records every call."""

    def __init__(self, states: Optional[Dict[str, ResourceState]] = None):
        super().__init__(kill_wait_seconds=0)
        self.states: Dict[str, ResourceState] = dict(states or {})
        self.calls: List[Tuple[str, str]] = []
        self.pending_polls: Dict[str, int] = {}
        self.start_polls = 0
        self.stuck: Set[str] = set()
        self.fail_start: Set[str] = set()
        self.fail_stop: Set[str] = set()
        self.fail_query: Set[str] = set()
        self.fail_kill: Set[str] = set()
        self.not_stoppable: Set[str] = set()

    async def query(self, name: str) -> ResourceState:
        if name in self.fail_query:
            raise RuntimeError(f"access denied for {name}")
        if name not in self.states:
            raise ServiceNotFoundError(name)

        state = self.states[name]
        if state == ResourceState.START_PENDING and name in self.pending_polls:
            self.pending_polls[name] -= 1
            if self.pending_polls[name] <= 0:
                del self.pending_polls[name]
                self.states[name] = ResourceState.RUNNING
        return state

    async def start(self, name: str):
        self.calls.append(('start', name))
        if name not in self.states:
            raise ServiceNotFoundError(name)
        if name in self.fail_start:
            raise ServiceControlError(f"start {name} refused")
        if name in self.stuck:
            return
        if self.start_polls:
            self.states[name] = ResourceState.START_PENDING
            self.pending_polls[name] = self.start_polls
        else:
            self.states[name] = ResourceState.RUNNING

    async def stop(self, name: str):
        self.calls.append(('stop', name))
        if name not in self.states:
            raise ServiceNotFoundError(name)
        if name in self.fail_stop:
            raise ServiceControlError(f"stop {name} refused")
        if name in self.stuck:
            return
        self.states[name] = ResourceState.STOPPED

    async def can_stop(self, name: str) -> bool:
        return name not in self.not_stoppable

    async def get_pid(self, name: str) -> Optional[int]:
        return 4242

    async def kill(self, name: str):
        self.calls.append(('kill', name))
        if name in self.fail_kill:
            raise ProcessLookupError(f"no process for {name}")
        self.states[name] = ResourceState.STOPPED

    def ops(self, op: str) -> List[str]:
        return [name for called, name in self.calls if called == op]


class FakeSqlExecutor(SqlExecutor):
    """SUSDB stand-in that dispatches on the statements the engine sends."""

    def __init__(self, database: str = 'SUSDB'):
        self.database = database
        self.declined_links = 37
        self.superseded_links = 25000
        self.indexes: List[Dict[str, Any]] = []
        self.size_gb = 2.5
        self.connected = True
        self.fail_on: Set[str] = set()
        self.fail_indexes: Set[str] = set()
        self.executed: List[Tuple[str, Tuple[Any, ...], Optional[int]]] = []
        self.bound_databases: List[str] = []

    def _maybe_fail(self, sql: str):
        for fragment in self.fail_on:
            if fragment in sql:
                raise DatabaseError(f"simulated failure for {fragment!r}")

    async def execute(self, sql: str, params: Sequence[Any] = (), timeout: Optional[int] = None) -> int:
        self.executed.append((sql, tuple(params), timeout))
        self._maybe_fail(sql)

        if sql == queries.DELETE_DECLINED_SUPERSESSION:
            deleted, self.declined_links = self.declined_links, 0
            return deleted

        if sql == queries.DELETE_SUPERSEDED_SUPERSESSION_BATCH:
            deleted = min(params[0], self.superseded_links)
            self.superseded_links -= deleted
            return deleted

        if 'ALTER INDEX' in sql:
            for name in self.fail_indexes:
                if f"[{name}]" in sql:
                    raise DatabaseError(f"deadlock victim on {name}")
            return 0

        if sql.startswith('BACKUP DATABASE'):
            Path(params[0]).write_bytes(b'SUSDB backup')
            return 0

        return 0

    async def query(self, sql: str, params: Sequence[Any] = (), timeout: Optional[int] = None) -> List[Dict[str, Any]]:
        self._maybe_fail(sql)

        if sql == queries.CONNECTION_PROBE:
            if not self.connected:
                raise DatabaseError("Login failed")
            return [{'': 1}]

        if sql == queries.FRAGMENTED_INDEXES:
            return [dict(row) for row in self.indexes]

        if sql == queries.DATABASE_SIZE_GB:
            return [{'': self.size_gb}]

        if sql == queries.SPACE_USAGE:
            return [{'allocated_mb': 1024.0, 'used_mb': 768.0}]

        if sql == queries.DATABASE_STATS:
            return [{
                'supersession_records': self.declined_links + self.superseded_links,
                'declined_revisions': 12,
                'superseded_revisions': 340,
                'files_present': 900,
                'files_total': 1000,
            }]

        return []

    def for_database(self, database: str) -> "FakeSqlExecutor":
        self.bound_databases.append(database)
        return self

    def mutations(self, fragment: str = '') -> List[str]:
        return [sql for sql, _, _ in self.executed if fragment in sql]


def index_row(table: str, index: str, fragmentation: float, page_count: int = 5000) -> Dict[str, Any]:
    return {
        'table_name': table,
        'index_name': index,
        'fragmentation': fragmentation,
        'page_count': page_count,
    }


def make_services() -> List[ServiceDefinition]:
    return [
        ServiceDefinition('update', 'WSUSService', 'WSUS Service', ServiceRole.UPDATE, 0.3, 0.3),
        ServiceDefinition('database', 'MSSQL$SQLEXPRESS', 'SQL Server Express', ServiceRole.DATABASE, 0.3, 0.3),
        ServiceDefinition('web', 'W3SVC', 'IIS', ServiceRole.WEB, 0.3, 0.3),
    ]


class AsyncLineIter:
    """Async iterator yielding raw bytes lines for a mocked process stdout."""

    def __init__(self, lines: List[bytes]):
        self._it = iter(lines)

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        try:
            return next(self._it)
        except StopIteration:
            raise StopAsyncIteration from None


def make_streaming_proc(returncode: int = 0, stdout: str = "") -> AsyncMock:
    """Build a mock for asyncio.create_subprocess_exec with streaming stdout."""
    proc = MagicMock()
    # Like asyncio.subprocess.Process, the exit code is only known after wait()
    proc.returncode = None
    proc.stdout = AsyncLineIter([(line + "\n").encode() for line in stdout.split("\n")] if stdout else [])

    async def _wait() -> int:
        proc.returncode = returncode
        return returncode

    proc.wait = AsyncMock(side_effect=_wait)
    return AsyncMock(return_value=proc)


def make_proc(returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.wait = AsyncMock(return_value=returncode)
    return proc
