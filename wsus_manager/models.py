"""
WSUS Manager Data Model
Shared result records, states and progress events passed between the engine
components and their callers.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger('wsus_manager.models')


class ResourceState(Enum):
    UNKNOWN = "unknown"
    STOPPED = "stopped"
    START_PENDING = "start_pending"
    RUNNING = "running"
    STOP_PENDING = "stop_pending"
    NOT_FOUND = "not_found"


class ServiceRole(Enum):
    DATABASE = "database"
    WEB = "web"
    UPDATE = "update"


class MaintenanceKind(Enum):
    REMOVE_DECLINED = "remove_declined"
    REMOVE_SUPERSEDED = "remove_superseded"
    OPTIMIZE_INDEXES = "optimize_indexes"
    UPDATE_STATISTICS = "update_statistics"
    SHRINK = "shrink"


class HealthStatus(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class TransferDirection(Enum):
    EXPORT = "export"
    IMPORT = "import"


class TransferMode(Enum):
    FULL = "full"
    DIFFERENTIAL = "differential"


@dataclass(frozen=True)
class ServiceStatus:
    key: str
    service_name: str
    display_name: str
    state: ResourceState

    @property
    def running(self) -> bool:
        return self.state == ResourceState.RUNNING


@dataclass(frozen=True)
class MaintenanceOperationResult:
    """Outcome of one maintenance action."""
    kind: MaintenanceKind
    success: bool
    affected: int = 0
    duration_seconds: float = 0.0
    message: str = ""
    error: Optional[str] = None


@dataclass(frozen=True)
class IndexOptimizationResult(MaintenanceOperationResult):
    rebuilt: int = 0
    reorganized: int = 0
    failed: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SpaceUsage:
    allocated_mb: float
    used_mb: float
    free_mb: float

    @property
    def used_percent(self) -> float:
        if self.allocated_mb <= 0:
            return 0.0
        return (self.used_mb / self.allocated_mb) * 100


@dataclass(frozen=True)
class DatabaseStats:
    supersession_records: int
    declined_revisions: int
    superseded_revisions: int
    files_present: int
    files_total: int
    size_gb: float


@dataclass
class DatabaseHealth:
    connected: bool = False
    size_gb: float = 0.0
    message: str = ""


@dataclass
class HealthVerdict:
    status: HealthStatus = HealthStatus.HEALTHY
    services: Dict[str, ResourceState] = field(default_factory=dict)
    database: Optional[DatabaseHealth] = None
    issues: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=datetime.now)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    @property
    def message(self) -> str:
        if not self.issues:
            return "All systems operational"
        return f"{self.status.value.upper()}: {len(self.issues)} issue(s) - {self.issues[0]}"

    def downgrade(self, status: HealthStatus, issue: str):
        """Record an issue, lowering the status but never raising it."""
        self.issues.append(issue)
        order = [HealthStatus.HEALTHY, HealthStatus.DEGRADED, HealthStatus.UNHEALTHY]
        if order.index(status) > order.index(self.status):
            self.status = status


@dataclass
class RepairResult:
    services_started: List[str] = field(default_factory=list)
    services_failed: List[str] = field(default_factory=list)
    success: bool = True

    @property
    def message(self) -> str:
        if not self.services_started and not self.services_failed:
            return "No repair needed - all services running"
        if self.success:
            return f"Repair completed successfully ({len(self.services_started)} service(s) started)"
        return f"Repair completed with errors: failed to start {', '.join(self.services_failed)}"


@dataclass
class TransferManifest:
    direction: TransferDirection
    source_path: str
    destination_path: str
    mode: TransferMode = TransferMode.FULL
    max_age_days: Optional[int] = None
    database_backup: Optional[str] = None
    file_count: int = 0
    byte_count: int = 0
    created_at: datetime = field(default_factory=datetime.now)
    completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['direction'] = self.direction.value
        data['mode'] = self.mode.value
        data['created_at'] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransferManifest':
        return cls(
            direction=TransferDirection(data['direction']),
            source_path=data['source_path'],
            destination_path=data['destination_path'],
            mode=TransferMode(data.get('mode', TransferMode.FULL.value)),
            max_age_days=data.get('max_age_days'),
            database_backup=data.get('database_backup'),
            file_count=data.get('file_count', 0),
            byte_count=data.get('byte_count', 0),
            created_at=datetime.fromisoformat(data['created_at']) if data.get('created_at') else datetime.now(),
            completed=data.get('completed', False),
        )


@dataclass
class TransferResult:
    success: bool
    manifest: Optional[TransferManifest] = None
    files_copied: int = 0
    bytes_copied: int = 0
    message: str = ""


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    message: str
    completed: int = 0
    total: Optional[int] = None
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def percent(self) -> Optional[float]:
        if not self.total:
            return None
        return min(100.0, (self.completed / self.total) * 100)


ProgressSink = Callable[[ProgressEvent], None]


def report_progress(sink: Optional[ProgressSink], event: ProgressEvent):
    """Deliver a progress event to an optional sink; a failing sink is logged and ignored."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception as e:
        logger.warning(f"Progress sink raised while handling '{event.stage}': {e}")


def logging_progress_sink(name: str = 'wsus_manager.progress') -> ProgressSink:
    """Build a sink that writes each progress event to a logger."""
    progress_logger = logging.getLogger(name)

    def sink(event: ProgressEvent):
        if event.percent is not None:
            progress_logger.info(f"[{event.stage}] {event.message} ({event.percent:.0f}%)")
        else:
            progress_logger.info(f"[{event.stage}] {event.message}")

    return sink
