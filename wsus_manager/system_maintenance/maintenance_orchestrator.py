"""
WSUS Manager Maintenance Orchestrator

Sequences MaintenanceEngine operations into named maintenance runs and reports
on them:

    QUICK_CLEANUP     remove declined records, update statistics
    DEEP_CLEANUP      remove declined and superseded records, optimize indexes,
                      update statistics
    FULL_MAINTENANCE  deep cleanup followed by a shrink

Every step is attempted even when an earlier one failed. Cancellation marks
the steps not yet started as skipped. Only one run may be active at a time.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from wsus_manager.config import WsusConfig
from wsus_manager.models import (
    IndexOptimizationResult,
    MaintenanceKind,
    MaintenanceOperationResult,
    ProgressEvent,
    ProgressSink,
    report_progress,
)
from wsus_manager.system_maintenance.maintenance_engine import MaintenanceEngine

logger = logging.getLogger('wsus_manager.maintenance_orchestrator')


class MaintenanceType(Enum):
    """Types of maintenance runs"""
    QUICK_CLEANUP = "quick_cleanup"
    DEEP_CLEANUP = "deep_cleanup"
    FULL_MAINTENANCE = "full_maintenance"


class TaskStatus(Enum):
    """Status of maintenance tasks"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TASK_NAMES = {
    MaintenanceKind.REMOVE_DECLINED: "Remove Declined Supersession Records",
    MaintenanceKind.REMOVE_SUPERSEDED: "Remove Superseded Supersession Records",
    MaintenanceKind.OPTIMIZE_INDEXES: "Optimize Indexes",
    MaintenanceKind.UPDATE_STATISTICS: "Update Statistics",
    MaintenanceKind.SHRINK: "Shrink Database",
}

DEEP_CLEANUP_STEPS = [
    MaintenanceKind.REMOVE_DECLINED,
    MaintenanceKind.REMOVE_SUPERSEDED,
    MaintenanceKind.OPTIMIZE_INDEXES,
    MaintenanceKind.UPDATE_STATISTICS,
]

MAINTENANCE_STEPS = {
    MaintenanceType.QUICK_CLEANUP: [
        MaintenanceKind.REMOVE_DECLINED,
        MaintenanceKind.UPDATE_STATISTICS,
    ],
    MaintenanceType.DEEP_CLEANUP: DEEP_CLEANUP_STEPS,
    # Shrink last so it works on the compacted data set
    MaintenanceType.FULL_MAINTENANCE: DEEP_CLEANUP_STEPS + [MaintenanceKind.SHRINK],
}


@dataclass
class MaintenanceTask:
    """Individual maintenance step"""
    name: str
    kind: MaintenanceKind
    status: TaskStatus = TaskStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error_message: Optional[str] = None
    result: Optional[MaintenanceOperationResult] = None


@dataclass
class MaintenanceReport:
    """Outcome of one maintenance run"""
    execution_id: str
    maintenance_type: MaintenanceType
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_seconds: float = 0.0
    tasks_executed: List[MaintenanceTask] = field(default_factory=list)
    size_before_gb: float = 0.0
    size_after_gb: float = 0.0
    issues_found: List[Dict[str, Any]] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    success_rate: float = 0.0
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return bool(self.tasks_executed) and all(
            task.status == TaskStatus.COMPLETED for task in self.tasks_executed)

    @property
    def message(self) -> str:
        completed = sum(1 for task in self.tasks_executed if task.status == TaskStatus.COMPLETED)
        text = f"{self.maintenance_type.value}: {completed}/{len(self.tasks_executed)} tasks completed"
        if self.cancelled:
            text += " (cancelled)"
        return text


class MaintenanceOrchestrator:
    """Runs maintenance sequences against one MaintenanceEngine"""

    _run_lock = asyncio.Lock()

    def __init__(self, engine: MaintenanceEngine, max_size_gb: float = 10.0):
        self.engine = engine
        self.max_size_gb = max_size_gb
        self.current_report: Optional[MaintenanceReport] = None

    @classmethod
    def from_config(cls, config: WsusConfig, engine: Optional[MaintenanceEngine] = None) -> 'MaintenanceOrchestrator':
        return cls(engine or MaintenanceEngine.from_config(config), config.sql.max_size_gb)

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def _create_maintenance_tasks(self, maintenance_type: MaintenanceType) -> List[MaintenanceTask]:
        return [MaintenanceTask(name=TASK_NAMES[kind], kind=kind) for kind in MAINTENANCE_STEPS[maintenance_type]]

    def _step(self, kind: MaintenanceKind, progress: Optional[ProgressSink],
              cancel_event: Optional[asyncio.Event]) -> Callable[[], Awaitable[MaintenanceOperationResult]]:
        steps = {
            MaintenanceKind.REMOVE_DECLINED: self.engine.remove_declined_records,
            MaintenanceKind.REMOVE_SUPERSEDED: lambda: self.engine.remove_superseded_records(
                progress=progress, cancel_event=cancel_event),
            MaintenanceKind.OPTIMIZE_INDEXES: self.engine.optimize_indexes,
            MaintenanceKind.UPDATE_STATISTICS: self.engine.update_statistics,
            MaintenanceKind.SHRINK: self.engine.shrink_database,
        }
        return steps[kind]

    async def execute_maintenance(
        self,
        maintenance_type: MaintenanceType,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> MaintenanceReport:
        """Execute a maintenance run"""
        execution_id = f"{maintenance_type.value}_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        tasks = self._create_maintenance_tasks(maintenance_type)

        if self.running:
            logger.warning(f"Refusing {execution_id}: another maintenance run is in progress")
            for task in tasks:
                task.status = TaskStatus.SKIPPED
                task.error_message = "Another maintenance run is in progress"
            return MaintenanceReport(
                execution_id=execution_id,
                maintenance_type=maintenance_type,
                start_time=datetime.now(),
                end_time=datetime.now(),
                tasks_executed=tasks,
                issues_found=[{'task': None, 'error': "Another maintenance run is in progress"}]
            )

        async with self._run_lock:
            start_time = datetime.now()
            logger.info(f"Starting maintenance execution: {execution_id}")

            self.current_report = MaintenanceReport(
                execution_id=execution_id,
                maintenance_type=maintenance_type,
                start_time=start_time,
                tasks_executed=tasks,
                size_before_gb=await self.engine.get_size_gb()
            )

            completed_tasks = 0
            for index, task in enumerate(tasks):
                if cancel_event is not None and cancel_event.is_set():
                    self.current_report.cancelled = True
                    task.status = TaskStatus.SKIPPED
                    task.error_message = "Cancelled"
                    continue

                report_progress(progress, ProgressEvent(
                    stage='maintenance',
                    message=f"{task.name}...",
                    completed=index,
                    total=len(tasks)
                ))

                await self._execute_task(task, progress, cancel_event)
                if task.status == TaskStatus.COMPLETED:
                    completed_tasks += 1

            if self.current_report.cancelled:
                logger.warning(f"Maintenance execution {execution_id} cancelled")

            end_time = datetime.now()
            self.current_report.end_time = end_time
            self.current_report.duration_seconds = (end_time - start_time).total_seconds()
            self.current_report.size_after_gb = await self.engine.get_size_gb()
            self.current_report.success_rate = (completed_tasks / len(tasks)) * 100 if tasks else 0
            self.current_report.recommendations = self._generate_recommendations(self.current_report)

            report_progress(progress, ProgressEvent(
                stage='maintenance',
                message=self.current_report.message,
                completed=len(tasks),
                total=len(tasks)
            ))

            logger.info(f"Maintenance execution completed: {execution_id} "
                        f"({completed_tasks}/{len(tasks)} tasks successful)")

            return self.current_report

    async def _execute_task(self, task: MaintenanceTask, progress: Optional[ProgressSink],
                            cancel_event: Optional[asyncio.Event]):
        """Execute individual maintenance task"""
        task.status = TaskStatus.RUNNING
        task.start_time = datetime.now()

        logger.info(f"Executing task: {task.name}")

        try:
            task.result = await self._step(task.kind, progress, cancel_event)()

            if task.result.success:
                task.status = TaskStatus.COMPLETED
                logger.info(f"Task completed successfully: {task.name} - {task.result.message}")
            else:
                task.status = TaskStatus.FAILED
                task.error_message = task.result.error or task.result.message
                logger.error(f"Task failed: {task.name} - {task.error_message}")

        except Exception as e:
            task.status = TaskStatus.FAILED
            task.error_message = str(e)
            logger.error(f"Task failed: {task.name} - {e}")

        finally:
            task.end_time = datetime.now()

        if task.status == TaskStatus.FAILED and self.current_report:
            self.current_report.issues_found.append({
                'task': task.name,
                'error': task.error_message,
                'timestamp': datetime.now().isoformat()
            })

    def _generate_recommendations(self, report: MaintenanceReport) -> List[str]:
        recommendations = []

        if self.max_size_gb > 0 and report.size_after_gb >= self.max_size_gb * 0.9:
            recommendations.append(
                f"Database is {report.size_after_gb:.2f} GB, close to the {self.max_size_gb:g} GB limit. "
                "Decline unneeded updates and run full maintenance."
            )

        for task in report.tasks_executed:
            if isinstance(task.result, IndexOptimizationResult) and task.result.failed:
                recommendations.append(
                    f"{len(task.result.failed)} index(es) could not be optimized. "
                    "Retry when the update service is idle."
                )

        if any(task.status == TaskStatus.FAILED for task in report.tasks_executed):
            recommendations.append("Review failed tasks in the log before the next maintenance window.")

        if report.cancelled:
            recommendations.append("Maintenance was cancelled. Rerun to complete the remaining steps.")

        return recommendations
